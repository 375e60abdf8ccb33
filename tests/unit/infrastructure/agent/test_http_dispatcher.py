"""Unit tests for HttpAgentDispatcher."""

import json

import httpx
import pytest

from feishu_channel.domain.model.channels.message import ChatKind, FragmentKind, MessageContext
from feishu_channel.infrastructure.agent.http_dispatcher import (
    AgentDispatchError,
    HttpAgentDispatcher,
    parse_fragment,
)

CONTEXT = MessageContext(
    sender_id="ou_user",
    body="hi",
    account_id="alice",
    session_key="agent:alice:feishu:alice:dm:ou_user",
    chat_id="oc_p2p",
    chat_kind=ChatKind.DIRECT,
    agent_id="alice",
    message_id="om_1",
)


def _dispatcher(handler) -> HttpAgentDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpAgentDispatcher("http://agent.local/v1/dispatch", client=client)


@pytest.mark.unit
class TestParseFragment:
    def test_defaults_to_block(self):
        fragment = parse_fragment({"text": "x"})

        assert fragment.kind == FragmentKind.BLOCK
        assert fragment.media_urls == ()

    def test_unknown_kind_is_block(self):
        assert parse_fragment({"kind": "thinking"}).kind == FragmentKind.BLOCK

    def test_final(self):
        fragment = parse_fragment({"kind": "final", "text": "done", "reply_to_id": "om_1"})

        assert fragment.kind == FragmentKind.FINAL
        assert fragment.reply_to_id == "om_1"

    def test_single_media_url_string(self):
        assert parse_fragment({"media_urls": "/tmp/a.png"}).media_urls == ("/tmp/a.png",)


@pytest.mark.unit
class TestHttpAgentDispatcher:
    @pytest.mark.asyncio
    async def test_streams_fragments_in_order(self):
        seen_payloads = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen_payloads.append(json.loads(request.content))
            lines = [
                json.dumps({"kind": "block", "text": "Hello"}),
                "",
                "not json",
                "[]",
                "1",
                json.dumps({"kind": "final", "text": " world", "media_urls": ["/tmp/a.png"]}),
            ]
            return httpx.Response(200, content="\n".join(lines).encode())

        fragments = []

        async def deliver(fragment):
            fragments.append(fragment)

        dispatcher = _dispatcher(handler)
        await dispatcher.dispatch(CONTEXT, deliver, disable_block_streaming=True)
        await dispatcher.close()

        assert [f.text for f in fragments] == ["Hello", " world"]
        assert fragments[1].media_urls == ("/tmp/a.png",)
        assert seen_payloads[0]["disable_block_streaming"] is True
        assert seen_payloads[0]["context"]["session_key"] == CONTEXT.session_key
        assert seen_payloads[0]["context"]["chat_type"] == "direct"

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        dispatcher = _dispatcher(lambda request: httpx.Response(503, content=b"busy"))

        async def deliver(fragment):
            raise AssertionError("no fragments expected")

        with pytest.raises(AgentDispatchError, match="HTTP 503"):
            await dispatcher.dispatch(CONTEXT, deliver)

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        dispatcher = _dispatcher(handler)

        async def deliver(fragment):
            pass

        with pytest.raises(AgentDispatchError, match="request failed"):
            await dispatcher.dispatch(CONTEXT, deliver)
