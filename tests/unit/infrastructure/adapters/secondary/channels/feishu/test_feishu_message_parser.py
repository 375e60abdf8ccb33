"""Unit tests for Feishu message parsing and enrichment."""

import json
from unittest.mock import AsyncMock

import pytest

from feishu_channel.domain.model.channels.message import ChatKind, MentionTarget
from feishu_channel.infrastructure.adapters.secondary.channels.feishu.media_downloader import (
    DownloadedResource,
    FeishuResourceDownloadError,
)
from feishu_channel.infrastructure.adapters.secondary.channels.feishu.message_parser import (
    MessageEnricher,
    build_inbound_event,
    parse_quoted_message,
    render_forwarded_lines,
    render_post,
    render_text,
)


def _payload(msg_type="text", content=None, **message_fields):
    message = {
        "message_id": "om_1",
        "chat_id": "oc_chat",
        "chat_type": "group",
        "message_type": msg_type,
        "content": json.dumps(content if content is not None else {"text": "hi"}),
        "create_time": "1700000000000",
    }
    message.update(message_fields)
    return {
        "sender": {"sender_id": {"open_id": "ou_user"}, "sender_type": "user"},
        "message": message,
    }


def _source(items=None, download_error=False):
    source = AsyncMock()
    source.get_message_items.return_value = items or []
    if download_error:
        source.download_resource.side_effect = FeishuResourceDownloadError("HTTP 404")
    else:
        source.download_resource.return_value = DownloadedResource(content=b"data", file_name="x", mime_type=None)
    return source


@pytest.fixture
def transcriber():
    transcriber = AsyncMock()
    transcriber.transcribe_bytes.return_value = "transcribed words"
    return transcriber


@pytest.mark.unit
class TestBuildInboundEvent:
    def test_basic_fields(self):
        event = build_inbound_event("alice", _payload())

        assert event.event_id == "om_1"
        assert event.account_id == "alice"
        assert event.chat_kind == ChatKind.GROUP
        assert event.sender_id == "ou_user"
        assert event.created_at_ms == 1_700_000_000_000
        assert not event.has_broadcast_mention

    def test_p2p_is_direct(self):
        assert build_inbound_event("alice", _payload(chat_type="p2p")).chat_kind == ChatKind.DIRECT

    def test_mentions_keep_order(self):
        payload = _payload(
            mentions=[
                {"key": "@_user_1", "id": {"open_id": "ou_bob"}, "name": "Bob"},
                {"key": "@_user_2", "id": {"open_id": "ou_alice"}, "name": "Alice"},
            ]
        )

        event = build_inbound_event("alice", payload)

        assert event.mentioned_ids == ["ou_bob", "ou_alice"]

    def test_broadcast_mention(self):
        payload = _payload(
            content={"text": "@_all standup"},
            mentions=[{"key": "@_all", "id": {"open_id": ""}, "name": "所有人"}],
        )

        event = build_inbound_event("alice", payload)

        assert event.has_broadcast_mention
        assert event.mentions == ()

    def test_missing_message_id(self):
        payload = _payload()
        del payload["message"]["message_id"]

        assert build_inbound_event("alice", payload) is None

    def test_invalid_create_time(self):
        assert build_inbound_event("alice", _payload(create_time="soon")).created_at_ms is None


@pytest.mark.unit
class TestRenderers:
    def test_render_text_replaces_mention_keys(self):
        event = build_inbound_event(
            "alice",
            _payload(
                content={"text": "@_user_1 <b>hello</b>"},
                mentions=[{"key": "@_user_1", "id": {"open_id": "ou_bob"}, "name": "Bob"}],
            ),
        )

        assert render_text({"text": "@_user_1 <b>hello</b>"}, event.mentions) == "@Bob hello"

    def test_render_text_does_not_clip_longer_keys(self):
        mentions = tuple(
            MentionTarget(key=f"@_user_{i}", open_id=f"ou_{i}", name=f"User{i}")
            for i in range(1, 11)
        )

        assert render_text({"text": "@_user_1 and @_user_10"}, mentions) == "@User1 and @User10"

    def test_render_post(self):
        content = {
            "zh_cn": {
                "content": [
                    [
                        {"tag": "text", "text": "see "},
                        {"tag": "a", "text": "docs", "href": "https://x"},
                        {"tag": "img", "image_key": "img_1"},
                    ]
                ]
            }
        }

        assert render_post(content) == ("see docs (https://x)", "img_1")

    def test_quoted_file(self):
        quoted = parse_quoted_message(
            {"msg_type": "file", "content": json.dumps({"file_key": "f_1", "file_name": "a.pdf"})}
        )

        assert quoted.text == "[文件: a.pdf]"
        assert quoted.file_key == "f_1"

    def test_quoted_merge_forward_is_not_json(self):
        quoted = parse_quoted_message({"msg_type": "merge_forward", "content": "Merged and Forwarded Message"})

        assert quoted.text == "[合并转发消息]"

    def test_forwarded_lines_mark_senders(self):
        items = [
            {"msg_type": "text", "content": json.dumps({"text": "question"}), "sender_type": "user"},
            {"msg_type": "text", "content": json.dumps({"text": "answer"}), "sender_type": "app"},
        ]

        assert render_forwarded_lines(items, "[header]") == "[header]\n👤 question\n🤖 answer"


@pytest.mark.unit
class TestMessageEnricher:
    @pytest.mark.asyncio
    async def test_text(self, transcriber, tmp_path):
        enricher = MessageEnricher(_source(), transcriber, str(tmp_path))
        event = build_inbound_event("alice", _payload(content={"text": " hello "}))

        message = await enricher(event, True)

        assert message.text == "hello"
        assert message.was_mentioned is True

    @pytest.mark.asyncio
    async def test_unsupported_type_dropped(self, transcriber, tmp_path):
        enricher = MessageEnricher(_source(), transcriber, str(tmp_path))
        event = build_inbound_event("alice", _payload(msg_type="vote", content={}))

        assert await enricher(event, False) is None

    @pytest.mark.asyncio
    async def test_image_downloaded_into_workspace(self, transcriber, tmp_path):
        source = _source()
        enricher = MessageEnricher(source, transcriber, str(tmp_path))
        event = build_inbound_event("alice", _payload(msg_type="image", content={"image_key": "img_1"}))

        message = await enricher(event, False)

        source.download_resource.assert_awaited_once_with("om_1", "img_1", "image", "img_1.png")
        assert message.text == "[图片]"
        assert message.media_type == "image/png"
        assert message.media_path.startswith(str(tmp_path / "downloads"))

    @pytest.mark.asyncio
    async def test_image_download_failure(self, transcriber, tmp_path):
        enricher = MessageEnricher(_source(download_error=True), transcriber, str(tmp_path))
        event = build_inbound_event("alice", _payload(msg_type="image", content={"image_key": "img_1"}))

        message = await enricher(event, False)

        assert message.text == "[图片下载失败]"
        assert message.media_path is None

    @pytest.mark.asyncio
    async def test_file(self, transcriber, tmp_path):
        enricher = MessageEnricher(_source(), transcriber, str(tmp_path))
        event = build_inbound_event(
            "alice", _payload(msg_type="file", content={"file_key": "f_1", "file_name": "report.pdf"})
        )

        message = await enricher(event, False)

        assert message.text == "[文件: report.pdf]"
        assert message.file_name == "report.pdf"
        assert message.media_type == "application/pdf"

    @pytest.mark.asyncio
    async def test_audio_transcribed(self, transcriber, tmp_path):
        enricher = MessageEnricher(_source(), transcriber, str(tmp_path))
        event = build_inbound_event("alice", _payload(msg_type="audio", content={"file_key": "f_a"}))

        message = await enricher(event, False)

        transcriber.transcribe_bytes.assert_awaited_once_with(b"data", "om_1")
        assert message.text == "transcribed words"
        assert message.message_type == "text"
        assert message.is_voice

    @pytest.mark.asyncio
    async def test_audio_without_transcript_dropped(self, transcriber, tmp_path):
        transcriber.transcribe_bytes.return_value = None
        enricher = MessageEnricher(_source(), transcriber, str(tmp_path))
        event = build_inbound_event("alice", _payload(msg_type="audio", content={"file_key": "f_a"}))

        assert await enricher(event, False) is None

    @pytest.mark.asyncio
    async def test_merge_forward_expanded(self, transcriber, tmp_path):
        items = [
            {"msg_type": "merge_forward", "content": "Merged and Forwarded Message"},
            {"msg_type": "text", "content": json.dumps({"text": "one"}), "sender_type": "user"},
        ]
        enricher = MessageEnricher(_source(items), transcriber, str(tmp_path))
        event = build_inbound_event("alice", _payload(msg_type="merge_forward", content={}))

        message = await enricher(event, False)

        assert message.text == "[合并转发消息，共1条]\n👤 one"

    @pytest.mark.asyncio
    async def test_merge_forward_lookup_error_falls_back(self, transcriber, tmp_path):
        source = _source()
        source.get_message_items.side_effect = RuntimeError("api down")
        enricher = MessageEnricher(source, transcriber, str(tmp_path))
        event = build_inbound_event("alice", _payload(msg_type="merge_forward", content={}))

        message = await enricher(event, False)

        assert message.text == "[合并转发消息]"

    @pytest.mark.asyncio
    async def test_quote_prefixed(self, transcriber, tmp_path):
        items = [{"msg_type": "text", "content": json.dumps({"text": "original"})}]
        enricher = MessageEnricher(_source(items), transcriber, str(tmp_path))
        event = build_inbound_event(
            "alice", _payload(content={"text": "agreed"}, parent_id="om_parent")
        )

        message = await enricher(event, False)

        assert message.text == '[引用: "original"]\nagreed'
