"""Unit tests for FeishuClient."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from feishu_channel.configuration.config import FeishuAccountConfig
from feishu_channel.infrastructure.adapters.secondary.channels.feishu.client import (
    FeishuClient,
    receive_id_type_for,
)
from feishu_channel.infrastructure.adapters.secondary.channels.feishu.media_downloader import (
    FeishuResourceDownloadError,
)


def _response(ok=True, code=0, msg="success", **data):
    response = MagicMock()
    response.success.return_value = ok
    response.code = code
    response.msg = msg
    response.data = SimpleNamespace(**data) if data else None
    return response


@pytest.fixture
def account():
    return FeishuAccountConfig(account_id="alice", app_id="cli_a", app_secret="secret")


@pytest.fixture
def rest_client():
    return MagicMock()


@pytest.fixture
def downloader():
    downloader = MagicMock()
    downloader.fetch_tenant_access_token = AsyncMock(return_value="t-token")
    downloader.download_resource = AsyncMock()
    downloader.close = AsyncMock()
    return downloader


@pytest.fixture
def client(account, rest_client, downloader):
    return FeishuClient(account, rest_client=rest_client, downloader=downloader)


@pytest.mark.unit
class TestFeishuClientMessages:
    def test_receive_id_type(self):
        assert receive_id_type_for("ou_123") == "open_id"
        assert receive_id_type_for("oc_123") == "chat_id"

    @pytest.mark.asyncio
    async def test_send_text(self, client, rest_client):
        rest_client.im.v1.message.acreate = AsyncMock(return_value=_response(message_id="om_new"))

        result = await client.send_text("oc_chat", "你好")

        assert result.ok
        assert result.message_id == "om_new"
        request = rest_client.im.v1.message.acreate.await_args.args[0]
        assert request.request_body.content == json.dumps({"text": "你好"}, ensure_ascii=False)
        assert request.request_body.msg_type == "text"

    @pytest.mark.asyncio
    async def test_send_failure_reported(self, client, rest_client):
        rest_client.im.v1.message.acreate = AsyncMock(
            return_value=_response(ok=False, code=230002, msg="bot not in chat")
        )

        result = await client.send_text("oc_chat", "hi")

        assert not result.ok
        assert result.error == "code=230002, msg=bot not in chat"

    @pytest.mark.asyncio
    async def test_sdk_exception_reported(self, client, rest_client):
        rest_client.im.v1.message.areply = AsyncMock(side_effect=RuntimeError("timeout"))

        result = await client.reply_message("om_1", "text", "{}")

        assert not result.ok
        assert result.error == "timeout"

    @pytest.mark.asyncio
    async def test_send_post_wraps_locale(self, client, rest_client):
        rest_client.im.v1.message.acreate = AsyncMock(return_value=_response(message_id="om_p"))
        content = [[{"tag": "text", "text": "x"}]]

        await client.send_post("oc_chat", content)

        request = rest_client.im.v1.message.acreate.await_args.args[0]
        assert json.loads(request.request_body.content) == {
            "zh_cn": {"title": "", "content": content}
        }

    @pytest.mark.asyncio
    async def test_add_reaction_returns_reaction_id(self, client, rest_client):
        rest_client.im.v1.message_reaction.acreate = AsyncMock(
            return_value=_response(reaction_id="r_42")
        )

        result = await client.add_reaction("om_1", "Salute")

        assert result.reaction_id == "r_42"

    @pytest.mark.asyncio
    async def test_get_message_items(self, client, rest_client):
        item = SimpleNamespace(
            message_id="om_1",
            msg_type="text",
            body=SimpleNamespace(content='{"text":"hi"}'),
            sender=SimpleNamespace(id="ou_user", sender_type="user"),
            upper_message_id=None,
            create_time="1700000000000",
        )
        rest_client.im.v1.message.aget = AsyncMock(return_value=_response(items=[item]))

        items = await client.get_message_items("om_1")

        assert items[0]["content"] == '{"text":"hi"}'
        assert items[0]["sender_id"] == "ou_user"

    @pytest.mark.asyncio
    async def test_get_message_items_failure(self, client, rest_client):
        rest_client.im.v1.message.aget = AsyncMock(return_value=_response(ok=False, code=1))

        assert await client.get_message_items("om_1") == []


@pytest.mark.unit
class TestFeishuClientMedia:
    @pytest.mark.asyncio
    async def test_missing_file(self, client):
        result = await client.send_media("oc_chat", "/nonexistent/a.png")

        assert result.error == "File not found: /nonexistent/a.png"

    @pytest.mark.asyncio
    async def test_image_upload_and_send(self, client, rest_client, tmp_path):
        image = tmp_path / "chart.png"
        image.write_bytes(b"\x89PNG")
        rest_client.im.v1.image.acreate = AsyncMock(return_value=_response(image_key="img_1"))
        rest_client.im.v1.message.acreate = AsyncMock(return_value=_response(message_id="om_i"))

        result = await client.send_media("oc_chat", str(image), caption="see chart")

        assert result.message_id == "om_i"
        sent = [c.args[0].request_body for c in rest_client.im.v1.message.acreate.await_args_list]
        assert [body.msg_type for body in sent] == ["text", "image"]
        assert json.loads(sent[1].content) == {"image_key": "img_1"}

    @pytest.mark.asyncio
    async def test_document_sent_as_file(self, client, rest_client, tmp_path):
        document = tmp_path / "report.pdf"
        document.write_bytes(b"%PDF")
        rest_client.im.v1.file.acreate = AsyncMock(return_value=_response(file_key="f_1"))
        rest_client.im.v1.message.acreate = AsyncMock(return_value=_response(message_id="om_f"))

        result = await client.send_media("oc_chat", str(document))

        assert result.ok
        upload = rest_client.im.v1.file.acreate.await_args.args[0].request_body
        assert upload.file_type == "pdf"
        assert upload.file_name == "report.pdf"

    @pytest.mark.asyncio
    async def test_failed_upload(self, client, rest_client, tmp_path):
        document = tmp_path / "notes.txt"
        document.write_text("x")
        rest_client.im.v1.file.acreate = AsyncMock(return_value=_response(ok=False, code=99))

        result = await client.send_media("oc_chat", str(document))

        assert result.error == "File upload failed: notes.txt"


@pytest.mark.unit
class TestFeishuClientIdentity:
    @pytest.mark.asyncio
    async def test_get_bot_info(self, client, rest_client):
        body = {"code": 0, "bot": {"open_id": "ou_alice", "app_name": "Alice"}}
        rest_client.arequest = AsyncMock(
            return_value=SimpleNamespace(raw=SimpleNamespace(content=json.dumps(body).encode()))
        )

        identity = await client.get_bot_info()

        assert identity.platform_id == "ou_alice"
        assert identity.display_name == "Alice"

    @pytest.mark.asyncio
    async def test_get_bot_info_error(self, client, rest_client):
        body = {"code": 99991663, "msg": "invalid token"}
        rest_client.arequest = AsyncMock(
            return_value=SimpleNamespace(raw=SimpleNamespace(content=json.dumps(body).encode()))
        )

        assert await client.get_bot_info() is None

    @pytest.mark.asyncio
    async def test_probe_reports_token_failure(self, client, downloader):
        downloader.fetch_tenant_access_token.side_effect = FeishuResourceDownloadError(
            "invalid app_secret"
        )

        result = await client.probe()

        assert result == {"ok": False, "app_id": "cli_a", "error": "invalid app_secret"}

    @pytest.mark.asyncio
    async def test_probe_without_credentials(self, rest_client, downloader):
        client = FeishuClient(
            FeishuAccountConfig(account_id="x"), rest_client=rest_client, downloader=downloader
        )

        assert (await client.probe())["ok"] is False
        downloader.fetch_tenant_access_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_probe_ok(self, client, rest_client):
        body = {"code": 0, "bot": {"open_id": "ou_alice", "app_name": "Alice"}}
        rest_client.arequest = AsyncMock(
            return_value=SimpleNamespace(raw=SimpleNamespace(content=json.dumps(body).encode()))
        )

        assert await client.probe() == {
            "ok": True,
            "app_id": "cli_a",
            "bot_name": "Alice",
            "bot_open_id": "ou_alice",
        }
