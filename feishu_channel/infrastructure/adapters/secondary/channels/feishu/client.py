"""Feishu messaging client built on the lark_oapi SDK."""

import json
import logging
from pathlib import Path
from typing import Any

import httpx
import lark_oapi as lark
from lark_oapi.api.im.v1 import (
    CreateFileRequest,
    CreateFileRequestBody,
    CreateImageRequest,
    CreateImageRequestBody,
    CreateMessageReactionRequest,
    CreateMessageReactionRequestBody,
    CreateMessageRequest,
    CreateMessageRequestBody,
    DeleteMessageReactionRequest,
    DeleteMessageRequest,
    Emoji,
    GetMessageRequest,
    ReplyMessageRequest,
    ReplyMessageRequestBody,
    UpdateMessageRequest,
    UpdateMessageRequestBody,
)

from feishu_channel.configuration.config import FeishuAccountConfig
from feishu_channel.domain.model.channels.bot import BotIdentity
from feishu_channel.domain.model.channels.message import SendResult
from feishu_channel.domain.ports.services.bot_identity_port import BotIdentityPort
from feishu_channel.domain.ports.services.channel_send_port import ChannelSendPort
from feishu_channel.infrastructure.adapters.secondary.channels.feishu.media import (
    MediaConversionError,
    convert_to_opus,
    detect_file_type,
    fetch_remote_media,
    is_audio_file,
    is_image_file,
)
from feishu_channel.infrastructure.adapters.secondary.channels.feishu.media_downloader import (
    DownloadedResource,
    FeishuResourceDownloader,
    FeishuResourceDownloadError,
)

logger = logging.getLogger(__name__)


def build_rest_client(account: FeishuAccountConfig) -> lark.Client:
    """Build a lark_oapi REST Client with proper domain configuration."""
    domain = lark.LARK_DOMAIN if account.domain == "lark" else lark.FEISHU_DOMAIN
    return (
        lark.Client.builder()
        .app_id(account.app_id)
        .app_secret(account.app_secret)
        .domain(domain)
        .build()
    )


def receive_id_type_for(receive_id: str) -> str:
    return "open_id" if receive_id.startswith("ou_") else "chat_id"


def _error_of(response: Any) -> str:
    return f"code={response.code}, msg={response.msg}"


class FeishuClient(ChannelSendPort, BotIdentityPort):
    """Messaging, reactions, uploads and identity lookups of one account.

    Every send operation returns a SendResult; SDK exceptions are logged and
    reported as failures.
    """

    def __init__(
        self,
        account: FeishuAccountConfig,
        rest_client: Any | None = None,
        downloader: FeishuResourceDownloader | None = None,
        probe_timeout_seconds: float = 10.0,
    ) -> None:
        self._account = account
        self._client = rest_client or build_rest_client(account)
        self._downloader = downloader or FeishuResourceDownloader(
            account.app_id, account.app_secret, account.api_base_url
        )
        self._probe_timeout_seconds = probe_timeout_seconds

    @property
    def account_id(self) -> str:
        return self._account.account_id

    @property
    def downloader(self) -> FeishuResourceDownloader:
        return self._downloader

    async def close(self) -> None:
        await self._downloader.close()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def _create(self, receive_id: str, msg_type: str, content: str) -> SendResult:
        request = (
            CreateMessageRequest.builder()
            .receive_id_type(receive_id_type_for(receive_id))
            .request_body(
                CreateMessageRequestBody.builder()
                .receive_id(receive_id)
                .msg_type(msg_type)
                .content(content)
                .build()
            )
            .build()
        )
        try:
            response = await self._client.im.v1.message.acreate(request)
        except Exception as e:
            logger.error(f"[FeishuClient] Send {msg_type} to {receive_id} failed: {e}")
            return SendResult.failure(str(e))

        if not response.success():
            logger.error(
                f"[FeishuClient] Send {msg_type} to {receive_id} failed: {_error_of(response)}"
            )
            return SendResult.failure(_error_of(response))
        message_id = response.data.message_id if response.data else None
        return SendResult.success(message_id)

    async def send_text(self, chat_id: str, text: str) -> SendResult:
        return await self._create(chat_id, "text", json.dumps({"text": text}, ensure_ascii=False))

    async def send_post(
        self, chat_id: str, content: list[list[dict[str, Any]]], title: str = ""
    ) -> SendResult:
        body = {"zh_cn": {"title": title, "content": content}}
        return await self._create(chat_id, "post", json.dumps(body, ensure_ascii=False))

    async def send_interactive(self, chat_id: str, card: dict[str, Any]) -> SendResult:
        return await self._create(chat_id, "interactive", json.dumps(card, ensure_ascii=False))

    async def reply_message(self, message_id: str, msg_type: str, content: str) -> SendResult:
        request = (
            ReplyMessageRequest.builder()
            .message_id(message_id)
            .request_body(
                ReplyMessageRequestBody.builder().msg_type(msg_type).content(content).build()
            )
            .build()
        )
        try:
            response = await self._client.im.v1.message.areply(request)
        except Exception as e:
            logger.warning(f"[FeishuClient] Reply to {message_id} failed: {e}")
            return SendResult.failure(str(e))

        if not response.success():
            logger.warning(f"[FeishuClient] Reply to {message_id} failed: {_error_of(response)}")
            return SendResult.failure(_error_of(response))
        return SendResult.success(response.data.message_id if response.data else None)

    async def update_message(self, message_id: str, msg_type: str, content: str) -> SendResult:
        request = (
            UpdateMessageRequest.builder()
            .message_id(message_id)
            .request_body(
                UpdateMessageRequestBody.builder().msg_type(msg_type).content(content).build()
            )
            .build()
        )
        try:
            response = await self._client.im.v1.message.aupdate(request)
        except Exception as e:
            logger.error(f"[FeishuClient] Edit {message_id} failed: {e}")
            return SendResult.failure(str(e))
        if not response.success():
            logger.error(f"[FeishuClient] Edit {message_id} failed: {_error_of(response)}")
            return SendResult.failure(_error_of(response))
        return SendResult.success(message_id)

    async def delete_message(self, message_id: str) -> SendResult:
        request = DeleteMessageRequest.builder().message_id(message_id).build()
        try:
            response = await self._client.im.v1.message.adelete(request)
        except Exception as e:
            logger.error(f"[FeishuClient] Delete {message_id} failed: {e}")
            return SendResult.failure(str(e))
        if not response.success():
            logger.error(f"[FeishuClient] Delete {message_id} failed: {_error_of(response)}")
            return SendResult.failure(_error_of(response))
        return SendResult.success(message_id)

    async def get_message_items(self, message_id: str) -> list[dict[str, Any]]:
        """Fetch a message as flat dicts.

        A merge-forward message yields the container followed by its
        sub-messages (those carry ``upper_message_id``). Returns an empty
        list on failure.
        """
        request = GetMessageRequest.builder().message_id(message_id).build()
        try:
            response = await self._client.im.v1.message.aget(request)
        except Exception as e:
            logger.warning(f"[FeishuClient] Get message {message_id} failed: {e}")
            return []
        if not response.success() or not response.data:
            logger.warning(
                f"[FeishuClient] Get message {message_id} failed: {_error_of(response)}"
            )
            return []
        return [self._message_to_dict(item) for item in response.data.items or []]

    @staticmethod
    def _message_to_dict(item: Any) -> dict[str, Any]:
        body = getattr(item, "body", None)
        sender = getattr(item, "sender", None)
        return {
            "message_id": getattr(item, "message_id", None),
            "msg_type": getattr(item, "msg_type", None),
            "content": getattr(body, "content", None) or "",
            "sender_id": getattr(sender, "id", None),
            "sender_type": getattr(sender, "sender_type", None),
            "upper_message_id": getattr(item, "upper_message_id", None),
            "create_time": getattr(item, "create_time", None),
        }

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------

    async def add_reaction(self, message_id: str, emoji_type: str) -> SendResult:
        request = (
            CreateMessageReactionRequest.builder()
            .message_id(message_id)
            .request_body(
                CreateMessageReactionRequestBody.builder()
                .reaction_type(Emoji.builder().emoji_type(emoji_type).build())
                .build()
            )
            .build()
        )
        try:
            response = await self._client.im.v1.message_reaction.acreate(request)
        except Exception as e:
            logger.warning(f"[FeishuClient] Add reaction to {message_id} failed: {e}")
            return SendResult.failure(str(e))
        if not response.success():
            logger.warning(
                f"[FeishuClient] Add reaction to {message_id} failed: {_error_of(response)}"
            )
            return SendResult.failure(_error_of(response))
        reaction_id = response.data.reaction_id if response.data else None
        return SendResult(ok=True, message_id=message_id, reaction_id=reaction_id)

    async def remove_reaction(self, message_id: str, reaction_id: str) -> SendResult:
        request = (
            DeleteMessageReactionRequest.builder()
            .message_id(message_id)
            .reaction_id(reaction_id)
            .build()
        )
        try:
            response = await self._client.im.v1.message_reaction.adelete(request)
        except Exception as e:
            logger.warning(f"[FeishuClient] Remove reaction {reaction_id} failed: {e}")
            return SendResult.failure(str(e))
        if not response.success():
            logger.warning(
                f"[FeishuClient] Remove reaction {reaction_id} failed: {_error_of(response)}"
            )
            return SendResult.failure(_error_of(response))
        return SendResult(ok=True, message_id=message_id, reaction_id=reaction_id)

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    async def upload_image(self, path: Path) -> str | None:
        """Upload an image and return its image_key."""
        with path.open("rb") as image:
            request = (
                CreateImageRequest.builder()
                .request_body(
                    CreateImageRequestBody.builder().image_type("message").image(image).build()
                )
                .build()
            )
            response = await self._client.im.v1.image.acreate(request)
        if response.success() and response.data and response.data.image_key:
            logger.info(f"[FeishuClient] Image uploaded: key={response.data.image_key}")
            return response.data.image_key
        logger.error(f"[FeishuClient] Image upload failed: {_error_of(response)}")
        return None

    async def upload_file(
        self,
        path: Path,
        file_type: str | None = None,
        duration_ms: int | None = None,
    ) -> str | None:
        """Upload a file and return its file_key.

        ``file_type`` is detected from the extension when omitted.
        """
        body = (
            CreateFileRequestBody.builder()
            .file_type(file_type or detect_file_type(path.name))
            .file_name(path.name)
        )
        if duration_ms:
            body = body.duration(duration_ms)
        with path.open("rb") as file:
            request = CreateFileRequest.builder().request_body(body.file(file).build()).build()
            response = await self._client.im.v1.file.acreate(request)
        if response.success() and response.data and response.data.file_key:
            logger.info(f"[FeishuClient] File uploaded: {path.name}, key={response.data.file_key}")
            return response.data.file_key
        logger.error(f"[FeishuClient] File upload failed: {path.name}, {_error_of(response)}")
        return None

    async def send_media(self, chat_id: str, media_path: str, caption: str = "") -> SendResult:
        """Send a local path or http(s) URL as an image, audio or file message."""
        if media_path.startswith(("http://", "https://")):
            try:
                path = await fetch_remote_media(media_path)
            except httpx.HTTPError as e:
                logger.error(f"[FeishuClient] Fetch {media_path} failed: {e}")
                return SendResult.failure(f"Failed to fetch media: {e}")
        else:
            path = Path(media_path)

        if not path.is_file():
            return SendResult.failure(f"File not found: {media_path}")

        if caption.strip():
            caption_result = await self.send_text(chat_id, caption)
            if not caption_result.ok:
                logger.warning(f"[FeishuClient] Caption send failed: {caption_result.error}")

        try:
            if is_image_file(path.name):
                image_key = await self.upload_image(path)
                if not image_key:
                    return SendResult.failure(f"Image upload failed: {path.name}")
                return await self._create(chat_id, "image", json.dumps({"image_key": image_key}))

            if is_audio_file(path.name):
                result = await self._send_audio(chat_id, path)
                if result is not None:
                    return result

            file_key = await self.upload_file(path)
            if not file_key:
                return SendResult.failure(f"File upload failed: {path.name}")
            return await self._create(chat_id, "file", json.dumps({"file_key": file_key}))
        except OSError as e:
            logger.error(f"[FeishuClient] Send media {path} failed: {e}")
            return SendResult.failure(str(e))
        except Exception as e:
            logger.error(f"[FeishuClient] Send media {path} failed: {e}", exc_info=True)
            return SendResult.failure(str(e))

    async def _send_audio(self, chat_id: str, path: Path) -> SendResult | None:
        """Send as a voice message; None means fall back to a plain file."""
        try:
            converted = await convert_to_opus(path)
        except MediaConversionError as e:
            logger.warning(f"[FeishuClient] Opus conversion failed, sending as file: {e}")
            return None
        try:
            file_key = await self.upload_file(converted.path, "opus", converted.duration_ms)
        finally:
            converted.path.unlink(missing_ok=True)
        if not file_key:
            return SendResult.failure(f"Audio upload failed: {path.name}")
        return await self._create(chat_id, "audio", json.dumps({"file_key": file_key}))

    async def download_resource(
        self, message_id: str, file_key: str, resource_type: str, file_name: str | None = None
    ) -> DownloadedResource:
        return await self._downloader.download_resource(
            message_id, file_key, resource_type, file_name
        )

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    async def get_bot_info(self) -> BotIdentity | None:
        request = (
            lark.BaseRequest.builder()
            .http_method(lark.HttpMethod.GET)
            .uri("/open-apis/bot/v3/info")
            .token_types({lark.AccessTokenType.TENANT})
            .build()
        )
        try:
            response = await self._client.arequest(request)
            data = json.loads(response.raw.content)
        except Exception as e:
            logger.error(f"[FeishuClient] [{self.account_id}] Bot info request failed: {e}")
            return None

        bot = data.get("bot") or {}
        if data.get("code") != 0 or not bot.get("open_id"):
            logger.error(
                f"[FeishuClient] [{self.account_id}] Bot info error: "
                f"code={data.get('code')}, msg={data.get('msg')}"
            )
            return None
        return BotIdentity(
            platform_id=bot["open_id"],
            display_name=bot.get("app_name") or bot.get("bot_name") or self.account_id,
            avatar_url=bot.get("avatar_url") or "",
        )

    async def probe(self) -> dict[str, Any]:
        """Check credentials and report the bot identity."""
        if not self._account.configured:
            return {"ok": False, "error": "missing credentials (app_id, app_secret)"}
        try:
            await self._downloader.fetch_tenant_access_token(self._probe_timeout_seconds)
        except FeishuResourceDownloadError as e:
            return {"ok": False, "app_id": self._account.app_id, "error": str(e)}

        identity = await self.get_bot_info()
        return {
            "ok": True,
            "app_id": self._account.app_id,
            "bot_name": identity.display_name if identity else None,
            "bot_open_id": identity.platform_id if identity else None,
        }
