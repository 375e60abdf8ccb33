"""Outbound operations requested by the agent runtime or the HTTP API.

Required parameters are validated before any platform call is made.
Platform failures are reported as SendResult rather than raised.
"""

import json
import logging
from collections.abc import Callable
from typing import Any

from feishu_channel.application.services.channels.post_format import chunk_text
from feishu_channel.domain.model.channels.message import SendResult
from feishu_channel.domain.ports.services.channel_send_port import ChannelSendPort
from feishu_channel.domain.shared_kernel import DomainException

logger = logging.getLogger(__name__)

TEXT_CHUNK_LIMIT = 4000


class ActionValidationError(DomainException):
    """Raised when a requested action is missing a required parameter."""


def _require(params: dict[str, Any], key: str, action: str) -> str:
    value = params.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ActionValidationError(f"{action}: '{key}' is required")
    return str(value)


class MessageActionService:
    """Message actions (react, delete, edit) and outbound sends for any account."""

    SUPPORTED_ACTIONS = ("react", "delete", "edit")

    def __init__(
        self,
        sender_for: Callable[[str], ChannelSendPort | None],
        text_chunk_limit: int = TEXT_CHUNK_LIMIT,
    ) -> None:
        self._sender_for = sender_for
        self._text_chunk_limit = text_chunk_limit

    def _sender(self, account_id: str) -> ChannelSendPort:
        sender = self._sender_for(account_id)
        if sender is None:
            raise ActionValidationError(f'Feishu account "{account_id}" not found')
        return sender

    async def handle(self, account_id: str, action: str, params: dict[str, Any]) -> SendResult:
        """Run a named action."""
        if action == "react":
            return await self.react(account_id, params)
        if action == "delete":
            return await self.delete(account_id, params)
        if action == "edit":
            return await self.edit(account_id, params)
        raise ActionValidationError(
            f"Unsupported action '{action}', expected one of {', '.join(self.SUPPORTED_ACTIONS)}"
        )

    async def react(self, account_id: str, params: dict[str, Any]) -> SendResult:
        message_id = _require(params, "message_id", "react")
        if params.get("remove"):
            reaction_id = _require(params, "reaction_id", "react")
            return await self._sender(account_id).remove_reaction(message_id, reaction_id)
        emoji = _require(params, "emoji", "react")
        return await self._sender(account_id).add_reaction(message_id, emoji)

    async def delete(self, account_id: str, params: dict[str, Any]) -> SendResult:
        message_id = _require(params, "message_id", "delete")
        return await self._sender(account_id).delete_message(message_id)

    async def edit(self, account_id: str, params: dict[str, Any]) -> SendResult:
        message_id = _require(params, "message_id", "edit")
        content = params.get("content")
        if not content:
            raise ActionValidationError("edit: 'content' is required")
        msg_type = params.get("msg_type") or "text"
        if isinstance(content, str) and msg_type == "text":
            body = json.dumps({"text": content}, ensure_ascii=False)
        elif isinstance(content, str):
            body = content
        else:
            body = json.dumps(content, ensure_ascii=False)
        return await self._sender(account_id).update_message(message_id, msg_type, body)

    async def send_text(
        self, account_id: str, to: str, text: str, reply_to_id: str | None = None
    ) -> SendResult:
        """Send text in chunks of at most the configured limit.

        The first chunk is threaded to ``reply_to_id`` when given, falling
        back to a plain send if the reply is rejected.
        """
        if not to:
            raise ActionValidationError("send_text: 'to' is required")
        sender = self._sender(account_id)
        result = SendResult.failure("empty text")
        for index, chunk in enumerate(chunk_text(text, self._text_chunk_limit)):
            if index == 0 and reply_to_id:
                result = await sender.reply_message(
                    reply_to_id, "text", json.dumps({"text": chunk}, ensure_ascii=False)
                )
                if result.ok:
                    continue
                logger.info(f"[MessageActions] Reply failed ({result.error}), fallback to send")
            result = await sender.send_text(to, chunk)
            if not result.ok:
                return result
        return result

    async def send_media(
        self, account_id: str, to: str, media_url: str | None, caption: str = ""
    ) -> SendResult:
        if not to:
            raise ActionValidationError("send_media: 'to' is required")
        if not media_url:
            raise ActionValidationError("send_media: No mediaUrl provided")
        return await self._sender(account_id).send_media(to, media_url, caption)

    async def send_interactive(
        self, account_id: str, to: str, card: dict[str, Any] | None
    ) -> SendResult:
        if not to:
            raise ActionValidationError("send_interactive: 'to' is required")
        if not card:
            raise ActionValidationError("send_interactive: No card payload provided")
        return await self._sender(account_id).send_interactive(to, card)
