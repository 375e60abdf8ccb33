"""Feishu webhook handler for receiving events via HTTP."""

import hashlib
import inspect
import json
import logging
from collections.abc import Callable
from typing import Any

from fastapi import HTTPException, Request
from lark_oapi.core.utils import AESCipher

logger = logging.getLogger(__name__)

EVENT_MESSAGE_RECEIVE = "im.message.receive_v1"
EVENT_CARD_ACTION = "card.action.trigger"


class FeishuWebhookHandler:
    """Verifies, decrypts and routes webhook callbacks of one account."""

    def __init__(
        self, verification_token: str | None = None, encrypt_key: str | None = None
    ) -> None:
        self._verification_token = verification_token
        self._encrypt_key = encrypt_key
        self._handlers: dict[str, Callable[[dict[str, Any]], Any]] = {}

    def register_handler(self, event_type: str, handler: Callable[[dict[str, Any]], Any]) -> None:
        """Register a handler for a specific event type.

        Args:
            event_type: Event type (e.g., "im.message.receive_v1")
            handler: Called with the ``event`` object; may return an awaitable
        """
        self._handlers[event_type] = handler
        logger.debug(f"[FeishuWebhook] Registered handler for event: {event_type}")

    async def handle_request(self, request: Request) -> dict[str, Any]:
        body = await request.body()
        signature = request.headers.get("X-Lark-Signature")
        if signature and not self.verify_signature(
            request.headers.get("X-Lark-Request-Timestamp", ""),
            request.headers.get("X-Lark-Request-Nonce", ""),
            body.decode("utf-8", errors="ignore"),
            signature,
        ):
            logger.warning("[FeishuWebhook] Signature mismatch")
            raise HTTPException(status_code=401, detail="Invalid signature")
        return await self.handle_body(body)

    async def handle_body(self, body: bytes) -> dict[str, Any]:
        """Process a raw callback body.

        Handler errors are logged and still acknowledged with ``{"code": 0}``
        so the platform does not redeliver.
        """
        data = self._decode(body)

        if data.get("type") == "url_verification":
            self._check_token(data.get("token"))
            return self._handle_verification(data)

        header = data.get("header") or {}
        self._check_token(header.get("token") or data.get("token"))

        event_type = header.get("event_type") or data.get("type")
        if not event_type:
            logger.warning("[FeishuWebhook] No event type in webhook data")
            return {"code": 0}

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug(f"[FeishuWebhook] No handler for event type: {event_type}")
            return {"code": 0}

        try:
            result = handler(data.get("event") or {})
            # Scheduled tasks keep running after the response is sent
            if inspect.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"[FeishuWebhook] Error handling event {event_type}: {e}", exc_info=True)
        return {"code": 0}

    def _decode(self, body: bytes) -> dict[str, Any]:
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            logger.error(f"[FeishuWebhook] Invalid JSON in webhook request: {e}")
            raise HTTPException(status_code=400, detail="Invalid JSON") from e

        if "encrypt" not in data:
            return data
        if not self._encrypt_key:
            logger.warning("[FeishuWebhook] Encrypted payload but no encrypt_key configured")
            raise HTTPException(status_code=400, detail="Encrypted payload not supported")
        try:
            return json.loads(AESCipher(self._encrypt_key).decrypt_str(data["encrypt"]))
        except (ValueError, UnicodeDecodeError) as e:
            logger.error(f"[FeishuWebhook] Failed to decrypt payload: {e}")
            raise HTTPException(status_code=400, detail="Decryption failed") from e

    def _check_token(self, token: str | None) -> None:
        if self._verification_token and token != self._verification_token:
            logger.warning("[FeishuWebhook] Verification token mismatch")
            raise HTTPException(status_code=401, detail="Invalid token")

    def _handle_verification(self, data: dict[str, Any]) -> dict[str, Any]:
        """Echo the challenge sent when the webhook URL is configured."""
        challenge = data.get("challenge")
        if not challenge:
            raise HTTPException(status_code=400, detail="No challenge in request")
        logger.info("[FeishuWebhook] Received URL verification challenge")
        return {"challenge": challenge}

    def verify_signature(self, timestamp: str, nonce: str, body: str, signature: str) -> bool:
        """Check ``sha256(timestamp + nonce + encrypt_key + body)``."""
        if not self._encrypt_key:
            return True

        sign_str = f"{timestamp}{nonce}{self._encrypt_key}{body}"
        expected = hashlib.sha256(sign_str.encode()).hexdigest()
        return signature == expected
