"""Feishu inbound gateway: long connection or webhook, one per account.

The lark_oapi WebSocket client drives its own event loop with
``run_until_complete``, so it runs in a dedicated thread. Received events are
converted to plain dicts in that thread and handed to the application loop
with ``call_soon_threadsafe``; all pipeline state lives on the application
loop only.
"""

import asyncio
import json
import logging
import threading
import time
from typing import Any

import lark_oapi as lark
from lark_oapi.event.callback.model.p2_card_action_trigger import P2CardActionTriggerResponse
from lark_oapi.event.dispatcher_handler import EventDispatcherHandlerBuilder

from feishu_channel.application.services.channels.card_action import CardActionHandler
from feishu_channel.application.services.channels.inbound_pipeline import InboundPipeline
from feishu_channel.configuration.config import FeishuAccountConfig
from feishu_channel.infrastructure.adapters.secondary.channels.feishu.message_parser import (
    build_inbound_event,
)
from feishu_channel.infrastructure.adapters.secondary.channels.feishu.webhook import (
    EVENT_CARD_ACTION,
    EVENT_MESSAGE_RECEIVE,
    FeishuWebhookHandler,
)

logger = logging.getLogger(__name__)


def _to_dict(sdk_object: Any) -> dict[str, Any]:
    return json.loads(lark.JSON.marshal(sdk_object) or "{}")


class FeishuGateway:
    """Receives events for one account and feeds them to the pipeline."""

    _WS_STARTUP_TIMEOUT_SECONDS = 8.0
    _WS_STOP_TIMEOUT_SECONDS = 3.0

    def __init__(
        self,
        account: FeishuAccountConfig,
        pipeline: InboundPipeline,
        card_handler: CardActionHandler,
    ) -> None:
        self._account = account
        self._pipeline = pipeline
        self._card_handler = card_handler
        self._main_loop: asyncio.AbstractEventLoop | None = None
        self._ws_client: Any | None = None
        self._ws_thread: threading.Thread | None = None
        self._ws_loop: asyncio.AbstractEventLoop | None = None
        self._ws_ready = threading.Event()
        self._ws_start_error: Exception | None = None
        self._ws_stop_requested = False
        self._webhook: FeishuWebhookHandler | None = None
        self._connected = False

    @property
    def account_id(self) -> str:
        return self._account.account_id

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def webhook(self) -> FeishuWebhookHandler | None:
        """The webhook handler, when the account runs in webhook mode."""
        return self._webhook

    async def start(self) -> None:
        if self._connected:
            logger.info(f"[FeishuGateway] [{self.account_id}] Already connected")
            return
        if not self._account.configured:
            raise ValueError(f"Feishu account {self.account_id}: app_id and app_secret are required")

        self._main_loop = asyncio.get_running_loop()
        if self._account.use_webhook:
            self._start_webhook()
        else:
            await self._start_websocket()
        self._connected = True
        mode = "webhook" if self._account.use_webhook else "websocket"
        logger.info(f"[FeishuGateway] [{self.account_id}] Started in {mode} mode")

    # ------------------------------------------------------------------
    # Event intake (application loop)
    # ------------------------------------------------------------------

    def on_message_payload(self, payload: dict[str, Any]) -> None:
        """Hand a message event to the pipeline. Processing continues in the background."""
        event = build_inbound_event(self.account_id, payload)
        if event is None:
            return
        logger.info(
            f"[FeishuGateway] [{self.account_id}] Received message: "
            f"type={event.message_type}, id={event.event_id}, chat={event.chat_id}"
        )
        self._pipeline.handle_event(event)

    def on_card_payload(self, payload: dict[str, Any]) -> None:
        self._card_handler.handle(payload, self.account_id)

    # ------------------------------------------------------------------
    # Webhook mode
    # ------------------------------------------------------------------

    def _start_webhook(self) -> None:
        handler = FeishuWebhookHandler(
            verification_token=self._account.verification_token,
            encrypt_key=self._account.encrypt_key,
        )
        handler.register_handler(EVENT_MESSAGE_RECEIVE, self.on_message_payload)
        handler.register_handler(EVENT_CARD_ACTION, self.on_card_payload)
        self._webhook = handler

    # ------------------------------------------------------------------
    # WebSocket mode
    # ------------------------------------------------------------------

    def _build_event_handler(self) -> Any:
        return (
            EventDispatcherHandlerBuilder(
                encrypt_key=self._account.encrypt_key or "",
                verification_token=self._account.verification_token or "",
            )
            .register_p2_im_message_receive_v1(self._on_ws_message)
            .register_p2_im_message_message_read_v1(self._on_ws_ignored)
            .register_p2_im_chat_member_bot_added_v1(self._on_ws_ignored)
            .register_p2_im_chat_member_bot_deleted_v1(self._on_ws_ignored)
            .register_p2_card_action_trigger(self._on_ws_card_action)
            .build()
        )

    async def _start_websocket(self) -> None:
        if self._ws_thread and self._ws_thread.is_alive():
            raise RuntimeError("Feishu websocket thread is already running")

        self._ws_stop_requested = False
        self._ws_start_error = None
        self._ws_ready.clear()

        self._ws_thread = threading.Thread(
            target=self._run_websocket,
            kwargs={"event_handler": self._build_event_handler()},
            name=f"feishu-ws-{self.account_id}",
            daemon=True,
        )
        self._ws_thread.start()
        try:
            await self._wait_for_websocket_ready()
        except Exception:
            self._ws_stop_requested = True
            await self.stop()
            raise

    async def _wait_for_websocket_ready(self) -> None:
        deadline = time.monotonic() + self._WS_STARTUP_TIMEOUT_SECONDS
        while time.monotonic() < deadline:
            if self._ws_start_error:
                raise RuntimeError(
                    f"Feishu websocket startup failed: {self._ws_start_error}"
                ) from self._ws_start_error
            if self._ws_thread and not self._ws_thread.is_alive():
                raise RuntimeError("Feishu websocket startup failed: thread exited")
            if self._ws_ready.is_set():
                return
            await asyncio.sleep(0.1)
        raise RuntimeError("Feishu websocket startup timeout")

    def _run_websocket(self, event_handler: Any) -> None:
        ws_loop: asyncio.AbstractEventLoop | None = None
        try:
            from lark_oapi.ws import Client as WSClient, client as ws_client_module

            ws_loop = asyncio.new_event_loop()
            asyncio.set_event_loop(ws_loop)
            # The SDK module keeps a global loop reference
            ws_client_module.loop = ws_loop
            self._ws_loop = ws_loop

            self._ws_client = WSClient(
                app_id=self._account.app_id,
                app_secret=self._account.app_secret,
                log_level=lark.LogLevel.INFO,
                event_handler=event_handler,
                domain=self._account.api_base_url,
            )
            try:
                ws_loop.run_until_complete(self._ws_client._connect())
            except Exception:
                ws_loop.run_until_complete(self._ws_client._disconnect())
                if getattr(self._ws_client, "_auto_reconnect", False):
                    ws_loop.run_until_complete(self._ws_client._reconnect())
                else:
                    raise

            self._ws_ready.set()
            ws_loop.create_task(self._ws_client._ping_loop())
            ws_loop.run_until_complete(ws_client_module._select())
        except Exception as e:
            self._ws_start_error = e
            if self._ws_stop_requested:
                logger.info(f"[FeishuGateway] [{self.account_id}] WebSocket thread stopped")
            else:
                logger.error(f"[FeishuGateway] [{self.account_id}] WebSocket error: {e}")
            self._connected = False
        finally:
            if ws_loop and not ws_loop.is_closed():
                ws_loop.close()
            self._ws_client = None
            self._ws_loop = None
            self._ws_ready.clear()

    def _hand_off(self, callback: Any, payload: dict[str, Any]) -> None:
        if self._main_loop is None or self._main_loop.is_closed():
            logger.warning(f"[FeishuGateway] [{self.account_id}] Event loop gone, dropping event")
            return
        self._main_loop.call_soon_threadsafe(callback, payload)

    def _on_ws_message(self, data: Any) -> None:
        try:
            self._hand_off(self.on_message_payload, _to_dict(data.event))
        except Exception as e:
            logger.error(
                f"[FeishuGateway] [{self.account_id}] Error receiving message: {e}", exc_info=True
            )

    def _on_ws_card_action(self, data: Any) -> P2CardActionTriggerResponse:
        """Answer at once; the agent dispatch runs on the application loop."""
        try:
            self._hand_off(self.on_card_payload, _to_dict(data.event))
        except Exception as e:
            logger.error(
                f"[FeishuGateway] [{self.account_id}] Error receiving card action: {e}",
                exc_info=True,
            )
        return P2CardActionTriggerResponse({})

    def _on_ws_ignored(self, data: Any) -> None:
        logger.debug(f"[FeishuGateway] [{self.account_id}] Ignored event {type(data).__name__}")

    async def stop(self) -> None:
        self._connected = False
        self._ws_stop_requested = True

        if self._ws_client and self._ws_loop and self._ws_loop.is_running():
            try:
                future = asyncio.run_coroutine_threadsafe(
                    self._ws_client._disconnect(), self._ws_loop
                )
                await asyncio.wait_for(
                    asyncio.wrap_future(future), timeout=self._WS_STOP_TIMEOUT_SECONDS
                )
            except Exception as e:
                logger.warning(f"[FeishuGateway] [{self.account_id}] WebSocket disconnect failed: {e}")
            if self._ws_loop is not None:
                self._ws_loop.call_soon_threadsafe(self._ws_loop.stop)

        if self._ws_thread and self._ws_thread.is_alive():
            await asyncio.to_thread(self._ws_thread.join, 5)
            if self._ws_thread.is_alive():
                logger.error(f"[FeishuGateway] [{self.account_id}] WebSocket thread did not stop")

        self._ws_thread = None
        self._webhook = None
        logger.info(f"[FeishuGateway] [{self.account_id}] Stopped")
