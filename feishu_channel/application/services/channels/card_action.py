"""Interactive card button callbacks.

The platform expects a card callback to be answered within about three
seconds, so the handler only parses the payload and schedules the agent
dispatch in the background; the caller answers immediately.

Both payload shapes are accepted:
- event-style: ``{operator: {open_id}, action: {...}, context: {open_chat_id, open_message_id}}``
- legacy HTTP: ``{open_id, open_chat_id, open_message_id, action: {...}}``

Cards embed ``_account_id`` in ``action.value`` to name the bot that sent
them; keys starting with an underscore are internal and hidden from the agent.
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from feishu_channel.application.services.channels.inbound_pipeline import InboundPipeline
from feishu_channel.configuration.config import DEFAULT_ACCOUNT_ID
from feishu_channel.domain.model.channels.message import ChatKind, EnrichedMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CardAction:
    """Parsed card callback."""

    open_id: str
    chat_id: str
    message_id: str
    tag: str
    value: dict[str, Any] = field(default_factory=dict)
    option: str = ""
    account_id: str | None = None


def parse_card_action(payload: dict[str, Any]) -> CardAction | None:
    """Parse either callback payload shape. Returns None when there is no action."""
    action = payload.get("action")
    if not isinstance(action, dict):
        return None

    operator = payload.get("operator") or {}
    context = payload.get("context") or {}
    value = dict(action.get("value") or {})
    account_id = value.get("_account_id")

    return CardAction(
        open_id=operator.get("open_id") or payload.get("open_id") or "",
        chat_id=context.get("open_chat_id") or payload.get("open_chat_id") or "",
        message_id=context.get("open_message_id") or payload.get("open_message_id") or "",
        tag=action.get("tag") or "unknown",
        value=value,
        option=action.get("option") or "",
        account_id=str(account_id) if account_id else None,
    )


def format_card_action_text(action: CardAction) -> str:
    """Render a card action as the message body handed to the agent."""
    parts = []
    for key, val in action.value.items():
        if key.startswith("_"):
            continue
        parts.append(f"{key}: {val if isinstance(val, str) else json.dumps(val, ensure_ascii=False)}")
    display = ", ".join(parts) if parts else (action.option or "(无附加数据)")
    return f"[卡片回调] {action.tag}: {display}"


class CardActionHandler:
    """Turns card callbacks into agent dispatches."""

    def __init__(
        self,
        pipeline: InboundPipeline,
        has_account: Callable[[str], bool],
    ) -> None:
        self._pipeline = pipeline
        self._has_account = has_account
        self._tasks: set[asyncio.Task] = set()

    def resolve_account_id(self, action: CardAction, fallback: str | None = None) -> str | None:
        for candidate in (action.account_id, fallback, DEFAULT_ACCOUNT_ID):
            if candidate and self._has_account(candidate):
                if action.account_id and candidate != action.account_id:
                    logger.warning(
                        f"[CardAction] Account {action.account_id} not found, "
                        f"falling back to {candidate}"
                    )
                return candidate
        return None

    def build_message(self, action: CardAction, account_id: str) -> EnrichedMessage:
        # Learned chat kinds win; unknown chats are treated as direct
        chat_kind = self._pipeline.chat_kind_of(action.chat_id) if action.chat_id else None
        return EnrichedMessage(
            message_id=f"card_{action.message_id}_{int(time.time() * 1000)}",
            account_id=account_id,
            chat_id=action.chat_id or action.open_id,
            chat_kind=chat_kind or ChatKind.DIRECT,
            sender_id=action.open_id,
            message_type="text",
            text=format_card_action_text(action),
            was_mentioned=True,
        )

    def handle(self, payload: dict[str, Any], account_id: str | None = None) -> asyncio.Task | None:
        """Schedule dispatch of a card callback. Never blocks on the agent."""
        action = parse_card_action(payload)
        if action is None:
            logger.info("[CardAction] No action in callback body, ignoring")
            return None

        resolved = self.resolve_account_id(action, account_id)
        if resolved is None:
            logger.error("[CardAction] No valid account found, dropping callback")
            return None

        logger.info(
            f"[CardAction] [{resolved}] Card callback: tag={action.tag}, chat={action.chat_id}, "
            f"user={action.open_id}, msgId={action.message_id}"
        )
        message = self.build_message(action, resolved)
        task = asyncio.get_running_loop().create_task(self._dispatch(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled callback dispatches to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _dispatch(self, message: EnrichedMessage) -> None:
        try:
            await self._pipeline.dispatch_message(message, plain=True)
        except Exception as e:
            logger.error(
                f"[CardAction] [{message.account_id}] Error handling card callback: {e}",
                exc_info=True,
            )
