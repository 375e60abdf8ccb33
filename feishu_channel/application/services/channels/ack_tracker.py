"""Receipt acknowledgement via emoji reactions.

A reaction is placed on an inbound message as soon as it is accepted and
removed once the reply has been delivered. A safety timer forgets pending
records so a reply path that fails silently cannot leak them.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from feishu_channel.domain.ports.services.channel_send_port import ChannelSendPort

logger = logging.getLogger(__name__)

ACK_EMOJI = "Salute"
ACK_TIMEOUT_SECONDS = 5 * 60


@dataclass
class PendingAcknowledgement:
    account_id: str
    reaction_id: str
    expiry_handle: asyncio.TimerHandle | None = None


class AckTracker:
    """Tracks receipt reactions keyed by inbound event id.

    Failures to add or remove a reaction are logged and never raised, so the
    reply path is never blocked by this side channel.
    """

    def __init__(
        self,
        sender_for: Callable[[str], ChannelSendPort | None],
        emoji: str = ACK_EMOJI,
        timeout_seconds: float = ACK_TIMEOUT_SECONDS,
        enabled_for: Callable[[str], bool] | None = None,
    ) -> None:
        self._sender_for = sender_for
        self._emoji = emoji
        self._timeout_seconds = timeout_seconds
        self._enabled_for = enabled_for or (lambda _account_id: True)
        self._pending: dict[str, PendingAcknowledgement] = {}

    async def mark(self, event_id: str, account_id: str) -> str | None:
        """Place the receipt reaction. Returns the reaction id, or None."""
        if not self._enabled_for(account_id):
            return None
        sender = self._sender_for(account_id)
        if sender is None:
            return None

        try:
            result = await sender.add_reaction(event_id, self._emoji)
        except Exception as e:
            logger.error(f"[AckTracker] [{account_id}] Auto-acknowledge failed for {event_id}: {e}")
            return None

        if not result.ok or not result.reaction_id:
            logger.warning(
                f"[AckTracker] [{account_id}] Auto-acknowledge rejected for {event_id}: "
                f"{result.error}"
            )
            return None

        pending = PendingAcknowledgement(account_id=account_id, reaction_id=result.reaction_id)
        loop = asyncio.get_running_loop()
        pending.expiry_handle = loop.call_later(self._timeout_seconds, self._expire, event_id)
        self._pending[event_id] = pending
        return result.reaction_id

    async def clear(self, event_id: str) -> None:
        """Remove the receipt reaction of a completed event, if one is pending."""
        pending = self._pending.pop(event_id, None)
        if pending is None:
            return
        if pending.expiry_handle is not None:
            pending.expiry_handle.cancel()

        sender = self._sender_for(pending.account_id)
        if sender is None:
            return
        try:
            result = await sender.remove_reaction(event_id, pending.reaction_id)
            if not result.ok:
                logger.warning(
                    f"[AckTracker] [{pending.account_id}] Remove reaction failed for "
                    f"{event_id}: {result.error}"
                )
        except Exception as e:
            logger.error(
                f"[AckTracker] [{pending.account_id}] Remove reaction failed for {event_id}: {e}"
            )

    def get(self, event_id: str) -> PendingAcknowledgement | None:
        return self._pending.get(event_id)

    def __len__(self) -> int:
        return len(self._pending)

    def _expire(self, event_id: str) -> None:
        if self._pending.pop(event_id, None) is not None:
            logger.debug(f"[AckTracker] Pending acknowledgement for {event_id} expired")
