"""Delivery of streamed agent reply fragments to a chat.

Direct chats coalesce ``block`` fragments into as few sends as possible,
bounded by a quiescence delay and a hard latency ceiling. Group chats send
every fragment immediately, because each fragment may mention other bots
and trigger forwarding.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from feishu_channel.application.services.channels.mention_resolver import MentionResolver
from feishu_channel.application.services.channels.post_format import (
    has_code_block,
    markdown_to_post,
    wrap_post,
)
from feishu_channel.domain.model.channels.bot import ForwardEdge, ForwardTraversal
from feishu_channel.domain.model.channels.message import ReplyFragment, SendResult
from feishu_channel.domain.ports.services.channel_send_port import ChannelSendPort

if TYPE_CHECKING:
    from feishu_channel.application.services.channels.forward_coordinator import (
        ForwardCoordinator,
    )

logger = logging.getLogger(__name__)

FLUSH_DELAY_MS = 2000
MAX_BUFFER_MS = 8000


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class ReplySender:
    """Sends reply content of one dispatch into one chat.

    Only the first send of the dispatch is threaded as a reply to the
    inbound message; later sends are plain, so a multi-part answer does not
    render as a chain of quotes.
    """

    def __init__(self, sender: ChannelSendPort, chat_id: str, account_id: str) -> None:
        self._sender = sender
        self._chat_id = chat_id
        self._account_id = account_id
        self._replied = False

    @property
    def replied(self) -> bool:
        return self._replied

    async def deliver(
        self, text: str, media_urls: list[str], reply_to_id: str | None = None
    ) -> None:
        anchor = None if self._replied else reply_to_id

        if media_urls:
            # Text first (threaded), then one send per media item
            if text.strip():
                await self._send_text(text, anchor)
                self._replied = True
            for url in media_urls:
                result = await self._sender.send_media(self._chat_id, url)
                if not result.ok:
                    logger.error(
                        f"[ReplySender] [{self._account_id}] sendMedia failed: {result.error}"
                    )
            return

        if not text:
            return

        if has_code_block(text):
            result = await self._send_post(markdown_to_post(text), anchor)
            if not result.ok:
                logger.warning(
                    f"[ReplySender] [{self._account_id}] Rich send failed, "
                    f"falling back to text: {result.error}"
                )
                await self._send_text(text, anchor)
        else:
            await self._send_text(text, anchor)
        self._replied = True

    async def _send_text(self, text: str, anchor: str | None) -> SendResult:
        if anchor:
            result = await self._sender.reply_message(anchor, "text", json.dumps({"text": text}))
            if result.ok:
                return result
            logger.info(
                f"[ReplySender] [{self._account_id}] Reply failed ({result.error}), "
                "fallback to send"
            )
        result = await self._sender.send_text(self._chat_id, text)
        if not result.ok:
            logger.error(f"[ReplySender] [{self._account_id}] Send text failed: {result.error}")
        return result

    async def _send_post(self, content: list[list[dict]], anchor: str | None) -> SendResult:
        if anchor:
            result = await self._sender.reply_message(
                anchor, "post", json.dumps(wrap_post(content), ensure_ascii=False)
            )
            if result.ok:
                return result
            logger.info(
                f"[ReplySender] [{self._account_id}] Reply post failed ({result.error}), "
                "fallback to send"
            )
        return await self._sender.send_post(self._chat_id, content)


class ReplyDeliverer(ABC):
    """Deliver callback handed to the agent runtime for one dispatch."""

    async def __call__(self, fragment: ReplyFragment) -> None:
        await self.accept(fragment)

    @abstractmethod
    async def accept(self, fragment: ReplyFragment) -> None:
        """Handle one reply fragment."""

    async def flush(self) -> None:
        """Send anything still pending. Called once the dispatch has finished."""


class PlainReplyDeliverer(ReplyDeliverer):
    """Sends each fragment as soon as it arrives."""

    def __init__(self, reply_sender: ReplySender) -> None:
        self._reply_sender = reply_sender

    async def accept(self, fragment: ReplyFragment) -> None:
        await self._reply_sender.deliver(
            fragment.text or "", list(fragment.media_urls), fragment.reply_to_id
        )


class GroupReplyDeliverer(PlainReplyDeliverer):
    """Unbuffered group delivery with inter-bot mention forwarding.

    Each fragment is scanned for ``@Name`` mentions of other local bots; the
    mentions are rewritten into native markup for the send, and one forward
    per mentioned bot is submitted to the coordinator. An edge is submitted
    at most once per deliverer, so repeated mentions across fragments of the
    same reply do not forward twice.
    """

    def __init__(
        self,
        reply_sender: ReplySender,
        resolver: MentionResolver,
        coordinator: "ForwardCoordinator",
        account_id: str,
        chat_id: str,
        traversal: ForwardTraversal | None = None,
    ) -> None:
        super().__init__(reply_sender)
        self._resolver = resolver
        self._coordinator = coordinator
        self._account_id = account_id
        self._chat_id = chat_id
        self._traversal = traversal or ForwardTraversal()
        self._submitted: set[ForwardEdge] = set()

    @property
    def traversal(self) -> ForwardTraversal:
        return self._traversal

    async def accept(self, fragment: ReplyFragment) -> None:
        text = fragment.text or ""
        mentioned = self._resolver.detect_mentions(text, self._account_id)
        send_text = self._resolver.replace_with_mentions(text, mentioned) if mentioned else text

        await self._reply_sender.deliver(send_text, list(fragment.media_urls), fragment.reply_to_id)

        for target in mentioned:
            edge = ForwardEdge(self._account_id, target.account_id)
            if edge in self._submitted:
                logger.info(f"[ReplyBuffer] Skipping repeated forward {edge} in this dispatch")
                continue
            self._submitted.add(edge)
            self._coordinator.submit(
                target_bot=target,
                chat_id=self._chat_id,
                text=text,
                sender_account_id=self._account_id,
                traversal=self._traversal,
            )


@dataclass
class _Drained:
    text: str
    media: list[str]
    reply_to_id: str | None


class DirectReplyDeliverer(ReplyDeliverer):
    """Coalesces ``block`` fragments of a direct-chat reply.

    Buffer state (text parts, media, reply anchor, opened-at timestamp and
    the flush timer) is drained in a single synchronous step that also bumps
    a generation counter; a timer armed for an earlier generation is a no-op,
    so only one flush path wins for any buffered content. Drained payloads
    are sent strictly in order.
    """

    def __init__(
        self,
        reply_sender: ReplySender,
        flush_delay_ms: int = FLUSH_DELAY_MS,
        max_buffer_ms: int = MAX_BUFFER_MS,
        clock: Callable[[], int] = _monotonic_ms,
    ) -> None:
        self._reply_sender = reply_sender
        self._flush_delay_ms = flush_delay_ms
        self._max_buffer_ms = max_buffer_ms
        self._clock = clock

        self._text_parts: list[str] = []
        self._media: list[str] = []
        self._reply_to_id: str | None = None
        self._opened_at_ms: int | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._generation = 0

        self._ready: deque[_Drained] = deque()
        self._send_lock = asyncio.Lock()
        self._timer_tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return bool(self._text_parts or self._media)

    @property
    def opened_at_ms(self) -> int | None:
        return self._opened_at_ms

    @property
    def reply_to_id(self) -> str | None:
        return self._reply_to_id

    async def accept(self, fragment: ReplyFragment) -> None:
        if not fragment.is_block:
            # final/tool content is never merged with earlier blocks
            await self.flush()
            text = (fragment.text or "").strip()
            if text or fragment.media_urls:
                await self._send_in_order(
                    _Drained(text, list(fragment.media_urls), fragment.reply_to_id)
                )
            return

        text = fragment.text or ""
        if not text.strip() and not fragment.media_urls:
            return

        if self._opened_at_ms is None:
            self._opened_at_ms = self._clock()
        if self._reply_to_id is None and fragment.reply_to_id:
            self._reply_to_id = fragment.reply_to_id
        if text.strip():
            self._text_parts.append(text)
        self._media.extend(fragment.media_urls)

        if self._clock() - self._opened_at_ms >= self._max_buffer_ms:
            await self.flush()
            return

        self._restart_timer()

    async def flush(self) -> None:
        self._drain()
        await self._send_in_order()

    def _restart_timer(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(
            self._flush_delay_ms / 1000, self._on_timer, self._generation
        )

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._timer = None
        if not self._drain():
            return
        task = asyncio.get_running_loop().create_task(self._send_from_timer())
        self._timer_tasks.add(task)
        task.add_done_callback(self._timer_tasks.discard)

    async def _send_from_timer(self) -> None:
        try:
            await self._send_in_order()
        except Exception as e:
            logger.error(f"[ReplyBuffer] Timed flush failed: {e}", exc_info=True)

    def _drain(self) -> bool:
        """Move buffered content to the send queue. Returns True if anything was queued."""
        self._cancel_timer()
        self._generation += 1
        text = _join_parts(self._text_parts)
        media = list(self._media)
        reply_to_id = self._reply_to_id

        self._text_parts = []
        self._media = []
        self._reply_to_id = None
        self._opened_at_ms = None

        if not text and not media:
            return False
        self._ready.append(_Drained(text, media, reply_to_id))
        return True

    async def _send_in_order(self, extra: _Drained | None = None) -> None:
        async with self._send_lock:
            while self._ready:
                item = self._ready.popleft()
                await self._reply_sender.deliver(item.text, item.media, item.reply_to_id)
            if extra is not None:
                await self._reply_sender.deliver(extra.text, extra.media, extra.reply_to_id)


def _join_parts(parts: list[str]) -> str:
    """Join buffered block texts.

    Parts are separated by a newline unless the boundary already carries
    whitespace, in which case they are concatenated verbatim.
    """
    joined = ""
    for part in parts:
        if joined and not joined[-1].isspace() and not part[0].isspace():
            joined += "\n"
        joined += part
    return joined.strip()
