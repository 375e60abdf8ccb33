"""Inbound message pipeline.

Platform event → dedup/expiry filter → mention resolution → (accepted and a
reply is expected) enrichment → receipt acknowledgement → agent dispatch →
reply delivery → acknowledgement removal.

Filtering and mention resolution run synchronously inside ``handle_event``
before any await, so two deliveries of the same event can never both pass.
Everything after that runs in a task per event.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from feishu_channel.application.services.channels.ack_tracker import AckTracker
from feishu_channel.application.services.channels.agent_route import AgentRouter
from feishu_channel.application.services.channels.bot_registry import BotRegistry
from feishu_channel.application.services.channels.dedup_filter import DedupFilter
from feishu_channel.application.services.channels.forward_coordinator import (
    ForwardCoordinator,
)
from feishu_channel.application.services.channels.mention_resolver import MentionResolver
from feishu_channel.application.services.channels.reply_buffer import (
    FLUSH_DELAY_MS,
    MAX_BUFFER_MS,
    DirectReplyDeliverer,
    GroupReplyDeliverer,
    PlainReplyDeliverer,
    ReplyDeliverer,
    ReplySender,
)
from feishu_channel.domain.model.channels.bot import ForwardTraversal, MentionDecision
from feishu_channel.domain.model.channels.message import (
    ChatKind,
    EnrichedMessage,
    InboundEvent,
    MessageContext,
)
from feishu_channel.domain.ports.services.agent_dispatch_port import AgentDispatchPort
from feishu_channel.domain.ports.services.channel_send_port import ChannelSendPort

logger = logging.getLogger(__name__)

Enricher = Callable[[InboundEvent, bool], Awaitable[EnrichedMessage | None]]
SilentObserver = Callable[[InboundEvent], Awaitable[None]]


class InboundPipeline:
    """Gate, enrich and dispatch inbound events for all local bot accounts."""

    def __init__(
        self,
        *,
        registry: BotRegistry,
        dedup: DedupFilter,
        resolver: MentionResolver,
        ack: AckTracker,
        coordinator: ForwardCoordinator,
        router: AgentRouter,
        dispatcher: AgentDispatchPort,
        sender_for: Callable[[str], ChannelSendPort | None],
        enricher_for: Callable[[str], Enricher | None],
        flush_delay_ms: int = FLUSH_DELAY_MS,
        max_buffer_ms: int = MAX_BUFFER_MS,
        silent_observer: SilentObserver | None = None,
    ) -> None:
        self._registry = registry
        self._dedup = dedup
        self._resolver = resolver
        self._ack = ack
        self._coordinator = coordinator
        self._router = router
        self._dispatcher = dispatcher
        self._sender_for = sender_for
        self._enricher_for = enricher_for
        self._flush_delay_ms = flush_delay_ms
        self._max_buffer_ms = max_buffer_ms
        self._silent_observer = silent_observer
        self._chat_kinds: dict[str, ChatKind] = {}
        self._tasks: set[asyncio.Task] = set()

    def chat_kind_of(self, chat_id: str) -> ChatKind | None:
        """Chat kind learned from inbound events, used by card callbacks."""
        return self._chat_kinds.get(chat_id)

    def handle_event(self, event: InboundEvent) -> asyncio.Task | None:
        """Filter and resolve synchronously, then schedule processing.

        Returns the processing task, or None if the event was dropped.
        """
        if not self._dedup.should_process(event.account_id, event.event_id, event.created_at_ms):
            return None

        if event.chat_id:
            self._chat_kinds[event.chat_id] = event.chat_kind

        bot = self._registry.get_by_account_id(event.account_id)
        decision = self._resolver.resolve_mention(event, bot.platform_id if bot else None)
        if not decision.accept:
            return None

        task = asyncio.get_running_loop().create_task(self._process(event, decision))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight event tasks to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _process(self, event: InboundEvent, decision: MentionDecision) -> None:
        try:
            if not decision.reply_expected:
                logger.info(
                    f"[InboundPipeline] [{event.account_id}] Group message without mention, "
                    f"not replying: {event.event_id}"
                )
                if self._silent_observer is not None:
                    await self._silent_observer(event)
                return

            enricher = self._enricher_for(event.account_id)
            if enricher is None:
                logger.warning(f"[InboundPipeline] No enricher for account {event.account_id}")
                return
            message = await enricher(event, decision.was_mentioned)
            if message is None or not message.text:
                logger.debug(f"[InboundPipeline] Nothing to dispatch for {event.event_id}")
                return

            await self._ack.mark(event.event_id, event.account_id)
            await self.dispatch_message(message)
            await self._ack.clear(event.event_id)
        except Exception as e:
            logger.error(
                f"[InboundPipeline] [{event.account_id}] Error handling message "
                f"{event.event_id}: {e}",
                exc_info=True,
            )

    async def dispatch_message(self, message: EnrichedMessage, *, plain: bool = False) -> None:
        """Dispatch an enriched message to the agent and deliver its reply.

        Args:
            message: The message to dispatch
            plain: Deliver fragments unbuffered and without mention forwarding
                (card callbacks)
        """
        sender = self._sender_for(message.account_id)
        if sender is None:
            logger.warning(f"[InboundPipeline] No sender for account {message.account_id}")
            return

        is_direct = message.chat_kind == ChatKind.DIRECT
        route = self._router.resolve(
            message.account_id,
            message.chat_kind,
            message.sender_id if is_direct else message.chat_id,
        )
        logger.info(
            f"[InboundPipeline] [{message.account_id}] Route resolved: agent={route.agent_id}, "
            f"session={route.session_key}, matched_by={route.matched_by}"
        )

        context = MessageContext(
            sender_id=message.sender_id,
            body=message.text,
            account_id=message.account_id,
            session_key=route.session_key,
            agent_id=route.agent_id,
            chat_id=message.chat_id,
            chat_kind=message.chat_kind,
            was_mentioned=message.was_mentioned,
            message_id=None if plain else message.message_id,
            media_path=message.media_path,
            media_type="audio/ogg" if message.is_voice else message.media_type,
            command_authorized=not plain,
            original_message_type=message.original_message_type,
        )

        deliverer = self.create_deliverer(message, sender, plain=plain)
        try:
            await self._dispatcher.dispatch(
                context, deliverer, disable_block_streaming=message.is_voice
            )
        finally:
            await deliverer.flush()

    def create_deliverer(
        self, message: EnrichedMessage, sender: ChannelSendPort, *, plain: bool = False
    ) -> ReplyDeliverer:
        reply_sender = ReplySender(sender, message.chat_id, message.account_id)
        if plain:
            return PlainReplyDeliverer(reply_sender)
        if message.chat_kind == ChatKind.GROUP:
            return GroupReplyDeliverer(
                reply_sender=reply_sender,
                resolver=self._resolver,
                coordinator=self._coordinator,
                account_id=message.account_id,
                chat_id=message.chat_id,
                traversal=ForwardTraversal(),
            )
        return DirectReplyDeliverer(
            reply_sender,
            flush_delay_ms=self._flush_delay_ms,
            max_buffer_ms=self._max_buffer_ms,
        )
