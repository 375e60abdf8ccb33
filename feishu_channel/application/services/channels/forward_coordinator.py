"""Cycle-safe forwarding of bot-to-bot mentions in group chats.

When one local bot's group reply mentions another local bot, the mentioned
bot never receives a platform event for it (bots do not see each other's
messages). The coordinator synthesizes an inbound context for the target
and dispatches it, delivering the target's reply back into the same chat.

Forwards are submitted to a work queue rather than invoked recursively.
The queue consumer enforces both guards:
- the visited-edge set: each (sender, target) edge is used at most once per
  root dispatch;
- a hard depth ceiling as a safety net independent of edge tracking.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from feishu_channel.application.services.channels.agent_route import AgentRouter
from feishu_channel.application.services.channels.bot_registry import BotRegistry
from feishu_channel.application.services.channels.mention_resolver import MentionResolver
from feishu_channel.application.services.channels.reply_buffer import (
    GroupReplyDeliverer,
    ReplySender,
)
from feishu_channel.domain.model.channels.bot import (
    MAX_FORWARD_DEPTH,
    BotRegistryEntry,
    ForwardEdge,
    ForwardTraversal,
)
from feishu_channel.domain.model.channels.message import ChatKind, MessageContext
from feishu_channel.domain.ports.services.agent_dispatch_port import AgentDispatchPort
from feishu_channel.domain.ports.services.channel_send_port import ChannelSendPort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ForwardTask:
    """One pending forward of a mention to a target bot."""

    target_bot: BotRegistryEntry
    chat_id: str
    text: str
    sender_account_id: str
    traversal: ForwardTraversal

    @property
    def edge(self) -> ForwardEdge:
        return ForwardEdge(self.sender_account_id, self.target_bot.account_id)


class ForwardCoordinator:
    """Queue-driven forwarding with depth and visited-edge guards."""

    def __init__(
        self,
        registry: BotRegistry,
        resolver: MentionResolver,
        router: AgentRouter,
        dispatcher: AgentDispatchPort,
        sender_for: Callable[[str], ChannelSendPort | None],
        max_depth: int = MAX_FORWARD_DEPTH,
        workers: int = 4,
    ) -> None:
        self._registry = registry
        self._resolver = resolver
        self._router = router
        self._dispatcher = dispatcher
        self._sender_for = sender_for
        self._max_depth = max_depth
        self._worker_count = max(1, workers)
        self._queue: asyncio.Queue[ForwardTask] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self.forwarded_edges: list[ForwardEdge] = []

    @property
    def running(self) -> bool:
        return any(not w.done() for w in self._workers)

    def submit(
        self,
        target_bot: BotRegistryEntry,
        chat_id: str,
        text: str,
        sender_account_id: str,
        traversal: ForwardTraversal,
    ) -> None:
        """Queue a forward. Guards are checked when the task is consumed."""
        task = ForwardTask(
            target_bot=target_bot,
            chat_id=chat_id,
            text=text,
            sender_account_id=sender_account_id,
            traversal=traversal,
        )
        if not self.running:
            self.start()
        self._queue.put_nowait(task)

    def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.get_running_loop().create_task(
                self._worker(i), name=f"forward-worker-{i}"
            )
            for i in range(self._worker_count)
        ]
        logger.info(f"[ForwardCoordinator] Started {self._worker_count} workers")

    async def stop(self, timeout: float | None = 30.0) -> None:
        """Finish queued and in-flight forwards, then stop the workers.

        Workers still busy after ``timeout`` seconds are cancelled.
        """
        if self.running and self._queue.unfinished_tasks:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except TimeoutError:
                logger.warning(
                    f"[ForwardCoordinator] {self._queue.unfinished_tasks} forwards still "
                    f"pending after {timeout}s, cancelling"
                )
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("[ForwardCoordinator] Stopped")

    async def join(self) -> None:
        """Wait until every queued forward, including follow-ups, has been processed."""
        await self._queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                await self.process(task)
            except Exception as e:
                logger.error(
                    f"[ForwardCoordinator] Forward {task.edge} failed: {e}", exc_info=True
                )
            finally:
                self._queue.task_done()

    async def process(self, task: ForwardTask) -> bool:
        """Run one forward. Returns False if a guard or missing sender aborted it."""
        traversal = task.traversal
        if traversal.depth >= self._max_depth:
            logger.warning(
                f"[ForwardCoordinator] Forward depth reached {self._max_depth}, stopping"
            )
            return False

        edge = task.edge
        if traversal.has_visited(edge):
            logger.info(f"[ForwardCoordinator] Skipping repeated forward: {edge}")
            return False

        target = task.target_bot
        sender = self._sender_for(target.account_id)
        if sender is None:
            logger.warning(f"[ForwardCoordinator] No sender for account {target.account_id}")
            return False

        route = self._router.resolve(target.account_id, ChatKind.GROUP, task.chat_id)
        sender_bot = self._registry.get_by_account_id(task.sender_account_id)
        sender_name = sender_bot.display_name if sender_bot else task.sender_account_id
        logger.info(
            f"[ForwardCoordinator] Forward: {sender_name} → {target.display_name}, "
            f"session={route.session_key}, depth={traversal.depth}, "
            f"edges={len(traversal.visited_edges)}"
        )

        context = MessageContext(
            sender_id=sender_bot.platform_id if sender_bot else task.sender_account_id,
            body=task.text,
            account_id=target.account_id,
            session_key=route.session_key,
            agent_id=route.agent_id,
            chat_id=task.chat_id,
            chat_kind=ChatKind.GROUP,
            was_mentioned=True,
            command_authorized=False,
        )
        deliverer = GroupReplyDeliverer(
            reply_sender=ReplySender(sender, task.chat_id, target.account_id),
            resolver=self._resolver,
            coordinator=self,
            account_id=target.account_id,
            chat_id=task.chat_id,
            traversal=traversal.extend(edge),
        )
        self.forwarded_edges.append(edge)
        await self._dispatcher.dispatch(context, deliverer)
        await deliverer.flush()
        return True
