"""
Agent Dispatch Port - Abstract interface for the agent runtime.

The runtime turns a normalized MessageContext into a finite, non-restartable
stream of ReplyFragments and hands each one to the supplied deliver callback
as it is produced.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from feishu_channel.domain.model.channels.message import MessageContext, ReplyFragment

DeliverCallback = Callable[[ReplyFragment], Awaitable[None]]


class AgentDispatchPort(ABC):
    """Dispatches message contexts to the agent runtime."""

    @abstractmethod
    async def dispatch(
        self,
        context: MessageContext,
        deliver: DeliverCallback,
        *,
        disable_block_streaming: bool = False,
    ) -> None:
        """Run the agent for ``context`` and deliver each reply fragment.

        Args:
            context: Normalized inbound context
            deliver: Awaited once per fragment, in stream order
            disable_block_streaming: Ask the runtime to emit only final fragments
        """
