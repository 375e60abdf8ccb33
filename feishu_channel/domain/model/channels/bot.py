"""Bot identities, mention decisions and forwarding traversal state."""

from dataclasses import dataclass, field
from typing import Any

from feishu_channel.domain.shared_kernel import ValueObject

MAX_FORWARD_DEPTH = 30


@dataclass(frozen=True)
class BotRegistryEntry(ValueObject):
    """Platform identity of one locally hosted bot account."""

    account_id: str
    display_name: str
    platform_id: str
    account_config: Any = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class MentionDecision(ValueObject):
    """Outcome of inbound mention resolution.

    ``reply_expected`` is False for group messages accepted without any
    mention: they enter the pipeline but must not be answered.
    """

    accept: bool
    was_mentioned: bool = False
    mentioned_bot_names: tuple[str, ...] = ()
    reply_expected: bool = False

    @classmethod
    def reject(cls) -> "MentionDecision":
        return cls(accept=False)


@dataclass(frozen=True)
class ForwardEdge(ValueObject):
    """One forwarding hop from a sender account to a target account."""

    sender_account_id: str
    target_account_id: str

    def __str__(self) -> str:
        return f"{self.sender_account_id}→{self.target_account_id}"


@dataclass(frozen=True)
class ForwardTraversal(ValueObject):
    """Depth and visited edges of one root dispatch's forwarding tree.

    Immutable: ``extend`` returns a new traversal so sibling branches never
    share state.
    """

    depth: int = 0
    visited_edges: frozenset[ForwardEdge] = frozenset()

    def has_visited(self, edge: ForwardEdge) -> bool:
        return edge in self.visited_edges

    def extend(self, edge: ForwardEdge) -> "ForwardTraversal":
        return ForwardTraversal(
            depth=self.depth + 1,
            visited_edges=self.visited_edges | {edge},
        )


@dataclass(frozen=True)
class AgentRoute(ValueObject):
    """Agent and session a message is routed to."""

    agent_id: str
    session_key: str
    matched_by: str = "default"


@dataclass(frozen=True)
class BotIdentity(ValueObject):
    """Bot identity as reported by the platform."""

    platform_id: str
    display_name: str
    avatar_url: str = ""
