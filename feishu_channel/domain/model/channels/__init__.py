"""Channels domain model."""

from feishu_channel.domain.model.channels.bot import (
    MAX_FORWARD_DEPTH,
    AgentRoute,
    BotIdentity,
    BotRegistryEntry,
    ForwardEdge,
    ForwardTraversal,
    MentionDecision,
)
from feishu_channel.domain.model.channels.message import (
    BROADCAST_MENTION_KEY,
    ChatKind,
    EnrichedMessage,
    FragmentKind,
    InboundEvent,
    MentionTarget,
    MessageContext,
    MessageType,
    ReplyFragment,
    SendResult,
)

__all__ = [
    "MAX_FORWARD_DEPTH",
    "BROADCAST_MENTION_KEY",
    "AgentRoute",
    "BotIdentity",
    "BotRegistryEntry",
    "ChatKind",
    "EnrichedMessage",
    "ForwardEdge",
    "ForwardTraversal",
    "FragmentKind",
    "InboundEvent",
    "MentionDecision",
    "MentionTarget",
    "MessageContext",
    "MessageType",
    "ReplyFragment",
    "SendResult",
]
