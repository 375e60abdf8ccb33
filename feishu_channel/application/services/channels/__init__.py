"""Channels application services."""

from feishu_channel.application.services.channels.ack_tracker import AckTracker
from feishu_channel.application.services.channels.agent_route import AgentRouter
from feishu_channel.application.services.channels.bot_info_sync import BotInfoSync
from feishu_channel.application.services.channels.bot_registry import BotRegistry
from feishu_channel.application.services.channels.card_action import CardActionHandler
from feishu_channel.application.services.channels.dedup_filter import DedupFilter
from feishu_channel.application.services.channels.forward_coordinator import (
    ForwardCoordinator,
    ForwardTask,
)
from feishu_channel.application.services.channels.inbound_pipeline import InboundPipeline
from feishu_channel.application.services.channels.mention_resolver import MentionResolver
from feishu_channel.application.services.channels.message_actions import (
    ActionValidationError,
    MessageActionService,
)
from feishu_channel.application.services.channels.reply_buffer import (
    DirectReplyDeliverer,
    GroupReplyDeliverer,
    PlainReplyDeliverer,
    ReplyDeliverer,
    ReplySender,
)

__all__ = [
    "AckTracker",
    "ActionValidationError",
    "AgentRouter",
    "BotInfoSync",
    "BotRegistry",
    "CardActionHandler",
    "DedupFilter",
    "DirectReplyDeliverer",
    "ForwardCoordinator",
    "ForwardTask",
    "GroupReplyDeliverer",
    "InboundPipeline",
    "MentionResolver",
    "MessageActionService",
    "PlainReplyDeliverer",
    "ReplyDeliverer",
    "ReplySender",
]
