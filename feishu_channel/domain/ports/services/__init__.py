"""Service ports."""

from feishu_channel.domain.ports.services.agent_dispatch_port import (
    AgentDispatchPort,
    DeliverCallback,
)
from feishu_channel.domain.ports.services.bot_identity_port import BotIdentityPort
from feishu_channel.domain.ports.services.channel_send_port import ChannelSendPort

__all__ = ["AgentDispatchPort", "BotIdentityPort", "ChannelSendPort", "DeliverCallback"]
