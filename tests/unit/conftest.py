"""Shared fixtures for unit tests."""

from unittest.mock import AsyncMock

import pytest

from feishu_channel.application.services.channels.bot_registry import BotRegistry
from feishu_channel.domain.model.channels.message import SendResult
from feishu_channel.domain.ports.services.channel_send_port import ChannelSendPort


def build_sender() -> AsyncMock:
    """A ChannelSendPort whose every call succeeds."""
    sender = AsyncMock(spec=ChannelSendPort)
    sender.send_text.return_value = SendResult.success("om_text")
    sender.send_post.return_value = SendResult.success("om_post")
    sender.reply_message.return_value = SendResult.success("om_reply")
    sender.send_media.return_value = SendResult.success("om_media")
    sender.send_interactive.return_value = SendResult.success("om_card")
    sender.add_reaction.return_value = SendResult(ok=True, message_id="om_1", reaction_id="r_1")
    sender.remove_reaction.return_value = SendResult.success("om_1")
    sender.delete_message.return_value = SendResult.success("om_1")
    sender.update_message.return_value = SendResult.success("om_1")
    return sender


@pytest.fixture
def sender() -> AsyncMock:
    return build_sender()


@pytest.fixture
def registry() -> BotRegistry:
    """Three local bots: alice, bob and bobby."""
    registry = BotRegistry()
    registry.register("alice", "Alice", "ou_alice")
    registry.register("bob", "Bob", "ou_bob")
    registry.register("bobby", "Bobby", "ou_bobby")
    return registry
