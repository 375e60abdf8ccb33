"""
Channel Send Port - Abstract interface for the platform messaging API.

Every operation reports its outcome as a SendResult instead of raising, so
callers can decide on fallbacks without wrapping each call in try/except.
The core never retries these calls itself, apart from the reply-to-plain
fallback performed by the reply sender.
"""

from abc import ABC, abstractmethod
from typing import Any

from feishu_channel.domain.model.channels.message import SendResult


class ChannelSendPort(ABC):
    """Messaging operations of one platform account."""

    @abstractmethod
    async def send_text(self, chat_id: str, text: str) -> SendResult:
        """Send a plain text message to a chat (oc_xxx) or user (ou_xxx)."""

    @abstractmethod
    async def send_post(
        self, chat_id: str, content: list[list[dict[str, Any]]], title: str = ""
    ) -> SendResult:
        """Send a rich text (post) message."""

    @abstractmethod
    async def reply_message(self, message_id: str, msg_type: str, content: str) -> SendResult:
        """Reply to an existing message. ``content`` is the JSON-encoded body."""

    @abstractmethod
    async def send_media(self, chat_id: str, media_path: str, caption: str = "") -> SendResult:
        """Upload a local file and send it as image, audio or file message."""

    @abstractmethod
    async def send_interactive(self, chat_id: str, card: dict[str, Any]) -> SendResult:
        """Send an interactive card."""

    @abstractmethod
    async def add_reaction(self, message_id: str, emoji_type: str) -> SendResult:
        """Add an emoji reaction. The reaction id is returned in ``reaction_id``."""

    @abstractmethod
    async def remove_reaction(self, message_id: str, reaction_id: str) -> SendResult:
        """Remove a previously added reaction."""

    @abstractmethod
    async def delete_message(self, message_id: str) -> SendResult:
        """Recall a message."""

    @abstractmethod
    async def update_message(self, message_id: str, msg_type: str, content: str) -> SendResult:
        """Edit a message in place."""
