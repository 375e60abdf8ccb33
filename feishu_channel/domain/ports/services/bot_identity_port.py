"""
Bot Identity Port - Abstract interface for the platform identity service.

Queried once per account at startup; the result is cached in the registry.
"""

from abc import ABC, abstractmethod

from feishu_channel.domain.model.channels.bot import BotIdentity


class BotIdentityPort(ABC):
    """Looks up the identity of the bot behind one account."""

    @abstractmethod
    async def get_bot_info(self) -> BotIdentity | None:
        """Fetch the bot's open_id and display name, or None on failure."""
