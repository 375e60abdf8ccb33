"""Directory of the bot identities hosted by this process."""

import logging
from collections.abc import Iterator
from typing import Any

from feishu_channel.domain.model.channels.bot import BotRegistryEntry

logger = logging.getLogger(__name__)


class BotRegistry:
    """Maps local account ids to platform identities.

    One instance is built at startup and passed to every component that needs
    lookups. Entries are registered once per account when the identity is
    fetched from the platform and are never removed; the registry lives for
    the whole process and needs no teardown.
    """

    def __init__(self) -> None:
        self._by_account: dict[str, BotRegistryEntry] = {}

    def register(
        self,
        account_id: str,
        display_name: str,
        platform_id: str,
        account_config: Any = None,
    ) -> BotRegistryEntry:
        """Register (or refresh) a bot identity and return the entry."""
        entry = BotRegistryEntry(
            account_id=account_id,
            display_name=display_name,
            platform_id=platform_id,
            account_config=account_config,
        )
        previous = self._by_account.get(account_id)
        if previous is not None and previous != entry:
            logger.info(
                f"[BotRegistry] Identity of {account_id} changed: "
                f"{previous.display_name} -> {display_name}"
            )
        self._by_account[account_id] = entry
        logger.info(f"[BotRegistry] Registered bot {display_name} ({account_id}, {platform_id})")
        return entry

    def get_by_account_id(self, account_id: str) -> BotRegistryEntry | None:
        return self._by_account.get(account_id)

    def get_by_name(self, display_name: str) -> BotRegistryEntry | None:
        for entry in self._by_account.values():
            if entry.display_name == display_name:
                return entry
        return None

    def get_by_platform_id(self, platform_id: str) -> BotRegistryEntry | None:
        for entry in self._by_account.values():
            if entry.platform_id == platform_id:
                return entry
        return None

    def all(self) -> list[BotRegistryEntry]:
        """All registered bots in registration order."""
        return list(self._by_account.values())

    def __iter__(self) -> Iterator[BotRegistryEntry]:
        return iter(self.all())

    def __len__(self) -> int:
        return len(self._by_account)

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._by_account
