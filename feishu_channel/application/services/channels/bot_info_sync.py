"""Startup synchronization of bot identities into the registry."""

import asyncio
import logging
from pathlib import Path

from feishu_channel.application.services.channels.bot_registry import BotRegistry
from feishu_channel.configuration.config import FeishuAccountConfig
from feishu_channel.domain.model.channels.bot import BotIdentity, BotRegistryEntry
from feishu_channel.domain.ports.services.bot_identity_port import BotIdentityPort

logger = logging.getLogger(__name__)

IDENTITY_FILE_NAME = "IDENTITY.md"


def render_identity_file(identity: BotIdentity) -> str:
    return (
        "# IDENTITY.md - Who Am I?\n"
        "\n"
        f"- **Name:** {identity.display_name}\n"
        f"- **Open ID:** {identity.platform_id}\n"
        f"- **Avatar:** {identity.avatar_url}\n"
    )


class BotInfoSync:
    """Fetches each account's identity once at startup and registers it."""

    def __init__(self, registry: BotRegistry) -> None:
        self._registry = registry

    async def sync(
        self, account: FeishuAccountConfig, identity_service: BotIdentityPort
    ) -> BotRegistryEntry | None:
        """Fetch and register one account's identity.

        Returns None if the identity could not be fetched; the account then
        cannot recognise mentions of itself in group chats.
        """
        identity = await identity_service.get_bot_info()
        if identity is None:
            logger.error(f"[BotInfoSync] [{account.account_id}] Failed to fetch bot info")
            return None

        entry = self._registry.register(
            account_id=account.account_id,
            display_name=identity.display_name,
            platform_id=identity.platform_id,
            account_config=account,
        )
        if account.sync_identity_file and account.workspace:
            await self.write_identity_file(account.workspace, identity)
        return entry

    async def write_identity_file(self, workspace: str, identity: BotIdentity) -> bool:
        """Best-effort write of IDENTITY.md; failures are logged only."""
        path = Path(workspace) / IDENTITY_FILE_NAME
        try:
            await asyncio.to_thread(self._write, path, render_identity_file(identity))
            logger.info(f"[BotInfoSync] {IDENTITY_FILE_NAME} updated: {identity.display_name}")
            return True
        except OSError as e:
            logger.error(f"[BotInfoSync] Failed to update {path}: {e}")
            return False

    @staticmethod
    def _write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
