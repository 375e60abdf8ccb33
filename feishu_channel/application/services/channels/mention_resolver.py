"""Mention resolution for inbound events and outbound reply text."""

import logging
import re

from feishu_channel.application.services.channels.bot_registry import BotRegistry
from feishu_channel.domain.model.channels.bot import BotRegistryEntry, MentionDecision
from feishu_channel.domain.model.channels.message import InboundEvent

logger = logging.getLogger(__name__)


class MentionResolver:
    """Decides whether this bot should act on an event and which bots a reply mentions.

    Inbound policy for group chats:
    1. A broadcast mention (@_all) counts as mentioning every bot.
    2. With explicit mentions, only the bot named by the *first* mention
       accepts; every other bot rejects, even if mentioned later.
    3. With no mention at all the message is accepted but no reply is
       expected (``reply_expected=False``).
    Direct chats are always accepted.
    """

    def __init__(self, registry: BotRegistry) -> None:
        self._registry = registry

    def resolve_mention(
        self, event: InboundEvent, self_platform_id: str | None
    ) -> MentionDecision:
        names = tuple(m.name for m in event.mentions if m.name)

        if not event.is_group:
            return MentionDecision(
                accept=True,
                was_mentioned=False,
                mentioned_bot_names=names,
                reply_expected=True,
            )

        if event.has_broadcast_mention:
            logger.info(f"[MentionResolver] [{event.account_id}] @_all detected, processing")
            return MentionDecision(
                accept=True,
                was_mentioned=True,
                mentioned_bot_names=names,
                reply_expected=True,
            )

        if event.mentions:
            first = event.mentions[0]
            if self_platform_id and first.open_id == self_platform_id:
                return MentionDecision(
                    accept=True,
                    was_mentioned=True,
                    mentioned_bot_names=names,
                    reply_expected=True,
                )
            logger.info(
                f"[MentionResolver] [{event.account_id}] Skipping: "
                f"mentioned={first.open_id}, me={self_platform_id}"
            )
            return MentionDecision.reject()

        return MentionDecision(accept=True, was_mentioned=False, reply_expected=False)

    def detect_mentions(self, text: str, self_account_id: str) -> list[BotRegistryEntry]:
        """Registered bots referenced as ``@Name`` in text, excluding the sender.

        Bots are returned in order of first appearance, each at most once.
        """
        if not text or "@" not in text:
            return []
        candidates = {
            entry.display_name: entry
            for entry in self._registry.all()
            if entry.account_id != self_account_id and entry.display_name
        }
        pattern = _mention_pattern(candidates)
        if pattern is None:
            return []

        found: list[BotRegistryEntry] = []
        for match in pattern.finditer(text):
            entry = candidates[match.group(1)]
            if entry not in found:
                found.append(entry)
        return found

    def replace_with_mentions(self, text: str, bots: list[BotRegistryEntry]) -> str:
        """Rewrite ``@Name`` tokens into native ``<at user_id=...>`` markup."""
        candidates = {bot.display_name: bot for bot in bots if bot.display_name}
        pattern = _mention_pattern(candidates)
        if pattern is None:
            return text

        def _to_markup(match: re.Match[str]) -> str:
            bot = candidates[match.group(1)]
            return f'<at user_id="{bot.platform_id}">{bot.display_name}</at>'

        return pattern.sub(_to_markup, text)


def _mention_pattern(candidates: dict[str, BotRegistryEntry]) -> re.Pattern[str] | None:
    if not candidates:
        return None
    # Longest names first so "@Bobby" is never read as "@Bob".
    names = sorted(candidates, key=len, reverse=True)
    return re.compile("@(" + "|".join(re.escape(name) for name in names) + ")")
