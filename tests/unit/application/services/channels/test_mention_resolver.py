"""Unit tests for MentionResolver."""

import pytest

from feishu_channel.application.services.channels.mention_resolver import MentionResolver
from feishu_channel.domain.model.channels.message import ChatKind, InboundEvent, MentionTarget


def _build_event(
    mentions: tuple[MentionTarget, ...] = (),
    chat_kind: ChatKind = ChatKind.GROUP,
    broadcast: bool = False,
) -> InboundEvent:
    return InboundEvent(
        event_id="om_1",
        account_id="alice",
        chat_id="oc_group",
        chat_kind=chat_kind,
        sender_id="ou_user",
        mentions=mentions,
        has_broadcast_mention=broadcast,
    )


def _mention(open_id: str, name: str, index: int = 1) -> MentionTarget:
    return MentionTarget(key=f"@_user_{index}", open_id=open_id, name=name)


@pytest.mark.unit
class TestResolveMention:
    @pytest.fixture
    def resolver(self, registry):
        return MentionResolver(registry)

    def test_direct_chat_always_accepted(self, resolver):
        """Direct messages are accepted and answered."""
        decision = resolver.resolve_mention(_build_event(chat_kind=ChatKind.DIRECT), "ou_alice")

        assert decision.accept is True
        assert decision.reply_expected is True
        assert decision.was_mentioned is False

    def test_first_mention_self_accepts(self, resolver):
        """The bot named by the first mention accepts."""
        event = _build_event((_mention("ou_alice", "Alice"), _mention("ou_bob", "Bob", 2)))

        decision = resolver.resolve_mention(event, "ou_alice")

        assert decision.accept is True
        assert decision.was_mentioned is True
        assert decision.reply_expected is True
        assert decision.mentioned_bot_names == ("Alice", "Bob")

    def test_later_mention_of_self_rejects(self, resolver):
        """Being mentioned second is not enough."""
        event = _build_event((_mention("ou_bob", "Bob"), _mention("ou_alice", "Alice", 2)))

        decision = resolver.resolve_mention(event, "ou_alice")

        assert decision.accept is False

    def test_unknown_self_identity_rejects_mentions(self, resolver):
        """Without a registered identity a mentioned message cannot be ours."""
        event = _build_event((_mention("ou_alice", "Alice"),))

        assert resolver.resolve_mention(event, None).accept is False

    def test_broadcast_accepts_before_mentions(self, resolver):
        """@_all wins even when the first explicit mention is another bot."""
        event = _build_event((_mention("ou_bob", "Bob"),), broadcast=True)

        decision = resolver.resolve_mention(event, "ou_alice")

        assert decision.accept is True
        assert decision.was_mentioned is True
        assert decision.reply_expected is True

    def test_no_mention_accepts_without_reply(self, resolver):
        """Unmentioned group messages are accepted silently."""
        decision = resolver.resolve_mention(_build_event(), "ou_alice")

        assert decision.accept is True
        assert decision.was_mentioned is False
        assert decision.reply_expected is False


@pytest.mark.unit
class TestOutboundMentions:
    @pytest.fixture
    def resolver(self, registry):
        return MentionResolver(registry)

    def test_detects_other_bots_in_order(self, resolver):
        """Mentions are returned in order of appearance without duplicates."""
        bots = resolver.detect_mentions("@Bob and @Alice, then @Bob again", "carol")

        assert [b.account_id for b in bots] == ["bob", "alice"]

    def test_excludes_self(self, resolver):
        """A bot never forwards to itself."""
        bots = resolver.detect_mentions("@Alice talking to @Bob", "alice")

        assert [b.account_id for b in bots] == ["bob"]

    def test_longest_name_wins(self, resolver):
        """@Bobby is not read as @Bob."""
        bots = resolver.detect_mentions("ping @Bobby", "alice")

        assert [b.account_id for b in bots] == ["bobby"]

    def test_no_at_sign(self, resolver):
        assert resolver.detect_mentions("hello Bob", "alice") == []

    def test_replace_with_native_markup(self, resolver, registry):
        """@Name tokens become <at user_id=...> markup."""
        bob = registry.get_by_account_id("bob")

        text = resolver.replace_with_mentions("@Bob check this", [bob])

        assert text == '<at user_id="ou_bob">Bob</at> check this'

    def test_replace_without_bots_is_identity(self, resolver):
        assert resolver.replace_with_mentions("@Bob check this", []) == "@Bob check this"
