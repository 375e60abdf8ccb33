"""Unit tests for DedupFilter."""

import pytest

from feishu_channel.application.services.channels.dedup_filter import (
    CLEANUP_THRESHOLD,
    DEDUP_TTL_MS,
    EXPIRE_TTL_MS,
    DedupFilter,
)


class FakeClock:
    def __init__(self, now: int = 10_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def _build_filter(clock: FakeClock, **kwargs) -> DedupFilter:
    return DedupFilter(clock=clock, **kwargs)


@pytest.mark.unit
class TestDedupFilter:
    def test_defaults(self):
        """Default windows are 60s dedup, 30min expiry and 100-entry cleanup."""
        assert DEDUP_TTL_MS == 60_000
        assert EXPIRE_TTL_MS == 30 * 60 * 1000
        assert CLEANUP_THRESHOLD == 100

    def test_accepts_once_then_rejects_duplicate(self):
        """A repeated event id within the TTL is rejected."""
        clock = FakeClock()
        dedup = _build_filter(clock)

        assert dedup.should_process("alice", "om_1", clock.now) is True
        clock.now += 1_000
        assert dedup.should_process("alice", "om_1", clock.now) is False

    def test_accepts_again_after_ttl(self):
        """Once the TTL has passed the same id counts as new."""
        clock = FakeClock()
        dedup = _build_filter(clock)

        assert dedup.should_process("alice", "om_1", None) is True
        clock.now += DEDUP_TTL_MS
        assert dedup.should_process("alice", "om_1", None) is True

    def test_accounts_are_independent(self):
        """The same event delivered to two bots is processed by both."""
        clock = FakeClock()
        dedup = _build_filter(clock)

        assert dedup.should_process("alice", "om_1", clock.now) is True
        assert dedup.should_process("bob", "om_1", clock.now) is True

    def test_rejects_expired_event(self):
        """An event created 40 minutes ago is dropped."""
        clock = FakeClock()
        dedup = _build_filter(clock)

        created = clock.now - 40 * 60 * 1000
        assert dedup.should_process("alice", "om_old", created) is False
        assert dedup.size("alice") == 0

    def test_event_at_expiry_boundary_is_accepted(self):
        """Exactly 30 minutes old is still accepted."""
        clock = FakeClock()
        dedup = _build_filter(clock)

        assert dedup.should_process("alice", "om_1", clock.now - EXPIRE_TTL_MS) is True

    def test_missing_create_time_is_never_expired(self):
        """Events without a creation time are only subject to dedup."""
        dedup = _build_filter(FakeClock())

        assert dedup.is_expired(None) is False

    def test_cleanup_evicts_stale_entries_over_threshold(self):
        """Stale entries are evicted once an account holds more than the threshold."""
        clock = FakeClock()
        dedup = _build_filter(clock, cleanup_threshold=3)

        for i in range(3):
            dedup.should_process("alice", f"om_{i}", None)
        clock.now += DEDUP_TTL_MS + 1
        dedup.should_process("alice", "om_new", None)

        assert dedup.size("alice") == 1

    def test_no_cleanup_at_threshold(self):
        """Reaching the threshold exactly does not trigger eviction."""
        clock = FakeClock()
        dedup = _build_filter(clock, cleanup_threshold=3)

        for i in range(2):
            dedup.should_process("alice", f"om_{i}", None)
        clock.now += DEDUP_TTL_MS + 1
        dedup.should_process("alice", "om_new", None)

        assert dedup.size("alice") == 3
