"""Duplicate and stale event filter for at-least-once event delivery.

The platform redelivers an unacknowledged event several times within about
thirty minutes, and replays the backlog after a restart. Each account keeps
a short record of recently accepted event ids, and events older than the
expiry window are rejected outright.
"""

import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEDUP_TTL_MS = 60 * 1000
EXPIRE_TTL_MS = 30 * 60 * 1000
CLEANUP_THRESHOLD = 100


def _now_ms() -> int:
    return int(time.time() * 1000)


class DedupFilter:
    """Per-account record of recently seen event ids.

    Eviction is opportunistic: once an account holds more than
    ``cleanup_threshold`` entries, entries older than the TTL are dropped on
    the next accepted event.
    """

    def __init__(
        self,
        ttl_ms: int = DEDUP_TTL_MS,
        expire_ms: int = EXPIRE_TTL_MS,
        cleanup_threshold: int = CLEANUP_THRESHOLD,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._ttl_ms = ttl_ms
        self._expire_ms = expire_ms
        self._cleanup_threshold = cleanup_threshold
        self._clock = clock
        self._seen: dict[str, dict[str, int]] = {}

    def should_process(self, account_id: str, event_id: str, created_at_ms: int | None) -> bool:
        """Return True if the event is new and fresh, recording it as seen."""
        now = self._clock()
        records = self._seen.setdefault(account_id, {})

        first_seen = records.get(event_id)
        if first_seen is not None and now - first_seen < self._ttl_ms:
            logger.debug(f"[DedupFilter] Duplicate event {event_id} for {account_id}, skipping")
            return False

        if self.is_expired(created_at_ms, now):
            logger.info(
                f"[DedupFilter] Expired event {event_id} for {account_id}, "
                f"created_at={created_at_ms}"
            )
            return False

        records[event_id] = now
        if len(records) > self._cleanup_threshold:
            self._evict(records, now)
        return True

    def is_expired(self, created_at_ms: int | None, now: int | None = None) -> bool:
        if created_at_ms is None:
            return False
        if now is None:
            now = self._clock()
        return now - created_at_ms > self._expire_ms

    def _evict(self, records: dict[str, int], now: int) -> None:
        stale = [eid for eid, seen_at in records.items() if now - seen_at >= self._ttl_ms]
        for eid in stale:
            del records[eid]
        if stale:
            logger.debug(f"[DedupFilter] Evicted {len(stale)} stale event ids")

    def size(self, account_id: str) -> int:
        return len(self._seen.get(account_id, {}))
