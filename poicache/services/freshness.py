"""Record freshness policy."""

from __future__ import annotations

import time

from poicache.models import Record


def now_millis() -> int:
    """Wall-clock time in epoch milliseconds, the unit of ``Record.timestamp``."""
    return time.time_ns() // 1_000_000


def is_valid(record: Record | None, ttl_millis: int, now: int) -> bool:
    """Return True while ``now - record.timestamp < ttl_millis``.

    Absent records are never valid. Expiry is only ever evaluated here, at
    read time; nothing sweeps expired records out of the store.
    """
    if record is None:
        return False
    return now - record.timestamp < ttl_millis
