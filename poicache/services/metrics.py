"""In-memory cache metrics collector."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field


@dataclass
class MetricsCollector:
    """Counts cache outcomes and samples external fetch latency.

    Collection-level counters (``collection_hits`` / ``collection_misses``)
    count individual collections, so one lookup for three collections of
    which one was cached adds 1 hit and 2 misses. The latency list is
    bounded at ``_MAX_LATENCY_SAMPLES``; when exceeded it is halved by
    keeping only the most-recent entries.
    """

    _MAX_LATENCY_SAMPLES: int = field(default=10_000, repr=False)

    # Counters
    lookups: int = field(default=0, init=False)
    collection_hits: int = field(default=0, init=False)
    collection_misses: int = field(default=0, init=False)
    fetches: int = field(default=0, init=False)
    fetch_failures: int = field(default=0, init=False)
    coalesced: int = field(default=0, init=False)
    store_read_errors: int = field(default=0, init=False)
    store_write_errors: int = field(default=0, init=False)

    # Fetch latency samples (milliseconds)
    _latencies: list[float] = field(default_factory=list, init=False, repr=False)

    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _start_time: float = field(default_factory=time.monotonic, init=False, repr=False)

    # -- Counter helpers ---------------------------------------------------

    def inc_lookup(self, hits: int, misses: int) -> None:
        with self._lock:
            self.lookups += 1
            self.collection_hits += hits
            self.collection_misses += misses

    def inc_fetch(self, success: bool) -> None:
        with self._lock:
            self.fetches += 1
            if not success:
                self.fetch_failures += 1

    def inc_coalesced(self) -> None:
        with self._lock:
            self.coalesced += 1

    def inc_store_error(self, kind: str) -> None:
        with self._lock:
            if kind == "read":
                self.store_read_errors += 1
            else:
                self.store_write_errors += 1

    # -- Latency -----------------------------------------------------------

    def record_fetch_latency(self, ms: float) -> None:
        with self._lock:
            self._latencies.append(ms)
            if len(self._latencies) > self._MAX_LATENCY_SAMPLES:
                half = self._MAX_LATENCY_SAMPLES // 2
                self._latencies = self._latencies[-half:]

    def get_latency_percentiles(self) -> dict[str, float]:
        with self._lock:
            return self._percentiles_unlocked()

    def _percentiles_unlocked(self) -> dict[str, float]:
        """Compute p50/p90/p99 — caller must hold ``_lock``."""
        if not self._latencies:
            return {"p50": 0.0, "p90": 0.0, "p99": 0.0}
        s = sorted(self._latencies)
        n = len(s)
        return {
            "p50": round(s[int(n * 0.50)], 2),
            "p90": round(s[int(min(n * 0.90, n - 1))], 2),
            "p99": round(s[int(min(n * 0.99, n - 1))], 2),
        }

    # -- Snapshot / reset --------------------------------------------------

    def snapshot(self) -> dict:
        with self._lock:
            total = self.collection_hits + self.collection_misses
            hit_rate = round(self.collection_hits / total, 4) if total else 0.0
            return {
                "uptime_seconds": round(time.monotonic() - self._start_time, 2),
                "lookups": self.lookups,
                "collections": {
                    "hits": self.collection_hits,
                    "misses": self.collection_misses,
                    "hit_rate": hit_rate,
                },
                "fetches": {
                    "total": self.fetches,
                    "failures": self.fetch_failures,
                    "coalesced": self.coalesced,
                },
                "store_errors": {
                    "read": self.store_read_errors,
                    "write": self.store_write_errors,
                },
                "fetch_latency_ms": self._percentiles_unlocked(),
            }

    def reset(self) -> None:
        with self._lock:
            self.lookups = 0
            self.collection_hits = 0
            self.collection_misses = 0
            self.fetches = 0
            self.fetch_failures = 0
            self.coalesced = 0
            self.store_read_errors = 0
            self.store_write_errors = 0
            self._latencies.clear()
            self._start_time = time.monotonic()
