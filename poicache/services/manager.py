"""Cache façade: resolve coverage, fetch the gap once, merge, persist."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Iterable, Optional

from poicache.config import Settings, settings as default_settings
from poicache.exceptions import FetchFailed, StoreReadError, StoreWriteError
from poicache.keys import derive_location_key
from poicache.models import CacheResult, CollectionId, Location, RecordBundle
from poicache.services.coverage import resolve
from poicache.services.fetcher import FetchOrchestrator
from poicache.services.freshness import now_millis
from poicache.services.metrics import MetricsCollector
from poicache.services.request_context import operation_context
from poicache.services.source import DataSource
from poicache.services.store import CacheStore, make_store

logger = logging.getLogger(__name__)

# (location key, sorted missing collections)
FlightKey = tuple[str, tuple[CollectionId, ...]]
# Records for the flight's missing set, plus a write failure if persisting failed
FlightResult = tuple[RecordBundle, Optional[StoreWriteError]]


class CacheManager:
    """Serves collection lookups for a location from cache, fetching only
    the collections that are missing or expired.

    Construct one per application and reuse it. Only the manager writes to
    its store.

    Concurrent lookups that miss the same collections for the same location
    share one fetch (a *flight*). Flights run as their own tasks, so a
    caller that gives up still lets the fetch finish and populate the cache.
    Read-modify-write of a location's bundle is serialized by a
    per-location lock.
    """

    def __init__(
        self,
        store: CacheStore,
        source: DataSource | None = None,
        *,
        orchestrator: FetchOrchestrator | None = None,
        ttl_millis: int | None = None,
        key_precision: int | None = None,
        clock: Callable[[], int] = now_millis,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.metrics = metrics if metrics is not None else MetricsCollector()
        if orchestrator is None:
            if source is None:
                raise ValueError("CacheManager needs either a source or an orchestrator")
            orchestrator = FetchOrchestrator(source, clock=clock, metrics=self.metrics)
        self._store = store
        self._orchestrator = orchestrator
        self._ttl = ttl_millis if ttl_millis is not None else default_settings.cache_ttl_millis
        self._precision = (
            key_precision if key_precision is not None else default_settings.key_precision
        )
        self._clock = clock
        self._flights: dict[FlightKey, asyncio.Task[FlightResult]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        # Bumped by clear() so running flights drop the bundle they read
        self._generation = 0

    @classmethod
    def from_settings(
        cls,
        source: DataSource,
        settings: Settings | None = None,
        **kwargs,
    ) -> CacheManager:
        """Build a manager whose store, TTL and key precision come from *settings*."""
        settings = settings or default_settings
        return cls(
            make_store(settings),
            source,
            ttl_millis=settings.cache_ttl_millis,
            key_precision=settings.key_precision,
            **kwargs,
        )

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def in_flight(self) -> int:
        return len(self._flights)

    def location_key(self, location: Location) -> str:
        return derive_location_key(
            location.coordinate, location.stable_id, precision=self._precision,
        )

    # -- public methods ------------------------------------------------------

    async def get_or_fetch(
        self,
        location: Location,
        requested: Iterable[CollectionId],
        ttl_millis: int | None = None,
    ) -> CacheResult:
        """Return every requested collection that is cached-and-fresh or
        could be fetched now.

        Never raises for fetch or store failures: the result carries
        whatever is known good, with ``error`` set when something could not
        be fetched or persisted.

        Concurrent lookups share a fetch only when they miss exactly the same
        collections. A lookup whose missing set differs waits for the running
        fetch on that location and then requests only what is still missing,
        so overlapping-but-different requests can still cost a second call
        for the collections nobody else asked for.
        """
        ttl = ttl_millis if ttl_millis is not None else self._ttl
        wanted = frozenset(requested)
        key = self.location_key(location)

        with operation_context(key):
            bundle = await self._read_bundle(key)
            coverage = resolve(bundle, wanted, ttl, self._clock())
            self.metrics.inc_lookup(len(coverage.covered), len(coverage.missing))

            if not coverage.missing:
                logger.debug(
                    "Cache hit for %d collection(s)", len(wanted),
                    extra={"outcome": "hit"},
                )
                return CacheResult(bundle=coverage.covered, requested=wanted)

            logger.debug(
                "Missing %s (%d cached)",
                ",".join(sorted(coverage.missing)), len(coverage.covered),
            )
            try:
                fetched, write_error = await self._join_flight(
                    key, location, coverage.missing, ttl,
                )
            except FetchFailed as exc:
                logger.warning(
                    "Returning %d cached collection(s) without %s",
                    len(coverage.covered), ",".join(sorted(coverage.missing)),
                    extra={"outcome": "partial"},
                )
                return CacheResult(bundle=coverage.covered, requested=wanted, error=exc)

            logger.debug(
                "Served %d cached + %d fetched collection(s)",
                len(coverage.covered), len(fetched),
                extra={"outcome": "merged"},
            )
            return CacheResult(
                bundle=coverage.covered.merge(fetched),
                requested=wanted,
                error=write_error,
            )

    async def get_cached(
        self,
        location: Location,
        requested: Iterable[CollectionId],
        ttl_millis: int | None = None,
    ) -> RecordBundle:
        """Return the fresh cached subset of *requested* without fetching."""
        ttl = ttl_millis if ttl_millis is not None else self._ttl
        key = self.location_key(location)
        bundle = await self._read_bundle(key)
        return resolve(bundle, requested, ttl, self._clock()).covered

    async def evict(self, location: Location) -> None:
        """Drop every cached collection for *location*."""
        key = self.location_key(location)
        async with self._location_lock(key):
            await self._store.remove(key)
        logger.info("Evicted %s", key)

    async def clear(self) -> None:
        """Drop every cached bundle.

        Flights already fetching still persist what they fetch, but not the
        bundle they read before the clear.
        """
        self._generation += 1
        await self._store.clear()
        logger.info("Cache cleared")

    # -- internal ------------------------------------------------------------

    async def _read_bundle(self, key: str) -> RecordBundle | None:
        """Load the stored bundle; unreadable entries count as absent."""
        try:
            raw = await self._store.get(key)
            if raw is None:
                return None
            return RecordBundle.loads(raw, key)
        except Exception as exc:
            err = exc if isinstance(exc, StoreReadError) else StoreReadError(key, str(exc))
            self.metrics.inc_store_error("read")
            logger.warning("Discarding unreadable cache entry: %s", err.detail)
            await self._discard(key)
            return None

    async def _discard(self, key: str) -> None:
        try:
            await self._store.remove(key)
        except Exception:
            logger.warning("Could not remove unreadable entry %s", key, exc_info=True)

    async def _join_flight(
        self,
        key: str,
        location: Location,
        missing: frozenset[CollectionId],
        ttl: int,
    ) -> FlightResult:
        flight_key: FlightKey = (key, tuple(sorted(missing)))
        task = self._flights.get(flight_key)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._run_flight(key, location, missing, ttl)
            )
            self._flights[flight_key] = task
            task.add_done_callback(lambda t: self._finish_flight(flight_key, t))
        else:
            self.metrics.inc_coalesced()
            logger.debug("Joining in-flight fetch for %s", ",".join(flight_key[1]))
        # Shielded so a cancelled caller does not cancel the shared fetch
        return await asyncio.shield(task)

    def _finish_flight(self, flight_key: FlightKey, task: asyncio.Task) -> None:
        if self._flights.get(flight_key) is task:
            del self._flights[flight_key]
        # Mark the exception retrieved even if every waiter went away
        if not task.cancelled():
            task.exception()

    async def _run_flight(
        self,
        key: str,
        location: Location,
        missing: frozenset[CollectionId],
        ttl: int,
    ) -> FlightResult:
        async with self._location_lock(key):
            generation = self._generation
            # Another flight may have filled some of these while we waited
            stored = await self._read_bundle(key)
            coverage = resolve(stored, missing, ttl, self._clock())
            if not coverage.missing:
                return coverage.covered, None

            fetched = await self._orchestrator.fetch_missing(key, location, coverage.missing)
            if generation != self._generation:
                # clear() ran while fetching; the bundle read above is gone
                stored = None
            merged = (stored or RecordBundle()).merge(fetched)
            result = coverage.covered.merge(fetched)
            try:
                await self._store.set(key, merged.dumps())
            except Exception as exc:
                err = exc if isinstance(exc, StoreWriteError) else StoreWriteError(key, str(exc))
                self.metrics.inc_store_error("write")
                logger.error("Could not persist merged bundle: %s", err.detail)
                return result, err
            return result, None

    @asynccontextmanager
    async def _location_lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]
