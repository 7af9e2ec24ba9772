"""Fetch the collections a lookup is missing and normalize them into records."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable, Mapping

from pydantic import ValidationError

from poicache.exceptions import FetchFailed
from poicache.models import CollectionId, Coordinate, Item, Location, Record, RecordBundle
from poicache.services.freshness import now_millis
from poicache.services.metrics import MetricsCollector
from poicache.services.source import DataSource, RawItem

logger = logging.getLogger(__name__)

# Keys that carry the item position; everything else becomes a property.
_COORDINATE_KEYS = frozenset({"coordinate", "lat", "lng", "lon", "location", "geometry"})


def _extract_coordinate(raw: Mapping[str, Any]) -> Coordinate:
    """Read the item position from one of the accepted raw shapes:

    * ``{"coordinate": {"lat": .., "lng": ..}}``
    * ``{"lat": .., "lng": ..}`` (``lon`` accepted for ``lng``)
    * ``{"location" | "geometry": {"coordinates": [lng, lat]}}`` (GeoJSON order)
    """
    if isinstance(raw.get("coordinate"), Mapping):
        return Coordinate.model_validate(raw["coordinate"])

    if "lat" in raw and ("lng" in raw or "lon" in raw):
        lng = raw["lng"] if "lng" in raw else raw["lon"]
        return Coordinate(lat=raw["lat"], lng=lng)

    for field in ("location", "geometry"):
        geom = raw.get(field)
        if isinstance(geom, Mapping):
            coords = geom.get("coordinates")
            if isinstance(coords, (list, tuple)) and len(coords) >= 2:
                return Coordinate(lat=coords[1], lng=coords[0])

    raise ValueError("item has no recognizable coordinate")


def normalize_item(raw: RawItem) -> Item:
    """Convert one raw source item into an ``Item``.

    Raises ``ValueError`` (``ValidationError`` included) if the item has no
    usable coordinate.
    """
    if not isinstance(raw, Mapping):
        raise ValueError(f"item is a {type(raw).__name__}, not an object")
    coordinate = _extract_coordinate(raw)
    properties = {k: v for k, v in raw.items() if k not in _COORDINATE_KEYS}
    return Item(coordinate=coordinate, properties=properties)


class FetchOrchestrator:
    """Requests exactly the missing collections from a ``DataSource``.

    All-or-nothing: either every requested collection comes back as a fresh
    ``Record`` or ``FetchFailed`` is raised and nothing is returned. The
    orchestrator never touches the store and never retries.
    """

    def __init__(
        self,
        source: DataSource,
        *,
        clock: Callable[[], int] = now_millis,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._source = source
        self._clock = clock
        self._metrics = metrics if metrics is not None else MetricsCollector()

    async def fetch_missing(
        self,
        location_key: str,
        location: Location,
        missing: Iterable[CollectionId],
    ) -> RecordBundle:
        wanted = frozenset(missing)
        if not wanted:
            return RecordBundle()

        collections = sorted(wanted)
        started = time.monotonic()
        try:
            raw = await self._source.query(location.coordinate, collections)
        except Exception as exc:
            self._metrics.inc_fetch(success=False)
            logger.warning(
                "Fetch of %s failed: %s", ",".join(collections), exc,
            )
            raise FetchFailed(location_key, wanted, str(exc) or type(exc).__name__) from exc
        finally:
            self._metrics.record_fetch_latency((time.monotonic() - started) * 1000)

        try:
            bundle = self._normalize(location_key, wanted, raw)
        except FetchFailed:
            self._metrics.inc_fetch(success=False)
            raise

        self._metrics.inc_fetch(success=True)
        logger.info(
            "Fetched %d collection(s) (%d items)",
            len(bundle), sum(len(r.items) for r in bundle.records.values()),
        )
        return bundle

    def _normalize(
        self,
        location_key: str,
        wanted: frozenset[CollectionId],
        raw: Mapping[CollectionId, list[RawItem]],
    ) -> RecordBundle:
        absent = wanted - set(raw)
        if absent:
            raise FetchFailed(
                location_key, wanted,
                f"response omitted {','.join(sorted(absent))}",
            )

        extra = set(raw) - wanted
        if extra:
            logger.debug("Ignoring unrequested collections %s", ",".join(sorted(extra)))

        # One timestamp for the whole batch, taken at completion
        stamp = self._clock()
        records: dict[CollectionId, Record] = {}
        for collection in wanted:
            if not isinstance(raw[collection], list):
                raise FetchFailed(
                    location_key, wanted, f"items for {collection} are not a list",
                )
            try:
                items = [normalize_item(item) for item in raw[collection]]
            except (ValueError, ValidationError) as exc:
                raise FetchFailed(
                    location_key, wanted, f"malformed item in {collection}: {exc}",
                ) from exc
            records[collection] = Record(items=items, timestamp=stamp)
        return RecordBundle(records=records)
