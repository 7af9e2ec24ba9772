"""Data model for cached location results."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from poicache.exceptions import CacheError, StoreReadError

# Bumped whenever the persisted bundle layout changes; older payloads are
# treated as unreadable and refetched.
BUNDLE_FORMAT_VERSION = 1

CollectionId = str


class Coordinate(BaseModel):
    """WGS84 point."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90.0, le=90.0, description="Latitude in degrees")
    lng: float = Field(..., ge=-180.0, le=180.0, description="Longitude in degrees")


class Location(BaseModel):
    """A point of interest lookup target, optionally tied to a stable entity
    such as a property id."""

    model_config = ConfigDict(frozen=True)

    coordinate: Coordinate
    stable_id: str | None = None

    @classmethod
    def at(cls, lat: float, lng: float, stable_id: str | None = None) -> Location:
        return cls(coordinate=Coordinate(lat=lat, lng=lng), stable_id=stable_id)


class Item(BaseModel):
    """One result inside a collection: a coordinate plus arbitrary
    collection-specific properties."""

    coordinate: Coordinate
    properties: dict[str, Any] = Field(default_factory=dict)


class Record(BaseModel):
    """Items for one (location, collection) pair and when they were fetched."""

    items: list[Item] = Field(default_factory=list)
    timestamp: int = Field(..., description="Fetch completion time, epoch milliseconds")


class RecordBundle(BaseModel):
    """All cached collection records for one location key."""

    records: dict[CollectionId, Record] = Field(default_factory=dict)

    @property
    def collections(self) -> frozenset[CollectionId]:
        return frozenset(self.records)

    def get(self, collection: CollectionId) -> Record | None:
        return self.records.get(collection)

    def __contains__(self, collection: object) -> bool:
        return collection in self.records

    def __len__(self) -> int:
        return len(self.records)

    def merge(self, other: RecordBundle) -> RecordBundle:
        """Return a new bundle with *other*'s records layered over ours.

        Records in *other* replace ours for the same collection; every other
        record is kept, stale or not.
        """
        return RecordBundle(records={**self.records, **other.records})

    def subset(self, collections: Iterable[CollectionId]) -> RecordBundle:
        wanted = set(collections)
        return RecordBundle(
            records={c: r for c, r in self.records.items() if c in wanted}
        )

    def dumps(self) -> str:
        return _BundleDocument(
            version=BUNDLE_FORMAT_VERSION, records=self.records
        ).model_dump_json()

    @classmethod
    def loads(cls, raw: str, key: str = "") -> RecordBundle:
        """Parse a persisted bundle, raising ``StoreReadError`` if it is
        malformed or written in another format version."""
        try:
            doc = _BundleDocument.model_validate_json(raw)
        except ValidationError as exc:
            raise StoreReadError(key, f"malformed bundle ({exc.error_count()} errors)") from exc
        if doc.version != BUNDLE_FORMAT_VERSION:
            raise StoreReadError(key, f"unsupported bundle version {doc.version}")
        return cls(records=doc.records)


class _BundleDocument(BaseModel):
    version: int
    records: dict[CollectionId, Record]


@dataclass(frozen=True)
class CoverageResult:
    """Partition of a request into cached-and-fresh vs. missing collections."""

    covered: RecordBundle
    missing: frozenset[CollectionId]


@dataclass(frozen=True)
class CacheResult:
    """What ``CacheManager.get_or_fetch`` returns.

    ``bundle`` always holds every requested collection that is known good.
    ``error`` is set when part of the request could not be fetched
    (``FetchFailed``) or the merged result could not be persisted
    (``StoreWriteError``); the bundle is still usable in both cases.
    """

    bundle: RecordBundle
    requested: frozenset[CollectionId]
    error: CacheError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def missing(self) -> frozenset[CollectionId]:
        return self.requested - self.bundle.collections

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error
