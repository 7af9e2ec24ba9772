"""poicache — partial-coverage result cache for location lookups."""

from __future__ import annotations

from poicache.exceptions import (
    CacheError,
    DataSourceError,
    FetchFailed,
    StoreReadError,
    StoreWriteError,
)
from poicache.keys import derive_location_key
from poicache.models import (
    CacheResult,
    Coordinate,
    CoverageResult,
    Item,
    Location,
    Record,
    RecordBundle,
)
from poicache.services.manager import CacheManager
from poicache.services.source import DataSource, HttpDataSource
from poicache.services.store import CacheStore, FileStore, MemoryStore, make_store

__all__ = [
    "CacheManager",
    "CacheStore",
    "MemoryStore",
    "FileStore",
    "make_store",
    "DataSource",
    "HttpDataSource",
    "derive_location_key",
    "Coordinate",
    "Location",
    "Item",
    "Record",
    "RecordBundle",
    "CoverageResult",
    "CacheResult",
    "CacheError",
    "StoreReadError",
    "StoreWriteError",
    "FetchFailed",
    "DataSourceError",
]
