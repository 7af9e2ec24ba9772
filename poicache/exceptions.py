"""Exception hierarchy for the location result cache."""

from __future__ import annotations


class CacheError(Exception):
    """Base exception for all cache errors."""


class StoreReadError(CacheError):
    """A persisted value could not be read or parsed.

    Never reaches callers of ``CacheManager``: the entry is discarded and
    treated as a miss.
    """

    def __init__(self, key: str, detail: str) -> None:
        self.key = key
        self.detail = detail
        super().__init__(f"{key}: {detail}")


class StoreWriteError(CacheError):
    """A merged bundle could not be persisted."""

    def __init__(self, key: str, detail: str) -> None:
        self.key = key
        self.detail = detail
        super().__init__(f"{key}: {detail}")


class FetchFailed(CacheError):
    """The data source could not supply the missing collections."""

    def __init__(self, location_key: str, collections: frozenset[str], detail: str) -> None:
        self.location_key = location_key
        self.collections = collections
        self.detail = detail
        names = ",".join(sorted(collections))
        super().__init__(f"{location_key} [{names}]: {detail}")


class DataSourceError(CacheError):
    """Raised by ``HttpDataSource`` on non-2xx responses."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{status_code}: {detail}")
