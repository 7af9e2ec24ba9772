"""Key/value persistence adapters for serialized record bundles."""

from __future__ import annotations

import asyncio
import hashlib
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path

from poicache.config import Settings
from poicache.exceptions import StoreReadError, StoreWriteError


class CacheStore(ABC):
    """String-keyed, string-valued async storage with no business logic."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored value, or None if *key* is absent."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store *value* under *key*, replacing whatever was there."""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete *key*; a missing key is not an error."""

    @abstractmethod
    async def clear(self) -> None:
        """Delete every key."""


class MemoryStore(CacheStore):
    """Thread-safe in-process LRU store bounded at *maxsize* keys."""

    def __init__(self, maxsize: int = 1024):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._maxsize = maxsize
        self._data: OrderedDict[str, str] = OrderedDict()
        self._lock = threading.Lock()

    async def get(self, key: str) -> str | None:
        with self._lock:
            if key not in self._data:
                return None
            # Refresh LRU position
            self._data.move_to_end(key)
            return self._data[key]

    async def set(self, key: str, value: str) -> None:
        with self._lock:
            if key in self._data:
                del self._data[key]
            elif len(self._data) >= self._maxsize:
                # Evict least-recently-used entry
                self._data.popitem(last=False)
            self._data[key] = value

    async def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def clear(self) -> None:
        with self._lock:
            self._data.clear()

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._data)


class FileStore(CacheStore):
    """One UTF-8 file per key under *directory*.

    File names are the SHA-256 of the key, so any key string is safe to use.
    Writes go to a temporary file first and are renamed into place, so a
    reader never sees a half-written value. Blocking I/O runs on a worker
    thread.
    """

    _SUFFIX = ".json"

    def __init__(self, directory: str | os.PathLike[str]):
        self._dir = Path(directory)

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return self._dir / f"{digest}{self._SUFFIX}"

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._write, key, value)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._unlink, key)

    async def clear(self) -> None:
        await asyncio.to_thread(self._unlink_all)

    # -- blocking helpers ----------------------------------------------------

    def _read(self, key: str) -> str | None:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise StoreReadError(key, str(exc)) from exc

    def _write(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._dir, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(value)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StoreWriteError(key, str(exc)) from exc

    def _unlink(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StoreWriteError(key, str(exc)) from exc

    def _unlink_all(self) -> None:
        if not self._dir.is_dir():
            return
        for path in self._dir.glob(f"*{self._SUFFIX}"):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise StoreWriteError(path.name, str(exc)) from exc


def make_store(settings: Settings) -> CacheStore:
    """Build the store selected by ``settings.store_backend``."""
    backend = settings.store_backend.lower()
    if backend == "memory":
        return MemoryStore(maxsize=settings.store_maxsize)
    if backend == "file":
        return FileStore(settings.store_path)
    raise ValueError(f"Unknown store backend: {settings.store_backend!r}")
