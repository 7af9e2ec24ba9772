from __future__ import annotations

import asyncio

import pytest

from poicache.models import Coordinate, Location
from poicache.services.metrics import MetricsCollector
from poicache.services.store import MemoryStore

# 2025-01-15T12:00:00Z
T0 = 1_736_942_400_000


def school(name: str = "Central High", lat: float = 44.9780, lng: float = -93.2650) -> dict:
    return {"lat": lat, "lng": lng, "name": name, "kind": "school"}


def stop(name: str = "Nicollet Mall", lat: float = 44.9772, lng: float = -93.2710) -> dict:
    return {"location": {"type": "Point", "coordinates": [lng, lat]}, "name": name}


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeSource:
    """In-memory ``DataSource`` that records every query.

    ``gate``, when set, holds every query until the event fires, which lets
    tests pile up concurrent lookups behind one fetch.
    """

    def __init__(
        self,
        results: dict[str, list[dict]] | None = None,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ):
        self.results = results if results is not None else {}
        self.error = error
        self.gate = gate
        self.calls: list[tuple[Coordinate, list[str]]] = []

    async def query(self, coordinate, collections):
        self.calls.append((coordinate, list(collections)))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return {c: list(self.results.get(c, [school(c)])) for c in collections}

    @property
    def requested(self) -> list[set[str]]:
        return [set(cols) for _, cols in self.calls]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource(results={"schools": [school()], "transit": [stop()]})


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore(maxsize=16)


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def location() -> Location:
    return Location.at(44.97781234, -93.26501234)


@pytest.fixture
def make_source():
    """Factory for ``FakeSource`` with custom results, error or gate."""
    return FakeSource


@pytest.fixture
def school_item():
    """Factory for a flat lat/lng school item."""
    return school


@pytest.fixture
def stop_item():
    """Factory for a GeoJSON-positioned transit stop item."""
    return stop
