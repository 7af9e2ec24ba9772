"""Canonical cache partition keys for geographic locations."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from poicache.models import Coordinate


def _canonical(value: float, precision: int) -> float:
    # Adding 0.0 turns a rounded -0.0 into 0.0
    return round(value, precision) + 0.0


def derive_location_key(
    coordinate: Coordinate,
    stable_id: str | None = None,
    precision: int = 4,
) -> str:
    """Return the cache key for *coordinate*, optionally scoped by *stable_id*.

    Coordinates are rounded to *precision* decimal places (4 ≈ 11m). The
    coordinate is always part of the key; a stable entity id narrows the
    partition but never joins two different coordinates into one.
    """
    if precision < 0:
        raise ValueError("precision must be non-negative")
    lat = _canonical(coordinate.lat, precision)
    lng = _canonical(coordinate.lng, precision)
    point = f"{lat},{lng}"
    if stable_id:
        return f"{stable_id}@{point}"
    return point
