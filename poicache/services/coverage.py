"""Split a collection request into cached-and-fresh vs. missing."""

from __future__ import annotations

from typing import Iterable

from poicache.models import CollectionId, CoverageResult, RecordBundle
from poicache.services.freshness import is_valid


def resolve(
    bundle: RecordBundle | None,
    requested: Iterable[CollectionId],
    ttl_millis: int,
    now: int,
) -> CoverageResult:
    """Partition *requested* against *bundle*.

    Every requested collection lands in exactly one of ``covered`` (a valid
    record exists) or ``missing``. Duplicates in *requested* collapse.
    """
    wanted = frozenset(requested)
    if bundle is None:
        return CoverageResult(covered=RecordBundle(), missing=wanted)

    covered = {}
    missing = set()
    for collection in wanted:
        record = bundle.get(collection)
        if is_valid(record, ttl_millis, now):
            covered[collection] = record
        else:
            missing.add(collection)

    return CoverageResult(
        covered=RecordBundle(records=covered),
        missing=frozenset(missing),
    )
