"""External data source boundary and its HTTP implementation."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol, Sequence

import httpx

from poicache.config import Settings
from poicache.exceptions import DataSourceError
from poicache.models import CollectionId, Coordinate

logger = logging.getLogger(__name__)

RawItem = dict[str, Any]


class DataSource(Protocol):
    """Anything that can answer "collections X, Y around point C".

    Implementations return one list of raw items per collection and raise
    on failure; an empty list means "no results", never "failed".
    """

    async def query(
        self,
        coordinate: Coordinate,
        collections: Sequence[CollectionId],
    ) -> Mapping[CollectionId, list[RawItem]]: ...


def _parse_detail(response: httpx.Response) -> str:
    """Extract the ``detail`` field from a JSON error body."""
    try:
        body = response.json()
        return body.get("detail", response.text)
    except Exception:
        return response.text


def _parse_results(body: Any, status_code: int) -> dict[CollectionId, list[RawItem]]:
    """Turn ``{"results": [{"collection": id, "items": [...]}, ...]}`` into a
    mapping, raising ``DataSourceError`` if the body has another shape."""
    if not isinstance(body, dict) or not isinstance(body.get("results"), list):
        raise DataSourceError(status_code, "response body has no 'results' list")

    results: dict[CollectionId, list[RawItem]] = {}
    for entry in body["results"]:
        if not isinstance(entry, dict):
            raise DataSourceError(status_code, "result entry is not an object")
        collection = entry.get("collection")
        items = entry.get("items")
        if not isinstance(collection, str) or not isinstance(items, list):
            raise DataSourceError(status_code, "result entry needs 'collection' and 'items'")
        results[collection] = items
    return results


class HttpDataSource:
    """Queries the collections endpoint of the location backend
    (backed by ``httpx.AsyncClient``)."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 15.0,
        *,
        path: str = "/v1/collections",
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers: dict[str, str] = {}
        if api_key:
            headers["X-API-Key"] = api_key
        kwargs: dict[str, Any] = {
            "base_url": base_url,
            "headers": headers,
            "timeout": timeout,
        }
        if _transport is not None:
            kwargs["transport"] = _transport
        self._client = httpx.AsyncClient(**kwargs)
        self._path = path

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpDataSource:
        return cls(
            settings.source_url,
            api_key=settings.source_api_key or None,
            timeout=settings.source_timeout,
        )

    # -- context manager -----------------------------------------------------

    async def __aenter__(self) -> HttpDataSource:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    # -- public methods ------------------------------------------------------

    async def query(
        self,
        coordinate: Coordinate,
        collections: Sequence[CollectionId],
    ) -> dict[CollectionId, list[RawItem]]:
        payload = {
            "lat": coordinate.lat,
            "lng": coordinate.lng,
            "collections": list(collections),
        }
        resp = await self._client.post(self._path, json=payload)
        if resp.status_code >= 400:
            raise DataSourceError(resp.status_code, _parse_detail(resp))
        try:
            body = resp.json()
        except ValueError as exc:
            raise DataSourceError(resp.status_code, "response body is not JSON") from exc

        results = _parse_results(body, resp.status_code)
        logger.debug(
            "Data source returned %d collection(s) for %s",
            len(results), ",".join(collections),
        )
        return results
