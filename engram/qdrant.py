"""Vector store over the Qdrant HTTP API."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable
from urllib.parse import quote

import httpx

DEFAULT_TIMEOUT = 10.0

_PORT = re.compile(r"\s*([+-]?\d+)")


@dataclass
class Point:
    """A vector point to store; ``id`` is the chunk's UUID string."""

    id: str
    vector: list[float]
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchResult:
    """A single vector search hit."""

    id: str
    score: float
    payload: dict[str, Any] | None = None


@runtime_checkable
class VectorStore(Protocol):
    """Vector storage operations."""

    def ensure_collection(self, dim: int) -> None: ...

    def upsert(self, points: Sequence[Point]) -> None: ...

    def search(self, vector: Sequence[float], k: int, user_id: str) -> list[SearchResult]: ...

    def delete_by_memory_id(self, memory_id: str) -> None: ...

    def close(self) -> None: ...


def parse_addr(addr: str) -> tuple[str, int]:
    """Split ``host:port`` at the last colon into host and integer port.

    Raises ValueError when there is no port or it is not a number.
    """
    host, colon, port_text = addr.rpartition(":")
    if not colon:
        raise ValueError("no port in address")
    match = _PORT.match(port_text)
    if match is None:
        raise ValueError(f"invalid port: {port_text!r}")
    return host, int(match.group(1))


def to_payload(values: Mapping[str, Any]) -> dict[str, Any]:
    """Check that every value is a string, bool, int, float or None.

    Raises TypeError naming the first field of another type.
    """
    out: dict[str, Any] = {}
    for key, value in values.items():
        if value is None or isinstance(value, (str, bool, int, float)):
            out[key] = value
        else:
            raise TypeError(f"field {key!r}: unsupported payload value type {type(value).__name__}")
    return out


def from_payload(payload: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Convert a stored payload back; values of unsupported kinds become None."""
    if payload is None:
        return None
    return {
        key: value if isinstance(value, (str, bool, int, float)) else None
        for key, value in payload.items()
    }


def _match(key: str, value: str) -> dict[str, Any]:
    return {"must": [{"key": key, "match": {"value": value}}]}


class QdrantVectorStore:
    """VectorStore backed by one Qdrant collection, using cosine distance."""

    def __init__(self, base_url: str, collection: str, client: httpx.Client | None = None) -> None:
        self.collection = collection
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=DEFAULT_TIMEOUT)

    def __enter__(self) -> QdrantVectorStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def _collection_url(self) -> str:
        return f"{self._base_url}/collections/{quote(self.collection, safe='')}"

    def _request(self, op: str, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"qdrant: {op}: {exc}") from exc
        if response.status_code >= 400:
            raise RuntimeError(f"qdrant: {op}: HTTP {response.status_code}: {response.text}")
        try:
            data = response.json()
        except ValueError as exc:
            raise RuntimeError(f"qdrant: {op}: invalid response: {exc}") from exc
        if not isinstance(data, dict):
            raise RuntimeError(f"qdrant: {op}: response is not an object")
        return data

    def ensure_collection(self, dim: int) -> None:
        """Create the collection if missing; otherwise check its vector size.

        Raises ValueError when an existing collection has a different dimension.
        """
        data = self._request("check collection", "GET", f"{self._collection_url}/exists")
        exists = bool((data.get("result") or {}).get("exists"))
        if not exists:
            self._request(
                "create collection",
                "PUT",
                self._collection_url,
                json={"vectors": {"size": dim, "distance": "Cosine"}},
            )
            return

        info = self._request("get collection info", "GET", self._collection_url)
        vectors = (
            ((info.get("result") or {}).get("config") or {}).get("params") or {}
        ).get("vectors")
        existing = 0
        if isinstance(vectors, dict) and isinstance(vectors.get("size"), int):
            existing = vectors["size"]
        if existing != dim:
            raise ValueError(
                f"qdrant: collection {self.collection!r} already exists with "
                f"dim={existing}, want dim={dim}"
            )

    def upsert(self, points: Sequence[Point]) -> None:
        """Insert or update a batch of points, waiting for the write to apply."""
        if not points:
            return
        body = []
        for point in points:
            try:
                payload = to_payload(point.payload)
            except TypeError as exc:
                raise TypeError(f"qdrant: encode payload for point {point.id!r}: {exc}") from exc
            body.append({"id": point.id, "vector": list(point.vector), "payload": payload})
        self._request(
            "upsert",
            "PUT",
            f"{self._collection_url}/points",
            params={"wait": "true"},
            json={"points": body},
        )

    def search(self, vector: Sequence[float], k: int, user_id: str) -> list[SearchResult]:
        """Return the top ``k`` points nearest to ``vector`` owned by ``user_id``."""
        data = self._request(
            "query",
            "POST",
            f"{self._collection_url}/points/query",
            json={
                "query": list(vector),
                "filter": _match("user_id", user_id),
                "limit": k,
                "with_payload": True,
            },
        )
        result = data.get("result") or {}
        points = result.get("points") if isinstance(result, dict) else result
        out = []
        for hit in points or []:
            point_id = hit.get("id")
            out.append(
                SearchResult(
                    id=point_id if isinstance(point_id, str) else "",
                    score=float(hit.get("score") or 0.0),
                    payload=from_payload(hit.get("payload")),
                )
            )
        return out

    def delete_by_memory_id(self, memory_id: str) -> None:
        """Remove every point whose payload ``memory_id`` equals ``memory_id``."""
        self._request(
            f"delete by memory_id {memory_id!r}",
            "POST",
            f"{self._collection_url}/points/delete",
            json={"filter": _match("memory_id", memory_id)},
        )

    def close(self) -> None:
        """Close the HTTP client if this store created it."""
        if self._owns_client:
            self._client.close()