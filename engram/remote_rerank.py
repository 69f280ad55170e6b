"""Reranker backed by a Cohere-style rerank HTTP API."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Sequence

import httpx

from engram.rerank import Candidate, NonRetryableError, RerankError, RetryableError

DEFAULT_TIMEOUT = 5.0


@dataclass
class RemoteConfig:
    """Settings for the remote reranker. An empty ``base_url`` disables it."""

    base_url: str = ""
    api_key: str = ""
    model: str = ""
    timeout: float = 0.0  # seconds; zero selects the default


class RemoteReranker:
    """Reorders candidates by relevance scores from a remote rerank API."""

    def __init__(self, config: RemoteConfig, client: httpx.Client | None = None) -> None:
        self.config = config
        self._timeout = config.timeout if config.timeout > 0 else DEFAULT_TIMEOUT
        self._owns_client = client is None
        self._client = (
            client
            if client is not None
            else httpx.Client(timeout=self._timeout, follow_redirects=True)
        )

    def __enter__(self) -> RemoteReranker:
        return self

    def __exit__(self, *exc_info) -> None:
        if self._owns_client:
            self._client.close()

    def rerank(self, query: str, candidates: Sequence[Candidate]) -> list[Candidate]:
        """Return candidates ordered by remote relevance score.

        Raises RetryableError on network failures and HTTP 5xx, NonRetryableError
        on HTTP 4xx and RerankError on an unreadable response.
        """
        items = list(candidates)
        if not self.config.base_url:
            return items
        if not items:
            return []

        headers = {}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        try:
            response = self._client.post(
                f"{self.config.base_url}/rerank",
                json={
                    "model": self.config.model,
                    "query": query,
                    "documents": [c.content for c in items],
                },
                headers=headers,
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise RetryableError(f"retryable rerank error: {exc}") from exc

        status = response.status_code
        if 400 <= status < 500:
            raise NonRetryableError(f"non-retryable rerank error: HTTP {status}")
        if status >= 500:
            raise RetryableError(f"retryable rerank error: HTTP {status}")

        try:
            results = _parse_results(response.content)
        except ValueError as exc:
            raise RerankError(f"rerank unmarshal: {exc}") from exc

        scored = [(items[index], score) for index, score in results if 0 <= index < len(items)]
        scored.sort(key=lambda pair: -pair[1])
        return [candidate for candidate, _ in scored]


def _parse_results(body: bytes) -> list[tuple[int, float]]:
    data = json.loads(body)
    if not isinstance(data, dict):
        raise ValueError("response is not an object")
    results = data.get("results") or []
    if not isinstance(results, list):
        raise ValueError("results is not an array")

    parsed = []
    for item in results:
        if not isinstance(item, dict):
            raise ValueError("result item is not an object")
        index = item.get("index", 0)
        score = item.get("relevance_score", 0.0)
        if isinstance(index, bool) or not isinstance(index, int):
            raise ValueError(f"invalid index {index!r}")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise ValueError(f"invalid relevance_score {score!r}")
        parsed.append((index, float(score)))
    return parsed