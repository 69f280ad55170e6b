"""Candidate type, reranker protocol and reranker errors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence, runtime_checkable


@dataclass(frozen=True)
class Candidate:
    """A document to be reranked."""

    chunk_id: str
    memory_id: str = ""
    content: str = ""
    score: float = 0.0  # fused score from reciprocal rank fusion


class RerankError(Exception):
    """Base class for reranker failures."""


class RetryableError(RerankError):
    """A transient failure, such as an HTTP 5xx or a network error."""


class NonRetryableError(RerankError):
    """A permanent failure, such as an HTTP 4xx."""


@runtime_checkable
class Reranker(Protocol):
    """Reorders candidates by relevance to a query."""

    def rerank(self, query: str, candidates: Sequence[Candidate]) -> list[Candidate]:
        """Return the candidates in order of decreasing relevance to ``query``."""