"""Hybrid retrieval: vector and full-text search, fusion, graph expansion and reranking."""

from __future__ import annotations

import dataclasses
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Sequence, runtime_checkable

from engram.graph import ExpandOptions, GraphStore
from engram.postgres import BM25Result, MetaStore
from engram.qdrant import SearchResult, VectorStore
from engram.rerank import Candidate, Reranker

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "default"
DEFAULT_VECTOR_K = 20
DEFAULT_BM25_K = 20
DEFAULT_RERANK_K = 20
DEFAULT_FINAL_K = 5
DEFAULT_RRF_K = 60.0
DEFAULT_VECTOR_FLOOR = 0.25
GRAPH_EXPAND_DEPTH = 1
GRAPH_MAX_EXPAND = 10


@runtime_checkable
class Embedder(Protocol):
    """Turns query texts into embedding vectors."""

    def embed_query(self, texts: Sequence[str]) -> list[list[float]]:
        """Return one vector per text, in order."""


@dataclass(frozen=True)
class VecHit:
    """A vector search hit prepared for fusion."""

    chunk_id: str
    memory_id: str
    score: float
    payload: dict[str, Any] | None = None


@dataclass(frozen=True)
class BM25Hit:
    """A full-text search hit prepared for fusion."""

    chunk_id: str
    memory_id: str
    content: str
    rank: float


@dataclass(frozen=True)
class FusedResult:
    """A chunk after fusing the vector and full-text rankings."""

    chunk_id: str
    memory_id: str = ""
    content: str = ""
    score: float = 0.0
    payload: dict[str, Any] | None = None


@dataclass(frozen=True)
class FusionConfig:
    """Parameters handed to the fusion function."""

    k: float
    vector_floor: float
    bm25_k: int


FuseFn = Callable[[FusionConfig, Sequence[VecHit], Sequence[BM25Hit]], Sequence[FusedResult]]


@dataclass
class RetrieveInput:
    """A retrieval query; empty ``user_id`` and non-positive ``k`` select the defaults."""

    query: str
    user_id: str = ""
    k: int = 0
    rerank: bool = False


@dataclass(frozen=True)
class RetrieveResult:
    """A single retrieved memory chunk."""

    memory_id: str
    chunk_id: str
    content: str
    score: float
    source: str = ""
    created_at: str = ""


@dataclass
class RetrieveStats:
    """Timings in milliseconds and diagnostic flags."""

    vec_ms: int = 0
    bm25_ms: int = 0
    fusion_ms: int = 0
    rerank_ms: int = 0
    total_ms: int = 0
    rerank_skipped: bool = False
    degraded: bool = False


@dataclass
class RetrieveResponse:
    """Results of a retrieval with their statistics."""

    results: list[RetrieveResult] = field(default_factory=list)
    stats: RetrieveStats = field(default_factory=RetrieveStats)


@dataclass
class RetrieverConfig:
    """Retrieval parameters; non-positive values select the defaults."""

    vector_k: int = DEFAULT_VECTOR_K
    bm25_k: int = DEFAULT_BM25_K
    rerank_k: int = DEFAULT_RERANK_K
    final_k: int = DEFAULT_FINAL_K
    rrf_k: float = DEFAULT_RRF_K
    vector_floor: float = DEFAULT_VECTOR_FLOOR


def _with_defaults(config: RetrieverConfig) -> RetrieverConfig:
    return dataclasses.replace(
        config,
        vector_k=config.vector_k if config.vector_k > 0 else DEFAULT_VECTOR_K,
        bm25_k=config.bm25_k if config.bm25_k > 0 else DEFAULT_BM25_K,
        rerank_k=config.rerank_k if config.rerank_k > 0 else DEFAULT_RERANK_K,
        final_k=config.final_k if config.final_k > 0 else DEFAULT_FINAL_K,
        rrf_k=config.rrf_k if config.rrf_k > 0 else DEFAULT_RRF_K,
        vector_floor=config.vector_floor if config.vector_floor > 0 else DEFAULT_VECTOR_FLOOR,
    )


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _payload_str(payload: dict[str, Any] | None, key: str) -> str:
    if payload is None:
        return ""
    value = payload.get(key)
    return value if isinstance(value, str) else ""


class Retriever:
    """Orchestrates hybrid retrieval. ``reranker`` and ``graph`` may be None."""

    def __init__(
        self,
        meta: MetaStore,
        vec: VectorStore,
        embedder: Embedder,
        fuse: FuseFn,
        reranker: Reranker | None = None,
        graph: GraphStore | None = None,
        config: RetrieverConfig | None = None,
    ) -> None:
        self._meta = meta
        self._vec = vec
        self._embedder = embedder
        self._fuse = fuse
        self._reranker = reranker
        self._graph = graph
        self.config = _with_defaults(config if config is not None else RetrieverConfig())

    def _search_vectors(
        self, query_vec: list[float], user_id: str
    ) -> tuple[list[SearchResult], int, bool]:
        start = time.perf_counter()
        try:
            results = list(self._vec.search(query_vec, self.config.vector_k, user_id))
        except Exception as exc:
            logger.warning("vector search failed (degraded): %s", exc)
            return [], _elapsed_ms(start), True
        return results, _elapsed_ms(start), False

    def _search_bm25(self, user_id: str, query: str) -> tuple[list[BM25Result], int]:
        start = time.perf_counter()
        try:
            results = list(self._meta.search_bm25(user_id, query, self.config.bm25_k) or [])
        except Exception as exc:
            raise RuntimeError(f"bm25 search: {exc}") from exc
        return results, _elapsed_ms(start)

    def retrieve(self, retrieve_input: RetrieveInput) -> RetrieveResponse:
        """Run hybrid retrieval for the query.

        Raises RuntimeError when embedding or full-text search fails; a vector
        search failure only marks the response as degraded.
        """
        start = time.perf_counter()
        user_id = retrieve_input.user_id or DEFAULT_USER_ID
        final_k = retrieve_input.k if retrieve_input.k > 0 else self.config.final_k
        stats = RetrieveStats()

        embed_start = time.perf_counter()
        try:
            vectors = self._embedder.embed_query([retrieve_input.query])
        except Exception as exc:
            raise RuntimeError(f"embed query: {exc}") from exc
        if not vectors:
            raise RuntimeError("embed returned no vectors")
        query_vec = list(vectors[0])
        embed_ms = _elapsed_ms(embed_start)

        with ThreadPoolExecutor(max_workers=2) as pool:
            vec_future = pool.submit(self._search_vectors, query_vec, user_id)
            bm25_future = pool.submit(self._search_bm25, user_id, retrieve_input.query)
            vec_res, vec_ms, degraded = vec_future.result()
            bm25_res, bm25_ms = bm25_future.result()
        stats.vec_ms = vec_ms + embed_ms
        stats.bm25_ms = bm25_ms
        stats.degraded = degraded

        vec_hits = [
            VecHit(
                chunk_id=hit.id,
                memory_id=_payload_str(hit.payload, "memory_id"),
                score=hit.score,
                payload=hit.payload,
            )
            for hit in vec_res
        ]
        bm25_hits = [
            BM25Hit(chunk_id=b.chunk_id, memory_id=b.memory_id, content=b.content, rank=b.rank)
            for b in bm25_res
        ]

        fusion_start = time.perf_counter()
        fused = list(
            self._fuse(
                FusionConfig(
                    k=self.config.rrf_k,
                    vector_floor=self.config.vector_floor,
                    bm25_k=self.config.bm25_k,
                ),
                vec_hits,
                bm25_hits,
            )
        )
        stats.fusion_ms = _elapsed_ms(fusion_start)

        if self._graph is not None and fused:
            fused.extend(self._expand(fused, retrieve_input.user_id))

        candidates = [
            Candidate(chunk_id=f.chunk_id, memory_id=f.memory_id, content=f.content, score=f.score)
            for f in fused
        ]

        if self._reranker is None or not retrieve_input.rerank or len(candidates) <= final_k:
            stats.rerank_skipped = True
        else:
            rerank_start = time.perf_counter()
            try:
                reranked = list(
                    self._reranker.rerank(
                        retrieve_input.query, candidates[: self.config.rerank_k]
                    )
                )
            except Exception as exc:
                logger.warning("rerank failed, keeping fused order: %s", exc)
                stats.rerank_skipped = True
            else:
                candidates = reranked
            stats.rerank_ms = _elapsed_ms(rerank_start)

        fused_by_id = {f.chunk_id: f for f in fused}
        candidates = candidates[:final_k]
        hydrated = self._hydrate(
            [
                c.chunk_id
                for c in candidates
                if not (c.content or self._fused_content(fused_by_id, c.chunk_id))
            ]
        )

        results = []
        for c in candidates:
            entry = fused_by_id.get(c.chunk_id)
            payload = entry.payload if entry is not None else None
            content = (
                c.content
                or self._fused_content(fused_by_id, c.chunk_id)
                or hydrated.get(c.chunk_id, "")
            )
            results.append(
                RetrieveResult(
                    memory_id=c.memory_id,
                    chunk_id=c.chunk_id,
                    content=content,
                    score=c.score,
                    source=_payload_str(payload, "source"),
                    created_at=_payload_str(payload, "created_at"),
                )
            )

        stats.total_ms = _elapsed_ms(start)
        return RetrieveResponse(results=results, stats=stats)

    @staticmethod
    def _fused_content(fused_by_id: dict[str, FusedResult], chunk_id: str) -> str:
        entry = fused_by_id.get(chunk_id)
        return entry.content if entry is not None else ""

    def _expand(self, fused: Sequence[FusedResult], user_id: str) -> list[FusedResult]:
        ids = [f.chunk_id for f in fused]
        seen = set(ids)
        try:
            expanded = self._graph.expand_related_with_options(
                ids,
                GRAPH_EXPAND_DEPTH,
                ExpandOptions(user_id=user_id, max_expand=GRAPH_MAX_EXPAND),
            )
        except Exception as exc:
            logger.warning("graph expansion failed: %s", exc)
            return []
        extra = []
        for chunk_id in expanded:
            if chunk_id in seen:
                continue
            seen.add(chunk_id)
            extra.append(FusedResult(chunk_id=chunk_id, score=0.0))
        return extra

    def _hydrate(self, missing_ids: list[str]) -> dict[str, str]:
        if not missing_ids:
            return {}
        try:
            chunks = self._meta.get_chunks_by_ids(missing_ids)
        except Exception as exc:
            logger.warning("content hydration failed: %s", exc)
            return {}
        return {chunk.id: chunk.content for chunk in chunks or []}