"""Graph of chunks and memories, stored through a Cypher query runner."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Protocol, Sequence, runtime_checkable

SCHEMA_STATEMENTS = (
    "CREATE CONSTRAINT chunk_id IF NOT EXISTS FOR (c:Chunk) REQUIRE c.id IS UNIQUE",
    "CREATE CONSTRAINT memory_id IF NOT EXISTS FOR (m:Memory) REQUIRE m.id IS UNIQUE",
    "CREATE INDEX chunk_user IF NOT EXISTS FOR (c:Chunk) ON (c.user_id)",
    "CREATE INDEX chunk_user_created IF NOT EXISTS FOR (c:Chunk) ON (c.user_id, c.created_at)",
)

_WRITE_CHUNK = """
MERGE (m:Memory {id: $memory_id})
  ON CREATE SET m.user_id = $user_id, m.source = $source, m.created_at = $created_at
MERGE (c:Chunk {id: $chunk_id})
  ON CREATE SET c.memory_id = $memory_id, c.user_id = $user_id, c.ord = $ord, c.created_at = $created_at
  ON MATCH  SET c.ord = $ord
MERGE (c)-[:OF]->(m)
"""

_WRITE_NEXT = """
UNWIND $edges AS e
MATCH (prev:Chunk {id: e.prev_id})
MATCH (next:Chunk {id: e.next_id})
WHERE prev.user_id = e.user_id AND next.user_id = e.user_id
MERGE (prev)-[:NEXT]->(next)
"""

_WRITE_SIMILAR = """
MATCH (a:Chunk {id: $a_id})
MATCH (b:Chunk {id: $b_id})
WHERE a.user_id = $user_id AND b.user_id = $user_id
MERGE (a)-[r:SIMILAR]->(b)
  ON CREATE SET r.score = $score
  ON MATCH  SET r.score = $score
"""

_EXPAND = """
UNWIND $ids AS sid
MATCH (c:Chunk {id: sid})
MATCH (c)-[:NEXT|SIMILAR]-(r:Chunk)
WHERE r.id <> c.id
"""


@dataclass(frozen=True)
class ChunkNode:
    """A chunk node and the memory it belongs to."""

    id: str
    memory_id: str
    user_id: str
    source: str
    ord: int
    created_at: datetime


@dataclass(frozen=True)
class SequentialEdge:
    """A NEXT edge between consecutive chunks."""

    prev_id: str
    next_id: str
    user_id: str


@dataclass(frozen=True)
class SimilarEdge:
    """A SIMILAR edge between two chunks, carrying a score."""

    a_id: str
    b_id: str
    user_id: str
    score: float


@dataclass(frozen=True)
class ExpandOptions:
    """Scope for expansion: an empty user_id is unscoped, max_expand <= 0 is unlimited."""

    user_id: str = ""
    max_expand: int = 0


@runtime_checkable
class GraphStore(Protocol):
    """Graph write and expansion operations."""

    def write_chunk_and_of(self, node: ChunkNode) -> None: ...

    def write_sequential_edges(self, edges: Sequence[SequentialEdge]) -> None: ...

    def write_similar_edge(self, edge: SimilarEdge) -> None: ...

    def expand_related(self, ids: Sequence[str], depth: int) -> list[str]: ...

    def expand_related_with_options(
        self, ids: Sequence[str], depth: int, options: ExpandOptions
    ) -> list[str]: ...


class _CypherRunner(Protocol):
    def execute_write(self, cypher: str, params: Mapping[str, Any]) -> None: ...

    def execute_read(self, cypher: str, params: Mapping[str, Any]) -> Iterable[Mapping[str, Any]]: ...


class NopGraphStore:
    """A graph store that keeps nothing and expands to nothing.

    It counts what it discarded, in ``dropped_writes`` and ``empty_expansions``.
    """

    def __init__(self) -> None:
        self.dropped_writes = 0
        self.empty_expansions = 0

    def write_chunk_and_of(self, node: ChunkNode) -> None:
        self.dropped_writes += 1

    def write_sequential_edges(self, edges: Sequence[SequentialEdge]) -> None:
        self.dropped_writes += len(edges)

    def write_similar_edge(self, edge: SimilarEdge) -> None:
        self.dropped_writes += 1

    def expand_related(self, ids: Sequence[str], depth: int) -> list[str]:
        return self.expand_related_with_options(ids, depth, ExpandOptions())

    def expand_related_with_options(
        self, ids: Sequence[str], depth: int, options: ExpandOptions
    ) -> list[str]:
        self.empty_expansions += 1
        return []


def _format_time(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_expand_query(ids: Sequence[str], options: ExpandOptions) -> tuple[str, dict[str, Any]]:
    """Build the one-hop NEXT/SIMILAR expansion query and its parameters."""
    cypher = _EXPAND
    params: dict[str, Any] = {"ids": list(ids)}
    if options.user_id:
        cypher += "  AND r.user_id = $user_id AND c.user_id = $user_id\n"
        params["user_id"] = options.user_id
    cypher += "RETURN DISTINCT r.id AS id\n"
    if options.max_expand > 0:
        cypher += f"LIMIT {options.max_expand}\n"
    return cypher, params


class CypherGraphStore:
    """GraphStore that sends Cypher through a runner with execute_read and execute_write.

    Failures from the runner are raised as RuntimeError naming the operation.
    """

    def __init__(self, runner: _CypherRunner) -> None:
        self._runner = runner

    def _write(self, op: str, cypher: str, params: Mapping[str, Any]) -> None:
        try:
            self._runner.execute_write(cypher, params)
        except Exception as exc:
            raise RuntimeError(f"graph: {op}: {exc}") from exc

    def ensure_schema(self) -> None:
        """Apply the constraints and indexes; safe to repeat."""
        for statement in SCHEMA_STATEMENTS:
            self._write(f"schema {statement!r}", statement, {})

    def write_chunk_and_of(self, node: ChunkNode) -> None:
        """Merge the chunk, its memory and the OF edge between them."""
        self._write(
            "write_chunk_and_of",
            _WRITE_CHUNK,
            {
                "chunk_id": node.id,
                "memory_id": node.memory_id,
                "user_id": node.user_id,
                "source": node.source,
                "ord": node.ord,
                "created_at": _format_time(node.created_at),
            },
        )

    def write_sequential_edges(self, edges: Sequence[SequentialEdge]) -> None:
        """Merge NEXT edges between existing chunks in one transaction."""
        if not edges:
            return
        rows = [{"prev_id": e.prev_id, "next_id": e.next_id, "user_id": e.user_id} for e in edges]
        self._write("write_sequential_edges", _WRITE_NEXT, {"edges": rows})

    def write_similar_edge(self, edge: SimilarEdge) -> None:
        """Merge a SIMILAR edge, setting its score."""
        self._write(
            "write_similar_edge",
            _WRITE_SIMILAR,
            {"a_id": edge.a_id, "b_id": edge.b_id, "user_id": edge.user_id, "score": edge.score},
        )

    def expand_related(self, ids: Sequence[str], depth: int) -> list[str]:
        """Expand without user scoping or a cap."""
        return self.expand_related_with_options(ids, depth, ExpandOptions())

    def expand_related_with_options(
        self, ids: Sequence[str], depth: int, options: ExpandOptions
    ) -> list[str]:
        """Return ids of chunks one NEXT or SIMILAR hop from ``ids``; ``depth`` is ignored."""
        if not ids:
            return []
        cypher, params = build_expand_query(ids, options)
        try:
            rows = list(self._runner.execute_read(cypher, params))
        except Exception as exc:
            raise RuntimeError(f"graph: expand_related: {exc}") from exc
        return [row["id"] for row in rows if isinstance(row.get("id"), str)]