"""Metadata store: memories, chunks, full-text search and the pending-vector queue."""

from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator, Protocol, Sequence, runtime_checkable


class DuplicateError(Exception):
    """Every chunk in a batch already exists (deduplicated by content hash)."""

    def __init__(self, message: str = "duplicate chunk") -> None:
        super().__init__(message)


class MemoryNotFoundError(LookupError):
    """The memory to delete does not exist."""


@dataclass
class Memory:
    """A stored memory record."""

    id: str
    user_id: str
    source: str
    content: str
    metadata: dict[str, Any] | None = None
    importance: float = 0.0
    created_at: datetime | None = None
    accessed_at: datetime | None = None
    access_count: int = 0


@dataclass
class Chunk:
    """A chunk of a memory, indexed for full-text and vector search."""

    id: str
    memory_id: str
    user_id: str
    ord: int
    content: str
    content_hash: bytes = b""
    created_at: datetime | None = None


@dataclass(frozen=True)
class BM25Result:
    """A single full-text search hit."""

    chunk_id: str
    memory_id: str
    content: str
    rank: float


@dataclass
class UserState:
    """Aggregate statistics for a user."""

    memory_count: int = 0
    chunk_count: int = 0
    first_memory: datetime | None = None
    last_memory: datetime | None = None
    top_sources: list[str] = field(default_factory=list)


@dataclass
class PendingVector:
    """A chunk waiting for its vector to be indexed."""

    chunk_id: str
    attempts: int = 0
    last_error: str = ""
    enqueued_at: datetime | None = None


@runtime_checkable
class MetaStore(Protocol):
    """Persistent metadata operations."""

    def save_memory(self, memory: Memory) -> None: ...

    def save_chunks(self, chunks: Sequence[Chunk]) -> None: ...

    def search_bm25(self, user_id: str, query: str, k: int) -> list[BM25Result]: ...

    def get_user_state(self, user_id: str) -> UserState: ...

    def enqueue_pending(self, chunk_id: str) -> None: ...

    def drain_pending(self, limit: int) -> list[PendingVector]: ...

    def delete_pending(self, chunk_id: str) -> None: ...

    def get_chunks_by_ids(self, ids: Sequence[str]) -> list[Chunk]: ...

    def delete_memory(self, memory_id: str) -> None: ...

    def close(self) -> None: ...


_SAVE_MEMORY = """
    INSERT INTO memories(id, user_id, source, content, metadata, importance, created_at, accessed_at, access_count)
    VALUES(%(id)s, %(user_id)s, %(source)s, %(content)s, %(metadata)s, %(importance)s,
           %(created_at)s, %(accessed_at)s, %(access_count)s)
    ON CONFLICT (id) DO UPDATE
        SET accessed_at   = now(),
            access_count  = memories.access_count + 1"""

_SAVE_CHUNK = """
    INSERT INTO chunks(id, memory_id, user_id, ord, content, content_hash, created_at)
    VALUES(%(id)s, %(memory_id)s, %(user_id)s, %(ord)s, %(content)s, %(content_hash)s, %(created_at)s)
    ON CONFLICT (user_id, content_hash) DO NOTHING"""

_SEARCH_BM25 = """
    SELECT id, memory_id, content,
           ts_rank(tsv, plainto_tsquery('english', %(query)s)) AS rank
    FROM   chunks
    WHERE  user_id = %(user_id)s
      AND  tsv @@ plainto_tsquery('english', %(query)s)
    ORDER BY rank DESC
    LIMIT %(k)s"""

_USER_COUNTS = """
    SELECT
        (SELECT COUNT(*) FROM memories WHERE user_id=%(user_id)s),
        (SELECT COUNT(*) FROM chunks   WHERE user_id=%(user_id)s),
        (SELECT MIN(created_at) FROM memories WHERE user_id=%(user_id)s),
        (SELECT MAX(created_at) FROM memories WHERE user_id=%(user_id)s)"""

_TOP_SOURCES = """
    SELECT source
    FROM   memories
    WHERE  user_id=%(user_id)s AND source IS NOT NULL
    GROUP BY source
    ORDER BY COUNT(*) DESC
    LIMIT 5"""

_ENQUEUE_PENDING = """
    INSERT INTO pending_vectors(chunk_id)
    VALUES(%(chunk_id)s)
    ON CONFLICT DO NOTHING"""

_DRAIN_PENDING = """
    SELECT chunk_id, attempts, COALESCE(last_error, ''), enqueued_at
    FROM   pending_vectors
    ORDER BY enqueued_at
    LIMIT  %(limit)s
    FOR UPDATE SKIP LOCKED"""

_DELETE_PENDING = "DELETE FROM pending_vectors WHERE chunk_id=%(chunk_id)s"

_GET_CHUNKS = """SELECT id, memory_id, user_id, ord, content, content_hash, created_at
     FROM chunks WHERE id IN ({placeholders})"""

_DELETE_CHUNKS = "DELETE FROM chunks WHERE memory_id = %(memory_id)s"
_DELETE_MEMORY = "DELETE FROM memories WHERE id = %(memory_id)s RETURNING id"


class PostgresMetaStore:
    """MetaStore over a DB-API connection to PostgreSQL using the pyformat paramstyle."""

    def __init__(self, connection: Any) -> None:
        self._conn = connection

    def __enter__(self) -> PostgresMetaStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        cursor = self._conn.cursor()
        try:
            yield cursor
        except BaseException:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()
        finally:
            cursor.close()

    def save_memory(self, memory: Memory) -> None:
        """Insert a memory, or bump accessed_at and access_count if it exists."""
        metadata = None if memory.metadata is None else json.dumps(memory.metadata)
        with self._transaction() as cur:
            cur.execute(
                _SAVE_MEMORY,
                {
                    "id": memory.id,
                    "user_id": memory.user_id,
                    "source": memory.source,
                    "content": memory.content,
                    "metadata": metadata,
                    "importance": memory.importance,
                    "created_at": memory.created_at,
                    "accessed_at": memory.accessed_at,
                    "access_count": memory.access_count,
                },
            )

    def save_chunks(self, chunks: Sequence[Chunk]) -> None:
        """Insert chunks, skipping duplicates by (user_id, content_hash).

        Raises DuplicateError if nothing was inserted.
        """
        if not chunks:
            return
        inserted = 0
        with self._transaction() as cur:
            for chunk in chunks:
                cur.execute(
                    _SAVE_CHUNK,
                    {
                        "id": chunk.id,
                        "memory_id": chunk.memory_id,
                        "user_id": chunk.user_id,
                        "ord": chunk.ord,
                        "content": chunk.content,
                        "content_hash": chunk.content_hash,
                        "created_at": chunk.created_at,
                    },
                )
                inserted += max(cur.rowcount, 0)
        if inserted == 0:
            raise DuplicateError()

    def search_bm25(self, user_id: str, query: str, k: int) -> list[BM25Result]:
        """Full-text search over the user's chunks, best rank first."""
        with self._transaction() as cur:
            cur.execute(_SEARCH_BM25, {"user_id": user_id, "query": query, "k": k})
            rows = cur.fetchall()
        return [
            BM25Result(chunk_id=cid, memory_id=mid, content=content, rank=float(rank))
            for cid, mid, content, rank in rows
        ]

    def get_user_state(self, user_id: str) -> UserState:
        """Return memory and chunk counts, first/last memory times and top five sources."""
        params = {"user_id": user_id}
        with self._transaction() as cur:
            cur.execute(_USER_COUNTS, params)
            memory_count, chunk_count, first, last = cur.fetchone()
            cur.execute(_TOP_SOURCES, params)
            sources = [row[0] for row in cur.fetchall()]
        return UserState(
            memory_count=memory_count,
            chunk_count=chunk_count,
            first_memory=first,
            last_memory=last,
            top_sources=sources,
        )

    def enqueue_pending(self, chunk_id: str) -> None:
        """Add a chunk to the pending-vector queue."""
        with self._transaction() as cur:
            cur.execute(_ENQUEUE_PENDING, {"chunk_id": chunk_id})

    def drain_pending(self, limit: int) -> list[PendingVector]:
        """Return up to ``limit`` pending vectors, oldest first."""
        with self._transaction() as cur:
            cur.execute(_DRAIN_PENDING, {"limit": limit})
            rows = cur.fetchall()
        return [
            PendingVector(chunk_id=cid, attempts=attempts, last_error=last_error, enqueued_at=when)
            for cid, attempts, last_error, when in rows
        ]

    def delete_pending(self, chunk_id: str) -> None:
        """Remove a chunk from the pending-vector queue."""
        with self._transaction() as cur:
            cur.execute(_DELETE_PENDING, {"chunk_id": chunk_id})

    def get_chunks_by_ids(self, ids: Sequence[str]) -> list[Chunk]:
        """Fetch chunks by id, in arbitrary order; missing ids are skipped."""
        if not ids:
            return []
        params = {f"id{i}": chunk_id for i, chunk_id in enumerate(ids)}
        placeholders = ",".join(f"%({name})s" for name in params)
        with self._transaction() as cur:
            cur.execute(_GET_CHUNKS.format(placeholders=placeholders), params)
            rows = cur.fetchall()
        return [
            Chunk(
                id=cid,
                memory_id=mid,
                user_id=uid,
                ord=ord_,
                content=content,
                content_hash=bytes(content_hash) if content_hash is not None else b"",
                created_at=created_at,
            )
            for cid, mid, uid, ord_, content, content_hash, created_at in rows
        ]

    def delete_memory(self, memory_id: str) -> None:
        """Delete a memory and its chunks atomically.

        Raises MemoryNotFoundError if the memory does not exist.
        """
        params = {"memory_id": memory_id}
        with self._transaction() as cur:
            cur.execute(_DELETE_CHUNKS, params)
            cur.execute(_DELETE_MEMORY, params)
            if cur.fetchone() is None:
                raise MemoryNotFoundError(f"memory not found: {memory_id}")

    def close(self) -> None:
        """Close the underlying connection."""
        self._conn.close()