"""Memory ingestion: chunk the content, persist metadata, index vectors, write the graph."""

from __future__ import annotations

import contextlib
import hashlib
import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol, Sequence, runtime_checkable

from engram.graph import ChunkNode, GraphStore, NopGraphStore, SequentialEdge
from engram.postgres import Chunk, DuplicateError, Memory, MetaStore
from engram.qdrant import Point, VectorStore

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "default"
DEFAULT_GRAPH_WORKERS = 4
DEFAULT_GRAPH_QUEUE = 256
_EDGE_DELAY = 0.2

GraphJob = Callable[[threading.Event], None]

_STOP = object()


@dataclass
class TextChunk:
    """A piece of content produced by a chunker, with its embedding."""

    content: str
    emb_vec: list[float] = field(default_factory=list)


@runtime_checkable
class Chunker(Protocol):
    """Splits text into embedded chunks."""

    def chunk(self, text: str) -> Sequence[TextChunk]:
        """Return the chunks of ``text`` in order."""


@dataclass
class StoreInput:
    """Content to ingest. An empty ``user_id`` selects the default user."""

    content: str
    user_id: str = ""
    source: str = ""
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class StoreResult:
    """Outcome of a store call; ``stored`` is false when every chunk was a duplicate."""

    memory_id: str = ""
    chunks_stored: int = 0
    chunks_deduped: int = 0
    stored: bool = False


@dataclass
class IngestorOptions:
    """Optional wiring; zero or None values select the defaults."""

    graph: GraphStore | None = None
    logger: logging.Logger | None = None
    graph_workers: int = 0
    graph_queue: int = 0


def new_uuid() -> str:
    """Return a random version 4 UUID string."""
    return str(uuid.uuid4())


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


class Ingestor:
    """Orchestrates ingestion: chunk, metadata, vectors, then best-effort graph writes.

    Graph writes run on a bounded pool of worker threads. Dispatch never blocks;
    when the queue is full the job is dropped and counted.
    """

    def __init__(
        self,
        meta: MetaStore,
        vec: VectorStore,
        chunker: Chunker,
        options: IngestorOptions | None = None,
    ) -> None:
        opts = options if options is not None else IngestorOptions()
        self._meta = meta
        self._vec = vec
        self._chunker = chunker
        self._graph: GraphStore = opts.graph if opts.graph is not None else NopGraphStore()
        self._logger = opts.logger if opts.logger is not None else logger
        workers = opts.graph_workers if opts.graph_workers > 0 else DEFAULT_GRAPH_WORKERS
        size = opts.graph_queue if opts.graph_queue > 0 else DEFAULT_GRAPH_QUEUE

        self._jobs: queue.Queue[Any] = queue.Queue(maxsize=size)
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._closed = False
        self._graph_drops = 0
        self._workers = [
            threading.Thread(target=self._work, name=f"graph-worker-{i}", daemon=True)
            for i in range(workers)
        ]
        for worker in self._workers:
            worker.start()

    def __enter__(self) -> Ingestor:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def graph_drops(self) -> int:
        """Number of graph jobs dropped because the queue was full or closed."""
        with self._lock:
            return self._graph_drops

    def _work(self) -> None:
        while True:
            job = self._jobs.get()
            if job is _STOP or self._cancel.is_set():
                return
            try:
                job(self._cancel)
            except Exception:
                self._logger.exception("graph: job failed")

    def _dispatch(self, name: str, job: GraphJob) -> None:
        with self._lock:
            if not self._closed:
                try:
                    self._jobs.put_nowait(job)
                    return
                except queue.Full:
                    pass
            self._graph_drops += 1
        self._logger.warning("graph: dispatch dropped (queue full) op=%s", name)

    def close(self, timeout: float | None = None) -> None:
        """Drain the graph worker pool, waiting at most ``timeout`` seconds.

        Raises TimeoutError if the queued jobs do not finish in time; in-flight
        work is then told to stop.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            for _ in self._workers:
                try:
                    self._jobs.put(_STOP, timeout=_remaining(deadline))
                except queue.Full:
                    raise TimeoutError("graph workers did not finish in time") from None
            for worker in self._workers:
                worker.join(_remaining(deadline))
                if worker.is_alive():
                    raise TimeoutError("graph workers did not finish in time")
        finally:
            self._cancel.set()

    def delete(self, memory_id: str) -> None:
        """Delete a memory from the metadata store, then best-effort from the vector store."""
        self._meta.delete_memory(memory_id)
        try:
            self._vec.delete_by_memory_id(memory_id)
        except Exception as exc:
            logger.warning("qdrant delete failed (non-fatal) memory_id=%s err=%s", memory_id, exc)
        logger.info("memory deleted memory_id=%s", memory_id)

    def store(self, store_input: StoreInput) -> StoreResult:
        """Chunk, persist and index the content.

        Deduplication is all-or-nothing: when the metadata store reports that every
        chunk already exists, nothing is indexed and ``stored`` is false.
        """
        content = store_input.content.strip()
        user_id = store_input.user_id or DEFAULT_USER_ID

        chunks = list(self._chunker.chunk(content))
        if not chunks:
            return StoreResult()

        now = datetime.now(timezone.utc)
        memory_id = new_uuid()
        importance = min(0.3 + len(chunks) * 0.1, 1.0)

        self._meta.save_memory(
            Memory(
                id=memory_id,
                user_id=user_id,
                source=store_input.source,
                content=content,
                metadata=store_input.metadata,
                importance=importance,
                created_at=now,
                accessed_at=now,
            )
        )

        rows = [
            Chunk(
                id=new_uuid(),
                memory_id=memory_id,
                user_id=user_id,
                ord=ord_,
                content=piece.content,
                content_hash=hashlib.sha256(piece.content.encode("utf-8")).digest(),
                created_at=now,
            )
            for ord_, piece in enumerate(chunks)
        ]

        try:
            self._meta.save_chunks(rows)
        except DuplicateError:
            return StoreResult(
                memory_id=memory_id, chunks_stored=0, chunks_deduped=len(rows), stored=False
            )

        created_at = now.strftime("%Y-%m-%dT%H:%M:%SZ")
        points = [
            Point(
                id=row.id,
                vector=list(piece.emb_vec),
                payload={
                    "memory_id": memory_id,
                    "chunk_id": row.id,
                    "user_id": user_id,
                    "ord": row.ord,
                    "source": store_input.source,
                    "importance": importance,
                    "created_at": created_at,
                },
            )
            for row, piece in zip(rows, chunks)
        ]
        try:
            self._vec.upsert(points)
        except Exception:
            # Degraded path: leave the chunks for the reconciler to index later.
            for row in rows:
                with contextlib.suppress(Exception):
                    self._meta.enqueue_pending(row.id)

        self._dispatch_graph_writes(memory_id, user_id, store_input.source, rows, now)

        return StoreResult(
            memory_id=memory_id, chunks_stored=len(rows), chunks_deduped=0, stored=True
        )

    def _dispatch_graph_writes(
        self,
        memory_id: str,
        user_id: str,
        source: str,
        rows: Sequence[Chunk],
        now: datetime,
    ) -> None:
        for row in rows:
            node = ChunkNode(
                id=row.id,
                memory_id=memory_id,
                user_id=user_id,
                source=source,
                ord=row.ord,
                created_at=now,
            )
            self._dispatch("write_chunk", self._chunk_job(node))

        if len(rows) > 1:
            edges = [
                SequentialEdge(prev_id=prev.id, next_id=nxt.id, user_id=user_id)
                for prev, nxt in zip(rows, rows[1:])
            ]
            self._dispatch("write_next_edges", self._edges_job(memory_id, edges))

    def _chunk_job(self, node: ChunkNode) -> GraphJob:
        def job(cancel: threading.Event) -> None:
            try:
                self._graph.write_chunk_and_of(node)
            except Exception as exc:
                self._logger.warning("graph: write chunk failed chunk_id=%s err=%s", node.id, exc)

        return job

    def _edges_job(self, memory_id: str, edges: list[SequentialEdge]) -> GraphJob:
        def job(cancel: threading.Event) -> None:
            # Give the chunk writes a moment to land; the edge write is a no-op
            # for chunks that are not there yet.
            if cancel.wait(_EDGE_DELAY):
                return
            try:
                self._graph.write_sequential_edges(edges)
            except Exception as exc:
                self._logger.warning(
                    "graph: write sequential edges failed memory_id=%s count=%d err=%s",
                    memory_id,
                    len(edges),
                    exc,
                )

        return job