import hashlib
import logging
import re
import threading

import pytest

from engram.graph import ChunkNode, SequentialEdge
from engram.ingestor import (
    Ingestor,
    IngestorOptions,
    StoreInput,
    StoreResult,
    TextChunk,
    new_uuid,
)
from engram.postgres import DuplicateError, MemoryNotFoundError


class SentenceChunker:
    """Puts every period-terminated sentence into its own chunk."""

    def chunk(self, text):
        sentences = [s.strip() for s in re.findall(r"[^.]+\.", text)]
        return [TextChunk(content=s, emb_vec=[float(ord(s[0])), 0.5]) for s in sentences if s]


class FakeMeta:
    def __init__(self, save_chunks_error=None, delete_error=None):
        self.saved_memory = None
        self.save_memory_calls = 0
        self.saved_chunks = []
        self.save_chunks_error = save_chunks_error
        self.delete_error = delete_error
        self.enqueued = []
        self.deleted = []

    def save_memory(self, memory):
        self.save_memory_calls += 1
        self.saved_memory = memory

    def save_chunks(self, chunks):
        self.saved_chunks.append(list(chunks))
        if self.save_chunks_error is not None:
            raise self.save_chunks_error

    def search_bm25(self, user_id, query, k):
        return []

    def get_user_state(self, user_id):
        return None

    def enqueue_pending(self, chunk_id):
        self.enqueued.append(chunk_id)

    def drain_pending(self, limit):
        return []

    def delete_pending(self, chunk_id):
        return None

    def get_chunks_by_ids(self, ids):
        return []

    def delete_memory(self, memory_id):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(memory_id)

    def close(self):
        return None


class FakeVec:
    def __init__(self, upsert_error=None, delete_error=None):
        self.upserted = []
        self.upsert_error = upsert_error
        self.delete_error = delete_error
        self.deleted = []

    def ensure_collection(self, dim):
        return None

    def upsert(self, points):
        self.upserted.append(list(points))
        if self.upsert_error is not None:
            raise self.upsert_error

    def search(self, vector, k, user_id):
        return []

    def delete_by_memory_id(self, memory_id):
        self.deleted.append(memory_id)
        if self.delete_error is not None:
            raise self.delete_error

    def close(self):
        return None


class RecordingGraph:
    def __init__(self, block=None):
        self.lock = threading.Lock()
        self.nodes = []
        self.edges = []
        self.block = block

    def write_chunk_and_of(self, node):
        if self.block is not None:
            self.block.wait(5)
        with self.lock:
            self.nodes.append(node)

    def write_sequential_edges(self, edges):
        with self.lock:
            self.edges.extend(edges)

    def write_similar_edge(self, edge):
        return None

    def expand_related(self, ids, depth):
        return []

    def expand_related_with_options(self, ids, depth, options):
        return []


def sentences(n):
    return " ".join(f"{chr(ord('a') + i % 26)}lpha bravo charlie delta echo." for i in range(n))


@pytest.fixture
def make_ingestor():
    created = []

    def factory(meta, vec, options=None):
        ing = Ingestor(meta, vec, SentenceChunker(), options)
        created.append(ing)
        return ing

    yield factory
    for ing in created:
        ing.close(timeout=5)


def test_store_happy_path(make_ingestor):
    meta, vec = FakeMeta(), FakeVec()
    ing = make_ingestor(meta, vec)
    res = ing.store(StoreInput(content=sentences(2), user_id="user1", source="test"))
    assert res.stored is True
    assert res.chunks_stored == 2
    assert res.chunks_deduped == 0
    assert res.memory_id != ""
    assert len(vec.upserted) == 1
    assert len(vec.upserted[0]) == 2
    payload = vec.upserted[0][0].payload
    for key in ("memory_id", "chunk_id", "user_id", "ord", "source", "importance", "created_at"):
        assert key in payload
    assert payload["user_id"] == "user1"
    assert payload["memory_id"] == res.memory_id
    assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\dZ", payload["created_at"])


def test_store_all_deduped(make_ingestor):
    meta, vec = FakeMeta(save_chunks_error=DuplicateError()), FakeVec()
    ing = make_ingestor(meta, vec)
    res = ing.store(StoreInput(content=sentences(3)))
    assert res.stored is False
    assert res.chunks_stored == 0
    assert res.chunks_deduped == 3
    assert vec.upserted == []


def test_store_other_save_chunks_error_propagates(make_ingestor):
    meta, vec = FakeMeta(save_chunks_error=RuntimeError("db down")), FakeVec()
    ing = make_ingestor(meta, vec)
    with pytest.raises(RuntimeError, match="db down"):
        ing.store(StoreInput(content=sentences(2)))
    assert vec.upserted == []


def test_store_qdrant_failure_enqueues_pending(make_ingestor):
    meta, vec = FakeMeta(), FakeVec(upsert_error=RuntimeError("qdrant down"))
    ing = make_ingestor(meta, vec)
    res = ing.store(StoreInput(content=sentences(2)))
    assert res.stored is True
    assert len(meta.enqueued) == 2
    assert meta.enqueued == [c.id for c in meta.saved_chunks[0]]


def test_store_empty_user_id_defaults(make_ingestor):
    meta, vec = FakeMeta(), FakeVec()
    ing = make_ingestor(meta, vec)
    ing.store(StoreInput(content=sentences(1), user_id=""))
    assert meta.saved_memory is not None
    assert meta.saved_memory.user_id == "default"


@pytest.mark.parametrize("n_chunks, want", [(1, 0.4), (7, 1.0)])
def test_store_importance_heuristic(make_ingestor, n_chunks, want):
    meta, vec = FakeMeta(), FakeVec()
    ing = make_ingestor(meta, vec)
    ing.store(StoreInput(content=sentences(n_chunks)))
    assert meta.saved_memory is not None
    assert meta.saved_memory.importance == pytest.approx(want, abs=0.001)


def test_store_normalizes_whitespace(make_ingestor):
    meta, vec = FakeMeta(), FakeVec()
    ing = make_ingestor(meta, vec)
    raw = "   " + sentences(1) + "   \n\t"
    ing.store(StoreInput(content=raw))
    assert meta.saved_memory is not None
    assert meta.saved_memory.content == raw.strip()


def test_store_empty_content_returns_empty_result(make_ingestor):
    meta, vec = FakeMeta(), FakeVec()
    ing = make_ingestor(meta, vec)
    res = ing.store(StoreInput(content="   "))
    assert res == StoreResult()
    assert meta.save_memory_calls == 0


def test_store_chunk_rows_carry_hash_order_and_vectors(make_ingestor):
    meta, vec = FakeMeta(), FakeVec()
    ing = make_ingestor(meta, vec)
    res = ing.store(StoreInput(content=sentences(3), user_id="u"))
    rows = meta.saved_chunks[0]
    assert [row.ord for row in rows] == [0, 1, 2]
    for row in rows:
        assert row.content_hash == hashlib.sha256(row.content.encode()).digest()
        assert row.memory_id == res.memory_id
        assert row.user_id == "u"
    points = vec.upserted[0]
    assert [p.id for p in points] == [row.id for row in rows]
    assert points[1].vector == [float(ord("b")), 0.5]


def test_store_writes_graph(make_ingestor):
    meta, vec, graph = FakeMeta(), FakeVec(), RecordingGraph()
    ing = make_ingestor(meta, vec, IngestorOptions(graph=graph))
    res = ing.store(StoreInput(content=sentences(2), user_id="u", source="src"))
    ing.close(timeout=5)
    rows = meta.saved_chunks[0]
    assert sorted(n.id for n in graph.nodes) == sorted(r.id for r in rows)
    assert all(isinstance(n, ChunkNode) and n.source == "src" for n in graph.nodes)
    assert all(n.memory_id == res.memory_id for n in graph.nodes)
    assert graph.edges == [SequentialEdge(prev_id=rows[0].id, next_id=rows[1].id, user_id="u")]


def test_store_single_chunk_writes_no_edges(make_ingestor):
    meta, vec, graph = FakeMeta(), FakeVec(), RecordingGraph()
    ing = make_ingestor(meta, vec, IngestorOptions(graph=graph))
    ing.store(StoreInput(content=sentences(1)))
    ing.close(timeout=5)
    assert len(graph.nodes) == 1
    assert graph.edges == []


def test_dispatch_drops_when_queue_full(make_ingestor):
    release = threading.Event()
    graph = RecordingGraph(block=release)
    ing = make_ingestor(
        FakeMeta(), FakeVec(), IngestorOptions(graph=graph, graph_workers=1, graph_queue=1)
    )
    ing.store(StoreInput(content=sentences(3)))
    drops = ing.graph_drops
    release.set()
    ing.close(timeout=5)
    assert drops >= 2
    assert len(graph.nodes) + len(graph.edges) + drops >= 4


def test_close_times_out_on_stuck_job(make_ingestor):
    release = threading.Event()
    graph = RecordingGraph(block=release)
    ing = make_ingestor(FakeMeta(), FakeVec(), IngestorOptions(graph=graph, graph_workers=1))
    ing.store(StoreInput(content=sentences(1)))
    with pytest.raises(TimeoutError):
        ing.close(timeout=0.05)
    release.set()


def test_dispatch_after_close_is_dropped(make_ingestor):
    graph = RecordingGraph()
    ing = make_ingestor(FakeMeta(), FakeVec(), IngestorOptions(graph=graph))
    ing.close(timeout=5)
    res = ing.store(StoreInput(content=sentences(1)))
    assert res.stored is True
    assert ing.graph_drops == 1
    assert graph.nodes == []


def test_delete_removes_from_both_stores(make_ingestor):
    meta, vec = FakeMeta(), FakeVec()
    ing = make_ingestor(meta, vec)
    ing.delete("m1")
    assert meta.deleted == ["m1"]
    assert vec.deleted == ["m1"]


def test_delete_vector_failure_is_logged(make_ingestor, caplog):
    meta, vec = FakeMeta(), FakeVec(delete_error=RuntimeError("qdrant down"))
    ing = make_ingestor(meta, vec)
    with caplog.at_level(logging.WARNING, logger="engram.ingestor"):
        ing.delete("m1")
    assert meta.deleted == ["m1"]
    assert "qdrant delete failed" in caplog.text


def test_delete_meta_failure_raises(make_ingestor):
    meta = FakeMeta(delete_error=MemoryNotFoundError("memory not found: m1"))
    vec = FakeVec()
    ing = make_ingestor(meta, vec)
    with pytest.raises(MemoryNotFoundError):
        ing.delete("m1")
    assert vec.deleted == []


def test_new_uuid_is_version_4():
    value = new_uuid()
    assert re.fullmatch(r"[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}", value)
    assert new_uuid() != value