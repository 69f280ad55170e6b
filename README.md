# engram

Building blocks for long-term text memory. Content is split into chunks, and
each chunk is saved with its metadata and its embedding vector. A query runs a
vector search and a BM25 full-text search side by side. A fusion function that
you supply merges the two result lists. The merged list can then be extended
with neighbours from a chunk graph and reranked.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `engram.postgres`: `PostgresMetaStore` implements the `MetaStore` protocol
  over a DB-API connection to PostgreSQL that uses the pyformat paramstyle. It
  stores `Memory` and `Chunk` records, runs BM25 search (`search_bm25`), reports
  per-user `UserState`, and manages the pending-vector queue (`enqueue_pending`,
  `drain_pending`, `delete_pending`). `save_chunks` skips chunks that are
  duplicates by `(user_id, content_hash)`. If no chunk was inserted it raises
  `DuplicateError`. `delete_memory` raises `MemoryNotFoundError` when the memory
  does not exist.
- `engram.qdrant`: `QdrantVectorStore(base_url, collection)` implements the
  `VectorStore` protocol over the Qdrant HTTP API. `ensure_collection(dim)`
  creates a cosine-distance collection. If the collection already exists with a
  different dimension, it raises `ValueError`. `search` is filtered by
  `user_id`. Payload values must be strings, bools, ints, floats or `None`;
  `to_payload` raises `TypeError` for any other type. `parse_addr` splits
  `host:port`.
- `engram.graph`: `CypherGraphStore(runner)` sends Cypher through an object
  that has `execute_write(cypher, params)` and `execute_read(cypher, params)`.
  It writes `ChunkNode`s together with their `OF` edges, `NEXT` edges
  (`SequentialEdge`) and `SIMILAR` edges (`SimilarEdge`). It can also expand
  seed chunks by one hop, optionally scoped by `ExpandOptions(user_id,
  max_expand)`. `ensure_schema` applies the constraints and indexes.
  `NopGraphStore` stores nothing and only counts the writes and expansions it
  has discarded.
- `engram.ingestor`: `Ingestor(meta, vec, chunker, options)` takes any `Chunker`
  whose `chunk(text)` returns `TextChunk`s.
  - `store(StoreInput(...))` trims the content and defaults the user to
    `"default"`. It saves the memory with importance `0.3 + 0.1 × chunks`,
    capped at 1.0, then saves the chunks and upserts their vectors.
  - If the upsert fails, the chunk ids are queued as pending. If every chunk was
    a duplicate, it returns `StoreResult(stored=False)`.
  - Graph writes run on a bounded pool of worker threads. A job is dropped when
    the queue is full, and dropped jobs are counted in `graph_drops`.
  - `close(timeout)` drains the pool and raises `TimeoutError` if the pool is
    still busy when the timeout runs out.
  - `delete(memory_id)` removes the memory from the metadata store, then tries
    to remove it from the vector store.
- `engram.reconciler`: `Reconciler(meta, vec, config, retry_fn)` drains the
  pending queue every `interval` seconds, taking up to `batch_size` rows per
  cycle. It calls `retry_fn(chunk_id)` for each row and removes the row once the
  call returns without raising. A row whose attempt count has reached
  `max_attempts` is removed without a retry. The reconciler never increments
  the attempt count itself. Use `start()` and `stop()`, use it as a context
  manager, or drive a single cycle with `tick()`.
- `engram.retriever`: `Retriever(meta, vec, embedder, fuse, reranker, graph,
  config)` returns a `RetrieveResponse` from `retrieve(RetrieveInput(...))`.
  - `fuse` is a function that takes `(FusionConfig, vec_hits, bm25_hits)` and
    returns `FusedResult`s.
  - If the vector search fails, the response is marked `degraded`. If the BM25
    search or the embedding fails, `retrieve` raises `RuntimeError`.
  - Reranking is skipped when no reranker is configured, when `rerank` is false,
    or when there are at most `k` candidates.
  - Chunks that come back without content are hydrated from the metadata store.

## Rerankers

Every reranker implements `Reranker.rerank(query, candidates)` and takes
`Candidate` objects.

- `engram.llm_rerank.LLMReranker` asks an Ollama-style `/api/chat` endpoint for
  a JSON array of scores from 0 to 10. Scores outside that range are clamped. On
  any failure the candidates stay in their original order.
- `engram.remote_rerank.RemoteReranker` calls a Cohere-style `/rerank` endpoint.
  - A 4xx response raises `NonRetryableError`.
  - A 5xx response or a network error raises `RetryableError`.
  - An unreadable body raises `RerankError`.
  - With an empty `base_url` the input is returned unchanged.
- `engram.crossenc` provides the tokenizer (`tokenize`) and the
  `[CLS] query [SEP] doc [SEP]` input builder (`build_input`).
  `CrossEncoderReranker` itself always raises `CrossEncoderNotBuiltError`.

```python
from engram.remote_rerank import RemoteConfig, RemoteReranker
from engram.rerank import Candidate

with RemoteReranker(RemoteConfig(base_url="http://localhost:8000", api_key="placeholder")) as reranker:
    ranked = reranker.rerank("fruit", [Candidate(chunk_id="c1", content="apple fruit")])
```

## What the package does not do

- It has no chunker, no embedder and no fusion function. You supply a
  `Chunker`, an `Embedder` and a `fuse` callable.
- It has no server and no command-line program.
- It does not create the PostgreSQL tables or run migrations. It does not ship
  a database driver or a graph database driver: you pass in a DB-API connection
  and a Cypher runner.
- The cross-encoder reranker cannot score anything, because no model runtime is
  included.