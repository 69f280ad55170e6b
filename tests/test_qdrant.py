import json

import httpx
import pytest
import respx

from engram.qdrant import (
    Point,
    QdrantVectorStore,
    SearchResult,
    from_payload,
    parse_addr,
    to_payload,
)

BASE = "http://qdrant.test"
COLL = "/collections/test_memories"
ID_A = "11111111-1111-1111-1111-111111111111"
ID_B = "22222222-2222-2222-2222-222222222222"


@pytest.fixture
def router():
    with respx.mock(assert_all_called=False) as r:
        yield r


@pytest.fixture
def store():
    with httpx.Client() as client:
        yield QdrantVectorStore(BASE, "test_memories", client)


def body(route):
    return json.loads(route.calls.last.request.content)


def exists_route(router, exists):
    return router.route(method="GET", path=f"{COLL}/exists").mock(
        return_value=httpx.Response(200, json={"result": {"exists": exists}})
    )


def info_route(router, size):
    return router.route(method="GET", path=COLL).mock(
        return_value=httpx.Response(
            200, json={"result": {"config": {"params": {"vectors": {"size": size, "distance": "Cosine"}}}}}
        )
    )


def test_parse_addr():
    assert parse_addr("localhost:6334") == ("localhost", 6334)
    assert parse_addr("[::1]:6334") == ("[::1]", 6334)


@pytest.mark.parametrize("addr", ["localhost", "host:abc", "host:"])
def test_parse_addr_errors(addr):
    with pytest.raises(ValueError):
        parse_addr(addr)


def test_payload_round_trip():
    values = {"s": "x", "b": True, "i": 3, "f": 0.5, "n": None}
    assert from_payload(to_payload(values)) == values


def test_to_payload_rejects_unsupported():
    with pytest.raises(TypeError, match="unsupported payload value type"):
        to_payload({"bad": [1, 2]})


def test_from_payload_none_and_unknown_kinds():
    assert from_payload(None) is None
    assert from_payload({"a": {"x": 1}, "b": "ok"}) == {"a": None, "b": "ok"}


def test_ensure_collection_creates_when_missing(router, store):
    exists_route(router, False)
    create = router.route(method="PUT", path=COLL).mock(
        return_value=httpx.Response(200, json={"result": True})
    )
    assert store.ensure_collection(4) is None
    assert create.call_count == 1
    assert body(create) == {"vectors": {"size": 4, "distance": "Cosine"}}


def test_ensure_collection_idempotent(router, store):
    exists = exists_route(router, True)
    info = info_route(router, 4)
    create = router.route(method="PUT", path=COLL).mock(return_value=httpx.Response(200, json={}))
    assert store.ensure_collection(4) is None
    assert store.ensure_collection(4) is None
    assert exists.call_count == 2
    assert info.call_count == 2
    assert create.call_count == 0


def test_ensure_collection_dim_mismatch(router, store):
    exists_route(router, True)
    info_route(router, 4)
    with pytest.raises(ValueError, match="dim=4"):
        store.ensure_collection(5)


def test_upsert_and_search(router, store):
    upsert = router.route(method="PUT", path=f"{COLL}/points").mock(
        return_value=httpx.Response(200, json={"result": {"status": "completed"}})
    )
    query = router.route(method="POST", path=f"{COLL}/points/query").mock(
        return_value=httpx.Response(
            200,
            json={
                "result": {
                    "points": [
                        {"id": ID_A, "score": 1.0, "payload": {"user_id": "alice", "memory_id": "m1"}},
                        {"id": ID_B, "score": 0.0, "payload": {"user_id": "alice", "memory_id": "m2"}},
                    ]
                }
            },
        )
    )
    store.upsert(
        [
            Point(ID_A, [1, 0, 0, 0], {"user_id": "alice", "memory_id": "m1"}),
            Point(ID_B, [0, 1, 0, 0], {"user_id": "alice", "memory_id": "m2"}),
        ]
    )
    assert upsert.calls.last.request.url.params["wait"] == "true"
    sent = body(upsert)["points"]
    assert [p["id"] for p in sent] == [ID_A, ID_B]
    assert sent[0]["payload"] == {"user_id": "alice", "memory_id": "m1"}

    results = store.search([1, 0, 0, 0], 10, "alice")
    assert len(results) == 2
    assert results[0].id == ID_A
    assert results[0] == SearchResult(ID_A, 1.0, {"user_id": "alice", "memory_id": "m1"})
    assert body(query)["limit"] == 10


def test_search_user_id_filter(router, store):
    query = router.route(method="POST", path=f"{COLL}/points/query").mock(
        return_value=httpx.Response(
            200,
            json={"result": {"points": [{"id": ID_A, "score": 0.9, "payload": {"user_id": "alice"}}]}},
        )
    )
    results = store.search([1, 0, 0, 0], 10, "alice")
    assert body(query)["filter"] == {"must": [{"key": "user_id", "match": {"value": "alice"}}]}
    assert all(r.payload["user_id"] == "alice" for r in results)


def test_search_non_uuid_id_is_empty(router, store):
    router.route(method="POST", path=f"{COLL}/points/query").mock(
        return_value=httpx.Response(200, json={"result": {"points": [{"id": 7, "score": 0.5}]}})
    )
    results = store.search([1.0], 1, "u")
    assert results[0].id == ""
    assert results[0].payload is None


def test_upsert_empty_makes_no_request(router, store):
    upsert = router.route(method="PUT", path=f"{COLL}/points").mock(return_value=httpx.Response(200, json={}))
    assert store.upsert([]) is None
    assert upsert.call_count == 0


def test_upsert_bad_payload(router, store):
    upsert = router.route(method="PUT", path=f"{COLL}/points").mock(return_value=httpx.Response(200, json={}))
    with pytest.raises(TypeError, match="encode payload"):
        store.upsert([Point(ID_A, [1.0], {"bad": object()})])
    assert upsert.call_count == 0


def test_delete_by_memory_id(router, store):
    delete = router.route(method="POST", path=f"{COLL}/points/delete").mock(
        return_value=httpx.Response(200, json={"result": {}})
    )
    assert store.delete_by_memory_id("m1") is None
    assert delete.call_count == 1
    assert body(delete) == {"filter": {"must": [{"key": "memory_id", "match": {"value": "m1"}}]}}


def test_http_error_raises(router, store):
    router.route(method="POST", path=f"{COLL}/points/query").mock(
        return_value=httpx.Response(500, text="boom")
    )
    with pytest.raises(RuntimeError, match="qdrant: query"):
        store.search([1.0], 1, "u")