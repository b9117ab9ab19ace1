"""
Tests for the turbopuffer client.
"""
import asyncio
import threading
import time
from typing import Dict
from unittest.mock import Mock, patch
from urllib.parse import urlparse

import numpy as np
import pytest
import requests

from chunk_sync.embeddings import decode_vector
from chunk_sync.errors import ConfigError, NamespaceNotFound, StoreError
from chunk_sync.schemas import Chunk
from chunk_sync.store import DEFAULT_REGION, REGIONS, TurbopufferClient
from chunk_sync.tests.test_config import make_settings
from chunk_sync.tests.test_embeddings import FakeResponse

NAMESPACE = "tg_voyage_test"


def not_found(namespace):
    return FakeResponse(404, text=f'{{"status":"error","error":"namespace \'{namespace}\' was not found"}}')


class FakeTurbopufferSession:
    """In-memory stand-in for the turbopuffer v2 HTTP API."""

    def __init__(self, delay=0.0, fail_when=None):
        self.headers = {}
        self.delay = delay
        self.fail_when = fail_when
        self.namespaces: Dict[str, Dict[int, dict]] = {}
        self.requests = []
        self.lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0

    def writes(self):
        return [(method, body) for method, url, body in self.requests if method == "POST" and not url.endswith("/query")]

    def queries(self):
        return [body for method, url, body in self.requests if url.endswith("/query")]

    def request(self, method, url, json=None, timeout=None):
        with self.lock:
            self.requests.append((method, url, json))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.fail_when is not None:
                failure = self.fail_when(method, url, json)
                if failure is not None:
                    return failure
            return self._handle(method, url, json)
        finally:
            with self.lock:
                self.in_flight -= 1

    def _handle(self, method, url, body):
        parts = urlparse(url).path.strip("/").split("/")
        if method == "GET":
            return FakeResponse(200, {})
        namespace = parts[2]
        if method == "DELETE":
            with self.lock:
                if namespace not in self.namespaces:
                    return not_found(namespace)
                del self.namespaces[namespace]
            return FakeResponse(200, {"status": "ok"})
        if len(parts) == 4 and parts[3] == "query":
            return self._query(namespace, body)
        with self.lock:
            rows = self.namespaces.setdefault(namespace, {})
            for row in body.get("upsert_rows", []):
                rows[row["id"]] = dict(row)
            for record_id in body.get("deletes", []):
                rows.pop(record_id, None)
        return FakeResponse(200, {"status": "OK", "rows_affected": len(body.get("upsert_rows", []))})

    def _query(self, namespace, body):
        with self.lock:
            if namespace not in self.namespaces:
                return not_found(namespace)
            rows = [dict(row) for row in self.namespaces[namespace].values()]
        filters = body.get("filters")
        if filters:
            field, op, value = filters
            assert op == "Gt"
            rows = [row for row in rows if row[field] > value]
        rank_by = body["rank_by"]
        if rank_by[0] == "id":
            rows.sort(key=lambda row: row["id"])
        else:
            query = np.asarray(rank_by[2], dtype=float)
            for row in rows:
                vec = np.asarray(decode_vector(row["vector"]))
                cosine = float(vec @ query / (np.linalg.norm(vec) * np.linalg.norm(query)))
                row["$dist"] = 1.0 - cosine
            rows.sort(key=lambda row: row["$dist"])
        rows = rows[:body["top_k"]]
        keep = set(body["include_attributes"]) | {"id", "$dist"}
        return FakeResponse(200, {"rows": [{k: v for k, v in row.items() if k in keep} for row in rows]})

    def close(self):
        pass


def make_chunks(n, path="src/lib.rs", vector=(1.0, 0.0, 0.0)):
    return [
        Chunk(
            path=path,
            start_line=i * 10 + 1,
            end_line=i * 10 + 5,
            language="rust",
            function_name=f"f{i}",
            content_hash=1000 + i,
            vector=list(vector),
        )
        for i in range(n)
    ]


@pytest.fixture
def client():
    client = TurbopufferClient(make_settings())
    client.session = FakeTurbopufferSession()
    return client


def test_missing_api_key_is_config_error():
    with pytest.raises(ConfigError):
        TurbopufferClient(make_settings(TURBOPUFFER_API_KEY=None))


def test_region_in_base_url():
    client = TurbopufferClient(make_settings(TURBOPUFFER_REGION="aws-eu-central-1"))

    assert client.base_url == "https://aws-eu-central-1.turbopuffer.com"
    assert TurbopufferClient(make_settings(TURBOPUFFER_REGION=None)).region == DEFAULT_REGION


def test_upsert_row_format(client):
    chunk = make_chunks(1)[0]

    client.write_batch(NAMESPACE, [chunk], [])

    method, body = client.session.writes()[0]
    row = body["upsert_rows"][0]
    assert body["distance_metric"] == "cosine_distance"
    assert body["schema"] == {"content_hash": "uint"}
    assert row["id"] == chunk.id
    assert decode_vector(row["vector"]) == [1.0, 0.0, 0.0]
    assert (row["path"], row["start_line"], row["end_line"]) == chunk.key
    assert row["content_hash"] == chunk.content_hash
    assert "content" not in row


def test_apply_diff_batches_upserts():
    """Test 2500 upserts go out in batches of at most 1000 with bounded concurrency."""
    client = TurbopufferClient(make_settings())
    client.session = FakeTurbopufferSession(delay=0.02)
    chunks = make_chunks(2500)

    summary = asyncio.run(client.apply_diff(NAMESPACE, chunks, []))

    sizes = sorted(len(body["upsert_rows"]) for _, body in client.session.writes())
    assert sizes == [500, 1000, 1000]
    assert summary.upserted == 2500
    assert summary.failures == []
    assert len(client.session.namespaces[NAMESPACE]) == 2500
    assert client.session.max_in_flight <= 4


def test_apply_diff_accepts_async_upserts(client):
    async def stream():
        for chunk in make_chunks(3):
            await asyncio.sleep(0)
            yield chunk

    summary = asyncio.run(client.apply_diff(NAMESPACE, stream(), []))

    assert summary.upserted == 3


def test_apply_diff_deletes_by_id(client):
    chunks = make_chunks(3)
    asyncio.run(client.apply_diff(NAMESPACE, chunks, []))

    summary = asyncio.run(client.apply_diff(NAMESPACE, [], chunks[:2]))

    _, body = client.session.writes()[-1]
    assert sorted(body["deletes"]) == sorted(c.id for c in chunks[:2])
    assert "upsert_rows" not in body
    assert summary.deleted == 2
    assert list(client.session.namespaces[NAMESPACE]) == [chunks[2].id]


def test_delete_batches_are_bounded(client):
    summary = asyncio.run(client.apply_diff(NAMESPACE, [], make_chunks(1500)))

    sizes = sorted(len(body["deletes"]) for _, body in client.session.writes())
    assert sizes == [500, 1000]
    assert summary.deleted == 1500


def test_failed_batch_is_reported():
    """Test a failing batch is reported with its paths while other batches land."""
    def reject_bad_paths(method, url, body):
        rows = (body or {}).get("upsert_rows", [])
        if any(row["path"] == "src/bad.rs" for row in rows):
            return FakeResponse(500, text="write failed")
        return None

    client = TurbopufferClient(make_settings(STORE_BATCH_SIZE=10))
    client.session = FakeTurbopufferSession(fail_when=reject_bad_paths)
    chunks = make_chunks(10, path="src/good.rs") + make_chunks(10, path="src/bad.rs")

    summary = asyncio.run(client.apply_diff(NAMESPACE, chunks, []))

    assert summary.upserted == 10
    assert len(summary.failures) == 1
    failure = summary.failures[0]
    assert failure.kind == "upsert"
    assert failure.count == 10
    assert failure.paths == ["src/bad.rs"]
    assert "500" in failure.error


def test_chunk_without_vector_fails_its_batch(client):
    chunk = make_chunks(1)[0].model_copy(update={"vector": None})

    summary = asyncio.run(client.apply_diff(NAMESPACE, [chunk], []))

    assert summary.upserted == 0
    assert len(summary.failures) == 1
    assert client.session.writes() == []


def test_all_server_chunks_paginates():
    client = TurbopufferClient(make_settings(STORE_PAGE_SIZE=10))
    client.session = FakeTurbopufferSession()
    chunks = make_chunks(25)
    asyncio.run(client.apply_diff(NAMESPACE, chunks, []))

    fetched = asyncio.run(client.all_server_chunks(NAMESPACE))

    queries = client.session.queries()
    assert len(queries) == 3
    assert "filters" not in queries[0]
    assert queries[1]["filters"][:2] == ["id", "Gt"]
    assert queries[0]["rank_by"] == ["id", "asc"]
    assert {(c.key, c.content_hash) for c in fetched} == {(c.key, c.content_hash) for c in chunks}


def test_all_server_chunks_exact_page_boundary():
    client = TurbopufferClient(make_settings(STORE_PAGE_SIZE=10))
    client.session = FakeTurbopufferSession()
    asyncio.run(client.apply_diff(NAMESPACE, make_chunks(20), []))

    fetched = asyncio.run(client.all_server_chunks(NAMESPACE))

    assert len(fetched) == 20
    assert len(client.session.queries()) == 3


def test_missing_namespace_is_empty(client):
    assert asyncio.run(client.all_server_chunks("tg_voyage_never_written")) == []


def test_listing_failure_raises(client):
    client.session.fail_when = lambda method, url, body: FakeResponse(503, text="unavailable")

    with pytest.raises(StoreError) as exc:
        asyncio.run(client.all_server_chunks(NAMESPACE))

    assert not isinstance(exc.value, NamespaceNotFound)
    assert exc.value.status_code == 503


def test_connection_error_is_store_error(client):
    client.session = Mock()
    client.session.request.side_effect = requests.ConnectionError("connection refused")

    with pytest.raises(StoreError, match="connection refused"):
        client.list_chunks(NAMESPACE)


def test_query_orders_by_similarity(client):
    """Test top_k=3 over 5 records returns the 3 most similar, most similar first."""
    vectors = {
        "exact": [1.0, 0.0, 0.0],
        "close": [0.9, 0.1, 0.0],
        "medium": [0.5, 0.5, 0.0],
        "far": [0.0, 1.0, 0.0],
        "opposite": [-1.0, 0.0, 0.0],
    }
    chunks = [
        make_chunks(1, path=f"{name}.rs", vector=vector)[0]
        for name, vector in vectors.items()
    ]
    asyncio.run(client.apply_diff(NAMESPACE, chunks, []))

    hits = asyncio.run(client.query(NAMESPACE, [1.0, 0.0, 0.0], top_k=3))

    assert [h.path for h in hits] == ["exact.rs", "close.rs", "medium.rs"]
    distances = [h.distance for h in hits]
    assert distances == sorted(distances)
    assert hits[0].similarity == pytest.approx(1.0)
    body = client.session.queries()[-1]
    assert body["rank_by"][:2] == ["vector", "ANN"]
    assert body["top_k"] == 3


def test_query_sorts_and_truncates_server_rows(client):
    rows = [
        {"id": i, "path": f"{i}.rs", "start_line": 1, "end_line": 2, "language": "rust", "content_hash": i, "$dist": dist}
        for i, dist in enumerate([0.5, 0.1, 0.9, 0.3])
    ]
    client.session = Mock()
    client.session.request.return_value = FakeResponse(200, {"rows": rows})

    hits = asyncio.run(client.query(NAMESPACE, [1.0], top_k=3))

    assert [h.distance for h in hits] == [0.1, 0.3, 0.5]


def test_query_missing_namespace_raises(client):
    with pytest.raises(NamespaceNotFound):
        asyncio.run(client.query("tg_voyage_missing", [1.0, 0.0, 0.0], top_k=3))


def test_delete_namespace(client):
    asyncio.run(client.apply_diff(NAMESPACE, make_chunks(2), []))

    client.delete_namespace(NAMESPACE)
    client.delete_namespace(NAMESPACE)

    assert NAMESPACE not in client.session.namespaces


def test_find_closest_region(client):
    latencies = {region: 100.0 + i for i, region in enumerate(REGIONS)}
    latencies["aws-us-west-2"] = 5.0

    def fake_ping(region=None):
        if region == "gcp-us-central1":
            raise StoreError("unreachable")
        return latencies[region]

    with patch.object(client, "ping", side_effect=fake_ping):
        assert client.find_closest_region() == "aws-us-west-2"


def test_find_closest_region_falls_back(client):
    with patch.object(client, "ping", side_effect=StoreError("offline")):
        assert client.find_closest_region() == DEFAULT_REGION


@pytest.mark.parametrize("payload", [["rows"], {"rows": [1, 2]}, {"rows": "nope"}])
def test_malformed_listing_is_store_error(client, payload):
    client.session.fail_when = lambda method, url, body: FakeResponse(200, payload)

    with pytest.raises(StoreError, match="Malformed row|Unexpected turbopuffer"):
        asyncio.run(client.all_server_chunks(NAMESPACE))
