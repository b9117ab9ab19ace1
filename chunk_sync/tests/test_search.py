"""
Tests for semantic search and result formatting.
"""
import asyncio

import pytest

from chunk_sync.embeddings import VoyageEmbedder
from chunk_sync.schemas import Chunk
from chunk_sync.search import format_results, load_chunk_content, semantic_search
from chunk_sync.store import TurbopufferClient
from chunk_sync.sync import SyncOrchestrator
from chunk_sync.tests.test_config import make_settings
from chunk_sync.tests.test_embeddings import FakeVoyageSession
from chunk_sync.tests.test_store import FakeTurbopufferSession
from chunk_sync.tests.test_sync import LIB_RS


def make_hit(path="src/main.rs", start=10, end=12, content=None, distance=None) -> Chunk:
    return Chunk(
        path=path,
        start_line=start,
        end_line=end,
        language="rust",
        content=content,
        content_hash=1,
        distance=distance,
    )


def test_format_results_ripgrep_style():
    hit = make_hit(content='fn main() {\n    println!("Hello!");\n}')

    assert format_results([hit]) == "src/main.rs:10:fn main() {"


def test_format_results_with_scores():
    hits = [
        make_hit(content="  fn a() {}", distance=0.12345),
        make_hit(path="b.rs", start=3, content=None),
    ]

    assert format_results(hits, show_scores=True).splitlines() == [
        "src/main.rs:10:0.1235:fn a() {}",
        "b.rs:3:n/a:[no content]",
    ]


def test_load_chunk_content(tmp_path):
    (tmp_path / "lib.rs").write_text(LIB_RS, encoding="utf-8")

    loaded = load_chunk_content(make_hit(path="lib.rs", start=6, end=8), tmp_path)

    assert loaded.content == "fn helper() -> i32 {\n    42\n}"


def test_load_chunk_content_missing_file(tmp_path):
    hit = make_hit(path="gone.rs")

    assert load_chunk_content(hit, tmp_path).content is None


@pytest.fixture
def clients():
    settings = make_settings()
    embedder = VoyageEmbedder(settings)
    embedder.session = FakeVoyageSession()
    store = TurbopufferClient(settings)
    store.session = FakeTurbopufferSession()
    return settings, embedder, store


def test_semantic_search_after_sync(tmp_path, clients):
    settings, embedder, store = clients
    (tmp_path / ".git").mkdir()
    (tmp_path / "lib.rs").write_text(LIB_RS, encoding="utf-8")
    asyncio.run(SyncOrchestrator(embedder, store, settings).run(tmp_path))

    hits = asyncio.run(semantic_search("the answer", tmp_path, embedder, store, top_k=1, settings=settings))

    assert len(hits) == 1
    assert hits[0].content is not None
    assert hits[0].distance is not None
    assert embedder.session.payloads[-1]["input_type"] == "query"


def test_semantic_search_unsynced_project(tmp_path, clients):
    settings, embedder, store = clients
    (tmp_path / ".git").mkdir()

    assert asyncio.run(semantic_search("anything", tmp_path, embedder, store, settings=settings)) == []


def test_empty_query_rejected(tmp_path, clients):
    settings, embedder, store = clients

    with pytest.raises(ValueError):
        asyncio.run(semantic_search("   ", tmp_path, embedder, store, settings=settings))
