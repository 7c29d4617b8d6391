from __future__ import annotations

import pytest
from qdrant_client import QdrantClient

from conftest import make_chunk
from contextweaver.indexer.models import EmbeddingResult
from contextweaver.vector_db.payload import chunk_to_payload, payload_to_chunk
from contextweaver.vector_db.qdrant_client import CodeVectorDB, hex_to_uuid, point_id

DIMENSION = 4


def embedding(chunk, vector) -> EmbeddingResult:
    return EmbeddingResult(chunk_id=chunk.id, embedding=vector, model="test")


@pytest.fixture
def db() -> CodeVectorDB:
    return CodeVectorDB(collection_name="test_chunks", vector_size=DIMENSION, client=QdrantClient(":memory:"))


def test_upsert_query_and_count(db: CodeVectorDB) -> None:
    login = make_chunk(name="login", file_path="src/auth.ts")
    render = make_chunk(name="render", file_path="src/ui.py", language="python")
    db.upsert(
        [login, render],
        [embedding(login, [1.0, 0.0, 0.0, 0.0]), embedding(render, [0.0, 1.0, 0.0, 0.0])],
        "repo",
    )

    results = db.query([1.0, 0.1, 0.0, 0.0], "repo", top_k=2)

    assert db.count("repo") == 2
    assert [r.chunk_id for r in results] == [login.id, render.id]
    assert results[0].score > results[1].score
    assert results[0].metadata["name"] == "login"
    assert results[0].metadata["scope_id"] == "repo"
    assert payload_to_chunk(results[0].metadata, results[0].chunk_id).content == login.content


def test_scopes_are_isolated(db: CodeVectorDB) -> None:
    chunk = make_chunk()
    db.upsert([chunk], [embedding(chunk, [1.0, 0.0, 0.0, 0.0])], "one")
    db.upsert([chunk], [embedding(chunk, [1.0, 0.0, 0.0, 0.0])], "two")

    assert db.count("one") == 1
    assert db.count("two") == 1
    assert db.query([1.0, 0.0, 0.0, 0.0], "three") == []

    db.delete("one")

    assert db.count("one") == 0
    assert db.count("two") == 1


def test_language_filter(db: CodeVectorDB) -> None:
    ts = make_chunk(name="a", file_path="a.ts")
    py = make_chunk(name="b", file_path="b.py", language="python")
    db.upsert([ts, py], [embedding(ts, [1.0, 0.0, 0.0, 0.0]), embedding(py, [1.0, 0.0, 0.0, 0.0])], "repo")

    results = db.query([1.0, 0.0, 0.0, 0.0], "repo", language_filter="python")

    assert [r.chunk_id for r in results] == [py.id]


def test_upsert_skips_missing_and_wrong_dimension_vectors(db: CodeVectorDB) -> None:
    good = make_chunk(name="good")
    short = make_chunk(name="short", start_line=10)
    orphan = make_chunk(name="orphan", start_line=20)

    stored = db.upsert(
        [good, short, orphan],
        [embedding(good, [1.0, 0.0, 0.0, 0.0]), embedding(short, [1.0, 0.0])],
        "repo",
    )

    assert stored == 1
    assert db.count("repo") == 1


def test_reupsert_replaces_points(db: CodeVectorDB) -> None:
    chunk = make_chunk()
    for _ in range(3):
        db.upsert([chunk], [embedding(chunk, [1.0, 0.0, 0.0, 0.0])], "repo")
    assert db.count("repo") == 1


def test_list_chunks_by_file(db: CodeVectorDB) -> None:
    a1 = make_chunk(name="a1", file_path="src/a.ts")
    a2 = make_chunk(name="a2", file_path="src/a.ts", start_line=10)
    b1 = make_chunk(name="b1", file_path="src/b.ts")
    vector = [0.5, 0.5, 0.5, 0.5]
    db.upsert([a1, a2, b1], [embedding(c, vector) for c in (a1, a2, b1)], "repo")

    listed = db.list_chunks("repo", file_path="src/a.ts")

    assert {r.chunk_id for r in listed} == {a1.id, a2.id}
    assert all(r.score == 0.0 for r in listed)
    assert len(db.list_chunks("repo")) == 3


def test_health_and_clear(db: CodeVectorDB) -> None:
    chunk = make_chunk()
    db.upsert([chunk], [embedding(chunk, [1.0, 0.0, 0.0, 0.0])], "repo")

    health = db.health()
    assert health["connected"] is True
    assert health["vector_count"] == 1

    db.clear_collection()
    assert db.count("repo") == 0


def test_point_ids_are_deterministic_uuids() -> None:
    assert point_id("repo", "chunk_abc") == point_id("repo", "chunk_abc")
    assert point_id("repo", "chunk_abc") != point_id("other", "chunk_abc")
    assert hex_to_uuid("ab") == "ab000000-0000-0000-0000-000000000000"


def test_payload_keeps_full_text_only_for_small_chunks() -> None:
    small = make_chunk(content="x" * 100)
    large = make_chunk(content="y" * 2500)

    assert chunk_to_payload(small, "repo")["text"] == small.content
    large_payload = chunk_to_payload(large, "repo", timestamp=5.0)
    assert large_payload["text"] == ""
    assert large_payload["content_preview"] == "y" * 200
    assert large_payload["timestamp"] == 5.0
    assert payload_to_chunk(large_payload).content == "y" * 200


@pytest.mark.parametrize(
    "payload",
    [
        None,
        {},
        {"kind": "mystery", "start_line": "x", "end_line": -4, "complexity": 99},
        {"keywords": "not-a-list", "child_chunks": [None, 3], "name": 0, "text": 12},
        {"file_path": "a.py", "start_line": 9, "end_line": 2, "content_preview": "abc"},
    ],
)
def test_payload_to_chunk_is_total(payload) -> None:
    chunk = payload_to_chunk(payload)

    assert chunk.id.startswith("chunk_")
    assert chunk.kind in ("block", "function", "class", "method", "variable", "import", "export", "interface", "type")
    assert 1 <= chunk.start_line <= chunk.end_line
    assert 1 <= chunk.metadata.complexity <= 10
    assert isinstance(chunk.metadata.keywords, list)
    assert isinstance(chunk.content, str)


def test_payload_to_chunk_prefers_index_id() -> None:
    assert payload_to_chunk({"chunk_id": "chunk_stored"}, "chunk_index").id == "chunk_index"
    assert payload_to_chunk({"chunk_id": "chunk_stored"}).id == "chunk_stored"
