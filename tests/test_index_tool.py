from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from qdrant_client import QdrantClient

from contextweaver.indexer.embeddings import EmbeddingBatcher
from contextweaver.indexer.grammars import LanguageRegistry
from contextweaver.indexer.semantic_chunker import SemanticChunker
from contextweaver.store.codebase_store import CodebaseCache, CodebaseFile, FilesystemCodebaseStore
from contextweaver.tools.context_tool import ContextAssembler
from contextweaver.tools.index_tool import IndexingTool
from contextweaver.tools.models import SearchContext
from contextweaver.tools.search_tool import SearchTool
from contextweaver.vector_db.qdrant_client import CodeVectorDB

pytestmark = pytest.mark.anyio

DIMENSION = 4

AUTH_SOURCE = """import { hash } from './crypto';

function login(user) {
  if (!user) {
    return null;
  }
  return hash(user.name);
}

export const logout = (user) => {
  return null;
};
"""

UTIL_SOURCE = """def slugify(value):
    return value.lower().replace(" ", "-")


class Registry:
    def register(self, name):
        self.names.append(name)
"""


def vector_for(text: str):
    # Texts mentioning login point one way, everything else another
    return [1.0, 0.0, 0.0, 0.0] if "login" in text.lower() else [0.0, 1.0, 0.0, 0.0]


def handler(request: httpx.Request) -> httpx.Response:
    inputs = json.loads(request.content)["input"]
    inputs = inputs if isinstance(inputs, list) else [inputs]
    return httpx.Response(
        200,
        json={
            "data": [{"embedding": vector_for(text), "index": i} for i, text in enumerate(inputs)],
            "usage": {"total_tokens": 5 * len(inputs)},
        },
    )


@pytest.fixture
def chunker() -> SemanticChunker:
    return SemanticChunker(max_chunk_size=1000, min_chunk_size=20, registry=LanguageRegistry())


@pytest.fixture
def vector_db() -> CodeVectorDB:
    return CodeVectorDB(collection_name="test_index", vector_size=DIMENSION, client=QdrantClient(":memory:"))


@pytest.fixture
def embeddings(fake_clock) -> EmbeddingBatcher:
    return EmbeddingBatcher(
        api_key="test",
        dimension=DIMENSION,
        max_requests_per_minute=100,
        max_tokens_per_minute=100000,
        jitter=0.0,
        transport=httpx.MockTransport(handler),
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )


@pytest.fixture
def index_tool(vector_db, embeddings, chunker, fake_clock) -> IndexingTool:
    return IndexingTool(vector_db, embeddings, chunker, clock=fake_clock)


def files():
    return [
        CodebaseFile.from_text("src/auth.js", AUTH_SOURCE),
        CodebaseFile.from_text("pkg/util.py", UTIL_SOURCE),
    ]


async def test_index_codebase_stores_every_chunk(index_tool, vector_db) -> None:
    events = []

    result = await index_tool.index_codebase(files(), "repo", on_progress=events.append)

    assert result["success"] is True
    assert result["files_processed"] == 2
    assert result["chunks_indexed"] > 0
    assert result["vectors_stored"] == result["chunks_indexed"]
    assert result["success_rate"] == 1.0
    assert result["errors"] == []
    assert vector_db.count("repo") == result["vectors_stored"]

    phases = [e.phase for e in events]
    assert phases[0] == "chunking"
    assert {"chunking", "embedding", "storing", "complete"} <= set(phases)
    assert phases[-1] == "complete"
    assert events[-1].percent == 100.0


async def test_indexed_login_function_is_found_first(index_tool, vector_db, embeddings, chunker) -> None:
    await index_tool.index_codebase(files(), "repo")
    search = SearchTool(vector_db, embeddings, chunker=chunker)

    response = await search.search("login function", SearchContext(scope_id="repo"))

    assert response.results
    assert response.results[0].chunk.name == "login"
    assert response.results[0].chunk.kind == "function"


async def test_search_results_assemble_into_context(index_tool, vector_db, embeddings, tmp_path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "auth.js").write_text(AUTH_SOURCE)
    store = FilesystemCodebaseStore()
    tool = IndexingTool(vector_db, embeddings, index_tool.chunker, store=store)

    result = await tool.index_directory(str(tmp_path), scope_id="repo")
    response = await SearchTool(vector_db, embeddings).search("login function", SearchContext(scope_id="repo"))
    assembler = ContextAssembler(CodebaseCache(store))
    context = await assembler.assemble(response, "repo")

    assert result["success"] is True
    assert context.relevant_files[0].path == "src/auth.js"
    assert context.relevant_files[0].relevant_sections[0].name == "login"
    assert "function login(user)" in assembler.export_as_text(context)
    assert 0.0 <= context.confidence <= 1.0


async def test_chunking_errors_are_recorded(index_tool, monkeypatch) -> None:
    original = index_tool.chunker.chunk

    def flaky(file_path, content, language=None):
        if file_path.endswith(".py"):
            raise RuntimeError("boom")
        return original(file_path, content, language)

    monkeypatch.setattr(index_tool.chunker, "chunk", flaky)

    result = await index_tool.index_codebase(files(), "repo")

    assert result["success"] is True
    assert len(result["errors"]) == 1
    assert "pkg/util.py" in result["errors"][0]


async def test_cancel_before_start(index_tool, vector_db) -> None:
    cancel = asyncio.Event()
    cancel.set()

    result = await index_tool.index_codebase(files(), "repo", cancel_event=cancel)

    assert result["cancelled"] is True
    assert result["success"] is False
    assert result["chunks_indexed"] == 0
    assert vector_db.count("repo") == 0


async def test_reindex_replaces_scope_contents(index_tool, vector_db) -> None:
    await index_tool.index_codebase(files(), "repo")

    result = await index_tool.reindex_codebase([CodebaseFile.from_text("pkg/util.py", UTIL_SOURCE)], "repo")

    assert vector_db.count("repo") == result["vectors_stored"]
    assert all(r.metadata["file_path"] == "pkg/util.py" for r in vector_db.list_chunks("repo"))


async def test_empty_codebase_succeeds_with_nothing_stored(index_tool) -> None:
    result = await index_tool.index_codebase([], "repo")

    assert result["success"] is True
    assert result["vectors_stored"] == 0


async def test_index_directory_rejects_missing_directory(index_tool, tmp_path) -> None:
    result = await index_tool.index_directory(str(tmp_path / "nope"))

    assert result["success"] is False
    assert "does not exist" in result["error"]


async def test_index_directory_defaults_scope_to_directory_name(index_tool, tmp_path) -> None:
    project = tmp_path / "myproject"
    project.mkdir()
    (project / "util.py").write_text(UTIL_SOURCE)

    result = await index_tool.index_directory(str(project))

    assert result["scope_id"] == "myproject"
    assert result["vectors_stored"] > 0
