"""Shared pytest fixtures: fake clock, fake vector index and chunk factories."""

from __future__ import annotations

from typing import Dict, List, Optional

import pytest

from contextweaver.indexer.models import ChunkMetadata, CodeChunk
from contextweaver.vector_db.payload import SearchResult, chunk_to_payload


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds, 0.0)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


def make_chunk(
    name: Optional[str] = "handler",
    kind: str = "function",
    file_path: str = "src/app.ts",
    content: Optional[str] = None,
    start_line: int = 1,
    end_line: int = 5,
    language: str = "typescript",
    keywords: Optional[List[str]] = None,
    complexity: int = 2,
    imports: Optional[List[str]] = None,
    exports: Optional[List[str]] = None,
) -> CodeChunk:
    content = content if content is not None else f"function {name}() {{\n  return 1;\n}}"
    return CodeChunk(
        id=f"chunk_{file_path}_{name}_{start_line}",
        content=content,
        kind=kind,
        name=name,
        file_path=file_path,
        start_line=start_line,
        end_line=end_line,
        metadata=ChunkMetadata(
            language=language,
            complexity=complexity,
            dependencies=list(imports or []),
            exports=list(exports or []),
            imports=list(imports or []),
            keywords=list(keywords or []),
        ),
    )


class FakeVectorIndex:
    """In-test vector index returning canned candidates per scope."""

    def __init__(self) -> None:
        self.scopes: Dict[str, List[SearchResult]] = {}
        self.queries: List[dict] = []

    def add(self, scope_id: str, chunk: CodeChunk, score: float) -> None:
        self.scopes.setdefault(scope_id, []).append(
            SearchResult(chunk_id=chunk.id, score=score, metadata=chunk_to_payload(chunk, scope_id, timestamp=0.0))
        )

    def count(self, scope_id: str) -> int:
        return len(self.scopes.get(scope_id, []))

    def query(self, query_vector, scope_id, language_filter=None, top_k=10) -> List[SearchResult]:
        self.queries.append({"scope_id": scope_id, "language": language_filter, "top_k": top_k})
        results = [
            r
            for r in self.scopes.get(scope_id, [])
            if language_filter is None or r.metadata.get("language") == language_filter
        ]
        return sorted(results, key=lambda r: r.score, reverse=True)[:top_k]

    def list_chunks(self, scope_id, file_path=None, limit=100) -> List[SearchResult]:
        results = [
            SearchResult(chunk_id=r.chunk_id, score=0.0, metadata=r.metadata)
            for r in self.scopes.get(scope_id, [])
            if file_path is None or r.metadata.get("file_path") == file_path
        ]
        return results[:limit]

    def health(self) -> dict:
        total = sum(len(v) for v in self.scopes.values())
        return {"connected": True, "index_ready": True, "vector_count": total}


class FakeEmbedder:
    """Query embedder returning a fixed vector."""

    def __init__(self, dimension: int = 4, fail: Optional[Exception] = None) -> None:
        self.dimension = dimension
        self.fail = fail
        self.queries: List[str] = []

    async def embed_query(self, text: str) -> List[float]:
        self.queries.append(text)
        if self.fail is not None:
            raise self.fail
        return [0.5] * self.dimension

    async def health_check(self) -> bool:
        return self.fail is None


@pytest.fixture
def vector_index() -> FakeVectorIndex:
    return FakeVectorIndex()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()
