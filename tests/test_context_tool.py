from __future__ import annotations

import math
import random
from typing import List, Optional

import pytest

from conftest import make_chunk
from contextweaver.errors import ScopeNotFoundError
from contextweaver.store.codebase_store import (
    CodebaseCache,
    CodebaseFile,
    CodebaseStore,
    FilesystemCodebaseStore,
    InMemoryCodebaseStore,
)
from contextweaver.tools.context_tool import (
    ContextAssembler,
    calculate_confidence,
    extract_key_patterns,
    find_file,
    normalize_path,
    sections_within,
    suggested_approach,
)
from contextweaver.tools.models import (
    AssembledContext,
    AssemblyOptions,
    CodeSnippet,
    ContextSummary,
    EnhancedSearchResult,
    FileContext,
    RelevantSection,
    SearchResponse,
)

pytestmark = pytest.mark.anyio

AUTH_LINES = [f"// line {i}" for i in range(1, 21)]
AUTH_TEXT = "\n".join(AUTH_LINES) + "\n"


def enhanced(chunk, score: float, relevance: Optional[float] = None) -> EnhancedSearchResult:
    return EnhancedSearchResult(
        chunk_id=chunk.id,
        score=score,
        metadata={},
        chunk=chunk,
        contextual_relevance=score if relevance is None else relevance,
        snippet=chunk.content,
    )


def response(results: List[EnhancedSearchResult], query: str = "add login", low_confidence: bool = False):
    return SearchResponse(
        query=query,
        results=results,
        total_relevance=sum(r.score for r in results),
        elapsed_time=0.0,
        summary="",
        tier="keyword" if low_confidence else "semantic",
        low_confidence=low_confidence,
    )


@pytest.fixture
def store() -> InMemoryCodebaseStore:
    store = InMemoryCodebaseStore()
    store.add_files(
        "repo",
        [
            CodebaseFile.from_text("src/auth.ts", AUTH_TEXT),
            CodebaseFile.from_text("src/util.ts", "export const noop = () => {};\n"),
        ],
    )
    return store


@pytest.fixture
def assembler(store) -> ContextAssembler:
    return ContextAssembler(CodebaseCache(store))


async def test_sections_and_snippets_come_from_the_stored_file(assembler) -> None:
    chunk = make_chunk(name="login", file_path="src/auth.ts", start_line=5, end_line=7)

    context = await assembler.assemble(
        response([enhanced(chunk, 0.9, relevance=0.95)]), "repo", AssemblyOptions(context_lines=2)
    )

    assert len(context.relevant_files) == 1
    file = context.relevant_files[0]
    section = file.relevant_sections[0]
    assert file.path == "src/auth.ts"
    assert file.language == "typescript"
    assert file.line_count == 20
    assert section.content == "\n".join(AUTH_LINES[4:7])
    assert section.context == "\n".join(AUTH_LINES[2:9])
    assert section.relevance == 0.95

    snippet = context.code_snippets[0]
    assert snippet.context_before == "\n".join(AUTH_LINES[1:4])
    assert snippet.context_after == "\n".join(AUTH_LINES[7:10])
    assert context.total_lines == 20
    assert context.errors == []


async def test_missing_file_falls_back_to_chunk_content(assembler) -> None:
    chunk = make_chunk(name="ghost", file_path="src/missing.ts", start_line=3, end_line=5, imports=["./db"])

    context = await assembler.assemble(response([enhanced(chunk, 0.8)]), "repo")

    assert context.errors == []
    file = context.relevant_files[0]
    assert file.path == "src/missing.ts"
    assert file.relevant_sections
    assert file.relevant_sections[0].content == chunk.content
    assert file.relevant_sections[0].relevance == 0.8
    assert file.imports == ["./db"]
    assert file.line_count == 3
    assert context.code_snippets[0].context_before == ""


async def test_unknown_scope_raises(assembler) -> None:
    chunk = make_chunk(file_path="src/auth.ts")
    with pytest.raises(ScopeNotFoundError):
        await assembler.assemble(response([enhanced(chunk, 0.9)]), "nope")


async def test_client_files_replace_the_store(assembler) -> None:
    chunk = make_chunk(name="login", file_path="src/auth.ts", start_line=2, end_line=3)
    files = [CodebaseFile.from_text("src/auth.ts", "a\nb\nc\n")]

    context = await assembler.assemble(response([enhanced(chunk, 0.9)]), "nope", client_files=files)

    assert context.relevant_files[0].relevant_sections[0].content == "b\nc"


async def test_threshold_and_limits(assembler) -> None:
    results = [
        enhanced(make_chunk(name=f"fn{i}", file_path=f"src/f{i % 3}.ts", start_line=i * 10 + 1), score)
        for i, score in enumerate([0.9, 0.85, 0.8, 0.7, 0.6, 0.3])
    ]

    context = await assembler.assemble(
        response(results), "repo", AssemblyOptions(max_files=2, max_snippets=4, relevance_threshold=0.5)
    )

    assert [f.path for f in context.relevant_files] == ["src/f0.ts", "src/f1.ts"]
    assert {s.name for s in context.code_snippets} == {"fn0", "fn1", "fn3"}


async def test_file_errors_are_reported_and_skipped(assembler, monkeypatch) -> None:
    events = []
    original = assembler._context_from_file

    def flaky(stored, results, options):
        if stored.path == "src/auth.ts":
            raise OSError("disk gone")
        return original(stored, results, options)

    monkeypatch.setattr(assembler, "_context_from_file", flaky)
    results = [
        enhanced(make_chunk(name="login", file_path="src/auth.ts"), 0.9),
        enhanced(make_chunk(name="noop", file_path="src/util.ts", start_line=1, end_line=1), 0.8),
    ]

    context = await assembler.assemble(response(results), "repo", on_file_read=events.append)

    assert [f.path for f in context.relevant_files] == ["src/util.ts"]
    assert len(context.errors) == 1 and "src/auth.ts" in context.errors[0]
    assert ("src/auth.ts", "error") in [(e.file_path, e.status) for e in events]
    assert [e.status for e in events if e.file_path == "src/util.ts"] == ["reading", "processing", "complete"]


async def test_export_is_deterministic(assembler) -> None:
    chunk = make_chunk(name="login", file_path="src/auth.ts", start_line=5, end_line=7)
    search = response([enhanced(chunk, 0.9)], query="implement login")

    first = await assembler.assemble(search, "repo")
    second = await assembler.assemble(search, "repo")
    text = assembler.export_as_text(first)

    assert first.context_id == second.context_id
    assert first.context_id.startswith("ctx_")
    assert text == assembler.export_as_text(second)
    assert text.startswith("# Context for Query: implement login\nConfidence: ")
    assert "### login - src/auth.ts:5-7" in text
    assert "```typescript" in text
    assert "fallback matching" not in text
    assert first.to_dict()["query"] == "implement login"


async def test_low_confidence_is_carried_into_the_export(assembler) -> None:
    chunk = make_chunk(name="login", file_path="src/auth.ts", start_line=5, end_line=7)

    context = await assembler.assemble(response([enhanced(chunk, 0.9)], low_confidence=True), "repo")

    assert context.low_confidence is True
    assert "fallback matching" in assembler.export_as_text(context)


def _display_context() -> AssembledContext:
    def section(chunk_id: str, start: int) -> RelevantSection:
        return RelevantSection("function", chunk_id, start, start + 5, "code", "code", 0.9, chunk_id)

    def snippet(path: str, chunk_id: str, start: int) -> CodeSnippet:
        return CodeSnippet(chunk_id, path, chunk_id, "function", "code", start, start + 5, 0.9, "typescript")

    files = [
        FileContext("b.ts", "b.ts", "typescript", [section("b1", 100), section("b2", 300)], [], [], 400, 0.5),
        FileContext("a.ts", "a.ts", "typescript", [section("a1", 1), section("a2", 250)], [], [], 300, 0.9),
    ]
    snippets = [snippet("a.ts", "a1", 1), snippet("a.ts", "a2", 250), snippet("b.ts", "b1", 100), snippet("b.ts", "b2", 300)]
    summary = ContextSummary(2, 4, ["typescript"], [], "", [])
    return AssembledContext("ctx_1", "q", files, snippets, summary, 700, 0.7)


def test_optimize_for_display_truncates_least_relevant_without_mutating() -> None:
    context = _display_context()
    assembler = ContextAssembler(CodebaseCache(InMemoryCodebaseStore()))

    optimized = assembler.optimize_for_display(context, max_display_lines=500)

    assert [f.path for f in optimized.relevant_files] == ["a.ts", "b.ts"]
    assert optimized.relevant_files[1].line_count == 200
    assert [s.chunk_id for s in optimized.relevant_files[1].relevant_sections] == ["b1", "b2"]
    assert [s.id for s in optimized.code_snippets] == ["a1", "a2", "b1", "b2"]
    assert optimized.total_lines == 500

    assert context.total_lines == 700
    assert [f.line_count for f in context.relevant_files] == [400, 300]
    assert len(context.code_snippets) == 4
    assert len(context.relevant_files[0].relevant_sections) == 2


def test_confidence_stays_in_bounds_for_arbitrary_inputs() -> None:
    rng = random.Random(1234)
    specials = [math.nan, math.inf, -math.inf, -5.0, 7.5, 0.0, 1.0]

    for _ in range(200):
        results = []
        for i in range(rng.randint(0, 30)):
            score = rng.choice(specials) if rng.random() < 0.3 else rng.uniform(-2.0, 3.0)
            results.append(enhanced(make_chunk(name=f"fn{i}", start_line=i + 1), score))
        files = [
            FileContext(f"f{i}.ts", f"f{i}.ts", rng.choice(["python", "typescript", "java", "go"]), [], [], [], 10, 0.5)
            for i in range(rng.randint(0, 12))
        ]
        snippets = [
            CodeSnippet(f"s{i}", "f.ts", None, "block", "", 1, 1, rng.uniform(-1.0, 2.0), "typescript")
            for i in range(rng.randint(0, 40))
        ]

        confidence = calculate_confidence(results, files, snippets)

        assert 0.0 <= confidence <= 1.0


def test_confidence_of_an_empty_context() -> None:
    assert calculate_confidence([], [], []) == pytest.approx(0.1)


def test_find_file_matching_order() -> None:
    files = [CodebaseFile.from_text("src/auth.ts", ""), CodebaseFile.from_text("lib/Auth.TS", "")]

    assert find_file(files, "lib/Auth.TS").path == "lib/Auth.TS"
    assert find_file(files, "./SRC/auth.ts").path == "src/auth.ts"
    assert find_file(files, "/work/project/src/auth.ts").path == "src/auth.ts"
    assert find_file(files, "other/auth.ts").path == "src/auth.ts"
    assert find_file(files, "src/missing.ts") is None
    assert normalize_path("./a\\\\B//c.ts") == "a/b/c.ts"


def test_summary_helpers() -> None:
    assert extract_key_patterns("function loginUser() {}\nclass AuthService {}") == ["loginUser", "AuthService"]
    assert suggested_approach("fix the bug", [], []).startswith("Review the similar implementations")
    assert suggested_approach("implement login", [], ["loginUser"]) == (
        "Based on the found patterns, consider implementing similar to the existing loginUser using the same approach."
    )
    assert suggested_approach("where is auth", [], []).startswith("Study the related code patterns")


def test_codebase_file_from_text_extracts_imports_and_exports() -> None:
    content = "import { hash } from './crypto';\nexport function login() {}\nexport const TOKEN = 1;\n"
    file = CodebaseFile.from_text("src/auth.ts", content)

    assert file.language == "typescript"
    assert file.lines == 3
    assert file.imports == ["./crypto"]
    assert file.exports == ["login", "TOKEN"]


class CountingStore(CodebaseStore):
    def __init__(self) -> None:
        self.calls: List[str] = []

    async def get_file(self, scope_id, path):
        return None

    async def get_all_files(self, scope_id):
        self.calls.append(scope_id)
        if scope_id == "unknown":
            return None
        return [CodebaseFile.from_text(f"{scope_id}.py", "x = 1\n")]


async def test_cache_evicts_oldest_scopes(fake_clock) -> None:
    store = CountingStore()
    cache = CodebaseCache(store, max_entries=3, retain_entries=2, clock=fake_clock)

    for scope in ["a", "b", "c", "d"]:
        await cache.get_files(scope)

    assert len(cache) == 2
    assert "c" in cache and "d" in cache
    assert "a" not in cache

    await cache.get_files("d")
    assert store.calls == ["a", "b", "c", "d"]


async def test_cache_reloads_after_ttl(fake_clock) -> None:
    store = CountingStore()
    cache = CodebaseCache(store, ttl=600, clock=fake_clock)

    await cache.get_files("a")
    fake_clock.now += 599
    await cache.get_files("a")
    fake_clock.now += 2
    await cache.get_files("a")

    assert store.calls == ["a", "a"]
    assert await cache.get_files("unknown") is None
    assert "unknown" not in cache


async def test_filesystem_store_reads_registered_directory(tmp_path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("def main():\n    return 1\n")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text("module.exports = 1;\n")
    (tmp_path / "image.png").write_bytes(b"\x89PNG")

    store = FilesystemCodebaseStore()
    assert await store.get_all_files("repo") is None
    store.register("repo", tmp_path)

    files = await store.get_all_files("repo")

    assert [f.path for f in files] == ["src/app.py"]
    assert files[0].exports == ["main"]
    assert (await store.get_file("repo", "src/app.py")).language == "python"
    assert await store.get_file("repo", "../outside.py") is None


async def test_remove_scope_forgets_files(store) -> None:
    store.remove_scope("repo")
    store.remove_scope("never-added")

    assert await store.get_all_files("repo") is None
    assert await store.get_file("repo", "src/auth.ts") is None


def test_optimize_for_display_keeps_sections_of_chunk_only_files() -> None:
    def section(chunk_id: str, start: int) -> RelevantSection:
        return RelevantSection("function", chunk_id, start, start + 5, "code", "code", 0.5, chunk_id)

    files = [
        FileContext("a.ts", "a.ts", "typescript", [section("a1", 1)], [], [], 495, 0.9),
        # Built from chunks alone: line_count is the sum of chunk lengths
        FileContext("c.ts", "c.ts", "typescript", [section("c1", 900), section("c2", 950)], [], [], 12, 0.4),
    ]
    summary = ContextSummary(2, 3, ["typescript"], [], "", [])
    context = AssembledContext("ctx_2", "q", files, [], summary, 507, 0.6)
    assembler = ContextAssembler(CodebaseCache(InMemoryCodebaseStore()))

    optimized = assembler.optimize_for_display(context, max_display_lines=500)

    truncated = optimized.relevant_files[1]
    assert truncated.line_count == 5
    assert [s.chunk_id for s in truncated.relevant_sections] == ["c1"]


def test_sections_within_budget() -> None:
    sections = [
        RelevantSection("function", name, start, start + 9, "code", "code", 0.5, name)
        for name, start in [("s1", 40), ("s2", 10), ("s3", 70)]
    ]

    assert [s.name for s in sections_within(sections, 25)] == ["s1", "s2"]
    assert [s.name for s in sections_within(sections, 30)] == ["s1", "s2", "s3"]
    assert [s.name for s in sections_within(sections, 3)] == ["s1"]
    assert sections_within([], 10) == []
