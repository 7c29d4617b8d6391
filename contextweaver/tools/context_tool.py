"""Assemble ranked search results into a bounded, exportable context."""

import logging
import math
import re
from dataclasses import replace
from pathlib import PurePosixPath
from typing import Callable, Dict, List, Optional, Sequence

import blake3

from ..errors import ScopeNotFoundError
from ..store.codebase_store import CodebaseCache, CodebaseFile
from .models import (
    AssembledContext,
    AssemblyOptions,
    CodeSnippet,
    ContextSummary,
    EnhancedSearchResult,
    FileContext,
    FileReadStatus,
    RelevantSection,
    SearchResponse,
)

logger = logging.getLogger(__name__)

FileReadCallback = Callable[[FileReadStatus], None]

SNIPPET_CONTEXT_LINES = 3
EXPORT_SNIPPET_LIMIT = 10

DECLARATION_PATTERN = re.compile(r"(?:function\s+|const\s+|let\s+|var\s+|def\s+)(\w+)")
CLASS_PATTERN = re.compile(r"class\s+(\w+)")
PASCAL_CASE_PATTERN = re.compile(r"\b[A-Z][a-zA-Z0-9]+\b")

FENCE_LANGUAGES = {
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".py": "python",
    ".java": "java",
    ".cpp": "cpp",
    ".c": "c",
    ".cs": "csharp",
    ".php": "php",
    ".rb": "ruby",
    ".go": "go",
    ".rs": "rust",
}


def normalize_path(path: str) -> str:
    """Lower-cased forward-slash path without leading ``/`` or ``./``."""
    path = re.sub(r"/+", "/", path.replace("\\", "/"))
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/").lower()


def find_file(files: Sequence[CodebaseFile], file_path: str) -> Optional[CodebaseFile]:
    """Resolve a result path against stored files with progressively looser matching.

    Exact path, then normalized path (slashes and case), then suffix match,
    then file name alone.
    """
    for file in files:
        if file.path == file_path:
            return file

    normalized = normalize_path(file_path)
    for file in files:
        if normalize_path(file.path) == normalized:
            return file

    for file in files:
        candidate = normalize_path(file.path)
        if candidate.endswith("/" + normalized) or normalized.endswith("/" + candidate):
            return file

    file_name = PurePosixPath(file_path.replace("\\", "/")).name
    if file_name:
        for file in files:
            if PurePosixPath(file.path.replace("\\", "/")).name == file_name:
                return file
    return None


def extract_key_patterns(content: str) -> List[str]:
    """Declared names, class names and the first few PascalCase identifiers."""
    keywords: Dict[str, None] = {}
    for name in DECLARATION_PATTERN.findall(content):
        if len(name) > 2:
            keywords.setdefault(name, None)
    for name in CLASS_PATTERN.findall(content):
        keywords.setdefault(name, None)
    for name in PASCAL_CASE_PATTERN.findall(content)[:5]:
        keywords.setdefault(name, None)
    return list(keywords)


def suggested_approach(query: str, files: List[FileContext], patterns: List[str]) -> str:
    query_lower = query.lower()

    if "implement" in query_lower or "create" in query_lower:
        pattern = patterns[0] if patterns else "components"
        language = files[0].language if files else "same"
        return (
            f"Based on the found patterns, consider implementing similar to the existing {pattern} "
            f"using the {language} approach."
        )
    if "fix" in query_lower or "debug" in query_lower:
        return "Review the similar implementations found to understand the expected behavior and identify potential issues."
    if "optimize" in query_lower or "improve" in query_lower:
        return "Analyze the performance patterns in the found code to identify optimization opportunities."
    return "Study the related code patterns to understand the current implementation approach and build upon it."


def related_concepts(files: List[FileContext], limit: int = 8) -> List[str]:
    concepts: Dict[str, None] = {}
    for file in files:
        for name in file.imports[:3] + file.exports[:3]:
            concepts.setdefault(name, None)
    for file in files:
        base_name = file.name.split(".")[0]
        if len(base_name) > 2:
            concepts.setdefault(base_name, None)
    return list(concepts)[:limit]


def calculate_confidence(
    results: Sequence[EnhancedSearchResult],
    files: Sequence[FileContext],
    snippets: Sequence[CodeSnippet],
) -> float:
    """Weighted confidence in [0, 1].

    Up to 0.4 from the mean result score, up to 0.2 from file count,
    up to 0.2 from snippet count, 0.1 when at most two languages are
    involved and up to 0.1 from snippets scoring above 0.8.
    """
    confidence = 0.0

    scores = [r.score for r in results if isinstance(r.score, (int, float)) and math.isfinite(r.score)]
    if scores:
        confidence += min(max(sum(scores) / len(scores), 0.0), 0.4)

    confidence += min(len(files) * 0.05, 0.2)
    confidence += min(len(snippets) * 0.02, 0.2)

    if len({f.language for f in files}) <= 2:
        confidence += 0.1

    high_relevance = [s for s in snippets if s.relevance > 0.8]
    confidence += min(len(high_relevance) * 0.03, 0.1)

    return min(max(confidence, 0.0), 1.0)


def sections_within(sections: Sequence[RelevantSection], budget: int) -> List[RelevantSection]:
    """Leading sections whose combined length fits a line budget.

    The first section is always kept, so a truncated file never loses all of them.
    """
    kept: List[RelevantSection] = []
    used = 0
    for section in sections:
        length = section.end_line - section.start_line + 1
        if kept and used + length > budget:
            break
        kept.append(section)
        used += length
    return kept


class ContextAssembler:
    """Turn ranked search results into file contexts, snippets and a summary."""

    def __init__(self, cache: CodebaseCache):
        """Initialize the assembler.

        Args:
            cache: Bounded cache in front of the codebase store
        """
        self.cache = cache

    async def assemble(
        self,
        search_response: SearchResponse,
        scope_id: str,
        options: Optional[AssemblyOptions] = None,
        client_files: Optional[List[CodebaseFile]] = None,
        on_file_read: Optional[FileReadCallback] = None,
    ) -> AssembledContext:
        """Build an AssembledContext from a search response.

        Args:
            search_response: Ranked results from the retrieval service
            scope_id: Codebase the results came from
            options: Limits and threshold
            client_files: Files supplied by the caller; used instead of the store
            on_file_read: Receives per-file progress events

        Returns:
            AssembledContext

        Raises:
            ScopeNotFoundError: When the store does not know the scope and no
                client files were given
        """
        options = options or AssemblyOptions()
        query = search_response.query
        logger.info(f"Assembling context for query: {query[:100]} ({len(search_response.results)} results)")

        if client_files is not None:
            files = client_files
        else:
            files = await self.cache.get_files(scope_id)
            if files is None:
                raise ScopeNotFoundError(scope_id, "codebase store has no such scope")

        relevant = [r for r in search_response.results if r.score >= options.relevance_threshold]
        relevant = relevant[: options.max_snippets]

        groups: Dict[str, List[EnhancedSearchResult]] = {}
        for result in relevant:
            groups.setdefault(result.chunk.file_path, []).append(result)
        paths = list(groups)[: options.max_files]

        file_contexts: List[FileContext] = []
        snippets: List[CodeSnippet] = []
        errors: List[str] = []

        for file_path in paths:
            results = groups[file_path]
            self._notify(on_file_read, file_path, "reading")
            try:
                stored = find_file(files, file_path)
                if stored is None or not stored.content:
                    logger.warning(f"File not found in codebase, using chunk content: {file_path}")
                    file_context = self._context_from_chunks(file_path, results, options)
                    file_snippets = self._snippets(file_context, None)
                else:
                    self._notify(on_file_read, file_path, "processing")
                    file_context = self._context_from_file(stored, results, options)
                    file_snippets = self._snippets(file_context, stored.content.split("\n"))

                file_contexts.append(file_context)
                snippets.extend(file_snippets)
                self._notify(on_file_read, file_path, "complete", f"{file_context.line_count} lines")
            except Exception as e:
                message = f"Error processing file {file_path}: {e}"
                logger.error(message)
                errors.append(message)
                self._notify(on_file_read, file_path, "error", str(e))

        summary = self._summary(file_contexts, snippets, query)
        context = AssembledContext(
            context_id=self._context_id(query, scope_id, relevant),
            query=query,
            relevant_files=file_contexts,
            code_snippets=snippets,
            summary=summary,
            total_lines=sum(fc.line_count for fc in file_contexts),
            confidence=calculate_confidence(search_response.results, file_contexts, snippets),
            low_confidence=search_response.low_confidence,
            errors=errors,
        )
        logger.info(
            f"Assembled {len(file_contexts)} files, {len(snippets)} snippets, "
            f"{context.total_lines} lines (confidence {context.confidence:.2f})"
        )
        return context

    @staticmethod
    def _notify(callback: Optional[FileReadCallback], file_path: str, status: str, message: str = "") -> None:
        if callback is not None:
            callback(FileReadStatus(file_path=file_path, status=status, message=message))

    def _context_from_file(
        self,
        stored: CodebaseFile,
        results: List[EnhancedSearchResult],
        options: AssemblyOptions,
    ) -> FileContext:
        lines = stored.content.split("\n")
        sections = []
        for result in results:
            chunk = result.chunk
            start = max(1, min(chunk.start_line, len(lines)))
            end = max(start, min(chunk.end_line, len(lines)))
            context_start = max(0, start - options.context_lines - 1)
            context_end = min(len(lines), end + options.context_lines)
            sections.append(
                RelevantSection(
                    kind=chunk.kind,
                    name=chunk.name,
                    start_line=start,
                    end_line=end,
                    content="\n".join(lines[start - 1 : end]),
                    context="\n".join(lines[context_start:context_end]),
                    relevance=result.contextual_relevance,
                    chunk_id=chunk.id,
                )
            )

        return FileContext(
            path=stored.path,
            name=PurePosixPath(stored.path.replace("\\", "/")).name,
            language=stored.language,
            relevant_sections=sections,
            imports=list(stored.imports),
            exports=list(stored.exports),
            line_count=stored.lines,
            relevance=sum(r.score for r in results) / len(results),
            content=stored.content if options.include_full_files else None,
        )

    def _context_from_chunks(
        self,
        file_path: str,
        results: List[EnhancedSearchResult],
        options: AssemblyOptions,
    ) -> FileContext:
        """Build a file context from the result chunks alone."""
        sections = []
        line_count = 0
        imports: Dict[str, None] = {}
        exports: Dict[str, None] = {}

        for result in results:
            chunk = result.chunk
            for name in chunk.metadata.imports:
                imports.setdefault(name, None)
            for name in chunk.metadata.exports:
                exports.setdefault(name, None)
            if not chunk.content:
                continue
            sections.append(
                RelevantSection(
                    kind=chunk.kind,
                    name=chunk.name,
                    start_line=chunk.start_line,
                    end_line=chunk.end_line,
                    content=chunk.content,
                    context=chunk.content,
                    relevance=result.score,
                    chunk_id=result.chunk_id,
                )
            )
            line_count += chunk.end_line - chunk.start_line + 1

        content = None
        if options.include_full_files:
            content = "\n\n".join(section.content for section in sections)

        return FileContext(
            path=file_path,
            name=PurePosixPath(file_path.replace("\\", "/")).name or file_path,
            language=results[0].chunk.metadata.language if results else "unknown",
            relevant_sections=sections,
            imports=list(imports),
            exports=list(exports),
            line_count=line_count,
            relevance=sum(r.score for r in results) / len(results),
            content=content,
        )

    def _snippets(self, file_context: FileContext, lines: Optional[List[str]]) -> List[CodeSnippet]:
        snippets = []
        for section in file_context.relevant_sections:
            before = after = ""
            if lines is not None:
                before = "\n".join(lines[max(0, section.start_line - 1 - SNIPPET_CONTEXT_LINES) : section.start_line - 1])
                after = "\n".join(lines[section.end_line : section.end_line + SNIPPET_CONTEXT_LINES])
            snippets.append(
                CodeSnippet(
                    id=section.chunk_id,
                    file_path=file_context.path,
                    name=section.name,
                    kind=section.kind,
                    content=section.content,
                    start_line=section.start_line,
                    end_line=section.end_line,
                    relevance=section.relevance,
                    language=file_context.language,
                    context_before=before,
                    context_after=after,
                )
            )
        return snippets

    def _summary(self, files: List[FileContext], snippets: List[CodeSnippet], query: str) -> ContextSummary:
        languages: Dict[str, None] = {}
        for file in files:
            languages.setdefault(file.language, None)

        patterns: Dict[str, None] = {}
        for snippet in snippets:
            for name in extract_key_patterns(snippet.content):
                patterns.setdefault(name, None)
        key_patterns = list(patterns)[:10]

        return ContextSummary(
            files_analyzed=len(files),
            sections_found=len(snippets),
            primary_languages=list(languages),
            key_patterns=key_patterns,
            suggested_approach=suggested_approach(query, files, key_patterns),
            related_concepts=related_concepts(files),
        )

    @staticmethod
    def _context_id(query: str, scope_id: str, results: Sequence[EnhancedSearchResult]) -> str:
        material = "\n".join([query, scope_id] + [r.chunk_id for r in results])
        return "ctx_" + blake3.blake3(material.encode()).hexdigest()[:16]

    def optimize_for_display(self, context: AssembledContext, max_display_lines: int = 500) -> AssembledContext:
        """Fit a context into a line budget, truncating the least relevant files first.

        Returns a new context; the input is not modified.
        """
        current_lines = 0
        kept: List[FileContext] = []

        for file in sorted(context.relevant_files, key=lambda f: f.relevance, reverse=True):
            if current_lines >= max_display_lines:
                break

            remaining = max_display_lines - current_lines
            if file.line_count <= remaining:
                kept.append(file)
                current_lines += file.line_count
            else:
                kept.append(
                    replace(
                        file,
                        content="\n".join(file.content.split("\n")[:remaining]) if file.content else file.content,
                        line_count=remaining,
                        relevant_sections=sections_within(file.relevant_sections, remaining),
                    )
                )
                current_lines = max_display_lines

        kept_sections = {
            (file.path, section.chunk_id) for file in kept for section in file.relevant_sections
        }
        snippets = [s for s in context.code_snippets if (s.file_path, s.id) in kept_sections]

        return replace(context, relevant_files=kept, code_snippets=snippets, total_lines=current_lines)

    def export_as_text(self, context: AssembledContext) -> str:
        """Render a context as Markdown for downstream prompt construction.

        Output depends only on the context, so equal contexts export identically.
        """
        sections = [
            f"# Context for Query: {context.query}",
            f"Confidence: {context.confidence * 100:.1f}%",
        ]
        if context.low_confidence:
            sections.append("Note: results come from fallback matching and may be only loosely related.")
        sections.append("")

        sections.append("## Summary")
        sections.append(f"- Files analyzed: {context.summary.files_analyzed}")
        sections.append(f"- Code sections found: {context.summary.sections_found}")
        sections.append(f"- Primary languages: {', '.join(context.summary.primary_languages)}")
        sections.append(f"- Suggested approach: {context.summary.suggested_approach}")
        sections.append("")

        sections.append("## Relevant Code Sections")
        for snippet in context.code_snippets[:EXPORT_SNIPPET_LIMIT]:
            fence = FENCE_LANGUAGES.get(PurePosixPath(snippet.file_path).suffix.lower(), "")
            sections.append(
                f"### {snippet.name or snippet.kind} - {snippet.file_path}:{snippet.start_line}-{snippet.end_line}"
            )
            sections.append(f"Relevance: {snippet.relevance * 100:.1f}%")
            sections.append(f"```{fence}")
            sections.append(snippet.content)
            sections.append("```")
            sections.append("")

        return "\n".join(sections)
