"""Semantic code search with cascading relevance fallback and re-ranking."""

import logging
import re
import time
from collections import Counter
from dataclasses import replace
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import ScopeNotFoundError
from ..indexer.embeddings import EmbeddingBatcher
from ..indexer.models import CodeChunk
from ..indexer.semantic_chunker import SemanticChunker
from ..vector_db.payload import payload_to_chunk
from ..vector_db.qdrant_client import CodeVectorDB
from .models import EnhancedSearchResult, SearchContext, SearchResponse, SearchResult

logger = logging.getLogger(__name__)

FALLBACK_THRESHOLD = 0.3
BEST_EFFORT_RESULTS = 3
SNIPPET_MAX_CHARS = 300
RELATED_RESULTS = 5

# Weights for the keyword fallback: symbol name, file name, content
NAME_WEIGHT = 3
FILE_WEIGHT = 2
CONTENT_WEIGHT = 1


def query_tokens(query: str) -> List[str]:
    """Lower-cased query words longer than two characters."""
    return [token for token in re.split(r"[^\w$]+", query.lower()) if len(token) > 2]


def contextual_relevance(chunk: CodeChunk, query: str, base_score: float) -> float:
    """Re-rank a hit using its kind, keywords, complexity and size.

    Args:
        chunk: Reconstructed chunk
        query: Search query
        base_score: Similarity reported by the vector index

    Returns:
        Adjusted score, at most 1.0
    """
    relevance = base_score
    query_lower = query.lower()

    for kind in ("function", "class", "interface"):
        if kind in query_lower and chunk.kind == kind:
            relevance += 0.1

    words = query_lower.split()
    matches = [kw for kw in chunk.metadata.keywords if any(kw in word or word in kw for word in words)]
    relevance += len(matches) * 0.02

    relevance += chunk.metadata.complexity * 0.01

    if len(chunk.content) < 100:
        relevance -= 0.05

    return min(relevance, 1.0)


def generate_snippet(chunk: CodeChunk, query: str, context_window: int = 3) -> str:
    """Cut a window of lines around the line with the most query-word hits."""
    lines = chunk.content.split("\n")
    words = query.lower().split()

    best_index, best_score = 0, 0
    for index, line in enumerate(lines):
        line_lower = line.lower()
        score = sum(1 for word in words if word in line_lower)
        if score > best_score:
            best_index, best_score = index, score

    start = max(0, best_index - context_window)
    end = min(len(lines), best_index + context_window + 1)
    snippet = "\n".join(lines[start:end])

    if len(snippet) > SNIPPET_MAX_CHARS:
        return snippet[:SNIPPET_MAX_CHARS] + "..."
    return snippet


def keyword_fallback(query: str, candidates: List[SearchResult]) -> List[Tuple[SearchResult, int]]:
    """Score candidates by weighted substring matches of query tokens.

    Returns:
        (candidate, score) pairs with score > 0, best first
    """
    tokens = query_tokens(query)
    if not tokens:
        return []

    scored = []
    for candidate in candidates:
        metadata = candidate.metadata or {}
        name = str(metadata.get("name") or "").lower()
        file_name = str(metadata.get("file_name") or PurePosixPath(str(metadata.get("file_path") or "")).name).lower()
        content = str(metadata.get("text") or metadata.get("content_preview") or "").lower()

        score = 0
        for token in tokens:
            if token in name:
                score += NAME_WEIGHT
            if token in file_name:
                score += FILE_WEIGHT
            if token in content:
                score += CONTENT_WEIGHT
        if score > 0:
            scored.append((candidate, score))

    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored


def summarize_results(results: List[EnhancedSearchResult], query: str) -> str:
    """One-line description of what a search found."""
    if not results:
        return f'No relevant code found for query: "{query}"'

    file_count = len({result.chunk.file_path for result in results})
    top_kind = Counter(result.chunk.kind for result in results).most_common(1)[0][0]
    return f'Found {len(results)} relevant {top_kind} segments across {file_count} files for "{query}"'


class SearchTool:
    """Retrieval service: embed the query, search the index, fall back, re-rank."""

    def __init__(
        self,
        vector_db: CodeVectorDB,
        embeddings: EmbeddingBatcher,
        chunker: Optional[SemanticChunker] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Initialize search tool.

        Args:
            vector_db: Vector database client
            embeddings: Embedding batcher used for query vectors
            chunker: Chunker checked by ``health_check``
            clock: Time source for elapsed-time reporting
        """
        self.vector_db = vector_db
        self.embeddings = embeddings
        self.chunker = chunker
        self._clock = clock or time.monotonic

    async def search(self, query: str, context: SearchContext) -> SearchResponse:
        """Search a codebase for chunks relevant to a natural-language query.

        Args:
            query: Search query
            context: Scope, filters, limits and threshold

        Returns:
            SearchResponse ordered by contextual relevance

        Raises:
            ScopeNotFoundError: When nothing is indexed for the scope
            EmbeddingError: When the query cannot be embedded
        """
        start_time = self._clock()
        logger.info(f"Searching for: {query[:100]} (scope: {context.scope_id}, max: {context.max_results})")

        if self.vector_db.count(context.scope_id) == 0:
            raise ScopeNotFoundError(context.scope_id, "no vectors indexed")

        query_vector = await self.embeddings.embed_query(query)
        candidates = self.vector_db.query(
            query_vector=query_vector,
            scope_id=context.scope_id,
            language_filter=context.language,
            top_k=context.max_results,
        )

        if context.file_type:
            suffix = context.file_type if context.file_type.startswith(".") else f".{context.file_type}"
            candidates = [
                c for c in candidates if str(c.metadata.get("file_path", "")).lower().endswith(suffix.lower())
            ]

        selected, tier = self._cascade(query, candidates, context)
        logger.info(f"Found {len(selected)} results at tier '{tier}' ({len(candidates)} candidates)")

        enhanced = []
        for result in selected:
            item = self._enhance(result, query, context)
            if item is not None:
                enhanced.append(item)
        enhanced.sort(key=lambda item: item.contextual_relevance, reverse=True)

        return SearchResponse(
            query=query,
            results=enhanced,
            total_relevance=sum(item.score for item in enhanced),
            elapsed_time=self._clock() - start_time,
            summary=summarize_results(enhanced, query),
            tier=tier if enhanced else "none",
            low_confidence=tier in ("keyword", "best_effort") and bool(enhanced),
        )

    def _cascade(
        self,
        query: str,
        candidates: List[SearchResult],
        context: SearchContext,
    ) -> Tuple[List[SearchResult], str]:
        """Apply threshold, relaxed threshold, keyword and best-effort tiers in order."""
        primary = [c for c in candidates if c.score >= context.relevance_threshold]
        if primary:
            return primary, "semantic"

        relaxed = [c for c in candidates if c.score >= FALLBACK_THRESHOLD]
        if relaxed:
            logger.info(f"No results above {context.relevance_threshold}, using fallback threshold {FALLBACK_THRESHOLD}")
            return relaxed, "relaxed"

        keyword_hits = keyword_fallback(query, candidates)
        if keyword_hits:
            logger.info(f"Semantic tiers empty, keyword fallback matched {len(keyword_hits)} candidates")
            return [candidate for candidate, _ in keyword_hits[: context.max_results]], "keyword"

        if candidates:
            logger.info("All relevance tiers empty, returning best-effort candidates")
            ranked = sorted(candidates, key=lambda c: c.score, reverse=True)
            return ranked[:BEST_EFFORT_RESULTS], "best_effort"

        return [], "none"

    def _enhance(
        self,
        result: SearchResult,
        query: str,
        context: SearchContext,
        with_related: bool = True,
    ) -> Optional[EnhancedSearchResult]:
        """Attach the reconstructed chunk, re-ranking score, snippet and related hits.

        Returns None (and logs) if this one result cannot be enhanced.
        """
        try:
            chunk = payload_to_chunk(result.metadata, result.chunk_id)
            related: List[EnhancedSearchResult] = []
            if with_related and context.include_related:
                related = self._find_related(chunk, query, context)

            return EnhancedSearchResult(
                chunk_id=result.chunk_id,
                score=result.score,
                metadata=result.metadata,
                chunk=chunk,
                contextual_relevance=contextual_relevance(chunk, query, result.score),
                snippet=generate_snippet(chunk, query, context.context_window),
                related_chunks=related,
            )
        except Exception as e:
            logger.warning(f"Error enhancing result {result.chunk_id}: {e}")
            return None

    def _find_related(self, chunk: CodeChunk, query: str, context: SearchContext) -> List[EnhancedSearchResult]:
        """Other chunks from the same file."""
        try:
            same_file = self.vector_db.list_chunks(context.scope_id, file_path=chunk.file_path, limit=RELATED_RESULTS + 1)
        except Exception as e:
            logger.warning(f"Error finding related chunks for {chunk.id}: {e}")
            return []

        related = []
        for result in same_file:
            if result.chunk_id == chunk.id or result.metadata.get("file_path") != chunk.file_path:
                continue
            item = self._enhance(result, query, context, with_related=False)
            if item is not None:
                related.append(item)
        return related[:RELATED_RESULTS]

    async def get_intelligent_context(
        self,
        file_path: str,
        scope_id: str,
        context_type: str = "file",
        target_name: Optional[str] = None,
    ) -> SearchResponse:
        """Search for context around one file, function or class.

        Args:
            file_path: File the context is about
            scope_id: Codebase to search
            context_type: ``file``, ``function`` or ``class``
            target_name: Function or class name for the latter two types
        """
        if context_type == "function":
            query = f"Function {target_name} implementation and usage patterns"
        elif context_type == "class":
            query = f"Class {target_name} methods properties and inheritance"
        else:
            query = f"File structure and main functionality of {file_path}"

        response = await self.search(
            query,
            SearchContext(scope_id=scope_id, max_results=15, relevance_threshold=0.6, include_related=True),
        )

        def focused(item: EnhancedSearchResult) -> bool:
            if file_path in item.chunk.file_path:
                if target_name:
                    return item.chunk.name == target_name or target_name in item.chunk.content
                return True
            return bool(target_name) and target_name in item.chunk.content

        label = f"{file_path}::{target_name}" if target_name else file_path
        results = [item for item in response.results if focused(item)]
        return replace(
            response,
            results=results,
            total_relevance=sum(item.score for item in results),
            summary=f"Intelligent context for {context_type} {label}",
        )

    async def find_similar_patterns(
        self,
        code_example: str,
        scope_id: str,
        pattern_type: str = "pattern",
    ) -> SearchResponse:
        """Find implementations similar to a code example."""
        query = f"{pattern_type} implementation similar to: {code_example[:500]}"
        response = await self.search(
            query,
            SearchContext(scope_id=scope_id, max_results=20, relevance_threshold=0.75),
        )
        return replace(response, summary=f"Similar {pattern_type} patterns found in codebase")

    async def health_check(self) -> Dict[str, Any]:
        """Check the vector index, embedding provider and chunker.

        Returns:
            Dict with overall ``status`` (healthy, degraded, unhealthy) and per-component state
        """
        index_health = self.vector_db.health()
        embeddings_ok = await self.embeddings.health_check()

        chunking_ok = True
        if self.chunker is not None:
            try:
                self.chunker.chunk("test.js", 'function test() { return "hello"; }')
            except Exception as e:
                logger.error(f"Chunker health check failed: {e}")
                chunking_ok = False

        if index_health["connected"] and index_health["index_ready"] and embeddings_ok and chunking_ok:
            status = "healthy"
        elif index_health["connected"]:
            status = "degraded"
        else:
            status = "unhealthy"

        return {
            "status": status,
            "components": {
                "vector_index": index_health,
                "embeddings": embeddings_ok,
                "chunking": chunking_ok,
            },
            "details": (
                f"Vector index: {'OK' if index_health['connected'] else 'FAIL'}, "
                f"Embeddings: {'OK' if embeddings_ok else 'FAIL'}, "
                f"Chunking: {'OK' if chunking_ok else 'FAIL'}"
            ),
        }

    async def search_code(
        self,
        query: str,
        scope_id: str,
        limit: int = 10,
        language: Optional[str] = None,
        file_type: Optional[str] = None,
        relevance_threshold: float = 0.7,
        include_related: bool = False,
    ) -> dict:
        """Search for code using natural language queries.

        Args:
            query: Natural language search query
            scope_id: Codebase to search
            limit: Maximum number of results to return (default: 10)
            language: Filter by programming language (e.g., 'python', 'typescript')
            file_type: Filter by file extension (e.g., '.ts')
            relevance_threshold: Minimum similarity for the first cascade tier
            include_related: Also return other chunks from the same files

        Returns:
            Dictionary with search results
        """
        try:
            response = await self.search(
                query,
                SearchContext(
                    scope_id=scope_id,
                    language=language,
                    file_type=file_type,
                    max_results=limit,
                    relevance_threshold=relevance_threshold,
                    include_related=include_related,
                ),
            )

            formatted_results = []
            for i, item in enumerate(response.results, 1):
                formatted_results.append(
                    {
                        "rank": i,
                        "score": round(item.score, 4),
                        "relevance": round(item.contextual_relevance, 4),
                        "file": item.chunk.file_path,
                        "lines": f"{item.chunk.start_line}-{item.chunk.end_line}",
                        "language": item.chunk.metadata.language,
                        "type": item.chunk.kind,
                        "name": item.chunk.name or "N/A",
                        "snippet": item.snippet,
                        "related": [related.chunk_id for related in item.related_chunks],
                    }
                )

            return {
                "success": True,
                "query": query,
                "summary": response.summary,
                "tier": response.tier,
                "low_confidence": response.low_confidence,
                "total_results": len(formatted_results),
                "results": formatted_results,
            }

        except Exception as e:
            logger.error(f"Error during search: {e}")
            return {"success": False, "error": str(e)}
