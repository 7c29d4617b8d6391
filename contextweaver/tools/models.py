"""Query-time data models for search results and assembled context."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from ..indexer.models import CodeChunk
from ..vector_db.payload import SearchResult

__all__ = [
    "SearchResult",
    "EnhancedSearchResult",
    "SearchContext",
    "SearchResponse",
    "RelevantSection",
    "FileContext",
    "CodeSnippet",
    "ContextSummary",
    "AssembledContext",
    "AssemblyOptions",
    "FileReadStatus",
]


@dataclass
class SearchContext:
    """Options for one search."""

    scope_id: str
    language: Optional[str] = None
    file_type: Optional[str] = None  # extension filter such as ".ts"
    max_results: int = 10
    relevance_threshold: float = 0.7
    include_related: bool = False
    context_window: int = 3


@dataclass
class EnhancedSearchResult:
    """A search hit with its reconstructed chunk and re-ranking score."""

    chunk_id: str
    score: float
    metadata: Dict[str, Any]
    chunk: CodeChunk
    contextual_relevance: float
    snippet: str
    related_chunks: List["EnhancedSearchResult"] = field(default_factory=list)


@dataclass
class SearchResponse:
    """Ranked results of a search.

    ``tier`` names the cascade stage that produced the results: ``semantic``,
    ``relaxed``, ``keyword``, ``best_effort`` or ``none``. Results from the
    keyword and best-effort stages are flagged ``low_confidence``.
    """

    query: str
    results: List[EnhancedSearchResult]
    total_relevance: float
    elapsed_time: float
    summary: str
    tier: str = "semantic"
    low_confidence: bool = False


@dataclass
class RelevantSection:
    kind: str
    name: Optional[str]
    start_line: int
    end_line: int
    content: str
    context: str
    relevance: float
    chunk_id: str


@dataclass
class FileContext:
    path: str
    name: str
    language: str
    relevant_sections: List[RelevantSection]
    imports: List[str]
    exports: List[str]
    line_count: int
    relevance: float
    content: Optional[str] = None


@dataclass
class CodeSnippet:
    id: str
    file_path: str
    name: Optional[str]
    kind: str
    content: str
    start_line: int
    end_line: int
    relevance: float
    language: str
    context_before: str = ""
    context_after: str = ""


@dataclass
class ContextSummary:
    files_analyzed: int
    sections_found: int
    primary_languages: List[str]
    key_patterns: List[str]
    suggested_approach: str
    related_concepts: List[str]


@dataclass
class AssembledContext:
    """Everything downstream consumers need to reason about a query."""

    context_id: str
    query: str
    relevant_files: List[FileContext]
    code_snippets: List[CodeSnippet]
    summary: ContextSummary
    total_lines: int
    confidence: float
    low_confidence: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AssemblyOptions:
    max_files: int = 10
    max_snippets: int = 20
    context_lines: int = 5
    include_full_files: bool = False
    relevance_threshold: float = 0.5


@dataclass
class FileReadStatus:
    """Per-file progress event emitted while assembling context."""

    file_path: str
    status: str  # reading, processing, complete, error
    message: str = ""
