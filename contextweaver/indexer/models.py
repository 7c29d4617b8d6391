"""Data models for chunking and embedding."""

from dataclasses import dataclass, field
from typing import List, Optional

CHUNK_KINDS = (
    "function",
    "class",
    "method",
    "variable",
    "import",
    "export",
    "interface",
    "type",
    "block",
)


@dataclass
class ChunkMetadata:
    """Language-level facts attached to a chunk."""

    language: str
    complexity: int = 1  # 1-10
    dependencies: List[str] = field(default_factory=list)
    exports: List[str] = field(default_factory=list)
    imports: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)


@dataclass
class CodeChunk:
    """Represents a semantic chunk of code."""

    id: str  # derived from path, line range and content prefix
    content: str
    kind: str  # one of CHUNK_KINDS
    name: Optional[str]
    file_path: str
    start_line: int  # 1-based, inclusive
    end_line: int
    metadata: ChunkMetadata
    parent_chunk: Optional[str] = None
    child_chunks: List[str] = field(default_factory=list)


@dataclass
class EmbeddingResult:
    """Embedding vector for one chunk (or a query)."""

    chunk_id: str
    embedding: List[float]
    model: str
    prompt_tokens: int = 0
    total_tokens: int = 0


@dataclass
class EmbeddingBatch:
    """Outcome of embedding a set of chunks.

    ``chunks`` and ``embeddings`` hold only the successfully embedded chunks,
    in embedding (priority) order. Chunks whose batch failed or whose vector
    was invalid are listed in ``failed_chunk_ids``.
    """

    chunks: List[CodeChunk]
    embeddings: List[EmbeddingResult]
    total_tokens: int
    elapsed_time: float
    failed_chunk_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def success_rate(self) -> float:
        attempted = len(self.embeddings) + len(self.failed_chunk_ids)
        if attempted == 0:
            return 1.0
        return len(self.embeddings) / attempted


@dataclass
class IndexingProgress:
    """Progress event delivered to indexing/embedding observers."""

    phase: str  # chunking, embedding, storing, complete
    current: int
    total: int
    message: str = ""
    current_file: Optional[str] = None

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 100.0
        return min(100.0, 100.0 * self.current / self.total)
