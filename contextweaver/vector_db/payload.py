"""Mapping between code chunks and the metadata stored beside each vector.

The index keeps enough metadata to rebuild an approximate chunk without
reading the source file. ``payload_to_chunk`` is total: any mapping,
including an empty one, produces a valid ``CodeChunk``.

Defaults for missing or malformed fields:

===============  ==========================================================
content          full ``text`` if stored, else ``content_preview``, else ""
kind             ``"block"`` (also used for unknown kinds)
name             None
file_path        ``"unknown"``
start_line       1
end_line         ``start_line`` (never smaller)
language         ``"text"``
complexity       1, clamped to 1-10
lists            empty
parent_chunk     None
id               the point's chunk id, else a hash of path and line range
===============  ==========================================================
"""

import time
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, List, Mapping, Optional

import blake3

from ..indexer.models import CHUNK_KINDS, ChunkMetadata, CodeChunk

PREVIEW_LENGTH = 200
FULL_TEXT_LIMIT = 2000


@dataclass
class SearchResult:
    """One nearest-neighbor hit returned by the vector index."""

    chunk_id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


def chunk_to_payload(chunk: CodeChunk, scope_id: str, timestamp: Optional[float] = None) -> Dict[str, Any]:
    """Build the metadata stored with a chunk's vector.

    Args:
        chunk: Chunk to describe
        scope_id: Codebase the chunk belongs to
        timestamp: Indexing time (defaults to now)

    Returns:
        JSON-serializable payload
    """
    return {
        "chunk_id": chunk.id,
        "scope_id": scope_id,
        "file_path": chunk.file_path,
        "file_name": PurePosixPath(chunk.file_path.replace("\\", "/")).name,
        "language": chunk.metadata.language,
        "kind": chunk.kind,
        "name": chunk.name or "",
        "start_line": chunk.start_line,
        "end_line": chunk.end_line,
        "complexity": chunk.metadata.complexity,
        "keywords": chunk.metadata.keywords[:20],
        "imports": chunk.metadata.imports[:10],
        "exports": chunk.metadata.exports[:10],
        "dependencies": chunk.metadata.dependencies[:10],
        "parent_chunk": chunk.parent_chunk or "",
        "child_chunks": chunk.child_chunks[:20],
        "timestamp": timestamp if timestamp is not None else time.time(),
        "content_preview": chunk.content[:PREVIEW_LENGTH],
        "text": chunk.content if len(chunk.content) <= FULL_TEXT_LIMIT else "",
    }


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_str_list(value: Any) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item) for item in value if item is not None]


def _as_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text or None


def payload_to_chunk(payload: Optional[Mapping[str, Any]], chunk_id: Optional[str] = None) -> CodeChunk:
    """Rebuild an approximate chunk from stored metadata.

    Args:
        payload: Metadata stored beside the vector (may be empty or None)
        chunk_id: Id reported by the index, preferred over the payload's own

    Returns:
        A CodeChunk; never raises
    """
    payload = payload if isinstance(payload, Mapping) else {}

    file_path = _as_optional_str(payload.get("file_path")) or "unknown"
    start_line = max(1, _as_int(payload.get("start_line"), 1))
    end_line = max(start_line, _as_int(payload.get("end_line"), start_line))

    kind = payload.get("kind")
    if kind not in CHUNK_KINDS:
        kind = "block"

    text = payload.get("text")
    preview = payload.get("content_preview")
    if isinstance(text, str) and text:
        content = text
    elif isinstance(preview, str):
        content = preview
    else:
        content = ""

    complexity = min(10, max(1, _as_int(payload.get("complexity"), 1)))

    resolved_id = chunk_id or _as_optional_str(payload.get("chunk_id"))
    if not resolved_id:
        digest = blake3.blake3(f"{file_path}:{start_line}-{end_line}:{content[:100]}".encode()).hexdigest()
        resolved_id = "chunk_" + digest[:16]

    return CodeChunk(
        id=resolved_id,
        content=content,
        kind=kind,
        name=_as_optional_str(payload.get("name")),
        file_path=file_path,
        start_line=start_line,
        end_line=end_line,
        metadata=ChunkMetadata(
            language=_as_optional_str(payload.get("language")) or "text",
            complexity=complexity,
            dependencies=_as_str_list(payload.get("dependencies")),
            exports=_as_str_list(payload.get("exports")),
            imports=_as_str_list(payload.get("imports")),
            keywords=_as_str_list(payload.get("keywords")),
        ),
        parent_chunk=_as_optional_str(payload.get("parent_chunk")),
        child_chunks=_as_str_list(payload.get("child_chunks")),
    )
