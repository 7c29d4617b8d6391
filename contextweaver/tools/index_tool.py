"""Indexing pipeline: chunk files, embed the chunks and store the vectors."""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from ..indexer.embeddings import EmbeddingBatcher
from ..indexer.models import CodeChunk, IndexingProgress
from ..indexer.semantic_chunker import SemanticChunker
from ..store.codebase_store import CodebaseFile, FilesystemCodebaseStore
from ..vector_db.qdrant_client import CodeVectorDB

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[IndexingProgress], None]


class IndexingTool:
    """Tool for indexing codebases with AST-aware chunking."""

    def __init__(
        self,
        vector_db: CodeVectorDB,
        embeddings: EmbeddingBatcher,
        chunker: SemanticChunker,
        store: Optional[FilesystemCodebaseStore] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Initialize indexing tool.

        Args:
            vector_db: Vector database client
            embeddings: Embedding batcher
            chunker: Semantic chunker
            store: Filesystem store that directories are registered with
            clock: Time source for reported durations
        """
        self.vector_db = vector_db
        self.embeddings = embeddings
        self.chunker = chunker
        self.store = store or FilesystemCodebaseStore(registry=chunker.registry)
        self._clock = clock or time.monotonic

    async def index_codebase(
        self,
        files: Sequence[CodebaseFile],
        scope_id: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> dict:
        """Chunk, embed and store a set of files under one scope.

        Files are processed one at a time; a failing file is recorded in
        ``errors`` and skipped.

        Args:
            files: Files to index
            scope_id: Codebase id the vectors are stored under
            on_progress: Receives chunking, embedding, storing and complete events
            cancel_event: When set, stops between files and between batches

        Returns:
            Dictionary with indexing results
        """
        start_time = self._clock()
        errors: List[str] = []
        all_chunks: List[CodeChunk] = []
        cancelled = False

        def report(phase: str, current: int, total: int, message: str = "", current_file: Optional[str] = None):
            if on_progress is not None:
                on_progress(IndexingProgress(phase, current, total, message, current_file))

        logger.info(f"Starting indexing of {len(files)} files for scope: {scope_id}")

        for idx, file in enumerate(files, 1):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                logger.info(f"Indexing cancelled after {idx - 1}/{len(files)} files")
                break

            report("chunking", idx - 1, len(files), f"Chunking {file.path}", file.path)
            try:
                chunks = self.chunker.optimize_chunks(self.chunker.chunk(file.path, file.content))
                all_chunks.extend(chunks)
                logger.debug(f"[{idx}/{len(files)}] {file.path}: {len(chunks)} chunks")
            except Exception as e:
                message = f"Error chunking {file.path}: {e}"
                logger.error(message, exc_info=True)
                errors.append(message)

        report("chunking", len(files), len(files), f"Created {len(all_chunks)} chunks")

        batch = None
        stored = 0
        if all_chunks and not cancelled:
            batch = await self.embeddings.embed_batch(all_chunks, on_progress=on_progress, cancel_event=cancel_event)
            errors.extend(batch.errors)
            cancelled = batch.cancelled

            report("storing", 0, len(batch.embeddings), "Storing vectors")
            if batch.embeddings:
                stored = self.vector_db.upsert(batch.chunks, batch.embeddings, scope_id)
            report("storing", stored, len(batch.embeddings), f"Stored {stored} vectors")

        elapsed = self._clock() - start_time
        report("complete", len(files), len(files), "Indexing cancelled" if cancelled else "Indexing complete")

        logger.info(
            f"Indexing {'cancelled' if cancelled else 'complete'} for {scope_id}: {len(all_chunks)} chunks, "
            f"{stored} vectors stored in {elapsed:.2f}s, {len(errors)} errors"
        )

        return {
            "success": not cancelled and (stored > 0 or not all_chunks),
            "scope_id": scope_id,
            "files_processed": len(files),
            "chunks_indexed": len(all_chunks),
            "embeddings_generated": len(batch.embeddings) if batch else 0,
            "vectors_stored": stored,
            "total_tokens": batch.total_tokens if batch else 0,
            "success_rate": batch.success_rate if batch else 1.0,
            "indexing_time": elapsed,
            "cancelled": cancelled,
            "errors": errors,
        }

    async def reindex_codebase(
        self,
        files: Sequence[CodebaseFile],
        scope_id: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> dict:
        """Delete every vector of a scope, then index it again."""
        logger.info(f"Re-indexing scope: {scope_id}")
        self.vector_db.delete(scope_id)
        return await self.index_codebase(files, scope_id, on_progress=on_progress, cancel_event=cancel_event)

    async def index_directory(
        self,
        directory: str,
        scope_id: Optional[str] = None,
        reindex: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> dict:
        """Index every supported file under a directory.

        Args:
            directory: Root directory
            scope_id: Codebase id (defaults to the directory name)
            reindex: Delete the scope's existing vectors first

        Returns:
            Dictionary with indexing results
        """
        root = Path(directory)
        if not root.is_dir():
            return {"success": False, "error": f"Directory does not exist: {directory}"}

        scope_id = scope_id or root.resolve().name
        logger.info(f"Using scope id: {scope_id}")

        self.store.register(scope_id, root)
        files = await self.store.get_all_files(scope_id) or []
        logger.info(f"Found {len(files)} supported files in {directory}")

        if reindex:
            return await self.reindex_codebase(files, scope_id, on_progress=on_progress, cancel_event=cancel_event)
        return await self.index_codebase(files, scope_id, on_progress=on_progress, cancel_event=cancel_event)
