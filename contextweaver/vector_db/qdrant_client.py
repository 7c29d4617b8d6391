"""Qdrant vector database client wrapper for code embeddings."""

import logging
from typing import Any, Dict, List, Optional, Sequence

import blake3
from qdrant_client import QdrantClient
from qdrant_client.http import models
from qdrant_client.http.models import Distance, PointStruct, VectorParams

from ..indexer.models import CodeChunk, EmbeddingResult
from .payload import SearchResult, chunk_to_payload

logger = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 100


def hex_to_uuid(hex_str: str) -> str:
    """Convert a hexadecimal string to a UUID format.

    Args:
        hex_str: Hexadecimal string (up to 32 characters)

    Returns:
        UUID string
    """
    # Pad to 32 characters if needed
    hex_str = hex_str.ljust(32, "0")
    return f"{hex_str[0:8]}-{hex_str[8:12]}-{hex_str[12:16]}-{hex_str[16:20]}-{hex_str[20:32]}"


def point_id(scope_id: str, chunk_id: str) -> str:
    """Deterministic Qdrant point id for a chunk within a scope."""
    return hex_to_uuid(blake3.blake3(f"{scope_id}:{chunk_id}".encode()).hexdigest()[:32])


class CodeVectorDB:
    """Wrapper for Qdrant vector database operations, partitioned by scope id."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6333,
        collection_name: str = "code_chunks",
        vector_size: int = 1024,
        client: Optional[QdrantClient] = None,
    ):
        """Initialize Qdrant client.

        Args:
            host: Qdrant server host
            port: Qdrant server port
            collection_name: Name of the collection to use
            vector_size: Dimension of embedding vectors
            client: Existing client (e.g. ``QdrantClient(":memory:")``); overrides host/port
        """
        self.client = client or QdrantClient(host=host, port=port)
        self.collection_name = collection_name
        self.vector_size = vector_size
        self._ensure_collection()

    def _ensure_collection(self) -> None:
        """Create collection if it doesn't exist."""
        try:
            collections = self.client.get_collections().collections
            collection_names = [col.name for col in collections]

            if self.collection_name not in collection_names:
                logger.info(f"Creating collection: {self.collection_name}")
                self.client.create_collection(
                    collection_name=self.collection_name,
                    vectors_config=VectorParams(
                        size=self.vector_size,
                        distance=Distance.COSINE,
                    ),
                )
                logger.info(f"Collection {self.collection_name} created successfully")
            else:
                logger.info(f"Collection {self.collection_name} already exists")
        except Exception as e:
            logger.error(f"Error ensuring collection: {e}")
            raise

    @staticmethod
    def _scope_filter(
        scope_id: str,
        language_filter: Optional[str] = None,
        file_path: Optional[str] = None,
    ) -> models.Filter:
        must_conditions = [
            models.FieldCondition(key="scope_id", match=models.MatchValue(value=scope_id)),
        ]
        if language_filter:
            must_conditions.append(
                models.FieldCondition(key="language", match=models.MatchValue(value=language_filter))
            )
        if file_path:
            must_conditions.append(
                models.FieldCondition(key="file_path", match=models.MatchValue(value=file_path))
            )
        return models.Filter(must=must_conditions)

    def upsert(
        self,
        chunks: Sequence[CodeChunk],
        embeddings: Sequence[EmbeddingResult],
        scope_id: str,
    ) -> int:
        """Insert or update chunks with their embeddings.

        Chunks without a matching embedding, or whose vector has the wrong
        dimension, are skipped.

        Args:
            chunks: Chunks to store
            embeddings: Embeddings, matched to chunks by chunk id
            scope_id: Codebase the chunks belong to

        Returns:
            Number of points upserted
        """
        vectors = {result.chunk_id: result.embedding for result in embeddings}
        points = []

        for chunk in chunks:
            vector = vectors.get(chunk.id)
            if vector is None:
                logger.debug(f"No embedding for chunk {chunk.id}, skipping")
                continue
            if len(vector) != self.vector_size:
                logger.warning(
                    f"Skipping chunk {chunk.id} ({chunk.file_path}): vector has "
                    f"{len(vector)} dimensions, expected {self.vector_size}"
                )
                continue

            points.append(
                PointStruct(
                    id=point_id(scope_id, chunk.id),
                    vector=vector,
                    payload=chunk_to_payload(chunk, scope_id),
                )
            )

        try:
            for start in range(0, len(points), UPSERT_BATCH_SIZE):
                self.client.upsert(
                    collection_name=self.collection_name,
                    points=points[start : start + UPSERT_BATCH_SIZE],
                )
            logger.info(f"Upserted {len(points)} chunks to Qdrant for scope {scope_id}")
            return len(points)
        except Exception as e:
            logger.error(f"Error upserting chunks: {e}")
            raise

    def query(
        self,
        query_vector: List[float],
        scope_id: str,
        language_filter: Optional[str] = None,
        top_k: int = 10,
    ) -> List[SearchResult]:
        """Nearest-neighbor search within one scope.

        Args:
            query_vector: Embedding vector of the search query
            scope_id: Codebase to search
            language_filter: Only return chunks in this language
            top_k: Maximum number of results

        Returns:
            Results ordered by similarity score
        """
        try:
            response = self.client.query_points(
                collection_name=self.collection_name,
                query=query_vector,
                query_filter=self._scope_filter(scope_id, language_filter),
                limit=top_k,
                with_payload=True,
            )
        except Exception as e:
            logger.error(f"Error searching Qdrant: {e}")
            raise

        results = []
        for point in response.points:
            payload = point.payload or {}
            results.append(
                SearchResult(
                    chunk_id=str(payload.get("chunk_id") or point.id),
                    score=float(point.score),
                    metadata=dict(payload),
                )
            )
        return results

    def list_chunks(
        self,
        scope_id: str,
        file_path: Optional[str] = None,
        limit: int = 100,
    ) -> List[SearchResult]:
        """List stored chunks of a scope (optionally one file) without scoring.

        Returned results carry a score of 0.0.
        """
        try:
            points, _ = self.client.scroll(
                collection_name=self.collection_name,
                scroll_filter=self._scope_filter(scope_id, file_path=file_path),
                limit=limit,
                with_payload=True,
                with_vectors=False,
            )
        except Exception as e:
            logger.error(f"Error listing chunks for scope {scope_id}: {e}")
            raise

        return [
            SearchResult(
                chunk_id=str((point.payload or {}).get("chunk_id") or point.id),
                score=0.0,
                metadata=dict(point.payload or {}),
            )
            for point in points
        ]

    def count(self, scope_id: str) -> int:
        """Number of vectors stored for a scope."""
        result = self.client.count(
            collection_name=self.collection_name,
            count_filter=self._scope_filter(scope_id),
            exact=True,
        )
        return result.count

    def delete(self, scope_id: str) -> None:
        """Delete every vector of a scope.

        Args:
            scope_id: Codebase to remove
        """
        try:
            self.client.delete(
                collection_name=self.collection_name,
                points_selector=models.FilterSelector(filter=self._scope_filter(scope_id)),
            )
            logger.info(f"Deleted all chunks for scope: {scope_id}")
        except Exception as e:
            logger.error(f"Error deleting scope {scope_id}: {e}")
            raise

    def clear_collection(self) -> None:
        """Delete all points in the collection."""
        try:
            self.client.delete_collection(collection_name=self.collection_name)
            self._ensure_collection()
            logger.info(f"Cleared collection: {self.collection_name}")
        except Exception as e:
            logger.error(f"Error clearing collection: {e}")
            raise

    def health(self) -> Dict[str, Any]:
        """Report connectivity and index state.

        Returns:
            Dict with ``connected``, ``index_ready`` and ``vector_count``
        """
        try:
            info = self.client.get_collection(collection_name=self.collection_name)
        except Exception as e:
            logger.error(f"Qdrant health check failed: {e}")
            return {"connected": False, "index_ready": False, "vector_count": None}

        status = getattr(info, "status", None)
        return {
            "connected": True,
            "index_ready": status == models.CollectionStatus.GREEN,
            "vector_count": getattr(info, "points_count", None),
        }
