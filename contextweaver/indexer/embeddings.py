"""Rate-limited batch embedding against a Voyage/OpenAI-compatible provider."""

import asyncio
import logging
import math
import random
import time
from pathlib import PurePosixPath
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from ..errors import EmbeddingError
from .models import CodeChunk, EmbeddingBatch, EmbeddingResult, IndexingProgress
from .rate_limiter import RollingWindowRateLimiter

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[IndexingProgress], None]

PRIMARY_EXTENSIONS = {".ts", ".tsx", ".js", ".jsx", ".py", ".java"}

MAIN_FILE_STEMS = {"main", "app", "index", "server", "__main__", "application"}
LIB_DIR_NAMES = {"lib", "libs", "service", "services", "core", "utils", "helpers", "src"}
UI_DIR_NAMES = {"components", "component", "ui", "views", "pages", "widgets", "layouts"}
API_DIR_NAMES = {"api", "apis", "routes", "route", "controllers", "handlers", "endpoints"}
CONFIG_MARKERS = ("config", "settings", "constants", "types", "schema", ".d.ts")
TEST_DIR_NAMES = {"test", "tests", "__tests__", "spec", "specs", "e2e"}


def estimate_tokens(text: str) -> int:
    """Rough token estimate (about 4 characters per token)."""
    return math.ceil(len(text) / 4)


def chunk_priority(chunk: CodeChunk) -> Tuple[int, int]:
    """Sort key placing the most important code first.

    Tiers: main/app entry files, library/service code, UI components,
    API/route handlers, other source, config/types, tests. Within a tier
    files with a primary source extension come first.
    """
    path = PurePosixPath(chunk.file_path.replace("\\", "/").lower())
    dirs = set(path.parts[:-1])
    name = path.name
    stem = name.split(".")[0]

    if (
        dirs & TEST_DIR_NAMES
        or stem.startswith("test_")
        or stem.endswith("_test")
        or ".test." in name
        or ".spec." in name
    ):
        tier = 6
    elif any(marker in name for marker in CONFIG_MARKERS) or dirs & {"config", "types", "typings"}:
        tier = 5
    elif stem in MAIN_FILE_STEMS and not dirs & (UI_DIR_NAMES | API_DIR_NAMES):
        tier = 0
    elif dirs & API_DIR_NAMES:
        tier = 3
    elif dirs & UI_DIR_NAMES:
        tier = 2
    elif dirs & LIB_DIR_NAMES:
        tier = 1
    else:
        tier = 4

    extension_rank = 0 if path.suffix in PRIMARY_EXTENSIONS else 1
    return tier, extension_rank


def prioritize_chunks(chunks: Sequence[CodeChunk]) -> List[CodeChunk]:
    """Order chunks by priority, keeping source order within equal priority."""
    return sorted(chunks, key=chunk_priority)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors (0.0 for a zero vector)."""
    if len(a) != len(b):
        raise ValueError("Vectors must have the same dimension")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def normalize_vector(vector: Sequence[float]) -> List[float]:
    """Scale a vector to unit length."""
    norm = math.sqrt(sum(x * x for x in vector))
    if norm == 0:
        return list(vector)
    return [x / norm for x in vector]


def embedding_stats(results: Sequence[EmbeddingResult]) -> Dict[str, Any]:
    """Summarize token usage and dimensions of a set of embeddings."""
    if not results:
        return {"count": 0, "total_tokens": 0, "average_tokens": 0.0, "dimensions": []}
    total = sum(r.total_tokens for r in results)
    return {
        "count": len(results),
        "total_tokens": total,
        "average_tokens": total / len(results),
        "dimensions": sorted({len(r.embedding) for r in results}),
    }


def usage_count(data: Dict[str, Any], key: str, default: int = 0) -> int:
    """Read a token counter from a response's ``usage`` block, tolerating junk values."""
    usage = data.get("usage")
    if not isinstance(usage, dict):
        return default
    try:
        value = int(usage.get(key) or 0)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


class EmbeddingBatcher:
    """Embed chunks in token-bounded batches under provider rate limits."""

    def __init__(
        self,
        api_key: str = "",
        api_base: str = "https://api.voyageai.com/v1",
        model: str = "voyage-code-3",
        dimension: int = 1024,
        max_requests_per_minute: int = 3,
        max_tokens_per_minute: int = 10000,
        max_batch_tokens: int = 8000,
        max_batch_size: int = 128,
        max_tokens_per_chunk: int = 2000,
        max_retries: int = 10,
        rate_limit_backoff: float = 1.0,
        max_backoff: float = 60.0,
        jitter: float = 1.0,
        transient_backoff: float = 2.0,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """Initialize the embedding batcher.

        Args:
            api_key: Provider API key, sent as a bearer token
            api_base: Provider base URL; requests go to ``{api_base}/embeddings``
            model: Embedding model name
            dimension: Vector length the model returns
            max_requests_per_minute: Provider request ceiling
            max_tokens_per_minute: Provider token ceiling
            max_batch_tokens: Estimated token budget of one request
            max_batch_size: Maximum inputs in one request
            max_tokens_per_chunk: Prepared text is truncated to about this many tokens
            max_retries: Attempts per request before giving up
            rate_limit_backoff: Base delay for exponential backoff after a 429
            max_backoff: Upper bound of the exponential backoff
            jitter: Maximum random seconds added to a 429 backoff
            transient_backoff: Fixed delay after a 5xx or transport error
            timeout: HTTP timeout in seconds
            transport: Custom httpx transport (used by tests)
            clock: Monotonic time source
            sleep: Async sleep function
        """
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.model = model
        self.dimension = dimension
        self.max_batch_tokens = min(max_batch_tokens, max_tokens_per_minute)
        self.max_batch_size = max_batch_size
        self.max_tokens_per_chunk = max_tokens_per_chunk
        self.max_retries = max(1, max_retries)
        self.rate_limit_backoff = rate_limit_backoff
        self.max_backoff = max_backoff
        self.jitter = jitter
        self.transient_backoff = transient_backoff
        self.timeout = timeout
        self.transport = transport
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self.rate_limiter = RollingWindowRateLimiter(
            max_requests=max_requests_per_minute,
            max_tokens=max_tokens_per_minute,
            clock=self._clock,
            sleep=self._sleep,
        )
        self._client: Optional[httpx.AsyncClient] = None
        self._client_loop_id: Optional[int] = None

        logger.info(
            f"Initialized embedding batcher with model: {model} (dimension: {dimension}, "
            f"{max_requests_per_minute} req/min, {max_tokens_per_minute} tokens/min)"
        )

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create an httpx client for the current event loop.

        Returns:
            httpx.AsyncClient instance for current event loop
        """
        loop_id = id(asyncio.get_running_loop())
        if self._client is None or self._client_loop_id != loop_id:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)
            self._client_loop_id = loop_id
            logger.debug(f"Created new httpx client for event loop {loop_id}")
        return self._client

    def prepare_text(self, chunk: CodeChunk) -> str:
        """Build the text sent to the provider for one chunk.

        A short header (kind, name, file, language, keywords, imports)
        precedes the code so the vector also captures where it lives.
        """
        parts = [f"{chunk.kind}: {chunk.name}" if chunk.name else chunk.kind]
        parts.append(f"File: {chunk.file_path}")
        parts.append(f"Language: {chunk.metadata.language}")
        if chunk.metadata.keywords:
            parts.append(f"Keywords: {', '.join(chunk.metadata.keywords[:10])}")
        if chunk.metadata.imports:
            parts.append(f"Imports: {', '.join(chunk.metadata.imports[:5])}")
        parts.append("Code:")
        parts.append(chunk.content)
        text = "\n".join(parts)

        max_chars = self.max_tokens_per_chunk * 4
        if len(text) > max_chars:
            text = text[:max_chars] + "\n... [truncated]"
        return text

    def create_batches(self, prepared: Sequence[Tuple[CodeChunk, str]]) -> List[List[Tuple[CodeChunk, str]]]:
        """Pack prepared chunks into batches within the per-request token budget."""
        batches: List[List[Tuple[CodeChunk, str]]] = []
        current: List[Tuple[CodeChunk, str]] = []
        current_tokens = 0

        for chunk, text in prepared:
            tokens = estimate_tokens(text)
            if current and (
                current_tokens + tokens > self.max_batch_tokens or len(current) >= self.max_batch_size
            ):
                batches.append(current)
                current, current_tokens = [], 0
            current.append((chunk, text))
            current_tokens += tokens

        if current:
            batches.append(current)
        return batches

    def _rate_limit_delay(self, attempt: int) -> float:
        delay = min(self.rate_limit_backoff * (2**attempt), self.max_backoff)
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return delay

    async def _request_embeddings(self, inputs: Any, estimated_tokens: int, label: str) -> Dict[str, Any]:
        """POST to the provider with rate limiting and retries.

        Args:
            inputs: A string or list of strings
            estimated_tokens: Token estimate charged to the rate limiter
            label: Description used in log and error messages

        Returns:
            Parsed JSON response

        Raises:
            EmbeddingError: On a non-retryable status or when retries are exhausted
        """
        client = self._get_client()
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"model": self.model, "input": inputs}
        last_error = "no attempts made"

        for attempt in range(self.max_retries):
            await self.rate_limiter.acquire(estimated_tokens)

            try:
                response = await client.post(f"{self.api_base}/embeddings", json=payload, headers=headers)
            except httpx.TransportError as e:
                last_error = f"transport error: {e}"
                delay = self.transient_backoff
            else:
                if response.status_code == 429:
                    last_error = f"rate limited (429): {response.text[:200]}"
                    delay = self._rate_limit_delay(attempt)
                elif response.status_code >= 500:
                    last_error = f"server error {response.status_code}: {response.text[:200]}"
                    delay = self.transient_backoff
                elif response.status_code >= 400:
                    raise EmbeddingError(
                        f"{label} rejected with status {response.status_code}: {response.text[:200]}",
                        status_code=response.status_code,
                    )
                else:
                    try:
                        data = response.json()
                    except ValueError as e:
                        raise EmbeddingError(f"{label} returned invalid JSON: {e}")
                    if not isinstance(data, dict):
                        raise EmbeddingError(f"{label} returned a {type(data).__name__} instead of a JSON object")
                    return data

            if attempt < self.max_retries - 1:
                logger.warning(
                    f"{label} attempt {attempt + 1}/{self.max_retries} failed ({last_error}), "
                    f"retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

        raise EmbeddingError(f"{label} failed after {self.max_retries} attempts: {last_error}")

    def _validate_vector(self, vector: Any) -> Optional[List[float]]:
        """Return the vector as floats if it has the model's dimension, else None."""
        if not isinstance(vector, list) or len(vector) != self.dimension:
            return None
        values = []
        for value in vector:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                return None
            values.append(float(value))
        return values

    def _extract_vectors(self, data: Dict[str, Any], expected: int) -> List[Optional[List[float]]]:
        """Pull validated vectors out of a response, placed by their ``index`` when present."""
        vectors: List[Optional[List[float]]] = [None] * expected
        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return vectors

        for position, item in enumerate(items):
            if not isinstance(item, dict):
                continue
            index = item.get("index", position)
            if not isinstance(index, int) or not 0 <= index < expected:
                continue
            vectors[index] = self._validate_vector(item.get("embedding"))
        return vectors

    async def embed_batch(
        self,
        chunks: Sequence[CodeChunk],
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> EmbeddingBatch:
        """Embed chunks in priority order.

        A batch that exhausts its retries is skipped and recorded; the run
        continues with the next batch.

        Args:
            chunks: Chunks to embed
            on_progress: Called after every batch
            cancel_event: When set, no further batches are sent

        Returns:
            EmbeddingBatch with the embedded chunks, their vectors and failures
        """
        start_time = self._clock()
        ordered = prioritize_chunks(chunks)
        batches = self.create_batches([(chunk, self.prepare_text(chunk)) for chunk in ordered])

        embedded_chunks: List[CodeChunk] = []
        results: List[EmbeddingResult] = []
        failed_ids: List[str] = []
        errors: List[str] = []
        total_tokens = 0
        processed = 0
        cancelled = False

        logger.info(f"Embedding {len(ordered)} chunks in {len(batches)} batches")

        for batch_index, batch in enumerate(batches, start=1):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                logger.info(f"Embedding cancelled before batch {batch_index}/{len(batches)}")
                break

            texts = [text for _, text in batch]
            estimated = sum(estimate_tokens(text) for text in texts)
            label = f"Batch {batch_index}/{len(batches)}"

            try:
                data = await self._request_embeddings(texts, estimated, label)
            except (EmbeddingError, httpx.HTTPError) as e:
                message = (
                    f"{label} skipped ({len(batch)} chunks, first {batch[0][0].id} "
                    f"in {batch[0][0].file_path}): {e}"
                )
                logger.error(message)
                errors.append(message)
                failed_ids.extend(chunk.id for chunk, _ in batch)
            else:
                batch_total = usage_count(data, "total_tokens", estimated)
                batch_prompt = usage_count(data, "prompt_tokens", batch_total)
                total_tokens += batch_total

                vectors = self._extract_vectors(data, len(batch))
                for (chunk, _), vector in zip(batch, vectors):
                    if vector is None:
                        message = f"Invalid embedding dropped for chunk {chunk.id} ({chunk.file_path})"
                        logger.warning(message)
                        errors.append(message)
                        failed_ids.append(chunk.id)
                        continue
                    embedded_chunks.append(chunk)
                    results.append(
                        EmbeddingResult(
                            chunk_id=chunk.id,
                            embedding=vector,
                            model=self.model,
                            prompt_tokens=batch_prompt // len(batch),
                            total_tokens=batch_total // len(batch),
                        )
                    )

            processed += len(batch)
            if on_progress is not None:
                on_progress(
                    IndexingProgress(
                        phase="embedding",
                        current=processed,
                        total=len(ordered),
                        message=f"Embedded batch {batch_index}/{len(batches)}",
                    )
                )

        elapsed = self._clock() - start_time
        result = EmbeddingBatch(
            chunks=embedded_chunks,
            embeddings=results,
            total_tokens=total_tokens,
            elapsed_time=elapsed,
            failed_chunk_ids=failed_ids,
            errors=errors,
            cancelled=cancelled,
        )
        logger.info(
            f"Embedded {len(results)}/{len(ordered)} chunks in {elapsed:.2f}s "
            f"({total_tokens} tokens, success rate {result.success_rate:.0%})"
        )
        return result

    async def embed_query(self, text: str) -> List[float]:
        """Embed a single query string.

        Raises:
            EmbeddingError: When the request fails or returns no valid vector
        """
        data = await self._request_embeddings(text, estimate_tokens(text), "Query embedding")
        vector = self._extract_vectors(data, 1)[0]
        if vector is None:
            raise EmbeddingError(f"Provider returned no valid {self.dimension}-dimension vector for query")
        return vector

    async def embed_chunk(self, chunk: CodeChunk) -> EmbeddingResult:
        """Embed one chunk with the same retry policy as batches."""
        text = self.prepare_text(chunk)
        data = await self._request_embeddings(text, estimate_tokens(text), f"Chunk {chunk.id}")
        vector = self._extract_vectors(data, 1)[0]
        if vector is None:
            raise EmbeddingError(f"Provider returned no valid vector for chunk {chunk.id}")

        return EmbeddingResult(
            chunk_id=chunk.id,
            embedding=vector,
            model=self.model,
            prompt_tokens=usage_count(data, "prompt_tokens"),
            total_tokens=usage_count(data, "total_tokens"),
        )

    async def health_check(self) -> bool:
        """Check that the provider answers a tiny embedding request."""
        try:
            await self.embed_query("health check")
            return True
        except Exception as e:
            logger.error(f"Embedding provider health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._client_loop_id = None

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
