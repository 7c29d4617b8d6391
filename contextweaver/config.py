"""Environment-driven configuration."""

import os
from pathlib import Path


def get_env_config():
    """Get configuration from environment variables."""
    return {
        "qdrant_host": os.getenv("QDRANT_HOST", "localhost"),
        "qdrant_port": int(os.getenv("QDRANT_PORT", "6333")),
        "qdrant_collection": os.getenv("QDRANT_COLLECTION", "code_chunks"),
        "embedding_api_base": os.getenv("EMBEDDING_API_BASE", "https://api.voyageai.com/v1"),
        "embedding_api_key": os.getenv("EMBEDDING_API_KEY", os.getenv("VOYAGE_API_KEY", "")),
        "embedding_model": os.getenv("EMBEDDING_MODEL", "voyage-code-3"),
        "embedding_dimension": int(os.getenv("EMBEDDING_DIMENSION", "1024")),
        "max_requests_per_minute": int(os.getenv("EMBEDDING_MAX_REQUESTS_PER_MINUTE", "3")),
        "max_tokens_per_minute": int(os.getenv("EMBEDDING_MAX_TOKENS_PER_MINUTE", "10000")),
        "batch_tokens": int(os.getenv("EMBEDDING_BATCH_TOKENS", "8000")),
        "max_retries": int(os.getenv("EMBEDDING_MAX_RETRIES", "10")),
        "max_chunk_size": int(os.getenv("MAX_CHUNK_SIZE", "1500")),
        "min_chunk_size": int(os.getenv("MIN_CHUNK_SIZE", "100")),
        "parse_timeout": float(os.getenv("PARSE_TIMEOUT_SECONDS", "10")),
        "workspace_path": Path(os.getenv("WORKSPACE_PATH", "/workspace")),
        "log_level": os.getenv("LOG_LEVEL", "INFO"),
        "log_file": os.getenv("LOG_FILE", "/tmp/contextweaver.log"),
    }
