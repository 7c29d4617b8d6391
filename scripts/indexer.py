#!/usr/bin/env python3
"""Standalone indexer script - indexes a directory and exits."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from contextweaver.config import get_env_config
from contextweaver.indexer.embeddings import EmbeddingBatcher
from contextweaver.indexer.models import IndexingProgress
from contextweaver.indexer.semantic_chunker import SemanticChunker
from contextweaver.logging_setup import setup_logging
from contextweaver.tools.index_tool import IndexingTool
from contextweaver.vector_db.qdrant_client import CodeVectorDB

logger = logging.getLogger(__name__)


def log_progress(progress: IndexingProgress) -> None:
    logger.info(f"[{progress.phase}] {progress.current}/{progress.total} {progress.message}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="Index a directory into the vector database and exit.")
    parser.add_argument(
        "directory",
        nargs="?",
        help="Directory to index (defaults to WORKSPACE_PATH).",
    )
    parser.add_argument(
        "scope_id",
        nargs="?",
        help="Id to store the codebase under (defaults to the directory name).",
    )
    parser.add_argument(
        "--reindex",
        action="store_true",
        help="Delete the scope's existing vectors before indexing.",
    )
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> int:
    """Main indexer function."""
    args = parse_args(argv)
    config = get_env_config()
    setup_logging(config["log_level"])

    workspace_path = Path(args.directory) if args.directory else config["workspace_path"]
    scope_id = args.scope_id
    reindex = args.reindex

    if not workspace_path.exists():
        logger.error(f"Directory does not exist: {workspace_path}")
        return 1

    logger.info(f"Workspace path: {workspace_path}")
    logger.info(f"Qdrant: {config['qdrant_host']}:{config['qdrant_port']}")
    logger.info(f"Embedding model: {config['embedding_model']} via {config['embedding_api_base']}")

    vector_db = CodeVectorDB(
        host=config["qdrant_host"],
        port=config["qdrant_port"],
        collection_name=config["qdrant_collection"],
        vector_size=config["embedding_dimension"],
    )
    chunker = SemanticChunker(
        max_chunk_size=config["max_chunk_size"],
        min_chunk_size=config["min_chunk_size"],
        parse_timeout=config["parse_timeout"],
    )

    async with EmbeddingBatcher(
        api_key=config["embedding_api_key"],
        api_base=config["embedding_api_base"],
        model=config["embedding_model"],
        dimension=config["embedding_dimension"],
        max_requests_per_minute=config["max_requests_per_minute"],
        max_tokens_per_minute=config["max_tokens_per_minute"],
        max_batch_tokens=config["batch_tokens"],
        max_retries=config["max_retries"],
    ) as embeddings:
        index_tool = IndexingTool(vector_db, embeddings, chunker)
        result = await index_tool.index_directory(
            str(workspace_path),
            scope_id=scope_id,
            reindex=reindex,
            on_progress=log_progress,
        )

    if not result.get("success"):
        logger.error(f"Indexing failed: {result.get('error') or result.get('errors')}")
        return 1

    logger.info(
        f"Indexed {result['chunks_indexed']} chunks ({result['vectors_stored']} vectors, "
        f"success rate {result['success_rate']:.0%}) in {result['indexing_time']:.1f}s"
    )
    for error in result["errors"]:
        logger.warning(error)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
