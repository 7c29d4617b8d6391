"""FastMCP server for semantic code search and context assembly."""

import asyncio
import logging
from dataclasses import asdict
from typing import Optional

from mcp.server.fastmcp import FastMCP

from .config import get_env_config
from .indexer.embeddings import EmbeddingBatcher
from .indexer.semantic_chunker import SemanticChunker
from .logging_setup import setup_logging
from .store.codebase_store import CodebaseCache, FilesystemCodebaseStore
from .tools.context_tool import ContextAssembler
from .tools.index_tool import IndexingTool
from .tools.models import AssemblyOptions, SearchContext
from .tools.search_tool import SearchTool
from .vector_db.qdrant_client import CodeVectorDB

logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP("contextweaver")

# Global components (initialized on startup)
vector_db: Optional[CodeVectorDB] = None
embeddings: Optional[EmbeddingBatcher] = None
chunker: Optional[SemanticChunker] = None
store: Optional[FilesystemCodebaseStore] = None
index_tool: Optional[IndexingTool] = None
search_tool: Optional[SearchTool] = None
context_assembler: Optional[ContextAssembler] = None


async def initialize_components():
    """Initialize all components on startup."""
    global vector_db, embeddings, chunker, store, index_tool, search_tool, context_assembler

    config = get_env_config()
    logger.info("Initializing contextweaver...")

    logger.info(f"Connecting to Qdrant at {config['qdrant_host']}:{config['qdrant_port']}")
    vector_db = CodeVectorDB(
        host=config["qdrant_host"],
        port=config["qdrant_port"],
        collection_name=config["qdrant_collection"],
        vector_size=config["embedding_dimension"],
    )

    embeddings = EmbeddingBatcher(
        api_key=config["embedding_api_key"],
        api_base=config["embedding_api_base"],
        model=config["embedding_model"],
        dimension=config["embedding_dimension"],
        max_requests_per_minute=config["max_requests_per_minute"],
        max_tokens_per_minute=config["max_tokens_per_minute"],
        max_batch_tokens=config["batch_tokens"],
        max_retries=config["max_retries"],
    )
    if not config["embedding_api_key"]:
        logger.warning("No embedding API key configured; provider requests will likely be rejected")

    chunker = SemanticChunker(
        max_chunk_size=config["max_chunk_size"],
        min_chunk_size=config["min_chunk_size"],
        parse_timeout=config["parse_timeout"],
    )
    store = FilesystemCodebaseStore(registry=chunker.registry)

    index_tool = IndexingTool(vector_db, embeddings, chunker, store=store)
    search_tool = SearchTool(vector_db, embeddings, chunker=chunker)
    context_assembler = ContextAssembler(CodebaseCache(store))

    logger.info("All components initialized successfully")


@mcp.tool()
async def search_code(
    query: str,
    scope_id: str,
    limit: int = 10,
    language: Optional[str] = None,
    file_type: Optional[str] = None,
    relevance_threshold: float = 0.7,
    include_related: bool = False,
) -> dict:
    """Search an indexed codebase using natural language.

    Args:
        query: Natural language search query (e.g., "authentication logic", "error handling")
        scope_id: Id of the indexed codebase
        limit: Maximum number of results to return (default: 10)
        language: Filter by programming language (e.g., "python", "typescript")
        file_type: Filter by file extension (e.g., ".tsx")
        relevance_threshold: Minimum similarity before fallback matching kicks in
        include_related: Also list other chunks from the same files

    Returns:
        Dictionary with ranked results, snippets and a one-line summary
    """
    if not search_tool:
        return {"success": False, "error": "Server not initialized"}

    return await search_tool.search_code(
        query,
        scope_id,
        limit=limit,
        language=language,
        file_type=file_type,
        relevance_threshold=relevance_threshold,
        include_related=include_related,
    )


@mcp.tool()
async def search_with_context(
    query: str,
    scope_id: str,
    max_files: int = 10,
    max_snippets: int = 20,
    context_lines: int = 5,
    max_display_lines: Optional[int] = None,
) -> dict:
    """Search a codebase and assemble the results into a context document.

    Args:
        query: What you want to understand or change
        scope_id: Id of the indexed codebase
        max_files: Maximum files in the context
        max_snippets: Maximum code sections in the context
        context_lines: Lines of surrounding code per section
        max_display_lines: Optional line budget; least relevant files are cut first

    Returns:
        Dictionary with the assembled context and its Markdown export
    """
    if not search_tool or not context_assembler:
        return {"success": False, "error": "Server not initialized"}

    try:
        response = await search_tool.search(query, SearchContext(scope_id=scope_id, max_results=max_snippets))
        context = await context_assembler.assemble(
            response,
            scope_id,
            AssemblyOptions(max_files=max_files, max_snippets=max_snippets, context_lines=context_lines),
        )
        if max_display_lines:
            context = context_assembler.optimize_for_display(context, max_display_lines)

        return {
            "success": True,
            "search_summary": response.summary,
            "tier": response.tier,
            "context": asdict(context),
            "text": context_assembler.export_as_text(context),
        }
    except Exception as e:
        logger.error(f"Error assembling context: {e}")
        return {"success": False, "error": str(e)}


@mcp.tool()
async def index_directory(
    directory: Optional[str] = None,
    scope_id: Optional[str] = None,
    reindex: bool = False,
) -> dict:
    """Index every supported source file under a directory.

    Args:
        directory: Directory to index (defaults to the mounted workspace)
        scope_id: Id to store the codebase under (defaults to the directory name)
        reindex: Delete the scope's existing vectors before indexing

    Returns:
        Dictionary with chunk, embedding and error counts
    """
    if not index_tool:
        return {"success": False, "error": "Server not initialized"}

    directory = directory or str(get_env_config()["workspace_path"])
    try:
        result = await index_tool.index_directory(directory, scope_id=scope_id, reindex=reindex)
        # Cached file text may no longer match the line ranges of the new chunks
        if context_assembler is not None and result.get("scope_id"):
            context_assembler.cache.invalidate(result["scope_id"])
        return result
    except Exception as e:
        logger.error(f"Error indexing {directory}: {e}")
        return {"success": False, "error": str(e)}


@mcp.tool()
def delete_scope(scope_id: str) -> dict:
    """Delete all vectors stored for a codebase.

    Args:
        scope_id: Id of the codebase to remove

    Returns:
        Dictionary with success status
    """
    if not vector_db:
        return {"success": False, "error": "Server not initialized"}

    try:
        vector_db.delete(scope_id)
        if store is not None:
            store.unregister(scope_id)
        if context_assembler is not None:
            context_assembler.cache.invalidate(scope_id)
        return {"success": True, "scope_id": scope_id}
    except Exception as e:
        logger.error(f"Error deleting scope {scope_id}: {e}")
        return {"success": False, "error": str(e)}


@mcp.tool()
async def health_check() -> dict:
    """Check the vector index, embedding provider and chunker.

    Returns:
        Dictionary with overall status and per-component details
    """
    if not search_tool:
        return {"success": False, "error": "Server not initialized"}

    try:
        return {"success": True, **(await search_tool.health_check())}
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return {"success": False, "error": str(e)}


if __name__ == "__main__":
    config = get_env_config()
    setup_logging(config["log_level"], config["log_file"])

    logger.info("Starting contextweaver MCP Server...")

    # Initialize components (runs in temporary event loop)
    asyncio.run(initialize_components())

    logger.info("Server ready!")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
    except Exception as e:
        logger.error(f"Server error: {e}")
        raise
