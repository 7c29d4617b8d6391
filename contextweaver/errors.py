"""Errors that are allowed to escape the retrieval pipeline.

Everything else (bad source text, a failed embedding batch, an unreadable
file during assembly) is logged and reported in an ``errors`` list instead.
"""


class ScopeNotFoundError(LookupError):
    """Raised when a codebase scope has nothing indexed or stored for it."""

    def __init__(self, scope_id: str, detail: str = ""):
        self.scope_id = scope_id
        message = f"Scope not found: {scope_id}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class EmbeddingError(RuntimeError):
    """Raised when a single embedding request cannot be completed."""

    def __init__(self, message: str, status_code=None):
        self.status_code = status_code
        super().__init__(message)
