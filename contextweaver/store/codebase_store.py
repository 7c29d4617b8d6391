"""Codebase stores: where the context assembler reads full file contents from."""

import asyncio
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from ..indexer.grammars import LanguageRegistry, get_language_registry

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDES = {
    "node_modules",
    ".git",
    "__pycache__",
    ".venv",
    "venv",
    "dist",
    "build",
    ".next",
    "coverage",
    ".pytest_cache",
    ".mypy_cache",
    "target",
}

IMPORT_PATTERNS = [
    re.compile(r"""^\s*import\s+(?:[\w*{}\s,]+\s+from\s+)?['"]([^'"]+)['"]""", re.MULTILINE),
    re.compile(r"""require\(\s*['"]([^'"]+)['"]\s*\)"""),
    re.compile(r"^\s*from\s+([\w.]+)\s+import\s", re.MULTILINE),
    re.compile(r"^\s*import\s+([\w.]+)\s*(?:as\s+\w+)?\s*$", re.MULTILINE),
    re.compile(r"^\s*import\s+(?:static\s+)?([\w.]+(?:\.\*)?)\s*;", re.MULTILINE),
]
EXPORT_PATTERNS = [
    re.compile(
        r"^\s*export\s+(?:default\s+)?(?:async\s+)?"
        r"(?:function\*?|class|const|let|var|interface|type|enum)\s+([A-Za-z_$][\w$]*)",
        re.MULTILINE,
    ),
    re.compile(r"^(?:async\s+)?def\s+([A-Za-z]\w*)", re.MULTILINE),
    re.compile(r"^class\s+([A-Za-z]\w*)", re.MULTILINE),
    re.compile(r"^\s*public\s+(?:final\s+|abstract\s+)*(?:class|interface|enum|record)\s+(\w+)", re.MULTILINE),
]


def _unique(values: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return list(seen)


@dataclass
class CodebaseFile:
    """Full content of one file in a stored codebase."""

    path: str
    content: str
    language: str
    lines: int
    imports: List[str] = field(default_factory=list)
    exports: List[str] = field(default_factory=list)

    @classmethod
    def from_text(cls, path: str, content: str, registry: Optional[LanguageRegistry] = None) -> "CodebaseFile":
        """Describe a file from its text, detecting language and import/export names."""
        registry = registry or get_language_registry()
        imports = _unique(m for pattern in IMPORT_PATTERNS for m in pattern.findall(content))
        exports = _unique(m for pattern in EXPORT_PATTERNS for m in pattern.findall(content))
        return cls(
            path=path,
            content=content,
            language=registry.detect_language(path, content),
            lines=len(content.splitlines()),
            imports=imports,
            exports=exports,
        )


class CodebaseStore:
    """Interface of a codebase store.

    ``get_file`` returns None for an unknown path. ``get_all_files``
    returns None when the scope itself is unknown.
    """

    async def get_file(self, scope_id: str, path: str) -> Optional[CodebaseFile]:
        raise NotImplementedError

    async def get_all_files(self, scope_id: str) -> Optional[List[CodebaseFile]]:
        raise NotImplementedError


class InMemoryCodebaseStore(CodebaseStore):
    """Codebase store backed by a dict, for uploads and tests."""

    def __init__(self):
        self._scopes: Dict[str, Dict[str, CodebaseFile]] = {}

    def add_files(self, scope_id: str, files: Iterable[CodebaseFile]) -> None:
        scope = self._scopes.setdefault(scope_id, {})
        for file in files:
            scope[file.path] = file

    def remove_scope(self, scope_id: str) -> None:
        self._scopes.pop(scope_id, None)

    async def get_file(self, scope_id: str, path: str) -> Optional[CodebaseFile]:
        return self._scopes.get(scope_id, {}).get(path)

    async def get_all_files(self, scope_id: str) -> Optional[List[CodebaseFile]]:
        if scope_id not in self._scopes:
            return None
        return list(self._scopes[scope_id].values())


class FilesystemCodebaseStore(CodebaseStore):
    """Codebase store reading files from registered directories."""

    def __init__(self, registry: Optional[LanguageRegistry] = None, exclude_dirs: Optional[Iterable[str]] = None):
        """Initialize the store.

        Args:
            registry: Language registry used to pick source files
            exclude_dirs: Directory names never descended into
        """
        self.registry = registry or get_language_registry()
        self.exclude_dirs = set(exclude_dirs) if exclude_dirs is not None else set(DEFAULT_EXCLUDES)
        self._roots: Dict[str, Path] = {}

    def register(self, scope_id: str, root: Path) -> None:
        """Map a scope id to a directory."""
        self._roots[scope_id] = Path(root)
        logger.info(f"Registered scope {scope_id} at {root}")

    def unregister(self, scope_id: str) -> None:
        self._roots.pop(scope_id, None)

    def list_paths(self, scope_id: str) -> Optional[List[str]]:
        """Relative POSIX paths of supported files in a scope, sorted."""
        root = self._roots.get(scope_id)
        if root is None:
            return None

        paths = []
        for path in root.rglob("*"):
            relative = path.relative_to(root)
            if any(part in self.exclude_dirs for part in relative.parts[:-1]):
                continue
            if path.is_file() and self.registry.is_supported_file(str(path)):
                paths.append(relative.as_posix())
        return sorted(paths)

    def _read(self, root: Path, relative: str) -> Optional[CodebaseFile]:
        path = root / relative
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning(f"Could not read {path}: {e}")
            return None
        return CodebaseFile.from_text(relative, content, self.registry)

    async def get_file(self, scope_id: str, path: str) -> Optional[CodebaseFile]:
        root = self._roots.get(scope_id)
        if root is None:
            return None
        candidate = (root / path).resolve()
        if root.resolve() not in candidate.parents or not candidate.is_file():
            return None
        return await asyncio.to_thread(self._read, root, candidate.relative_to(root.resolve()).as_posix())

    async def get_all_files(self, scope_id: str) -> Optional[List[CodebaseFile]]:
        root = self._roots.get(scope_id)
        if root is None:
            return None

        def read_all() -> List[CodebaseFile]:
            files = []
            for relative in self.list_paths(scope_id) or []:
                file = self._read(root, relative)
                if file is not None:
                    files.append(file)
            return files

        return await asyncio.to_thread(read_all)


class CodebaseCache:
    """Short-lived cache of whole codebases in front of a store.

    Holds at most ``max_entries`` scopes; once exceeded, the oldest entries
    are evicted until ``retain_entries`` remain. Entries older than ``ttl``
    seconds are reloaded. The store stays the system of record.
    """

    def __init__(
        self,
        store: CodebaseStore,
        max_entries: int = 10,
        retain_entries: int = 5,
        ttl: float = 600.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.max_entries = max_entries
        self.retain_entries = min(retain_entries, max_entries)
        self.ttl = ttl
        self._clock = clock or time.monotonic
        self._entries: "OrderedDict[str, tuple]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, scope_id: str) -> bool:
        return scope_id in self._entries

    async def get_files(self, scope_id: str) -> Optional[List[CodebaseFile]]:
        """All files of a scope, from cache when fresh.

        Returns:
            Files, or None when the store does not know the scope
        """
        now = self._clock()
        entry = self._entries.get(scope_id)
        if entry is not None and now - entry[0] < self.ttl:
            return entry[1]

        files = await self.store.get_all_files(scope_id)
        if files is None:
            self._entries.pop(scope_id, None)
            return None

        self._entries.pop(scope_id, None)
        self._entries[scope_id] = (now, files)
        self._evict()
        return files

    def _evict(self) -> None:
        if len(self._entries) <= self.max_entries:
            return
        while len(self._entries) > self.retain_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted codebase {evicted} from cache")

    def invalidate(self, scope_id: str) -> None:
        self._entries.pop(scope_id, None)

    def clear(self) -> None:
        """Drop every cached codebase."""
        self._entries.clear()
