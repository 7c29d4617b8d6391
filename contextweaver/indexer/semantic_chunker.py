"""AST-aware code chunking using tree-sitter for semantic boundaries."""

import atexit
import logging
import multiprocessing
import re
import threading
from dataclasses import dataclass, field
from multiprocessing.pool import Pool
from pathlib import Path
from typing import Any, Dict, List, Optional

import blake3
import tree_sitter_java as tsjava
import tree_sitter_javascript as tsjavascript
import tree_sitter_python as tspython
import tree_sitter_typescript as tstypescript
from tree_sitter import Language, Parser

from .grammars import LanguageConfig, LanguageRegistry, get_language_registry
from .models import ChunkMetadata, CodeChunk

logger = logging.getLogger(__name__)

CONTROL_FLOW_PATTERN = re.compile(r"\b(?:if|else|for|while|switch|try|catch|finally)\b")
CALL_PATTERN = re.compile(r"\w+\s*\(")
LANGUAGE_KEYWORD_PATTERN = re.compile(
    r"\b(async|await|class|function|method|import|export|from|const|let|var|if|else|for|while|do|"
    r"switch|case|break|continue|return|try|catch|finally|throw|new|this|super|extends|implements|"
    r"interface|type|enum|namespace|module|public|private|protected|static|readonly|abstract|"
    r"virtual|override|final|synchronized|volatile|transient|native|strictfp|package|void|int|long|"
    r"short|byte|char|float|double|boolean|string|object|array|list|map|set|dict|tuple|null|"
    r"undefined|none|true|false|bool|number)\b",
    re.IGNORECASE,
)
IDENTIFIER_PATTERN = re.compile(r"(?<![\w$])[A-Za-z_$][A-Za-z0-9_$]*")

# Right-hand sides that turn `const x = ...` into a function chunk
FUNCTION_VALUE_TYPES = {"arrow_function", "function_expression", "function", "generator_function"}

# Languages whose exports come from explicit export statements
EXPORT_STATEMENT_LANGUAGES = {"javascript", "jsx", "typescript", "tsx"}

# Seconds a single tree-sitter parse may run before the file is chunked generically
DEFAULT_PARSE_TIMEOUT = 10.0


class ParseTimeoutError(RuntimeError):
    """A tree-sitter parse did not finish within its time budget."""


# Parses run in one worker process so a parse that never returns can be killed
_parse_pool: Optional[Pool] = None
_parse_pool_lock = threading.Lock()
_worker_chunkers: Dict[str, "SemanticChunker"] = {}


def _get_parse_pool() -> Pool:
    global _parse_pool
    with _parse_pool_lock:
        if _parse_pool is None:
            _parse_pool = multiprocessing.Pool(processes=1)
        return _parse_pool


def _terminate_parse_pool() -> None:
    """Kill the parse worker; the next parse starts a fresh one."""
    global _parse_pool
    with _parse_pool_lock:
        if _parse_pool is not None:
            _parse_pool.terminate()
            _parse_pool.join()
            _parse_pool = None


atexit.register(_terminate_parse_pool)


def _extract_spans_in_worker(config_path: str, language: str, text: str, total_lines: int) -> List["_Span"]:
    """Entry point for the parse worker (module-level for pickling)."""
    chunker = _worker_chunkers.get(config_path)
    if chunker is None:
        chunker = SemanticChunker(registry=LanguageRegistry(Path(config_path)), parse_timeout=None)
        _worker_chunkers[config_path] = chunker
    return chunker._extract_spans(language, text, total_lines)


def calculate_complexity(content: str) -> int:
    """Score code complexity on a 1-10 scale.

    1 + control-flow keywords + calls / 3 + opening braces / 2, capped at 10.
    """
    complexity = 1
    complexity += len(CONTROL_FLOW_PATTERN.findall(content))
    complexity += len(CALL_PATTERN.findall(content)) // 3
    complexity += content.count("{") // 2
    return min(complexity, 10)


def extract_keywords(content: str, limit: int = 30) -> List[str]:
    """Extract language keywords and leading identifiers from code.

    Args:
        content: Code text
        limit: Maximum number of keywords returned

    Returns:
        Lower-cased keywords in first-seen order
    """
    keywords: Dict[str, None] = {}
    for match in LANGUAGE_KEYWORD_PATTERN.findall(content):
        keywords[match.lower()] = None

    for identifier in IDENTIFIER_PATTERN.findall(content)[:20]:
        if len(identifier) > 2:
            keywords.setdefault(identifier.lower(), None)

    return list(keywords)[:limit]


def normalize_source(content: str) -> str:
    """Strip BOMs, normalize line endings and drop trailing whitespace per line.

    Line count is preserved so chunk line numbers match the original file.
    """
    # Stray BOMs anywhere in the text can send some grammars into a parse loop
    content = content.replace("\ufeff", "")
    content = content.replace("\r\n", "\n").replace("\r", "\n")
    return "\n".join(line.rstrip() for line in content.split("\n"))


def split_lines(content: str) -> List[str]:
    """Split normalized text into lines, ignoring a single trailing newline."""
    if not content:
        return []
    lines = content.split("\n")
    if len(lines) > 1 and lines[-1] == "":
        lines.pop()
    return lines


@dataclass
class _Span:
    """A structural region found in the AST, before it becomes a chunk."""

    kind: str
    name: Optional[str]
    start_line: int
    end_line: int
    parent: Optional["_Span"] = None
    import_sources: List[str] = field(default_factory=list)
    export_names: List[str] = field(default_factory=list)


class SemanticChunker:
    """Chunk code using AST-aware parsing with tree-sitter."""

    # Language module mapping
    LANGUAGE_MODULES = {
        "python": tspython,
        "javascript": tsjavascript,
        "typescript": tstypescript,
        "tsx": tstypescript,
        "java": tsjava,
    }

    # Modules that use non-standard language function names
    LANGUAGE_FUNCTION_OVERRIDES = {
        "typescript": "language_typescript",
        "tsx": "language_tsx",
    }

    def __init__(
        self,
        max_chunk_size: int = 1000,
        min_chunk_size: int = 50,
        registry: Optional[LanguageRegistry] = None,
        parse_timeout: Optional[float] = DEFAULT_PARSE_TIMEOUT,
    ):
        """Initialize semantic chunker.

        Args:
            max_chunk_size: Target maximum size for a single chunk in characters
            min_chunk_size: Chunks below this size are dropped by ``optimize_chunks``
                unless they carry structure
            registry: Language registry (defaults to the global one)
            parse_timeout: Seconds a tree-sitter parse may take before the file is
                chunked generically. None parses in-process with no limit.
        """
        self.max_chunk_size = max_chunk_size
        self.min_chunk_size = min_chunk_size
        self.parse_timeout = parse_timeout
        self.registry = registry or get_language_registry()
        self.parsers: Dict[str, Parser] = {}
        self._init_languages()

    def _init_languages(self) -> None:
        """Initialize tree-sitter parsers for every structured language."""
        grammar_cache: Dict[str, Language] = {}

        for lang_name in self.registry.get_supported_languages():
            lang_config = self.registry.get_language_config(lang_name)
            if not lang_config or not lang_config.is_structured:
                continue

            ts_lang_name = lang_config.tree_sitter_language

            try:
                language = grammar_cache.get(ts_lang_name)
                if language is None:
                    module = self.LANGUAGE_MODULES.get(ts_lang_name)
                    if not module:
                        logger.warning(f"No module found for language: {ts_lang_name}")
                        continue

                    lang_func_name = self.LANGUAGE_FUNCTION_OVERRIDES.get(ts_lang_name, "language")
                    lang_func = getattr(module, lang_func_name, None)
                    if not lang_func:
                        logger.warning(f"Module {ts_lang_name} has no function '{lang_func_name}'")
                        continue

                    language = Language(lang_func())
                    grammar_cache[ts_lang_name] = language

                parser = Parser()
                parser.language = language
                self.parsers[lang_name] = parser

                logger.debug(f"Initialized parser for {lang_name}")

            except Exception as e:
                logger.error(f"Error initializing language {lang_name}: {e}")

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def chunk(self, file_path: str, content: str, language: Optional[str] = None) -> List[CodeChunk]:
        """Split one file into semantic chunks.

        Never raises for bad input: parse failures degrade to generic
        line-based chunking.

        Args:
            file_path: Path of the file (used for language detection and ids)
            content: File text
            language: Language override; detected from path/shebang if omitted

        Returns:
            Chunks in source order
        """
        language = language or self.registry.detect_language(file_path, content)
        text = normalize_source(content or "")
        lines = split_lines(text)

        if not text.strip():
            logger.debug(f"Skipping empty file: {file_path}")
            return []

        lang_config = self.registry.get_language_config(language)

        if lang_config is not None and language in self.parsers:
            try:
                chunks = self._chunk_structured(file_path, text, lines, language)
                if not chunks:
                    whole = self._chunk_from_lines(file_path, lines, 1, len(lines), "block", None, language)
                    chunks = [whole] if whole else []
            except Exception as e:
                logger.warning(f"Structural chunking failed for {file_path}, using generic chunker: {e}")
                chunks = self._chunk_generic(file_path, lines, language)
        else:
            chunks = self._chunk_generic(file_path, lines, language)

        logger.debug(f"Created {len(chunks)} chunks for {file_path} ({language})")
        return chunks

    def chunk_file(self, file_path: Path, repo_root: Optional[Path] = None) -> List[CodeChunk]:
        """Read and chunk a file from disk.

        Args:
            file_path: Path to the source file
            repo_root: When given, chunk paths are recorded relative to it

        Returns:
            List of chunks, empty if the file cannot be read
        """
        try:
            content = file_path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.error(f"Error reading file {file_path}: {e}")
            return []

        display_path = str(file_path)
        if repo_root is not None:
            try:
                display_path = file_path.relative_to(repo_root).as_posix()
            except ValueError:
                pass

        return self.chunk(display_path, content)

    def optimize_chunks(self, chunks: List[CodeChunk]) -> List[CodeChunk]:
        """Split oversized chunks and drop trivial ones.

        A chunk longer than 1.5x the max size is split into ``block``
        sub-chunks. Chunks at or above the min size are kept. Smaller chunks
        survive only if they are not generic blocks or have complexity > 1.
        """
        optimized: List[CodeChunk] = []
        split_threshold = self.max_chunk_size * 1.5

        for chunk in chunks:
            if len(chunk.content) > split_threshold:
                optimized.extend(self._split_large_chunk(chunk))
            elif len(chunk.content) >= self.min_chunk_size:
                optimized.append(chunk)
            elif chunk.kind != "block" or chunk.metadata.complexity > 1:
                optimized.append(chunk)

        logger.debug(f"Optimized {len(chunks)} chunks into {len(optimized)}")
        return optimized

    # ------------------------------------------------------------------
    # Structural extraction
    # ------------------------------------------------------------------

    def _chunk_structured(
        self,
        file_path: str,
        text: str,
        lines: List[str],
        language: str,
    ) -> List[CodeChunk]:
        spans = self._parse_spans(file_path, language, text, len(lines))

        file_imports: List[str] = []
        for span in spans:
            for source in span.import_sources:
                if source not in file_imports:
                    file_imports.append(source)

        file_exports: List[str] = []
        if language in EXPORT_STATEMENT_LANGUAGES:
            candidates = [name for span in spans for name in span.export_names]
        else:
            candidates = [
                span.name
                for span in spans
                if span.parent is None and span.kind != "import" and span.name and not span.name.startswith("_")
            ]
        for name in candidates:
            if name not in file_exports:
                file_exports.append(name)

        chunks: List[CodeChunk] = []
        by_span: Dict[int, CodeChunk] = {}
        seen_ids = set()

        for span in spans:
            if span.kind == "import":
                imports, exports = span.import_sources, []
            elif span.kind == "export":
                imports, exports = file_imports, span.export_names
            else:
                imports, exports = file_imports, file_exports

            chunk = self._chunk_from_lines(
                file_path,
                lines,
                span.start_line,
                span.end_line,
                span.kind,
                span.name,
                language,
                imports=imports,
                exports=exports,
            )
            if chunk is None or chunk.id in seen_ids:
                continue

            if span.kind == "import":
                chunk.metadata.keywords = ["import"]
            elif span.kind == "export":
                chunk.metadata.keywords = ["export"]

            if span.parent is not None and id(span.parent) in by_span:
                parent_chunk = by_span[id(span.parent)]
                chunk.parent_chunk = parent_chunk.id
                parent_chunk.child_chunks.append(chunk.id)

            seen_ids.add(chunk.id)
            by_span[id(span)] = chunk
            chunks.append(chunk)

        return chunks

    def _parse_spans(self, file_path: str, language: str, text: str, total_lines: int) -> List[_Span]:
        """Parse in the worker process, giving up after ``parse_timeout`` seconds.

        Raises:
            ParseTimeoutError: When the parse does not finish in time
        """
        if self.parse_timeout is None:
            return self._extract_spans(language, text, total_lines)

        pending = _get_parse_pool().apply_async(
            _extract_spans_in_worker,
            (str(self.registry.config_path), language, text, total_lines),
        )
        try:
            return pending.get(timeout=self.parse_timeout)
        except multiprocessing.TimeoutError:
            logger.warning(f"Parsing {file_path} exceeded {self.parse_timeout}s, restarting parse worker")
            _terminate_parse_pool()
            raise ParseTimeoutError(f"Parsing {file_path} did not finish within {self.parse_timeout}s")

    def _extract_spans(self, language: str, text: str, total_lines: int) -> List[_Span]:
        """Parse text and collect the structural spans of its top-level nodes."""
        lang_config = self.registry.get_language_config(language)
        tree = self.parsers[language].parse(text.encode("utf-8"))
        if tree.root_node.has_error:
            logger.debug(f"Parse tree for {language} source contains errors, extracting what parsed")

        spans: List[_Span] = []
        for node in tree.root_node.named_children:
            self._visit(node, lang_config, spans, total_lines, parent=None)
        return spans

    def _visit(
        self,
        node: Any,
        lang_config: LanguageConfig,
        spans: List[_Span],
        total_lines: int,
        parent: Optional[_Span],
    ) -> None:
        """Record the span for one AST node and descend into class bodies."""
        kind = lang_config.get_kind(node.type)
        if kind is None:
            return

        start_line, end_line = self._node_lines(node, total_lines)

        # Inside a class body only callables are extracted, as methods
        if parent is not None and kind not in ("function", "method", "decorated"):
            return

        if kind == "import":
            sources = self._import_sources(node)
            spans.append(
                _Span("import", sources[0] if sources else None, start_line, end_line, import_sources=sources)
            )

        elif kind == "export":
            declaration = node.child_by_field_name("declaration")
            if declaration is not None:
                names = self._declaration_names(declaration, lang_config)
                if end_line > start_line:
                    # Header line only; the declaration gets its own chunk below
                    spans.append(
                        _Span("export", names[0] if names else None, start_line, start_line, export_names=names)
                    )
                    self._visit(declaration, lang_config, spans, total_lines, parent=None)
                else:
                    before = len(spans)
                    self._visit(declaration, lang_config, spans, total_lines, parent=None)
                    if len(spans) == before:
                        spans.append(_Span("export", names[0] if names else None, start_line, end_line))
                    spans[before].export_names = names
            else:
                names = self._export_clause_names(node)
                spans.append(
                    _Span("export", names[0] if names else None, start_line, end_line, export_names=names)
                )

        elif kind == "declaration":
            declared_kind, name = self._classify_declaration(node)
            spans.append(_Span(declared_kind, name, start_line, end_line))

        elif kind == "assignment":
            assignment = node.named_children[0] if node.named_children else None
            if assignment is None or assignment.type != "assignment":
                return
            left = assignment.child_by_field_name("left")
            name = left.text.decode("utf-8") if left is not None else None
            spans.append(_Span("variable", name, start_line, end_line))

        elif kind == "decorated":
            definition = node.child_by_field_name("definition")
            if definition is None:
                return
            inner_kind = lang_config.get_kind(definition.type)
            name = self._extract_node_name(node, lang_config)
            if inner_kind == "class":
                if parent is not None:
                    return
                span = _Span("class", name, start_line, end_line)
                spans.append(span)
                self._visit_body(definition, lang_config, spans, total_lines, span)
            else:
                span_kind = "method" if parent is not None else "function"
                spans.append(_Span(span_kind, name, start_line, end_line, parent=parent))

        elif kind in ("function", "method"):
            span_kind = "method" if parent is not None else "function"
            name = self._extract_node_name(node, lang_config)
            spans.append(_Span(span_kind, name, start_line, end_line, parent=parent))

        else:
            name = self._extract_node_name(node, lang_config)
            span = _Span(kind, name, start_line, end_line)
            spans.append(span)
            if kind in ("class", "interface"):
                self._visit_body(node, lang_config, spans, total_lines, span)

    def _visit_body(
        self,
        node: Any,
        lang_config: LanguageConfig,
        spans: List[_Span],
        total_lines: int,
        owner: _Span,
    ) -> None:
        body_field = lang_config.get_body_field(node.type)
        if not body_field:
            return
        body = node.child_by_field_name(body_field)
        if body is None:
            return
        for member in body.named_children:
            self._visit(member, lang_config, spans, total_lines, parent=owner)

    def _extract_node_name(self, node: Any, lang_config: LanguageConfig) -> Optional[str]:
        """Extract the name/identifier from an AST node.

        Args:
            node: Tree-sitter node
            lang_config: Language configuration

        Returns:
            Name string or None
        """
        name_field = lang_config.get_name_field(node.type)
        if not name_field:
            return None

        # Nested field paths like "definition.name"
        current = node
        for field_name in name_field.split("."):
            current = current.child_by_field_name(field_name)
            if current is None:
                return None
        return current.text.decode("utf-8")

    def _classify_declaration(self, node: Any):
        """Classify a ``const``/``let``/``var`` statement as a function or variable."""
        first_name = None
        for declarator in node.named_children:
            if declarator.type != "variable_declarator":
                continue
            name_node = declarator.child_by_field_name("name")
            name = name_node.text.decode("utf-8") if name_node is not None else None
            if first_name is None:
                first_name = name
            value = declarator.child_by_field_name("value")
            if value is not None and value.type in FUNCTION_VALUE_TYPES:
                return "function", name
        return "variable", first_name

    def _declaration_names(self, node: Any, lang_config: LanguageConfig) -> List[str]:
        if lang_config.get_kind(node.type) == "declaration":
            names = []
            for declarator in node.named_children:
                name_node = declarator.child_by_field_name("name")
                if declarator.type == "variable_declarator" and name_node is not None:
                    names.append(name_node.text.decode("utf-8"))
            return names

        name_node = node.child_by_field_name("name")
        if name_node is not None:
            return [name_node.text.decode("utf-8")]
        return []

    def _export_clause_names(self, node: Any) -> List[str]:
        """Names from ``export { a, b as c }`` or ``export default ...``."""
        names: List[str] = []
        for child in node.named_children:
            if child.type == "export_clause":
                for specifier in child.named_children:
                    alias = specifier.child_by_field_name("alias")
                    target = alias or specifier.child_by_field_name("name")
                    if target is not None:
                        names.append(target.text.decode("utf-8"))
        if not names and any(child.type == "default" for child in node.children):
            names.append("default")
        return names

    def _import_sources(self, node: Any) -> List[str]:
        """Module names referenced by an import statement."""
        source = node.child_by_field_name("source")
        if source is not None:
            return [source.text.decode("utf-8").strip("'\"`")]

        module_name = node.child_by_field_name("module_name")
        if module_name is not None:
            return [module_name.text.decode("utf-8")]

        if node.type == "import_statement":
            sources = []
            for child in node.named_children:
                if child.type == "aliased_import":
                    child = child.child_by_field_name("name")
                if child is not None and child.type == "dotted_name":
                    sources.append(child.text.decode("utf-8"))
            return sources

        # Java: "import static java.util.List;"
        text = node.text.decode("utf-8")
        text = re.sub(r"^import\s+(static\s+)?", "", text).rstrip(";").strip()
        return [text] if text else []

    @staticmethod
    def _node_lines(node: Any, total_lines: int):
        start_line = node.start_point[0] + 1
        end_line = node.end_point[0] + 1
        # A node ending at column 0 stops at the previous line's newline
        if node.end_point[1] == 0 and end_line > start_line:
            end_line -= 1
        start_line = max(1, min(start_line, total_lines))
        end_line = max(start_line, min(end_line, total_lines))
        return start_line, end_line

    # ------------------------------------------------------------------
    # Generic chunking and splitting
    # ------------------------------------------------------------------

    def _chunk_generic(self, file_path: str, lines: List[str], language: str) -> List[CodeChunk]:
        """Accumulate lines into blocks, cutting at max size or at blank lines past min size."""
        chunks: List[CodeChunk] = []
        start_line = 1
        size = 0

        for index, line in enumerate(lines, start=1):
            size += len(line) + 1
            if size >= self.max_chunk_size or (not line.strip() and size > self.min_chunk_size):
                chunk = self._chunk_from_lines(file_path, lines, start_line, index, "block", None, language)
                if chunk:
                    chunks.append(chunk)
                start_line = index + 1
                size = 0

        if start_line <= len(lines):
            chunk = self._chunk_from_lines(file_path, lines, start_line, len(lines), "block", None, language)
            if chunk:
                chunks.append(chunk)

        return chunks

    def _split_large_chunk(self, chunk: CodeChunk) -> List[CodeChunk]:
        """Split a chunk into numbered ``block`` parts at blank-line boundaries.

        A part is also cut before it would pass 1.5x the max size, so text
        without blank lines still splits.
        """
        lines = chunk.content.split("\n")
        hard_limit = self.max_chunk_size * 1.5
        parts: List[CodeChunk] = []
        current: List[str] = []
        current_start = 0
        size = 0

        def close(end_offset: int) -> None:
            content = "\n".join(current).strip()
            if not content:
                return
            start = chunk.start_line + current_start
            end = min(chunk.start_line + end_offset, chunk.end_line)
            part = self._make_chunk(
                content,
                "block",
                chunk.file_path,
                start,
                max(start, end),
                f"{chunk.name or 'chunk'}_part_{len(parts) + 1}",
                chunk.metadata.language,
                imports=chunk.metadata.imports,
                exports=chunk.metadata.exports,
            )
            part.parent_chunk = chunk.id
            parts.append(part)

        for offset, line in enumerate(lines):
            if current and size + len(line) + 1 > hard_limit:
                close(offset - 1)
                current, current_start, size = [], offset, 0

            current.append(line)
            size += len(line) + 1

            if size >= self.max_chunk_size and not line.strip():
                close(offset)
                current, current_start, size = [], offset + 1, 0

        if current:
            close(len(lines) - 1)

        logger.debug(f"Split chunk {chunk.id} ({len(chunk.content)} chars) into {len(parts)} parts")
        return parts or [chunk]

    # ------------------------------------------------------------------
    # Chunk construction
    # ------------------------------------------------------------------

    def _chunk_from_lines(
        self,
        file_path: str,
        lines: List[str],
        start_line: int,
        end_line: int,
        kind: str,
        name: Optional[str],
        language: str,
        imports: Optional[List[str]] = None,
        exports: Optional[List[str]] = None,
    ) -> Optional[CodeChunk]:
        """Build a chunk from a line range, trimming blank edge lines."""
        while start_line < end_line and not lines[start_line - 1].strip():
            start_line += 1
        while end_line > start_line and not lines[end_line - 1].strip():
            end_line -= 1

        content = "\n".join(lines[start_line - 1 : end_line]).strip()
        if not content:
            return None

        return self._make_chunk(
            content, kind, file_path, start_line, end_line, name, language, imports=imports, exports=exports
        )

    def _make_chunk(
        self,
        content: str,
        kind: str,
        file_path: str,
        start_line: int,
        end_line: int,
        name: Optional[str],
        language: str,
        imports: Optional[List[str]] = None,
        exports: Optional[List[str]] = None,
    ) -> CodeChunk:
        imports = list(imports or [])
        metadata = ChunkMetadata(
            language=language,
            complexity=calculate_complexity(content),
            dependencies=list(imports),
            exports=list(exports or []),
            imports=imports,
            keywords=extract_keywords(content),
        )
        return CodeChunk(
            id=self._generate_chunk_id(file_path, start_line, end_line, content),
            content=content,
            kind=kind,
            name=name,
            file_path=file_path,
            start_line=start_line,
            end_line=end_line,
            metadata=metadata,
        )

    def _generate_chunk_id(self, file_path: str, start_line: int, end_line: int, content: str) -> str:
        """Generate a stable chunk ID using Blake3 hash.

        Args:
            file_path: File path
            start_line: Starting line number
            end_line: Ending line number
            content: Chunk content (only the first 100 characters are hashed)

        Returns:
            ``chunk_`` followed by 16 hex characters
        """
        hash_input = f"{file_path}:{start_line}-{end_line}:{content[:100]}"
        return "chunk_" + blake3.blake3(hash_input.encode()).hexdigest()[:16]
