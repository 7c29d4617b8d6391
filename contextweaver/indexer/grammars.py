"""Language configuration and detection for the chunker."""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "languages.json"

# Fallback when neither the extension nor a shebang identifies the file
UNKNOWN_LANGUAGE = "text"


class LanguageConfig:
    """Configuration for a programming language."""

    def __init__(
        self,
        name: str,
        extensions: List[str],
        tree_sitter_language: Optional[str],
        chunk_types: Dict[str, Dict],
        comment_patterns: List[str],
        shebangs: Optional[List[str]] = None,
    ):
        """Initialize language configuration.

        Args:
            name: Language name (python, javascript, etc.)
            extensions: List of file extensions
            tree_sitter_language: Tree-sitter grammar identifier, None for text-only languages
            chunk_types: Dictionary mapping AST node types to their chunk kind and name field
            comment_patterns: List of comment syntax patterns
            shebangs: Interpreter names that identify this language on a ``#!`` line
        """
        self.name = name
        self.extensions = extensions
        self.tree_sitter_language = tree_sitter_language
        self.chunk_types = chunk_types
        self.comment_patterns = comment_patterns
        self.shebangs = shebangs or []

    @property
    def is_structured(self) -> bool:
        """Whether files in this language are parsed into an AST."""
        return bool(self.tree_sitter_language and self.chunk_types)

    def get_kind(self, node_type: str) -> Optional[str]:
        """Get the chunk kind configured for a node type."""
        if node_type in self.chunk_types:
            return self.chunk_types[node_type].get("kind")
        return None

    def get_name_field(self, node_type: str) -> Optional[str]:
        """Get the field name that contains the identifier for this node type.

        Args:
            node_type: AST node type

        Returns:
            Field name or None if no specific field
        """
        if node_type in self.chunk_types:
            return self.chunk_types[node_type].get("name_field")
        return None

    def get_body_field(self, node_type: str) -> Optional[str]:
        """Get the field holding the member list of a class-like node."""
        if node_type in self.chunk_types:
            return self.chunk_types[node_type].get("body_field")
        return None


class LanguageRegistry:
    """Registry of language configurations."""

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize language registry.

        Args:
            config_path: Path to languages.json config file
        """
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        self.languages: Dict[str, LanguageConfig] = {}
        self.extension_map: Dict[str, str] = {}
        self.shebang_map: Dict[str, str] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load language configurations from JSON file."""
        try:
            with open(self.config_path, "r") as f:
                config_data = json.load(f)

            for lang_name, lang_config in config_data.items():
                language = LanguageConfig(
                    name=lang_name,
                    extensions=lang_config["extensions"],
                    tree_sitter_language=lang_config.get("tree_sitter_language"),
                    chunk_types=lang_config.get("chunk_types", {}),
                    comment_patterns=lang_config.get("comment_patterns", []),
                    shebangs=lang_config.get("shebangs", []),
                )
                self.languages[lang_name] = language

                for ext in language.extensions:
                    self.extension_map[ext] = lang_name
                for interpreter in language.shebangs:
                    self.shebang_map.setdefault(interpreter, lang_name)

            logger.info(f"Loaded {len(self.languages)} language configurations")

        except Exception as e:
            logger.error(f"Error loading language config from {self.config_path}: {e}")
            raise

    def detect_language(self, file_path: str, content: Optional[str] = None) -> str:
        """Detect programming language from file extension, then from a shebang line.

        Args:
            file_path: Path to the file
            content: File content, used only when the extension is not recognized

        Returns:
            Language name, ``"text"`` if not recognized
        """
        extension = Path(file_path).suffix.lower()
        if extension in self.extension_map:
            return self.extension_map[extension]

        if content:
            language = self._detect_from_shebang(content)
            if language:
                return language

        logger.debug(f"Unknown file extension: {extension or '<none>'} ({file_path})")
        return UNKNOWN_LANGUAGE

    def _detect_from_shebang(self, content: str) -> Optional[str]:
        """Map a ``#!`` interpreter line to a language name."""
        first_line = content.lstrip("\ufeff").split("\n", 1)[0].strip()
        if not first_line.startswith("#!"):
            return None

        parts = first_line[2:].split()
        if not parts:
            return None

        # "#!/usr/bin/env -S node --flags" names the interpreter after env's options
        interpreter = Path(parts[0]).name
        if interpreter == "env":
            args = [p for p in parts[1:] if not p.startswith("-")]
            if not args:
                return None
            interpreter = Path(args[0]).name

        # python3.12 -> python
        for candidate in (interpreter, interpreter.rstrip("0123456789.")):
            if candidate in self.shebang_map:
                return self.shebang_map[candidate]
        return None

    def get_language_config(self, language: str) -> Optional[LanguageConfig]:
        """Get configuration for a specific language.

        Args:
            language: Language name

        Returns:
            Language configuration or None if not found
        """
        return self.languages.get(language)

    def get_supported_languages(self) -> List[str]:
        """Get list of supported language names."""
        return list(self.languages.keys())

    def is_supported_file(self, file_path: str) -> bool:
        """Check if a file has a recognized extension.

        Args:
            file_path: Path to the file

        Returns:
            True if file is supported
        """
        return Path(file_path).suffix.lower() in self.extension_map


# Global registry instance
_registry: Optional[LanguageRegistry] = None


def get_language_registry(config_path: Optional[Path] = None) -> LanguageRegistry:
    """Get the global language registry instance.

    Args:
        config_path: Path to config file (only used on first call)

    Returns:
        Language registry instance
    """
    global _registry
    if _registry is None:
        _registry = LanguageRegistry(config_path)
    return _registry
