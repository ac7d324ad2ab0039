"""Multi-language source parser producing the canonical ParsedFile fact model.

Every language parser follows the same contract:

- Prefer a Tree-sitter grammar when the grammar package is importable.
- Fall back unconditionally to line-oriented regex heuristics when the
  grammar is missing, fails to load, or the tree walk raises.
- Never leak grammar-specific node shapes: all output is normalized into
  :class:`~reviewgraph.models.ParsedFile` and its dataclasses.

Parse failures are per file. :func:`parse_file` logs them and returns an
empty ParsedFile so indexing can continue.
"""

from __future__ import annotations

import importlib
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .models import ParsedFile

logger = logging.getLogger(__name__)

ANONYMOUS = "<anonymous>"

# ---------------------------------------------------------------------------
# Language <-> file-extension mapping
# ---------------------------------------------------------------------------
LANGUAGE_MAP: Dict[str, str] = {
    ".ts": "typescript",
    ".tsx": "tsx",
    ".js": "typescript",
    ".jsx": "typescript",
    ".mjs": "typescript",
    ".cjs": "typescript",
    ".java": "java",
    ".dart": "dart",
    ".ftl": "ftl",
}


# ===================================================================
# Shared helpers
# ===================================================================

def find_closing_brace(lines: List[str], start_idx: int, fallback_span: int = 50) -> int:
    """Index of the line closing the first ``{`` opened at or after *start_idx*.

    When no balanced brace is found the block is assumed to span
    *fallback_span* lines (clamped to the end of the file).
    """
    depth = 0
    found = False
    for i in range(start_idx, len(lines)):
        for ch in lines[i]:
            if ch == "{":
                depth += 1
                found = True
            elif ch == "}":
                depth -= 1
                if found and depth == 0:
                    return i
    return min(start_idx + fallback_span, len(lines) - 1)


def split_names(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def node_text(node: Any) -> str:
    """Decode a Tree-sitter node's text (``""`` for ``None``)."""
    if node is None:
        return ""
    text = node.text
    return text.decode("utf-8", errors="replace") if isinstance(text, bytes) else str(text)


def node_lines(node: Any) -> Tuple[int, int]:
    return node.start_point[0] + 1, node.end_point[0] + 1


# ===================================================================
# Grammar loading
# ===================================================================

_GRAMMAR_CACHE: Dict[Tuple[str, str], Optional[Any]] = {}
_GRAMMAR_LOCK = threading.Lock()


def load_grammar(module_name: str, attr: str = "language") -> Optional[Any]:
    """Return a Tree-sitter ``Parser`` for *module_name*, or None if unavailable.

    Results (including failures) are cached so a missing grammar is
    reported once per process.
    """
    key = (module_name, attr)
    with _GRAMMAR_LOCK:
        if key in _GRAMMAR_CACHE:
            return _GRAMMAR_CACHE[key]
        parser: Optional[Any] = None
        try:
            from tree_sitter import Language, Parser as TSParser  # type: ignore[import-untyped]
        except ImportError:
            logger.warning(
                "tree-sitter is not installed -- using regex parsing. "
                "Install with: pip install tree-sitter"
            )
        else:
            try:
                mod = importlib.import_module(module_name)
                parser = TSParser(Language(getattr(mod, attr)()))
                logger.debug("Loaded tree-sitter grammar %s.%s", module_name, attr)
            except ImportError:
                logger.info(
                    "Grammar package '%s' not installed -- using regex parsing",
                    module_name,
                )
            except Exception as exc:
                logger.warning("Could not load tree-sitter grammar %s: %s", module_name, exc)
        _GRAMMAR_CACHE[key] = parser
        return parser


# ===================================================================
# Abstract Parser Interface
# ===================================================================

class Parser(ABC):
    """Abstract base class for all language parsers."""

    language: str = ""
    file_extensions: Tuple[str, ...] = ()

    @abstractmethod
    def parse(self, code: str, file_path: str) -> ParsedFile:
        """Parse *code* (the contents of *file_path*) into a ParsedFile."""
        ...

    def supports_extension(self, ext: str) -> bool:
        return ext.lower() in self.file_extensions


class GrammarParser(Parser):
    """Tree-sitter first, regex fallback.

    Subclasses implement :meth:`_parse_tree` (given a ready Tree-sitter
    parser) and :meth:`_parse_regex`.
    """

    def _grammar_for(self, file_path: str) -> Optional[Any]:
        return None

    def parse(self, code: str, file_path: str) -> ParsedFile:
        ts_parser = self._grammar_for(file_path)
        if ts_parser is not None:
            try:
                tree = ts_parser.parse(code.encode("utf-8"))
                return self._parse_tree(tree.root_node, code, file_path)
            except Exception as exc:
                logger.debug("Tree-sitter parse failed for %s, using regex: %s", file_path, exc)
        return self._parse_regex(code, file_path)

    def _parse_tree(self, root: Any, code: str, file_path: str) -> ParsedFile:
        raise NotImplementedError

    @abstractmethod
    def _parse_regex(self, code: str, file_path: str) -> ParsedFile:
        ...


# ===================================================================
# Dispatch
# ===================================================================

_PARSERS: Optional[List[Parser]] = None


def _registry() -> List[Parser]:
    global _PARSERS
    if _PARSERS is None:
        from .parser_dart import DartParser
        from .parser_ftl import FtlParser
        from .parser_java import JavaParser
        from .parser_typescript import TypeScriptParser

        _PARSERS = [TypeScriptParser(), JavaParser(), DartParser(), FtlParser()]
    return _PARSERS


def get_parser_for_file(file_path: str) -> Optional[Parser]:
    """Pick the parser by extension, or None for unsupported files."""
    ext = Path(file_path).suffix.lower()
    for parser in _registry():
        if parser.supports_extension(ext):
            return parser
    return None


def parse_file(file_path: str, code: str) -> Optional[ParsedFile]:
    """Parse one file, degrading to an empty ParsedFile on any failure.

    Returns None only when no parser handles the extension.
    """
    parser = get_parser_for_file(file_path)
    if parser is None:
        return None
    try:
        return parser.parse(code, file_path)
    except Exception as exc:
        logger.warning("Failed to parse %s: %s", file_path, exc)
        language = LANGUAGE_MAP.get(Path(file_path).suffix.lower(), parser.language)
        return ParsedFile.empty(file_path, language)
