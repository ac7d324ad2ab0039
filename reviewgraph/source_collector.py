"""Source-file discovery, parsing and snippet extraction for indexing."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from . import config
from .models import CodeSnippet, ParsedFile
from .parser import parse_file

logger = logging.getLogger(__name__)

PARSEABLE_EXTENSIONS: Set[str] = {
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs",
    ".java",
    ".dart",
    ".ftl",
}

ALWAYS_EXCLUDE: Set[str] = {
    "node_modules", ".git", ".svn", ".hg",
    "__pycache__", ".venv", "venv",
    ".gradle", ".mvn", "target", "build",
    "dist", ".next", ".nuxt", "out",
    ".dart_tool", ".flutter-plugins",
    ".idea", ".vscode",
}


def collect_source_files(
    root: Path,
    exclude_patterns: Optional[Iterable[str]] = None,
    max_file_size: int = config.MAX_FILE_SIZE,
) -> List[Path]:
    """Walk *root* and return parseable files, pruning excluded directories."""
    excluded = set(exclude_patterns or ()) | ALWAYS_EXCLUDE
    files: List[Path] = []
    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in excluded)
        for filename in sorted(filenames):
            path = Path(current) / filename
            if path.suffix.lower() not in PARSEABLE_EXTENSIONS:
                continue
            try:
                if path.stat().st_size > max_file_size:
                    logger.debug("Skipping %s: larger than %d bytes", path, max_file_size)
                    continue
            except OSError:
                continue
            files.append(path)
    return files


def parse_sources(
    root: Path,
    files: Iterable[Path],
    on_progress: Optional[Callable[[int], None]] = None,
    progress_every: int = 20,
) -> List[ParsedFile]:
    """Parse *files*, storing paths relative to *root* in the results.

    Unreadable files are logged and skipped. *on_progress* receives the
    running count every *progress_every* files.
    """
    parsed: List[ParsedFile] = []
    for count, path in enumerate(files, start=1):
        rel = path.relative_to(root).as_posix() if path.is_absolute() else path.as_posix()
        try:
            code = (root / rel).read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("Failed to read %s: %s", rel, exc)
            continue
        result = parse_file(rel, code)
        if result is not None:
            parsed.append(result)
        if on_progress is not None and count % progress_every == 0:
            on_progress(count)
    return parsed


def extract_snippets(files: Iterable[ParsedFile]) -> List[CodeSnippet]:
    """One snippet per function and method; method-less classes get a stub."""
    snippets: List[CodeSnippet] = []
    for parsed in files:
        for fn in parsed.functions:
            snippets.append(CodeSnippet(
                name=fn.name,
                code=fn.body or f"function {fn.name}{fn.params}",
                file=parsed.file_path,
                start_line=fn.start_line,
                end_line=fn.end_line,
            ))
        for cls in parsed.classes:
            for method in cls.methods:
                snippets.append(CodeSnippet(
                    name=f"{cls.name}.{method.name}",
                    code=method.body or f"{method.name}{method.params}",
                    file=parsed.file_path,
                    start_line=method.start_line,
                    end_line=method.end_line,
                ))
            if not cls.methods:
                heritage = f" extends {cls.extends}" if cls.extends else ""
                snippets.append(CodeSnippet(
                    name=cls.name,
                    code=f"class {cls.name}{heritage}",
                    file=parsed.file_path,
                    start_line=cls.start_line,
                    end_line=cls.end_line,
                ))
    return snippets
