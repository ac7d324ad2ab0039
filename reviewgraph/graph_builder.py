"""Build the repository code graph from parsed files.

Nodes: File, Function (top-level functions and ``Class.method``) and Class.
Edges: CONTAINS, HAS_METHOD, CALLS, IMPORTS, EXTENDS and IMPLEMENTS.

CALLS and IMPORTS are recovered heuristically: call sites are found by a
lexical scan of each function body and resolved against the set of
functions known in the same repository; import sources are resolved
against the set of parsed file paths.
"""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .models import ClassInfo, FunctionInfo, ParsedFile
from .storage import EdgeRow, GraphStore, NodeRef

logger = logging.getLogger(__name__)

CALL_RE = re.compile(r"(?<![.\w])(\w+)\s*\(")
MEMBER_CALL_RE = re.compile(r"(?<!\w)(\w+)\.(\w+)\s*\(")

RELATIVE_IMPORT_SUFFIXES = ("", ".ts", ".tsx", ".js", ".jsx", ".java", ".dart", "/index.ts", "/index.js")
SUFFIX_IMPORT_EXTENSIONS = ("", ".ts", ".tsx", ".js", ".java", ".dart")

NOISE_IDENTIFIERS: Set[str] = {
    # JS/TS keywords and built-ins
    "if", "else", "for", "while", "do", "switch", "case", "return", "throw",
    "try", "catch", "finally", "new", "delete", "typeof", "void", "in",
    "instanceof", "break", "continue", "default", "yield", "await",
    "import", "export", "from", "as", "class", "extends", "super", "this",
    "constructor", "get", "set", "static", "async",
    "console", "log", "warn", "error", "info", "debug",
    "require", "module", "exports",
    "Array", "Object", "String", "Number", "Boolean", "Date", "Math",
    "JSON", "Promise", "Map", "Set", "RegExp", "Error", "Symbol",
    "parseInt", "parseFloat", "isNaN", "isFinite", "undefined", "null",
    "true", "false", "NaN", "Infinity",
    # Python built-ins
    "print", "len", "range", "enumerate", "zip", "map", "filter",
    "type", "isinstance", "issubclass", "str", "int", "float", "bool",
    "list", "dict", "tuple",
    # Java
    "System", "Override", "public", "private", "protected",
}


@dataclass
class GraphBuildStats:
    files: int = 0
    functions: int = 0
    classes: int = 0
    calls: int = 0
    imports: int = 0
    inherits: int = 0
    failed_batches: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def _qualified_functions(parsed: ParsedFile) -> List[Tuple[str, FunctionInfo]]:
    out = [(fn.name, fn) for fn in parsed.functions]
    for cls in parsed.classes:
        out.extend((f"{cls.name}.{m.name}", m) for m in cls.methods)
    return out


# ===================================================================
# Edge extraction
# ===================================================================

def extract_call_edges(files: Sequence[ParsedFile]) -> List[Dict[str, object]]:
    """Call sites as ``{caller, caller_file, callee, line}`` dicts."""
    known: Set[str] = set()
    for parsed in files:
        known.update(name for name, _ in _qualified_functions(parsed))

    edges: List[Dict[str, object]] = []
    for parsed in files:
        for name, fn in _qualified_functions(parsed):
            body = fn.body
            if not body:
                continue
            current_class = name.split(".", 1)[0] if "." in name else None
            seen: Set[str] = set()

            def add(callee: str, offset: int) -> None:
                seen.add(callee)
                line_offset = body.count("\n", 0, offset)
                edges.append({
                    "caller": name,
                    "caller_file": parsed.file_path,
                    "callee": callee,
                    "line": fn.start_line + max(line_offset, 0),
                })

            for match in CALL_RE.finditer(body):
                callee = match.group(1)
                if callee == name or callee in NOISE_IDENTIFIERS:
                    continue
                resolved: Optional[str] = None
                if current_class and f"{current_class}.{callee}" in known:
                    resolved = f"{current_class}.{callee}"
                elif callee in known:
                    resolved = callee
                if resolved is None or resolved == name or resolved in seen:
                    continue
                add(resolved, match.start())

            for match in MEMBER_CALL_RE.finditer(body):
                obj, method = match.group(1), match.group(2)
                if method in NOISE_IDENTIFIERS:
                    continue
                if obj in ("this", "super"):
                    candidate = f"{current_class}.{method}" if current_class else None
                else:
                    candidate = f"{obj}.{method}"
                if candidate is None or candidate not in known or candidate == name or candidate in seen:
                    continue
                add(candidate, match.start())
    return edges


def _find_by_suffix(source: str, paths: Iterable[str]) -> Optional[str]:
    cleaned = source.lstrip("@/")
    for path in sorted(paths):
        for ext in SUFFIX_IMPORT_EXTENSIONS:
            if path == f"{cleaned}{ext}" or path.endswith(f"/{cleaned}{ext}"):
                return path
    return None


def resolve_import_source(source: str, current_file: str, paths: Set[str]) -> Optional[str]:
    """Resolve an import string to one of *paths*, or None.

    Relative sources are joined against the importing file's directory;
    bare specifiers fall back to suffix matching, with dotted Java names
    converted to slash paths first.
    """
    if not source.startswith((".", "/")):
        if re.fullmatch(r"[A-Za-z_][\w]*(\.[A-Za-z_][\w]*)+(\.\*)?", source) and not source.endswith(
            (".ts", ".js", ".tsx", ".jsx", ".dart")
        ):
            source = source.replace(".*", "").replace(".", "/")
        if source.startswith("package:"):
            source = source.split("/", 1)[1] if "/" in source else source
        return _find_by_suffix(source, paths)

    base = posixpath.dirname(current_file)
    resolved = posixpath.normpath(posixpath.join(base, source)) if not source.startswith("/") else source.lstrip("/")
    for ext in RELATIVE_IMPORT_SUFFIXES:
        candidate = f"{resolved}{ext}"
        if candidate in paths:
            return candidate
    return None


def extract_import_edges(files: Sequence[ParsedFile]) -> List[Dict[str, object]]:
    paths = {f.file_path for f in files}
    edges: List[Dict[str, object]] = []
    for parsed in files:
        for imp in parsed.imports:
            target = resolve_import_source(imp.source, parsed.file_path, paths)
            if target and target != parsed.file_path:
                edges.append({
                    "src": parsed.file_path,
                    "dst": target,
                    "symbols": [s.name for s in imp.specifiers],
                })
    return edges


def extract_inheritance_edges(files: Sequence[ParsedFile]) -> Tuple[List[Tuple[str, str, str]], List[Tuple[str, str, str]]]:
    """``(child, child_file, parent)`` triples for EXTENDS and IMPLEMENTS."""
    extends: List[Tuple[str, str, str]] = []
    implements: List[Tuple[str, str, str]] = []
    for parsed in files:
        for cls in parsed.classes:
            if cls.extends:
                extends.append((cls.name, parsed.file_path, cls.extends))
            for iface in cls.implements:
                implements.append((cls.name, parsed.file_path, iface))
    return extends, implements


# ===================================================================
# Builder
# ===================================================================

def _function_row(name: str, fn: FunctionInfo, file_path: str) -> Dict[str, object]:
    return {
        "name": name,
        "file": file_path,
        "start_line": fn.start_line,
        "end_line": fn.end_line,
        "code": fn.body,
        "is_exported": fn.is_exported,
        "is_async": fn.is_async,
        "params": fn.params,
        "return_type": fn.return_type,
    }


def _class_row(cls: ClassInfo, file_path: str) -> Dict[str, object]:
    return {
        "name": cls.name,
        "file": file_path,
        "start_line": cls.start_line,
        "end_line": cls.end_line,
        "is_exported": cls.is_exported,
        "extends_name": cls.extends,
        "implements": list(cls.implements),
        "property_count": len(cls.properties),
        "method_count": len(cls.methods),
    }


def build_graph(store: GraphStore, repo_id: str, files: Sequence[ParsedFile]) -> GraphBuildStats:
    """Upsert *files* into the graph for *repo_id*.

    Idempotent: rebuilding from the same inputs yields the same graph.
    """
    logger.info("Building code graph for %s (%d files)", repo_id, len(files))
    stats = GraphBuildStats()
    store.ensure_schema()

    file_rows = [{"name": f.file_path, "file": f.file_path, "language": f.language} for f in files]
    function_rows: List[Dict[str, object]] = []
    class_rows: List[Dict[str, object]] = []
    contains: List[EdgeRow] = []
    has_method: List[EdgeRow] = []

    for parsed in files:
        file_ref = NodeRef("File", parsed.file_path, parsed.file_path)
        for name, fn in _qualified_functions(parsed):
            function_rows.append(_function_row(name, fn, parsed.file_path))
            contains.append((file_ref, NodeRef("Function", name, parsed.file_path), {}))
        for cls in parsed.classes:
            class_rows.append(_class_row(cls, parsed.file_path))
            class_ref = NodeRef("Class", cls.name, parsed.file_path)
            contains.append((file_ref, class_ref, {}))
            for method in cls.methods:
                has_method.append((
                    class_ref, NodeRef("Function", f"{cls.name}.{method.name}", parsed.file_path), {},
                ))

    failed = store.upsert_nodes(repo_id, "File", file_rows)
    failed += store.upsert_nodes(repo_id, "Function", function_rows)
    failed += store.upsert_nodes(repo_id, "Class", class_rows)
    failed += store.upsert_edges(repo_id, "CONTAINS", contains)
    failed += store.upsert_edges(repo_id, "HAS_METHOD", has_method)

    calls = extract_call_edges(files)
    failed += store.upsert_edges(repo_id, "CALLS", [
        (
            NodeRef("Function", str(c["caller"]), str(c["caller_file"])),
            NodeRef("Function", str(c["callee"])),
            {"line": c["line"]},
        )
        for c in calls
    ])

    imports = extract_import_edges(files)
    failed += store.upsert_edges(repo_id, "IMPORTS", [
        (
            NodeRef("File", str(e["src"]), str(e["src"])),
            NodeRef("File", str(e["dst"]), str(e["dst"])),
            {"symbols": e["symbols"]},
        )
        for e in imports
    ])

    extends, implements = extract_inheritance_edges(files)
    failed += store.upsert_edges(repo_id, "EXTENDS", [
        (NodeRef("Class", child, child_file), NodeRef("Class", parent), {})
        for child, child_file, parent in extends
    ])
    failed += store.upsert_edges(repo_id, "IMPLEMENTS", [
        (NodeRef("Class", child, child_file), NodeRef("Class", iface), {})
        for child, child_file, iface in implements
    ])

    stats.files = len(file_rows)
    stats.functions = len(function_rows)
    stats.classes = len(class_rows)
    stats.calls = len(calls)
    stats.imports = len(imports)
    stats.inherits = len(extends) + len(implements)
    stats.failed_batches = failed
    logger.info("Code graph built for %s: %s", repo_id, stats.to_dict())
    return stats
