"""Dart / Flutter parser.

The Dart grammar is an optional install; without it every file goes
through the regex path. Leading-underscore names are library-private and
therefore never exported.
"""

from __future__ import annotations

import re
from typing import Any, List, Optional

from .models import (
    ClassInfo,
    ExportInfo,
    FunctionInfo,
    ImportInfo,
    ImportSpecifier,
    ParsedFile,
    PropertyInfo,
)
from .parser import (
    GrammarParser,
    find_closing_brace,
    load_grammar,
    node_text,
    split_names,
)

IMPORT_RE = re.compile(
    r"""^import\s+['"]([^'"]+)['"](?:\s+as\s+(\w+))?(?:\s+show\s+([\w,\s]+))?(?:\s+hide\s+[\w,\s]+)?\s*;"""
)
EXPORT_RE = re.compile(r"""^export\s+['"]([^'"]+)['"]\s*;""")
FUNC_RE = re.compile(
    r"^(?:(?:static|final|const|external)\s+)*(?:([\w<>,\s?]+?)\s+)?(\w+)\s*\(([^)]*)\)\s*(?:async\s*)?(?:\{|=>)"
)
CLASS_RE = re.compile(
    r"^(?:abstract\s+)?class\s+(\w+)(?:\s+extends\s+(\w+))?(?:\s+with\s+([\w,\s]+))?"
    r"(?:\s+implements\s+([\w,\s]+))?\s*\{"
)
METHOD_RE = re.compile(
    r"^\s+(?:@\w+\s*(?:\([^)]*\))?\s*)*(?:(?:static|final|const|external)\s+)*(?:([\w<>,\s?]+?)\s+)?"
    r"(\w+)\s*\(([^)]*)\)\s*(?:async\s*)?(?:\{|=>)"
)
PROP_RE = re.compile(r"^\s+(?:(?:static|final|const|late)\s+)*(?:(\w[\w<>,\s?]*?)\s+)?(\w+)\s*[;=]")

SKIP_KEYWORDS = {"if", "for", "while", "switch", "catch", "class", "return", "new"}
TOP_LEVEL_SKIP = ("import ", "export ", "class ", "abstract ", "mixin ", "//", "/*", "*", "part ")


def _is_public(name: str) -> bool:
    return not name.startswith("_")


def _block_end(lines: List[str], idx: int) -> int:
    """Arrow bodies end on their own line, brace bodies at the matching brace."""
    line = lines[idx]
    if "=>" in line and "{" not in line.split("=>", 1)[0]:
        return idx
    return find_closing_brace(lines, idx, fallback_span=100)


def _class_from_header(header: str) -> Optional[ClassInfo]:
    match = CLASS_RE.match(header.strip())
    if not match:
        return None
    name, extends, mixins, interfaces = match.groups()
    return ClassInfo(
        name=name,
        is_exported=_is_public(name),
        extends=extends,
        implements=split_names(mixins) + split_names(interfaces),
    )


class DartParser(GrammarParser):
    language = "dart"
    file_extensions = (".dart",)

    def _grammar_for(self, file_path: str) -> Optional[Any]:
        return load_grammar("tree_sitter_dart")

    # ------------------------------------------------------------------
    # Tree-sitter extraction
    # ------------------------------------------------------------------

    def _parse_tree(self, root: Any, code: str, file_path: str) -> ParsedFile:
        lines = code.split("\n")
        result = ParsedFile(file_path=file_path, language=self.language)
        children = root.named_children
        for idx, node in enumerate(children):
            text = node_text(node).strip()
            if node.type in ("import_or_export", "library_import", "library_export", "import_specification"):
                self._import_export(text, node.start_point[0] + 1, result)
            elif node.type == "class_definition":
                header = text.split("{", 1)[0] + "{"
                info = _class_from_header(header)
                if info is None:
                    continue
                info.start_line = node.start_point[0] + 1
                info.end_line = node.end_point[0] + 1
                self._scan_members(lines, info.start_line, info.end_line - 1, info)
                result.classes.append(info)
            elif node.type == "function_signature":
                start = node.start_point[0]
                end = node.end_point[0]
                if idx + 1 < len(children) and children[idx + 1].type == "function_body":
                    end = children[idx + 1].end_point[0]
                name = node_text(node.child_by_field_name("name"))
                params = next((c for c in node.named_children if c.type == "formal_parameter_list"), None)
                return_type = next(
                    (c for c in node.named_children if c.type in ("type_identifier", "void_type")), None
                )
                result.functions.append(FunctionInfo(
                    name=name,
                    params=node_text(params) or "()",
                    return_type=node_text(return_type),
                    body="\n".join(lines[start:end + 1]),
                    start_line=start + 1,
                    end_line=end + 1,
                    is_exported=_is_public(name),
                    is_async="async" in node_text(children[idx + 1]).split("{", 1)[0]
                    if idx + 1 < len(children) else False,
                ))
        return result

    # ------------------------------------------------------------------
    # Regex fallback
    # ------------------------------------------------------------------

    def _parse_regex(self, code: str, file_path: str) -> ParsedFile:
        lines = code.split("\n")
        result = ParsedFile(file_path=file_path, language=self.language)

        for i, raw in enumerate(lines):
            self._import_export(raw.strip(), i + 1, result)

        i = 0
        while i < len(lines):
            raw = lines[i]
            stripped = raw.strip()
            if not stripped or raw[:1].isspace():
                i += 1
                continue
            if stripped.startswith(("class ", "abstract class ")):
                info = _class_from_header(stripped)
                if info is not None:
                    end = find_closing_brace(lines, i, fallback_span=100)
                    info.start_line = i + 1
                    info.end_line = end + 1
                    self._scan_members(lines, i + 1, end, info)
                    result.classes.append(info)
                    i = end + 1
                    continue
            if stripped.startswith(TOP_LEVEL_SKIP):
                i += 1
                continue
            match = FUNC_RE.match(stripped)
            if match and match.group(2) not in SKIP_KEYWORDS:
                end = _block_end(lines, i)
                name = match.group(2)
                result.functions.append(FunctionInfo(
                    name=name,
                    params=f"({match.group(3)})",
                    return_type=(match.group(1) or "").strip(),
                    body="\n".join(lines[i:end + 1]),
                    start_line=i + 1,
                    end_line=end + 1,
                    is_exported=_is_public(name),
                    is_async=bool(re.search(r"\)\s*async", stripped)),
                ))
                i = end + 1
                continue
            i += 1

        return result

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _import_export(line: str, line_no: int, result: ParsedFile) -> None:
        imp = IMPORT_RE.match(line)
        if imp:
            source, alias, shown = imp.groups()
            specifiers = [ImportSpecifier(name=n) for n in split_names(shown)]
            if alias:
                specifiers.append(ImportSpecifier(name="*", alias=alias))
            result.imports.append(ImportInfo(source=source, specifiers=specifiers, line=line_no))
            return
        exp = EXPORT_RE.match(line)
        if exp:
            result.exports.append(ExportInfo(name=exp.group(1), line=line_no))

    @staticmethod
    def _scan_members(lines: List[str], begin: int, end: int, info: ClassInfo) -> None:
        depth = 0
        j = begin
        while j < end:
            line = lines[j]
            stripped = line.strip()
            if depth == 0 and stripped and not stripped.startswith(("//", "/*", "*")):
                method = METHOD_RE.match(line)
                if method and method.group(2) not in SKIP_KEYWORDS:
                    m_end = _block_end(lines, j)
                    name = method.group(2)
                    info.methods.append(FunctionInfo(
                        name=name,
                        params=f"({method.group(3)})",
                        return_type=(method.group(1) or "").strip(),
                        body="\n".join(lines[j:m_end + 1]),
                        start_line=j + 1,
                        end_line=m_end + 1,
                        is_exported=_is_public(name),
                        is_async=bool(re.search(r"\)\s*async", stripped)),
                    ))
                    j = m_end + 1
                    continue
                prop = PROP_RE.match(line)
                if prop and "(" not in stripped and prop.group(2) not in SKIP_KEYWORDS:
                    info.properties.append(PropertyInfo(
                        name=prop.group(2),
                        type=(prop.group(1) or "").strip() or None,
                    ))
            depth = max(depth + line.count("{") - line.count("}"), 0)
            j += 1
