"""Java parser."""

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
    ANONYMOUS,
    GrammarParser,
    find_closing_brace,
    load_grammar,
    node_lines,
    node_text,
    split_names,
)

CONSTRUCTOR_NAME = "<init>"

IMPORT_RE = re.compile(r"^import\s+(static\s+)?([\w.]+(?:\.\*)?)\s*;")
CLASS_RE = re.compile(
    r"^(?:@\w+(?:\([^)]*\))?\s*)*(public\s+)?(?:(?:abstract|final|static)\s+)*"
    r"(?:class|interface|enum|record)\s+(\w+)(?:<[^>]*>)?"
    r"(?:\s+extends\s+([\w.<>,\s]+?))?(?:\s+implements\s+([\w.<>,\s]+?))?\s*\{"
)
METHOD_RE = re.compile(
    r"^\s*(?:@\w+(?:\([^)]*\))?\s*)*\s*(?:public|private|protected)?\s*(?:static\s+)?(?:final\s+)?"
    r"(?:synchronized\s+)?(?:<[\w\s,?]+>\s+)?(\w[\w<>\[\],\s]*?)\s+(\w+)\s*\(([^)]*)\)\s*"
    r"(?:throws\s+[\w,\s]+)?\s*\{"
)
CONSTRUCTOR_RE = re.compile(
    r"^\s*(?:@\w+(?:\([^)]*\))?\s*)*\s*(?:public|private|protected)?\s*(\w+)\s*\(([^)]*)\)\s*"
    r"(?:throws\s+[\w,\s]+)?\s*\{"
)
FIELD_RE = re.compile(
    r"^\s*(?:public|private|protected)?\s*(?:static\s+)?(?:final\s+)?(\w[\w<>\[\],\s]*?)\s+(\w+)\s*[;=]"
)

CONTROL_KEYWORDS = {"if", "for", "while", "switch", "catch", "return", "new", "else", "try", "synchronized"}

CLASS_NODE_TYPES = (
    "class_declaration",
    "interface_declaration",
    "enum_declaration",
    "record_declaration",
)


def _strip_generics(name: str) -> str:
    return re.sub(r"<.*>", "", name).strip()


def _annotation_start(lines: List[str], idx: int) -> int:
    """Walk back over annotation lines directly above a declaration."""
    start = idx
    while start > 0 and lines[start - 1].strip().startswith("@"):
        start -= 1
    return start


class JavaParser(GrammarParser):
    """Java classes, interfaces, enums and records."""

    language = "java"
    file_extensions = (".java",)

    def _grammar_for(self, file_path: str) -> Optional[Any]:
        return load_grammar("tree_sitter_java")

    # ------------------------------------------------------------------
    # Tree-sitter extraction
    # ------------------------------------------------------------------

    def _parse_tree(self, root: Any, code: str, file_path: str) -> ParsedFile:
        result = ParsedFile(file_path=file_path, language=self.language)
        for child in root.named_children:
            if child.type == "import_declaration":
                result.imports.append(self._import(child))
            elif child.type in CLASS_NODE_TYPES:
                self._collect_class(child, result)
        return result

    @staticmethod
    def _modifiers(node: Any) -> str:
        for child in node.children:
            if child.type == "modifiers":
                return node_text(child)
        return ""

    @staticmethod
    def _import(node: Any) -> ImportInfo:
        text = node_text(node)
        match = IMPORT_RE.match(text.strip())
        path = match.group(2) if match else re.sub(r"^import\s+(static\s+)?|;$", "", text).strip()
        tail = path.rsplit(".", 1)[-1]
        return ImportInfo(
            source=path,
            specifiers=[ImportSpecifier(name=tail)],
            line=node.start_point[0] + 1,
        )

    def _collect_class(self, node: Any, result: ParsedFile) -> None:
        start, end = node_lines(node)
        name = node_text(node.child_by_field_name("name")) or ANONYMOUS
        exported = "public" in self._modifiers(node).split()
        info = ClassInfo(name=name, start_line=start, end_line=end, is_exported=exported)

        superclass = node.child_by_field_name("superclass")
        if superclass is not None:
            info.extends = _strip_generics(re.sub(r"^extends\s+", "", node_text(superclass))) or None
        interfaces = node.child_by_field_name("interfaces")
        if interfaces is not None:
            raw = re.sub(r"^implements\s+", "", node_text(interfaces))
            info.implements.extend(_strip_generics(n) for n in split_names(raw))
        if node.type == "interface_declaration":
            for child in node.children:
                if child.type == "extends_interfaces":
                    raw = re.sub(r"^extends\s+", "", node_text(child))
                    info.implements.extend(_strip_generics(n) for n in split_names(raw))

        body = node.child_by_field_name("body")
        if body is not None:
            for member in body.named_children:
                if member.type in ("method_declaration", "constructor_declaration"):
                    info.methods.append(self._method(member))
                elif member.type == "field_declaration":
                    type_text = node_text(member.child_by_field_name("type")) or None
                    for decl in member.named_children:
                        if decl.type == "variable_declarator":
                            info.properties.append(PropertyInfo(
                                name=node_text(decl.child_by_field_name("name")),
                                type=type_text,
                            ))
                elif member.type == "enum_body_declarations":
                    for inner in member.named_children:
                        if inner.type in ("method_declaration", "constructor_declaration"):
                            info.methods.append(self._method(inner))
                elif member.type in CLASS_NODE_TYPES:
                    self._collect_class(member, result)
        result.classes.append(info)
        if exported:
            result.exports.append(ExportInfo(name=name, line=start))

    @staticmethod
    def _method(node: Any) -> FunctionInfo:
        start, end = node_lines(node)
        is_ctor = node.type == "constructor_declaration"
        return FunctionInfo(
            name=CONSTRUCTOR_NAME if is_ctor else (node_text(node.child_by_field_name("name")) or ANONYMOUS),
            params=node_text(node.child_by_field_name("parameters")) or "()",
            return_type="" if is_ctor else node_text(node.child_by_field_name("type")),
            body=node_text(node),
            start_line=start,
            end_line=end,
            is_exported="public" in JavaParser._modifiers(node).split(),
        )

    # ------------------------------------------------------------------
    # Regex fallback
    # ------------------------------------------------------------------

    def _parse_regex(self, code: str, file_path: str) -> ParsedFile:
        lines = code.split("\n")
        result = ParsedFile(file_path=file_path, language=self.language)

        for i, raw in enumerate(lines):
            match = IMPORT_RE.match(raw.strip())
            if match:
                path = match.group(2)
                result.imports.append(ImportInfo(
                    source=path,
                    specifiers=[ImportSpecifier(name=path.rsplit(".", 1)[-1])],
                    line=i + 1,
                ))

        i = 0
        while i < len(lines):
            match = CLASS_RE.match(lines[i].strip())
            if not match:
                i += 1
                continue
            start = _annotation_start(lines, i)
            end = find_closing_brace(lines, i, fallback_span=100)
            name = match.group(2)
            info = ClassInfo(
                name=name,
                start_line=start + 1,
                end_line=end + 1,
                is_exported=bool(match.group(1)),
                extends=_strip_generics(match.group(3)) if match.group(3) else None,
                implements=[_strip_generics(n) for n in split_names(match.group(4))],
            )
            self._scan_members(lines, i + 1, end, info)
            result.classes.append(info)
            if info.is_exported:
                result.exports.append(ExportInfo(name=name, line=start + 1))
            i += 1

        return result

    @staticmethod
    def _scan_members(lines: List[str], begin: int, end: int, info: ClassInfo) -> None:
        depth = 0
        j = begin
        while j < end:
            line = lines[j]
            stripped = line.strip()
            # Only direct members of this class.
            if depth == 0 and stripped and not stripped.startswith(("//", "*", "/*", "@")):
                ctor = CONSTRUCTOR_RE.match(line)
                method = METHOD_RE.match(line)
                if ctor and ctor.group(1) == info.name:
                    m_end = find_closing_brace(lines, j, fallback_span=100)
                    m_start = _annotation_start(lines, j)
                    info.methods.append(FunctionInfo(
                        name=CONSTRUCTOR_NAME,
                        params=f"({ctor.group(2)})",
                        body="\n".join(lines[m_start:m_end + 1]),
                        start_line=m_start + 1,
                        end_line=m_end + 1,
                        is_exported=stripped.startswith("public"),
                    ))
                    j = m_end + 1
                    continue
                if method and method.group(2) not in CONTROL_KEYWORDS and method.group(1).strip() not in CONTROL_KEYWORDS:
                    m_end = find_closing_brace(lines, j, fallback_span=100)
                    m_start = _annotation_start(lines, j)
                    info.methods.append(FunctionInfo(
                        name=method.group(2),
                        params=f"({method.group(3)})",
                        return_type=method.group(1).strip(),
                        body="\n".join(lines[m_start:m_end + 1]),
                        start_line=m_start + 1,
                        end_line=m_end + 1,
                        is_exported=stripped.startswith("public"),
                    ))
                    j = m_end + 1
                    continue
                field_match = FIELD_RE.match(line)
                if field_match and "(" not in stripped and field_match.group(1).strip() not in ("return", "package"):
                    info.properties.append(PropertyInfo(
                        name=field_match.group(2),
                        type=field_match.group(1).strip(),
                    ))
            depth += line.count("{") - line.count("}")
            depth = max(depth, 0)
            j += 1
