"""TypeScript / TSX / JavaScript parser."""

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

# ---------------------------------------------------------------------------
# Regex fallback patterns
# ---------------------------------------------------------------------------
IMPORT_RE = re.compile(
    r"""^import\s+(?:(?:type\s+)?(?:(\w+)(?:\s*,\s*)?)?(?:\{([^}]*)\})?\s+from\s+)?['"]([^'"]+)['"]"""
)
IMPORT_STAR_RE = re.compile(r"""^import\s+\*\s+as\s+(\w+)\s+from\s+['"]([^'"]+)['"]""")
EXPORT_NAMED_RE = re.compile(
    r"^export\s+(?:const|let|var|function|class|type|interface|enum|async\s+function)\s+(\w+)"
)
EXPORT_DEFAULT_RE = re.compile(r"^export\s+default\s+")
EXPORT_CLAUSE_RE = re.compile(r"^export\s+(?:type\s+)?\{([^}]*)\}")
FUNC_DECL_RE = re.compile(
    r"^(export\s+)?(?:default\s+)?(async\s+)?function\s*\*?\s*(\w+)\s*(\([^)]*\))\s*(?::\s*([^\s{]+))?\s*\{"
)
ARROW_RE = re.compile(
    r"^(export\s+)?(?:const|let|var)\s+(\w+)\s*(?::\s*\S+\s*)?=\s*(async\s+)?(?:\(([^)]*)\)|[^=]*)"
    r"(?::\s*([^\s=]+))?\s*=>\s*[{(]"
)
ARROW_SIMPLE_RE = re.compile(
    r"^(export\s+)?(?:const|let|var)\s+(\w+)\s*=\s*(async\s+)?\(([^)]*)\)\s*(?::\s*([^\s=]+))?\s*=>"
)
CLASS_RE = re.compile(
    r"^(export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(\w+)(?:\s+extends\s+([\w.]+))?"
    r"(?:\s+implements\s+([\w,\s]+))?\s*\{"
)
METHOD_RE = re.compile(
    r"^\s*(?:(?:public|private|protected|static|async|readonly|override|abstract)\s+)*"
    r"(\w+)\s*(\([^)]*\))\s*(?::\s*([^\s{]+))?\s*\{"
)
PROP_RE = re.compile(
    r"^\s*(?:(?:public|private|protected|static|readonly|declare)\s+)*(\w+)\s*(?:\?\s*)?:\s*([^;=]+)"
)

CONTROL_KEYWORDS = {"if", "for", "while", "switch", "catch", "return", "function", "constructor"}


class TypeScriptParser(GrammarParser):
    """TS/JS family parser. ``.js``/``.jsx`` files go through the TypeScript grammar."""

    language = "typescript"
    file_extensions = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")

    @staticmethod
    def _language_for(file_path: str) -> str:
        return "tsx" if file_path.endswith(".tsx") else "typescript"

    def _grammar_for(self, file_path: str) -> Optional[Any]:
        if file_path.endswith((".tsx", ".jsx")):
            return load_grammar("tree_sitter_typescript", "language_tsx")
        return load_grammar("tree_sitter_typescript", "language_typescript")

    # ------------------------------------------------------------------
    # Tree-sitter extraction
    # ------------------------------------------------------------------

    def _parse_tree(self, root: Any, code: str, file_path: str) -> ParsedFile:
        result = ParsedFile(file_path=file_path, language=self._language_for(file_path))
        self._walk(root, result, exported=False)
        return result

    def _walk(self, node: Any, result: ParsedFile, exported: bool) -> None:
        kind = node.type
        if kind in ("function_declaration", "generator_function_declaration"):
            result.functions.append(self._function(node, node, exported))
            return
        if kind in ("lexical_declaration", "variable_declaration"):
            for declarator in node.named_children:
                if declarator.type != "variable_declarator":
                    continue
                value = declarator.child_by_field_name("value")
                if value is None or value.type not in ("arrow_function", "function_expression", "function"):
                    continue
                fn = self._function(value, node, exported)
                fn.name = node_text(declarator.child_by_field_name("name")) or ANONYMOUS
                result.functions.append(fn)
            return
        if kind in ("class_declaration", "abstract_class_declaration", "class"):
            result.classes.append(self._class(node, exported))
            return
        if kind == "import_statement":
            result.imports.append(self._import(node))
            return
        if kind == "export_statement":
            self._export(node, result)
            return
        for child in node.named_children:
            self._walk(child, result, exported=False)

    def _function(self, fn_node: Any, outer: Any, exported: bool) -> FunctionInfo:
        start, end = node_lines(outer)
        params = fn_node.child_by_field_name("parameters") or fn_node.child_by_field_name("parameter")
        return_type = fn_node.child_by_field_name("return_type")
        return FunctionInfo(
            name=node_text(fn_node.child_by_field_name("name")) or ANONYMOUS,
            params=node_text(params) or "()",
            return_type=re.sub(r"^:\s*", "", node_text(return_type)),
            body=node_text(outer),
            start_line=start,
            end_line=end,
            is_exported=exported,
            is_async=node_text(fn_node).lstrip().startswith("async"),
        )

    def _class(self, node: Any, exported: bool) -> ClassInfo:
        start, end = node_lines(node)
        info = ClassInfo(
            name=node_text(node.child_by_field_name("name")) or ANONYMOUS,
            start_line=start,
            end_line=end,
            is_exported=exported,
        )
        for child in node.children:
            if child.type != "class_heritage":
                continue
            for clause in child.named_children:
                if clause.type == "extends_clause":
                    value = clause.child_by_field_name("value")
                    target = value if value is not None else (clause.named_children or [None])[0]
                    info.extends = node_text(target) or None
                elif clause.type == "implements_clause":
                    info.implements.extend(node_text(c) for c in clause.named_children)

        body = node.child_by_field_name("body")
        if body is None:
            return info
        for member in body.named_children:
            if member.type in ("method_definition", "method_signature", "abstract_method_signature"):
                m_start, m_end = node_lines(member)
                return_type = member.child_by_field_name("return_type")
                info.methods.append(FunctionInfo(
                    name=node_text(member.child_by_field_name("name")) or ANONYMOUS,
                    params=node_text(member.child_by_field_name("parameters")) or "()",
                    return_type=re.sub(r"^:\s*", "", node_text(return_type)),
                    body=node_text(member),
                    start_line=m_start,
                    end_line=m_end,
                    is_async="async" in node_text(member)[:30].split(),
                ))
            elif member.type in ("public_field_definition", "property_declaration", "property_signature"):
                type_node = member.child_by_field_name("type")
                info.properties.append(PropertyInfo(
                    name=node_text(member.child_by_field_name("name")),
                    type=re.sub(r"^:\s*", "", node_text(type_node)) or None,
                ))
        return info

    @staticmethod
    def _import(node: Any) -> ImportInfo:
        source = node_text(node.child_by_field_name("source")).strip("'\"`")
        specifiers: List[ImportSpecifier] = []
        for child in node.named_children:
            if child.type != "import_clause":
                continue
            for inner in child.named_children:
                if inner.type == "identifier":
                    specifiers.append(ImportSpecifier(name=node_text(inner), is_default=True))
                elif inner.type == "named_imports":
                    for spec in inner.named_children:
                        if spec.type != "import_specifier":
                            continue
                        name = spec.child_by_field_name("name")
                        alias = spec.child_by_field_name("alias")
                        specifiers.append(ImportSpecifier(
                            name=node_text(name) or node_text(spec),
                            alias=node_text(alias) or None,
                        ))
                elif inner.type == "namespace_import":
                    alias = inner.named_children[0] if inner.named_children else None
                    specifiers.append(ImportSpecifier(name="*", alias=node_text(alias) or None))
        return ImportInfo(source=source, specifiers=specifiers, line=node.start_point[0] + 1)

    def _export(self, node: Any, result: ParsedFile) -> None:
        line = node.start_point[0] + 1
        is_default = any(c.type == "default" for c in node.children)
        declaration = node.child_by_field_name("declaration")
        if declaration is not None:
            self._walk(declaration, result, exported=True)
            name = node_text(declaration.child_by_field_name("name"))
            if not name and declaration.type in ("lexical_declaration", "variable_declaration"):
                for declarator in declaration.named_children:
                    if declarator.type == "variable_declarator":
                        name = node_text(declarator.child_by_field_name("name"))
                        break
            result.exports.append(ExportInfo(name=name or "default", is_default=is_default, line=line))
            return
        clause = next((c for c in node.children if c.type == "export_clause"), None)
        if clause is not None:
            for spec in clause.named_children:
                if spec.type == "export_specifier":
                    name = spec.child_by_field_name("name")
                    result.exports.append(ExportInfo(name=node_text(name) or node_text(spec), line=line))
            return
        # export default <expression> (possibly a function or class expression)
        for child in node.named_children:
            self._walk(child, result, exported=True)
        result.exports.append(ExportInfo(name="default", is_default=True, line=line))

    # ------------------------------------------------------------------
    # Regex fallback
    # ------------------------------------------------------------------

    def _parse_regex(self, code: str, file_path: str) -> ParsedFile:
        lines = code.split("\n")
        result = ParsedFile(file_path=file_path, language=self._language_for(file_path))

        for i, raw in enumerate(lines):
            line = raw.strip()
            star = IMPORT_STAR_RE.match(line)
            if star:
                result.imports.append(ImportInfo(
                    source=star.group(2),
                    specifiers=[ImportSpecifier(name="*", alias=star.group(1))],
                    line=i + 1,
                ))
                continue
            match = IMPORT_RE.match(line)
            if match:
                default_name, named_raw, source = match.groups()
                specifiers: List[ImportSpecifier] = []
                if default_name:
                    specifiers.append(ImportSpecifier(name=default_name, is_default=True))
                for part in split_names(named_raw):
                    pieces = re.split(r"\s+as\s+", part)
                    specifiers.append(ImportSpecifier(
                        name=re.sub(r"^type\s+", "", pieces[0]).strip(),
                        alias=pieces[1].strip() if len(pieces) > 1 else None,
                    ))
                result.imports.append(ImportInfo(source=source, specifiers=specifiers, line=i + 1))

        for i, raw in enumerate(lines):
            line = raw.strip()
            named = EXPORT_NAMED_RE.match(line)
            if named:
                result.exports.append(ExportInfo(name=named.group(1), line=i + 1))
                continue
            clause = EXPORT_CLAUSE_RE.match(line)
            if clause:
                for part in split_names(clause.group(1)):
                    pieces = re.split(r"\s+as\s+", part)
                    exported_name = pieces[-1].strip()
                    result.exports.append(ExportInfo(
                        name=exported_name,
                        is_default=exported_name == "default",
                        line=i + 1,
                    ))
                continue
            if EXPORT_DEFAULT_RE.match(line):
                rest = EXPORT_DEFAULT_RE.sub("", line).strip()
                name_match = re.match(r"^(?:abstract\s+)?(?:async\s+)?(?:class|function)\s+(\w+)", rest)
                result.exports.append(ExportInfo(
                    name=name_match.group(1) if name_match else "default",
                    is_default=True,
                    line=i + 1,
                ))

        for i, raw in enumerate(lines):
            line = raw.strip()
            func = FUNC_DECL_RE.match(line)
            if func:
                end = find_closing_brace(lines, i)
                result.functions.append(FunctionInfo(
                    name=func.group(3),
                    params=func.group(4),
                    return_type=func.group(5) or "",
                    body="\n".join(lines[i:end + 1]),
                    start_line=i + 1,
                    end_line=end + 1,
                    is_exported=bool(func.group(1)),
                    is_async=bool(func.group(2)),
                ))
                continue
            arrow = ARROW_RE.match(line) or ARROW_SIMPLE_RE.match(line)
            if arrow:
                end = i if "{" not in line and line.endswith(";") else find_closing_brace(lines, i)
                result.functions.append(FunctionInfo(
                    name=arrow.group(2),
                    params=f"({arrow.group(4)})" if arrow.group(4) is not None else "()",
                    return_type=arrow.group(5) or "",
                    body="\n".join(lines[i:end + 1]),
                    start_line=i + 1,
                    end_line=end + 1,
                    is_exported=bool(arrow.group(1)),
                    is_async=bool(arrow.group(3)),
                ))

        for i, raw in enumerate(lines):
            line = raw.strip()
            cls = CLASS_RE.match(line)
            if not cls:
                continue
            end = find_closing_brace(lines, i)
            info = ClassInfo(
                name=cls.group(2),
                start_line=i + 1,
                end_line=end + 1,
                is_exported=bool(cls.group(1)),
                extends=cls.group(3),
                implements=split_names(cls.group(4)),
            )
            j = i + 1
            while j < end:
                member = lines[j].strip()
                method = METHOD_RE.match(member)
                if method and method.group(1) not in CONTROL_KEYWORDS:
                    m_end = find_closing_brace(lines, j)
                    info.methods.append(FunctionInfo(
                        name=method.group(1),
                        params=method.group(2),
                        return_type=method.group(3) or "",
                        body="\n".join(lines[j:m_end + 1]),
                        start_line=j + 1,
                        end_line=m_end + 1,
                        is_async="async" in member.split(),
                    ))
                    j = m_end + 1
                    continue
                if method and method.group(1) == "constructor":
                    j = find_closing_brace(lines, j) + 1
                    continue
                prop = PROP_RE.match(member)
                if prop and "(" not in member:
                    info.properties.append(PropertyInfo(
                        name=prop.group(1),
                        type=prop.group(2).strip().rstrip(";") or None,
                    ))
                j += 1
            result.classes.append(info)

        return result
