"""FreeMarker template parser (regex only)."""

from __future__ import annotations

import os
import re

from .models import FunctionInfo, ImportInfo, ParsedFile
from .parser import Parser

MACRO_RE = re.compile(r"<#macro\s+([A-Za-z0-9_]+)([^>]*)>")
MACRO_END = "</#macro>"
INCLUDE_RE = re.compile(r"""<#(?:include|import)\s+["']([^"']+)["']""")


class FtlParser(Parser):
    """Each ``<#macro>`` block becomes a ``macro:<name>`` function.

    A template without macros is represented by a single function named
    after the file, spanning the whole template.
    """

    language = "ftl"
    file_extensions = (".ftl",)

    def parse(self, code: str, file_path: str) -> ParsedFile:
        lines = code.split("\n")
        result = ParsedFile(file_path=file_path, language=self.language)

        for i, line in enumerate(lines):
            for match in INCLUDE_RE.finditer(line):
                result.imports.append(ImportInfo(source=match.group(1), line=i + 1))

        i = 0
        while i < len(lines):
            match = MACRO_RE.search(lines[i])
            if not match:
                i += 1
                continue
            end = i
            while end < len(lines) and MACRO_END not in lines[end]:
                end += 1
            end = min(end, len(lines) - 1)
            result.functions.append(FunctionInfo(
                name=f"macro:{match.group(1)}",
                params=match.group(2).strip() or "()",
                return_type="template",
                body="\n".join(lines[i:end + 1]),
                start_line=i + 1,
                end_line=end + 1,
                is_exported=True,
            ))
            i = end + 1

        if not result.functions:
            result.functions.append(FunctionInfo(
                name=os.path.basename(file_path),
                return_type="template",
                body=code,
                start_line=1,
                end_line=max(len(lines), 1),
                is_exported=True,
            ))
        return result
