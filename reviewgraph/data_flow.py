"""Single-file data-flow tracing.

Given a variable used at some line, scan backwards for where it is
assigned or bound, classify the assigned expression (user input,
database, config, ...), scan the file for dangerous sinks that mention
the variable, and look for validation or sanitization in between.

Everything here is a lexical heuristic over per-language regex
families; there is no parsing or real dataflow analysis.

FreeMarker templates are traced through their BeanShell actions
(``context.put("x", ...)``) and ``<#list xs as x>`` aliases.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from .models import DataFlowSink, DataFlowStep, DataFlowTrace, DataSourceType

logger = logging.getLogger(__name__)

LANGUAGES = (
    "typescript", "javascript", "react", "java", "spring-boot",
    "flutter", "dart", "freemarker", "beanshell", "python", "unknown",
)

SINK_TYPES = (
    "sql_query", "command_exec", "html_output", "url_redirect", "file_path",
    "deserialization", "eval", "ldap_query", "xpath_query", "template",
)

EXTENSION_LANGUAGES: Dict[str, str] = {
    "ts": "typescript",
    "tsx": "react",
    "js": "javascript",
    "jsx": "react",
    "java": "java",
    "dart": "dart",
    "ftl": "freemarker",
    "bsh": "beanshell",
    "py": "python",
}

SCRIPT_LANGUAGES = ("typescript", "javascript", "react")
JAVA_LANGUAGES = ("java", "spring-boot")
FRAMEWORK_LANGUAGES = ("react", "spring-boot", "flutter")


def _compile(table: Dict[str, Sequence[str]]) -> Dict[str, List[Pattern[str]]]:
    return {lang: [re.compile(p, re.IGNORECASE) for p in patterns] for lang, patterns in table.items()}


# ===================================================================
# Pattern families
# ===================================================================

USER_INPUT_PATTERNS = _compile({
    "typescript": [r"req\.body", r"req\.query", r"req\.params", r"request\.body",
                   r"useSearchParams", r"getServerSideProps.*params"],
    "javascript": [r"req\.body", r"req\.query", r"request\.body", r"document\.location",
                   r"window\.location", r"URLSearchParams", r"localStorage\.getItem",
                   r"sessionStorage\.getItem"],
    "react": [r"useState.*props\.", r"useParams", r"useSearchParams", r"event\.target\.value",
              r"e\.target\.value", r"formData\.get"],
    "java": [r"request\.getParameter", r"request\.getAttribute", r"@RequestParam", r"@PathVariable",
             r"@RequestBody", r"HttpServletRequest", r"getQueryString"],
    "spring-boot": [r"@RequestParam", r"@PathVariable", r"@RequestBody", r"@RequestHeader",
                    r"@CookieValue", r"BindingResult"],
    "flutter": [r"TextEditingController", r"TextField.*controller", r"TextFormField", r"Uri\.parse.*query"],
    "dart": [r"stdin\.readLine", r"Uri\.parse.*query"],
    "freemarker": [r"\$\{parameters\.", r"\$\{request\.", r"\$\{RequestParameters\."],
    "beanshell": [r"parameters\.get", r"request\.getParameter", r"requestParameters"],
    "python": [r"request\.args", r"request\.form", r"request\.json", r"request\.data", r"request\.values"],
})

DATABASE_PATTERNS = _compile({
    "typescript": [r"prisma\.\w+\.find", r"\.query\s*\(", r"sequelize", r"typeorm", r"mongoose\.find"],
    "javascript": [r"\.query\s*\(", r"\.find\s*\(", r"\.findOne\s*\(", r"mongodb"],
    "java": [r"delegator\.find", r"EntityQuery", r"JpaRepository", r"CrudRepository", r"\.createQuery",
             r"\.createNativeQuery", r"jdbcTemplate"],
    "spring-boot": [r"JpaRepository", r"CrudRepository", r"@Query", r"EntityManager", r"JdbcTemplate"],
    "flutter": [r"sqflite", r"\.query\s*\(", r"\.rawQuery"],
    "dart": [r"\.query\s*\("],
    "beanshell": [r"delegator\.find", r"EntityQuery", r"runService"],
    "python": [r"cursor\.execute", r"\.query\s*\(", r"session\.query", r"Model\.objects"],
})

# Uploads and file reads, checked for every language.
FILE_SYSTEM_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"readFileSync", r"fs\.readFile", r"FileInputStream", r"MultipartFile",
              r"getPart\s*\(", r"uploadedFile", r"File\(.*\)\.readAs")
]

SINK_PATTERNS: Dict[str, Dict[str, List[Pattern[str]]]] = {
    "sql_query": _compile({
        "typescript": [r"\.query\s*\(`", r"\.raw\s*\("],
        "javascript": [r"\.query\s*\(", r"mysql\.query"],
        "java": [r"createQuery.*\+", r"executeQuery.*\+", r"prepareStatement.*\+"],
        "spring-boot": [r"nativeQuery.*\+", r"jdbcTemplate.*\+"],
        "flutter": [r"rawQuery.*\$"],
        "python": [r"cursor\.execute.*%", r"execute.*format"],
    }),
    "command_exec": _compile({
        "typescript": [r"exec\s*\(", r"spawn\s*\(", r"execSync"],
        "javascript": [r"exec\s*\(", r"spawn\s*\(", r"child_process"],
        "java": [r"Runtime\.exec", r"ProcessBuilder"],
        "spring-boot": [r"Runtime\.exec", r"ProcessBuilder"],
        "flutter": [r"Process\.run"],
        "dart": [r"Process\.run"],
        "beanshell": [r"Runtime\.exec"],
        "python": [r"os\.system", r"subprocess", r"Popen"],
    }),
    "html_output": _compile({
        "typescript": [r"innerHTML", r"dangerouslySetInnerHTML"],
        "javascript": [r"innerHTML", r"document\.write", r"outerHTML"],
        "react": [r"dangerouslySetInnerHTML"],
        "java": [r"\.write\s*\(", r"PrintWriter"],
        "spring-boot": [r"ResponseEntity\.ok"],
        "flutter": [r"Html\.unescape"],
        "freemarker": [r"\$\{[^?]*\}"],
        "python": [r"render_template_string", r"Markup\("],
    }),
    "url_redirect": _compile({
        "typescript": [r"res\.redirect", r"window\.location"],
        "javascript": [r"location\.href", r"window\.location", r"location\.replace"],
        "react": [r"navigate\s*\(", r"useNavigate"],
        "java": [r"sendRedirect", r"setHeader.*Location"],
        "spring-boot": [r"redirect:", r"RedirectView"],
        "flutter": [r"Navigator\.push"],
        "python": [r"redirect\s*\(", r"url_for"],
    }),
    "file_path": _compile({
        "typescript": [r"readFile\s*\(", r"writeFile\s*\(", r"path\.join.*\+"],
        "javascript": [r"readFile\s*\(", r"writeFile\s*\("],
        "java": [r"new File\s*\(", r"FileInputStream", r"FileOutputStream"],
        "spring-boot": [r"Resource", r"FileCopyUtils"],
        "flutter": [r"File\s*\("],
        "dart": [r"File\s*\("],
        "beanshell": [r"new File"],
        "python": [r"open\s*\(", r"os\.path"],
    }),
    "deserialization": _compile({
        "typescript": [r"JSON\.parse"],
        "javascript": [r"JSON\.parse", r"eval\s*\("],
        "java": [r"ObjectInputStream", r"readObject\s*\(", r"XMLDecoder"],
        "spring-boot": [r"ObjectInputStream"],
        "flutter": [r"jsonDecode"],
        "dart": [r"jsonDecode"],
        "python": [r"pickle\.loads", r"yaml\.load(?!.*safe)"],
    }),
    "eval": _compile({
        "typescript": [r"eval\s*\(", r"Function\s*\("],
        "javascript": [r"eval\s*\(", r"Function\s*\(", r"setTimeout.*string"],
        "java": [r"ScriptEngine", r"Nashorn"],
        "beanshell": [r"eval\s*\("],
        "python": [r"eval\s*\(", r"exec\s*\("],
    }),
    "ldap_query": _compile({
        "javascript": [r"ldap\.search"],
        "java": [r"DirContext", r"search\s*\("],
        "spring-boot": [r"LdapTemplate"],
        "python": [r"ldap\.search"],
    }),
    "xpath_query": _compile({
        "javascript": [r"evaluate\s*\("],
        "java": [r"XPath", r"evaluate\s*\("],
        "python": [r"xpath"],
    }),
    "template": _compile({
        "java": [r"Velocity", r"Freemarker"],
        "spring-boot": [r"Thymeleaf"],
        "freemarker": [r"\$\{"],
        "python": [r"render_template", r"jinja"],
    }),
}

# Between a source and a sink.
SANITIZATION_PATTERNS = _compile({
    "typescript": [r"escape|sanitize|encode|DOMPurify|xss", r"parameterized|prepared"],
    "javascript": [r"escape|sanitize|encode|DOMPurify|xss", r"textContent"],
    "react": [r"DOMPurify|sanitize"],
    "java": [r"PreparedStatement|setParameter|StringEscapeUtils|HtmlUtils\.htmlEscape"],
    "spring-boot": [r"PreparedStatement|@Valid|Validated|HtmlUtils"],
    "flutter": [r"HtmlEscape|sanitize"],
    "dart": [r"HtmlEscape"],
    "freemarker": [r"\?html|\?url|\?js_string"],
    "beanshell": [r"UtilCodec|encode"],
    "python": [r"escape|bleach|sanitize|parameterized"],
})

VALIDATION_PATTERNS = _compile({
    "typescript": [r"if\s*\([^)]*match|if\s*\([^)]*test|validate|isValid"],
    "javascript": [r"if\s*\([^)]*match|if\s*\([^)]*test|validate"],
    "react": [r"validate|isValid|yup|zod"],
    "java": [r"if\s*\([^)]*!=\s*null|Pattern\.matches|@NotNull|@Valid"],
    "spring-boot": [r"@Valid|@NotNull|@NotBlank|BindingResult"],
    "flutter": [r"validate|validator"],
    "dart": [r"validate"],
    "freemarker": [r"\?has_content|\?\?"],
    "beanshell": [r"if\s*\([^)]*!=\s*null"],
    "python": [r"if\s+\w+|validate|pydantic"],
})

# Line-level checks used by check_sanitization(), language independent.
LINE_VALIDATION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"""if\s*\([^)]*\b\w+\b\s*[!=]==?\s*(null|undefined|""|''|0)\)""",
        r"if\s*\([^)]*\.match\s*\(|\.test\s*\(",
        r"validate|isValid|@Valid|@NotNull|@NotBlank",
        r"try\s*\{|catch\s*\(",
        r"typeof\s+\w+\s*[!=]==?",
    )
]

LINE_SANITIZATION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"escape|sanitize|encode|purify|clean",
        r"DOMPurify|xss",
        r"PreparedStatement|setParameter",
        r"HtmlUtils|StringEscapeUtils",
        r"\?html|\?url|\?js_string",
        r"encodeURIComponent|encodeURI",
        r"textContent",
    )
]


# ===================================================================
# Helpers
# ===================================================================

def detect_language_framework(file_path: str, content: Optional[str] = None) -> str:
    """Language from the extension, refined by content for Spring, Flutter and React."""
    ext = file_path.lower().rsplit(".", 1)[-1] if "." in file_path else ""
    detected = EXTENSION_LANGUAGES.get(ext, "unknown")
    if content:
        if detected == "java" and re.search(r"@SpringBootApplication|@RestController|@Service|@Repository", content):
            detected = "spring-boot"
        elif detected == "dart" and re.search(r"import.*package:flutter", content):
            detected = "flutter"
        elif detected == "javascript" and re.search(r"""import.*React|from ['"]react['"]""", content):
            detected = "react"
    return detected


def classify_data_source(expression: str, language: str) -> DataSourceType:
    if any(p.search(expression) for p in USER_INPUT_PATTERNS.get(language, [])):
        return DataSourceType.USER_INPUT
    if any(p.search(expression) for p in DATABASE_PATTERNS.get(language, [])):
        return DataSourceType.DATABASE
    if any(p.search(expression) for p in FILE_SYSTEM_PATTERNS):
        return DataSourceType.FILE_SYSTEM

    if language in ("freemarker", "beanshell"):
        if re.search(r"context\.put|request\.setAttribute", expression, re.IGNORECASE):
            return DataSourceType.SERVER_GENERATED
        if re.search(r"UtilProperties|\.properties", expression, re.IGNORECASE):
            return DataSourceType.CONFIG
        if re.search(r"session\.|getSession", expression, re.IGNORECASE):
            return DataSourceType.SESSION

    if language in JAVA_LANGUAGES:
        if re.search(r"@Value|Environment\.getProperty", expression, re.IGNORECASE):
            return DataSourceType.CONFIG
        if re.search(r"HttpSession|session\.", expression, re.IGNORECASE):
            return DataSourceType.SESSION
        if re.search(r"RestTemplate|WebClient|HttpClient", expression, re.IGNORECASE):
            return DataSourceType.EXTERNAL_API

    if language in SCRIPT_LANGUAGES:
        if re.search(r"process\.env|config\.", expression, re.IGNORECASE):
            return DataSourceType.CONFIG
        if re.search(r"fetch\s*\(|axios|http\.get", expression, re.IGNORECASE):
            return DataSourceType.EXTERNAL_API
        if re.search(r"sessionStorage|session\.", expression, re.IGNORECASE):
            return DataSourceType.SESSION

    return DataSourceType.UNKNOWN


def _resolve(file_path: str, repo_path: str) -> Path:
    if repo_path and not file_path.startswith(repo_path):
        return Path(repo_path) / file_path.lstrip("/")
    return Path(file_path)


def _relative(path: Path, repo_path: str) -> str:
    if repo_path:
        try:
            return path.resolve().relative_to(Path(repo_path).resolve()).as_posix()
        except ValueError:
            pass
    return path.as_posix()


def _read(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def find_related_files(file_path: str, repo_path: str) -> List[Path]:
    """BeanShell actions for a template; the matching Service for a Controller."""
    related: List[Path] = []
    full = _resolve(file_path, repo_path)
    directory = full.parent
    base = full.stem

    if full.suffix == ".ftl":
        actions_dir = directory.parent / "WEB-INF" / "actions"
        for candidate in (
            actions_dir / f"{base}.bsh",
            directory / "WEB-INF" / "actions" / f"{base}.bsh",
            directory / f"{base}.bsh",
        ):
            if candidate.exists() and candidate not in related:
                related.append(candidate)
        if actions_dir.is_dir():
            for candidate in sorted(actions_dir.glob("*.bsh")):
                if candidate not in related:
                    related.append(candidate)

    if full.name.endswith("Controller.java"):
        service = base.replace("Controller", "Service") + ".java"
        for search_dir in (directory, directory.parent / "service", directory.parent / "services"):
            candidate = search_dir / service
            if candidate.exists():
                related.append(candidate)
    return related


# ===================================================================
# Source tracing
# ===================================================================

TraceResult = Tuple[DataSourceType, List[DataFlowStep]]


def _trace_freemarker(variable: str, template_path: str, repo_path: str, seen: Optional[set] = None) -> TraceResult:
    seen = seen if seen is not None else set()
    root_var = re.sub(r"[?!].*$", "", variable.split(".")[0])
    if root_var in seen:
        return DataSourceType.UNKNOWN, []
    seen.add(root_var)
    escaped = re.escape(root_var)
    put_re = re.compile(rf"""context\.put\s*\(\s*["']{escaped}["']\s*,\s*([^)]+)\)""", re.IGNORECASE)
    assign_re = re.compile(rf"^\s*{escaped}\s*=\s*(.+?);?$")

    for bsh in find_related_files(template_path, repo_path):
        content = _read(bsh)
        if not content:
            continue
        lines = content.split("\n")
        rel = _relative(bsh, repo_path)
        for i, line in enumerate(lines):
            match = put_re.search(line)
            if match:
                value = match.group(1).strip()
                step = DataFlowStep(rel, i + 1, f'context.put("{root_var}", {value})', "source")
                return classify_data_source(value, "beanshell"), [step]
        for i, line in enumerate(lines):
            match = assign_re.match(line)
            if match:
                value = match.group(1).strip()
                step = DataFlowStep(rel, i + 1, f"{root_var} = {value}", "source")
                return classify_data_source(value, "beanshell"), [step]

    template = _read(_resolve(template_path, repo_path))
    if template:
        list_match = re.search(rf"<#list\s+(\w+)\s+as\s+{escaped}>", template)
        if list_match:
            return _trace_freemarker(list_match.group(1), template_path, repo_path, seen)
    return DataSourceType.UNKNOWN, []


def _trace_script(variable: str, file_path: str, line: int, repo_path: str) -> TraceResult:
    path = _resolve(file_path, repo_path)
    content = _read(path)
    if not content:
        return DataSourceType.UNKNOWN, []
    lines = content.split("\n")
    language = detect_language_framework(file_path, content)
    rel = _relative(path, repo_path)
    var = re.escape(variable)
    assign_patterns = [
        re.compile(rf"(?:const|let|var)\s+{var}\s*=\s*(.+)"),
        re.compile(rf"{var}\s*=\s*(.+)"),
        re.compile(rf"\{{[^}}]*{var}[^}}]*\}}\s*=\s*(.+)"),
    ]
    func_param = re.compile(rf"function\s*\w*\s*\([^)]*\b{var}\b")
    arrow_param = re.compile(rf"\(([^)]*\b{var}\b[^)]*)\)\s*=>")

    for i in range(min(line - 1, len(lines) - 1), -1, -1):
        current = lines[i]
        for pattern in assign_patterns:
            match = pattern.search(current)
            if match:
                value = match.group(1).strip().rstrip(";")
                step = DataFlowStep(rel, i + 1, current.strip(), "source")
                return classify_data_source(value, language), [step]
        if func_param.search(current) or arrow_param.search(current):
            return DataSourceType.UNKNOWN, [DataFlowStep(rel, i + 1, f"Parameter: {variable}", "propagate")]
    return DataSourceType.UNKNOWN, []


def _trace_java(variable: str, file_path: str, line: int, repo_path: str) -> TraceResult:
    path = _resolve(file_path, repo_path)
    content = _read(path)
    if not content:
        return DataSourceType.UNKNOWN, []
    lines = content.split("\n")
    language = detect_language_framework(file_path, content)
    rel = _relative(path, repo_path)
    var = re.escape(variable)
    assign_patterns = [
        re.compile(rf"\b{var}\s*=\s*(.+);"),
        re.compile(rf"\w+\s+{var}\s*=\s*(.+);"),
    ]
    param = re.compile(rf"\b\w+\s+{var}\b[,)]")

    for i in range(min(line - 1, len(lines) - 1), -1, -1):
        current = lines[i]
        for pattern in assign_patterns:
            match = pattern.search(current)
            if match:
                step = DataFlowStep(rel, i + 1, current.strip(), "source")
                return classify_data_source(match.group(1).strip(), language), [step]
        if param.search(current) and "(" in current:
            window = "\n".join(lines[max(0, i - 5): i + 1])
            if re.search(r"@RequestParam|@PathVariable|@RequestBody|@RequestHeader", window):
                step = DataFlowStep(rel, i + 1, f"Spring-annotated parameter: {variable}", "source")
                return DataSourceType.USER_INPUT, [step]
            return DataSourceType.UNKNOWN, [DataFlowStep(rel, i + 1, f"Method parameter: {variable}", "propagate")]
    return DataSourceType.UNKNOWN, []


# ===================================================================
# Sinks and sanitization
# ===================================================================

def find_sinks(file_path: str, variable: str, repo_path: str = "") -> List[DataFlowSink]:
    """Lines mentioning *variable* that match a sink pattern for the file's language."""
    path = _resolve(file_path, repo_path)
    content = _read(path)
    if not content:
        return []
    language = detect_language_framework(file_path, content)
    rel = _relative(path, repo_path)
    sinks: List[DataFlowSink] = []
    for i, line in enumerate(content.split("\n")):
        if variable not in line:
            continue
        for sink_type in SINK_TYPES:
            for pattern in SINK_PATTERNS[sink_type].get(language, []):
                if pattern.search(line):
                    sinks.append(DataFlowSink(rel, i + 1, line.strip(), sink_type, True))
    return sinks


def _sanitized_between(
    source: DataFlowStep, sink: DataFlowSink, repo_path: str,
) -> Tuple[bool, bool]:
    """(validation_found, sanitization_found) for the code leading up to *sink*."""
    path = _resolve(sink.file, repo_path)
    content = _read(path)
    if not content:
        return False, False
    lines = content.split("\n")
    language = detect_language_framework(sink.file, content)
    start = source.line if source.file == sink.file else 0
    code = "\n".join(lines[start:sink.line])
    sanitized = any(p.search(code) for p in SANITIZATION_PATTERNS.get(language, []))
    validated = any(p.search(code) for p in VALIDATION_PATTERNS.get(language, []))
    return validated, sanitized


def check_sanitization(
    file_path: str,
    variable: str,
    start_line: int = 1,
    end_line: Optional[int] = None,
    repo_path: str = "",
) -> Dict[str, object]:
    """Validation and sanitization patterns on lines that mention *variable*.

    Returns ``{"validation_found", "sanitization_found", "patterns"}`` where
    each pattern is ``{"type", "line", "code"}``.
    """
    content = _read(_resolve(file_path, repo_path))
    if not content:
        return {"validation_found": False, "sanitization_found": False, "patterns": []}
    lines = content.split("\n")
    relevant = lines[start_line - 1: end_line if end_line is not None else len(lines)]
    found: List[Dict[str, object]] = []
    for offset, line in enumerate(relevant):
        if variable not in line:
            continue
        if any(p.search(line) for p in LINE_VALIDATION_PATTERNS):
            found.append({"type": "validation", "line": start_line + offset, "code": line.strip()})
        if any(p.search(line) for p in LINE_SANITIZATION_PATTERNS):
            found.append({"type": "sanitization", "line": start_line + offset, "code": line.strip()})
    return {
        "validation_found": any(p["type"] == "validation" for p in found),
        "sanitization_found": any(p["type"] == "sanitization" for p in found),
        "patterns": found,
    }


# ===================================================================
# Entry point
# ===================================================================

def trace_data_flow(
    file_path: str,
    variable: str,
    line: Optional[int] = None,
    repo_path: str = "",
) -> DataFlowTrace:
    """Trace *variable* at *line* of *file_path* to its source and sinks."""
    logger.debug("Tracing data flow for %s in %s:%s", variable, file_path, line)
    content = _read(_resolve(file_path, repo_path))
    language = detect_language_framework(file_path, content)
    use_line = line or 1

    if language == "freemarker":
        source_type, source_path = _trace_freemarker(variable, file_path, repo_path)
    elif language in JAVA_LANGUAGES:
        source_type, source_path = _trace_java(variable, file_path, use_line, repo_path)
    else:
        source_type, source_path = _trace_script(variable, file_path, use_line, repo_path)

    sinks = find_sinks(file_path, variable, repo_path)

    validation_found = False
    sanitization_found = False
    if source_path and sinks:
        for sink in sinks:
            validated, sanitized = _sanitized_between(source_path[0], sink, repo_path)
            validation_found = validation_found or validated
            sanitization_found = sanitization_found or sanitized
            if sanitization_found:
                sink.is_dangerous = False

    confidence = 0.5
    if source_path:
        confidence += 0.3
    if source_type is not DataSourceType.UNKNOWN:
        confidence += 0.2

    trace = DataFlowTrace(
        variable=variable,
        source_type=source_type,
        source_path=source_path,
        sinks=sinks,
        validation_found=validation_found,
        sanitization_found=sanitization_found,
        confidence=round(confidence, 2),
        language=language,
        framework=language if language in FRAMEWORK_LANGUAGES else None,
    )
    logger.debug(
        "Data flow trace for %s: source=%s sinks=%d dangerous=%s",
        variable, source_type.value, len(sinks), trace.is_dangerous,
    )
    return trace
