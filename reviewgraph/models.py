"""Core data models used by parsing, graph building, indexing and tracing."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ===================================================================
# Parser facts
# ===================================================================

@dataclass
class FunctionInfo:
    name: str
    params: str = "()"
    return_type: str = ""
    body: str = ""
    start_line: int = 1
    end_line: int = 1
    is_exported: bool = False
    is_async: bool = False


@dataclass
class PropertyInfo:
    name: str
    type: Optional[str] = None


@dataclass
class ClassInfo:
    name: str
    methods: List[FunctionInfo] = field(default_factory=list)
    properties: List[PropertyInfo] = field(default_factory=list)
    start_line: int = 1
    end_line: int = 1
    is_exported: bool = False
    extends: Optional[str] = None
    implements: List[str] = field(default_factory=list)


@dataclass
class ImportSpecifier:
    name: str
    alias: Optional[str] = None
    is_default: bool = False


@dataclass
class ImportInfo:
    source: str
    specifiers: List[ImportSpecifier] = field(default_factory=list)
    line: int = 1


@dataclass
class ExportInfo:
    name: str
    is_default: bool = False
    line: int = 1


@dataclass
class ParsedFile:
    file_path: str
    language: str
    functions: List[FunctionInfo] = field(default_factory=list)
    classes: List[ClassInfo] = field(default_factory=list)
    imports: List[ImportInfo] = field(default_factory=list)
    exports: List[ExportInfo] = field(default_factory=list)

    @classmethod
    def empty(cls, file_path: str, language: str) -> "ParsedFile":
        return cls(file_path=file_path, language=language)


# ===================================================================
# Embedding unit
# ===================================================================

@dataclass
class CodeSnippet:
    name: str
    code: str
    file: str
    start_line: int
    end_line: int


@dataclass
class SearchResult:
    name: str
    file: str
    start_line: int
    end_line: int
    score: float
    code_preview: str = ""


# ===================================================================
# Index jobs
# ===================================================================

class IndexPhase(str, Enum):
    QUEUED = "queued"
    CLONING = "cloning"
    DETECTING_FRAMEWORK = "detecting-framework"
    PARSING = "parsing"
    BUILDING_GRAPH = "building-graph"
    GENERATING_EMBEDDINGS = "generating-embeddings"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (IndexPhase.COMPLETE, IndexPhase.FAILED)


@dataclass
class IndexJob:
    id: str
    repo_url: str
    branch: str = "main"
    framework: Optional[str] = None
    incremental: bool = False
    changed_files: List[str] = field(default_factory=list)
    include_embeddings: bool = True
    # Never persisted.
    token: Optional[str] = field(default=None, repr=False)
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.pop("token", None)
        return payload


@dataclass
class IndexStatus:
    id: str
    phase: IndexPhase = IndexPhase.QUEUED
    percentage: int = 0
    repo_id: Optional[str] = None
    repo_url: Optional[str] = None
    branch: Optional[str] = None
    framework: Optional[str] = None
    files_processed: int = 0
    total_files: int = 0
    functions_indexed: int = 0
    error: Optional[str] = None
    cancelled: bool = False
    started_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["phase"] = self.phase.value
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "IndexStatus":
        data = dict(payload)
        data["phase"] = IndexPhase(data.get("phase", IndexPhase.QUEUED.value))
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


# ===================================================================
# Data-flow evidence
# ===================================================================

class DataSourceType(str, Enum):
    USER_INPUT = "USER_INPUT"
    SERVER_GENERATED = "SERVER_GENERATED"
    DATABASE = "DATABASE"
    CONFIG = "CONFIG"
    EXTERNAL_API = "EXTERNAL_API"
    SESSION = "SESSION"
    FILE_SYSTEM = "FILE_SYSTEM"
    UNKNOWN = "UNKNOWN"


@dataclass
class DataFlowStep:
    file: str
    line: int
    code: str
    description: str


@dataclass
class DataFlowSink:
    file: str
    line: int
    code: str
    sink_type: str
    is_dangerous: bool


@dataclass
class DataFlowTrace:
    variable: str
    source_type: DataSourceType
    source_path: List[DataFlowStep] = field(default_factory=list)
    sinks: List[DataFlowSink] = field(default_factory=list)
    validation_found: bool = False
    sanitization_found: bool = False
    confidence: float = 0.5
    language: str = "unknown"
    framework: Optional[str] = None

    @property
    def is_user_controlled(self) -> bool:
        return self.source_type in (DataSourceType.USER_INPUT, DataSourceType.FILE_SYSTEM)

    @property
    def is_dangerous(self) -> bool:
        return (
            self.is_user_controlled
            and not self.sanitization_found
            and any(s.is_dangerous for s in self.sinks)
        )


@dataclass
class ChainStep:
    function: str
    file: str
    line: int


@dataclass
class EntryPoint:
    function: str
    file: str
    source_type: DataSourceType


@dataclass
class CallChain:
    path: List[ChainStep]
    entry_point: EntryPoint
    has_validation: bool = False
    validation_location: Optional[str] = None


class Recommendation(str, Enum):
    VERIFY = "VERIFY"
    DISPROVE = "DISPROVE"
    NEEDS_MANUAL_REVIEW = "NEEDS_MANUAL_REVIEW"


@dataclass
class CrossFileVerdict:
    sink_function: str
    call_chains: List[CallChain]
    recommendation: Recommendation
    confidence: float
    all_paths_exploitable: bool
    reasoning: str
    summary: Dict[str, int] = field(default_factory=dict)
