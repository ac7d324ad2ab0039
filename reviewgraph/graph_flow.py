"""Cross-file taint reasoning over the code graph.

For a suspected sink function, collect every caller chain that reaches it
(bounded by ``max_hops``) plus its direct callers, classify the entry
point of each chain from its code, and look for validation anywhere along
the chain. The chain evidence is then reduced to a recommendation:

=================================== ==================== ==========
Condition                           Recommendation       Confidence
=================================== ==================== ==========
no chains                           NEEDS_MANUAL_REVIEW  0.3
no user-input chains                DISPROVE             0.85
user-input chains all validated     DISPROVE             0.9
no user-input chain validated       VERIFY               0.9
mixed                               VERIFY               0.7
=================================== ==================== ==========
"""

from __future__ import annotations

import logging
import re
import sqlite3
from typing import Any, Dict, List, Optional, Set

from .models import (
    CallChain,
    ChainStep,
    CrossFileVerdict,
    DataSourceType,
    EntryPoint,
    Recommendation,
)
from .storage import GraphStore

logger = logging.getLogger(__name__)

CHAIN_LIMIT = 50
DIRECT_CALLER_LIMIT = 20

USER_INPUT_PATTERNS = [re.compile(p) for p in (
    r"req\.body", r"req\.query", r"req\.params",
    r"request\.body", r"request\.query", r"request\.params",
    r"\.getParameter", r"\.getQueryParameter",
    r"formData", r"FormData", r"URLSearchParams",
    r"event\.target\.value", r"input\.value", r"document\.getElementById",
    r"\$\(.*\)\.val\(",
)] + [re.compile(r"userinput", re.IGNORECASE)]

DATABASE_PATTERNS = [re.compile(p) for p in (
    r"\.findOne", r"\.findMany", r"\.find\(", r"\.query\(", r"\.select\(",
    r"EntityQuery", r"prisma\.", r"knex\.", r"sequelize\.", r"mongoose\.",
    r"\.executeQuery", r"\.createQuery", r"Repository\.", r"getRepository",
)]

CONFIG_PATTERNS = [re.compile(p) for p in (
    r"process\.env", r"config\.", r"Config\.", r"\.getProperty",
    r"settings\.", r"Settings\.", r"Environment\.",
)]

SERVER_PATTERNS = [re.compile(p) for p in (
    r"context\.put", r"context\.set", r"res\.locals", r"response\.locals",
    r"session\.", r"\.setAttribute", r"\.setContext", r"templateContext",
)]

VALIDATION_PATTERNS = [
    re.compile(r"sanitize", re.IGNORECASE),
    re.compile(r"escape", re.IGNORECASE),
    re.compile(r"encode", re.IGNORECASE),
    re.compile(r"validate", re.IGNORECASE),
    re.compile(r"check", re.IGNORECASE),
    re.compile(r"verify", re.IGNORECASE),
    re.compile(r"parse(Int|Float|UUID)"),
    re.compile(r"DOMPurify"),
    re.compile(r"xss", re.IGNORECASE),
    re.compile(r"htmlspecialchars", re.IGNORECASE),
    re.compile(r"filter", re.IGNORECASE),
    re.compile(r"clean", re.IGNORECASE),
    re.compile(r"strip", re.IGNORECASE),
    re.compile(r"trim"),
    re.compile(r"\.test\("),
    re.compile(r"\.match\("),
    re.compile(r"""typeof\s+\w+\s*===?\s*["'](string|number|boolean)"""),
    re.compile(r"instanceof"),
    re.compile(r"isNaN"),
    re.compile(r"Number\.isFinite"),
    re.compile(r"Number\.isInteger"),
]


def classify_source_type(code: str) -> DataSourceType:
    if any(p.search(code) for p in USER_INPUT_PATTERNS):
        return DataSourceType.USER_INPUT
    if any(p.search(code) for p in DATABASE_PATTERNS):
        return DataSourceType.DATABASE
    if any(p.search(code) for p in CONFIG_PATTERNS):
        return DataSourceType.CONFIG
    if any(p.search(code) for p in SERVER_PATTERNS):
        return DataSourceType.SERVER_GENERATED
    return DataSourceType.UNKNOWN


def has_validation_pattern(code: str) -> bool:
    return any(p.search(code) for p in VALIDATION_PATTERNS)


def _empty_summary() -> Dict[str, int]:
    return {"total_chains": 0, "user_input_chains": 0, "validated_chains": 0, "exploitable_chains": 0}


def _collect_chains(
    store: GraphStore, repo_id: str, sink_function: str, sink_file: Optional[str], max_hops: int,
) -> List[List[Dict[str, Any]]]:
    chains = store.get_caller_chains(repo_id, sink_function, sink_file, max_hops=max_hops, limit=CHAIN_LIMIT)
    sink = store.get_function(repo_id, sink_function, sink_file)
    if sink is not None:
        for caller in store.get_callers(repo_id, sink_function, sink_file, limit=DIRECT_CALLER_LIMIT):
            chains.append([caller, sink])

    seen: Set[str] = set()
    unique: List[List[Dict[str, Any]]] = []
    for chain in chains:
        if not chain:
            continue
        key = "->".join(f"{node['file']}:{node['name']}" for node in chain)
        if key not in seen:
            seen.add(key)
            unique.append(chain)
    return unique


def _analyze_chain(chain: List[Dict[str, Any]]) -> CallChain:
    entry = chain[0]
    validation_location = None
    for node in chain:
        if has_validation_pattern(node.get("code") or ""):
            validation_location = f"{node['file']}:{node['start_line']} ({node['name']})"
            break
    return CallChain(
        path=[ChainStep(n["name"], n["file"], int(n.get("start_line") or 0)) for n in chain],
        entry_point=EntryPoint(entry["name"], entry["file"], classify_source_type(entry.get("code") or "")),
        has_validation=validation_location is not None,
        validation_location=validation_location,
    )


def trace_cross_file(
    store: GraphStore,
    repo_id: str,
    sink_function: str,
    sink_file: Optional[str] = None,
    max_hops: int = 3,
) -> CrossFileVerdict:
    """Decide whether user input can reach *sink_function* unvalidated."""
    logger.debug("Tracing cross-file flow to %s (%s) in %s", sink_function, sink_file, repo_id)
    try:
        chains = [_analyze_chain(c) for c in _collect_chains(store, repo_id, sink_function, sink_file, max_hops)]
    except sqlite3.Error as exc:
        logger.error("Failed to trace cross-file flow to %s in %s: %s", sink_function, repo_id, exc)
        return CrossFileVerdict(
            sink_function=sink_function,
            call_chains=[],
            recommendation=Recommendation.NEEDS_MANUAL_REVIEW,
            confidence=0.0,
            all_paths_exploitable=False,
            reasoning=f"Graph query failed: {exc}",
            summary=_empty_summary(),
        )

    user_input = [c for c in chains if c.entry_point.source_type is DataSourceType.USER_INPUT]
    validated = [c for c in chains if c.has_validation]
    exploitable = [c for c in user_input if not c.has_validation]

    if not chains:
        recommendation, confidence = Recommendation.NEEDS_MANUAL_REVIEW, 0.3
        reasoning = "No callers found; the sink may be dead code or an entry point itself."
    elif not user_input:
        recommendation, confidence = Recommendation.DISPROVE, 0.85
        reasoning = f"None of the {len(chains)} call chains start from user input."
    elif not exploitable:
        recommendation, confidence = Recommendation.DISPROVE, 0.9
        reasoning = f"All {len(user_input)} user-input chains pass through validation."
    elif len(exploitable) == len(user_input):
        recommendation, confidence = Recommendation.VERIFY, 0.9
        reasoning = f"All {len(user_input)} user-input chains reach the sink without validation."
    else:
        recommendation, confidence = Recommendation.VERIFY, 0.7
        reasoning = (
            f"{len(exploitable)} of {len(user_input)} user-input chains reach the sink without validation."
        )

    return CrossFileVerdict(
        sink_function=sink_function,
        call_chains=chains,
        recommendation=recommendation,
        confidence=confidence,
        all_paths_exploitable=bool(user_input) and len(exploitable) == len(user_input),
        reasoning=reasoning,
        summary={
            "total_chains": len(chains),
            "user_input_chains": len(user_input),
            "validated_chains": len(validated),
            "exploitable_chains": len(exploitable),
        },
    )


def find_entry_points(
    store: GraphStore,
    repo_id: str,
    target: str,
    file: Optional[str] = None,
    max_hops: int = 5,
    limit: int = 30,
) -> List[Dict[str, Any]]:
    """Zero-caller functions that can reach *target*, flagged when they read user input."""
    try:
        nodes = store.find_entry_points(repo_id, target, file, max_hops=max_hops, limit=limit)
    except sqlite3.Error as exc:
        logger.error("Failed to find entry points for %s in %s: %s", target, repo_id, exc)
        return []
    return [
        {
            "function": node["name"],
            "file": node["file"],
            "line": int(node.get("start_line") or 0),
            "hops_to_target": int(node["hops"]),
            "likely_user_input": classify_source_type(node.get("code") or "") is DataSourceType.USER_INPUT,
        }
        for node in nodes
    ]
