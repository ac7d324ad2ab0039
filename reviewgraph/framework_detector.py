"""Framework / stack detection for a checked-out repository.

Each framework carries a set of weighted signals (indicator files at the
repo root, substrings inside those files, and the presence of certain file
extensions or file names anywhere in the tree). Scores are summed, capped
at 1.0, and returned highest first.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

logger = logging.getLogger(__name__)

SCAN_EXCLUDES: Set[str] = {
    "node_modules", ".git", ".svn", ".hg",
    ".idea", ".vscode", ".next", ".dart_tool",
    "dist", "build", "target",
}

MAX_SCANNED_FILES = 5000


@dataclass
class FrameworkIndicator:
    framework: str
    indicator_files: Tuple[str, ...] = ()
    weight: float = 0.2
    indicator_extensions: Tuple[str, ...] = ()
    indicator_names: Tuple[str, ...] = ()
    extension_weight: Optional[float] = None
    # (file, substring, weight)
    content_checks: Tuple[Tuple[str, str, float], ...] = ()
    exclude_patterns: Tuple[str, ...] = ()


@dataclass
class FrameworkDetection:
    framework: str
    confidence: float
    file_patterns: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)


FRAMEWORK_INDICATORS: List[FrameworkIndicator] = [
    FrameworkIndicator(
        framework="react",
        indicator_files=("package.json", "tsconfig.json"),
        weight=0.15,
        content_checks=(
            ("package.json", '"react"', 0.3),
            ("package.json", '"react-dom"', 0.2),
        ),
        exclude_patterns=("node_modules", "build", "dist"),
    ),
    FrameworkIndicator(
        framework="typescript",
        indicator_files=("tsconfig.json",),
        indicator_extensions=(".ts", ".tsx"),
        weight=0.3,
        content_checks=(("package.json", '"typescript"', 0.2),),
        exclude_patterns=("node_modules", "build", "dist"),
    ),
    FrameworkIndicator(
        framework="java",
        indicator_files=("pom.xml", "build.gradle", "build.gradle.kts"),
        indicator_extensions=(".java",),
        weight=0.2,
        content_checks=(
            ("pom.xml", "spring", 0.2),
            ("build.gradle", "spring", 0.2),
            ("build.gradle.kts", "spring", 0.2),
        ),
        exclude_patterns=("target", "build", ".gradle", ".mvn"),
    ),
    FrameworkIndicator(
        framework="spring-boot",
        indicator_files=(),
        weight=0.2,
        content_checks=(
            ("pom.xml", "spring-boot", 0.5),
            ("build.gradle", "org.springframework.boot", 0.5),
            ("build.gradle.kts", "org.springframework.boot", 0.5),
        ),
        exclude_patterns=("target", "build", ".gradle", ".mvn"),
    ),
    FrameworkIndicator(
        framework="flutter",
        indicator_files=("pubspec.yaml",),
        weight=0.25,
        content_checks=(
            ("pubspec.yaml", "flutter:", 0.4),
            ("pubspec.yaml", "flutter_test:", 0.1),
        ),
        exclude_patterns=(".dart_tool", "build", ".flutter-plugins"),
    ),
    FrameworkIndicator(
        framework="ftl",
        indicator_extensions=(".ftl",),
        weight=0.2,
        extension_weight=0.4,
        exclude_patterns=("build", "target", "node_modules"),
    ),
    FrameworkIndicator(
        framework="ofbiz",
        indicator_files=("build.gradle",),
        indicator_names=("ofbiz-component.xml",),
        weight=0.1,
        extension_weight=0.6,
        content_checks=(("build.gradle", "ofbiz", 0.2),),
        exclude_patterns=("build", "runtime", ".gradle", "node_modules"),
    ),
]

# A specific framework above 0.3 demotes its generic counterpart by 0.3.
GENERIC_PAIRS: Dict[str, Tuple[str, ...]] = {
    "typescript": ("react",),
    "java": ("spring-boot",),
}


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def _tree_has(
    root: Path,
    extensions: Sequence[str],
    names: Sequence[str],
    exclude_patterns: Iterable[str],
    max_files: int = MAX_SCANNED_FILES,
) -> bool:
    """True when any file under *root* matches an extension or exact name."""
    excluded = SCAN_EXCLUDES | set(exclude_patterns)
    wanted_ext = {e.lower() for e in extensions}
    wanted_names = set(names)
    checked = 0
    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in excluded]
        for filename in filenames:
            checked += 1
            if checked > max_files:
                return False
            if filename in wanted_names or os.path.splitext(filename)[1].lower() in wanted_ext:
                return True
    return False


def detect_frameworks(repo_dir: Path) -> List[FrameworkDetection]:
    """Score every known framework against *repo_dir*, highest first."""
    repo_dir = Path(repo_dir)
    detections: List[FrameworkDetection] = []

    for indicator in FRAMEWORK_INDICATORS:
        confidence = 0.0
        matched: List[str] = []

        for name in indicator.indicator_files:
            if (repo_dir / name).exists():
                confidence += indicator.weight
                matched.append(name)

        for name, substring, weight in indicator.content_checks:
            content = _read_text(repo_dir / name)
            if content and substring.lower() in content.lower():
                confidence += weight
                if name not in matched:
                    matched.append(name)

        if indicator.indicator_extensions or indicator.indicator_names:
            if _tree_has(
                repo_dir,
                indicator.indicator_extensions,
                indicator.indicator_names,
                indicator.exclude_patterns,
            ):
                bonus = indicator.extension_weight
                confidence += indicator.weight if bonus is None else bonus
                matched.extend(f"*{ext}" for ext in indicator.indicator_extensions)
                matched.extend(indicator.indicator_names)

        if confidence > 0:
            detections.append(FrameworkDetection(
                framework=indicator.framework,
                confidence=round(min(confidence, 1.0), 2),
                file_patterns=matched,
                exclude_patterns=list(indicator.exclude_patterns),
            ))

    for generic, specifics in GENERIC_PAIRS.items():
        if any(d.framework in specifics and d.confidence > 0.3 for d in detections):
            for d in detections:
                if d.framework == generic:
                    d.confidence = round(max(d.confidence - 0.3, 0.0), 2)

    result = sorted((d for d in detections if d.confidence > 0), key=lambda d: -d.confidence)
    logger.info(
        "Framework detection complete: %s",
        ", ".join(f"{d.framework}({d.confidence})" for d in result) or "none",
    )
    return result


def detect_primary_framework(repo_dir: Path, threshold: float = 0.2) -> str:
    """Most likely framework name, or ``"unknown"`` below *threshold*."""
    detections = detect_frameworks(repo_dir)
    if detections and detections[0].confidence >= threshold:
        return detections[0].framework
    return "unknown"


def get_exclude_patterns(frameworks: Iterable[str]) -> Set[str]:
    """Union of the exclude patterns of the named frameworks."""
    wanted = set(frameworks)
    patterns: Set[str] = set()
    for indicator in FRAMEWORK_INDICATORS:
        if indicator.framework in wanted:
            patterns.update(indicator.exclude_patterns)
    return patterns
