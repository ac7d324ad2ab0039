"""Index job orchestration: clone, detect, parse, build graph, embed.

Every stage boundary is a checkpoint: the status is persisted (which also
publishes it to subscribers) and the job's cancellation token is polled.
Unless another attempt is pending, the job ends in a terminal phase and the temporary
clone directory is removed.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import quote, urlparse, urlunparse

from . import config
from .artifact_graph import (
    ARTIFACT_STRATEGY,
    build_artifact_graph,
    collect_artifact_files,
    extract_artifact_snippets,
    get_indexing_strategy,
    parse_artifacts,
    tag_java_nodes,
)
from .breakers import GRAPH, SOURCE_CONTROL, get_registry
from .cancellation import CancellationToken
from .errors import BatchWriteError, CloneError, JobCancelled, TransientExternalError, is_retryable
from .framework_detector import detect_frameworks
from .graph_builder import build_graph
from .models import IndexJob, IndexPhase, IndexStatus, ParsedFile, utc_now
from .repo_identity import derive_repo_id
from .source_collector import (
    PARSEABLE_EXTENSIONS,
    collect_source_files,
    extract_snippets,
    parse_sources,
)
from .status_store import StatusStore
from .storage import GraphStore

logger = logging.getLogger(__name__)

TOKEN_IN_URL_RE = re.compile(r"x-token-auth:[^@]+@")
CANCELLED_MESSAGE = "Job cancelled"


# ===================================================================
# Git clone
# ===================================================================

def scrub_credentials(text: str) -> str:
    return TOKEN_IN_URL_RE.sub("x-token-auth:***@", text)


def authenticated_url(repo_url: str, token: Optional[str]) -> str:
    """Inject *token* as ``x-token-auth`` credentials into an HTTPS URL."""
    if not token or not repo_url.startswith("https://"):
        return repo_url
    parsed = urlparse(repo_url)
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    netloc = f"x-token-auth:{quote(token, safe='')}@{host}"
    return urlunparse(parsed._replace(netloc=netloc))


def clone_repository(
    repo_url: str,
    branch: str,
    dest: Path,
    token: Optional[str] = None,
    timeout: float = config.CLONE_TIMEOUT,
) -> Path:
    """Shallow, single-branch clone of *repo_url* into *dest*.

    Raises:
        CloneError: git exited non-zero. The message has credentials scrubbed.
        TransientExternalError: the clone timed out.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    cmd = [
        "git", "clone", "--depth", "1", "--branch", branch,
        authenticated_url(repo_url, token), str(dest),
    ]
    logger.info("Cloning %s (branch %s) into %s", repo_url, branch, dest)

    def _clone() -> Path:
        try:
            proc = subprocess.run(
                cmd, capture_output=True, text=True, env=env, timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise TransientExternalError(
                f"git clone timed out after {timeout:.0f}s"
            ) from exc
        if proc.returncode != 0:
            raise CloneError(
                f"git clone failed (exit {proc.returncode}): {scrub_credentials(proc.stderr or '').strip()}"
            )
        return dest

    return get_registry().get(SOURCE_CONTROL).execute(_clone)


# ===================================================================
# Orchestrator
# ===================================================================

Cloner = Callable[[str, str, Path, Optional[str], float], Path]


class IndexOrchestrator:
    """Runs index jobs against a graph store, status store and embedding pipeline.

    The embedding pipeline is created lazily so graph-only runs never need
    the vector backend.
    """

    def __init__(
        self,
        status_store: StatusStore,
        graph_store: Optional[GraphStore] = None,
        embedding_pipeline: Optional[Any] = None,
        clone_base_dir: Optional[Path] = None,
        index_cfg: Optional[Dict[str, Any]] = None,
        cloner: Optional[Cloner] = None,
    ) -> None:
        if index_cfg is None:
            from .config_manager import load_section
            index_cfg = load_section("index")
        self.status_store = status_store
        self.graph = graph_store or GraphStore()
        self._pipeline = embedding_pipeline
        self.clone_base_dir = Path(clone_base_dir or config.CLONE_BASE_DIR)
        self.index_cfg = index_cfg
        self.cloner: Cloner = cloner or clone_repository

    @property
    def pipeline(self) -> Any:
        if self._pipeline is None:
            from .embedding_pipeline import get_pipeline
            self._pipeline = get_pipeline()
        return self._pipeline

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _update(self, status: IndexStatus, phase: IndexPhase, percentage: int, **extra: Any) -> None:
        status.phase = phase
        status.percentage = percentage
        for key, value in extra.items():
            setattr(status, key, value)
        if phase.is_terminal:
            status.completed_at = utc_now()
        self.status_store.save_status(status)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(
        self,
        job: IndexJob,
        cancel_token: Optional[CancellationToken] = None,
        will_retry: bool = False,
    ) -> IndexStatus:
        """Clone and index *job*. Re-raises the failure after recording it.

        With *will_retry* a retryable failure leaves the job ``queued`` with
        the error attached instead of terminal, so the next attempt can
        still report progress.
        """
        token = cancel_token or CancellationToken(job.id, self.status_store)
        repo_id = derive_repo_id(job.repo_url).repo_id
        status = IndexStatus(
            id=job.id, repo_id=repo_id, repo_url=job.repo_url, branch=job.branch,
        )
        self._update(status, IndexPhase.QUEUED, 0)
        clone_dir: Optional[Path] = None

        try:
            token.raise_if_cancelled()
            self._update(status, IndexPhase.CLONING, 5)
            token.raise_if_cancelled()
            clone_dir = self.clone_base_dir / f"repo_{uuid.uuid4()}"
            self.cloner(
                job.repo_url, job.branch, clone_dir, job.token,
                float(self.index_cfg.get("clone_timeout", config.CLONE_TIMEOUT)),
            )
            self._update(status, IndexPhase.CLONING, 15)
            token.raise_if_cancelled()

            self._index_tree(
                status, clone_dir, repo_id, token,
                framework=job.framework,
                incremental=job.incremental,
                changed_files=job.changed_files,
                include_embeddings=job.include_embeddings,
            )
        except Exception as exc:
            if will_retry and is_retryable(exc):
                self._defer(status, exc)
            else:
                self._fail(status, exc)
            raise
        finally:
            if clone_dir is not None and clone_dir.exists():
                try:
                    shutil.rmtree(clone_dir)
                except OSError as exc:
                    logger.warning("Failed to clean up clone directory %s: %s", clone_dir, exc)
        return status

    def run_local(
        self,
        path: Path,
        repo_id: Optional[str] = None,
        job_id: Optional[str] = None,
        framework: Optional[str] = None,
        incremental: bool = False,
        changed_files: Optional[Sequence[str]] = None,
        include_embeddings: bool = True,
        cancel_token: Optional[CancellationToken] = None,
    ) -> IndexStatus:
        """Index an existing checkout in place. The directory is never removed."""
        repo_dir = Path(path).resolve()
        if not repo_dir.is_dir():
            raise FileNotFoundError(f"Not a directory: {repo_dir}")
        job_id = job_id or str(uuid.uuid4())
        repo_id = repo_id or repo_dir.name
        token = cancel_token or CancellationToken(job_id, self.status_store)
        status = IndexStatus(id=job_id, repo_id=repo_id, repo_url=str(repo_dir))
        self._update(status, IndexPhase.QUEUED, 0)
        try:
            token.raise_if_cancelled()
            self._index_tree(
                status, repo_dir, repo_id, token,
                framework=framework,
                incremental=incremental,
                changed_files=list(changed_files or []),
                include_embeddings=include_embeddings,
            )
        except Exception as exc:
            self._fail(status, exc)
            raise
        return status

    def _defer(self, status: IndexStatus, exc: Exception) -> None:
        message = scrub_credentials(str(exc)) or exc.__class__.__name__
        logger.warning("Index attempt for job %s failed, will retry: %s", status.id, message)
        self._update(status, IndexPhase.QUEUED, 0, error=message)

    def _fail(self, status: IndexStatus, exc: Exception) -> None:
        if isinstance(exc, JobCancelled):
            logger.info("Index job %s cancelled", status.id)
            status.cancelled = True
            self._update(status, IndexPhase.FAILED, 0, error=CANCELLED_MESSAGE)
            return
        message = scrub_credentials(str(exc)) or exc.__class__.__name__
        logger.error("Indexing failed for job %s: %s", status.id, message)
        self._update(status, IndexPhase.FAILED, 0, error=message)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _index_tree(
        self,
        status: IndexStatus,
        repo_dir: Path,
        repo_id: str,
        token: CancellationToken,
        framework: Optional[str],
        incremental: bool,
        changed_files: List[str],
        include_embeddings: bool,
    ) -> None:
        # ---- Framework detection ---------------------------------------
        self._update(status, IndexPhase.DETECTING_FRAMEWORK, 20)
        token.raise_if_cancelled()
        detections = detect_frameworks(repo_dir)
        override = (framework or "").strip()
        matched = next((d for d in detections if d.framework == override), None) if override else None
        primary = override or (detections[0].framework if detections else "unknown")
        if matched is not None:
            exclude_patterns = set(matched.exclude_patterns)
        else:
            exclude_patterns = {p for d in detections for p in d.exclude_patterns}
        self._update(status, IndexPhase.DETECTING_FRAMEWORK, 25, framework=primary)
        token.raise_if_cancelled()

        strategy = get_indexing_strategy(repo_id, repo_dir, self.index_cfg.get("strategies") or {})

        # ---- Clear previous data ---------------------------------------
        if not incremental:
            self._update(status, IndexPhase.PARSING, 28)
            token.raise_if_cancelled()
            self._delete_repo_data(repo_id, include_embeddings)
        elif changed_files:
            self._update(status, IndexPhase.PARSING, 28)
            token.raise_if_cancelled()
            self._delete_file_data(repo_id, changed_files, include_embeddings)

        # ---- Parse -----------------------------------------------------
        self._update(status, IndexPhase.PARSING, 30)
        max_size = int(self.index_cfg.get("max_file_size", config.MAX_FILE_SIZE))
        if incremental:
            files = self._changed_source_files(repo_dir, changed_files, max_size)
        else:
            files = collect_source_files(repo_dir, exclude_patterns, max_size)
        total = len(files)
        logger.info(
            "Parsing %d source files for %s (framework=%s, incremental=%s)",
            total, repo_id, primary, incremental,
        )

        def on_progress(count: int) -> None:
            pct = 30 + round(count / max(total, 1) * 25)
            self._update(status, IndexPhase.PARSING, pct, files_processed=count, total_files=total)
            token.raise_if_cancelled()

        parsed = parse_sources(repo_dir, files, on_progress=on_progress)
        if total and total % 20:
            on_progress(total)
        logger.info("Parsing complete: %d/%d files", len(parsed), total)

        # ---- Graph -----------------------------------------------------
        self._update(status, IndexPhase.BUILDING_GRAPH, 60)
        token.raise_if_cancelled()
        stats = build_graph(self.graph, repo_id, parsed)
        if stats.failed_batches:
            logger.warning("%d graph batches failed for %s", stats.failed_batches, repo_id)
        artifact_data = None
        if strategy == ARTIFACT_STRATEGY:
            artifact_data = self._build_artifacts(repo_dir, repo_id, parsed, exclude_patterns,
                                                  changed_files if incremental else None)
        self._update(status, IndexPhase.BUILDING_GRAPH, 75)
        token.raise_if_cancelled()

        # ---- Embeddings ------------------------------------------------
        self._update(status, IndexPhase.GENERATING_EMBEDDINGS, 78)
        token.raise_if_cancelled()
        stored = 0
        if include_embeddings:
            snippets = extract_snippets(parsed)
            if artifact_data is not None:
                snippets.extend(extract_artifact_snippets(repo_dir, artifact_data))
            stored = self.pipeline.generate_and_store(repo_id, snippets, cancel_token=token)
        else:
            logger.info("Skipping embeddings for %s", repo_id)
        self._update(status, IndexPhase.GENERATING_EMBEDDINGS, 95, functions_indexed=stored)
        token.raise_if_cancelled()

        self._update(
            status, IndexPhase.COMPLETE, 100,
            files_processed=len(parsed),
            total_files=total,
            functions_indexed=stored,
            framework=primary,
        )
        logger.info(
            "Indexing complete for %s: %d files, %d embeddings", repo_id, len(parsed), stored,
        )

    def _build_artifacts(
        self,
        repo_dir: Path,
        repo_id: str,
        parsed: Sequence[ParsedFile],
        exclude_patterns: Sequence[str],
        changed_files: Optional[Sequence[str]],
    ) -> Any:
        logger.info("Building artifact graph for %s", repo_id)
        file_set = collect_artifact_files(repo_dir, exclude_patterns, changed_files)
        data = parse_artifacts(repo_dir, file_set)
        failed = build_artifact_graph(self.graph, repo_id, data)
        failed += tag_java_nodes(self.graph, repo_id, parsed)
        if failed:
            logger.warning("%d artifact graph batches failed for %s", failed, repo_id)
        return data

    @staticmethod
    def _changed_source_files(repo_dir: Path, changed_files: Sequence[str], max_size: int) -> List[Path]:
        files: List[Path] = []
        for rel in changed_files:
            path = repo_dir / rel
            if path.suffix.lower() not in PARSEABLE_EXTENSIONS:
                continue
            try:
                if path.stat().st_size > max_size:
                    continue
            except OSError:
                continue
            files.append(path)
        return files

    def _delete_repo_data(self, repo_id: str, include_embeddings: bool) -> None:
        logger.info("Deleting existing data for %s before full re-index", repo_id)
        try:
            get_registry().get(GRAPH).execute(lambda: self.graph.delete_repo(repo_id))
        except BatchWriteError as exc:
            logger.warning("Failed to delete old graph data for %s: %s", repo_id, exc)
        if include_embeddings:
            self.pipeline.drop_collection(repo_id)

    def _delete_file_data(self, repo_id: str, changed_files: Sequence[str], include_embeddings: bool) -> None:
        logger.info("Deleting data for %d changed files in %s", len(changed_files), repo_id)
        try:
            get_registry().get(GRAPH).execute(lambda: self.graph.delete_files(repo_id, changed_files))
        except BatchWriteError as exc:
            logger.warning("Failed to delete old graph data for %s: %s", repo_id, exc)
        if include_embeddings:
            self.pipeline.delete_files(repo_id, changed_files)
