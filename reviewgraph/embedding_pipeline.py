"""Embed code snippets in token-bounded batches and store them per repository.

Snippets are packed into batches by an estimated token count
(``ceil(len(text) / 3)``), capped both by a token budget and an item
count. A small worker pool drains the shared batch queue. When the
remote model rejects a batch for exceeding its token limit the batch is
split in half and each half retried; a single snippet that still does
not fit is fatal.

On the first unrecoverable error, or once the job is cancelled, the
remaining queued batches are dropped, in-flight batches are allowed to
finish, and the first error (or :class:`JobCancelled`) is raised.
"""

from __future__ import annotations

import logging
import math
import queue
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Tuple

from . import config
from .breakers import VECTOR, get_registry
from .embeddings import Embedder, get_embedder
from .errors import JobCancelled, TokenLimitExceeded
from .models import CodeSnippet, SearchResult
from .vector_store import VectorStore, collection_name

if TYPE_CHECKING:
    from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

MAX_CODE_CHARS = 8000
PREVIEW_CHARS = 2000
TRUNCATION_MARKER = "\n// ... truncated"
COLLECTION_CACHE_TTL = 60.0

# Fixed namespace so point ids are stable across runs.
POINT_NAMESPACE = uuid.UUID("6f1c1d52-8a55-4c71-9d0e-2b8f1f0a7e31")

__all__ = [
    "EmbeddingPipeline",
    "build_batches",
    "check_embedding_availability",
    "collection_name",
    "estimate_tokens",
    "generate_and_store_embeddings",
    "invalidate_collection_cache",
    "point_id",
    "search",
    "snippet_to_text",
]


# ===================================================================
# Text, ids and batching
# ===================================================================

def snippet_to_text(snippet: CodeSnippet) -> str:
    code = snippet.code
    if len(code) > MAX_CODE_CHARS:
        code = code[:MAX_CODE_CHARS] + TRUNCATION_MARKER
    return f"// {snippet.file}:{snippet.start_line}\n// {snippet.name}\n{code}"


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 3)


def point_id(repo_id: str, snippet: CodeSnippet) -> str:
    """Content-addressed id: the same snippet location always maps to the same point."""
    key = f"{repo_id}\x00{snippet.file}\x00{snippet.name}\x00{snippet.start_line}"
    return str(uuid.uuid5(POINT_NAMESPACE, key))


def build_batches(
    snippets: Sequence[CodeSnippet],
    token_budget: int = config.EMBED_TOKEN_BUDGET,
    max_items: int = config.EMBED_MAX_ITEMS,
) -> List[List[CodeSnippet]]:
    """Greedily pack *snippets* so no batch exceeds either limit.

    A single snippet larger than the budget still gets a batch of its own.
    """
    batches: List[List[CodeSnippet]] = []
    current: List[CodeSnippet] = []
    current_tokens = 0
    for snippet in snippets:
        tokens = estimate_tokens(snippet_to_text(snippet))
        if current and (current_tokens + tokens > token_budget or len(current) >= max_items):
            batches.append(current)
            current, current_tokens = [], 0
        current.append(snippet)
        current_tokens += tokens
    if current:
        batches.append(current)
    return batches


def _payload(repo_id: str, snippet: CodeSnippet) -> Dict[str, Any]:
    return {
        "repo_id": repo_id,
        "name": snippet.name,
        "file": snippet.file,
        "start_line": snippet.start_line,
        "end_line": snippet.end_line,
        "code_preview": snippet.code[:PREVIEW_CHARS],
    }


# ===================================================================
# Pipeline
# ===================================================================

class EmbeddingPipeline:
    """Owns an embedder, a vector store and the collection-existence cache."""

    def __init__(
        self,
        embedder: Optional[Embedder] = None,
        store: Optional[VectorStore] = None,
        concurrency: int = config.EMBED_CONCURRENCY,
        token_budget: int = config.EMBED_TOKEN_BUDGET,
        max_items: int = config.EMBED_MAX_ITEMS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.embedder = embedder or get_embedder()
        self.store = store or VectorStore()
        self.concurrency = max(1, concurrency)
        self.token_budget = token_budget
        self.max_items = max_items
        self._clock = clock
        self._cache: Dict[str, Tuple[bool, float]] = {}
        self._cache_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Collection cache
    # ------------------------------------------------------------------

    def collection_exists(self, repo_id: str) -> bool:
        now = self._clock()
        with self._cache_lock:
            cached = self._cache.get(repo_id)
            if cached and now - cached[1] < COLLECTION_CACHE_TTL:
                return cached[0]
        exists = get_registry().get(VECTOR).execute(lambda: self.store.exists(repo_id))
        with self._cache_lock:
            self._cache[repo_id] = (exists, now)
        return exists

    def invalidate_collection_cache(self, repo_id: str) -> None:
        with self._cache_lock:
            self._cache.pop(repo_id, None)

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def _embed_batch(self, batch: List[CodeSnippet]) -> List[Tuple[CodeSnippet, List[float]]]:
        try:
            vectors = self.embedder.embed_documents([snippet_to_text(s) for s in batch])
        except TokenLimitExceeded:
            if len(batch) <= 1:
                raise
            mid = len(batch) // 2
            logger.warning(
                "Batch of %d exceeded the token limit, splitting into %d + %d",
                len(batch), mid, len(batch) - mid,
            )
            return self._embed_batch(batch[:mid]) + self._embed_batch(batch[mid:])
        return list(zip(batch, vectors))

    def _store_batch(self, repo_id: str, batch: List[CodeSnippet]) -> int:
        embedded = self._embed_batch(batch)
        points = [
            {"id": point_id(repo_id, snippet), "vector": vector, "payload": _payload(repo_id, snippet)}
            for snippet, vector in embedded
        ]
        return get_registry().get(VECTOR).execute(
            lambda: self.store.upsert(repo_id, points, self.embedder.dim)
        )

    def generate_and_store(
        self,
        repo_id: str,
        snippets: Sequence[CodeSnippet],
        cancel_token: Optional[CancellationToken] = None,
    ) -> int:
        """Embed and upsert *snippets* for *repo_id*. Returns points written.

        *cancel_token* is checked before each batch is taken off the queue.
        """
        if not snippets:
            return 0
        get_registry().get(VECTOR).execute(
            lambda: self.store.ensure_collection(repo_id, self.embedder.dim)
        )
        self.invalidate_collection_cache(repo_id)

        batches = build_batches(snippets, self.token_budget, self.max_items)
        logger.info(
            "Embedding %d snippets for %s in %d batches (%d workers)",
            len(snippets), repo_id, len(batches), self.concurrency,
        )

        work: "queue.Queue[List[CodeSnippet]]" = queue.Queue()
        for batch in batches:
            work.put(batch)
        errors: List[Exception] = []
        failed = threading.Event()
        lock = threading.Lock()
        stored = [0]
        cancelled = threading.Event()

        def drain() -> None:
            while not failed.is_set():
                if cancel_token is not None and cancel_token.is_cancelled():
                    cancelled.set()
                    failed.set()
                    return
                try:
                    batch = work.get_nowait()
                except queue.Empty:
                    return
                try:
                    written = self._store_batch(repo_id, batch)
                except Exception as exc:
                    logger.error("Embedding batch failed for %s: %s", repo_id, exc)
                    with lock:
                        errors.append(exc)
                    # Batches not yet started are dropped.
                    failed.set()
                    return
                with lock:
                    stored[0] += written

        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(batches))) as pool:
            futures = [pool.submit(drain) for _ in range(min(self.concurrency, len(batches)))]
            for future in futures:
                future.result()

        if errors:
            raise errors[0]
        if cancelled.is_set():
            logger.info(
                "Embedding cancelled for %s after %d points (job %s)",
                repo_id, stored[0], cancel_token.job_id,
            )
            raise JobCancelled(cancel_token.job_id)
        logger.info("Stored %d embeddings for %s", stored[0], repo_id)
        return stored[0]

    def delete_files(self, repo_id: str, files: Sequence[str]) -> int:
        removed = get_registry().get(VECTOR).execute(
            lambda: self.store.delete_by_files(repo_id, files)
        )
        self.invalidate_collection_cache(repo_id)
        return removed

    def drop_collection(self, repo_id: str) -> bool:
        dropped = get_registry().get(VECTOR).execute(lambda: self.store.drop_collection(repo_id))
        self.invalidate_collection_cache(repo_id)
        return dropped

    # ------------------------------------------------------------------
    # Querying
    # ------------------------------------------------------------------

    def search(
        self,
        repo_id: str,
        text: str,
        limit: int = 10,
        filters: Optional[Dict[str, Any]] = None,
        score_threshold: Optional[float] = None,
    ) -> List[SearchResult]:
        if not self.collection_exists(repo_id):
            return []
        vector = self.embedder.embed_query(text)
        rows = get_registry().get(VECTOR).execute(
            lambda: self.store.search(repo_id, vector, limit, filters, score_threshold)
        )
        return [
            SearchResult(
                name=row["name"],
                file=row["file"],
                start_line=int(row["start_line"]),
                end_line=int(row["end_line"]),
                score=float(row["score"]),
                code_preview=row.get("code_preview") or "",
            )
            for row in rows
        ]

    def check_availability(self, repo_id: str) -> Dict[str, Any]:
        exists = self.collection_exists(repo_id)
        points = (
            get_registry().get(VECTOR).execute(lambda: self.store.count(repo_id)) if exists else 0
        )
        return {
            "available": exists and points > 0,
            "points_count": points,
            "collection_exists": exists,
        }


# ===================================================================
# Module-level convenience API
# ===================================================================

_default: Optional[EmbeddingPipeline] = None
_default_lock = threading.Lock()


def get_pipeline() -> EmbeddingPipeline:
    global _default
    with _default_lock:
        if _default is None:
            from .config_manager import load_section
            emb_cfg = load_section("embeddings")
            _default = EmbeddingPipeline(
                embedder=get_embedder(emb_cfg),
                concurrency=int(emb_cfg.get("concurrency", config.EMBED_CONCURRENCY)),
                token_budget=int(emb_cfg.get("token_budget", config.EMBED_TOKEN_BUDGET)),
                max_items=int(emb_cfg.get("max_items", config.EMBED_MAX_ITEMS)),
            )
        return _default


def set_pipeline(pipeline: Optional[EmbeddingPipeline]) -> None:
    """Replace the process-wide pipeline (used by tests)."""
    global _default
    with _default_lock:
        _default = pipeline


def generate_and_store_embeddings(
    repo_id: str,
    snippets: Sequence[CodeSnippet],
    cancel_token: Optional[CancellationToken] = None,
) -> int:
    return get_pipeline().generate_and_store(repo_id, snippets, cancel_token=cancel_token)


def search(
    repo_id: str,
    text: str,
    limit: int = 10,
    filters: Optional[Dict[str, Any]] = None,
    score_threshold: Optional[float] = None,
) -> List[SearchResult]:
    return get_pipeline().search(repo_id, text, limit, filters, score_threshold)


def invalidate_collection_cache(repo_id: str) -> None:
    get_pipeline().invalidate_collection_cache(repo_id)


def check_embedding_availability(repo_id: str) -> Dict[str, Any]:
    return get_pipeline().check_availability(repo_id)
