"""Durable index-job worker: bounded concurrency, rate limiting and retries.

Jobs are queued in the status store's SQLite queue. Up to ``concurrency``
worker threads claim jobs, gated by a token bucket (``rate_limit_jobs``
per ``rate_limit_period`` seconds). Failed jobs are retried with
exponential backoff; cancellations and permanent errors are not.

Access tokens are held in memory only and are dropped once a job reaches
its final outcome.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from .errors import JobCancelled, PermanentExternalError
from .models import IndexJob, IndexPhase, IndexStatus
from .orchestrator import IndexOrchestrator
from .repo_identity import derive_repo_id
from .status_store import StatusStore

logger = logging.getLogger(__name__)


class TokenBucket:
    """Allow ``capacity`` acquisitions per ``period`` seconds, refilled continuously."""

    def __init__(self, capacity: int, period: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.capacity = float(capacity)
        self.rate = capacity / period
        self._clock = clock
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def refund(self) -> None:
        with self._lock:
            self._tokens = min(self.capacity, self._tokens + 1)

    def wait_time(self) -> float:
        """Seconds until the next token is available."""
        with self._lock:
            self._refill()
            return 0.0 if self._tokens >= 1 else (1 - self._tokens) / self.rate


class IndexWorker:
    """Pulls queued jobs and runs them through an :class:`IndexOrchestrator`."""

    def __init__(
        self,
        store: StatusStore,
        orchestrator: IndexOrchestrator,
        concurrency: int = 2,
        rate_limit_jobs: int = 5,
        rate_limit_period: float = 60.0,
        attempts: int = 3,
        backoff_base: float = 5.0,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.concurrency = max(1, concurrency)
        self.limiter = TokenBucket(rate_limit_jobs, rate_limit_period, clock)
        self.attempts = max(1, attempts)
        self.backoff_base = backoff_base
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._tokens: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._in_flight = 0
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @classmethod
    def from_config(cls, store: StatusStore, orchestrator: IndexOrchestrator,
                    worker_cfg: Optional[Dict[str, Any]] = None) -> "IndexWorker":
        if worker_cfg is None:
            from .config_manager import load_section
            worker_cfg = load_section("worker")
        return cls(
            store,
            orchestrator,
            concurrency=int(worker_cfg.get("concurrency", 2)),
            rate_limit_jobs=int(worker_cfg.get("rate_limit_jobs", 5)),
            rate_limit_period=float(worker_cfg.get("rate_limit_period", 60)),
            attempts=int(worker_cfg.get("attempts", 3)),
            backoff_base=float(worker_cfg.get("backoff_base", 5.0)),
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, job: IndexJob) -> IndexStatus:
        """Queue *job* and record its initial ``queued`` status."""
        if job.token:
            with self._lock:
                self._tokens[job.id] = job.token
        status = IndexStatus(
            id=job.id,
            phase=IndexPhase.QUEUED,
            repo_id=derive_repo_id(job.repo_url).repo_id,
            repo_url=job.repo_url,
            branch=job.branch,
        )
        self.store.save_status(status)
        self.store.enqueue(job)
        logger.info("Queued index job %s for %s", job.id, job.repo_url)
        return status

    def backoff(self, attempt: int) -> float:
        return self.backoff_base * (2 ** (attempt - 1))

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _drop_token(self, job_id: str) -> None:
        with self._lock:
            self._tokens.pop(job_id, None)

    def process(self, job: IndexJob, attempt: int) -> str:
        """Run one claimed job. Returns the queue state it ends in."""
        with self._lock:
            job.token = self._tokens.get(job.id)
        try:
            self.orchestrator.run(job, will_retry=attempt < self.attempts)
        except JobCancelled:
            self.store.finish(job.id, "cancelled")
            self._drop_token(job.id)
            return "cancelled"
        except PermanentExternalError as exc:
            logger.error("Index job %s failed permanently: %s", job.id, exc)
            self.store.finish(job.id, "failed")
            self._drop_token(job.id)
            return "failed"
        except Exception as exc:
            if attempt < self.attempts:
                delay = self.backoff(attempt)
                logger.warning(
                    "Index job %s failed (attempt %d/%d), retrying in %.0fs: %s",
                    job.id, attempt, self.attempts, delay, exc,
                )
                self.store.requeue(job.id, delay)
                return "queued"
            logger.error("Index job %s failed after %d attempts: %s", job.id, attempt, exc)
            self.store.finish(job.id, "failed")
            self._drop_token(job.id)
            return "failed"
        self.store.finish(job.id, "complete")
        self._drop_token(job.id)
        logger.info("Index job %s completed", job.id)
        return "complete"

    def run_once(self) -> Optional[str]:
        """Claim and process a single job if the limiter allows. None when idle."""
        if not self.limiter.try_acquire():
            return None
        with self._lock:
            claimed = self.store.claim_next()
            if claimed is not None:
                self._in_flight += 1
        if claimed is None:
            self.limiter.refund()
            return None
        try:
            return self.process(claimed["job"], claimed["attempts"])
        finally:
            with self._lock:
                self._in_flight -= 1

    def _idle(self) -> bool:
        with self._lock:
            return self._in_flight == 0 and self.store.queue_depth() == 0

    def _loop(self, until_idle: bool) -> None:
        while not self._stop.is_set():
            wait = self.limiter.wait_time()
            if wait > 0:
                self._sleep(min(wait, self.poll_interval))
                continue
            outcome = self.run_once()
            if outcome is not None:
                continue
            if until_idle and self._idle():
                return
            self._sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, until_idle: bool = False) -> None:
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._loop, args=(until_idle,), name=f"index-worker-{i}", daemon=True)
            for i in range(self.concurrency)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Index worker started (concurrency=%d)", self.concurrency)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def run_until_idle(self) -> None:
        """Process queued jobs (including retries) until the queue is empty."""
        self.start(until_idle=True)
        for thread in self._threads:
            thread.join()
        self._threads = []
