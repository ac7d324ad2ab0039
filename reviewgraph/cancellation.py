"""Cooperative cancellation for long-running index jobs.

A job is never interrupted mid-step. The orchestrator threads a
:class:`CancellationToken` through every stage boundary and calls
:meth:`CancellationToken.raise_if_cancelled` at each checkpoint; the flag
itself lives out-of-band in the status store so any process can set it.
"""

from __future__ import annotations

import threading
from typing import Optional

from .errors import JobCancelled
from .status_store import StatusStore


class CancellationToken:
    """Checkpoint handle for one job.

    A local :class:`threading.Event` short-circuits repeated store lookups
    once cancellation has been observed, and lets in-process callers
    cancel without touching the store.
    """

    def __init__(self, job_id: str, store: Optional[StatusStore] = None) -> None:
        self.job_id = job_id
        self._store = store
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()
        if self._store is not None:
            self._store.mark_cancelled(self.job_id)

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._store is not None and self._store.is_cancelled(self.job_id):
            self._event.set()
            return True
        return False

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled():
            raise JobCancelled(self.job_id)

    def clear(self) -> None:
        self._event.clear()
        if self._store is not None:
            self._store.clear_cancelled(self.job_id)
