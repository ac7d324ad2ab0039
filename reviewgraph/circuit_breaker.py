"""Thread-safe circuit breaker guarding calls to external dependencies.

State machine::

    CLOSED --(failure_threshold failures within monitor_window)--> OPEN
    OPEN   --(reset_timeout elapsed)--> HALF_OPEN
    HALF_OPEN --(trial succeeds)--> CLOSED
    HALF_OPEN --(trial fails)-->    OPEN

Only one trial call is admitted per HALF_OPEN window; other callers arriving
while it is in flight are rejected exactly as if the breaker were OPEN.
The breaker never retries. Retry policy belongs to the caller.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional, TypeVar

from .errors import CircuitBreakerError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 30.0
    monitor_window: float = 60.0


class CircuitBreaker:
    """Per-dependency breaker. Safe to share between threads."""

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: Deque[float] = deque()
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._last_failure: Optional[float] = None
        self._last_success: Optional[float] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(self, operation: Callable[[], T]) -> T:
        """Run *operation* under the breaker.

        Raises:
            CircuitBreakerError: if the breaker rejects the call. The
                operation is not invoked in that case.
        """
        is_trial = self._acquire()
        try:
            result = operation()
        except Exception:
            self._on_failure(is_trial)
            raise
        self._on_success(is_trial)
        return result

    def get_state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._failures)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            self._maybe_half_open()
            self._prune(self._clock())
            return {
                "name": self.name,
                "state": self._state.value,
                "failures": len(self._failures),
                "last_failure": self._last_failure,
                "last_success": self._last_success,
            }

    def reset(self) -> None:
        """Force the breaker back to CLOSED with clean counters."""
        with self._lock:
            self._to_closed()

    # ------------------------------------------------------------------
    # Transitions (callers hold ``self._lock``)
    # ------------------------------------------------------------------

    def _acquire(self) -> bool:
        """Admit or reject a call. Returns True when the call is the HALF_OPEN trial."""
        with self._lock:
            self._maybe_half_open()
            if self._state is CircuitState.OPEN:
                raise CircuitBreakerError(self.name)
            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitBreakerError(self.name)
                self._trial_in_flight = True
                return True
            return False

    def _on_success(self, is_trial: bool) -> None:
        with self._lock:
            self._last_success = self._clock()
            if is_trial:
                logger.info("Circuit breaker '%s' trial succeeded, closing", self.name)
                self._to_closed()
            elif self._state is CircuitState.CLOSED:
                self._failures.clear()

    def _on_failure(self, is_trial: bool) -> None:
        with self._lock:
            now = self._clock()
            self._last_failure = now
            if is_trial:
                logger.warning("Circuit breaker '%s' trial failed, reopening", self.name)
                self._to_open(now)
                return
            if self._state is not CircuitState.CLOSED:
                # Stale outcome of a call admitted before the breaker opened.
                return
            self._failures.append(now)
            self._prune(now)
            if len(self._failures) >= self.config.failure_threshold:
                logger.warning(
                    "Circuit breaker '%s' opened after %d failures",
                    self.name, len(self._failures),
                )
                self._to_open(now)

    def _maybe_half_open(self) -> None:
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self.config.reset_timeout:
            logger.info("Circuit breaker '%s' half-open, admitting one trial", self.name)
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False

    def _prune(self, now: float) -> None:
        cutoff = now - self.config.monitor_window
        while self._failures and self._failures[0] < cutoff:
            self._failures.popleft()

    def _to_open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._trial_in_flight = False

    def _to_closed(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._opened_at = None
        self._trial_in_flight = False
