"""Registry of per-dependency circuit breakers.

Each external system gets one breaker, shared by every caller in the
process and tuned independently. Values may be overridden from the
``[breakers.<name>]`` sections of the config file.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState

logger = logging.getLogger(__name__)

COMPLETION = "completion"
EMBEDDING = "embedding"
SOURCE_CONTROL = "source-control"
VECTOR = "vector"
GRAPH = "graph"

BREAKER_DEFAULTS: Dict[str, CircuitBreakerConfig] = {
    COMPLETION: CircuitBreakerConfig(failure_threshold=8, reset_timeout=60.0, monitor_window=120.0),
    EMBEDDING: CircuitBreakerConfig(failure_threshold=5, reset_timeout=45.0, monitor_window=90.0),
    SOURCE_CONTROL: CircuitBreakerConfig(failure_threshold=5, reset_timeout=30.0, monitor_window=60.0),
    VECTOR: CircuitBreakerConfig(failure_threshold=3, reset_timeout=15.0, monitor_window=30.0),
    GRAPH: CircuitBreakerConfig(failure_threshold=3, reset_timeout=15.0, monitor_window=30.0),
}


class BreakerRegistry:
    """Lazily creates and hands out one breaker per dependency name."""

    def __init__(
        self,
        overrides: Optional[Dict[str, Dict[str, Any]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._overrides = overrides or {}
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, self._config_for(name), clock=self._clock)
                self._breakers[name] = breaker
            return breaker

    def _config_for(self, name: str) -> CircuitBreakerConfig:
        base = BREAKER_DEFAULTS.get(name, CircuitBreakerConfig())
        override = self._overrides.get(name, {})
        return CircuitBreakerConfig(
            failure_threshold=int(override.get("failure_threshold", base.failure_threshold)),
            reset_timeout=float(override.get("reset_timeout", base.reset_timeout)),
            monitor_window=float(override.get("monitor_window", base.monitor_window)),
        )

    def get_all_breaker_states(self) -> Dict[str, str]:
        names = sorted(set(BREAKER_DEFAULTS) | set(self._breakers))
        return {name: self.get(name).get_state().value for name in names}

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        names = sorted(set(BREAKER_DEFAULTS) | set(self._breakers))
        return {name: self.get(name).get_stats() for name in names}

    def healthy(self) -> bool:
        return all(
            state != CircuitState.OPEN.value
            for state in self.get_all_breaker_states().values()
        )

    def reset(self) -> None:
        with self._lock:
            for breaker in self._breakers.values():
                breaker.reset()


_default_registry: Optional[BreakerRegistry] = None
_default_lock = threading.Lock()


def get_registry() -> BreakerRegistry:
    """Return the process-wide registry, built from the config file on first use."""
    global _default_registry
    with _default_lock:
        if _default_registry is None:
            from .config_manager import load_section
            _default_registry = BreakerRegistry(overrides=load_section("breakers"))
        return _default_registry


def set_registry(registry: Optional[BreakerRegistry]) -> None:
    """Replace the process-wide registry (``None`` rebuilds it lazily)."""
    global _default_registry
    with _default_lock:
        _default_registry = registry
