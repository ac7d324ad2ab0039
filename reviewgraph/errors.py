"""Exception hierarchy shared across indexing, embedding and tracing."""

from __future__ import annotations

from typing import Optional


class ReviewGraphError(Exception):
    """Base class for all reviewgraph errors."""


class TransientExternalError(ReviewGraphError):
    """Network failure, 5xx or 429 from an external dependency. Safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class PermanentExternalError(ReviewGraphError):
    """A 4xx (other than 429) or bad credentials. Never retried."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TokenLimitExceeded(PermanentExternalError):
    """The embedding endpoint rejected a batch for exceeding its token limit."""


class ParseFailure(ReviewGraphError):
    """A single file could not be parsed."""

    def __init__(self, file_path: str, reason: str) -> None:
        super().__init__(f"Failed to parse {file_path}: {reason}")
        self.file_path = file_path


class BatchWriteError(ReviewGraphError):
    """A batched graph or vector write failed."""


class CloneError(ReviewGraphError):
    """``git clone`` failed. The message never contains credentials."""


class JobCancelled(ReviewGraphError):
    """Raised at a checkpoint when the job's cancellation flag is set."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} was cancelled")
        self.job_id = job_id


class CircuitBreakerError(ReviewGraphError):
    """The breaker guarding a dependency is open; the call was not attempted."""

    def __init__(self, breaker_name: str) -> None:
        super().__init__(f"Circuit breaker '{breaker_name}' is OPEN - request rejected")
        self.breaker_name = breaker_name


def is_retryable(exc: Exception) -> bool:
    """Whether a failed index attempt may be run again."""
    return not isinstance(exc, (JobCancelled, PermanentExternalError))
