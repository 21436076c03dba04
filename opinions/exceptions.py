"""
Exception hierarchy for the opinion clustering engine.

"Not eligible" and "already queued" are not errors: they come back as a
typed EligibilityResult and as ``False`` from ``enqueue_job``.
"""

from typing import Any, Dict, Optional


class ClusteringError(Exception):
    """Base class for clustering failures. Carries a context dict."""

    _retryable: bool = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self._retryable

    def __str__(self):
        base_msg = super().__str__()
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{base_msg} (context: {context_str})"
        return base_msg


class ComputationError(ClusteringError):
    """Numerical failure while computing a landscape (PCA, k-means, ...).

    The queue retries these up to the job's max_attempts.
    """

    _retryable = True


class QueueExhausted(ClusteringError):
    """A poll's latest clustering job failed all of its attempts.

    Callers should show the landscape as unavailable instead of serving
    a stale snapshot.
    """

    def __init__(
        self,
        poll_id,
        attempts: int,
        last_error: Optional[str] = None,
    ):
        self.poll_id = poll_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Clustering for poll {poll_id} failed after {attempts} attempts",
            context={'poll_id': poll_id, 'attempts': attempts},
        )
