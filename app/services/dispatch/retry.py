"""
Retry policy for vendor calls.

Rate limits and unreachable devices are retried with capped exponential
backoff; an expired credential gets exactly one re-initialize and retry;
rejected and malformed results are final.
"""

from __future__ import annotations

from dataclasses import dataclass

from app.hardware.adapters.base_adapter import AdapterError, AdapterErrorKind


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_base_seconds < 0 or self.backoff_max_seconds < 0:
            raise ValueError("backoff durations must not be negative")

    def should_retry(self, error: AdapterError, attempt: int, *, auth_retry_used: bool) -> bool:
        """
        Args:
            error: Classified failure of attempt number *attempt* (1-based)
            attempt: Attempts made so far
            auth_retry_used: Whether the single auth refresh was already spent
        """
        if error.kind == AdapterErrorKind.AUTH_EXPIRED:
            return not auth_retry_used
        if error.is_transient:
            return attempt < self.max_attempts
        return False

    def delay_for(self, error: AdapterError, attempt: int) -> float:
        """Seconds to wait before attempt ``attempt + 1``."""
        if error.kind == AdapterErrorKind.AUTH_EXPIRED:
            return 0.0
        delay = min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)
        if error.retry_after is not None:
            # The vendor's hint wins, still bounded by the cap.
            delay = min(max(delay, error.retry_after), self.backoff_max_seconds)
        return delay
