"""Retry policy for protected calls: exponential backoff with jitter."""
from __future__ import annotations
from dataclasses import dataclass
import random

from hub.errors import (
    AuthenticationError,
    CallTimeoutError,
    CircuitOpenError,
    RateLimitError,
    UpstreamError,
)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 2
    backoff_base: float = 0.5
    backoff_max: float = 15.0
    jitter: float = 0.1  # fraction of the delay added at random

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based)."""
        backoff = min(self.backoff_base * (2 ** attempt), self.backoff_max)
        if self.jitter:
            backoff += random.uniform(0, self.jitter * backoff)
        return backoff

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        return is_retryable(error)


NO_RETRY = RetryPolicy(max_retries=0)


def is_retryable(error: BaseException) -> bool:
    """Only transient upstream trouble is worth another attempt."""
    if isinstance(error, (RateLimitError, CircuitOpenError, AuthenticationError)):
        return False
    if isinstance(error, CallTimeoutError):
        return True
    if isinstance(error, UpstreamError):
        return not error.is_client_error
    return False
