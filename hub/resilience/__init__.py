"""
Integration Hub Resilience: Protection for Provider Calls.

- ProtectedCallExecutor: circuit breaker + rate-limit + retry per (provider, operation)
- CircuitBreaker: closed/open/half_open with exponential cool-down
- RateLimitTracker / RateLimitInfo: structured rate-limit detection
- RetryPolicy: exponential backoff for transient failures
- IdempotencyStore: at-most-once webhook application
"""
from hub.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitSnapshot,
    CircuitState,
)
from hub.resilience.executor import ProtectedCallExecutor, ProtectionConfig, trips_breaker
from hub.resilience.idempotency import (
    IdempotencyRecord,
    IdempotencyStatus,
    IdempotencyStore,
    generate_idempotency_key,
)
from hub.resilience.rate_limit import (
    RateLimitInfo,
    RateLimitTracker,
    parse_retry_after,
    rate_limit_from_headers,
)
from hub.resilience.retry import NO_RETRY, RetryPolicy, is_retryable

__all__ = [
    # Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitSnapshot",
    "CircuitState",
    # Executor
    "ProtectedCallExecutor",
    "ProtectionConfig",
    "trips_breaker",
    # Idempotency
    "IdempotencyRecord",
    "IdempotencyStatus",
    "IdempotencyStore",
    "generate_idempotency_key",
    # Rate limits
    "RateLimitInfo",
    "RateLimitTracker",
    "parse_retry_after",
    "rate_limit_from_headers",
    # Retry
    "NO_RETRY",
    "RetryPolicy",
    "is_retryable",
]
