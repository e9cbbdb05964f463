"""
Integration Hub Protected Call Executor.

Every outbound provider call goes through ``execute``:

    Rate-limit window -> Circuit breaker -> Call (timeout, retry) -> Record

State is kept per (provider, operation) key, each with its own lock, so
contention on one provider never blocks another.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union
import asyncio
import inspect
import logging
import time

import httpx

from hub.errors import (
    AuthenticationError,
    CallTimeoutError,
    CircuitOpenError,
    IntegrationError,
    RateLimitError,
    UpstreamError,
)
from hub.observability.metrics import MetricsSink, NullMetrics
from hub.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitSnapshot,
    CircuitState,
)
from hub.resilience.rate_limit import RateLimitTracker
from hub.resilience.retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

CallFn = Callable[[], Union[Awaitable[T], T]]
SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class ProtectionConfig:
    """Circuit breaker, retry and timeout defaults for all protected calls."""

    breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    default_timeout: float = 30.0  # seconds
    overrides: dict[str, CircuitBreakerConfig] = field(default_factory=dict)

    def breaker_for(self, provider: str) -> CircuitBreakerConfig:
        return self.overrides.get(provider, self.breaker)


def trips_breaker(error: BaseException) -> bool:
    """
    Whether a failure counts as a provider-health signal.

    Client errors (4xx) and auth failures mean the provider answered; they
    do not count toward opening the circuit.
    """
    if isinstance(error, AuthenticationError):
        return False
    if isinstance(error, UpstreamError):
        return not error.is_client_error
    return True


def _classify_transport(error: BaseException, provider: str, operation: str, timeout: float | None) -> BaseException:
    """Map raw transport exceptions into the taxonomy; leave the rest alone."""
    if isinstance(error, IntegrationError):
        if error.provider is None:
            error.provider = provider
        if error.operation is None:
            error.operation = operation
        return error
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return CallTimeoutError(
            f"{provider}:{operation} timed out after {timeout}s",
            timeout=timeout,
            provider=provider,
            operation=operation,
        )
    if isinstance(error, httpx.TransportError):
        return UpstreamError(
            f"{provider}:{operation} transport error: {type(error).__name__}",
            provider=provider,
            operation=operation,
        )
    return error


class ProtectedCallExecutor:
    """Circuit breaker + rate-limit + retry wrapper for provider calls."""

    def __init__(
        self,
        config: ProtectionConfig | None = None,
        metrics: MetricsSink | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.config = config or ProtectionConfig()
        self.metrics: MetricsSink = metrics or NullMetrics()
        self._clock = clock
        self._sleep = sleep
        self._breakers: dict[tuple[str, str], CircuitBreaker] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._rate_limits = RateLimitTracker(clock=clock)

    # --- Per-key state ---

    def _breaker(self, provider: str, operation: str) -> CircuitBreaker:
        key = (provider, operation)
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = self._breakers[key] = CircuitBreaker(
                provider,
                operation,
                config=self.config.breaker_for(provider),
                clock=self._clock,
            )
        return breaker

    def _lock(self, provider: str, operation: str) -> asyncio.Lock:
        return self._locks.setdefault((provider, operation), asyncio.Lock())

    @staticmethod
    def _rate_key(provider: str, operation: str) -> str:
        return f"{provider}:{operation}"

    # --- Core ---

    async def execute(
        self,
        provider: str,
        operation: str,
        fn: CallFn[T],
        *,
        timeout: Optional[float] = None,
        user_id: Optional[str] = None,
        integration_id: Optional[str] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> T:
        """
        Run ``fn`` under protection for (provider, operation).

        Raises CircuitOpenError / RateLimitError without invoking ``fn`` when
        the key is open or inside a rate-limit window. Otherwise invokes
        ``fn`` (retrying transient failures) and raises whatever it failed
        with, classified into the taxonomy. Never swallows errors.
        """
        timeout = self.config.default_timeout if timeout is None else timeout
        policy = retry or self.config.retry
        breaker = self._breaker(provider, operation)
        rate_key = self._rate_key(provider, operation)

        async with self._lock(provider, operation):
            suppressed = self._rate_limits.check(rate_key)
            if suppressed is not None:
                remaining, info = suppressed
                raise RateLimitError(
                    f"Rate limited on {provider}:{operation}, retry in {remaining:.1f}s",
                    retry_after=remaining,
                    provider=provider,
                    operation=operation,
                    rate_limit=info,
                )
            breaker.acquire()

        start = time.perf_counter()
        attempt = 0
        try:
            while True:
                try:
                    result = await self._invoke(fn, timeout)
                    break
                except Exception as exc:
                    error = _classify_transport(exc, provider, operation, timeout)
                    if not policy.should_retry(error, attempt):
                        if error is exc:
                            raise
                        raise error from exc
                    delay = policy.delay(attempt)
                    attempt += 1
                    logger.debug(
                        "Retrying %s:%s (attempt %d) in %.2fs after %s",
                        provider, operation, attempt + 1, delay, type(error).__name__,
                    )
                    await self._sleep(delay)
        except asyncio.CancelledError:
            # cancelled by the caller, not a provider outcome
            breaker.abort_trial()
            raise
        except Exception as error:
            duration_ms = (time.perf_counter() - start) * 1000
            await self._record_failure(
                breaker, provider, operation, error, duration_ms, user_id, integration_id,
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        async with self._lock(provider, operation):
            breaker.record_success()
            self._rate_limits.clear(rate_key)
        self.metrics.record_call(
            user_id, integration_id, provider, operation, duration_ms, True,
        )
        return result

    async def _invoke(self, fn: CallFn[T], timeout: Optional[float]) -> T:
        result = fn()
        if inspect.isawaitable(result):
            if timeout:
                return await asyncio.wait_for(result, timeout)
            return await result
        return result

    async def _record_failure(
        self,
        breaker: CircuitBreaker,
        provider: str,
        operation: str,
        error: Exception,
        duration_ms: float,
        user_id: Optional[str],
        integration_id: Optional[str],
    ) -> None:
        rate_limited = isinstance(error, RateLimitError)
        async with self._lock(provider, operation):
            if rate_limited:
                self._rate_limits.record(
                    self._rate_key(provider, operation), error.retry_after, error.rate_limit,
                )
                breaker.record_failure(rate_limited=True)
            elif trips_breaker(error):
                breaker.record_failure()
            else:
                breaker.release()

        if rate_limited:
            logger.warning(
                "Rate limited by %s on %s, retry after %.1fs",
                provider, operation, error.retry_after,
            )
            self.metrics.record_rate_limit(provider, operation, error.retry_after)
            error_code = "rate_limited"
        elif isinstance(error, UpstreamError) and error.status_code is not None:
            error_code = f"http_{error.status_code}"
        else:
            error_code = type(error).__name__

        self.metrics.record_call(
            user_id, integration_id, provider, operation, duration_ms, False, error_code,
        )

    # --- Stats / admin ---

    def get_stats(self, provider: str, operation: str) -> CircuitSnapshot:
        return self._breaker(provider, operation).snapshot()

    def get_provider_stats(self, provider: str) -> dict[str, CircuitSnapshot]:
        return {
            op: breaker.snapshot()
            for (prov, op), breaker in self._breakers.items()
            if prov == provider
        }

    def get_system_health(self) -> dict[str, Any]:
        snapshots = [b.snapshot() for b in self._breakers.values()]
        total = len(snapshots)
        open_count = sum(1 for s in snapshots if s.state == CircuitState.OPEN)
        half_open = sum(1 for s in snapshots if s.state == CircuitState.HALF_OPEN)
        healthy = total - open_count - half_open
        return {
            "total_circuits": total,
            "open_circuits": open_count,
            "half_open_circuits": half_open,
            "healthy_circuits": healthy,
            "overall_health": (healthy / total) * 100 if total else 100.0,
            "rate_limited": self._rate_limits.active(),
        }

    def reset(self, provider: str, operation: str) -> None:
        """Manually close a circuit and drop its rate-limit window."""
        self._breaker(provider, operation).reset()
        self._rate_limits.clear(self._rate_key(provider, operation))
        logger.info("Circuit reset for %s:%s", provider, operation)

    def reset_all(self) -> None:
        for (provider, operation) in list(self._breakers):
            self.reset(provider, operation)
