"""
Integration Hub Circuit Breaker.

One breaker per (provider, operation class). Protects against:
- Cascading failures (stop calling a failing sub-resource)
- Hammering a recovering provider (single half-open trial)
- Repeated rate limiting (separate, higher threshold)

Cool-down grows exponentially on every failed half-open trial, up to a cap,
and resets once a trial succeeds.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
import logging
import time

from hub.errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject calls
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    rate_limit_threshold: int = 10
    recovery_timeout: float = 30.0
    recovery_backoff: float = 2.0
    max_recovery_timeout: float = 600.0


@dataclass(frozen=True)
class CircuitSnapshot:
    """Read-only view of one breaker, for stats and health reports."""
    provider: str
    operation: str
    state: CircuitState
    consecutive_failures: int
    consecutive_rate_limits: int
    opened_at: float | None
    cooldown: float
    reopen_count: int
    total_calls: int
    total_failures: int

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "operation": self.operation,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_rate_limits": self.consecutive_rate_limits,
            "cooldown": self.cooldown,
            "reopen_count": self.reopen_count,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
        }


class CircuitBreaker:
    """
    State machine for a single (provider, operation) pair.

    Not locked internally; ProtectedCallExecutor serialises access per key.
    """

    def __init__(
        self,
        provider: str,
        operation: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.operation = operation
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._consecutive_rate_limits = 0
        self._opened_at: Optional[float] = None
        self._cooldown = self.config.recovery_timeout
        self._reopen_count = 0
        self._trial_in_flight = False
        self._total_calls = 0
        self._total_failures = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def cooldown(self) -> float:
        return self._cooldown

    def _cooldown_remaining(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self._cooldown - self._clock())

    def acquire(self) -> None:
        """
        Admit a call or raise CircuitOpenError.

        OPEN before cool-down elapses rejects. OPEN after cool-down moves to
        HALF_OPEN and admits exactly one trial; callers arriving while the
        trial is in flight are rejected.
        """
        if self._state == CircuitState.OPEN:
            remaining = self._cooldown_remaining()
            if remaining > 0:
                raise CircuitOpenError(self.provider, self.operation, retry_in=remaining)
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit half-open for %s:%s", self.provider, self.operation)

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(
                    self.provider, self.operation, retry_in=0.0, state="half_open",
                )
            self._trial_in_flight = True

        self._total_calls += 1

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            logger.info("Circuit closed for %s:%s after successful trial", self.provider, self.operation)
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._consecutive_rate_limits = 0
        self._opened_at = None
        self._cooldown = self.config.recovery_timeout
        self._reopen_count = 0
        self._trial_in_flight = False

    def record_failure(self, rate_limited: bool = False) -> None:
        self._total_failures += 1
        if self._state == CircuitState.OPEN:
            # admitted before the circuit opened; must not restart the cool-down
            return
        self._trial_in_flight = False

        if self._state == CircuitState.HALF_OPEN:
            self._cooldown = min(
                self._cooldown * self.config.recovery_backoff,
                self.config.max_recovery_timeout,
            )
            self._reopen_count += 1
            self._open("trial failed")
            return

        if rate_limited:
            self._consecutive_rate_limits += 1
            if self._consecutive_rate_limits >= self.config.rate_limit_threshold:
                self._open(f"{self._consecutive_rate_limits} consecutive rate limits")
            return

        self._consecutive_failures += 1
        if self._consecutive_failures >= self.config.failure_threshold:
            self._open(f"{self._consecutive_failures} consecutive failures")

    def release(self) -> None:
        """
        Record an outcome that says nothing about provider health
        (e.g. a 404). Resolves a pending half-open trial as healthy.
        """
        if self._state == CircuitState.HALF_OPEN:
            self.record_success()

    def abort_trial(self) -> None:
        """The half-open trial was cancelled; let the next caller try."""
        self._trial_in_flight = False

    def _open(self, reason: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        logger.warning(
            "Circuit opened for %s:%s (%s), cool-down %.1fs",
            self.provider, self.operation, reason, self._cooldown,
        )

    def reset(self) -> None:
        self.record_success()

    def snapshot(self) -> CircuitSnapshot:
        return CircuitSnapshot(
            provider=self.provider,
            operation=self.operation,
            state=self._state,
            consecutive_failures=self._consecutive_failures,
            consecutive_rate_limits=self._consecutive_rate_limits,
            opened_at=self._opened_at,
            cooldown=self._cooldown,
            reopen_count=self._reopen_count,
            total_calls=self._total_calls,
            total_failures=self._total_failures,
        )
