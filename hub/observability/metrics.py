"""
Integration Hub Metrics Collaborator.

Every component reports call outcomes, rate-limit hits and webhook events
to a MetricsSink. The sink is an external collaborator; InMemoryMetrics is a
reference implementation that aggregates per-provider health the same way
the adapters' health tracking does (totals, error rate, avg/p95 latency).
"""
from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class MetricsSink(Protocol):
    def record_call(
        self,
        user_id: Optional[str],
        integration_id: Optional[str],
        provider: str,
        operation: str,
        duration_ms: float,
        success: bool,
        error_code: Optional[str] = None,
    ) -> None: ...

    def record_rate_limit(self, provider: str, operation: str, retry_after: float) -> None: ...

    def record_webhook(
        self,
        user_id: Optional[str],
        integration_id: Optional[str],
        provider: str,
        event_type: str,
        status_code: int,
    ) -> None: ...


class NullMetrics:
    """Sink that drops everything."""

    def record_call(self, *args: Any, **kwargs: Any) -> None:
        return None

    def record_rate_limit(self, *args: Any, **kwargs: Any) -> None:
        return None

    def record_webhook(self, *args: Any, **kwargs: Any) -> None:
        return None


@dataclass
class ProviderHealth:
    """Health metrics for one provider."""
    provider: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rate_limited_requests: int = 0
    webhooks_received: int = 0
    webhooks_rejected: int = 0
    webhooks_failed: int = 0
    avg_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    last_success: datetime | None = None
    last_failure: datetime | None = None
    last_error: str | None = None
    _latencies: list[float] = field(default_factory=list, repr=False)

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.failed_requests / self.total_requests

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "total_requests": self.total_requests,
            "successful": self.successful_requests,
            "failed": self.failed_requests,
            "rate_limited": self.rate_limited_requests,
            "webhooks_received": self.webhooks_received,
            "webhooks_rejected": self.webhooks_rejected,
            "webhooks_failed": self.webhooks_failed,
            "error_rate": round(self.error_rate, 4),
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "p95_latency_ms": round(self.p95_latency_ms, 1),
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class MetricEvent:
    kind: str  # call | rate_limit | webhook
    provider: str
    name: str
    success: bool
    user_id: str | None = None
    integration_id: str | None = None
    duration_ms: float = 0.0
    code: str | None = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryMetrics:
    """In-memory sink. Replace with a real backend for production."""

    MAX_LATENCIES = 1000
    MAX_EVENTS = 5000

    def __init__(self):
        self._health: dict[str, ProviderHealth] = {}
        self.events: deque[MetricEvent] = deque(maxlen=self.MAX_EVENTS)

    def _provider(self, provider: str) -> ProviderHealth:
        health = self._health.get(provider)
        if health is None:
            health = self._health[provider] = ProviderHealth(provider=provider)
        return health

    def record_call(
        self,
        user_id: Optional[str],
        integration_id: Optional[str],
        provider: str,
        operation: str,
        duration_ms: float,
        success: bool,
        error_code: Optional[str] = None,
    ) -> None:
        health = self._provider(provider)
        now = datetime.now(timezone.utc)
        health.total_requests += 1
        if success:
            health.successful_requests += 1
            health.last_success = now
        else:
            health.failed_requests += 1
            health.last_failure = now
            health.last_error = error_code

        health._latencies.append(duration_ms)
        if len(health._latencies) > self.MAX_LATENCIES:
            health._latencies = health._latencies[-(self.MAX_LATENCIES // 2):]
        health.avg_latency_ms = sum(health._latencies) / len(health._latencies)
        sorted_lats = sorted(health._latencies)
        p95_idx = int(len(sorted_lats) * 0.95)
        health.p95_latency_ms = sorted_lats[min(p95_idx, len(sorted_lats) - 1)]

        self.events.append(MetricEvent(
            kind="call",
            provider=provider,
            name=operation,
            success=success,
            user_id=user_id,
            integration_id=integration_id,
            duration_ms=duration_ms,
            code=error_code,
        ))

    def record_rate_limit(self, provider: str, operation: str, retry_after: float) -> None:
        self._provider(provider).rate_limited_requests += 1
        self.events.append(MetricEvent(
            kind="rate_limit",
            provider=provider,
            name=operation,
            success=False,
            duration_ms=retry_after * 1000,
        ))

    def record_webhook(
        self,
        user_id: Optional[str],
        integration_id: Optional[str],
        provider: str,
        event_type: str,
        status_code: int,
    ) -> None:
        health = self._provider(provider)
        health.webhooks_received += 1
        if status_code in (401, 403):
            health.webhooks_rejected += 1
        elif status_code >= 500:
            health.webhooks_failed += 1
        self.events.append(MetricEvent(
            kind="webhook",
            provider=provider,
            name=event_type,
            success=status_code < 400,
            user_id=user_id,
            integration_id=integration_id,
            code=str(status_code),
        ))

    def get_health(self, provider: str) -> ProviderHealth:
        return self._provider(provider)

    def providers(self) -> list[str]:
        return sorted(self._health)

    def events_for(self, provider: str, kind: str | None = None) -> list[MetricEvent]:
        return [
            e for e in self.events
            if e.provider == provider and (kind is None or e.kind == kind)
        ]
