"""
Integration Hub Error Taxonomy.

Every failure that leaves the runtime is one of these types. Adapters
translate provider-specific error shapes into this taxonomy; they never
turn a hard error into an empty result.

- AuthenticationError: credential invalid/expired and unrefreshable
- CircuitOpenError: fast-fail, no call attempted
- RateLimitError: caller should back off for ``retry_after`` seconds
- UpstreamError: provider returned a hard error
- CallTimeoutError: the call did not settle within its timeout
- WebhookSignatureError: inbound webhook rejected, terminal
- SyncError: every sub-task of a fan-out failed
"""
from __future__ import annotations
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from hub.integrations.models import SyncResult
    from hub.resilience.rate_limit import RateLimitInfo


class IntegrationError(Exception):
    """Base exception for all integration runtime errors."""

    # HTTP status the outer HTTP layer should answer with
    suggested_status: int = 500

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        operation: Optional[str] = None,
        retryable: bool = False,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.operation = operation
        self.retryable = retryable
        self.details = details or {}

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "provider": self.provider,
            "operation": self.operation,
            "retryable": self.retryable,
        }


class ConfigurationError(IntegrationError):
    """Missing or invalid provider configuration."""


class AuthenticationError(IntegrationError):
    """Credential is invalid or expired and could not be refreshed."""

    suggested_status = 401


class WebhookSignatureError(IntegrationError):
    """Inbound webhook failed signature validation. Never retried."""

    suggested_status = 401

    def to_dict(self) -> dict[str, Any]:
        # no body echo, no hint about which check failed
        return {"error": self.code, "provider": self.provider}


# ---------------------------------------------------------------------------
# Protection layer
# ---------------------------------------------------------------------------

class ProtectionError(IntegrationError):
    """Failure surfaced by the protected call executor."""


class CircuitOpenError(ProtectionError):
    """The circuit for (provider, operation) is open; nothing was called."""

    suggested_status = 503

    def __init__(
        self,
        provider: str,
        operation: str,
        retry_in: float = 0.0,
        state: str = "open",
    ):
        super().__init__(
            f"Circuit breaker is {state} for {provider}:{operation}, "
            f"next attempt in {retry_in:.1f}s",
            provider=provider,
            operation=operation,
            retryable=True,
        )
        self.retry_in = retry_in
        self.state = state

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["retry_after"] = round(self.retry_in, 1)
        return data


class RateLimitError(ProtectionError):
    """Provider is shaping our traffic. Back off for ``retry_after`` seconds."""

    suggested_status = 429

    def __init__(
        self,
        message: str,
        retry_after: float,
        provider: Optional[str] = None,
        operation: Optional[str] = None,
        rate_limit: Optional[RateLimitInfo] = None,
        provider_code: Optional[str] = None,
    ):
        super().__init__(message, provider=provider, operation=operation, retryable=True)
        self.retry_after = retry_after
        self.rate_limit = rate_limit
        self.provider_code = provider_code

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        if self.rate_limit is not None:
            data["limit"] = self.rate_limit.limit
            data["remaining"] = self.rate_limit.remaining
        return data


class UpstreamError(ProtectionError):
    """Provider answered with a hard error (or could not be reached)."""

    suggested_status = 502

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        provider_code: Optional[str] = None,
        provider: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(
            message,
            provider=provider,
            operation=operation,
            retryable=status_code is None or status_code >= 500,
        )
        self.status_code = status_code
        self.provider_code = provider_code

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        data["provider_code"] = self.provider_code
        return data


class CallTimeoutError(ProtectionError):
    """The protected call did not complete within its timeout."""

    suggested_status = 504

    def __init__(
        self,
        message: str,
        timeout: Optional[float] = None,
        provider: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message, provider=provider, operation=operation, retryable=True)
        self.timeout = timeout


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

class SyncError(IntegrationError):
    """Every sub-task of a sync fan-out failed."""

    suggested_status = 502

    def __init__(
        self,
        message: str,
        result: Optional[SyncResult] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message, provider=provider, operation="sync")
        self.result = result
