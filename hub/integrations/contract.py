"""
Integration Hub Contract: what every provider adapter exposes.

One Protocol, one concrete type per provider. Shared behaviour is composed
from an injected IntegrationContext and the free helper functions below,
not inherited from a base class:

- IntegrationContext.protected / .call / .paginate: network I/O through the
  ProtectedCallExecutor with a narrow operation class
- IntegrationContext.authenticate: code exchange or pre-issued credential,
  followed by one verification call
- IntegrationContext.verify_webhook: signature check against the provider's
  configured webhook secret
- validate_scopes / build_auth_result: pure helpers
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Protocol, runtime_checkable
import logging
import uuid

import httpx

from hub.config import ProviderConfig
from hub.errors import AuthenticationError, IntegrationError, WebhookSignatureError
from hub.integrations.http_client import ProviderHttpClient
from hub.integrations.models import (
    AuthResult,
    Capability,
    ConnectionStatus,
    Credential,
    ProviderIdentity,
    SyncResult,
    WebhookEnvelope,
    WebhookEvent,
    mask_token,
)
from hub.integrations.signatures import SignatureVerifier, is_valid_signature
from hub.integrations.tokens import TokenManager, credential_from_token_response
from hub.observability.metrics import MetricsSink, NullMetrics
from hub.resilience.executor import ProtectedCallExecutor

logger = logging.getLogger(__name__)

WebhookHandler = Callable[[WebhookEvent], Awaitable[None]]


@runtime_checkable
class Integration(Protocol):
    """Capability surface of a provider adapter."""

    provider: str
    identity: ProviderIdentity

    async def authenticate(self, config: Mapping[str, Any]) -> AuthResult: ...

    async def test_connection(self) -> ConnectionStatus: ...

    async def refresh_token(self) -> AuthResult: ...

    async def revoke_access(self) -> bool: ...

    async def sync_data(self, last_sync_time: Optional[datetime] = None) -> SyncResult: ...

    async def handle_webhook(self, envelope: WebhookEnvelope) -> None:
        """Verify, then apply. Raises WebhookSignatureError on a bad signature."""
        ...

    def get_capabilities(self) -> list[Capability]: ...

    def validate_required_scopes(self, requested: Iterable[str]) -> bool: ...

    def clear_cache(self) -> None: ...

    def webhook_handlers(self) -> Mapping[str, WebhookHandler]: ...

    def get_last_sync_time(self) -> Optional[datetime]: ...


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def validate_scopes(capabilities: Iterable[Capability], requested: Iterable[str]) -> bool:
    """True if every requested scope is declared by some capability."""
    known = {scope for cap in capabilities for scope in cap.required_scopes}
    return all(scope in known for scope in requested)


def build_auth_result(credential: Credential) -> AuthResult:
    return AuthResult(
        success=True,
        access_token=credential.access_token,
        refresh_token=credential.refresh_token,
        expires_at=credential.expires_at,
        scope=sorted(credential.scopes),
    )


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass
class IntegrationContext:
    """Collaborators injected into one adapter instance."""
    identity: ProviderIdentity
    executor: ProtectedCallExecutor
    tokens: TokenManager
    config: ProviderConfig
    metrics: MetricsSink = field(default_factory=NullMetrics)
    integration_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    http_client: Optional[httpx.AsyncClient] = None
    webhook_verifier: Optional[SignatureVerifier] = None
    _http: Optional[ProviderHttpClient] = field(default=None, init=False, repr=False)

    @property
    def provider(self) -> str:
        return self.identity.provider

    @property
    def http(self) -> ProviderHttpClient:
        if self._http is None:
            self._http = ProviderHttpClient(
                self.provider,
                base_url=self.config.api_base_url,
                client=self.http_client,
                rate_limit_codes=self.config.rate_limit_codes,
            )
        return self._http

    def verify_webhook(self, envelope: WebhookEnvelope) -> None:
        """Raise WebhookSignatureError unless the envelope carries a valid signature."""
        if not is_valid_signature(envelope, self.webhook_verifier, self.config.webhook_secret):
            logger.warning("Rejected %s webhook %s: invalid signature", self.provider, envelope.event_type)
            raise WebhookSignatureError(f"Invalid webhook signature from {self.provider}", provider=self.provider)

    async def protected(self, operation: str, fn: Callable[[], Any], timeout: Optional[float] = None) -> Any:
        """Run ``fn`` through the executor, attributed to this identity."""
        return await self.executor.execute(
            self.provider,
            operation,
            fn,
            timeout=timeout,
            user_id=self.identity.user_id,
            integration_id=self.integration_id,
        )

    async def call(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Authenticated request under protection.

        A 401/403 answer triggers one token refresh and one retry when the
        credential is refreshable.
        """
        credential = await self.tokens.get_credential(self.identity)
        try:
            return await self.protected(
                operation,
                lambda: self.http.request(method, path, token=credential.access_token, **kwargs),
                timeout,
            )
        except AuthenticationError:
            if not credential.refresh_token:
                raise
            logger.info("%s rejected token for %s, refreshing", self.provider, operation)
            refreshed = await self.tokens.refresh(self.identity)
            return await self.protected(
                operation,
                lambda: self.http.request(method, path, token=refreshed.access_token, **kwargs),
                timeout,
            )

    async def paginate(
        self,
        operation: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> list[Any]:
        """Every page of a list endpoint, as one protected call."""
        credential = await self.tokens.get_credential(self.identity)
        return await self.protected(
            operation,
            lambda: self.http.paginate(path, token=credential.access_token, params=params),
            timeout,
        )

    async def authenticate(
        self,
        config: Mapping[str, Any],
        verify: Callable[[], Awaitable[Any]],
    ) -> AuthResult:
        """
        Obtain a credential and prove it works.

        ``config`` carries either an authorization ``code`` (plus optional
        ``code_verifier``) or a pre-issued ``access_token``. ``verify`` is the
        adapter's "who am I" call. Failure returns an unsuccessful AuthResult
        and leaves no credential behind.
        """
        try:
            if config.get("code"):
                credential = await self.tokens.exchange_code(
                    self.identity, config["code"], config.get("code_verifier"),
                )
            else:
                credential = credential_from_token_response(config)
                self.tokens.store(self.identity, credential)
            await verify()
        except IntegrationError as exc:
            logger.warning("Authentication failed for %s: %s", self.identity, exc.code)
            self.tokens.forget(self.identity)
            return AuthResult(success=False, error=exc.message)

        logger.info("Authenticated %s (%s)", self.identity, mask_token(credential.access_token))
        return build_auth_result(credential)
