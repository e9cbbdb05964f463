"""
Integration Hub Token Lifecycle Manager.

Centralised credential handling for every connected account:
- Authorization URL + code exchange
- Cached credentials, refreshed when stale (60s early)
- Refresh coalescing: concurrent callers share one in-flight refresh
- Revocation: best-effort remote call, unconditional local wipe

Plaintext credentials live only in the in-memory cache; persistence goes
through the SecretStore collaborator.
"""
from __future__ import annotations
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional
from urllib.parse import urlencode
import asyncio
import logging

import httpx

from hub.config import ProviderConfig
from hub.errors import AuthenticationError, ConfigurationError, IntegrationError
from hub.integrations.http_client import ProviderHttpClient
from hub.integrations.models import Credential, ProviderIdentity, mask_token, utcnow
from hub.integrations.secrets import SecretStore
from hub.resilience.executor import ProtectedCallExecutor

logger = logging.getLogger(__name__)

REFRESH_OPERATION = "auth.refresh"
REVOKE_OPERATION = "auth.revoke"
EXCHANGE_OPERATION = "auth.exchange"


def credential_from_token_response(
    data: Any,
    previous: Optional[Credential] = None,
    now: Optional[datetime] = None,
) -> Credential:
    """Build a Credential from an OAuth2 token endpoint response."""
    if not isinstance(data, Mapping) or not data.get("access_token"):
        raise AuthenticationError("Token endpoint response has no access_token")

    now = now or utcnow()
    expires_in = data.get("expires_in")
    expires_at = None
    if expires_in not in (None, ""):
        try:
            expires_at = now + timedelta(seconds=int(float(expires_in)))
        except (TypeError, ValueError) as exc:
            raise AuthenticationError(
                f"Token endpoint response has invalid expires_in: {expires_in!r}",
            ) from exc

    scope = data.get("scope")
    if isinstance(scope, str):
        scopes = frozenset(scope.replace(",", " ").split())
    elif isinstance(scope, (list, tuple)):
        scopes = frozenset(scope)
    else:
        scopes = previous.scopes if previous else frozenset()

    return Credential(
        access_token=data["access_token"],
        # most providers rotate the refresh token; some only return it once
        refresh_token=data.get("refresh_token") or (previous.refresh_token if previous else None),
        expires_at=expires_at,
        scopes=scopes,
        token_type=data.get("token_type", "Bearer"),
    )


class TokenManager:
    """Acquires, caches, refreshes and revokes per-identity credentials."""

    def __init__(
        self,
        executor: ProtectedCallExecutor,
        secret_store: SecretStore,
        providers: Mapping[str, ProviderConfig],
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utcnow,
        skew_seconds: float = 60.0,
    ):
        self.executor = executor
        self.secret_store = secret_store
        self._providers = dict(providers)
        self._http_client = http_client
        self._clock = clock
        self.skew_seconds = skew_seconds

        self._credentials: dict[ProviderIdentity, Credential] = {}
        self._opaque: dict[ProviderIdentity, bytes] = {}
        self._inflight: dict[ProviderIdentity, asyncio.Task] = {}
        # bumped on revoke so a refresh racing a revoke cannot resurrect state
        self._generation: dict[ProviderIdentity, int] = {}
        self._clients: dict[str, ProviderHttpClient] = {}
        self._forget_hooks: list[Callable[[ProviderIdentity], Any]] = []

    # --- Config / transport ---

    def provider_config(self, provider: str) -> ProviderConfig:
        config = self._providers.get(provider)
        if config is None:
            raise ConfigurationError(f"Unknown provider: {provider}", provider=provider)
        return config

    def _client(self, provider: str) -> ProviderHttpClient:
        client = self._clients.get(provider)
        if client is None:
            config = self.provider_config(provider)
            client = self._clients[provider] = ProviderHttpClient(
                provider,
                base_url=config.api_base_url,
                client=self._http_client,
                rate_limit_codes=config.rate_limit_codes,
            )
        return client

    # --- Storage ---

    def store(self, identity: ProviderIdentity, credential: Credential) -> None:
        """Persist (encrypted) and cache a credential."""
        self._opaque[identity] = self.secret_store.encrypt(credential.model_dump_json(), identity)
        self._credentials[identity] = credential
        self._generation.setdefault(identity, 0)

    def _load(self, identity: ProviderIdentity) -> Optional[Credential]:
        credential = self._credentials.get(identity)
        if credential is not None:
            return credential
        opaque = self._opaque.get(identity)
        if opaque is None:
            return None
        credential = Credential.model_validate_json(self.secret_store.decrypt(opaque, identity))
        self._credentials[identity] = credential
        return credential

    def has_credential(self, identity: ProviderIdentity) -> bool:
        return identity in self._credentials or identity in self._opaque

    def on_forget(self, hook: Callable[[ProviderIdentity], Any]) -> None:
        """Call ``hook(identity)`` whenever an identity's credential is forgotten."""
        self._forget_hooks.append(hook)

    def forget(self, identity: ProviderIdentity) -> None:
        """Drop every local trace of a credential."""
        self._credentials.pop(identity, None)
        self._opaque.pop(identity, None)
        self._generation[identity] = self._generation.get(identity, 0) + 1
        self.secret_store.delete(identity)
        for hook in self._forget_hooks:
            hook(identity)

    # --- OAuth flow ---

    def get_authorize_url(
        self,
        provider: str,
        state: str,
        scopes: Optional[list[str]] = None,
        extra_params: Optional[dict[str, str]] = None,
    ) -> str:
        """Authorization URL the user is redirected to."""
        config = self.provider_config(provider)
        config.require("authorize_url", "client_id", "redirect_uri")
        params = {
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "scope": " ".join(scopes if scopes is not None else config.scopes),
            "state": state,
            **(extra_params or {}),
        }
        return f"{config.authorize_url}?{urlencode(params)}"

    async def exchange_code(
        self,
        identity: ProviderIdentity,
        code: str,
        code_verifier: Optional[str] = None,
    ) -> Credential:
        """Exchange an authorization code for a credential and store it."""
        config = self.provider_config(identity.provider)
        config.require("token_url", "client_id")
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": config.redirect_uri,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
        }
        if code_verifier:
            form["code_verifier"] = code_verifier

        client = self._client(identity.provider)
        try:
            data = await self.executor.execute(
                identity.provider,
                EXCHANGE_OPERATION,
                lambda: client.request("POST", config.token_url, data=form),
                user_id=identity.user_id,
            )
        except IntegrationError as exc:
            raise AuthenticationError(
                f"Code exchange failed for {identity}: {exc.message}",
                provider=identity.provider,
                operation=EXCHANGE_OPERATION,
                retryable=exc.retryable,
            ) from exc

        credential = credential_from_token_response(data, now=self._clock())
        self.store(identity, credential)
        logger.info("Stored new credential for %s (%s)", identity, mask_token(credential.access_token))
        return credential

    # --- Lifecycle ---

    async def get_credential(self, identity: ProviderIdentity) -> Credential:
        """Cached credential if fresh, otherwise the result of a (shared) refresh."""
        credential = self._load(identity)
        if credential is None:
            raise AuthenticationError(f"No credential for {identity}", provider=identity.provider)
        if not credential.is_stale(self._clock(), self.skew_seconds):
            return credential
        return await self.refresh(identity)

    async def refresh(self, identity: ProviderIdentity) -> Credential:
        """
        Refresh through the token endpoint.

        At most one network refresh per identity is in flight; concurrent
        callers await the same task. A failure raises AuthenticationError
        and leaves the previous credential in place.
        """
        task = self._inflight.get(identity)
        if task is None:
            task = asyncio.ensure_future(self._refresh(identity))
            self._inflight[identity] = task
            task.add_done_callback(lambda done: self._clear_inflight(identity, done))
        # shield: a cancelled caller must not cancel the shared refresh
        return await asyncio.shield(task)

    def _clear_inflight(self, identity: ProviderIdentity, task: asyncio.Task) -> None:
        if self._inflight.get(identity) is task:
            del self._inflight[identity]

    async def _refresh(self, identity: ProviderIdentity) -> Credential:
        previous = self._load(identity)
        if previous is None:
            raise AuthenticationError(f"No credential for {identity}", provider=identity.provider)
        if not previous.refresh_token:
            raise AuthenticationError(
                f"Credential for {identity} is stale and has no refresh token",
                provider=identity.provider,
                operation=REFRESH_OPERATION,
            )

        config = self.provider_config(identity.provider)
        config.require("token_url")
        generation = self._generation.get(identity, 0)
        form = {
            "grant_type": "refresh_token",
            "refresh_token": previous.refresh_token,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
        }
        client = self._client(identity.provider)

        try:
            data = await self.executor.execute(
                identity.provider,
                REFRESH_OPERATION,
                lambda: client.request("POST", config.token_url, data=form),
                user_id=identity.user_id,
            )
        except IntegrationError as exc:
            logger.warning("Token refresh failed for %s: %s", identity, exc.code)
            raise AuthenticationError(
                f"Token refresh failed for {identity}: {exc.message}",
                provider=identity.provider,
                operation=REFRESH_OPERATION,
                retryable=exc.retryable,
            ) from exc

        if self._generation.get(identity, 0) != generation:
            raise AuthenticationError(
                f"Access for {identity} was revoked during refresh",
                provider=identity.provider,
                operation=REFRESH_OPERATION,
            )

        credential = credential_from_token_response(data, previous=previous, now=self._clock())
        self.store(identity, credential)
        logger.info("Refreshed credential for %s (%s)", identity, mask_token(credential.access_token))
        return credential

    async def revoke(self, identity: ProviderIdentity) -> bool:
        """
        Revoke remotely (best effort) and wipe all local state regardless.

        Returns True if the provider confirmed the revocation, or if the
        provider has no revoke endpoint.
        """
        config = self.provider_config(identity.provider)
        try:
            credential = self._load(identity)
        except AuthenticationError:
            credential = None

        try:
            if credential is None or not config.revoke_url:
                return True
            client = self._client(identity.provider)
            await self.executor.execute(
                identity.provider,
                REVOKE_OPERATION,
                lambda: client.request(
                    "POST",
                    config.revoke_url,
                    data={"token": credential.access_token, "client_id": config.client_id},
                ),
                user_id=identity.user_id,
            )
            return True
        except IntegrationError as exc:
            # remote revoke is best effort; local state goes regardless
            logger.warning("Remote revoke failed for %s: %s", identity, exc.code)
            return False
        finally:
            self.forget(identity)
            logger.info("Revoked local credential state for %s", identity)
