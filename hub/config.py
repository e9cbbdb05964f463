"""Explicit configuration for the integration runtime.

Everything the runtime needs is passed in at construction time:

- ProtectionConfig: breaker thresholds, retry policy, call timeout
  (frozen dataclass, per-provider overrides)
- ProviderConfig: OAuth client credentials, endpoints and webhook secret
  for one provider
- HubConfig: both of the above, plus ``from_env()`` which is the single
  place the environment is read

Usage::

    config = HubConfig.from_env()
    executor = ProtectedCallExecutor(config.protection)
    tokens = TokenManager(executor, secret_store, config.providers)
"""

from __future__ import annotations
from typing import Mapping, Optional
import os

from pydantic import BaseModel, Field

from hub.errors import ConfigurationError
from hub.resilience.executor import ProtectionConfig

__all__ = ["HubConfig", "ProtectionConfig", "ProviderConfig"]


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class ProviderConfig(BaseModel):
    """OAuth + API settings for one provider, supplied by the host app."""

    provider: str
    client_id: str = ""
    client_secret: str = Field(default="", repr=False)
    redirect_uri: str = ""
    api_base_url: str = ""
    authorize_url: Optional[str] = None
    token_url: Optional[str] = None
    revoke_url: Optional[str] = None
    webhook_secret: Optional[str] = Field(default=None, repr=False)
    scopes: list[str] = Field(default_factory=list)
    # provider error codes (in JSON bodies) that mean "rate limited"
    rate_limit_codes: list[str] = Field(default_factory=list)

    def require(self, *names: str) -> None:
        """Raise ConfigurationError if any named field is empty."""
        missing = [n for n in names if not getattr(self, n)]
        if missing:
            raise ConfigurationError(
                f"Configuration field(s) {', '.join(missing)} required for {self.provider}",
                provider=self.provider,
            )


class HubConfig(BaseModel):
    """Complete runtime configuration."""

    protection: ProtectionConfig = Field(default_factory=ProtectionConfig)
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)

    def provider(self, name: str) -> ProviderConfig:
        config = self.providers.get(name)
        if config is None:
            raise ConfigurationError(f"No configuration for provider: {name}", provider=name)
        return config

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        protection: ProtectionConfig | None = None,
    ) -> "HubConfig":
        """
        Discover provider settings once, at startup.

        ``HUB_PROVIDERS=ledger,notes`` names the providers; each reads
        ``HUB_<PROVIDER>_CLIENT_ID``, ``_CLIENT_SECRET``, ``_REDIRECT_URI``,
        ``_API_BASE_URL``, ``_AUTHORIZE_URL``, ``_TOKEN_URL``, ``_REVOKE_URL``,
        ``_WEBHOOK_SECRET``, ``_SCOPES`` (space or comma separated) and
        ``_RATE_LIMIT_CODES``.
        """
        env = os.environ if environ is None else environ
        names = [p.strip() for p in env.get("HUB_PROVIDERS", "").split(",") if p.strip()]

        providers: dict[str, ProviderConfig] = {}
        for name in names:
            prefix = "HUB_" + name.upper().replace("-", "_") + "_"

            def get(key: str, default: str = "") -> str:
                return env.get(prefix + key, default)

            providers[name] = ProviderConfig(
                provider=name,
                client_id=get("CLIENT_ID"),
                client_secret=get("CLIENT_SECRET"),
                redirect_uri=get("REDIRECT_URI"),
                api_base_url=get("API_BASE_URL"),
                authorize_url=get("AUTHORIZE_URL") or None,
                token_url=get("TOKEN_URL") or None,
                revoke_url=get("REVOKE_URL") or None,
                webhook_secret=get("WEBHOOK_SECRET") or None,
                scopes=_split(get("SCOPES")),
                rate_limit_codes=_split(get("RATE_LIMIT_CODES")),
            )

        return cls(protection=protection or ProtectionConfig(), providers=providers)


def _split(value: str) -> list[str]:
    return [part for part in value.replace(",", " ").split() if part]
