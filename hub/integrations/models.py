"""Integration runtime data model."""
from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from hub.resilience.rate_limit import RateLimitInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mask_token(token: Optional[str]) -> str:
    """Loggable form of a secret: first 4 characters only."""
    if not token:
        return "<none>"
    return f"{token[:4]}..."


class ProviderIdentity(BaseModel):
    """One connected account: a provider plus the host user who connected it."""
    model_config = ConfigDict(frozen=True)

    provider: str
    user_id: str

    @property
    def key(self) -> str:
        return f"{self.provider}:{self.user_id}"

    def __str__(self) -> str:
        return self.key


class Credential(BaseModel):
    """Provider credential. Owned by the TokenManager, never logged in clear."""
    model_config = ConfigDict(frozen=True)

    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    scopes: frozenset[str] = Field(default_factory=frozenset)
    token_type: str = "Bearer"

    def is_stale(self, now: datetime | None = None, skew_seconds: float = 60.0) -> bool:
        """Expired, or about to: refresh ``skew_seconds`` early to avoid races."""
        if self.expires_at is None:
            return False
        now = now or utcnow()
        return now >= self.expires_at - timedelta(seconds=skew_seconds)

    def __repr__(self) -> str:
        return (
            f"Credential(access_token={mask_token(self.access_token)!r}, "
            f"expires_at={self.expires_at!r}, scopes={sorted(self.scopes)!r})"
        )


class AuthResult(BaseModel):
    success: bool
    access_token: Optional[str] = Field(default=None, repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    scope: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class ConnectionStatus(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    is_connected: bool
    last_checked: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None
    rate_limit_info: Optional[RateLimitInfo] = None


class Capability(BaseModel):
    """Static feature declaration of an adapter."""
    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    enabled: bool = True
    required_scopes: tuple[str, ...] = ()


class SyncResult(BaseModel):
    """Outcome of one sync invocation. Never mutated after it is returned."""
    model_config = ConfigDict(frozen=True)

    success: bool
    items_processed: int = 0
    items_skipped: int = 0
    errors: tuple[str, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)


class WebhookEnvelope(BaseModel):
    """Inbound webhook exactly as received. The dispatcher never rewrites it."""
    model_config = ConfigDict(frozen=True)

    provider: str
    event_type: str
    raw_body: bytes
    headers: dict[str, str] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utcnow)
    user_id: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class WebhookEvent(BaseModel):
    """Typed event derived from a verified envelope."""
    model_config = ConfigDict(frozen=True)

    provider: str
    event_type: str
    event_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utcnow)
