"""
Integration Hub Rate-Limit Detection.

Turns provider rate-limit signals (HTTP 429, ``Retry-After``,
``X-RateLimit-*`` headers, provider error codes) into structured
RateLimitInfo, and remembers per (provider, operation) how long further
calls must be suppressed.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Mapping, Optional
import time

DEFAULT_RETRY_AFTER = 60.0

# epoch-style reset headers are larger than this; smaller values are deltas
_EPOCH_THRESHOLD = 1_000_000_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RateLimitInfo:
    """Quota snapshot reported by a provider."""
    limit: int | None = None
    remaining: int | None = None
    reset_at: datetime | None = None

    def retry_after(self, now: datetime | None = None) -> float | None:
        if self.reset_at is None:
            return None
        now = now or _utcnow()
        return max(0.0, (self.reset_at - now).total_seconds())

    def to_dict(self) -> dict:
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
        }


def _header(headers: Mapping[str, str], *names: str) -> str | None:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value not in (None, ""):
            return value
    return None


def _to_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """
    Parse a ``Retry-After`` value. Accepts delta-seconds or an HTTP date.
    Returns seconds to wait, or None if the value is absent/unparseable.
    """
    if value is None:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or _utcnow()
    return max(0.0, (when - now).total_seconds())


def rate_limit_from_headers(
    headers: Mapping[str, str],
    now: datetime | None = None,
) -> tuple[RateLimitInfo, float]:
    """
    Build RateLimitInfo and a retry-after (seconds) from response headers.

    ``Retry-After`` wins; otherwise the reset header is used; otherwise
    DEFAULT_RETRY_AFTER.
    """
    now = now or _utcnow()
    limit = _to_int(_header(headers, "X-RateLimit-Limit", "RateLimit-Limit"))
    remaining = _to_int(_header(headers, "X-RateLimit-Remaining", "RateLimit-Remaining"))

    reset_at: datetime | None = None
    reset_raw = _to_int(_header(headers, "X-RateLimit-Reset", "RateLimit-Reset"))
    if reset_raw is not None:
        if reset_raw > _EPOCH_THRESHOLD:
            reset_at = datetime.fromtimestamp(reset_raw, tz=timezone.utc)
        else:
            reset_at = now + timedelta(seconds=reset_raw)

    retry_after = parse_retry_after(_header(headers, "Retry-After"), now)
    if retry_after is not None:
        reset_at = now + timedelta(seconds=retry_after)
    elif reset_at is not None:
        retry_after = max(0.0, (reset_at - now).total_seconds())
    else:
        retry_after = DEFAULT_RETRY_AFTER
        reset_at = now + timedelta(seconds=retry_after)

    return RateLimitInfo(limit=limit, remaining=remaining, reset_at=reset_at), retry_after


@dataclass
class _Suppression:
    until: float
    info: RateLimitInfo | None


class RateLimitTracker:
    """Per-key suppression windows derived from provider rate-limit responses."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows: dict[str, _Suppression] = {}

    def record(self, key: str, retry_after: float, info: RateLimitInfo | None = None) -> None:
        """Suppress calls for ``key`` for ``retry_after`` seconds."""
        until = self._clock() + max(0.0, retry_after)
        current = self._windows.get(key)
        if current is None or until > current.until:
            self._windows[key] = _Suppression(until=until, info=info)

    def check(self, key: str) -> Optional[tuple[float, RateLimitInfo | None]]:
        """Return (seconds_remaining, info) while suppressed, else None."""
        window = self._windows.get(key)
        if window is None:
            return None
        remaining = window.until - self._clock()
        if remaining <= 0:
            del self._windows[key]
            return None
        return remaining, window.info

    def clear(self, key: str) -> None:
        self._windows.pop(key, None)

    def active(self) -> dict[str, float]:
        """Keys currently suppressed, with seconds remaining."""
        now = self._clock()
        return {k: w.until - now for k, w in self._windows.items() if w.until > now}
