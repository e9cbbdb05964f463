"""
Integration Hub Idempotency Store: apply each webhook event at most once.

Providers re-deliver webhooks (timeouts on their side, manual replays). A
delivery is identified by a deterministic key (provider event id, or a hash
of the raw body when the provider sends none). The key is reserved before
the handler runs, completed after it succeeds and released if it fails so
the next delivery can try again.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable
import hashlib
import json


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdempotencyStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass
class IdempotencyRecord:
    """Record of one processed (or in-flight) delivery."""
    key: str
    scope: str
    status: IdempotencyStatus = IdempotencyStatus.IN_PROGRESS
    result: Any = None
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "scope": self.scope,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def generate_idempotency_key(scope: str, **kwargs: Any) -> str:
    """
    Deterministic key from a scope plus parameters.
    Same inputs always produce the same key.
    """
    data = json.dumps({"scope": scope, **kwargs}, sort_keys=True, default=str)
    return hashlib.sha256(data.encode()).hexdigest()[:32]


class IdempotencyStore:
    """In-memory idempotency store. Replace backing store for production."""

    def __init__(
        self,
        default_ttl_seconds: int = 86400,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._records: dict[str, IdempotencyRecord] = {}
        self.default_ttl = default_ttl_seconds
        self._clock = clock

    def check(self, key: str) -> IdempotencyRecord | None:
        """Return the live record for ``key``, dropping it if expired."""
        record = self._records.get(key)
        if record is None:
            return None
        if record.is_expired(self._clock()):
            del self._records[key]
            return None
        return record

    def reserve(self, key: str, scope: str, ttl_seconds: int | None = None) -> IdempotencyRecord | None:
        """
        Mark ``key`` in-progress. Returns None if it is already
        reserved or completed.
        """
        if self.check(key) is not None:
            return None
        now = self._clock()
        record = IdempotencyRecord(
            key=key,
            scope=scope,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds or self.default_ttl),
        )
        self._records[key] = record
        return record

    def complete(self, key: str, result: Any = None) -> bool:
        record = self._records.get(key)
        if not record:
            return False
        record.status = IdempotencyStatus.COMPLETED
        record.result = result
        record.completed_at = self._clock()
        return True

    def release(self, key: str) -> bool:
        """Drop a reservation after a failure so a retry can reserve it."""
        return self._records.pop(key, None) is not None

    def forget_scope(self, scope: str) -> int:
        """Remove every record of one scope (e.g. on revoke)."""
        keys = [k for k, r in self._records.items() if r.scope == scope]
        for k in keys:
            del self._records[k]
        return len(keys)

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [k for k, r in self._records.items() if r.is_expired(now)]
        for k in expired:
            del self._records[k]
        return len(expired)
