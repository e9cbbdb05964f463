"""
Integration Hub Webhook Signatures.

HMAC-SHA256 verifiers shared by the dispatcher and the adapters. Every
comparison goes through ``hmac.compare_digest``.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Optional, Protocol
import base64
import hashlib
import hmac
import time

from hub.integrations.models import WebhookEnvelope


class SignatureVerifier(Protocol):
    def __call__(self, envelope: WebhookEnvelope, secret: str) -> bool: ...


def compute_signature(secret: str, payload: bytes, encoding: str = "hex") -> str:
    """HMAC-SHA256 of ``payload`` as hex or base64."""
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    if encoding == "base64":
        return base64.b64encode(digest).decode("ascii")
    return digest.hex()


@dataclass(frozen=True)
class HmacSha256Verifier:
    """Signature header carrying HMAC-SHA256(secret, raw_body), e.g. ``sha256=<hex>``."""
    header: str = "X-Signature"
    prefix: str = ""
    encoding: str = "hex"

    def __call__(self, envelope: WebhookEnvelope, secret: str) -> bool:
        received = envelope.header(self.header)
        if not received:
            return False
        received = received.strip()
        if self.prefix:
            if not received.startswith(self.prefix):
                return False
            received = received[len(self.prefix):]
        if self.encoding == "hex":
            received = received.lower()
        expected = compute_signature(secret, envelope.raw_body, self.encoding)
        return hmac.compare_digest(expected.encode("ascii"), received.encode("utf-8"))


@dataclass(frozen=True)
class TimestampedHmacVerifier:
    """
    ``t=<unix>,v1=<hex>[,v1=<hex>]`` over ``"<t>." + raw_body``.

    Rejects timestamps further than ``tolerance`` seconds from now, so a
    captured delivery cannot be replayed later.
    """
    header: str = "Stripe-Signature"
    scheme: str = "v1"
    tolerance: float = 300.0
    clock: Callable[[], float] = time.time

    def __call__(self, envelope: WebhookEnvelope, secret: str) -> bool:
        value = envelope.header(self.header)
        if not value:
            return False

        timestamp: Optional[str] = None
        candidates: list[str] = []
        for part in value.split(","):
            key, _, item = part.strip().partition("=")
            if key == "t":
                timestamp = item
            elif key == self.scheme:
                candidates.append(item.lower())

        if timestamp is None or not timestamp.isdigit() or not candidates:
            return False
        if abs(self.clock() - int(timestamp)) > self.tolerance:
            return False

        expected = compute_signature(secret, f"{timestamp}.".encode("ascii") + envelope.raw_body)
        return any(
            hmac.compare_digest(expected.encode("ascii"), candidate.encode("utf-8"))
            for candidate in candidates
        )


def is_valid_signature(
    envelope: WebhookEnvelope,
    verifier: Optional[SignatureVerifier],
    secret: Optional[str],
) -> bool:
    """A provider without a verifier or secret never passes."""
    if verifier is None or not secret:
        return False
    return verifier(envelope, secret)
