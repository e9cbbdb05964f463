"""
Integration Hub Webhook Dispatcher: Inbound Event Delivery.

Per envelope:

    RECEIVED -> SIGNATURE_CHECKED -> REJECTED
                                  -> ROUTED -> APPLIED | FAILED

- HMAC-SHA256 signature check before anything reads the body
- Unknown event types are a logged no-op (forward compatible)
- Idempotent: a re-delivered event id is acknowledged without re-applying
- Handler failures are reported to metrics and re-raised
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional
import hashlib
import json
import logging

from hub.config import HubConfig
from hub.errors import WebhookSignatureError
from hub.integrations.models import ProviderIdentity, WebhookEnvelope, WebhookEvent
from hub.integrations.registry import IntegrationRegistry
from hub.integrations.signatures import SignatureVerifier, is_valid_signature
from hub.integrations.tokens import TokenManager
from hub.observability.metrics import MetricsSink, NullMetrics
from hub.resilience.idempotency import IdempotencyStore, generate_idempotency_key

logger = logging.getLogger(__name__)

EVENT_ID_HEADERS = (
    "X-Event-Id",
    "X-Webhook-Id",
    "Webhook-Id",
    "X-Delivery-Id",
)
EVENT_ID_FIELDS = ("event_id", "webhook_id", "id")


class WebhookState(str, Enum):
    RECEIVED = "received"
    SIGNATURE_CHECKED = "signature_checked"
    REJECTED = "rejected"
    ROUTED = "routed"
    APPLIED = "applied"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Event parsing (only after verification)
# ---------------------------------------------------------------------------

def _payload(envelope: WebhookEnvelope) -> dict[str, Any]:
    try:
        body = json.loads(envelope.raw_body or b"{}")
    except ValueError:
        logger.debug("%s webhook body is not JSON", envelope.provider)
        return {}
    return body if isinstance(body, dict) else {"data": body}


def event_id_for(envelope: WebhookEnvelope, payload: Optional[dict[str, Any]] = None) -> str:
    """Delivery id from headers or body, falling back to a digest of the body."""
    for name in EVENT_ID_HEADERS:
        value = envelope.header(name)
        if value:
            return value
    payload = _payload(envelope) if payload is None else payload
    for name in EVENT_ID_FIELDS:
        value = payload.get(name)
        if isinstance(value, (str, int)) and value != "":
            return str(value)
    return hashlib.sha256(envelope.raw_body).hexdigest()


def parse_event(envelope: WebhookEnvelope) -> WebhookEvent:
    """Typed event from a verified envelope. The envelope is left untouched."""
    payload = _payload(envelope)
    return WebhookEvent(
        provider=envelope.provider,
        event_type=envelope.event_type,
        event_id=event_id_for(envelope, payload),
        payload=payload,
        received_at=envelope.received_at,
    )


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WebhookReceipt:
    """Outcome of one dispatch."""
    provider: str
    event_type: str
    event_id: Optional[str]
    state: WebhookState
    handled: bool
    duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "event_type": self.event_type,
            "event_id": self.event_id,
            "state": self.state.value,
            "handled": self.handled,
            "duplicate": self.duplicate,
        }


class WebhookDispatcher:
    """Verifies, de-duplicates and routes inbound webhook envelopes."""

    def __init__(
        self,
        registry: IntegrationRegistry,
        verifiers: Mapping[str, SignatureVerifier],
        secrets: Mapping[str, str],
        metrics: MetricsSink | None = None,
        idempotency: IdempotencyStore | None = None,
    ):
        self.registry = registry
        self._verifiers = dict(verifiers)
        self._secrets = dict(secrets)
        self.metrics: MetricsSink = metrics or NullMetrics()
        self.idempotency = idempotency or IdempotencyStore()

    @classmethod
    def from_config(
        cls,
        registry: IntegrationRegistry,
        config: HubConfig,
        verifiers: Mapping[str, SignatureVerifier],
        tokens: TokenManager | None = None,
        metrics: MetricsSink | None = None,
        idempotency: IdempotencyStore | None = None,
    ) -> WebhookDispatcher:
        """
        Dispatcher using each provider's configured webhook secret.

        With ``tokens``, revoking an identity also drops its delivery records.
        """
        secrets = {
            name: provider.webhook_secret
            for name, provider in config.providers.items()
            if provider.webhook_secret
        }
        dispatcher = cls(registry, verifiers, secrets, metrics=metrics, idempotency=idempotency)
        if tokens is not None:
            tokens.on_forget(dispatcher.forget)
        return dispatcher

    def forget(self, identity: ProviderIdentity) -> int:
        """Drop the delivery records of one identity."""
        removed = self.idempotency.forget_scope(identity.key)
        if removed:
            logger.debug("Dropped %d webhook delivery record(s) for %s", removed, identity)
        return removed

    def verify(self, envelope: WebhookEnvelope) -> bool:
        """Signature check. A provider without a verifier or secret never passes."""
        return is_valid_signature(
            envelope,
            self._verifiers.get(envelope.provider),
            self._secrets.get(envelope.provider),
        )

    async def dispatch(self, envelope: WebhookEnvelope) -> WebhookReceipt:
        provider, event_type = envelope.provider, envelope.event_type
        logger.debug("Webhook %s/%s %s", provider, event_type, WebhookState.RECEIVED.value)

        if not self.verify(envelope):
            logger.warning("Rejected %s webhook %s: invalid signature", provider, event_type)
            self.metrics.record_webhook(envelope.user_id, None, provider, event_type, 401)
            raise WebhookSignatureError(f"Invalid webhook signature from {provider}", provider=provider)

        integration = None
        if envelope.user_id:
            integration = self.registry.get(ProviderIdentity(provider=provider, user_id=envelope.user_id))
        if integration is None:
            logger.warning("No %s integration for webhook user %s, ignoring", provider, envelope.user_id)
            self.metrics.record_webhook(envelope.user_id, None, provider, event_type, 404)
            return WebhookReceipt(provider, event_type, None, WebhookState.APPLIED, handled=False)

        integration_id = getattr(integration, "integration_id", None)
        if event_type not in integration.webhook_handlers():
            logger.info("Unhandled %s webhook event %s", provider, event_type)
            self.metrics.record_webhook(envelope.user_id, integration_id, provider, event_type, 200)
            return WebhookReceipt(provider, event_type, None, WebhookState.APPLIED, handled=False)

        event_id = event_id_for(envelope)
        key = generate_idempotency_key(f"webhook:{provider}", event_id=event_id)
        if self.idempotency.reserve(key, scope=integration.identity.key) is None:
            logger.info("Duplicate %s webhook %s (%s), skipping", provider, event_type, event_id)
            self.metrics.record_webhook(envelope.user_id, integration_id, provider, event_type, 200)
            return WebhookReceipt(
                provider, event_type, event_id, WebhookState.APPLIED, handled=False, duplicate=True,
            )

        logger.debug("Webhook %s/%s %s", provider, event_type, WebhookState.ROUTED.value)
        try:
            await integration.handle_webhook(envelope)
        except Exception:
            self.idempotency.release(key)
            logger.exception("Webhook %s/%s %s", provider, event_type, WebhookState.FAILED.value)
            self.metrics.record_webhook(envelope.user_id, integration_id, provider, event_type, 500)
            raise

        self.idempotency.complete(key)
        self.metrics.record_webhook(envelope.user_id, integration_id, provider, event_type, 200)
        return WebhookReceipt(provider, event_type, event_id, WebhookState.APPLIED, handled=True)
