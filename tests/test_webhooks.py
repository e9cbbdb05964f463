"""Test webhook signature verification and dispatch."""
import json

import pytest

from hub.errors import UpstreamError, WebhookSignatureError
from hub.integrations.models import ProviderIdentity, WebhookEnvelope
from hub.integrations.registry import IntegrationRegistry
from hub.integrations.signatures import HmacSha256Verifier, TimestampedHmacVerifier, compute_signature
from hub.integrations.webhooks import WebhookDispatcher, WebhookState, parse_event
from hub.observability.metrics import InMemoryMetrics

SECRET = "whsec_test"
IDENTITY = ProviderIdentity(provider="ledger", user_id="user-1")


def _envelope(body: dict, event_type="item.updated", signature=None, headers=None):
    raw = json.dumps(body).encode()
    all_headers = {"X-Signature": f"sha256={compute_signature(SECRET, raw)}" if signature is None else signature}
    all_headers.update(headers or {})
    return WebhookEnvelope(
        provider="ledger",
        event_type=event_type,
        raw_body=raw,
        headers=all_headers,
        user_id="user-1",
    )


def _setup(fake_integration, **integration_kwargs):
    registry = IntegrationRegistry()
    registry.register_factory("ledger", lambda identity: fake_integration(identity, **integration_kwargs))
    integration = registry.create(IDENTITY)
    metrics = InMemoryMetrics()
    dispatcher = WebhookDispatcher(
        registry,
        verifiers={"ledger": HmacSha256Verifier(header="X-Signature", prefix="sha256=")},
        secrets={"ledger": SECRET},
        metrics=metrics,
    )
    return dispatcher, integration, metrics


@pytest.mark.asyncio
async def test_tampered_signature_rejected_before_routing(fake_integration):
    dispatcher, integration, metrics = _setup(fake_integration)
    envelope = _envelope({"id": "evt_1"})
    tampered = envelope.model_copy(update={"raw_body": envelope.raw_body + b" "})

    with pytest.raises(WebhookSignatureError):
        await dispatcher.dispatch(tampered)

    assert integration.calls == []
    [event] = metrics.events_for("ledger", "webhook")
    assert event.code == "401"


@pytest.mark.asyncio
async def test_missing_signature_rejected(fake_integration):
    dispatcher, integration, _ = _setup(fake_integration)
    with pytest.raises(WebhookSignatureError):
        await dispatcher.dispatch(_envelope({"id": "evt_1"}, signature=""))
    assert integration.calls == []


@pytest.mark.asyncio
async def test_provider_without_secret_rejected(fake_integration):
    dispatcher, integration, _ = _setup(fake_integration)
    dispatcher = WebhookDispatcher(dispatcher.registry, verifiers=dispatcher._verifiers, secrets={})
    with pytest.raises(WebhookSignatureError):
        await dispatcher.dispatch(_envelope({"id": "evt_1"}))
    assert integration.calls == []


@pytest.mark.asyncio
async def test_valid_webhook_applied(fake_integration):
    dispatcher, integration, metrics = _setup(fake_integration)

    receipt = await dispatcher.dispatch(_envelope({"id": "evt_1"}))

    assert receipt.state == WebhookState.APPLIED
    assert receipt.handled is True
    assert receipt.event_id == "evt_1"
    assert "handle_webhook:item.updated" in integration.calls
    [event] = metrics.events_for("ledger", "webhook")
    assert event.code == "200"
    assert event.integration_id == "ledger-user-1"


@pytest.mark.asyncio
async def test_duplicate_delivery_is_noop(fake_integration):
    dispatcher, integration, _ = _setup(fake_integration)

    first = await dispatcher.dispatch(_envelope({"id": "evt_1"}))
    second = await dispatcher.dispatch(_envelope({"id": "evt_1"}))

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.handled is False
    assert integration.calls.count("handle_webhook:item.updated") == 1


@pytest.mark.asyncio
async def test_event_id_from_header(fake_integration):
    dispatcher, integration, _ = _setup(fake_integration)
    await dispatcher.dispatch(_envelope({"n": 1}, headers={"X-Event-Id": "hdr-1"}))
    receipt = await dispatcher.dispatch(_envelope({"n": 2}, headers={"X-Event-Id": "hdr-1"}))
    assert receipt.duplicate is True
    assert receipt.event_id == "hdr-1"


@pytest.mark.asyncio
async def test_unknown_event_type_is_noop(fake_integration):
    dispatcher, integration, _ = _setup(fake_integration)

    receipt = await dispatcher.dispatch(_envelope({"id": "evt_2"}, event_type="brand.new_event"))

    assert receipt.state == WebhookState.APPLIED
    assert receipt.handled is False
    assert not any(call.startswith("handle_webhook") for call in integration.calls)


@pytest.mark.asyncio
async def test_unknown_identity_is_noop(fake_integration):
    dispatcher, integration, metrics = _setup(fake_integration)
    envelope = _envelope({"id": "evt_3"}).model_copy(update={"user_id": "someone-else"})

    receipt = await dispatcher.dispatch(envelope)

    assert receipt.handled is False
    assert integration.calls == []
    assert metrics.events_for("ledger", "webhook")[0].code == "404"


@pytest.mark.asyncio
async def test_handler_failure_reported_and_reraised(fake_integration):
    dispatcher, integration, metrics = _setup(
        fake_integration, fail_with=UpstreamError("refetch failed", status_code=502),
    )

    with pytest.raises(UpstreamError):
        await dispatcher.dispatch(_envelope({"id": "evt_1"}))
    assert metrics.events_for("ledger", "webhook")[-1].code == "500"

    # released: a re-delivery is attempted again rather than treated as duplicate
    integration.fail_with = None
    receipt = await dispatcher.dispatch(_envelope({"id": "evt_1"}))
    assert receipt.handled is True
    assert receipt.duplicate is False


def test_hmac_verifier_base64():
    raw = b'{"id": "evt"}'
    verifier = HmacSha256Verifier(header="X-Hub-Signature", encoding="base64")
    good = WebhookEnvelope(
        provider="p", event_type="e", raw_body=raw,
        headers={"x-hub-signature": compute_signature(SECRET, raw, encoding="base64")},
    )
    assert verifier(good, SECRET)
    assert not verifier(good, "other-secret")


def test_hmac_verifier_requires_prefix():
    raw = b"{}"
    verifier = HmacSha256Verifier(prefix="sha256=")
    envelope = WebhookEnvelope(
        provider="p", event_type="e", raw_body=raw,
        headers={"X-Signature": compute_signature(SECRET, raw)},
    )
    assert not verifier(envelope, SECRET)


def _stripe_envelope(timestamp: int, secret=SECRET):
    raw = b'{"id": "evt_1"}'
    signature = compute_signature(secret, f"{timestamp}.".encode() + raw)
    return WebhookEnvelope(
        provider="p", event_type="e", raw_body=raw,
        headers={"Stripe-Signature": f"t={timestamp},v1=deadbeef,v1={signature}"},
    )


def test_timestamped_verifier_accepts_fresh_signature():
    verifier = TimestampedHmacVerifier(clock=lambda: 1_700_000_100)
    assert verifier(_stripe_envelope(1_700_000_000), SECRET)


def test_timestamped_verifier_rejects_stale_timestamp():
    verifier = TimestampedHmacVerifier(clock=lambda: 1_700_001_000)
    assert not verifier(_stripe_envelope(1_700_000_000), SECRET)


def test_timestamped_verifier_rejects_malformed_header():
    verifier = TimestampedHmacVerifier(clock=lambda: 1_700_000_000)
    envelope = WebhookEnvelope(provider="p", event_type="e", raw_body=b"{}", headers={"Stripe-Signature": "garbage"})
    assert not verifier(envelope, SECRET)


def test_parse_event_leaves_envelope_untouched():
    envelope = _envelope({"id": "evt_9", "item_id": "it_1"})
    event = parse_event(envelope)
    assert event.event_id == "evt_9"
    assert event.payload["item_id"] == "it_1"
    assert envelope.raw_body == json.dumps({"id": "evt_9", "item_id": "it_1"}).encode()


def test_signature_error_does_not_echo_body():
    error = WebhookSignatureError("Invalid webhook signature from ledger", provider="ledger")
    assert error.to_dict() == {"error": "WebhookSignatureError", "provider": "ledger"}
    assert error.suggested_status == 401
