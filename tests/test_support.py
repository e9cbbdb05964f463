"""Test the supporting stores: secrets, entity cache, idempotency, metrics, registry."""
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet

from hub.errors import AuthenticationError, ConfigurationError
from hub.integrations.cache import EntityCache
from hub.integrations.models import ProviderIdentity, mask_token
from hub.integrations.registry import IntegrationRegistry
from hub.integrations.secrets import FernetSecretStore
from hub.observability.metrics import InMemoryMetrics
from hub.resilience.idempotency import IdempotencyStatus, IdempotencyStore, generate_idempotency_key

ALICE = ProviderIdentity(provider="ledger", user_id="alice")
BOB = ProviderIdentity(provider="ledger", user_id="bob")


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------

def test_secret_store_roundtrip_and_isolation():
    store = FernetSecretStore(Fernet.generate_key())
    plaintext = '{"access_token": "tok_secret-value!"}'
    blob = store.encrypt(plaintext, ALICE)

    # "!" and "{" never occur in urlsafe base64
    assert b"tok_secret-value!" not in blob
    assert store.decrypt(blob, ALICE) == plaintext
    with pytest.raises(AuthenticationError):
        store.decrypt(blob, BOB)


def test_secret_store_delete():
    store = FernetSecretStore()
    store.encrypt("x", ALICE)
    assert store.load(ALICE) is not None
    store.delete(ALICE)
    assert store.load(ALICE) is None
    store.delete(ALICE)


def test_secret_store_rejects_short_key():
    with pytest.raises(ConfigurationError):
        FernetSecretStore(b"too-short")


def test_mask_token():
    assert mask_token("tok_abcdef") == "tok_..."
    assert mask_token(None) == "<none>"


# ---------------------------------------------------------------------------
# Entity cache
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cache_ttl_per_kind(clock):
    cache = EntityCache(ttl_seconds={"accounts": 60}, default_ttl=10, clock=clock)
    await cache.put("accounts", "a1", "account")
    await cache.put("transactions", "t1", "txn")

    clock.advance(30)
    assert cache.get("accounts", "a1") == "account"
    assert cache.get("transactions", "t1") is None


@pytest.mark.asyncio
async def test_cache_evicts_least_recently_used(clock):
    cache = EntityCache(max_entries=2, clock=clock)
    await cache.put("accounts", "a1", 1)
    await cache.put("accounts", "a2", 2)
    cache.get("accounts", "a1")
    await cache.put("accounts", "a3", 3)

    assert cache.get("accounts", "a1") == 1
    assert cache.get("accounts", "a2") is None
    assert len(cache) == 2


@pytest.mark.asyncio
async def test_cache_older_sync_does_not_overwrite(clock):
    cache = EntityCache(clock=clock)
    written = await cache.put_many("accounts", [("a1", "new"), ("a2", "new")], stamp=20.0)
    assert written == 2

    written = await cache.put_many("accounts", [("a1", "old"), ("a3", "old")], stamp=10.0)
    assert written == 1
    assert cache.get("accounts", "a1") == "new"
    assert cache.get("accounts", "a3") == "old"


@pytest.mark.asyncio
async def test_cache_invalidate(clock):
    cache = EntityCache(clock=clock)
    await cache.put_many("transactions", [("t1", 1), ("t2", 2)])
    await cache.put("accounts", "a1", 1)

    assert await cache.invalidate("transactions", "t1") == 1
    assert await cache.invalidate("transactions", "missing") == 0
    assert await cache.invalidate("transactions") == 1
    assert cache.values("transactions") == []
    assert cache.values("accounts") == [1]

    cache.clear()
    assert len(cache) == 0


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------

def test_idempotency_reserve_complete_release():
    store = IdempotencyStore()
    key = generate_idempotency_key("webhook:ledger", event_id="evt_1")

    assert store.reserve(key, scope="ledger:alice") is not None
    assert store.reserve(key, scope="ledger:alice") is None

    store.complete(key, result="done")
    assert store.check(key).status == IdempotencyStatus.COMPLETED
    assert store.reserve(key, scope="ledger:alice") is None

    assert store.release(key) is True
    assert store.reserve(key, scope="ledger:alice") is not None


def test_idempotency_key_is_deterministic():
    assert generate_idempotency_key("s", a=1, b=2) == generate_idempotency_key("s", b=2, a=1)
    assert generate_idempotency_key("s", a=1) != generate_idempotency_key("t", a=1)


def test_idempotency_expiry():
    now = [datetime(2026, 1, 1, tzinfo=timezone.utc)]
    store = IdempotencyStore(default_ttl_seconds=60, clock=lambda: now[0])
    store.reserve("k1", scope="s")
    store.reserve("k2", scope="s")

    now[0] += timedelta(seconds=61)
    assert store.check("k1") is None
    assert store.cleanup_expired() == 1
    assert store.reserve("k1", scope="s") is not None


def test_idempotency_forget_scope():
    store = IdempotencyStore()
    store.reserve("k1", scope="ledger:alice")
    store.reserve("k2", scope="ledger:alice")
    store.reserve("k3", scope="ledger:bob")
    assert store.forget_scope("ledger:alice") == 2
    assert store.check("k3") is not None


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

def test_metrics_health_aggregates():
    metrics = InMemoryMetrics()
    for ms in range(1, 21):
        metrics.record_call("u", "i", "ledger", "accounts.list", float(ms), True)
    metrics.record_call("u", "i", "ledger", "accounts.list", 100.0, False, "http_500")
    metrics.record_webhook("u", "i", "ledger", "TRANSACTIONS", 401)
    metrics.record_webhook("u", "i", "ledger", "TRANSACTIONS", 500)
    metrics.record_webhook("u", "i", "ledger", "TRANSACTIONS", 200)

    health = metrics.get_health("ledger")
    assert health.total_requests == 21
    assert health.failed_requests == 1
    assert health.last_error == "http_500"
    assert health.p95_latency_ms == 20.0
    assert health.webhooks_received == 3
    assert health.webhooks_rejected == 1
    assert health.webhooks_failed == 1
    assert health.to_dict()["error_rate"] == round(1 / 21, 4)
    assert metrics.providers() == ["ledger"]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def test_registry_create_is_idempotent(fake_integration):
    registry = IntegrationRegistry()
    registry.register_factory("ledger", fake_integration)

    first = registry.create(ALICE)
    assert registry.create(ALICE) is first
    assert registry.get(ALICE) is first
    assert registry.get(BOB) is None
    assert registry.providers == ["ledger"]


def test_registry_unknown_provider():
    with pytest.raises(ConfigurationError):
        IntegrationRegistry().create(ALICE)


def test_registry_rejects_non_integration():
    registry = IntegrationRegistry()
    registry.register_factory("ledger", lambda identity: object())
    with pytest.raises(ConfigurationError):
        registry.create(ALICE)


def test_registry_for_user_and_remove(fake_integration):
    registry = IntegrationRegistry()
    registry.register_factory("ledger", fake_integration)
    registry.register_factory("notes", fake_integration)
    alice_ledger = registry.create(ALICE)
    registry.create(ProviderIdentity(provider="notes", user_id="alice"))
    registry.create(BOB)

    assert len(registry.for_user("alice")) == 2

    removed = registry.remove(ALICE)
    assert removed is alice_ledger
    assert "clear_cache" in alice_ledger.calls
    assert len(registry.for_user("alice")) == 1
    assert registry.remove(ALICE) is None
