"""Shared fixtures: fake clock, provider config, fake integration."""
from datetime import datetime
from typing import Optional

import pytest

from hub.config import ProviderConfig
from hub.integrations.models import (
    AuthResult,
    Capability,
    ConnectionStatus,
    ProviderIdentity,
    SyncResult,
)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIntegration:
    """Minimal Integration that records what was called on it."""

    def __init__(self, identity: ProviderIdentity, handled_events=("item.updated",), fail_with=None):
        self.identity = identity
        self.provider = identity.provider
        self.integration_id = f"{identity.provider}-{identity.user_id}"
        self.calls: list[str] = []
        self.handled_events = handled_events
        self.fail_with = fail_with
        self.sync_result = SyncResult(success=True, items_processed=3)

    async def authenticate(self, config):
        return AuthResult(success=True, access_token="tok")

    async def test_connection(self):
        return ConnectionStatus(is_connected=True)

    async def refresh_token(self):
        return AuthResult(success=True, access_token="tok")

    async def revoke_access(self):
        return True

    async def sync_data(self, last_sync_time: Optional[datetime] = None):
        self.calls.append("sync_data")
        if self.fail_with is not None:
            raise self.fail_with
        return self.sync_result

    async def handle_webhook(self, envelope):
        self.calls.append(f"handle_webhook:{envelope.event_type}")
        if self.fail_with is not None:
            raise self.fail_with

    def get_capabilities(self):
        return [Capability(name="items", description="Items", required_scopes=("items:read",))]

    def validate_required_scopes(self, requested):
        return True

    def clear_cache(self):
        self.calls.append("clear_cache")

    def webhook_handlers(self):
        self.calls.append("webhook_handlers")
        return {event: self._noop for event in self.handled_events}

    def get_last_sync_time(self):
        return None

    async def _noop(self, event):
        return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_integration():
    return FakeIntegration


@pytest.fixture
def ledger_config():
    return ProviderConfig(
        provider="ledger",
        client_id="cid",
        client_secret="csecret",
        redirect_uri="https://app.test/callback",
        api_base_url="https://api.ledger.test/v1",
        authorize_url="https://auth.ledger.test/authorize",
        token_url="https://auth.ledger.test/token",
        revoke_url="https://auth.ledger.test/revoke",
        webhook_secret="whsec_test",
        scopes=["accounts:read", "transactions:read"],
    )
