"""Ledger: reference provider adapter.

Financial-data aggregator (accounts, transactions, institution):
- OAuth code exchange + "who am I" verification
- Fan-out sync with per-sub-resource operation classes
- Webhook handlers with narrow re-sync and cache invalidation
"""
from __future__ import annotations
from typing import Callable, Optional

import httpx

from hub.integrations.contract import IntegrationContext
from hub.integrations.models import ProviderIdentity
from hub.integrations.tokens import TokenManager
from hub.observability.metrics import MetricsSink
from hub.providers.ledger.integration import CAPABILITIES, WEBHOOK_VERIFIER, LedgerIntegration
from hub.providers.ledger.schemas import LedgerAccount, LedgerInstitution, LedgerTransaction
from hub.resilience.executor import ProtectedCallExecutor


def ledger_factory(
    executor: ProtectedCallExecutor,
    tokens: TokenManager,
    metrics: Optional[MetricsSink] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Callable[[ProviderIdentity], LedgerIntegration]:
    """Factory for IntegrationRegistry.register_factory."""

    def build(identity: ProviderIdentity) -> LedgerIntegration:
        context = IntegrationContext(
            identity=identity,
            executor=executor,
            tokens=tokens,
            config=tokens.provider_config(identity.provider),
            metrics=metrics or executor.metrics,
            http_client=http_client,
            webhook_verifier=WEBHOOK_VERIFIER,
        )
        return LedgerIntegration(context)

    return build


__all__ = [
    "CAPABILITIES",
    "LedgerAccount",
    "LedgerInstitution",
    "LedgerIntegration",
    "LedgerTransaction",
    "WEBHOOK_VERIFIER",
    "ledger_factory",
]
