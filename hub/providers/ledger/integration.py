"""
Ledger financial-data aggregator adapter.

Linked accounts, their transactions and the owning institution. Every
network call goes through the IntegrationContext with a narrow operation
class, so a transactions outage never opens the accounts circuit.
"""
from __future__ import annotations
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, TypeVar
import logging

from pydantic import BaseModel, ValidationError

from hub.errors import AuthenticationError, IntegrationError, RateLimitError
from hub.integrations.cache import EntityCache
from hub.integrations.contract import IntegrationContext, WebhookHandler, build_auth_result, validate_scopes
from hub.integrations.models import (
    AuthResult,
    Capability,
    ConnectionStatus,
    SyncResult,
    WebhookEnvelope,
    WebhookEvent,
    utcnow,
)
from hub.integrations.signatures import HmacSha256Verifier
from hub.integrations.sync import SubTask, SubTaskOutcome, SyncOrchestrator
from hub.integrations.webhooks import parse_event
from hub.providers.ledger.schemas import LedgerAccount, LedgerInstitution, LedgerTransaction

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

IDENTITY_ME = "identity.me"
CONNECTION_TEST = "connection.test"
ACCOUNTS_LIST = "accounts.list"
TRANSACTIONS_LIST = "transactions.list"
INSTITUTION_GET = "institution.get"

INITIAL_SYNC_WINDOW = timedelta(days=30)
WEBHOOK_RESYNC_WINDOW = timedelta(days=7)

WEBHOOK_VERIFIER = HmacSha256Verifier(header="Ledger-Signature")

SYNCED_RESOURCES = ("accounts", "transactions", "institution")

CACHE_TTL = {
    "accounts": 900.0,
    "transactions": 300.0,
    "institution": 86400.0,
}

CAPABILITIES = [
    Capability(
        name="accounts",
        description="Read linked accounts and balances",
        required_scopes=("accounts:read",),
    ),
    Capability(
        name="transactions",
        description="Read transaction history",
        required_scopes=("transactions:read",),
    ),
    Capability(
        name="institution",
        description="Read the institution an item is linked to",
        required_scopes=("institution:read",),
    ),
    Capability(
        name="identity",
        description="Read the account holder's identity",
        required_scopes=("identity:read",),
    ),
]


def parse_items(model: type[M], items: Iterable[Any]) -> tuple[list[M], int]:
    """Validate raw provider records. Returns (valid records, rejected count)."""
    parsed: list[M] = []
    skipped = 0
    for item in items:
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as exc:
            skipped += 1
            logger.debug("Skipping malformed %s: %d error(s)", model.__name__, exc.error_count())
    return parsed, skipped


class LedgerIntegration:
    """Integration for the Ledger aggregation API."""

    def __init__(
        self,
        context: IntegrationContext,
        cache: EntityCache | None = None,
        orchestrator: SyncOrchestrator | None = None,
    ):
        self.context = context
        self.identity = context.identity
        self.provider = context.provider
        self.cache = cache or EntityCache(ttl_seconds=CACHE_TTL)
        self.orchestrator = orchestrator or SyncOrchestrator()
        # per sub-resource: start of the last sync that fetched it successfully
        self._watermarks: dict[str, datetime] = {}
        # bumped by clear_cache so a sync in flight cannot restore a watermark
        self._epoch = 0

    @property
    def integration_id(self) -> str:
        return self.context.integration_id

    # --- Auth ---

    async def authenticate(self, config: Mapping[str, Any]) -> AuthResult:
        return await self.context.authenticate(
            config, verify=lambda: self.context.call(IDENTITY_ME, "GET", "/me"),
        )

    async def test_connection(self) -> ConnectionStatus:
        try:
            await self.context.call(CONNECTION_TEST, "GET", "/me")
        except RateLimitError as exc:
            return ConnectionStatus(is_connected=False, error=exc.message, rate_limit_info=exc.rate_limit)
        except IntegrationError as exc:
            return ConnectionStatus(is_connected=False, error=exc.message)
        return ConnectionStatus(is_connected=True)

    async def refresh_token(self) -> AuthResult:
        try:
            credential = await self.context.tokens.refresh(self.identity)
        except AuthenticationError as exc:
            return AuthResult(success=False, error=exc.message)
        return build_auth_result(credential)

    async def revoke_access(self) -> bool:
        revoked = await self.context.tokens.revoke(self.identity)
        self.clear_cache()
        return revoked

    # --- Capabilities ---

    def get_capabilities(self) -> list[Capability]:
        return list(CAPABILITIES)

    def validate_required_scopes(self, requested: Iterable[str]) -> bool:
        return validate_scopes(self.get_capabilities(), requested)

    def clear_cache(self) -> None:
        self.cache.clear()
        self._watermarks.clear()
        self._epoch += 1

    # --- Sync ---

    def get_last_sync_time(self) -> Optional[datetime]:
        """Oldest per-resource watermark; None until every resource has synced once."""
        if any(resource not in self._watermarks for resource in SYNCED_RESOURCES):
            return None
        return min(self._watermarks[resource] for resource in SYNCED_RESOURCES)

    async def sync_data(self, last_sync_time: Optional[datetime] = None) -> SyncResult:
        started = utcnow()
        since = self._transactions_since(last_sync_time, started)
        stamp = started.timestamp()
        logger.info("Starting %s sync for %s since %s", self.provider, self.identity, since.date())

        runs = {
            "accounts": partial(self._sync_accounts, stamp),
            "transactions": partial(self._sync_transactions, since, stamp),
            "institution": partial(self._sync_institution, stamp),
        }
        result = await self.orchestrator.sync_all(self.identity, [
            SubTask(name, partial(self._watermarked, name, started, run))
            for name, run in runs.items()
        ])

        return result.model_copy(update={"metadata": {
            **result.metadata,
            "accounts_in_cache": len(self.cache.values("accounts")),
            "transactions_in_cache": len(self.cache.values("transactions")),
        }})

    def _transactions_since(self, requested: Optional[datetime], started: datetime) -> datetime:
        """
        Window start for the transactions fetch.

        Never later than the transactions watermark, so a failed fetch is
        retried over the whole gap on the next sync.
        """
        watermark = self._watermarks.get("transactions")
        candidates = [t for t in (requested, watermark) if t is not None]
        if watermark is None:
            candidates.append(started - INITIAL_SYNC_WINDOW)
        return min(candidates)

    async def _watermarked(
        self,
        resource: str,
        started: datetime,
        run: Callable[[], Awaitable[SubTaskOutcome]],
    ) -> SubTaskOutcome:
        epoch = self._epoch
        outcome = await run()
        current = self._watermarks.get(resource)
        if epoch == self._epoch and (current is None or started > current):
            self._watermarks[resource] = started
        return outcome

    async def _sync_accounts(self, stamp: float) -> SubTaskOutcome:
        raw = await self.context.paginate(ACCOUNTS_LIST, "/accounts")
        accounts, skipped = parse_items(LedgerAccount, raw)
        written = await self.cache.put_many("accounts", ((a.account_id, a) for a in accounts), stamp)
        return SubTaskOutcome(processed=len(accounts), skipped=skipped, metadata={"written": written})

    async def _sync_transactions(self, since: datetime, stamp: float) -> SubTaskOutcome:
        raw = await self.context.paginate(
            TRANSACTIONS_LIST,
            "/transactions",
            params={"start_date": since.date().isoformat()},
        )
        transactions, skipped = parse_items(LedgerTransaction, raw)
        written = await self.cache.put_many(
            "transactions", ((t.transaction_id, t) for t in transactions), stamp,
        )
        return SubTaskOutcome(processed=len(transactions), skipped=skipped, metadata={"written": written})

    async def _sync_institution(self, stamp: float) -> SubTaskOutcome:
        body = await self.context.call(INSTITUTION_GET, "GET", "/institution")
        raw = body.get("institution", body) if isinstance(body, Mapping) else body
        institutions, skipped = parse_items(LedgerInstitution, [raw])
        for institution in institutions:
            await self.cache.put("institution", institution.institution_id, institution, stamp)
        return SubTaskOutcome(processed=len(institutions), skipped=skipped)

    # --- Webhooks ---

    def webhook_handlers(self) -> Mapping[str, WebhookHandler]:
        return {
            "TRANSACTIONS": self._on_transactions,
            "NEW_ACCOUNTS_AVAILABLE": self._on_new_accounts,
            "ITEM_ERROR": self._on_item_error,
            "PENDING_EXPIRATION": self._on_pending_expiration,
            "USER_PERMISSION_REVOKED": self._on_permission_revoked,
        }

    async def handle_webhook(self, envelope: WebhookEnvelope) -> None:
        """
        Verify and apply a webhook. Unknown event types are a logged no-op.

        Raises WebhookSignatureError before anything reads the body when the
        signature does not match the configured webhook secret.
        """
        self.context.verify_webhook(envelope)
        event = parse_event(envelope)
        handler = self.webhook_handlers().get(event.event_type)
        if handler is None:
            logger.info("Unhandled %s webhook event %s", self.provider, event.event_type)
            return
        await handler(event)

    async def _on_transactions(self, event: WebhookEvent) -> None:
        removed = event.payload.get("removed_transactions") or []
        for transaction_id in removed:
            await self.cache.invalidate("transactions", str(transaction_id))
        # narrow re-sync: recent transactions only
        started = utcnow()
        outcome = await self._sync_transactions(started - WEBHOOK_RESYNC_WINDOW, started.timestamp())
        logger.info(
            "Transactions webhook for %s: %d removed, %d refreshed",
            self.identity, len(removed), outcome.processed,
        )

    async def _on_new_accounts(self, event: WebhookEvent) -> None:
        await self.cache.invalidate("accounts")
        started = utcnow()
        await self._sync_accounts(started.timestamp())

    async def _on_item_error(self, event: WebhookEvent) -> None:
        error = event.payload.get("error") or {}
        logger.warning(
            "%s item error for %s: %s",
            self.provider, self.identity, error.get("error_code") if isinstance(error, Mapping) else error,
        )

    async def _on_pending_expiration(self, event: WebhookEvent) -> None:
        logger.info(
            "%s consent for %s expires at %s",
            self.provider, self.identity, event.payload.get("consent_expiration_time"),
        )

    async def _on_permission_revoked(self, event: WebhookEvent) -> None:
        # the provider already revoked access; only local state remains
        self.context.tokens.forget(self.identity)
        self.clear_cache()
        logger.info("%s permission revoked by user %s", self.provider, self.identity)
