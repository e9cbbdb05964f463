"""
Integration Hub Integrations: Shared Provider Runtime.

Provides the provider-agnostic runtime every adapter plugs into:
- Integration: contract every adapter implements, plus IntegrationContext
- TokenManager: credential lifecycle (exchange, refresh coalescing, revoke)
- ProviderHttpClient: httpx access with error classification and pagination
- SyncOrchestrator: fan-out sync with partial-failure aggregation
- WebhookDispatcher: signature check, de-duplication and routing
- IntegrationRegistry / EntityCache: adapter instances and their caches
"""
from hub.integrations.cache import CacheEntry, EntityCache
from hub.integrations.contract import (
    Integration,
    IntegrationContext,
    WebhookHandler,
    build_auth_result,
    validate_scopes,
)
from hub.integrations.http_client import ProviderHttpClient, provider_error_code
from hub.integrations.models import (
    AuthResult,
    Capability,
    ConnectionStatus,
    Credential,
    ProviderIdentity,
    SyncResult,
    WebhookEnvelope,
    WebhookEvent,
    mask_token,
)
from hub.integrations.registry import IntegrationFactory, IntegrationRegistry
from hub.integrations.secrets import FernetSecretStore, SecretStore
from hub.integrations.sync import (
    Err,
    Ok,
    Settled,
    SubTask,
    SubTaskOutcome,
    SyncOrchestrator,
    settle_all,
)
from hub.integrations.signatures import (
    HmacSha256Verifier,
    SignatureVerifier,
    TimestampedHmacVerifier,
    compute_signature,
    is_valid_signature,
)
from hub.integrations.tokens import TokenManager, credential_from_token_response
from hub.integrations.webhooks import WebhookDispatcher, WebhookReceipt, WebhookState, parse_event

__all__ = [
    # Cache
    "CacheEntry",
    "EntityCache",
    # Contract
    "Integration",
    "IntegrationContext",
    "WebhookHandler",
    "build_auth_result",
    "validate_scopes",
    # HTTP
    "ProviderHttpClient",
    "provider_error_code",
    # Models
    "AuthResult",
    "Capability",
    "ConnectionStatus",
    "Credential",
    "ProviderIdentity",
    "SyncResult",
    "WebhookEnvelope",
    "WebhookEvent",
    "mask_token",
    # Registry
    "IntegrationFactory",
    "IntegrationRegistry",
    # Secrets
    "FernetSecretStore",
    "SecretStore",
    # Sync
    "Err",
    "Ok",
    "Settled",
    "SubTask",
    "SubTaskOutcome",
    "SyncOrchestrator",
    "settle_all",
    # Tokens
    "TokenManager",
    "credential_from_token_response",
    # Signatures
    "HmacSha256Verifier",
    "SignatureVerifier",
    "TimestampedHmacVerifier",
    "compute_signature",
    "is_valid_signature",
    # Webhooks
    "WebhookDispatcher",
    "WebhookReceipt",
    "WebhookState",
    "parse_event",
]
