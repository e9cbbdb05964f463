"""
Integration Registry.

Maps each ProviderIdentity to its one live adapter instance. Adapters are
built by per-provider factories registered at startup.
"""
from __future__ import annotations
from typing import Callable, Optional
import logging

from hub.errors import ConfigurationError
from hub.integrations.contract import Integration
from hub.integrations.models import ProviderIdentity

logger = logging.getLogger(__name__)

IntegrationFactory = Callable[[ProviderIdentity], Integration]


class IntegrationRegistry:
    """Registry of adapter factories and live adapter instances."""

    def __init__(self):
        self._factories: dict[str, IntegrationFactory] = {}
        self._instances: dict[ProviderIdentity, Integration] = {}

    def register_factory(self, provider: str, factory: IntegrationFactory) -> None:
        if provider in self._factories:
            logger.warning("Replacing integration factory for %s", provider)
        self._factories[provider] = factory

    @property
    def providers(self) -> list[str]:
        return sorted(self._factories)

    def create(self, identity: ProviderIdentity) -> Integration:
        """Build (or return the existing) adapter for ``identity``."""
        existing = self._instances.get(identity)
        if existing is not None:
            return existing
        factory = self._factories.get(identity.provider)
        if factory is None:
            raise ConfigurationError(
                f"No integration registered for provider: {identity.provider}",
                provider=identity.provider,
            )
        integration = factory(identity)
        if not isinstance(integration, Integration):
            raise ConfigurationError(
                f"Factory for {identity.provider} returned {type(integration).__name__}, "
                "which does not implement Integration",
                provider=identity.provider,
            )
        self._instances[identity] = integration
        logger.info("Created %s integration for %s", identity.provider, identity)
        return integration

    def get(self, identity: ProviderIdentity) -> Optional[Integration]:
        return self._instances.get(identity)

    def remove(self, identity: ProviderIdentity) -> Optional[Integration]:
        integration = self._instances.pop(identity, None)
        if integration is not None:
            integration.clear_cache()
        return integration

    def for_user(self, user_id: str) -> list[Integration]:
        return [
            integration
            for identity, integration in self._instances.items()
            if identity.user_id == user_id
        ]
