"""
ConnectorRegistry — builds and provides access to all connectors.

Built once by the application factory from ``Settings``; every connector
gets an immutable ``ProviderConfig`` at construction time.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Union

import httpx

from config.settings import Settings
from connectors.base import BaseConnector
from connectors.errors import ProviderNotConfigured
from connectors.google import GmailConnector, GoogleWorkspaceConnector
from connectors.linkedin import LinkedInConnector
from connectors.models import Provider, ProviderConfig

logger = logging.getLogger(__name__)

# ── All known connectors — add new ones here ─────────────────────────────

_CONNECTOR_CLASSES = {
    Provider.GMAIL: GmailConnector,
    Provider.GOOGLE_WORKSPACE: GoogleWorkspaceConnector,
    Provider.LINKEDIN: LinkedInConnector,
}


class ConnectorRegistry:
    """Registry of OAuth connectors keyed by provider."""

    def __init__(self, connectors: List[BaseConnector]) -> None:
        self._all: Dict[Provider, BaseConnector] = {c.provider: c for c in connectors}
        self._connectors: Dict[Provider, BaseConnector] = {}
        for conn in connectors:
            if conn.is_configured():
                self._connectors[conn.provider] = conn
                logger.info(
                    "Connector registered: %s (%s)",
                    conn.display_name,
                    conn.provider.value,
                )
            else:
                logger.warning(
                    "Connector %s skipped — not configured (missing client_id/secret)",
                    conn.provider.value,
                )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ConnectorRegistry":
        connectors = []
        for provider, connector_cls in _CONNECTOR_CLASSES.items():
            provider_config = ProviderConfig(**settings.provider_credentials(provider.value))
            connectors.append(
                connector_cls(
                    provider_config,
                    timeout=settings.provider_timeout_seconds,
                    transport=transport,
                )
            )
        return cls(connectors)

    def get(self, provider: Union[str, Provider]) -> Optional[BaseConnector]:
        """Get a configured connector by provider name."""
        try:
            return self._connectors.get(Provider(provider))
        except ValueError:
            return None

    def require(self, provider: Union[str, Provider]) -> BaseConnector:
        connector = self.get(provider)
        if connector is None:
            value = provider.value if isinstance(provider, Provider) else provider
            raise ProviderNotConfigured(f"Provider '{value}' not found or not configured")
        return connector

    def list_providers(self) -> List[Dict[str, object]]:
        """Return info about all known connectors."""
        return [
            {
                "provider": c.provider.value,
                "display_name": c.display_name,
                "icon": c.icon,
                "scopes": c.scopes,
                "configured": c.provider in self._connectors,
            }
            for c in self._all.values()
        ]

    def list_configured(self) -> List[str]:
        """Return names of configured connectors."""
        return [p.value for p in self._connectors]
