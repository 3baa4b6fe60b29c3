"""
BaseConnector — abstract interface for all OAuth2 connectors.

Every provider (Gmail, Google Workspace, LinkedIn) subclasses this and
supplies its endpoints, scopes, and profile lookup.  The token-endpoint
plumbing (form POST, timeouts, error classification) lives here so
every provider fails the same way.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from connectors.errors import InvalidGrant, ProviderExchangeFailed
from connectors.models import Provider, ProviderConfig, ProviderProfile, TokenGrant, split_scope

logger = logging.getLogger(__name__)


class BaseConnector(ABC):
    """Abstract base for all OAuth2 connectors."""

    #: Seconds assumed when the token response has no ``expires_in``.
    default_expires_in: int = 3600

    def __init__(
        self,
        provider_config: ProviderConfig,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.provider_config = provider_config
        self._timeout = timeout
        self._transport = transport

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider(self) -> Provider:
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable: 'Gmail', 'Google Workspace', 'LinkedIn'."""
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes required by this connector."""
        ...

    @property
    def icon(self) -> str:
        """Optional emoji / icon for UI."""
        return "🔗"

    # ── Endpoints ───────────────────────────────────────────────────────
    @property
    @abstractmethod
    def authorization_endpoint(self) -> str:
        ...

    @property
    @abstractmethod
    def token_endpoint(self) -> str:
        ...

    def extra_authorization_params(self) -> Dict[str, str]:
        """Provider-specific query parameters (offline access, consent prompt)."""
        return {}

    def is_configured(self) -> bool:
        return self.provider_config.is_complete

    # ── OAuth flow ──────────────────────────────────────────────────────

    def get_auth_url(self, state: str) -> str:
        """Build the provider's authorization URL for the given state token."""
        params = {
            "response_type": "code",
            "client_id": self.provider_config.client_id,
            "redirect_uri": self.provider_config.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
        }
        params.update(self.extra_authorization_params())
        return f"{self.authorization_endpoint}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange the authorization code for tokens."""
        payload = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.provider_config.redirect_uri,
                "client_id": self.provider_config.client_id,
                "client_secret": self.provider_config.client_secret,
            }
        )
        return self._to_grant(payload)

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Use a refresh token to get a new access token."""
        payload = await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.provider_config.client_id,
                "client_secret": self.provider_config.client_secret,
            }
        )
        return self._to_grant(payload)

    @abstractmethod
    async def fetch_profile(self, access_token: str) -> ProviderProfile:
        """Look up the account the token belongs to."""
        ...

    async def revoke_token(self, token: str) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if provider doesn't support revocation.
        """
        return False

    # ── Helpers ─────────────────────────────────────────────────────────

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def classify_error(self, error: str, description: Optional[str]) -> str:
        """Hook for providers that report an expired code with a non-standard error."""
        return error

    async def _post_token(self, data: Dict[str, str]) -> httpx.Response:
        async with self.client() as client:
            return await client.post(
                self.token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
            )

    async def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        # httpx bounds each phase; wait_for bounds the whole exchange.
        try:
            resp = await asyncio.wait_for(self._post_token(data), timeout=self._timeout)
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            logger.warning("%s token endpoint timed out", self.provider.value)
            raise ProviderExchangeFailed("timeout", str(exc) or "token endpoint timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("%s token endpoint unreachable: %s", self.provider.value, exc)
            raise ProviderExchangeFailed("network_error", str(exc)) from exc

        try:
            body = resp.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}

        if resp.status_code >= 400 or "error" in body:
            error = body.get("error") or f"http_{resp.status_code}"
            description = body.get("error_description")
            error = self.classify_error(error, description)
            if error == "invalid_grant":
                raise InvalidGrant(description or "invalid_grant")
            raise ProviderExchangeFailed(error, description, status=resp.status_code)

        if not body.get("access_token"):
            raise ProviderExchangeFailed(
                "malformed_response",
                "token response has no access_token",
                status=resp.status_code,
            )
        return body

    def _to_grant(self, payload: Dict[str, Any]) -> TokenGrant:
        try:
            expires_in = int(payload.get("expires_in") or self.default_expires_in)
        except (TypeError, ValueError):
            expires_in = self.default_expires_in
        return TokenGrant(
            access_token=payload["access_token"],
            expires_in=expires_in,
            refresh_token=payload.get("refresh_token") or None,
            scope=frozenset(split_scope(payload.get("scope"))),
        )
