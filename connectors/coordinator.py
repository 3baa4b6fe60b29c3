"""
OAuth flow coordinator — drives the authorization-code grant for every
provider through the ``BaseConnector`` interface.

Network calls (code exchange, profile lookup, revocation) happen before or
after the credential store's critical section, never inside it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence, Tuple, Union
from urllib.parse import urlsplit

from connectors.credential_store import CredentialStore
from connectors.errors import (
    CodeExpiredOrReused,
    InvalidGrant,
    InvalidRedirectTarget,
    InvalidState,
)
from connectors.models import (
    NO_REFRESH_TOKEN_ISSUED,
    AuthorizationResult,
    Credential,
    Provider,
)
from connectors.registry import ConnectorRegistry
from connectors.state_store import AuthorizationStateStore

logger = logging.getLogger(__name__)


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()


def check_redirect_target(target: str, allowed_origins: Sequence[str]) -> str:
    """
    Accept only absolute http(s) URLs whose origin is allowed.
    ``"*"`` in ``allowed_origins`` admits any http(s) origin.
    """
    parts = urlsplit(target)
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        raise InvalidRedirectTarget("redirect_target must be an absolute http(s) URL")
    if "*" in allowed_origins:
        return target
    if _origin(target) not in {o.rstrip("/").lower() for o in allowed_origins}:
        raise InvalidRedirectTarget(f"redirect_target origin {_origin(target)} is not allowed")
    return target


class OAuthFlowCoordinator:
    def __init__(
        self,
        registry: ConnectorRegistry,
        credentials: CredentialStore,
        states: AuthorizationStateStore,
        allowed_redirect_origins: Sequence[str] = ("*",),
    ) -> None:
        self._registry = registry
        self._credentials = credentials
        self._states = states
        self._allowed_redirect_origins = tuple(allowed_redirect_origins)

    async def begin_authorization(
        self,
        provider: Union[str, Provider],
        user_id: str,
        redirect_target: Optional[str] = None,
    ) -> Tuple[str, str]:
        """Return ``(authorization_url, state_token)`` for a fresh request."""
        connector = self._registry.require(provider)
        if redirect_target:
            check_redirect_target(redirect_target, self._allowed_redirect_origins)
        request = await self._states.issue(user_id, connector.provider, redirect_target or None)
        logger.info("Authorization started: user=%s provider=%s", user_id, connector.provider.value)
        return connector.get_auth_url(request.state_token), request.state_token

    async def complete_authorization(
        self,
        provider: Union[str, Provider],
        code: str,
        state_token: str,
    ) -> AuthorizationResult:
        """
        Validate the state, exchange ``code`` and store the resulting
        credential in place of any existing one.

        Raises ``InvalidState``, ``CodeExpiredOrReused`` or
        ``ProviderExchangeFailed``; the store is only written on success.
        """
        connector = self._registry.require(provider)
        request = await self._states.consume(state_token, connector.provider)

        try:
            grant = await connector.exchange_code(code)
        except InvalidGrant as exc:
            logger.warning(
                "Code exchange rejected for user=%s provider=%s: %s",
                request.user_id, connector.provider.value, exc,
            )
            raise CodeExpiredOrReused(
                "Authorization code expired or already used; start the connection again"
            ) from exc

        profile = await connector.fetch_profile(grant.access_token)

        credential = Credential(
            user_id=request.user_id,
            provider=connector.provider,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            scope=grant.scope or frozenset(connector.scopes),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=grant.expires_in),
            profile_identifier=profile.identifier,
            profile_name=profile.name,
        )
        stored = await self._credentials.replace(credential)

        result = AuthorizationResult(credential=stored, redirect_target=request.redirect_target)
        if grant.refresh_token is None:
            # Usable until it expires, then the user has to consent again.
            result.warnings.append(NO_REFRESH_TOKEN_ISSUED)
            logger.warning(
                "%s issued no refresh token for user %s; access expires at %s",
                connector.provider.value, request.user_id, stored.expires_at.isoformat(),
            )
        logger.info(
            "OAuth connected: user=%s provider=%s account=%s",
            request.user_id, connector.provider.value, profile.name,
        )
        return result

    async def cancel_authorization(self, provider: Union[str, Provider], state_token: str) -> None:
        """Destroy the state of a flow the provider reported as failed."""
        connector = self._registry.require(provider)
        try:
            await self._states.consume(state_token, connector.provider)
        except InvalidState as exc:
            logger.info("Nothing to cancel for %s callback: %s", connector.provider.value, exc)

    async def disconnect(self, user_id: str, provider: Union[str, Provider]) -> bool:
        """Revoke at the provider (best effort) and delete the stored credential."""
        connector = self._registry.require(provider)
        credential = await self._credentials.get(user_id, connector.provider)

        revoked = await connector.revoke_token(credential.refresh_token or credential.access_token)
        if not revoked:
            logger.warning(
                "%s did not confirm revocation for user %s; deleting local credential anyway",
                connector.provider.value, user_id,
            )
        return await self._credentials.delete(user_id, connector.provider)
