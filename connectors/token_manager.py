"""
Token manager — hand out a currently-valid access token per user + provider.

This is the single interface that route handlers (Sheets, Gmail, LinkedIn
posting, …) use to get a token without touching OAuth mechanics.  Nothing
is cached between calls; the credential store is read every time.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Tuple, Union

from connectors.credential_store import CredentialStore
from connectors.errors import (
    CredentialNotFound,
    InvalidGrant,
    ProviderExchangeFailed,
    ReauthorizationRequired,
)
from connectors.models import Credential, Provider, parse_provider
from connectors.registry import ConnectorRegistry

logger = logging.getLogger(__name__)

# A refresh can lose against a concurrent re-consent; re-read at most this often.
_MAX_ATTEMPTS = 2


class TokenRefresher:
    def __init__(
        self,
        registry: ConnectorRegistry,
        credentials: CredentialStore,
        *,
        margin_seconds: float = 60,
    ) -> None:
        self._registry = registry
        self._credentials = credentials
        self._margin = margin_seconds

    async def get_valid_access_token(self, user_id: str, provider: Union[str, Provider]) -> str:
        """
        Return an access token valid for at least the safety margin.

        1. Read the credential (``CredentialNotFound`` if never connected).
        2. Still fresh → return it, no network call.
        3. No refresh token → ``ReauthorizationRequired``, no network call.
        4. Refresh at the provider; ``invalid_grant`` →
           ``ReauthorizationRequired`` with the stored row left untouched.
        5. Persist the new token and return it.
        """
        provider = parse_provider(provider)
        credential = await self._credentials.get(user_id, provider)

        for _ in range(_MAX_ATTEMPTS):
            if not credential.expires_within(self._margin):
                return credential.access_token
            if not credential.refresh_token:
                raise ReauthorizationRequired(
                    provider.value, "access token expired and no refresh token is stored"
                )

            access_token, expires_at = await self._refresh(credential)
            try:
                await self._credentials.update_tokens(
                    user_id,
                    provider,
                    access_token,
                    expires_at,
                    credential_id=credential.id,
                )
            except CredentialNotFound:
                # Replaced (re-consent) or deleted (disconnect) while we were
                # at the provider; answer from whatever is stored now.
                logger.info(
                    "%s credential for user %s changed during refresh; re-reading",
                    provider.value, user_id,
                )
                credential = await self._credentials.get(user_id, provider)
                continue

            logger.info("Refreshed %s token for user %s", provider.value, user_id)
            return access_token

        raise ProviderExchangeFailed("credential_changed", "credential kept changing during refresh")

    async def _refresh(self, credential: Credential) -> Tuple[str, datetime]:
        connector = self._registry.require(credential.provider)
        try:
            grant = await connector.refresh_access_token(credential.refresh_token)
        except InvalidGrant as exc:
            logger.warning(
                "Refresh token rejected for %s/%s: %s",
                credential.provider.value, credential.user_id, exc,
            )
            raise ReauthorizationRequired(
                credential.provider.value, "refresh token was revoked or expired"
            ) from exc
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=grant.expires_in)
        return grant.access_token, expires_at
