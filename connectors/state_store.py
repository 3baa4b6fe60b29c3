"""
Anti-CSRF state for in-flight authorizations.

States are random server-side tokens persisted in ``oauth_states`` so that
"single use" holds across workers: consuming is a conditional DELETE and
only the caller whose DELETE removed the row wins.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.errors import InvalidState
from connectors.models import AuthorizationRequest, OAuthState, Provider

logger = logging.getLogger(__name__)


class AuthorizationStateStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_seconds: int = 600,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)

    async def issue(
        self,
        user_id: str,
        provider: Provider,
        redirect_target: Optional[str] = None,
    ) -> AuthorizationRequest:
        now = datetime.now(timezone.utc)
        request = AuthorizationRequest(
            state_token=secrets.token_urlsafe(32),
            user_id=user_id,
            provider=provider,
            issued_at=now,
            expires_at=now + self._ttl,
            redirect_target=redirect_target,
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    OAuthState(
                        state_token=request.state_token,
                        user_id=uuid.UUID(user_id),
                        provider=provider.value,
                        redirect_target=redirect_target,
                        issued_at=request.issued_at,
                        expires_at=request.expires_at,
                    )
                )
        return request

    async def consume(self, state_token: str, provider: Provider) -> AuthorizationRequest:
        """
        Validate and destroy a state token.

        A state issued for another provider is rejected but left in place;
        any other match is deleted before the checks that can still fail,
        so an expired state cannot be retried either.
        """
        if not state_token:
            raise InvalidState("Missing OAuth state")

        async with self._session_factory() as session:
            async with session.begin():
                row = (
                    await session.execute(
                        select(OAuthState).where(OAuthState.state_token == state_token)
                    )
                ).scalar_one_or_none()
                if row is None:
                    raise InvalidState("Unknown or already used OAuth state")
                if row.provider != provider.value:
                    raise InvalidState("OAuth state was issued for a different provider")

                result = await session.execute(
                    delete(OAuthState).where(OAuthState.state_token == state_token)
                )
                if result.rowcount != 1:
                    # Lost the race against a concurrent callback with the same state.
                    raise InvalidState("Unknown or already used OAuth state")

        request = AuthorizationRequest(
            state_token=row.state_token,
            user_id=str(row.user_id),
            provider=Provider(row.provider),
            issued_at=row.issued_at,
            expires_at=row.expires_at,
            redirect_target=row.redirect_target,
        )
        if request.is_expired():
            raise InvalidState("OAuth state expired")
        return request

    async def purge_expired(self) -> int:
        """Delete states past their expiry; returns the number removed."""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(OAuthState).where(OAuthState.expires_at <= datetime.now(timezone.utc))
                )
        if result.rowcount:
            logger.info("Purged %d expired OAuth states", result.rowcount)
        return result.rowcount
