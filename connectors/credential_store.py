"""
Credential store — the single source of truth for per-user OAuth tokens.

Guarantees one row per ``(user_id, provider)``.  Every mutation of a key
runs inside a critical section for that key:

* an in-process ``asyncio.Lock`` (serializes coroutines of this worker);
* on PostgreSQL additionally ``pg_advisory_xact_lock`` (serializes workers),
  released automatically when the transaction ends.

``replace`` deletes and inserts inside one transaction, so a concurrent
``get`` sees either the old row or the new row, never a mix.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Tuple, Union

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import TokenCipher
from connectors.errors import CredentialNotFound
from connectors.models import Credential, OAuthCredential, Provider

logger = logging.getLogger(__name__)

_Key = Tuple[str, str]


def _to_uuid(value: Union[str, uuid.UUID]) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


class _KeyedLocks:
    """One ``asyncio.Lock`` per key, dropped once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._locks: Dict[_Key, asyncio.Lock] = {}
        self._users: Dict[_Key, int] = {}

    @asynccontextmanager
    async def hold(self, key: _Key) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class CredentialStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: TokenCipher,
    ) -> None:
        self._session_factory = session_factory
        self._cipher = cipher
        self._locks = _KeyedLocks()

    # ── Reads ───────────────────────────────────────────────────────────

    async def get(self, user_id: str, provider: Provider) -> Credential:
        async with self._session_factory() as session:
            row = await self._select(session, user_id, provider)
            if row is None:
                raise CredentialNotFound(f"No {provider.value} credential for user {user_id}")
            return self._to_credential(row)

    async def list_for_user(self, user_id: str) -> List[Credential]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OAuthCredential)
                .where(OAuthCredential.user_id == _to_uuid(user_id))
                .order_by(OAuthCredential.provider)
            )
            return [self._to_credential(row) for row in result.scalars().all()]

    # ── Mutations ───────────────────────────────────────────────────────

    async def replace(self, credential: Credential) -> Credential:
        """Atomically swap whatever is stored for the key with ``credential``."""
        now = datetime.now(timezone.utc)
        row = OAuthCredential(
            id=uuid.uuid4(),
            user_id=_to_uuid(credential.user_id),
            provider=credential.provider.value,
            access_token=self._cipher.encrypt(credential.access_token),
            refresh_token=self._cipher.encrypt(credential.refresh_token),
            scope=sorted(credential.scope),
            expires_at=credential.expires_at,
            profile_identifier=credential.profile_identifier,
            profile_name=credential.profile_name,
            created_at=now,
            updated_at=now,
        )
        async with self._critical_section(credential.user_id, credential.provider) as session:
            await session.execute(
                delete(OAuthCredential).where(
                    OAuthCredential.user_id == row.user_id,
                    OAuthCredential.provider == row.provider,
                )
            )
            session.add(row)
        logger.info(
            "Stored %s credential for user %s (refresh_token=%s)",
            credential.provider.value,
            credential.user_id,
            "yes" if credential.refresh_token else "no",
        )
        return self._to_credential(row)

    async def update_tokens(
        self,
        user_id: str,
        provider: Provider,
        access_token: str,
        expires_at: datetime,
        *,
        credential_id: Optional[str] = None,
    ) -> Credential:
        """
        Swap in a refreshed access token, touching nothing else.

        With ``credential_id`` the update only applies to that exact row; a
        row replaced since it was read counts as gone.
        """
        async with self._critical_section(user_id, provider) as session:
            row = await self._select(session, user_id, provider, for_update=True)
            if row is None or (credential_id is not None and str(row.id) != credential_id):
                raise CredentialNotFound(
                    f"{provider.value} credential for user {user_id} was removed or replaced"
                )
            row.access_token = self._cipher.encrypt(access_token)
            row.expires_at = expires_at
            row.updated_at = datetime.now(timezone.utc)
        return self._to_credential(row)

    async def delete(self, user_id: str, provider: Provider) -> bool:
        async with self._critical_section(user_id, provider) as session:
            result = await session.execute(
                delete(OAuthCredential).where(
                    OAuthCredential.user_id == _to_uuid(user_id),
                    OAuthCredential.provider == provider.value,
                )
            )
        deleted = result.rowcount > 0
        if deleted:
            logger.info("Deleted %s credential for user %s", provider.value, user_id)
        return deleted

    # ── Internals ───────────────────────────────────────────────────────

    @asynccontextmanager
    async def _critical_section(
        self, user_id: str, provider: Provider
    ) -> AsyncIterator[AsyncSession]:
        """Hold the key lock for the length of one committed transaction."""
        async with self._locks.hold((str(user_id), provider.value)):
            async with self._session_factory() as session:
                async with session.begin():
                    if session.bind.dialect.name == "postgresql":
                        await session.execute(
                            select(func.pg_advisory_xact_lock(
                                func.hashtext(f"oauth:{user_id}:{provider.value}")
                            ))
                        )
                    yield session

    async def _select(
        self,
        session: AsyncSession,
        user_id: str,
        provider: Provider,
        *,
        for_update: bool = False,
    ) -> Optional[OAuthCredential]:
        stmt = select(OAuthCredential).where(
            OAuthCredential.user_id == _to_uuid(user_id),
            OAuthCredential.provider == provider.value,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    def _to_credential(self, row: OAuthCredential) -> Credential:
        return Credential(
            id=str(row.id),
            user_id=str(row.user_id),
            provider=Provider(row.provider),
            access_token=self._cipher.decrypt(row.access_token),
            refresh_token=self._cipher.decrypt(row.refresh_token),
            scope=frozenset(row.scope or ()),
            expires_at=row.expires_at,
            profile_identifier=row.profile_identifier or "",
            profile_name=row.profile_name or "",
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
