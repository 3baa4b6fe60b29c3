"""
Tests for the credential store: one row per (user, provider), token-only
updates, and encryption at rest.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from connectors.errors import CredentialNotFound
from connectors.models import Credential, OAuthCredential, Provider
from conftest import create_user


def _credential(user_id, access_token="at-1", refresh_token="rt-1", provider=Provider.GMAIL, minutes=60):
    return Credential(
        user_id=user_id,
        provider=provider,
        access_token=access_token,
        refresh_token=refresh_token,
        scope=frozenset({"https://www.googleapis.com/auth/gmail.readonly"}),
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=minutes),
        profile_identifier="g-123",
        profile_name="Ada Lovelace",
    )


async def _row_count(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(OAuthCredential))
        return result.scalar_one()


class TestReplace:
    @pytest.mark.asyncio
    async def test_replace_keeps_one_row_per_key(self, credential_store, session_factory, user_id):
        first = await credential_store.replace(_credential(user_id, "at-1"))
        second = await credential_store.replace(_credential(user_id, "at-2", "rt-2"))

        assert first.id != second.id
        assert await _row_count(session_factory) == 1

        stored = await credential_store.get(user_id, Provider.GMAIL)
        assert stored.access_token == "at-2"
        assert stored.refresh_token == "rt-2"
        assert stored.id == second.id

    @pytest.mark.asyncio
    async def test_providers_are_independent(self, credential_store, session_factory, user_id):
        await credential_store.replace(_credential(user_id, provider=Provider.GMAIL))
        await credential_store.replace(_credential(user_id, provider=Provider.LINKEDIN, refresh_token=None))

        listed = await credential_store.list_for_user(user_id)
        assert [c.provider for c in listed] == [Provider.GMAIL, Provider.LINKEDIN]
        assert listed[1].refresh_token is None

    @pytest.mark.asyncio
    async def test_concurrent_replace_never_duplicates(self, credential_store, session_factory, user_id):
        await asyncio.gather(
            *(credential_store.replace(_credential(user_id, f"at-{i}")) for i in range(5))
        )
        assert await _row_count(session_factory) == 1
        stored = await credential_store.get(user_id, Provider.GMAIL)
        assert stored.access_token in {f"at-{i}" for i in range(5)}
        assert stored.refresh_token == "rt-1"

    @pytest.mark.asyncio
    async def test_tokens_encrypted_at_rest(self, credential_store, session_factory, user_id):
        await credential_store.replace(_credential(user_id, "plain-access", "plain-refresh"))

        async with session_factory() as session:
            row = (await session.execute(select(OAuthCredential))).scalar_one()
        assert row.access_token != "plain-access"
        assert row.refresh_token != "plain-refresh"

        stored = await credential_store.get(user_id, Provider.GMAIL)
        assert stored.access_token == "plain-access"


class TestUpdateTokens:
    @pytest.mark.asyncio
    async def test_update_keeps_refresh_token_and_profile(self, credential_store, user_id):
        original = await credential_store.replace(_credential(user_id))
        new_expiry = datetime.now(timezone.utc) + timedelta(hours=2)

        updated = await credential_store.update_tokens(
            user_id, Provider.GMAIL, "at-new", new_expiry, credential_id=original.id,
        )

        assert updated.access_token == "at-new"
        assert updated.refresh_token == "rt-1"
        assert updated.profile_name == "Ada Lovelace"
        assert updated.scope == original.scope
        stored = await credential_store.get(user_id, Provider.GMAIL)
        assert stored.expires_at == new_expiry
        assert stored.id == original.id

    @pytest.mark.asyncio
    async def test_update_after_delete_raises(self, credential_store, user_id):
        await credential_store.replace(_credential(user_id))
        assert await credential_store.delete(user_id, Provider.GMAIL) is True

        with pytest.raises(CredentialNotFound):
            await credential_store.update_tokens(
                user_id, Provider.GMAIL, "at-new", datetime.now(timezone.utc),
            )

    @pytest.mark.asyncio
    async def test_update_against_replaced_row_raises(self, credential_store, user_id):
        stale = await credential_store.replace(_credential(user_id, "at-old"))
        await credential_store.replace(_credential(user_id, "at-fresh", "rt-fresh"))

        with pytest.raises(CredentialNotFound):
            await credential_store.update_tokens(
                user_id, Provider.GMAIL, "at-refreshed", datetime.now(timezone.utc),
                credential_id=stale.id,
            )
        stored = await credential_store.get(user_id, Provider.GMAIL)
        assert stored.access_token == "at-fresh"


class TestGetAndDelete:
    @pytest.mark.asyncio
    async def test_get_missing_raises(self, credential_store, user_id):
        with pytest.raises(CredentialNotFound):
            await credential_store.get(user_id, Provider.LINKEDIN)

    @pytest.mark.asyncio
    async def test_delete_is_scoped_to_user(self, credential_store, session_factory, user_id):
        other = await create_user(session_factory, "grace@example.com")
        await credential_store.replace(_credential(user_id))
        await credential_store.replace(_credential(other, "at-other"))

        assert await credential_store.delete(user_id, Provider.GMAIL) is True
        assert await credential_store.delete(user_id, Provider.GMAIL) is False
        assert (await credential_store.get(other, Provider.GMAIL)).access_token == "at-other"

    @pytest.mark.asyncio
    async def test_summary_hides_tokens(self, credential_store, user_id):
        stored = await credential_store.replace(_credential(user_id, refresh_token=None, minutes=-5))
        summary = stored.summary()

        assert "access_token" not in summary
        assert "refresh_token" not in summary
        assert summary["expired"] is True
        assert summary["needs_reauthorization"] is True
        assert summary["connected"] is False
