"""
Google connectors — OAuth2 web flow for Gmail and Google Workspace.

Both providers use the same Google endpoints; they differ only in the
scopes they request, so a user can grant Sheets/Drive without granting mail
access and vice versa.
"""

from __future__ import annotations

import logging
from typing import Dict, List

import httpx

from connectors.base import BaseConnector
from connectors.errors import ProviderExchangeFailed
from connectors.models import Provider, ProviderProfile

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

_IDENTITY_SCOPES = [
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]


class GoogleConnector(BaseConnector):
    """Shared Google OAuth2 behaviour; subclasses pick the scopes."""

    default_expires_in = 3600

    @property
    def authorization_endpoint(self) -> str:
        return _GOOGLE_AUTH_URL

    @property
    def token_endpoint(self) -> str:
        return _GOOGLE_TOKEN_URL

    def extra_authorization_params(self) -> Dict[str, str]:
        return {
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # force consent to always get refresh_token
            "include_granted_scopes": "true",
        }

    async def fetch_profile(self, access_token: str) -> ProviderProfile:
        try:
            async with self.client() as client:
                resp = await client.get(
                    _GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                resp.raise_for_status()
                info = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderExchangeFailed("profile_fetch_failed", str(exc)) from exc

        return ProviderProfile(
            identifier=str(info.get("id") or info.get("email") or ""),
            name=info.get("name") or info.get("email") or "Google User",
        )

    async def revoke_token(self, token: str) -> bool:
        """Revoke the token at Google (revoking either token kills the grant)."""
        try:
            async with self.client() as client:
                resp = await client.post(_GOOGLE_REVOKE_URL, params={"token": token})
                return resp.status_code == 200
        except httpx.HTTPError:
            logger.warning("Google token revocation failed", exc_info=True)
            return False


class GmailConnector(GoogleConnector):
    """OAuth2 connector for Gmail."""

    @property
    def provider(self) -> Provider:
        return Provider.GMAIL

    @property
    def display_name(self) -> str:
        return "Gmail"

    @property
    def scopes(self) -> List[str]:
        return [
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://www.googleapis.com/auth/gmail.send",
            *_IDENTITY_SCOPES,
        ]

    @property
    def icon(self) -> str:
        return "📧"


class GoogleWorkspaceConnector(GoogleConnector):
    """OAuth2 connector for Sheets + Drive (idea spreadsheet storage)."""

    @property
    def provider(self) -> Provider:
        return Provider.GOOGLE_WORKSPACE

    @property
    def display_name(self) -> str:
        return "Google Workspace"

    @property
    def scopes(self) -> List[str]:
        return [
            "https://www.googleapis.com/auth/spreadsheets",
            "https://www.googleapis.com/auth/drive.file",
            *_IDENTITY_SCOPES,
        ]

    @property
    def icon(self) -> str:
        return "📊"
