"""
LinkedInConnector — OAuth2 (Sign In with LinkedIn + Share on LinkedIn).

LinkedIn differs from Google in a few ways that matter here:

* no ``access_type=offline``; most apps never receive a refresh token and
  must send the user back through consent when the 60-day token lapses;
* an expired or replayed code comes back as ``invalid_request`` rather than
  ``invalid_grant``;
* the posting APIs address the member by ``urn:li:person:<sub>``.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import httpx

from connectors.base import BaseConnector
from connectors.errors import ProviderExchangeFailed
from connectors.models import Provider, ProviderProfile

logger = logging.getLogger(__name__)

_LI_AUTH_URL = "https://www.linkedin.com/oauth/v2/authorization"
_LI_TOKEN_URL = "https://www.linkedin.com/oauth/v2/accessToken"
_LI_REVOKE_URL = "https://www.linkedin.com/oauth/v2/revoke"
_LI_USERINFO_URL = "https://api.linkedin.com/v2/userinfo"

_EXPIRED_CODE_HINTS = ("authorization code expired", "code has expired", "already been used")


class LinkedInConnector(BaseConnector):
    """OAuth2 connector for LinkedIn."""

    default_expires_in = 5184000  # 60 days

    @property
    def provider(self) -> Provider:
        return Provider.LINKEDIN

    @property
    def display_name(self) -> str:
        return "LinkedIn"

    @property
    def scopes(self) -> List[str]:
        return ["openid", "profile", "w_member_social"]

    @property
    def icon(self) -> str:
        return "💼"

    @property
    def authorization_endpoint(self) -> str:
        return _LI_AUTH_URL

    @property
    def token_endpoint(self) -> str:
        return _LI_TOKEN_URL

    def classify_error(self, error: str, description: Optional[str]) -> str:
        text = (description or "").lower()
        if error == "invalid_request" and any(hint in text for hint in _EXPIRED_CODE_HINTS):
            return "invalid_grant"
        return error

    async def fetch_profile(self, access_token: str) -> ProviderProfile:
        try:
            async with self.client() as client:
                resp = await client.get(
                    _LI_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                resp.raise_for_status()
                info = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderExchangeFailed("profile_fetch_failed", str(exc)) from exc

        sub = info.get("sub")
        if not sub:
            raise ProviderExchangeFailed("profile_fetch_failed", "userinfo has no 'sub'")
        return ProviderProfile(
            identifier=f"urn:li:person:{sub}",
            name=info.get("name") or "LinkedIn User",
        )

    async def revoke_token(self, token: str) -> bool:
        try:
            async with self.client() as client:
                resp = await client.post(
                    _LI_REVOKE_URL,
                    data={
                        "client_id": self.provider_config.client_id,
                        "client_secret": self.provider_config.client_secret,
                        "token": token,
                    },
                )
                return resp.status_code == 200
        except httpx.HTTPError:
            logger.warning("LinkedIn token revocation failed", exc_info=True)
            return False
