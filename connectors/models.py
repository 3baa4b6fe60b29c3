"""
Domain types for the credential lifecycle.

The ORM rows (``OAuthCredential``, ``OAuthState``) are re-exported from the
database package; the dataclasses below are what the rest of the code
passes around, with tokens already decrypted.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, List, Optional, Tuple, Union

from connectors.errors import ProviderNotConfigured
from database.models import OAuthCredential, OAuthState  # noqa: F401

NO_REFRESH_TOKEN_ISSUED = "no_refresh_token_issued"


class Provider(str, enum.Enum):
    GMAIL = "gmail"
    GOOGLE_WORKSPACE = "google_workspace"
    LINKEDIN = "linkedin"


@dataclass(frozen=True)
class ProviderConfig:
    """Client registration for one provider; built once at startup."""

    client_id: str
    client_secret: str
    redirect_uri: str

    @property
    def is_complete(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)


@dataclass(frozen=True)
class TokenGrant:
    """Normalized token-endpoint response (exchange or refresh)."""

    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    scope: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class ProviderProfile:
    identifier: str
    name: str


@dataclass(frozen=True)
class Credential:
    user_id: str
    provider: Provider
    access_token: str
    refresh_token: Optional[str]
    scope: FrozenSet[str]
    expires_at: datetime
    profile_identifier: str = ""
    profile_name: str = ""
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def expires_within(self, margin_seconds: float, now: Optional[datetime] = None) -> bool:
        """True when the access token is expired or expires inside the margin."""
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now + timedelta(seconds=margin_seconds)

    def summary(self, now: Optional[datetime] = None) -> dict:
        """Non-secret view, safe to return to the browser."""
        expired = self.expires_within(0, now)
        return {
            "provider": self.provider.value,
            "profile_name": self.profile_name,
            "profile_identifier": self.profile_identifier,
            "scopes": sorted(self.scope),
            "expires_at": self.expires_at.isoformat(),
            "has_refresh_token": self.refresh_token is not None,
            "connected": not expired or self.refresh_token is not None,
            "expired": expired,
            "needs_reauthorization": expired and self.refresh_token is None,
        }


@dataclass(frozen=True)
class AuthorizationRequest:
    state_token: str
    user_id: str
    provider: Provider
    issued_at: datetime
    expires_at: datetime
    redirect_target: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


@dataclass
class AuthorizationResult:
    """Outcome of a completed authorization; ``warnings`` never blocks success."""

    credential: Credential
    redirect_target: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def parse_provider(value: Union[str, Provider]) -> Provider:
    """Map a URL slug onto ``Provider``."""
    try:
        return Provider(value)
    except ValueError:
        raise ProviderNotConfigured(f"Provider '{value}' not found or not configured") from None


def split_scope(raw: Optional[str]) -> Tuple[str, ...]:
    """Split a provider scope string; Google uses spaces, LinkedIn commas."""
    if not raw:
        return ()
    return tuple(s for s in raw.replace(",", " ").split() if s)
