"""
Error taxonomy for the credential lifecycle.

Every failure a caller has to react to differently gets its own class so
route handlers (and application code asking for tokens) can tell
"try again later" apart from "send the user through consent again".
"""

from __future__ import annotations

from typing import Optional


class ConnectorError(Exception):
    """Base class for all credential-lifecycle failures."""

    #: HTTP status used by ``api.middleware`` when this error reaches a route.
    status_code: int = 400
    #: Stable machine-readable code, returned in API error bodies.
    code: str = "connector_error"

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": str(self)}


class InvalidState(ConnectorError):
    """Callback state is unknown, expired, for another provider, or already used."""

    code = "invalid_state"


class CodeExpiredOrReused(ConnectorError):
    """Provider answered ``invalid_grant`` to a code exchange.  Restart the flow."""

    code = "code_expired_or_reused"


class ProviderExchangeFailed(ConnectorError):
    """
    Transient or unexpected provider failure (network, timeout, 5xx,
    malformed body, any error other than ``invalid_grant``).

    Safe to retry the whole operation after a backoff; stored credentials
    are never modified when this is raised.
    """

    status_code = 502
    code = "provider_exchange_failed"

    def __init__(
        self,
        error: str,
        description: Optional[str] = None,
        *,
        status: Optional[int] = None,
    ) -> None:
        self.error = error
        self.description = description
        self.status = status
        message = f"{error}: {description}" if description else error
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "provider_error": self.error,
            "provider_error_description": self.description,
        }


class InvalidGrant(ConnectorError):
    """
    Raised by connectors when the token endpoint says ``invalid_grant``.

    The coordinator turns it into ``CodeExpiredOrReused``; the refresher
    turns it into ``ReauthorizationRequired``.
    """

    code = "invalid_grant"


class ReauthorizationRequired(ConnectorError):
    """Refresh token missing or revoked; the user must consent again."""

    status_code = 401
    code = "reauthorization_required"

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider}: {reason}")

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "provider": self.provider,
            "detail": self.reason,
            "reauthorization_required": True,
        }


class CredentialNotFound(ConnectorError):
    """No stored credential for the requested (user, provider)."""

    status_code = 404
    code = "not_found"


class ProviderNotConfigured(ConnectorError):
    """Unknown provider slug, or a known one without client id/secret."""

    status_code = 404
    code = "provider_not_configured"


class InvalidRedirectTarget(ConnectorError):
    """Post-consent redirect is not an http(s) URL on an allowed origin."""

    code = "invalid_redirect_target"


class ConnectionAuthFailed(ConnectorError):
    """Real-time session presented a missing, invalid or expired bearer token."""

    status_code = 401
    code = "connection_auth_failed"
