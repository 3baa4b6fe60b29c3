"""
Connector API routes — OAuth connect/callback, list connections, disconnect.

Route prefix: /api/v1/connectors
"""

from __future__ import annotations

import html
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse, RedirectResponse

from api.dependencies import (
    get_connector_registry,
    get_coordinator,
    get_credential_store,
    get_settings,
)
from auth.dependencies import get_current_user_id
from auth.jwt import InvalidTokenError, decode_token
from config.settings import Settings
from connectors.coordinator import OAuthFlowCoordinator
from connectors.credential_store import CredentialStore
from connectors.errors import (
    CodeExpiredOrReused,
    InvalidState,
    ProviderExchangeFailed,
)
from connectors.models import AuthorizationResult
from connectors.registry import ConnectorRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/providers")
async def list_providers(
    registry: ConnectorRegistry = Depends(get_connector_registry),
) -> List[Dict[str, Any]]:
    """
    List all available connector providers and their configuration status.
    No auth required — used by frontend to show available connectors.
    """
    return registry.list_providers()


@router.get("/connections")
async def list_connections(
    user_id: str = Depends(get_current_user_id),
    credentials: CredentialStore = Depends(get_credential_store),
) -> List[Dict[str, Any]]:
    """List the authenticated user's connections (no token material)."""
    return [c.summary() for c in await credentials.list_for_user(user_id)]


@router.get("/{provider}/auth-url")
async def get_auth_url(
    provider: str,
    redirect_target: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
    coordinator: OAuthFlowCoordinator = Depends(get_coordinator),
) -> Dict[str, str]:
    """
    Get the OAuth authorization URL for a provider.

    Frontend should open this URL in a popup window.
    """
    url, state = await coordinator.begin_authorization(provider, user_id, redirect_target)
    return {"authorization_url": url, "state": state, "provider": provider}


@router.get("/{provider}/authorize")
async def authorize(
    provider: str,
    token: str = Query(...),
    redirect_target: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
    coordinator: OAuthFlowCoordinator = Depends(get_coordinator),
) -> RedirectResponse:
    """
    Popup entry point: a window opened with ``window.open`` cannot send an
    Authorization header, so the bearer token travels in the query string.
    """
    try:
        user_id = decode_token(token, secret=settings.jwt_secret)
    except InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        ) from exc

    url, _ = await coordinator.begin_authorization(provider, user_id, redirect_target)
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
    coordinator: OAuthFlowCoordinator = Depends(get_coordinator),
) -> HTMLResponse:
    """
    OAuth callback — the provider redirects here after consent.

    Exchanges the auth code for tokens, stores them, and returns a small
    HTML page that notifies the opener window and auto-closes.
    """
    if error:
        logger.warning("OAuth %s callback reported %s: %s", provider, error, error_description)
        if state:
            await coordinator.cancel_authorization(provider, state)
        return HTMLResponse(
            content=_callback_html(
                success=False,
                message=f"Authorization was not granted: {error_description or error}",
                provider=provider,
            ),
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    try:
        if not code or not state:
            raise InvalidState("Callback is missing code or state")
        result = await coordinator.complete_authorization(provider, code, state)
    except (InvalidState, CodeExpiredOrReused, ProviderExchangeFailed) as exc:
        logger.error("OAuth callback failed for %s: %s", provider, exc)
        return HTMLResponse(
            content=_callback_html(
                success=False,
                message=f"Connection failed: {exc}",
                provider=provider,
            ),
            status_code=exc.status_code,
        )

    show_refresh_token = settings.debug and settings.oauth_dev_show_refresh_token
    return HTMLResponse(
        content=_callback_html(
            success=True,
            message=f"Connected as {result.credential.profile_name}",
            provider=provider,
            details=_summary_lines(result, show_refresh_token),
            redirect_target=result.redirect_target,
        ),
        status_code=status.HTTP_200_OK,
    )


@router.delete("/{provider}")
async def disconnect(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    coordinator: OAuthFlowCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Revoke at the provider and delete the stored connection."""
    await coordinator.disconnect(user_id, provider)
    return {"status": "disconnected", "provider": provider}


# ── Callback HTML template ─────────────────────────────────────────────


def _summary_lines(result: AuthorizationResult, show_refresh_token: bool) -> List[str]:
    credential = result.credential
    lines = [
        f"Account: {credential.profile_name} ({credential.profile_identifier})",
        f"Scopes: {' '.join(sorted(credential.scope))}",
        f"Access expires: {credential.expires_at.isoformat()}",
    ]
    for warning in result.warnings:
        lines.append(f"Warning: {warning}")
    if show_refresh_token and credential.refresh_token:
        lines.append(f"Refresh token (development only): {credential.refresh_token}")
    return lines


def _js(value: Any) -> str:
    return json.dumps(value).replace("</", "<\\/")


def _callback_html(
    success: bool,
    message: str,
    provider: str,
    details: Optional[List[str]] = None,
    redirect_target: Optional[str] = None,
) -> str:
    """
    Small HTML page shown in the OAuth popup after redirect.
    Sends a postMessage to the opener and auto-closes.
    """
    status_emoji = "✅" if success else "❌"
    status_text = "Connected!" if success else "Failed"
    color = "#00d992" if success else "#ef4444"
    detail_html = "".join(f"<li>{html.escape(line)}</li>" for line in details or [])

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>{html.escape(provider)} {status_text}</title>
    <style>
        body {{
            font-family: 'Inter', system-ui, sans-serif;
            background: #0b0d11; color: #e4e7ee;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        .card {{
            text-align: center; padding: 40px;
            background: #12151b; border: 1px solid #1f2330;
            border-radius: 12px; max-width: 480px;
        }}
        .emoji {{ font-size: 3rem; }}
        h2 {{ color: {color}; margin: 16px 0 8px; }}
        p, li {{ color: #a0a6b8; font-size: 0.85rem; }}
        ul {{ list-style: none; padding: 0; word-break: break-all; }}
        .close-note {{ color: #636a80; font-size: 0.7rem; margin-top: 20px; }}
    </style>
</head>
<body>
    <div class="card">
        <div class="emoji">{status_emoji}</div>
        <h2>{status_text}</h2>
        <p>{html.escape(message)}</p>
        <ul>{detail_html}</ul>
        <p class="close-note">This window will close automatically…</p>
    </div>
    <script>
        const redirectTarget = {_js(redirect_target)};
        // Notify the opener window
        if (window.opener) {{
            window.opener.postMessage({{
                type: 'oauth-callback',
                provider: {_js(provider)},
                success: {_js(success)},
                message: {_js(message)},
            }}, '*');
            setTimeout(() => window.close(), 2000);
        }} else if (redirectTarget) {{
            setTimeout(() => window.location.assign(redirectTarget), 2000);
        }}
    </script>
</body>
</html>"""
