"""
JWT-style token creation and verification.

Tokens are base64-encoded JSON payloads signed with HMAC-SHA256.
Secret key is loaded from ``config.jwt_secret`` (env var: ``JWT_SECRET``).
The same scheme authenticates REST requests and WebSocket sessions.
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import json
import time
from base64 import b64decode, b64encode
from typing import Optional

from fastapi import HTTPException, status

from config.settings import config


class InvalidTokenError(ValueError):
    """Bearer token is malformed, forged, or expired."""


def create_token(
    user_id: str,
    *,
    secret: Optional[str] = None,
    expiry_seconds: Optional[int] = None,
) -> str:
    """Create a signed token containing ``user_id`` and expiry."""
    secret = secret or config.jwt_secret
    if expiry_seconds is None:
        expiry_seconds = config.jwt_expiry_seconds
    payload = {
        "user_id": user_id,
        "exp": int(time.time()) + expiry_seconds,
    }
    raw = json.dumps(payload).encode()
    sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    return b64encode(raw).decode() + "." + sig


def decode_token(token: str, *, secret: Optional[str] = None) -> str:
    """
    Verify token and return ``user_id``.

    Raises ``InvalidTokenError`` on anything other than a well-formed,
    correctly signed, unexpired token.
    """
    secret = secret or config.jwt_secret
    parts = (token or "").split(".", 1)
    if len(parts) != 2:
        raise InvalidTokenError("bad format")
    try:
        raw = b64decode(parts[0], validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidTokenError("bad encoding") from exc
    expected_sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(parts[1], expected_sig):
        raise InvalidTokenError("bad signature")
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise InvalidTokenError("bad payload") from exc
    if not isinstance(payload, dict) or not payload.get("user_id"):
        raise InvalidTokenError("bad payload")
    if payload.get("exp", 0) < time.time():
        raise InvalidTokenError("token expired")
    return str(payload["user_id"])


def verify_token(token: str, *, secret: Optional[str] = None) -> str:
    """
    Verify token and return ``user_id``.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    try:
        return decode_token(token, secret=secret)
    except InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        ) from exc
