"""
Password hashing and verification.

Uses bcrypt for password hashing with automatic salting; the work factor
comes from ``Settings.password_hash_rounds``.
"""

from __future__ import annotations

import bcrypt

from config.settings import config


def hash_password(password: str, rounds: int | None = None) -> str:
    """Hash a password with bcrypt (auto-salted)."""
    salt = bcrypt.gensalt(rounds=rounds or config.password_hash_rounds)
    return bcrypt.hashpw(password.encode(), salt).decode()


def verify_password(password: str, password_hash: str) -> bool:
    """Constant-time comparison against a bcrypt hash."""
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except (ValueError, TypeError):
        return False
