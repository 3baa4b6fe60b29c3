"""
SQLAlchemy ORM models mirroring migrations/versions/0001_initial_schema.py.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware ``DateTime`` that always hands back UTC datetimes.

    SQLite drops the offset on the way in; re-attach it on the way out so
    expiry comparisons against ``datetime.now(timezone.utc)`` work on every
    backend.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


_JSON = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    user_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False)
    display_name = Column(String(128))
    password_hash = Column(String(255), nullable=False, default="")
    created_at = Column(UTCDateTime, default=_utcnow)

    credentials = relationship("OAuthCredential", back_populates="user", cascade="all, delete-orphan")


class OAuthCredential(Base):
    """One provider grant for one user.  Token columns hold Fernet ciphertext."""

    __tablename__ = "oauth_credentials"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_oauth_credentials_user_provider"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(32), nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    scope = Column(_JSON, nullable=False, default=list)
    expires_at = Column(UTCDateTime, nullable=False)
    profile_identifier = Column(String(256))
    profile_name = Column(String(256))
    created_at = Column(UTCDateTime, default=_utcnow)
    updated_at = Column(UTCDateTime, default=_utcnow)

    user = relationship("User", back_populates="credentials")


class OAuthState(Base):
    """Pending authorization request; deleted on first callback or by the sweeper."""

    __tablename__ = "oauth_states"
    __table_args__ = (Index("ix_oauth_states_expires_at", "expires_at"),)

    state_token = Column(String(128), primary_key=True)
    user_id = Column(Uuid, ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(32), nullable=False)
    redirect_target = Column(Text, nullable=True)
    issued_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    expires_at = Column(UTCDateTime, nullable=False)
