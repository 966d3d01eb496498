"""SQLAlchemy ORM models for authentication tables."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthBase(DeclarativeBase):
    """Base declarative class for authentication models."""


class User(AuthBase):
    """Persisted account with its credential lifecycle state.

    Single-use secrets (confirmation, reset, refresh) are stored as SHA-256
    digests only, each next to its expiry where one applies.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255))
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))

    is_email_confirmed: Mapped[bool] = mapped_column(Boolean, default=False)
    email_confirmation_token: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    email_confirmation_expires: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    password_reset_token: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    password_reset_expires: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    refresh_token_hash: Mapped[Optional[str]] = mapped_column(String(64))

    login_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lock_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
    )


__all__ = ["AuthBase", "User"]
