"""Repository handling persistence for authentication models."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.auth.models import User


def normalize_email(email: str) -> str:
    """Return the canonical stored form of an email address."""

    return email.strip().lower()


class AuthRepository:
    """Provide database access helpers for the account lifecycle.

    Counters and the refresh token slot are changed with single ``UPDATE``
    statements so concurrent requests against one account cannot lose writes.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        """Return the underlying SQLAlchemy session."""

        return self._session

    async def create_user(
        self,
        email: str,
        hashed_password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        confirmation_token_hash: Optional[str] = None,
        confirmation_expires: Optional[datetime] = None,
        is_email_confirmed: bool = False,
    ) -> User:
        """Persist a new user with the provided credentials."""

        user = User(
            email=normalize_email(email),
            hashed_password=hashed_password,
            first_name=first_name,
            last_name=last_name,
            is_email_confirmed=is_email_confirmed,
            email_confirmation_token=confirmation_token_hash,
            email_confirmation_expires=confirmation_expires,
            login_attempts=0,
        )
        self._session.add(user)
        await self._session.flush()
        return user

    async def get_user_by_email(self, email: str) -> Optional[User]:
        """Retrieve a user record by email address."""

        result = await self._session.execute(
            select(User).where(User.email == normalize_email(email))
        )
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        """Retrieve a user record by identifier."""

        result = await self._session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_user_by_confirmation_token(self, token_hash: str) -> Optional[User]:
        """Return the user holding the given confirmation token digest."""

        result = await self._session.execute(
            select(User).where(User.email_confirmation_token == token_hash)
        )
        return result.scalar_one_or_none()

    async def get_user_by_reset_token(self, token_hash: str) -> Optional[User]:
        """Return the user holding the given password reset token digest."""

        result = await self._session.execute(
            select(User).where(User.password_reset_token == token_hash)
        )
        return result.scalar_one_or_none()

    async def _update_user(self, user_id: str, **values: Any) -> int:
        values.setdefault("updated_at", datetime.now(timezone.utc))
        result = await self._session.execute(
            update(User).where(User.id == user_id).values(**values)
        )
        return result.rowcount

    async def set_confirmation_token(
        self, user: User, token_hash: str, expires_at: datetime
    ) -> None:
        """Replace the stored confirmation token digest and expiry."""

        await self._update_user(
            user.id, email_confirmation_token=token_hash, email_confirmation_expires=expires_at
        )
        await self._session.refresh(user)

    async def mark_email_confirmed(self, user: User) -> None:
        """Confirm the email and clear the confirmation token."""

        await self._update_user(
            user.id,
            is_email_confirmed=True,
            email_confirmation_token=None,
            email_confirmation_expires=None,
        )
        await self._session.refresh(user)

    async def set_password_reset_token(
        self, user: User, token_hash: str, expires_at: datetime
    ) -> None:
        """Store a password reset token digest and expiry."""

        await self._update_user(
            user.id, password_reset_token=token_hash, password_reset_expires=expires_at
        )
        await self._session.refresh(user)

    async def apply_password_reset(self, user: User, hashed_password: str) -> None:
        """Replace the password, consume the reset token and lift any lockout."""

        await self._update_user(
            user.id,
            hashed_password=hashed_password,
            password_reset_token=None,
            password_reset_expires=None,
            login_attempts=0,
            lock_until=None,
        )
        await self._session.refresh(user)

    async def register_failed_login(
        self, user: User, *, max_attempts: int, lock_until: datetime
    ) -> None:
        """Atomically count a failed login and lock the account at the threshold."""

        await self._update_user(user.id, login_attempts=User.login_attempts + 1)
        await self._session.execute(
            update(User)
            .where(User.id == user.id, User.login_attempts >= max_attempts)
            .values(lock_until=lock_until)
        )
        await self._session.refresh(user)

    async def reset_login_attempts(self, user: User) -> None:
        """Clear the failed login counter and lock deadline."""

        await self._update_user(user.id, login_attempts=0, lock_until=None)
        await self._session.refresh(user)

    async def store_refresh_token_hash(self, user: User, token_hash: Optional[str]) -> None:
        """Overwrite the refresh token slot (``None`` clears it)."""

        await self._update_user(user.id, refresh_token_hash=token_hash)
        await self._session.refresh(user)

    async def rotate_refresh_token_hash(
        self, user: User, expected_hash: str, new_hash: str
    ) -> bool:
        """Swap the refresh token digest only if it still equals ``expected_hash``.

        Returns:
            bool: ``True`` when this call performed the rotation.
        """

        result = await self._session.execute(
            update(User)
            .where(User.id == user.id, User.refresh_token_hash == expected_hash)
            .values(refresh_token_hash=new_hash, updated_at=datetime.now(timezone.utc))
        )
        await self._session.refresh(user)
        return result.rowcount == 1

    async def clear_refresh_token(self, user_id: str) -> None:
        """Drop the stored refresh token digest for the user."""

        await self._update_user(user_id, refresh_token_hash=None)

    async def commit(self) -> None:
        """Commit the current transaction."""

        await self._session.commit()

    async def rollback(self) -> None:
        """Rollback the current transaction."""

        await self._session.rollback()


__all__ = ["AuthRepository", "normalize_email"]
