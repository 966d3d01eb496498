"""Utilities for JWT handling, password hashing, single-use tokens, and email dispatch."""
from __future__ import annotations

import hashlib
import logging
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from aiosmtplib import send
from jose import JWTError, jwt
from passlib.context import CryptContext

from backend.app.auth.enums import TokenType
from backend.app.config import AuthJWTConfig, AuthMailConfig, AuthSMTPConfig

LOGGER = logging.getLogger(__name__)

ONE_TIME_TOKEN_BYTES = 32


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    SQLite hands back naive timestamps even for timezone-aware columns; they
    are stored in UTC so attaching the zone is sufficient.
    """

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_locked(lock_until: Optional[datetime], now: datetime) -> bool:
    """Return whether an account with the given lock deadline is locked at ``now``."""

    if lock_until is None:
        return False
    return ensure_utc(lock_until) > ensure_utc(now)


def remaining_lock_minutes(lock_until: datetime, now: datetime) -> int:
    """Return the whole minutes (rounded up) until the lock deadline passes."""

    seconds = (ensure_utc(lock_until) - ensure_utc(now)).total_seconds()
    return max(1, math.ceil(seconds / 60))


def generate_one_time_token() -> str:
    """Generate a 256-bit random token for email delivery."""

    return secrets.token_hex(ONE_TIME_TOKEN_BYTES)


def hash_token(token: str) -> str:
    """Return a deterministic hash for sensitive token storage."""

    digest = hashlib.sha256()
    digest.update(token.encode("utf-8"))
    return digest.hexdigest()


class PasswordHasher:
    """One-way password hashing backed by bcrypt."""

    def __init__(self, rounds: int = 10, context: Optional[CryptContext] = None) -> None:
        self._context = context or CryptContext(
            schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds
        )

    def hash(self, password: str) -> str:
        """Hash the provided password using bcrypt."""

        return self._context.hash(password)

    def verify(self, plain_password: str, hashed_password: Optional[str]) -> bool:
        """Verify whether a plaintext password matches a stored hash."""

        if not hashed_password:
            return False
        return self._context.verify(plain_password, hashed_password)


@dataclass(frozen=True)
class IssuedTokens:
    """Freshly signed access/refresh pair."""

    access_token: str
    refresh_token: str


class JWTManager:
    """Helper for encoding and decoding the access and refresh JSON Web Tokens.

    Access and refresh tokens are signed with different secrets and carry a
    ``type`` claim, so one can never be presented in place of the other. Each
    token gets a random ``jti`` which keeps two pairs minted within the same
    second distinct.
    """

    def __init__(self, config: AuthJWTConfig) -> None:
        self._config = config

    def _secret_for(self, token_type: TokenType) -> str:
        if token_type is TokenType.ACCESS:
            return self._config.access_secret_key
        return self._config.refresh_secret_key

    def _encode(
        self,
        token_type: TokenType,
        subject: str,
        email: str,
        ttl: timedelta,
        issued_at: Optional[datetime] = None,
    ) -> str:
        now = issued_at or datetime.now(timezone.utc)
        expire_at = now + ttl
        payload: Dict[str, Any] = {
            "sub": subject,
            "email": email,
            "type": token_type.value,
            "jti": secrets.token_hex(16),
            "iat": int(now.timestamp()),
            "exp": int(expire_at.timestamp()),
        }
        return jwt.encode(payload, self._secret_for(token_type), algorithm=self._config.algorithm)

    def create_access_token(
        self,
        subject: str,
        email: str,
        expires_delta: Optional[timedelta] = None,
        issued_at: Optional[datetime] = None,
    ) -> str:
        """Create a signed, short-lived access token."""

        ttl = expires_delta or self._config.access_token_ttl
        return self._encode(TokenType.ACCESS, subject, email, ttl, issued_at)

    def create_refresh_token(
        self,
        subject: str,
        email: str,
        expires_delta: Optional[timedelta] = None,
        issued_at: Optional[datetime] = None,
    ) -> str:
        """Create a signed, long-lived refresh token."""

        ttl = expires_delta or self._config.refresh_token_ttl
        return self._encode(TokenType.REFRESH, subject, email, ttl, issued_at)

    def issue_pair(self, subject: str, email: str) -> IssuedTokens:
        """Sign a new access/refresh pair for the given account."""

        return IssuedTokens(
            access_token=self.create_access_token(subject, email),
            refresh_token=self.create_refresh_token(subject, email),
        )

    def _decode(self, token: str, token_type: TokenType) -> Dict[str, Any]:
        payload = jwt.decode(
            token, self._secret_for(token_type), algorithms=[self._config.algorithm]
        )
        if payload.get("type") != token_type.value:
            raise JWTError(f"Expected a {token_type.value} token")
        if not payload.get("sub"):
            raise JWTError("Token subject missing")
        return payload

    def decode_access(self, token: str) -> Dict[str, Any]:
        """Decode and validate an access token."""

        return self._decode(token, TokenType.ACCESS)

    def decode_refresh(self, token: str) -> Dict[str, Any]:
        """Decode and validate a refresh token."""

        return self._decode(token, TokenType.REFRESH)


def build_action_link(client_url: str, path: str, token: str) -> str:
    """Construct an absolute client link carrying ``token`` as a query parameter."""

    parsed = urlparse(client_url)
    joined_path = f"{parsed.path.rstrip('/')}/{path.lstrip('/')}"
    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query.update({"token": token})
    encoded_query = urlencode(query)
    return urlunparse((parsed.scheme, parsed.netloc, joined_path, parsed.params, encoded_query, parsed.fragment))


def build_confirmation_email(
    smtp_config: AuthSMTPConfig,
    mail_config: AuthMailConfig,
    recipient: str,
    confirm_link: str,
    first_name: Optional[str] = None,
) -> EmailMessage:
    """Render the email confirmation message."""

    message = EmailMessage()
    message["From"] = smtp_config.from_email
    message["To"] = recipient
    message["Subject"] = f"Confirm your {mail_config.app_name} email"
    message.set_content(
        (
            f"Hello, {first_name or 'there'}!\n\n"
            f"Thanks for registering with {mail_config.app_name}. "
            "Please confirm your email address by opening the link below.\n"
            f"Confirmation link: {confirm_link}\n\n"
            f"If you did not sign up for {mail_config.app_name}, please ignore this email."
        )
    )
    return message


def build_password_reset_email(
    smtp_config: AuthSMTPConfig,
    mail_config: AuthMailConfig,
    recipient: str,
    reset_link: str,
    expires_at: datetime,
    first_name: Optional[str] = None,
) -> EmailMessage:
    """Render the password reset message."""

    message = EmailMessage()
    message["From"] = smtp_config.from_email
    message["To"] = recipient
    message["Subject"] = f"Reset your {mail_config.app_name} password"
    message.set_content(
        (
            f"Hello, {first_name or 'there'}!\n\n"
            "We received a request to reset the password for your account.\n"
            f"Reset link: {reset_link}\n"
            f"This link expires at {ensure_utc(expires_at).isoformat()}.\n\n"
            "If you did not request a reset, ignore this email and your password stays unchanged."
        )
    )
    return message


class EmailDispatcher:
    """Send transactional authentication emails."""

    def __init__(self, smtp_config: AuthSMTPConfig, mail_config: AuthMailConfig) -> None:
        self._smtp_config = smtp_config
        self._mail_config = mail_config

    async def send_confirmation_email(
        self, recipient: str, token: str, first_name: Optional[str] = None
    ) -> None:
        """Deliver the email confirmation link to the provided recipient."""

        link = build_action_link(self._mail_config.client_url, self._mail_config.confirm_path, token)
        message = build_confirmation_email(
            self._smtp_config, self._mail_config, recipient, link, first_name
        )
        await self._deliver(message)

    async def send_password_reset_email(
        self,
        recipient: str,
        token: str,
        expires_at: datetime,
        first_name: Optional[str] = None,
    ) -> None:
        """Deliver the password reset link to the provided recipient."""

        link = build_action_link(self._mail_config.client_url, self._mail_config.reset_path, token)
        message = build_password_reset_email(
            self._smtp_config, self._mail_config, recipient, link, expires_at, first_name
        )
        await self._deliver(message)

    async def _deliver(self, message: EmailMessage) -> None:
        try:
            await send(
                message,
                hostname=self._smtp_config.host,
                port=self._smtp_config.port,
                username=self._smtp_config.username or None,
                password=self._smtp_config.password or None,
                start_tls=self._smtp_config.use_tls,
            )
        except Exception:  # noqa: BLE001 - delivery failures are logged, not raised
            LOGGER.exception("Failed to send email", extra={"subject": message["Subject"]})
            return
        LOGGER.info("Email sent", extra={"subject": message["Subject"]})


__all__ = [
    "JWTManager",
    "JWTError",
    "IssuedTokens",
    "PasswordHasher",
    "EmailDispatcher",
    "build_action_link",
    "build_confirmation_email",
    "build_password_reset_email",
    "ensure_utc",
    "generate_one_time_token",
    "hash_token",
    "is_locked",
    "remaining_lock_minutes",
]
