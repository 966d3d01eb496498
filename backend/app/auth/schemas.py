"""Pydantic schemas for authentication APIs.

Payloads travel in camelCase on the wire; Python code uses snake_case names.
"""
from __future__ import annotations

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

PASSWORD_SYMBOLS = "@$!%*?&"
PASSWORD_MIN_LENGTH = 8
# bcrypt only considers the first 72 bytes; enforced on the encoded form
PASSWORD_MAX_LENGTH = 72

PASSWORD_RULES = (
    (re.compile(r"[a-z]"), "one lowercase letter"),
    (re.compile(r"[A-Z]"), "one uppercase letter"),
    (re.compile(r"\d"), "one digit"),
    (re.compile(f"[{re.escape(PASSWORD_SYMBOLS)}]"), f"one symbol ({PASSWORD_SYMBOLS})"),
)


def validate_password_strength(password: str) -> str:
    """Return ``password`` when it satisfies the registration policy.

    Raises:
        ValueError: Listing every missing character class.
    """

    missing = [label for pattern, label in PASSWORD_RULES if not pattern.search(password)]
    if missing:
        msg = "Password must contain at least " + ", ".join(missing)
        raise ValueError(msg)
    return password


def validate_password_bytes(password: str) -> str:
    """Return ``password`` when its UTF-8 encoding fits bcrypt's input limit.

    Raises:
        ValueError: If the encoded password exceeds ``PASSWORD_MAX_LENGTH`` bytes.
    """

    if len(password.encode("utf-8")) > PASSWORD_MAX_LENGTH:
        msg = f"Password must be at most {PASSWORD_MAX_LENGTH} bytes when UTF-8 encoded"
        raise ValueError(msg)
    return password


class _CamelModel(BaseModel):
    """Base schema serialised with camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _FrozenModel(_CamelModel):
    """Base immutable schema."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class PublicUser(_FrozenModel):
    """User profile returned after login."""

    id: str = Field(..., min_length=1)
    email: EmailStr
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class CurrentUser(_FrozenModel):
    """Principal resolved from a bearer access token."""

    user_id: str = Field(..., min_length=1)
    email: EmailStr


class RefreshPrincipal(_FrozenModel):
    """Account id and raw token taken from a signature-checked refresh token."""

    user_id: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)


class TokenPair(_FrozenModel):
    """Access and refresh tokens returned after authentication."""

    access_token: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)


class LoginResponse(TokenPair):
    """Response payload returned after a successful login."""

    user: PublicUser


class RegistrationResponse(_FrozenModel):
    """Response returned after user registration."""

    message: str = Field(..., min_length=1)
    email: EmailStr


class MessageResponse(_FrozenModel):
    """Plain acknowledgement message."""

    message: str = Field(..., min_length=1)


class HealthResponse(BaseModel):
    """Service health payload."""

    status: str
    version: str


class RegisterRequest(_CamelModel):
    """Registration input payload."""

    email: EmailStr
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("password")
    @classmethod
    def _check_password_policy(cls, value: str) -> str:
        return validate_password_strength(validate_password_bytes(value))


class LoginRequest(_CamelModel):
    """Login request payload."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("password")
    @classmethod
    def _check_password_bytes(cls, value: str) -> str:
        return validate_password_bytes(value)


class RefreshRequest(_CamelModel):
    """Refresh token request payload."""

    refresh_token: str = Field(..., min_length=1)


class ConfirmEmailRequest(_CamelModel):
    """Email confirmation payload."""

    token: str = Field(..., min_length=1)


class EmailRequest(_CamelModel):
    """Payload carrying only an email address."""

    email: EmailStr


class ResetPasswordRequest(_CamelModel):
    """Password reset payload."""

    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("password")
    @classmethod
    def _check_password_bytes(cls, value: str) -> str:
        return validate_password_bytes(value)


__all__ = [
    "PublicUser",
    "CurrentUser",
    "RefreshPrincipal",
    "TokenPair",
    "LoginResponse",
    "RegistrationResponse",
    "MessageResponse",
    "HealthResponse",
    "RegisterRequest",
    "LoginRequest",
    "RefreshRequest",
    "ConfirmEmailRequest",
    "EmailRequest",
    "ResetPasswordRequest",
    "validate_password_bytes",
    "validate_password_strength",
]
