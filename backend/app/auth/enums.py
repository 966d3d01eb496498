"""Shared authentication enums."""
from __future__ import annotations

from enum import Enum


class AuthErrorReason(str, Enum):
    """Failure categories surfaced by the account lifecycle."""

    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


class TokenType(str, Enum):
    """Kinds of signed bearer tokens issued by the service."""

    ACCESS = "access"
    REFRESH = "refresh"


class RouteAccess(str, Enum):
    """Guard applied to an API route."""

    PUBLIC = "public"
    BEARER = "bearer"
    REFRESH = "refresh"


__all__ = ["AuthErrorReason", "TokenType", "RouteAccess"]
