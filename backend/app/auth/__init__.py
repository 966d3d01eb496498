"""Authentication package managing the account and credential lifecycle."""

from backend.app.auth.service import AuthService, AuthServiceError
from backend.app.auth.utils import EmailDispatcher, JWTManager, PasswordHasher

__all__ = ["AuthService", "AuthServiceError", "JWTManager", "PasswordHasher", "EmailDispatcher"]
