"""Service layer orchestrating the account and credential lifecycle."""
from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from backend.app.auth.enums import AuthErrorReason
from backend.app.auth.models import User
from backend.app.auth.repository import AuthRepository
from backend.app.auth.schemas import (
    CurrentUser,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PublicUser,
    RegisterRequest,
    RegistrationResponse,
    TokenPair,
)
from backend.app.auth.utils import (
    EmailDispatcher,
    JWTError,
    JWTManager,
    PasswordHasher,
    ensure_utc,
    generate_one_time_token,
    hash_token,
    is_locked,
    remaining_lock_minutes,
)
from backend.app.config import AuthConfig

LOGGER = logging.getLogger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
ACCESS_DENIED_MESSAGE = "Access denied"


class AuthServiceError(RuntimeError):
    """Raised when authentication operations fail."""

    reason = AuthErrorReason.BAD_REQUEST

    def __init__(self, message: str, reason: Optional[AuthErrorReason] = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class BadRequestError(AuthServiceError):
    """The request references something the service cannot act on."""

    reason = AuthErrorReason.BAD_REQUEST


class UnauthorizedError(AuthServiceError):
    """Credentials are missing, wrong, locked or not yet usable."""

    reason = AuthErrorReason.UNAUTHORIZED


class NotFoundError(AuthServiceError):
    """A presented token or account does not exist."""

    reason = AuthErrorReason.NOT_FOUND


class ConflictError(AuthServiceError):
    """The account state does not allow the operation."""

    reason = AuthErrorReason.CONFLICT


class AuthService:
    """Coordinate the credential store, hasher, token issuer and notifier."""

    def __init__(
        self,
        config: AuthConfig,
        repository: AuthRepository,
        password_hasher: PasswordHasher,
        jwt_manager: JWTManager,
        email_dispatcher: EmailDispatcher,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config
        self._repository = repository
        self._password_hasher = password_hasher
        self._jwt_manager = jwt_manager
        self._email_dispatcher = email_dispatcher
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        """Return current UTC timestamp."""

        return ensure_utc(self._clock())

    @staticmethod
    def _to_public_user(user: User) -> PublicUser:
        """Convert ORM user model into API schema."""

        return PublicUser(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
        )

    async def _issue_tokens(self, user: User) -> TokenPair:
        """Sign a new pair and remember the refresh token's digest."""

        issued = self._jwt_manager.issue_pair(user.id, user.email)
        await self._repository.store_refresh_token_hash(user, hash_token(issued.refresh_token))
        return TokenPair(access_token=issued.access_token, refresh_token=issued.refresh_token)

    async def register_user(
        self, payload: RegisterRequest
    ) -> Tuple[RegistrationResponse, str, datetime]:
        """Register a new, unconfirmed user.

        Returns:
            Tuple[RegistrationResponse, str, datetime]: The response body, the
            plaintext confirmation token for delivery, and its expiry. Only
            the token's digest is persisted.

        Raises:
            ConflictError: If the email is already registered.
        """

        existing = await self._repository.get_user_by_email(payload.email)
        if existing is not None:
            raise ConflictError("A user with this email already exists")

        token = generate_one_time_token()
        expires_at = self._now() + self._config.tokens.confirmation_ttl
        try:
            user = await self._repository.create_user(
                payload.email,
                self._password_hasher.hash(payload.password),
                first_name=payload.first_name,
                last_name=payload.last_name,
                confirmation_token_hash=hash_token(token),
                confirmation_expires=expires_at,
            )
            await self._repository.commit()
        except IntegrityError as exc:
            await self._repository.rollback()
            raise ConflictError("A user with this email already exists") from exc
        except Exception:  # pragma: no cover - defensive rollback
            await self._repository.rollback()
            raise

        LOGGER.info("Registered user", extra={"user_id": user.id})
        response = RegistrationResponse(
            message="Registration successful! Check your email to confirm your account.",
            email=user.email,
        )
        return response, token, expires_at

    async def send_confirmation_email(
        self, email: str, token: str, first_name: Optional[str] = None
    ) -> None:
        """Send the confirmation email via dispatcher."""

        await self._email_dispatcher.send_confirmation_email(email, token, first_name)

    async def send_password_reset_email(
        self, email: str, token: str, expires_at: datetime, first_name: Optional[str] = None
    ) -> None:
        """Send the password reset email via dispatcher."""

        await self._email_dispatcher.send_password_reset_email(email, token, expires_at, first_name)

    async def login(self, payload: LoginRequest) -> LoginResponse:
        """Check credentials, apply lockout policy, and issue a token pair.

        Raises:
            UnauthorizedError: For unknown accounts, locked accounts, wrong
                passwords and unconfirmed emails.
        """

        user = await self._repository.get_user_by_email(payload.email)
        if user is None:
            raise UnauthorizedError(INVALID_CREDENTIALS_MESSAGE)

        now = self._now()
        if is_locked(user.lock_until, now):
            minutes = remaining_lock_minutes(user.lock_until, now)
            raise UnauthorizedError(
                f"Account temporarily locked. Try again in {minutes} minutes."
            )

        if not self._password_hasher.verify(payload.password, user.hashed_password):
            lockout = self._config.lockout
            try:
                await self._repository.register_failed_login(
                    user,
                    max_attempts=lockout.max_attempts,
                    lock_until=now + lockout.lock_duration,
                )
                await self._repository.commit()
            except Exception:  # pragma: no cover - defensive rollback
                await self._repository.rollback()
                raise
            if user.login_attempts >= lockout.max_attempts:
                LOGGER.warning(
                    "Account locked after repeated failed logins",
                    extra={"user_id": user.id, "attempts": user.login_attempts},
                )
            raise UnauthorizedError(INVALID_CREDENTIALS_MESSAGE)

        if not user.is_email_confirmed:
            raise UnauthorizedError(
                "Email not confirmed. Check your inbox and confirm your registration."
            )

        try:
            await self._repository.reset_login_attempts(user)
            tokens = await self._issue_tokens(user)
            await self._repository.commit()
        except Exception:  # pragma: no cover - defensive rollback
            await self._repository.rollback()
            raise

        return LoginResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            user=self._to_public_user(user),
        )

    async def refresh_tokens(self, user_id: str, refresh_token: str) -> TokenPair:
        """Rotate the refresh token: issue a new pair and invalidate the old one.

        Raises:
            UnauthorizedError: If no refresh token is stored for the account,
                the presented one is not the current one, or it lost a
                concurrent rotation.
        """

        user = await self._repository.get_user_by_id(user_id)
        if user is None or not user.refresh_token_hash:
            raise UnauthorizedError(ACCESS_DENIED_MESSAGE)

        presented_hash = hash_token(refresh_token)
        if not hmac.compare_digest(presented_hash, user.refresh_token_hash):
            LOGGER.warning("Rejected stale or unknown refresh token", extra={"user_id": user.id})
            raise UnauthorizedError(ACCESS_DENIED_MESSAGE)

        issued = self._jwt_manager.issue_pair(user.id, user.email)
        try:
            rotated = await self._repository.rotate_refresh_token_hash(
                user, presented_hash, hash_token(issued.refresh_token)
            )
            await self._repository.commit()
        except Exception:  # pragma: no cover - defensive rollback
            await self._repository.rollback()
            raise
        if not rotated:
            LOGGER.warning("Refresh token rotated concurrently", extra={"user_id": user.id})
            raise UnauthorizedError(ACCESS_DENIED_MESSAGE)

        return TokenPair(access_token=issued.access_token, refresh_token=issued.refresh_token)

    async def logout(self, user_id: str) -> MessageResponse:
        """Forget the stored refresh token so it can no longer be rotated."""

        try:
            await self._repository.clear_refresh_token(user_id)
            await self._repository.commit()
        except Exception:  # pragma: no cover - defensive rollback
            await self._repository.rollback()
            raise
        return MessageResponse(message="You have been logged out")

    async def confirm_email(self, token: str) -> MessageResponse:
        """Validate the confirmation token and mark the email as confirmed.

        Raises:
            NotFoundError: If no account holds the token.
            ConflictError: If the token has expired.
        """

        user = await self._repository.get_user_by_confirmation_token(hash_token(token))
        if user is None:
            raise NotFoundError("Invalid confirmation token")

        expires_at = user.email_confirmation_expires
        if expires_at is None or ensure_utc(expires_at) < self._now():
            raise ConflictError("Confirmation token has expired")

        try:
            await self._repository.mark_email_confirmed(user)
            await self._repository.commit()
        except Exception:  # pragma: no cover - defensive rollback
            await self._repository.rollback()
            raise

        return MessageResponse(message="Email confirmed! You can now sign in.")

    async def request_password_reset(self, email: str) -> Tuple[User, str, datetime]:
        """Create a reset token for a confirmed account.

        Returns:
            Tuple[User, str, datetime]: The account, the plaintext token for
            delivery, and its expiry.

        Raises:
            NotFoundError: If the account is unknown or its email unconfirmed.
        """

        user = await self._repository.get_user_by_email(email)
        if user is None or not user.is_email_confirmed:
            raise NotFoundError("User not found")

        token = generate_one_time_token()
        expires_at = self._now() + self._config.tokens.reset_ttl
        try:
            await self._repository.set_password_reset_token(user, hash_token(token), expires_at)
            await self._repository.commit()
        except Exception:  # pragma: no cover - defensive rollback
            await self._repository.rollback()
            raise
        return user, token, expires_at

    async def reset_password(self, token: str, new_password: str) -> MessageResponse:
        """Replace the password using a reset token and lift any lockout.

        Raises:
            NotFoundError: If no account holds the token.
            ConflictError: If the token has expired.
        """

        user = await self._repository.get_user_by_reset_token(hash_token(token))
        if user is None:
            raise NotFoundError("Invalid password reset token")

        expires_at = user.password_reset_expires
        if expires_at is None or ensure_utc(expires_at) < self._now():
            raise ConflictError("Password reset token has expired")

        try:
            await self._repository.apply_password_reset(
                user, self._password_hasher.hash(new_password)
            )
            await self._repository.commit()
        except Exception:  # pragma: no cover - defensive rollback
            await self._repository.rollback()
            raise

        LOGGER.info("Password reset completed", extra={"user_id": user.id})
        return MessageResponse(message="Password changed! You can now sign in with your new password.")

    async def resend_confirmation(self, email: str) -> Tuple[User, str]:
        """Issue a fresh confirmation token for an unconfirmed account.

        Returns:
            Tuple[User, str]: The account and the plaintext token for delivery.

        Raises:
            BadRequestError: If the account is unknown.
            ConflictError: If the email is already confirmed.
        """

        user = await self._repository.get_user_by_email(email)
        if user is None:
            raise BadRequestError("User not found")
        if user.is_email_confirmed:
            raise ConflictError("Email already confirmed")

        token = generate_one_time_token()
        expires_at = self._now() + self._config.tokens.confirmation_ttl
        try:
            await self._repository.set_confirmation_token(user, hash_token(token), expires_at)
            await self._repository.commit()
        except Exception:  # pragma: no cover - defensive rollback
            await self._repository.rollback()
            raise
        return user, token

    async def authenticate(self, token: str) -> CurrentUser:
        """Validate a bearer access token and load the associated user."""

        try:
            payload = self._jwt_manager.decode_access(token)
        except JWTError as exc:
            raise UnauthorizedError("Invalid access token") from exc

        user = await self._repository.get_user_by_id(payload["sub"])
        if user is None:
            raise UnauthorizedError("User not found")
        if not user.is_email_confirmed:
            raise UnauthorizedError("Email not confirmed")
        return CurrentUser(user_id=user.id, email=user.email)

    def refresh_token_subject(self, refresh_token: str) -> str:
        """Return the account id carried by a validly signed refresh token."""

        try:
            payload = self._jwt_manager.decode_refresh(refresh_token)
        except JWTError as exc:
            raise UnauthorizedError(ACCESS_DENIED_MESSAGE) from exc
        return str(payload["sub"])


__all__ = [
    "AuthService",
    "AuthServiceError",
    "BadRequestError",
    "UnauthorizedError",
    "NotFoundError",
    "ConflictError",
]
