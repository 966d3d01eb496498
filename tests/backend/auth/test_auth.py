"""Tests for the account lifecycle service: registration, lockout, tokens and resets."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from backend.app.auth.models import AuthBase, User
from backend.app.auth.repository import AuthRepository
from backend.app.auth.schemas import LoginRequest, RegisterRequest
from backend.app.auth.service import (
    INVALID_CREDENTIALS_MESSAGE,
    AuthService,
    BadRequestError,
    ConflictError,
    NotFoundError,
    UnauthorizedError,
)
from backend.app.auth.utils import JWTError, JWTManager, PasswordHasher, hash_token
from backend.app.config import (
    AuthConfig,
    AuthJWTConfig,
    AuthMailConfig,
    AuthPasswordConfig,
    AuthSMTPConfig,
)

PASSWORD = "Str0ng!Pass"
NEW_PASSWORD = "N3w-secret!"
EMAIL = "alice@example.com"


class StubEmailDispatcher:
    """Collect emails instead of sending them over SMTP."""

    def __init__(self) -> None:
        self.confirmations: List[Tuple[str, str]] = []
        self.resets: List[Tuple[str, str, datetime]] = []

    async def send_confirmation_email(
        self, recipient: str, token: str, first_name: Optional[str] = None
    ) -> None:
        self.confirmations.append((recipient, token))

    async def send_password_reset_email(
        self, recipient: str, token: str, expires_at: datetime, first_name: Optional[str] = None
    ) -> None:
        self.resets.append((recipient, token, expires_at))


class FakeClock:
    """Controllable clock returning an aware UTC timestamp."""

    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def _auth_config() -> AuthConfig:
    return AuthConfig(
        database_url="sqlite+aiosqlite:///:memory:",
        jwt=AuthJWTConfig(
            access_secret_key="test-access-secret-0123456789abcdef",
            refresh_secret_key="test-refresh-secret-0123456789abcdef",
            access_token_expires_minutes=15,
            refresh_token_expires_minutes=60,
        ),
        password=AuthPasswordConfig(bcrypt_rounds=4),
        smtp=AuthSMTPConfig(host="localhost", port=1025, from_email="no-reply@example.com"),
        mail=AuthMailConfig(app_name="Test Shop", client_url="http://client.test"),
    )


async def _setup_repository() -> Tuple[AuthRepository, AsyncEngine]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as connection:
        await connection.run_sync(AuthBase.metadata.create_all)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    session = session_factory()
    repo = AuthRepository(session)
    return repo, engine


async def _setup_service(
    clock: Optional[FakeClock] = None,
) -> Tuple[AuthService, AuthRepository, AsyncEngine, StubEmailDispatcher]:
    repo, engine = await _setup_repository()
    config = _auth_config()
    dispatcher = StubEmailDispatcher()
    service = AuthService(
        config=config,
        repository=repo,
        password_hasher=PasswordHasher(config.password.bcrypt_rounds),
        jwt_manager=JWTManager(config.jwt),
        email_dispatcher=dispatcher,  # type: ignore[arg-type]
        clock=clock,
    )
    return service, repo, engine, dispatcher


async def _teardown(repo: AuthRepository, engine: AsyncEngine) -> None:
    await repo.session.close()
    await engine.dispose()


async def _register(service: AuthService, email: str = EMAIL) -> str:
    _, token, _ = await service.register_user(
        RegisterRequest(email=email, password=PASSWORD, first_name="Alice")
    )
    return token


async def _register_confirmed(service: AuthService, email: str = EMAIL) -> None:
    token = await _register(service, email)
    await service.confirm_email(token)


def test_register_stores_only_token_digest() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        response, token, expires_at = await service.register_user(
            RegisterRequest(email="Alice@Example.com", password=PASSWORD)
        )
        assert response.email == EMAIL
        user = await repo.get_user_by_email(EMAIL)
        assert user is not None
        assert user.is_email_confirmed is False
        assert user.email_confirmation_token == hash_token(token)
        assert user.hashed_password != PASSWORD
        assert user.login_attempts == 0
        assert expires_at > datetime.now(timezone.utc) + timedelta(hours=23)
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_duplicate_registration_conflicts_case_insensitively() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        await _register(service)
        with pytest.raises(ConflictError):
            await service.register_user(
                RegisterRequest(email="ALICE@example.com", password=PASSWORD)
            )
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_login_before_confirmation_is_rejected_without_counting() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        await _register(service)
        with pytest.raises(UnauthorizedError) as excinfo:
            await service.login(LoginRequest(email=EMAIL, password=PASSWORD))
        assert "Email not confirmed" in str(excinfo.value)
        user = await repo.get_user_by_email(EMAIL)
        assert user is not None and user.login_attempts == 0
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_unknown_email_and_wrong_password_share_message() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        await _register_confirmed(service)
        with pytest.raises(UnauthorizedError) as unknown:
            await service.login(LoginRequest(email="bob@example.com", password=PASSWORD))
        with pytest.raises(UnauthorizedError) as wrong:
            await service.login(LoginRequest(email=EMAIL, password="wrong"))
        assert str(unknown.value) == str(wrong.value) == INVALID_CREDENTIALS_MESSAGE
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_register_confirm_login_round_trip() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        await _register_confirmed(service)
        response = await service.login(LoginRequest(email=EMAIL, password=PASSWORD))
        assert response.user.email == EMAIL
        assert response.user.first_name == "Alice"
        user = await repo.get_user_by_email(EMAIL)
        assert user is not None
        assert user.is_email_confirmed is True
        assert user.email_confirmation_token is None
        assert user.refresh_token_hash == hash_token(response.refresh_token)
        principal = await service.authenticate(response.access_token)
        assert principal.user_id == user.id
        assert principal.email == EMAIL
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_lockout_after_max_failures_even_with_correct_password() -> None:
    async def _run() -> None:
        clock = FakeClock()
        service, repo, engine, _ = await _setup_service(clock)
        await _register_confirmed(service)
        for _ in range(5):
            with pytest.raises(UnauthorizedError):
                await service.login(LoginRequest(email=EMAIL, password="wrong"))
        user = await repo.get_user_by_email(EMAIL)
        assert user is not None
        assert user.login_attempts == 5
        assert user.lock_until is not None

        with pytest.raises(UnauthorizedError) as excinfo:
            await service.login(LoginRequest(email=EMAIL, password=PASSWORD))
        assert str(excinfo.value) == "Account temporarily locked. Try again in 120 minutes."

        clock.advance(minutes=90, seconds=30)
        with pytest.raises(UnauthorizedError) as excinfo:
            await service.login(LoginRequest(email=EMAIL, password=PASSWORD))
        assert "Try again in 30 minutes" in str(excinfo.value)

        clock.advance(minutes=30)
        response = await service.login(LoginRequest(email=EMAIL, password=PASSWORD))
        assert response.access_token
        user = await repo.get_user_by_email(EMAIL)
        assert user is not None
        assert user.login_attempts == 0
        assert user.lock_until is None
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_successful_login_resets_failure_counter() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        await _register_confirmed(service)
        for _ in range(4):
            with pytest.raises(UnauthorizedError):
                await service.login(LoginRequest(email=EMAIL, password="wrong"))
        await service.login(LoginRequest(email=EMAIL, password=PASSWORD))
        for _ in range(4):
            with pytest.raises(UnauthorizedError):
                await service.login(LoginRequest(email=EMAIL, password="wrong"))
        user = await repo.get_user_by_email(EMAIL)
        assert user is not None
        assert user.login_attempts == 4
        assert user.lock_until is None
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_failed_login_increments_from_stored_value() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        await _register_confirmed(service)
        user = await repo.get_user_by_email(EMAIL)
        assert user is not None
        # Simulate a concurrent request bumping the counter behind this session's back.
        await repo.session.execute(
            update(User)
            .where(User.id == user.id)
            .values(login_attempts=4)
            .execution_options(synchronize_session=False)
        )
        assert user.login_attempts == 0
        lock_until = datetime.now(timezone.utc) + timedelta(hours=2)
        await repo.register_failed_login(user, max_attempts=5, lock_until=lock_until)
        assert user.login_attempts == 5
        assert user.lock_until is not None
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_confirm_email_rejects_unknown_and_expired_tokens() -> None:
    async def _run() -> None:
        clock = FakeClock()
        service, repo, engine, _ = await _setup_service(clock)
        token = await _register(service)
        with pytest.raises(NotFoundError):
            await service.confirm_email("not-a-token")

        clock.advance(hours=25)
        with pytest.raises(ConflictError):
            await service.confirm_email(token)
        user = await repo.get_user_by_email(EMAIL)
        assert user is not None
        assert user.is_email_confirmed is False
        assert user.email_confirmation_token == hash_token(token)
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_confirmation_token_is_single_use() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        token = await _register(service)
        await service.confirm_email(token)
        with pytest.raises(NotFoundError):
            await service.confirm_email(token)
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_refresh_rotation_invalidates_previous_token() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        await _register_confirmed(service)
        login = await service.login(LoginRequest(email=EMAIL, password=PASSWORD))
        user_id = service.refresh_token_subject(login.refresh_token)

        rotated = await service.refresh_tokens(user_id, login.refresh_token)
        assert rotated.refresh_token != login.refresh_token
        assert rotated.access_token != login.access_token

        with pytest.raises(UnauthorizedError):
            await service.refresh_tokens(user_id, login.refresh_token)

        latest = await service.refresh_tokens(user_id, rotated.refresh_token)
        with pytest.raises(UnauthorizedError):
            await service.refresh_tokens(user_id, rotated.refresh_token)
        assert latest.refresh_token
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_relogin_replaces_previous_session() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        await _register_confirmed(service)
        first = await service.login(LoginRequest(email=EMAIL, password=PASSWORD))
        second = await service.login(LoginRequest(email=EMAIL, password=PASSWORD))
        user_id = service.refresh_token_subject(first.refresh_token)
        with pytest.raises(UnauthorizedError):
            await service.refresh_tokens(user_id, first.refresh_token)
        assert await service.refresh_tokens(user_id, second.refresh_token)
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_rotation_compare_and_swap_rejects_stale_digest() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        await _register_confirmed(service)
        login = await service.login(LoginRequest(email=EMAIL, password=PASSWORD))
        user = await repo.get_user_by_email(EMAIL)
        assert user is not None
        current = hash_token(login.refresh_token)

        assert await repo.rotate_refresh_token_hash(user, current, "next-digest") is True
        assert await repo.rotate_refresh_token_hash(user, current, "other-digest") is False
        assert user.refresh_token_hash == "next-digest"
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_logout_revokes_refresh_token() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        await _register_confirmed(service)
        login = await service.login(LoginRequest(email=EMAIL, password=PASSWORD))
        user_id = service.refresh_token_subject(login.refresh_token)
        message = await service.logout(user_id)
        assert message.message == "You have been logged out"
        with pytest.raises(UnauthorizedError):
            await service.refresh_tokens(user_id, login.refresh_token)
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_password_reset_changes_password_and_clears_lock() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        await _register_confirmed(service)
        for _ in range(5):
            with pytest.raises(UnauthorizedError):
                await service.login(LoginRequest(email=EMAIL, password="wrong"))

        user, token, expires_at = await service.request_password_reset(EMAIL)
        assert user.password_reset_token == hash_token(token)
        assert expires_at > datetime.now(timezone.utc)

        await service.reset_password(token, NEW_PASSWORD)
        response = await service.login(LoginRequest(email=EMAIL, password=NEW_PASSWORD))
        assert response.user.email == EMAIL
        with pytest.raises(UnauthorizedError):
            await service.login(LoginRequest(email=EMAIL, password=PASSWORD))
        with pytest.raises(NotFoundError):
            await service.reset_password(token, "another-pass")
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_password_reset_token_expires() -> None:
    async def _run() -> None:
        clock = FakeClock()
        service, repo, engine, _ = await _setup_service(clock)
        await _register_confirmed(service)
        _, token, _ = await service.request_password_reset(EMAIL)
        clock.advance(hours=24, seconds=1)
        with pytest.raises(ConflictError):
            await service.reset_password(token, NEW_PASSWORD)
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_password_reset_requires_confirmed_known_account() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        await _register(service)
        with pytest.raises(NotFoundError):
            await service.request_password_reset(EMAIL)
        with pytest.raises(NotFoundError):
            await service.request_password_reset("nobody@example.com")
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_resend_confirmation_replaces_token() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        original = await _register(service)
        user, fresh = await service.resend_confirmation(EMAIL)
        assert user.email == EMAIL
        assert fresh != original
        with pytest.raises(NotFoundError):
            await service.confirm_email(original)
        await service.confirm_email(fresh)

        with pytest.raises(ConflictError):
            await service.resend_confirmation(EMAIL)
        with pytest.raises(BadRequestError):
            await service.resend_confirmation("nobody@example.com")
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_notifier_receives_links_for_delivery() -> None:
    async def _run() -> None:
        service, repo, engine, dispatcher = await _setup_service()
        token = await _register(service)
        await service.send_confirmation_email(EMAIL, token, "Alice")
        assert dispatcher.confirmations == [(EMAIL, token)]
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_authenticate_rejects_refresh_and_expired_tokens() -> None:
    async def _run() -> None:
        service, repo, engine, _ = await _setup_service()
        await _register_confirmed(service)
        login = await service.login(LoginRequest(email=EMAIL, password=PASSWORD))
        with pytest.raises(UnauthorizedError):
            await service.authenticate(login.refresh_token)

        manager = JWTManager(_auth_config().jwt)
        principal = await service.authenticate(login.access_token)
        expired = manager.create_access_token(
            principal.user_id,
            EMAIL,
            issued_at=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        with pytest.raises(UnauthorizedError):
            await service.authenticate(expired)
        with pytest.raises(UnauthorizedError):
            service.refresh_token_subject(login.access_token)
        await _teardown(repo, engine)

    asyncio.run(_run())


def test_jwt_manager_signs_distinct_typed_tokens() -> None:
    manager = JWTManager(_auth_config().jwt)
    first = manager.issue_pair("user-1", EMAIL)
    second = manager.issue_pair("user-1", EMAIL)
    assert first.refresh_token != second.refresh_token

    payload = manager.decode_refresh(first.refresh_token)
    assert payload["sub"] == "user-1"
    assert payload["type"] == "refresh"
    with pytest.raises(JWTError):
        manager.decode_access(first.refresh_token)
    with pytest.raises(JWTError):
        manager.decode_refresh(first.access_token)
