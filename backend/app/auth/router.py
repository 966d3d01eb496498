"""FastAPI router for authentication endpoints.

Routes are registered from an explicit table. Each entry carries an access
tag that decides which guard dependency runs before the handler.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, List, Optional, cast

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.params import Depends as DependsParam
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.auth.enums import AuthErrorReason, RouteAccess
from backend.app.auth.repository import AuthRepository
from backend.app.auth.schemas import (
    ConfirmEmailRequest,
    CurrentUser,
    EmailRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshPrincipal,
    RefreshRequest,
    RegisterRequest,
    RegistrationResponse,
    ResetPasswordRequest,
    TokenPair,
)
from backend.app.auth.service import AuthService, AuthServiceError
from backend.app.auth.utils import EmailDispatcher, JWTManager, PasswordHasher
from backend.app.config import AuthConfig

LOGGER = logging.getLogger(__name__)

FORGOT_PASSWORD_MESSAGE = "If the email is registered, password reset instructions have been sent"

bearer_scheme = HTTPBearer(auto_error=False)

router = APIRouter(prefix="/auth", tags=["auth"])


def _status_from_reason(reason: AuthErrorReason) -> int:
    """Translate service error reasons into HTTP status codes."""

    mapping = {
        AuthErrorReason.BAD_REQUEST: status.HTTP_400_BAD_REQUEST,
        AuthErrorReason.CONFLICT: status.HTTP_409_CONFLICT,
        AuthErrorReason.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
        AuthErrorReason.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    }
    return mapping.get(reason, status.HTTP_400_BAD_REQUEST)


def _http_error(exc: AuthServiceError) -> HTTPException:
    status_code = _status_from_reason(exc.reason)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return HTTPException(status_code=status_code, detail=str(exc), headers=headers)


def get_auth_config(request: Request) -> AuthConfig:
    """Resolve the auth configuration from the application state."""

    return request.app.state.auth_config


async def get_auth_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield an auth database session."""

    session_factory = cast(
        async_sessionmaker[AsyncSession], request.app.state.auth_session_factory
    )
    async with session_factory() as session:
        yield session


def get_jwt_manager(request: Request) -> JWTManager:
    """Return the JWT manager stored on the app state."""

    return request.app.state.jwt_manager


def get_password_hasher(request: Request) -> PasswordHasher:
    """Return the password hasher stored on the app state."""

    return request.app.state.password_hasher


def get_email_dispatcher(request: Request) -> EmailDispatcher:
    """Return the email dispatcher stored on the app state."""

    return request.app.state.email_dispatcher


async def get_auth_service(
    session: AsyncSession = Depends(get_auth_session),
    config: AuthConfig = Depends(get_auth_config),
    password_hasher: PasswordHasher = Depends(get_password_hasher),
    jwt_manager: JWTManager = Depends(get_jwt_manager),
    dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
) -> AuthService:
    """Construct an AuthService for the current request."""

    return AuthService(
        config=config,
        repository=AuthRepository(session),
        password_hasher=password_hasher,
        jwt_manager=jwt_manager,
        email_dispatcher=dispatcher,
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    service: AuthService = Depends(get_auth_service),
) -> CurrentUser:
    """Validate the bearer access token and return the authenticated principal."""

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return await service.authenticate(credentials.credentials)
    except AuthServiceError as exc:
        raise _http_error(exc) from exc


async def get_refresh_principal(
    payload: RefreshRequest,
    service: AuthService = Depends(get_auth_service),
) -> RefreshPrincipal:
    """Verify the refresh token signature and return it with the account id it names."""

    try:
        user_id = service.refresh_token_subject(payload.refresh_token)
    except AuthServiceError as exc:
        raise _http_error(exc) from exc
    return RefreshPrincipal(user_id=user_id, refresh_token=payload.refresh_token)


async def register(
    payload: RegisterRequest,
    background_tasks: BackgroundTasks,
    service: AuthService = Depends(get_auth_service),
) -> RegistrationResponse:
    """Register a new user account and send the confirmation email."""

    try:
        response, token, _expires_at = await service.register_user(payload)
    except AuthServiceError as exc:
        raise _http_error(exc) from exc
    background_tasks.add_task(
        service.send_confirmation_email, response.email, token, payload.first_name
    )
    return response


async def login(
    payload: LoginRequest, service: AuthService = Depends(get_auth_service)
) -> LoginResponse:
    """Authenticate with email and password."""

    try:
        return await service.login(payload)
    except AuthServiceError as exc:
        raise _http_error(exc) from exc


async def refresh(
    principal: RefreshPrincipal = Depends(get_refresh_principal),
    service: AuthService = Depends(get_auth_service),
) -> TokenPair:
    """Exchange the current refresh token for a new token pair."""

    try:
        return await service.refresh_tokens(principal.user_id, principal.refresh_token)
    except AuthServiceError as exc:
        raise _http_error(exc) from exc


async def logout(
    current_user: CurrentUser = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Revoke the refresh token of the current user."""

    return await service.logout(current_user.user_id)


async def confirm_email(
    payload: ConfirmEmailRequest, service: AuthService = Depends(get_auth_service)
) -> MessageResponse:
    """Confirm an email address with the emailed token."""

    try:
        return await service.confirm_email(payload.token)
    except AuthServiceError as exc:
        raise _http_error(exc) from exc


async def forgot_password(
    payload: EmailRequest,
    background_tasks: BackgroundTasks,
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Start a password reset without revealing whether the account exists.

    The body and status never vary. Only known, confirmed accounts cost a
    database write, so response time can still differ; pair this route with
    rate limiting at the proxy.
    """

    try:
        user, token, expires_at = await service.request_password_reset(payload.email)
    except AuthServiceError:
        LOGGER.debug("Password reset requested for an unknown or unconfirmed account")
    else:
        background_tasks.add_task(
            service.send_password_reset_email, user.email, token, expires_at, user.first_name
        )
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


async def reset_password(
    payload: ResetPasswordRequest, service: AuthService = Depends(get_auth_service)
) -> MessageResponse:
    """Set a new password with the emailed reset token."""

    try:
        return await service.reset_password(payload.token, payload.password)
    except AuthServiceError as exc:
        raise _http_error(exc) from exc


async def resend_confirmation(
    payload: EmailRequest,
    background_tasks: BackgroundTasks,
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Send a new confirmation email to an unconfirmed account."""

    try:
        user, token = await service.resend_confirmation(payload.email)
    except AuthServiceError as exc:
        raise _http_error(exc) from exc
    background_tasks.add_task(service.send_confirmation_email, user.email, token, user.first_name)
    return MessageResponse(message="Confirmation email sent again")


async def me(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Return the identity carried by the access token."""

    return current_user


@dataclass(frozen=True)
class Route:
    """Declarative description of one API route."""

    method: str
    path: str
    endpoint: Callable[..., Any]
    access: RouteAccess
    response_model: Any
    status_code: int = status.HTTP_200_OK


GUARDS = {
    RouteAccess.PUBLIC: None,
    RouteAccess.BEARER: get_current_user,
    RouteAccess.REFRESH: get_refresh_principal,
}

ROUTES: List[Route] = [
    Route("POST", "/register", register, RouteAccess.PUBLIC, RegistrationResponse, status.HTTP_201_CREATED),
    Route("POST", "/login", login, RouteAccess.PUBLIC, LoginResponse),
    Route("POST", "/refresh", refresh, RouteAccess.REFRESH, TokenPair),
    Route("POST", "/logout", logout, RouteAccess.BEARER, MessageResponse),
    Route("POST", "/confirm-email", confirm_email, RouteAccess.PUBLIC, MessageResponse),
    Route("POST", "/forgot-password", forgot_password, RouteAccess.PUBLIC, MessageResponse),
    Route("POST", "/reset-password", reset_password, RouteAccess.PUBLIC, MessageResponse),
    Route("POST", "/resend-confirmation", resend_confirmation, RouteAccess.PUBLIC, MessageResponse),
    Route("GET", "/me", me, RouteAccess.BEARER, CurrentUser),
]


def register_routes(target: APIRouter, routes: List[Route]) -> None:
    """Attach every route to ``target`` with the guard its access tag requires."""

    for route in routes:
        guard = GUARDS[route.access]
        dependencies: List[DependsParam] = [Depends(guard)] if guard is not None else []
        target.add_api_route(
            route.path,
            route.endpoint,
            methods=[route.method],
            response_model=route.response_model,
            status_code=route.status_code,
            dependencies=dependencies,
            name=route.endpoint.__name__,
        )


register_routes(router, ROUTES)


__all__ = [
    "router",
    "ROUTES",
    "Route",
    "register_routes",
    "get_current_user",
    "get_refresh_principal",
    "get_auth_service",
    "get_auth_session",
    "get_auth_config",
]
