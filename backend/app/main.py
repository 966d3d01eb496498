"""FastAPI application factory for the accounts API."""
from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from backend.app.auth.migrations.versions import initial as initial_migration
from backend.app.auth.router import router as auth_router
from backend.app.auth.schemas import HealthResponse
from backend.app.auth.utils import EmailDispatcher, JWTManager, PasswordHasher
from backend.app.config import AppConfig, load_config

LOGGER = logging.getLogger(__name__)


def create_app(config: AppConfig | None = None) -> FastAPI:
    """Build the accounts API.

    Args:
        config: Settings to use. Falls back to ``load_config()`` and therefore
            to config.yaml plus environment overrides.

    Returns:
        FastAPI: Application with the auth router mounted under the API prefix.
    """

    resolved_config = config or load_config()
    service_config = resolved_config.service
    app = FastAPI(title="Accounts API", version=service_config.version)
    app.state.app_config = resolved_config

    auth_config = resolved_config.auth
    auth_engine: AsyncEngine = create_async_engine(auth_config.database_url, future=True)
    auth_session_factory = async_sessionmaker(auth_engine, expire_on_commit=False)
    app.state.auth_engine = auth_engine
    app.state.auth_session_factory = auth_session_factory
    app.state.auth_config = auth_config
    app.state.jwt_manager = JWTManager(auth_config.jwt)
    app.state.password_hasher = PasswordHasher(auth_config.password.bcrypt_rounds)
    app.state.email_dispatcher = EmailDispatcher(auth_config.smtp, auth_config.mail)

    @app.on_event("startup")
    async def _init_auth_schema() -> None:
        async with auth_engine.begin() as connection:
            await connection.run_sync(initial_migration.upgrade)
        LOGGER.info(
            "Auth schema ready",
            extra={"revision": initial_migration.REVISION, "service": service_config.name},
        )

    @app.on_event("shutdown")
    async def _dispose_auth_engine() -> None:
        await auth_engine.dispose()

    allowed_origins = resolved_config.cors.allowed_origins
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.get("/health", tags=["system"], summary="Service health probe")
    def health() -> HealthResponse:
        """Return service health information."""

        return HealthResponse(status="ok", version=service_config.version)

    app.include_router(auth_router, prefix=service_config.api_prefix)

    return app


def serve() -> None:
    """Run the API with uvicorn using the configured application."""

    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
