"""Configuration loader for the accounts backend."""
from __future__ import annotations

import logging
import os
import re
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

LOGGER = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = REPO_ROOT / ".env"


def _split_list(value: str) -> List[str]:
    """Turn ``"a, b c"`` into ``["a", "b", "c"]`` keeping first occurrences."""

    return list(dict.fromkeys(part for part in re.split(r"[,\s]+", value) if part))


# Environment variable -> (config path, converter)
ENV_OVERRIDES: Tuple[Tuple[str, Tuple[str, ...], Callable[[str], Any]], ...] = (
    ("AUTH_DATABASE_URL", ("auth", "database_url"), str),
    ("JWT_ACCESS_SECRET", ("auth", "jwt", "access_secret_key"), str),
    ("JWT_REFRESH_SECRET", ("auth", "jwt", "refresh_secret_key"), str),
    ("MAIL_HOST", ("auth", "smtp", "host"), str),
    ("MAIL_PORT", ("auth", "smtp", "port"), int),
    ("MAIL_USER", ("auth", "smtp", "username"), str),
    ("MAIL_PASSWORD", ("auth", "smtp", "password"), str),
    ("MAIL_FROM", ("auth", "smtp", "from_email"), str),
    ("CLIENT_URL", ("auth", "mail", "client_url"), str),
    ("ALLOWED_ORIGINS", ("cors", "allowed_origins"), _split_list),
)


class ConfigError(RuntimeError):
    """The configuration file or its environment overrides are unusable."""


class _FrozenModel(BaseModel):
    """Immutable settings section."""

    model_config = ConfigDict(frozen=True)


class ServiceConfig(_FrozenModel):
    """Service identity reported by the health endpoint."""

    name: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    api_prefix: str = Field("/api")

    @field_validator("api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        stripped = value.strip().rstrip("/")
        if stripped and not stripped.startswith("/"):
            stripped = f"/{stripped}"
        return stripped


class AuthJWTConfig(_FrozenModel):
    """JWT signing settings for the access/refresh token pair."""

    access_secret_key: str = Field(..., min_length=32)
    refresh_secret_key: str = Field(..., min_length=32)
    algorithm: str = Field("HS256", min_length=1)
    access_token_expires_minutes: int = Field(..., ge=1)
    refresh_token_expires_minutes: int = Field(..., ge=1)

    @model_validator(mode="after")
    def _validate_distinct_secrets(self) -> "AuthJWTConfig":
        if self.access_secret_key == self.refresh_secret_key:
            msg = "auth.jwt access and refresh secrets must differ"
            raise ValueError(msg)
        return self

    @property
    def access_token_ttl(self) -> timedelta:
        """Lifetime of an access token."""

        return timedelta(minutes=self.access_token_expires_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        """Lifetime of a refresh token."""

        return timedelta(minutes=self.refresh_token_expires_minutes)


class AuthLockoutConfig(_FrozenModel):
    """Failed login thresholds."""

    max_attempts: int = Field(5, ge=1)
    lock_minutes: int = Field(120, ge=1)

    @property
    def lock_duration(self) -> timedelta:
        """Return how long an account stays locked."""

        return timedelta(minutes=self.lock_minutes)


class AuthTokenConfig(_FrozenModel):
    """Lifetimes of the single-use tokens delivered by email."""

    confirmation_ttl_minutes: int = Field(24 * 60, ge=1)
    reset_ttl_minutes: int = Field(24 * 60, ge=1)

    @property
    def confirmation_ttl(self) -> timedelta:
        """Return the email confirmation token lifetime."""

        return timedelta(minutes=self.confirmation_ttl_minutes)

    @property
    def reset_ttl(self) -> timedelta:
        """Return the password reset token lifetime."""

        return timedelta(minutes=self.reset_ttl_minutes)


class AuthPasswordConfig(_FrozenModel):
    """Password hashing parameters."""

    bcrypt_rounds: int = Field(10, ge=4, le=31)


class AuthSMTPConfig(_FrozenModel):
    """Outgoing mail server."""

    host: str = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535)
    username: str = Field(default="")
    password: str = Field(default="")
    use_tls: bool = False
    from_email: str = Field(..., min_length=3)


class AuthMailConfig(_FrozenModel):
    """Links and branding used in outgoing emails."""

    app_name: str = Field(..., min_length=1)
    client_url: str = Field(..., min_length=1)
    confirm_path: str = Field("/confirm-email", min_length=1)
    reset_path: str = Field("/reset-password", min_length=1)


class AuthConfig(_FrozenModel):
    """Settings for the account lifecycle."""

    database_url: str = Field(..., min_length=1)
    jwt: AuthJWTConfig
    lockout: AuthLockoutConfig = Field(default_factory=AuthLockoutConfig)
    tokens: AuthTokenConfig = Field(default_factory=AuthTokenConfig)
    password: AuthPasswordConfig = Field(default_factory=AuthPasswordConfig)
    smtp: AuthSMTPConfig
    mail: AuthMailConfig


class CORSConfig(_FrozenModel):
    """Origins allowed to call the API from a browser."""

    allowed_origins: List[str] = Field(default_factory=list)


class AppConfig(_FrozenModel):
    """Validated contents of config.yaml."""

    service: ServiceConfig
    auth: AuthConfig
    cors: CORSConfig = Field(default_factory=CORSConfig)

    @staticmethod
    def default_path() -> Path:
        """Return ``config.yaml`` at the repository root."""

        return REPO_ROOT / "config.yaml"


def _env_file_path() -> Optional[Path]:
    """Pick the dotenv file to read: ``ACCOUNTS_ENV_FILE`` or the repository ``.env``."""

    configured = os.getenv("ACCOUNTS_ENV_FILE")
    if not configured:
        return DEFAULT_ENV_FILE if DEFAULT_ENV_FILE.is_file() else None
    env_path = Path(configured).expanduser()
    if env_path.is_file():
        return env_path
    LOGGER.warning("ACCOUNTS_ENV_FILE points to a missing file: %s", env_path)
    return None


def _parse_env_line(raw_line: str) -> Optional[Tuple[str, str]]:
    """Return the ``(key, value)`` pair declared on one dotenv line, if any."""

    line = raw_line.strip()
    if line.startswith("export "):
        line = line[len("export ") :].lstrip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    name, _, value = line.partition("=")
    name, value = name.strip(), value.strip()
    if not name:
        return None
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return name, value[1:-1]
    # Unquoted values may carry a trailing comment.
    return name, value.split("#", 1)[0].rstrip()


def _load_env_file(path: Path) -> None:
    """Copy dotenv entries into ``os.environ`` without clobbering non-blank values."""

    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        LOGGER.warning("Could not read env file %s", path)
        return
    for parsed in map(_parse_env_line, lines):
        if parsed is None:
            continue
        name, value = parsed
        if os.environ.get(name, "").strip():
            continue
        os.environ[name] = value


def _set_path(target: Dict[str, Any], path: Tuple[str, ...], value: Any) -> None:
    for key in path[:-1]:
        target = target.setdefault(key, {})
    target[path[-1]] = value


def _apply_environment_overrides(raw_content: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay secrets and connection settings taken from the environment.

    Raises:
        ConfigError: If an override cannot be converted to the expected type.
    """

    env_path = _env_file_path()
    if env_path is not None:
        _load_env_file(env_path)

    for env_key, path, converter in ENV_OVERRIDES:
        raw = os.getenv(env_key, "").strip()
        if not raw:
            continue
        try:
            value = converter(raw)
        except ValueError as exc:
            LOGGER.error("Environment variable %s has an unusable value", env_key)
            raise ConfigError(f"Invalid value for {env_key}") from exc
        _set_path(raw_content, path, value)
        LOGGER.info("Using %s for %s", env_key, ".".join(path))
    return raw_content


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Parse ``path`` as a YAML mapping, raising ``ConfigError`` otherwise."""

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        LOGGER.error("No configuration file at %s", path)
        raise ConfigError(f"Configuration file not found: {path}") from exc
    except yaml.YAMLError as exc:
        LOGGER.error("Could not parse YAML in %s", path)
        raise ConfigError(f"Invalid YAML in {path}") from exc
    if not isinstance(data, dict):
        LOGGER.error("Top level of %s is not a mapping", path)
        raise ConfigError("Configuration root must be a mapping")
    return data


@lru_cache(maxsize=1)
def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load, override and validate the service configuration.

    Args:
        path: YAML file to read instead of the repository ``config.yaml``.

    Raises:
        ConfigError: If the file is missing, malformed or fails validation.
    """

    raw_content = _apply_environment_overrides(_read_yaml(path or AppConfig.default_path()))
    try:
        return AppConfig(**raw_content)
    except ValidationError as exc:
        LOGGER.error("Configuration failed validation: %s", exc)
        raise ConfigError("Configuration validation failed") from exc
