from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from wukongid.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class AuthenticationMode(str, Enum):
    """How request authentication behaves when the session credential fails.

    - STRICT: the request is unauthenticated
    - DEVELOPMENT_FALLBACK: the request resolves to the development identity;
      never accepted together with a production environment
    """

    STRICT = "strict"
    DEVELOPMENT_FALLBACK = "development_fallback"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity provider core."""

    client_id: str = env_field(
        "wukong-console", "APP_ID", description="The only client allowed to request codes"
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    issuer: str = env_field("http://localhost:8081", "OAUTH_SERVER_URL")
    owner_open_id: str | None = env_field(
        None, "OWNER_OPEN_ID", description="Subject promoted to admin on upsert"
    )
    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    auth_mode: AuthenticationMode = env_field(AuthenticationMode.STRICT, "AUTH_MODE")
    session_cookie_name: str = env_field("app_session_id", "SESSION_COOKIE_NAME")
    device_cookie_name: str = env_field("device_session", "DEVICE_COOKIE_NAME")
    session_ttl_days: int = env_field(365, "SESSION_TTL_DAYS", gt=0)
    auth_code_ttl_seconds: int = env_field(10 * 60, "AUTH_CODE_TTL_SECONDS", gt=0)
    access_token_ttl_seconds: int = env_field(60 * 60, "ACCESS_TOKEN_TTL_SECONDS", gt=0)
    id_token_ttl_seconds: int = env_field(60 * 60, "ID_TOKEN_TTL_SECONDS", gt=0)
    device_session_ttl_days: int = env_field(30, "DEVICE_SESSION_TTL_DAYS", gt=0)
    sweep_interval_seconds: int = env_field(
        5 * 60,
        "SWEEP_INTERVAL_SECONDS",
        description="Interval of the expired code/token sweep",
    )
    mfa_issuer: str = env_field("Wukong Dashboard", "MFA_ISSUER")
    mfa_pending_ttl_seconds: int = env_field(5 * 60, "MFA_PENDING_TTL_SECONDS", gt=0)
    mfa_enrollment_ttl_seconds: int = env_field(10 * 60, "MFA_ENROLLMENT_TTL_SECONDS", gt=0)
    mfa_secret_key: str | None = env_field(
        None, "MFA_SECRET_KEY", description="Key material for TOTP secret encryption"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_redis_token_store: bool = env_field(
        False,
        "USE_REDIS_TOKEN_STORE",
        description="Share codes and access tokens across instances through Redis",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    shared_fs_root: str = env_field("/srv/wukongid", "SHARED_FS_ROOT")

    model_config = ConfigDict(extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("client_id")
    @classmethod
    def _normalize_client_id(cls, value: str) -> str:
        normalized = normalize_client_id(value)
        if not normalized:
            raise ValueError("APP_ID must not be empty")
        return normalized

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Generated secrets are persisted so credentials survive restarts
        return _load_or_create_secret(Path(os.getenv("SHARED_FS_ROOT", "/srv/wukongid")))

    @model_validator(mode="after")
    def _reject_fallback_in_production(self) -> "Settings":
        if self.is_production and self.auth_mode == AuthenticationMode.DEVELOPMENT_FALLBACK:
            raise ValueError(
                "AUTH_MODE=development_fallback is not allowed when APP_ENV=production"
            )
        return self


def normalize_client_id(value: str | None) -> str:
    """Trim whitespace and one layer of surrounding quotes from a client id."""
    if not value:
        return ""
    cleaned = value.strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in {"'", '"'}:
        cleaned = cleaned[1:-1]
    return cleaned.strip()


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None


def _load_or_create_secret(fs_root: Path, name: str = ".jwt_secret") -> str:
    """Return the signing secret stored under ``fs_root``, creating it once."""
    secret_path = fs_root / name
    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            stored = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(stored) >= 32:
                return stored

    secret = secrets.token_urlsafe(64)
    try:
        fs_root.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, staging = tempfile.mkstemp(dir=str(fs_root), prefix=f"{name}.", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(secret)
        os.replace(staging, secret_path)
    except OSError as exc:
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "JWT_SECRET is unset and SHARED_FS_ROOT is not writable; set one of them"
        ) from exc
    logger.warning("jwt_secret_generated", path=str(secret_path))
    return secret
