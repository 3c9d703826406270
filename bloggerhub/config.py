from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from bloggerhub.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FS_ROOT = "/srv/bloggerhub"


class TokenAlgorithm(str, Enum):
    """HMAC signing algorithms accepted for access and refresh tokens."""

    HS256 = "HS256"
    HS384 = "HS384"
    HS512 = "HS512"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a signing secret persisted under SHARED_FS_ROOT, generating it once.

    Tokens must remain verifiable across restarts, so a generated secret is
    written atomically with 0600 permissions and reused on later boots.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", DEFAULT_FS_ROOT))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may be owned by another user (e.g. mounted volume)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret via env var or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("secret_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the BloggerHub auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/bloggerhub", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field(DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, local rate limits).",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    jwt_issuer: str = env_field("blogger-hub", "JWT_ISSUER")
    access_token_secret: str = env_field(None, "ACCESS_TOKEN_SECRET", validate_default=True)
    refresh_token_secret: str = env_field(None, "REFRESH_TOKEN_SECRET", validate_default=True)
    access_token_algorithm: TokenAlgorithm = env_field(
        TokenAlgorithm.HS512, "ACCESS_TOKEN_ALGORITHM"
    )
    refresh_token_algorithm: TokenAlgorithm = env_field(
        TokenAlgorithm.HS512, "REFRESH_TOKEN_ALGORITHM"
    )
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime in minutes",
    )
    refresh_token_ttl_days: int = env_field(
        7,
        "REFRESH_TOKEN_TTL_DAYS",
        description="Refresh token lifetime in days",
    )
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking token expiry",
    )

    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("access_token_algorithm", "refresh_token_algorithm", mode="before")
    @classmethod
    def _normalize_algorithm(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("access_token_secret", mode="before")
    @classmethod
    def _ensure_access_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".access_token_secret")

    @field_validator("refresh_token_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".refresh_token_secret")

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "login_rate_limit_per_minute",
        "signup_rate_limit_per_minute",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("token_leeway_seconds")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("token leeway cannot be negative")
        return value

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh token secrets must differ")
        return self


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
