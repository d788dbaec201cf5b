from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from adminguard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the admin panel security core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/adminguard", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/adminguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets and in-process caches.",
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "DATABASE_TIMEOUT_SECONDS",
        description="Upper bound for acquiring a connection and for each statement",
    )

    # Token codec
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("adminguard", "JWT_ISSUER")
    jwt_audience: str = env_field("adminguard-panel", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        24 * 60, "ACCESS_TOKEN_TTL_MINUTES", gt=0
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    token_clock_skew_seconds: int = env_field(30, "TOKEN_CLOCK_SKEW_SECONDS", ge=0)

    # Lockout guard
    lockout_threshold: int = env_field(5, "ADMIN_LOCKOUT_THRESHOLD", ge=1)
    lockout_duration_minutes: int = env_field(15, "ADMIN_LOCKOUT_MINUTES", ge=1)

    # Rate limiter
    rate_limit_enabled: bool = env_field(True, "ADMIN_RATE_LIMIT_ENABLED")
    rate_limit_auth_max: int = env_field(10, "ADMIN_RATE_LIMIT_AUTH_MAX")
    rate_limit_auth_window: int = env_field(60, "ADMIN_RATE_LIMIT_AUTH_WINDOW")
    rate_limit_api_max: int = env_field(100, "ADMIN_RATE_LIMIT_API_MAX")
    rate_limit_api_window: int = env_field(60, "ADMIN_RATE_LIMIT_API_WINDOW")
    rate_limit_sweep_probability: float = env_field(
        0.01, "ADMIN_RATE_LIMIT_SWEEP_PROBABILITY", ge=0.0, le=1.0
    )
    trust_proxy_headers: bool = env_field(
        True,
        "ADMIN_TRUST_PROXY_HEADERS",
        description="Resolve the client origin from X-Forwarded-For / X-Real-IP",
    )

    # CSRF
    csrf_enabled: bool = env_field(True, "ADMIN_CSRF_ENABLED")
    csrf_header_name: str = env_field("X-CSRF-Token", "ADMIN_CSRF_TOKEN_NAME")
    csrf_token_length: int = env_field(32, "ADMIN_CSRF_TOKEN_LENGTH", ge=16)
    csrf_token_ttl_seconds: int = env_field(3600, "ADMIN_CSRF_TOKEN_LIFETIME", gt=0)

    # HTTP surface
    request_size_limit_enabled: bool = env_field(True, "ADMIN_REQUEST_SIZE_LIMIT_ENABLED")
    request_size_limit_mb: int = env_field(10, "ADMIN_REQUEST_SIZE_LIMIT_MB", gt=0)
    https_only: bool = env_field(False, "ADMIN_HTTPS_ONLY")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
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
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/adminguard"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def request_size_limit_bytes(self) -> int:
        return self.request_size_limit_mb * 1024 * 1024


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
