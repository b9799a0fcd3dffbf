from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pravaah.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(fs_root: Path, name: str) -> str:
    """Return a persisted signing secret, generating it on first use.

    Tokens stay valid across restarts as long as SHARED_FS_ROOT is kept.
    """
    secret_path = fs_root / f".{name}"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", name=name, error=str(exc))

    generated = secrets.token_urlsafe(64)
    fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f".{name}_", suffix=".tmp")
    try:
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", name=name, error=str(exc))
        raise RuntimeError(
            f"Unable to persist {name}; set it explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("secret_generated", name=name, path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Process-wide settings, loaded once at startup."""

    database_url: str = env_field("postgresql://localhost:5432/pravaah", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-process fallbacks and runtime resets used by the test suite",
    )
    shared_fs_root: str = env_field("/srv/pravaah", "SHARED_FS_ROOT")

    # Tokens
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 10, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    token_clock_skew_seconds: int = env_field(30, "TOKEN_CLOCK_SKEW_SECONDS", ge=0)
    reset_token_ttl_minutes: int = env_field(15, "RESET_TOKEN_TTL_MINUTES", gt=0)

    # argon2id cost parameters
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", ge=8, description="KiB"
    )

    # Mail dispatcher
    mail_host: str | None = env_field(None, "MAIL_HOST")
    mail_port: int = env_field(465, "MAIL_PORT")
    mail_user: str | None = env_field(None, "MAIL_USER")
    mail_password: str | None = env_field(None, "MAIL_PASS")
    mail_use_ssl: bool = env_field(True, "MAIL_USE_SSL")
    mail_from_name: str = env_field("Support", "MAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    password_reset_path: str = env_field("/reset-password", "PASSWORD_RESET_PATH")

    # File store
    cloudinary_cloud_name: str | None = env_field(None, "CLOUDINARY_CLOUD_NAME")
    cloudinary_api_key: str | None = env_field(None, "CLOUDINARY_API_KEY")
    cloudinary_api_secret: str | None = env_field(None, "CLOUDINARY_API_SECRET")
    cloudinary_folder: str = env_field("Pravaah", "CLOUDINARY_FOLDER")
    upload_timeout_seconds: float = env_field(30.0, "UPLOAD_TIMEOUT_SECONDS", gt=0)
    max_upload_bytes: int = env_field(10 * 1024 * 1024, "MAX_UPLOAD_BYTES", gt=0)

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    reset_confirm_rate_limit_per_minute: int = env_field(
        10, "RESET_CONFIRM_RATE_LIMIT_PER_MINUTE"
    )

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
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("password_reset_path")
    @classmethod
    def _ensure_leading_slash(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"

    @model_validator(mode="after")
    def _ensure_token_secrets(self) -> "Settings":
        fs_root = Path(self.shared_fs_root)
        if not self.access_token_secret:
            self.access_token_secret = _load_or_create_secret(fs_root, "access_token_secret")
        if not self.refresh_token_secret:
            self.refresh_token_secret = _load_or_create_secret(fs_root, "refresh_token_secret")
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
