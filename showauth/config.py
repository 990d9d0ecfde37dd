from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from showauth.logging import get_logger

logger = get_logger(__name__)


class CliCallbackBackend(str, Enum):
    """Where pending CLI OAuth callbacks are kept between login and callback."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth backend, read from the environment and `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/showauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/showauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; enables runtime resets.",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET_KEY", validate_default=True)
    jwt_issuer: str = env_field("psychic-homily-backend", "JWT_ISSUER")
    jwt_audience: str = env_field("psychic-homily-users", "JWT_AUDIENCE")
    jwt_expiry_hours: int = env_field(24, "JWT_EXPIRY_HOURS")
    token_clock_skew_seconds: int = env_field(120, "TOKEN_CLOCK_SKEW_SECONDS")
    refresh_grace_hours: int = env_field(
        7 * 24,
        "REFRESH_GRACE_HOURS",
        description="How long after expiry a session token may still be refreshed",
    )

    # Session cookie
    session_path: str = env_field("/", "SESSION_PATH")
    session_domain: str | None = env_field(None, "SESSION_DOMAIN")
    session_max_age: int = env_field(86400, "SESSION_MAX_AGE")
    session_http_only: bool = env_field(True, "SESSION_HTTP_ONLY")
    session_secure: bool = env_field(False, "SESSION_SECURE")
    session_same_site: str = env_field("lax", "SESSION_SAME_SITE")

    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    api_base_url: str = env_field("http://localhost:8080", "API_BASE_URL")
    cors_allow_origins: list[str] | None = env_field(None, "CORS_ALLOW_ORIGINS")

    # OAuth
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_callback_url: str | None = env_field(None, "GOOGLE_CALLBACK_URL")
    github_client_id: str | None = env_field(None, "GITHUB_CLIENT_ID")
    github_client_secret: str | None = env_field(None, "GITHUB_CLIENT_SECRET")
    github_callback_url: str | None = env_field(None, "GITHUB_CALLBACK_URL")
    oauth_secret_key: str | None = env_field(
        None,
        "OAUTH_SECRET_KEY",
        description="Key material for encrypting provider tokens at rest",
    )
    cli_callback_backend: CliCallbackBackend = env_field(
        CliCallbackBackend.MEMORY,
        "CLI_CALLBACK_BACKEND",
        description="memory keeps callbacks per process; redis shares them across instances",
    )

    # WebAuthn
    webauthn_rp_id: str = env_field("localhost", "WEBAUTHN_RP_ID")
    webauthn_rp_name: str = env_field("Psychic Homily", "WEBAUTHN_RP_NAME")
    webauthn_rp_origins: list[str] | None = env_field(None, "WEBAUTHN_RP_ORIGINS")

    apple_bundle_id: str | None = env_field(None, "APPLE_BUNDLE_ID")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Psychic Homily", "EMAIL_FROM_NAME")

    # Notifications
    discord_webhook_url: str | None = env_field(None, "DISCORD_WEBHOOK_URL")
    discord_notifications_enabled: bool = env_field(
        False, "DISCORD_NOTIFICATIONS_ENABLED"
    )

    hibp_check_enabled: bool = env_field(
        True,
        "HIBP_CHECK_ENABLED",
        description="Query the Have I Been Pwned range API during password validation",
    )
    cleanup_interval_hours: int = env_field(24, "CLEANUP_INTERVAL_HOURS")

    # Per-IP request budgets; 0 disables the group
    auth_rate_limit_per_minute: int = env_field(10, "AUTH_RATE_LIMIT_PER_MINUTE")
    passkey_rate_limit_per_minute: int = env_field(20, "PASSKEY_RATE_LIMIT_PER_MINUTE")

    # Admin API tokens
    api_token_default_days: int = env_field(90, "API_TOKEN_DEFAULT_DAYS")
    api_token_max_days: int = env_field(365, "API_TOKEN_MAX_DAYS")

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

    @property
    def webauthn_origins(self) -> list[str]:
        return self.webauthn_rp_origins or [self.frontend_url]

    @field_validator("cors_allow_origins", "webauthn_rp_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("session_same_site")
    @classmethod
    def _validate_same_site(cls, value: str) -> str:
        normalized = (value or "lax").lower()
        if normalized not in {"lax", "strict", "none"}:
            raise ValueError("SESSION_SAME_SITE must be lax, strict, or none")
        return normalized

    @field_validator("cli_callback_backend")
    @classmethod
    def _validate_cli_backend(cls, value: CliCallbackBackend) -> CliCallbackBackend:
        return CliCallbackBackend(value)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/showauth"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass

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
        tmp_path: str | None = None
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
                "Unable to persist JWT secret; set JWT_SECRET_KEY or make SHARED_FS_ROOT writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
        return generated


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
