from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from uniupdates.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment and an optional .env file."""

    environment: str = env_field(
        "development",
        "ENVIRONMENT",
        description="Set to 'production' to mark refresh cookies Secure",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/uniupdates", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/uniupdates", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Lets tests pre-register Google identities instead of calling Google",
    )
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    jwt_secret: str = env_field(
        None,
        "JWT_SECRET",
        validate_default=True,
        description="Master secret; per-tenant signing keys are derived from it when not set explicitly",
    )
    jwt_issuer: str = env_field("uniupdates", "JWT_ISSUER")
    jwt_audience: str = env_field("uniupdates-clients", "JWT_AUDIENCE")

    # Admin panel tenant
    admin_access_token_secret: Optional[str] = env_field(None, "ADMIN_ACCESS_TOKEN_SECRET")
    admin_refresh_token_secret: Optional[str] = env_field(None, "ADMIN_REFRESH_TOKEN_SECRET")
    admin_access_token_ttl_minutes: int = env_field(30, "ADMIN_ACCESS_TOKEN_TTL_MINUTES")
    admin_refresh_token_ttl_minutes: int = env_field(
        3 * 24 * 60, "ADMIN_REFRESH_TOKEN_TTL_MINUTES"
    )
    admin_refresh_token_cap: Optional[int] = env_field(
        5,
        "ADMIN_REFRESH_TOKEN_CAP",
        description="Keep only the N most recent refresh tokens per admin account",
    )
    admin_hash_refresh_tokens: bool = env_field(True, "ADMIN_HASH_REFRESH_TOKENS")
    admin_otp_ttl_minutes: int = env_field(10, "ADMIN_OTP_TTL_MINUTES")

    # Public site tenant
    site_access_token_secret: Optional[str] = env_field(None, "SITE_ACCESS_TOKEN_SECRET")
    site_refresh_token_secret: Optional[str] = env_field(None, "SITE_REFRESH_TOKEN_SECRET")
    site_access_token_ttl_minutes: int = env_field(60, "SITE_ACCESS_TOKEN_TTL_MINUTES")
    site_refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "SITE_REFRESH_TOKEN_TTL_MINUTES"
    )
    site_refresh_token_cap: Optional[int] = env_field(
        None,
        "SITE_REFRESH_TOKEN_CAP",
        description="Unset means uncapped; expired records are still pruned",
    )
    site_hash_refresh_tokens: bool = env_field(True, "SITE_HASH_REFRESH_TOKENS")
    site_otp_ttl_minutes: int = env_field(5, "SITE_OTP_TTL_MINUTES")

    google_client_id: Optional[str] = env_field(None, "GOOGLE_CLIENT_ID")

    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("UniUpdates", "EMAIL_FROM_NAME")

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
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("admin_refresh_token_cap", "site_refresh_token_cap", mode="before")
    @classmethod
    def _blank_cap(cls, value: Any) -> Any:
        # "" or "0" in the environment disables the cap
        if value in ("", "0", 0, "none", "None"):
            return None
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/uniupdates"))
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
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
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
