from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings, read once at startup and injected into every component."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )
    shared_fs_root: str = env_field("/srv/tenantauth", "SHARED_FS_ROOT")

    # TTL cache
    cache_path: str | None = env_field(
        None,
        "CACHE_PATH",
        description="RocksDB directory for the TTL cache; defaults to {SHARED_FS_ROOT}/cache",
    )
    cache_ttl_seconds: int = env_field(
        3600, "CACHE_TTL", description="TTL for cached per-tenant role lookups"
    )
    membership_cache_ttl_seconds: int = env_field(
        300, "MEMBERSHIP_CACHE_TTL", description="TTL for cached cross-tenant membership lists"
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tenantauth", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantauth-clients", "JWT_AUDIENCE")
    access_token_expiry: int = env_field(
        900, "ACCESS_TOKEN_EXPIRY", description="Access token lifetime in seconds"
    )
    refresh_token_expiry: int = env_field(
        604800,
        "REFRESH_TOKEN_EXPIRY",
        description="Refresh token and session lifetime in seconds; also the cookie max_age",
    )

    # Trust boundaries
    api_key: str | None = env_field(
        None,
        "API_KEY",
        description="Global API key; resolves to the default (oldest) tenant",
    )
    tenant_secret_key: str | None = env_field(
        None,
        "TENANT_SECRET_KEY",
        description="Operator secret required to issue invitation codes",
    )
    allowed_origins: list[str] = env_field(
        [],
        "ALLOWED_ORIGINS",
        description="Comma-separated origins for CORS and SSO logout redirects",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Invitations
    invitation_ttl_seconds: int = env_field(3600, "INVITATION_TTL")
    invitation_code_length: int = env_field(8, "INVITATION_CODE_LENGTH")

    # Background work and shutdown
    health_check_interval_seconds: float = env_field(10, "HEALTH_CHECK_INTERVAL")
    shutdown_grace_seconds: float = env_field(2, "SHUTDOWN_GRACE_SECONDS")
    crypto_workers: int = env_field(
        4,
        "CRYPTO_WORKERS",
        description="Threads reserved for password hashing and token signing",
    )
    activity_queue_size: int = env_field(
        1000,
        "ACTIVITY_QUEUE_SIZE",
        description="Pending activity-log entries kept before new ones are dropped",
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

    @property
    def resolved_cache_path(self) -> str:
        return self.cache_path or str(Path(self.shared_fs_root) / "cache")

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip().rstrip("/") for item in value.split(",") if item.strip()]
        return value

    @field_validator("api_key", "tenant_secret_key")
    @classmethod
    def _blank_secret_is_unset(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @field_validator(
        "cache_ttl_seconds",
        "membership_cache_ttl_seconds",
        "access_token_expiry",
        "refresh_token_expiry",
        "invitation_ttl_seconds",
        "invitation_code_length",
        "crypto_workers",
        "activity_queue_size",
        "health_check_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tenantauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # directory may be owned by another user in containers
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
