from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from lockbox.logging import get_logger

logger = get_logger(__name__)


class ClientType(str, Enum):
    """OAuth client categories; each carries its own refresh token policy."""

    CONFIDENTIAL = "confidential"
    PUBLIC = "public"
    MACHINE = "machine"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the account security engine."""

    database_url: str = env_field("postgresql://localhost:5432/lockbox", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/lockbox", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-process fallbacks.",
    )
    secret_key: str = env_field(
        None,
        "SECRET_KEY",
        validate_default=True,
        description="Key material for encrypting stored TOTP secrets at rest",
    )
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")
    default_client_id: str = env_field("lockbox-web", "DEFAULT_CLIENT_ID")
    default_client_type: ClientType = env_field(
        ClientType.CONFIDENTIAL, "DEFAULT_CLIENT_TYPE"
    )

    # Account lockout
    lockout_max_failures: int = env_field(5, "LOCKOUT_MAX_FAILURES", ge=1)
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES", ge=1)
    lockout_failure_decay_minutes: int = env_field(
        30,
        "LOCKOUT_FAILURE_DECAY_MINUTES",
        ge=1,
        description="Failures older than this no longer count toward lockout",
    )

    # Two-factor
    two_factor_setup_window_minutes: int = env_field(10, "TWO_FACTOR_SETUP_WINDOW_MINUTES", ge=1)
    two_factor_setup_max_attempts: int = env_field(5, "TWO_FACTOR_SETUP_MAX_ATTEMPTS", ge=1)
    two_factor_max_failures: int = env_field(5, "TWO_FACTOR_MAX_FAILURES", ge=1)
    two_factor_lock_minutes: int = env_field(15, "TWO_FACTOR_LOCK_MINUTES", ge=1)
    two_factor_challenge_ttl_seconds: int = env_field(
        300,
        "TWO_FACTOR_CHALLENGE_TTL_SECONDS",
        ge=30,
        description="Lifetime of the temporary token handed out between password and 2FA steps",
    )
    totp_issuer: str = env_field("Lockbox", "TOTP_ISSUER")
    totp_drift_steps: int = env_field(2, "TOTP_DRIFT_STEPS", ge=0, le=10)
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS", ge=10)
    totp_digits: int = env_field(6, "TOTP_DIGITS", ge=6, le=8)
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT", ge=1, le=50)
    backup_code_hash_time_cost: int = env_field(2, "BACKUP_CODE_HASH_TIME_COST", ge=1)
    backup_code_hash_memory_kib: int = env_field(
        19456, "BACKUP_CODE_HASH_MEMORY_KIB", ge=64
    )

    # Tokens
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days_confidential: int = env_field(
        14, "REFRESH_TOKEN_TTL_DAYS_CONFIDENTIAL", ge=1
    )
    refresh_token_ttl_days_public: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS_PUBLIC", ge=1)
    refresh_reuse_detection: bool = env_field(
        True,
        "REFRESH_REUSE_DETECTION",
        description="Revoke the user/client token family when a rotated refresh token is replayed",
    )

    # Caches
    introspection_cache_ttl_seconds: int = env_field(
        3600, "INTROSPECTION_CACHE_TTL_SECONDS", ge=1
    )
    local_cache_max_entries: int = env_field(10000, "LOCAL_CACHE_MAX_ENTRIES", ge=10)
    redis_socket_timeout_seconds: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT_SECONDS", gt=0)

    # Audit
    audit_retry_attempts: int = env_field(3, "AUDIT_RETRY_ATTEMPTS", ge=1)
    audit_retry_backoff_seconds: float = env_field(0.2, "AUDIT_RETRY_BACKOFF_SECONDS", ge=0)
    audit_pending_max: int = env_field(1000, "AUDIT_PENDING_MAX", ge=1)

    # Rate limits
    login_rate_limit_per_minute: int = env_field(30, "LOGIN_RATE_LIMIT_PER_MINUTE")
    two_factor_rate_limit_per_minute: int = env_field(30, "TWO_FACTOR_RATE_LIMIT_PER_MINUTE")
    token_rate_limit_per_minute: int = env_field(120, "TOKEN_RATE_LIMIT_PER_MINUTE")

    housekeeping_interval_seconds: int = env_field(60, "HOUSEKEEPING_INTERVAL_SECONDS", ge=1)
    health_check_timeout_seconds: float = env_field(2.0, "HEALTH_CHECK_TIMEOUT_SECONDS", gt=0)

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

    @field_validator("default_client_type")
    @classmethod
    def _validate_client_type(cls, value: ClientType) -> ClientType:
        return ClientType(value)

    @field_validator("secret_key", mode="before")
    @classmethod
    def _ensure_secret_key(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated key so encrypted secrets survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/lockbox"))
        secret_path = fs_root / ".secret_key"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "secret_key_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("secret_key_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".secret_key_", suffix=".tmp"
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
            logger.error("secret_key_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist SECRET_KEY; set SECRET_KEY env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    def refresh_token_ttl_days(self, client_type: ClientType | str) -> int | None:
        """Default refresh lifetime per client type; machine clients get none."""
        kind = ClientType(client_type)
        if kind is ClientType.MACHINE:
            return None
        if kind is ClientType.PUBLIC:
            return self.refresh_token_ttl_days_public
        return self.refresh_token_ttl_days_confidential


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
