from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from socialgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the gate, session registry and fan-out services."""

    shared_fs_root: str = env_field("/srv/socialgate", "SHARED_FS_ROOT")
    profile_table: str = env_field(
        "DataTable",
        "PROFILE_TABLE",
        description="Table holding profile records addressed by (partition, row)",
    )
    token_secret: str = env_field(None, "TOKEN_SECRET", validate_default=True)
    token_ttl_hours: int = env_field(
        24, "TOKEN_TTL_HOURS", description="Lifetime of minted capability tokens"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    session_cache_prefix: str = env_field("socialgate:session", "SESSION_CACHE_PREFIX")
    allow_redis_fallback_dev: bool = env_field(True, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors; permits runtime resets.",
    )
    push_service_url: str | None = env_field(
        None,
        "PUSH_SERVICE_URL",
        description="Base URL of a remote push service; unset runs fan-out in-process",
    )
    push_timeout_seconds: float = env_field(10.0, "PUSH_TIMEOUT_SECONDS")
    fanout_max_concurrency: int = env_field(
        8, "FANOUT_MAX_CONCURRENCY", description="Parallel friend deliveries per fan-out"
    )
    fanout_deadline_seconds: float = env_field(
        15.0, "FANOUT_DEADLINE_SECONDS", description="Deadline for a whole fan-out"
    )
    merge_max_retries: int = env_field(
        5,
        "MERGE_MAX_RETRIES",
        description="Read-modify-write attempts before an ETag conflict is surfaced",
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

    @field_validator("fanout_max_concurrency", "merge_max_retries")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("token_secret", mode="before")
    @classmethod
    def _ensure_token_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/socialgate"))
        secret_path = fs_root / ".token_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "token_secret_dir_setup",
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
                    "token_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Atomic write: temp file then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".token_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "token_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist token secret; set TOKEN_SECRET or make SHARED_FS_ROOT writable"
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
