from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from skillopt.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Where skills, configurations, clusters and arms live."""

    MEMORY = "memory"
    POSTGRES = "postgres"
    POSTGREST = "postgrest"


class LockBackend(str, Enum):
    """Backing store for named optimizer locks.

    - STORE: the ``optimizer_locks`` table of the primary store
    - REDIS: keys with native expiry on a shared Redis instance
    """

    STORE = "store"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the optimization coordination services."""

    store_backend: StoreBackend = env_field(StoreBackend.POSTGRES, "STORE_BACKEND")
    lock_backend: LockBackend = env_field(LockBackend.STORE, "LOCK_BACKEND")
    database_url: str = env_field(
        "postgresql://localhost:5432/skillopt", "DATABASE_URL"
    )
    postgrest_url: str | None = env_field(None, "POSTGREST_URL")
    postgrest_service_role_key: str | None = env_field(
        None, "POSTGREST_SERVICE_ROLE_KEY"
    )
    postgrest_api_key: str | None = env_field(
        None,
        "POSTGREST_API_KEY",
        description="Sent as the apikey header when the gateway requires it",
    )
    postgrest_timeout_seconds: float = env_field(30.0, "POSTGREST_TIMEOUT_SECONDS")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")

    lock_timeout_seconds: int = env_field(
        300, "LOCK_TIMEOUT_SECONDS", description="TTL of a named optimizer lock"
    )
    lock_retry_attempts: int = env_field(3, "LOCK_RETRY_ATTEMPTS")
    lock_retry_delay_ms: int = env_field(1000, "LOCK_RETRY_DELAY_MS")
    recluster_gate_threshold_ms: int = env_field(
        60_000,
        "RECLUSTER_GATE_THRESHOLD_MS",
        description="Minimum spacing between reclustering attempts for one skill",
    )
    lock_sweep_interval_seconds: int = env_field(
        300,
        "LOCK_SWEEP_INTERVAL_SECONDS",
        description="Period of the expired-lock sweep; 0 disables the background task",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

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

    @field_validator("store_backend")
    @classmethod
    def _validate_store_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("lock_backend")
    @classmethod
    def _validate_lock_backend(cls, value: LockBackend) -> LockBackend:
        return LockBackend(value)

    @field_validator(
        "lock_timeout_seconds", "lock_retry_attempts", "lock_retry_delay_ms",
        "recluster_gate_threshold_ms", "lock_sweep_interval_seconds",
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @field_validator("postgrest_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.rstrip("/")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            store_backend=_settings_cache.store_backend.value,
            lock_backend=_settings_cache.lock_backend.value,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
