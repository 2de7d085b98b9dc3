from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Gateway settings, built once per process and handed to the runtime."""

    database_url: str = env_field(
        "postgresql://localhost:5432/blockgate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI: in-process rate limits, resettable runtime.",
    )

    # Caller system
    service_name: str = env_field("canvas", "GATEWAY_SERVICE_NAME")
    service_key_prefix: str = env_field("sim_svc_", "SERVICE_KEY_PREFIX")
    ip_allowlist: list[str] = env_field(
        [],
        "CANVAS_IP_ALLOWLIST",
        description="Comma separated client IPs; empty disables the allow-list",
    )
    identity_provider: str = env_field("canvas", "IDENTITY_PROVIDER")

    # Quotas used when a service credential stores none
    default_rate_limit_per_minute: int = env_field(1000, "DEFAULT_RATE_LIMIT_PER_MINUTE")
    default_rate_limit_per_day: int = env_field(100000, "DEFAULT_RATE_LIMIT_PER_DAY")

    # Execution bounds in milliseconds
    default_execution_timeout_ms: int = env_field(30000, "DEFAULT_EXECUTION_TIMEOUT_MS")
    min_execution_timeout_ms: int = env_field(1000, "MIN_EXECUTION_TIMEOUT_MS")
    max_execution_timeout_ms: int = env_field(300000, "MAX_EXECUTION_TIMEOUT_MS")

    default_user_credits: str = env_field("1000000", "DEFAULT_USER_CREDITS")
    poll_url_prefix: str = env_field("/api/v1/executions", "POLL_URL_PREFIX")
    http_tool_timeout_seconds: float = env_field(20.0, "HTTP_TOOL_TIMEOUT_SECONDS")
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

    @field_validator("ip_allowlist", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("service_key_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        if not value:
            raise ValueError("service key prefix must not be empty")
        return value

    @model_validator(mode="after")
    def _validate_timeout_bounds(self) -> "Settings":
        if self.min_execution_timeout_ms <= 0:
            raise ValueError("MIN_EXECUTION_TIMEOUT_MS must be positive")
        if not (
            self.min_execution_timeout_ms
            <= self.default_execution_timeout_ms
            <= self.max_execution_timeout_ms
        ):
            raise ValueError(
                "DEFAULT_EXECUTION_TIMEOUT_MS must lie between the min and max bounds"
            )
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
