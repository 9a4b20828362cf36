"""Configuration system for the pathway orchestrator."""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MAX_TOKENS = 4096
DEFAULT_PROMPT_TOKEN_RATIO = 0.5


class Environment(str, Enum):
    """Deployment environments supported by the service."""

    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class LoggingSettings(BaseModel):
    """Structured logging configuration."""

    level: str = Field(default="INFO", description="Log level for application output")
    scrub_fields: Sequence[str] = Field(
        default_factory=lambda: ["authorization", "api_key", "api-key", "token", "secret"],
        description="Fields that should be redacted in logs",
    )


class ModelDefinition(BaseModel):
    """Connection details and limits for one text-generation backend."""

    type: Literal["OPENAI-CHAT", "OPENAI-COMPLETION"] = "OPENAI-CHAT"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, Any] = Field(default_factory=dict)
    max_token_length: int | None = Field(default=None, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _normalise_type(cls, values: Any) -> Any:
        if isinstance(values, Mapping) and isinstance(values.get("type"), str):
            payload = dict(values)
            payload["type"] = payload["type"].upper().replace("_", "-")
            return payload
        return values


class ContextStoreSettings(BaseModel):
    """Where saved pathway context is persisted between requests."""

    backend: Literal["memory", "redis"] = "memory"
    url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    key_prefix: str = Field(default="cortex:context", description="Key prefix for stored contexts")
    ttl_seconds: int | None = Field(default=None, ge=1)


class RequestStateSettings(BaseModel):
    """Lifetime of per-request bookkeeping."""

    grace_seconds: float = Field(
        default=300.0,
        ge=0.0,
        description="How long finished request records stay readable before eviction",
    )


class OrchestrationDefaults(BaseModel):
    """Fallback limits used when neither pathway nor model specify them."""

    max_token_length: int = Field(default=DEFAULT_MAX_TOKENS, gt=0)
    prompt_token_ratio: float = Field(default=DEFAULT_PROMPT_TOKEN_RATIO, gt=0.0, le=1.0)
    summary_pathway: str = "summary"
    summary_target_length: int = Field(default=1000, gt=0)


class HttpSettings(BaseModel):
    """Resilience knobs for calls to model endpoints."""

    timeout_seconds: float = Field(default=60.0, gt=0)
    retry_attempts: int = Field(default=3, ge=1)
    backoff_initial: float = Field(default=0.5, ge=0.0)
    backoff_max: float = Field(default=10.0, ge=0.0)
    requests_per_second: float | None = Field(default=None, gt=0)
    burst: int | None = Field(default=None, ge=1)
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_recovery_seconds: float = Field(default=60.0, gt=0)


class AppSettings(BaseSettings):
    """Top level application settings."""

    environment: Environment = Environment.DEV
    debug: bool = False
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    models: dict[str, ModelDefinition] = Field(default_factory=dict)
    default_model_name: str | None = None
    pathways_dir: Path | None = None
    context_store: ContextStoreSettings = Field(default_factory=ContextStoreSettings)
    request_state: RequestStateSettings = Field(default_factory=RequestStateSettings)
    defaults: OrchestrationDefaults = Field(default_factory=OrchestrationDefaults)
    http: HttpSettings = Field(default_factory=HttpSettings)

    model_config = SettingsConfigDict(env_prefix="CX_", env_nested_delimiter="__")


ENVIRONMENT_DEFAULTS: Mapping[Environment, dict[str, Any]] = {
    Environment.DEV: {
        "debug": True,
        "logging": {"level": "DEBUG"},
    },
    Environment.STAGING: {
        "context_store": {"backend": "redis"},
    },
    Environment.PROD: {
        "context_store": {"backend": "redis"},
        "request_state": {"grace_seconds": 600.0},
    },
}


def _deep_update(target: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    for key, value in updates.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            target[key] = _deep_update(dict(current), value)
        else:
            target[key] = value
    return target


def load_settings(environment: str | None = None) -> AppSettings:
    """Load application settings with environment specific defaults applied.

    Environment defaults only fill values that were not set explicitly through
    ``CX_`` variables.
    """
    env_value = (environment or os.getenv("CX_ENV", "dev")).lower()
    env = Environment(env_value)
    try:
        base_settings = AppSettings()
    except ValidationError as err:
        raise RuntimeError(f"Invalid configuration: {err}") from err
    explicit = base_settings.model_dump(exclude_unset=True)
    merged = _deep_update(
        _deep_update(base_settings.model_dump(), ENVIRONMENT_DEFAULTS.get(env, {})),
        explicit,
    )
    merged["environment"] = env
    return AppSettings.model_validate(merged)


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Cached accessor used by production code."""
    return load_settings()


__all__ = [
    "AppSettings",
    "ContextStoreSettings",
    "DEFAULT_MAX_TOKENS",
    "DEFAULT_PROMPT_TOKEN_RATIO",
    "Environment",
    "HttpSettings",
    "LoggingSettings",
    "ModelDefinition",
    "OrchestrationDefaults",
    "RequestStateSettings",
    "get_settings",
    "load_settings",
]
