"""Configuration package exposing application settings."""

from .settings import (
    AppSettings,
    ContextStoreSettings,
    Environment,
    HttpSettings,
    LoggingSettings,
    ModelDefinition,
    OrchestrationDefaults,
    RequestStateSettings,
    get_settings,
    load_settings,
)

__all__ = [
    "AppSettings",
    "ContextStoreSettings",
    "Environment",
    "HttpSettings",
    "LoggingSettings",
    "ModelDefinition",
    "OrchestrationDefaults",
    "RequestStateSettings",
    "get_settings",
    "load_settings",
]
