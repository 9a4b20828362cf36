from __future__ import annotations

import pytest

from cortex_pathways.config.settings import (
    DEFAULT_MAX_TOKENS,
    AppSettings,
    Environment,
    ModelDefinition,
    load_settings,
)


def test_defaults() -> None:
    settings = AppSettings()
    assert settings.defaults.max_token_length == DEFAULT_MAX_TOKENS
    assert settings.defaults.prompt_token_ratio == 0.5
    assert settings.context_store.backend == "memory"


def test_model_type_is_normalised() -> None:
    model = ModelDefinition.model_validate({"type": "openai_completion", "url": "http://x"})
    assert model.type == "OPENAI-COMPLETION"


def test_environment_variables_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CX_DEFAULTS__MAX_TOKEN_LENGTH", "2048")
    monkeypatch.setenv("CX_CONTEXT_STORE__BACKEND", "memory")
    settings = load_settings("prod")
    assert settings.environment is Environment.PROD
    assert settings.defaults.max_token_length == 2048
    assert settings.context_store.backend == "memory"
    assert settings.request_state.grace_seconds == 600.0


def test_environment_defaults_apply_when_unset() -> None:
    settings = load_settings("staging")
    assert settings.context_store.backend == "redis"


def test_invalid_configuration_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CX_HTTP__RETRY_ATTEMPTS", "0")
    with pytest.raises(RuntimeError, match="Invalid configuration"):
        load_settings("dev")
