"""Pydantic models describing pathway definitions."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from cortex_pathways.config.settings import ModelDefinition
from cortex_pathways.utils.errors import ConfigurationError

from .prompt import Prompt, build_prompts

OutputFormat = Literal["text", "list", "json"]


def _default_value(value: Any) -> Any:
    if isinstance(value, Mapping) and "default" in value:
        return value["default"]
    return value


class PathwayDefinition(BaseModel):
    """Declarative pipeline: prompts, model reference and chunking flags.

    Field names accept both ``snake_case`` and the ``camelCase`` spelling used
    by YAML pathway files. Unknown fields are kept and exposed to templates.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=True,
        arbitrary_types_allowed=True,
    )

    name: str = ""
    prompt: Any = "{{text}}"
    model: str | None = None
    use_input_chunking: bool = True
    use_parallel_chunk_processing: bool = False
    use_input_summarization: bool = False
    input_chunk_size: int | None = Field(default=None, gt=0)
    truncate_from_front: bool = False
    temperature: float | None = None
    token_ratio: float | None = Field(default=None, gt=0.0, le=1.0)
    max_token_length: int | None = Field(default=None, gt=0)
    input_parameters: dict[str, Any] = Field(default_factory=dict)
    timeout: float | None = Field(default=None, gt=0)
    output_format: OutputFormat = "text"

    @field_validator("prompt")
    @classmethod
    def _require_prompt(cls, value: Any) -> Any:
        if value is None or (isinstance(value, (list, tuple)) and not value):
            raise ValueError("pathway prompt must not be empty")
        return value

    def prompt_parameters(self) -> dict[str, Any]:
        """Defaults made available to every template of this pathway."""
        parameters: dict[str, Any] = {"name": self.name}
        for key, value in (self.model_extra or {}).items():
            parameters[key] = _default_value(value)
        for key, value in self.input_parameters.items():
            parameters[key] = _default_value(value)
        return parameters

    def input_token_ratio(self) -> float | None:
        """``input_parameters.token_ratio`` wins over the pathway level ratio."""
        for key in ("token_ratio", "tokenRatio"):
            if key in self.input_parameters:
                value = _default_value(self.input_parameters[key])
                if value is not None:
                    return float(value)
        return self.token_ratio

    def build_prompts(self) -> list[Prompt]:
        return build_prompts(self.prompt, parameters=self.prompt_parameters())

    def resolve_model(
        self,
        models: Mapping[str, ModelDefinition],
        default_model_name: str | None = None,
    ) -> tuple[str, ModelDefinition]:
        """Pick this pathway's model, falling back to ``default_model_name``."""
        model_name = self.model or default_model_name or ""
        model = models.get(model_name)
        if model is None:
            raise ConfigurationError(
                f"Model {model_name or '<unset>'} not found in config",
                extra={"pathway": self.name},
            )
        return model_name, model


__all__ = ["ModelDefinition", "OutputFormat", "PathwayDefinition"]
