from __future__ import annotations

import pytest

from cortex_pathways.config.settings import ModelDefinition
from cortex_pathways.pathways.models import PathwayDefinition
from cortex_pathways.pathways.repository import PathwayRepository
from cortex_pathways.utils.errors import ConfigurationError


def test_loads_camel_case_yaml(tmp_path) -> None:
    (tmp_path / "entities.yaml").write_text(
        "\n".join(
            [
                "prompt:",
                "  - 'Extract entities from {{text}}'",
                "  - prompt: 'Rank {{previousResult}}'",
                "    saveResultTo: ranked",
                "model: local-chat",
                "inputChunkSize: 256",
                "useParallelChunkProcessing: true",
                "outputFormat: list",
                "inputParameters:",
                "  language:",
                "    default: en",
                "tone: formal",
            ]
        )
    )
    repository = PathwayRepository(tmp_path)

    pathway = repository.get("entities")

    assert pathway.name == "entities"
    assert pathway.input_chunk_size == 256
    assert pathway.use_parallel_chunk_processing is True
    assert pathway.output_format == "list"
    assert pathway.prompt_parameters() == {"name": "entities", "tone": "formal", "language": "en"}
    prompts = pathway.build_prompts()
    assert prompts[1].save_result_to == "ranked"
    assert repository.get("entities") is pathway
    assert "entities" in repository


def test_missing_and_invalid_pathways(tmp_path) -> None:
    (tmp_path / "broken.yaml").write_text("inputChunkSize: -1\n")
    repository = PathwayRepository(tmp_path)

    with pytest.raises(ConfigurationError, match="not found"):
        repository.get("absent")
    with pytest.raises(ConfigurationError, match="invalid"):
        repository.get("broken")


def test_registered_definitions_shadow_files(tmp_path) -> None:
    (tmp_path / "echo.yaml").write_text("prompt: 'from file {{text}}'\n")
    repository = PathwayRepository(tmp_path, definitions=[PathwayDefinition(name="echo")])

    assert repository.get("echo").prompt == "{{text}}"
    assert repository.names() == ["echo"]
    with pytest.raises(ConfigurationError):
        repository.register(PathwayDefinition())


def test_token_ratio_prefers_input_parameters() -> None:
    pathway = PathwayDefinition(token_ratio=0.5, input_parameters={"tokenRatio": {"default": 0.8}})
    assert pathway.input_token_ratio() == 0.8
    assert PathwayDefinition(token_ratio=0.3).input_token_ratio() == 0.3


def test_resolve_model_falls_back_to_default() -> None:
    models = {"chat": ModelDefinition(url="http://model.local")}
    assert PathwayDefinition().resolve_model(models, "chat")[0] == "chat"
    with pytest.raises(ConfigurationError, match="Model other not found in config"):
        PathwayDefinition(model="other").resolve_model(models, "chat")
