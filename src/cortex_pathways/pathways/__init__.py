"""Pathway definitions, prompts and their loaders."""

from .models import PathwayDefinition
from .prompt import Computed, MessageTemplate, PlainTemplate, Prompt, build_prompts
from .repository import PathwayRepository

__all__ = [
    "Computed",
    "MessageTemplate",
    "PathwayDefinition",
    "PathwayRepository",
    "PlainTemplate",
    "Prompt",
    "build_prompts",
]
