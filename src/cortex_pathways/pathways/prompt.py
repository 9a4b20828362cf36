"""Prompt steps of a pathway pipeline.

A prompt is one of three template shapes:

* :class:`PlainTemplate` - a single handlebars-style string;
* :class:`MessageTemplate` - a chat message list whose contents are templates;
* :class:`Computed` - a callable producing either of the above from the
  request parameters.

Capability flags (``uses_text_input`` and ``uses_previous_result``) are derived
once at construction from the resolved template.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

from cortex_pathways.chunking.tokenization import Tokenizer
from cortex_pathways.orchestration.rendering import (
    PREVIOUS_RESULT_PLACEHOLDER,
    TEXT_PLACEHOLDER,
    placeholders,
)
from cortex_pathways.utils.errors import ConfigurationError

Message = Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class PlainTemplate:
    text: str

    def sources(self) -> list[str]:
        return [self.text]

    def footprint(self, tokenizer: Tokenizer) -> int:
        return tokenizer.count(self.text)


@dataclass(frozen=True, slots=True)
class MessageTemplate:
    messages: tuple[Message | str, ...]

    def sources(self) -> list[str]:
        sources: list[str] = []
        for message in self.messages:
            if isinstance(message, str):
                sources.append(message)
            elif isinstance(message.get("content"), str):
                sources.append(message["content"])
        return sources

    def footprint(self, tokenizer: Tokenizer) -> int:
        """Sum of role and content tokens over messages that carry both."""
        total = 0
        for message in self.messages:
            if isinstance(message, str):
                continue
            role, content = message.get("role"), message.get("content")
            if role and content:
                total += tokenizer.count(str(role)) + tokenizer.count(str(content))
        return total


@dataclass(frozen=True, slots=True)
class Computed:
    fn: Callable[[Mapping[str, Any]], Any]

    def resolve(self, parameters: Mapping[str, Any]) -> PlainTemplate | MessageTemplate:
        return _as_template(self.fn(parameters))


PromptTemplate = Union[PlainTemplate, MessageTemplate, Computed]


def _as_template(value: Any) -> PlainTemplate | MessageTemplate:
    if isinstance(value, (PlainTemplate, MessageTemplate)):
        return value
    if isinstance(value, str):
        return PlainTemplate(value)
    if isinstance(value, Mapping) and "messages" in value:
        return MessageTemplate(tuple(value["messages"]))
    if isinstance(value, Sequence):
        return MessageTemplate(tuple(value))
    raise ConfigurationError(
        "Unsupported prompt template",
        detail=f"Expected a string or message list, got {type(value).__name__}",
    )


@dataclass(frozen=True, slots=True)
class Prompt:
    """One pipeline step with its derived capability flags."""

    template: PromptTemplate
    save_result_to: str | None = None
    uses_text_input: bool = field(default=False)
    uses_previous_result: bool = field(default=False)

    @classmethod
    def create(
        cls,
        template: PromptTemplate,
        *,
        save_result_to: str | None = None,
        parameters: Mapping[str, Any] | None = None,
    ) -> Prompt:
        concrete = template.resolve(parameters or {}) if isinstance(template, Computed) else template
        names: set[str] = set()
        for source in concrete.sources():
            names |= placeholders(source)
        return cls(
            template=template,
            save_result_to=save_result_to,
            uses_text_input=TEXT_PLACEHOLDER in names,
            uses_previous_result=PREVIOUS_RESULT_PLACEHOLDER in names,
        )

    @classmethod
    def from_entry(cls, entry: Any, *, parameters: Mapping[str, Any] | None = None) -> Prompt:
        """Build a prompt from a pathway definition entry.

        Accepts a template string, a callable, a message list, a mapping with a
        ``prompt`` or ``messages`` key (plus optional ``save_result_to`` or
        ``saveResultTo``), or an existing :class:`Prompt`.
        """
        if isinstance(entry, Prompt):
            return entry
        if isinstance(entry, (PlainTemplate, MessageTemplate, Computed)):
            return cls.create(entry, parameters=parameters)
        if callable(entry):
            return cls.create(Computed(entry), parameters=parameters)
        if isinstance(entry, Mapping):
            save_to = entry.get("save_result_to", entry.get("saveResultTo"))
            if "messages" in entry:
                template: PromptTemplate = MessageTemplate(tuple(entry["messages"]))
            elif "prompt" in entry:
                inner = entry["prompt"]
                template = Computed(inner) if callable(inner) else _as_template(inner)
            else:
                raise ConfigurationError("Prompt entry needs a 'prompt' or 'messages' key")
            return cls.create(template, save_result_to=save_to, parameters=parameters)
        return cls.create(_as_template(entry), parameters=parameters)

    def resolve(self, parameters: Mapping[str, Any]) -> PlainTemplate | MessageTemplate:
        """Concrete template for ``parameters``; computed prompts are evaluated."""
        if isinstance(self.template, Computed):
            return self.template.resolve(parameters)
        return self.template

    def footprint(self, tokenizer: Tokenizer, parameters: Mapping[str, Any] | None = None) -> int:
        """Static token footprint of the template before any substitution."""
        return self.resolve(parameters or {}).footprint(tokenizer)


def build_prompts(value: Any, *, parameters: Mapping[str, Any] | None = None) -> list[Prompt]:
    """Normalise a single prompt or an ordered list into ``Prompt`` objects."""
    if value is None:
        raise ConfigurationError("Pathway defines no prompt")
    entries = list(value) if isinstance(value, (list, tuple)) else [value]
    if not entries:
        raise ConfigurationError("Pathway defines no prompt")
    if all(isinstance(entry, Mapping) and "role" in entry for entry in entries):
        # a bare message list is one prompt, not several
        entries = [{"messages": entries}]
    return [Prompt.from_entry(entry, parameters=parameters) for entry in entries]


__all__ = [
    "Computed",
    "MessageTemplate",
    "PlainTemplate",
    "Prompt",
    "PromptTemplate",
    "build_prompts",
]
