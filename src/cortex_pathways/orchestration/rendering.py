"""Placeholder detection and rendering for prompt templates.

Templates use handlebars-style placeholders: ``{{name}}`` and ``{{{name}}}``
substitute a parameter, ``{{helper name}}`` applies a registered helper to a
parameter. Unknown parameters render as an empty string.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

_PLACEHOLDER = re.compile(r"\{\{\{?\s*([A-Za-z_][\w.]*)(?:\s+([A-Za-z_][\w.]*))?\s*\}?\}\}")
_HTML_TAG = re.compile(r"<[^>]*>")

TEXT_PLACEHOLDER = "text"
PREVIOUS_RESULT_PLACEHOLDER = "previousResult"


def _strip_html(value: Any) -> str:
    return _HTML_TAG.sub("", _stringify(value))


def _now(_: Any = None) -> str:
    return datetime.now(UTC).isoformat()


HELPERS: dict[str, Callable[[Any], str]] = {
    "stripHTML": _strip_html,
    "now": _now,
}


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _lookup(parameters: Mapping[str, Any], path: str) -> Any:
    value: Any = parameters
    for part in path.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return None
        value = value[part]
    return value


def placeholders(template: str) -> set[str]:
    """Names referenced by ``template``, including helper arguments."""
    names: set[str] = set()
    for match in _PLACEHOLDER.finditer(template):
        head, argument = match.group(1), match.group(2)
        if argument:
            names.add(argument)
            if head not in HELPERS:
                names.add(head)
        else:
            names.add(head)
    return names


def references(template: str, name: str) -> bool:
    return name in placeholders(template)


def render(template: str, parameters: Mapping[str, Any]) -> str:
    """Substitute every placeholder in ``template`` from ``parameters``."""

    def _replace(match: re.Match[str]) -> str:
        head, argument = match.group(1), match.group(2)
        if argument is not None:
            helper = HELPERS.get(head)
            value = _lookup(parameters, argument)
            return helper(value) if helper else _stringify(value)
        if head in HELPERS and head not in parameters:
            return HELPERS[head](None)
        return _stringify(_lookup(parameters, head))

    return _PLACEHOLDER.sub(_replace, template)


def expand_messages(
    messages: Sequence[Mapping[str, Any] | str],
    parameters: Mapping[str, Any],
) -> list[dict[str, Any]]:
    """Render a message-list template.

    A bare string entry consisting of one placeholder (``"{{chatHistory}}"``)
    expands to the list of messages held in that parameter; any other string
    becomes a user message.
    """
    expanded: list[Mapping[str, Any] | str] = []
    for message in messages:
        if isinstance(message, str):
            match = _PLACEHOLDER.fullmatch(message.strip())
            if match and match.group(2) is None:
                history = _lookup(parameters, match.group(1))
                if isinstance(history, str):
                    expanded.append(message)
                elif isinstance(history, Sequence):
                    expanded.extend(history)
                continue
        expanded.append(message)

    rendered: list[dict[str, Any]] = []
    for message in expanded:
        if isinstance(message, str):
            rendered.append({"role": "user", "content": render(message, parameters)})
            continue
        content = message.get("content")
        payload = dict(message)
        if isinstance(content, str):
            payload["content"] = render(content, parameters)
        rendered.append(payload)
    return rendered


__all__ = [
    "HELPERS",
    "PREVIOUS_RESULT_PLACEHOLDER",
    "TEXT_PLACEHOLDER",
    "expand_messages",
    "placeholders",
    "references",
    "render",
]
