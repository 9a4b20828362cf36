"""Post-processing of pathway output according to its ``output_format``."""

from __future__ import annotations

import json
import re
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

_LIST_MARKER = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s*")


def parse_numbered_list(text: str) -> list[str]:
    items = []
    for line in text.splitlines():
        item = _LIST_MARKER.sub("", line).strip()
        if item:
            items.append(item)
    return items


class PathwayResponseParser:
    def __init__(self, output_format: str = "text") -> None:
        self.output_format = output_format

    def parse(self, data: Any) -> Any:
        # streams and multi-choice results pass through untouched
        if not isinstance(data, str):
            return data
        if self.output_format == "list":
            return parse_numbered_list(data)
        if self.output_format == "json":
            try:
                return json.loads(data)
            except json.JSONDecodeError as exc:
                logger.warning("pathway.response.invalid_json", error=str(exc), length=len(data))
                return data
        return data


__all__ = ["PathwayResponseParser", "parse_numbered_list"]
