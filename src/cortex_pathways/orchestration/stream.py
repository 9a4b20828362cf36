"""Pure decoder for server-sent model output streams.

Raw response bytes go in, :class:`ParsedEvent` values come out. The decoder
keeps partial lines (and partial UTF-8 sequences) between chunks, strips the
SSE ``data: `` prefix, recognises the ``[DONE]`` sentinel and reports lines
that are not valid JSON as ``malformed`` events instead of failing. Nothing
here publishes or logs; callers decide what to do with each event.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from cortex_pathways.utils.errors import MalformedStreamLineError

DONE_SENTINEL = "[DONE]"
_DATA_PREFIX = "data: "

EventKind = Literal["data", "done", "malformed"]


@dataclass(frozen=True, slots=True)
class ParsedEvent:
    kind: EventKind
    data: Any = None
    raw: str = ""
    error: str | None = None


def extract_result(payload: Any) -> Any:
    """Text carried by one decoded stream message.

    Completion streams carry ``choices[0].text``, chat streams
    ``choices[0].delta.content``; anything else is returned unchanged.
    """
    if not isinstance(payload, Mapping):
        return payload
    choices = payload.get("choices")
    if not choices:
        return payload
    choice = choices[0]
    if not isinstance(choice, Mapping):
        return choice
    if "text" in choice:
        return choice["text"]
    for key in ("delta", "message"):
        part = choice.get(key)
        if isinstance(part, Mapping) and "content" in part:
            return part["content"]
    return choice


def decode_line(line: str, *, strict: bool = False) -> ParsedEvent | None:
    """Decode one line; ``None`` for blank lines and SSE comments."""
    stripped = line.strip()
    if not stripped or stripped.startswith(":"):
        return None
    message = stripped[len(_DATA_PREFIX) :] if stripped.startswith(_DATA_PREFIX) else stripped
    if message.startswith("data:"):
        message = message[len("data:") :].strip()
    if message == DONE_SENTINEL:
        return ParsedEvent(kind="done", raw=line)
    try:
        payload = json.loads(message)
    except json.JSONDecodeError as exc:
        if strict:
            raise MalformedStreamLineError(line, reason=str(exc)) from exc
        return ParsedEvent(kind="malformed", raw=line, error=str(exc))
    return ParsedEvent(kind="data", data=extract_result(payload), raw=line)


class StreamDecoder:
    """Incremental decoder; feed it raw chunks as they arrive."""

    def __init__(self, *, strict: bool = False) -> None:
        self._strict = strict
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes | str) -> list[ParsedEvent]:
        if self.done:
            return []
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode_lines(lines)

    def flush(self) -> list[ParsedEvent]:
        """Decode whatever is left once the stream has ended."""
        if self.done:
            return []
        remainder = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._decode_lines([remainder])

    def _decode_lines(self, lines: list[str]) -> list[ParsedEvent]:
        events: list[ParsedEvent] = []
        for line in lines:
            event = decode_line(line, strict=self._strict)
            if event is None:
                continue
            events.append(event)
            if event.kind == "done":
                self.done = True
                self._buffer = ""
                break
        return events


def decode_stream(chunk: bytes | str, *, strict: bool = False) -> list[ParsedEvent]:
    """Decode a complete block of stream output in one call."""
    decoder = StreamDecoder(strict=strict)
    return decoder.feed(chunk) + decoder.flush()


__all__ = [
    "DONE_SENTINEL",
    "ParsedEvent",
    "StreamDecoder",
    "decode_line",
    "decode_stream",
    "extract_result",
]
