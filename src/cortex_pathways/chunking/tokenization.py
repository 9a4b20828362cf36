"""Token counting helpers backed by tiktoken."""

from __future__ import annotations

from collections.abc import Iterable
from functools import lru_cache
from typing import Protocol

import tiktoken


class Tokenizer(Protocol):
    """What the orchestrator needs from a tokenizer."""

    def count(self, text: str) -> int: ...

    def first_n(self, text: str, n: int) -> str: ...

    def last_n(self, text: str, n: int) -> str: ...

    def split_tokens(self, text: str, n: int) -> list[str]: ...


class TokenCounter:
    """Wrapper around tiktoken for token counting and truncation."""

    def __init__(self, encoding: str = "cl100k_base", *, model: str | None = "gpt-3.5-turbo") -> None:
        try:
            self._encoder = tiktoken.encoding_for_model(model) if model else tiktoken.get_encoding(encoding)
        except KeyError:
            self._encoder = tiktoken.get_encoding(encoding)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoder.encode(text))

    def count_many(self, texts: Iterable[str]) -> int:
        return sum(self.count(text) for text in texts)

    def first_n(self, text: str, n: int) -> str:
        """Keep the leading ``n`` tokens of ``text``."""
        tokens = self._encoder.encode(text)
        if len(tokens) <= n:
            return text
        return self._encoder.decode(tokens[: max(n, 0)])

    def last_n(self, text: str, n: int) -> str:
        """Keep the trailing ``n`` tokens of ``text``."""
        tokens = self._encoder.encode(text)
        if len(tokens) <= n:
            return text
        if n <= 0:
            return ""
        return self._encoder.decode(tokens[-n:])

    def split_tokens(self, text: str, n: int) -> list[str]:
        """Cut ``text`` into consecutive pieces of at most ``n`` tokens."""
        tokens = self._encoder.encode(text)
        step = max(n, 1)
        return [self._encoder.decode(tokens[i : i + step]) for i in range(0, len(tokens), step)]


@lru_cache(maxsize=4)
def default_token_counter() -> TokenCounter:
    return TokenCounter()


__all__ = ["TokenCounter", "Tokenizer", "default_token_counter"]
