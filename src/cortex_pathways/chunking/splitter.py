"""Semantic chunk splitting under a token ceiling.

Text is cut by LangChain's recursive splitter along the coarsest boundary
that yields pieces fitting the ceiling: paragraphs first, then lines,
sentences, words and finally characters. Pieces are merged back greedily so
each chunk stays as large as the ceiling permits while keeping the original
order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import structlog
from langchain_text_splitters import RecursiveCharacterTextSplitter

from .tokenization import Tokenizer

logger = structlog.get_logger(__name__)

DEFAULT_SEPARATORS = ("\n\n", "\n", ". ", " ", "")


class ChunkSplitter(Protocol):
    """Deterministic ordered split of text under a token ceiling."""

    def split(self, text: str, max_tokens: int) -> list[str]: ...


@dataclass(slots=True)
class SemanticChunkSplitter:
    """Recursive splitter measured in tokens; every chunk fits ``max_tokens``."""

    tokenizer: Tokenizer
    separators: tuple[str, ...] = field(default=DEFAULT_SEPARATORS)

    def _text_splitter(self, max_tokens: int) -> RecursiveCharacterTextSplitter:
        return RecursiveCharacterTextSplitter(
            chunk_size=max_tokens,
            chunk_overlap=0,
            length_function=self.tokenizer.count,
            separators=list(self.separators),
            keep_separator="end",
        )

    def split(self, text: str, max_tokens: int) -> list[str]:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if self.tokenizer.count(text) <= max_tokens:
            return [text]
        chunks: list[str] = []
        for chunk in self._text_splitter(max_tokens).split_text(text):
            # merged pieces are measured additively; re-cut the rare overshoot
            if self.tokenizer.count(chunk) > max_tokens:
                chunks.extend(self.tokenizer.split_tokens(chunk, max_tokens))
            elif chunk:
                chunks.append(chunk)
        logger.debug("pathway.chunking.split", chunks=len(chunks), max_tokens=max_tokens)
        return chunks


__all__ = ["ChunkSplitter", "DEFAULT_SEPARATORS", "SemanticChunkSplitter"]
