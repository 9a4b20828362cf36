"""Tokenization and chunk splitting for pathway inputs."""

from .splitter import ChunkSplitter, SemanticChunkSplitter
from .tokenization import TokenCounter, Tokenizer, default_token_counter

__all__ = [
    "ChunkSplitter",
    "SemanticChunkSplitter",
    "TokenCounter",
    "Tokenizer",
    "default_token_counter",
]
