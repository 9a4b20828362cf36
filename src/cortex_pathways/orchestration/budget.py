"""Token budget computation and the input chunking policy."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from cortex_pathways.chunking.splitter import ChunkSplitter
from cortex_pathways.chunking.tokenization import Tokenizer
from cortex_pathways.pathways.prompt import Prompt
from cortex_pathways.utils.errors import ConfigurationError

logger = structlog.get_logger(__name__)


def compute_chunk_max_token_length(
    prompts: Sequence[Prompt],
    tokenizer: Tokenizer,
    *,
    max_token_length: int,
    token_ratio: float,
    parameters: Mapping[str, Any] | None = None,
) -> float:
    """Largest token count a single input chunk may occupy.

    ``token_ratio * max_token_length`` minus the longest prompt's own
    footprint, halved when any prompt carries both the input text and the
    previous result.

    Raises:
        ConfigurationError: When the longest prompt leaves room for less than one
            input token.
    """
    footprints = [prompt.footprint(tokenizer, parameters) for prompt in prompts]
    max_template_tokens = max(footprints, default=0)
    has_mixed_prompt = any(p.uses_text_input and p.uses_previous_result for p in prompts)

    budget = token_ratio * max_token_length - max_template_tokens
    if has_mixed_prompt:
        budget /= 2
    if budget < 1:
        raise ConfigurationError(
            "Your prompt is too long! Split to multiple prompts or reduce length of your prompt",
            detail=f"prompt length: {max_template_tokens} tokens",
            extra={"prompt_tokens": max_template_tokens, "max_token_length": max_token_length},
        )
    return budget


def effective_ceiling(chunk_max_token_length: float, input_chunk_size: int | None) -> int:
    if input_chunk_size:
        return int(min(input_chunk_size, chunk_max_token_length))
    return int(chunk_max_token_length)


def truncate(text: str, max_tokens: int, tokenizer: Tokenizer, *, from_front: bool = False) -> str:
    """Cut ``text`` to ``max_tokens``.

    ``from_front`` keeps the leading tokens; otherwise the trailing tokens are
    kept.
    """
    if from_front:
        return tokenizer.first_n(text, max_tokens)
    return tokenizer.last_n(text, max_tokens)


@dataclass(slots=True)
class ChunkPlan:
    chunks: list[str]
    ceiling: int
    token_count: int
    warnings: list[str] = field(default_factory=list)

    @property
    def truncated(self) -> bool:
        return bool(self.warnings)


def plan_chunks(
    text: str,
    *,
    tokenizer: Tokenizer,
    splitter: ChunkSplitter,
    ceiling: int,
    use_chunking: bool = True,
    truncate_from_front: bool = False,
) -> ChunkPlan:
    """Turn input text into the ordered chunk sequence for one request."""
    token_count = tokenizer.count(text)
    if not use_chunking or token_count <= ceiling:
        plan = ChunkPlan(chunks=[text], ceiling=ceiling, token_count=token_count)
        if not use_chunking and token_count >= ceiling:
            warning = f"Your input is possibly too long, truncating! Text length: {len(text)}"
            plan.warnings.append(warning)
            plan.chunks = [truncate(text, ceiling, tokenizer, from_front=truncate_from_front)]
            logger.warning(
                "pathway.input.truncated",
                token_count=token_count,
                ceiling=ceiling,
                text_length=len(text),
            )
        return plan

    chunks = splitter.split(text, ceiling) or [text]
    logger.debug("pathway.input.chunked", token_count=token_count, ceiling=ceiling, chunks=len(chunks))
    return ChunkPlan(chunks=list(chunks), ceiling=ceiling, token_count=token_count)


__all__ = [
    "ChunkPlan",
    "compute_chunk_max_token_length",
    "effective_ceiling",
    "plan_chunks",
    "truncate",
]
