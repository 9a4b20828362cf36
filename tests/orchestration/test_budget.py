from __future__ import annotations

import pytest

from cortex_pathways.chunking.splitter import SemanticChunkSplitter
from cortex_pathways.orchestration.budget import (
    compute_chunk_max_token_length,
    effective_ceiling,
    plan_chunks,
    truncate,
)
from cortex_pathways.pathways.prompt import Prompt, build_prompts
from cortex_pathways.utils.errors import ConfigurationError


def test_budget_uses_longest_prompt(tokenizer) -> None:
    prompts = build_prompts(["{{text}}", "Please summarize this: {{text}}"])
    budget = compute_chunk_max_token_length(
        prompts, tokenizer, max_token_length=100, token_ratio=0.5
    )
    assert budget == pytest.approx(46.0)


def test_budget_counts_message_roles_and_contents(tokenizer) -> None:
    prompt = Prompt.from_entry(
        {
            "messages": [
                {"role": "system", "content": "be brief"},
                {"role": "user", "content": "{{text}}"},
                "{{chatHistory}}",
            ]
        }
    )
    assert prompt.footprint(tokenizer) == 5
    budget = compute_chunk_max_token_length(
        [prompt], tokenizer, max_token_length=100, token_ratio=0.5
    )
    assert budget == pytest.approx(45.0)


def test_budget_keeps_fractional_value(tokenizer) -> None:
    prompts = build_prompts("{{text}} and {{previousResult}}")
    budget = compute_chunk_max_token_length(
        prompts, tokenizer, max_token_length=101, token_ratio=0.5
    )
    assert budget == pytest.approx((50.5 - 3) / 2)
    assert effective_ceiling(budget, None) == 23


def test_non_positive_budget_raises(tokenizer) -> None:
    prompts = build_prompts("one two three four five {{text}}")
    with pytest.raises(ConfigurationError) as excinfo:
        compute_chunk_max_token_length(prompts, tokenizer, max_token_length=12, token_ratio=0.5)
    assert excinfo.value.problem.extra["prompt_tokens"] == 6


def test_budget_below_one_token_raises(tokenizer) -> None:
    prompts = build_prompts("{{text}}")
    with pytest.raises(ConfigurationError):
        compute_chunk_max_token_length(prompts, tokenizer, max_token_length=10, token_ratio=0.15)


def test_effective_ceiling_prefers_smaller_chunk_size() -> None:
    assert effective_ceiling(100.0, 40) == 40
    assert effective_ceiling(30.0, 40) == 30
    assert effective_ceiling(30.9, None) == 30


def test_truncate_direction(tokenizer) -> None:
    assert truncate("a b c d", 2, tokenizer) == "c d"
    assert truncate("a b c d", 2, tokenizer, from_front=True) == "a b"


def test_plan_splits_when_chunking_enabled(tokenizer, words) -> None:
    plan = plan_chunks(
        words(12),
        tokenizer=tokenizer,
        splitter=SemanticChunkSplitter(tokenizer),
        ceiling=5,
    )
    assert plan.chunks == ["w0 w1 w2 w3 w4", "w5 w6 w7 w8 w9", "w10 w11"]
    assert plan.token_count == 12
    assert not plan.truncated


def test_plan_truncates_when_chunking_disabled(tokenizer, words) -> None:
    plan = plan_chunks(
        words(12),
        tokenizer=tokenizer,
        splitter=SemanticChunkSplitter(tokenizer),
        ceiling=5,
        use_chunking=False,
    )
    assert plan.chunks == ["w7 w8 w9 w10 w11"]
    assert plan.truncated
