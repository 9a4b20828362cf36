"""Request orchestration: budgets, pipeline execution, progress and delivery."""

from __future__ import annotations

from importlib import import_module
from typing import Any

_ATTRIBUTE_MAP: dict[str, tuple[str, str]] = {
    "ChunkPlan": ("cortex_pathways.orchestration.budget", "ChunkPlan"),
    "compute_chunk_max_token_length": (
        "cortex_pathways.orchestration.budget",
        "compute_chunk_max_token_length",
    ),
    "plan_chunks": ("cortex_pathways.orchestration.budget", "plan_chunks"),
    "ContextStore": ("cortex_pathways.orchestration.context_store", "ContextStore"),
    "InMemoryContextStore": ("cortex_pathways.orchestration.context_store", "InMemoryContextStore"),
    "RedisContextStore": ("cortex_pathways.orchestration.context_store", "RedisContextStore"),
    "create_context_store": ("cortex_pathways.orchestration.context_store", "create_context_store"),
    "ProgressEvent": ("cortex_pathways.orchestration.events", "ProgressEvent"),
    "ProgressPublisher": ("cortex_pathways.orchestration.events", "ProgressPublisher"),
    "HttpModelExecutor": ("cortex_pathways.orchestration.executor", "HttpModelExecutor"),
    "ModelExecutor": ("cortex_pathways.orchestration.executor", "ModelExecutor"),
    "PathwayResponseParser": (
        "cortex_pathways.orchestration.response_parser",
        "PathwayResponseParser",
    ),
    "PathwayResolver": ("cortex_pathways.orchestration.resolver", "PathwayResolver"),
    "PathwayService": ("cortex_pathways.orchestration.service", "PathwayService"),
    "ResolveOutcome": ("cortex_pathways.orchestration.service", "ResolveOutcome"),
    "get_pathway_service": ("cortex_pathways.orchestration.service", "get_pathway_service"),
    "RequestState": ("cortex_pathways.orchestration.state", "RequestState"),
    "RequestStateRegistry": ("cortex_pathways.orchestration.state", "RequestStateRegistry"),
    "ParsedEvent": ("cortex_pathways.orchestration.stream", "ParsedEvent"),
    "StreamDecoder": ("cortex_pathways.orchestration.stream", "StreamDecoder"),
    "decode_stream": ("cortex_pathways.orchestration.stream", "decode_stream"),
}

__all__ = sorted(_ATTRIBUTE_MAP)


def __getattr__(name: str) -> Any:
    try:
        module_name, attr_name = _ATTRIBUTE_MAP[name]
    except KeyError as exc:  # pragma: no cover - standard attribute error path
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'") from exc

    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:  # pragma: no cover - convenience helper
    return sorted(globals().keys() | _ATTRIBUTE_MAP.keys())
