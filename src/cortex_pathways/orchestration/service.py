"""Caller facing facade wiring pathways, executors and request bookkeeping.

Key Responsibilities:
    - Build one :class:`PathwayResolver` per request with shared collaborators
    - Return resolve outcomes with warnings, context id and a debug echo of the
      rendered request parameters
    - Start deferred requests, stream their progress events and cancel them
    - Run nested pathways, which input summarisation relies on
    - Evict finished request records after the grace period

Collaborators:
    - Upstream: API layers and tests
    - Downstream: ``PathwayRepository``, ``RequestStateRegistry``,
      ``ProgressPublisher``, ``ContextStore``, ``HttpModelExecutor``
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from cortex_pathways.chunking.splitter import ChunkSplitter
from cortex_pathways.chunking.tokenization import Tokenizer, default_token_counter
from cortex_pathways.config.settings import AppSettings, ModelDefinition, get_settings
from cortex_pathways.pathways.models import PathwayDefinition
from cortex_pathways.pathways.repository import PathwayRepository
from cortex_pathways.utils.errors import RequestNotFoundError
from cortex_pathways.utils.http_client import AsyncHttpClient

from .context_store import ContextStore, create_context_store
from .events import ProgressEvent, ProgressPublisher
from .executor import HttpModelExecutor, ModelExecutor
from .resolver import PathwayResolver
from .state import RequestStateRegistry

logger = structlog.get_logger(__name__)

ExecutorFactory = Callable[[PathwayDefinition, str, ModelDefinition], ModelExecutor]


@dataclass(slots=True)
class ResolveOutcome:
    """What a caller receives for one resolved pathway request."""

    result: Any
    request_id: str
    warnings: list[str] = field(default_factory=list)
    context_id: str | None = None
    previous_result: Any = None
    debug: str = ""


class PathwayService:
    """Entry point for resolving pathways and following deferred requests."""

    def __init__(
        self,
        *,
        settings: AppSettings | None = None,
        repository: PathwayRepository | None = None,
        registry: RequestStateRegistry | None = None,
        publisher: ProgressPublisher | None = None,
        context_store: ContextStore | None = None,
        tokenizer: Tokenizer | None = None,
        splitter: ChunkSplitter | None = None,
        executor_factory: ExecutorFactory | None = None,
        http_client: AsyncHttpClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.repository = repository or PathwayRepository(self.settings.pathways_dir)
        self.registry = registry or RequestStateRegistry(
            grace_seconds=self.settings.request_state.grace_seconds
        )
        self.publisher = publisher or ProgressPublisher()
        self.context_store = context_store or create_context_store(self.settings.context_store)
        self.tokenizer = tokenizer or default_token_counter()
        self.splitter = splitter
        self._http_client = http_client
        self._executor_factory = executor_factory or self._http_executor

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    def _client(self) -> AsyncHttpClient:
        if self._http_client is None:
            self._http_client = AsyncHttpClient.from_settings(self.settings.http)
        return self._http_client

    def _http_executor(
        self, pathway: PathwayDefinition, model_name: str, model: ModelDefinition
    ) -> ModelExecutor:
        return HttpModelExecutor(
            pathway,
            model_name,
            model,
            tokenizer=self.tokenizer,
            client=self._client(),
            default_max_tokens=self.settings.defaults.max_token_length,
        )

    def _pathway(self, pathway: str | PathwayDefinition) -> PathwayDefinition:
        if isinstance(pathway, PathwayDefinition):
            return pathway
        return self.repository.get(pathway)

    def create_resolver(
        self,
        pathway: str | PathwayDefinition,
        *,
        request_id: str | None = None,
    ) -> PathwayResolver:
        definition = self._pathway(pathway)
        model_name, model = definition.resolve_model(
            self.settings.models, self.settings.default_model_name
        )
        defaults = self.settings.defaults
        return PathwayResolver(
            definition,
            executor=self._executor_factory(definition, model_name, model),
            registry=self.registry,
            publisher=self.publisher,
            tokenizer=self.tokenizer,
            context_store=self.context_store,
            splitter=self.splitter,
            max_token_length=model.max_token_length or defaults.max_token_length,
            token_ratio=defaults.prompt_token_ratio,
            summarizer=self._summarize,
            summary_target_length=defaults.summary_target_length,
            request_id=request_id,
        )

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    async def resolve(
        self, pathway: str | PathwayDefinition, args: Mapping[str, Any]
    ) -> ResolveOutcome:
        """Resolve ``pathway``; deferred requests return their request id as result."""
        resolver = self.create_resolver(pathway)
        text = args.get("text")
        debug = json.dumps(
            [resolver.executor.request_parameters(text, args, prompt) for prompt in resolver.prompts],
            default=str,
        )
        result = await resolver.resolve(args)
        return ResolveOutcome(
            result=result,
            request_id=resolver.request_id,
            warnings=list(resolver.warnings),
            context_id=resolver.saved_context_id,
            previous_result=resolver.previous_result,
            debug=debug,
        )

    async def call_pathway(self, pathway: str | PathwayDefinition, args: Mapping[str, Any]) -> Any:
        """Run a nested pathway inline and return its parsed result."""
        resolver = self.create_resolver(pathway)
        return await resolver.resolve(args)

    async def _summarize(self, text: str, parameters: dict[str, Any]) -> Any:
        return await self.call_pathway(
            self.settings.defaults.summary_pathway, {**parameters, "text": text}
        )

    async def start(self, request_id: str) -> Any:
        """Run the deferred entry point registered by an async or stream resolve."""
        claimed = self.registry.claim_deferred(request_id)
        if claimed is None:
            raise RequestNotFoundError(request_id)
        args, resolver = claimed
        logger.info("pathway.request.started", request_id=request_id)
        return await resolver(args)

    async def subscribe(self, request_id: str) -> AsyncIterator[ProgressEvent]:
        """Progress events of ``request_id``, starting it if it is still deferred.

        Iteration ends with the terminal event (``progress == 1.0``).
        """
        events = self.publisher.subscribe(request_id)
        task: asyncio.Task[Any] | None = None
        state = self.registry.get(request_id)
        if state is not None and state.resolver is not None:
            task = asyncio.create_task(self.start(request_id))
            task.add_done_callback(_log_task_failure)
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()

    def cancel(self, request_id: str) -> bool:
        self.registry.cancel(request_id)
        return True

    def evict_expired(self) -> list[str]:
        evicted = self.registry.evict_expired()
        for request_id in evicted:
            self.publisher.discard(request_id)
        return evicted

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()


def _log_task_failure(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # subscribers already received the error as the terminal event
        logger.warning("pathway.request.deferred_failed", error=str(exc))


_pathway_service: PathwayService | None = None


def get_pathway_service() -> PathwayService:
    """Return the process wide ``PathwayService`` instance."""
    global _pathway_service

    if _pathway_service is None:
        _pathway_service = PathwayService()
    return _pathway_service


__all__ = [
    "ExecutorFactory",
    "PathwayService",
    "ResolveOutcome",
    "get_pathway_service",
]
