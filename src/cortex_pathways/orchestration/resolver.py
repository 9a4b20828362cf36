"""Pathway resolver orchestrating multi-chunk, multi-prompt model calls.

Key Responsibilities:
    - Normalise the pathway's prompts and derive the per-chunk token budget
    - Chunk (or truncate) the input text and optionally pre-summarise it
    - Run the prompt pipeline serially across stages or in parallel per chunk
    - Track progress and cooperative cancellation in the request registry
    - Load and persist saved context between requests
    - Choose between synchronous, deferred and streaming delivery

Collaborators:
    - Upstream: ``PathwayService`` constructs one resolver per request
    - Downstream: ``ModelExecutor``, ``RequestStateRegistry``,
      ``ProgressPublisher``, ``ContextStore``, tokenizer and chunk splitter

Side Effects:
    - Publishes progress events and mutates the request registry
    - Writes saved context to the context store when it changed
    - Emits structured logs, Prometheus metrics and OpenTelemetry spans

Thread Safety:
    - One resolver per request; concurrent units only share the registry,
      whose counters are updated atomically
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================
import asyncio
import copy
from collections.abc import Awaitable, Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any
from uuid import uuid4

import structlog
from opentelemetry import trace

from cortex_pathways.chunking.splitter import ChunkSplitter, SemanticChunkSplitter
from cortex_pathways.chunking.tokenization import Tokenizer
from cortex_pathways.config.settings import DEFAULT_MAX_TOKENS, DEFAULT_PROMPT_TOKEN_RATIO
from cortex_pathways.observability.metrics import (
    record_chunk_count,
    record_malformed_stream_line,
    record_request,
    record_request_failure,
    record_truncation,
)
from cortex_pathways.pathways.models import PathwayDefinition
from cortex_pathways.pathways.prompt import Prompt
from cortex_pathways.utils.errors import ConfigurationError, RequestCanceledError
from cortex_pathways.utils.logging import bind_request_id, reset_request_id

from .budget import compute_chunk_max_token_length, effective_ceiling, plan_chunks, truncate
from .context_store import ContextStore, serialize_context
from .events import ProgressPublisher
from .executor import ModelExecutor
from .response_parser import PathwayResponseParser
from .state import RequestStateRegistry
from .stream import StreamDecoder

logger = structlog.get_logger(__name__)

CHUNK_SEPARATOR = "\n\n"

# delivery flags and the saved context stay with the outer request
_NESTED_EXCLUDED_ARGS = frozenset({"async", "stream", "contextId", "context_id"})

Summarizer = Callable[[str, dict[str, Any]], Awaitable[Any]]


# ==============================================================================
# HELPERS
# ==============================================================================


def _is_stream(value: Any) -> bool:
    return hasattr(value, "__aiter__")


def _stream_handles(value: Any) -> list[Any] | None:
    """Stream handles carried by a stage result, or ``None`` for plain data."""
    if _is_stream(value):
        return [value]
    if isinstance(value, list) and value and all(_is_stream(item) for item in value):
        return list(value)
    return None


def _join(results: Sequence[Any]) -> str:
    return CHUNK_SEPARATOR.join("" if item is None else str(item) for item in results)


# ==============================================================================
# RESOLVER
# ==============================================================================


class PathwayResolver:
    """Runs one request of a pathway from raw input to parsed result."""

    def __init__(
        self,
        pathway: PathwayDefinition,
        *,
        executor: ModelExecutor,
        registry: RequestStateRegistry,
        publisher: ProgressPublisher,
        tokenizer: Tokenizer,
        context_store: ContextStore | None = None,
        splitter: ChunkSplitter | None = None,
        max_token_length: int | None = None,
        token_ratio: float | None = None,
        summarizer: Summarizer | None = None,
        summary_target_length: int = 1000,
        request_id: str | None = None,
    ) -> None:
        self.pathway = pathway
        self.request_id = request_id or str(uuid4())
        self.warnings: list[str] = []
        self.previous_result: Any = ""
        self.saved_context_id: str | None = None
        self.saved_context: dict[str, Any] = {}
        self.max_token_length = pathway.max_token_length or max_token_length or DEFAULT_MAX_TOKENS
        self.token_ratio = pathway.input_token_ratio() or token_ratio or DEFAULT_PROMPT_TOKEN_RATIO
        self._executor = executor
        self._registry = registry
        self._publisher = publisher
        self._tokenizer = tokenizer
        self._context_store = context_store
        self._splitter = splitter or SemanticChunkSplitter(tokenizer)
        self._summarizer = summarizer
        self._summary_target_length = summary_target_length
        self._response_parser = PathwayResponseParser(pathway.output_format)
        self._tracer = trace.get_tracer(__name__)
        self._prompts: tuple[Prompt, ...] = ()
        self._chunk_max_token_length = 0.0
        self.set_prompts(pathway.build_prompts())

    # ------------------------------------------------------------------
    # Pipeline construction
    # ------------------------------------------------------------------
    @property
    def prompts(self) -> tuple[Prompt, ...]:
        return self._prompts

    @property
    def chunk_max_token_length(self) -> float:
        return self._chunk_max_token_length

    @property
    def executor(self) -> ModelExecutor:
        return self._executor

    def set_prompts(self, prompts: Sequence[Prompt | Any]) -> None:
        """Replace the pipeline and recompute the chunk budget in one step.

        Nothing is changed when the new prompts leave no room for input.
        """
        parameters = self.pathway.prompt_parameters()
        built = [Prompt.from_entry(prompt, parameters=parameters) for prompt in prompts]
        if not built:
            raise ConfigurationError("Pathway defines no prompt", extra={"pathway": self.pathway.name})
        chunk_max = compute_chunk_max_token_length(
            built,
            self._tokenizer,
            max_token_length=self.max_token_length,
            token_ratio=self.token_ratio,
            parameters=parameters,
        )
        self._prompts = tuple(built)
        self._chunk_max_token_length = chunk_max

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    @contextmanager
    def _bound_request(self) -> Iterator[None]:
        token = bind_request_id(self.request_id)
        try:
            yield
        finally:
            reset_request_id(token)

    async def resolve(self, args: Mapping[str, Any]) -> Any:
        """Run synchronously, or register a deferred run and return the id."""
        arguments = dict(args)
        with self._bound_request():
            if arguments.get("async") or arguments.get("stream"):
                mode = "stream" if arguments.get("stream") else "async"
                self._registry.register_deferred(
                    self.request_id, args=arguments, resolver=self.async_resolve
                )
                record_request(self.pathway.name, mode)
                logger.info("pathway.request.deferred", pathway=self.pathway.name, mode=mode)
                return self.request_id
            record_request(self.pathway.name, "sync")
            try:
                result = await self.prompt_and_parse(arguments)
            except Exception as exc:
                record_request_failure(self.pathway.name, type(exc).__name__)
                self._registry.complete(self.request_id, error=str(exc))
                raise
            self._registry.complete(self.request_id, data=result)
            return result

    async def async_resolve(self, args: Mapping[str, Any]) -> Any:
        """Deferred entry point; the outcome is delivered as progress events.

        A terminal event (``progress == 1.0``) is always published, carrying
        the data, a cancellation flag or the error message.
        """
        with self._bound_request():
            try:
                data = await self.prompt_and_parse(dict(args))
                handles = _stream_handles(data)
                if handles is not None:
                    await self._relay_streams(handles)
                    return None
            except RequestCanceledError:
                record_request_failure(self.pathway.name, "RequestCanceledError")
                self._registry.complete(self.request_id)
                self._publisher.publish(self.request_id, 1.0, None, canceled=True)
                logger.info("pathway.request.canceled", pathway=self.pathway.name)
                return None
            except Exception as exc:
                record_request_failure(self.pathway.name, type(exc).__name__)
                self._registry.complete(self.request_id, error=str(exc))
                self._publisher.publish(self.request_id, 1.0, None, error=str(exc))
                logger.error("pathway.request.failed", pathway=self.pathway.name, error=str(exc))
                raise

            self._registry.complete(self.request_id, data=data)
            self._publisher.publish(self.request_id, 1.0, data)
            logger.info("pathway.request.completed", pathway=self.pathway.name)
            return data

    async def _relay_streams(self, handles: Sequence[Any]) -> None:
        for handle in handles:
            decoder = StreamDecoder()
            async for chunk in handle:
                if self._registry.is_canceled(self.request_id):
                    await handle.aclose()
                    self._registry.complete(self.request_id)
                    self._publisher.publish(self.request_id, 1.0, None, canceled=True)
                    logger.info("pathway.stream.canceled", pathway=self.pathway.name)
                    return
                if self._publish_stream_events(decoder.feed(chunk)):
                    await handle.aclose()
                    return
            if self._publish_stream_events(decoder.flush()):
                return
        self._registry.complete(self.request_id)
        self._publisher.publish(self.request_id, 1.0, None)
        logger.info("pathway.stream.ended_without_sentinel", pathway=self.pathway.name)

    def _publish_stream_events(self, events: Sequence[Any]) -> bool:
        """Publish decoded stream events; ``True`` once the stream is done."""
        for event in events:
            if event.kind == "malformed":
                record_malformed_stream_line()
                logger.warning(
                    "pathway.stream.malformed_line", line=event.raw, error=event.error
                )
                continue
            if event.kind == "done":
                self._registry.complete(self.request_id)
                self._publisher.publish(self.request_id, 1.0, None)
                return True
            self._publisher.publish(self.request_id, None, event.data)
        return False

    async def prompt_and_parse(self, args: Mapping[str, Any]) -> Any:
        """Process the request inside its saved context and parse the output."""
        context_id = args.get("contextId") or args.get("context_id")
        self.saved_context_id = context_id or None
        loaded = None
        if context_id and self._context_store is not None:
            loaded = await self._context_store.get(context_id)
        self.saved_context = dict(loaded or {})
        before = serialize_context(self.saved_context)

        data = await self.process_request(args)

        if serialize_context(self.saved_context) != before:
            self.saved_context_id = self.saved_context_id or str(uuid4())
            if self._context_store is not None:
                await self._context_store.set(self.saved_context_id, self.saved_context)
            logger.debug("pathway.context.saved", context_id=self.saved_context_id)
        return self._response_parser.parse(data)

    # ------------------------------------------------------------------
    # Input handling
    # ------------------------------------------------------------------
    def process_input_text(self, text: str) -> list[str]:
        """Chunk ``text`` under the effective ceiling, truncating when chunking is off."""
        ceiling = effective_ceiling(self._chunk_max_token_length, self.pathway.input_chunk_size)
        plan = plan_chunks(
            text,
            tokenizer=self._tokenizer,
            splitter=self._splitter,
            ceiling=ceiling,
            use_chunking=self.pathway.use_input_chunking,
            truncate_from_front=self.pathway.truncate_from_front,
        )
        if plan.warnings:
            self.warnings.extend(plan.warnings)
            record_truncation(self.pathway.name)
        return plan.chunks

    async def summarize_if_enabled(self, text: str, parameters: Mapping[str, Any]) -> str:
        if not self.pathway.use_input_summarization:
            return text
        if self._summarizer is None:
            raise ConfigurationError(
                "Input summarization requires a summary pathway",
                extra={"pathway": self.pathway.name},
            )
        nested = {
            "targetLength": self._summary_target_length,
            **{k: v for k, v in parameters.items() if k not in _NESTED_EXCLUDED_ARGS},
        }
        summary = await self._summarizer(text, nested)
        logger.debug(
            "pathway.input.summarized",
            pathway=self.pathway.name,
            text_length=len(text),
            summary_length=len(str(summary)),
        )
        return "" if summary is None else str(summary)

    def _unit_count(self, chunk_count: int) -> int:
        """Model executor calls a request with ``chunk_count`` chunks will make.

        Serial stages that do not read the input text run once, not per chunk.
        """
        if self.pathway.use_parallel_chunk_processing:
            return chunk_count * len(self._prompts)
        return sum(chunk_count if prompt.uses_text_input else 1 for prompt in self._prompts)

    def _truncate(self, value: Any, max_tokens: int) -> str:
        text = "" if value is None else value if isinstance(value, str) else str(value)
        if not text:
            return text
        return truncate(text, max_tokens, self._tokenizer, from_front=self.pathway.truncate_from_front)

    # ------------------------------------------------------------------
    # Pipeline execution
    # ------------------------------------------------------------------
    async def process_request(self, args: Mapping[str, Any]) -> Any:
        parameters = dict(args)
        text = parameters.pop("text", None) or ""

        with self._tracer.start_as_current_span("pathway.process_request") as span:
            span.set_attribute("pathway.name", self.pathway.name)
            span.set_attribute("pathway.request_id", self.request_id)

            text = await self.summarize_if_enabled(text, parameters)
            chunks = self.process_input_text(text)
            total_count = self._unit_count(len(chunks))

            if self._registry.is_canceled(self.request_id):
                raise RequestCanceledError(self.request_id)

            self._registry.begin(self.request_id, total_count=total_count)
            record_chunk_count(self.pathway.name, len(chunks))
            span.set_attribute("pathway.chunks", len(chunks))
            span.set_attribute("pathway.total_count", total_count)

            if parameters.get("stream") and (
                len(chunks) > 1 or self.pathway.use_parallel_chunk_processing
            ):
                parameters["async"] = True
                parameters["stream"] = False
                logger.info(
                    "pathway.request.stream_downgraded",
                    pathway=self.pathway.name,
                    chunks=len(chunks),
                )

            logger.info(
                "pathway.request.processing",
                pathway=self.pathway.name,
                chunks=len(chunks),
                prompts=len(self._prompts),
                total_count=total_count,
                parallel=self.pathway.use_parallel_chunk_processing,
            )
            if self.pathway.use_parallel_chunk_processing:
                result = await self._process_parallel(chunks, parameters)
            else:
                result = await self._process_serial(chunks, parameters)

        if self._registry.is_canceled(self.request_id):
            raise RequestCanceledError(self.request_id)
        return result

    async def _process_parallel(self, chunks: Sequence[str], parameters: dict[str, Any]) -> str:
        base_context = copy.deepcopy(self.saved_context)

        async def _run(chunk: str) -> tuple[Any, dict[str, Any]]:
            context = copy.deepcopy(base_context)
            result = await self.apply_prompts_serially(chunk, parameters, context=context)
            return result, context

        outcomes = await asyncio.gather(*(_run(chunk) for chunk in chunks))
        self.previous_result = ""

        written: dict[str, list[Any]] = {}
        for _, context in outcomes:
            for key, value in context.items():
                if key not in base_context or base_context[key] != value:
                    written.setdefault(key, []).append(value)
        for key, values in written.items():
            self.saved_context[key] = values[0] if len(values) == 1 else _join(values)

        return _join([result for result, _ in outcomes])

    async def _process_serial(self, chunks: Sequence[str], parameters: dict[str, Any]) -> Any:
        previous_result: Any = ""
        result: Any = ""
        last = len(self._prompts) - 1

        for index, prompt in enumerate(self._prompts):
            stage_parameters = dict(parameters)
            if stage_parameters.get("stream"):
                stage_parameters["stream"] = index == last and not stage_parameters.get("async")

            if not prompt.uses_text_input:
                previous_result = self._truncate(previous_result, int(2 * self._chunk_max_token_length))
                stage_parameters["previousResult"] = previous_result
                result = await self.apply_prompt(prompt, None, stage_parameters)
            else:
                previous_result = self._truncate(previous_result, int(self._chunk_max_token_length))
                stage_parameters["previousResult"] = previous_result
                results = await asyncio.gather(
                    *(self.apply_prompt(prompt, chunk, stage_parameters) for chunk in chunks)
                )
                result = list(results) if stage_parameters.get("stream") else _join(results)

            if index < last:
                previous_result = result

        self.previous_result = previous_result
        return result

    async def apply_prompts_serially(
        self,
        text: str,
        parameters: Mapping[str, Any],
        *,
        context: dict[str, Any] | None = None,
    ) -> Any:
        """Run the whole pipeline over one chunk, each prompt seeing the last result."""
        previous_result: Any = ""
        result: Any = ""
        for prompt in self._prompts:
            previous_result = result
            result = await self.apply_prompt(
                prompt, text, {**parameters, "previousResult": previous_result}, context=context
            )
        return result

    async def apply_prompt(
        self,
        prompt: Prompt,
        text: str | None,
        parameters: Mapping[str, Any],
        *,
        context: dict[str, Any] | None = None,
    ) -> Any:
        """Execute one unit unless the request was canceled.

        ``context`` defaults to the resolver's saved context; parallel chunk
        runs pass their own copy.
        """
        saved = self.saved_context if context is None else context
        if self._registry.is_canceled(self.request_id):
            logger.debug("pathway.unit.skipped", pathway=self.pathway.name)
            return ""

        result = await self._executor.execute(text, {**parameters, **saved}, prompt)
        completed, total = self._registry.increment_completed(self.request_id)
        if completed < total:
            self._publisher.publish(self.request_id, completed / total)

        if prompt.save_result_to and not _stream_handles(result):
            saved[prompt.save_result_to] = result
        return result


__all__ = ["CHUNK_SEPARATOR", "PathwayResolver", "Summarizer"]
