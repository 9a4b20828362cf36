from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest

from cortex_pathways.config.settings import AppSettings, ModelDefinition, get_settings
from cortex_pathways.orchestration.context_store import InMemoryContextStore
from cortex_pathways.orchestration.events import ProgressPublisher
from cortex_pathways.orchestration.service import PathwayService
from cortex_pathways.orchestration.state import RequestStateRegistry
from cortex_pathways.pathways.models import PathwayDefinition
from cortex_pathways.pathways.prompt import Prompt
from cortex_pathways.pathways.repository import PathwayRepository


class WhitespaceTokenizer:
    """One token per whitespace separated word."""

    def count(self, text: str) -> int:
        return len(text.split())

    def first_n(self, text: str, n: int) -> str:
        words = text.split()
        if len(words) <= n:
            return text
        return " ".join(words[: max(n, 0)])

    def last_n(self, text: str, n: int) -> str:
        words = text.split()
        if len(words) <= n:
            return text
        if n <= 0:
            return ""
        return " ".join(words[-n:])

    def split_tokens(self, text: str, n: int) -> list[str]:
        words = text.split()
        step = max(n, 1)
        return [" ".join(words[i : i + step]) for i in range(0, len(words), step)]


@dataclass
class ExecutorCall:
    text: str | None
    parameters: dict[str, Any]
    prompt: Prompt


@dataclass
class FakeExecutor:
    """Records every call; ``responder`` decides the result."""

    responder: Callable[[str | None, Mapping[str, Any], Prompt], Any] | None = None
    delay: Callable[[str | None], float] | None = None
    on_call: Callable[[int], None] | None = None
    calls: list[ExecutorCall] = field(default_factory=list)

    def request_parameters(
        self, text: str | None, parameters: Mapping[str, Any], prompt: Prompt
    ) -> dict[str, Any]:
        return {"text": text, "stream": bool(parameters.get("stream"))}

    async def execute(self, text: str | None, parameters: Mapping[str, Any], prompt: Prompt) -> Any:
        self.calls.append(ExecutorCall(text=text, parameters=dict(parameters), prompt=prompt))
        if self.delay is not None:
            await asyncio.sleep(self.delay(text))
        else:
            await asyncio.sleep(0)
        if self.on_call is not None:
            self.on_call(len(self.calls))
        if self.responder is not None:
            return self.responder(text, parameters, prompt)
        return text


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def tokenizer() -> WhitespaceTokenizer:
    return WhitespaceTokenizer()


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(
        models={"test-model": ModelDefinition(url="http://model.local/v1/chat/completions")},
        default_model_name="test-model",
    )


@pytest.fixture
def registry() -> RequestStateRegistry:
    return RequestStateRegistry(grace_seconds=0.0)


@pytest.fixture
def publisher() -> ProgressPublisher:
    return ProgressPublisher()


@pytest.fixture
def context_store() -> InMemoryContextStore:
    return InMemoryContextStore()


@pytest.fixture
def make_service(settings, registry, publisher, context_store, tokenizer):
    def _make(
        *pathways: PathwayDefinition,
        executor: FakeExecutor | None = None,
        executors: Mapping[str, FakeExecutor] | None = None,
    ) -> PathwayService:
        shared = executor or FakeExecutor()

        def _factory(pathway: PathwayDefinition, model_name: str, model: ModelDefinition):
            if executors and pathway.name in executors:
                return executors[pathway.name]
            return shared

        return PathwayService(
            settings=settings,
            repository=PathwayRepository(definitions=pathways),
            registry=registry,
            publisher=publisher,
            context_store=context_store,
            tokenizer=tokenizer,
            executor_factory=_factory,
        )

    return _make


@pytest.fixture
def words() -> Callable[..., str]:
    """Build a text of ``count`` distinct words."""

    def _words(count: int, prefix: str = "w") -> str:
        return " ".join(f"{prefix}{index}" for index in range(count))

    return _words


@pytest.fixture
def make_resolver(registry, publisher, context_store, tokenizer):
    from cortex_pathways.orchestration.resolver import PathwayResolver

    def _make(pathway: PathwayDefinition, executor: FakeExecutor, **kwargs: Any) -> PathwayResolver:
        return PathwayResolver(
            pathway,
            executor=executor,
            registry=registry,
            publisher=publisher,
            tokenizer=tokenizer,
            context_store=context_store,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_executor() -> Callable[..., FakeExecutor]:
    return FakeExecutor
