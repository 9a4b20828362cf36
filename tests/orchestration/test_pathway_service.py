from __future__ import annotations

import asyncio
import json

import pytest

from cortex_pathways.pathways.models import PathwayDefinition
from cortex_pathways.utils.errors import BackendError, ConfigurationError, RequestNotFoundError


async def _collect(service, request_id: str) -> list:
    return [event async for event in service.subscribe(request_id)]


def test_sync_resolve_returns_outcome(make_service, make_executor) -> None:
    pathway = PathwayDefinition(name="echo", prompt="Echo {{text}}")
    service = make_service(pathway, executor=make_executor())

    outcome = asyncio.run(service.resolve("echo", {"text": "hello"}))

    assert outcome.result == "hello"
    assert outcome.warnings == []
    assert outcome.context_id is None
    assert json.loads(outcome.debug) == [{"text": "hello", "stream": False}]


def test_warnings_surface_in_outcome(make_service, make_executor, words) -> None:
    pathway = PathwayDefinition(name="short", use_input_chunking=False, input_chunk_size=3)
    service = make_service(pathway, executor=make_executor())

    outcome = asyncio.run(service.resolve("short", {"text": words(6)}))

    assert outcome.result == "w3 w4 w5"
    assert len(outcome.warnings) == 1


def test_unknown_pathway_and_model_are_configuration_errors(make_service) -> None:
    service = make_service(PathwayDefinition(name="orphan", model="missing"))

    with pytest.raises(ConfigurationError):
        service.create_resolver("nope")
    with pytest.raises(ConfigurationError, match="Model missing not found"):
        service.create_resolver("orphan")


def test_multi_chunk_stream_downgrades_to_async(make_service, make_executor, registry, words) -> None:
    executor = make_executor()
    pathway = PathwayDefinition(
        name="two-step",
        prompt=["{{text}}", "{{text}} {{previousResult}}"],
        input_chunk_size=10,
    )
    service = make_service(pathway, executor=executor)

    async def _run():
        outcome = await service.resolve("two-step", {"text": words(30), "stream": True})
        assert executor.calls == []
        return outcome.result, await _collect(service, outcome.result)

    request_id, events = asyncio.run(_run())

    assert [event.progress for event in events] == pytest.approx(
        [1 / 6, 2 / 6, 3 / 6, 4 / 6, 5 / 6, 1.0]
    )
    assert isinstance(events[-1].data, str)
    assert len(executor.calls) == 6
    assert not any(call.parameters["stream"] for call in executor.calls)
    state = registry.get(request_id)
    assert state is not None
    assert (state.completed_count, state.total_count) == (6, 6)


def test_cancel_after_two_units(make_service, make_executor, registry) -> None:
    holder: dict[str, str] = {}
    executor = make_executor()
    service = make_service(
        PathwayDefinition(name="six", prompt=[f"step{i} {{{{text}}}}" for i in range(6)]),
        executor=executor,
    )
    executor.on_call = lambda count: service.cancel(holder["request_id"]) if count == 2 else None

    async def _run():
        outcome = await service.resolve("six", {"text": "x", "async": True})
        holder["request_id"] = outcome.result
        return await _collect(service, outcome.result)

    events = asyncio.run(_run())

    assert len(executor.calls) == 2
    assert [event.progress for event in events] == pytest.approx([1 / 6, 2 / 6, 1.0])
    assert events[-1].canceled is True
    state = registry.get(holder["request_id"])
    assert state is not None
    assert state.canceled is True
    assert state.completed_count == 2


def test_cancel_before_start_publishes_canceled_terminal(make_service, make_executor) -> None:
    executor = make_executor()
    service = make_service(PathwayDefinition(name="p"), executor=executor)

    async def _run():
        outcome = await service.resolve("p", {"text": "x", "async": True})
        assert service.cancel(outcome.result) is True
        return await _collect(service, outcome.result)

    events = asyncio.run(_run())

    assert len(events) == 1
    assert events[0].progress == 1.0
    assert events[0].canceled is True
    assert executor.calls == []


def test_start_runs_deferred_request_once(make_service, make_executor, publisher) -> None:
    service = make_service(PathwayDefinition(name="p"), executor=make_executor())

    async def _run():
        outcome = await service.resolve("p", {"text": "later", "async": True})
        result = await service.start(outcome.result)
        assert result == "later"
        assert publisher.history(outcome.result)[-1].data == "later"
        with pytest.raises(RequestNotFoundError):
            await service.start(outcome.result)

    asyncio.run(_run())


def test_start_unknown_request_raises(make_service) -> None:
    service = make_service(PathwayDefinition(name="p"))
    with pytest.raises(RequestNotFoundError):
        asyncio.run(service.start("does-not-exist"))


def test_deferred_failure_reaches_subscriber(make_service, make_executor) -> None:
    def _fail(text, parameters, prompt):
        raise BackendError("model unavailable")

    service = make_service(PathwayDefinition(name="p"), executor=make_executor(responder=_fail))

    async def _run():
        outcome = await service.resolve("p", {"text": "x", "async": True})
        events = await _collect(service, outcome.result)
        await asyncio.sleep(0)
        return events

    events = asyncio.run(_run())

    assert events[-1].progress == 1.0
    assert events[-1].error == "model unavailable"


def test_input_summarization_runs_summary_pathway(make_service, make_executor) -> None:
    summary_executor = make_executor(responder=lambda text, parameters, prompt: "short summary")
    main_executor = make_executor()
    service = make_service(
        PathwayDefinition(name="summary", prompt="Summarize to {{targetLength}}: {{text}}"),
        PathwayDefinition(name="main", prompt="Answer {{text}}", use_input_summarization=True),
        executors={"summary": summary_executor, "main": main_executor},
    )

    outcome = asyncio.run(service.resolve("main", {"text": "a very long input", "async": False}))

    assert outcome.result == "short summary"
    assert summary_executor.calls[0].text == "a very long input"
    assert summary_executor.calls[0].parameters["targetLength"] == 1000
    assert main_executor.calls[0].text == "short summary"


def test_evict_expired_drops_finished_requests(make_service, make_executor, registry, publisher) -> None:
    service = make_service(PathwayDefinition(name="p"), executor=make_executor())

    async def _run():
        outcome = await service.resolve("p", {"text": "x", "async": True})
        await service.start(outcome.result)
        return outcome.result

    request_id = asyncio.run(_run())

    assert service.evict_expired() == [request_id]
    assert request_id not in registry
    assert publisher.history(request_id) == []


def test_dropped_stream_ends_subscription(make_service, make_executor) -> None:
    async def _stream():
        yield b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n'
        raise BackendError("stream dropped")

    executor = make_executor(responder=lambda text, parameters, prompt: _stream())
    service = make_service(PathwayDefinition(name="p"), executor=executor)

    async def _run():
        outcome = await service.resolve("p", {"text": "x", "stream": True})
        events = await asyncio.wait_for(_collect(service, outcome.result), timeout=2)
        await asyncio.sleep(0)
        return events

    events = asyncio.run(_run())

    assert [event.data for event in events] == ["Hi", None]
    assert events[-1].error == "stream dropped"
