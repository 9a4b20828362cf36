from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from cortex_pathways.orchestration.events import ProgressEvent, ProgressPublisher


def test_events_published_before_subscribe_are_replayed() -> None:
    publisher = ProgressPublisher()

    async def _run() -> list[ProgressEvent]:
        publisher.publish("req-1", 0.5)
        publisher.publish("req-1", 1.0, "done")
        return [event async for event in publisher.subscribe("req-1")]

    events = asyncio.run(_run())
    assert [event.progress for event in events] == [0.5, 1.0]
    assert events[-1].data == "done"
    assert events[-1].is_terminal


def test_subscription_ends_at_terminal_event() -> None:
    publisher = ProgressPublisher()

    async def _run() -> list[ProgressEvent]:
        async def _produce() -> None:
            await asyncio.sleep(0)
            publisher.publish("req-1", None, "tok")
            publisher.publish("req-1", 1.0, None, canceled=True)
            publisher.publish("req-1", None, "after")

        producer = asyncio.create_task(_produce())
        events = [event async for event in publisher.subscribe("req-1")]
        await producer
        return events

    events = asyncio.run(_run())
    assert [event.data for event in events] == ["tok", None]
    assert events[-1].canceled is True


def test_events_are_scoped_per_request() -> None:
    publisher = ProgressPublisher()
    publisher.publish("other", 1.0)
    publisher.publish("req-1", 1.0, "mine")

    async def _run() -> list[ProgressEvent]:
        return [event async for event in publisher.subscribe("req-1")]

    events = asyncio.run(_run())
    assert [event.data for event in events] == ["mine"]
    assert len(publisher.history("other")) == 1


def test_discard_forgets_history() -> None:
    publisher = ProgressPublisher()
    publisher.publish("req-1", 0.5)
    publisher.discard("req-1")
    assert publisher.history("req-1") == []


def test_progress_outside_unit_interval_is_rejected() -> None:
    with pytest.raises(ValidationError):
        ProgressEvent(request_id="req-1", progress=1.5)


def test_unobserved_buffer_keeps_latest_events() -> None:
    publisher = ProgressPublisher()
    limit = ProgressPublisher._HISTORY_LIMIT

    async def _run() -> list[ProgressEvent]:
        for index in range(limit + 50):
            publisher.publish("req-1", None, index)
        publisher.publish("req-1", 1.0, "done")
        return [event async for event in publisher.subscribe("req-1")]

    events = asyncio.run(_run())
    assert len(events) == limit
    assert events[0].data == 51
    assert events[-1].is_terminal
