"""Progress events and the in-memory publisher that fans them out."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


class ProgressEvent(BaseModel):
    """One ``{request_id, progress, data}`` notification.

    ``progress`` is ``None`` for incremental stream payloads; ``1.0`` marks the
    terminal event of a request.
    """

    request_id: str
    progress: float | None = Field(default=None, ge=0.0, le=1.0)
    data: Any = None
    canceled: bool = False
    error: str | None = None
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.progress is not None and self.progress >= 1.0


class ProgressPublisher:
    """Per-request event queues; events published before a subscriber
    attaches are buffered and replayed on subscribe.

    Buffers keep the most recent events only, so the terminal event of an
    unobserved request always survives.
    """

    _HISTORY_LIMIT = 200

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[ProgressEvent]]] = defaultdict(list)
        self._pending: dict[str, deque[ProgressEvent]] = defaultdict(
            lambda: deque(maxlen=self._HISTORY_LIMIT)
        )
        self._history: dict[str, deque[ProgressEvent]] = defaultdict(
            lambda: deque(maxlen=self._HISTORY_LIMIT)
        )
        self._lock = asyncio.Lock()

    def publish(
        self,
        request_id: str,
        progress: float | None = None,
        data: Any = None,
        *,
        canceled: bool = False,
        error: str | None = None,
    ) -> ProgressEvent:
        event = ProgressEvent(
            request_id=request_id,
            progress=progress,
            data=data,
            canceled=canceled,
            error=error,
        )
        self.publish_event(event)
        return event

    def publish_event(self, event: ProgressEvent) -> None:
        self._history[event.request_id].append(event)
        queues = list(self._subscribers.get(event.request_id, []))
        logger.debug(
            "pathway.progress.published",
            request_id=event.request_id,
            progress=event.progress,
            subscribers=len(queues),
        )
        if not queues:
            self._pending[event.request_id].append(event)
            return
        for queue in queues:
            queue.put_nowait(event)

    async def subscribe(self, request_id: str) -> AsyncIterator[ProgressEvent]:
        """Yield events for ``request_id`` until the terminal event."""
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        async with self._lock:
            self._subscribers[request_id].append(queue)
            pending = self._pending.pop(request_id, ())
        for event in pending:
            queue.put_nowait(event)

        try:
            while True:
                event = await queue.get()
                yield event
                if event.is_terminal:
                    return
        finally:
            async with self._lock:
                self._subscribers[request_id].remove(queue)
                if not self._subscribers[request_id]:
                    self._subscribers.pop(request_id, None)

    def history(self, request_id: str, *, since: datetime | None = None) -> list[ProgressEvent]:
        events = list(self._history.get(request_id, []))
        if since is not None:
            events = [event for event in events if event.emitted_at >= since]
        return sorted(events, key=lambda event: event.emitted_at)

    def discard(self, request_id: str) -> None:
        """Forget buffered events and history of a finished request."""
        self._pending.pop(request_id, None)
        self._history.pop(request_id, None)


__all__ = ["ProgressEvent", "ProgressPublisher"]
