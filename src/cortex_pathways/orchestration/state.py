"""Request state registry tracking per-request progress and cancellation.

Key Responsibilities:
    - Hold one :class:`RequestState` record per request id, created lazily on
      first write
    - Count completed units with an atomic increment so concurrently running
      units never lose updates
    - Merge cancellation into existing records and evict finished records after
      a grace period

Collaborators:
    - Upstream: ``PathwayResolver`` writes progress, ``PathwayService`` creates,
      cancels and evicts records
    - Downstream: Prometheus gauge for the number of held records

Side Effects:
    - Updates the ``cortex_active_requests`` gauge

Thread Safety:
    - Thread-safe: every mutation happens under a single lock

Example:
    >>> registry = RequestStateRegistry()
    >>> _ = registry.begin("req-1", total_count=2)
    >>> registry.increment_completed("req-1")
    (1, 2)
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================
import threading
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from cortex_pathways.observability.metrics import record_cancellation, set_active_requests

logger = structlog.get_logger(__name__)

DeferredResolver = Callable[[dict[str, Any]], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ==============================================================================
# DATA MODELS
# ==============================================================================


@dataclass
class RequestState:
    """Lifecycle record of one request.

    Attributes:
        request_id: Identifier shared with progress subscribers.
        total_count: Chunk count times prompt count, fixed once processing begins.
        completed_count: Model executor units finished so far.
        canceled: Set externally; checked cooperatively before each unit.
        data: Final result of a deferred request.
        error: Failure message of a deferred request.
        args: Arguments captured for deferred execution.
        resolver: Deferred entry point registered by ``resolve``.
    """

    request_id: str
    total_count: int = 0
    completed_count: int = 0
    canceled: bool = False
    data: Any = None
    error: str | None = None
    args: dict[str, Any] | None = None
    resolver: DeferredResolver | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def progress(self) -> float:
        if self.total_count <= 0:
            return 0.0
        return self.completed_count / self.total_count

    def is_finished(self) -> bool:
        return self.completed_at is not None

    def snapshot(self) -> RequestState:
        """Return a copy suitable for external consumption."""
        return replace(self, args=dict(self.args) if self.args is not None else None)


# ==============================================================================
# REGISTRY
# ==============================================================================


class RequestStateRegistry:
    """Registry of request records with caller-controlled lifetime."""

    def __init__(self, *, grace_seconds: float = 300.0) -> None:
        self._entries: dict[str, RequestState] = {}
        self._lock = threading.Lock()
        self._grace = timedelta(seconds=grace_seconds)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def get(self, request_id: str) -> RequestState | None:
        with self._lock:
            entry = self._entries.get(request_id)
            return entry.snapshot() if entry else None

    def is_canceled(self, request_id: str) -> bool:
        entry = self._entries.get(request_id)
        return bool(entry and entry.canceled)

    def _ensure(self, request_id: str) -> RequestState:
        entry = self._entries.get(request_id)
        if entry is None:
            entry = RequestState(request_id=request_id)
            self._entries[request_id] = entry
            set_active_requests(len(self._entries))
        return entry

    def _update(self, request_id: str, **changes: Any) -> RequestState:
        with self._lock:
            entry = self._ensure(request_id)
            for key, value in changes.items():
                setattr(entry, key, value)
            entry.updated_at = _utcnow()
            return entry.snapshot()

    def register_deferred(
        self,
        request_id: str,
        *,
        args: dict[str, Any],
        resolver: DeferredResolver,
    ) -> RequestState:
        """Remember the deferred entry point of an async or stream request."""
        return self._update(request_id, args=dict(args), resolver=resolver)

    def claim_deferred(self, request_id: str) -> tuple[dict[str, Any], DeferredResolver] | None:
        """Take the deferred entry point so it runs at most once."""
        with self._lock:
            entry = self._entries.get(request_id)
            if entry is None or entry.resolver is None:
                return None
            resolver, entry.resolver = entry.resolver, None
            entry.updated_at = _utcnow()
            return dict(entry.args or {}), resolver

    def begin(self, request_id: str, *, total_count: int) -> RequestState:
        """Fix the unit count of a request and reset its completed count."""
        return self._update(request_id, total_count=total_count, completed_count=0)

    def increment_completed(self, request_id: str) -> tuple[int, int]:
        """Atomically count one finished unit; returns ``(completed, total)``."""
        with self._lock:
            entry = self._ensure(request_id)
            if entry.total_count <= 0 or entry.completed_count < entry.total_count:
                entry.completed_count += 1
            entry.updated_at = _utcnow()
            return entry.completed_count, entry.total_count

    def complete(self, request_id: str, *, data: Any = None, error: str | None = None) -> RequestState:
        return self._update(request_id, data=data, error=error, completed_at=_utcnow())

    def cancel(self, request_id: str) -> RequestState:
        """Mark ``request_id`` canceled, keeping its progress and data.

        Canceling an unknown id creates the record so a request resolved later
        under that id is refused before any work starts.
        """
        with self._lock:
            known = request_id in self._entries
            entry = self._ensure(request_id)
            already = entry.canceled
            entry.canceled = True
            entry.updated_at = _utcnow()
            snapshot = entry.snapshot()
        if not already:
            record_cancellation()
        logger.info(
            "pathway.request.canceled",
            request_id=request_id,
            known=known,
            completed=snapshot.completed_count,
            total=snapshot.total_count,
        )
        return snapshot

    def evict_expired(self, *, now: datetime | None = None) -> list[str]:
        """Drop records older than the grace period.

        Finished, canceled and never started deferred requests qualify;
        running requests are kept.
        """
        current = now or _utcnow()
        with self._lock:
            expired = [
                request_id
                for request_id, entry in self._entries.items()
                if (entry.is_finished() or entry.canceled or entry.resolver is not None)
                and (entry.completed_at or entry.updated_at) + self._grace <= current
            ]
            for request_id in expired:
                del self._entries[request_id]
            set_active_requests(len(self._entries))
        if expired:
            logger.debug("pathway.request.evicted", count=len(expired))
        return expired


__all__ = ["DeferredResolver", "RequestState", "RequestStateRegistry"]
