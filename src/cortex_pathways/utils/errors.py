"""Problem detail helpers and the error taxonomy for pathway execution.

Key Responsibilities:
    - Provide RFC 7807 style problem detail containers used when errors are
      surfaced to API callers
    - Define the exception hierarchy raised by the orchestrator: configuration
      failures, cancellations, backend failures and malformed stream lines

Collaborators:
    - Upstream: ``PathwayResolver``, ``HttpModelExecutor`` and the stream
      decoder raise these errors
    - Downstream: API layers serialise :class:`ProblemDetail` instances into
      responses

Side Effects:
    - None; helpers are pure data containers

Thread Safety:
    - Thread-safe; instances are not mutated after construction
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Mapping

# ==============================================================================
# PROBLEM DETAILS
# ==============================================================================


@dataclass(slots=True)
class ProblemDetail:
    """Lightweight problem details object compliant with RFC 7807."""

    title: str
    status: int
    detail: str | None = None
    type: str = "about:blank"
    instance: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def model_dump(self) -> dict[str, Any]:
        """Return a dictionary representation with optional fields dropped."""
        payload = {key: value for key, value in asdict(self).items() if value is not None}
        if not payload.get("extra"):
            payload.pop("extra", None)
        return payload


# ==============================================================================
# EXCEPTIONS
# ==============================================================================


class PathwayError(RuntimeError):
    """Base exception that carries a :class:`ProblemDetail` instance."""

    status: int = 500
    problem_type: str = "about:blank"

    def __init__(
        self,
        message: str,
        *,
        detail: str | None = None,
        instance: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        """Initialise the exception with structured problem detail attributes.

        Args:
            message: Human readable error summary.
            detail: Optional detailed description of the failure.
            instance: Optional reference identifying the failing request.
            extra: Additional attributes included in the serialized payload.
        """
        super().__init__(message)
        self.problem = ProblemDetail(
            title=message,
            status=self.status,
            detail=detail,
            type=self.problem_type,
            instance=instance,
            extra=dict(extra or {}),
        )


class ConfigurationError(PathwayError):
    """Raised when a pathway or model configuration cannot be used."""

    problem_type = "https://cortex.local/problems/configuration"


class RequestCanceledError(PathwayError):
    """Raised when a request was canceled before processing began."""

    status = 409
    problem_type = "https://cortex.local/problems/canceled"

    def __init__(self, request_id: str) -> None:
        super().__init__("Request canceled", instance=request_id)
        self.request_id = request_id


class RequestNotFoundError(PathwayError):
    """Raised when a deferred request id is unknown to the registry."""

    status = 404
    problem_type = "https://cortex.local/problems/request-not-found"

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Request {request_id} not found", instance=request_id)
        self.request_id = request_id


class BackendError(PathwayError):
    """Raised when a model endpoint reports an error payload."""

    status = 502
    problem_type = "https://cortex.local/problems/backend"

    def __init__(self, message: str, *, model: str | None = None, payload: Any = None) -> None:
        super().__init__(message, extra={"model": model} if model else None)
        self.model = model
        self.payload = payload


class MalformedStreamLineError(PathwayError):
    """Raised by the strict stream decoder when a line cannot be decoded."""

    status = 422
    problem_type = "https://cortex.local/problems/malformed-stream-line"

    def __init__(self, line: str, *, reason: str | None = None) -> None:
        super().__init__("Could not decode stream message", detail=reason)
        self.line = line


__all__ = [
    "BackendError",
    "ConfigurationError",
    "MalformedStreamLineError",
    "PathwayError",
    "ProblemDetail",
    "RequestCanceledError",
    "RequestNotFoundError",
]
