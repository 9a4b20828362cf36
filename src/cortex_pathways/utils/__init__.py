"""Shared utilities: errors, logging and HTTP helpers."""

from .errors import (
    BackendError,
    ConfigurationError,
    MalformedStreamLineError,
    PathwayError,
    ProblemDetail,
    RequestCanceledError,
    RequestNotFoundError,
)

__all__ = [
    "BackendError",
    "ConfigurationError",
    "MalformedStreamLineError",
    "PathwayError",
    "ProblemDetail",
    "RequestCanceledError",
    "RequestNotFoundError",
]
