"""Async HTTP client with retry, rate limit and circuit breaker helpers.

Key Responsibilities:
    - Construct asynchronous HTTP clients with retry, timeout, backoff, rate
      limit, and circuit breaker behaviour for calls to model endpoints
    - Provide the configuration dataclasses shared by executors
    - Emit OpenTelemetry spans so downstream calls remain observable

Collaborators:
    - Upstream: ``HttpModelExecutor`` issues completion requests through it
    - Downstream: Wraps `httpx` clients, `tenacity` retry primitives,
      `pybreaker` circuit breakers, and `aiolimiter` rate limiters

Side Effects:
    - Opens network connections via `httpx`
    - Emits OpenTelemetry spans

Performance Characteristics:
    - Connection pooling is delegated to `httpx`
    - Circuit breaker short-circuits repeated downstream failures
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any

import httpx
from aiolimiter import AsyncLimiter
from opentelemetry import trace
from pybreaker import CircuitBreaker, CircuitBreakerError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_incrementing,
    wait_none,
)
from tenacity.wait import wait_base

from cortex_pathways.config.settings import HttpSettings

# ==============================================================================
# TYPE DEFINITIONS
# ==============================================================================


class BackoffStrategy(str, Enum):
    """Supported retry backoff strategies for HTTP clients."""

    NONE = "none"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


@dataclass(frozen=True)
class RetryConfig:
    """Retry configuration for the async client."""

    attempts: int = 3
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    backoff_initial: float = 0.5
    backoff_max: float = 10.0
    status_forcelist: Iterable[int] = (429, 500, 502, 503, 504)
    timeout: float = 60.0


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for the HTTP circuit breaker."""

    failure_threshold: int = 5
    recovery_timeout: float = 60.0


@dataclass(frozen=True)
class RateLimitConfig:
    """Configuration for rate limiting HTTP calls."""

    rate_per_second: float = 5.0
    burst: int | None = None


class RetryableHTTPStatus(httpx.HTTPStatusError):
    """HTTP status error annotated with Retry-After delays."""

    def __init__(
        self,
        message: str,
        *,
        request: httpx.Request,
        response: httpx.Response,
        retry_after: float = 0.0,
    ) -> None:
        super().__init__(message, request=request, response=response)
        self.retry_after = max(retry_after, 0.0)


class _RetryAfterWait(wait_base):
    """Tenacity wait strategy that honours Retry-After headers."""

    def __init__(self, fallback: wait_base) -> None:
        self._fallback = fallback

    def __call__(self, retry_state: RetryCallState) -> float:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exception, RetryableHTTPStatus) and exception.retry_after > 0:
            return exception.retry_after
        return self._fallback(retry_state)


# ==============================================================================
# HELPER FUNCTIONS
# ==============================================================================


def _build_wait(config: RetryConfig) -> wait_base:
    """Construct a Tenacity wait strategy from retry configuration."""
    if config.backoff_strategy is BackoffStrategy.NONE:
        base = wait_none()
    elif config.backoff_strategy is BackoffStrategy.LINEAR:
        base = wait_incrementing(
            start=max(config.backoff_initial, 0.0),
            increment=max(config.backoff_initial, 0.0),
            max=max(config.backoff_max, config.backoff_initial),
        )
    else:
        base = wait_exponential(
            multiplier=max(config.backoff_initial, 0.0) or 0.1,
            max=max(config.backoff_max, config.backoff_initial),
        )
    return base


def _create_async_limiter(config: RateLimitConfig | None) -> AsyncLimiter | None:
    """Create an :class:`AsyncLimiter` when rate limiting is enabled."""
    if config is None:
        return None
    rate = max(config.rate_per_second, 1e-6)
    burst = config.burst or max(1, int(rate))
    return AsyncLimiter(burst, time_period=max(burst / rate, 1e-3))


def _compute_retry_after(response: httpx.Response) -> float:
    """Parse a Retry-After header and return the wait duration in seconds."""
    header = response.headers.get("Retry-After")
    if not header:
        return 0.0
    try:
        return float(header)
    except ValueError:
        try:
            retry_at = parsedate_to_datetime(header)
        except (TypeError, ValueError):
            return 0.0
        if retry_at.tzinfo is None:
            retry_at = retry_at.replace(tzinfo=UTC)
        delta = (retry_at - datetime.now(UTC)).total_seconds()
        return max(delta, 0.0)


async def _async_breaker_call(
    breaker: CircuitBreaker,
    func: Callable[[], Awaitable[httpx.Response]],
) -> httpx.Response:
    """Invoke ``func`` under a circuit breaker within async code paths."""
    with breaker._lock:  # type: ignore[attr-defined]
        state = breaker.state
        state.before_call(func)
        for listener in breaker.listeners:
            listener.before_call(breaker, func)
    try:
        result = await func()
    except Exception as exc:
        with breaker._lock:  # type: ignore[attr-defined]
            breaker.state._handle_error(exc)
        raise
    else:
        with breaker._lock:  # type: ignore[attr-defined]
            breaker.state._handle_success()
        return result


# ==============================================================================
# CLIENT
# ==============================================================================


class AsyncHttpClient:
    """Async HTTP client composed from tenacity, pybreaker and aiolimiter."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        retry: RetryConfig | None = None,
        rate_limit: RateLimitConfig | None = None,
        circuit_breaker: CircuitBreakerConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._retry_config = retry or RetryConfig()
        client_kwargs: dict[str, object] = {
            "timeout": self._retry_config.timeout,
            "transport": transport,
        }
        if base_url:
            client_kwargs["base_url"] = base_url
        self._client = httpx.AsyncClient(**client_kwargs)
        self._limiter = _create_async_limiter(rate_limit)
        self._breaker = (
            CircuitBreaker(
                fail_max=circuit_breaker.failure_threshold,
                reset_timeout=circuit_breaker.recovery_timeout,
            )
            if circuit_breaker
            else None
        )
        self._wait = _RetryAfterWait(_build_wait(self._retry_config))
        self._tracer = trace.get_tracer(__name__)

    @classmethod
    def from_settings(cls, settings: HttpSettings, **kwargs: Any) -> AsyncHttpClient:
        """Build a client from the ``http`` settings block."""
        rate_limit = (
            RateLimitConfig(rate_per_second=settings.requests_per_second, burst=settings.burst)
            if settings.requests_per_second
            else None
        )
        return cls(
            retry=RetryConfig(
                attempts=settings.retry_attempts,
                backoff_initial=settings.backoff_initial,
                backoff_max=settings.backoff_max,
                timeout=settings.timeout_seconds,
            ),
            rate_limit=rate_limit,
            circuit_breaker=CircuitBreakerConfig(
                failure_threshold=settings.breaker_failure_threshold,
                recovery_timeout=settings.breaker_recovery_seconds,
            ),
            **kwargs,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._retry_config.attempts),
            wait=self._wait,
            retry=retry_if_exception_type(
                (httpx.TransportError, RetryableHTTPStatus, CircuitBreakerError)
            ),
            reraise=True,
        )

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue an asynchronous HTTP request with resilience safeguards.

        Raises:
            httpx.HTTPError: When ``httpx`` raises a non-retryable error.
            RetryableHTTPStatus: When retryable status codes persist until the
                retry budget is exhausted.
            CircuitBreakerError: When the circuit breaker rejects the call.
        """

        async def _perform() -> httpx.Response:
            with self._tracer.start_as_current_span("http.request") as span:
                span.set_attribute("http.method", method)
                span.set_attribute("http.url", url)
                response = await self._client.request(method, url, **kwargs)
            if response.status_code in self._retry_config.status_forcelist:
                raise RetryableHTTPStatus(
                    f"Retryable status {response.status_code}",
                    request=response.request,
                    response=response,
                    retry_after=_compute_retry_after(response),
                )
            return response

        async def _invoke() -> httpx.Response:
            if self._limiter is None:
                return await _perform()
            async with self._limiter:
                return await _perform()

        async def _attempt() -> httpx.Response:
            if self._breaker is not None:
                return await _async_breaker_call(self._breaker, _invoke)
            return await _invoke()

        async for attempt in self._retrying():
            with attempt:
                return await _attempt()
        raise RuntimeError("unreachable")  # pragma: no cover - tenacity exhausts attempts

    async def stream(self, method: str, url: str, **kwargs: Any) -> AsyncIterator[bytes]:
        """Yield the raw response body of a streaming request chunk by chunk.

        Streaming bodies are not retried: once bytes were handed to the caller
        a replay would duplicate output.
        """
        if self._limiter is not None:
            await self._limiter.acquire()
        with self._tracer.start_as_current_span("http.stream") as span:
            span.set_attribute("http.method", method)
            span.set_attribute("http.url", url)
            async with self._client.stream(method, url, **kwargs) as response:
                if response.status_code >= 400:
                    await response.aread()
                    response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    yield chunk

    async def aclose(self) -> None:
        """Close the underlying ``httpx.AsyncClient``."""
        await self._client.aclose()


__all__ = [
    "AsyncHttpClient",
    "BackoffStrategy",
    "CircuitBreakerConfig",
    "RateLimitConfig",
    "RetryConfig",
    "RetryableHTTPStatus",
]
