"""Model executors turning a prompt and parameters into model output.

Key Responsibilities:
    - Define the :class:`ModelExecutor` protocol consumed by the resolver
    - Render prompts into OpenAI chat or completion request bodies
    - Call model endpoints through :class:`AsyncHttpClient` and parse the
      returned choices, or hand back the raw byte stream for streaming calls

Collaborators:
    - Upstream: ``PathwayResolver.apply_prompt``
    - Downstream: ``AsyncHttpClient`` (httpx, tenacity, pybreaker, aiolimiter)

Side Effects:
    - Network calls to model endpoints
    - Prometheus model-call metrics and structured logs per call
"""

from __future__ import annotations

import os
import time
from collections.abc import AsyncIterator, Mapping
from typing import Any, Protocol

import httpx
import structlog
from pybreaker import CircuitBreakerError

from cortex_pathways.chunking.tokenization import Tokenizer
from cortex_pathways.config.settings import DEFAULT_MAX_TOKENS, ModelDefinition
from cortex_pathways.observability.metrics import record_model_call
from cortex_pathways.pathways.models import PathwayDefinition
from cortex_pathways.pathways.prompt import MessageTemplate, Prompt
from cortex_pathways.utils.errors import BackendError
from cortex_pathways.utils.http_client import AsyncHttpClient

from .rendering import TEXT_PLACEHOLDER, expand_messages, render

logger = structlog.get_logger(__name__)

DEFAULT_TEMPERATURE = 0.7

StreamHandle = AsyncIterator[bytes]


class ModelExecutor(Protocol):
    """Executes one rendered prompt against a model."""

    def request_parameters(
        self, text: str | None, parameters: Mapping[str, Any], prompt: Prompt
    ) -> dict[str, Any]: ...

    async def execute(
        self, text: str | None, parameters: Mapping[str, Any], prompt: Prompt
    ) -> Any: ...


def parse_response(data: Any) -> Any:
    """Reduce a completion payload to its result.

    More than one choice returns the choice list; otherwise the first
    choice's message content or text, stripped.
    """
    if not isinstance(data, Mapping):
        return data
    choices = data.get("choices") or []
    if len(choices) > 1:
        return choices
    if not choices:
        return None
    choice = choices[0]
    message = choice.get("message") or {}
    content = message.get("content") if isinstance(message, Mapping) else None
    if isinstance(content, str) and content.strip():
        return content.strip()
    text = choice.get("text")
    if isinstance(text, str) and text.strip():
        return text.strip()
    return None


class HttpModelExecutor:
    """OpenAI compatible chat and completion executor for one pathway."""

    def __init__(
        self,
        pathway: PathwayDefinition,
        model_name: str,
        model: ModelDefinition,
        *,
        tokenizer: Tokenizer,
        client: AsyncHttpClient,
        environment: Mapping[str, str] | None = None,
        default_max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self.pathway = pathway
        self.model_name = model_name
        self.model = model
        self._tokenizer = tokenizer
        self._client = client
        self._environment = dict(os.environ if environment is None else environment)
        self._prompt_parameters = pathway.prompt_parameters()
        self._max_tokens = pathway.max_token_length or model.max_token_length or default_max_tokens
        self._request_count = 0

    @property
    def temperature(self) -> float:
        if self.pathway.temperature is None:
            return DEFAULT_TEMPERATURE
        return self.pathway.temperature

    def request_url(self) -> str:
        context = {**self._environment, **self.model.model_dump(exclude={"params", "headers"})}
        return render(self.model.url, context)

    def request_parameters(
        self, text: str | None, parameters: Mapping[str, Any], prompt: Prompt
    ) -> dict[str, Any]:
        """Request body for ``prompt`` rendered with ``text`` and ``parameters``."""
        combined = {**self._prompt_parameters, **parameters, TEXT_PLACEHOLDER: text or ""}
        template = prompt.resolve(combined)
        is_chat = self.model.type == "OPENAI-CHAT"

        if isinstance(template, MessageTemplate):
            messages = expand_messages(template.messages, combined)
            rendered = "\n".join(str(message.get("content", "")) for message in messages)
        else:
            rendered = render(template.text, combined)
            messages = [{"role": "user", "content": rendered}]

        body: dict[str, Any]
        if is_chat:
            body = {"messages": messages, "temperature": self.temperature}
        else:
            body = {
                "prompt": rendered,
                "max_tokens": self._max_tokens - self._tokenizer.count(rendered) - 1,
                "temperature": self.temperature,
            }
        if parameters.get("stream"):
            body["stream"] = True
        return {**self.model.params, **body}

    def _request_options(self, body: Mapping[str, Any]) -> dict[str, Any]:
        options: dict[str, Any] = {"json": dict(body), "headers": dict(self.model.headers)}
        if self.pathway.timeout is not None:
            options["timeout"] = self.pathway.timeout
        return options

    async def execute(
        self, text: str | None, parameters: Mapping[str, Any], prompt: Prompt
    ) -> Any:
        body = self.request_parameters(text, parameters, prompt)
        url = self.request_url()
        self._request_count += 1
        if body.get("stream"):
            logger.info(
                "pathway.executor.stream",
                pathway=self.pathway.name,
                model=self.model_name,
                call=self._request_count,
            )
            return self._stream(url, body)

        started = time.perf_counter()
        try:
            response = await self._client.request("POST", url, **self._request_options(body))
        except (httpx.HTTPError, CircuitBreakerError) as exc:
            record_model_call(self.model_name, "error", time.perf_counter() - started)
            raise BackendError(
                f"Request to model {self.model_name} failed: {exc}", model=self.model_name
            ) from exc
        duration = time.perf_counter() - started

        try:
            data = response.json()
        except ValueError:
            data = None
        if response.status_code >= 400 or (isinstance(data, Mapping) and data.get("error")):
            record_model_call(self.model_name, "error", duration)
            detail = data.get("error") if isinstance(data, Mapping) else response.text
            raise BackendError(
                f"An error was returned from the server: {detail}",
                model=self.model_name,
                payload=data,
            )

        result = parse_response(data)
        record_model_call(self.model_name, "success", duration)
        model_input = body.get("prompt") or next(
            (message.get("content", "") for message in body.get("messages", [])), ""
        )
        logger.info(
            "pathway.executor.request",
            pathway=self.pathway.name,
            model=self.model_name,
            call=self._request_count,
            prompt_tokens=self._tokenizer.count(str(model_input)),
            response_tokens=self._tokenizer.count(result) if isinstance(result, str) else None,
            duration_seconds=round(duration, 4),
        )
        return result

    async def _stream(self, url: str, body: Mapping[str, Any]) -> StreamHandle:
        started = time.perf_counter()
        try:
            async for chunk in self._client.stream("POST", url, **self._request_options(body)):
                yield chunk
        except httpx.HTTPError as exc:
            record_model_call(self.model_name, "error", time.perf_counter() - started)
            raise BackendError(
                f"Streaming request to model {self.model_name} failed: {exc}",
                model=self.model_name,
            ) from exc
        record_model_call(self.model_name, "stream", time.perf_counter() - started)


__all__ = [
    "DEFAULT_TEMPERATURE",
    "HttpModelExecutor",
    "ModelExecutor",
    "StreamHandle",
    "parse_response",
]
