"""Chat-completion transport with bounded retry/backoff.

One :meth:`CompletionClient.chat_completion` call performs up to
``MAX_ATTEMPTS`` HTTP attempts. HTTP 429 waits for ``Retry-After`` (or the
backoff when the header is absent); HTTP 5xx waits for the backoff, which
starts at 250 ms and doubles per attempt. The caller's timeout bounds the
whole attempt sequence, sleeps included.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable

import httpx
import openai
import tenacity

from tiny_agent.errors import (
    AgentTimeoutError,
    ApiError,
    RateLimitError,
    TransportError,
    UnknownError,
)
from tiny_agent.models.result import TokenUsage

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
INITIAL_BACKOFF = 0.25
CHAT_COMPLETIONS_PATH = "/chat/completions"
DEFAULT_HEADERS = {
    "HTTP-Referer": "https://pypi.org/project/tiny-agent/",
    "X-Title": "tiny-agent",
}


def build_chat_url(base_url: str) -> str:
    trimmed = base_url.rstrip("/")
    if trimmed.endswith(CHAT_COMPLETIONS_PATH):
        return trimmed
    return trimmed + CHAT_COMPLETIONS_PATH


def _sdk_base_url(base_url: str) -> str:
    # the SDK appends /chat/completions itself
    return build_chat_url(base_url)[: -len(CHAT_COMPLETIONS_PATH)]


@dataclass(frozen=True)
class ChatCompletionRequest:
    model: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] = field(default_factory=list)
    tool_choice: Any = None
    max_tokens: int | None = None
    response_format: dict[str, Any] | None = None

    def with_tools(self, tools: list[dict[str, Any]]) -> ChatCompletionRequest:
        return replace(self, tools=list(tools))

    def with_tool_choice(self, tool_choice: Any) -> ChatCompletionRequest:
        return replace(self, tool_choice=tool_choice)

    def with_max_tokens(self, max_tokens: int | None) -> ChatCompletionRequest:
        return replace(self, max_tokens=max_tokens)

    def with_response_format(self, response_format: dict[str, Any]) -> ChatCompletionRequest:
        return replace(self, response_format=response_format)

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"model": self.model, "messages": self.messages}
        if self.tools:
            body["tools"] = self.tools
            if self.tool_choice is not None:
                body["tool_choice"] = self.tool_choice
        if self.max_tokens is not None:
            body["max_tokens"] = self.max_tokens
        if self.response_format is not None:
            body["response_format"] = self.response_format
        return body


class _RetryableStatus(Exception):
    """A 429/5xx answer that may be retried; mapped to an AgentError when exhausted."""

    def __init__(self, status_code: int, message: str, retry_after: float | None = None) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.retry_after = retry_after


def _backoff(attempt_number: int) -> float:
    return INITIAL_BACKOFF * 2 ** (attempt_number - 1)


def _wait_for(exc: _RetryableStatus, attempt_number: int) -> float:
    if exc.status_code == 429 and exc.retry_after is not None:
        return exc.retry_after
    return _backoff(attempt_number)


def _wait(retry_state: tenacity.RetryCallState) -> float:
    exc = retry_state.outcome.exception()
    if not isinstance(exc, _RetryableStatus):
        return _backoff(retry_state.attempt_number)
    return _wait_for(exc, retry_state.attempt_number)


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _error_message(response: httpx.Response) -> str:
    text = response.text
    try:
        data = json.loads(text)
    except ValueError:
        return text
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return text


class CompletionClient:
    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 120.0,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self._sleep = sleep
        self._client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=_sdk_base_url(base_url),
            timeout=timeout,
            max_retries=0,
            default_headers=DEFAULT_HEADERS,
            http_client=http_client,
        )

    @property
    def chat_url(self) -> str:
        return build_chat_url(self.base_url)

    async def chat_completion(self, body: dict[str, Any], timeout: float | None = None) -> dict[str, Any]:
        """POST ``body`` and return the decoded JSON response.

        Raises:
            AgentTimeoutError: the attempt sequence exceeded ``timeout``.
            RateLimitError: still rate limited after the last attempt.
            ApiError: non-2xx answer, or a 2xx body carrying an ``error``.
            TransportError: connection failure or a body that is not JSON.
        """
        limit = timeout if timeout is not None else self.timeout
        try:
            return await asyncio.wait_for(self._with_retries(body), timeout=limit)
        except asyncio.TimeoutError:
            raise AgentTimeoutError(f"chat completion did not finish within {limit:g}s") from None

    async def _with_retries(self, body: dict[str, Any]) -> dict[str, Any]:
        retryer = tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception_type(_RetryableStatus),
            wait=_wait,
            stop=tenacity.stop_after_attempt(MAX_ATTEMPTS),
            sleep=self._sleep,
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retryer:
                with attempt:
                    return await self._attempt(body)
        except _RetryableStatus as exc:
            if exc.status_code == 429:
                last_wait = _wait_for(exc, MAX_ATTEMPTS)
                raise RateLimitError(max(1, math.ceil(last_wait))) from exc
            raise ApiError(
                f"HTTP {exc.status_code} error: {exc.message}", status_code=exc.status_code
            ) from exc
        raise UnknownError("retry loop ended without a result")

    async def _attempt(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            raw = await self._client.chat.completions.with_raw_response.create(**body)
        except openai.APITimeoutError as exc:
            raise AgentTimeoutError(f"HTTP request timed out: {exc}") from exc
        except openai.APIConnectionError as exc:
            raise TransportError(f"HTTP request failed: {exc}") from exc
        except openai.APIStatusError as exc:
            status = exc.status_code
            message = _error_message(exc.response)
            if status == 429:
                retry_after = _parse_retry_after(exc.response.headers.get("retry-after"))
                raise _RetryableStatus(status, message, retry_after) from exc
            if status >= 500:
                raise _RetryableStatus(status, message) from exc
            raise ApiError(f"HTTP {status} error: {message}", status_code=status) from exc

        response = raw.http_response
        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError(f"Failed to parse JSON: {exc}") from exc

        if isinstance(data, dict) and data.get("error") is not None:
            error = data["error"]
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                message = error["message"]
            else:
                message = json.dumps(error, ensure_ascii=False)
            raise ApiError(message, status_code=response.status_code)
        if not isinstance(data, dict):
            raise UnknownError("Completion response is not a JSON object")
        return data


def first_message(response: dict[str, Any]) -> dict[str, Any]:
    """Return the assistant message of the first choice."""
    choices = response.get("choices")
    if not isinstance(choices, list):
        raise UnknownError("Missing 'choices' array in completion response")
    if not choices:
        raise UnknownError("Completion response contained no choices")
    choice = choices[0]
    message = choice.get("message") if isinstance(choice, dict) else None
    if not isinstance(message, dict):
        raise UnknownError("Completion response missing assistant message")
    return message


def extract_usage(response: dict[str, Any]) -> TokenUsage | None:
    usage = response.get("usage")
    if not isinstance(usage, dict):
        return None
    try:
        return TokenUsage(
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            completion_tokens=int(usage.get("completion_tokens") or 0),
            total_tokens=int(usage.get("total_tokens") or 0),
        )
    except (TypeError, ValueError):
        logger.debug("Ignoring malformed usage block: %r", usage)
        return None
