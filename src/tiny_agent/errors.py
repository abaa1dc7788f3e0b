"""Error taxonomy shared by the agent loop, the completion client and tools."""

from __future__ import annotations

import json
from typing import Any


class AgentError(Exception):
    """Base class for every error the agent surfaces.

    Each subclass carries a stable ``code`` and a ``retryable`` flag so that
    failures can be fed back to the model (or a caller) as a structured
    ``{"error": {code, message, retryable}}`` payload.
    """

    code = "AGENT_ERROR"
    retryable = False
    prefix = "Agent error"

    def __init__(self, message: str = "") -> None:
        self.detail = message
        super().__init__(f"{self.prefix}: {message}" if message else self.prefix)

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": str(self),
                "retryable": self.retryable,
            }
        }

    def to_payload_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False)


class ConfigError(AgentError):
    code = "CONFIG_ERROR"
    prefix = "Configuration error"


class TransportError(AgentError):
    """HTTP or parse failure talking to the completion endpoint."""

    code = "TRANSPORT_ERROR"
    prefix = "Transport error"


class ApiError(TransportError):
    """The upstream API answered with an error (non-2xx or embedded ``error``)."""

    code = "API_ERROR"
    retryable = True
    prefix = "API error"

    def __init__(self, message: str = "", status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ValidationError(AgentError):
    code = "VALIDATION_ERROR"
    retryable = True
    prefix = "Validation error"


class ToolExecutionError(AgentError):
    code = "TOOL_EXECUTION_ERROR"
    prefix = "Tool execution error"


class ToolNotFoundError(AgentError):
    code = "TOOL_NOT_FOUND"
    prefix = "Tool not found"


class InvalidFunctionCallError(AgentError):
    code = "INVALID_FUNCTION_CALL"
    prefix = "Invalid function call"


class AgentTimeoutError(AgentError):
    code = "TIMEOUT_ERROR"
    retryable = True
    prefix = "Timeout error"


class MaxIterationsExceeded(AgentError):
    code = "MAX_ITERATIONS_EXCEEDED"
    prefix = "Maximum iterations exceeded"

    def __init__(self, max_iterations: int) -> None:
        self.max_iterations = max_iterations
        super().__init__(str(max_iterations))


class RateLimitError(AgentError):
    code = "RATE_LIMIT_ERROR"
    retryable = True
    prefix = "Rate limit exceeded"

    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__(f"retry after {retry_after}s")


class UnknownError(AgentError):
    """Catch-all for response shapes the loop does not understand."""

    code = "UNKNOWN_ERROR"
    prefix = "Unknown error"
