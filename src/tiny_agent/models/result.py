"""Immutable record of a finished agent run."""

from __future__ import annotations

import json
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, InstanceOf

from tiny_agent.errors import ValidationError
from tiny_agent.models.steps import (
    ActionStep,
    FinalAnswerStep,
    ObservationStep,
    PlanningStep,
    Step,
    TaskStep,
)
from tiny_agent.schemas.schema import SchemaHandle
from tiny_agent.schemas.validation import deserialize_structured

M = TypeVar("M", bound=BaseModel)


class TokenUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class RunResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    output: str
    structured: dict[str, Any] | None = None
    schema_handle: InstanceOf[SchemaHandle] | None = None
    steps: tuple[Step, ...] = ()
    tokens: TokenUsage | None = None
    duration: float = 0.0
    iterations: int = 0

    @property
    def has_structured(self) -> bool:
        return self.structured is not None

    def action_count(self) -> int:
        return sum(1 for s in self.steps if isinstance(s, ActionStep))

    def observation_count(self) -> int:
        return sum(1 for s in self.steps if isinstance(s, ObservationStep))

    def is_success(self) -> bool:
        return any(isinstance(s, FinalAnswerStep) for s in self.steps)

    def errors(self) -> list[str]:
        return [s.result for s in self.steps if isinstance(s, ObservationStep) and s.is_error]

    def deserialize_structured(self, model_cls: type[M]) -> M:
        if self.structured is None:
            raise ValidationError("No structured response available on this run")
        if self.schema_handle is None:
            raise ValidationError("Missing completion schema metadata for structured response")
        return deserialize_structured(self.structured, self.schema_handle, model_cls)

    def _header(self, title: str) -> list[str]:
        lines = [
            f"=== {title} ===",
            f"Duration: {self.duration:.2f}s",
            f"Iterations: {self.iterations}",
        ]
        if self.tokens is not None:
            lines.append(
                f"Tokens: {self.tokens.prompt_tokens} prompt + "
                f"{self.tokens.completion_tokens} completion = {self.tokens.total_tokens} total"
            )
        return lines

    def _footer(self) -> list[str]:
        lines = ["", "--- Final Output ---", self.output]
        if self.structured is not None:
            lines += ["", "--- Structured Output ---", json.dumps(self.structured, ensure_ascii=False)]
        return lines

    def replay(self) -> str:
        """Human-readable trace: one line per step."""
        lines = self._header("Agent Execution Trace")
        lines += ["", "--- Steps ---"]
        lines += [f"{idx}. {step.describe()}" for idx, step in enumerate(self.steps, 1)]
        return "\n".join(lines + self._footer())

    def explain(self) -> str:
        """Detailed trace including every field of every step."""
        lines = self._header("Agent Execution Explanation")
        lines += ["", "--- Detailed Steps ---"]
        for idx, step in enumerate(self.steps, 1):
            lines.append(f"\n{idx}. {step.describe()}")
            if isinstance(step, TaskStep):
                lines.append(f"   Content: {step.content}")
            elif isinstance(step, PlanningStep):
                lines.append(f"   Plan: {step.plan}")
            elif isinstance(step, ActionStep):
                lines.append(f"   Tool: {step.tool_name}")
                lines.append(f"   Call ID: {step.tool_call_id}")
                lines.append(f"   Arguments: {step.arguments_json()}")
            elif isinstance(step, ObservationStep):
                lines.append(f"   Call ID: {step.tool_call_id}")
                lines.append(f"   Error: {str(step.is_error).lower()}")
                lines.append(f"   Result: {step.result}")
            elif isinstance(step, FinalAnswerStep):
                lines.append(f"   Answer: {step.answer}")
        return "\n".join(lines + self._footer())
