"""The step vocabulary recorded by the agent loop.

Steps form a closed, tagged union discriminated by ``type``. Each variant
knows how to project itself onto an OpenAI-style chat message and how to
describe itself in one line for logs and traces.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class _Step(BaseModel):
    model_config = ConfigDict(frozen=True)


class TaskStep(_Step):
    type: Literal["task"] = "task"
    content: str

    def to_message(self) -> dict[str, Any]:
        return {"role": "user", "content": self.content}

    def describe(self) -> str:
        return f"🧭 Task: {self.content}"


class PlanningStep(_Step):
    type: Literal["planning"] = "planning"
    plan: str

    def to_message(self) -> dict[str, Any]:
        return {"role": "assistant", "content": self.plan}

    def describe(self) -> str:
        return f"🧩 Plan: {self.plan}"


class ActionStep(_Step):
    """A dispatched tool invocation.

    ``arguments`` holds the parsed JSON arguments. When the endpoint sent
    text that does not parse, ``arguments`` is ``None`` and the text is kept
    verbatim in ``raw_arguments``.
    """

    type: Literal["action"] = "action"
    tool_name: str
    tool_call_id: str
    arguments: Any = None
    raw_arguments: str | None = None

    def arguments_json(self) -> str:
        if self.raw_arguments is not None:
            return self.raw_arguments
        return json.dumps(self.arguments, ensure_ascii=False)

    def to_message(self) -> dict[str, Any]:
        return {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {
                    "id": self.tool_call_id,
                    "type": "function",
                    "function": {"name": self.tool_name, "arguments": self.arguments_json()},
                }
            ],
        }

    def describe(self) -> str:
        return f"🔧 Action: {self.tool_name}({self.arguments_json()})"


class ObservationStep(_Step):
    type: Literal["observation"] = "observation"
    tool_call_id: str
    result: str
    is_error: bool = False

    def to_message(self) -> dict[str, Any]:
        return {"role": "tool", "tool_call_id": self.tool_call_id, "content": self.result}

    def describe(self) -> str:
        if self.is_error:
            return f"❌ Error: {self.result}"
        return f"👁 Observation: {self.result}"


class FinalAnswerStep(_Step):
    type: Literal["final_answer"] = "final_answer"
    answer: str
    structured: dict[str, Any] | None = None

    def to_message(self) -> dict[str, Any]:
        return {"role": "assistant", "content": self.answer}

    def describe(self) -> str:
        return f"✅ Final Answer: {self.answer}"


Step = Annotated[
    Union[TaskStep, PlanningStep, ActionStep, ObservationStep, FinalAnswerStep],
    Field(discriminator="type"),
]
