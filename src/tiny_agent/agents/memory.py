"""Conversation memory: an append-only log of typed steps.

The wire message list sent to the completion endpoint is always a pure
projection of this log (:meth:`Memory.as_messages`); :meth:`Memory.from_messages`
goes the other way so a caller-supplied message history can seed a run.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable

from tiny_agent.models.steps import (
    ActionStep,
    FinalAnswerStep,
    ObservationStep,
    Step,
    TaskStep,
)
from tiny_agent.prompts.prompt_layer import load_prompt

logger = logging.getLogger(__name__)
step_logger = logging.getLogger("tiny_agent.steps")


class Memory:
    def __init__(self, system_prompt: str | None = None) -> None:
        self.system_prompt = system_prompt
        self._steps: list[Step] = []
        self._listeners: list[Callable[[Step], None]] = []

    @classmethod
    def with_default_system(cls) -> Memory:
        return cls(load_prompt("system"))

    def add_step(self, step: Step) -> None:
        step_logger.info("%s", step.describe())
        self._steps.append(step)
        for listener in self._listeners:
            listener(step)

    def subscribe(self, listener: Callable[[Step], None]) -> None:
        """Call ``listener`` with every step appended from now on."""
        self._listeners.append(listener)

    @property
    def steps(self) -> tuple[Step, ...]:
        return tuple(self._steps)

    def last_step(self) -> Step | None:
        return self._steps[-1] if self._steps else None

    def step_count(self) -> int:
        return len(self._steps)

    def is_empty(self) -> bool:
        return not self._steps

    def clear_steps(self) -> None:
        self._steps.clear()

    def filter_steps(self, predicate: Callable[[Step], bool]) -> list[Step]:
        return [step for step in self._steps if predicate(step)]

    def count_actions(self) -> int:
        return len(self.filter_steps(lambda s: isinstance(s, ActionStep)))

    def count_observations(self) -> int:
        return len(self.filter_steps(lambda s: isinstance(s, ObservationStep)))

    def set_final_answer_structured(self, structured: dict[str, Any]) -> None:
        """Attach a structured payload to the most recent final answer, if any."""
        for idx in range(len(self._steps) - 1, -1, -1):
            step = self._steps[idx]
            if isinstance(step, FinalAnswerStep):
                self._steps[idx] = step.model_copy(update={"structured": structured})
                return

    def as_messages(self) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if self.system_prompt is not None:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.extend(step.to_message() for step in self._steps)
        return messages

    @classmethod
    def from_messages(cls, messages: list[dict[str, Any]]) -> Memory:
        memory = cls(None)
        for message in messages:
            role = message.get("role")
            content = message.get("content")
            if role == "system":
                if isinstance(content, str):
                    memory.system_prompt = content
            elif role == "user":
                if isinstance(content, str):
                    memory.add_step(TaskStep(content=content))
            elif role == "assistant":
                tool_calls = message.get("tool_calls")
                if tool_calls is not None:
                    for call in tool_calls if isinstance(tool_calls, list) else []:
                        memory._add_action_from_wire(call)
                elif isinstance(content, str) and content:
                    memory.add_step(FinalAnswerStep(answer=content))
            elif role == "tool":
                call_id = message.get("tool_call_id")
                if isinstance(call_id, str) and isinstance(content, str):
                    memory.add_step(
                        ObservationStep(
                            tool_call_id=call_id,
                            result=content,
                            is_error=_looks_like_error(content),
                        )
                    )
            else:
                logger.debug("Skipping message with unsupported role %r", role)
        return memory

    def _add_action_from_wire(self, call: Any) -> None:
        if not isinstance(call, dict):
            return
        call_id = call.get("id")
        function = call.get("function")
        if not isinstance(call_id, str) or not isinstance(function, dict):
            return
        name = function.get("name")
        raw_arguments = function.get("arguments")
        if not isinstance(raw_arguments, str):
            raw_arguments = "{}"
        arguments: Any = None
        unparsed: str | None = None
        try:
            arguments = json.loads(raw_arguments)
        except json.JSONDecodeError:
            unparsed = raw_arguments
        self.add_step(
            ActionStep(
                tool_name=name if isinstance(name, str) else "unknown",
                tool_call_id=call_id,
                arguments=arguments,
                raw_arguments=unparsed,
            )
        )


def _looks_like_error(content: str) -> bool:
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        return False
    return isinstance(parsed, dict) and parsed.get("error") is not None
