"""Interpretation of one assistant turn.

A turn is either a list of tool calls or plain text. Tool calls are handled
strictly in order; the two terminal tools (``final_answer`` and
``structured_response``) are validated here and may end the run. Problems
with individual calls never raise: they are recorded as error observations
so the model can correct itself on the next turn.

Every named tool call records an :class:`ActionStep` followed by exactly one
:class:`ObservationStep` with the same call id.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from tiny_agent.agents.memory import Memory
from tiny_agent.errors import (
    AgentError,
    InvalidFunctionCallError,
    ToolExecutionError,
    ValidationError,
)
from tiny_agent.models.steps import ActionStep, FinalAnswerStep, ObservationStep, PlanningStep
from tiny_agent.prompts.prompt_layer import render_prompt
from tiny_agent.schemas.schema import SchemaHandle
from tiny_agent.schemas.validation import (
    FINAL_ANSWER_TOOL_NAME,
    STRUCTURED_RESPONSE_TOOL_NAME,
    FinalAnswerArguments,
    StructuredResponseArguments,
    final_answer_tool_definition,
    structured_response_tool_definition,
    validate_structured_object,
)
from tiny_agent.tools import ToolRegistry

logger = logging.getLogger(__name__)

STRUCTURED_FALLBACK_ANSWER = "Task completed with structured response"


# ---------------------------------------------------------------------------
# Tool-call envelopes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCallEnvelope:
    """One entry of an assistant message's ``tool_calls`` array."""

    tool_call_id: str
    has_function: bool
    name: str | None
    raw_arguments: str

    @classmethod
    def from_wire(cls, call: Any) -> ToolCallEnvelope:
        call = call if isinstance(call, dict) else {}
        call_id = call.get("id")
        function = call.get("function")
        if not isinstance(function, dict):
            return cls(call_id if isinstance(call_id, str) else "", False, None, "")
        name = function.get("name")
        arguments = function.get("arguments")
        return cls(
            tool_call_id=call_id if isinstance(call_id, str) else "",
            has_function=True,
            name=name if isinstance(name, str) and name else None,
            raw_arguments=arguments if isinstance(arguments, str) else "",
        )

    def parse_arguments(self) -> Any:
        try:
            return json.loads(self.raw_arguments)
        except json.JSONDecodeError as e:
            raise InvalidFunctionCallError(
                f"Failed to parse arguments for tool '{self.name}': {e}"
            ) from e


def _describe_pydantic(exc: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
        for err in exc.errors()
    )


# ---------------------------------------------------------------------------
# Per-run state and outcomes
# ---------------------------------------------------------------------------


@dataclass
class NegotiationState:
    completion_schema: SchemaHandle | None = None
    has_final_answer: bool = False
    final_answer_value: str | None = None


@dataclass(frozen=True)
class Outcome:
    terminal: bool
    answer: str | None = None
    structured: dict[str, Any] | None = None

    @classmethod
    def finish(cls, answer: str, structured: dict[str, Any] | None = None) -> Outcome:
        return cls(terminal=True, answer=answer, structured=structured)


CONTINUE = Outcome(terminal=False)


def _record_error(memory: Memory, tool_call_id: str, error: AgentError) -> None:
    memory.add_step(
        ObservationStep(tool_call_id=tool_call_id, result=error.to_payload_json(), is_error=True)
    )


def _record_ok(memory: Memory, tool_call_id: str, payload: Any) -> None:
    memory.add_step(
        ObservationStep(
            tool_call_id=tool_call_id,
            result=json.dumps(payload, ensure_ascii=False),
            is_error=False,
        )
    )


# ---------------------------------------------------------------------------
# Terminal tools
# ---------------------------------------------------------------------------


def handle_final_answer(
    state: NegotiationState, memory: Memory, tool_call_id: str, arguments: Any
) -> Outcome:
    if state.has_final_answer:
        _record_error(
            memory,
            tool_call_id,
            InvalidFunctionCallError("`final_answer` was already provided for this run"),
        )
        return CONTINUE

    try:
        args = FinalAnswerArguments.model_validate(arguments)
    except PydanticValidationError as e:
        _record_error(
            memory,
            tool_call_id,
            InvalidFunctionCallError(f"Invalid final_answer arguments: {_describe_pydantic(e)}"),
        )
        return CONTINUE

    answer = args.answer.strip()
    if not answer:
        _record_error(
            memory,
            tool_call_id,
            InvalidFunctionCallError("final_answer requires a non-empty `answer` field"),
        )
        return CONTINUE

    schema = state.completion_schema
    structured = args.structured
    if structured is not None:
        try:
            if schema is not None:
                validate_structured_object(schema, structured, "final_answer.structured")
            elif not isinstance(structured, dict):
                raise ValidationError("`final_answer.structured` must be a JSON object")
        except ValidationError as e:
            _record_error(memory, tool_call_id, e)
            return CONTINUE

    state.has_final_answer = True
    state.final_answer_value = answer

    if structured is None and schema is not None:
        # answer committed; the structured payload must follow via structured_response
        _record_ok(memory, tool_call_id, {"status": "acknowledged"})
        return CONTINUE

    _record_ok(memory, tool_call_id, {"answer": answer})
    memory.add_step(FinalAnswerStep(answer=answer, structured=structured))
    return Outcome.finish(answer, structured)


def handle_structured_response(
    state: NegotiationState, memory: Memory, tool_call_id: str, arguments: Any
) -> Outcome:
    schema = state.completion_schema
    if schema is None:
        _record_error(
            memory,
            tool_call_id,
            InvalidFunctionCallError("No completion schema is active for structured response"),
        )
        return CONTINUE

    try:
        args = StructuredResponseArguments.model_validate(arguments)
    except PydanticValidationError as e:
        _record_error(
            memory,
            tool_call_id,
            InvalidFunctionCallError(
                f"Invalid structured_response arguments: {_describe_pydantic(e)}"
            ),
        )
        return CONTINUE

    try:
        validate_structured_object(schema, args.structured, "structured_response.structured")
    except ValidationError as e:
        _record_error(memory, tool_call_id, e)
        return CONTINUE

    answer = state.final_answer_value or STRUCTURED_FALLBACK_ANSWER
    _record_ok(memory, tool_call_id, {"status": "accepted"})
    memory.add_step(FinalAnswerStep(answer=answer, structured=args.structured))
    return Outcome.finish(answer, args.structured)


# ---------------------------------------------------------------------------
# Turn classification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Turn:
    """A classified assistant message: tool calls, or plain text when there are none."""

    tool_calls: tuple[ToolCallEnvelope, ...] | None
    text: str

    @property
    def has_tool_calls(self) -> bool:
        return self.tool_calls is not None

    def names_final_answer(self) -> bool:
        return any(call.name == FINAL_ANSWER_TOOL_NAME for call in self.tool_calls or ())


def classify_turn(message: dict[str, Any]) -> Turn:
    content = message.get("content")
    text = content.strip() if isinstance(content, str) else ""
    raw_calls = message.get("tool_calls")
    # an empty or malformed tool_calls member carries no calls: plain text
    if not isinstance(raw_calls, list) or not raw_calls:
        return Turn(tool_calls=None, text=text)
    return Turn(tool_calls=tuple(ToolCallEnvelope.from_wire(c) for c in raw_calls), text=text)


def terminal_tool_name(state: NegotiationState) -> str:
    if state.completion_schema is not None:
        return STRUCTURED_RESPONSE_TOOL_NAME
    return FINAL_ANSWER_TOOL_NAME


def plain_text_reminder(state: NegotiationState, text: str) -> str:
    if not state.has_final_answer:
        if text:
            return render_prompt("reminder_final_answer", answer=text)
        return render_prompt("reminder_final_answer_empty")
    if text:
        return render_prompt(
            "reminder_structured", tool_name=STRUCTURED_RESPONSE_TOOL_NAME, answer=text
        )
    return render_prompt("reminder_structured_empty", tool_name=STRUCTURED_RESPONSE_TOOL_NAME)


def assemble_tools(registry: ToolRegistry, state: NegotiationState) -> list[dict[str, Any]]:
    """Registered tools plus exactly one terminal tool."""
    tools = registry.to_openai_tools()
    if state.completion_schema is not None:
        tools.append(structured_response_tool_definition(state.completion_schema))
    else:
        tools.append(final_answer_tool_definition())
    return tools


# ---------------------------------------------------------------------------
# Turn processing
# ---------------------------------------------------------------------------


def _record_action(memory: Memory, call: ToolCallEnvelope, arguments: Any = None,
                   raw_arguments: str | None = None) -> None:
    memory.add_step(
        ActionStep(
            tool_name=call.name or "unknown",
            tool_call_id=call.tool_call_id,
            arguments=arguments,
            raw_arguments=raw_arguments,
        )
    )


def _record_wire_action(memory: Memory, call: ToolCallEnvelope) -> None:
    try:
        arguments = json.loads(call.raw_arguments)
    except json.JSONDecodeError:
        _record_action(memory, call, raw_arguments=call.raw_arguments)
        return
    _record_action(memory, call, arguments)


async def _dispatch(registry: ToolRegistry, memory: Memory, call: ToolCallEnvelope,
                    arguments: Any) -> None:
    try:
        result = await registry.execute(call.name, arguments)
        payload = json.dumps(result, ensure_ascii=False)
    except AgentError as e:
        logger.debug("Tool '%s' returned an error: %s", call.name, e)
        _record_error(memory, call.tool_call_id, e)
        return
    except (TypeError, ValueError) as e:
        _record_error(
            memory,
            call.tool_call_id,
            ToolExecutionError(f"tool '{call.name}' returned a non-JSON result: {e}"),
        )
        return
    memory.add_step(ObservationStep(tool_call_id=call.tool_call_id, result=payload))


async def process_turn(
    turn: Turn, state: NegotiationState, memory: Memory, registry: ToolRegistry
) -> Outcome:
    """Record the steps for one assistant turn and decide whether the run ends."""
    if not turn.has_tool_calls:
        if turn.text:
            memory.add_step(PlanningStep(plan=turn.text))
        memory.add_step(
            ObservationStep(
                tool_call_id=terminal_tool_name(state),
                result=plain_text_reminder(state, turn.text),
                is_error=True,
            )
        )
        return CONTINUE

    calls = turn.tool_calls or ()
    if len(calls) > 1 and turn.names_final_answer():
        rejection = InvalidFunctionCallError(
            "`final_answer` must be the only tool call in a single turn"
        )
        for call in calls:
            if call.name is not None:
                _record_wire_action(memory, call)
            _record_error(memory, call.tool_call_id, rejection)
        return CONTINUE

    for call in calls:
        if not call.has_function:
            memory.add_step(
                ObservationStep(
                    tool_call_id=call.tool_call_id, result="Tool call missing function", is_error=True
                )
            )
            continue
        if call.name is None:
            memory.add_step(
                ObservationStep(
                    tool_call_id=call.tool_call_id,
                    result="Tool call missing function name",
                    is_error=True,
                )
            )
            continue

        try:
            arguments = call.parse_arguments()
        except InvalidFunctionCallError as e:
            _record_action(memory, call, raw_arguments=call.raw_arguments)
            _record_error(memory, call.tool_call_id, e)
            continue

        _record_action(memory, call, arguments)
        if call.name == FINAL_ANSWER_TOOL_NAME:
            outcome = handle_final_answer(state, memory, call.tool_call_id, arguments)
        elif call.name == STRUCTURED_RESPONSE_TOOL_NAME:
            outcome = handle_structured_response(state, memory, call.tool_call_id, arguments)
        else:
            await _dispatch(registry, memory, call, arguments)
            continue
        if outcome.terminal:
            return outcome

    return CONTINUE
