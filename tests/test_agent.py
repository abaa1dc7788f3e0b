"""Tests for the agent loop and the final-answer / structured-response negotiation.

A scripted client stands in for the completion endpoint: each call pops the
next canned response and records the request body it was given.
"""

from __future__ import annotations

import asyncio
import copy
import json
from unittest.mock import patch

import pytest

from tiny_agent.agents.agent import Agent
from tiny_agent.config import AgentConfig, Settings
from tiny_agent.errors import (
    ApiError,
    ConfigError,
    MaxIterationsExceeded,
    UnknownError,
)
from tiny_agent.models.steps import (
    ActionStep,
    FinalAnswerStep,
    ObservationStep,
    PlanningStep,
    TaskStep,
)
from tiny_agent.schemas.schema import CompletionSchema
from tiny_agent.schemas.validation import SCHEMA_INSTRUCTION_MARKER
from tiny_agent.tools import FunctionTool, ToolRegistry, default_tools


class Forecast(CompletionSchema):
    """Forecast for a single city."""

    city: str
    high: float


class ScriptedClient:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.bodies: list[dict] = []

    async def chat_completion(self, body, timeout=None):
        self.bodies.append(copy.deepcopy(body))
        if not self.responses:
            raise AssertionError("unexpected completion request")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class RecordingCallback:
    def __init__(self):
        self.iterations: list[tuple[int, int]] = []
        self.steps: list = []
        self.finished = []

    def on_iteration_start(self, iteration, max_iterations):
        self.iterations.append((iteration, max_iterations))

    def on_step(self, step):
        self.steps.append(step)

    def on_finish(self, result):
        self.finished.append(result)


def call(name, arguments, call_id="call_1"):
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": raw}}


def turn(*calls, content=None, usage=None):
    message = {"role": "assistant", "content": content}
    if calls:
        message["tool_calls"] = list(calls)
    response = {"choices": [{"index": 0, "message": message}]}
    if usage is not None:
        response["usage"] = usage
    return response


def final(answer, call_id="call_final", **extra):
    return turn(call("final_answer", {"answer": answer, **extra}, call_id))


def make_agent(*responses, registry=None, callback=None, **config):
    client = ScriptedClient(*responses)
    if registry is None:
        registry = ToolRegistry()
        registry.register_many(default_tools())
    agent = Agent(AgentConfig(api_key="test-key", **config), registry, client=client, callback=callback)
    return agent, client


def run_steps(agent, prompt="task"):
    return asyncio.run(agent.run_with_steps(prompt))


def error_code(step: ObservationStep) -> str:
    return json.loads(step.result)["error"]["code"]


def observations(result):
    return [s for s in result.steps if isinstance(s, ObservationStep)]


# ---------------------------------------------------------------------------
# Basic termination
# ---------------------------------------------------------------------------

class TestFinalAnswer:
    def test_final_answer_terminates(self):
        agent, client = make_agent(final("  42  "))
        result = run_steps(agent, "What is 6*7?")
        assert result.output == "42"
        assert result.iterations == 1
        assert result.structured is None
        assert [s.type for s in result.steps] == ["task", "action", "observation", "final_answer"]
        assert result.steps[2].result == '{"answer": "42"}'
        assert len(client.bodies) == 1

    def test_run_returns_text_only(self):
        agent, _ = make_agent(final("done"))
        assert asyncio.run(agent.run("go")) == "done"

    def test_tool_call_then_final_answer(self):
        agent, client = make_agent(
            turn(call("calculator", {"operation": "add", "a": 2, "b": 3})),
            final("5"),
        )
        result = run_steps(agent)
        assert result.output == "5"
        assert result.iterations == 2
        action, observation = result.steps[1], result.steps[2]
        assert action == ActionStep(
            tool_name="calculator", tool_call_id="call_1", arguments={"operation": "add", "a": 2, "b": 3}
        )
        assert json.loads(observation.result) == {"result": 5.0, "operation": "Add 2 3"}
        assert not observation.is_error
        # the second request carries the action and its observation
        second = client.bodies[1]["messages"]
        assert second[-2]["tool_calls"][0]["id"] == "call_1"
        assert second[-1] == {"role": "tool", "tool_call_id": "call_1", "content": observation.result}

    def test_tool_calls_in_one_turn_run_in_order(self):
        order = []
        registry = ToolRegistry()
        for name in ("first", "second", "third"):
            registry.register(
                FunctionTool(name=name, description=name, func=lambda args, n=name: order.append(n) or n)
            )
        agent, _ = make_agent(
            turn(call("third", {}, "c3"), call("first", {}, "c1"), call("second", {}, "c2")),
            final("ok"),
            registry=registry,
        )
        result = run_steps(agent)
        assert order == ["third", "first", "second"]
        ids = [s.tool_call_id for s in result.steps if isinstance(s, (ActionStep, ObservationStep))]
        assert ids[:6] == ["c3", "c3", "c1", "c1", "c2", "c2"]

    def test_divide_by_zero_is_fed_back_as_error(self):
        agent, _ = make_agent(
            turn(call("calculator", {"operation": "divide", "a": 5, "b": 0})),
            final("cannot divide"),
        )
        result = run_steps(agent)
        observation = observations(result)[0]
        assert observation.is_error
        payload = json.loads(observation.result)["error"]
        assert payload["code"] == "TOOL_EXECUTION_ERROR"
        assert "Division by zero is not allowed" in payload["message"]
        assert "result" not in json.loads(observation.result)

    def test_unknown_tool(self):
        agent, _ = make_agent(turn(call("teleport", {})), final("no"))
        assert error_code(observations(run_steps(agent))[0]) == "TOOL_NOT_FOUND"

    def test_final_answer_with_structured_and_no_schema(self):
        agent, _ = make_agent(final("here", structured={"k": 1}))
        result = run_steps(agent)
        assert result.structured == {"k": 1}
        assert result.schema_handle is None

    def test_empty_answer_is_rejected(self):
        agent, _ = make_agent(final("   "), final("real"))
        result = run_steps(agent)
        first = observations(result)[0]
        assert error_code(first) == "INVALID_FUNCTION_CALL"
        assert "non-empty `answer`" in first.result
        assert result.output == "real"

    def test_malformed_final_answer_arguments(self):
        agent, _ = make_agent(turn(call("final_answer", {"text": "x"})), final("ok"))
        first = observations(run_steps(agent))[0]
        assert error_code(first) == "INVALID_FUNCTION_CALL"
        assert "Invalid final_answer arguments" in first.result


# ---------------------------------------------------------------------------
# Malformed tool calls
# ---------------------------------------------------------------------------

class TestMalformedCalls:
    def test_unparsable_arguments_yield_one_error_observation(self):
        agent, _ = make_agent(
            turn(
                call("calculator", "{not json", "bad"),
                call("weather", {"location": "Oslo"}, "good"),
            ),
            final("ok"),
        )
        result = run_steps(agent)
        bad = [s for s in observations(result) if s.tool_call_id == "bad"]
        assert len(bad) == 1
        assert error_code(bad[0]) == "INVALID_FUNCTION_CALL"
        assert "Failed to parse arguments for tool 'calculator'" in bad[0].result
        # the raw argument string is kept on the action
        bad_action = next(s for s in result.steps if isinstance(s, ActionStep) and s.tool_call_id == "bad")
        assert bad_action.raw_arguments == "{not json"
        assert bad_action.arguments is None
        # the loop moved on to the next call in the same turn
        good = [s for s in observations(result) if s.tool_call_id == "good"]
        assert len(good) == 1 and not good[0].is_error

    def test_json_string_arguments_go_back_as_json(self):
        agent, client = make_agent(
            turn(call("calculator", '"hello"', "c1")),
            final("no"),
        )
        run_steps(agent)
        echoed = client.bodies[1]["messages"][-2]["tool_calls"][0]["function"]["arguments"]
        assert echoed == '"hello"'
        assert json.loads(echoed) == "hello"

    def test_missing_function_and_name(self):
        agent, _ = make_agent(
            turn({"id": "x1", "type": "function"}, {"id": "x2", "function": {"arguments": "{}"}}),
            final("ok"),
        )
        result = run_steps(agent)
        first, second = observations(result)[:2]
        assert (first.tool_call_id, first.result) == ("x1", "Tool call missing function")
        assert (second.tool_call_id, second.result) == ("x2", "Tool call missing function name")
        assert first.is_error and second.is_error


# ---------------------------------------------------------------------------
# Co-occurrence rule
# ---------------------------------------------------------------------------

class TestFinalAnswerMustBeAlone:
    @pytest.mark.parametrize("final_first", [True, False])
    def test_turn_is_rejected_regardless_of_order(self, final_first):
        executed = []
        registry = ToolRegistry()
        registry.register(FunctionTool(name="probe", description="probe", func=executed.append))
        calls = [call("final_answer", {"answer": "early"}, "f1"), call("probe", {}, "p1")]
        if not final_first:
            calls.reverse()
        agent, _ = make_agent(turn(*calls), final("late"), registry=registry)
        result = run_steps(agent)

        assert executed == []
        assert result.output == "late"
        assert result.iterations == 2
        rejected = observations(result)[:2]
        assert {s.tool_call_id for s in rejected} == {"f1", "p1"}
        for step in rejected:
            assert error_code(step) == "INVALID_FUNCTION_CALL"
            assert "`final_answer` must be the only tool call in a single turn" in step.result

    def test_rejected_final_answer_does_not_count_as_accepted(self):
        agent, _ = make_agent(
            turn(call("final_answer", {"answer": "a"}, "f1"), call("weather", {"location": "x"}, "w1")),
            final("b"),
        )
        assert run_steps(agent).output == "b"


# ---------------------------------------------------------------------------
# Plain-text turns
# ---------------------------------------------------------------------------

class TestPlainText:
    def test_plain_text_is_never_final(self):
        agent, _ = make_agent(turn(content="The answer is 4"), final("4"))
        result = run_steps(agent)
        assert result.iterations == 2
        planning = result.steps[1]
        reminder = result.steps[2]
        assert planning == PlanningStep(plan="The answer is 4")
        assert reminder.is_error
        assert reminder.tool_call_id == "final_answer"
        assert "must call the `final_answer` tool" in reminder.result
        assert "Received plain response: The answer is 4" in reminder.result

    def test_empty_plain_text(self):
        agent, _ = make_agent(turn(content=""), final("x"))
        result = run_steps(agent)
        reminder = result.steps[1]
        assert isinstance(reminder, ObservationStep)
        assert "returned no content" in reminder.result

    def test_empty_tool_calls_list_is_plain_text(self):
        empty = {"choices": [{"message": {"role": "assistant", "content": "The answer is 4", "tool_calls": []}}]}
        agent, client = make_agent(empty, final("4"))
        result = run_steps(agent, "hi")
        assert result.steps[1] == PlanningStep(plan="The answer is 4")
        reminder = result.steps[2]
        assert reminder.is_error
        assert "Received plain response: The answer is 4" in reminder.result
        # the second request carries the plan and the reminder
        assert len(client.bodies[1]["messages"]) == len(client.bodies[0]["messages"]) + 2

    def test_plain_text_with_schema_asks_for_final_answer_first(self):
        agent, _ = make_agent(
            turn(content="done"),
            turn(call("structured_response", {"structured": {"city": "Rome", "high": 30}})),
        )
        result = run_steps(agent.with_completion_schema(Forecast))
        reminder = result.steps[2]
        assert reminder.tool_call_id == "structured_response"
        assert "must call the `final_answer` tool" in reminder.result
        assert "Received plain response: done" in reminder.result

    def test_plain_text_after_acknowledged_answer_asks_for_structured_response(self):
        agent, _ = make_agent(
            final("sunny"),
            turn(content="here it is"),
            turn(call("structured_response", {"structured": {"city": "Rome", "high": 30}})),
        )
        result = run_steps(agent.with_completion_schema(Forecast))
        reminder = next(s for s in observations(result) if s.is_error)
        assert reminder.tool_call_id == "structured_response"
        assert "must call the `structured_response` tool" in reminder.result
        assert "instead of responding directly: here it is" in reminder.result
        assert result.output == "sunny"


# ---------------------------------------------------------------------------
# Structured responses
# ---------------------------------------------------------------------------

class TestStructuredFlow:
    def test_two_step_flow(self):
        agent, client = make_agent(
            final("Rome will be hot"),
            turn(call("structured_response", {"structured": {"city": "Rome", "high": 31.5}}, "s1")),
        )
        agent = agent.with_completion_schema(Forecast)
        result = run_steps(agent)

        assert result.iterations == 2
        assert result.output == "Rome will be hot"
        assert result.structured == {"city": "Rome", "high": 31.5}
        assert result.schema_handle is Forecast.completion_schema()
        assert result.deserialize_structured(Forecast) == Forecast(city="Rome", high=31.5)
        ack = observations(result)[0]
        assert json.loads(ack.result) == {"status": "acknowledged"}
        accepted = observations(result)[1]
        assert json.loads(accepted.result) == {"status": "accepted"}
        assert result.steps[-1] == FinalAnswerStep(
            answer="Rome will be hot", structured={"city": "Rome", "high": 31.5}
        )
        # two requests: the run did not stop after the acknowledged final_answer
        assert len(client.bodies) == 2

    def test_final_answer_with_valid_structured_terminates_at_once(self):
        agent, client = make_agent(final("hot", structured={"city": "Rome", "high": 30}))
        result = run_steps(agent.with_completion_schema(Forecast))
        assert result.structured == {"city": "Rome", "high": 30}
        assert len(client.bodies) == 1

    def test_final_answer_with_invalid_structured_continues(self):
        agent, _ = make_agent(
            final("hot", structured={"city": "Rome"}),
            final("hot", structured={"city": "Rome", "high": 30}),
        )
        result = run_steps(agent.with_completion_schema(Forecast))
        first = observations(result)[0]
        assert error_code(first) == "VALIDATION_ERROR"
        assert "'high' is a required property" in first.result
        assert result.iterations == 2

    def test_final_answer_structured_must_be_object(self):
        agent, _ = make_agent(final("hot", structured=[1, 2]), final("hot", structured={"city": "R", "high": 1}))
        first = observations(run_steps(agent.with_completion_schema(Forecast)))[0]
        assert "`final_answer.structured` must be a JSON object that matches the `Forecast` schema" in first.result

    def test_final_answer_is_accepted_at_most_once(self):
        agent, _ = make_agent(
            final("first", call_id="f1"),
            final("second", call_id="f2"),
            turn(call("structured_response", {"structured": {"city": "Oslo", "high": 2}}, "s1")),
        )
        result = run_steps(agent.with_completion_schema(Forecast))
        second = next(s for s in observations(result) if s.tool_call_id == "f2")
        assert second.is_error
        assert error_code(second) == "INVALID_FUNCTION_CALL"
        assert "already provided" in second.result
        assert result.output == "first"
        assert result.iterations == 3

    def test_invalid_structured_response_then_valid(self):
        agent, _ = make_agent(
            turn(call("structured_response", {"structured": {"city": "Oslo", "high": "cold"}}, "s1")),
            turn(call("structured_response", {"structured": "nope"}, "s2")),
            turn(call("structured_response", {"structured": {"city": "Oslo", "high": -1}}, "s3")),
        )
        result = run_steps(agent.with_completion_schema(Forecast))
        errors = observations(result)[:2]
        assert error_code(errors[0]) == "VALIDATION_ERROR"
        assert "/high" in errors[0].result
        assert "`structured_response.structured` must be a JSON object" in errors[1].result
        assert result.output == "Task completed with structured response"
        assert result.structured == {"city": "Oslo", "high": -1}

    def test_structured_response_without_schema(self):
        agent, _ = make_agent(
            turn(call("structured_response", {"structured": {}}, "s1")),
            final("ok"),
        )
        first = observations(run_steps(agent))[0]
        assert error_code(first) == "INVALID_FUNCTION_CALL"
        assert "No completion schema is active" in first.result

    def test_structured_response_may_share_a_turn(self):
        agent, _ = make_agent(
            turn(
                call("weather", {"location": "Oslo"}, "w1"),
                call("structured_response", {"structured": {"city": "Oslo", "high": 3}}, "s1"),
            ),
        )
        result = run_steps(agent.with_completion_schema(Forecast))
        assert result.structured == {"city": "Oslo", "high": 3}
        assert [s.tool_call_id for s in observations(result)] == ["w1", "s1"]

    def test_request_offers_only_structured_response_and_instructs_once(self):
        agent, client = make_agent(
            turn(call("weather", {"location": "Oslo"})),
            turn(call("structured_response", {"structured": {"city": "Oslo", "high": 3}}, "s1")),
        )
        run_steps(agent.with_completion_schema(Forecast))
        for body in client.bodies:
            names = {t["function"]["name"] for t in body["tools"]}
            assert "structured_response" in names
            assert "final_answer" not in names
            system = body["messages"][0]
            assert system["role"] == "system"
            assert system["content"].count(SCHEMA_INSTRUCTION_MARKER) == 1


# ---------------------------------------------------------------------------
# Iteration budget, errors, accounting
# ---------------------------------------------------------------------------

class TestLoopLimits:
    def test_max_iterations_after_exactly_one_request(self):
        agent, client = make_agent(
            turn(call("weather", {"location": "Oslo"})),
            max_iterations=1,
        )
        with pytest.raises(MaxIterationsExceeded) as exc_info:
            run_steps(agent)
        assert exc_info.value.max_iterations == 1
        assert exc_info.value.code == "MAX_ITERATIONS_EXCEEDED"
        assert len(client.bodies) == 1

    def test_max_iterations_with_endless_tool_calls(self):
        responses = [turn(call("weather", {"location": "Oslo"}, f"c{i}")) for i in range(3)]
        agent, client = make_agent(*responses, max_iterations=3)
        with pytest.raises(MaxIterationsExceeded):
            run_steps(agent)
        assert len(client.bodies) == 3

    def test_transport_errors_propagate(self):
        agent, _ = make_agent(ApiError("HTTP 400 error: nope", status_code=400))
        with pytest.raises(ApiError):
            run_steps(agent)

    def test_missing_choices_is_fatal(self):
        agent, _ = make_agent({"object": "chat.completion"})
        with pytest.raises(UnknownError):
            run_steps(agent)

    def test_token_usage_is_summed(self):
        usage = {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}
        agent, _ = make_agent(
            turn(call("weather", {"location": "Oslo"}), usage=usage),
            turn(),
            turn(call("final_answer", {"answer": "ok"}), usage=usage),
        )
        result = run_steps(agent)
        assert result.tokens.prompt_tokens == 20
        assert result.tokens.total_tokens == 30

    def test_token_usage_absent(self):
        agent, _ = make_agent(final("ok"))
        assert run_steps(agent).tokens is None

    def test_duration_is_measured(self):
        agent, _ = make_agent(final("ok"))
        assert run_steps(agent).duration >= 0


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class TestRequests:
    def test_request_body(self):
        agent, client = make_agent(final("ok"), model="test/model", max_tokens=256)
        run_steps(agent, "hello")
        body = client.bodies[0]
        assert body["model"] == "test/model"
        assert body["max_tokens"] == 256
        assert body["tool_choice"] == "auto"
        assert {t["function"]["name"] for t in body["tools"]} == {"calculator", "weather", "final_answer"}
        assert body["messages"][0]["role"] == "system"
        assert body["messages"][1] == {"role": "user", "content": "hello"}

    def test_no_max_tokens(self):
        agent, client = make_agent(final("ok"), max_tokens=None)
        run_steps(agent)
        assert "max_tokens" not in client.bodies[0]

    def test_terminal_tool_offered_with_empty_registry(self):
        agent, client = make_agent(final("ok"), registry=ToolRegistry())
        run_steps(agent)
        assert [t["function"]["name"] for t in client.bodies[0]["tools"]] == ["final_answer"]


# ---------------------------------------------------------------------------
# Entry points, builder, callbacks
# ---------------------------------------------------------------------------

class TestAgentApi:
    def test_builder_returns_new_agents(self):
        agent, client = make_agent()
        tuned = agent.with_model("other").with_max_iterations(3).with_timeout(5).with_max_tokens(None)
        assert agent.config.model != "other"
        assert tuned.config.model == "other"
        assert tuned.config.max_iterations == 3
        assert tuned.config.timeout == 5
        assert tuned.config.max_tokens is None
        assert tuned.client is client
        assert tuned.with_base_url("https://x/v1").config.base_url == "https://x/v1"

    def test_schema_builder(self):
        agent, _ = make_agent()
        with_schema = agent.with_completion_schema(Forecast)
        assert with_schema.config.completion_schema is Forecast.completion_schema()
        assert agent.config.completion_schema is None
        assert with_schema.clear_completion_schema().config.completion_schema is None

    def test_builder_validates(self):
        agent, _ = make_agent()
        with pytest.raises(ConfigError):
            agent.with_max_iterations(0)

    def test_agent_is_reusable_across_runs(self):
        agent, client = make_agent(final("one"), final("two"))
        assert asyncio.run(agent.run("a")) == "one"
        assert asyncio.run(agent.run("b")) == "two"
        # each run starts from a fresh memory
        assert [m["role"] for m in client.bodies[1]["messages"]] == ["system", "user"]

    def test_run_with_messages(self):
        agent, client = make_agent(final("continued"))
        history = [
            {"role": "system", "content": "custom system"},
            {"role": "user", "content": "earlier question"},
            {"role": "assistant", "content": "earlier answer"},
            {"role": "user", "content": "follow-up"},
        ]
        assert asyncio.run(agent.run_with_messages(history)) == "continued"
        assert client.bodies[0]["messages"] == history

    def test_callback_sees_iterations_steps_and_result(self):
        callback = RecordingCallback()
        agent, _ = make_agent(turn(call("weather", {"location": "Oslo"})), final("ok"), callback=callback)
        result = run_steps(agent)
        assert callback.iterations == [(1, 10), (2, 10)]
        assert [s.type for s in callback.steps] == [s.type for s in result.steps]
        assert isinstance(callback.steps[0], TaskStep)
        assert callback.finished == [result]

    def test_from_env_requires_api_key(self):
        with patch("tiny_agent.agents.agent.settings", Settings(openai_api_key="")):
            with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
                Agent.from_env(ToolRegistry())

    def test_from_env(self, tmp_path):
        import tiny_agent.config as cfg

        s = Settings(openai_api_key="env-key", openai_base_url="https://env.test/v1")
        cfg._models_config_cache = None
        try:
            with patch("tiny_agent.agents.agent.settings", s), patch("tiny_agent.config.settings", s), \
                    patch.dict("os.environ", {"MODELS_CONFIG_PATH": str(tmp_path / "none.yaml")}):
                agent = Agent.from_env(ToolRegistry())
        finally:
            cfg._models_config_cache = None
        assert agent.config.api_key == "env-key"
        assert agent.config.base_url == "https://env.test/v1"
