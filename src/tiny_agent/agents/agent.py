"""The agent execution loop.

One internal loop backs all three entry points: :meth:`Agent.run` returns the
final text, :meth:`Agent.run_with_steps` the full :class:`RunResult`, and
:meth:`Agent.run_with_messages` seeds memory from an existing message list.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Protocol

from tiny_agent.agents.memory import Memory
from tiny_agent.agents.negotiation import (
    NegotiationState,
    assemble_tools,
    classify_turn,
    process_turn,
)
from tiny_agent.config import AgentConfig, get_agent_config, settings
from tiny_agent.errors import ConfigError, MaxIterationsExceeded
from tiny_agent.models.result import RunResult, TokenUsage
from tiny_agent.models.steps import Step, TaskStep
from tiny_agent.schemas.schema import CompletionSchema, SchemaHandle, resolve_schema_handle
from tiny_agent.schemas.validation import inject_schema_instructions
from tiny_agent.services.completion_client import (
    ChatCompletionRequest,
    CompletionClient,
    extract_usage,
    first_message,
)
from tiny_agent.tools import ToolRegistry

logger = logging.getLogger(__name__)


class ChatClient(Protocol):
    async def chat_completion(self, body: dict[str, Any], timeout: float | None = None) -> dict[str, Any]: ...


class StepCallback(Protocol):
    def on_iteration_start(self, iteration: int, max_iterations: int) -> None: ...
    def on_step(self, step: Step) -> None: ...
    def on_finish(self, result: RunResult) -> None: ...


class NullCallback:
    def on_iteration_start(self, iteration: int, max_iterations: int) -> None: ...
    def on_step(self, step: Step) -> None: ...
    def on_finish(self, result: RunResult) -> None: ...


class Agent:
    def __init__(
        self,
        config: AgentConfig,
        registry: ToolRegistry | None = None,
        client: ChatClient | None = None,
        callback: StepCallback | None = None,
    ) -> None:
        self.config = config
        self.registry = registry if registry is not None else ToolRegistry()
        self._owns_client = client is None
        self.client: ChatClient = client or CompletionClient(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
        )
        self.cb: StepCallback = callback or NullCallback()

    @classmethod
    def from_env(cls, registry: ToolRegistry | None = None, profile: str = "",
                 callback: StepCallback | None = None) -> Agent:
        if not settings.openai_api_key:
            raise ConfigError("OPENAI_API_KEY is not set")
        return cls(get_agent_config(profile), registry, callback=callback)

    # -- builder ---------------------------------------------------------

    def _replace(self, **changes: Any) -> Agent:
        config = replace(self.config, **changes)
        client = None if self._owns_client else self.client
        return Agent(config, self.registry, client=client, callback=self.cb)

    def with_model(self, model: str) -> Agent:
        return self._replace(model=model)

    def with_base_url(self, base_url: str) -> Agent:
        return self._replace(base_url=base_url)

    def with_timeout(self, timeout: float) -> Agent:
        return self._replace(timeout=timeout)

    def with_max_iterations(self, max_iterations: int) -> Agent:
        return self._replace(max_iterations=max_iterations)

    def with_max_tokens(self, max_tokens: int | None) -> Agent:
        return self._replace(max_tokens=max_tokens)

    def with_completion_schema(self, schema: SchemaHandle | type[CompletionSchema]) -> Agent:
        return self._replace(completion_schema=resolve_schema_handle(schema))

    def clear_completion_schema(self) -> Agent:
        return self._replace(completion_schema=None)

    def with_callback(self, callback: StepCallback) -> Agent:
        agent = self._replace()
        agent.cb = callback
        return agent

    # -- running ---------------------------------------------------------

    async def run(self, prompt: str) -> str:
        result = await self.run_with_steps(prompt)
        return result.output

    async def run_with_steps(self, prompt: str) -> RunResult:
        memory = Memory.with_default_system()
        memory.subscribe(self.cb.on_step)
        memory.add_step(TaskStep(content=prompt))
        return await self._execute(memory)

    async def run_with_messages(self, messages: list[dict[str, Any]]) -> str:
        memory = Memory.from_messages(messages)
        memory.subscribe(self.cb.on_step)
        result = await self._execute(memory)
        return result.output

    def _build_request(self, memory: Memory, state: NegotiationState) -> dict[str, Any]:
        messages = memory.as_messages()
        if state.completion_schema is not None:
            inject_schema_instructions(messages, state.completion_schema)

        request = ChatCompletionRequest(self.config.model, messages).with_max_tokens(
            self.config.max_tokens
        )
        tools = assemble_tools(self.registry, state)
        if tools:
            request = request.with_tools(tools).with_tool_choice("auto")
        return request.to_body()

    async def _execute(self, memory: Memory) -> RunResult:
        start = time.monotonic()
        schema = self.config.completion_schema
        state = NegotiationState(completion_schema=schema)
        usage: TokenUsage | None = None
        max_iterations = self.config.max_iterations

        for iteration in range(1, max_iterations + 1):
            self.cb.on_iteration_start(iteration, max_iterations)
            logger.debug("Iteration %d/%d", iteration, max_iterations)

            body = self._build_request(memory, state)
            response = await self.client.chat_completion(body, timeout=self.config.timeout)
            message = first_message(response)

            turn_usage = extract_usage(response)
            if turn_usage is not None:
                usage = turn_usage if usage is None else usage + turn_usage

            outcome = await process_turn(classify_turn(message), state, memory, self.registry)
            if outcome.terminal:
                result = RunResult(
                    output=outcome.answer or "",
                    structured=outcome.structured,
                    schema_handle=schema,
                    steps=memory.steps,
                    tokens=usage,
                    duration=time.monotonic() - start,
                    iterations=iteration,
                )
                self.cb.on_finish(result)
                return result

        logger.warning("Agent hit max iterations (%d) without a final answer", max_iterations)
        raise MaxIterationsExceeded(max_iterations)
