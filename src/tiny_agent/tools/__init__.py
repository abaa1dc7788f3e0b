"""Tool plugin system for the agent loop."""

from __future__ import annotations

import abc
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from tiny_agent.errors import AgentError, ToolExecutionError, ToolNotFoundError

logger = logging.getLogger(__name__)

ToolFunction = Callable[[Any], Union[Any, Awaitable[Any]]]
P = TypeVar("P", bound=BaseModel)


def parse_parameters(model_cls: type[P], arguments: Any) -> P:
    """Validate tool arguments into a pydantic model, raising ToolExecutionError."""
    try:
        return model_cls.model_validate(arguments)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise ToolExecutionError(f"Invalid parameters: {problems}") from e


class Tool(abc.ABC):
    """A named, schema-described async callable the model may invoke."""

    name: str
    description: str

    @abc.abstractmethod
    def parameters_schema(self) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def execute(self, arguments: Any) -> Any:
        """Run the tool; return a JSON-serializable result or raise AgentError."""


@dataclass
class FunctionTool(Tool):
    """Wrap a plain (sync or async) function taking the argument object."""

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    func: ToolFunction | None = None

    def parameters_schema(self) -> dict[str, Any]:
        return self.parameters

    async def execute(self, arguments: Any) -> Any:
        if self.func is None:
            raise ToolExecutionError(f"tool '{self.name}' has no implementation")
        result = self.func(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.debug("Replacing tool '%s'", tool.name)
        self._tools[tool.name] = tool

    def register_many(self, tools: list[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def get(self, name: str) -> Tool:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFoundError(name) from None

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_all(self) -> list[Tool]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def to_openai_tools(self) -> list[dict[str, Any]]:
        result = []
        for tool in self._tools.values():
            result.append(
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters_schema(),
                    },
                }
            )
        return result

    async def execute(self, name: str, arguments: Any) -> Any:
        tool = self.get(name)
        try:
            return await tool.execute(arguments)
        except AgentError:
            raise
        except Exception as e:
            logger.error("Tool '%s' failed: %s", name, e, exc_info=True)
            raise ToolExecutionError(f"tool '{name}' failed: {e}") from e


def default_tools() -> list[Tool]:
    """The offline built-in tools: calculator and mock weather."""
    from tiny_agent.tools.calculator import CalculatorTool
    from tiny_agent.tools.weather import WeatherTool

    return [CalculatorTool(), WeatherTool()]
