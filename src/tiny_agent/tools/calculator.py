"""Basic arithmetic tool."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel

from tiny_agent.errors import ToolExecutionError
from tiny_agent.tools import Tool, parse_parameters


class CalculatorParams(BaseModel):
    operation: Literal["add", "subtract", "multiply", "divide", "power"]
    a: float
    b: float


def _fmt(value: float) -> str:
    return str(int(value)) if value.is_integer() else repr(value)


class CalculatorTool(Tool):
    name = "calculator"
    description = "Perform basic arithmetic operations (add, subtract, multiply, divide, power)"

    def parameters_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "operation": {
                    "type": "string",
                    "enum": ["add", "subtract", "multiply", "divide", "power"],
                },
                "a": {"type": "number"},
                "b": {"type": "number"},
            },
            "required": ["operation", "a", "b"],
        }

    async def execute(self, arguments: Any) -> dict[str, Any]:
        params = parse_parameters(CalculatorParams, arguments)
        a, b = params.a, params.b
        if params.operation == "add":
            result = a + b
        elif params.operation == "subtract":
            result = a - b
        elif params.operation == "multiply":
            result = a * b
        elif params.operation == "divide":
            if b == 0:
                raise ToolExecutionError("Division by zero is not allowed")
            result = a / b
        else:
            try:
                result = a**b
            except (OverflowError, ZeroDivisionError) as e:
                raise ToolExecutionError(f"Cannot compute {_fmt(a)} ** {_fmt(b)}: {e}") from e
            if isinstance(result, complex):
                raise ToolExecutionError(f"{_fmt(a)} ** {_fmt(b)} has no real result")

        return {
            "result": result,
            "operation": f"{params.operation.capitalize()} {_fmt(a)} {_fmt(b)}",
        }
