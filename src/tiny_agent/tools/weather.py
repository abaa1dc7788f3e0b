"""Mock weather tool; returns canned conditions for any location."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel

from tiny_agent.tools import Tool, parse_parameters

_TEMPERATURES = {"celsius": 22.5, "fahrenheit": 72.5, "kelvin": 295.65}
_UNIT_SYMBOLS = {"celsius": "°C", "fahrenheit": "°F", "kelvin": "K"}


class WeatherParams(BaseModel):
    location: str
    units: Literal["celsius", "fahrenheit", "kelvin"] | None = None


class WeatherTool(Tool):
    name = "weather"
    description = "Get current weather information for a location (mock implementation)"

    def parameters_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "location": {"type": "string"},
                "units": {"type": "string", "enum": ["celsius", "fahrenheit", "kelvin"]},
            },
            "required": ["location"],
        }

    async def execute(self, arguments: Any) -> dict[str, Any]:
        params = parse_parameters(WeatherParams, arguments)
        units = params.units or "celsius"
        return {
            "location": params.location,
            "temperature": _TEMPERATURES[units],
            "condition": "Partly cloudy",
            "humidity": 65.0,
            "units": _UNIT_SYMBOLS[units],
        }
