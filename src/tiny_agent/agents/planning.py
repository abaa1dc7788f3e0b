"""Planning prompt helpers.

Public helper API: the agent loop never injects these prompts itself. Callers
(and `tiny-agent plan`) use them to ask a model for a plan before a run.
"""

from __future__ import annotations

from tiny_agent.prompts.prompt_layer import render_prompt
from tiny_agent.tools import ToolRegistry

PLANNING_INDICATORS = (
    "plan",
    "approach",
    "strategy",
    "steps:",
    "first,",
    "then,",
    "finally,",
    "need to",
    "should",
    "will use",
)


def generate_planning_prompt(task: str, tool_names: list[str], iteration: int) -> str:
    tools = ", ".join(tool_names) if tool_names else "No tools available"
    if iteration == 1:
        return render_prompt("planning_initial", task=task, tools=tools)
    return render_prompt("planning_continue", task=task, iteration=iteration, tools=tools)


def get_tool_names(registry: ToolRegistry) -> list[str]:
    return [tool["function"]["name"] for tool in registry.to_openai_tools()]


def generate_tool_planning_prompt(task: str, registry: ToolRegistry) -> str:
    descriptions = [
        f"- {tool['function']['name']}: {tool['function']['description']}"
        for tool in registry.to_openai_tools()
    ]
    if not descriptions:
        return render_prompt("tool_planning_empty", task=task)
    return render_prompt("tool_planning", task=task, tool_descriptions="\n".join(descriptions))


def is_planning_response(content: str) -> bool:
    """Heuristic: does ``content`` read like a plan rather than a result?"""
    lowered = content.lower()
    return any(indicator in lowered for indicator in PLANNING_INDICATORS)
