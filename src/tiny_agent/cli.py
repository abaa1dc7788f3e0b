"""Command-line entry point: `tiny-agent run`, `tiny-agent plan` and `tiny-agent tools`."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import TYPE_CHECKING

import typer
from rich.console import Console

if TYPE_CHECKING:
    from tiny_agent.tools import ToolRegistry

app = typer.Typer(name="tiny-agent", help="Tool-calling agent loop for OpenAI-compatible endpoints.")
console = Console()


def _build_registry() -> ToolRegistry:
    from tiny_agent.config import settings
    from tiny_agent.tools import ToolRegistry, default_tools
    from tiny_agent.tools.jina import JinaReaderTool

    registry = ToolRegistry()
    registry.register_many(default_tools())
    if settings.jina_api_key:
        registry.register(JinaReaderTool.from_env())
    return registry


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Task for the agent"),
    model: str = typer.Option("", help="Model identifier (default: from config)"),
    api_key: str = typer.Option("", "--api-key", help="Bearer token (default: OPENAI_API_KEY)"),
    base_url: str = typer.Option("", "--base-url", help="Endpoint base URL"),
    timeout: float = typer.Option(0.0, help="Per-request timeout in seconds (0 = use config)"),
    max_iterations: int = typer.Option(0, "--max-iterations", help="Iteration budget (0 = use config)"),
    max_tokens: int = typer.Option(0, "--max-tokens", help="Max output tokens (0 = use config)"),
    profile: str = typer.Option("", help="Profile name from models.yaml"),
    schema: str = typer.Option("", help="Completion schema to enforce (vacation)"),
    steps: bool = typer.Option(False, "--steps", help="Print the step trace after the run"),
    explain: bool = typer.Option(False, "--explain", help="Print a detailed explanation after the run"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable detailed logging"),
) -> None:
    """Run the agent on PROMPT until it calls its terminal tool."""
    from tiny_agent.agents.agent import Agent
    from tiny_agent.agents.console_callback import ConsoleCallback
    from tiny_agent.config import get_agent_config
    from tiny_agent.errors import AgentError
    from tiny_agent.models.vacation import SCHEMAS

    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s | %(levelname)s | %(message)s")

    if schema and schema not in SCHEMAS:
        console.print(f"[red]Unknown schema '{schema}'. Choose from: {', '.join(SCHEMAS)}[/red]")
        raise typer.Exit(1)

    try:
        config = get_agent_config(profile, api_key=api_key or None)
        overrides = {
            "model": model,
            "base_url": base_url,
            "timeout": timeout,
            "max_iterations": max_iterations,
            "max_tokens": max_tokens,
        }
        config = replace(config, **{k: v for k, v in overrides.items() if v})

        registry = _build_registry()
        callback = ConsoleCallback(console)
        callback.print_tools(registry)

        agent = Agent(config, registry, callback=callback)
        if schema:
            agent = agent.with_completion_schema(SCHEMAS[schema])

        result = asyncio.run(agent.run_with_steps(prompt))
    except AgentError as e:
        console.print(e.to_payload_json(), markup=False, style="red")
        raise typer.Exit(1)

    if result.structured is not None:
        console.print_json(data=result.structured)
    if explain:
        console.print(result.explain(), markup=False)
    elif steps:
        console.print(result.replay(), markup=False)


@app.command()
def plan(
    prompt: str = typer.Argument(..., help="Task to plan"),
    iteration: int = typer.Option(0, help="Render the iteration-N planning prompt instead of the tool overview"),
) -> None:
    """Print the planning prompt for PROMPT over the available tools."""
    from tiny_agent.agents.planning import (
        generate_planning_prompt,
        generate_tool_planning_prompt,
        get_tool_names,
    )

    registry = _build_registry()
    if iteration > 0:
        text = generate_planning_prompt(prompt, get_tool_names(registry), iteration)
    else:
        text = generate_tool_planning_prompt(prompt, registry)
    console.print(text, markup=False)


@app.command()
def tools() -> None:
    """List the tools available to the agent."""
    from tiny_agent.agents.console_callback import ConsoleCallback

    ConsoleCallback(console).print_tools(_build_registry())


if __name__ == "__main__":
    app()
