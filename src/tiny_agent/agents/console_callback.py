"""Rich console callback for the agent loop."""

from __future__ import annotations

import json

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from tiny_agent.models.result import RunResult
from tiny_agent.models.steps import (
    ActionStep,
    FinalAnswerStep,
    ObservationStep,
    PlanningStep,
    Step,
    TaskStep,
)
from tiny_agent.tools import ToolRegistry

MAX_RESULT_LINES = 30
MAX_RESULT_CHARS = 2000


def _truncate(text: str) -> str:
    lines = text.splitlines()
    if len(lines) > MAX_RESULT_LINES or len(text) > MAX_RESULT_CHARS:
        kept = "\n".join(lines[:MAX_RESULT_LINES])[:MAX_RESULT_CHARS]
        omitted = len(lines) - MAX_RESULT_LINES
        if omitted > 0:
            kept += f"\n... ({omitted} more lines)"
        return kept
    return text


TOOL_ICONS = {
    "calculator": "🧮",
    "weather": "🌤 ",
    "jina_reader": "📄",
    "final_answer": "✅",
    "structured_response": "📦",
}


def _format_arg_value(value: object) -> str:
    s = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    if len(s) > 120:
        return s[:120] + "..."
    return s


class ConsoleCallback:
    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def print_tools(self, registry: ToolRegistry) -> None:
        table = Table(title="Available tools", border_style="dim", show_lines=False)
        table.add_column("Tool", style="bold cyan", no_wrap=True)
        table.add_column("Description", style="dim")
        for tool in registry.list_all():
            icon = TOOL_ICONS.get(tool.name, "🔧")
            params = tool.parameters_schema().get("properties", {})
            name_col = f"{icon} {tool.name}({', '.join(params)})"
            table.add_row(name_col, tool.description)
        self.console.print(table)
        self.console.print()

    def on_iteration_start(self, iteration: int, max_iterations: int) -> None:
        self.console.rule(f"[bold blue]Iteration {iteration}/{max_iterations}", style="blue")

    def on_step(self, step: Step) -> None:
        if isinstance(step, TaskStep):
            self.console.print(f"🧭 [bold]Task:[/] {escape(step.content)}")
        elif isinstance(step, PlanningStep):
            self.console.print(
                Panel(
                    Text(_truncate(step.plan)),
                    title="[bold yellow]Thinking",
                    border_style="yellow",
                    padding=(0, 1),
                )
            )
        elif isinstance(step, ActionStep):
            icon = TOOL_ICONS.get(step.tool_name, "🔧")
            self.console.print(f"  {icon} [bold cyan]{step.tool_name}[/]")
            if step.raw_arguments is not None:
                self.console.print(f"      [dim]raw:[/] {escape(_format_arg_value(step.raw_arguments))}")
            elif isinstance(step.arguments, dict):
                for k, v in step.arguments.items():
                    self.console.print(f"      [dim]{k}:[/] {escape(_format_arg_value(v))}")
            elif step.arguments is not None:
                self.console.print(f"      [dim]args:[/] {escape(_format_arg_value(step.arguments))}")
        elif isinstance(step, ObservationStep):
            truncated = _truncate(step.result)
            self.console.print(
                Panel(
                    Syntax(truncated, "json", theme="ansi_dark", word_wrap=True)
                    if len(truncated) > 200
                    else Text(truncated, style="dim"),
                    title="[red]error" if step.is_error else "[dim]result",
                    border_style="red" if step.is_error else "dim",
                    padding=(0, 1),
                )
            )
        elif isinstance(step, FinalAnswerStep):
            self.console.print("✅ [bold green]Final answer accepted[/]")

    def on_finish(self, result: RunResult) -> None:
        self.console.print()
        self.console.rule("[bold green]Agent finished", style="green")
        self.console.print(
            Panel(
                Text(result.output),
                title=(
                    f"[bold green]Result ({result.iterations} iterations, "
                    f"{result.action_count()} tool calls)"
                ),
                border_style="green",
                padding=(0, 1),
            )
        )
