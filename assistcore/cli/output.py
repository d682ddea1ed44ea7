"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from assistcore.llm.catalog import CatalogModel
from assistcore.llm.types import Message, MessageStatus, Role
from assistcore.session.events import ToolNotice, TurnResult
from assistcore.tools.base import Tool

ROLE_COLORS = {
    Role.USER: "blue",
    Role.ASSISTANT: "green",
    Role.TOOL: "cyan",
    Role.SYSTEM: "dim",
}


class OutputFormatter:
    """Rich-based output formatting for the assist CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_tool_list(self, tools: list[Tool]) -> None:
        if not tools:
            self.console.print("[dim]No tools registered.[/dim]")
            return

        table = Table(title="Registered Tools", show_lines=True)
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Parameters", no_wrap=True)
        table.add_column("Description")

        for t in tools:
            params = ", ".join((t.parameters.get("properties") or {}).keys()) or "-"
            table.add_row(t.name, params, t.description)

        self.console.print(table)

    def format_tool_info(self, tool: Tool) -> None:
        self.console.print(Panel(f"[bold]{tool.name}[/bold]\n\n{tool.description}", title=f"Tool: {tool.name}"))
        schema_json = json.dumps(tool.parameters, indent=2)
        self.console.print(Syntax(schema_json, "json", theme="monokai"))

    def format_model_list(self, models: list[CatalogModel], active: str | None = None) -> None:
        table = Table(title="Models")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Name")
        table.add_column("Context", justify="right")

        for m in models:
            marker = " [bold green]*[/bold green]" if m.id == active else ""
            table.add_row(f"{m.id}{marker}", m.name, f"{m.max_context_tokens:,}")

        self.console.print(table)

    def format_config(self, config: dict) -> None:
        config_json = json.dumps(config, indent=2, default=str)
        self.console.print(Syntax(config_json, "json", theme="monokai"))

    def format_tool_notice(self, notice: ToolNotice) -> None:
        self.console.print(f"\n  [yellow]{notice.text}[/yellow]")

    def format_turn_result(self, result: TurnResult, show_usage: bool = False) -> None:
        if not result.ok:
            self.console.print(f"[red]{result.message.text}[/red]")
            return
        unanswered = result.message.metadata.get("unanswered_tool_calls")
        if unanswered:
            self.console.print(
                f"[dim]  (tool calls not run: {', '.join(unanswered)})[/dim]"
            )
        if show_usage:
            u = result.usage
            self.console.print(
                f"[dim]  tokens: {u.prompt_tokens} in / {u.completion_tokens} out"
                f" / {u.total_tokens} total, rounds: {result.rounds}[/dim]"
            )

    def format_history(self, messages: list[Message]) -> None:
        if not messages:
            self.console.print("[dim]No messages yet.[/dim]")
            return

        for msg in messages:
            ts = msg.timestamp.strftime("%H:%M:%S")
            color = "red" if msg.status == MessageStatus.ERROR else ROLE_COLORS.get(msg.role, "white")
            content = msg.text[:100]
            if msg.tool_calls:
                calls = ", ".join(tc.name for tc in msg.tool_calls)
                content = f"{content} [calls: {calls}]".strip()
            line = Text(f"  {ts} {msg.role:>9s}  ", style=color)
            line.append(content)
            self.console.print(line)
