"""Interactive chat session handler."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from rich.console import Console

from assistcore.cli.output import OutputFormatter
from assistcore.collaborators import UsageGate, load_image_file
from assistcore.llm.catalog import ModelCatalog
from assistcore.llm.errors import SessionBusyError
from assistcore.llm.types import ImageAttachment
from assistcore.session.events import TextFragment, ToolNotice
from assistcore.session.session import ChatSession

logger = logging.getLogger(__name__)


class ChatHandler:
    """
    Manages the interactive chat loop.

    Handles streaming output and inline commands.  A screenshot loaded
    with ``/screenshot`` rides along with the next message only.
    """

    def __init__(
        self,
        session: ChatSession,
        catalog: ModelCatalog,
        usage_gate: UsageGate | None = None,
        console: Console | None = None,
        show_usage: bool = False,
    ) -> None:
        self.session = session
        self.catalog = catalog
        self.usage_gate = usage_gate
        self.console = console or Console()
        self.formatter = OutputFormatter(self.console)
        self.show_usage = show_usage
        self.pending_image: ImageAttachment | None = None
        self._running = True

    async def handle_command(self, command: str) -> bool:
        """
        Handle inline commands. Returns True if the command was handled.
        """
        parts = command.strip().split(None, 1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        if cmd == "/quit":
            self._running = False
            self.console.print("[dim]Goodbye.[/dim]")
            return True

        if cmd == "/history":
            self.formatter.format_history(self.session.history)
            return True

        if cmd == "/tools":
            self.formatter.format_tool_list(self.session.registry.list())
            return True

        if cmd == "/screenshot":
            if not arg:
                self.console.print("  Usage: /screenshot <path to image>")
                return True
            try:
                self.pending_image = load_image_file(arg).to_attachment()
            except OSError as e:
                self.console.print(f"  [red]Error:[/red] cannot read {arg}: {e}")
                return True
            self.console.print(
                "  Screenshot captured. It will be included with your next message."
            )
            return True

        if cmd == "/switch":
            await self._switch(arg)
            return True

        if cmd == "/help":
            self.console.print(
                "  [bold]Commands:[/bold]\n"
                "  /screenshot <path>     - Attach an image to the next message\n"
                "  /switch provider:model - Switch model\n"
                "  /tools                 - List available tools\n"
                "  /history               - Show this conversation\n"
                "  /help                  - Show this help\n"
                "  /quit                  - Exit the chat\n"
            )
            return True

        return False

    async def _switch(self, arg: str) -> None:
        current = self.session.model_config
        if not arg:
            self.formatter.format_model_list(self.catalog.list_all(), active=current.model_id)
            self.console.print(f"  Active: {current.model_id}")
            return
        try:
            provider, model = self.catalog.validate(arg)
        except ValueError as e:
            self.console.print(f"  [red]Error:[/red] {e}")
            return

        known = self.catalog.get(arg)
        config = replace(
            current,
            provider=provider,
            model=model,
            credential="",
            api_base=current.api_base if provider == current.provider else "",
            max_context_tokens=known.max_context_tokens if known else current.max_context_tokens,
        )
        try:
            await self.session.switch_model(config)
        except (SessionBusyError, KeyError) as e:
            self.console.print(f"  [red]Error:[/red] {e}")
            return
        self.console.print(f"  Switched to model: [bold]{config.model_id}[/bold]")

    async def handle_input(self, user_input: str) -> None:
        """Submit one turn and stream the response."""
        if self.usage_gate is not None:
            decision = await self.usage_gate.check(self.session.session_id)
            if not decision.allowed:
                self.console.print("[yellow]Usage limit reached for this conversation.[/yellow]")
                return
            await self.usage_gate.record(self.session.session_id)

        image, self.pending_image = self.pending_image, None
        stream = self.session.submit_turn(user_input, image)
        try:
            async for event in stream:
                if isinstance(event, TextFragment):
                    self.console.print(event.text, end="", markup=False)
                elif isinstance(event, ToolNotice):
                    self.formatter.format_tool_notice(event)
        finally:
            await stream.aclose()

        # Newline after streaming
        self.console.print()
        if stream.result is not None:
            self.formatter.format_turn_result(stream.result, show_usage=self.show_usage)

    async def run_loop(self) -> None:
        """Main interactive loop."""
        self.console.print(
            "[bold]Assist[/bold] - Desktop Chat Assistant\n"
            f"[dim]Model: {self.session.model_config.model_id}. "
            "Type /help for commands, /quit to exit.[/dim]\n"
        )

        loop = asyncio.get_running_loop()
        while self._running:
            try:
                user_input = await loop.run_in_executor(
                    None, lambda: input("you> ").strip()
                )
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/dim]")
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                handled = await self.handle_command(user_input)
                if handled:
                    continue

            self.console.print("[dim]assistant>[/dim] ", end="")
            await self.handle_input(user_input)
