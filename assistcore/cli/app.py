"""
Main CLI application for assist-core.

Usage:
    assist chat [--model PROVIDER:MODEL] [--profile NAME] [--screenshot PATH]
    assist models
    assist tools list|info
    assist config show|validate
    assist version
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional

import typer
from rich.console import Console

from assistcore.collaborators import EnvCredentialResolver, FileScreenCapture
from assistcore.config import AssistConfig, ConfigError, load_config, validate_config
from assistcore.llm.catalog import default_catalog
from assistcore.search import TavilyClient
from assistcore.tools.registry import ToolRegistry

app = typer.Typer(name="assist", help="Assist - streaming desktop chat assistant")
tools_app = typer.Typer(help="Tool management")
config_app = typer.Typer(help="Configuration management")

app.add_typer(tools_app, name="tools")
app.add_typer(config_app, name="config")

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load(profile: str | None = None, cli_overrides: dict | None = None) -> AssistConfig:
    try:
        return load_config(profile=profile, cli_overrides=cli_overrides)
    except (ConfigError, OSError, ValueError) as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(1)


def _setup_logging(cfg: AssistConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, cfg.logging.level.upper(), logging.WARNING)
    kwargs: dict = {
        "level": level,
        "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
    }
    if cfg.logging.file:
        kwargs["filename"] = cfg.logging.file
    else:
        kwargs["stream"] = sys.stderr
    logging.basicConfig(**kwargs)


def _credentials(cfg: AssistConfig) -> EnvCredentialResolver:
    overrides = {}
    if cfg.llm.api_key_env:
        overrides[cfg.llm.provider] = cfg.llm.api_key_env
    if cfg.search.api_key_env:
        overrides["tavily"] = cfg.search.api_key_env
    return EnvCredentialResolver(overrides)


def _search_client(cfg: AssistConfig, credentials: EnvCredentialResolver) -> TavilyClient | None:
    if not cfg.search.enabled:
        return None
    api_key = credentials.credential_for("tavily")
    if not api_key:
        console.print("[yellow]Warning:[/yellow] search enabled but no Tavily API key found.")
        return None
    return TavilyClient(api_key)


def _build_tools(cfg: AssistConfig, search: TavilyClient | None) -> ToolRegistry:
    """Register the built-in tools plus any enabled plugins."""
    from assistcore.tools.screenshot import ScreenshotTool
    from assistcore.tools.web_search import WebSearchTool

    _log = logging.getLogger(__name__)
    registry = ToolRegistry()
    screen = FileScreenCapture(cfg.tools.screenshot_path) if cfg.tools.screenshot_path else None
    if screen is not None:
        registry.register(ScreenshotTool(screen))
    if search is not None:
        registry.register(WebSearchTool(search, max_results=cfg.search.max_results))

    try:
        registry.load_plugins(
            enabled=cfg.tools.plugins_enabled,
            allow_tools=set(cfg.tools.allow_plugins) if cfg.tools.allow_plugins else None,
            screen=screen,
            search=search,
        )
    except Exception:
        _log.exception("Failed to load tool plugins")
    return registry


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def chat(
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id, e.g. anthropic:claude-sonnet-4-20250514"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    screenshot: Optional[str] = typer.Option(None, help="Image to attach to the first message"),
    usage: bool = typer.Option(False, "--usage", help="Print token usage after each turn"),
    limit: int = typer.Option(0, "--limit", help="Max turns for this conversation (0 = unlimited)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Start an interactive chat session."""
    from assistcore.cli.chat import ChatHandler
    from assistcore.collaborators import TurnCountUsageGate, load_image_file
    from assistcore.session.manager import SessionManager

    overrides: dict = {}
    catalog = default_catalog()
    if model:
        try:
            provider_id, model_name = catalog.validate(model)
        except ValueError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        overrides["llm.provider"] = provider_id
        overrides["llm.model"] = model_name
        known = catalog.get(model)
        if known is not None:
            overrides["llm.max_context_tokens"] = known.max_context_tokens

    cfg = _load(profile, overrides)
    _setup_logging(cfg, verbose)

    async def _run():
        credentials = _credentials(cfg)
        search = _search_client(cfg, credentials)
        manager = SessionManager(
            tools=_build_tools(cfg, search),
            credentials=credentials,
            options=cfg.session_options(),
            search=search,
        )
        try:
            session_id = manager.create_session(cfg.model_config())
        except KeyError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

        handler = ChatHandler(
            manager.get(session_id),
            catalog,
            usage_gate=TurnCountUsageGate(limit),
            console=console,
            show_usage=usage,
        )
        if screenshot:
            handler.pending_image = load_image_file(screenshot).to_attachment()
        try:
            await handler.run_loop()
        finally:
            await manager.close()

    asyncio.run(_run())


@app.command()
def models():
    """List the models in the catalog."""
    from assistcore.cli.output import OutputFormatter

    cfg = _load()
    formatter = OutputFormatter(console)
    formatter.format_model_list(
        default_catalog().list_all(), active=f"{cfg.llm.provider}:{cfg.llm.model}"
    )
    console.print("[dim]Local models: use local:<name> for any model your Ollama server has.[/dim]")


@tools_app.command("list")
def tools_list():
    """List registered tools."""
    from assistcore.cli.output import OutputFormatter

    cfg = _load()
    search = _search_client(cfg, _credentials(cfg))
    formatter = OutputFormatter(console)
    formatter.format_tool_list(_build_tools(cfg, search).list())


@tools_app.command("info")
def tools_info(tool_name: str = typer.Argument(..., help="Tool name")):
    """Show tool details and schema."""
    from assistcore.cli.output import OutputFormatter

    cfg = _load()
    registry = _build_tools(cfg, _search_client(cfg, _credentials(cfg)))
    tool = registry.get(tool_name)
    if not tool:
        console.print(f"[red]Tool not found:[/red] {tool_name}")
        raise typer.Exit(1)

    formatter = OutputFormatter(console)
    formatter.format_tool_info(tool)


@config_app.command("show")
def config_show(profile: Optional[str] = typer.Option(None, help="Config profile name")):
    """Show effective config."""
    from assistcore.cli.output import OutputFormatter

    cfg = _load(profile)
    formatter = OutputFormatter(console)
    formatter.format_config(cfg.to_dict())


@config_app.command("validate")
def config_validate(profile: Optional[str] = typer.Option(None, help="Config profile name")):
    """Validate config and report any problems."""
    cfg = _load(profile)
    problems = validate_config(cfg)
    if problems:
        console.print("[red]Config validation failed:[/red]")
        for p in problems:
            console.print(f"  - {p}")
        raise typer.Exit(1)

    console.print("[green]Config is valid.[/green]")
    if cfg.source:
        console.print(f"  Loaded from: {cfg.source}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    console.print(f"  Model: {cfg.llm.provider}:{cfg.llm.model}")
    console.print(f"  Retry: {cfg.retry.max_attempts} attempts, base {cfg.retry.base_delay_seconds}s")
    console.print(f"  Search enabled: {cfg.search.enabled}")


@app.command()
def version():
    """Show version."""
    console.print("assist-core v0.1.0")


def main():
    app()


if __name__ == "__main__":
    main()
