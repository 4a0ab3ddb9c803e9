"""
mcpbind CLI - Generate and check MCP tool bindings.

Run `mcpbind ensure` before starting an agent; it regenerates missing or
stale bindings and falls back to the previous generation when a host is
unreachable.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from mcpbind import __version__
from mcpbind.errors import MCPBindError
from mcpbind.validation.config import Config
from mcpbind.wrappers.client import ClientBridge
from mcpbind.wrappers.freshness import FreshnessOrchestrator
from mcpbind.wrappers.generator import BindingGenerator
from mcpbind.wrappers.schema import FreshnessState, GenerationResult

console = Console()

_STATE_STYLE = {
    FreshnessState.MISSING: "red",
    FreshnessState.STALE: "yellow",
    FreshnessState.FRESH: "green",
    FreshnessState.READY: "green",
}


def _setup_logging(verbose: bool, quiet: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False, show_time=False)],
        force=True,
    )


def _load_config(ctx: click.Context) -> Config:
    try:
        config = Config.load(ctx.obj["config_path"])
        config.host_names()
    except MCPBindError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)
    return config


def _generator(ctx: click.Context, config: Config, timeout_ms: Optional[int] = None) -> BindingGenerator:
    output_dir = ctx.obj["output_dir"] or config.output_path
    return BindingGenerator(
        output_dir,
        operation_timeout_ms=timeout_ms or config.settings.operation_timeout_ms,
    )


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to .mcp.json")
@click.option("--output-dir", type=click.Path(path_type=Path), help="Bindings root (default: servers/)")
@click.option("--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, version: bool, config_path: Optional[Path], output_dir: Optional[Path], verbose: bool) -> None:
    """
    mcpbind - Typed Python stubs for MCP tools.

    \b
    Examples:
        mcpbind generate              # (Re)generate every host
        mcpbind ensure --timeout 10000
        mcpbind status
        mcpbind call github github__get_me
    """
    ctx.ensure_object(dict)
    ctx.obj.update(config_path=config_path, output_dir=output_dir, verbose=verbose)

    if version:
        console.print(f"mcpbind v{__version__}")
        ctx.exit()
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--fallback", is_flag=True, help="Use existing bindings for hosts that fail")
@click.option("--timeout", "timeout_ms", type=int, help="Per-operation timeout in ms")
@click.option("--host", "hosts", multiple=True, help="Only this host (repeatable)")
@click.pass_context
def generate(ctx: click.Context, fallback: bool, timeout_ms: Optional[int], hosts: Tuple[str, ...]) -> None:
    """Connect to MCP hosts and regenerate their bindings."""
    _setup_logging(ctx.obj["verbose"])
    config = _load_config(ctx)
    generator = _generator(ctx, config, timeout_ms)

    console.print("[bold]=== MCP Wrapper Generator ===[/bold]")
    if fallback:
        console.print("[dim]Running in fallback mode (will use existing wrappers on failure)[/dim]")

    try:
        generator.check_layout(config.host_names())
        descriptors = [config.get_host(name) for name in (hosts or config.host_names())]
    except MCPBindError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)

    outcomes = asyncio.run(generator.generate_all(descriptors))
    orchestrator = FreshnessOrchestrator(config, generator=generator)

    failed = False
    for name, outcome in outcomes.items():
        if isinstance(outcome, GenerationResult):
            meta = outcome.metadata
            console.print(f"  [green]{name}: {meta.tool_count} tools ({meta.generation_duration_ms}ms)[/green]")
            for dup in outcome.duplicates:
                console.print(f"    [yellow]duplicate short name {dup}[/yellow]")
            continue

        console.print(f"  [red]{name}: {outcome}[/red]")
        status = orchestrator.check_status(name)
        if fallback and status.has_bindings:
            age = f"Generated {status.metadata.generated_at}" if status.metadata else "Unknown age"
            console.print(f"    Fallback: Using existing wrappers. {age} ({status.tool_count} tools)")
        else:
            if fallback:
                console.print(f"    [red]No existing wrappers found for {name}. Cannot fallback.[/red]")
            failed = True

    if failed:
        console.print("\n[red]=== Wrapper generation failed ===[/red]")
        sys.exit(1)
    if all(isinstance(o, GenerationResult) for o in outcomes.values()):
        console.print("\n[green]=== Wrapper generation complete (all servers successful) ===[/green]")
    else:
        console.print("\n[yellow]=== Wrapper generation complete (some servers using cached fallback) ===[/yellow]")


@cli.command()
@click.option("--no-regenerate", is_flag=True, help="Only check; never contact hosts")
@click.option("--force", is_flag=True, help="Regenerate fresh hosts too")
@click.option("--timeout", "timeout_ms", type=int, help="Timeout for the whole regeneration batch in ms")
@click.option("--quiet", is_flag=True, help="Only print problems")
@click.pass_context
def ensure(ctx: click.Context, no_regenerate: bool, force: bool, timeout_ms: Optional[int], quiet: bool) -> None:
    """Make sure bindings exist and are fresh before running an agent."""
    _setup_logging(ctx.obj["verbose"], quiet)
    config = _load_config(ctx)
    orchestrator = FreshnessOrchestrator(config, generator=_generator(ctx, config))

    result = asyncio.run(
        orchestrator.ensure_bindings(
            force_regenerate=force,
            timeout_ms=timeout_ms,
            allow_regeneration=not no_regenerate,
        )
    )

    for warning in result.warnings:
        console.print(f"[yellow]Warning: {warning}[/yellow]")
    for error in result.errors:
        console.print(f"[red]Error: {error}[/red]")

    if not quiet:
        table = Table(title="Wrappers")
        table.add_column("Host", style="cyan")
        table.add_column("Ready")
        table.add_column("Tools", justify="right")
        table.add_column("Notes", style="dim")
        for report in result.hosts:
            ready = "[green]yes[/green]" if report.ready else "[red]no[/red]"
            notes = []
            if report.regenerated:
                notes.append("regenerated")
            if report.degraded:
                notes.append("degraded")
            table.add_row(report.host_name, ready, str(report.tool_count), ", ".join(notes))
        console.print(table)

    if not result.success:
        console.print("[red]Failed to ensure wrappers are available[/red]")
        sys.exit(1)
    if not quiet:
        console.print("[green]All wrappers available[/green]")


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show freshness of each host's bindings."""
    _setup_logging(ctx.obj["verbose"], quiet=True)
    config = _load_config(ctx)
    orchestrator = FreshnessOrchestrator(config, generator=_generator(ctx, config))

    table = Table(title=f"Bindings in {orchestrator.generator.output_dir}")
    table.add_column("Host", style="cyan")
    table.add_column("State")
    table.add_column("Tools", justify="right")
    table.add_column("Age", style="dim")
    for host in orchestrator.statuses():
        style = _STATE_STYLE[host.state]
        table.add_row(host.server_name, f"[{style}]{host.state.value}[/{style}]", str(host.tool_count), host.age_text())
    console.print(table)


@cli.command()
@click.argument("host")
@click.argument("tool")
@click.argument("arguments", required=False, default="{}")
@click.pass_context
def call(ctx: click.Context, host: str, tool: str, arguments: str) -> None:
    """Invoke TOOL on HOST with a JSON object of ARGUMENTS."""
    _setup_logging(ctx.obj["verbose"], quiet=True)
    try:
        payload = json.loads(arguments)
    except ValueError as e:
        console.print(f"[red]Arguments must be JSON: {e}[/red]")
        sys.exit(2)
    if not isinstance(payload, dict):
        console.print("[red]Arguments must be a JSON object[/red]")
        sys.exit(2)

    config = _load_config(ctx)

    async def _run():
        async with ClientBridge(config) as bridge:
            return await bridge.invoke(host, tool, payload)

    try:
        output = asyncio.run(_run())
    except MCPBindError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)

    if isinstance(output, (dict, list)):
        console.print_json(data=output)
    elif isinstance(output, str):
        console.print(output, markup=False)
    else:
        console.print(repr(output), markup=False)


def main() -> None:
    """Entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
