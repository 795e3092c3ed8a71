"""
Main CLI interface for MCP Station.

Provides the command-line interface using Click with rich output for
importing, installing, running and uninstalling MCP server packages.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from mcp_station import __version__
from mcp_station.cli.helpers import (
    handle_errors,
    packages_table,
    parse_assignments,
    print_result,
    render_event,
)
from mcp_station.core.exceptions import PackageNotFoundError
from mcp_station.core.manager import RegistryManager
from mcp_station.utils.config import Config, reload_config
from mcp_station.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)


class CLIContext:
    """CLI context for passing state between commands."""

    def __init__(self):
        self.config: Optional[Config] = None
        self.manager: Optional[RegistryManager] = None

    def get_manager(self) -> RegistryManager:
        """Get registry manager instance."""
        if self.manager is None:
            self.manager = RegistryManager(config=self.config)
        return self.manager


# Global CLI context
cli_context = CLIContext()


@click.group()
@click.option(
    "--debug", "-d",
    is_flag=True,
    help="Enable debug logging"
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    help="Enable verbose output"
)
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, dir_okay=True),
    help="Configuration directory path"
)
@click.version_option(version=__version__, prog_name="MCP Station")
def cli(debug: bool, verbose: bool, config_dir: Optional[str]):
    """
    Import, install and run MCP server packages.

    Packages are zip archives holding either a package.json or a
    manifest.json. Installed packages can be exposed to AI tools through
    their MCP configuration file.
    """
    overrides = {}
    if config_dir:
        overrides["config_dir"] = config_dir
    if debug:
        overrides["debug"] = True
    if verbose:
        overrides["verbose"] = True

    config = reload_config(**overrides)

    console_level = "DEBUG" if debug else "INFO" if verbose else config.logging.console_level
    setup_logging(
        enabled=config.logging.enabled,
        level=config.logging.level,
        console_level=console_level,
        log_file=config.get_log_file(),
        format_type=config.logging.format_type,
        enable_rich=config.logging.enable_rich,
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count,
        force=True,
    )

    cli_context.config = config
    cli_context.manager = None


@cli.command("list")
@click.option(
    "--output-format", "-o",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format"
)
@handle_errors
def list_cmd(output_format: str):
    """List managed MCP servers."""
    manager = cli_context.get_manager()
    records = asyncio.run(manager.list_packages())

    if output_format == "json":
        click.echo(json.dumps([record.to_dict() for record in records], indent=2))
        return

    if not records:
        console.print("[yellow]No MCP servers imported[/yellow]")
        console.print("[dim]💡 Import one with: [cyan]mcp-station import <archive.zip>[/cyan][/dim]")
        return

    console.print("")
    console.print(packages_table(records))
    console.print("")


@cli.command("import")
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@handle_errors
def import_cmd(archive: Path):
    """Import an MCP package from a zip archive."""
    manager = cli_context.get_manager()
    result = asyncio.run(manager.import_package(archive))
    print_result(result)

    if not result.success:
        sys.exit(1)

    console.print(f"[dim]ID: {result.mcp_id}  Type: {result.mcp_type.value}[/dim]")
    if result.has_config:
        console.print(f"[dim]This server needs configuration: mcp-station settings set {result.mcp_id} KEY=VALUE[/dim]")
    console.print(f"[dim]💡 Install it with: [cyan]mcp-station install {result.mcp_id}[/cyan][/dim]")


@cli.command()
@click.argument("package_id")
@click.option("--tool", "-t", "tools", multiple=True, help="AI tool to expose the server to (can be used multiple times)")
@handle_errors
def install(package_id: str, tools: Tuple[str, ...]):
    """Install an imported MCP server."""
    manager = cli_context.get_manager()
    unsubscribe = manager.events.subscribe(render_event)
    try:
        result = asyncio.run(manager.install(package_id, list(tools)))
    finally:
        unsubscribe()

    print_result(result)
    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("package_id")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
@handle_errors
def uninstall(package_id: str, force: bool):
    """Uninstall an MCP server and remove its files."""
    if not force:
        from rich.prompt import Confirm
        if not Confirm.ask(f"Uninstall '{package_id}'?"):
            console.print("[dim]Uninstall cancelled[/dim]")
            return

    manager = cli_context.get_manager()
    result = asyncio.run(manager.uninstall(package_id))
    print_result(result)
    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("package_id")
@handle_errors
def run(package_id: str):
    """Start an MCP server and stream its output until it exits."""
    manager = cli_context.get_manager()

    async def run_async() -> Optional[int]:
        unsubscribe = manager.events.subscribe(render_event)
        try:
            result = await manager.start(package_id)
            print_result(result)
            if not result.success:
                return None
            return await manager.supervisor.wait(package_id)
        finally:
            unsubscribe()
            await manager.shutdown()

    try:
        code = asyncio.run(run_async())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped by user[/yellow]")
        return

    if code is None:
        sys.exit(1)
    sys.exit(code)


@cli.group()
def settings():
    """Show or change MCP server settings."""


@settings.command("show")
@click.argument("package_id")
@handle_errors
def settings_show(package_id: str):
    """Show the saved settings of an MCP server."""
    manager = cli_context.get_manager()
    record = asyncio.run(manager.get_package(package_id))
    if record is None:
        raise PackageNotFoundError(f"MCP server '{package_id}' not found")

    values = asyncio.run(manager.get_settings(package_id))
    properties = record.config_schema.properties if record.config_schema else {}
    required = record.config_schema.required_fields() if record.config_schema else []

    table = Table(title=f"Settings for {record.name}", show_header=True, header_style="bold cyan")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="white")
    table.add_column("Description", style="dim")

    for key in list(dict.fromkeys([*properties, *values])):
        prop = properties.get(key)
        value = values.get(key)
        if value is None:
            shown = "[red]missing[/red]" if key in required else "[dim]-[/dim]"
        else:
            shown = escape(str(value))
        table.add_row(key, shown, prop.description if prop and prop.description else "")

    console.print(table)


@settings.command("set")
@click.argument("package_id")
@click.argument("assignments", nargs=-1, required=True)
@click.option("--replace", is_flag=True, help="Replace all settings instead of updating the given keys")
@handle_errors
def settings_set(package_id: str, assignments: Tuple[str, ...], replace: bool):
    """Save settings as KEY=VALUE pairs."""
    manager = cli_context.get_manager()
    values = parse_assignments(assignments)
    if not replace:
        values = {**asyncio.run(manager.get_settings(package_id)), **values}

    result = asyncio.run(manager.save_settings(package_id, values))
    print_result(result)
    if not result.success:
        sys.exit(1)


@cli.command("toggle-tool")
@click.argument("package_id")
@click.argument("tool_id")
@handle_errors
def toggle_tool(package_id: str, tool_id: str):
    """Connect or disconnect an AI tool."""
    manager = cli_context.get_manager()
    result = asyncio.run(manager.toggle_tool_connection(package_id, tool_id))
    print_result(result)
    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("tool_id")
@click.argument("assignments", nargs=-1, required=True)
@handle_errors
def credentials(tool_id: str, assignments: Tuple[str, ...]):
    """Save credentials for an AI tool as KEY=VALUE pairs."""
    manager = cli_context.get_manager()
    result = asyncio.run(manager.save_credentials(tool_id, parse_assignments(assignments)))
    print_result(result)
    if not result.success:
        sys.exit(1)


@cli.command()
@handle_errors
def exposed():
    """Show the entries written to the AI-tool configuration file."""
    manager = cli_context.get_manager()
    entries = manager.synchronizer.read_entries()

    if not entries:
        console.print(f"[yellow]No MCP servers exposed in {manager.synchronizer.path}[/yellow]")
        return

    table = Table(title=str(manager.synchronizer.path), show_header=True, header_style="bold cyan")
    table.add_column("Key", style="green")
    table.add_column("Command", style="white")
    table.add_column("Env", style="dim")
    for key, entry in entries.items():
        if not isinstance(entry, dict):
            continue
        command = " ".join([str(entry.get("command", ""))] + [str(a) for a in entry.get("args", [])])
        env = ", ".join(sorted((entry.get("env") or {}).keys()))
        table.add_row(key, command, env or "-")

    console.print(table)


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
