"""
Display helper functions for CLI commands.
"""

from typing import List

from rich.console import Console
from rich.table import Table

from mcp_station.core.models import EventKind, OperationResult, PackageEvent, PackageRecord

console = Console()


def packages_table(records: List[PackageRecord]) -> Table:
    """Build the package listing table."""
    table = Table(
        title=f"MCP Servers ({len(records)} total)",
        show_header=True,
        header_style="bold cyan",
        title_style="bold cyan"
    )

    table.add_column("ID", style="green")
    table.add_column("Name", style="white")
    table.add_column("Type", style="blue", width=8)
    table.add_column("Status", style="white")
    table.add_column("AI Tools", style="yellow")

    for record in records:
        if record.running:
            status = "▶ Running"
        elif record.installed:
            status = "✅ Installed"
        else:
            status = "○ Imported"
        if record.requires_configuration():
            status += " ⚙"

        tools = ", ".join(
            f"{tool.name}{' ✓' if tool.connected else ''}" for tool in record.ai_tools
        )
        table.add_row(record.id, record.name, record.type.value, status, tools or "-")

    return table


def print_result(result: OperationResult) -> None:
    """Render an operation result with its warnings and failure details."""
    for warning in result.warnings:
        console.print(f"⚠ {warning}", style="yellow", markup=False, highlight=False)

    if result.success:
        console.print(f"✅ {result.message}", style="green", markup=False)
        return

    console.print(f"❌ {result.message}", style="red", markup=False)

    if result.requires_config:
        console.print("[yellow]Configuration required. Missing fields:[/yellow]")
        properties = result.config_schema.properties if result.config_schema else {}
        for name in result.missing_fields:
            prop = properties.get(name)
            description = f" - {prop.description}" if prop and prop.description else ""
            console.print(f"   • [cyan]{name}[/cyan]{description}")
        if result.mcp_id:
            console.print(f"[dim]Set them with: mcp-station settings set {result.mcp_id} KEY=VALUE[/dim]")

    if result.requires_credentials:
        console.print(
            f"[dim]Save credentials with: mcp-station credentials {result.tool_id} KEY=VALUE[/dim]"
        )


def render_event(event: PackageEvent) -> None:
    """Print a package event as it arrives."""
    prefix = f"[{event.mcp_id}] "
    if event.kind == EventKind.OUTPUT:
        console.print(prefix + event.data.rstrip("\n"), markup=False, highlight=False)
    elif event.kind == EventKind.ERROR:
        console.print(prefix + event.data.rstrip("\n"), style="red", markup=False, highlight=False)
    elif event.kind == EventKind.WARNING:
        console.print(prefix + event.data.rstrip("\n"), style="yellow", markup=False, highlight=False)
    elif event.kind == EventKind.STOPPED:
        console.print(f"{prefix}stopped (exit code {event.code})", style="dim", markup=False)
