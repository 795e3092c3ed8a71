"""
Error handling utilities for CLI commands.
"""

import functools
import sys
from typing import Dict, Iterable

import click
from rich.console import Console
from rich.markup import escape

from mcp_station.core.exceptions import MCPStationError
from mcp_station.utils.logging import get_logger

console = Console()
logger = get_logger(__name__)


def handle_errors(func):
    """Decorator to handle common CLI errors."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user[/yellow]")
            sys.exit(1)
        except MCPStationError as e:
            logger.debug("Command failed", exc_info=True)
            console.print(f"[red]Error: {escape(e.message)}[/red]")
            sys.exit(1)
        except click.ClickException:
            raise
        except Exception as e:
            logger.debug("Unexpected error", exc_info=True)
            console.print(f"[red]Error: {escape(str(e))}[/red]")
            console.print("[dim]Use --debug for more details[/dim]")
            sys.exit(1)

    return wrapper


def parse_assignments(pairs: Iterable[str]) -> Dict[str, str]:
    """Parse KEY=VALUE arguments into a dict."""
    values = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{pair}'")
        key, value = pair.split("=", 1)
        key = key.strip()
        if not key:
            raise click.BadParameter(f"Empty key in '{pair}'")
        values[key] = value
    return values
