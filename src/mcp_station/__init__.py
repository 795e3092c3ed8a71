"""
MCP Station - import, install and run MCP server packages.

Manages third-party MCP (Model Context Protocol) server packages from
zip archives, normalizes them into a single runnable entry point and
exposes them to AI tools through their configuration files.
"""

__version__ = "1.0.0"
__description__ = "Desktop manager for MCP server packages"

# Public API
from mcp_station.core.exceptions import MCPStationError
from mcp_station.core.models import OperationResult, PackageRecord, PackageType

__all__ = [
    "__version__",
    "__description__",
    "MCPStationError",
    "OperationResult",
    "PackageRecord",
    "PackageType",
]
