"""Core MCP Station functionality."""

from mcp_station.core.exceptions import (
    MCPStationError, ClassificationError, ConfigurationRequiredError,
    CredentialsRequiredError, ExternalConfigError, InstallError,
    PackageNotFoundError, ProcessError, StoreError, ValidationError,
)
from mcp_station.core.models import (
    AITool, ConfigSchema, OperationResult, PackageEvent, PackageRecord, PackageType,
)

__all__ = [
    "MCPStationError",
    "ClassificationError",
    "ConfigurationRequiredError",
    "CredentialsRequiredError",
    "ExternalConfigError",
    "InstallError",
    "PackageNotFoundError",
    "ProcessError",
    "StoreError",
    "ValidationError",
    "AITool",
    "ConfigSchema",
    "OperationResult",
    "PackageEvent",
    "PackageRecord",
    "PackageType",
]
