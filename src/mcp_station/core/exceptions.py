"""
Exception classes for MCP Station.

Defines the exception hierarchy raised by the inspection, installation,
synchronization and process supervision layers. The registry manager
turns these into structured operation results.
"""

from typing import Any, Dict, List, Optional


class MCPStationError(Exception):
    """Base exception for all MCP Station errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize MCPStationError.

        Args:
            message: Error message
            error_code: Optional error code for categorization
            details: Optional additional error details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        """String representation of the error."""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary representation."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ClassificationError(MCPStationError):
    """Package could not be classified (unknown shape or malformed manifest)."""
    pass


class ValidationError(MCPStationError):
    """Data validation errors."""
    pass


class PackageNotFoundError(MCPStationError):
    """No package record with the requested id."""
    pass


class InstallError(MCPStationError):
    """Installation could not proceed at all."""
    pass


class ExternalConfigError(MCPStationError):
    """Reading or writing the external AI-tool configuration failed."""
    pass


class ProcessError(MCPStationError):
    """Starting or stopping a package process failed."""
    pass


class StoreError(MCPStationError):
    """Registry store persistence errors."""
    pass


class ConfigurationRequiredError(MCPStationError):
    """Raised when a package is missing required configuration values."""

    def __init__(
        self,
        message: str,
        config_schema: Optional[Dict[str, Any]] = None,
        missing_fields: Optional[List[str]] = None,
        error_code: Optional[str] = "requires_config",
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize ConfigurationRequiredError.

        Args:
            message: Error message
            config_schema: The package's configuration schema
            missing_fields: Required fields that have no value
            error_code: Optional error code
            details: Optional additional details
        """
        super().__init__(message, error_code, details)
        self.config_schema = config_schema or {}
        self.missing_fields = missing_fields or []


class CredentialsRequiredError(MCPStationError):
    """Raised when an AI tool needs credentials before it can be connected."""

    def __init__(
        self,
        message: str,
        tool_id: str,
        error_code: Optional[str] = "requires_credentials",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code, details)
        self.tool_id = tool_id
