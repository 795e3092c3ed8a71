"""Utility modules for MCP Station."""

from mcp_station.utils.logging import get_logger, setup_logging
from mcp_station.utils.config import Config, get_config
from mcp_station.utils.validators import (
    is_credential_key, slugify_package_name,
    validate_archive_path, validate_package_id,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "Config",
    "get_config",
    "is_credential_key",
    "slugify_package_name",
    "validate_archive_path",
    "validate_package_id",
]
