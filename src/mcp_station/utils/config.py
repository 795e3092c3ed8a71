"""
Configuration management for MCP Station.

Provides hierarchical configuration loading with validation using Pydantic.
Supports TOML configuration files and environment variable overrides
(``MCP_STATION_`` prefix, ``__`` as nested delimiter).
"""

import os
from pathlib import Path
from typing import Any, List, Optional, Union

import toml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from mcp_station.utils.logging import get_logger

logger = get_logger(__name__)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    enabled: bool = Field(default=True, description="Enable logging completely")
    level: str = Field(default="INFO", description="File logging level")
    console_level: str = Field(default="WARNING", description="Console logging level")
    format_type: str = Field(default="text", description="Log format (text/json)")
    file: Optional[str] = Field(default="mcp-station.log", description="Log file path")
    enable_rich: bool = Field(default=True, description="Enable Rich console output")
    max_bytes: int = Field(default=10 * 1024 * 1024, description="Max log file size")
    backup_count: int = Field(default=5, description="Number of backup files")

    @field_validator("level", "console_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate logging level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("format_type")
    @classmethod
    def validate_format_type(cls, v: str) -> str:
        """Validate format type."""
        if v not in ["text", "json"]:
            raise ValueError(f"Invalid format type: {v}")
        return v


class RuntimeConfig(BaseModel):
    """Executables used to install, build and run packages."""

    node_command: str = Field(default="node", description="JavaScript runtime used to launch packages")
    npm_command: str = Field(default="npm", description="Dependency installer")
    npx_command: str = Field(default="npx", description="Package runner used for direct compiler calls")
    command_timeout: Optional[float] = Field(
        default=600.0,
        description="Timeout in seconds for install/build commands (None disables it)",
    )


class InstallerConfig(BaseModel):
    """Installation pipeline configuration."""

    canonical_entry: str = Field(
        default="bin/index.js",
        description="Normalized entry point, relative to the package directory",
    )
    output_dirs: List[str] = Field(
        default_factory=lambda: ["dist", "build", "lib", "out"],
        description="Conventional compiled-output directories searched for an entry file",
    )
    install_dependencies: bool = Field(default=True, description="Run the dependency installer")

    @field_validator("canonical_entry")
    @classmethod
    def validate_canonical_entry(cls, v: str) -> str:
        """Canonical entry must be a relative path inside the package."""
        path = Path(v)
        if path.is_absolute() or ".." in path.parts:
            raise ValueError(f"Canonical entry must be a relative path: {v}")
        return path.as_posix()


class ExternalConfigConfig(BaseModel):
    """External AI-tool configuration file settings."""

    path: str = Field(default="~/.cursor/mcp.json", description="External MCP configuration file")
    backup: bool = Field(default=True, description="Back up the file before overwriting it")
    max_backups: int = Field(default=5, description="Number of backups to keep")


class UninstallConfig(BaseModel):
    """Uninstall behaviour."""

    stop_grace_period: float = Field(default=1.0, description="Seconds to wait for a stopped process")
    removal_retries: int = Field(default=3, description="Directory removal attempts on lock errors")
    retry_backoff: float = Field(default=0.5, description="Base backoff in seconds between attempts")

    @field_validator("removal_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        """At least one removal attempt is always made."""
        if v < 1:
            raise ValueError("removal_retries must be at least 1")
        return v


class Config(BaseSettings):
    """Main configuration class."""

    debug: bool = Field(default=False, description="Enable debug mode")
    verbose: bool = Field(default=False, description="Enable verbose output")
    config_dir: str = Field(
        default="~/.config/mcp-station",
        description="Configuration directory"
    )
    packages_dir: Optional[str] = Field(
        default=None,
        description="Managed package directory (defaults to <config_dir>/mcp-servers)"
    )
    store_file: str = Field(
        default="mcp-station-config.json",
        description="Registry store file name, relative to the config directory"
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    installer: InstallerConfig = Field(default_factory=InstallerConfig)
    external: ExternalConfigConfig = Field(default_factory=ExternalConfigConfig)
    uninstall: UninstallConfig = Field(default_factory=UninstallConfig)

    model_config = {
        "env_prefix": "MCP_STATION_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    def get_config_dir(self) -> Path:
        """Get configuration directory path."""
        return Path(os.path.expanduser(self.config_dir))

    def get_packages_dir(self) -> Path:
        """Get the directory holding managed packages."""
        if self.packages_dir:
            return Path(os.path.expanduser(self.packages_dir))
        return self.get_config_dir() / "mcp-servers"

    def get_store_path(self) -> Path:
        """Get registry store file path."""
        store_path = Path(os.path.expanduser(self.store_file))
        if not store_path.is_absolute():
            store_path = self.get_config_dir() / store_path
        return store_path

    def get_log_file(self) -> Optional[Path]:
        """Get log file path."""
        if self.logging.file:
            log_path = Path(os.path.expanduser(self.logging.file))
            if not log_path.is_absolute():
                log_path = self.get_config_dir() / log_path
            return log_path
        return None

    def get_external_config_path(self) -> Path:
        """Get the external AI-tool configuration path."""
        return Path(os.path.expanduser(self.external.path))


class ConfigManager:
    """Configuration manager with hierarchical loading."""

    def __init__(self):
        self._config: Optional[Config] = None

    def load_config(
        self,
        config_files: Optional[List[Union[str, Path]]] = None,
        **overrides: Any,
    ) -> Config:
        """
        Load configuration from multiple sources.

        Later files override earlier ones; keyword overrides win over files.

        Args:
            config_files: List of configuration files to load
            **overrides: Configuration overrides

        Returns:
            Loaded configuration
        """
        if self._config is not None:
            return self._config

        if config_files is None:
            config_files = [
                "/etc/mcp-station/config.toml",
                "~/.config/mcp-station/config.toml",
                "./.mcp-station.toml",
            ]

        config_data: dict = {}

        for config_file in config_files:
            file_path = Path(os.path.expanduser(str(config_file)))
            if file_path.exists():
                try:
                    file_data = toml.load(file_path)
                    _deep_update(config_data, file_data)
                    logger.debug(f"Loaded configuration from {file_path}")
                except (toml.TomlDecodeError, OSError) as e:
                    logger.warning(f"Failed to load config from {file_path}: {e}")

        _deep_update(config_data, overrides)

        self._config = Config(**config_data)

        return self._config

    def get_config(self) -> Config:
        """Get current configuration."""
        if self._config is None:
            return self.load_config()
        return self._config

    def reload_config(self, **overrides: Any) -> Config:
        """Reload configuration."""
        self._config = None
        return self.load_config(**overrides)


def _deep_update(target: dict, source: dict) -> dict:
    """Merge nested tables so a later file can override single keys of a section."""
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_update(target[key], value)
        else:
            target[key] = value
    return target


# Global configuration manager
_config_manager = ConfigManager()

# Convenience functions
load_config = _config_manager.load_config
get_config = _config_manager.get_config
reload_config = _config_manager.reload_config
