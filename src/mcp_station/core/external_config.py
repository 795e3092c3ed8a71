"""
External AI-tool configuration synchronization.

Keeps the ``mcpServers`` map of the external configuration file (by
default ``~/.cursor/mcp.json``) in step with installed packages and
their connected AI tools. Keys the synchronizer does not own are left
untouched.
"""

import asyncio
import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp_station.core.exceptions import ExternalConfigError
from mcp_station.core.models import PackageRecord
from mcp_station.utils.config import Config
from mcp_station.utils.logging import get_logger
from mcp_station.utils.validators import is_credential_key

logger = get_logger(__name__)

SERVERS_KEY = "mcpServers"

# Database connector packages are exposed under a fixed key and launched through npx
MONGO_PACKAGE_IDS = ("mongodb-mcp", "mongo-mcp")
MONGO_EXPOSED_KEY = "mongodb"
MONGO_URL_SETTING = "mongoConnectionUrl"
MONGO_URL_PLACEHOLDER = "mongodb://<username>:<password>@<host>:<port>/<database>?authSource=admin"


def exposed_key(package_id: str) -> str:
    """Key a package is published under in the external file."""
    if package_id in MONGO_PACKAGE_IDS:
        return MONGO_EXPOSED_KEY
    return package_id


def build_env(settings: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Credential-like settings as environment variables (keys upper-cased)."""
    env = {}
    for key, value in (settings or {}).items():
        if is_credential_key(key):
            env[key.upper()] = "" if value is None else str(value)
    return env


class ExternalConfigSynchronizer:
    """Writes package entries into the external AI-tool configuration file."""

    def __init__(self, config: Config, path: Optional[Path] = None):
        """
        Initialize the synchronizer.

        Args:
            config: Application configuration
            path: Override for the external file location
        """
        self.config = config
        self.path = path or config.get_external_config_path()
        self._lock = asyncio.Lock()

    def build_entry(self, record: PackageRecord, settings: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """The ``mcpServers`` entry for an installed package."""
        if record.id in MONGO_PACKAGE_IDS:
            url = (settings or {}).get(MONGO_URL_SETTING) or MONGO_URL_PLACEHOLDER
            return {"command": "npx", "args": ["mongo-mcp", url], "env": {}}

        entry_path = Path(record.path or "") / (record.main_script or self.config.installer.canonical_entry)
        return {
            "command": self.config.runtime.node_command,
            "args": [str(entry_path.resolve())],
            "env": build_env(settings),
        }

    def should_expose(self, record: PackageRecord, selected_tool_ids: Optional[List[str]] = None) -> bool:
        """An entry exists iff the package is installed and some tool wants it."""
        if not record.installed:
            return False
        return bool(selected_tool_ids) or bool(record.connected_tools())

    async def sync(
        self,
        record: PackageRecord,
        settings: Optional[Dict[str, Any]] = None,
        selected_tool_ids: Optional[List[str]] = None,
    ) -> Optional[str]:
        """
        Write or remove the entry for a package.

        Args:
            record: Package record, after any state change
            settings: Current settings for the package
            selected_tool_ids: Tools chosen explicitly during install

        Returns:
            The key written, or None when the entry was removed

        Raises:
            ExternalConfigError: If the file cannot be written
        """
        key = exposed_key(record.id)
        async with self._lock:
            data = self._load()
            servers = data.setdefault(SERVERS_KEY, {})

            if self.should_expose(record, selected_tool_ids):
                servers[key] = self.build_entry(record, settings)
                self._save(data)
                logger.info(f"Exposed '{key}' in {self.path}", extra={"package_id": record.id})
                return key

            if key in servers:
                del servers[key]
                self._save(data)
                logger.info(f"Removed '{key}' from {self.path}", extra={"package_id": record.id})
            return None

    async def update_env(self, record: PackageRecord, settings: Optional[Dict[str, Any]]) -> bool:
        """
        Replace the credential environment of an existing entry.

        Keys missing from ``settings`` are dropped from ``env``; the rest of
        the entry is left alone.

        Returns:
            True if an entry was updated, False when the package is not exposed

        Raises:
            ExternalConfigError: If the file cannot be written
        """
        if record.id in MONGO_PACKAGE_IDS:
            return False

        key = exposed_key(record.id)
        async with self._lock:
            data = self._load()
            entry = data.get(SERVERS_KEY, {}).get(key)
            if not isinstance(entry, dict):
                return False

            entry["env"] = build_env(settings)
            self._save(data)

        logger.debug(f"Updated environment for '{key}'", extra={"package_id": record.id})
        return True

    async def remove(self, package_id: str) -> bool:
        """
        Delete a package's entry.

        Returns:
            True if an entry was removed

        Raises:
            ExternalConfigError: If the file cannot be written
        """
        key = exposed_key(package_id)
        async with self._lock:
            data = self._load()
            servers = data.get(SERVERS_KEY)
            if not isinstance(servers, dict) or key not in servers:
                return False
            del servers[key]
            self._save(data)

        logger.info(f"Removed '{key}' from {self.path}", extra={"package_id": package_id})
        return True

    def read_entries(self) -> Dict[str, Any]:
        """Current ``mcpServers`` map, for display."""
        servers = self._load().get(SERVERS_KEY)
        return servers if isinstance(servers, dict) else {}

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {SERVERS_KEY: {}}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON in {self.path}, starting from an empty config")
            return {SERVERS_KEY: {}}
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to read {self.path}: {e}")
            return {SERVERS_KEY: {}}

        if not isinstance(data, dict):
            logger.warning(f"{self.path} does not hold a JSON object, starting from an empty config")
            return {SERVERS_KEY: {}}
        if not isinstance(data.get(SERVERS_KEY), dict):
            data[SERVERS_KEY] = {}
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        """Write the file, backing up the previous version when it changes."""
        content = json.dumps(data, indent=2) + "\n"
        try:
            if self.path.exists():
                try:
                    if self.path.read_text(encoding="utf-8") == content:
                        logger.debug(f"{self.path} unchanged")
                        return
                except (OSError, UnicodeDecodeError) as e:
                    logger.debug(f"Could not compare with existing {self.path}: {e}")
                if self.config.external.backup:
                    self._backup()

            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                f.write(content)
            logger.debug(f"Saved external config to {self.path}")

        except OSError as e:
            logger.error(f"Failed to save external config {self.path}: {e}")
            raise ExternalConfigError(
                f"Failed to write {self.path}: {e}",
                error_code="external_config_write",
                details={"path": str(self.path)},
            )

    def _backup(self) -> None:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        backup_path = self.path.with_name(f"{self.path.name}.backup.{stamp}")
        shutil.copy2(self.path, backup_path)
        logger.debug(f"Created backup: {backup_path}")

        backups = sorted(self.path.parent.glob(f"{self.path.name}.backup.*"))
        excess = len(backups) - max(self.config.external.max_backups, 0)
        for old in backups[:max(excess, 0)]:
            try:
                old.unlink()
            except OSError as e:
                logger.debug(f"Could not remove old backup {old}: {e}")
