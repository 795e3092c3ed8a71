"""
Registry store - durable key/value mapping with dotted-path keys.

Keys such as ``mcpSettings.demo`` address nested objects. Values must be
JSON-serializable. The JSON file implementation writes atomically so a
crash never leaves a truncated registry behind.
"""

import copy
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp_station.core.exceptions import StoreError
from mcp_station.core.models import default_package_record
from mcp_station.utils.logging import get_logger

logger = get_logger(__name__)

_MISSING = object()


def default_registry_data() -> Dict[str, Any]:
    """Contents of a freshly created registry."""
    return {
        "mcpServers": [default_package_record().to_dict()],
        "credentials": {},
        "mcpSettings": {},
    }


class RegistryStore(ABC):
    """Durable mapping from dotted-path keys to JSON values."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return a deep copy of the value at ``key``, or ``default``."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store ``value`` at ``key``, creating intermediate objects."""

    @abstractmethod
    def has(self, key: str) -> bool:
        """Whether ``key`` holds a value."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove ``key``; returns False if it did not exist."""


def _split(key: str) -> List[str]:
    parts = key.split(".")
    if not key or any(not part for part in parts):
        raise StoreError(f"Invalid store key: '{key}'")
    return parts


class JsonFileStore(RegistryStore):
    """Registry store persisted as a single JSON document."""

    def __init__(self, path: Path, defaults: Optional[Dict[str, Any]] = None):
        """
        Initialize the store.

        Args:
            path: JSON file backing the store
            defaults: Top-level values used when a key is absent from the file
        """
        self.path = path
        self._defaults = defaults if defaults is not None else default_registry_data()
        self._data: Dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        data: Dict[str, Any] = {}
        if self.path.exists():
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    data = loaded
                else:
                    logger.warning(f"Registry {self.path} is not a JSON object, starting fresh")
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Failed to load registry {self.path}: {e}")

        for key, value in self._defaults.items():
            if key not in data:
                data[key] = copy.deepcopy(value)

        self._data = data

    def _save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(self._data, f, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            logger.error(f"Failed to save registry {self.path}: {e}")
            raise StoreError(f"Failed to save registry: {e}")

    def _lookup(self, parts: List[str]) -> Any:
        node: Any = self._data
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return _MISSING
            node = node[part]
        return node

    def get(self, key: str, default: Any = None) -> Any:
        value = self._lookup(_split(key))
        if value is _MISSING:
            return default
        return copy.deepcopy(value)

    def set(self, key: str, value: Any) -> None:
        parts = _split(key)
        # Round-trip through JSON so non-serializable values fail before touching state
        try:
            value = json.loads(json.dumps(value))
        except (TypeError, ValueError) as e:
            raise StoreError(f"Value for '{key}' is not JSON-serializable: {e}")

        node = self._data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
        self._save()

    def has(self, key: str) -> bool:
        value = self._lookup(_split(key))
        return value is not _MISSING and value is not None

    def delete(self, key: str) -> bool:
        parts = _split(key)
        parent = self._lookup(parts[:-1]) if len(parts) > 1 else self._data
        if not isinstance(parent, dict) or parts[-1] not in parent:
            return False
        del parent[parts[-1]]
        self._save()
        return True
