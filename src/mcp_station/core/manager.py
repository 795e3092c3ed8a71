"""
Registry manager - the public operation surface of MCP Station.

Composes the inspector, installer, external config synchronizer and
process supervisor on top of the registry store. Every operation
returns an OperationResult; errors raised by the lower layers are
converted into failed results here.
"""

import asyncio
import errno
import gc
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from mcp_station.core.commands import CommandRunner
from mcp_station.core.events import EventBus
from mcp_station.core.exceptions import (
    ClassificationError,
    ConfigurationRequiredError,
    CredentialsRequiredError,
    ExternalConfigError,
    InstallError,
    MCPStationError,
    ProcessError,
    StoreError,
    ValidationError,
)
from mcp_station.core.external_config import ExternalConfigSynchronizer
from mcp_station.core.inspector import classify
from mcp_station.core.installer import Installer
from mcp_station.core.models import (
    OperationResult,
    PackageDescriptor,
    PackageRecord,
    default_ai_tools,
)
from mcp_station.core.store import JsonFileStore, RegistryStore
from mcp_station.core.supervisor import ProcessSupervisor
from mcp_station.utils.config import Config, get_config
from mcp_station.utils.logging import get_logger
from mcp_station.utils.validators import (
    safe_extract_path,
    slugify_package_name,
    validate_archive_path,
    validate_package_id,
)

logger = get_logger(__name__)

SERVERS_KEY = "mcpServers"
SETTINGS_KEY = "mcpSettings"
CREDENTIALS_KEY = "credentials"

# Resource-fork folders added by macOS archivers
IGNORED_ARCHIVE_DIRS = ("__MACOSX",)

_LOCK_ERRNOS = (errno.EBUSY, errno.EACCES, errno.EPERM, errno.ENOTEMPTY)


def _is_lock_error(error: OSError) -> bool:
    return isinstance(error, PermissionError) or error.errno in _LOCK_ERRNOS


class RegistryManager:
    """Orchestrates package import, install, run and uninstall."""

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[RegistryStore] = None,
        events: Optional[EventBus] = None,
        runner: Optional[CommandRunner] = None,
    ):
        """
        Initialize the manager.

        Args:
            config: Application configuration, defaults to the loaded global config
            store: Registry store, defaults to the JSON file in the config directory
            events: Event bus observers subscribe to
            runner: Command runner used by the installer
        """
        self.config = config or get_config()
        self.store = store or JsonFileStore(self.config.get_store_path())
        self.events = events or EventBus()
        self.synchronizer = ExternalConfigSynchronizer(self.config)
        self.installer = Installer(self.config, self.events, self.synchronizer, runner=runner)
        self.supervisor = ProcessSupervisor(self.config, self.events, on_exit=self._on_process_exit)

        self._reset_stale_running_flags()

    # Registry access

    def _load_records(self) -> List[PackageRecord]:
        records = []
        for raw in self.store.get(SERVERS_KEY, []) or []:
            try:
                records.append(PackageRecord.model_validate(raw))
            except PydanticValidationError as e:
                logger.warning(f"Skipping invalid package record: {e}")
        return records

    def _save_records(self, records: List[PackageRecord]) -> None:
        self.store.set(SERVERS_KEY, [record.to_dict() for record in records])

    def _find(self, records: List[PackageRecord], package_id: str) -> Optional[PackageRecord]:
        for record in records:
            if record.id == package_id:
                return record
        return None

    def _update_record(self, updated: PackageRecord) -> None:
        records = self._load_records()
        for index, record in enumerate(records):
            if record.id == updated.id:
                records[index] = updated
                break
        else:
            records.append(updated)
        self._save_records(records)

    def _reset_stale_running_flags(self) -> None:
        """No process survives a restart, so persisted running flags are stale."""
        records = self._load_records()
        stale = [record for record in records if record.running]
        if not stale:
            return
        for record in stale:
            record.running = False
        try:
            self._save_records(records)
        except StoreError as e:
            logger.error(f"Failed to reset running flags: {e}")
            return
        logger.info(f"Cleared stale running flag for: {', '.join(r.id for r in stale)}")

    def _on_process_exit(self, package_id: str, code: Optional[int]) -> None:
        records = self._load_records()
        record = self._find(records, package_id)
        if record is None or not record.running:
            return
        record.running = False
        try:
            self._save_records(records)
        except StoreError as e:
            logger.error(f"Failed to record process exit: {e}", extra={"package_id": package_id})

    # Queries

    async def list_packages(self) -> List[PackageRecord]:
        """All package records, in registry order."""
        return self._load_records()

    async def get_package(self, package_id: str) -> Optional[PackageRecord]:
        return self._find(self._load_records(), package_id)

    async def get_settings(self, package_id: str) -> Dict[str, Any]:
        """Settings record for a package ({} when none saved)."""
        key = self._store_key(SETTINGS_KEY, package_id)
        if key is None:
            return {}
        settings = self.store.get(key, {})
        return settings if isinstance(settings, dict) else {}

    def _store_key(self, prefix: str, package_id: str) -> Optional[str]:
        try:
            validate_package_id(package_id)
        except ValidationError:
            return None
        return f"{prefix}.{package_id}"

    # Operations

    async def save_settings(self, package_id: str, settings: Dict[str, Any]) -> OperationResult:
        """
        Replace a package's settings and refresh its exposed credentials.

        Args:
            package_id: Package id
            settings: Complete settings record (not merged with the stored one)
        """
        key = self._store_key(SETTINGS_KEY, package_id)
        if key is None:
            return OperationResult.fail(f"Invalid MCP id: {package_id}", mcp_id=package_id)

        settings = {str(k): "" if v is None else str(v) for k, v in (settings or {}).items()}
        try:
            self.store.set(key, settings)
        except StoreError as e:
            return OperationResult.fail(f"Failed to save settings: {e.message}", mcp_id=package_id)

        warnings = []
        record = self._find(self._load_records(), package_id)
        if record is not None:
            try:
                await self.synchronizer.update_env(record, settings)
            except ExternalConfigError as e:
                message = f"Warning: Failed to update external tool configuration: {e.message}"
                self.events.warning(package_id, message)
                warnings.append(message)

        return OperationResult.ok("Settings saved successfully", mcp_id=package_id, warnings=warnings)

    async def import_package(self, archive_path: Path) -> OperationResult:
        """
        Import a zip archive as a managed package.

        Args:
            archive_path: Path to the zip archive

        Returns:
            Result carrying the new package id, type and config flag
        """
        archive_path = Path(archive_path)
        try:
            validate_archive_path(archive_path)
        except ValidationError as e:
            return OperationResult.fail(e.message)

        scratch = Path(tempfile.mkdtemp(prefix="mcp-extract-"))
        try:
            self._extract_archive(archive_path, scratch)
            root = self._package_root(scratch)

            descriptor = classify(root)
            if descriptor.is_unknown:
                return OperationResult.fail("Invalid MCP package: could not detect type")

            package_id = self._package_id(descriptor)
            name = descriptor.name or package_id

            existing = self._find(self._load_records(), package_id)
            if existing is not None and self.supervisor.is_running(package_id):
                return OperationResult.fail(
                    "MCP server is running; stop it before re-importing",
                    mcp_id=package_id,
                )

            package_dir = self.config.get_packages_dir() / package_id
            removal_warning = await self._remove_directory(package_dir)
            if removal_warning is not None:
                return OperationResult.fail(
                    f"Error importing MCP: {removal_warning}", mcp_id=package_id
                )
            package_dir.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(root), str(package_dir))

            record = PackageRecord(
                id=package_id,
                name=name,
                description=descriptor.description or f"MCP server {name}",
                version=descriptor.version,
                type=descriptor.type,
                path=str(package_dir),
                main_script=descriptor.main_script,
                installed=False,
                running=False,
                is_typescript=descriptor.is_typescript,
                needs_compilation=descriptor.needs_compilation,
                has_config=descriptor.has_config,
                config_schema=descriptor.config_schema,
                ai_tools=descriptor.ai_tools or default_ai_tools(),
            )
            self._update_record(record)

            logger.info(f"Imported {package_id} ({descriptor.type.value})", extra={"package_id": package_id})
            return OperationResult.ok(
                "MCP package imported successfully",
                mcp_id=package_id,
                mcp_type=descriptor.type,
                has_config=descriptor.has_config,
                package=record,
            )

        except (ClassificationError, ValidationError, StoreError) as e:
            logger.warning(f"Import of {archive_path} rejected: {e}")
            return OperationResult.fail(f"Error importing MCP: {e.message}")
        except (OSError, zipfile.BadZipFile) as e:
            logger.error(f"Import of {archive_path} failed: {e}")
            return OperationResult.fail(f"Error importing MCP: {e}")
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def _extract_archive(self, archive_path: Path, destination: Path) -> None:
        """Extract every member, refusing members that escape ``destination``."""
        with zipfile.ZipFile(archive_path) as archive:
            for member in archive.infolist():
                parts = [part for part in member.filename.replace("\\", "/").split("/") if part]
                if not parts or parts[0] in IGNORED_ARCHIVE_DIRS:
                    continue
                target = safe_extract_path(destination, "/".join(parts))
                if member.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(member) as source, open(target, "wb") as sink:
                    shutil.copyfileobj(source, sink)

    def _package_root(self, extracted: Path) -> Path:
        """Descend into a single wrapping directory."""
        entries = list(extracted.iterdir())
        if len(entries) == 1 and entries[0].is_dir():
            return entries[0]
        return extracted

    def _package_id(self, descriptor: PackageDescriptor) -> str:
        """
        Final id for an imported package.

        Raises:
            ValidationError: If the package has neither an id nor a name, or the id is invalid
        """
        if descriptor.id:
            package_id = descriptor.id
        elif descriptor.name:
            package_id = slugify_package_name(descriptor.name)
        else:
            raise ValidationError("Invalid MCP package: missing name and id")
        validate_package_id(package_id)
        return package_id

    async def install(self, package_id: str, selected_tools: Optional[List[str]] = None) -> OperationResult:
        """
        Install a package and expose it to the selected AI tools.

        Args:
            package_id: Package id
            selected_tools: AI tool ids chosen for this install
        """
        record = self._find(self._load_records(), package_id)
        if record is None:
            return OperationResult.fail("MCP server not found", mcp_id=package_id)

        settings = await self.get_settings(package_id)
        try:
            outcome = await self.installer.install(record, settings, selected_tools)
        except ConfigurationRequiredError as e:
            return OperationResult.fail(
                e.message,
                mcp_id=package_id,
                requires_config=True,
                config_schema=record.config_schema,
                missing_fields=e.missing_fields,
            )
        except InstallError as e:
            return OperationResult.fail(f"Installation failed: {e.message}", mcp_id=package_id)

        try:
            self._update_record(outcome.record)
        except StoreError as e:
            return OperationResult.fail(f"Installation failed: {e.message}", mcp_id=package_id)

        message = "MCP server installed successfully"
        if outcome.degraded:
            message = "MCP server installed with a placeholder entry point"
        return OperationResult.ok(
            message,
            mcp_id=package_id,
            mcp_type=outcome.record.type,
            warnings=outcome.warnings,
            degraded=outcome.degraded,
            package=outcome.record,
        )

    async def uninstall(self, package_id: str) -> OperationResult:
        """
        Stop, remove and forget a package. The default package is reset instead of removed.

        Directory removal failures are reported as warnings; the logical
        uninstall always completes.
        """
        records = self._load_records()
        record = self._find(records, package_id)
        if record is None:
            return OperationResult.fail("MCP server not found", mcp_id=package_id)

        warnings: List[str] = []

        if self.supervisor.is_running(package_id):
            try:
                self.supervisor.stop(package_id)
            except ProcessError as e:
                logger.debug(f"Stop during uninstall: {e}", extra={"package_id": package_id})
            await self.supervisor.wait(package_id, timeout=self.config.uninstall.stop_grace_period)

        if record.path:
            removal_warning = await self._remove_directory(Path(record.path))
            if removal_warning is not None:
                warnings.append(removal_warning)
                self.events.warning(package_id, removal_warning)

        try:
            await self.synchronizer.remove(package_id)
        except ExternalConfigError as e:
            message = f"Warning: Failed to remove MCP from external config: {e.message}"
            warnings.append(message)
            self.events.warning(package_id, message)

        records = self._load_records()
        record = self._find(records, package_id)
        if record is not None:
            if record.is_default:
                record.installed = False
                record.running = False
                record.path = None
            else:
                records = [r for r in records if r.id != package_id]

        try:
            self._save_records(records)
            settings_key = self._store_key(SETTINGS_KEY, package_id)
            if settings_key is not None:
                self.store.delete(settings_key)
        except StoreError as e:
            return OperationResult.fail(f"Uninstallation failed: {e.message}", mcp_id=package_id)

        logger.info(f"Uninstalled {package_id}", extra={"package_id": package_id})
        return OperationResult.ok("MCP server uninstalled successfully", mcp_id=package_id, warnings=warnings)

    async def _remove_directory(self, path: Path) -> Optional[str]:
        """
        Remove a directory tree, retrying on lock-class errors.

        Returns:
            None on success (or if nothing was there), otherwise a warning message
        """
        retries = self.config.uninstall.removal_retries
        backoff = self.config.uninstall.retry_backoff

        for attempt in range(1, retries + 1):
            if not path.exists():
                return None
            try:
                shutil.rmtree(path)
                return None
            except FileNotFoundError:
                return None
            except OSError as e:
                if not _is_lock_error(e):
                    return f"Failed to remove {path}: {e}"
                logger.debug(f"Removal attempt {attempt}/{retries} failed for {path}: {e}")
                if attempt < retries:
                    gc.collect()
                    await asyncio.sleep(backoff * attempt)
                else:
                    return f"Could not remove {path} after {retries} attempts: {e}"
        return None

    async def start(self, package_id: str) -> OperationResult:
        """Start an installed package process."""
        record = self._find(self._load_records(), package_id)
        if record is None:
            return OperationResult.fail("MCP server not found", mcp_id=package_id)
        if not record.installed:
            return OperationResult.fail("MCP server not installed", mcp_id=package_id)

        settings = await self.get_settings(package_id)
        try:
            await self.supervisor.start(record, settings)
        except ConfigurationRequiredError as e:
            return OperationResult.fail(
                e.message,
                mcp_id=package_id,
                requires_config=True,
                config_schema=record.config_schema,
                missing_fields=e.missing_fields,
            )
        except ProcessError as e:
            return OperationResult.fail(e.message, mcp_id=package_id)

        record.running = True
        try:
            self._update_record(record)
        except StoreError as e:
            logger.error(f"Failed to persist running state: {e}", extra={"package_id": package_id})

        return OperationResult.ok("MCP server started successfully", mcp_id=package_id)

    async def stop(self, package_id: str) -> OperationResult:
        """Request a running package process to terminate."""
        record = self._find(self._load_records(), package_id)
        if record is None:
            return OperationResult.fail("MCP server not found", mcp_id=package_id)
        if not record.installed:
            return OperationResult.fail("MCP server not installed", mcp_id=package_id)

        live = self.supervisor.is_running(package_id)
        if not record.running and not live:
            return OperationResult.fail("MCP server not running", mcp_id=package_id)

        if not live:
            record.running = False
            try:
                self._update_record(record)
            except StoreError as e:
                return OperationResult.fail(f"Failed to clear running state: {e.message}", mcp_id=package_id)
            return OperationResult.fail("MCP server process not found", mcp_id=package_id)

        try:
            self.supervisor.stop(package_id)
        except ProcessError as e:
            return OperationResult.fail(e.message, mcp_id=package_id)

        record.running = False
        try:
            self._update_record(record)
        except StoreError as e:
            return OperationResult.fail(
                f"Stop requested but running state was not saved: {e.message}", mcp_id=package_id
            )
        return OperationResult.ok("MCP server stopped successfully", mcp_id=package_id)

    async def toggle_tool_connection(self, package_id: str, tool_id: str) -> OperationResult:
        """Connect or disconnect an AI tool and resync the external config."""
        records = self._load_records()
        record = self._find(records, package_id)
        if record is None:
            return OperationResult.fail("MCP server not found", mcp_id=package_id)

        tool = record.get_tool(tool_id)
        if tool is None:
            return OperationResult.fail("AI tool not found", mcp_id=package_id, tool_id=tool_id)

        if not tool.connected and tool.requires_credentials:
            try:
                self._require_credentials(tool_id)
            except CredentialsRequiredError as e:
                return OperationResult.fail(
                    e.message,
                    mcp_id=package_id,
                    requires_credentials=True,
                    tool_id=e.tool_id,
                )

        tool.connected = not tool.connected
        try:
            self._save_records(records)
        except StoreError as e:
            return OperationResult.fail(
                f"Failed to save AI tool connection: {e.message}", mcp_id=package_id, tool_id=tool_id
            )

        warnings = []
        if record.installed:
            try:
                await self.synchronizer.sync(record, await self.get_settings(package_id))
            except ExternalConfigError as e:
                message = f"Warning: Failed to update external tool configuration: {e.message}"
                warnings.append(message)
                self.events.warning(package_id, message)

        state = "connected to" if tool.connected else "disconnected from"
        return OperationResult.ok(
            f"AI tool {state} MCP server",
            mcp_id=package_id,
            tool_id=tool_id,
            warnings=warnings,
            package=record,
        )

    def _require_credentials(self, tool_id: str) -> None:
        """
        Raises:
            CredentialsRequiredError: If no credentials are stored for the tool
        """
        key = self._store_key(CREDENTIALS_KEY, tool_id)
        if key is None or not self.store.has(key):
            raise CredentialsRequiredError("Credentials required", tool_id=tool_id)

    async def save_credentials(self, tool_id: str, credentials: Dict[str, Any]) -> OperationResult:
        """Store credentials for an AI tool."""
        key = self._store_key(CREDENTIALS_KEY, tool_id)
        if key is None:
            return OperationResult.fail(f"Invalid tool id: {tool_id}", tool_id=tool_id)
        try:
            self.store.set(key, credentials)
        except StoreError as e:
            return OperationResult.fail(f"Failed to save credentials: {e.message}", tool_id=tool_id)
        return OperationResult.ok("Credentials saved successfully", tool_id=tool_id)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop every running package, killing any that ignore the request."""
        try:
            await self.supervisor.stop_all(force=True, timeout=timeout)
        except MCPStationError as e:
            logger.error(f"Error during shutdown: {e}")
