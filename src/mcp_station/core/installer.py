"""
Package installation pipeline.

Turns a classified package directory into an installed package with a
canonical entry point (``bin/index.js`` by default). Dependency
installation and compilation are best-effort: their failures become
warnings and the pipeline always continues to entry-point
normalization, which guarantees a runnable file even when it has to
write a placeholder.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp_station.core.commands import CommandRunner, run_streaming
from mcp_station.core.events import EventBus
from mcp_station.core.exceptions import (
    ConfigurationRequiredError,
    ExternalConfigError,
    InstallError,
)
from mcp_station.core.external_config import ExternalConfigSynchronizer
from mcp_station.core.inspector import (
    MANIFEST_FILE,
    PACKAGE_DESCRIPTOR_FILE,
    has_build_config,
    resolve_node_entry,
)
from mcp_station.core.models import DEFAULT_PACKAGE_ID, PackageRecord, PackageType
from mcp_station.core import templates
from mcp_station.utils.config import Config
from mcp_station.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SERVER_SCRIPT = "server.js"


@dataclass
class InstallOutcome:
    """Result of a completed install run."""

    record: PackageRecord
    warnings: List[str] = field(default_factory=list)
    degraded: bool = False
    exposed_as: Optional[str] = None


class Installer:
    """Installs packages and normalizes their entry point."""

    def __init__(
        self,
        config: Config,
        events: EventBus,
        synchronizer: ExternalConfigSynchronizer,
        runner: Optional[CommandRunner] = None,
    ):
        """
        Initialize the installer.

        Args:
            config: Application configuration
            events: Observer channel for output and warnings
            synchronizer: External AI-tool config synchronizer
            runner: Command runner, defaults to streaming subprocess execution
        """
        self.config = config
        self.events = events
        self.synchronizer = synchronizer
        self.runner = runner or run_streaming

    @property
    def canonical_entry(self) -> str:
        return self.config.installer.canonical_entry

    def check_configuration(self, record: PackageRecord, settings: Optional[Dict[str, Any]]) -> None:
        """
        Raise if the package declares required configuration that is missing.

        Raises:
            ConfigurationRequiredError: With the schema and the missing keys
        """
        missing = record.missing_config_fields(settings)
        if missing:
            raise ConfigurationRequiredError(
                f"Required configuration field missing: {', '.join(missing)}",
                config_schema=record.config_schema.to_dict(),
                missing_fields=missing,
            )

    async def install(
        self,
        record: PackageRecord,
        settings: Optional[Dict[str, Any]] = None,
        selected_tools: Optional[List[str]] = None,
    ) -> InstallOutcome:
        """
        Install a package.

        Args:
            record: Package to install (not modified; the outcome carries a copy)
            settings: Current settings record for the package
            selected_tools: AI tool ids chosen for this install

        Returns:
            InstallOutcome with the updated record and collected warnings

        Raises:
            ConfigurationRequiredError: If required configuration is missing
            InstallError: If the package directory is unusable
        """
        self.check_configuration(record, settings)

        outcome = InstallOutcome(record=record.model_copy(deep=True))
        record = outcome.record
        logger.info(f"Installing {record.id}", extra={"package_id": record.id})

        if record.is_default and not record.path:
            self._materialize_default(record)

        if not record.path or not Path(record.path).is_dir():
            raise InstallError(
                "MCP directory not found",
                error_code="missing_directory",
                details={"path": record.path},
            )
        package_dir = Path(record.path)

        if not record.is_typescript and has_build_config(package_dir):
            logger.info("Build configuration found, treating package as TypeScript", extra={"package_id": record.id})
            record.is_typescript = True

        if self.config.installer.install_dependencies and self._uses_dependency_installer(record, package_dir):
            await self._run_step(
                outcome,
                [self.config.runtime.npm_command, "install"],
                package_dir,
                "Dependency installation",
            )

        try:
            (package_dir / self.canonical_entry).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self._warn(outcome, f"Could not create entry directory: {e}")

        if record.is_typescript:
            built = await self._run_step(outcome, self._build_command(package_dir), package_dir, "Build")
            if built:
                record.needs_compilation = False

        self._normalize_entry(outcome, package_dir)
        self._verify_entry(outcome, package_dir)

        record.main_script = self.canonical_entry
        record.installed = True
        self._connect_selected(record, selected_tools or [])

        try:
            outcome.exposed_as = await self.synchronizer.sync(record, settings or {}, selected_tools or [])
            if outcome.exposed_as:
                tools = ", ".join(selected_tools or [t.id for t in record.connected_tools()])
                self.events.output(record.id, f"MCP configuration updated for tools: {tools}\n")
        except ExternalConfigError as e:
            self._warn(outcome, f"Warning: Failed to update external tool configuration: {e.message}")

        logger.info(
            f"Installed {record.id} (entry: {record.main_script}, degraded: {outcome.degraded})",
            extra={"package_id": record.id},
        )
        return outcome

    def _connect_selected(self, record: PackageRecord, selected_tools: List[str]) -> None:
        """Persist install-time tool selection as connections so later syncs keep the entry."""
        for tool_id in selected_tools:
            tool = record.get_tool(tool_id)
            if tool is None:
                logger.warning(f"Selected AI tool '{tool_id}' is not offered by this package",
                               extra={"package_id": record.id})
                continue
            tool.connected = True

    def _materialize_default(self, record: PackageRecord) -> None:
        """Create the directory for the reserved demonstration package."""
        package_dir = self.config.get_packages_dir() / DEFAULT_PACKAGE_ID
        try:
            package_dir.mkdir(parents=True, exist_ok=True)
            (package_dir / DEFAULT_SERVER_SCRIPT).write_text(
                templates.heartbeat_script(title=record.name), encoding="utf-8"
            )
            manifest = templates.default_manifest(
                record.id, record.name, record.description or "", DEFAULT_SERVER_SCRIPT
            )
            with open(package_dir / MANIFEST_FILE, "w", encoding="utf-8") as f:
                json.dump(manifest, f, indent=2)
        except OSError as e:
            raise InstallError(f"Failed to create default MCP directory: {e}", error_code="default_setup")

        record.path = str(package_dir)
        record.main_script = DEFAULT_SERVER_SCRIPT
        logger.info(f"Created default MCP at {package_dir}", extra={"package_id": record.id})

    def _uses_dependency_installer(self, record: PackageRecord, package_dir: Path) -> bool:
        if record.type == PackageType.NODEJS:
            return True
        elif record.type == PackageType.SIMPLE:
            return (package_dir / PACKAGE_DESCRIPTOR_FILE).is_file()
        raise InstallError(f"Unsupported package type: {record.type}", error_code="unsupported_type")

    def _build_command(self, package_dir: Path) -> List[str]:
        """Prefer the package's own build script, fall back to the compiler."""
        scripts = self._read_package_json(package_dir).get("scripts")
        if isinstance(scripts, dict) and scripts.get("build"):
            return [self.config.runtime.npm_command, "run", "build"]
        return [self.config.runtime.npx_command, "tsc"]

    async def _run_step(self, outcome: InstallOutcome, command: List[str], cwd: Path, label: str) -> bool:
        package_id = outcome.record.id
        self.events.output(package_id, f"$ {' '.join(command)}\n")

        def on_line(stream_name: str, line: str) -> None:
            self.events.output(package_id, f"{line}\n")

        try:
            result = await self.runner(
                command, cwd, on_line=on_line, timeout=self.config.runtime.command_timeout
            )
        except Exception as e:
            logger.exception(f"{label} step raised", extra={"package_id": package_id})
            self._warn(outcome, f"{label} skipped: {e}")
            return False
        if result.error:
            self._warn(outcome, f"{label} skipped: {result.error}")
            return False
        if result.returncode != 0:
            self._warn(outcome, f"{label} failed with code {result.returncode}; continuing")
            return False
        return True

    def _declared_entry(self, record: PackageRecord, package_dir: Path) -> Optional[str]:
        """The entry point the package itself declares, ignoring the canonical one."""
        if record.main_script and record.main_script != self.canonical_entry:
            return record.main_script
        if record.type == PackageType.NODEJS:
            package_json = self._read_package_json(package_dir)
            return resolve_node_entry(package_json) if package_json else None
        elif record.type == PackageType.SIMPLE:
            manifest = self._read_json_quietly(package_dir / MANIFEST_FILE)
            main = manifest.get("main")
            return main if isinstance(main, str) and main else None
        return None

    def _candidate_names(self, declared: Optional[str]) -> List[str]:
        names = ["index.js"]
        if declared:
            names.append(f"{Path(declared).stem}.js")
        names.extend(["main.js", "server.js"])
        return list(dict.fromkeys(names))

    def _normalize_entry(self, outcome: InstallOutcome, package_dir: Path) -> None:
        """Make sure the canonical entry exists, forwarding to the real one."""
        record = outcome.record
        canonical = package_dir / self.canonical_entry

        if canonical.is_file():
            if not templates.is_generated_fallback(self._read_text_quietly(canonical)):
                logger.debug("Canonical entry already present", extra={"package_id": record.id})
                return
            logger.info("Replacing placeholder entry point", extra={"package_id": record.id})

        declared = self._declared_entry(record, package_dir)
        es_module = self._read_package_json(package_dir).get("type") == "module"

        for output_dir in self.config.installer.output_dirs:
            for name in self._candidate_names(declared):
                candidate = package_dir / output_dir / name
                if candidate.is_file():
                    if self._write_forwarder(outcome, canonical, candidate, package_dir, es_module):
                        return

        if declared:
            source = package_dir / declared
            if source.is_file() and source.resolve() != canonical.resolve():
                if self._write_forwarder(outcome, canonical, source, package_dir, es_module):
                    return

        outcome.degraded = True
        self._warn(outcome, "No entry point found; installed a placeholder server")
        try:
            canonical.parent.mkdir(parents=True, exist_ok=True)
            canonical.write_text(templates.fallback_script(record.name), encoding="utf-8")
        except OSError as e:
            self._warn(outcome, f"Failed to write placeholder entry point: {e}")

    def _write_forwarder(
        self,
        outcome: InstallOutcome,
        canonical: Path,
        target: Path,
        package_dir: Path,
        es_module: bool,
    ) -> bool:
        canonical_rel = canonical.relative_to(package_dir).parent.as_posix()
        target_rel = target.relative_to(package_dir).as_posix()
        reference = templates.relative_module_reference(canonical_rel, target_rel)
        try:
            canonical.parent.mkdir(parents=True, exist_ok=True)
            canonical.write_text(templates.forwarder_script(reference, es_module), encoding="utf-8")
            os.chmod(canonical, 0o755)
        except OSError as e:
            self._warn(outcome, f"Failed to write entry point forwarding to {target_rel}: {e}")
            return False
        logger.info(f"Entry point forwards to {target_rel}", extra={"package_id": outcome.record.id})
        return True

    def _verify_entry(self, outcome: InstallOutcome, package_dir: Path) -> None:
        canonical = package_dir / self.canonical_entry
        if canonical.is_file():
            return
        outcome.degraded = True
        self._warn(outcome, "Entry point missing after normalization; writing emergency placeholder")
        try:
            canonical.parent.mkdir(parents=True, exist_ok=True)
            canonical.write_text(templates.emergency_script(), encoding="utf-8")
        except OSError as e:
            raise InstallError(
                f"Cannot create entry point {self.canonical_entry}: {e}",
                error_code="entry_point",
            )

    def _warn(self, outcome: InstallOutcome, message: str) -> None:
        outcome.warnings.append(message)
        self.events.warning(outcome.record.id, message)

    def _read_package_json(self, package_dir: Path) -> Dict[str, Any]:
        return self._read_json_quietly(package_dir / PACKAGE_DESCRIPTOR_FILE)

    @staticmethod
    def _read_json_quietly(path: Path) -> Dict[str, Any]:
        """Read a JSON object, returning {} when absent or malformed."""
        if not path.is_file():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.debug(f"Ignoring unreadable {path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _read_text_quietly(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""
