"""
Process supervision for installed packages.

Spawns package entry points with the node runtime, streams their output
as events and reports exits. The process table lives on the supervisor
instance and is only written here.
"""

import asyncio
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from mcp_station.core.commands import STREAM_LIMIT, read_line
from mcp_station.core.events import EventBus
from mcp_station.core.exceptions import ConfigurationRequiredError, ProcessError
from mcp_station.core.external_config import MONGO_URL_SETTING, build_env
from mcp_station.core.models import PackageRecord, PackageType, ProcessState
from mcp_station.utils.config import Config
from mcp_station.utils.logging import get_logger

logger = get_logger(__name__)

ExitCallback = Callable[[str, Optional[int]], None]


@dataclass
class RunningProcess:
    """A live package process."""

    package_id: str
    command: List[str]
    process: asyncio.subprocess.Process
    state: ProcessState = ProcessState.STARTING
    started_at: float = field(default_factory=time.time)
    exit_code: Optional[int] = None
    readers: List["asyncio.Task[None]"] = field(default_factory=list, repr=False)
    monitor: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid


def positional_args(record: PackageRecord, settings: Optional[Dict[str, Any]]) -> List[str]:
    """Settings passed to the entry point as positional arguments, in schema order."""
    settings = settings or {}
    args = []
    if record.config_schema is not None:
        for name in record.config_schema.positional_fields():
            value = settings.get(name)
            if value:
                args.append(str(value))

    legacy_url = settings.get(MONGO_URL_SETTING)
    if record.has_config and legacy_url and str(legacy_url) not in args:
        args.append(str(legacy_url))
    return args


class ProcessSupervisor:
    """Starts, stops and watches package processes."""

    def __init__(self, config: Config, events: EventBus, on_exit: Optional[ExitCallback] = None):
        """
        Initialize the supervisor.

        Args:
            config: Application configuration
            events: Observer channel for output, errors and exits
            on_exit: Called with (package id, exit code) after a process ends
        """
        self.config = config
        self.events = events
        self.on_exit = on_exit
        self._processes: Dict[str, RunningProcess] = {}

    def is_running(self, package_id: str) -> bool:
        return package_id in self._processes

    def get_process(self, package_id: str) -> Optional[RunningProcess]:
        return self._processes.get(package_id)

    def running_ids(self) -> List[str]:
        return list(self._processes)

    def build_command(self, record: PackageRecord, settings: Optional[Dict[str, Any]]) -> List[str]:
        """
        Command line for a package.

        Raises:
            ProcessError: If the package type is not runnable or the entry file is missing
        """
        if record.type not in (PackageType.NODEJS, PackageType.SIMPLE):
            raise ProcessError(f"Unsupported MCP type: {record.type}", error_code="unsupported_type")

        if not record.path or not record.main_script:
            raise ProcessError("MCP server has no entry point", error_code="missing_entry")

        entry = (Path(record.path) / record.main_script).resolve()
        if not entry.is_file():
            raise ProcessError(
                f"Entry point not found: {entry}",
                error_code="missing_entry",
                details={"path": str(entry)},
            )

        command = [self.config.runtime.node_command, str(entry)]
        if record.type == PackageType.NODEJS or record.has_config:
            command.extend(positional_args(record, settings))
        return command

    async def start(self, record: PackageRecord, settings: Optional[Dict[str, Any]] = None) -> RunningProcess:
        """
        Start a package process.

        Args:
            record: Installed package
            settings: Current settings for the package

        Returns:
            The running process handle

        Raises:
            ConfigurationRequiredError: If required configuration is missing
            ProcessError: If the package cannot be started
        """
        if not record.installed:
            raise ProcessError("MCP server not installed", error_code="not_installed")
        if self.is_running(record.id):
            raise ProcessError("MCP server already running", error_code="already_running")

        missing = record.missing_config_fields(settings)
        if missing:
            raise ConfigurationRequiredError(
                f"Required configuration field missing: {', '.join(missing)}",
                config_schema=record.config_schema.to_dict(),
                missing_fields=missing,
            )

        command = self.build_command(record, settings)
        env = os.environ.copy()
        env.update(build_env(settings))

        logger.info(f"Starting: {' '.join(command)}", extra={"package_id": record.id})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=record.path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise ProcessError(
                f"Failed to start MCP server: {e}",
                error_code="spawn_failed",
                details={"command": command},
            )

        handle = RunningProcess(package_id=record.id, command=command, process=process)
        self._processes[record.id] = handle

        handle.readers = [
            asyncio.create_task(self._read_output(handle, process.stdout, "stdout")),
            asyncio.create_task(self._read_output(handle, process.stderr, "stderr")),
        ]
        handle.monitor = asyncio.create_task(self._monitor_process(handle))
        handle.state = ProcessState.RUNNING

        logger.info(f"Started with PID {process.pid}", extra={"package_id": record.id})
        return handle

    def stop(self, package_id: str) -> None:
        """
        Ask a process to terminate. Does not wait for it to exit.

        Raises:
            ProcessError: If no live process exists for the package
        """
        handle = self._processes.get(package_id)
        if handle is None:
            raise ProcessError("MCP server not running", error_code="not_running")

        logger.info("Sending terminate", extra={"package_id": package_id})
        try:
            handle.process.terminate()
        except ProcessLookupError:
            logger.debug("Process already exited", extra={"package_id": package_id})

    async def wait(self, package_id: str, timeout: Optional[float] = None) -> Optional[int]:
        """
        Wait for a process to exit and its handle to be released.

        Returns:
            The exit code, or None if there is no process or the timeout expired
        """
        handle = self._processes.get(package_id)
        if handle is None or handle.monitor is None:
            return None
        try:
            await asyncio.wait_for(asyncio.shield(handle.monitor), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Still running after {timeout}s", extra={"package_id": package_id})
            return None
        return handle.exit_code

    async def stop_all(self, force: bool = False, timeout: float = 5.0) -> None:
        """Terminate every process; kill those still alive after ``timeout`` when ``force``."""
        ids = self.running_ids()
        for package_id in ids:
            self.stop(package_id)

        for package_id in ids:
            handle = self._processes.get(package_id)
            if handle is None:
                continue
            code = await self.wait(package_id, timeout)
            if code is None and force and package_id in self._processes:
                logger.warning("Force killing after timeout", extra={"package_id": package_id})
                try:
                    handle.process.kill()
                except ProcessLookupError:
                    continue
                await self.wait(package_id)

    async def _read_output(
        self,
        handle: RunningProcess,
        stream: asyncio.StreamReader,
        stream_name: str,
    ) -> None:
        """Forward stdout as output events and stderr as error events."""
        while True:
            line = await read_line(stream)
            if not line:
                break
            text = line.decode("utf-8", errors="replace")
            if stream_name == "stderr":
                self.events.error(handle.package_id, text)
            else:
                self.events.output(handle.package_id, text)

    async def _monitor_process(self, handle: RunningProcess) -> None:
        """Wait for exit, drain output, release the handle and notify."""
        code = await handle.process.wait()
        results = await asyncio.gather(*handle.readers, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.debug(f"Stream read error: {result}", extra={"package_id": handle.package_id})

        handle.exit_code = code
        handle.state = ProcessState.STOPPED
        if self._processes.get(handle.package_id) is handle:
            del self._processes[handle.package_id]

        logger.info(f"Exited with code {code}", extra={"package_id": handle.package_id})
        self.events.stopped(handle.package_id, code)

        if self.on_exit is not None:
            try:
                self.on_exit(handle.package_id, code)
            except Exception:
                logger.exception("Exit callback failed", extra={"package_id": handle.package_id})
