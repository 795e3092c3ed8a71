"""
Pytest configuration and fixtures for MCP Station testing.

Every test gets an isolated configuration: config, package and external
AI-tool config paths all live under the test's temporary directory, and
external commands go through a fake runner unless a test opts out.
"""

import json
import sys
import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import pytest

from mcp_station.core.commands import CommandResult
from mcp_station.core.events import EventBus
from mcp_station.core.external_config import ExternalConfigSynchronizer
from mcp_station.core.installer import Installer
from mcp_station.core.manager import RegistryManager
from mcp_station.core.models import PackageEvent
from mcp_station.core.store import JsonFileStore
from mcp_station.utils.config import Config

FileContents = Union[str, bytes]

# Runs as a "node" entry point when the runtime is the current interpreter
PYTHON_EXIT_SCRIPT = "import sys\nprint('hello from package', flush=True)\nsys.exit(3)\n"
PYTHON_SLEEP_SCRIPT = (
    "import sys, time\n"
    "print('ready', flush=True)\n"
    "print('warming up', file=sys.stderr, flush=True)\n"
    "time.sleep(30)\n"
)


class FakeRunner:
    """Command runner that records calls instead of spawning processes."""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.returncodes: Dict[str, int] = {}
        self.missing: List[str] = []
        self.effects: Dict[str, Callable[[Path], None]] = {}

    @staticmethod
    def _key(command: List[str]) -> str:
        return " ".join(command)

    def fail(self, command: str, returncode: int = 1) -> None:
        self.returncodes[command] = returncode

    def on(self, command: str, effect: Callable[[Path], None]) -> None:
        self.effects[command] = effect

    def ran(self, command: str) -> bool:
        return any(self._key(call) == command for call in self.calls)

    async def __call__(self, command, cwd, on_line=None, timeout=None) -> CommandResult:
        self.calls.append(list(command))
        key = self._key(command)

        if command[0] in self.missing:
            return CommandResult(command=command, returncode=None, error=f"Command not found: {command[0]}")

        if on_line is not None:
            on_line("stdout", f"ran {key}")

        effect = self.effects.get(key)
        if effect is not None:
            effect(Path(cwd))

        return CommandResult(command=command, returncode=self.returncodes.get(key, 0))


def write_files(root: Path, files: Dict[str, FileContents]) -> Path:
    """Write a tree of files under root."""
    for name, content in files.items():
        target = root / name
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content, encoding="utf-8")
    return root


def manifest(**fields) -> str:
    return json.dumps(fields)


@pytest.fixture
def config(tmp_path) -> Config:
    """Configuration rooted in the test's temporary directory."""
    return Config(
        config_dir=str(tmp_path / "config"),
        packages_dir=str(tmp_path / "packages"),
        runtime={"node_command": sys.executable},
        external={"path": str(tmp_path / "cursor" / "mcp.json"), "max_backups": 2},
        uninstall={"stop_grace_period": 5.0, "retry_backoff": 0.0},
        logging={"file": None},
    )


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def event_log(events) -> List[PackageEvent]:
    """Every event published on the bus, in order."""
    received: List[PackageEvent] = []
    events.subscribe(received.append)
    return received


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def synchronizer(config) -> ExternalConfigSynchronizer:
    return ExternalConfigSynchronizer(config)


@pytest.fixture
def installer(config, events, synchronizer, fake_runner) -> Installer:
    return Installer(config, events, synchronizer, runner=fake_runner)


@pytest.fixture
def store(config) -> JsonFileStore:
    return JsonFileStore(config.get_store_path())


@pytest.fixture
def manager(config, store, events, fake_runner) -> RegistryManager:
    return RegistryManager(config=config, store=store, events=events, runner=fake_runner)


@pytest.fixture
def package_dir(tmp_path) -> Path:
    """An empty directory to build a package in."""
    path = tmp_path / "work" / "package"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def make_archive(tmp_path) -> Callable[..., Path]:
    """Factory building zip archives from a mapping of member name to content."""
    counter = {"n": 0}

    def _make(files: Dict[str, FileContents], wrap: Optional[str] = None, name: Optional[str] = None) -> Path:
        counter["n"] += 1
        archive_path = tmp_path / "archives" / (name or f"package-{counter['n']}.zip")
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(archive_path, "w") as archive:
            for member, content in files.items():
                arcname = f"{wrap}/{member}" if wrap else member
                archive.writestr(arcname, content)
        return archive_path

    return _make


def read_external(config: Config) -> dict:
    with open(config.get_external_config_path(), "r", encoding="utf-8") as f:
        return json.load(f)
