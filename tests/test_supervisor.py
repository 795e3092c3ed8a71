"""
Test process supervision of installed packages.

Entry points are small Python scripts launched through the configured
runtime, which the test configuration points at the current interpreter.
"""

from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from mcp_station.core.commands import STREAM_LIMIT
from mcp_station.core.exceptions import ConfigurationRequiredError, ProcessError
from mcp_station.core.models import ConfigSchema, EventKind, PackageRecord, PackageType
from mcp_station.core.supervisor import ProcessSupervisor, positional_args

from conftest import PYTHON_EXIT_SCRIPT, PYTHON_SLEEP_SCRIPT, write_files


def runnable_record(tmp_path: Path, script: str, **kwargs) -> PackageRecord:
    path = tmp_path / "packages" / "demo"
    write_files(path, {"bin/index.js": script})
    fields = dict(
        id="demo",
        name="Demo",
        type=PackageType.SIMPLE,
        path=str(path),
        main_script="bin/index.js",
        installed=True,
    )
    fields.update(kwargs)
    return PackageRecord(**fields)


@pytest.fixture
def exits() -> List[Tuple[str, Optional[int]]]:
    return []


@pytest.fixture
def supervisor(config, events, exits) -> ProcessSupervisor:
    return ProcessSupervisor(config, events, on_exit=lambda package_id, code: exits.append((package_id, code)))


class TestStart:
    """Test starting processes."""

    @pytest.mark.asyncio
    async def test_not_installed(self, supervisor, tmp_path):
        record = runnable_record(tmp_path, PYTHON_EXIT_SCRIPT, installed=False)

        with pytest.raises(ProcessError) as exc_info:
            await supervisor.start(record)

        assert exc_info.value.message == "MCP server not installed"
        assert not supervisor.is_running("demo")

    @pytest.mark.asyncio
    async def test_missing_configuration(self, supervisor, tmp_path):
        record = runnable_record(
            tmp_path,
            PYTHON_EXIT_SCRIPT,
            has_config=True,
            config_schema=ConfigSchema(required=["apiKey"]),
        )

        with pytest.raises(ConfigurationRequiredError) as exc_info:
            await supervisor.start(record, {})

        assert exc_info.value.missing_fields == ["apiKey"]
        assert not supervisor.is_running("demo")

    @pytest.mark.asyncio
    async def test_missing_entry_file(self, supervisor, tmp_path):
        record = runnable_record(tmp_path, PYTHON_EXIT_SCRIPT, main_script="bin/other.js")

        with pytest.raises(ProcessError) as exc_info:
            await supervisor.start(record)

        assert exc_info.value.error_code == "missing_entry"

    @pytest.mark.asyncio
    async def test_already_running(self, supervisor, tmp_path):
        record = runnable_record(tmp_path, PYTHON_SLEEP_SCRIPT)
        await supervisor.start(record)

        try:
            with pytest.raises(ProcessError) as exc_info:
                await supervisor.start(record)
            assert exc_info.value.error_code == "already_running"
        finally:
            await supervisor.stop_all(force=True, timeout=5.0)


class TestLifecycle:
    """Test output streaming, exits and stopping."""

    @pytest.mark.asyncio
    async def test_exit_is_reported(self, supervisor, event_log, exits, tmp_path):
        record = runnable_record(tmp_path, PYTHON_EXIT_SCRIPT)

        handle = await supervisor.start(record)
        assert handle.pid > 0
        code = await supervisor.wait("demo", timeout=10)

        assert code == 3
        assert exits == [("demo", 3)]
        assert not supervisor.is_running("demo")

        outputs = [e.data for e in event_log if e.kind == EventKind.OUTPUT]
        assert "hello from package\n" in outputs
        stopped = [e for e in event_log if e.kind == EventKind.STOPPED]
        assert len(stopped) == 1
        assert stopped[0].mcp_id == "demo"
        assert stopped[0].code == 3

    @pytest.mark.asyncio
    async def test_stop_terminates(self, supervisor, event_log, exits, tmp_path):
        record = runnable_record(tmp_path, PYTHON_SLEEP_SCRIPT)
        await supervisor.start(record)

        supervisor.stop("demo")
        code = await supervisor.wait("demo", timeout=10)

        assert code is not None
        assert code != 0
        assert not supervisor.is_running("demo")
        assert len(exits) == 1

    @pytest.mark.asyncio
    async def test_stderr_is_error_event(self, supervisor, event_log, tmp_path):
        record = runnable_record(
            tmp_path,
            "import sys\nprint('warming up', file=sys.stderr, flush=True)\n",
        )

        await supervisor.start(record)
        await supervisor.wait("demo", timeout=10)

        errors = [e.data for e in event_log if e.kind == EventKind.ERROR]
        assert errors == ["warming up\n"]

    @pytest.mark.asyncio
    async def test_line_longer_than_stream_limit(self, supervisor, event_log, exits, tmp_path):
        length = STREAM_LIMIT * 2 + 10
        record = runnable_record(tmp_path, f"print('x' * {length})\nprint('done')\n")

        await supervisor.start(record)
        code = await supervisor.wait("demo", timeout=10)

        assert code == 0
        outputs = [e.data for e in event_log if e.kind == EventKind.OUTPUT]
        assert "".join(outputs) == "x" * length + "\ndone\n"
        assert exits == [("demo", 0)]

    @pytest.mark.asyncio
    async def test_stop_without_process(self, supervisor):
        with pytest.raises(ProcessError) as exc_info:
            supervisor.stop("demo")

        assert exc_info.value.message == "MCP server not running"

    @pytest.mark.asyncio
    async def test_wait_without_process(self, supervisor):
        assert await supervisor.wait("demo", timeout=1) is None

    @pytest.mark.asyncio
    async def test_stop_all(self, supervisor, tmp_path):
        await supervisor.start(runnable_record(tmp_path, PYTHON_SLEEP_SCRIPT))

        await supervisor.stop_all(force=True, timeout=5.0)

        assert supervisor.running_ids() == []

    @pytest.mark.asyncio
    async def test_failing_exit_callback_does_not_break_monitor(self, config, events, event_log, tmp_path):
        def broken(package_id, code):
            raise RuntimeError("observer bug")

        supervisor = ProcessSupervisor(config, events, on_exit=broken)
        await supervisor.start(runnable_record(tmp_path, PYTHON_EXIT_SCRIPT))

        assert await supervisor.wait("demo", timeout=10) == 3
        assert not supervisor.is_running("demo")


class TestCommandLine:
    """Test command construction."""

    def test_simple_package(self, supervisor, config, tmp_path):
        record = runnable_record(tmp_path, PYTHON_EXIT_SCRIPT)

        command = supervisor.build_command(record, {"positional": "ignored"})

        assert command == [
            config.runtime.node_command,
            str((tmp_path / "packages" / "demo" / "bin" / "index.js").resolve()),
        ]

    def test_nodejs_gets_positional_settings(self, supervisor, tmp_path):
        schema = ConfigSchema(properties={
            "mongoConnectionUrl": {"type": "string", "positional": True},
            "region": {"type": "string"},
        })
        record = runnable_record(
            tmp_path,
            PYTHON_EXIT_SCRIPT,
            type=PackageType.NODEJS,
            has_config=True,
            config_schema=schema,
        )

        command = supervisor.build_command(record, {"mongoConnectionUrl": "mongodb://db", "region": "eu"})

        assert command[2:] == ["mongodb://db"]

    def test_missing_path(self, supervisor, tmp_path):
        record = runnable_record(tmp_path, PYTHON_EXIT_SCRIPT, path=None)

        with pytest.raises(ProcessError):
            supervisor.build_command(record, {})


class TestPositionalArgs:
    """Test positional argument selection."""

    def test_schema_order(self):
        schema = ConfigSchema(properties={
            "first": {"positional": True},
            "skip": {},
            "second": {"positional": True},
        })
        record = PackageRecord(id="x", name="X", type=PackageType.NODEJS, config_schema=schema)

        assert positional_args(record, {"second": "2", "first": "1", "skip": "s"}) == ["1", "2"]

    def test_empty_values_skipped(self):
        schema = ConfigSchema(properties={"first": {"positional": True}})
        record = PackageRecord(id="x", name="X", type=PackageType.NODEJS, config_schema=schema)

        assert positional_args(record, {"first": ""}) == []

    def test_connection_url_appended_for_configured_packages(self):
        record = PackageRecord(id="x", name="X", type=PackageType.NODEJS, has_config=True)

        assert positional_args(record, {"mongoConnectionUrl": "mongodb://db"}) == ["mongodb://db"]
