"""
Test synchronization of the external AI-tool configuration file.
"""

import json

import pytest

from mcp_station.core.exceptions import ExternalConfigError
from mcp_station.core.external_config import (
    MONGO_URL_PLACEHOLDER,
    ExternalConfigSynchronizer,
    build_env,
    exposed_key,
)
from mcp_station.core.models import AITool, PackageRecord, PackageType

from conftest import read_external


def installed_record(tmp_path, package_id="demo", connected=True, **kwargs) -> PackageRecord:
    fields = dict(
        id=package_id,
        name="Demo",
        type=PackageType.SIMPLE,
        path=str(tmp_path / "packages" / package_id),
        main_script="bin/index.js",
        installed=True,
        ai_tools=[
            AITool(id="claude", name="Claude", connected=connected, requires_credentials=True),
            AITool(id="cursor", name="Cursor", connected=False, requires_credentials=True),
        ],
    )
    fields.update(kwargs)
    return PackageRecord(**fields)


class TestEnvironment:
    """Test credential filtering."""

    def test_only_credential_keys(self):
        assert build_env({"api_key": "x", "region": "y"}) == {"API_KEY": "x"}

    def test_all_markers_case_insensitive(self):
        settings = {
            "githubToken": "1",
            "ApiKey": "2",
            "DB_PASSWORD": "3",
            "clientSecret": "4",
            "credentialFile": "5",
            "openai_api_key": "6",
            "host": "7",
        }

        env = build_env(settings)

        assert env == {
            "GITHUBTOKEN": "1",
            "APIKEY": "2",
            "DB_PASSWORD": "3",
            "CLIENTSECRET": "4",
            "CREDENTIALFILE": "5",
            "OPENAI_API_KEY": "6",
        }

    def test_exposed_key(self):
        assert exposed_key("demo") == "demo"
        assert exposed_key("mongodb-mcp") == "mongodb"
        assert exposed_key("mongo-mcp") == "mongodb"


class TestSync:
    """Test writing and removing entries."""

    @pytest.mark.asyncio
    async def test_writes_entry(self, config, synchronizer, tmp_path):
        record = installed_record(tmp_path)

        key = await synchronizer.sync(record, {"api_key": "x", "region": "y"})

        assert key == "demo"
        entry = read_external(config)["mcpServers"]["demo"]
        assert entry["command"] == config.runtime.node_command
        assert entry["args"] == [str((tmp_path / "packages" / "demo" / "bin" / "index.js").resolve())]
        assert entry["env"] == {"API_KEY": "x"}

    @pytest.mark.asyncio
    async def test_output_format(self, config, synchronizer, tmp_path):
        await synchronizer.sync(installed_record(tmp_path), {})

        content = config.get_external_config_path().read_text(encoding="utf-8")
        assert content.endswith("}\n")
        assert content == json.dumps(json.loads(content), indent=2) + "\n"

    @pytest.mark.asyncio
    async def test_resync_is_byte_identical(self, config, synchronizer, tmp_path):
        record = installed_record(tmp_path)
        settings = {"api_key": "x", "region": "y"}

        await synchronizer.sync(record, settings)
        first = config.get_external_config_path().read_bytes()
        await synchronizer.sync(record, settings)
        second = config.get_external_config_path().read_bytes()

        assert first == second

    @pytest.mark.asyncio
    async def test_unrelated_keys_preserved(self, config, synchronizer, tmp_path):
        path = config.get_external_config_path()
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({
            "theme": "dark",
            "mcpServers": {"someone-else": {"command": "python", "args": ["server.py"]}},
        }))

        await synchronizer.sync(installed_record(tmp_path), {})
        await synchronizer.remove("demo")

        data = read_external(config)
        assert data["theme"] == "dark"
        assert data["mcpServers"] == {"someone-else": {"command": "python", "args": ["server.py"]}}

    @pytest.mark.asyncio
    async def test_entry_removed_when_no_tool_connected(self, config, synchronizer, tmp_path):
        record = installed_record(tmp_path)
        await synchronizer.sync(record, {})

        record.ai_tools[0].connected = False
        key = await synchronizer.sync(record, {})

        assert key is None
        assert "demo" not in read_external(config)["mcpServers"]

    @pytest.mark.asyncio
    async def test_selected_tools_expose_without_connection(self, config, synchronizer, tmp_path):
        record = installed_record(tmp_path, connected=False)

        assert await synchronizer.sync(record, {}, ["cursor"]) == "demo"
        assert "demo" in read_external(config)["mcpServers"]

    @pytest.mark.asyncio
    async def test_not_installed_is_not_exposed(self, config, synchronizer, tmp_path):
        record = installed_record(tmp_path, installed=False)

        assert await synchronizer.sync(record, {}, ["claude"]) is None
        assert not config.get_external_config_path().exists()

    @pytest.mark.asyncio
    async def test_mongo_connector(self, config, synchronizer, tmp_path):
        record = installed_record(tmp_path, package_id="mongodb-mcp")

        key = await synchronizer.sync(record, {"apiKey": "ignored"})

        assert key == "mongodb"
        servers = read_external(config)["mcpServers"]
        assert "mongodb-mcp" not in servers
        assert servers["mongodb"] == {
            "command": "npx",
            "args": ["mongo-mcp", MONGO_URL_PLACEHOLDER],
            "env": {},
        }

    @pytest.mark.asyncio
    async def test_mongo_connection_url_from_settings(self, config, synchronizer, tmp_path):
        record = installed_record(tmp_path, package_id="mongo-mcp")
        url = "mongodb://user:pw@localhost:27017/db"

        await synchronizer.sync(record, {"mongoConnectionUrl": url})

        assert read_external(config)["mcpServers"]["mongodb"]["args"] == ["mongo-mcp", url]
        assert await synchronizer.remove("mongo-mcp") is True
        assert "mongodb" not in read_external(config)["mcpServers"]

    @pytest.mark.asyncio
    async def test_invalid_json_overwritten(self, config, synchronizer, tmp_path):
        path = config.get_external_config_path()
        path.parent.mkdir(parents=True)
        path.write_text("{ this is not json")

        await synchronizer.sync(installed_record(tmp_path), {})

        assert list(read_external(config)["mcpServers"]) == ["demo"]

    @pytest.mark.asyncio
    async def test_write_failure_raises(self, config, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file")
        synchronizer = ExternalConfigSynchronizer(config, path=blocker / "mcp.json")

        with pytest.raises(ExternalConfigError):
            await synchronizer.sync(installed_record(tmp_path), {})


class TestPartialUpdates:
    """Test env-only updates and removal."""

    @pytest.mark.asyncio
    async def test_update_env_keeps_args(self, config, synchronizer, tmp_path):
        record = installed_record(tmp_path)
        await synchronizer.sync(record, {"api_key": "old"})
        path = config.get_external_config_path()
        data = json.loads(path.read_text())
        data["mcpServers"]["demo"]["args"].append("--custom")
        path.write_text(json.dumps(data, indent=2))

        updated = await synchronizer.update_env(record, {"api_key": "new", "token": "t", "region": "eu"})

        entry = read_external(config)["mcpServers"]["demo"]
        assert updated is True
        assert entry["args"][-1] == "--custom"
        assert entry["env"] == {"API_KEY": "new", "TOKEN": "t"}

    @pytest.mark.asyncio
    async def test_update_env_drops_removed_credentials(self, config, synchronizer, tmp_path):
        record = installed_record(tmp_path)
        await synchronizer.sync(record, {"api_key": "x"})

        await synchronizer.update_env(record, {"region": "eu"})

        assert read_external(config)["mcpServers"]["demo"]["env"] == {}

    @pytest.mark.asyncio
    async def test_update_env_without_entry(self, config, synchronizer, tmp_path):
        updated = await synchronizer.update_env(installed_record(tmp_path), {"api_key": "x"})

        assert updated is False
        assert not config.get_external_config_path().exists()

    @pytest.mark.asyncio
    async def test_remove_missing_entry(self, synchronizer):
        assert await synchronizer.remove("nothing") is False


class TestBackups:
    """Test backups of the previous file."""

    @pytest.mark.asyncio
    async def test_backups_are_bounded(self, config, synchronizer, tmp_path):
        for index in range(5):
            await synchronizer.sync(installed_record(tmp_path), {"api_key": str(index)})

        path = config.get_external_config_path()
        backups = list(path.parent.glob(f"{path.name}.backup.*"))
        assert len(backups) == config.external.max_backups

    @pytest.mark.asyncio
    async def test_unchanged_file_not_backed_up(self, config, synchronizer, tmp_path):
        record = installed_record(tmp_path)
        await synchronizer.sync(record, {})
        await synchronizer.sync(record, {})

        path = config.get_external_config_path()
        assert list(path.parent.glob(f"{path.name}.backup.*")) == []

    @pytest.mark.asyncio
    async def test_backups_disabled(self, config, synchronizer, tmp_path):
        config.external.backup = False
        for index in range(3):
            await synchronizer.sync(installed_record(tmp_path), {"api_key": str(index)})

        path = config.get_external_config_path()
        assert list(path.parent.glob(f"{path.name}.backup.*")) == []
