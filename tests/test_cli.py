"""
Test CLI functionality of MCP Station.

Test the command-line interface against an isolated configuration
directory and external AI-tool config file.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from mcp_station import __version__
from mcp_station.cli.main import cli
from mcp_station.core.models import OperationResult

from conftest import manifest


class TestCLI:
    """Test CLI commands."""

    @pytest.fixture(autouse=True)
    def isolated(self, tmp_path):
        """Point every invocation at the test's temporary directory."""
        self.runner = CliRunner()
        self.config_dir = tmp_path / "config"
        self.external_path = tmp_path / "cursor" / "mcp.json"
        self.env = {
            "MCP_STATION_EXTERNAL__PATH": str(self.external_path),
            "MCP_STATION_LOGGING__FILE": "",
        }

    def invoke(self, *args, **kwargs):
        return self.runner.invoke(
            cli,
            ["--config-dir", str(self.config_dir), *args],
            env=self.env,
            catch_exceptions=False,
            **kwargs,
        )

    def list_json(self):
        result = self.invoke("list", "-o", "json")
        assert result.exit_code == 0
        return {record["id"]: record for record in json.loads(result.output)}

    def test_version(self):
        """Test version option."""
        result = self.runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "MCP Station" in result.output
        assert __version__ in result.output

    def test_list_json(self):
        """Test listing as JSON includes the default package."""
        records = self.list_json()

        assert list(records) == ["default-mcp"]
        assert records["default-mcp"]["installed"] is False
        assert records["default-mcp"]["mainScript"] is None

    def test_list_table(self):
        """Test the table listing."""
        result = self.invoke("list")

        assert result.exit_code == 0
        assert "MCP Servers" in result.output

    def test_import_command(self, make_archive):
        """Test importing an archive."""
        archive = make_archive({
            "manifest.json": manifest(id="demo", name="Demo", main="server.js"),
            "server.js": "console.log('demo');",
        })

        result = self.invoke("import", str(archive))

        assert result.exit_code == 0
        assert "MCP package imported successfully" in result.output
        assert "demo" in self.list_json()

    def test_import_rejected(self, make_archive):
        """Test importing an archive without a manifest fails."""
        result = self.invoke("import", str(make_archive({"README.md": "hi"})))

        assert result.exit_code == 1
        assert "could not detect type" in result.output

    def test_install_and_uninstall_default(self):
        """Test installing and resetting the default package."""
        result = self.invoke("install", "default-mcp")

        assert result.exit_code == 0
        assert "MCP server installed successfully" in result.output
        assert self.list_json()["default-mcp"]["installed"] is True
        assert (self.config_dir / "mcp-servers" / "default-mcp" / "bin" / "index.js").is_file()

        result = self.invoke("uninstall", "default-mcp", "--force")

        assert result.exit_code == 0
        assert "MCP server uninstalled successfully" in result.output
        assert self.list_json()["default-mcp"]["installed"] is False

    def test_uninstall_cancelled(self):
        """Test declining the confirmation prompt."""
        result = self.invoke("uninstall", "default-mcp", input="n\n")

        assert result.exit_code == 0
        assert "cancelled" in result.output
        assert "default-mcp" in self.list_json()

    def test_install_unknown(self):
        """Test installing a missing package exits non-zero."""
        result = self.invoke("install", "nope")

        assert result.exit_code == 1
        assert "MCP server not found" in result.output

    def test_settings_set_and_show(self):
        """Test saving and showing settings."""
        result = self.invoke("settings", "set", "default-mcp", "region=eu", "api_key=abc")
        assert result.exit_code == 0
        assert "Settings saved successfully" in result.output

        result = self.invoke("settings", "set", "default-mcp", "region=us")
        assert result.exit_code == 0

        result = self.invoke("settings", "show", "default-mcp")
        assert result.exit_code == 0
        assert "region" in result.output
        assert "us" in result.output
        assert "abc" in result.output

    def test_settings_replace(self):
        """Test --replace drops keys that are not given."""
        self.invoke("settings", "set", "default-mcp", "region=eu")
        self.invoke("settings", "set", "default-mcp", "token=t", "--replace")

        result = self.invoke("settings", "show", "default-mcp")

        assert "token" in result.output
        assert "region" not in result.output

    def test_settings_show_missing_package(self):
        """Test showing settings of an unknown package."""
        result = self.invoke("settings", "show", "nope")

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_bad_assignment(self):
        """Test KEY=VALUE parsing errors are usage errors."""
        result = self.invoke("settings", "set", "default-mcp", "novalue")

        assert result.exit_code == 2
        assert "KEY=VALUE" in result.output

    def test_toggle_tool_needs_credentials(self):
        """Test connecting a tool after saving its credentials."""
        result = self.invoke("toggle-tool", "default-mcp", "claude")
        assert result.exit_code == 1
        assert "Credentials required" in result.output
        assert "mcp-station credentials claude" in result.output

        result = self.invoke("credentials", "claude", "apiKey=secret")
        assert result.exit_code == 0

        result = self.invoke("toggle-tool", "default-mcp", "claude")
        assert result.exit_code == 0
        assert "AI tool connected to MCP server" in result.output

    def test_install_exposes_tool(self):
        """Test --tool writes the external configuration entry."""
        result = self.invoke("install", "default-mcp", "--tool", "claude")

        assert result.exit_code == 0
        with open(self.external_path, "r", encoding="utf-8") as f:
            assert "default-mcp" in json.load(f)["mcpServers"]

        assert self.invoke("exposed").exit_code == 0

    def test_exposed_empty(self):
        """Test the exposed listing with no external file."""
        result = self.invoke("exposed")

        assert result.exit_code == 0
        assert "No MCP servers exposed" in result.output

    @patch("mcp_station.cli.main.cli_context")
    def test_run_reports_failure(self, mock_context):
        """Test run exits non-zero when the server cannot start."""
        mock_manager = MagicMock()
        mock_manager.start = AsyncMock(return_value=OperationResult.fail("MCP server not installed"))
        mock_manager.shutdown = AsyncMock()
        mock_context.get_manager.return_value = mock_manager

        result = self.invoke("run", "default-mcp")

        assert result.exit_code == 1
        assert "MCP server not installed" in result.output
        mock_manager.start.assert_awaited_once_with("default-mcp")
        mock_manager.shutdown.assert_awaited_once()

    @patch("mcp_station.cli.main.cli_context")
    def test_run_exit_code(self, mock_context):
        """Test run propagates the server's exit code."""
        mock_manager = MagicMock()
        mock_manager.start = AsyncMock(return_value=OperationResult.ok("MCP server started successfully"))
        mock_manager.supervisor.wait = AsyncMock(return_value=3)
        mock_manager.shutdown = AsyncMock()
        mock_context.get_manager.return_value = mock_manager

        result = self.invoke("run", "default-mcp")

        assert result.exit_code == 3
        assert "MCP server started successfully" in result.output
