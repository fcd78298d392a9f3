"""Tests for ptpip_tether.cli - install, discover and subcommand dispatch."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from ptpip_tether.cli import (
    MODULE_NAME,
    SERVER_NAME,
    TEMPLATE_OPTIONS,
    InstallOutcome,
    format_cameras,
    main,
    mcp_config_path,
    parse_jsonc,
    render_template,
    run_discover,
    run_install,
    vscode_user_dir,
)
from ptpip_tether.protocol.types import Camera

PYTHON = "/opt/tether/.venv/bin/python"


def read_config(path: Path) -> dict[str, Any]:
    return parse_jsonc(path.read_text())


# =========================================================================
# mcp.json handling
# =========================================================================


class TestParseJsonc:
    def test_comments_and_trailing_commas(self) -> None:
        text = '{\n  // servers\n  "servers": {"a": [1, 2,],}, // done\n}'

        assert parse_jsonc(text) == {"servers": {"a": [1, 2]}}

    def test_string_contents_untouched(self) -> None:
        text = '{"url": "http://192.168.1.20/ptp", "note": "a, }"}'

        assert parse_jsonc(text) == {"url": "http://192.168.1.20/ptp", "note": "a, }"}

    @pytest.mark.parametrize("text", ["[1, 2]", "{not json", ""])
    def test_rejects_non_objects(self, text: str) -> None:
        with pytest.raises(ValueError):
            parse_jsonc(text)


class TestRenderTemplate:
    def test_active_entry_runs_twin_mode(self) -> None:
        config = parse_jsonc(render_template(PYTHON))

        entry = config["servers"][SERVER_NAME]
        assert entry["command"] == PYTHON
        assert entry["args"] == ["-m", MODULE_NAME, "--mode", "digital_twin"]

    @pytest.mark.parametrize(
        "flag",
        [
            "--host-name",
            "--capture-dir",
            "--wifi-interface",
            "--no-auto-reconnect",
            "--no-monitor",
            "--log-level",
            "--json-logs",
        ],
    )
    def test_server_flags_offered_as_comments(self, flag: str) -> None:
        commented = [
            line.strip()
            for line in render_template(PYTHON).splitlines()
            if line.strip().startswith(f'// "{flag}"')
        ]

        assert len(commented) == 1

    def test_every_option_has_a_note(self) -> None:
        template = render_template(PYTHON)

        for note, flag in TEMPLATE_OPTIONS:
            assert f"// {note}\n        // {flag}," in template

    def test_windows_interpreter_path_is_escaped(self) -> None:
        python = r"C:\Users\me\tether\python.exe"

        config = parse_jsonc(render_template(python))

        assert config["servers"][SERVER_NAME]["command"] == python


class TestConfigLocation:
    def test_workspace_install(self, tmp_path: Path) -> None:
        assert mcp_config_path(tmp_path) == tmp_path / ".vscode" / "mcp.json"

    @pytest.mark.parametrize(
        "platform,parts",
        [
            ("linux", (".config",)),
            ("darwin", ("Library", "Application Support")),
            ("win32", ("AppData", "Roaming")),
        ],
    )
    def test_user_dir_per_platform(self, tmp_path: Path, platform: str, parts: tuple) -> None:
        expected = tmp_path.joinpath(*parts) / "Code" / "User"

        assert vscode_user_dir(tmp_path, platform) == expected

    def test_insiders_preferred_when_present(self, tmp_path: Path) -> None:
        insiders = tmp_path / ".config" / "Code - Insiders" / "User"
        insiders.mkdir(parents=True)

        assert vscode_user_dir(tmp_path, "linux") == insiders


# =========================================================================
# run_install
# =========================================================================


class TestRunInstall:
    """run_install against a temporary project directory."""

    @pytest.fixture
    def config_path(self, tmp_path: Path) -> Path:
        return tmp_path / ".vscode" / "mcp.json"

    def test_fresh_project_gets_template(self, tmp_path: Path, config_path: Path) -> None:
        outcome = run_install(tmp_path, python_path=PYTHON)

        assert outcome is InstallOutcome.CREATED
        assert "// " in config_path.read_text()
        assert read_config(config_path)["servers"][SERVER_NAME]["command"] == PYTHON
        assert not config_path.with_name("mcp.json.bak").exists()

    def test_merge_keeps_other_servers(self, tmp_path: Path, config_path: Path) -> None:
        """Another MCP server in the file survives the merge.

        Arrangement:
        Existing JSONC mcp.json with a comment and an unrelated server.

        Action:
        run_install() on the project.

        Assertion Strategy:
        - Outcome is MERGED.
        - Both servers are present in the rewritten file.
        - The original text, comment included, is kept in mcp.json.bak.
        """
        config_path.parent.mkdir()
        original = '{\n  // mine\n  "servers": {"other": {"command": "node"},},\n}\n'
        config_path.write_text(original)

        outcome = run_install(tmp_path, python_path=PYTHON)

        assert outcome is InstallOutcome.MERGED
        servers = json.loads(config_path.read_text())["servers"]
        assert servers["other"] == {"command": "node"}
        assert servers[SERVER_NAME]["args"][:2] == ["-m", MODULE_NAME]
        assert config_path.with_name("mcp.json.bak").read_text() == original

    def test_file_without_servers_key(self, tmp_path: Path, config_path: Path) -> None:
        config_path.parent.mkdir()
        config_path.write_text('{"inputs": []}')

        assert run_install(tmp_path, python_path=PYTHON) is InstallOutcome.MERGED

        config = json.loads(config_path.read_text())
        assert config["inputs"] == []
        assert SERVER_NAME in config["servers"]

    def test_already_registered_is_left_alone(self, tmp_path: Path, config_path: Path) -> None:
        run_install(tmp_path, python_path=PYTHON)
        before = config_path.read_text()

        outcome = run_install(tmp_path, python_path="/other/python")

        assert outcome is InstallOutcome.UNCHANGED
        assert config_path.read_text() == before
        assert not config_path.with_name("mcp.json.bak").exists()

    @pytest.mark.parametrize("text", ["{ broken", '{"servers": []}'])
    def test_unreadable_file_is_replaced(
        self, tmp_path: Path, config_path: Path, text: str
    ) -> None:
        config_path.parent.mkdir()
        config_path.write_text(text)

        outcome = run_install(tmp_path, python_path=PYTHON)

        assert outcome is InstallOutcome.REPLACED
        assert config_path.with_name("mcp.json.bak").read_text() == text
        assert SERVER_NAME in read_config(config_path)["servers"]

    def test_global_install(self, tmp_path: Path) -> None:
        user_dir = tmp_path / "Code" / "User"

        with patch("ptpip_tether.cli.vscode_user_dir", return_value=user_dir):
            outcome = run_install(global_install=True, python_path=PYTHON)

        assert outcome is InstallOutcome.CREATED
        assert (user_dir / "mcp.json").exists()

    def test_defaults_to_running_interpreter(self, tmp_path: Path, config_path: Path) -> None:
        run_install(tmp_path)

        assert read_config(config_path)["servers"][SERVER_NAME]["command"] == sys.executable


# =========================================================================
# discover
# =========================================================================


class TestFormatCameras:
    def test_one_row_per_camera(self) -> None:
        cameras = [
            Camera("192.168.1.20", name="Nikon Z8 (3001234)"),
            Camera("192.168.1.1", 15740, "NIKON_Z8 (AP mode)"),
        ]

        lines = format_cameras(cameras).splitlines()

        assert len(lines) == 2
        assert lines[0].startswith("192.168.1.20")
        assert lines[0].endswith("Nikon Z8 (3001234)")
        assert "15740" in lines[1]

    def test_empty(self) -> None:
        assert format_cameras([]) == ""


class TestRunDiscover:
    def test_twin_camera_found(self) -> None:
        """The twin Nikon advertises itself over mDNS."""
        cameras = asyncio.run(run_discover("digital_twin"))

        assert [c.ip_address for c in cameras] == ["192.168.1.20"]
        assert cameras[0].name == "Nikon Z8 (3001234)"


# =========================================================================
# main() - dispatch
# =========================================================================


class TestMainDispatch:
    def test_install(self) -> None:
        with patch("ptpip_tether.cli.run_install") as mock_install:
            with patch("sys.argv", ["ptpip-tether", "install", "--global"]):
                result = main()

        mock_install.assert_called_once_with(global_install=True)
        assert result == 0

    def test_no_args_runs_server(self) -> None:
        with patch("ptpip_tether.server.main") as mock_server:
            with patch("sys.argv", ["ptpip-tether"]):
                main()

        mock_server.assert_called_once()

    def test_server_flags_pass_through(self) -> None:
        """'server' is dropped so server.parse_args() sees only its own flags."""
        argv = ["ptpip-tether", "server", "--mode", "hardware", "--capture-dir", "/tmp/shots"]

        with patch("ptpip_tether.server.main") as mock_server:
            with patch("sys.argv", argv):
                main()
                forwarded = list(sys.argv)

        mock_server.assert_called_once()
        assert forwarded == ["ptpip-tether", "--mode", "hardware", "--capture-dir", "/tmp/shots"]

    def test_discover_json_output(self, capsys: Any) -> None:
        found = [Camera("192.168.1.20", name="Nikon Z8 (3001234)")]

        async def fake_discover(mode: str, force_ap_mode: bool) -> list[Camera]:
            return found

        with patch("ptpip_tether.cli.run_discover", side_effect=fake_discover):
            with patch("sys.argv", ["ptpip-tether", "discover", "--json"]):
                result = main()

        assert result == 0
        assert json.loads(capsys.readouterr().out)[0]["ip_address"] == "192.168.1.20"

    def test_discover_nothing_found(self) -> None:
        async def fake_discover(mode: str, force_ap_mode: bool) -> list[Camera]:
            return []

        with patch("ptpip_tether.cli.run_discover", side_effect=fake_discover) as mock:
            with patch("sys.argv", ["ptpip-tether", "discover", "--mode", "hardware", "--ap"]):
                result = main()

        assert result == 1
        mock.assert_called_once_with("hardware", True)
