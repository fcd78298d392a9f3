"""CLI entry point for ptpip-tether.

Provides the ``ptpip-tether`` console script with subcommands:

- ``install`` - Register the MCP server in VS Code's ``mcp.json``
- ``discover`` - One-shot camera discovery, printed as a table or JSON
- ``server`` - Run the MCP server (default if no subcommand)

Usage::

    # Register the server for this project (.vscode/mcp.json)
    ptpip-tether install

    # Find cameras on the current Wi-Fi network
    ptpip-tether discover --mode hardware
    ptpip-tether discover --mode hardware --ap --json

    # Run MCP server (same as python -m ptpip_tether.server)
    ptpip-tether
    ptpip-tether server --mode hardware --capture-dir ~/Pictures/tether
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import json
import logging
import re
import sys
from functools import lru_cache
from pathlib import Path
from typing import Any

from ptpip_tether.protocol.types import Camera

SERVER_NAME = "ptpip-tether"
MODULE_NAME = "ptpip_tether.server"
VSCODE_DIR = ".vscode"
CONFIG_FILE = "mcp.json"
BACKUP_SUFFIX = ".bak"


@lru_cache(maxsize=1)
def _cli_logger() -> logging.Logger:
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    return logging.getLogger(__name__)


def _log(message: str, *, emoji: str = "") -> None:
    """Print a one-line status message, optionally prefixed with an emoji."""
    _cli_logger().info(f"{emoji} {message}" if emoji else message)


# =============================================================================
# install
# =============================================================================

#: Server flags offered commented-out in a fresh mcp.json, with their notes.
TEMPLATE_OPTIONS: tuple[tuple[str, str], ...] = (
    ("Initiator name shown on the camera while pairing", '"--host-name", "ptpip-tether"'),
    ("Download captures here instead of leaving them on the card", '"--capture-dir", "./captures"'),
    ("Wi-Fi interface to watch (auto-detected when omitted)", '"--wifi-interface", "wlan0"'),
    ("Start with auto-reconnect switched off", '"--no-auto-reconnect"'),
    ("Skip background Wi-Fi polling", '"--no-monitor"'),
    ("critical, error, warning, info or debug", '"--log-level", "info"'),
    ("JSON log lines on stderr", '"--json-logs"'),
)

# Strings are matched first so "//" and "," inside values survive.
_JSON_STRING = r'"(?:\\.|[^"\\])*"'
_LINE_COMMENT = re.compile(rf"({_JSON_STRING})|//[^\n]*")
_TRAILING_COMMA = re.compile(rf"({_JSON_STRING})|,(?=\s*[}}\]])")

_VSCODE_ROOTS = {
    "darwin": ("Library", "Application Support"),
    "win32": ("AppData", "Roaming"),
}


def _keep_string(match: re.Match[str]) -> str:
    return match.group(1) or ""


class InstallOutcome(enum.Enum):
    """What ``run_install`` did to the config file."""

    CREATED = "created"
    MERGED = "merged"
    UNCHANGED = "unchanged"
    REPLACED = "replaced"


def parse_jsonc(text: str) -> dict[str, Any]:
    """Parse VS Code flavoured JSON: ``//`` comments and trailing commas.

    Block comments are not supported.

    Raises:
        ValueError: Not valid JSONC, or the top level is not an object.

    Example:
        >>> parse_jsonc('{"url": "http://cam", // note\\n}')
        {'url': 'http://cam'}
    """
    cleaned = _TRAILING_COMMA.sub(_keep_string, _LINE_COMMENT.sub(_keep_string, text))
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError(f"{CONFIG_FILE} must hold a JSON object")
    return data


def vscode_user_dir(home: Path | None = None, platform: str | None = None) -> Path:
    """VS Code's per-user settings directory; Insiders wins when installed."""
    root = (home or Path.home()).joinpath(
        *_VSCODE_ROOTS.get(platform or sys.platform, (".config",))
    )
    insiders = root / "Code - Insiders" / "User"
    return insiders if insiders.exists() else root / "Code" / "User"


def mcp_config_path(cwd: str | Path | None = None, global_install: bool = False) -> Path:
    if global_install:
        return vscode_user_dir() / CONFIG_FILE
    return Path(cwd or Path.cwd()) / VSCODE_DIR / CONFIG_FILE


def server_entry(python_path: str) -> dict[str, Any]:
    return {"command": python_path, "args": ["-m", MODULE_NAME, "--mode", "digital_twin"]}


def render_template(python_path: str) -> str:
    """A fresh JSONC mcp.json: the server in twin mode plus every optional flag."""
    lines = [
        "{",
        '  "servers": {',
        f"    {json.dumps(SERVER_NAME)}: {{",
        f'      "command": {json.dumps(python_path)},',
        '      "args": [',
        f'        "-m", {json.dumps(MODULE_NAME)},',
        '        // "hardware" talks to real cameras, "digital_twin" simulates a Nikon',
        '        "--mode", "digital_twin",',
    ]
    for note, flag in TEMPLATE_OPTIONS:
        lines.append(f"        // {note}")
        lines.append(f"        // {flag},")
    lines += ["      ]", "    }", "  }", "}", ""]
    return "\n".join(lines)


def _backup(path: Path, text: str) -> Path:
    backup = path.with_name(path.name + BACKUP_SUFFIX)
    backup.write_text(text)
    return backup


def run_install(
    cwd: str | Path | None = None,
    *,
    global_install: bool = False,
    python_path: str | None = None,
) -> InstallOutcome:
    """Register ptpip-tether as an MCP server for VS Code.

    A missing file gets the commented template. An existing file keeps
    its other servers: ptpip-tether is added and the file rewritten as
    plain JSON after a ``.bak`` copy is saved. A file that cannot be
    parsed is backed up and replaced by the template. A file that
    already lists ptpip-tether is left byte for byte.

    Args:
        cwd: Project root for a workspace install. Defaults to the cwd.
        global_install: Write to the VS Code user directory instead.
        python_path: Interpreter the server runs under. Defaults to the
            interpreter running this command.

    Returns:
        What happened to the file.
    """
    path = mcp_config_path(cwd, global_install)
    python_path = python_path or sys.executable

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_template(python_path))
        _log(f"Created {path}", emoji="✅")
        return InstallOutcome.CREATED

    original = path.read_text()
    try:
        config = parse_jsonc(original)
        servers = config.setdefault("servers", {})
        if not isinstance(servers, dict):
            raise ValueError('"servers" must be an object')
    except ValueError as e:
        backup = _backup(path, original)
        path.write_text(render_template(python_path))
        _log(f"Unreadable {path.name} ({e}), replaced; old copy in {backup.name}", emoji="⚠️")
        return InstallOutcome.REPLACED

    if SERVER_NAME in servers:
        _log(f"{SERVER_NAME} already registered in {path}", emoji="✅")
        return InstallOutcome.UNCHANGED

    backup = _backup(path, original)
    servers[SERVER_NAME] = server_entry(python_path)
    path.write_text(json.dumps(config, indent=2) + "\n")
    _log(f"Added {SERVER_NAME} to {path}; comments dropped, original in {backup.name}", emoji="➕")
    return InstallOutcome.MERGED


# =============================================================================
# discover
# =============================================================================


def format_cameras(cameras: list[Camera]) -> str:
    """Fixed-width table of cameras, one per line.

    Example:
        >>> print(format_cameras([Camera("192.168.1.1", name="Nikon Z8 (3001234)")]))
        192.168.1.1      15740  Nikon Z8 (3001234)
    """
    return "\n".join(
        f"{camera.ip_address:<16} {camera.port:>5}  {camera.name}" for camera in cameras
    )


async def run_discover(mode: str = "digital_twin", force_ap_mode: bool = False) -> list[Camera]:
    """Build a short-lived orchestrator, discover once and shut it down."""
    from ptpip_tether.drivers.config import DriverMode, get_factory, use_digital_twin, use_hardware

    if mode == DriverMode.HARDWARE.value:
        use_hardware(preserve_config=True)
    else:
        use_digital_twin(preserve_config=True)

    orchestrator = get_factory().build_orchestrator()
    await orchestrator.start(run_monitor=False)
    try:
        return await orchestrator.discover_cameras(force_ap_mode)
    finally:
        await orchestrator.stop()


def _cmd_discover(args: argparse.Namespace) -> int:
    cameras = asyncio.run(run_discover(args.mode, args.ap))
    if args.json:
        print(json.dumps([camera.to_dict() for camera in cameras], indent=2))
    elif cameras:
        _log(f"Found {len(cameras)} camera(s)", emoji="📷")
        _log(format_cameras(cameras))
    else:
        _log("No cameras found", emoji="🔍")
    return 0 if cameras else 1


def main() -> int:
    """Main CLI entry point for ptpip-tether.

    Dispatches to subcommands:
    - ``install``: Generate .vscode/mcp.json configuration
    - ``discover``: Discover cameras once and print them
    - ``server`` or no subcommand: Run MCP server (delegates to
      ``server.main()`` which has its own arg parser)

    Returns:
        Exit code. ``discover`` returns 1 when nothing was found.
    """
    parser = argparse.ArgumentParser(
        prog="ptpip-tether",
        description="PTP/IP Tether - discover, connect and trigger Wi-Fi cameras",
    )
    subparsers = parser.add_subparsers(
        dest="command",
        help="Available commands",
    )

    install_parser = subparsers.add_parser(
        "install",
        help="Create .vscode/mcp.json configuration",
    )
    install_parser.add_argument(
        "--global",
        dest="global_install",
        action="store_true",
        help="Install to global VS Code settings",
    )

    discover_parser = subparsers.add_parser(
        "discover",
        help="Discover cameras on the current network",
    )
    discover_parser.add_argument(
        "--mode",
        choices=["hardware", "digital_twin"],
        default="digital_twin",
        help="Driver mode (default: digital_twin)",
    )
    discover_parser.add_argument(
        "--ap",
        action="store_true",
        help="Probe camera access-point addresses regardless of SSID",
    )
    discover_parser.add_argument(
        "--json",
        action="store_true",
        help="Print cameras as JSON",
    )

    # Server subcommand (pass-through to server.main())
    subparsers.add_parser(
        "server",
        help="Run MCP server (default if no subcommand)",
        add_help=False,
    )

    # Only parse known args so server flags pass through
    args, _ = parser.parse_known_args()

    if args.command == "install":
        run_install(global_install=args.global_install)
        return 0
    if args.command == "discover":
        return _cmd_discover(args)

    # Strip "server" subcommand so server.parse_args() works
    if len(sys.argv) > 1 and sys.argv[1] == "server":
        sys.argv = [sys.argv[0]] + sys.argv[2:]

    from ptpip_tether.server import main as server_main

    server_main()
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
