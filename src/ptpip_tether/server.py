"""MCP Server entry point for camera tethering."""

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Literal

from mcp.server import Server
from mcp.server.stdio import stdio_server

from ptpip_tether.observability import ConnectionStats, configure_logging, get_logger
from ptpip_tether.tools import tether

logger = get_logger(__name__)


def create_server(mode: Literal["hardware", "digital_twin"] = "digital_twin") -> Server:
    """Create and configure the MCP server for camera tethering.

    Selects the driver mode and registers the tethering tools. The session
    orchestrator itself is started by ``run_server()`` because it needs a
    running event loop.

    Args:
        mode: Driver mode - "hardware" for real cameras and networks,
            "digital_twin" for a simulated Nikon on a simulated network.
            Defaults to "digital_twin" for safety.

    Returns:
        Configured MCP Server instance with all tools registered.

    Example:
        >>> server = create_server(mode="hardware")
        >>> # Server now exposes discover_cameras, connect_camera, ...
    """
    server = Server("ptpip-tether")

    from ptpip_tether.drivers.config import use_digital_twin, use_hardware

    # Configure driver mode
    if mode.lower() == "hardware":
        use_hardware(preserve_config=True)
        logger.info("Using HARDWARE mode (real cameras)")
    else:
        use_digital_twin(preserve_config=True)
        logger.info("Using DIGITAL_TWIN mode (simulated camera)")

    # Register tool handlers
    tether.register(server)

    return server


async def run_server(
    mode: Literal["hardware", "digital_twin"] = "digital_twin",
    run_monitor: bool = True,
) -> None:
    """Run the MCP server over stdio.

    Creates the server, starts the session orchestrator, then serves MCP
    over stdin/stdout. The orchestrator is always shut down on exit.

    Args:
        mode: Driver mode - "hardware" or "digital_twin" (default).
        run_monitor: Poll the network state in the background.

    Example:
        >>> asyncio.run(run_server("hardware"))
    """
    server = create_server(mode=mode)

    from ptpip_tether.devices import init_orchestrator, shutdown_orchestrator

    await init_orchestrator(stats=ConnectionStats(), run_monitor=run_monitor)
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        await shutdown_orchestrator()


def parse_args() -> argparse.Namespace:
    """Parse command line arguments for the tethering server.

    Returns:
        argparse.Namespace with attributes:
        - mode: str - Driver mode ("hardware" or "digital_twin")
        - host_name: str | None - Initiator name sent to cameras
        - capture_dir: str | None - Download directory for captures
        - wifi_interface: str | None - Wi-Fi interface to watch
        - no_auto_reconnect: bool - Start with auto-reconnect disabled
        - no_monitor: bool - Do not poll network state
        - log_level: str - Root log level
        - json_logs: bool - Emit JSON log lines

    Raises:
        SystemExit: On invalid arguments (e.g., --help).
    """
    parser = argparse.ArgumentParser(
        description="PTP/IP Tether MCP Server - Discover, connect and trigger Wi-Fi cameras"
    )
    parser.add_argument(
        "--mode",
        type=str,
        choices=["hardware", "digital_twin"],
        default="digital_twin",
        help=(
            "Driver mode: 'hardware' for real cameras, "
            "'digital_twin' for simulation (default)"
        ),
    )
    parser.add_argument(
        "--host-name",
        type=str,
        default=None,
        help="Initiator name shown on the camera during pairing",
    )
    parser.add_argument(
        "--capture-dir",
        type=str,
        default=None,
        help="Directory to download captures into (default: keep on card)",
    )
    parser.add_argument(
        "--wifi-interface",
        type=str,
        default=None,
        help="Wi-Fi interface to monitor (default: auto-detect)",
    )
    parser.add_argument(
        "--no-auto-reconnect",
        action="store_true",
        help="Start with auto-reconnect disabled",
    )
    parser.add_argument(
        "--no-monitor",
        action="store_true",
        help="Do not poll network state in the background",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["critical", "error", "warning", "info", "debug"],
        default="info",
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines instead of key=value text",
    )
    return parser.parse_args()


def apply_args(args: argparse.Namespace) -> None:
    """Fold command line options into the global driver configuration."""
    from dataclasses import replace

    from ptpip_tether.drivers.config import configure, get_factory

    changes: dict[str, object] = {"auto_reconnect": not args.no_auto_reconnect}
    if args.host_name:
        changes["host_name"] = args.host_name
    if args.capture_dir:
        changes["capture_dir"] = Path(args.capture_dir)
    if args.wifi_interface:
        changes["wifi_interface"] = args.wifi_interface
    configure(replace(get_factory().config, **changes))


def main() -> None:
    """Main entry point for the ptpip-tether server.

    Parses command-line arguments, configures structured logging (on
    stderr, stdout carries MCP), applies driver settings and serves MCP
    over stdio until the client disconnects.
    """
    args = parse_args()

    configure_logging(
        level=getattr(logging, args.log_level.upper()),
        json_format=args.json_logs,
    )
    apply_args(args)

    logger.info("Starting MCP server", mode=args.mode)
    asyncio.run(run_server(args.mode, run_monitor=not args.no_monitor))


if __name__ == "__main__":  # pragma: no cover
    main()
