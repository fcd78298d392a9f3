"""MCP Tools for camera tethering.

Exposes the SessionOrchestrator to MCP clients: discovery, connect and
disconnect, capture, status, auto-reconnect and connection mode detection.
Works the same against real cameras and the digital twin.
"""

import json
from typing import Any

from mcp.server import Server
from mcp.types import TextContent, Tool

from ptpip_tether.devices import SessionOrchestrator, get_orchestrator
from ptpip_tether.observability import get_logger
from ptpip_tether.protocol.constants import DEFAULT_PORT
from ptpip_tether.protocol.types import Camera

logger = get_logger(__name__)


_CAMERA_PROPERTIES: dict[str, Any] = {
    "ip_address": {
        "type": "string",
        "description": "Camera IPv4 address (e.g. 192.168.1.1 on a camera AP)",
    },
    "port": {
        "type": "integer",
        "description": "PTP/IP port",
        "default": DEFAULT_PORT,
    },
}

# Tool definitions
TOOLS = [
    Tool(
        name="discover_cameras",
        description="Discover PTP/IP cameras on the current Wi-Fi network",
        inputSchema={
            "type": "object",
            "properties": {
                "force_ap_mode": {
                    "type": "boolean",
                    "description": "Probe camera access-point addresses even if the SSID "
                    "does not look like a camera AP",
                    "default": False,
                },
            },
            "required": [],
        },
    ),
    Tool(
        name="connect_camera",
        description="Connect to a camera (pairs Nikon bodies in station mode)",
        inputSchema={
            "type": "object",
            "properties": {
                **_CAMERA_PROPERTIES,
                "name": {
                    "type": "string",
                    "description": "Display name",
                    "default": "",
                },
                "force_ap_mode": {
                    "type": "boolean",
                    "description": "Use the access-point path only, without fallback",
                    "default": False,
                },
            },
            "required": ["ip_address"],
        },
    ),
    Tool(
        name="disconnect_camera",
        description="Disconnect from the connected camera",
        inputSchema={
            "type": "object",
            "properties": {
                "keep_session": {
                    "type": "boolean",
                    "description": "Only drop the PTP/IP channels and keep the PTP session",
                    "default": False,
                },
            },
            "required": [],
        },
    ),
    Tool(
        name="capture_photo",
        description="Trigger a still capture on the connected camera",
        inputSchema={
            "type": "object",
            "properties": {},
            "required": [],
        },
    ),
    Tool(
        name="get_connection_status",
        description="Get connection state, camera info, network state and statistics",
        inputSchema={
            "type": "object",
            "properties": {},
            "required": [],
        },
    ),
    Tool(
        name="set_auto_reconnect",
        description="Enable or disable automatic reconnection after network changes",
        inputSchema={
            "type": "object",
            "properties": {
                "enabled": {
                    "type": "boolean",
                    "description": "True to reconnect automatically",
                },
            },
            "required": ["enabled"],
        },
    ),
    Tool(
        name="detect_connection_mode",
        description="Guess whether a camera is reached on its own AP or in station mode",
        inputSchema={
            "type": "object",
            "properties": dict(_CAMERA_PROPERTIES),
            "required": ["ip_address"],
        },
    ),
]


def register(server: Server) -> None:
    """Register tethering tools with the MCP server.

    Tools registered:
    - discover_cameras
    - connect_camera
    - disconnect_camera
    - capture_photo
    - get_connection_status
    - set_auto_reconnect
    - detect_connection_mode

    Args:
        server: MCP Server instance to register tools with. Must be
            initialized but not yet running.

    Example:
        >>> server = Server("ptpip-tether")
        >>> register(server)
    """

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """Return available tethering tools (MCP tool discovery)."""
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Route tool calls to the matching implementation.

        Args:
            name: Tool name from TOOLS.
            arguments: Arguments matching the tool's inputSchema.

        Returns:
            List containing a single TextContent with a JSON result.
        """
        if name == "discover_cameras":
            return await _discover_cameras(arguments.get("force_ap_mode", False))
        elif name == "connect_camera":
            return await _connect_camera(
                arguments["ip_address"],
                arguments.get("port", DEFAULT_PORT),
                arguments.get("name", ""),
                arguments.get("force_ap_mode", False),
            )
        elif name == "disconnect_camera":
            return await _disconnect_camera(arguments.get("keep_session", False))
        elif name == "capture_photo":
            return await _capture_photo()
        elif name == "get_connection_status":
            return await _get_connection_status()
        elif name == "set_auto_reconnect":
            return await _set_auto_reconnect(arguments["enabled"])
        elif name == "detect_connection_mode":
            return await _detect_connection_mode(
                arguments["ip_address"], arguments.get("port", DEFAULT_PORT)
            )
        else:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]


# Tool implementations using the session orchestrator


def _result(payload: dict[str, Any]) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, indent=2))]


def _error(action: str, e: Exception) -> list[TextContent]:
    logger.error(f"Error {action}", error=str(e), error_type=type(e).__name__)
    return _result({"error": "internal", "action": action, "message": str(e)})


async def _discover_cameras(
    force_ap_mode: bool = False, orchestrator: SessionOrchestrator | None = None
) -> list[TextContent]:
    """Run discovery and list the cameras found.

    Returns:
        JSON ``{"count": int, "cameras": [{"ip_address", "port", "name",
        "is_online"}, ...]}``.
    """
    try:
        orchestrator = orchestrator or get_orchestrator()
        cameras = await orchestrator.discover_cameras(force_ap_mode)
        return _result(
            {"count": len(cameras), "cameras": [camera.to_dict() for camera in cameras]}
        )
    except Exception as e:
        return _error("discovering cameras", e)


async def _connect_camera(
    ip_address: str,
    port: int = DEFAULT_PORT,
    name: str = "",
    force_ap_mode: bool = False,
    orchestrator: SessionOrchestrator | None = None,
) -> list[TextContent]:
    """Connect to a camera.

    A camera from the latest discovery with the same address keeps its
    discovered name when ``name`` is empty.

    Returns:
        JSON ``{"connected": bool, "state": str, "camera": {...},
        "camera_info": {...} | null, "error": str | null}``.
    """
    try:
        orchestrator = orchestrator or get_orchestrator()
        camera = Camera(ip_address=ip_address, port=port, name=name)
        if not name:
            for known in orchestrator.discovered_cameras.value:
                if known.address == camera.address:
                    camera = known
                    break
        connected = await orchestrator.connect(camera, force_ap_mode=force_ap_mode)
        info = orchestrator.camera_info.value
        return _result(
            {
                "connected": connected,
                "state": orchestrator.state.name,
                "camera": camera.to_dict(),
                "camera_info": info.to_dict() if info else None,
                "error": orchestrator.last_error,
            }
        )
    except Exception as e:
        return _error("connecting camera", e)


async def _disconnect_camera(
    keep_session: bool = False, orchestrator: SessionOrchestrator | None = None
) -> list[TextContent]:
    try:
        orchestrator = orchestrator or get_orchestrator()
        await orchestrator.disconnect(keep_session=keep_session)
        return _result({"state": orchestrator.state.name, "keep_session": keep_session})
    except Exception as e:
        return _error("disconnecting camera", e)


async def _capture_photo(orchestrator: SessionOrchestrator | None = None) -> list[TextContent]:
    """Trigger a capture.

    Returns:
        JSON ``{"success": bool, "camera": {...} | null}``. ``success`` is
        False without a connected camera.
    """
    try:
        orchestrator = orchestrator or get_orchestrator()
        camera = orchestrator.connected_camera
        success = await orchestrator.capture_photo()
        return _result({"success": success, "camera": camera.to_dict() if camera else None})
    except Exception as e:
        return _error("capturing photo", e)


async def _get_connection_status(
    orchestrator: SessionOrchestrator | None = None,
) -> list[TextContent]:
    try:
        orchestrator = orchestrator or get_orchestrator()
        return _result(orchestrator.status())
    except Exception as e:
        return _error("reading connection status", e)


async def _set_auto_reconnect(
    enabled: bool, orchestrator: SessionOrchestrator | None = None
) -> list[TextContent]:
    try:
        orchestrator = orchestrator or get_orchestrator()
        orchestrator.set_auto_reconnect_enabled(enabled)
        return _result({"auto_reconnect": orchestrator.is_auto_reconnect_enabled})
    except Exception as e:
        return _error("setting auto-reconnect", e)


async def _detect_connection_mode(
    ip_address: str,
    port: int = DEFAULT_PORT,
    orchestrator: SessionOrchestrator | None = None,
) -> list[TextContent]:
    """Detect how a camera is reached.

    Returns:
        JSON ``{"ip_address": str, "port": int, "mode": "AP_MODE" |
        "STA_MODE" | "UNKNOWN"}``.
    """
    try:
        orchestrator = orchestrator or get_orchestrator()
        mode = await orchestrator.detect_nikon_connection_mode(Camera(ip_address, port))
        return _result({"ip_address": ip_address, "port": port, "mode": mode.name})
    except Exception as e:
        return _error("detecting connection mode", e)
