"""PTP/IP network layer.

Blocking building blocks that talk to cameras through injected drivers:

- ConnectionManager: command/event channels, init handshake, PTP session
- NikonAuthenticationService: Nikon station-mode pairing
- DiscoveryService: AP probing and mDNS discovery
- NetworkStateMonitor: normalized Wi-Fi state stream
"""

from ptpip_tether.network.authentication import (
    AuthenticatedConnection,
    NikonAuthenticationService,
)
from ptpip_tether.network.connection import ConnectionManager
from ptpip_tether.network.discovery import DiscoveryService, extract_camera_name
from ptpip_tether.network.monitor import NetworkStateMonitor, is_camera_ssid

__all__ = [
    "ConnectionManager",
    "NikonAuthenticationService",
    "AuthenticatedConnection",
    "DiscoveryService",
    "extract_camera_name",
    "NetworkStateMonitor",
    "is_camera_ssid",
]
