"""Drivers for camera and network access.

Supports two modes:
- HARDWARE: Real TCP sockets, the gphoto2 capture bridge, OS Wi-Fi state, mDNS
- DIGITAL_TWIN: A simulated PTP/IP camera on a simulated network

Use drivers.config to switch modes:
    from ptpip_tether.drivers import config
    config.use_digital_twin()  # or config.use_hardware()

Protocols:
    Transport/TransportFactory, NativeCaptureLibrary, NetworkProbe and
    ServiceBrowser are the injection seams used by the network layer and by
    tests.
"""

from ptpip_tether.drivers import config, twin
from ptpip_tether.drivers.config import (
    DriverFactory,
    DriverMode,
    TetherConfig,
    configure,
    get_factory,
    use_digital_twin,
    use_hardware,
)
from ptpip_tether.drivers.gphoto import GPhotoCaptureLibrary
from ptpip_tether.drivers.mdns import ServiceBrowser, ServiceRecord, ZeroconfServiceBrowser
from ptpip_tether.drivers.native import NativeCaptureLibrary, is_init_success
from ptpip_tether.drivers.probe import NetworkProbe, SystemNetworkProbe
from ptpip_tether.drivers.transport import (
    SocketTransport,
    SocketTransportFactory,
    Transport,
    TransportFactory,
)

__all__ = [
    # Submodules
    "config",
    "twin",
    # Configuration
    "DriverMode",
    "TetherConfig",
    "DriverFactory",
    "get_factory",
    "configure",
    "use_digital_twin",
    "use_hardware",
    # Protocols
    "Transport",
    "TransportFactory",
    "NativeCaptureLibrary",
    "NetworkProbe",
    "ServiceBrowser",
    "ServiceRecord",
    "is_init_success",
    # Hardware implementations
    "SocketTransport",
    "SocketTransportFactory",
    "GPhotoCaptureLibrary",
    "SystemNetworkProbe",
    "ZeroconfServiceBrowser",
]
