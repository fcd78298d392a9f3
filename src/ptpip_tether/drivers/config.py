"""Driver configuration and factory.

Supports switching between real network/camera drivers and digital twin
drivers for testing and development without a camera on the network.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from ptpip_tether.drivers.gphoto import GPhotoCaptureLibrary
from ptpip_tether.drivers.mdns import ServiceBrowser, ZeroconfServiceBrowser
from ptpip_tether.drivers.native import NativeCaptureLibrary
from ptpip_tether.drivers.probe import NetworkProbe, SystemNetworkProbe
from ptpip_tether.drivers.transport import SocketTransportFactory, TransportFactory
from ptpip_tether.drivers.twin import (
    DigitalTwinCamera,
    DigitalTwinCaptureLibrary,
    DigitalTwinNetworkProbe,
    DigitalTwinServiceBrowser,
    DigitalTwinTransportFactory,
    TwinCameraConfig,
)
from ptpip_tether.protocol.constants import (
    DEFAULT_HOST_NAME,
    DEFAULT_PORT,
    DISCOVERY_TIMEOUT_S,
)

if TYPE_CHECKING:
    from ptpip_tether.devices.orchestrator import SessionOrchestrator
    from ptpip_tether.observability import ConnectionStats


class DriverMode(Enum):
    """Driver mode selection."""

    HARDWARE = "hardware"  # Real sockets, gphoto2, OS network state
    DIGITAL_TWIN = "digital_twin"  # Simulated camera and network


@dataclass
class TetherConfig:
    """Configuration for driver selection, timeouts and reconnect policy.

    Every delay is configurable so tests can run the full state machine with
    zero waits.

    Attributes:
        mode: HARDWARE for real devices, DIGITAL_TWIN for simulation.
        host_name: Initiator name sent in the Init Command Request.
        port: PTP/IP port used for discovery and probing.
        reachability_timeout_s: TCP probe before connecting.
        connect_timeout_s: Socket connect deadline.
        init_timeout_s: Wait for the Init Command ACK.
        event_init_timeout_s: Wait for the Init Event ACK.
        response_timeout_s: Per-read deadline for operation responses.
        open_session_timeout_s: Wait for the OpenSession response.
        close_session_timeout_s: Wait for the CloseSession response.
        auth_response_timeout_s: Wait for each Nikon pairing response.
        probe_timeout_s: Reachability probe used by camera IP detection.
        settle_delay_s: Pause between command and event channel setup.
        auth_retry_delay_s: Pause before each pairing attempt.
        auth_settle_s: Pause between pairing and re-connection.
        reconnect_settle_s: Pause after Wi-Fi returns before reconnecting.
        reconnect_retry_s: Pause between failed reconnect attempts.
        temporary_reconnect_delay_s: Pause around temporary disconnects.
        auth_max_attempts: Pairing attempts before giving up.
        discovery_timeout_s: mDNS browse window.
        monitor_poll_interval_s: Network monitor polling period.
        auto_reconnect: Initial auto-reconnect setting.
        gphoto2_binary: gphoto2 executable for the hardware capture bridge.
        capture_dir: Where hardware captures are downloaded (None keeps
            them on the card).
        wifi_interface: Wi-Fi interface to watch (None auto-detects).
    """

    mode: DriverMode = DriverMode.DIGITAL_TWIN
    host_name: str = DEFAULT_HOST_NAME
    port: int = DEFAULT_PORT

    # Timeouts (seconds)
    reachability_timeout_s: float = 2.0
    connect_timeout_s: float = 5.0
    init_timeout_s: float = 5.0
    event_init_timeout_s: float = 5.0
    response_timeout_s: float = 2.0
    open_session_timeout_s: float = 5.0
    close_session_timeout_s: float = 2.0
    auth_response_timeout_s: float = 10.0
    probe_timeout_s: float = 1.5

    # Delays (seconds)
    settle_delay_s: float = 0.2
    auth_retry_delay_s: float = 2.0
    auth_settle_s: float = 5.0
    reconnect_settle_s: float = 3.0
    reconnect_retry_s: float = 5.0
    temporary_reconnect_delay_s: float = 2.0

    # Policy
    auth_max_attempts: int = 3
    discovery_timeout_s: float = DISCOVERY_TIMEOUT_S
    monitor_poll_interval_s: float = 2.0
    auto_reconnect: bool = True

    # Hardware settings
    gphoto2_binary: str = "gphoto2"
    capture_dir: Path | None = None
    wifi_interface: str | None = None


def default_twin_network() -> DigitalTwinTransportFactory:
    """Simulated network with one Nikon Z 8 that needs station-mode pairing."""
    return DigitalTwinTransportFactory(
        [DigitalTwinCamera(TwinCameraConfig(requires_pairing=True))]
    )


class DriverFactory:
    """Factory for creating drivers based on configuration.

    In DIGITAL_TWIN mode every driver shares one simulated network
    (``twin_network``) so discovery, probing, connection and capture all see
    the same cameras.

    Thread Safety:
        Not thread-safe. Configure once at startup before concurrent access.
    """

    def __init__(
        self,
        config: TetherConfig | None = None,
        twin_network: DigitalTwinTransportFactory | None = None,
    ):
        """Initialize the factory.

        Args:
            config: TetherConfig; None uses defaults (DIGITAL_TWIN).
            twin_network: Simulated network for DIGITAL_TWIN mode. None
                creates ``default_twin_network()`` on first use.
        """
        self.config = config or TetherConfig()
        self._twin_network = twin_network

    @property
    def twin_network(self) -> DigitalTwinTransportFactory:
        if self._twin_network is None:
            self._twin_network = default_twin_network()
        return self._twin_network

    def create_transport_factory(self) -> TransportFactory:
        if self.config.mode == DriverMode.HARDWARE:
            return SocketTransportFactory()
        return self.twin_network

    def create_native_library(self) -> NativeCaptureLibrary:
        """Create the native capture bridge.

        Returns:
            GPhotoCaptureLibrary in HARDWARE mode (needs the gphoto2 binary),
            DigitalTwinCaptureLibrary in DIGITAL_TWIN mode.
        """
        if self.config.mode == DriverMode.HARDWARE:
            return GPhotoCaptureLibrary(
                binary=self.config.gphoto2_binary, capture_dir=self.config.capture_dir
            )
        return DigitalTwinCaptureLibrary(self.twin_network)

    def create_network_probe(self) -> NetworkProbe:
        if self.config.mode == DriverMode.HARDWARE:
            return SystemNetworkProbe(self.config.wifi_interface)
        return DigitalTwinNetworkProbe(self.twin_network)

    def create_service_browser(self) -> ServiceBrowser:
        if self.config.mode == DriverMode.HARDWARE:
            return ZeroconfServiceBrowser()
        return DigitalTwinServiceBrowser(self.twin_network)

    def build_orchestrator(
        self, stats: ConnectionStats | None = None
    ) -> SessionOrchestrator:
        """Wire the full tethering stack for the configured mode.

        Args:
            stats: Optional statistics collector recorded into on every
                connection attempt and capture.

        Returns:
            A SessionOrchestrator that has not been started yet.

        Example:
            >>> orchestrator = get_factory().build_orchestrator()
            >>> await orchestrator.start()
        """
        from ptpip_tether.devices.orchestrator import SessionOrchestrator
        from ptpip_tether.network import (
            ConnectionManager,
            DiscoveryService,
            NetworkStateMonitor,
            NikonAuthenticationService,
        )

        transports = self.create_transport_factory()
        monitor = NetworkStateMonitor(self.create_network_probe(), self.config)
        return SessionOrchestrator(
            connection=ConnectionManager(transports, self.config),
            discovery=DiscoveryService(
                monitor, self.create_service_browser(), transports, self.config
            ),
            auth=NikonAuthenticationService(transports, self.config),
            monitor=monitor,
            native=self.create_native_library(),
            config=self.config,
            stats=stats,
        )


# =============================================================================
# Global Singletons
# =============================================================================

# Thread Safety: Not thread-safe. Configure once at startup before spawning
# threads or starting the event loop.

_factory: DriverFactory | None = None


def get_factory() -> DriverFactory:
    """Get the global driver factory, creating a DIGITAL_TWIN one on first use."""
    global _factory
    if _factory is None:
        _factory = DriverFactory()
    return _factory


def configure(config: TetherConfig) -> None:
    """Replace the global factory with one using ``config``.

    Example:
        >>> configure(TetherConfig(mode=DriverMode.HARDWARE, auto_reconnect=False))
    """
    global _factory
    _factory = DriverFactory(config)


def use_digital_twin(preserve_config: bool = False) -> None:
    """Switch to digital twin mode.

    Args:
        preserve_config: Keep timeouts and other settings of the current
            factory, changing only the mode.
    """
    if preserve_config:
        configure(replace(get_factory().config, mode=DriverMode.DIGITAL_TWIN))
    else:
        configure(TetherConfig(mode=DriverMode.DIGITAL_TWIN))


def use_hardware(preserve_config: bool = False) -> None:
    """Switch to hardware mode (real sockets, gphoto2, OS network state)."""
    if preserve_config:
        configure(replace(get_factory().config, mode=DriverMode.HARDWARE))
    else:
        configure(TetherConfig(mode=DriverMode.HARDWARE))
