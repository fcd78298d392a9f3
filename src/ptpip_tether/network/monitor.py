"""Network state monitor.

Turns raw probe answers (Wi-Fi up, SSID, gateway, reachability) into a
normalized NetworkState and publishes it on the ``state`` observable, only
when it changes. ``run()`` is the polling loop that stands in for OS
connectivity callbacks.
"""

from __future__ import annotations

import asyncio
from ipaddress import IPv4Address, IPv4Network

from ptpip_tether.devices.observable import Observable
from ptpip_tether.drivers.config import TetherConfig
from ptpip_tether.drivers.probe import NetworkProbe
from ptpip_tether.observability import get_logger
from ptpip_tether.protocol.constants import CAMERA_SSID_PATTERNS, COMMON_CAMERA_AP_IPS
from ptpip_tether.protocol.types import NetworkState

logger = get_logger(__name__)


def is_camera_ssid(ssid: str | None) -> bool:
    """True if ``ssid`` names a camera-hosted access point.

    Example:
        >>> is_camera_ssid("Nikon_WU2_Z8_1234"), is_camera_ssid("HomeNet")
        (True, False)
    """
    if not ssid:
        return False
    upper = ssid.upper()
    return any(pattern in upper for pattern in CAMERA_SSID_PATTERNS)


def subnet_gateway(local_ip: str | None) -> str | None:
    """The ``.1`` address of the /24 that ``local_ip`` belongs to."""
    if not local_ip:
        return None
    try:
        network = IPv4Network(f"{local_ip}/24", strict=False)
    except ValueError:
        return None
    return str(IPv4Address(int(network.network_address) + 1))


class NetworkStateMonitor:
    """Observes Wi-Fi connectivity and camera access-point membership.

    Args:
        probe: Source of raw network facts.
        config: Probe port and timeouts, poll interval.

    Attributes:
        state: Observable of the latest distinct NetworkState.
    """

    def __init__(self, probe: NetworkProbe, config: TetherConfig | None = None):
        self.probe = probe
        self.config = config or TetherConfig()
        self.state: Observable[NetworkState] = Observable(NetworkState.disconnected())
        self._ap_cache: tuple[str | None, bool] | None = None
        self._last: NetworkState | None = None
        self._stop: asyncio.Event | None = None

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def is_wifi_connected(self) -> bool:
        """Whether the host has an active Wi-Fi link right now.

        Asks the network probe directly and bypasses the published state,
        so it can be used before the first poll.
        """
        return self.probe.is_wifi_connected()

    def current_ssid(self) -> str | None:
        """SSID of the joined network, or None when not on Wi-Fi."""
        return self.probe.current_ssid()

    def is_connected_to_camera_ap(self) -> bool:
        """Whether the current SSID is a camera access point (cached per SSID)."""
        ssid = self.probe.current_ssid()
        if self._ap_cache is not None and self._ap_cache[0] == ssid:
            return self._ap_cache[1]
        result = is_camera_ssid(ssid)
        self._ap_cache = (ssid, result)
        logger.debug("Camera AP check", ssid=ssid, camera_ap=result)
        return result

    def candidate_ips(self) -> list[str]:
        """Camera IP candidates in priority order, without duplicates.

        Gateway, DHCP server, own subnet ``.1``, then common camera AP
        addresses.
        """
        ordered = [
            self.probe.gateway_ip(),
            self.probe.dhcp_server_ip(),
            subnet_gateway(self.probe.local_ipv4()),
            *COMMON_CAMERA_AP_IPS,
        ]
        seen: list[str] = []
        for ip in ordered:
            if ip and ip not in seen:
                seen.append(ip)
        return seen

    def _reachable(self, ip: str) -> bool:
        return self.probe.is_reachable(ip, self.config.port, self.config.probe_timeout_s)

    def detect_camera_ip(self) -> str | None:
        """First reachable candidate, else the first candidate at all."""
        candidates = self.candidate_ips()
        for ip in candidates:
            if self._reachable(ip):
                logger.debug("Camera IP detected", ip=ip)
                return ip
        if candidates:
            logger.debug("No candidate reachable, assuming first", ip=candidates[0])
            return candidates[0]
        return None

    def find_available_camera_ip(self) -> str | None:
        """First candidate that answers on the PTP/IP port, or None."""
        for ip in self.candidate_ips():
            if self._reachable(ip):
                return ip
        return None

    def snapshot(self) -> NetworkState:
        """Current normalized state (blocking; probes on camera APs)."""
        if not self.probe.is_wifi_connected():
            return NetworkState.disconnected()
        ssid = self.probe.current_ssid()
        on_ap = self.is_connected_to_camera_ap()
        return NetworkState(
            is_wifi_connected=True,
            is_connected_to_camera_ap=on_ap,
            ssid=ssid,
            detected_camera_ip=self.detect_camera_ip() if on_ap else None,
        )

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def publish(self, state: NetworkState) -> bool:
        """Emit ``state`` unless it equals the previous emission."""
        if state == self._last:
            return False
        previous, self._last = self._last, state
        logger.info(
            "Network state changed",
            wifi=state.is_wifi_connected,
            ssid=state.ssid,
            camera_ap=state.is_connected_to_camera_ap,
            camera_ip=state.detected_camera_ip,
            first=previous is None,
        )
        self.state.set(state)
        return True

    def refresh(self) -> NetworkState | None:
        """Take a snapshot and publish it if it changed.

        Returns:
            The new state when it was emitted, otherwise None.
        """
        state = self.snapshot()
        return state if self.publish(state) else None

    async def run(self, poll_interval_s: float | None = None) -> None:
        """Poll until ``stop()``; snapshots run in the default executor."""
        interval = self.config.monitor_poll_interval_s if poll_interval_s is None else poll_interval_s
        loop = asyncio.get_running_loop()
        self._stop = stop = asyncio.Event()
        logger.info("Network monitor started", interval=interval)
        while not stop.is_set():
            try:
                state = await loop.run_in_executor(None, self.snapshot)
                self.publish(state)
            except OSError as e:
                logger.warning("Network snapshot failed", error=str(e))
            try:
                await asyncio.wait_for(stop.wait(), interval)
            except TimeoutError:
                pass
        logger.info("Network monitor stopped")

    def stop(self) -> None:
        """Ask a running ``run()`` loop to exit after its current poll."""
        if self._stop is not None:
            self._stop.set()

    @property
    def is_running(self) -> bool:
        return self._stop is not None and not self._stop.is_set()
