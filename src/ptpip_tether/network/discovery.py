"""Camera discovery.

Two strategies, picked by topology:

- Camera access point: the camera is (almost always) the gateway. Probe the
  gateway and a handful of well-known AP addresses with a real Init Command
  Request and return the first one that ACKs.
- Shared network: browse ``_ptp._tcp`` over mDNS and name each camera from
  its service instance name.
"""

from __future__ import annotations

import asyncio
import re

from ptpip_tether.drivers.config import TetherConfig
from ptpip_tether.drivers.mdns import ServiceBrowser, ServiceRecord
from ptpip_tether.drivers.transport import TransportFactory
from ptpip_tether.network.connection import perform_command_init
from ptpip_tether.network.monitor import NetworkStateMonitor
from ptpip_tether.observability import get_logger
from ptpip_tether.protocol.constants import DEFAULT_AP_DISCOVERY_IPS, SERVICE_TYPE_FQDN
from ptpip_tether.protocol.errors import PtpipError
from ptpip_tether.protocol.types import Camera

logger = get_logger(__name__)

#: Extra time granted to a browser to tear down after its window closes.
BROWSE_GRACE_S = 1.0

DEFAULT_AP_NAME = "Camera AP"

_Z8_SERIAL = re.compile(r"Z_8[_\s]*([0-9]+)")
_VENDOR_MODEL = {
    "Nikon": re.compile(r"NIKON[_\s]*([A-Z]+[_\s]*\d+)", re.IGNORECASE),
    "Canon": re.compile(r"CANON[_\s]*([A-Z]+[_\s]*\d+)", re.IGNORECASE),
}
_GENERIC_VENDORS = (
    ("SONY", "Sony"),
    ("FUJI", "Fujifilm"),
    ("PANASONIC", "Panasonic"),
    ("OLYMPUS", "Olympus"),
    ("LEICA", "Leica"),
)


def extract_camera_name(service_name: str, ip_address: str) -> str:
    """Human-readable camera name from an mDNS instance name.

    Example:
        >>> extract_camera_name("Nikon_Z_8_3001234", "192.168.1.20")
        'Nikon Z8 (3001234)'
        >>> extract_camera_name("Canon_EOS_R5", "192.168.1.21")
        'Canon Camera'
        >>> extract_camera_name("Nikon_D850", "192.168.1.22")
        'Nikon D850'
        >>> extract_camera_name("printer", "192.168.1.9")
        'PTPIP Camera (192.168.1.9)'
    """
    upper = service_name.upper()
    if "Z_8" in upper:
        match = _Z8_SERIAL.search(service_name)
        return f"Nikon Z8 ({match.group(1)})" if match else "Nikon Z8"
    for vendor, pattern in _VENDOR_MODEL.items():
        if vendor.upper() in upper:
            match = pattern.search(service_name)
            model = match.group(1).replace("_", " ") if match else "Camera"
            return f"{vendor} {model}"
    for needle, vendor in _GENERIC_VENDORS:
        if needle in upper:
            return f"{vendor} Camera"
    return f"PTPIP Camera ({ip_address})"


class DiscoveryService:
    """Finds PTP/IP cameras on the current network.

    Args:
        monitor: Answers AP membership, SSID and camera IP candidates.
        browser: mDNS browser for shared networks.
        transport_factory: Transports for AP-mode validation probes.
        config: Port, host name and timeouts.
    """

    def __init__(
        self,
        monitor: NetworkStateMonitor,
        browser: ServiceBrowser,
        transport_factory: TransportFactory,
        config: TetherConfig | None = None,
    ):
        self.monitor = monitor
        self.browser = browser
        self._factory = transport_factory
        self.config = config or TetherConfig()

    async def discover_cameras(self, force_ap_mode: bool = False) -> list[Camera]:
        """Discover cameras. Never raises.

        Args:
            force_ap_mode: Use the access-point strategy even if the SSID
                does not look like a camera AP.

        Returns:
            Cameras found, deduplicated by address. Empty on failure.
        """
        loop = asyncio.get_running_loop()
        try:
            on_ap = force_ap_mode or await loop.run_in_executor(
                None, self.monitor.is_connected_to_camera_ap
            )
            if on_ap:
                cameras = await self._discover_on_access_point_within_deadline(loop)
            else:
                cameras = await self._discover_with_mdns()
        except Exception as e:  # noqa: BLE001 - discovery reports failure as an empty list
            logger.error("Camera discovery failed", error=str(e), error_type=type(e).__name__)
            return []
        logger.info("Camera discovery finished", count=len(cameras), ap_mode=on_ap)
        return cameras

    # -------------------------------------------------------------------------
    # Access point
    # -------------------------------------------------------------------------

    def ap_candidates(self) -> list[str]:
        """Reachable monitor candidate, gateway, then well-known AP addresses."""
        ordered = [
            self.monitor.find_available_camera_ip(),
            self.monitor.probe.gateway_ip(),
            *DEFAULT_AP_DISCOVERY_IPS,
        ]
        candidates: list[str] = []
        for ip in ordered:
            if ip and ip not in candidates:
                candidates.append(ip)
        return candidates

    async def _discover_on_access_point_within_deadline(
        self, loop: asyncio.AbstractEventLoop
    ) -> list[Camera]:
        # The worker thread finishes its current check on its own; its result is dropped.
        timeout = self.config.discovery_timeout_s
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self._discover_on_access_point), timeout
            )
        except TimeoutError:
            logger.warning("Access point scan timed out", timeout=timeout)
            return []

    def _discover_on_access_point(self) -> list[Camera]:
        ssid = self.monitor.current_ssid() or DEFAULT_AP_NAME
        gateway = self.monitor.probe.gateway_ip()
        for ip in self.ap_candidates():
            if not self.test_ptpip_connection(ip, self.config.port):
                continue
            name = f"{ssid} (AP mode)" if ip == gateway else f"{ssid} (AP mode - {ip})"
            logger.info("Camera found on access point", ip=ip, name=name)
            return [Camera(ip_address=ip, port=self.config.port, name=name)]
        logger.warning("No PTP/IP camera answered on the access point")
        return []

    def test_ptpip_connection(self, ip: str, port: int) -> bool:
        """True if ``ip:port`` answers an Init Command Request with an ACK.

        The probe transport is always closed.
        """
        transport = self._factory.create()
        try:
            transport.connect(ip, port, self.config.connect_timeout_s)
            perform_command_init(transport, self.config.host_name, self.config.init_timeout_s)
            return True
        except (PtpipError, OSError) as e:
            logger.debug("PTP/IP probe failed", ip=ip, error=str(e))
            return False
        finally:
            transport.close()

    # -------------------------------------------------------------------------
    # mDNS
    # -------------------------------------------------------------------------

    async def _discover_with_mdns(self) -> list[Camera]:
        timeout = self.config.discovery_timeout_s
        try:
            records = await asyncio.wait_for(
                self.browser.browse(SERVICE_TYPE_FQDN, timeout), timeout + BROWSE_GRACE_S
            )
        except TimeoutError:
            logger.warning("mDNS browse timed out", timeout=timeout)
            return []
        return self.cameras_from_records(records)

    @staticmethod
    def cameras_from_records(records: list[ServiceRecord]) -> list[Camera]:
        """Cameras from browse results, first record per address wins.

        Records without a host or with a non-positive port are skipped.
        """
        cameras: dict[str, Camera] = {}
        for record in records:
            if not record.host or record.port <= 0:
                logger.warning("Ignoring incomplete service record", service=record.name)
                continue
            camera = Camera(
                ip_address=record.host,
                port=record.port,
                name=extract_camera_name(record.name, record.host),
            )
            cameras.setdefault(camera.address, camera)
        return list(cameras.values())
