"""Network probe protocol and the Linux system implementation.

The network state monitor never touches the OS directly; it asks a
NetworkProbe. SystemNetworkProbe answers from psutil interface data,
/proc/net/route and the wireless tools (iwgetid, nmcli).

Protocols:
    NetworkProbe: Wi-Fi state, addressing and reachability queries
"""

from __future__ import annotations

import re
import shutil
import socket
import struct
import subprocess
from pathlib import Path
from typing import Protocol, runtime_checkable

import psutil

from ptpip_tether.observability import get_logger

logger = get_logger(__name__)

PROC_NET_ROUTE = Path("/proc/net/route")
SYS_CLASS_NET = Path("/sys/class/net")
COMMAND_TIMEOUT_S = 2.0

_RTF_GATEWAY = 0x2
_DHCP_SERVER = re.compile(r"dhcp_server_identifier\s*=\s*(\d+\.\d+\.\d+\.\d+)")


@runtime_checkable
class NetworkProbe(Protocol):  # pragma: no cover
    """Protocol for querying the host's Wi-Fi and IP configuration.

    Every method is blocking and must not raise; unknown values are None.
    """

    def is_wifi_connected(self) -> bool:
        """True when a Wi-Fi interface is up with an IPv4 address."""
        ...

    def current_ssid(self) -> str | None:
        """SSID of the associated network, if known."""
        ...

    def gateway_ip(self) -> str | None:
        """Default IPv4 gateway."""
        ...

    def dhcp_server_ip(self) -> str | None:
        """Address of the DHCP server that leased our address."""
        ...

    def local_ipv4(self) -> str | None:
        """Our own IPv4 address on the Wi-Fi interface."""
        ...

    def is_reachable(self, ip: str, port: int, timeout: float) -> bool:
        """True if a TCP connection to ``ip:port`` succeeds within ``timeout``."""
        ...


def _run(cmd: list[str]) -> str | None:
    """Run ``cmd`` and return stripped stdout, or None on any failure."""
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, timeout=COMMAND_TIMEOUT_S
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("Command failed", command=cmd[0], error=str(e))
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def parse_default_gateway(route_table: str) -> str | None:
    """Extract the default gateway from /proc/net/route contents.

    Example:
        >>> table = "Iface\\tDestination\\tGateway\\tFlags\\n"
        >>> table += "wlan0\\t00000000\\t0101A8C0\\t0003\\n"
        >>> parse_default_gateway(table)
        '192.168.1.1'
    """
    for line in route_table.splitlines()[1:]:
        fields = line.split()
        if len(fields) < 4 or fields[1] != "00000000":
            continue
        try:
            if not int(fields[3], 16) & _RTF_GATEWAY:
                continue
            return socket.inet_ntoa(struct.pack("<I", int(fields[2], 16)))
        except (ValueError, struct.error):
            continue
    return None


def parse_nmcli_ssid(output: str) -> str | None:
    """Active SSID from ``nmcli -t -f ACTIVE,SSID dev wifi`` output."""
    for line in output.splitlines():
        active, _, ssid = line.partition(":")
        if active == "yes" and ssid:
            return ssid.replace("\\:", ":")
    return None


class SystemNetworkProbe:
    """NetworkProbe backed by the local Linux host.

    Args:
        interface: Wi-Fi interface to inspect. None picks the first wireless
            interface that is up.
    """

    def __init__(self, interface: str | None = None) -> None:
        self.interface = interface

    def _wireless_interfaces(self) -> list[str]:
        if self.interface:
            return [self.interface]
        names = []
        for name in psutil.net_if_stats():
            if (SYS_CLASS_NET / name / "wireless").exists() or name.startswith("wl"):
                names.append(name)
        return names

    def _active_interface(self) -> str | None:
        stats = psutil.net_if_stats()
        addrs = psutil.net_if_addrs()
        for name in self._wireless_interfaces():
            if name in stats and stats[name].isup and any(
                a.family == socket.AF_INET for a in addrs.get(name, ())
            ):
                return name
        return None

    def is_wifi_connected(self) -> bool:
        try:
            return self._active_interface() is not None
        except OSError as e:
            logger.warning("Interface query failed", error=str(e))
            return False

    def current_ssid(self) -> str | None:
        iwgetid = shutil.which("iwgetid") or "/sbin/iwgetid"
        ssid = _run([iwgetid, "-r"])
        if ssid:
            return ssid
        nmcli = shutil.which("nmcli")
        if nmcli:
            output = _run([nmcli, "-t", "-f", "ACTIVE,SSID", "dev", "wifi"])
            if output:
                return parse_nmcli_ssid(output)
        return None

    def gateway_ip(self) -> str | None:
        try:
            return parse_default_gateway(PROC_NET_ROUTE.read_text())
        except OSError:
            return None

    def dhcp_server_ip(self) -> str | None:
        nmcli = shutil.which("nmcli")
        iface = self._active_interface()
        if not nmcli or not iface:
            return None
        output = _run([nmcli, "-t", "-f", "DHCP4", "device", "show", iface])
        if not output:
            return None
        match = _DHCP_SERVER.search(output)
        return match.group(1) if match else None

    def local_ipv4(self) -> str | None:
        iface = self._active_interface()
        if iface is None:
            return None
        for addr in psutil.net_if_addrs().get(iface, ()):
            if addr.family == socket.AF_INET:
                return addr.address
        return None

    def is_reachable(self, ip: str, port: int, timeout: float) -> bool:
        try:
            with socket.create_connection((ip, port), timeout=timeout):
                return True
        except OSError:
            return False
