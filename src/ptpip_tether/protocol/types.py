"""Data model shared by the tethering components.

All records are immutable; a camera whose IP changes is replaced by a copy
via ``Camera.with_ip``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any

from ptpip_tether.protocol.constants import DEFAULT_PORT

UNKNOWN = "Unknown"


@dataclass(frozen=True)
class Camera:
    """A camera candidate found by discovery.

    Identity is ``ip_address`` + ``port`` for the lifetime of one session
    only. On access-point networks the address may change between discovery
    and connection.

    Attributes:
        ip_address: Dotted IPv4 address.
        port: PTP/IP command port.
        name: Display name derived from the SSID or mDNS service name.
        is_online: Whether discovery saw the camera answer.
    """

    ip_address: str
    port: int = DEFAULT_PORT
    name: str = ""
    is_online: bool = True

    def with_ip(self, ip_address: str) -> Camera:
        """Return a copy pointing at ``ip_address``."""
        return replace(self, ip_address=ip_address)

    @property
    def address(self) -> str:
        return f"{self.ip_address}:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CameraInfo:
    """Identity strings recovered from a GetDeviceInfo response."""

    manufacturer: str = UNKNOWN
    model: str = UNKNOWN
    version: str = UNKNOWN
    serial_number: str = UNKNOWN

    @classmethod
    def unknown(cls) -> CameraInfo:
        """Fallback record used when nothing could be parsed."""
        return cls()

    @property
    def recovered_fields(self) -> int:
        """Number of fields holding something other than ``Unknown``."""
        return sum(
            value != UNKNOWN
            for value in (self.manufacturer, self.model, self.version, self.serial_number)
        )

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


class ParseOutcome(Enum):
    """How much of a device-info blob the parser could use."""

    FULL = "full"  # every field recovered
    PARTIAL = "partial"  # at least one field recovered
    FALLBACK = "fallback"  # nothing recovered or the parser failed


@dataclass(frozen=True)
class ParseResult:
    """Parser output: the record plus how it was obtained.

    Attributes:
        info: Parsed (possibly all-Unknown) camera identity.
        outcome: FULL, PARTIAL or FALLBACK.
        candidates: Strings the resilient scan recovered, in first-seen
            order. Kept for debugging vendor payloads.
        error: Description of the internal failure for FALLBACK results
            caused by an exception, otherwise None.
    """

    info: CameraInfo
    outcome: ParseOutcome
    candidates: tuple[str, ...] = field(default_factory=tuple)
    error: str | None = None


class ConnectionState(Enum):
    """Public connection state of the session orchestrator."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class ConnectionMode(Enum):
    """Topology a camera was reached through."""

    AP_MODE = "ap_mode"
    STA_MODE = "sta_mode"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class NetworkState:
    """Normalized Wi-Fi state published by the network monitor.

    Value equality is what the monitor uses to suppress repeated
    identical emissions.
    """

    is_wifi_connected: bool = False
    is_connected_to_camera_ap: bool = False
    ssid: str | None = None
    detected_camera_ip: str | None = None

    @classmethod
    def disconnected(cls) -> NetworkState:
        """State reported when no Wi-Fi link is up."""
        return cls()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
