"""Error taxonomy for the PTP/IP layer.

Transport-level failures are raised inside the codec and connection code and
converted to boolean results at component boundaries; callers of the
orchestrator only ever observe them as the ERROR state plus ``last_error``.
"""

from __future__ import annotations


class PtpipError(Exception):
    """Base class for PTP/IP failures."""


class ReachabilityError(PtpipError):
    """Camera port did not accept a TCP connection."""

    def __init__(self, host: str, port: int, reason: str = "") -> None:
        self.host = host
        self.port = port
        detail = f": {reason}" if reason else ""
        super().__init__(f"{host}:{port} unreachable{detail}")


class HandshakeTimeoutError(PtpipError):
    """No ACK arrived within the handshake deadline."""

    def __init__(self, stage: str, timeout: float) -> None:
        self.stage = stage
        self.timeout = timeout
        super().__init__(f"{stage} timed out after {timeout:.1f}s")


class ProtocolMismatchError(PtpipError):
    """A frame had an unexpected type or was malformed."""

    def __init__(self, message: str, packet_type: int | None = None) -> None:
        self.packet_type = packet_type
        super().__init__(message)


class AuthenticationError(PtpipError):
    """Vendor authentication was rejected or never confirmed."""


class ParseFailure(PtpipError):
    """Device-info parsing failed.

    Raised only inside the parser and always converted to the fallback
    record before leaving it.
    """
