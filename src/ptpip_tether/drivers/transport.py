"""Byte-stream transport protocols and the TCP socket implementation.

Provides the seam between the PTP/IP connection code and the network so the
connection manager, discovery and authentication can be exercised against an
in-memory camera (see drivers/twin.py) or test doubles.

Protocols:
    Transport: One bidirectional byte stream (command or event channel)
    TransportFactory: Creates transports and answers reachability probes

Example:
    factory = SocketTransportFactory()
    if factory.is_reachable("192.168.1.1", 15740, timeout=2.0):
        transport = factory.create()
        transport.connect("192.168.1.1", 15740, timeout=5.0)
"""

from __future__ import annotations

import socket
import threading
from typing import Protocol, runtime_checkable

from ptpip_tether.observability import get_logger

logger = get_logger(__name__)

#: Upper bound on a single recv() call.
RECV_CHUNK_SIZE = 65536


@runtime_checkable
class Transport(Protocol):  # pragma: no cover
    """Protocol for one PTP/IP byte stream.

    Implementations must raise ``TimeoutError`` when ``recv_exactly`` sees
    no data within ``timeout`` and ``ConnectionError`` when the peer closes
    the stream before ``size`` bytes arrived. ``connect`` and ``sendall``
    raise ``OSError`` subclasses on failure.

    Attributes:
        is_connected: True between a successful connect() and close().
    """

    @property
    def is_connected(self) -> bool:
        """Whether the stream is open."""
        ...

    def connect(self, host: str, port: int, timeout: float) -> None:
        """Open the stream.

        Args:
            host: Camera IPv4 address.
            port: TCP port (15740 for PTP/IP).
            timeout: Connect deadline in seconds.

        Raises:
            OSError: Connection refused, unreachable or timed out.
        """
        ...

    def sendall(self, data: bytes) -> None:
        """Write every byte of ``data``."""
        ...

    def recv_exactly(self, size: int, timeout: float | None) -> bytes:
        """Read exactly ``size`` bytes.

        Args:
            size: Number of bytes to return.
            timeout: Per-read deadline in seconds; None blocks.

        Returns:
            Exactly ``size`` bytes.

        Raises:
            TimeoutError: Nothing arrived within ``timeout``.
            ConnectionError: Peer closed the stream early.
        """
        ...

    def close(self) -> None:
        """Close the stream. Idempotent."""
        ...


@runtime_checkable
class TransportFactory(Protocol):  # pragma: no cover
    """Protocol for creating transports toward a camera."""

    def create(self) -> Transport:
        """Return a new, unconnected transport."""
        ...

    def is_reachable(self, host: str, port: int, timeout: float) -> bool:
        """Return True if a TCP connection to ``host:port`` succeeds.

        The probe connection is closed immediately. Never raises.
        """
        ...


class SocketTransport:
    """Blocking TCP implementation of Transport.

    Thread Safety:
        close() may be called from another thread to abort a blocked read.
        Concurrent writers must be serialized by the caller.
    """

    def __init__(self) -> None:
        self._sock: socket.socket | None = None
        self._lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self._sock is not None

    def connect(self, host: str, port: int, timeout: float) -> None:
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        with self._lock:
            self._sock = sock
        logger.debug("Socket connected", host=host, port=port)

    def _require_socket(self) -> socket.socket:
        sock = self._sock
        if sock is None:
            raise ConnectionError("Transport is not connected")
        return sock

    def sendall(self, data: bytes) -> None:
        self._require_socket().sendall(data)

    def recv_exactly(self, size: int, timeout: float | None) -> bytes:
        sock = self._require_socket()
        sock.settimeout(timeout)
        chunks: list[bytes] = []
        remaining = size
        while remaining > 0:
            try:
                chunk = sock.recv(min(remaining, RECV_CHUNK_SIZE))
            except socket.timeout as e:
                raise TimeoutError(f"No data within {timeout}s") from e
            if not chunk:
                raise ConnectionError(
                    f"Connection closed with {remaining} of {size} bytes outstanding"
                )
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def close(self) -> None:
        with self._lock:
            sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected
        sock.close()


class SocketTransportFactory:
    """Creates SocketTransport instances and probes TCP reachability."""

    def create(self) -> SocketTransport:
        return SocketTransport()

    def is_reachable(self, host: str, port: int, timeout: float) -> bool:
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError as e:
            logger.debug("Reachability probe failed", host=host, port=port, error=str(e))
            return False
