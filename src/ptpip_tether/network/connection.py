"""PTP/IP connection manager.

Owns the command and event transports of one camera connection, runs the
two-phase init handshake, and opens/closes the PTP session.

All public methods are blocking and serialized by one lock, so a
connection is never written to by two threads at once. The async layer
calls them through ``loop.run_in_executor``.

Soft vs hard close:
    ``close_session(force_close=False)`` deliberately does nothing. The
    native capture library attaches to the session this client opened, and
    closing it from here would pull the session out from under it. Only a
    forced close sends CloseSession.
"""

from __future__ import annotations

import threading
import time

from ptpip_tether.drivers.config import TetherConfig
from ptpip_tether.drivers.transport import Transport, TransportFactory
from ptpip_tether.observability import get_logger
from ptpip_tether.protocol import codec
from ptpip_tether.protocol.constants import PacketType, ResponseCode, StandardOperation
from ptpip_tether.protocol.device_info import parse_device_info
from ptpip_tether.protocol.errors import (
    HandshakeTimeoutError,
    ProtocolMismatchError,
    PtpipError,
    ReachabilityError,
)
from ptpip_tether.protocol.types import Camera, CameraInfo, ParseResult

logger = get_logger(__name__)

_SESSION_ID_MODULUS = 0x7FFFFFFF


def new_session_id() -> int:
    """Session id derived from the wall clock in milliseconds."""
    return int(time.time() * 1000) % _SESSION_ID_MODULUS


# =============================================================================
# Handshake helpers (shared with the authentication service)
# =============================================================================


def perform_command_init(transport: Transport, host_name: str, timeout: float) -> int:
    """Send the Init Command Request and return the camera's connection number.

    Raises:
        HandshakeTimeoutError: No ACK within ``timeout``.
        ProtocolMismatchError: INIT_FAIL, peer closed, or any other packet.
    """
    transport.sendall(codec.encode_init_command_request(host_name=host_name))
    try:
        frame = codec.read_frame(transport, timeout)
    except TimeoutError as e:
        raise HandshakeTimeoutError("Init command", timeout) from e
    except ConnectionError as e:
        raise ProtocolMismatchError(f"Connection closed during init command: {e}") from e
    if codec.packet_type_of(frame) == PacketType.INIT_FAIL:
        raise ProtocolMismatchError(
            "Camera rejected init command (INIT_FAIL)", packet_type=PacketType.INIT_FAIL
        )
    return codec.decode_init_command_ack(frame).connection_number


def perform_event_init(transport: Transport, connection_number: int, timeout: float) -> None:
    """Send the Init Event Request and wait for the Init Event ACK.

    Raises:
        HandshakeTimeoutError: No ACK within ``timeout``.
        ProtocolMismatchError: Any packet other than INIT_EVENT_ACK.
    """
    transport.sendall(codec.encode_init_event_request(connection_number))
    try:
        frame = codec.read_frame(transport, timeout)
    except TimeoutError as e:
        raise HandshakeTimeoutError("Init event", timeout) from e
    except ConnectionError as e:
        raise ProtocolMismatchError(f"Connection closed during init event: {e}") from e
    if not codec.is_init_event_ack(frame):
        packet_type = codec.packet_type_of(frame)
        raise ProtocolMismatchError(
            f"Expected INIT_EVENT_ACK, got packet type {packet_type}",
            packet_type=packet_type,
        )


def connect_transport(
    factory: TransportFactory, camera: Camera, timeout: float
) -> Transport:
    """Create and connect a transport, mapping socket errors to ReachabilityError."""
    transport = factory.create()
    try:
        transport.connect(camera.ip_address, camera.port, timeout)
    except OSError as e:
        transport.close()
        raise ReachabilityError(camera.ip_address, camera.port, str(e)) from e
    return transport


def open_channels(
    factory: TransportFactory, camera: Camera, config: TetherConfig
) -> tuple[Transport, Transport, int]:
    """Open and initialize the command and event channels.

    Returns:
        ``(command, event, connection_number)``.

    Raises:
        PtpipError: Any handshake failure; partially opened transports are
            closed first.
        OSError: Socket failure after connect.
    """
    command = connect_transport(factory, camera, config.connect_timeout_s)
    event: Transport | None = None
    try:
        connection_number = perform_command_init(
            command, config.host_name, config.init_timeout_s
        )
        logger.debug("Command channel initialized", connection_number=connection_number)
        if config.settle_delay_s > 0:
            time.sleep(config.settle_delay_s)
        event = connect_transport(factory, camera, config.connect_timeout_s)
        perform_event_init(event, connection_number, config.event_init_timeout_s)
    except BaseException:
        command.close()
        if event is not None:
            event.close()
        raise
    return command, event, connection_number


def transact(
    transport: Transport,
    counter: codec.TransactionCounter,
    opcode: int,
    *params: int,
    timeout: float,
) -> list[bytes]:
    """Send one operation request and collect its response frames."""
    transaction_id = counter.next_for(opcode)
    transport.sendall(codec.encode_operation_request(opcode, transaction_id, *params))
    return codec.read_response_frames(transport, timeout)


# =============================================================================
# Connection manager
# =============================================================================


class ConnectionManager:
    """Manages one PTP/IP connection (command + event channel, PTP session).

    Args:
        transport_factory: Creates transports and answers reachability probes.
        config: Timeouts and initiator name.

    Thread Safety:
        Every public method holds ``self._lock``.
    """

    def __init__(self, transport_factory: TransportFactory, config: TetherConfig | None = None):
        self._factory = transport_factory
        self.config = config or TetherConfig()
        self._lock = threading.Lock()
        self._command: Transport | None = None
        self._event: Transport | None = None
        self._camera: Camera | None = None
        self._connection_number: int | None = None
        self._session_id = 0
        self._transactions = codec.TransactionCounter()
        self.last_parse_result: ParseResult | None = None
        self.last_error: str | None = None
        self.last_error_type: str | None = None

    @property
    def camera(self) -> Camera | None:
        return self._camera

    @property
    def connection_number(self) -> int | None:
        """Number the camera assigned in its Init Command ACK, None when closed."""
        return self._connection_number

    @property
    def session_id(self) -> int:
        """Id of the open PTP session, 0 when none is open."""
        return self._session_id

    def establish_connection(self, camera: Camera) -> bool:
        """Connect both channels to ``camera`` and run the init handshake.

        Any previous connection is torn down first (without CloseSession).

        Returns:
            True when both channels are initialized. False on any failure,
            with partial state torn down and ``last_error`` set.
        """
        with self._lock:
            self._close_locked(close_session=False)
            logger.info("Establishing PTP/IP connection", ip=camera.ip_address, port=camera.port)
            try:
                if not self._factory.is_reachable(
                    camera.ip_address, camera.port, self.config.reachability_timeout_s
                ):
                    raise ReachabilityError(camera.ip_address, camera.port, "probe failed")
                command, event, number = open_channels(self._factory, camera, self.config)
            except PtpipError as e:
                self.last_error = str(e)
                self.last_error_type = type(e).__name__
                logger.warning(
                    "PTP/IP connection failed",
                    ip=camera.ip_address,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self._close_locked(close_session=False)
                return False
            except OSError as e:
                self.last_error = str(e)
                self.last_error_type = type(e).__name__
                logger.error(
                    "PTP/IP connection I/O error",
                    ip=camera.ip_address,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self._close_locked(close_session=False)
                return False

            self._command = command
            self._event = event
            self._camera = camera
            self._connection_number = number
            self.last_error = None
            self.last_error_type = None
            logger.info("PTP/IP connection established", ip=camera.ip_address, connection_number=number)
            return True

    def get_device_info(self) -> CameraInfo | None:
        """Send GetDeviceInfo and parse the largest response fragment.

        Returns:
            Parsed CameraInfo (possibly all "Unknown"), or None if there is no
            connection or the camera sent nothing.
        """
        with self._lock:
            command = self._command
            if command is None:
                logger.warning("GetDeviceInfo without a connection")
                return None
            try:
                frames = transact(
                    command,
                    self._transactions,
                    StandardOperation.GET_DEVICE_INFO,
                    timeout=self.config.response_timeout_s,
                )
            except OSError as e:
                self.last_error = str(e)
                self.last_error_type = type(e).__name__
                logger.warning("GetDeviceInfo failed", error=str(e), error_type=type(e).__name__)
                return None

            frame = codec.largest_frame(frames)
            if frame is None:
                logger.warning("GetDeviceInfo returned no data")
                return None

            result = parse_device_info(frame)
            self.last_parse_result = result
            logger.info(
                "Device info received",
                manufacturer=result.info.manufacturer,
                model=result.info.model,
                outcome=result.outcome.value,
                fragments=len(frames),
            )
            return result.info

    def open_session(self) -> bool:
        """Open a PTP session with a fresh session id (transaction id 0)."""
        with self._lock:
            command = self._command
            if command is None:
                return False
            self._session_id = new_session_id()
            try:
                frames = transact(
                    command,
                    self._transactions,
                    StandardOperation.OPEN_SESSION,
                    self._session_id,
                    timeout=self.config.open_session_timeout_s,
                )
            except OSError as e:
                logger.error("OpenSession failed", error=str(e))
                return False

            response = codec.last_response(frames)
            if response is None:
                logger.warning("OpenSession got no response", session_id=self._session_id)
                return False
            if response.response_code != ResponseCode.OK:
                logger.warning(
                    "OpenSession answered with non-OK code",
                    response_code=f"0x{response.response_code:04X}",
                )
            logger.info("PTP session opened", session_id=self._session_id)
            return True

    def close_session(self, force_close: bool = False) -> bool:
        """Close the PTP session.

        Args:
            force_close: Only when True is CloseSession actually sent.
                Otherwise the session stays open for the native library and
                this returns True without touching the wire.

        Returns:
            True on success or soft close, False without a connection or on
            a send failure.
        """
        with self._lock:
            return self._close_session_locked(force_close)

    def _close_session_locked(self, force_close: bool) -> bool:
        if not force_close:
            logger.debug("Keeping PTP session open for the capture library")
            return True
        command = self._command
        if command is None:
            return False
        try:
            frames = transact(
                command,
                self._transactions,
                StandardOperation.CLOSE_SESSION,
                timeout=self.config.close_session_timeout_s,
            )
        except OSError as e:
            logger.warning("CloseSession failed", error=str(e))
            return False
        if not frames:
            logger.debug("CloseSession response timed out")
        logger.info("PTP session closed", session_id=self._session_id)
        return True

    def close_connections(self, close_session: bool = True) -> None:
        """Close both channels. Idempotent.

        Args:
            close_session: Send a forced CloseSession first when connected.
        """
        with self._lock:
            self._close_locked(close_session)

    def _close_locked(self, close_session: bool) -> None:
        if close_session and self._command is not None and self._command.is_connected:
            self._close_session_locked(force_close=True)
        for transport in (self._command, self._event):
            if transport is None:
                continue
            try:
                transport.close()
            except OSError as e:
                logger.warning("Error closing transport", error=str(e))
        if self._command is not None or self._event is not None:
            logger.debug("PTP/IP channels closed")
        self._command = None
        self._event = None
        self._camera = None
        self._connection_number = None
        self._session_id = 0
        self._transactions.reset()

    def is_connected(self) -> bool:
        """True only while both channels report connected."""
        command, event = self._command, self._event
        return bool(command and command.is_connected and event and event.is_connected)

    def send_operation(self, opcode: int, *params: int, timeout: float | None = None) -> list[bytes]:
        """Send an arbitrary operation on the command channel.

        Args:
            opcode: PTP operation code.
            *params: Up to five uint32 parameters.
            timeout: Per-read deadline; defaults to ``response_timeout_s``.

        Returns:
            Response frames (data phase then response); empty when not
            connected or on I/O failure.

        Raises:
            ValueError: More than five parameters.
        """
        with self._lock:
            command = self._command
            if command is None:
                return []
            try:
                return transact(
                    command,
                    self._transactions,
                    opcode,
                    *params,
                    timeout=self.config.response_timeout_s if timeout is None else timeout,
                )
            except OSError as e:
                logger.warning("Operation failed", opcode=f"0x{opcode:04X}", error=str(e))
                return []
