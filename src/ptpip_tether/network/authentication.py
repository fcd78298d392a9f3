"""Nikon station-mode authentication.

Nikon bodies reached over a shared Wi-Fi network refuse normal PTP traffic
until the client has been paired. Pairing runs on a throwaway connection:

Phase 1 (pairing, up to ``auth_max_attempts`` tries):
    init both channels, GetDeviceInfo, OpenSession, 0x952B (pairing
    request), 0x935A with param 0x2001 (pairing confirm). The camera answers
    the confirm with OK on transaction id 2 once the user accepts.

Phase 2 (authenticated connection, kept open):
    init both channels again, GetDeviceInfo, OpenSession, GetStorageIDs.
    The channels stay open so the native capture library can attach to the
    negotiated session.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass

from ptpip_tether.drivers.config import TetherConfig
from ptpip_tether.drivers.transport import Transport, TransportFactory
from ptpip_tether.network.connection import new_session_id, open_channels, transact
from ptpip_tether.observability import get_logger
from ptpip_tether.protocol import codec
from ptpip_tether.protocol.constants import (
    NIKON_AUTH_CONFIRM_PARAM,
    NikonAuthOperation,
    ResponseCode,
    StandardOperation,
)
from ptpip_tether.protocol.errors import AuthenticationError, PtpipError
from ptpip_tether.protocol.types import Camera

logger = get_logger(__name__)


@dataclass
class AuthenticatedConnection:
    """Channels of the phase 2 connection, kept open after pairing."""

    camera: Camera
    command: Transport
    event: Transport
    connection_number: int
    session_id: int

    def close(self) -> None:
        """Close both channels; socket errors are logged, not raised."""
        for transport in (self.command, self.event):
            try:
                transport.close()
            except OSError as e:
                logger.warning("Error closing authenticated channel", error=str(e))


class NikonAuthenticationService:
    """Runs the two-phase Nikon pairing flow.

    Args:
        transport_factory: Source of transports for both phases.
        config: Retry count, delays and response timeouts.

    Attributes:
        last_error: AuthenticationError from the latest failed run, else None.
    """

    def __init__(self, transport_factory: TransportFactory, config: TetherConfig | None = None):
        self._factory = transport_factory
        self.config = config or TetherConfig()
        self._lock = threading.Lock()
        self._connection: AuthenticatedConnection | None = None
        self.last_error: AuthenticationError | None = None

    @property
    def authenticated_connection(self) -> AuthenticatedConnection | None:
        """The paired channels left open by the last successful authentication."""
        return self._connection

    def perform_sta_authentication(self, camera: Camera) -> bool:
        """Pair with ``camera`` and leave an authenticated connection open.

        Returns:
            True when both phases succeeded. False otherwise, with
            ``last_error`` set. Never raises for protocol or socket errors.

        Example:
            >>> service = NikonAuthenticationService(SocketTransportFactory())
            >>> service.perform_sta_authentication(Camera("192.168.1.20"))
            True
        """
        with self._lock:
            self._close_locked()
            self.last_error = None
            logger.info("Starting Nikon STA authentication", ip=camera.ip_address)
            try:
                self._phase1(camera)
                if self.config.auth_settle_s > 0:
                    time.sleep(self.config.auth_settle_s)
                self._connection = self._phase2(camera)
            except AuthenticationError as e:
                self.last_error = e
                logger.error("Nikon authentication failed", ip=camera.ip_address, error=str(e))
                return False
            logger.info("Nikon authentication complete", ip=camera.ip_address)
            return True

    def _phase1(self, camera: Camera) -> None:
        attempts = self.config.auth_max_attempts
        last_failure = "no attempts made"
        for attempt in range(1, attempts + 1):
            if self.config.auth_retry_delay_s > 0:
                time.sleep(self.config.auth_retry_delay_s)
            logger.debug("Pairing attempt", attempt=attempt, max_attempts=attempts)
            try:
                if self._pair_once(camera):
                    return
                last_failure = "pairing confirmation not received"
            except AuthenticationError:
                raise
            except (PtpipError, OSError) as e:
                last_failure = str(e)
                logger.warning(
                    "Pairing attempt failed",
                    attempt=attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        raise AuthenticationError(f"Pairing failed after {attempts} attempts: {last_failure}")

    def _pair_once(self, camera: Camera) -> bool:
        """One phase 1 attempt. Channels are always closed afterwards."""
        command, event, _ = open_channels(self._factory, camera, self.config)
        counter = codec.TransactionCounter()
        try:
            self._step(command, counter, StandardOperation.GET_DEVICE_INFO)
            self._step(command, counter, StandardOperation.OPEN_SESSION, new_session_id())
            self._step(
                command,
                counter,
                NikonAuthOperation.REQUEST,
                timeout=self.config.auth_response_timeout_s,
            )
            confirm_txid = counter.peek()
            frames = transact(
                command,
                counter,
                NikonAuthOperation.CONFIRM,
                NIKON_AUTH_CONFIRM_PARAM,
                timeout=self.config.auth_response_timeout_s,
            )
            response = codec.last_response(frames)
            if response is None:
                logger.warning("No answer to pairing confirmation")
                return False
            if response.response_code != ResponseCode.OK:
                raise AuthenticationError(
                    f"Camera rejected pairing (response 0x{response.response_code:04X})"
                )
            if response.transaction_id != confirm_txid:
                logger.warning(
                    "Pairing confirmation on unexpected transaction",
                    expected=confirm_txid,
                    received=response.transaction_id,
                )
                return False
            return True
        finally:
            command.close()
            event.close()

    def _phase2(self, camera: Camera) -> AuthenticatedConnection:
        try:
            command, event, number = open_channels(self._factory, camera, self.config)
        except (PtpipError, OSError) as e:
            raise AuthenticationError(f"Authenticated reconnect failed: {e}") from e
        counter = codec.TransactionCounter()
        session_id = new_session_id()
        try:
            self._step(command, counter, StandardOperation.GET_DEVICE_INFO)
            self._step(command, counter, StandardOperation.OPEN_SESSION, session_id)
            self._step(command, counter, StandardOperation.GET_STORAGE_IDS)
        except OSError as e:
            command.close()
            event.close()
            raise AuthenticationError(f"Authenticated session setup failed: {e}") from e
        return AuthenticatedConnection(
            camera=camera,
            command=command,
            event=event,
            connection_number=number,
            session_id=session_id,
        )

    def _step(
        self,
        transport: Transport,
        counter: codec.TransactionCounter,
        opcode: int,
        *params: int,
        timeout: float | None = None,
    ) -> None:
        """Send one operation; a missing or non-OK response only warns."""
        frames = transact(
            transport,
            counter,
            opcode,
            *params,
            timeout=self.config.response_timeout_s if timeout is None else timeout,
        )
        response = codec.last_response(frames)
        if response is None or response.response_code != ResponseCode.OK:
            logger.warning(
                "Step did not complete, continuing",
                opcode=f"0x{opcode:04X}",
                response_code=None if response is None else f"0x{response.response_code:04X}",
            )

    def close(self) -> None:
        """Close the authenticated connection, if any."""
        with self._lock:
            self._close_locked()

    def _close_locked(self) -> None:
        if self._connection is not None:
            self._connection.close()
            logger.debug("Authenticated connection closed")
            self._connection = None
