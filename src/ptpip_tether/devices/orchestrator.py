"""Session orchestrator.

SessionOrchestrator owns the connection state machine and ties together the
network layer (connection manager, Nikon authentication, discovery, network
monitor) and the native capture library:

    DISCONNECTED --connect--> CONNECTING --success--> CONNECTED
    CONNECTING --failure--> ERROR
    CONNECTED --network lost--> DISCONNECTED
    ERROR --retry--> CONNECTING

Everything public is a coroutine. Blocking socket and subprocess work runs in
the default executor; ``connect()`` and ``disconnect()`` are serialized by one
asyncio.Lock.

Example:
    orchestrator = get_factory().build_orchestrator()
    await orchestrator.start()
    cameras = await orchestrator.discover_cameras()
    if cameras and await orchestrator.connect(cameras[0]):
        await orchestrator.capture_photo()
    await orchestrator.stop()
"""

from __future__ import annotations

import asyncio
import functools
import time
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any, TypeVar

from ptpip_tether.devices.observable import Observable
from ptpip_tether.drivers.native import NativeCaptureLibrary, is_init_success
from ptpip_tether.observability import ConnectionStats, LogContext, get_logger
from ptpip_tether.protocol.types import (
    Camera,
    CameraInfo,
    ConnectionMode,
    ConnectionState,
    NetworkState,
)

if TYPE_CHECKING:
    from ptpip_tether.drivers.config import TetherConfig
    from ptpip_tether.network import (
        ConnectionManager,
        DiscoveryService,
        NetworkStateMonitor,
        NikonAuthenticationService,
    )

logger = get_logger(__name__)

R = TypeVar("R")

PATH_NATIVE = "native"
PATH_FALLBACK = "fallback"

_NIKON_FRAGMENTS = ("ikon", "niko", "kon")
_NIKON_MODEL_PATTERNS = ("z ", "z5", "z6", "z7", "z8", "z9", "coolpix")


# =============================================================================
# Vendor detection
# =============================================================================


def _has_interleaved(raw: bytes, needle: bytes) -> bool:
    """True if ``needle`` appears in ``raw`` with one filler byte per char."""
    span = 2 * (len(needle) - 1)
    for start in range(len(raw) - span):
        if all(raw[start + 2 * i] == byte for i, byte in enumerate(needle)):
            return True
    return False


def is_nikon_camera(info: CameraInfo) -> bool:
    """Decide whether ``info`` describes a Nikon body.

    Device info parsing is heuristic, so the checks get progressively looser:
    the vendor name, fragments of it, Nikon model naming, then "Nikon" spread
    over a UTF-16LE-looking manufacturer string.

    Example:
        >>> is_nikon_camera(CameraInfo("Nikon Corporation", "Z 8", "V1", "1"))
        True
        >>> is_nikon_camera(CameraInfo("Canon Inc.", "EOS R5", "1.0", "2"))
        False
    """
    manufacturer = info.manufacturer.lower()
    model = info.model.lower()
    if "nikon" in manufacturer or "nikon" in model:
        return True
    if any(fragment in manufacturer or fragment in model for fragment in _NIKON_FRAGMENTS):
        return True
    if any(pattern in model for pattern in _NIKON_MODEL_PATTERNS):
        return True
    if any(ch == "d" and nxt.isdigit() for ch, nxt in zip(model, model[1:])):
        return True
    return _has_interleaved(info.manufacturer.encode("utf-8", "replace"), b"Nikon")


# =============================================================================
# Orchestrator
# =============================================================================


class SessionOrchestrator:
    """Connection state machine and public tethering API.

    Args:
        connection: PTP/IP connection manager (fallback path).
        discovery: Camera discovery service.
        auth: Nikon station-mode authentication service.
        monitor: Network state monitor feeding ``handle_network_state``.
        native: Native capture library (fast path, session attach, capture).
        config: Delays and the initial auto-reconnect setting.
        stats: Optional collector for attempts and captures.

    Attributes:
        connection_state: Observable ConnectionState.
        discovered_cameras: Observable list of the latest discovery result.
        camera_info: Observable CameraInfo of the connected camera, or None.
        network_state: Observable NetworkState as last seen from the monitor.
        connected_camera: Camera of the live connection, or None.
        last_connected_camera: Camera to reconnect to after network loss.
        connection_mode: Topology used by the latest connect attempt.
        last_error: Reason for the latest failed connect, or None.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        discovery: DiscoveryService,
        auth: NikonAuthenticationService,
        monitor: NetworkStateMonitor,
        native: NativeCaptureLibrary,
        config: TetherConfig | None = None,
        stats: ConnectionStats | None = None,
    ) -> None:
        if config is None:
            from ptpip_tether.drivers.config import TetherConfig

            config = TetherConfig()
        self.connection = connection
        self.discovery = discovery
        self.auth = auth
        self.monitor = monitor
        self.native = native
        self.config = config
        self.stats = stats

        self.connection_state: Observable[ConnectionState] = Observable(
            ConnectionState.DISCONNECTED
        )
        self.discovered_cameras: Observable[list[Camera]] = Observable([])
        self.camera_info: Observable[CameraInfo | None] = Observable(None)
        self.network_state: Observable[NetworkState] = Observable(NetworkState.disconnected())

        self.connected_camera: Camera | None = None
        self.last_connected_camera: Camera | None = None
        self.connection_mode = ConnectionMode.UNKNOWN
        self.last_error: str | None = None

        self._auto_reconnect = config.auto_reconnect
        self._lock = asyncio.Lock()
        self._attempts = 0
        self._reconnect_task: asyncio.Task[None] | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._unsubscribe: Callable[[], None] | None = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self.connection_state.value

    @property
    def is_auto_reconnect_enabled(self) -> bool:
        return self._auto_reconnect

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def set_auto_reconnect_enabled(self, enabled: bool) -> None:
        """Enable or disable auto-reconnect. Disabling stops a running loop."""
        self._auto_reconnect = enabled
        logger.info("Auto-reconnect updated", enabled=enabled)
        if not enabled:
            self._cancel_reconnect()

    def _set_state(self, state: ConnectionState) -> None:
        previous = self.connection_state.value
        if self.connection_state.set(state):
            logger.info("Connection state changed", old=previous.name, new=state.name)

    async def _run(self, func: Callable[..., R], *args: Any) -> R:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    # -------------------------------------------------------------------------
    # Connect / disconnect
    # -------------------------------------------------------------------------

    async def connect(self, camera: Camera, force_ap_mode: bool = False) -> bool:
        """Connect to ``camera``.

        Tries the native library first; without ``force_ap_mode`` a native
        failure falls back to the PTP/IP handshake, device info, and Nikon
        pairing when the body is a Nikon. A call from outside the
        auto-reconnect task cancels that task first.

        Args:
            camera: Target camera.
            force_ap_mode: Treat the network as the camera's own access point.
                Disables the fallback path.

        Returns:
            True when CONNECTED. On False, ``last_error`` says why and the
            state is ERROR.

        Raises:
            asyncio.CancelledError: After releasing connection resources.
        """
        if asyncio.current_task() is not self._reconnect_task:
            self._cancel_reconnect()
        async with self._lock:
            return await self._connect_locked(camera, force_ap_mode)

    async def _connect_locked(self, camera: Camera, force_ap_mode: bool) -> bool:
        if self.state is ConnectionState.CONNECTED and self.connected_camera == camera:
            logger.debug("Already connected", ip=camera.ip_address)
            return True

        self._attempts += 1
        started = time.monotonic()
        with LogContext(camera_ip=camera.ip_address, attempt=self._attempts):
            path = PATH_NATIVE
            try:
                await self._teardown(camera)
                self.last_error = None
                self._set_state(ConnectionState.CONNECTING)

                if not await self._run(self.monitor.is_wifi_connected):
                    return self._fail(
                        camera, started, path, "Wi-Fi is not connected", "WifiUnavailable"
                    )

                on_ap = force_ap_mode or await self._run(self.monitor.is_connected_to_camera_ap)
                self.connection_mode = ConnectionMode.AP_MODE if on_ap else ConnectionMode.STA_MODE
                logger.info(
                    "Connecting",
                    port=camera.port,
                    mode=self.connection_mode.name,
                    forced=force_ap_mode,
                )

                if force_ap_mode:
                    await asyncio.sleep(self.config.settle_delay_s)
                if await self._native_init(camera, on_ap):
                    self._mark_connected(camera, started, path)
                    return True
                if force_ap_mode:
                    return self._fail(
                        camera,
                        started,
                        path,
                        "Native AP-mode initialization failed",
                        "NativeInitFailed",
                    )

                path = PATH_FALLBACK
                if not await self._run(self.connection.establish_connection, camera):
                    return self._fail(
                        camera,
                        started,
                        path,
                        self.connection.last_error or "PTP/IP connection failed",
                        self.connection.last_error_type or "ConnectionFailed",
                    )

                info = await self._run(self.connection.get_device_info)
                if info is None:
                    await self._run(self.connection.close_connections, True)
                    return self._fail(
                        camera, started, path, "Device info unavailable", "DeviceInfoFailed"
                    )
                self.camera_info.set(info)

                if is_nikon_camera(info):
                    logger.info("Nikon camera detected, authenticating", model=info.model)
                    if not await self._run(self.auth.perform_sta_authentication, camera):
                        error = self.auth.last_error
                        return self._fail(
                            camera,
                            started,
                            path,
                            str(error) if error else "Nikon authentication failed",
                            "AuthenticationError",
                        )

                await self._attach_session(camera)
                self._mark_connected(camera, started, path)
                return True
            except asyncio.CancelledError:
                logger.warning("Connect cancelled, releasing connection")
                await self._run(self.connection.close_connections, False)
                await self._run(self.auth.close)
                self.last_error = "Connect cancelled"
                self.connected_camera = None
                self.camera_info.set(None)
                self._set_state(ConnectionState.DISCONNECTED)
                self._record(camera, started, False, path, "Cancelled")
                raise
            except Exception as e:
                logger.error(
                    "Connect failed", error=str(e), error_type=type(e).__name__, exc_info=True
                )
                await self._run(self.connection.close_connections, True)
                return self._fail(camera, started, path, str(e), type(e).__name__)

    async def _teardown(self, camera: Camera) -> None:
        """Release whatever a previous attempt left behind."""
        if self.connected_camera is not None and self.connected_camera != camera:
            logger.info("Switching camera", previous=self.connected_camera.ip_address)
            await self._close_native()
        await self._run(self.connection.close_connections, True)
        await self._run(self.auth.close)
        self.connected_camera = None
        self.camera_info.set(None)

    async def _native_init(self, camera: Camera, on_ap: bool) -> bool:
        method = self.native.init_for_ap_mode if on_ap else self.native.init_with_ptpip
        try:
            result = await self._run(method, camera.ip_address, camera.port)
        except Exception as e:
            logger.warning("Native init raised", error=str(e), error_type=type(e).__name__)
            return False
        ok = is_init_success(result)
        logger.info("Native init finished", result=result, success=ok, ap_mode=on_ap)
        return ok

    async def _attach_session(self, camera: Camera) -> None:
        """Hand the session to the native library. Failure is only logged."""
        try:
            status = await self._run(
                self.native.init_with_session_maintenance, camera.ip_address, camera.port
            )
        except Exception as e:
            logger.warning("Session maintenance raised", error=str(e))
            return
        if status >= 0:
            logger.info("Session maintenance attached", status=status)
        else:
            logger.warning("Session maintenance failed", status=status)

    async def _close_native(self) -> None:
        try:
            await self._run(self.native.close_camera)
        except Exception as e:
            logger.warning("Native close failed", error=str(e))

    def _mark_connected(self, camera: Camera, started: float, path: str) -> None:
        self.connected_camera = camera
        self.last_connected_camera = camera
        self._set_state(ConnectionState.CONNECTED)
        self._record(camera, started, True, path)
        logger.info("Camera connected", path=path, name=camera.name)

    def _fail(
        self, camera: Camera, started: float, path: str, reason: str, error_type: str
    ) -> bool:
        self.last_error = reason
        self.connected_camera = None
        self._set_state(ConnectionState.ERROR)
        self._record(camera, started, False, path, error_type)
        logger.warning("Connect attempt failed", reason=reason, error_type=error_type, path=path)
        return False

    def _record(
        self,
        camera: Camera,
        started: float,
        success: bool,
        path: str,
        error_type: str | None = None,
    ) -> None:
        if self.stats is None:
            return
        self.stats.record_attempt(
            camera.ip_address,
            (time.monotonic() - started) * 1000,
            success,
            path=path,
            error_type=error_type,
        )

    async def disconnect(self, keep_session: bool = False) -> None:
        """Disconnect from the camera. Safe in any state.

        Args:
            keep_session: Only drop the PTP/IP channels and leave the PTP
                session and native attachment alone; the state stays as is.
        """
        await self._disconnect(keep_session, send_close_session=True)

    async def _disconnect(self, keep_session: bool, send_close_session: bool) -> None:
        current = asyncio.current_task()
        if not keep_session and current is not self._reconnect_task:
            self._cancel_reconnect()
        async with self._lock:
            await self._disconnect_locked(keep_session, send_close_session)

    async def _disconnect_locked(self, keep_session: bool, send_close_session: bool) -> None:
        if keep_session:
            await self._run(self.connection.close_connections, False)
            logger.info("Channels closed, session kept")
            return
        await self._close_native()
        await self._run(self.connection.close_connections, send_close_session)
        await self._run(self.auth.close)
        self.connected_camera = None
        self.last_connected_camera = None
        self.camera_info.set(None)
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected")

    # -------------------------------------------------------------------------
    # Capture and discovery
    # -------------------------------------------------------------------------

    async def capture_photo(self) -> bool:
        """Trigger a capture on the connected camera.

        A failed session-maintenance refresh does not block the capture; it
        is logged with its status.

        Returns:
            True if the native capture reported success. False without
            calling the native library unless the state is CONNECTED.
        """
        camera = self.connected_camera
        if self.state is not ConnectionState.CONNECTED or camera is None:
            logger.warning("Capture requested without a connected camera", state=self.state.name)
            return False
        try:
            status = await self._run(self.native.maintain_session_for_sta_mode)
            if status < 0:
                logger.warning("Session maintenance failed, capturing anyway", maintenance_status=status)
        except Exception as e:
            logger.warning("Session maintenance raised, capturing anyway", error=str(e))
        try:
            result = await self._run(self.native.capture_photo)
        except Exception as e:
            logger.error("Capture failed", error=str(e), error_type=type(e).__name__)
            ok = False
        else:
            ok = result >= 0
            logger.info("Capture finished", result=result, success=ok)
        if self.stats is not None:
            self.stats.record_capture(camera.ip_address, ok)
        return ok

    async def discover_cameras(self, force_ap_mode: bool = False) -> list[Camera]:
        """Discover cameras and publish them on ``discovered_cameras``.

        Returns the cached list while a connect is in progress. Never raises.
        """
        if self.state is ConnectionState.CONNECTING:
            logger.debug("Discovery skipped while connecting")
            return list(self.discovered_cameras.value)
        try:
            if not await self._run(self.monitor.is_wifi_connected):
                logger.info("Discovery skipped, Wi-Fi is not connected")
                self.discovered_cameras.set([])
                return []
            cameras = await self.discovery.discover_cameras(force_ap_mode)
        except Exception as e:
            logger.error("Discovery failed", error=str(e), error_type=type(e).__name__)
            return []
        self.discovered_cameras.set(cameras)
        return cameras

    # -------------------------------------------------------------------------
    # Network reaction and auto-reconnect
    # -------------------------------------------------------------------------

    def handle_network_state(self, state: NetworkState) -> None:
        """React to a network change. Must run on the event loop thread."""
        self.network_state.set(state)
        current = self.state

        if not state.is_wifi_connected:
            if current is ConnectionState.CONNECTED:
                logger.warning("Wi-Fi lost while connected")
                self.connected_camera = None
                self._set_state(ConnectionState.DISCONNECTED)
            return

        if not self._auto_reconnect:
            return

        if current is ConnectionState.DISCONNECTED and self.last_connected_camera is not None:
            self._start_reconnect(self._reconnect_after_network_return)
        elif (
            current is ConnectionState.CONNECTED
            and state.is_connected_to_camera_ap
            and state.detected_camera_ip
            and self.connected_camera is not None
            and state.detected_camera_ip != self.connected_camera.ip_address
        ):
            corrected = self.connected_camera.with_ip(state.detected_camera_ip)
            logger.info(
                "Camera IP changed, reconnecting",
                old_ip=self.connected_camera.ip_address,
                new_ip=corrected.ip_address,
            )
            self._start_reconnect(functools.partial(self._reconnect_loop, corrected))

    def _start_reconnect(self, factory: Callable[[], Coroutine[Any, Any, None]]) -> None:
        if self.is_reconnecting:
            logger.debug("Reconnect already running")
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(factory())

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        if task is not None and not task.done():
            task.cancel()
            logger.info("Reconnect cancelled")
        self._reconnect_task = None

    async def _reconnect_after_network_return(self) -> None:
        await asyncio.sleep(self.config.reconnect_settle_s)
        camera = self.last_connected_camera
        if self.state is not ConnectionState.DISCONNECTED or camera is None:
            return
        network = self.network_state.value
        if (
            network.is_connected_to_camera_ap
            and network.detected_camera_ip
            and network.detected_camera_ip != camera.ip_address
        ):
            logger.info(
                "Correcting camera IP", old_ip=camera.ip_address, new_ip=network.detected_camera_ip
            )
            camera = camera.with_ip(network.detected_camera_ip)
        await self._reconnect_loop(camera)

    async def _reconnect_loop(self, camera: Camera) -> None:
        target = self.last_connected_camera
        attempt = 0
        while True:
            if self.state is ConnectionState.CONNECTING:
                logger.debug("Reconnect skipped, connect in progress")
                return
            if target is None or self.last_connected_camera != target:
                logger.info("Reconnect target changed, stopping", ip=camera.ip_address)
                return
            attempt += 1
            logger.info("Auto-reconnect attempt", ip=camera.ip_address, attempt=attempt)
            if await self.connect(camera):
                return
            self._set_state(ConnectionState.ERROR)
            await asyncio.sleep(self.config.reconnect_retry_s)
            if self.state is not ConnectionState.ERROR or not self._auto_reconnect:
                return

    async def start(self, run_monitor: bool = True) -> None:
        """Subscribe to network changes and optionally start monitor polling."""
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self.monitor.state.subscribe(self.handle_network_state)
        self.network_state.set(self.monitor.state.value)
        if run_monitor:
            self._monitor_task = asyncio.get_running_loop().create_task(self.monitor.run())
        logger.info("Orchestrator started", monitor=run_monitor)

    async def stop(self) -> None:
        """Cancel background work and unsubscribe from the monitor."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        task = self._reconnect_task
        self._cancel_reconnect()
        self.monitor.stop()
        for pending in (task, self._monitor_task):
            if pending is None:
                continue
            if pending is self._monitor_task and not pending.done():
                pending.cancel()
            try:
                await pending
            except asyncio.CancelledError:
                pass
        self._monitor_task = None
        logger.info("Orchestrator stopped")

    # -------------------------------------------------------------------------
    # Supplementary operations
    # -------------------------------------------------------------------------

    async def temporary_disconnect(self, keep_session: bool = True) -> bool:
        """Step off the camera briefly, e.g. to let another client in.

        A Nikon losing its session gets exactly one forced CloseSession
        followed by a pause, so the body is ready for the next client.

        Args:
            keep_session: Only drop the channels and stay CONNECTED.

        Returns:
            False when not connected or when the disconnect failed.
        """
        if self.state is not ConnectionState.CONNECTED or self.connected_camera is None:
            return False
        try:
            info = self.camera_info.value
            session_closed = False
            if not keep_session and info is not None and is_nikon_camera(info):
                await self._run(self.connection.close_session, True)
                session_closed = True
                await asyncio.sleep(self.config.temporary_reconnect_delay_s)
            await self._disconnect(keep_session, send_close_session=not session_closed)
        except Exception as e:
            logger.error("Temporary disconnect failed", error=str(e))
            return False
        return True

    async def reconnect_after_temporary(self, camera: Camera) -> bool:
        """Wait out the camera's release delay, then connect again.

        Args:
            camera: Usually the camera given up by ``temporary_disconnect``.

        Returns:
            Result of ``connect(camera)``.
        """
        await asyncio.sleep(self.config.temporary_reconnect_delay_s)
        return await self.connect(camera)

    async def detect_nikon_connection_mode(self, camera: Camera) -> ConnectionMode:
        """Guess the topology from a short-lived PTP/IP connection.

        A Nikon answering device info over plain PTP/IP means its own access
        point; anything else is treated as station mode.
        """
        async with self._lock:
            try:
                if await self._run(self.connection.establish_connection, camera):
                    info = await self._run(self.connection.get_device_info)
                    await self._run(self.connection.close_connections, True)
                    if info is not None and "nikon" in info.manufacturer.lower():
                        return ConnectionMode.AP_MODE
                return ConnectionMode.STA_MODE
            except Exception as e:
                logger.warning("Connection mode detection failed", error=str(e))
                return ConnectionMode.UNKNOWN

    def status(self) -> dict[str, Any]:
        """JSON-friendly snapshot for tools and the CLI."""
        parse = self.connection.last_parse_result
        info = self.camera_info.value
        snapshot: dict[str, Any] = {
            "state": self.state.name,
            "connected_camera": self.connected_camera.to_dict() if self.connected_camera else None,
            "last_connected_camera": (
                self.last_connected_camera.to_dict() if self.last_connected_camera else None
            ),
            "camera_info": info.to_dict() if info else None,
            "parse_outcome": parse.outcome.value if parse else None,
            "network": self.network_state.value.to_dict(),
            "connection_mode": self.connection_mode.name,
            "auto_reconnect": self._auto_reconnect,
            "reconnecting": self.is_reconnecting,
            "session_id": self.connection.session_id,
            "last_error": self.last_error,
        }
        camera = self.connected_camera or self.last_connected_camera
        if self.stats is not None and camera is not None:
            snapshot["stats"] = self.stats.get_summary(camera.ip_address).to_dict()
        return snapshot

