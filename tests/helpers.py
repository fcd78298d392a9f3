"""Test helpers for ptpip-tether.

Provides protocol compliance checks, a zero-delay configuration, builders
for the digital-twin stack, and instrumented drivers for concurrency and
failure-path tests.

Example:
    from tests.helpers import fast_config, build_twin_orchestrator

    orchestrator, network = build_twin_orchestrator()
    assert await orchestrator.connect(Camera("192.168.1.20"))
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import replace
from typing import Any, Protocol

from ptpip_tether.devices import SessionOrchestrator
from ptpip_tether.drivers.config import DriverFactory, DriverMode, TetherConfig
from ptpip_tether.drivers.twin import (
    DigitalTwinCamera,
    DigitalTwinTransport,
    DigitalTwinTransportFactory,
    TwinCameraConfig,
)
from ptpip_tether.observability import ConnectionStats


def assert_implements_protocol(instance: object, protocol: type[Protocol]) -> None:
    """Assert that an instance implements a runtime-checkable Protocol.

    Raises:
        AssertionError: Listing the protocol members the instance lacks.
    """
    if isinstance(instance, protocol):
        return
    object_attrs = set(dir(object))
    members = {attr for attr in set(dir(protocol)) - object_attrs if not attr.startswith("_")}
    missing = sorted(attr for attr in members if not hasattr(instance, attr))
    raise AssertionError(
        f"{type(instance).__name__} does not implement {protocol.__name__}. "
        f"Missing: {', '.join(missing) or 'unknown'}"
    )


def fast_config(**overrides: Any) -> TetherConfig:
    """DIGITAL_TWIN config with every delay at zero and short timeouts."""
    config = TetherConfig(
        mode=DriverMode.DIGITAL_TWIN,
        reachability_timeout_s=0.1,
        connect_timeout_s=0.1,
        init_timeout_s=0.1,
        event_init_timeout_s=0.1,
        response_timeout_s=0.1,
        open_session_timeout_s=0.1,
        close_session_timeout_s=0.1,
        auth_response_timeout_s=0.1,
        probe_timeout_s=0.1,
        settle_delay_s=0.0,
        auth_retry_delay_s=0.0,
        auth_settle_s=0.0,
        reconnect_settle_s=0.0,
        reconnect_retry_s=0.01,
        temporary_reconnect_delay_s=0.0,
        discovery_timeout_s=0.5,
        monitor_poll_interval_s=0.01,
    )
    return replace(config, **overrides)


def twin_network(*configs: TwinCameraConfig) -> DigitalTwinTransportFactory:
    """Simulated network holding one camera per config (default: one Nikon)."""
    cameras = [DigitalTwinCamera(c) for c in configs] or [DigitalTwinCamera()]
    return DigitalTwinTransportFactory(cameras)


def build_twin_orchestrator(
    network: DigitalTwinTransportFactory | None = None,
    stats: ConnectionStats | None = None,
    **config_overrides: Any,
) -> tuple[SessionOrchestrator, DigitalTwinTransportFactory]:
    """Fully wired digital-twin orchestrator plus the network it lives on."""
    network = network or twin_network()
    factory = DriverFactory(fast_config(**config_overrides), twin_network=network)
    return factory.build_orchestrator(stats=stats), network


# =============================================================================
# Instrumented drivers
# =============================================================================


class OverlapDetector:
    """Records how many transports were inside ``sendall`` at once."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active = 0
        self.max_active = 0
        self.writes = 0

    def enter(self) -> None:
        with self._lock:
            self._active += 1
            self.writes += 1
            self.max_active = max(self.max_active, self._active)

    def exit(self) -> None:
        with self._lock:
            self._active -= 1


class SlowTwinTransport(DigitalTwinTransport):
    """Twin transport whose writes take time and report overlap."""

    def __init__(
        self, network: DigitalTwinTransportFactory, detector: OverlapDetector, delay: float
    ) -> None:
        super().__init__(network)
        self._detector = detector
        self._delay = delay

    def sendall(self, data: bytes) -> None:
        self._detector.enter()
        try:
            time.sleep(self._delay)
            super().sendall(data)
        finally:
            self._detector.exit()


class SlowTwinNetwork(DigitalTwinTransportFactory):
    """Twin network handing out SlowTwinTransports sharing one detector."""

    def __init__(self, cameras: list[DigitalTwinCamera], delay: float = 0.002) -> None:
        super().__init__(cameras)
        self.detector = OverlapDetector()
        self._delay = delay

    def create(self) -> DigitalTwinTransport:
        transport = SlowTwinTransport(self, self.detector, self._delay)
        self.transports.append(transport)
        return transport


class ScriptedCaptureLibrary:
    """NativeCaptureLibrary returning preset results.

    Any attribute named in ``raises`` raises RuntimeError instead.
    """

    def __init__(
        self,
        init_result: str = "GP_OK",
        maintenance_status: int = 0,
        capture_result: int = 0,
        raises: tuple[str, ...] = (),
    ) -> None:
        self.init_result = init_result
        self.maintenance_status = maintenance_status
        self.capture_result = capture_result
        self.raises = set(raises)
        self.calls: list[str] = []

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.raises:
            raise RuntimeError(f"{name} exploded")

    def init_for_ap_mode(self, ip: str, port: int) -> str:
        self._call("init_for_ap_mode")
        return self.init_result

    def init_with_ptpip(self, ip: str, port: int) -> str:
        self._call("init_with_ptpip")
        return self.init_result

    def init_with_session_maintenance(self, ip: str, port: int) -> int:
        self._call("init_with_session_maintenance")
        return self.maintenance_status

    def maintain_session_for_sta_mode(self) -> int:
        self._call("maintain_session_for_sta_mode")
        return self.maintenance_status

    def capture_photo(self) -> int:
        self._call("capture_photo")
        return self.capture_result

    def close_camera(self) -> None:
        self._call("close_camera")


class RecordingBrowser:
    """ServiceBrowser returning fixed records, or hanging forever."""

    def __init__(self, records: list[Any] | None = None, hang: bool = False) -> None:
        self.records = records or []
        self.hang = hang
        self.calls: list[tuple[str, float]] = []

    async def browse(self, service_type: str, timeout: float) -> list[Any]:
        self.calls.append((service_type, timeout))
        if self.hang:
            await asyncio.Event().wait()
        return list(self.records)


async def wait_until(predicate: Any, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` on the event loop until it is true.

    Raises:
        AssertionError: ``predicate`` still false after ``timeout`` seconds.
    """
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)
