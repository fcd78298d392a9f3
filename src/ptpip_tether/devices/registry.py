"""Process-wide orchestrator access.

The MCP server and the CLI share one SessionOrchestrator per process. This
module keeps it behind init/get/shutdown functions, the same way tools
reach other long-lived resources.

Example:
    from ptpip_tether.devices import init_orchestrator, get_orchestrator

    await init_orchestrator(stats=ConnectionStats())
    orchestrator = get_orchestrator()
    await orchestrator.discover_cameras()
    await shutdown_orchestrator()
"""

from __future__ import annotations

from ptpip_tether.devices.orchestrator import SessionOrchestrator
from ptpip_tether.drivers.config import DriverFactory, get_factory
from ptpip_tether.observability import ConnectionStats, get_logger

logger = get_logger(__name__)


class OrchestratorNotInitializedError(RuntimeError):
    """Raised by get_orchestrator() before init_orchestrator()."""


_default_orchestrator: SessionOrchestrator | None = None


async def init_orchestrator(
    factory: DriverFactory | None = None,
    stats: ConnectionStats | None = None,
    run_monitor: bool = True,
) -> SessionOrchestrator:
    """Build, start and register the process orchestrator.

    An existing orchestrator is stopped and replaced, which keeps tests
    independent of each other.

    Args:
        factory: Driver factory; None uses the global ``get_factory()``.
        stats: Optional statistics collector.
        run_monitor: Start network monitor polling.

    Returns:
        The started orchestrator.
    """
    global _default_orchestrator
    if _default_orchestrator is not None:
        await shutdown_orchestrator()
    factory = factory or get_factory()
    orchestrator = factory.build_orchestrator(stats=stats)
    await orchestrator.start(run_monitor=run_monitor)
    _default_orchestrator = orchestrator
    logger.info("Orchestrator registered", mode=factory.config.mode.value)
    return orchestrator


def get_orchestrator() -> SessionOrchestrator:
    """Return the registered orchestrator.

    Raises:
        OrchestratorNotInitializedError: If init_orchestrator() was not
            awaited first.
    """
    if _default_orchestrator is None:
        raise OrchestratorNotInitializedError(
            "Orchestrator not initialized. Call init_orchestrator() first."
        )
    return _default_orchestrator


def set_orchestrator(orchestrator: SessionOrchestrator | None) -> None:
    """Register an already-built orchestrator (or clear it)."""
    global _default_orchestrator
    _default_orchestrator = orchestrator


async def shutdown_orchestrator() -> None:
    """Disconnect, stop and forget the registered orchestrator. Idempotent."""
    global _default_orchestrator
    orchestrator = _default_orchestrator
    if orchestrator is None:
        return
    _default_orchestrator = None
    try:
        await orchestrator.disconnect()
    finally:
        await orchestrator.stop()
    logger.info("Orchestrator shut down")
