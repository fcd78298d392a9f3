"""Session layer - connection state machine and shared state streams."""

from ptpip_tether.devices.observable import Observable
from ptpip_tether.devices.orchestrator import (
    PATH_FALLBACK,
    PATH_NATIVE,
    SessionOrchestrator,
    is_nikon_camera,
)
from ptpip_tether.devices.registry import (
    OrchestratorNotInitializedError,
    get_orchestrator,
    init_orchestrator,
    set_orchestrator,
    shutdown_orchestrator,
)

__all__ = [
    # Observable
    "Observable",
    # Orchestrator
    "SessionOrchestrator",
    "is_nikon_camera",
    "PATH_NATIVE",
    "PATH_FALLBACK",
    # Registry
    "OrchestratorNotInitializedError",
    "init_orchestrator",
    "get_orchestrator",
    "set_orchestrator",
    "shutdown_orchestrator",
]
