"""Observability for ptpip-tether: structured logging and connection stats.

Example:
    from ptpip_tether.observability import get_logger, LogContext

    logger = get_logger(__name__)

    with LogContext(camera_ip="192.168.1.1"):
        logger.info("Init command ACK", connection_number=1)

Statistics Example:
    from ptpip_tether.observability import ConnectionStats

    stats = ConnectionStats()
    orchestrator = factory.build_orchestrator(stats=stats)
    ...
    print(stats.get_summary("192.168.1.1").success_rate)
"""

from ptpip_tether.observability.logging import (
    JSONFormatter,
    LogContext,
    StructuredFormatter,
    StructuredLogger,
    configure_logging,
    current_context,
    get_logger,
    reset_logging,
)
from ptpip_tether.observability.stats import (
    ConnectionStats,
    StatsSummary,
)

__all__ = [
    # Logging
    "JSONFormatter",
    "LogContext",
    "StructuredFormatter",
    "StructuredLogger",
    "configure_logging",
    "current_context",
    "get_logger",
    "reset_logging",
    # Statistics
    "ConnectionStats",
    "StatsSummary",
]
