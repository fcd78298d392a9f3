"""Connection and capture statistics.

Tracks how tethering behaves per camera IP:

- connection attempts, split by path (native fast path vs. PTP/IP fallback)
- handshake durations (min, max, avg, p95) over a rolling window
- failure categories (reachability, handshake timeout, auth, ...)
- capture success counts

Thread-safe; the orchestrator records from the event loop while the MCP
status tool reads from another task.

Example:
    stats = ConnectionStats()
    stats.record_attempt("192.168.1.1", duration_ms=820, success=True,
                         path="fallback")
    stats.record_attempt("192.168.1.1", duration_ms=2000, success=False,
                         error_type="ReachabilityError")

    summary = stats.get_summary("192.168.1.1")
    print(f"{summary.success_rate:.0%} over {summary.total_attempts} attempts")
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

#: Attempts kept per camera for duration percentiles. Reconnect loops retry
#: every few seconds, so this covers well over an hour of flapping.
DEFAULT_STATS_WINDOW_SIZE: int = 1000


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class StatsSummary:
    """Aggregated statistics for one camera IP.

    Attributes:
        camera_ip: Address the attempts were made against.
        total_attempts: Connection attempts recorded.
        successful_attempts: Attempts that ended CONNECTED.
        failed_attempts: Attempts that ended in ERROR.
        success_rate: successful / total, 0.0 when nothing recorded.
        min_duration_ms: Fastest successful attempt.
        max_duration_ms: Slowest successful attempt.
        avg_duration_ms: Mean successful attempt duration.
        p95_duration_ms: 95th percentile of successful durations.
        path_counts: Successful attempts per path ("native", "fallback").
        error_counts: Failures per error category.
        captures: Capture requests recorded.
        failed_captures: Capture requests that reported failure.
        last_attempt_time: UTC time of the newest attempt.
    """

    camera_ip: str
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    success_rate: float = 0.0
    min_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    avg_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    path_counts: dict[str, int] = field(default_factory=dict)
    error_counts: dict[str, int] = field(default_factory=dict)
    captures: int = 0
    failed_captures: int = 0
    last_attempt_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable copy of the summary."""
        return {
            "camera_ip": self.camera_ip,
            "total_attempts": self.total_attempts,
            "successful_attempts": self.successful_attempts,
            "failed_attempts": self.failed_attempts,
            "success_rate": self.success_rate,
            "min_duration_ms": self.min_duration_ms,
            "max_duration_ms": self.max_duration_ms,
            "avg_duration_ms": self.avg_duration_ms,
            "p95_duration_ms": self.p95_duration_ms,
            "path_counts": dict(self.path_counts),
            "error_counts": dict(self.error_counts),
            "captures": self.captures,
            "failed_captures": self.failed_captures,
            "last_attempt_time": (
                self.last_attempt_time.isoformat() if self.last_attempt_time else None
            ),
        }


@dataclass
class AttemptRecord:
    """One connection attempt."""

    timestamp: float  # monotonic
    duration_ms: float
    success: bool
    path: str | None = None
    error_type: str | None = None


class CameraStatsCollector:
    """Rolling statistics for a single camera IP."""

    def __init__(
        self, camera_ip: str, window_size: int = DEFAULT_STATS_WINDOW_SIZE
    ) -> None:
        """Create an empty collector.

        Args:
            camera_ip: Address this collector describes.
            window_size: Attempts retained for duration statistics. Totals
                and error counts are cumulative and unaffected by the window.

        Raises:
            ValueError: If window_size < 1.
        """
        if window_size < 1:
            raise ValueError(f"window_size must be >= 1, got {window_size}")
        self.camera_ip = camera_ip
        self._lock = threading.Lock()
        self._records: deque[AttemptRecord] = deque(maxlen=window_size)
        self._total = 0
        self._successful = 0
        self._path_counts: dict[str, int] = {}
        self._error_counts: dict[str, int] = {}
        self._captures = 0
        self._failed_captures = 0
        self._last_attempt_time: datetime | None = None

    def record_attempt(
        self,
        duration_ms: float,
        success: bool,
        path: str | None = None,
        error_type: str | None = None,
    ) -> None:
        """Record a finished connection attempt.

        Args:
            duration_ms: Wall time from CONNECTING to the final state.
            success: True when the attempt ended CONNECTED.
            path: "native" or "fallback" for successful attempts.
            error_type: Failure category, counted only when success is False.
        """
        record = AttemptRecord(
            timestamp=time.monotonic(),
            duration_ms=duration_ms,
            success=success,
            path=path,
            error_type=error_type,
        )
        with self._lock:
            self._records.append(record)
            self._total += 1
            self._last_attempt_time = _utc_now()
            if success:
                self._successful += 1
                if path:
                    self._path_counts[path] = self._path_counts.get(path, 0) + 1
            else:
                key = error_type or "unknown"
                self._error_counts[key] = self._error_counts.get(key, 0) + 1

    def record_capture(self, success: bool) -> None:
        with self._lock:
            self._captures += 1
            if not success:
                self._failed_captures += 1

    def get_summary(self) -> StatsSummary:
        """Compute a summary; sorting happens outside the lock."""
        with self._lock:
            total = self._total
            successful = self._successful
            path_counts = dict(self._path_counts)
            error_counts = dict(self._error_counts)
            captures = self._captures
            failed_captures = self._failed_captures
            last_attempt_time = self._last_attempt_time
            durations = [r.duration_ms for r in self._records if r.success]

        if durations:
            ordered = sorted(durations)
            min_dur, max_dur = ordered[0], ordered[-1]
            avg_dur = sum(ordered) / len(ordered)
            p95_dur = _percentile(ordered, 95)
        else:
            min_dur = max_dur = avg_dur = p95_dur = 0.0

        return StatsSummary(
            camera_ip=self.camera_ip,
            total_attempts=total,
            successful_attempts=successful,
            failed_attempts=total - successful,
            success_rate=successful / total if total else 0.0,
            min_duration_ms=min_dur,
            max_duration_ms=max_dur,
            avg_duration_ms=avg_dur,
            p95_duration_ms=p95_dur,
            path_counts=path_counts,
            error_counts=error_counts,
            captures=captures,
            failed_captures=failed_captures,
            last_attempt_time=last_attempt_time,
        )

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._total = 0
            self._successful = 0
            self._path_counts.clear()
            self._error_counts.clear()
            self._captures = 0
            self._failed_captures = 0
            self._last_attempt_time = None


class ConnectionStats:
    """Per-camera statistics registry.

    Collectors are created lazily the first time an IP is recorded. Camera
    IPs can change on access-point networks; each address is tracked
    separately so a bad DHCP lease shows up as its own failing entry.

    Example:
        >>> stats = ConnectionStats()
        >>> stats.record_capture("192.168.1.1", success=True)
        >>> stats.get_summary("192.168.1.1").captures
        1
    """

    def __init__(self, window_size: int = DEFAULT_STATS_WINDOW_SIZE) -> None:
        self._window_size = window_size
        self._collectors: dict[str, CameraStatsCollector] = {}
        self._lock = threading.Lock()

    def _get_collector(self, camera_ip: str) -> CameraStatsCollector:
        with self._lock:
            collector = self._collectors.get(camera_ip)
            if collector is None:
                collector = CameraStatsCollector(camera_ip, self._window_size)
                self._collectors[camera_ip] = collector
            return collector

    def record_attempt(
        self,
        camera_ip: str,
        duration_ms: float,
        success: bool,
        path: str | None = None,
        error_type: str | None = None,
    ) -> None:
        """Record a connection attempt against ``camera_ip``."""
        self._get_collector(camera_ip).record_attempt(
            duration_ms, success, path=path, error_type=error_type
        )

    def record_capture(self, camera_ip: str, success: bool) -> None:
        """Record a capture request against ``camera_ip``."""
        self._get_collector(camera_ip).record_capture(success)

    def get_summary(self, camera_ip: str) -> StatsSummary:
        """Return the summary for ``camera_ip`` (empty if never recorded)."""
        with self._lock:
            collector = self._collectors.get(camera_ip)
        if collector is None:
            return StatsSummary(camera_ip=camera_ip)
        return collector.get_summary()

    def get_all_summaries(self) -> dict[str, StatsSummary]:
        with self._lock:
            collectors = list(self._collectors.values())
        return {c.camera_ip: c.get_summary() for c in collectors}

    def reset(self, camera_ip: str | None = None) -> None:
        """Clear one camera's statistics, or all of them when ``None``."""
        with self._lock:
            if camera_ip is None:
                self._collectors.clear()
                return
            collector = self._collectors.get(camera_ip)
        if collector is not None:
            collector.reset()

    def to_dict(self) -> dict[str, Any]:
        """Export all summaries keyed by camera IP."""
        return {
            ip: summary.to_dict() for ip, summary in self.get_all_summaries().items()
        }


def _percentile(sorted_data: list[float], p: float) -> float:
    """Linear-interpolated percentile of ascending ``sorted_data``.

    Example:
        >>> _percentile([1.0, 2.0, 3.0, 4.0, 5.0], 50)
        3.0
        >>> _percentile([], 95)
        0.0
    """
    if not sorted_data:
        return 0.0
    k = (len(sorted_data) - 1) * (p / 100)
    lower = int(k)
    upper = min(lower + 1, len(sorted_data) - 1)
    if lower == upper:
        return sorted_data[lower]
    fraction = k - lower
    return sorted_data[lower] * (1 - fraction) + sorted_data[upper] * fraction
