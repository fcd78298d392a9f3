"""Native capture library protocol.

The capture path (trigger, session keep-alive) is handed off to a native
library once the PTP/IP session is up. The orchestrator only depends on this
protocol; drivers/gphoto.py and drivers/twin.py provide implementations.

Return conventions:
    init_* string results: "OK"/"GP_OK" or any text containing "success"
    mean the camera was attached. Anything else is a failure description.
    Integer results: >= 0 is success, negative values are library error
    codes (gphoto2 style).
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

#: init_* results that mean success verbatim.
INIT_OK_RESULTS = frozenset({"OK", "GP_OK"})

#: Generic gphoto2-style error code used when a call fails without a code.
GP_ERROR = -1


@runtime_checkable
class NativeCaptureLibrary(Protocol):  # pragma: no cover
    """Protocol for the native capture bridge.

    Implementations are blocking; the orchestrator calls them through
    ``loop.run_in_executor``.
    """

    def init_for_ap_mode(self, ip: str, port: int) -> str:
        """Attach to a camera reached through its own access point.

        Returns:
            "OK"/"GP_OK" or a success message, otherwise an error description.
        """
        ...

    def init_with_ptpip(self, ip: str, port: int) -> str:
        """Attach to a camera on a shared (station) network."""
        ...

    def init_with_session_maintenance(self, ip: str, port: int) -> int:
        """Attach to an already-open PTP session kept alive by the client.

        Returns:
            >= 0 on success, negative error code otherwise.
        """
        ...

    def maintain_session_for_sta_mode(self) -> int:
        """Refresh the station-mode session before a capture."""
        ...

    def capture_photo(self) -> int:
        """Trigger one capture.

        Returns:
            >= 0 on success, negative error code otherwise.
        """
        ...

    def close_camera(self) -> None:
        """Release the camera."""
        ...


def is_init_success(result: str | None) -> bool:
    """Interpret an ``init_*`` result string.

    Example:
        >>> is_init_success("GP_OK"), is_init_success("Init Success"), is_init_success("-7")
        (True, True, False)
    """
    if not result:
        return False
    text = result.strip()
    return text in INIT_OK_RESULTS or "success" in text.lower()
