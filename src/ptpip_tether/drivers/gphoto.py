"""Native capture bridge backed by the gphoto2 command line tool.

gphoto2 speaks PTP/IP itself when given a ``ptpip:<ip>:<port>`` port, so the
bridge only has to remember which camera it was attached to and shell out for
each operation.

Example:
    library = GPhotoCaptureLibrary()
    if is_init_success(library.init_with_ptpip("192.168.1.20", 15740)):
        library.capture_photo()
"""

from __future__ import annotations

import re
import subprocess
from pathlib import Path

from ptpip_tether.drivers.native import GP_ERROR
from ptpip_tether.observability import get_logger

logger = get_logger(__name__)

DEFAULT_BINARY = "gphoto2"
DEFAULT_COMMAND_TIMEOUT_S = 15.0
DEFAULT_CAPTURE_TIMEOUT_S = 60.0

#: gphoto2 prints failures as "*** Error (-7: 'I/O problem') ***".
_ERROR_CODE = re.compile(r"\*\*\* Error \((-?\d+)")

#: Filename template passed to --filename when downloading captures.
CAPTURE_FILENAME_TEMPLATE = "%Y%m%d-%H%M%S-%n.%C"


def ptpip_port(ip: str, port: int) -> str:
    """gphoto2 port specification for a PTP/IP camera."""
    return f"ptpip:{ip}:{port}"


def parse_error_code(output: str) -> int:
    """Extract the gphoto2 error code from ``output``, or GP_ERROR."""
    match = _ERROR_CODE.search(output)
    if match:
        return int(match.group(1))
    return GP_ERROR


class GPhotoCaptureLibrary:
    """NativeCaptureLibrary implementation that runs ``gphoto2``.

    Args:
        binary: gphoto2 executable name or path.
        capture_dir: Directory captures are downloaded to. None leaves
            images on the camera card.
        command_timeout: Deadline for attach/keep-alive commands.
        capture_timeout: Deadline for a capture.
    """

    def __init__(
        self,
        binary: str = DEFAULT_BINARY,
        capture_dir: Path | None = None,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT_S,
        capture_timeout: float = DEFAULT_CAPTURE_TIMEOUT_S,
    ) -> None:
        self.binary = binary
        self.capture_dir = capture_dir
        self.command_timeout = command_timeout
        self.capture_timeout = capture_timeout
        self._port: str | None = None

    @property
    def port(self) -> str | None:
        """gphoto2 port of the attached camera, if any."""
        return self._port

    def _run(self, args: list[str], timeout: float) -> subprocess.CompletedProcess[str]:
        cmd = [self.binary, *args]
        logger.debug("Running gphoto2", command=" ".join(cmd))
        return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)

    def _run_status(self, args: list[str], timeout: float) -> int:
        """Run a command and map the outcome onto a gphoto2 status code."""
        try:
            result = self._run(args, timeout)
        except FileNotFoundError:
            logger.error("gphoto2 binary not found", binary=self.binary)
            return GP_ERROR
        except subprocess.TimeoutExpired:
            logger.warning("gphoto2 command timed out", args=args, timeout=timeout)
            return GP_ERROR
        if result.returncode == 0:
            return 0
        code = parse_error_code(result.stderr or result.stdout)
        logger.warning(
            "gphoto2 command failed",
            args=args,
            returncode=result.returncode,
            code=code,
            stderr=(result.stderr or "").strip()[:200],
        )
        return code

    def _attach(self, ip: str, port: int) -> str:
        spec = ptpip_port(ip, port)
        try:
            result = self._run(["--port", spec, "--summary"], self.command_timeout)
        except FileNotFoundError:
            return f"gphoto2 binary not found: {self.binary}"
        except subprocess.TimeoutExpired:
            return f"gphoto2 timed out attaching to {spec}"
        if result.returncode != 0:
            return (result.stderr or result.stdout or "gphoto2 attach failed").strip()
        self._port = spec
        logger.info("gphoto2 attached", port=spec)
        return "GP_OK"

    def init_for_ap_mode(self, ip: str, port: int) -> str:
        return self._attach(ip, port)

    def init_with_ptpip(self, ip: str, port: int) -> str:
        return self._attach(ip, port)

    def init_with_session_maintenance(self, ip: str, port: int) -> int:
        spec = ptpip_port(ip, port)
        status = self._run_status(["--port", spec, "--storage-info"], self.command_timeout)
        if status >= 0:
            self._port = spec
        return status

    def maintain_session_for_sta_mode(self) -> int:
        if self._port is None:
            return GP_ERROR
        return self._run_status(["--port", self._port, "--storage-info"], self.command_timeout)

    def capture_photo(self) -> int:
        if self._port is None:
            logger.warning("Capture requested with no attached camera")
            return GP_ERROR
        args = ["--port", self._port]
        if self.capture_dir is not None:
            self.capture_dir.mkdir(parents=True, exist_ok=True)
            args += [
                "--capture-image-and-download",
                "--filename",
                str(self.capture_dir / CAPTURE_FILENAME_TEMPLATE),
                "--force-overwrite",
                "--keep",
            ]
        else:
            args.append("--capture-image")
        return self._run_status(args, self.capture_timeout)

    def close_camera(self) -> None:
        if self._port is not None:
            logger.info("gphoto2 released", port=self._port)
        self._port = None
