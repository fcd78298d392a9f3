"""Tests for drivers/gphoto.py - gphoto2 command line capture bridge."""

import subprocess
from unittest.mock import patch

from ptpip_tether.drivers.gphoto import (
    CAPTURE_FILENAME_TEMPLATE,
    GPhotoCaptureLibrary,
    parse_error_code,
    ptpip_port,
)
from ptpip_tether.drivers.native import GP_ERROR, is_init_success
from tests.helpers import assert_implements_protocol


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(["gphoto2"], returncode, stdout, stderr)


class TestHelpers:
    def test_port_spec(self):
        assert ptpip_port("192.168.1.20", 15740) == "ptpip:192.168.1.20:15740"

    def test_error_code_parsing(self):
        assert parse_error_code("*** Error (-7: 'I/O problem') ***") == -7
        assert parse_error_code("something else went wrong") == GP_ERROR

    def test_init_result_interpretation(self):
        assert is_init_success("GP_OK")
        assert is_init_success(" OK ")
        assert is_init_success("Init Success")
        assert not is_init_success("GP_ERROR: refused")
        assert not is_init_success("")
        assert not is_init_success(None)


class TestGPhotoCaptureLibrary:
    def test_implements_native_protocol(self):
        from ptpip_tether.drivers.native import NativeCaptureLibrary

        assert_implements_protocol(GPhotoCaptureLibrary(), NativeCaptureLibrary)

    @patch("ptpip_tether.drivers.gphoto.subprocess.run")
    def test_attach_runs_summary_on_ptpip_port(self, mock_run):
        mock_run.return_value = completed()
        library = GPhotoCaptureLibrary(binary="/usr/bin/gphoto2")

        assert library.init_with_ptpip("192.168.1.20", 15740) == "GP_OK"

        cmd = mock_run.call_args.args[0]
        assert cmd == ["/usr/bin/gphoto2", "--port", "ptpip:192.168.1.20:15740", "--summary"]
        assert library.port == "ptpip:192.168.1.20:15740"

    @patch("ptpip_tether.drivers.gphoto.subprocess.run")
    def test_attach_failure_returns_stderr(self, mock_run):
        mock_run.return_value = completed(1, stderr="*** Error (-7: 'I/O problem') ***\n")
        library = GPhotoCaptureLibrary()

        result = library.init_for_ap_mode("192.168.1.1", 15740)

        assert not is_init_success(result)
        assert "I/O problem" in result
        assert library.port is None

    @patch("ptpip_tether.drivers.gphoto.subprocess.run", side_effect=FileNotFoundError)
    def test_missing_binary(self, mock_run):
        library = GPhotoCaptureLibrary(binary="gphoto2-missing")

        assert "not found" in library.init_with_ptpip("192.168.1.20", 15740)
        assert library.init_with_session_maintenance("192.168.1.20", 15740) == GP_ERROR

    @patch("ptpip_tether.drivers.gphoto.subprocess.run")
    def test_timeout_maps_to_error(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(["gphoto2"], 15.0)
        library = GPhotoCaptureLibrary()

        assert "timed out" in library.init_with_ptpip("192.168.1.20", 15740)
        assert library.init_with_session_maintenance("192.168.1.20", 15740) == GP_ERROR

    @patch("ptpip_tether.drivers.gphoto.subprocess.run")
    def test_session_maintenance_attaches_port(self, mock_run):
        mock_run.return_value = completed()
        library = GPhotoCaptureLibrary()

        assert library.init_with_session_maintenance("192.168.1.20", 15740) == 0
        assert library.maintain_session_for_sta_mode() == 0

        assert mock_run.call_args.args[0][-1] == "--storage-info"

    def test_maintenance_without_camera(self):
        assert GPhotoCaptureLibrary().maintain_session_for_sta_mode() == GP_ERROR

    def test_capture_without_camera(self):
        assert GPhotoCaptureLibrary().capture_photo() == GP_ERROR

    @patch("ptpip_tether.drivers.gphoto.subprocess.run")
    def test_capture_on_card(self, mock_run):
        mock_run.return_value = completed()
        library = GPhotoCaptureLibrary()
        library.init_with_ptpip("192.168.1.20", 15740)

        assert library.capture_photo() == 0

        assert mock_run.call_args.args[0][-1] == "--capture-image"
        assert mock_run.call_args.kwargs["timeout"] == library.capture_timeout

    @patch("ptpip_tether.drivers.gphoto.subprocess.run")
    def test_capture_and_download(self, mock_run, tmp_path):
        mock_run.return_value = completed()
        capture_dir = tmp_path / "captures"
        library = GPhotoCaptureLibrary(capture_dir=capture_dir)
        library.init_with_ptpip("192.168.1.20", 15740)

        assert library.capture_photo() == 0

        cmd = mock_run.call_args.args[0]
        assert "--capture-image-and-download" in cmd
        assert str(capture_dir / CAPTURE_FILENAME_TEMPLATE) in cmd
        assert capture_dir.is_dir()

    @patch("ptpip_tether.drivers.gphoto.subprocess.run")
    def test_capture_error_code(self, mock_run):
        mock_run.return_value = completed()
        library = GPhotoCaptureLibrary()
        library.init_with_ptpip("192.168.1.20", 15740)
        mock_run.return_value = completed(1, stderr="*** Error (-110: 'Camera busy') ***")

        assert library.capture_photo() == -110

    @patch("ptpip_tether.drivers.gphoto.subprocess.run")
    def test_close_forgets_port(self, mock_run):
        mock_run.return_value = completed()
        library = GPhotoCaptureLibrary()
        library.init_with_ptpip("192.168.1.20", 15740)

        library.close_camera()

        assert library.port is None
        assert library.capture_photo() == GP_ERROR
