"""Tests for drivers/twin.py - simulated camera and network."""

import pytest

from ptpip_tether.drivers.mdns import ServiceBrowser
from ptpip_tether.drivers.native import NativeCaptureLibrary
from ptpip_tether.drivers.probe import NetworkProbe
from ptpip_tether.drivers.transport import Transport, TransportFactory
from ptpip_tether.drivers.twin import (
    GP_ERROR_IO,
    DigitalTwinCamera,
    DigitalTwinCaptureLibrary,
    DigitalTwinNetworkProbe,
    DigitalTwinServiceBrowser,
    TwinCameraConfig,
)
from ptpip_tether.protocol import codec
from ptpip_tether.protocol.constants import PacketType, ResponseCode, StandardOperation
from tests.helpers import assert_implements_protocol, twin_network


class TestProtocolCompliance:
    def test_twins_implement_protocols(self):
        network = twin_network()

        assert_implements_protocol(network, TransportFactory)
        assert_implements_protocol(network.create(), Transport)
        assert_implements_protocol(DigitalTwinCaptureLibrary(network), NativeCaptureLibrary)
        assert_implements_protocol(DigitalTwinNetworkProbe(network), NetworkProbe)
        assert_implements_protocol(DigitalTwinServiceBrowser(network), ServiceBrowser)


class TestTwinCamera:
    def test_connection_numbers_increase(self):
        camera = DigitalTwinCamera()
        request = codec.encode_init_command_request()

        first = codec.decode_init_command_ack(camera.handle(request))
        second = codec.decode_init_command_ack(camera.handle(request))

        assert (first.connection_number, second.connection_number) == (1, 2)
        assert first.host_name == "Z 8"

    def test_unknown_operation_not_supported(self):
        camera = DigitalTwinCamera()

        reply = camera.handle(codec.encode_operation_request(0x9999, 4))

        response = codec.decode_operation_response(reply)
        assert response.response_code == ResponseCode.OPERATION_NOT_SUPPORTED
        assert response.transaction_id == 4

    def test_storage_ids_data_phase(self):
        camera = DigitalTwinCamera()

        reply = camera.handle(codec.encode_operation_request(StandardOperation.GET_STORAGE_IDS, 1))

        assert codec.packet_type_of(reply) == PacketType.START_DATA

    def test_multiple_frames_in_one_write(self):
        camera = DigitalTwinCamera()
        data = codec.encode_operation_request(
            StandardOperation.OPEN_SESSION, 0, 7
        ) + codec.encode_operation_request(StandardOperation.CLOSE_SESSION, 1)

        camera.handle(data)

        assert camera.opcodes == [StandardOperation.OPEN_SESSION, StandardOperation.CLOSE_SESSION]
        assert camera.close_session_count == 1
        assert camera.session_id is None


class TestTwinTransport:
    def test_connect_to_missing_camera_refused(self):
        transport = twin_network().create()

        with pytest.raises(ConnectionRefusedError):
            transport.connect("10.1.1.1", 15740, 1.0)

    def test_wrong_port_refused(self):
        with pytest.raises(ConnectionRefusedError):
            twin_network().create().connect("192.168.1.20", 80, 1.0)

    def test_read_without_data_times_out(self):
        transport = twin_network().create()
        transport.connect("192.168.1.20", 15740, 1.0)

        with pytest.raises(TimeoutError):
            transport.recv_exactly(8, 0.1)

    def test_send_after_camera_vanishes(self):
        network = twin_network()
        transport = network.create()
        transport.connect("192.168.1.20", 15740, 1.0)
        network.cameras[0].config.reachable = False

        with pytest.raises(ConnectionError):
            transport.sendall(codec.encode_init_command_request())

    def test_closed_transport_cannot_read(self):
        transport = twin_network().create()

        with pytest.raises(ConnectionError):
            transport.recv_exactly(8, 0.1)

    def test_move_camera(self):
        network = twin_network()

        network.move_camera("192.168.1.20", "192.168.1.30")

        assert network.camera_at("192.168.1.20") is None
        assert network.camera_at("192.168.1.30").config.ip_address == "192.168.1.30"
        assert network.is_reachable("192.168.1.30", 15740, 1.0)


class TestTwinCaptureLibrary:
    def test_pairing_gate_on_station_attach(self):
        network = twin_network(TwinCameraConfig(requires_pairing=True))
        library = DigitalTwinCaptureLibrary(network)

        assert "pairing" in library.init_with_ptpip("192.168.1.20", 15740)
        network.cameras[0].paired = True
        assert library.init_with_ptpip("192.168.1.20", 15740) == "GP_OK"

    def test_ap_attach_ignores_pairing(self):
        network = twin_network(TwinCameraConfig(requires_pairing=True))
        library = DigitalTwinCaptureLibrary(network)

        assert library.init_for_ap_mode("192.168.1.20", 15740) == "GP_OK"
        assert library.attached is network.cameras[0]

    def test_capture_counts_on_camera(self):
        network = twin_network()
        library = DigitalTwinCaptureLibrary(network)
        library.init_with_session_maintenance("192.168.1.20", 15740)

        assert library.capture_photo() == 0
        assert network.cameras[0].captures == 1

    def test_capture_fails_when_camera_gone(self):
        network = twin_network()
        library = DigitalTwinCaptureLibrary(network)
        library.init_with_ptpip("192.168.1.20", 15740)
        network.cameras[0].config.reachable = False

        assert library.maintain_session_for_sta_mode() == GP_ERROR_IO
        assert library.capture_photo() == GP_ERROR_IO

    def test_close_detaches(self):
        library = DigitalTwinCaptureLibrary(twin_network())
        library.init_with_ptpip("192.168.1.20", 15740)

        library.close_camera()

        assert library.attached is None
        assert library.calls == ["init_with_ptpip", "close_camera"]


class TestTwinProbeAndBrowser:
    def test_probe_reports_nothing_without_wifi(self):
        probe = DigitalTwinNetworkProbe(twin_network(), wifi_connected=False)

        assert probe.current_ssid() is None
        assert probe.gateway_ip() is None
        assert probe.local_ipv4() is None
        assert not probe.is_reachable("192.168.1.20", 15740, 1.0)

    @pytest.mark.asyncio
    async def test_browser_lists_advertised_reachable_cameras(self):
        network = twin_network(
            TwinCameraConfig(),
            TwinCameraConfig(ip_address="192.168.1.21", service_name=None),
            TwinCameraConfig(
                ip_address="192.168.1.22", service_name="Canon_EOS_R5", reachable=False
            ),
        )

        records = await DigitalTwinServiceBrowser(network).browse("_ptp._tcp.local.", 1.0)

        assert [r.host for r in records] == ["192.168.1.20"]
