"""Tests for network/connection.py - PTP/IP connection manager."""

import threading

import pytest

from ptpip_tether.drivers.twin import DigitalTwinCamera, TwinCameraConfig
from ptpip_tether.network.connection import (
    ConnectionManager,
    connect_transport,
    new_session_id,
    open_channels,
    perform_command_init,
)
from ptpip_tether.protocol.constants import PacketType, StandardOperation
from ptpip_tether.protocol import codec
from ptpip_tether.protocol.errors import (
    HandshakeTimeoutError,
    ProtocolMismatchError,
    ReachabilityError,
)
from ptpip_tether.protocol.types import Camera, ParseOutcome
from tests.helpers import SlowTwinNetwork, fast_config, twin_network

CAMERA = Camera("192.168.1.20")


def manager_for(*configs: TwinCameraConfig, **overrides) -> tuple[ConnectionManager, object]:
    network = twin_network(*configs)
    return ConnectionManager(network, fast_config(**overrides)), network


class TestHandshakeHelpers:
    """Init command / init event exchanges on raw transports."""

    def test_command_init_returns_connection_number(self):
        network = twin_network()
        transport = connect_transport(network, CAMERA, 0.1)

        assert perform_command_init(transport, "Android Device", 0.1) == 1

    def test_init_fail_is_protocol_mismatch(self):
        network = twin_network(TwinCameraConfig(init_failure=True))
        transport = connect_transport(network, CAMERA, 0.1)

        with pytest.raises(ProtocolMismatchError) as exc:
            perform_command_init(transport, "Android Device", 0.1)
        assert exc.value.packet_type == PacketType.INIT_FAIL

    def test_silent_camera_times_out(self):
        network = twin_network(TwinCameraConfig(silent_init=True))
        transport = connect_transport(network, CAMERA, 0.1)

        with pytest.raises(HandshakeTimeoutError) as exc:
            perform_command_init(transport, "Android Device", 0.1)
        assert exc.value.stage == "Init command"

    def test_unreachable_connect_raises_reachability_error(self):
        with pytest.raises(ReachabilityError) as exc:
            connect_transport(twin_network(), Camera("10.0.0.9"), 0.1)
        assert exc.value.host == "10.0.0.9"

    def test_open_channels_closes_command_on_event_failure(self):
        """A missing Init Event ACK must not leak the command channel.

        Arrangement:
        1. Twin camera that never answers the Init Event Request.

        Action:
        open_channels() for that camera.

        Assertion Strategy:
        - HandshakeTimeoutError propagates.
        - Every transport the network handed out is closed.
        """
        network = twin_network(TwinCameraConfig(drop_event_ack=True))

        with pytest.raises(HandshakeTimeoutError):
            open_channels(network, CAMERA, fast_config())

        assert len(network.transports) == 2
        assert not any(t.is_connected for t in network.transports)

    def test_event_init_carries_connection_number(self):
        network = twin_network()

        command, event, number = open_channels(network, CAMERA, fast_config())

        assert codec.decode_init_event_request(event.sent[0]) == number


class TestEstablishConnection:
    def test_connects_both_channels(self):
        manager, network = manager_for()

        assert manager.establish_connection(CAMERA)

        assert manager.is_connected()
        assert manager.camera == CAMERA
        assert manager.connection_number == 1
        assert manager.last_error is None

    def test_unreachable_camera_sets_last_error(self):
        manager, _ = manager_for(TwinCameraConfig(reachable=False))

        assert not manager.establish_connection(CAMERA)

        assert not manager.is_connected()
        assert "unreachable" in manager.last_error
        assert manager.last_error_type == "ReachabilityError"

    def test_handshake_timeout_reports_error_type(self):
        manager, network = manager_for(TwinCameraConfig(silent_init=True))

        assert not manager.establish_connection(CAMERA)

        assert manager.last_error_type == "HandshakeTimeoutError"
        assert not any(t.is_connected for t in network.transports)

    def test_reconnect_replaces_previous_channels(self):
        manager, network = manager_for()
        manager.establish_connection(CAMERA)
        first = list(network.transports)

        assert manager.establish_connection(CAMERA)

        assert not any(t.is_connected for t in first)
        assert manager.connection_number == 2

    def test_success_clears_previous_error(self):
        camera = DigitalTwinCamera(TwinCameraConfig(silent_init=True))
        network = twin_network()
        network.add_camera(camera)
        manager = ConnectionManager(network, fast_config())
        manager.establish_connection(CAMERA)

        camera.config.silent_init = False

        assert manager.establish_connection(CAMERA)
        assert manager.last_error is None
        assert manager.last_error_type is None


class TestDeviceInfo:
    def test_parses_twin_dataset(self):
        manager, _ = manager_for()
        manager.establish_connection(CAMERA)

        info = manager.get_device_info()

        assert info.manufacturer == "Nikon"
        assert info.model == "Z 8"
        assert manager.last_parse_result.outcome is ParseOutcome.FULL

    def test_first_transaction_id_is_zero(self):
        manager, network = manager_for()
        manager.establish_connection(CAMERA)

        manager.get_device_info()

        camera = network.cameras[0]
        assert camera.received[0] == (StandardOperation.GET_DEVICE_INFO, 0, ())

    def test_without_connection_returns_none(self):
        manager, _ = manager_for()

        assert manager.get_device_info() is None

    def test_quirky_payload_still_yields_record(self):
        junk = b"\x00" * 40
        manager, _ = manager_for(TwinCameraConfig(device_info_payload=junk))
        manager.establish_connection(CAMERA)

        info = manager.get_device_info()

        assert info is not None
        assert manager.last_parse_result.outcome is ParseOutcome.FALLBACK


class TestSessions:
    def test_open_session_uses_transaction_zero(self):
        manager, network = manager_for()
        manager.establish_connection(CAMERA)
        manager.get_device_info()

        assert manager.open_session()

        camera = network.cameras[0]
        opcode, txid, params = camera.received[-1]
        assert opcode == StandardOperation.OPEN_SESSION
        assert txid == 0
        assert params == (manager.session_id,)
        assert camera.session_id == manager.session_id

    def test_soft_close_sends_nothing(self):
        manager, network = manager_for()
        manager.establish_connection(CAMERA)
        manager.open_session()

        assert manager.close_session(force_close=False)

        assert network.cameras[0].close_session_count == 0
        assert manager.is_connected()

    def test_forced_close_sends_close_session(self):
        manager, network = manager_for()
        manager.establish_connection(CAMERA)
        manager.open_session()

        assert manager.close_session(force_close=True)

        assert network.cameras[0].close_session_count == 1

    def test_close_connections_without_session_close(self):
        manager, network = manager_for()
        manager.establish_connection(CAMERA)

        manager.close_connections(close_session=False)

        assert network.cameras[0].close_session_count == 0
        assert not manager.is_connected()
        assert manager.camera is None

    def test_close_connections_is_idempotent(self):
        manager, network = manager_for()
        manager.establish_connection(CAMERA)

        manager.close_connections()
        manager.close_connections()

        assert network.cameras[0].close_session_count == 1

    def test_session_ids_are_positive_31_bit(self):
        assert 0 <= new_session_id() < 0x7FFFFFFF


class TestSendOperation:
    def test_returns_response_frames(self):
        manager, _ = manager_for()
        manager.establish_connection(CAMERA)

        frames = manager.send_operation(StandardOperation.GET_STORAGE_IDS)

        assert codec.last_response(frames).response_code == 0x2001

    def test_not_connected_returns_empty(self):
        manager, _ = manager_for()

        assert manager.send_operation(StandardOperation.GET_STORAGE_IDS) == []

    def test_camera_vanishing_returns_empty(self):
        manager, network = manager_for()
        manager.establish_connection(CAMERA)
        network.cameras[0].config.reachable = False

        assert manager.send_operation(StandardOperation.GET_STORAGE_IDS) == []


class TestConcurrency:
    def test_parallel_callers_never_interleave_writes(self):
        """Many threads sharing one manager never write concurrently.

        Arrangement:
        1. SlowTwinNetwork whose sendall sleeps and counts overlap.
        2. One established connection.

        Action:
        Eight threads each send GetDeviceInfo through the same manager.

        Assertion Strategy:
        - At most one write was ever in flight.
        - Every request reached the camera.
        """
        network = SlowTwinNetwork([DigitalTwinCamera()])
        manager = ConnectionManager(network, fast_config())
        manager.establish_connection(CAMERA)
        writes_before = network.detector.writes

        threads = [threading.Thread(target=manager.get_device_info) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert network.detector.max_active == 1
        assert network.detector.writes - writes_before == 8
