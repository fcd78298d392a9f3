"""Tests for network/monitor.py - Wi-Fi state normalization and polling."""

import asyncio

import pytest

from ptpip_tether.drivers.twin import DigitalTwinNetworkProbe, TwinCameraConfig
from ptpip_tether.network.monitor import NetworkStateMonitor, is_camera_ssid, subnet_gateway
from ptpip_tether.protocol.types import NetworkState
from tests.helpers import fast_config, twin_network


def make_monitor(network=None, **probe_kwargs):
    probe = DigitalTwinNetworkProbe(network or twin_network(), **probe_kwargs)
    return NetworkStateMonitor(probe, fast_config()), probe


class CountingProbe(DigitalTwinNetworkProbe):
    def __init__(self, network, **kwargs):
        super().__init__(network, **kwargs)
        self.ssid_queries = 0

    def current_ssid(self):
        self.ssid_queries += 1
        return super().current_ssid()


class TestHelpers:
    @pytest.mark.parametrize(
        "ssid,expected",
        [
            ("Nikon_WU2_Z8_1234", True),
            ("canon-eos-r5", True),
            ("DIRECT-xx-Sony", True),
            ("HomeNet", False),
            ("", False),
            (None, False),
        ],
    )
    def test_camera_ssid_detection(self, ssid, expected):
        assert is_camera_ssid(ssid) is expected

    def test_subnet_gateway(self):
        assert subnet_gateway("192.168.4.37") == "192.168.4.1"
        assert subnet_gateway("not-an-ip") is None
        assert subnet_gateway(None) is None


class TestSnapshot:
    def test_wifi_down_is_disconnected_state(self):
        monitor, _ = make_monitor(wifi_connected=False)

        assert monitor.snapshot() == NetworkState.disconnected()

    def test_shared_network_has_no_camera_ip(self):
        monitor, _ = make_monitor(ssid="HomeNet")

        state = monitor.snapshot()

        assert state == NetworkState(True, False, "HomeNet", None)

    def test_camera_ap_detects_reachable_candidate(self):
        network = twin_network(TwinCameraConfig(ip_address="192.168.0.1"))
        monitor, _ = make_monitor(network, ssid="NIKON_Z8")

        state = monitor.snapshot()

        assert state.is_connected_to_camera_ap
        assert state.detected_camera_ip == "192.168.0.1"

    def test_unreachable_candidates_fall_back_to_first(self):
        monitor, _ = make_monitor(ssid="NIKON_Z8", gateway="192.168.7.1")

        assert monitor.detect_camera_ip() == "192.168.7.1"
        assert monitor.find_available_camera_ip() is None

    def test_candidates_are_ordered_and_unique(self):
        monitor, _ = make_monitor(
            gateway="192.168.1.1", dhcp_server="192.168.1.254", local_ip="192.168.1.50"
        )

        candidates = monitor.candidate_ips()

        assert candidates[:2] == ["192.168.1.1", "192.168.1.254"]
        assert candidates.count("192.168.1.1") == 1

    def test_ap_check_is_cached_per_ssid(self):
        probe = CountingProbe(twin_network(), ssid="NIKON_Z8")
        monitor = NetworkStateMonitor(probe, fast_config())

        monitor.is_connected_to_camera_ap()
        monitor.is_connected_to_camera_ap()
        probe.ssid = "HomeNet"

        assert not monitor.is_connected_to_camera_ap()
        assert probe.ssid_queries == 3


class TestPublishing:
    def test_identical_states_are_suppressed(self):
        monitor, _ = make_monitor()
        seen = []
        monitor.state.subscribe(seen.append)

        first = monitor.refresh()
        second = monitor.refresh()

        assert first is not None
        assert second is None
        assert seen == [first]

    def test_change_is_published(self):
        monitor, probe = make_monitor()
        seen = []
        monitor.state.subscribe(seen.append)
        monitor.refresh()

        probe.wifi_connected = False
        monitor.refresh()

        assert [s.is_wifi_connected for s in seen] == [True, False]

    def test_first_disconnected_emission_is_not_suppressed(self):
        """The very first snapshot is published even if it equals the seed."""
        monitor, _ = make_monitor(wifi_connected=False)

        assert monitor.publish(NetworkState.disconnected())


class TestPolling:
    @pytest.mark.asyncio
    async def test_run_publishes_until_stopped(self):
        """The poll loop picks up changes and exits promptly on stop().

        Arrangement:
        1. Monitor on a twin probe with 10ms poll interval.
        2. Subscriber collecting emissions.

        Action:
        Run the loop, drop Wi-Fi, then stop.

        Assertion Strategy:
        - Both the connected and disconnected states were emitted.
        - run() finishes and is_running goes False.
        """
        monitor, probe = make_monitor()
        seen = []
        monitor.state.subscribe(seen.append)

        task = asyncio.create_task(monitor.run(0.01))
        await asyncio.sleep(0.05)
        assert monitor.is_running
        probe.wifi_connected = False
        await asyncio.sleep(0.05)
        monitor.stop()
        await asyncio.wait_for(task, 1.0)

        assert not monitor.is_running
        assert seen[0].is_wifi_connected
        assert not seen[-1].is_wifi_connected

    def test_stop_before_run_is_harmless(self):
        monitor, _ = make_monitor()

        monitor.stop()

        assert not monitor.is_running
