"""Pytest configuration and fixtures for ptpip-tether tests.

Every test gets a fresh global driver factory and orchestrator registry, so
module-level state set by the server, CLI or tools tests never leaks.
"""

import logging

import pytest

from ptpip_tether.drivers import config as driver_config
from ptpip_tether.drivers.twin import DigitalTwinCamera, TwinCameraConfig
from tests.helpers import fast_config, twin_network


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset the driver factory and orchestrator registry around each test."""
    from ptpip_tether.devices import registry

    driver_config._factory = None
    registry._default_orchestrator = None
    yield
    driver_config._factory = None
    registry._default_orchestrator = None


@pytest.fixture
def config():
    """Zero-delay DIGITAL_TWIN configuration."""
    return fast_config()


@pytest.fixture
def nikon():
    """Simulated Nikon Z 8 at 192.168.1.20."""
    return DigitalTwinCamera(TwinCameraConfig())


@pytest.fixture
def network(nikon):
    """Simulated network containing only ``nikon``."""
    world = twin_network()
    world.remove_camera(nikon.config.ip_address)
    world.add_camera(nikon)
    return world


@pytest.fixture
def tether_caplog(caplog):
    """caplog that also sees records from the non-propagating package logger."""
    root = logging.getLogger("ptpip_tether")
    previous = root.propagate
    root.propagate = True
    yield caplog
    root.propagate = previous
