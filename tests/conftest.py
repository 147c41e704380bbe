"""
Pytest fixtures and configuration for ISAC base station tests

This file contains shared fixtures used across all test modules.
"""

import copy
import os
import sys

import numpy as np
import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from isac.config import DEFAULT_CONFIG  # noqa: E402
from isac.environment import EnvironmentSnapshot, TerrainType, Weather  # noqa: E402
from isac.mode_arbiter import ModeArbiter  # noqa: E402
from isac.transmission import TransmissionFilter  # noqa: E402
from base_station.coordinator import Coordinator  # noqa: E402
from base_station.fleet_registry import FleetRegistry  # noqa: E402
from base_station.master_elector import MasterElector  # noqa: E402


# =============================================================================
# Test Doubles
# =============================================================================


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeConnection:
    """Records messages sent to a UAV"""

    def __init__(self, accept: bool = True):
        self.sent = []
        self.closed = False
        self.accept = accept

    def send(self, message: dict) -> bool:
        if self.closed or not self.accept:
            return False
        self.sent.append(message)
        return True

    def close(self):
        self.closed = True


class FixedEstimator:
    """Link estimator returning a settable signal per UAV x-coordinate"""

    def __init__(self, signal: float = 80.0):
        self.signal = signal
        self.by_x = {}

    def estimate(self, uav_position, base_station_position, environment):
        return self.by_x.get(float(uav_position[0]), self.signal)


class EventRecorder:
    """Coordinator observer capturing broadcasts"""

    def __init__(self):
        self.events = []

    def __call__(self, event, data):
        self.events.append((event, data))

    def named(self, event):
        return [data for name, data in self.events if name == event]


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def config():
    """Default configuration with stochastic link terms disabled"""
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["network"]["fading_enabled"] = False
    cfg["network"]["jitter_enabled"] = False
    return cfg


@pytest.fixture
def rng():
    """Seeded random generator"""
    return np.random.default_rng(42)


@pytest.fixture
def clear_path():
    """Rural snapshot with known, empty path and calm weather"""
    return EnvironmentSnapshot(
        terrain_type=TerrainType.RURAL, obstructions=[], weather=Weather(wind_speed=0.0)
    )


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(config, clock):
    return FleetRegistry(config, clock=clock)


@pytest.fixture
def arbiter(config):
    return ModeArbiter(config)


@pytest.fixture
def elector(config):
    return MasterElector(config)


@pytest.fixture
def estimator():
    return FixedEstimator()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def coordinator(config, registry, arbiter, estimator, elector, clock, recorder):
    """Coordinator driven synchronously through process_pending()"""
    coord = Coordinator(
        config,
        registry,
        arbiter,
        estimator,
        elector,
        TransmissionFilter(config),
        environment=None,
        clock=clock,
    )
    coord.add_observer(recorder)
    return coord


@pytest.fixture
def fake_connection():
    return FakeConnection()


# =============================================================================
# Helper Functions
# =============================================================================


@pytest.fixture
def make_connection():
    """Fixture that returns a FakeConnection factory"""

    def _make(accept=True):
        return FakeConnection(accept=accept)

    return _make


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom settings"""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "regression: mark test as a regression test")


def pytest_collection_modifyitems(config, items):
    """Modify test items during collection"""
    for item in items:
        # Auto-mark tests based on directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "regression" in str(item.fspath):
            item.add_marker(pytest.mark.regression)
