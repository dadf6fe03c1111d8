"""Shared fixtures for the Marlin Link tests."""

import pytest

from marlin_link.core.config import Config
from marlin_link.device.printer import MarlinPrinter
from marlin_link.device.simulator import SimulatedPrinter


def make_fast_config() -> Config:
    """Configuration with timings short enough for tests (values in ms)."""
    config = Config()
    config.connection.handshake_timeout = 200
    config.connection.open_settle_delay = 0
    config.connection.auto_fetch = False
    config.channel.ack_timeout = 500
    config.channel.busy_hold = 100
    config.channel.no_ack_delay = 1
    config.channel.error_ok_grace = 20
    config.streaming.busy_heartbeat = 50
    return config


@pytest.fixture
def fast_config() -> Config:
    return make_fast_config()


@pytest.fixture
def simulator() -> SimulatedPrinter:
    return SimulatedPrinter()


@pytest.fixture
def printer(fast_config: Config, simulator: SimulatedPrinter) -> MarlinPrinter:
    """A printer wired to the simulator; tests connect it themselves."""
    return MarlinPrinter(fast_config, connection_factory=simulator.connection_factory())
