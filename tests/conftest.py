"""Root test configuration and shared fixtures."""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from cnc_control.api.base import BaseService
from cnc_control.api.machine.clients.mock import MockGrblChannel
from cnc_control.api.machine.config import ChannelConfig, StatusConfig
from cnc_control.api.machine.models import MachineMode, MachineState, Position, StateSource
from cnc_control.api.machine.services.connection_monitor import ConnectionMonitor
from cnc_control.api.machine.services.status_probe import StatusProbe


class MockBaseService(BaseService):
    """Mock base service for testing."""

    def __init__(self, name: str = None):
        """Initialize test service."""
        super().__init__(name or "test_service")

    async def _start(self) -> None:
        """Start the service."""
        pass

    async def _stop(self) -> None:
        """Stop the service."""
        pass


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += timedelta(milliseconds=ms)


def make_state(
    mode: MachineMode = MachineMode.IDLE,
    source: StateSource = StateSource.FRESH,
    x: float = 0.0,
    y: float = 0.0,
    z: float = 0.0,
    alarms=()
) -> MachineState:
    """Build a machine state snapshot."""
    position = Position(x=x, y=y, z=z)
    return MachineState(
        mode=mode,
        position=position,
        work_position=position,
        alarms=tuple(alarms),
        source=source,
    )


@pytest.fixture
def base_service():
    """Create base service fixture."""
    return MockBaseService()


@pytest.fixture
def clock():
    """Create fake clock fixture."""
    return FakeClock()


@pytest.fixture
def state_factory():
    """Machine state factory."""
    return make_state


@pytest_asyncio.fixture
async def channel():
    """Connected mock GRBL channel."""
    channel = MockGrblChannel(ChannelConfig(default_timeout_ms=500), ConnectionMonitor())
    await channel.connect()
    yield channel
    await channel.disconnect()


@pytest.fixture
def probe(channel, clock):
    """Status probe over the mock channel."""
    return StatusProbe(channel, StatusConfig(query_timeout_ms=200, max_age_ms=2000), clock=clock)
