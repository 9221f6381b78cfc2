"""Machine module test configuration and fixtures."""

import pytest
import pytest_asyncio

from cnc_control.api.machine.clients.mock import MockGrblChannel
from cnc_control.api.machine.config import ChannelConfig, DiagnosticsConfig, MachineConfig, StatusConfig
from cnc_control.api.machine.service import ControlService
from cnc_control.api.machine.services.connection_monitor import ConnectionMonitor
from cnc_control.api.machine.services.diagnostics import DiagnosticsRunner
from cnc_control.api.machine.services.safety_gate import SafetyGate

from machine_helpers import FakeMetrics, diagnostics_config, move_step, status_step


@pytest.fixture
def metrics():
    """Healthy host metrics."""
    return FakeMetrics()


@pytest.fixture
def runner_factory(channel, probe):
    """Build a diagnostics runner for a given config."""
    def factory(config: DiagnosticsConfig) -> DiagnosticsRunner:
        return DiagnosticsRunner(channel, probe, SafetyGate(), config)
    return factory


@pytest.fixture
def machine_config():
    """Machine config with short timeouts and a small diagnostics sequence."""
    config = MachineConfig()
    return config.model_copy(update={
        "channel": ChannelConfig(default_timeout_ms=500),
        "status": StatusConfig(query_timeout_ms=200),
        "diagnostics": diagnostics_config(status_step(), move_step("x", 1), move_step("x", -1)),
    })


@pytest_asyncio.fixture
async def mock_channel():
    """Unconnected mock channel for the control service."""
    return MockGrblChannel(ChannelConfig(default_timeout_ms=500), ConnectionMonitor())


@pytest_asyncio.fixture
async def control_service(machine_config, mock_channel, metrics, clock):
    """Started control service over the mock channel."""
    service = ControlService(machine_config, channel=mock_channel, metrics=metrics, clock=clock)
    await service.start()
    yield service
    if service.is_running:
        await service.stop()
