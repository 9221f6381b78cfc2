"""Test rolling-window connection monitor."""

import pytest

from cnc_control.api.machine.services.connection_monitor import ConnectionMonitor


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def monotonic():
    """Create manual monotonic clock."""
    return ManualClock()


@pytest.fixture
def monitor(monotonic):
    """Create monitor with a ten second window."""
    monitor = ConnectionMonitor(window_ms=10000, clock=monotonic)
    monitor.set_connected(True)
    return monitor


class TestConnectionMonitor:
    """Test connection monitor samples."""

    def test_empty_sample(self, monitor):
        """Test sample with no exchanges."""
        sample = monitor.sample()
        assert sample.connected
        assert sample.response_time_ms is None
        assert sample.error_rate_percent == 0.0
        assert sample.samples == 0

    def test_mean_and_error_rate(self, monitor):
        """Test window statistics."""
        monitor.record_success(10)
        monitor.record_success(30)
        monitor.record_failure(50)
        monitor.record_success(10)
        sample = monitor.sample()
        assert sample.response_time_ms == pytest.approx(25.0)
        assert sample.error_rate_percent == pytest.approx(25.0)
        assert sample.samples == 4

    def test_window_expiry(self, monitor, monotonic):
        """Test old exchanges drop out of the window."""
        monitor.record_failure(100)
        monotonic.value += 11
        monitor.record_success(20)
        sample = monitor.sample()
        assert sample.samples == 1
        assert sample.error_rate_percent == 0.0
        assert sample.response_time_ms == 20

    def test_consecutive_failures(self, monitor):
        """Test failure streak resets on success and disconnect."""
        monitor.record_failure(1)
        monitor.record_failure(1)
        assert monitor.consecutive_failures == 2
        monitor.record_success(1)
        assert monitor.consecutive_failures == 0
        monitor.record_failure(1)
        monitor.set_connected(False)
        assert monitor.consecutive_failures == 0
        assert not monitor.sample().connected

    def test_max_samples(self, monotonic):
        """Test sample buffer is bounded."""
        monitor = ConnectionMonitor(window_ms=10000, clock=monotonic, max_samples=3)
        for _ in range(5):
            monitor.record_success(1)
        assert monitor.sample().samples == 3
