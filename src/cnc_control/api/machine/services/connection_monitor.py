"""Rolling-window connection health."""

import time
from collections import deque
from typing import Callable, Deque, Optional, Tuple

from cnc_control.api.machine.models import ConnectionSample


class ConnectionMonitor:
    """Records channel exchanges and reports their recent health.

    Only exchanges inside the trailing window count toward the error rate
    and mean response time.
    """

    def __init__(
        self,
        window_ms: int = 300000,
        clock: Callable[[], float] = time.monotonic,
        max_samples: int = 10000
    ):
        self._window_s = window_ms / 1000.0
        self._clock = clock
        # (timestamp, duration_ms, ok)
        self._samples: Deque[Tuple[float, float, bool]] = deque(maxlen=max_samples)
        self._connected = False
        self._consecutive_failures = 0

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def set_connected(self, connected: bool) -> None:
        self._connected = connected
        if not connected:
            self._consecutive_failures = 0

    def record_success(self, duration_ms: float) -> None:
        self._samples.append((self._clock(), duration_ms, True))
        self._consecutive_failures = 0

    def record_failure(self, duration_ms: float) -> None:
        self._samples.append((self._clock(), duration_ms, False))
        self._consecutive_failures += 1

    def _prune(self) -> None:
        cutoff = self._clock() - self._window_s
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    def sample(self) -> ConnectionSample:
        """Summarize the trailing window."""
        self._prune()
        samples = list(self._samples)
        if not samples:
            return ConnectionSample(connected=self._connected)

        failures = sum(1 for _, _, ok in samples if not ok)
        response_time: Optional[float] = sum(d for _, d, _ in samples) / len(samples)
        return ConnectionSample(
            connected=self._connected,
            response_time_ms=response_time,
            error_rate_percent=100.0 * failures / len(samples),
            samples=len(samples),
        )
