"""Host resource sampling."""

import asyncio
from typing import Protocol

import psutil

from cnc_control.api.machine.models import SystemSample


class SystemMetrics(Protocol):
    """Source of host memory and CPU usage."""

    async def sample(self) -> SystemSample:
        ...


class PsutilSystemMetrics:
    """SystemMetrics backed by psutil."""

    def __init__(self):
        # First cpu_percent(None) call always reports 0.0; prime the counter
        psutil.cpu_percent(interval=None)

    def _read(self) -> SystemSample:
        return SystemSample(
            memory_used_percent=psutil.virtual_memory().percent,
            cpu_load=psutil.cpu_percent(interval=None),
        )

    async def sample(self) -> SystemSample:
        return await asyncio.to_thread(self._read)
