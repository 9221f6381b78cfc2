"""Health aggregator: connection, machine and system checks reduced to one verdict."""

import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional

from loguru import logger

from cnc_control.api.machine.clients.base import CommandChannel
from cnc_control.api.machine.config import HealthConfig
from cnc_control.api.machine.exceptions import StatusQueryError
from cnc_control.api.machine.models import MachineMode
from cnc_control.api.machine.services.status_probe import StatusProbe
from cnc_control.api.machine.services.system_metrics import PsutilSystemMetrics, SystemMetrics
from cnc_control.utils.health import ComponentHealth, HealthSnapshot, HealthStatus, reduce_health


CONNECTION = "connection"
MACHINE = "machine"
SYSTEM = "system"


class HealthAggregator:
    """Runs the component checks in parallel on every call.

    Every component is always present in the snapshot. A check that fails
    or exceeds its timeout is reported as ``unknown`` with the error detail.
    """

    def __init__(
        self,
        channel: CommandChannel,
        probe: StatusProbe,
        config: Optional[HealthConfig] = None,
        metrics: Optional[SystemMetrics] = None
    ):
        """Initialize health aggregator.

        Args:
            channel: Command channel (connection state and monitor)
            probe: Status probe used for the machine check
            config: Health thresholds and timeouts
            metrics: Host metrics source (defaults to psutil)
        """
        self._channel = channel
        self._probe = probe
        self._config = config or HealthConfig()
        self._metrics = metrics or PsutilSystemMetrics()

    async def assess(self) -> HealthSnapshot:
        """Perform fresh checks and reduce them to an overall status."""
        checks: Dict[str, tuple] = {
            CONNECTION: (self._check_connection, self._config.connection_timeout_ms),
            MACHINE: (self._check_machine, self._config.machine_timeout_ms),
            SYSTEM: (self._check_system, self._config.system_timeout_ms),
        }
        results = await asyncio.gather(*(
            self._guarded(name, check, timeout_ms) for name, (check, timeout_ms) in checks.items()
        ))
        components = dict(zip(checks.keys(), results))
        overall = reduce_health(c.status for c in components.values())
        if overall != HealthStatus.HEALTHY:
            logger.warning(
                f"Health {overall.value}: "
                + ", ".join(f"{name}={c.status.value}" for name, c in components.items())
            )
        return HealthSnapshot(overall=overall, components=components)

    async def _guarded(
        self,
        name: str,
        check: Callable[[], Awaitable[ComponentHealth]],
        timeout_ms: int
    ) -> ComponentHealth:
        started = time.monotonic()
        try:
            return await asyncio.wait_for(check(), timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            detail = f"{name} check timed out after {timeout_ms} ms"
        except Exception as e:
            detail = f"{name} check failed: {e}"
        logger.error(detail)
        return ComponentHealth(
            status=HealthStatus.UNKNOWN,
            response_time_ms=(time.monotonic() - started) * 1000.0,
            error_detail=detail,
        )

    async def _check_connection(self) -> ComponentHealth:
        sample = self._channel.monitor.sample()
        thresholds = self._config.response_time
        details = {
            "connected": sample.connected,
            "error_rate_percent": round(sample.error_rate_percent, 2),
            "samples": sample.samples,
        }

        if not self._channel.is_connected:
            return ComponentHealth(
                status=HealthStatus.UNHEALTHY,
                error_detail="channel not connected",
                details=details,
            )

        response_time = sample.response_time_ms
        if sample.error_rate_percent > self._config.max_error_rate_percent:
            status = HealthStatus.UNHEALTHY
            error = f"error rate {sample.error_rate_percent:.1f}% exceeds {self._config.max_error_rate_percent:g}%"
        elif response_time is not None and response_time > thresholds.critical_ms:
            status = HealthStatus.UNHEALTHY
            error = f"response time {response_time:.0f} ms exceeds {thresholds.critical_ms:g} ms"
        elif response_time is not None and response_time > thresholds.warning_ms:
            status = HealthStatus.DEGRADED
            error = f"response time {response_time:.0f} ms exceeds {thresholds.warning_ms:g} ms"
        else:
            status = HealthStatus.HEALTHY
            error = None

        return ComponentHealth(
            status=status,
            response_time_ms=response_time,
            error_detail=error,
            details=details,
        )

    async def _check_machine(self) -> ComponentHealth:
        started = time.monotonic()
        if self._channel.is_held:
            cached = self._probe.cached_or_unknown()
            return ComponentHealth(
                status=HealthStatus.UNKNOWN,
                error_detail="controller held by a running diagnostics sequence",
                details={"mode": cached.mode.value, "source": cached.source.value},
            )

        try:
            state = await self._probe.query(self._config.machine_timeout_ms)
        except StatusQueryError as e:
            return ComponentHealth(
                status=HealthStatus.UNKNOWN,
                response_time_ms=(time.monotonic() - started) * 1000.0,
                error_detail=str(e),
                details={"reason": e.reason.value},
            )

        elapsed = (time.monotonic() - started) * 1000.0
        details = {"mode": state.mode.value}
        if state.mode == MachineMode.ALARM:
            return ComponentHealth(
                status=HealthStatus.DEGRADED,
                response_time_ms=elapsed,
                error_detail="; ".join(state.alarms) or "machine in alarm state",
                details=details,
            )
        if state.mode == MachineMode.UNKNOWN:
            return ComponentHealth(
                status=HealthStatus.UNKNOWN,
                response_time_ms=elapsed,
                error_detail="controller reported an unrecognized state",
                details=details,
            )
        return ComponentHealth(status=HealthStatus.HEALTHY, response_time_ms=elapsed, details=details)

    async def _check_system(self) -> ComponentHealth:
        sample = await self._metrics.sample()
        details = {
            "memory_used_percent": sample.memory_used_percent,
            "cpu_load": sample.cpu_load,
        }
        problems = []
        if sample.memory_used_percent > self._config.memory_degraded_percent:
            problems.append(f"memory usage {sample.memory_used_percent:.1f}%")
        if sample.cpu_load > self._config.cpu_degraded_percent:
            problems.append(f"cpu load {sample.cpu_load:.1f}%")

        if problems:
            return ComponentHealth(
                status=HealthStatus.DEGRADED,
                error_detail=", ".join(problems),
                details=details,
            )
        return ComponentHealth(status=HealthStatus.HEALTHY, details=details)
