"""Machine control service."""

import asyncio
import time
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from loguru import logger

from cnc_control.api.base import BaseService, ConfigurableService, create_error
from cnc_control.api.base.base_errors import BAD_GATEWAY, BAD_REQUEST, CONFLICT
from cnc_control.api.machine.clients import CommandChannel, create_channel, list_ports
from cnc_control.api.machine.config import MachineConfig, TimedCommand
from cnc_control.api.machine.exceptions import (
    ChannelError,
    ChannelInterrupted,
    ChannelTimeout,
    CommandRejected,
    QueryErrorReason,
    StatusQueryError
)
from cnc_control.api.machine.models import (
    CommandResult,
    CommandStatus,
    ConnectionStatus,
    DiagnosticsReport,
    MachineLimits,
    MachineState,
    OperationKind,
    OperationRequest,
    SerialPortInfo
)
from cnc_control.api.machine.services.connection_monitor import ConnectionMonitor
from cnc_control.api.machine.services.diagnostics import DiagnosticsRunner
from cnc_control.api.machine.services.health import HealthAggregator
from cnc_control.api.machine.services.safety_gate import SafetyGate
from cnc_control.api.machine.services.status_parser import build_limits, parse_settings
from cnc_control.api.machine.services.status_probe import StatusProbe
from cnc_control.api.machine.services.system_metrics import SystemMetrics
from cnc_control.utils.health import HealthSnapshot


BUSY_REASON = "diagnostics in progress"
ESTOP_REASON = "interrupted by emergency stop"


class ControlService(ConfigurableService[MachineConfig], BaseService):
    """Single entry point for machine control.

    Owns the command channel, status probe, safety gate, diagnostics runner
    and health aggregator. While diagnostics run, every operation that would
    write to the channel is refused as busy except emergency stop.
    """

    def __init__(
        self,
        config: Union[MachineConfig, Dict[str, Any], None] = None,
        channel: Optional[CommandChannel] = None,
        metrics: Optional[SystemMetrics] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        """Initialize control service.

        Args:
            config: Machine configuration (model or raw dict)
            channel: Channel to use instead of the one selected by config
            metrics: Host metrics source for the health check
            clock: Time source for state capture and reports
        """
        BaseService.__init__(self, name="control")
        ConfigurableService.__init__(self, MachineConfig)
        if isinstance(config, MachineConfig):
            self._config = config
        elif config is not None:
            self._config = MachineConfig(**config)

        self._channel = channel
        self._owns_channel = False
        self._metrics = metrics
        self._clock = clock

        self._probe: Optional[StatusProbe] = None
        self._gate = SafetyGate()
        self._runner: Optional[DiagnosticsRunner] = None
        self._health: Optional[HealthAggregator] = None

        self._diagnostics_active = False
        self._cancel = asyncio.Event()
        self._estops = 0
        self._history: Deque[DiagnosticsReport] = deque()
        logger.info("Control service initialized")

    @property
    def channel(self) -> CommandChannel:
        """Command channel (built on first access)."""
        self._build()
        return self._channel

    @property
    def probe(self) -> StatusProbe:
        self._build()
        return self._probe

    @property
    def diagnostics_active(self) -> bool:
        return self._diagnostics_active

    async def configure(self, config: Union[MachineConfig, Dict[str, Any]]) -> None:
        """Apply new configuration; components are rebuilt on next start."""
        await super().configure(config)
        self._probe = None
        if self._owns_channel:
            self._channel = None

    def _build(self) -> None:
        """Create components from the current configuration."""
        if self._probe is not None:
            return
        if not self.is_configured:
            self._config = MachineConfig()
        config = self.config

        if self._channel is None:
            monitor = ConnectionMonitor(window_ms=config.health.error_rate_window_ms)
            self._channel = create_channel(config.channel, monitor)
            self._owns_channel = True
        self._probe = StatusProbe(self._channel, config.status, clock=self._clock)
        self._runner = DiagnosticsRunner(self._channel, self._probe, self._gate, config.diagnostics, clock=self._clock)
        self._health = HealthAggregator(self._channel, self._probe, config.health, self._metrics)
        self._history = deque(maxlen=config.history.max_diagnostics_reports)

    async def _start(self) -> None:
        """Connect to the controller and capture the initial state."""
        self._build()
        try:
            await self._channel.connect()
        except ChannelError as e:
            # Stay up so the operator can reconnect through the API
            logger.error(f"Controller connection failed: {e}")
            return

        await self._probe.current()
        logger.info(f"Control service started (port={self._channel.port or 'mock'})")

    async def _stop(self) -> None:
        """Abort diagnostics and close the channel."""
        self._cancel.set()
        if self._channel is not None:
            await self._channel.disconnect()
        logger.info("Control service stopped")

    async def query(self) -> MachineState:
        """Fresh machine state.

        Raises:
            StatusQueryError: On timeout, transport failure or malformed reply
        """
        self._ensure_running()
        return await self._probe.query()

    def cached_state(self) -> MachineState:
        """Last known state tagged cached/stale, or Unknown."""
        self._ensure_running()
        return self._probe.cached_or_unknown()

    async def run_diagnostics(self) -> DiagnosticsReport:
        """Run the configured diagnostics sequence.

        Raises:
            HTTPException: If a diagnostics run is already in progress (409)
        """
        self._ensure_running()
        if self._diagnostics_active:
            raise create_error(
                message="Diagnostics already in progress",
                status_code=CONFLICT,
                context={"service": self.name}
            )

        self._diagnostics_active = True
        self._cancel = asyncio.Event()
        halted = self._estop_latch()
        try:
            report = await self._runner.run(self._cancel, halted)
        finally:
            self._diagnostics_active = False

        self._history.append(report)
        return report

    def cancel_diagnostics(self) -> bool:
        """Request cancellation of the running diagnostics.

        Remaining steps are skipped; the step in flight completes.

        Returns:
            True if a run was in progress
        """
        self._ensure_running()
        if not self._diagnostics_active:
            return False
        logger.info("Diagnostics cancellation requested")
        self._cancel.set()
        return True

    def diagnostics_history(self, limit: Optional[int] = None) -> List[DiagnosticsReport]:
        """Completed diagnostics reports, newest first."""
        self._ensure_running()
        reports = list(reversed(self._history))
        return reports[:limit] if limit else reports

    async def unlock(self) -> CommandResult:
        """Clear the alarm lock. Never denied by machine state."""
        self._ensure_running()
        if self._diagnostics_active:
            return self._busy(OperationKind.UNLOCK)

        settings = self.config.safety.unlock
        halted = self._estop_latch()
        result = await self._gated(OperationKind.UNLOCK, settings, self._probe.cached_or_unknown(), halted)
        if result.status == CommandStatus.COMPLETED and self.config.safety.query_status_after_unlock:
            await self._probe.current()
        return result

    async def home(self) -> CommandResult:
        """Run the homing cycle."""
        self._ensure_running()
        if self._diagnostics_active:
            return self._busy(OperationKind.HOME)
        halted = self._estop_latch()
        started = time.monotonic()
        try:
            state = await self._probe.query()
        except StatusQueryError as e:
            return self._query_failed(OperationKind.HOME, e, started)
        result = await self._gated(OperationKind.HOME, self.config.safety.homing, state, halted)
        if result.status == CommandStatus.COMPLETED:
            await self._probe.current()
        return result

    async def soft_reset(self) -> CommandResult:
        """Soft-reset the controller."""
        self._ensure_running()
        if self._diagnostics_active:
            return self._busy(OperationKind.SOFT_RESET)
        halted = self._estop_latch()
        started = time.monotonic()
        try:
            state = await self._probe.query()
        except StatusQueryError as e:
            return self._query_failed(OperationKind.SOFT_RESET, e, started)
        result = await self._gated(OperationKind.SOFT_RESET, self.config.safety.reset, state, halted)
        if result.commands:
            self._probe.invalidate()
        return result

    async def send_gcode(self, gcode: str) -> CommandResult:
        """Send one line of G-code.

        Raises:
            HTTPException: If the line is empty, multi-line or a system command (400)
        """
        self._ensure_running()
        line = (gcode or "").strip()
        if not line or "\n" in line or "\r" in line:
            raise create_error(
                message="G-code must be a single non-empty line",
                status_code=BAD_REQUEST,
                context={"gcode": gcode}
            )
        if line.startswith("$") or any(ord(c) < 0x20 or ord(c) > 0x7e for c in line):
            raise create_error(
                message="System and realtime commands have dedicated operations",
                status_code=BAD_REQUEST,
                context={"gcode": gcode}
            )
        if self._diagnostics_active:
            return self._busy(OperationKind.SEND_GCODE)

        halted = self._estop_latch()
        started = time.monotonic()
        try:
            state = await self._probe.query()
        except StatusQueryError as e:
            return self._query_failed(OperationKind.SEND_GCODE, e, started)
        command = TimedCommand(command=line, timeout_ms=self.config.channel.default_timeout_ms)
        return await self._gated(OperationKind.SEND_GCODE, command, state, halted)

    async def emergency_stop(self) -> CommandResult:
        """Halt motion immediately.

        Preempts any in-flight exchange and any running diagnostics, then
        writes every configured stop command back to back. Never denied by
        machine state or by a busy channel.
        """
        self._ensure_running()
        started = time.monotonic()
        settings = self.config.safety.emergency_stop
        logger.warning("EMERGENCY STOP requested")

        decision = self._gate.check(OperationRequest(kind=OperationKind.EMERGENCY_STOP), None)
        if not decision.allowed:
            # The default rules always permit; a custom rule set may not
            return self._result(OperationKind.EMERGENCY_STOP, CommandStatus.SAFETY_DENIED, started, reason=decision.reason)

        self._estops += 1
        self._cancel.set()
        self._channel.interrupt()

        written: List[str] = []
        failures: List[str] = []
        timed_out = False
        for command in settings.commands:
            try:
                await self._channel.send_urgent(command, settings.timeout_ms)
                written.append(command)
            except ChannelTimeout as e:
                timed_out = True
                failures.append(f"{command!r}: {e}")
            except ChannelError as e:
                failures.append(f"{command!r}: {e}")

        self._probe.invalidate()
        reason = "; ".join(failures) or None
        if not written:
            logger.error(f"Emergency stop could not be delivered: {reason}")
            status = CommandStatus.CHANNEL_TIMEOUT if timed_out else CommandStatus.CHANNEL_ERROR
            return self._result(OperationKind.EMERGENCY_STOP, status, started, reason=reason)

        if failures:
            logger.error(f"Emergency stop partially delivered: {reason}")
        logger.warning(f"Emergency stop sent: {written}")
        return self._result(OperationKind.EMERGENCY_STOP, CommandStatus.COMPLETED, started, commands=written, reason=reason)

    async def health(self) -> HealthSnapshot:
        """Fresh health assessment."""
        self._ensure_running()
        snapshot = await self._health.assess()
        return snapshot.model_copy(update={"version": self.version, "uptime": self.uptime})

    async def connect(self) -> ConnectionStatus:
        """Open the controller channel.

        Raises:
            HTTPException: If the connection cannot be established (502)
        """
        self._ensure_running()
        try:
            await self._channel.connect()
        except ChannelError as e:
            raise create_error(
                message="Failed to connect to controller",
                status_code=BAD_GATEWAY,
                context={"port": self._channel.port},
                cause=e
            )
        await self._probe.current()
        return self.connection_status()

    async def disconnect(self) -> ConnectionStatus:
        """Close the controller channel, aborting diagnostics."""
        self._ensure_running()
        self._cancel.set()
        await self._channel.disconnect()
        self._probe.invalidate()
        return self.connection_status()

    def connection_status(self) -> ConnectionStatus:
        self._ensure_running()
        return ConnectionStatus(
            connected=self._channel.is_connected,
            port=self._channel.port,
            mode=self.config.channel.mode,
        )

    async def limits(self) -> MachineLimits:
        """Travel limits read from the controller settings.

        Raises:
            HTTPException: If diagnostics are running (409)
            ChannelError: On timeout or transport failure
            CommandRejected: If the controller refuses the settings request
            MalformedResponse: If the reply lacks the travel settings
        """
        self._ensure_running()
        if self._diagnostics_active:
            raise create_error(
                message="Diagnostics in progress",
                status_code=CONFLICT,
                context={"service": self.name}
            )
        command = self.config.status.settings_command
        response = await self._channel.send(command, self.config.status.query_timeout_ms)
        if response.error:
            raise CommandRejected(command, response.error)
        return build_limits(parse_settings(response.lines), response.text)

    async def list_ports(self) -> List[SerialPortInfo]:
        """Serial ports available on the host."""
        self._ensure_running()
        ports = await asyncio.to_thread(list_ports)
        logger.debug(f"Found {len(ports)} serial ports")
        return ports

    def _busy(self, kind: OperationKind) -> CommandResult:
        logger.warning(f"{kind.value} refused: {BUSY_REASON}")
        return CommandResult(operation=kind, status=CommandStatus.BUSY, reason=BUSY_REASON)

    def _result(
        self,
        kind: OperationKind,
        status: CommandStatus,
        started: float,
        commands: Optional[List[str]] = None,
        response: Optional[str] = None,
        reason: Optional[str] = None
    ) -> CommandResult:
        return CommandResult(
            operation=kind,
            status=status,
            commands=commands or [],
            response=response,
            reason=reason,
            duration_ms=(time.monotonic() - started) * 1000.0,
        )

    def _estop_latch(self) -> Callable[[], bool]:
        """Latch that reports True once an emergency stop follows this call."""
        generation = self._estops
        return lambda: self._estops != generation

    def _query_failed(self, kind: OperationKind, error: StatusQueryError, started: float) -> CommandResult:
        """Result for an operation whose pre-check status query failed."""
        logger.warning(f"{kind.value} aborted: {error}")
        status = (
            CommandStatus.CHANNEL_TIMEOUT
            if error.reason == QueryErrorReason.TIMEOUT
            else CommandStatus.CHANNEL_ERROR
        )
        return self._result(kind, status, started, reason=str(error))

    async def _gated(
        self,
        kind: OperationKind,
        settings: TimedCommand,
        state: MachineState,
        halted: Callable[[], bool]
    ) -> CommandResult:
        """Check the gate against ``state`` and send the command if permitted."""
        started = time.monotonic()
        decision = self._gate.check(OperationRequest(kind=kind, payload=settings.command), state)
        if not decision.allowed:
            logger.warning(f"{kind.value} denied: {decision.reason}")
            return self._result(kind, CommandStatus.SAFETY_DENIED, started, reason=decision.reason)
        if halted():
            logger.warning(f"{kind.value} dropped: emergency stop issued")
            return self._result(kind, CommandStatus.CHANNEL_ERROR, started, reason=ESTOP_REASON)

        commands = [settings.command]
        try:
            response = await self._channel.send(settings.command, settings.timeout_ms)
        except ChannelTimeout as e:
            return self._result(kind, CommandStatus.CHANNEL_TIMEOUT, started, commands, reason=str(e))
        except ChannelInterrupted:
            return self._result(kind, CommandStatus.CHANNEL_ERROR, started, commands, reason=ESTOP_REASON)
        except ChannelError as e:
            return self._result(kind, CommandStatus.CHANNEL_ERROR, started, commands, reason=str(e))

        if response.error:
            logger.warning(f"{kind.value} rejected by controller: {response.error}")
            return self._result(kind, CommandStatus.REJECTED, started, commands, response.text, response.error)

        logger.info(f"{kind.value} completed")
        return self._result(kind, CommandStatus.COMPLETED, started, commands, response.text)
