"""Diagnostics runner: scripted movement tests with rollback and return to origin."""

import asyncio
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from loguru import logger

from cnc_control.api.machine.clients.base import CommandChannel
from cnc_control.api.machine.config import DiagnosticsConfig
from cnc_control.api.machine.exceptions import (
    ChannelError,
    ChannelInterrupted,
    ChannelTimeout,
    QueryErrorReason,
    StatusQueryError
)
from cnc_control.api.machine.models import (
    AXES,
    DiagnosticsOverall,
    DiagnosticsReport,
    DiagnosticStep,
    DiagnosticStepResult,
    EffectKind,
    ExpectedEffect,
    MachineState,
    OperationKind,
    OperationRequest,
    StepStatus
)
from cnc_control.api.machine.services.safety_gate import SafetyGate
from cnc_control.api.machine.services.status_probe import StatusProbe


EPSILON = 1e-9


def _never() -> bool:
    return False


class _StepOutcome:
    """Internal bookkeeping for one executed step."""

    def __init__(self, result: DiagnosticStepResult, after: Optional[MachineState], stop: bool, interrupted: bool = False):
        self.result = result
        self.after = after
        self.stop = stop
        self.interrupted = interrupted


class DiagnosticsRunner:
    """Runs the configured step sequence strictly in order.

    A timed-out step ends the run immediately. A step whose expected effect
    is not observed is rolled back and ends the run unless it is non-fatal.
    Nothing is retried.

    The channel is held for the whole run. Once an emergency stop is
    latched nothing more is written, not even rollbacks or the return to
    origin.
    """

    def __init__(
        self,
        channel: CommandChannel,
        probe: StatusProbe,
        gate: SafetyGate,
        config: Optional[DiagnosticsConfig] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        """Initialize diagnostics runner.

        Args:
            channel: Command channel
            probe: Status probe used to capture before/after states
            gate: Safety gate consulted before the run
            config: Diagnostics settings and step sequence
            clock: Time source for report timestamps
        """
        self._channel = channel
        self._probe = probe
        self._gate = gate
        self._config = config or DiagnosticsConfig()
        self._clock = clock
        self._halted: Callable[[], bool] = _never

    @property
    def sequence(self) -> List[DiagnosticStep]:
        return list(self._config.sequence)

    async def run(
        self,
        cancel: Optional[asyncio.Event] = None,
        halted: Optional[Callable[[], bool]] = None
    ) -> DiagnosticsReport:
        """Execute the diagnostics sequence.

        Args:
            cancel: Event checked before each step; once set, remaining steps are skipped
            halted: Emergency stop latch, checked before every write to the channel

        Returns:
            DiagnosticsReport, never raises for step failures
        """
        started_at = self._clock()
        logger.info(f"Starting diagnostics ({len(self._config.sequence)} steps)")

        if not self._config.enabled:
            return self._rejected(started_at, "Diagnostics enabled check", "diagnostics are disabled")

        self._halted = halted or _never
        try:
            async with self._channel.exclusive():
                return await self._run_held(started_at, cancel)
        finally:
            self._halted = _never

    async def _run_held(self, started_at: datetime, cancel: Optional[asyncio.Event]) -> DiagnosticsReport:
        try:
            before = await self._probe.query()
        except StatusQueryError as e:
            return self._rejected(started_at, "Pre-run status check", f"machine status unavailable: {e}")

        decision = self._gate.check(OperationRequest(kind=OperationKind.RUN_DIAGNOSTICS), before)
        if not decision.allowed:
            logger.warning(f"Diagnostics denied: {decision.reason}")
            return self._rejected(started_at, "Safety check", decision.reason)

        results: List[DiagnosticStepResult] = []
        displacement: Dict[str, float] = {axis: 0.0 for axis in AXES}
        cancelled = False
        interrupted = False
        rollback_failed = False
        sequence = self._config.sequence

        for index, step in enumerate(sequence):
            if self._halted():
                interrupted = True
                logger.warning(f"Diagnostics halted by emergency stop before step {index + 1}")
                results.extend(
                    DiagnosticStepResult(step=s, status=StepStatus.SKIPPED, detail="emergency stop")
                    for s in sequence[index:]
                )
                break
            if cancel is not None and cancel.is_set():
                cancelled = True
                logger.info(f"Diagnostics cancelled before step {index + 1}")
                results.extend(
                    DiagnosticStepResult(step=s, status=StepStatus.SKIPPED, detail="cancelled")
                    for s in sequence[index:]
                )
                break

            logger.info(f"Diagnostics step {index + 1}/{len(sequence)}: {step.description}")
            outcome = await self._run_step(step, before, displacement)
            results.append(outcome.result)
            if outcome.result.rollback_ok is False:
                rollback_failed = True
            logger.info(f"Step {index + 1} {outcome.result.status.value}: {outcome.result.detail}")

            if outcome.interrupted:
                interrupted = True
                break
            if outcome.stop:
                break
            if outcome.after is not None:
                before = outcome.after

        return_failed = False
        halted = interrupted or self._halted()
        if self._config.return_to_origin and not halted and self._has_displacement(displacement):
            origin = await self._return_to_origin(displacement)
            results.append(origin)
            return_failed = origin.status != StepStatus.PASSED

        overall = self._overall(results, len(sequence), cancelled, rollback_failed or return_failed)
        report = DiagnosticsReport(
            results=tuple(results),
            overall=overall,
            started_at=started_at,
            finished_at=self._clock(),
            cancelled=cancelled,
        )
        logger.info(f"Diagnostics finished: {overall.value}")
        return report

    def _rejected(self, started_at: datetime, description: str, reason: str) -> DiagnosticsReport:
        step = DiagnosticStep(
            description=description,
            command="",
            expected_effect=ExpectedEffect(kind=EffectKind.NONE),
        )
        result = DiagnosticStepResult(
            step=step,
            status=StepStatus.FAILED,
            detail=reason,
            synthetic=True,
        )
        return DiagnosticsReport(
            results=(result,),
            overall=DiagnosticsOverall.FAILED,
            started_at=started_at,
            finished_at=self._clock(),
        )

    @staticmethod
    def _remaining_ms(deadline: float) -> int:
        return max(1, int((deadline - time.monotonic()) * 1000))

    async def _exchange(self, command: str, deadline: float) -> Optional[str]:
        """Send one command; return the controller error line if it refused it."""
        if self._halted():
            raise ChannelInterrupted("Emergency stop in effect", command=command)
        response = await self._channel.send(command, self._remaining_ms(deadline))
        return response.error

    async def _run_step(
        self,
        step: DiagnosticStep,
        before: MachineState,
        displacement: Dict[str, float]
    ) -> _StepOutcome:
        started = time.monotonic()
        deadline = started + step.timeout_ms / 1000.0

        def elapsed() -> float:
            return (time.monotonic() - started) * 1000.0

        def result(status: StepStatus, detail: str, rollback: Optional[bool] = None) -> DiagnosticStepResult:
            return DiagnosticStepResult(
                step=step,
                status=status,
                duration_ms=elapsed(),
                detail=detail,
                rollback_command=step.rollback_command if rollback is not None else None,
                rollback_ok=rollback,
            )

        sent = False
        try:
            error = await self._exchange(step.command, deadline)
            if error:
                return _StepOutcome(result(StepStatus.FAILED, f"controller rejected command: {error}"), None, stop=step.fatal)
            sent = True
            self._accumulate(displacement, step.displacement, 1)

            if step.settle:
                error = await self._exchange(self._config.settle_command, deadline)
                if error:
                    rollback = await self._rollback(step, displacement)
                    return _StepOutcome(
                        result(StepStatus.FAILED, f"motion did not complete: {error}", rollback),
                        None,
                        stop=True
                    )

            after = await self._probe.query(self._remaining_ms(deadline))
            if self._halted():
                raise ChannelInterrupted("Emergency stop in effect", command=step.command)

        except ChannelInterrupted:
            return _StepOutcome(
                result(StepStatus.FAILED, "interrupted by emergency stop"), None, stop=True, interrupted=True
            )
        except ChannelTimeout:
            if not sent:
                self._accumulate(displacement, step.displacement, 1)
            rollback = await self._rollback(step, displacement)
            return _StepOutcome(result(StepStatus.TIMED_OUT, f"no response within {step.timeout_ms} ms", rollback), None, stop=True)
        except StatusQueryError as e:
            if isinstance(e.__cause__, ChannelInterrupted):
                return _StepOutcome(
                    result(StepStatus.FAILED, "interrupted by emergency stop"), None, stop=True, interrupted=True
                )
            rollback = await self._rollback(step, displacement)
            if e.reason == QueryErrorReason.TIMEOUT:
                return _StepOutcome(result(StepStatus.TIMED_OUT, str(e), rollback), None, stop=True)
            return _StepOutcome(result(StepStatus.FAILED, f"could not verify effect: {e}", rollback), None, stop=True)
        except ChannelError as e:
            rollback = await self._rollback(step, displacement) if sent else None
            return _StepOutcome(result(StepStatus.FAILED, f"channel failure: {e}", rollback), None, stop=True)

        passed, detail = step.expected_effect.evaluate(before, after)
        if passed:
            return _StepOutcome(result(StepStatus.PASSED, detail), after, stop=False)

        rollback = await self._rollback(step, displacement)
        return _StepOutcome(result(StepStatus.FAILED, detail, rollback), after, stop=step.fatal)

    async def _rollback(self, step: DiagnosticStep, displacement: Dict[str, float]) -> Optional[bool]:
        """Best-effort rollback; None when the step has none or a stop is latched."""
        if not step.rollback_command:
            return None
        if self._halted():
            logger.warning(f"Rollback {step.rollback_command!r} not sent: emergency stop in effect")
            return None
        deadline = time.monotonic() + self._config.rollback_timeout_ms / 1000.0
        try:
            error = await self._exchange(step.rollback_command, deadline)
            if error:
                logger.error(f"Rollback {step.rollback_command!r} rejected: {error}")
                return False
            self._accumulate(displacement, step.displacement, -1)
            return True
        except ChannelError as e:
            logger.error(f"Rollback {step.rollback_command!r} failed: {e}")
            return False

    @staticmethod
    def _accumulate(total: Dict[str, float], delta: Dict[str, float], sign: int) -> None:
        for axis, value in delta.items():
            total[axis] += sign * value

    @staticmethod
    def _has_displacement(displacement: Dict[str, float]) -> bool:
        return any(abs(value) > EPSILON for value in displacement.values())

    async def _return_to_origin(self, displacement: Dict[str, float]) -> DiagnosticStepResult:
        words = " ".join(
            f"{axis.upper()}{-value:g}" for axis, value in displacement.items() if abs(value) > EPSILON
        )
        command = f"G91 G01 {words} F{self._config.return_feed_rate:g}"
        step = DiagnosticStep(
            description="Return to origin",
            command=command,
            expected_effect=ExpectedEffect(kind=EffectKind.NONE),
            timeout_ms=self._config.return_timeout_ms,
        )
        started = time.monotonic()
        deadline = started + step.timeout_ms / 1000.0
        logger.info(f"Returning to origin: {command}")

        status = StepStatus.PASSED
        detail = "returned to origin"
        try:
            error = await self._exchange(command, deadline)
            if not error:
                error = await self._exchange(self._config.settle_command, deadline)
            if error:
                status, detail = StepStatus.FAILED, f"controller rejected return move: {error}"
        except ChannelTimeout:
            status, detail = StepStatus.TIMED_OUT, "return move timed out"
        except ChannelError as e:
            status, detail = StepStatus.FAILED, f"return move failed: {e}"

        if status != StepStatus.PASSED:
            logger.error(f"Return to origin failed: {detail}")
        return DiagnosticStepResult(
            step=step,
            status=status,
            duration_ms=(time.monotonic() - started) * 1000.0,
            detail=detail,
            synthetic=True,
        )

    @staticmethod
    def _overall(
        results: List[DiagnosticStepResult],
        total_steps: int,
        cancelled: bool,
        recovery_failed: bool
    ) -> DiagnosticsOverall:
        executed = [r for r in results if not r.synthetic]
        passed = sum(1 for r in executed if r.status == StepStatus.PASSED)
        if recovery_failed:
            return DiagnosticsOverall.FAILED
        if not cancelled and passed == total_steps:
            return DiagnosticsOverall.COMPLETED
        if passed > 0:
            return DiagnosticsOverall.PARTIAL
        return DiagnosticsOverall.FAILED
