"""Test diagnostics runner."""

import asyncio

import pytest

from cnc_control.api.machine.config import DiagnosticsConfig
from cnc_control.api.machine.models import (
    DiagnosticsOverall,
    DiagnosticStep,
    MachineMode,
    StepStatus
)
from cnc_control.api.machine.services.diagnostics import DiagnosticsRunner
from cnc_control.api.machine.services.safety_gate import SafetyGate

from machine_helpers import diagnostics_config, move_step, status_step


class TestDiagnosticsSequence:
    """Test sequence execution."""

    @pytest.mark.asyncio
    async def test_all_steps_pass(self, runner_factory, channel):
        """Test out-and-back sequence completes."""
        runner = runner_factory(diagnostics_config(status_step(), move_step("x", 1), move_step("x", -1)))
        report = await runner.run()
        assert report.overall == DiagnosticsOverall.COMPLETED
        assert [r.status for r in report.results] == [StepStatus.PASSED] * 3
        assert not any(r.synthetic for r in report.results)
        assert "G91 G01 X1 F100" in channel.sent
        assert "G4 P0" in channel.sent
        assert channel.position.x == 0.0
        assert report.finished_at >= report.started_at

    @pytest.mark.asyncio
    async def test_default_sequence(self, channel, probe):
        """Test default configured sequence against the mock controller."""
        runner = DiagnosticsRunner(channel, probe, SafetyGate(), DiagnosticsConfig())
        report = await runner.run()
        assert report.overall == DiagnosticsOverall.COMPLETED
        assert len(report.executed_steps) == 5

    @pytest.mark.asyncio
    async def test_disabled(self, runner_factory, channel):
        """Test disabled diagnostics send nothing."""
        report = await runner_factory(diagnostics_config(status_step(), enabled=False)).run()
        assert report.overall == DiagnosticsOverall.FAILED
        assert report.results[0].synthetic
        assert channel.sent == []


class TestDiagnosticsSafety:
    """Test gate checks before the run."""

    @pytest.mark.asyncio
    async def test_denied_in_alarm_sends_no_steps(self, runner_factory, channel):
        """Test denial yields one synthetic failed result and no step commands."""
        channel.trigger_alarm(1)
        report = await runner_factory(diagnostics_config(status_step(), move_step("x", 1))).run()
        assert report.overall == DiagnosticsOverall.FAILED
        assert len(report.results) == 1
        assert report.results[0].synthetic
        assert report.results[0].status == StepStatus.FAILED
        assert "alarm" in report.results[0].detail
        assert channel.sent == ["?"]
        assert report.executed_steps == ()

    @pytest.mark.asyncio
    async def test_denied_when_not_idle(self, runner_factory, channel):
        """Test denial in Hold."""
        channel.set_mode(MachineMode.HOLD)
        report = await runner_factory(diagnostics_config(move_step("x", 1))).run()
        assert report.overall == DiagnosticsOverall.FAILED
        assert "Hold" in report.results[0].detail
        assert channel.sent == ["?"]

    @pytest.mark.asyncio
    async def test_status_unavailable(self, runner_factory, channel):
        """Test failed pre-run query yields a failed report."""
        channel.fail_on.add("?")
        report = await runner_factory(diagnostics_config(move_step("x", 1))).run()
        assert report.overall == DiagnosticsOverall.FAILED
        assert "status unavailable" in report.results[0].detail
        assert channel.sent == ["?"]


class TestDiagnosticsFailures:
    """Test step failures, timeouts and rollback."""

    @pytest.mark.asyncio
    async def test_timeout_stops_run(self, runner_factory, channel):
        """Test a hung step yields one timed-out result and nothing after it."""
        channel.hang_on.add("G91 G01 X1 F100")
        runner = runner_factory(diagnostics_config(
            status_step(), move_step("x", 1, timeout_ms=100), move_step("y", 1)
        ))
        report = await runner.run()
        statuses = [r.status for r in report.results if not r.synthetic]
        assert statuses == [StepStatus.PASSED, StepStatus.TIMED_OUT]
        assert statuses.count(StepStatus.TIMED_OUT) == 1
        assert report.results[1].rollback_command == "G91 G01 X-1 F100"
        assert report.results[1].rollback_ok is True
        assert "G91 G01 Y1 F100" not in channel.sent
        assert report.overall == DiagnosticsOverall.PARTIAL

    @pytest.mark.asyncio
    async def test_first_step_fails(self, runner_factory, channel):
        """Test failure with no passed step is Failed."""
        channel.stalled_axes.add("x")
        report = await runner_factory(diagnostics_config(move_step("x", 1), move_step("y", 1))).run()
        assert report.overall == DiagnosticsOverall.FAILED
        assert len(report.results) == 1
        assert "no X movement detected" in report.results[0].detail
        assert report.results[0].rollback_ok is True

    @pytest.mark.asyncio
    async def test_second_step_fails(self, runner_factory, channel):
        """Test failure after a passed step is Partial and returns to origin."""
        channel.stalled_axes.add("y")
        report = await runner_factory(diagnostics_config(
            move_step("x", 1), move_step("y", 1), move_step("x", -1)
        )).run()
        assert report.overall == DiagnosticsOverall.PARTIAL
        assert [r.status for r in report.executed_steps] == [StepStatus.PASSED, StepStatus.FAILED]
        origin = report.results[-1]
        assert origin.synthetic
        assert origin.step.description == "Return to origin"
        assert origin.step.command == "G91 G01 X-1 F100"
        assert origin.status == StepStatus.PASSED
        assert channel.position.x == 0.0

    @pytest.mark.asyncio
    async def test_non_fatal_failure_continues(self, runner_factory, channel):
        """Test non-fatal step failure does not stop the run."""
        channel.stalled_axes.add("z")
        report = await runner_factory(diagnostics_config(
            move_step("z", 1, fatal=False), move_step("x", 1), move_step("x", -1)
        )).run()
        assert [r.status for r in report.executed_steps] == [
            StepStatus.FAILED, StepStatus.PASSED, StepStatus.PASSED
        ]
        assert report.overall == DiagnosticsOverall.PARTIAL

    @pytest.mark.asyncio
    async def test_rollback_failure_fails_run(self, runner_factory, channel):
        """Test failed rollback marks the run Failed."""
        channel.stalled_axes.add("y")
        channel.fail_on.add("G91 G01 Y-1 F100")
        report = await runner_factory(diagnostics_config(move_step("x", 1), move_step("y", 1))).run()
        assert report.results[1].rollback_ok is False
        assert report.overall == DiagnosticsOverall.FAILED

    @pytest.mark.asyncio
    async def test_controller_rejects_command(self, runner_factory, channel):
        """Test error reply fails the step without a rollback."""
        step = DiagnosticStep(description="Bad command", command="BOGUS", rollback_command="G91 G01 X-1 F100")
        report = await runner_factory(diagnostics_config(status_step(), step)).run()
        result = report.results[1]
        assert result.status == StepStatus.FAILED
        assert "error:1" in result.detail
        assert result.rollback_ok is None
        assert "G91 G01 X-1 F100" not in channel.sent
        assert report.overall == DiagnosticsOverall.PARTIAL


class TestDiagnosticsCancellation:
    """Test cancellation between steps."""

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, runner_factory, channel):
        """Test pre-set cancel skips every step."""
        cancel = asyncio.Event()
        cancel.set()
        report = await runner_factory(diagnostics_config(status_step(), move_step("x", 1))).run(cancel)
        assert report.cancelled
        assert [r.status for r in report.results] == [StepStatus.SKIPPED, StepStatus.SKIPPED]
        assert report.overall == DiagnosticsOverall.FAILED
        assert channel.sent == ["?"]

    @pytest.mark.asyncio
    async def test_cancel_mid_run_returns_to_origin(self, runner_factory, channel):
        """Test cancel after a move skips the rest and returns to origin."""
        cancel = asyncio.Event()
        exchange = channel._exchange

        async def cancelling_exchange(command):
            if command == "G91 G01 X1 F100":
                cancel.set()
            return await exchange(command)

        channel._exchange = cancelling_exchange
        report = await runner_factory(diagnostics_config(
            status_step(), move_step("x", 1), move_step("x", -1)
        )).run(cancel)
        assert report.cancelled
        assert [r.status for r in report.results[:3]] == [
            StepStatus.PASSED, StepStatus.PASSED, StepStatus.SKIPPED
        ]
        assert report.results[-1].step.description == "Return to origin"
        assert report.overall == DiagnosticsOverall.PARTIAL
        assert channel.position.x == 0.0


class TestDiagnosticsEmergencyStop:
    """Test the emergency stop latch and exclusive channel use."""

    @pytest.mark.asyncio
    async def test_latched_before_start(self, runner_factory, channel):
        """Test a latched stop skips every step and writes nothing."""
        report = await runner_factory(diagnostics_config(status_step(), move_step("x", 1))).run(
            halted=lambda: True
        )
        assert [r.status for r in report.results] == [StepStatus.SKIPPED, StepStatus.SKIPPED]
        assert all(r.detail == "emergency stop" for r in report.results)
        assert channel.sent == ["?"]

    @pytest.mark.asyncio
    async def test_latched_after_move_skips_rollback_and_return(self, runner_factory, channel):
        """Test nothing follows the move once the stop is latched."""
        stopped = []
        exchange = channel._exchange

        async def stopping_exchange(command):
            lines = await exchange(command)
            if command == "G91 G01 X1 F100":
                stopped.append(True)
            return lines

        channel._exchange = stopping_exchange
        report = await runner_factory(diagnostics_config(
            status_step(), move_step("x", 1), move_step("x", -1)
        )).run(halted=lambda: bool(stopped))

        assert channel.sent[-1] == "G91 G01 X1 F100"
        assert report.results[1].status == StepStatus.FAILED
        assert report.results[1].rollback_ok is None
        assert len(report.results) == 2
        assert channel.position.x == 1.0

    @pytest.mark.asyncio
    async def test_channel_held_for_whole_run(self, runner_factory, channel, probe):
        """Test a concurrent query waits until the run releases the channel."""
        channel.latency_ms = 10
        run = asyncio.ensure_future(runner_factory(diagnostics_config(
            status_step(), move_step("x", 1), move_step("x", -1)
        )).run())
        await asyncio.sleep(0.005)
        assert channel.is_held

        await probe.query()
        assert run.done()
        assert run.result().overall == DiagnosticsOverall.COMPLETED
        assert not channel.is_held
