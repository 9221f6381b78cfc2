"""Test GRBL status report parsing."""

from datetime import datetime

import pytest

from cnc_control.api.machine.exceptions import MalformedResponse
from cnc_control.api.machine.models import MachineMode, Position
from cnc_control.api.machine.services.status_parser import (
    alarm_message,
    build_limits,
    build_state,
    format_report,
    format_status,
    parse_report,
    parse_settings,
    parse_status
)


class TestParseReport:
    """Test status report parsing."""

    def test_idle_with_machine_position(self):
        """Test plain idle report."""
        report = parse_report("<Idle|MPos:1.000,2.500,-3.000|FS:0,0>")
        assert report.mode == MachineMode.IDLE
        assert report.machine_position == Position(x=1.0, y=2.5, z=-3.0)
        assert report.work_position is None
        assert report.alarm_codes == ()

    def test_sub_state_is_ignored(self):
        """Test hold sub-state suffix."""
        report = parse_report("<Hold:0|MPos:0.000,0.000,0.000|FS:0,0>")
        assert report.mode == MachineMode.HOLD

    def test_unknown_state_name(self):
        """Test unrecognized state maps to unknown."""
        report = parse_report("<Bogus|MPos:0,0,0>")
        assert report.mode == MachineMode.UNKNOWN

    def test_alarm_lines(self):
        """Test alarm lines preceding the report."""
        report = parse_report("ALARM:1\n<Alarm|MPos:0.000,0.000,0.000|FS:0,0>")
        assert report.mode == MachineMode.ALARM
        assert report.alarm_codes == (1,)

    @pytest.mark.parametrize("raw", [
        "ok",
        "",
        "<|MPos:0,0,0>",
        "<Idle|FS:0,0>",
        "<Idle|MPos:1,2>",
        "<Idle|MPos:a,b,c>",
    ])
    def test_malformed(self, raw):
        """Test replies that cannot be parsed."""
        with pytest.raises(MalformedResponse):
            parse_report(raw)


class TestBuildState:
    """Test state construction from reports."""

    def test_work_position_from_offset(self):
        """Test WPos derived from MPos and WCO."""
        state = parse_status("<Idle|MPos:10.000,5.000,0.000|FS:0,0|WCO:2.000,1.000,0.000>")
        assert state.work_position == Position(x=8.0, y=4.0, z=0.0)

    def test_machine_position_from_work_position(self):
        """Test MPos derived from WPos and a remembered WCO."""
        report = parse_report("<Run|WPos:1.000,1.000,1.000|FS:500,0>")
        state = build_state(report, work_offset=Position(x=1.0, y=2.0, z=3.0))
        assert state.position == Position(x=2.0, y=3.0, z=4.0)
        assert state.mode == MachineMode.RUN

    def test_alarm_messages(self):
        """Test alarm codes become messages."""
        state = parse_status("ALARM:1\n<Alarm|MPos:0,0,0|FS:0,0>")
        assert state.alarms == ("Hard limit triggered",)

    def test_alarm_carried_over(self):
        """Test previous alarms kept while still in alarm."""
        report = parse_report("<Alarm|MPos:0,0,0|FS:0,0>")
        state = build_state(report, previous_alarms=("Hard limit triggered",))
        assert state.alarms == ("Hard limit triggered",)

    def test_no_alarms_outside_alarm_mode(self):
        """Test alarm lines ignored when the report is not Alarm."""
        state = parse_status("ALARM:1\n<Idle|MPos:0,0,0|FS:0,0>")
        assert state.alarms == ()

    def test_captured_at(self):
        """Test capture timestamp is kept."""
        ts = datetime(2024, 5, 1, 8, 30)
        assert parse_status("<Idle|MPos:0,0,0>", captured_at=ts).captured_at == ts

    def test_unknown_alarm_code(self):
        """Test fallback text for unlisted codes."""
        assert alarm_message(42) == "Alarm 42"


class TestFormatReport:
    """Test status report rendering."""

    def test_format_report(self):
        """Test rendered report text."""
        text = format_report(MachineMode.ALARM, Position(x=1.0), Position(), alarm_codes=[3])
        assert text == "ALARM:3\n<Alarm|MPos:1.000,0.000,0.000|FS:0,0|WCO:0.000,0.000,0.000>"

    def test_format_status_parses_back(self, state_factory):
        """Test formatted state parses to the same mode and positions."""
        state = state_factory(MachineMode.JOG, x=1.25, y=-4.5, z=0.125)
        parsed = parse_status(format_status(state))
        assert parsed.mode == state.mode
        assert parsed.position == state.position
        assert parsed.work_position == state.work_position


class TestSettings:
    """Test settings dump parsing."""

    def test_parse_settings(self):
        """Test setting lines are parsed and other lines ignored."""
        settings = parse_settings([
            "$0=10",
            "$20=1",
            "$110=500.000",
            "$130=-1.5",
            "[MSG:'$H'|'$X' to unlock]",
            "ok",
        ])
        assert settings == {0: 10.0, 20: 1.0, 110: 500.0, 130: -1.5}

    def test_build_limits(self):
        """Test travel and switch flags."""
        limits = build_limits({20: 1, 21: 0, 22: 1, 130: 300, 131: 250.5, 132: 80})
        assert limits.max_travel == Position(x=300.0, y=250.5, z=80.0)
        assert limits.soft_limits
        assert not limits.hard_limits
        assert limits.homing_enabled

    def test_build_limits_missing_travel(self):
        """Test missing travel settings are named in the error."""
        with pytest.raises(MalformedResponse) as exc:
            build_limits({130: 300}, "$130=300\nok")
        assert "$131" in str(exc.value)
        assert "$132" in str(exc.value)
