"""GRBL status report parsing and formatting.

A status reply looks like::

    <Idle|MPos:1.000,2.000,0.000|FS:0,0|WCO:0.000,0.000,0.000>

optionally preceded by asynchronous ``ALARM:n`` lines. Either ``MPos`` or
``WPos`` is reported depending on controller settings; the other is derived
from the work coordinate offset (``WCO``) when known.

The ``$$`` settings dump is parsed here too, for the travel limits.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from cnc_control.api.machine.exceptions import MalformedResponse
from cnc_control.api.machine.models import MachineLimits, MachineMode, MachineState, Position, StateSource


ALARM_MESSAGES = {
    1: "Hard limit triggered",
    2: "Soft limit: motion target exceeds machine travel",
    3: "Reset while in motion",
    4: "Probe fail: probe not in expected initial state",
    5: "Probe fail: probe did not contact the workpiece",
    6: "Homing fail: reset during active homing cycle",
    7: "Homing fail: safety door opened during homing",
    8: "Homing fail: pull off failed to clear limit switch",
    9: "Homing fail: could not find limit switch",
    10: "Homing fail: second dual axis limit switch not found",
}

_REPORT = re.compile(r"<([^>]*)>")
_ALARM = re.compile(r"^ALARM:(\d+)\s*$")
_MODES = {mode.value.lower(): mode for mode in MachineMode}


@dataclass(frozen=True)
class StatusReport:
    """Fields extracted from one status reply."""
    mode: MachineMode
    machine_position: Optional[Position]
    work_position: Optional[Position]
    work_offset: Optional[Position]
    alarm_codes: Tuple[int, ...]


def alarm_message(code: int) -> str:
    """Human readable text for an alarm code."""
    return ALARM_MESSAGES.get(code, f"Alarm {code}")


def _parse_triple(field: str, value: str, raw: str) -> Position:
    parts = value.split(",")
    if len(parts) < 3:
        raise MalformedResponse(f"{field} needs three coordinates, got {value!r}", raw)
    try:
        x, y, z = (float(p) for p in parts[:3])
    except ValueError as e:
        raise MalformedResponse(f"Invalid {field} value {value!r}: {e}", raw)
    return Position(x=x, y=y, z=z)


def parse_report(raw: str) -> StatusReport:
    """Parse the raw text of a status reply.

    Raises:
        MalformedResponse: If no well-formed report is present
    """
    alarm_codes: List[int] = []
    for line in raw.splitlines():
        match = _ALARM.match(line.strip())
        if match:
            alarm_codes.append(int(match.group(1)))

    match = _REPORT.search(raw)
    if not match:
        raise MalformedResponse("No status report in reply", raw)

    fields = match.group(1).split("|")
    state_name = fields[0].split(":")[0].strip().lower()
    if not state_name:
        raise MalformedResponse("Status report has no state", raw)
    mode = _MODES.get(state_name, MachineMode.UNKNOWN)

    mpos = wpos = wco = None
    for field in fields[1:]:
        name, sep, value = field.partition(":")
        if not sep:
            continue
        if name == "MPos":
            mpos = _parse_triple(name, value, raw)
        elif name == "WPos":
            wpos = _parse_triple(name, value, raw)
        elif name == "WCO":
            wco = _parse_triple(name, value, raw)

    if mpos is None and wpos is None:
        raise MalformedResponse("Status report has no position", raw)

    return StatusReport(
        mode=mode,
        machine_position=mpos,
        work_position=wpos,
        work_offset=wco,
        alarm_codes=tuple(alarm_codes),
    )


def build_state(
    report: StatusReport,
    captured_at: Optional[datetime] = None,
    work_offset: Optional[Position] = None,
    previous_alarms: Iterable[str] = (),
) -> MachineState:
    """Turn a parsed report into a MachineState.

    Args:
        report: Parsed report
        captured_at: Query timestamp
        work_offset: Last known work offset, used when the report has none
        previous_alarms: Alarms carried over while the machine stays in alarm
    """
    offset = report.work_offset or work_offset or Position()
    if report.machine_position is not None:
        mpos = report.machine_position
        wpos = report.work_position or mpos.minus(offset)
    else:
        wpos = report.work_position
        mpos = wpos.offset(offset)

    alarms: Tuple[str, ...] = ()
    if report.mode == MachineMode.ALARM:
        alarms = tuple(alarm_message(code) for code in report.alarm_codes) or tuple(previous_alarms)

    return MachineState(
        mode=report.mode,
        position=mpos,
        work_position=wpos,
        alarms=alarms,
        captured_at=captured_at or datetime.now(),
        source=StateSource.FRESH,
    )


def parse_status(raw: str, captured_at: Optional[datetime] = None) -> MachineState:
    """Parse a status reply straight into a MachineState."""
    return build_state(parse_report(raw), captured_at=captured_at)


def _triple(position: Position) -> str:
    return f"{position.x:.3f},{position.y:.3f},{position.z:.3f}"


def format_report(
    mode: MachineMode,
    position: Position,
    work_offset: Optional[Position] = None,
    alarm_codes: Iterable[int] = (),
) -> str:
    """Render a status reply the way the controller sends it."""
    fields = [mode.value, f"MPos:{_triple(position)}", "FS:0,0"]
    if work_offset is not None:
        fields.append(f"WCO:{_triple(work_offset)}")
    lines = [f"ALARM:{code}" for code in alarm_codes]
    lines.append("<" + "|".join(fields) + ">")
    return "\n".join(lines)


def format_status(state: MachineState) -> str:
    """Render a MachineState as a status reply."""
    offset = state.position.minus(state.work_position)
    return format_report(state.mode, state.position, offset)


_SETTING = re.compile(r"^\$(\d+)=([-+]?\d*\.?\d+)")

# $20 soft limits, $21 hard limits, $22 homing cycle, $130-$132 max travel (mm)
SOFT_LIMITS, HARD_LIMITS, HOMING_CYCLE = 20, 21, 22
MAX_TRAVEL = {"x": 130, "y": 131, "z": 132}


def parse_settings(lines: Iterable[str]) -> Dict[int, float]:
    """Parse ``$N=value`` lines of a ``$$`` reply; other lines are ignored."""
    settings: Dict[int, float] = {}
    for line in lines:
        match = _SETTING.match(line.strip())
        if match:
            settings[int(match.group(1))] = float(match.group(2))
    return settings


def build_limits(settings: Dict[int, float], raw: str = "") -> MachineLimits:
    """Travel limits from parsed settings.

    Raises:
        MalformedResponse: If a max travel setting is missing
    """
    missing = [f"${number}" for number in MAX_TRAVEL.values() if number not in settings]
    if missing:
        raise MalformedResponse(f"settings reply lacks {', '.join(missing)}", raw)
    return MachineLimits(
        max_travel=Position(**{axis: settings[number] for axis, number in MAX_TRAVEL.items()}),
        soft_limits=bool(settings.get(SOFT_LIMITS, 0)),
        hard_limits=bool(settings.get(HARD_LIMITS, 0)),
        homing_enabled=bool(settings.get(HOMING_CYCLE, 0)),
    )
