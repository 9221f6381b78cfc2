"""Machine control models."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class MachineMode(str, Enum):
    """Controller operating mode as reported in status replies."""

    IDLE = "Idle"
    RUN = "Run"
    HOLD = "Hold"
    JOG = "Jog"
    HOME = "Home"
    ALARM = "Alarm"
    DOOR = "Door"
    CHECK = "Check"
    SLEEP = "Sleep"
    UNKNOWN = "Unknown"


class StateSource(str, Enum):
    """Freshness of a machine state snapshot."""

    FRESH = "fresh"
    CACHED = "cached"
    STALE = "stale"


Axis = Literal["x", "y", "z"]
AXES: Tuple[str, ...] = ("x", "y", "z")


class Position(BaseModel):
    """Coordinate triple in machine units."""
    model_config = ConfigDict(frozen=True)

    x: float = Field(0.0, description="X position")
    y: float = Field(0.0, description="Y position")
    z: float = Field(0.0, description="Z position")

    def axis(self, name: str) -> float:
        """Get a single axis value."""
        return getattr(self, name)

    def offset(self, other: "Position") -> "Position":
        """Return self + other."""
        return Position(x=self.x + other.x, y=self.y + other.y, z=self.z + other.z)

    def minus(self, other: "Position") -> "Position":
        """Return self - other."""
        return Position(x=self.x - other.x, y=self.y - other.y, z=self.z - other.z)


class MachineState(BaseModel):
    """Immutable snapshot of controller-reported condition."""
    model_config = ConfigDict(frozen=True)

    mode: MachineMode = Field(..., description="Operating mode")
    position: Position = Field(default_factory=Position, description="Machine coordinates")
    work_position: Position = Field(default_factory=Position, description="Work coordinates")
    alarms: Tuple[str, ...] = Field(default=(), description="Active alarm messages")
    captured_at: datetime = Field(default_factory=datetime.now, description="Query timestamp")
    source: StateSource = Field(StateSource.FRESH, description="Snapshot freshness")

    @model_validator(mode="after")
    def _alarms_only_in_alarm_mode(self) -> "MachineState":
        if self.alarms and self.mode != MachineMode.ALARM:
            raise ValueError(f"alarms reported while machine is in {self.mode.value} mode")
        return self

    @property
    def is_stale(self) -> bool:
        """Whether the snapshot is too old to act on."""
        return self.source == StateSource.STALE

    def with_source(self, source: StateSource) -> "MachineState":
        """Copy of this snapshot tagged with another source."""
        return self.model_copy(update={"source": source})

    @classmethod
    def unknown(cls) -> "MachineState":
        """Placeholder used when no status was ever captured."""
        return cls(mode=MachineMode.UNKNOWN, source=StateSource.STALE)


class OperationKind(str, Enum):
    """Safety-checkable operator actions."""

    UNLOCK = "unlock"
    HOME = "home"
    SOFT_RESET = "soft_reset"
    EMERGENCY_STOP = "emergency_stop"
    SEND_GCODE = "send_gcode"
    RUN_DIAGNOSTICS = "run_diagnostics"


class OperationRequest(BaseModel):
    """Operation to be checked by the safety gate."""
    model_config = ConfigDict(frozen=True)

    kind: OperationKind
    payload: Optional[str] = Field(None, description="Raw command text")


class SafetyDecision(BaseModel):
    """Outcome of a safety gate check."""
    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: Optional[str] = None
    required_modes: Optional[FrozenSet[MachineMode]] = Field(
        None, description="Modes in which this operation is legal; None means any"
    )

    @classmethod
    def permit(cls, required_modes: Optional[FrozenSet[MachineMode]] = None) -> "SafetyDecision":
        return cls(allowed=True, required_modes=required_modes)

    @classmethod
    def deny(cls, reason: str, required_modes: Optional[FrozenSet[MachineMode]] = None) -> "SafetyDecision":
        return cls(allowed=False, reason=reason, required_modes=required_modes)


class ChannelResponse(BaseModel):
    """Reply lines received for one command exchange."""

    command: str
    lines: List[str] = Field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    @property
    def error(self) -> Optional[str]:
        """Controller-side error line (``error:N`` or ``ALARM:N``), if any."""
        for line in self.lines:
            if line.startswith("error:") or line.startswith("ALARM:"):
                return line
        return None

    @property
    def ok(self) -> bool:
        return self.error is None


class CommandStatus(str, Enum):
    """Discriminator for operator command outcomes."""

    COMPLETED = "completed"
    SAFETY_DENIED = "safety_denied"
    BUSY = "busy"
    REJECTED = "rejected"
    CHANNEL_TIMEOUT = "channel_timeout"
    CHANNEL_ERROR = "channel_error"


class CommandResult(BaseModel):
    """Result of an operator command."""

    operation: OperationKind
    status: CommandStatus
    commands: List[str] = Field(default_factory=list, description="Commands written to the channel")
    response: Optional[str] = None
    reason: Optional[str] = None
    duration_ms: float = 0.0
    timestamp: datetime = Field(default_factory=datetime.now)

    @property
    def ok(self) -> bool:
        return self.status == CommandStatus.COMPLETED


class EffectKind(str, Enum):
    """Kinds of post-step checks."""

    RESPONSIVE = "responsive"
    DISPLACEMENT = "displacement"
    NONE = "none"


class ExpectedEffect(BaseModel):
    """Check applied to the before/after states of a diagnostic step."""
    model_config = ConfigDict(frozen=True)

    kind: EffectKind = EffectKind.RESPONSIVE
    axis: Optional[Axis] = None
    delta: float = 0.0
    tolerance: float = Field(0.01, ge=0)

    @model_validator(mode="after")
    def _axis_required_for_displacement(self) -> "ExpectedEffect":
        if self.kind == EffectKind.DISPLACEMENT and self.axis is None:
            raise ValueError("displacement effect requires an axis")
        return self

    def evaluate(self, before: MachineState, after: MachineState) -> Tuple[bool, str]:
        """Evaluate the effect.

        Returns:
            Tuple of (passed, human readable detail)
        """
        if self.kind == EffectKind.NONE:
            return True, "no effect expected"

        if self.kind == EffectKind.RESPONSIVE:
            if after.mode in (MachineMode.ALARM, MachineMode.UNKNOWN):
                return False, f"machine reported {after.mode.value} after command"
            return True, f"machine responsive ({after.mode.value})"

        moved = after.position.axis(self.axis) - before.position.axis(self.axis)
        if abs(moved - self.delta) <= self.tolerance:
            return True, f"{self.axis.upper()} moved {moved:+.3f}"
        if abs(moved) <= self.tolerance:
            return False, f"no {self.axis.upper()} movement detected (expected {self.delta:+.3f})"
        return False, f"{self.axis.upper()} moved {moved:+.3f}, expected {self.delta:+.3f}"

    def __call__(self, before: MachineState, after: MachineState) -> bool:
        return self.evaluate(before, after)[0]


class DiagnosticStep(BaseModel):
    """One scripted diagnostics step."""
    model_config = ConfigDict(frozen=True)

    description: str
    command: str
    expected_effect: ExpectedEffect = Field(default_factory=ExpectedEffect)
    timeout_ms: int = Field(30000, gt=0)
    rollback_command: Optional[str] = None
    fatal: bool = True
    settle: bool = Field(False, description="Wait for motion to finish before checking the effect")

    @property
    def displacement(self) -> Dict[str, float]:
        """Net axis displacement this step commands."""
        effect = self.expected_effect
        if effect.kind == EffectKind.DISPLACEMENT and effect.delta:
            return {effect.axis: effect.delta}
        return {}


class StepStatus(str, Enum):
    """Outcome of one diagnostics step."""

    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"


class DiagnosticStepResult(BaseModel):
    """Recorded outcome of one step."""
    model_config = ConfigDict(frozen=True)

    step: DiagnosticStep
    status: StepStatus
    duration_ms: float = 0.0
    detail: str = ""
    synthetic: bool = Field(False, description="Not part of the configured sequence")
    rollback_command: Optional[str] = None
    rollback_ok: Optional[bool] = None


class DiagnosticsOverall(str, Enum):
    """Overall verdict of a diagnostics run."""

    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class DiagnosticsReport(BaseModel):
    """Immutable report of a single diagnostics run."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    results: Tuple[DiagnosticStepResult, ...] = ()
    overall: DiagnosticsOverall
    started_at: datetime
    finished_at: datetime
    cancelled: bool = False

    @property
    def executed_steps(self) -> Tuple[DiagnosticStepResult, ...]:
        """Results of configured steps that were actually sent."""
        return tuple(
            r for r in self.results
            if not r.synthetic and r.status != StepStatus.SKIPPED
        )


class ConnectionSample(BaseModel):
    """Rolling-window health of the transport."""

    connected: bool = True
    response_time_ms: Optional[float] = None
    error_rate_percent: float = 0.0
    samples: int = 0


class SystemSample(BaseModel):
    """Host resource usage."""

    memory_used_percent: float
    cpu_load: float


class ConnectionStatus(BaseModel):
    """Channel connection status."""

    connected: bool
    port: Optional[str] = None
    mode: str = "mock"


class MachineLimits(BaseModel):
    """Travel envelope and limit switches reported by ``$$``."""

    max_travel: Position = Field(..., description="Maximum travel per axis (mm)")
    soft_limits: bool = False
    hard_limits: bool = False
    homing_enabled: bool = False


class SerialPortInfo(BaseModel):
    """Serial port visible to the host."""

    device: str
    description: Optional[str] = None
    hwid: Optional[str] = None
