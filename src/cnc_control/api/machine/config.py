"""Machine control configuration."""

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from cnc_control.api.base.base_exceptions import ConfigError
from cnc_control.api.machine.models import DiagnosticStep, EffectKind, ExpectedEffect


DEFAULT_CONFIG_PATH = Path("config/machine.yaml")


class ChannelConfig(BaseModel):
    """Transport settings."""
    mode: Literal["mock", "serial"] = Field("mock", description="Channel implementation")
    port: Optional[str] = Field(None, description="Serial port device")
    baud_rate: int = Field(115200, gt=0, description="Serial baud rate")
    connect_timeout_ms: int = Field(5000, gt=0)
    default_timeout_ms: int = Field(5000, gt=0)


class StatusConfig(BaseModel):
    """Status probe settings."""
    query_command: str = Field("?", description="Status report request")
    query_timeout_ms: int = Field(5000, gt=0)
    max_age_ms: int = Field(2000, ge=0, description="Age after which cached state is stale")
    settings_command: str = Field("$$", description="Settings dump request")


class TimedCommand(BaseModel):
    """A command with its exchange timeout."""
    model_config = ConfigDict(frozen=True)

    command: str
    timeout_ms: int = Field(..., gt=0)


class EmergencyStopConfig(BaseModel):
    """Emergency stop redundancy policy."""
    commands: List[str] = Field(default_factory=lambda: ["!", "M112"], min_length=1)
    timeout_ms: int = Field(1000, gt=0)


class SafetyConfig(BaseModel):
    """Safety operation settings."""
    unlock: TimedCommand = TimedCommand(command="$X", timeout_ms=5000)
    homing: TimedCommand = TimedCommand(command="$H", timeout_ms=60000)
    reset: TimedCommand = TimedCommand(command="\x18", timeout_ms=10000)
    emergency_stop: EmergencyStopConfig = Field(default_factory=EmergencyStopConfig)
    query_status_after_unlock: bool = True

    @field_validator("unlock", "homing", "reset", mode="before")
    @classmethod
    def _merge_defaults(cls, value: Any, info: ValidationInfo) -> Any:
        # Allow overriding only the timeout or only the command
        if isinstance(value, dict):
            default = cls.model_fields[info.field_name].default
            return {**default.model_dump(), **value}
        return value


def default_diagnostic_sequence(distance: float = 1.0, feed_rate: float = 100.0) -> List[DiagnosticStep]:
    """Status check followed by out-and-back moves on X and Y."""
    steps = [
        DiagnosticStep(
            description="Status query test",
            command="?",
            expected_effect=ExpectedEffect(kind=EffectKind.RESPONSIVE),
            timeout_ms=5000,
        )
    ]
    for axis in ("x", "y"):
        label = axis.upper()
        for sign, text in ((1, "Small"), (-1, "Return")):
            delta = sign * distance
            steps.append(DiagnosticStep(
                description=f"{text} {label} movement",
                command=f"G91 G01 {label}{delta:g} F{feed_rate:g}",
                expected_effect=ExpectedEffect(kind=EffectKind.DISPLACEMENT, axis=axis, delta=delta),
                timeout_ms=30000,
                rollback_command=f"G91 G01 {label}{-delta:g} F{feed_rate:g}",
                settle=True,
            ))
    return steps


class DiagnosticsConfig(BaseModel):
    """Diagnostics runner settings."""
    enabled: bool = True
    sequence: List[DiagnosticStep] = Field(default_factory=default_diagnostic_sequence)
    settle_command: str = Field("G4 P0", description="Returns only after buffered motion completes")
    return_to_origin: bool = True
    return_feed_rate: float = Field(100.0, gt=0)
    return_timeout_ms: int = Field(30000, gt=0)
    rollback_timeout_ms: int = Field(30000, gt=0)


class ResponseTimeThresholds(BaseModel):
    warning_ms: float = Field(2000, gt=0)
    critical_ms: float = Field(10000, gt=0)


class HealthConfig(BaseModel):
    """Health aggregation thresholds and timeouts."""
    connection_timeout_ms: int = Field(5000, gt=0)
    machine_timeout_ms: int = Field(5000, gt=0)
    system_timeout_ms: int = Field(1000, gt=0)
    response_time: ResponseTimeThresholds = Field(default_factory=ResponseTimeThresholds)
    max_error_rate_percent: float = Field(5.0, ge=0, le=100)
    error_rate_window_ms: int = Field(300000, gt=0)
    memory_degraded_percent: float = Field(85.0, ge=0, le=100)
    cpu_degraded_percent: float = Field(90.0, ge=0, le=100)


class HistoryConfig(BaseModel):
    max_diagnostics_reports: int = Field(100, ge=0)


class MachineConfig(BaseModel):
    """Complete machine control configuration."""
    version: str = "1.0.0"
    channel: ChannelConfig = Field(default_factory=ChannelConfig)
    status: StatusConfig = Field(default_factory=StatusConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)


# (env var, config path, converter)
ENV_OVERRIDES = [
    ("CNC_CHANNEL_MODE", ("channel", "mode"), str),
    ("CNC_SERIAL_PORT", ("channel", "port"), str),
    ("CNC_BAUD_RATE", ("channel", "baud_rate"), int),
    ("CNC_STATUS_QUERY_TIMEOUT", ("status", "query_timeout_ms"), int),
    ("CNC_STATUS_MAX_AGE", ("status", "max_age_ms"), int),
    ("CNC_DIAGNOSTICS_ENABLED", ("diagnostics", "enabled"), lambda v: v.lower() != "false"),
    ("CNC_EMERGENCY_STOP_TIMEOUT", ("safety", "emergency_stop", "timeout_ms"), int),
    ("CNC_HOMING_TIMEOUT", ("safety", "homing", "timeout_ms"), int),
]


def apply_env_overrides(data: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Overlay environment variables onto raw config data."""
    environ = os.environ if environ is None else environ
    for var, path, convert in ENV_OVERRIDES:
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = convert(raw)
        except ValueError:
            logger.warning(f"Ignoring invalid value for {var}: {raw!r}")
            continue
        node = data
        for key in path[:-1]:
            node = node.setdefault(key, {})
            if not isinstance(node, dict):
                break
        else:
            node[path[-1]] = value
            logger.debug(f"Config override {'.'.join(path)} from {var}")
    return data


def load_config(
    path: Union[str, Path, None] = None,
    environ: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    """Load raw machine configuration.

    Args:
        path: YAML file (defaults to config/machine.yaml)
        environ: Environment mapping used for overrides

    Returns:
        Configuration dictionary, validated later by MachineConfig

    Raises:
        ConfigError: If the file is not valid YAML or not a mapping
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}", {"path": str(config_path)}) from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping", {"path": str(config_path)})
        logger.info(f"Loaded machine config from {config_path}")
    else:
        logger.warning(f"Config file not found: {config_path}, using defaults")

    return apply_env_overrides(data, environ)
