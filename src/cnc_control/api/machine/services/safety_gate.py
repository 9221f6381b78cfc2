"""Safety gate: decides whether an operation may be sent to the machine.

The gate is a pure function of the request and the latest machine state.
Rules are evaluated in order and the first rule that returns a decision
wins; a request no rule decides is permitted.
"""

from typing import Callable, FrozenSet, List, Optional

from cnc_control.api.machine.models import (
    MachineMode,
    MachineState,
    OperationKind,
    OperationRequest,
    SafetyDecision
)


ALL_MODES: FrozenSet[MachineMode] = frozenset(MachineMode)
MOVING_MODES: FrozenSet[MachineMode] = frozenset({MachineMode.RUN, MachineMode.JOG})
READY_MODES: FrozenSet[MachineMode] = frozenset({MachineMode.IDLE, MachineMode.CHECK})

HOME_MODES = ALL_MODES - MOVING_MODES - {MachineMode.ALARM}
RESET_MODES = ALL_MODES - {MachineMode.RUN, MachineMode.ALARM}

ALARM_REASON = "machine in alarm state; unlock first"
MOVING_REASON = "cannot home while machine is moving"
STALE_REASON = "machine status unknown; cannot verify safety"
RUNNING_REASON = "cannot reset during active run; stop first"

Rule = Callable[[OperationRequest, MachineState], Optional[SafetyDecision]]


def _emergency_stop(request: OperationRequest, state: MachineState) -> Optional[SafetyDecision]:
    if request.kind == OperationKind.EMERGENCY_STOP:
        return SafetyDecision.permit()
    return None


def _unlock(request: OperationRequest, state: MachineState) -> Optional[SafetyDecision]:
    if request.kind == OperationKind.UNLOCK:
        return SafetyDecision.permit()
    return None


def _alarm_lockout(request: OperationRequest, state: MachineState) -> Optional[SafetyDecision]:
    if state.mode == MachineMode.ALARM:
        return SafetyDecision.deny(ALARM_REASON, _legal_modes(request.kind))
    return None


def _home(request: OperationRequest, state: MachineState) -> Optional[SafetyDecision]:
    if request.kind != OperationKind.HOME:
        return None
    if state.mode in MOVING_MODES:
        return SafetyDecision.deny(MOVING_REASON, HOME_MODES)
    if state.is_stale:
        return SafetyDecision.deny(STALE_REASON, HOME_MODES)
    return SafetyDecision.permit(HOME_MODES)


def _soft_reset(request: OperationRequest, state: MachineState) -> Optional[SafetyDecision]:
    if request.kind != OperationKind.SOFT_RESET:
        return None
    if state.mode == MachineMode.RUN:
        return SafetyDecision.deny(RUNNING_REASON, RESET_MODES)
    return SafetyDecision.permit(RESET_MODES)


def _ready_only(request: OperationRequest, state: MachineState) -> Optional[SafetyDecision]:
    if request.kind not in (OperationKind.SEND_GCODE, OperationKind.RUN_DIAGNOSTICS):
        return None
    if state.is_stale:
        return SafetyDecision.deny(STALE_REASON, READY_MODES)
    if state.mode not in READY_MODES:
        return SafetyDecision.deny(
            f"machine must be Idle or Check (currently {state.mode.value})",
            READY_MODES
        )
    return SafetyDecision.permit(READY_MODES)


def _legal_modes(kind: OperationKind) -> Optional[FrozenSet[MachineMode]]:
    if kind == OperationKind.HOME:
        return HOME_MODES
    if kind == OperationKind.SOFT_RESET:
        return RESET_MODES
    if kind in (OperationKind.SEND_GCODE, OperationKind.RUN_DIAGNOSTICS):
        return READY_MODES
    return None


DEFAULT_RULES: List[Rule] = [
    _emergency_stop,
    _unlock,
    _alarm_lockout,
    _home,
    _soft_reset,
    _ready_only,
]


class SafetyGate:
    """Ordered rule table for operation safety."""

    def __init__(self, rules: Optional[List[Rule]] = None):
        self._rules = list(rules) if rules is not None else list(DEFAULT_RULES)

    def check(self, request: OperationRequest, state: Optional[MachineState]) -> SafetyDecision:
        """Decide whether the request may proceed.

        Args:
            request: Requested operation
            state: Latest machine state; None is treated as unknown and stale

        Returns:
            SafetyDecision
        """
        state = state or MachineState.unknown()
        for rule in self._rules:
            decision = rule(request, state)
            if decision is not None:
                return decision
        return SafetyDecision.permit()
