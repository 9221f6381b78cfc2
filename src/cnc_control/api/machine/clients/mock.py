"""Mock channel that simulates a GRBL controller."""

import asyncio
import re
from typing import Dict, List, Optional, Set

from loguru import logger

from cnc_control.api.machine.config import ChannelConfig
from cnc_control.api.machine.clients.base import CommandChannel
from cnc_control.api.machine.exceptions import ChannelError
from cnc_control.api.machine.models import MachineMode, Position
from cnc_control.api.machine.services.connection_monitor import ConnectionMonitor
from cnc_control.api.machine.services.status_parser import format_report


SOFT_RESET = "\x18"
_WORD = re.compile(r"([A-Z])([-+]?\d*\.?\d+)")


class MockGrblChannel(CommandChannel):
    """In-process GRBL simulation.

    Moves complete instantly. Failures, hangs and stalled axes can be
    injected to exercise timeout and diagnostics paths.
    """

    def __init__(
        self,
        config: Optional[ChannelConfig] = None,
        monitor: Optional[ConnectionMonitor] = None,
        latency_ms: float = 0.0
    ):
        """Initialize mock channel.

        Args:
            config: Channel configuration
            monitor: Connection monitor
            latency_ms: Simulated reply latency
        """
        super().__init__(config, monitor)
        self.latency_ms = latency_ms
        self.mode = MachineMode.IDLE
        self.position = Position()
        self.work_offset = Position()
        self.relative = False
        self.sent: List[str] = []
        self.urgent: List[str] = []
        self.hang_on: Set[str] = set()
        self.fail_on: Set[str] = set()
        self.malformed_status = False
        self.stalled_axes: Set[str] = set()
        self.settings: Dict[int, float] = {20: 0, 21: 0, 22: 1, 130: 200.0, 131: 200.0, 132: 100.0}
        self._pending_alarms: List[int] = []

    async def _connect(self) -> None:
        await asyncio.sleep(0)

    async def _disconnect(self) -> None:
        await asyncio.sleep(0)

    def trigger_alarm(self, code: int) -> None:
        """Put the simulated controller into alarm."""
        self.mode = MachineMode.ALARM
        self._pending_alarms.append(code)
        logger.debug(f"Mock alarm {code} triggered")

    def set_mode(self, mode: MachineMode) -> None:
        self.mode = mode

    async def _exchange(self, command: str) -> List[str]:
        self.sent.append(command)
        if self.latency_ms:
            await asyncio.sleep(self.latency_ms / 1000.0)
        if command in self.hang_on:
            # Never answers; the caller's timeout ends the wait
            await asyncio.Event().wait()
        if command in self.fail_on:
            raise ChannelError(f"Simulated transport failure on {command!r}", command=command)
        return self._handle(command)

    async def _write_realtime(self, command: str) -> None:
        self.urgent.append(command)
        if command in self.fail_on:
            raise ChannelError(f"Simulated transport failure on {command!r}", command=command)
        self._handle(command)

    def _handle(self, command: str) -> List[str]:
        text = command.strip().upper()
        if command == "?":
            return self._status()
        if command == SOFT_RESET:
            return self._soft_reset()
        if text == "!":
            if self.mode in (MachineMode.RUN, MachineMode.JOG):
                self.mode = MachineMode.HOLD
            return []
        if text == "~":
            if self.mode == MachineMode.HOLD:
                self.mode = MachineMode.IDLE
            return []
        if text == "M112":
            self.mode = MachineMode.ALARM
            return ["ok"]
        if text == "$X":
            if self.mode == MachineMode.ALARM:
                self.mode = MachineMode.IDLE
                self._pending_alarms.clear()
            return ["[MSG:Caution: Unlocked]", "ok"]
        if text == "$H":
            self.position = Position()
            self.mode = MachineMode.IDLE
            self._pending_alarms.clear()
            return ["ok"]
        if text == "$$":
            return [f"${number}={value:g}" for number, value in sorted(self.settings.items())] + ["ok"]
        if text.startswith("$"):
            return ["ok"]
        if self.mode == MachineMode.ALARM:
            return ["error:9"]
        return self._gcode(text)

    def _status(self) -> List[str]:
        if self.malformed_status:
            return ["<Idle|MPos:garbage>"]
        report = format_report(self.mode, self.position, self.work_offset, self._pending_alarms)
        self._pending_alarms = []
        return report.splitlines()

    def _soft_reset(self) -> List[str]:
        if self.mode in (MachineMode.RUN, MachineMode.JOG, MachineMode.HOME):
            self.trigger_alarm(3)
        elif self.mode != MachineMode.ALARM:
            self.mode = MachineMode.IDLE
        return ["Grbl 1.1h ['$' for help]"]

    def _gcode(self, text: str) -> List[str]:
        words = _WORD.findall(text.replace(" ", ""))
        if not words:
            return ["error:1"]

        target: Dict[str, float] = {}
        motion = False
        for letter, value in words:
            if letter == "G":
                code = float(value)
                if code == 90:
                    self.relative = False
                elif code == 91:
                    self.relative = True
                elif code in (0, 1):
                    motion = True
            elif letter in "XYZ":
                target[letter.lower()] = float(value)

        if target and (motion or not any(letter == "G" for letter, _ in words)):
            self._move(target)
        return ["ok"]

    def _move(self, target: Dict[str, float]) -> None:
        coords = self.position.model_dump()
        for axis, value in target.items():
            if axis in self.stalled_axes:
                continue
            coords[axis] = coords[axis] + value if self.relative else value
        self.position = Position(**coords)
