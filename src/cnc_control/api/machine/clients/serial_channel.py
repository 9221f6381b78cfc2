"""Serial channel for GRBL controllers."""

import asyncio
import threading
from typing import List, Optional

import serial
from loguru import logger
from serial.tools.list_ports import comports

from cnc_control.api.machine.config import ChannelConfig
from cnc_control.api.machine.clients.base import CommandChannel
from cnc_control.api.machine.exceptions import ChannelError
from cnc_control.api.machine.models import SerialPortInfo
from cnc_control.api.machine.services.connection_monitor import ConnectionMonitor


# Single-byte commands GRBL acts on immediately, outside the line buffer
REALTIME_COMMANDS = {"?", "!", "~", "\x18"}


def list_ports() -> List[SerialPortInfo]:
    """Serial ports visible to the host, sorted by device name."""
    return [
        SerialPortInfo(device=port.device, description=port.description, hwid=port.hwid)
        for port in sorted(comports(), key=lambda port: port.device)
    ]


class SerialChannel(CommandChannel):
    """Line-oriented exchange with a GRBL controller over pyserial.

    Blocking serial calls run in worker threads. A reply ends with ``ok``,
    ``error:N``, a status report (for ``?``) or the startup banner (for
    soft reset).
    """

    READ_TIMEOUT = 0.1
    READER_EXIT_TIMEOUT = 1.0
    STARTUP_DELAY = 2.0

    def __init__(self, config: Optional[ChannelConfig] = None, monitor: Optional[ConnectionMonitor] = None):
        super().__init__(config, monitor)
        self._serial: Optional[serial.Serial] = None
        self._write_lock = threading.Lock()
        self._abort = threading.Event()

    async def _connect(self) -> None:
        if not self._config.port:
            raise ChannelError("No serial port configured")
        try:
            self._serial = await asyncio.wait_for(
                asyncio.to_thread(
                    serial.Serial,
                    port=self._config.port,
                    baudrate=self._config.baud_rate,
                    timeout=self.READ_TIMEOUT
                ),
                self._config.connect_timeout_ms / 1000.0
            )
        except asyncio.TimeoutError:
            raise ChannelError(f"Timed out opening {self._config.port}")
        except serial.SerialException as e:
            raise ChannelError(f"Could not open {self._config.port}: {e}") from e

        # Opening the port resets most boards; wait for the banner and wake the parser
        await asyncio.sleep(self.STARTUP_DELAY)
        await asyncio.to_thread(self._write, b"\r\n")
        await asyncio.sleep(0.1)
        await asyncio.to_thread(self._serial.reset_input_buffer)
        logger.info(f"Opened {self._config.port} at {self._config.baud_rate} baud")

    async def _disconnect(self) -> None:
        self._abort.set()
        if self._serial and self._serial.is_open:
            await asyncio.to_thread(self._serial.close)
        self._serial = None

    @staticmethod
    def _encode(command: str) -> bytes:
        if command in REALTIME_COMMANDS:
            return command.encode("ascii")
        return (command.strip() + "\n").encode("ascii")

    def _write(self, data: bytes) -> None:
        if not self._serial:
            raise ChannelError("Serial port not open")
        with self._write_lock:
            self._serial.write(data)
            self._serial.flush()

    @staticmethod
    def _is_terminator(command: str, line: str) -> bool:
        if line == "ok" or line.startswith("error:"):
            return True
        if command == "?" and line.startswith("<"):
            return True
        if command == "\x18" and line.startswith("Grbl"):
            return True
        return False

    def _read_reply(self, command: str, abort: threading.Event) -> List[str]:
        lines: List[str] = []
        while not abort.is_set():
            if not self._serial:
                raise ChannelError("Serial port closed during read", command=command)
            raw = self._serial.readline()
            if not raw:
                continue
            line = raw.decode("ascii", errors="replace").strip()
            if not line:
                continue
            lines.append(line)
            if self._is_terminator(command, line):
                return lines
        raise ChannelError("Read aborted", command=command)

    async def _exchange(self, command: str) -> List[str]:
        abort = threading.Event()
        self._abort = abort
        try:
            await asyncio.to_thread(self._write, self._encode(command))
        except serial.SerialException as e:
            raise ChannelError(f"Serial failure: {e}", command=command) from e

        reader = asyncio.ensure_future(asyncio.to_thread(self._read_reply, command, abort))
        try:
            return await asyncio.shield(reader)
        except asyncio.CancelledError:
            # The port stays held until the reader thread has stopped reading
            abort.set()
            done, _ = await asyncio.wait({reader}, timeout=self.READER_EXIT_TIMEOUT)
            if done:
                reader.exception()
            else:
                logger.error(f"Reader for {command!r} did not stop within {self.READER_EXIT_TIMEOUT} s")
            raise
        except serial.SerialException as e:
            raise ChannelError(f"Serial failure: {e}", command=command) from e

    async def _write_realtime(self, command: str) -> None:
        try:
            await asyncio.to_thread(self._write, self._encode(command))
        except serial.SerialException as e:
            raise ChannelError(f"Serial failure: {e}", command=command) from e
