"""Base class for controller command channels."""

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from loguru import logger

from cnc_control.api.machine.config import ChannelConfig
from cnc_control.api.machine.exceptions import (
    ChannelError,
    ChannelInterrupted,
    ChannelNotConnected,
    ChannelTimeout
)
from cnc_control.api.machine.models import ChannelResponse
from cnc_control.api.machine.services.connection_monitor import ConnectionMonitor


class CommandChannel(ABC):
    """Exclusive-access command/response channel to the controller.

    Exchanges are serialized by a lock so commands from concurrent callers
    never interleave. Every exchange is bounded by a timeout. Urgent
    commands bypass the lock, and ``interrupt()`` aborts the exchange
    currently waiting for a reply.
    """

    def __init__(self, config: Optional[ChannelConfig] = None, monitor: Optional[ConnectionMonitor] = None):
        """Initialize command channel.

        Args:
            config: Channel configuration
            monitor: Connection monitor receiving exchange outcomes
        """
        self._config = config or ChannelConfig()
        self._monitor = monitor or ConnectionMonitor()
        self._connected = False
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task] = None
        self._interrupt = asyncio.Event()
        logger.info(f"Initialized {self.__class__.__name__}")

    @property
    def is_connected(self) -> bool:
        """Check if channel is connected."""
        return self._connected

    @property
    def is_busy(self) -> bool:
        """Check if an exchange is in progress."""
        return self._lock.locked()

    @property
    def is_held(self) -> bool:
        """Check if a caller holds the channel for a sequence of exchanges."""
        return self._owner is not None

    @property
    def port(self) -> Optional[str]:
        return self._config.port

    @property
    def monitor(self) -> ConnectionMonitor:
        return self._monitor

    async def connect(self) -> None:
        """Open the channel.

        Raises:
            ChannelError: If the connection cannot be established
        """
        if self._connected:
            return
        await self._connect()
        self._connected = True
        self._monitor.set_connected(True)
        logger.info(f"{self.__class__.__name__} connected")

    async def disconnect(self) -> None:
        """Close the channel."""
        if not self._connected:
            return
        self.interrupt()
        try:
            await self._disconnect()
        finally:
            self._connected = False
            self._monitor.set_connected(False)
            logger.info(f"{self.__class__.__name__} disconnected")

    def interrupt(self) -> None:
        """Abort the exchange currently waiting for a reply, if any."""
        self._interrupt.set()

    async def send(self, command: str, timeout_ms: Optional[int] = None) -> ChannelResponse:
        """Send a command and wait for its reply.

        Args:
            command: Command text
            timeout_ms: Exchange timeout (defaults to channel default)

        Returns:
            Reply lines

        Raises:
            ChannelNotConnected: If the channel is closed
            ChannelTimeout: If no reply arrives in time
            ChannelInterrupted: If the wait was aborted by interrupt()
            ChannelError: On any other transport failure
        """
        if not self._connected:
            raise ChannelNotConnected("Channel not connected", command=command)

        if self._owner is not None and self._owner is asyncio.current_task():
            return await self._send_held(command, timeout_ms)
        async with self._lock:
            return await self._send_held(command, timeout_ms)

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator["CommandChannel"]:
        """Hold the channel for a sequence of exchanges.

        ``send()`` calls made by the holding task go straight through; every
        other caller waits until the block exits. Urgent writes and
        ``interrupt()`` are not affected.
        """
        async with self._lock:
            self._owner = asyncio.current_task()
            try:
                yield self
            finally:
                self._owner = None

    async def _send_held(self, command: str, timeout_ms: Optional[int]) -> ChannelResponse:
        """Run one exchange; the caller holds the lock."""
        timeout = (timeout_ms or self._config.default_timeout_ms) / 1000.0
        self._interrupt.clear()
        started = time.monotonic()
        exchange = asyncio.ensure_future(self._exchange(command))
        interrupted = asyncio.ensure_future(self._interrupt.wait())
        try:
            done, _ = await asyncio.wait(
                {exchange, interrupted},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (exchange, interrupted):
                if not task.done():
                    task.cancel()
            await asyncio.gather(exchange, interrupted, return_exceptions=True)

        duration_ms = (time.monotonic() - started) * 1000.0
        if exchange in done:
            try:
                lines = exchange.result()
            except ChannelError:
                self._monitor.record_failure(duration_ms)
                raise
            except Exception as e:
                self._monitor.record_failure(duration_ms)
                raise ChannelError(f"Exchange failed: {e}", command=command) from e

            self._monitor.record_success(duration_ms)
            logger.debug(f"{command!r} -> {lines} ({duration_ms:.1f} ms)")
            return ChannelResponse(command=command, lines=lines, duration_ms=duration_ms)

        self._monitor.record_failure(duration_ms)
        if interrupted in done:
            logger.warning(f"Exchange {command!r} interrupted")
            raise ChannelInterrupted("Exchange interrupted by emergency stop", command=command)
        logger.warning(f"Exchange {command!r} timed out after {timeout * 1000:.0f} ms")
        raise ChannelTimeout(f"No reply within {timeout * 1000:.0f} ms", command=command)

    async def send_urgent(self, command: str, timeout_ms: Optional[int] = None) -> None:
        """Write a command without waiting for the channel lock or a reply.

        Raises:
            ChannelNotConnected: If the channel is closed
            ChannelTimeout: If the write itself does not complete in time
            ChannelError: On any other transport failure
        """
        if not self._connected:
            raise ChannelNotConnected("Channel not connected", command=command)

        timeout = (timeout_ms or self._config.default_timeout_ms) / 1000.0
        try:
            await asyncio.wait_for(self._write_realtime(command), timeout)
        except asyncio.TimeoutError:
            raise ChannelTimeout(f"Urgent write not completed within {timeout * 1000:.0f} ms", command=command)
        except ChannelError:
            raise
        except Exception as e:
            raise ChannelError(f"Urgent write failed: {e}", command=command) from e
        logger.debug(f"Urgent {command!r} written")

    @abstractmethod
    async def _connect(self) -> None:
        """Open the underlying transport."""
        pass

    @abstractmethod
    async def _disconnect(self) -> None:
        """Close the underlying transport."""
        pass

    @abstractmethod
    async def _exchange(self, command: str) -> List[str]:
        """Write a command and collect its reply lines."""
        pass

    @abstractmethod
    async def _write_realtime(self, command: str) -> None:
        """Write a command immediately, without reading a reply."""
        pass
