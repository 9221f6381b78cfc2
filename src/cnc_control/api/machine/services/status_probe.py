"""Status probe: queries the controller and owns the cached machine state."""

from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from cnc_control.api.machine.clients.base import CommandChannel
from cnc_control.api.machine.config import StatusConfig
from cnc_control.api.machine.exceptions import (
    ChannelError,
    ChannelTimeout,
    MalformedResponse,
    QueryErrorReason,
    StatusQueryError
)
from cnc_control.api.machine.models import MachineMode, MachineState, Position, StateSource
from cnc_control.api.machine.services.status_parser import build_state, parse_report


class StatusProbe:
    """Single writer of the cached MachineState.

    Each successful query publishes a new immutable snapshot by replacing
    the held reference; readers never see a partially updated state. A
    query is attempted exactly once per call.
    """

    def __init__(
        self,
        channel: CommandChannel,
        config: Optional[StatusConfig] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        """Initialize status probe.

        Args:
            channel: Command channel
            config: Status settings
            clock: Time source for capture timestamps and staleness
        """
        self._channel = channel
        self._config = config or StatusConfig()
        self._clock = clock
        self._state: Optional[MachineState] = None
        self._work_offset: Optional[Position] = None

    @property
    def max_age_ms(self) -> int:
        return self._config.max_age_ms

    async def query(self, timeout_ms: Optional[int] = None) -> MachineState:
        """Query the controller for a fresh status snapshot.

        Args:
            timeout_ms: Exchange timeout (defaults to configured query timeout)

        Returns:
            Fresh MachineState

        Raises:
            StatusQueryError: On timeout, transport failure or unparseable reply
        """
        timeout_ms = timeout_ms or self._config.query_timeout_ms
        try:
            response = await self._channel.send(self._config.query_command, timeout_ms)
        except ChannelTimeout as e:
            raise StatusQueryError(
                QueryErrorReason.TIMEOUT,
                f"Status query timed out after {timeout_ms} ms",
                {"command": e.command}
            ) from e
        except ChannelError as e:
            raise StatusQueryError(
                QueryErrorReason.CHANNEL,
                f"Status query failed: {e}",
                {"command": e.command}
            ) from e

        captured_at = self._clock()
        previous = self._state
        try:
            report = parse_report(response.text)
            state = build_state(
                report,
                captured_at=captured_at,
                work_offset=self._work_offset,
                previous_alarms=previous.alarms if previous and previous.mode == MachineMode.ALARM else ()
            )
        except (MalformedResponse, ValueError) as e:
            logger.warning(f"Malformed status reply {response.text!r}: {e}")
            raise StatusQueryError(
                QueryErrorReason.MALFORMED,
                f"Malformed status reply: {e}",
                {"raw": response.text}
            ) from e

        if report.work_offset is not None:
            self._work_offset = report.work_offset
        if previous is None or previous.mode != state.mode:
            logger.info(f"Machine mode {previous.mode.value if previous else 'none'} -> {state.mode.value}")
        self._state = state
        return state

    def cached(self) -> Optional[MachineState]:
        """Most recent successful snapshot, tagged Cached or Stale by age."""
        state = self._state
        if state is None:
            return None
        age_ms = (self._clock() - state.captured_at).total_seconds() * 1000.0
        if age_ms > self._config.max_age_ms:
            return state.with_source(StateSource.STALE)
        return state.with_source(StateSource.CACHED)

    def cached_or_unknown(self) -> MachineState:
        """Cached snapshot, or a stale Unknown placeholder if none exists."""
        return self.cached() or MachineState.unknown()

    async def current(self, timeout_ms: Optional[int] = None) -> MachineState:
        """Fresh snapshot when the controller answers, otherwise the cached view."""
        try:
            return await self.query(timeout_ms)
        except StatusQueryError as e:
            logger.warning(f"Using cached state: {e}")
            return self.cached_or_unknown()

    def invalidate(self) -> None:
        """Forget the cached state (e.g. after disconnect)."""
        self._state = None
        self._work_offset = None
