"""Machine control exceptions."""

from enum import Enum
from typing import Dict, Any, Optional

from cnc_control.api.base.base_exceptions import CommunicationError, ServiceError


class ChannelError(CommunicationError):
    """Transport-level failure talking to the controller."""

    def __init__(self, message: str, command: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        """Initialize channel error.

        Args:
            message: Error message
            command: Command being exchanged when the failure happened
            context: Optional error context
        """
        super().__init__(message, context)
        self.command = command


class ChannelTimeout(ChannelError):
    """Controller did not answer within the exchange timeout."""
    pass


class ChannelNotConnected(ChannelError):
    """Channel is not open."""
    pass


class ChannelInterrupted(ChannelError):
    """In-flight wait aborted by an emergency stop."""
    pass


class MalformedResponse(ServiceError):
    """Status reply could not be parsed."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message, {"raw": raw})
        self.raw = raw


class QueryErrorReason(str, Enum):
    """Why a status query failed."""

    TIMEOUT = "timeout"
    MALFORMED = "malformed"
    CHANNEL = "channel"


class StatusQueryError(ServiceError):
    """Status query failed; the cached state was left untouched."""

    def __init__(self, reason: QueryErrorReason, message: str, context: Optional[Dict[str, Any]] = None):
        """Initialize status query error.

        Args:
            reason: Failure category
            message: Error message
            context: Optional error context
        """
        super().__init__(message, context)
        self.reason = reason


class CommandRejected(ServiceError):
    """Controller answered a query with an ``error:N`` line."""

    def __init__(self, command: str, reply: str):
        super().__init__(f"Controller rejected {command!r}: {reply}", {"command": command, "reply": reply})
        self.command = command
        self.reply = reply
