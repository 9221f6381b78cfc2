"""Service exception hierarchy.

Core components raise these instead of HTTP errors. The REST layer turns
them into ``HTTPException`` with :meth:`ServiceError.to_http`.
"""

from typing import Optional, Dict, Any

from fastapi import HTTPException

from cnc_control.api.base.base_errors import create_error


class ServiceError(Exception):
    """Base exception for service errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        """Initialize service error.

        Args:
            message: Error message
            context: Additional error context
        """
        super().__init__(message)
        self.message = message
        self.context = context if context is not None else {}

    def to_http(self, status_code: int, **extra: Any) -> HTTPException:
        """Convert to an HTTP error carrying this error's context.

        Args:
            status_code: HTTP status code
            **extra: Additional context entries

        Returns:
            HTTPException chained to this error
        """
        return create_error(
            message=self.message,
            status_code=status_code,
            context={**self.context, **extra},
            cause=self
        )


class ConfigError(ServiceError):
    """Configuration file could not be read or parsed."""


class CommunicationError(ServiceError):
    """Controller communication failed."""
