"""Base error handling module."""

from datetime import datetime
from typing import Optional, Dict, Any

from fastapi import HTTPException, status


# Common status codes
SERVICE_ERROR = status.HTTP_503_SERVICE_UNAVAILABLE
NOT_IMPLEMENTED = status.HTTP_501_NOT_IMPLEMENTED
CONFLICT = status.HTTP_409_CONFLICT
VALIDATION_ERROR = status.HTTP_422_UNPROCESSABLE_ENTITY
BAD_REQUEST = status.HTTP_400_BAD_REQUEST
BAD_GATEWAY = status.HTTP_502_BAD_GATEWAY
GATEWAY_TIMEOUT = status.HTTP_504_GATEWAY_TIMEOUT


def create_error(
    message: str,
    status_code: int,  # Required to be explicit about error type
    context: Optional[Dict[str, Any]] = None,
    cause: Optional[Exception] = None
) -> HTTPException:
    """Create HTTP exception with consistent format.

    Common status codes:
    - 503 Service Unavailable: Service failed to start/stop or is not running
    - 501 Not Implemented: Service methods not implemented
    - 409 Conflict: Service already running or busy
    - 422 Unprocessable Entity: Invalid configuration/data
    - 400 Bad Request: Invalid request parameters
    - 502 Bad Gateway: Controller transport failure
    - 504 Gateway Timeout: Controller did not answer in time

    Args:
        message: Error message
        status_code: HTTP status code (required)
        context: Optional error context
        cause: Optional cause exception

    Returns:
        HTTPException with formatted detail
    """
    detail = {
        "message": message,
        "timestamp": datetime.now().isoformat(),
        "context": context or {}
    }

    if cause:
        detail["context"]["error"] = str(cause)

    error = HTTPException(
        status_code=status_code,
        detail=detail
    )

    if cause:
        error.__cause__ = cause

    return error
