"""Machine API dependencies."""

from fastapi import Request

from cnc_control.api.machine.service import ControlService


async def get_control_service(request: Request) -> ControlService:
    """Get control service from app state."""
    return request.app.state.service
