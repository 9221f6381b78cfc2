"""Machine control API."""

from cnc_control.api.machine.service import ControlService
from cnc_control.api.machine.dependencies import get_control_service

__all__ = [
    "ControlService",
    "get_control_service",
]
