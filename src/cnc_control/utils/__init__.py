"""Utility modules."""

from cnc_control.utils.health import (
    ComponentHealth,
    HealthSnapshot,
    HealthStatus,
    get_uptime,
    reduce_health,
)

__all__ = [
    "ComponentHealth",
    "HealthSnapshot",
    "HealthStatus",
    "get_uptime",
    "reduce_health",
]
