"""Health check utilities."""

from enum import Enum
from typing import Dict, Iterable, Optional
from datetime import datetime
from pydantic import BaseModel, Field


def get_uptime(start_time: Optional[datetime]) -> float:
    """Get uptime in seconds since start time.

    Args:
        start_time: Start time or None

    Returns:
        Uptime in seconds or 0.0 if not started
    """
    if start_time is None:
        return 0.0
    return (datetime.now() - start_time).total_seconds()


class HealthStatus(str, Enum):
    """Health status of a component or of the whole system."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class ComponentHealth(BaseModel):
    """Component health status."""

    status: HealthStatus
    response_time_ms: Optional[float] = None
    error_detail: Optional[str] = None
    details: Dict[str, bool | int | float | str | None] = Field(default_factory=dict)


class HealthSnapshot(BaseModel):
    """Aggregated health verdict with per-component detail."""

    overall: HealthStatus
    components: Dict[str, ComponentHealth]
    timestamp: datetime = Field(default_factory=datetime.now)
    version: Optional[str] = Field(None, description="Service version")
    uptime: Optional[float] = Field(None, description="Service uptime in seconds")


def reduce_health(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Reduce component statuses to one overall status.

    Unhealthy wins over everything; degraded and unknown both yield degraded.
    """
    statuses = set(statuses)
    if HealthStatus.UNHEALTHY in statuses:
        return HealthStatus.UNHEALTHY
    if HealthStatus.DEGRADED in statuses or HealthStatus.UNKNOWN in statuses:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY
