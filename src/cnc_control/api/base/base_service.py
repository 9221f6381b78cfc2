"""Base service module."""

from datetime import datetime
from typing import Optional

from cnc_control.api.base.base_errors import (
    create_error,
    SERVICE_ERROR,
    NOT_IMPLEMENTED,
    CONFLICT
)
from cnc_control.utils.health import get_uptime


class BaseService:
    """Base service with lifecycle management."""

    def __init__(self, name: Optional[str] = None, version: str = "1.0.0"):
        """Initialize service.

        Args:
            name: Service name (defaults to lowercase class name)
            version: Service version
        """
        self._is_running = False
        self._name = name or self.__class__.__name__.lower()
        self._version = version
        self._start_time: Optional[datetime] = None

    @property
    def name(self) -> str:
        """Get service name."""
        return self._name

    @property
    def version(self) -> str:
        """Get service version."""
        return self._version

    @property
    def is_running(self) -> bool:
        """Get service running state."""
        return self._is_running

    @property
    def uptime(self) -> float:
        """Get service uptime in seconds."""
        return get_uptime(self._start_time)

    async def start(self) -> None:
        """Start service.

        Raises:
            HTTPException: If service is already running (409) or fails to start (503)
        """
        if self.is_running:
            raise create_error(
                message=f"{self.name} service is already running",
                status_code=CONFLICT,
                context={"service": self.name}
            )

        try:
            await self._start()
            self._is_running = True
            self._start_time = datetime.now()
        except NotImplementedError as e:
            raise create_error(
                message=f"{self.name} service start not implemented",
                status_code=NOT_IMPLEMENTED,
                context={"service": self.name},
                cause=e
            )
        except Exception as e:
            raise create_error(
                message=f"Failed to start {self.name} service",
                status_code=SERVICE_ERROR,
                context={"service": self.name},
                cause=e
            )

    async def stop(self) -> None:
        """Stop service.

        Raises:
            HTTPException: If service is not running (409) or fails to stop (503)
        """
        if not self.is_running:
            raise create_error(
                message=f"{self.name} service is not running",
                status_code=CONFLICT,
                context={"service": self.name}
            )

        try:
            await self._stop()
            self._is_running = False
            self._start_time = None
        except NotImplementedError as e:
            raise create_error(
                message=f"{self.name} service stop not implemented",
                status_code=NOT_IMPLEMENTED,
                context={"service": self.name},
                cause=e
            )
        except Exception as e:
            raise create_error(
                message=f"Failed to stop {self.name} service",
                status_code=SERVICE_ERROR,
                context={"service": self.name},
                cause=e
            )

    def _ensure_running(self) -> None:
        """Raise if the service has not been started.

        Raises:
            HTTPException: If service is not running (503)
        """
        if not self.is_running:
            raise create_error(
                message=f"{self.name} service not running",
                status_code=SERVICE_ERROR,
                context={"service": self.name}
            )

    async def _start(self) -> None:
        """Start implementation.

        Raises:
            NotImplementedError: If not implemented by subclass
        """
        raise NotImplementedError()

    async def _stop(self) -> None:
        """Stop implementation.

        Raises:
            NotImplementedError: If not implemented by subclass
        """
        raise NotImplementedError()
