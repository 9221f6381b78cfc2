"""Base module test configuration and fixtures."""

import pytest
from pydantic import BaseModel, Field

from cnc_control.api.base.base_configurable import ConfigurableService
from cnc_control.api.base.base_service import BaseService


class SampleConfig(BaseModel):
    """Sample configuration model."""
    value: int = Field(ge=0)
    name: str = Field(default="test")
    required_field: str


class FailingService(BaseService):
    """Service that fails to start/stop."""

    async def _start(self) -> None:
        """Start implementation that fails."""
        raise ValueError("Failed to start")

    async def _stop(self) -> None:
        """Stop implementation that fails."""
        raise ValueError("Failed to stop")


class UnimplementedService(BaseService):
    """Service without lifecycle hooks."""
    pass


class SampleConfigurableService(ConfigurableService[SampleConfig], BaseService):
    """Configurable service for testing."""

    def __init__(self):
        BaseService.__init__(self, name="configurable")
        ConfigurableService.__init__(self, SampleConfig)

    async def _start(self) -> None:
        """Start implementation."""
        pass

    async def _stop(self) -> None:
        """Stop implementation."""
        pass


@pytest.fixture
def failing_service():
    """Create failing service."""
    return FailingService(name="failing")


@pytest.fixture
def unimplemented_service():
    """Create service without hooks."""
    return UnimplementedService()


@pytest.fixture
def configurable_service():
    """Create configurable service."""
    return SampleConfigurableService()


@pytest.fixture
def sample_config():
    """Create valid sample configuration."""
    return SampleConfig(value=42, required_field="required")
