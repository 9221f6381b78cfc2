"""Base API components.

This module provides the core building blocks for the CNC control API:

- BaseService: Base class for all services with lifecycle management
- ConfigurableService: Mixin for services that require configuration
- create_error: Utility for creating consistent HTTP errors
- ServiceError: Root of the service exception hierarchy
"""

from cnc_control.api.base.base_service import BaseService
from cnc_control.api.base.base_configurable import ConfigurableService
from cnc_control.api.base.base_errors import create_error
from cnc_control.api.base.base_exceptions import (
    ServiceError,
    ConfigError,
    CommunicationError,
)

__all__ = [
    "BaseService",
    "ConfigurableService",
    "create_error",
    "ServiceError",
    "ConfigError",
    "CommunicationError",
]
