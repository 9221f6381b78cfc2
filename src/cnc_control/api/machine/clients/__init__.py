"""Controller command channels."""

from typing import Optional

from cnc_control.api.machine.config import ChannelConfig
from cnc_control.api.machine.clients.base import CommandChannel
from cnc_control.api.machine.clients.mock import MockGrblChannel
from cnc_control.api.machine.clients.serial_channel import SerialChannel, list_ports
from cnc_control.api.machine.services.connection_monitor import ConnectionMonitor


def create_channel(config: ChannelConfig, monitor: Optional[ConnectionMonitor] = None) -> CommandChannel:
    """Create the channel implementation selected by config."""
    if config.mode == "serial":
        return SerialChannel(config, monitor)
    return MockGrblChannel(config, monitor)


__all__ = [
    "CommandChannel",
    "MockGrblChannel",
    "SerialChannel",
    "create_channel",
    "list_ports",
]
