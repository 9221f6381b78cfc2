"""Machine API application."""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Union

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from cnc_control.api.machine.clients import CommandChannel
from cnc_control.api.machine.config import MachineConfig, load_config
from cnc_control.api.machine.router import router
from cnc_control.api.machine.service import ControlService


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage service lifecycle."""
    service: ControlService = app.state.service
    try:
        await service.start()
        logger.info("Machine API ready")
        yield
    finally:
        if service.is_running:
            await service.stop()


def create_app(
    config: Union[MachineConfig, Dict[str, Any], None] = None,
    channel: Optional[CommandChannel] = None
) -> FastAPI:
    """Create machine control application.

    Args:
        config: Configuration; loaded from config/machine.yaml when omitted
        channel: Channel override (tests)

    Returns:
        FastAPI application
    """
    if config is None:
        config = load_config()
    service = ControlService(config, channel=channel)

    app = FastAPI(
        title="CNC Control API",
        description="Machine state, safety-gated commands, diagnostics and health",
        version=service.config.version,
        lifespan=lifespan
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.service = service
    app.include_router(router)

    return app
