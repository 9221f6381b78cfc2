"""Machine API endpoints."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from cnc_control.api.base.base_errors import BAD_GATEWAY, BAD_REQUEST, CONFLICT, GATEWAY_TIMEOUT
from cnc_control.api.machine.dependencies import get_control_service
from cnc_control.api.machine.exceptions import (
    ChannelError,
    ChannelTimeout,
    CommandRejected,
    MalformedResponse,
    QueryErrorReason,
    StatusQueryError
)
from cnc_control.api.machine.models import (
    CommandResult,
    CommandStatus,
    ConnectionStatus,
    DiagnosticsReport,
    MachineLimits,
    MachineState,
    SerialPortInfo
)
from cnc_control.api.machine.service import ControlService
from cnc_control.utils.health import HealthSnapshot

router = APIRouter(prefix="/machine", tags=["machine"])


RESULT_STATUS_CODES = {
    CommandStatus.COMPLETED: status.HTTP_200_OK,
    CommandStatus.SAFETY_DENIED: CONFLICT,
    CommandStatus.BUSY: CONFLICT,
    CommandStatus.REJECTED: CONFLICT,
    CommandStatus.CHANNEL_ERROR: BAD_GATEWAY,
    CommandStatus.CHANNEL_TIMEOUT: GATEWAY_TIMEOUT,
}

COMMAND_RESPONSES = {
    CONFLICT: {"description": "Denied by safety gate, busy, or rejected by controller"},
    BAD_GATEWAY: {"description": "Controller transport failure"},
    GATEWAY_TIMEOUT: {"description": "Controller did not answer in time"},
}


class GcodeRequest(BaseModel):
    """Single G-code line."""

    gcode: str = Field(..., description="G-code line to send")


class CancelResponse(BaseModel):
    """Diagnostics cancellation result."""

    cancelled: bool = Field(..., description="Whether a running diagnostics run was signalled")


def _command_response(result: CommandResult) -> JSONResponse:
    return JSONResponse(
        status_code=RESULT_STATUS_CODES[result.status],
        content=result.model_dump(mode="json")
    )


@router.get(
    "/status",
    response_model=MachineState,
    responses={
        BAD_GATEWAY: {"description": "Controller unreachable or reply malformed"},
        GATEWAY_TIMEOUT: {"description": "Status query timed out"}
    }
)
async def get_status(
    service: ControlService = Depends(get_control_service)
) -> MachineState:
    """Query fresh machine status."""
    try:
        return await service.query()
    except StatusQueryError as e:
        logger.error(f"Status query failed: {e}")
        status_code = (
            GATEWAY_TIMEOUT
            if e.reason == QueryErrorReason.TIMEOUT
            else BAD_GATEWAY
        )
        raise e.to_http(
            status_code,
            reason=e.reason.value,
            cached=service.cached_state().model_dump(mode="json")
        )


@router.post(
    "/diagnostics",
    response_model=DiagnosticsReport,
    responses={
        CONFLICT: {"description": "Diagnostics already running"}
    }
)
async def run_diagnostics(
    service: ControlService = Depends(get_control_service)
) -> DiagnosticsReport:
    """Run the diagnostics sequence and return its report."""
    return await service.run_diagnostics()


@router.post("/diagnostics/cancel", response_model=CancelResponse)
async def cancel_diagnostics(
    service: ControlService = Depends(get_control_service)
) -> CancelResponse:
    """Cancel the running diagnostics before its next step."""
    return CancelResponse(cancelled=service.cancel_diagnostics())


@router.get("/diagnostics/history", response_model=List[DiagnosticsReport])
async def diagnostics_history(
    limit: Optional[int] = Query(None, ge=1, description="Maximum reports to return"),
    service: ControlService = Depends(get_control_service)
) -> List[DiagnosticsReport]:
    """Get recent diagnostics reports, newest first."""
    return service.diagnostics_history(limit)


@router.post("/unlock", response_model=CommandResult, responses=COMMAND_RESPONSES)
async def unlock(service: ControlService = Depends(get_control_service)):
    """Clear the alarm lock."""
    return _command_response(await service.unlock())


@router.post("/home", response_model=CommandResult, responses=COMMAND_RESPONSES)
async def home(service: ControlService = Depends(get_control_service)):
    """Run the homing cycle."""
    return _command_response(await service.home())


@router.post("/reset", response_model=CommandResult, responses=COMMAND_RESPONSES)
async def soft_reset(service: ControlService = Depends(get_control_service)):
    """Soft-reset the controller."""
    return _command_response(await service.soft_reset())


@router.post("/emergency-stop", response_model=CommandResult, responses=COMMAND_RESPONSES)
async def emergency_stop(service: ControlService = Depends(get_control_service)):
    """Halt all motion immediately."""
    return _command_response(await service.emergency_stop())


@router.post(
    "/gcode",
    response_model=CommandResult,
    responses={
        **COMMAND_RESPONSES,
        BAD_REQUEST: {"description": "Invalid G-code line"}
    }
)
async def send_gcode(
    request: GcodeRequest,
    service: ControlService = Depends(get_control_service)
):
    """Send a single line of G-code."""
    return _command_response(await service.send_gcode(request.gcode))


@router.post(
    "/connect",
    response_model=ConnectionStatus,
    responses={
        BAD_GATEWAY: {"description": "Failed to connect"}
    }
)
async def connect(
    service: ControlService = Depends(get_control_service)
) -> ConnectionStatus:
    """Open the controller connection."""
    return await service.connect()


@router.post("/disconnect", response_model=ConnectionStatus)
async def disconnect(
    service: ControlService = Depends(get_control_service)
) -> ConnectionStatus:
    """Close the controller connection."""
    return await service.disconnect()


@router.get("/connection", response_model=ConnectionStatus)
async def connection_status(
    service: ControlService = Depends(get_control_service)
) -> ConnectionStatus:
    """Get controller connection status."""
    return service.connection_status()


@router.get("/health", response_model=HealthSnapshot)
async def health(
    service: ControlService = Depends(get_control_service)
) -> HealthSnapshot:
    """Get aggregated health."""
    return await service.health()


class PortList(BaseModel):
    """Serial ports visible to the host."""

    ports: List[SerialPortInfo] = Field(default_factory=list)
    count: int = Field(..., description="Number of ports found")


@router.get(
    "/limits",
    response_model=MachineLimits,
    responses={
        CONFLICT: {"description": "Diagnostics running or settings request rejected"},
        BAD_GATEWAY: {"description": "Controller unreachable or settings reply malformed"},
        GATEWAY_TIMEOUT: {"description": "Settings request timed out"}
    }
)
async def get_limits(
    service: ControlService = Depends(get_control_service)
) -> MachineLimits:
    """Read travel limits from the controller settings."""
    try:
        return await service.limits()
    except ChannelTimeout as e:
        logger.error(f"Limits request timed out: {e}")
        raise e.to_http(GATEWAY_TIMEOUT)
    except CommandRejected as e:
        logger.error(str(e))
        raise e.to_http(CONFLICT)
    except (ChannelError, MalformedResponse) as e:
        logger.error(f"Limits request failed: {e}")
        raise e.to_http(BAD_GATEWAY)


@router.get("/ports", response_model=PortList)
async def list_ports(
    service: ControlService = Depends(get_control_service)
) -> PortList:
    """List serial ports the controller could be attached to."""
    ports = await service.list_ports()
    return PortList(ports=ports, count=len(ports))
