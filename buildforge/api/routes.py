from __future__ import annotations

from fastapi import APIRouter, Body, Depends, status
from fastapi.responses import JSONResponse

from ..core.logging import get_logger
from ..dependencies import get_orchestrator
from ..orchestration.exceptions import (
    InvalidPlanError,
    InvalidTransitionError,
    OrchestrationError,
    OutOfOrderHandoffError,
    ToolParameterError,
    UnknownToolError,
)
from ..orchestration.orchestrator import Orchestrator
from ..schemas.orchestration import (
    AgentModel,
    ApprovePlanAction,
    GetStateAction,
    OrchestrationAction,
    OrchestrationErrorResponse,
    OrchestrationResponse,
    ResetAction,
    StartAction,
    StateSnapshotResponse,
    ToolCallAction,
)

router = APIRouter()
logger = get_logger(name=__name__)

_ERROR_STATUS: tuple[tuple[type[OrchestrationError], int], ...] = (
    (InvalidPlanError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (UnknownToolError, status.HTTP_400_BAD_REQUEST),
    (ToolParameterError, status.HTTP_400_BAD_REQUEST),
    (OutOfOrderHandoffError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
)


def _status_for(exc: OrchestrationError) -> int:
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


@router.get("/health", tags=["health"])
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/orchestration", response_model=StateSnapshotResponse, tags=["orchestration"])
async def get_orchestration_state(
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> StateSnapshotResponse:
    state = orchestrator.get_state()
    return StateSnapshotResponse(
        state=state.model_dump(mode="json"),
        available_tools=orchestrator.available_tools(state),
        poll_interval_seconds=orchestrator.poll_interval_seconds,
    )


@router.post(
    "/orchestration",
    response_model=OrchestrationResponse,
    responses={
        400: {"model": OrchestrationErrorResponse},
        409: {"model": OrchestrationErrorResponse},
        422: {"model": OrchestrationErrorResponse},
    },
    tags=["orchestration"],
)
async def post_orchestration_action(
    payload: OrchestrationAction = Body(...),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> OrchestrationResponse | JSONResponse:
    try:
        if isinstance(payload, StartAction):
            state = await orchestrator.start(payload.user_request)
            message = "Orchestration started"
        elif isinstance(payload, ApprovePlanAction):
            state = await orchestrator.approve_plan(payload.plan)
            message = "Plan approved. Auto-execution started."
        elif isinstance(payload, ToolCallAction):
            state = await orchestrator.tool_call(payload.tool_name, payload.parameters)
            message = f"Tool {payload.tool_name} executed"
        elif isinstance(payload, ResetAction):
            state = await orchestrator.reset()
            message = "Orchestration reset"
        else:
            state = orchestrator.get_state()
            message = None
    except OrchestrationError as exc:
        logger.info("orchestration_action_rejected", action=payload.action, error_type=exc.kind, error=exc.message)
        body = OrchestrationErrorResponse.from_error(exc, orchestrator.get_state())
        return JSONResponse(status_code=_status_for(exc), content=body.model_dump(mode="json"))
    return OrchestrationResponse.from_state(
        state,
        available_tools=orchestrator.available_tools(state),
        message=message,
    )


@router.get("/agents", response_model=list[AgentModel], tags=["agents"])
async def list_agents(orchestrator: Orchestrator = Depends(get_orchestrator)) -> list[AgentModel]:
    catalog = orchestrator.catalog
    registry = orchestrator.registry
    return [
        AgentModel.from_descriptor(
            descriptor,
            tools=registry.schemas_for_agent(descriptor.id, catalog) if descriptor.executes else [],
        )
        for descriptor in catalog
    ]
