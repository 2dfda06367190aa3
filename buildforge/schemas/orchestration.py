from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ..agents.catalog import AgentDescriptor
from ..orchestration.exceptions import OrchestrationError
from ..orchestration.state import OrchestrationState


class StartAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["start"]
    user_request: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("user_request", "userRequest"),
    )


class ApprovePlanAction(BaseModel):
    action: Literal["approve_plan"]
    plan: dict[str, Any] | None = Field(
        default=None,
        description="Edited plan to approve; the proposed plan is used when omitted.",
    )


class ToolCallAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["tool_call"]
    tool_name: str = Field(..., min_length=1, validation_alias=AliasChoices("tool_name", "toolName"))
    parameters: dict[str, Any] = Field(default_factory=dict)


class GetStateAction(BaseModel):
    action: Literal["get_state"]


class ResetAction(BaseModel):
    action: Literal["reset"]


OrchestrationAction = Annotated[
    Union[StartAction, ApprovePlanAction, ToolCallAction, GetStateAction, ResetAction],
    Field(discriminator="action"),
]


class OrchestrationResponse(BaseModel):
    success: bool = True
    state: dict[str, Any]
    available_tools: list[str] = Field(default_factory=list)
    message: str | None = None

    @classmethod
    def from_state(
        cls,
        state: OrchestrationState,
        *,
        available_tools: list[str],
        message: str | None = None,
    ) -> "OrchestrationResponse":
        return cls(state=state.model_dump(mode="json"), available_tools=available_tools, message=message)


class StateSnapshotResponse(OrchestrationResponse):
    poll_interval_seconds: float


class OrchestrationErrorResponse(BaseModel):
    success: bool = False
    error: str
    error_type: str
    agent: str | None = None
    tool_name: str | None = None
    state: dict[str, Any]

    @classmethod
    def from_error(cls, exc: OrchestrationError, state: OrchestrationState) -> "OrchestrationErrorResponse":
        return cls(
            error=exc.message,
            error_type=exc.kind,
            agent=exc.agent,
            tool_name=exc.tool_name,
            state=state.model_dump(mode="json"),
        )


class AgentModel(BaseModel):
    id: str
    display_name: str
    role: str
    capabilities: list[str]
    backend_reference: str
    description: str
    skippable: bool
    tools: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_descriptor(cls, descriptor: AgentDescriptor, *, tools: list[dict[str, Any]]) -> "AgentModel":
        return cls(
            id=descriptor.id,
            display_name=descriptor.display_name,
            role=descriptor.role.value,
            capabilities=sorted(descriptor.capabilities),
            backend_reference=descriptor.backend_reference,
            description=descriptor.description,
            skippable=descriptor.skippable,
            tools=tools,
        )


__all__ = [
    "StartAction",
    "ApprovePlanAction",
    "ToolCallAction",
    "GetStateAction",
    "ResetAction",
    "OrchestrationAction",
    "OrchestrationResponse",
    "StateSnapshotResponse",
    "OrchestrationErrorResponse",
    "AgentModel",
]
