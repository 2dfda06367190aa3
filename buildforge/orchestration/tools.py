"""
Tool/Handoff Registry

Closed mapping from :class:`ToolKind` to the handler that turns a tool call into
a pipeline transition. Handlers never touch the live state: they read a
:class:`HandlerContext` and return a :class:`ToolTransition`, which the state
machine applies under its lock. The same context and parameters always yield
the same transition.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, cast

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from ..agents.catalog import BACKEND, DEVOPS, FRONTEND, INTEGRATOR, QA, AgentCatalog, UnknownAgentError
from .enums import Phase, ToolCategory, ToolKind
from .exceptions import FatalReportError, OutOfOrderHandoffError, ToolParameterError, UnknownToolError

__all__ = [
    "normalize_tool_name",
    "HandlerContext",
    "ToolTransition",
    "ToolSpec",
    "ToolRegistry",
    "HandoffParameters",
    "CompletionParameters",
    "ReportParameters",
]


_NAME_PATTERN = re.compile(r"[\\/\s.\-]+")


def normalize_tool_name(name: str) -> str:
    """Return the identifier used for registry lookups."""
    if not isinstance(name, str):
        raise UnknownToolError("Tool name must be a string")
    collapsed = _NAME_PATTERN.sub("_", name.strip())
    return collapsed.strip("_").lower()


class HandoffParameters(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    summary: str = ""
    skip_stages: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("skip_stages", "skipped_stages", "skip"),
    )
    rework: bool = False
    reason: str = ""


class CompletionParameters(BaseModel):
    model_config = ConfigDict(extra="allow")

    deployment_url: str | None = None
    summary: str = ""


class ReportParameters(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    message: str = Field(..., min_length=1, validation_alias=AliasChoices("message", "reason", "question"))
    fatal: bool = False


@dataclass(frozen=True, slots=True)
class HandlerContext:
    phase: Phase
    current_agent: str | None
    catalog: AgentCatalog


@dataclass(frozen=True, slots=True)
class ToolTransition:
    """Outcome of a handler: where the run goes next and what to record."""

    result: dict[str, Any]
    phase: Phase
    agent: str | None
    skipped: tuple[str, ...] = ()
    deployment_url: str | None = None
    fatal: FatalReportError | None = None


Handler = Callable[["ToolSpec", HandlerContext, BaseModel], ToolTransition]


@dataclass(frozen=True, slots=True)
class ToolSpec:
    kind: ToolKind
    category: ToolCategory
    description: str
    parameters_model: type[BaseModel]
    handler: Handler
    target: str | None = None
    payload_field: str | None = None
    payload_schema: Mapping[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.kind.value

    def parse_parameters(self, parameters: Mapping[str, Any] | None, *, agent: str | None = None) -> BaseModel:
        try:
            return self.parameters_model.model_validate(dict(parameters or {}))
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'parameters'}: {error['msg']}"
                for error in exc.errors()
            )
            raise ToolParameterError(
                f"Invalid parameters for '{self.name}' ({problems})",
                agent=agent,
                tool_name=self.name,
            ) from exc

    def to_schema(self) -> dict[str, Any]:
        """Function-calling schema handed to the agent backend."""
        properties: dict[str, Any] = {}
        if self.payload_field:
            properties[self.payload_field] = dict(self.payload_schema)
        if self.category is ToolCategory.HANDOFF:
            properties["summary"] = {"type": "string", "description": "Summary of the work handed over."}
            properties["skip_stages"] = {
                "type": "array",
                "items": {"type": "string"},
                "description": "Intermediate stages deliberately skipped (only stages marked skippable).",
            }
        elif self.category is ToolCategory.COMPLETION:
            properties["summary"] = {"type": "string", "description": "Short release note."}
        else:
            properties["message"] = {"type": "string", "description": "What is blocking or unclear."}
            properties["fatal"] = {"type": "boolean", "description": "Stop the run when the blocker cannot be resolved."}
        required = ["message"] if self.category is ToolCategory.REPORTING else []
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {"type": "object", "properties": properties, "required": required},
            },
        }


def _handle_handoff(spec: ToolSpec, context: HandlerContext, params: BaseModel) -> ToolTransition:
    """Validate a handoff against pipeline order.

    Forward handoffs must declare every skipped stage, backward ones need
    ``rework``. A handoff to the current agent is rejected outright instead of
    being left to burn the step budget.
    """
    params = cast(HandoffParameters, params)
    catalog = context.catalog
    source = context.current_agent
    target = spec.target or ""
    if source is None:
        raise OutOfOrderHandoffError(f"'{spec.name}' requires an active agent", tool_name=spec.name)
    if target not in catalog:
        raise OutOfOrderHandoffError(
            f"Target agent '{target}' not found", agent=source, tool_name=spec.name
        )
    if target == source:
        raise OutOfOrderHandoffError(f"'{source}' cannot hand off to itself", agent=source, tool_name=spec.name)

    try:
        source_index = catalog.position(source)
    except UnknownAgentError:
        raise OutOfOrderHandoffError(f"Current agent '{source}' is not in the catalog", tool_name=spec.name) from None
    target_index = catalog.position(target)
    payload = (params.model_extra or {}).get(spec.payload_field) if spec.payload_field else None
    result: dict[str, Any] = {"handoff": True, "from": source, "to": target}
    if params.summary:
        result["summary"] = params.summary
    if payload is not None:
        result[spec.payload_field or "payload"] = payload

    if target_index < source_index:
        if not params.rework:
            raise OutOfOrderHandoffError(
                f"Handoff from '{source}' back to '{target}' violates pipeline order; set rework to send work back",
                agent=source,
                tool_name=spec.name,
            )
        if not catalog.get(target).executes:
            raise OutOfOrderHandoffError(
                f"Execution cannot return to '{target}' after plan approval", agent=source, tool_name=spec.name
            )
        result["rework"] = True
        if params.reason:
            result["reason"] = params.reason
        return ToolTransition(result=result, phase=Phase.EXECUTING, agent=target)

    intermediate = catalog.between(source, target)
    declared = set(params.skip_stages)
    unknown = sorted(declared - {item.id for item in intermediate})
    if unknown:
        raise ToolParameterError(
            f"skip_stages lists stages outside '{source}' -> '{target}': {', '.join(unknown)}",
            agent=source,
            tool_name=spec.name,
        )
    undeclared = [item.id for item in intermediate if item.id not in declared]
    if undeclared:
        raise OutOfOrderHandoffError(
            f"Handoff from '{source}' to '{target}' skips {', '.join(undeclared)}",
            agent=source,
            tool_name=spec.name,
        )
    locked = [item.id for item in intermediate if not item.skippable]
    if locked:
        raise OutOfOrderHandoffError(
            f"Stage(s) {', '.join(locked)} cannot be skipped", agent=source, tool_name=spec.name
        )
    skipped = tuple(item.id for item in intermediate)
    if skipped:
        result["skipped"] = list(skipped)
    return ToolTransition(result=result, phase=Phase.EXECUTING, agent=target, skipped=skipped)


def _handle_completion(spec: ToolSpec, context: HandlerContext, params: BaseModel) -> ToolTransition:
    params = cast(CompletionParameters, params)
    last = context.catalog.last().id
    if context.current_agent != last:
        raise OutOfOrderHandoffError(
            f"'{spec.name}' is only available to '{last}', not '{context.current_agent}'",
            agent=context.current_agent,
            tool_name=spec.name,
        )
    result: dict[str, Any] = {"completed": True}
    if params.deployment_url:
        result["deployment_url"] = params.deployment_url
    if params.summary:
        result["summary"] = params.summary
    return ToolTransition(
        result=result,
        phase=Phase.COMPLETE,
        agent=None,
        deployment_url=params.deployment_url,
    )


def _handle_report(spec: ToolSpec, context: HandlerContext, params: BaseModel) -> ToolTransition:
    params = cast(ReportParameters, params)
    result: dict[str, Any] = {"reported": spec.name, "message": params.message, "fatal": params.fatal}
    if params.fatal:
        error = FatalReportError(
            f"{context.current_agent} reported a fatal blocker: {params.message}",
            agent=context.current_agent,
            tool_name=spec.name,
        )
        return ToolTransition(result=result, phase=Phase.ERROR, agent=None, fatal=error)
    return ToolTransition(result=result, phase=context.phase, agent=context.current_agent)


def _handoff_spec(kind: ToolKind, target: str, description: str, payload_field: str, payload_schema: dict[str, Any]) -> ToolSpec:
    return ToolSpec(
        kind=kind,
        category=ToolCategory.HANDOFF,
        description=description,
        parameters_model=HandoffParameters,
        handler=_handle_handoff,
        target=target,
        payload_field=payload_field,
        payload_schema=payload_schema,
    )


def _build_specs() -> list[ToolSpec]:
    return [
        _handoff_spec(
            ToolKind.HANDOFF_TO_BACKEND,
            BACKEND,
            "Deliver the structured plan and delegate backend work to the Backend Engineer.",
            "plan_json",
            {"type": "object", "description": "The structured plan: summary, steps and stack."},
        ),
        _handoff_spec(
            ToolKind.HANDOFF_TO_FRONTEND,
            FRONTEND,
            "Call when the backend is complete to delegate UI work to the Frontend Engineer.",
            "backend_artifacts",
            {"type": "object", "description": "API endpoints, schemas and auth config created by the backend."},
        ),
        _handoff_spec(
            ToolKind.HANDOFF_TO_INTEGRATOR,
            INTEGRATOR,
            "Call when the frontend is complete so the Integrator can verify connections.",
            "frontend_artifacts",
            {"type": "object", "description": "Components and pages created by the frontend."},
        ),
        _handoff_spec(
            ToolKind.HANDOFF_TO_QA,
            QA,
            "Call when integration is complete so QA can test and harden the application.",
            "integration_status",
            {"type": "string", "description": "Summary of integration verification."},
        ),
        _handoff_spec(
            ToolKind.HANDOFF_TO_DEVOPS,
            DEVOPS,
            "Call when QA is complete so DevOps can deploy.",
            "qa_report",
            {"type": "string", "description": "Summary of QA findings and fixes."},
        ),
        ToolSpec(
            kind=ToolKind.MARK_COMPLETE,
            category=ToolCategory.COMPLETION,
            description="Call when deployment is successful and the project is live.",
            parameters_model=CompletionParameters,
            handler=_handle_completion,
            payload_field="deployment_url",
            payload_schema={"type": "string", "description": "The live URL where the project is deployed."},
        ),
        ToolSpec(
            kind=ToolKind.REPORT_BLOCKER,
            category=ToolCategory.REPORTING,
            description="Report a blocker; set fatal when the run cannot continue.",
            parameters_model=ReportParameters,
            handler=_handle_report,
        ),
        ToolSpec(
            kind=ToolKind.REQUEST_CLARIFICATION,
            category=ToolCategory.REPORTING,
            description="Record a question for the user without handing off.",
            parameters_model=ReportParameters,
            handler=_handle_report,
        ),
    ]


class ToolRegistry:
    """Read-only registry of pipeline tools keyed by :class:`ToolKind`."""

    def __init__(self, specs: Iterable[ToolSpec]) -> None:
        self._specs: dict[ToolKind, ToolSpec] = {}
        for spec in specs:
            if spec.kind in self._specs:
                raise ValueError(f"Duplicate tool '{spec.name}'")
            self._specs[spec.kind] = spec

    @classmethod
    def default(cls) -> "ToolRegistry":
        return cls(_build_specs())

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        try:
            self.resolve(name)
        except UnknownToolError:
            return False
        return True

    def resolve(self, name: str) -> ToolSpec:
        normalized = normalize_tool_name(name)
        try:
            kind = ToolKind(normalized)
        except ValueError:
            raise UnknownToolError(f"Unknown tool: {name}", tool_name=str(name)) from None
        spec = self._specs.get(kind)
        if spec is None:
            raise UnknownToolError(f"Tool '{name}' is not registered", tool_name=str(name))
        return spec

    def list(self) -> list[str]:
        return [spec.name for spec in self._specs.values()]

    def evaluate(
        self,
        name: str,
        parameters: Mapping[str, Any] | None,
        context: HandlerContext,
    ) -> tuple[ToolSpec, ToolTransition]:
        spec = self.resolve(name)
        params = spec.parse_parameters(parameters, agent=context.current_agent)
        return spec, spec.handler(spec, context, params)

    def tools_for_agent(self, agent_id: str, catalog: AgentCatalog) -> list[ToolSpec]:
        position = catalog.position(agent_id)
        tools: list[ToolSpec] = []
        for spec in self._specs.values():
            if spec.category is ToolCategory.HANDOFF:
                if spec.target in catalog and catalog.position(spec.target) > position:
                    tools.append(spec)
            elif spec.category is ToolCategory.COMPLETION:
                if agent_id == catalog.last().id:
                    tools.append(spec)
            else:
                tools.append(spec)
        return tools

    def schemas_for_agent(self, agent_id: str, catalog: AgentCatalog) -> list[dict[str, Any]]:
        return [spec.to_schema() for spec in self.tools_for_agent(agent_id, catalog)]
