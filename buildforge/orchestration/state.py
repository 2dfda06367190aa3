from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, NoReturn
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .enums import ExecutionOutcome, Phase, ToolCallSource
from .exceptions import InvalidPlanError, OrchestrationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _read_only(self: Any, *args: Any, **kwargs: Any) -> NoReturn:
    raise TypeError(f"{type(self).__name__} is read-only")


class FrozenDict(dict):
    """``dict`` that refuses mutation; compares and serializes like a plain dict."""

    __slots__ = ()

    __setitem__ = __delitem__ = __ior__ = _read_only
    clear = pop = popitem = setdefault = update = _read_only

    def __reduce__(self) -> tuple[Any, ...]:
        return (type(self), (dict(self),))


class FrozenList(list):
    """``list`` that refuses mutation; compares and serializes like a plain list."""

    __slots__ = ()

    __setitem__ = __delitem__ = __iadd__ = __imul__ = _read_only
    append = extend = insert = pop = remove = clear = sort = reverse = _read_only

    def __reduce__(self) -> tuple[Any, ...]:
        return (type(self), (list(self),))


def freeze(value: Any) -> Any:
    """Return ``value`` with every nested container made read-only.

    Plain dicts and lists are copied into their frozen counterparts, so the
    result never aliases caller-owned objects. Values that are already frozen
    are returned unchanged, which keeps published history entries shared
    between successive states.
    """
    if isinstance(value, (FrozenDict, FrozenList)):
        return value
    if isinstance(value, BaseModel):
        changed = {}
        for name in type(value).model_fields:
            current = getattr(value, name)
            frozen = freeze(current)
            if frozen is not current:
                changed[name] = frozen
        return value.model_copy(update=changed) if changed else value
    if isinstance(value, Mapping):
        return FrozenDict((key, freeze(item)) for key, item in value.items())
    if isinstance(value, tuple):
        items = tuple(freeze(item) for item in value)
        if all(new is old for new, old in zip(items, value)):
            return value
        return items
    if isinstance(value, list):
        return FrozenList(freeze(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(freeze(item) for item in value)
    return value


class ErrorDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    message: str
    agent: str | None = None
    tool_name: str | None = None
    occurred_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_exception(cls, exc: OrchestrationError, *, occurred_at: datetime | None = None) -> "ErrorDetail":
        return cls(
            kind=exc.kind,
            message=exc.message,
            agent=exc.agent,
            tool_name=exc.tool_name,
            occurred_at=occurred_at or utcnow(),
        )


class ProjectPlan(BaseModel):
    """Plan proposed by the architect; immutable once approved."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    summary: str = Field(..., min_length=1, validation_alias=AliasChoices("summary", "overview", "title"))
    steps: tuple[str, ...] = Field(..., min_length=1)
    stack: dict[str, Any] = Field(default_factory=dict)

    @field_validator("summary", mode="before")
    @classmethod
    def _strip_summary(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("steps", mode="before")
    @classmethod
    def _coerce_steps(cls, value: Any) -> Any:
        if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
            raise ValueError("steps must be a list of step descriptions")
        steps: list[str] = []
        for item in value:
            if isinstance(item, Mapping):
                item = item.get("task") or item.get("title") or item.get("description") or ""
            if not isinstance(item, str):
                raise ValueError("plan steps must be text")
            text = item.strip()
            if text:
                steps.append(text)
        return tuple(steps)

    @classmethod
    def parse_candidate(cls, candidate: Any, *, agent: str | None = None) -> "ProjectPlan":
        if isinstance(candidate, ProjectPlan):
            return candidate
        if not isinstance(candidate, Mapping):
            raise InvalidPlanError("Plan must be an object with a summary and steps", agent=agent)
        try:
            return cls.model_validate(dict(candidate))
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'plan'}: {error['msg']}" for error in exc.errors()
            )
            raise InvalidPlanError(f"Plan is invalid ({problems})", agent=agent) from exc


class AppliedTransition(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: Phase
    agent: str | None = None
    skipped: tuple[str, ...] = ()


class ToolCallRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    tool_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    source: ToolCallSource = ToolCallSource.AGENT
    result: dict[str, Any] | None = None
    error: ErrorDetail | None = None
    applied_transition: AppliedTransition | None = None
    applied_at: datetime = Field(default_factory=utcnow)

    @property
    def succeeded(self) -> bool:
        return self.error is None


class AgentExecutionRecord(BaseModel):
    """One agent's stint as the current agent.

    Records are replaced rather than edited; once ``finished_at`` is set the
    record is sealed and every ``with_*`` helper refuses to derive a new one.
    """

    model_config = ConfigDict(frozen=True)

    agent: str
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    tool_calls: tuple[ToolCallRecord, ...] = ()
    outcome: ExecutionOutcome | None = None
    turns: int = 0
    narration: tuple[str, ...] = ()
    actions: tuple[dict[str, Any], ...] = ()

    @property
    def is_open(self) -> bool:
        return self.finished_at is None

    def with_tool_call(self, record: ToolCallRecord) -> "AgentExecutionRecord":
        self._ensure_open()
        return self.model_copy(update={"tool_calls": (*self.tool_calls, record)})

    def with_turn(
        self,
        *,
        narration: str | None = None,
        actions: tuple[dict[str, Any], ...] = (),
    ) -> "AgentExecutionRecord":
        self._ensure_open()
        update: dict[str, Any] = {"turns": self.turns + 1}
        if narration:
            update["narration"] = (*self.narration, narration)
        if actions:
            update["actions"] = (*self.actions, *actions)
        return self.model_copy(update=update)

    def closed(self, outcome: ExecutionOutcome, *, at: datetime) -> "AgentExecutionRecord":
        self._ensure_open()
        return self.model_copy(update={"outcome": outcome, "finished_at": at})

    def _ensure_open(self) -> None:
        if self.finished_at is not None:
            raise RuntimeError(f"History entry for '{self.agent}' is already finished")


class OrchestrationState(BaseModel):
    """Immutable, versioned view of the single pipeline run.

    The state machine publishes a new instance after every transition, so a
    reference handed to a caller never changes underneath it.
    """

    model_config = ConfigDict(frozen=True)

    run_id: UUID | None = None
    version: int = 0
    phase: Phase = Phase.IDLE
    current_agent: str | None = None
    user_request: str | None = None
    plan: ProjectPlan | None = None
    history: tuple[AgentExecutionRecord, ...] = ()
    pending_error: ErrorDetail | None = None
    deployment_url: str | None = None
    execution_steps: int = 0
    progress: int = Field(default=0, ge=0, le=100)
    status_message: str = "Waiting for task..."
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def open_entry(self) -> AgentExecutionRecord | None:
        if self.history and self.history[-1].is_open:
            return self.history[-1]
        return None


__all__ = [
    "utcnow",
    "FrozenDict",
    "FrozenList",
    "freeze",
    "ErrorDetail",
    "ProjectPlan",
    "AppliedTransition",
    "ToolCallRecord",
    "AgentExecutionRecord",
    "OrchestrationState",
]
