"""
Orchestration State Machine

Owns the single authoritative :class:`OrchestrationState`. Every mutation runs
under one ``asyncio.Lock`` and publishes a brand-new frozen state with a bumped
``version``. Published states are deeply read-only (nested parameters, results
and plan details included) and share nothing with caller-supplied objects, so
readers get the current reference without locking or copying.

Two families of entry points exist:

* public operations (``start``, ``approve_plan``, ``tool_call``, ``reset``,
  ``get_state``) which raise :class:`OrchestrationError` subclasses when an
  event is not accepted and leave the state untouched in that case;
* driver hooks (``begin_turn``, ``record_turn``, ``propose_plan``,
  ``apply_agent_tool_call``, ``fail_run``) which take the ``run_id`` the driver
  was launched for and turn into no-ops once that run has been reset or
  superseded. Failures inside a driver step are recorded on the state instead
  of being raised.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Mapping
from uuid import UUID, uuid4

from ..agents.catalog import AgentCatalog
from ..core.config import OrchestrationSettings
from ..core.logging import get_logger
from ..core.metrics import STEP_BUDGET_EXHAUSTED_TOTAL, record_tool_call, record_transition
from .enums import ACTIVE_PHASES, ExecutionOutcome, Phase, ToolCallSource, ToolCategory
from .exceptions import (
    InvalidTransitionError,
    OrchestrationError,
    RunConflictError,
    StepBudgetExceededError,
)
from .parsing import AgentResponse, ParsedToolCall
from .state import (
    AgentExecutionRecord,
    AppliedTransition,
    ErrorDetail,
    OrchestrationState,
    ProjectPlan,
    ToolCallRecord,
    freeze,
    utcnow,
)
from .tools import HandlerContext, ToolRegistry, ToolSpec, ToolTransition

logger = get_logger(name=__name__)

_AWAITING_APPROVAL_PROGRESS = 15
_AWAITING_APPROVAL_MESSAGE = "Plan ready. Awaiting approval..."
_COMPLETE_MESSAGE = "Project successfully deployed!"
_IDLE_MESSAGE = "Waiting for task..."


@dataclass(frozen=True, slots=True)
class TurnContext:
    """Everything the driver needs to invoke the current agent once."""

    run_id: UUID
    phase: Phase
    agent: str
    user_request: str
    plan: ProjectPlan | None
    artifact: Any
    prior_outputs: tuple[dict[str, Any], ...]
    recent_results: tuple[dict[str, Any], ...]
    step: int


class OrchestrationStateMachine:
    def __init__(
        self,
        *,
        catalog: AgentCatalog,
        registry: ToolRegistry,
        settings: OrchestrationSettings,
    ) -> None:
        self._catalog = catalog
        self._registry = registry
        self._settings = settings
        self._lock = asyncio.Lock()
        self._state = OrchestrationState()

    @property
    def catalog(self) -> AgentCatalog:
        return self._catalog

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def settings(self) -> OrchestrationSettings:
        return self._settings

    def get_state(self) -> OrchestrationState:
        return self._state

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(self, user_request: str) -> OrchestrationState:
        request = (user_request or "").strip()
        if not request:
            raise InvalidTransitionError("start requires a non-empty user request")
        async with self._lock:
            previous = self._state
            if previous.phase in ACTIVE_PHASES:
                if self._settings.start_policy != "supersede":
                    raise RunConflictError(
                        f"A run is already {previous.phase.value}; reset it before starting another"
                    )
                logger.warning(
                    "orchestration_superseded",
                    previous_run_id=str(previous.run_id),
                    previous_phase=previous.phase.value,
                )
            planner = self._catalog.planner()
            now = utcnow()
            state = self._commit(
                OrchestrationState(
                    run_id=uuid4(),
                    phase=Phase.PLANNING,
                    current_agent=planner.id,
                    user_request=request,
                    history=(AgentExecutionRecord(agent=planner.id, started_at=now),),
                ),
                previous=previous,
            )
        logger.info("orchestration_started", run_id=str(state.run_id), agent=planner.id)
        return state

    async def approve_plan(self, plan: ProjectPlan | Mapping[str, Any] | None = None) -> OrchestrationState:
        """Accept the (possibly edited) plan and hand the run to the first executor.

        When ``plan`` is omitted the plan proposed by the architect is approved.
        """
        async with self._lock:
            previous = self._state
            if previous.phase is not Phase.AWAITING_APPROVAL:
                raise InvalidTransitionError(
                    f"No plan is awaiting approval (phase is {previous.phase.value})"
                )
            approved = ProjectPlan.parse_candidate(plan if plan is not None else previous.plan)
            first = self._catalog.first_executor()
            state = self._commit(
                previous.model_copy(
                    update={
                        "phase": Phase.EXECUTING,
                        "current_agent": first.id,
                        "plan": approved,
                        "history": (*previous.history, AgentExecutionRecord(agent=first.id, started_at=utcnow())),
                    }
                ),
                previous=previous,
            )
        logger.info("plan_approved", run_id=str(state.run_id), agent=first.id, steps=len(approved.steps))
        return state

    async def tool_call(
        self,
        tool_name: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> OrchestrationState:
        """Apply a client-issued tool call.

        Rejected calls raise and leave the state untouched. During planning
        only reporting tools are accepted; everything else waits for approval.
        """
        async with self._lock:
            previous = self._state
            try:
                if previous.phase not in ACTIVE_PHASES:
                    raise InvalidTransitionError(
                        f"No active execution context for '{tool_name}' (phase is {previous.phase.value})",
                        agent=previous.current_agent,
                        tool_name=tool_name,
                    )
                spec, transition = self._registry.evaluate(tool_name, parameters, self._handler_context(previous))
                if previous.phase is Phase.PLANNING and spec.category is not ToolCategory.REPORTING:
                    raise InvalidTransitionError(
                        f"'{spec.name}' is not available until the plan is approved",
                        agent=previous.current_agent,
                        tool_name=spec.name,
                    )
            except OrchestrationError as exc:
                record_tool_call(str(tool_name), source=ToolCallSource.CLIENT.value, outcome="rejected")
                logger.info(
                    "tool_call_rejected",
                    run_id=str(previous.run_id) if previous.run_id else None,
                    tool=tool_name,
                    phase=previous.phase.value,
                    error_type=exc.kind,
                    error=exc.message,
                )
                raise
            state = self._apply_transition(previous, spec, parameters, transition, source=ToolCallSource.CLIENT)
        return state

    async def reset(self) -> OrchestrationState:
        async with self._lock:
            previous = self._state
            state = self._commit(OrchestrationState(), previous=previous)
        logger.info(
            "orchestration_reset",
            previous_run_id=str(previous.run_id) if previous.run_id else None,
            previous_phase=previous.phase.value,
        )
        return state

    def in_phase(self, run_id: UUID, phase: Phase) -> bool:
        state = self._state
        return state.run_id == run_id and state.phase is phase

    def available_tools(self, state: OrchestrationState | None = None) -> list[str]:
        state = state or self._state
        if state.current_agent is None:
            return []
        specs = self._registry.tools_for_agent(state.current_agent, self._catalog)
        if state.phase is Phase.PLANNING:
            specs = [spec for spec in specs if spec.category is ToolCategory.REPORTING]
        return [spec.name for spec in specs]

    # ------------------------------------------------------------------
    # Driver hooks
    # ------------------------------------------------------------------

    async def begin_turn(self, run_id: UUID) -> TurnContext | None:
        """Account for one agent turn and return its context.

        Returns ``None`` when the run is stale or no longer active. Execution
        turns are charged against the step budget; once it is spent the run
        is moved to ``error`` instead.
        """
        async with self._lock:
            state = self._state
            if state.run_id != run_id or state.phase not in ACTIVE_PHASES or state.current_agent is None:
                return None
            if state.phase is Phase.EXECUTING:
                budget = self._settings.step_budget
                if state.execution_steps >= budget:
                    STEP_BUDGET_EXHAUSTED_TOTAL.inc()
                    self._fail(
                        state,
                        StepBudgetExceededError(
                            f"Step budget of {budget} agent turns exhausted before completion",
                            agent=state.current_agent,
                        ),
                    )
                    return None
                state = self._commit(
                    state.model_copy(update={"execution_steps": state.execution_steps + 1}),
                    previous=state,
                )
            return self._turn_context(state)

    async def record_turn(self, run_id: UUID, agent: str, response: AgentResponse) -> bool:
        async with self._lock:
            state = self._state
            if not self._is_current(state, run_id, agent):
                return False
            entry = state.open_entry
            if entry is None:
                return False
            updated = entry.with_turn(narration=response.narration, actions=response.actions)
            self._commit(
                state.model_copy(update={"history": (*state.history[:-1], updated)}),
                previous=state,
            )
        return True

    async def propose_plan(self, run_id: UUID, candidate: Any) -> OrchestrationState | None:
        """Record the architect's plan; raises ``InvalidPlanError`` when malformed."""
        async with self._lock:
            state = self._state
            if state.run_id != run_id or state.phase is not Phase.PLANNING:
                return None
            plan = ProjectPlan.parse_candidate(candidate, agent=state.current_agent)
            now = utcnow()
            history = state.history
            entry = state.open_entry
            if entry is not None:
                history = (*history[:-1], entry.closed(ExecutionOutcome.SUCCESS, at=now))
            published = self._commit(
                state.model_copy(
                    update={
                        "phase": Phase.AWAITING_APPROVAL,
                        "current_agent": None,
                        "plan": plan,
                        "history": history,
                    }
                ),
                previous=state,
            )
        logger.info("plan_proposed", run_id=str(run_id), steps=len(plan.steps))
        return published

    async def apply_agent_tool_call(self, run_id: UUID, agent: str, call: ParsedToolCall) -> bool:
        """Apply one tool call emitted by ``agent``.

        Returns ``True`` while the same agent remains current in ``executing``,
        which is the condition for applying the next call of the same response.
        A rejected call is recorded on the agent's entry and fails the run.
        """
        async with self._lock:
            state = self._state
            if state.phase is not Phase.EXECUTING or not self._is_current(state, run_id, agent):
                logger.info("driver_run_stale", run_id=str(run_id), agent=agent, tool=call.name)
                return False
            try:
                spec, transition = self._registry.evaluate(call.name, call.arguments, self._handler_context(state))
            except OrchestrationError as exc:
                record_tool_call(call.name, source=ToolCallSource.AGENT.value, outcome="rejected")
                logger.warning(
                    "agent_tool_call_rejected",
                    run_id=str(run_id),
                    agent=agent,
                    tool=call.name,
                    error_type=exc.kind,
                    error=exc.message,
                )
                failed = ToolCallRecord(
                    tool_name=call.name,
                    parameters=dict(call.arguments),
                    source=ToolCallSource.AGENT,
                    error=ErrorDetail.from_exception(exc),
                )
                self._fail(state, exc, record=failed)
                return False
            published = self._apply_transition(state, spec, call.arguments, transition, source=ToolCallSource.AGENT)
        return published.phase is Phase.EXECUTING and published.current_agent == agent

    async def fail_run(self, run_id: UUID, error: OrchestrationError) -> bool:
        async with self._lock:
            state = self._state
            if state.run_id != run_id or state.phase not in ACTIVE_PHASES:
                return False
            self._fail(state, error)
        return True

    # ------------------------------------------------------------------
    # Internals (lock held)
    # ------------------------------------------------------------------

    def _handler_context(self, state: OrchestrationState) -> HandlerContext:
        return HandlerContext(phase=state.phase, current_agent=state.current_agent, catalog=self._catalog)

    @staticmethod
    def _is_current(state: OrchestrationState, run_id: UUID, agent: str) -> bool:
        return state.run_id == run_id and state.phase in ACTIVE_PHASES and state.current_agent == agent

    def _apply_transition(
        self,
        state: OrchestrationState,
        spec: ToolSpec,
        parameters: Mapping[str, Any] | None,
        transition: ToolTransition,
        *,
        source: ToolCallSource,
    ) -> OrchestrationState:
        now = utcnow()
        record = ToolCallRecord(
            tool_name=spec.name,
            parameters=dict(parameters or {}),
            source=source,
            result=transition.result,
            applied_transition=AppliedTransition(
                phase=transition.phase,
                agent=transition.agent,
                skipped=transition.skipped,
            ),
            applied_at=now,
        )
        entry = state.open_entry
        if entry is None:
            raise RuntimeError(f"No open history entry for '{state.current_agent}'")
        entry = entry.with_tool_call(record)
        history = list(state.history[:-1])
        update: dict[str, Any] = {}

        if transition.phase is Phase.ERROR:
            history.append(entry.closed(ExecutionOutcome.FAILURE, at=now))
            update.update(
                phase=Phase.ERROR,
                current_agent=None,
                pending_error=ErrorDetail.from_exception(transition.fatal, occurred_at=now)
                if transition.fatal is not None
                else None,
            )
        elif transition.phase is Phase.COMPLETE:
            history.append(entry.closed(ExecutionOutcome.SUCCESS, at=now))
            update.update(phase=Phase.COMPLETE, current_agent=None, deployment_url=transition.deployment_url)
        elif transition.agent != state.current_agent and transition.agent is not None:
            history.append(entry.closed(ExecutionOutcome.SUCCESS, at=now))
            for skipped in transition.skipped:
                history.append(
                    AgentExecutionRecord(
                        agent=skipped,
                        started_at=now,
                        finished_at=now,
                        outcome=ExecutionOutcome.SKIPPED,
                    )
                )
            history.append(AgentExecutionRecord(agent=transition.agent, started_at=now))
            update["current_agent"] = transition.agent
        else:
            history.append(entry)

        update["history"] = tuple(history)
        published = self._commit(state.model_copy(update=update), previous=state)
        record_tool_call(spec.name, source=source.value, outcome="applied")
        logger.info(
            "tool_call_applied",
            run_id=str(state.run_id),
            tool=spec.name,
            source=source.value,
            from_agent=state.current_agent,
            to_agent=published.current_agent,
            phase=published.phase.value,
            skipped=list(transition.skipped) or None,
        )
        return published

    def _fail(
        self,
        state: OrchestrationState,
        error: OrchestrationError,
        *,
        record: ToolCallRecord | None = None,
    ) -> OrchestrationState:
        now = utcnow()
        history = state.history
        entry = state.open_entry
        if entry is not None:
            if record is not None:
                entry = entry.with_tool_call(record)
            history = (*history[:-1], entry.closed(ExecutionOutcome.FAILURE, at=now))
        published = self._commit(
            state.model_copy(
                update={
                    "phase": Phase.ERROR,
                    "current_agent": None,
                    "history": history,
                    "pending_error": ErrorDetail.from_exception(error, occurred_at=now),
                }
            ),
            previous=state,
        )
        logger.error(
            "orchestration_failed",
            run_id=str(state.run_id),
            agent=error.agent or state.current_agent,
            error_type=error.kind,
            error=error.message,
        )
        return published

    def _commit(self, state: OrchestrationState, *, previous: OrchestrationState) -> OrchestrationState:
        progress, message = self._presentation(state)
        published = freeze(
            state.model_copy(
                update={
                    "version": previous.version + 1,
                    "progress": progress,
                    "status_message": message,
                    "updated_at": utcnow(),
                }
            )
        )
        self._state = published
        record_transition(previous.phase.value, published.phase.value)
        return published

    def _presentation(self, state: OrchestrationState) -> tuple[int, str]:
        if state.phase in ACTIVE_PHASES and state.current_agent in self._catalog:
            descriptor = self._catalog.get(state.current_agent)  # type: ignore[arg-type]
            return descriptor.progress, descriptor.status_message
        if state.phase is Phase.AWAITING_APPROVAL:
            return _AWAITING_APPROVAL_PROGRESS, _AWAITING_APPROVAL_MESSAGE
        if state.phase is Phase.COMPLETE:
            return 100, _COMPLETE_MESSAGE
        if state.phase is Phase.ERROR:
            detail = state.pending_error.message if state.pending_error else "unknown error"
            return 0, f"Execution failed: {detail}"
        return 0, _IDLE_MESSAGE

    def _turn_context(self, state: OrchestrationState) -> TurnContext:
        agent = state.current_agent or ""
        planner = self._catalog.planner().id
        artifact: Any = None
        prior: list[dict[str, Any]] = []
        for entry in state.history[:-1]:
            if entry.agent == planner:
                continue
            summary: Any = entry.narration[-1] if entry.narration else None
            for call in entry.tool_calls:
                if call.result and call.result.get("summary"):
                    summary = call.result["summary"]
            prior.append({"agent": entry.agent, "outcome": entry.outcome.value if entry.outcome else None, "summary": summary})
        for entry in reversed(state.history):
            found = False
            for call in reversed(entry.tool_calls):
                transition = call.applied_transition
                if call.result and transition is not None and transition.agent == agent and call.result.get("handoff"):
                    payload_field = self._registry.resolve(call.tool_name).payload_field
                    artifact = call.result.get(payload_field) if payload_field else None
                    found = True
                    break
            if found:
                break
        current = state.open_entry
        recent = tuple(
            {"tool": call.tool_name, "result": call.result, "error": call.error.message if call.error else None}
            for call in (current.tool_calls if current is not None else ())
        )
        return TurnContext(
            run_id=state.run_id,  # type: ignore[arg-type]
            phase=state.phase,
            agent=agent,
            user_request=state.user_request or "",
            plan=state.plan,
            artifact=artifact,
            prior_outputs=tuple(prior),
            recent_results=recent,
            step=state.execution_steps,
        )


__all__ = ["OrchestrationStateMachine", "TurnContext"]
