from __future__ import annotations

import asyncio

import pytest

from buildforge.agents.catalog import AgentCatalog
from buildforge.core.config import OrchestrationSettings
from buildforge.orchestration.enums import ExecutionOutcome, Phase, ToolCallSource
from buildforge.orchestration.exceptions import (
    InvalidPlanError,
    InvalidTransitionError,
    OutOfOrderHandoffError,
    RunConflictError,
    ToolParameterError,
    UnknownToolError,
)
from buildforge.orchestration.machine import OrchestrationStateMachine
from buildforge.orchestration.parsing import ParsedToolCall
from buildforge.orchestration.state import OrchestrationState
from buildforge.orchestration.tools import ToolRegistry
from tests.helpers.stubs import TODO_PLAN


def _machine(**settings: object) -> OrchestrationStateMachine:
    return OrchestrationStateMachine(
        catalog=AgentCatalog.default(),
        registry=ToolRegistry.default(),
        settings=OrchestrationSettings(**settings),
    )


def assert_invariants(state: OrchestrationState) -> None:
    if state.phase in {Phase.AWAITING_APPROVAL, Phase.EXECUTING, Phase.COMPLETE}:
        assert state.plan is not None
    assert (state.current_agent is not None) == (state.phase in {Phase.PLANNING, Phase.EXECUTING})
    if state.phase is Phase.ERROR:
        assert state.pending_error is not None
    open_entries = [entry for entry in state.history if entry.is_open]
    assert len(open_entries) <= 1
    if open_entries:
        assert state.history[-1].is_open
        assert state.history[-1].agent == state.current_agent


async def _awaiting_approval(machine: OrchestrationStateMachine) -> OrchestrationState:
    state = await machine.start("build a todo app")
    published = await machine.propose_plan(state.run_id, TODO_PLAN)
    assert published is not None
    return published


async def _executing(machine: OrchestrationStateMachine) -> OrchestrationState:
    await _awaiting_approval(machine)
    return await machine.approve_plan()


@pytest.mark.asyncio
async def test_initial_state_is_idle() -> None:
    state = _machine().get_state()

    assert state.phase is Phase.IDLE
    assert state.history == ()
    assert state.status_message == "Waiting for task..."
    assert_invariants(state)


@pytest.mark.asyncio
async def test_start_opens_architect_entry() -> None:
    machine = _machine()

    state = await machine.start("  build a todo app  ")

    assert state.phase is Phase.PLANNING
    assert state.current_agent == "architect"
    assert state.user_request == "build a todo app"
    assert state.run_id is not None
    assert state.progress == 10
    assert [entry.agent for entry in state.history] == ["architect"]
    assert_invariants(state)


@pytest.mark.asyncio
async def test_start_requires_request_text() -> None:
    machine = _machine()

    with pytest.raises(InvalidTransitionError):
        await machine.start("   ")
    assert machine.get_state().phase is Phase.IDLE


@pytest.mark.asyncio
async def test_plan_proposal_moves_to_awaiting_approval() -> None:
    machine = _machine()

    state = await _awaiting_approval(machine)

    assert state.phase is Phase.AWAITING_APPROVAL
    assert state.current_agent is None
    assert state.plan is not None
    assert state.plan.summary == "Todo app"
    assert state.plan.steps == ("scaffold", "api", "ui")
    assert state.history[0].outcome is ExecutionOutcome.SUCCESS
    assert state.progress == 15
    assert_invariants(state)


@pytest.mark.asyncio
async def test_malformed_plan_keeps_planning() -> None:
    machine = _machine()
    state = await machine.start("build a todo app")

    with pytest.raises(InvalidPlanError):
        await machine.propose_plan(state.run_id, {"summary": "", "steps": []})

    assert machine.get_state().phase is Phase.PLANNING


@pytest.mark.asyncio
async def test_approve_plan_hands_over_to_backend() -> None:
    machine = _machine()
    await _awaiting_approval(machine)

    state = await machine.approve_plan({"summary": "Todo app v2", "steps": ["api", "ui"]})

    assert state.phase is Phase.EXECUTING
    assert state.current_agent == "backend"
    assert state.plan is not None and state.plan.summary == "Todo app v2"
    assert state.history[-1].agent == "backend" and state.history[-1].is_open
    assert state.status_message.startswith("Scaffolding backend")
    assert_invariants(state)


@pytest.mark.asyncio
async def test_approve_plan_rejects_invalid_plan_without_mutation() -> None:
    machine = _machine()
    before = await _awaiting_approval(machine)

    with pytest.raises(InvalidPlanError):
        await machine.approve_plan({"summary": "Todo", "steps": "scaffold"})

    assert machine.get_state() is before


@pytest.mark.asyncio
async def test_approve_plan_requires_awaiting_approval() -> None:
    machine = _machine()

    with pytest.raises(InvalidTransitionError):
        await machine.approve_plan(TODO_PLAN)

    await _executing(machine)
    with pytest.raises(InvalidTransitionError):
        await machine.approve_plan(TODO_PLAN)


@pytest.mark.asyncio
async def test_deploy_while_awaiting_approval_is_rejected() -> None:
    machine = _machine()
    before = await _awaiting_approval(machine)

    with pytest.raises(InvalidTransitionError, match="No active execution context"):
        await machine.tool_call("deploy", {})

    assert machine.get_state() is before


@pytest.mark.asyncio
async def test_architect_cannot_hand_off_straight_to_qa() -> None:
    machine = _machine()
    before = await machine.start("build a todo app")

    with pytest.raises(OutOfOrderHandoffError):
        await machine.tool_call("handoff_to_qa", {"integration_status": "n/a"})

    state = machine.get_state()
    assert state is before
    assert state.current_agent == "architect"


@pytest.mark.asyncio
async def test_handoffs_wait_for_plan_approval() -> None:
    machine = _machine()
    await machine.start("build a todo app")

    with pytest.raises(InvalidTransitionError):
        await machine.tool_call("handoff_to_backend", {"plan_json": TODO_PLAN})

    note = await machine.tool_call("request_clarification", {"message": "Web or mobile?"})
    assert note.phase is Phase.PLANNING
    assert note.history[-1].tool_calls[0].tool_name == "request_clarification"


@pytest.mark.asyncio
async def test_client_handoff_advances_current_agent() -> None:
    machine = _machine()
    await _executing(machine)

    state = await machine.tool_call("handoff_to_frontend", {"backend_artifacts": {"endpoints": ["/todos"]}})

    assert state.current_agent == "frontend"
    backend_entries = [entry for entry in state.history if entry.agent == "backend"]
    assert len(backend_entries) == 1
    record = backend_entries[0].tool_calls[0]
    assert record.source is ToolCallSource.CLIENT
    assert record.applied_transition is not None and record.applied_transition.agent == "frontend"
    assert backend_entries[0].outcome is ExecutionOutcome.SUCCESS
    assert_invariants(state)


@pytest.mark.asyncio
async def test_unknown_tool_leaves_state_untouched() -> None:
    machine = _machine()
    before = await _executing(machine)

    with pytest.raises(UnknownToolError):
        await machine.tool_call("deploy", {})
    with pytest.raises(ToolParameterError):
        await machine.tool_call("report_blocker", {"fatal": "definitely"})

    assert machine.get_state() is before


@pytest.mark.asyncio
async def test_declared_skip_records_skipped_entries() -> None:
    machine = _machine()
    await _executing(machine)

    state = await machine.tool_call("handoff_to_integrator", {"skip_stages": ["frontend"]})

    assert state.current_agent == "integrator"
    assert [(entry.agent, entry.outcome) for entry in state.history[1:]] == [
        ("backend", ExecutionOutcome.SUCCESS),
        ("frontend", ExecutionOutcome.SKIPPED),
        ("integrator", None),
    ]
    assert_invariants(state)


@pytest.mark.asyncio
async def test_completion_only_from_devops() -> None:
    machine = _machine()
    await _executing(machine)

    with pytest.raises(OutOfOrderHandoffError):
        await machine.tool_call("mark_complete", {"deployment_url": "https://todo.app"})

    for tool in ("handoff_to_frontend", "handoff_to_integrator", "handoff_to_qa", "handoff_to_devops"):
        await machine.tool_call(tool, {})
    state = await machine.tool_call("mark_complete", {"deployment_url": "https://todo.app"})

    assert state.phase is Phase.COMPLETE
    assert state.current_agent is None
    assert state.deployment_url == "https://todo.app"
    assert state.progress == 100
    assert all(not entry.is_open for entry in state.history)
    assert_invariants(state)

    with pytest.raises(InvalidTransitionError):
        await machine.tool_call("handoff_to_frontend", {})


@pytest.mark.asyncio
async def test_fatal_report_moves_to_error() -> None:
    machine = _machine()
    await _executing(machine)

    state = await machine.tool_call("report_blocker", {"message": "Missing API key", "fatal": True})

    assert state.phase is Phase.ERROR
    assert state.pending_error is not None
    assert state.pending_error.kind == "FatalReportError"
    assert state.history[-1].outcome is ExecutionOutcome.FAILURE
    assert state.history[-1].tool_calls[-1].tool_name == "report_blocker"
    assert state.plan is not None
    assert_invariants(state)


@pytest.mark.asyncio
async def test_reset_from_every_phase() -> None:
    machine = _machine()

    async def _error(m: OrchestrationStateMachine) -> OrchestrationState:
        await _executing(m)
        return await m.tool_call("report_blocker", {"message": "boom", "fatal": True})

    async def _complete(m: OrchestrationStateMachine) -> OrchestrationState:
        await _executing(m)
        for tool in ("handoff_to_frontend", "handoff_to_integrator", "handoff_to_qa", "handoff_to_devops"):
            await m.tool_call(tool, {})
        return await m.tool_call("mark_complete", {})

    setups = {
        Phase.IDLE: lambda m: asyncio.sleep(0, m.get_state()),
        Phase.PLANNING: lambda m: m.start("todo"),
        Phase.AWAITING_APPROVAL: _awaiting_approval,
        Phase.EXECUTING: _executing,
        Phase.COMPLETE: _complete,
        Phase.ERROR: _error,
    }
    for phase, setup in setups.items():
        reached = await setup(machine)
        assert reached.phase is phase
        state = await machine.reset()
        assert state.phase is Phase.IDLE
        assert state.history == ()
        assert state.plan is None
        assert state.current_agent is None
        assert state.pending_error is None
        assert state.run_id is None
        assert state.version > reached.version
        assert_invariants(state)


@pytest.mark.asyncio
async def test_get_state_is_idempotent() -> None:
    machine = _machine()
    await _executing(machine)

    first = machine.get_state()
    second = machine.get_state()

    assert first is second
    assert first.model_dump_json() == second.model_dump_json()


@pytest.mark.asyncio
async def test_snapshots_are_immutable_and_versioned() -> None:
    machine = _machine()
    executing = await _executing(machine)
    backend_entry = executing.history[-1]

    advanced = await machine.tool_call("handoff_to_frontend", {})

    assert advanced.version == executing.version + 1
    assert executing.current_agent == "backend"
    assert backend_entry.is_open
    assert advanced.history[0] is executing.history[0]
    with pytest.raises(Exception):
        executing.phase = Phase.ERROR  # type: ignore[misc]


@pytest.mark.asyncio
async def test_start_rejects_while_run_is_active() -> None:
    machine = _machine()
    await machine.start("first")

    with pytest.raises(RunConflictError):
        await machine.start("second")

    assert machine.get_state().user_request == "first"


@pytest.mark.asyncio
async def test_start_supersedes_when_configured() -> None:
    machine = _machine(start_policy="supersede")
    first = await _executing(machine)

    second = await machine.start("second")

    assert second.run_id != first.run_id
    assert second.phase is Phase.PLANNING
    assert [entry.agent for entry in second.history] == ["architect"]
    assert second.plan is None


@pytest.mark.asyncio
async def test_start_allowed_after_terminal_phase() -> None:
    machine = _machine()
    await _executing(machine)
    await machine.tool_call("report_blocker", {"message": "boom", "fatal": True})

    state = await machine.start("try again")

    assert state.phase is Phase.PLANNING
    assert state.pending_error is None


@pytest.mark.asyncio
async def test_driver_hooks_ignore_stale_runs() -> None:
    machine = _machine()
    executing = await _executing(machine)
    await machine.reset()

    assert await machine.begin_turn(executing.run_id) is None
    assert not await machine.apply_agent_tool_call(executing.run_id, "backend", ParsedToolCall("handoff_to_frontend"))
    assert machine.get_state().phase is Phase.IDLE


@pytest.mark.asyncio
async def test_agent_tool_call_failure_is_recorded() -> None:
    machine = _machine()
    executing = await _executing(machine)

    keep_going = await machine.apply_agent_tool_call(executing.run_id, "backend", ParsedToolCall("handoff_to_devops"))

    state = machine.get_state()
    assert keep_going is False
    assert state.phase is Phase.ERROR
    assert state.pending_error is not None and state.pending_error.kind == "OutOfOrderHandoffError"
    failed = state.history[-1].tool_calls[-1]
    assert failed.error is not None and not failed.succeeded
    assert failed.source is ToolCallSource.AGENT
    assert_invariants(state)


@pytest.mark.asyncio
async def test_concurrent_tool_calls_are_serialized() -> None:
    machine = _machine()
    start = await _executing(machine)

    results = await asyncio.gather(
        *(machine.tool_call("request_clarification", {"message": f"question {index}"}) for index in range(10))
    )

    versions = sorted(state.version for state in results)
    assert versions == list(range(start.version + 1, start.version + 11))
    final = machine.get_state()
    assert len(final.history[-1].tool_calls) == 10
    assert final.current_agent == "backend"


@pytest.mark.asyncio
async def test_caller_inputs_do_not_leak_into_history() -> None:
    machine = _machine()
    await _awaiting_approval(machine)
    plan = {"summary": "Todo app", "steps": ["scaffold", "api"], "stack": {"db": "sqlite", "extras": ["redis"]}}
    await machine.approve_plan(plan)
    params = {"backend_artifacts": {"endpoints": ["/todos"]}}

    await machine.tool_call("handoff_to_frontend", params)
    before = machine.get_state().model_dump_json()
    params["backend_artifacts"]["endpoints"].append("/injected")
    plan["stack"]["db"] = "postgres"
    plan["stack"]["extras"].append("kafka")

    state = machine.get_state()
    assert state.model_dump_json() == before
    assert state.plan is not None and state.plan.stack == {"db": "sqlite", "extras": ["redis"]}
    record = state.history[1].tool_calls[0]
    assert record.parameters == {"backend_artifacts": {"endpoints": ["/todos"]}}
    assert record.result is not None and record.result["backend_artifacts"] == {"endpoints": ["/todos"]}


@pytest.mark.asyncio
async def test_published_state_cannot_be_modified_in_place() -> None:
    machine = _machine()
    await _awaiting_approval(machine)
    await machine.approve_plan({"summary": "Todo app", "steps": ["scaffold"], "stack": {"db": "sqlite"}})
    await machine.tool_call("handoff_to_frontend", {"backend_artifacts": {"endpoints": ["/todos"]}})
    state = machine.get_state()
    before = state.model_dump_json()
    record = state.history[1].tool_calls[0]

    with pytest.raises(TypeError):
        state.plan.stack["db"] = "tampered"  # type: ignore[union-attr]
    with pytest.raises(TypeError):
        record.parameters["backend_artifacts"]["endpoints"].append("/injected")
    with pytest.raises(TypeError):
        record.result.update(handoff=False)  # type: ignore[union-attr]

    assert machine.get_state() is state
    assert machine.get_state().model_dump_json() == before
