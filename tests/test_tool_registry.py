from __future__ import annotations

import pytest

from buildforge.agents.catalog import AgentCatalog
from buildforge.orchestration.enums import Phase, ToolCategory, ToolKind
from buildforge.orchestration.exceptions import OutOfOrderHandoffError, ToolParameterError, UnknownToolError
from buildforge.orchestration.tools import HandlerContext, ToolRegistry, normalize_tool_name


@pytest.fixture()
def catalog() -> AgentCatalog:
    return AgentCatalog.default()


@pytest.fixture()
def registry() -> ToolRegistry:
    return ToolRegistry.default()


def _context(catalog: AgentCatalog, agent: str | None, phase: Phase = Phase.EXECUTING) -> HandlerContext:
    return HandlerContext(phase=phase, current_agent=agent, catalog=catalog)


def test_registry_normalizes_names(registry: ToolRegistry) -> None:
    assert normalize_tool_name("  Handoff-To.Frontend ") == "handoff_to_frontend"
    assert registry.resolve("Mark Complete").kind is ToolKind.MARK_COMPLETE
    assert "handoff/to/qa" in registry
    assert "deploy" not in registry
    assert registry.list()[0] == "handoff_to_backend"


def test_unknown_tool_is_rejected(registry: ToolRegistry) -> None:
    with pytest.raises(UnknownToolError) as excinfo:
        registry.resolve("deploy")
    assert excinfo.value.tool_name == "deploy"


def test_forward_handoff_moves_to_next_agent(registry: ToolRegistry, catalog: AgentCatalog) -> None:
    spec, transition = registry.evaluate(
        "handoff_to_frontend",
        {"backend_artifacts": {"endpoints": ["/todos"]}, "summary": "API done"},
        _context(catalog, "backend"),
    )

    assert spec.category is ToolCategory.HANDOFF
    assert transition.phase is Phase.EXECUTING
    assert transition.agent == "frontend"
    assert transition.result["backend_artifacts"] == {"endpoints": ["/todos"]}
    assert transition.result["summary"] == "API done"
    assert transition.skipped == ()


def test_handlers_are_deterministic(registry: ToolRegistry, catalog: AgentCatalog) -> None:
    context = _context(catalog, "integrator")
    parameters = {"integration_status": "wired"}

    _, first = registry.evaluate("handoff_to_qa", parameters, context)
    _, second = registry.evaluate("handoff_to_qa", parameters, context)

    assert first == second


def test_skipping_stages_requires_declaration(registry: ToolRegistry, catalog: AgentCatalog) -> None:
    with pytest.raises(OutOfOrderHandoffError):
        registry.evaluate("handoff_to_qa", {}, _context(catalog, "architect", Phase.PLANNING))

    with pytest.raises(OutOfOrderHandoffError):
        registry.evaluate("handoff_to_integrator", {}, _context(catalog, "backend"))

    _, transition = registry.evaluate(
        "handoff_to_integrator",
        {"skip_stages": ["frontend"], "frontend_artifacts": "api only"},
        _context(catalog, "backend"),
    )
    assert transition.agent == "integrator"
    assert transition.skipped == ("frontend",)


def test_qa_cannot_be_skipped(registry: ToolRegistry, catalog: AgentCatalog) -> None:
    with pytest.raises(OutOfOrderHandoffError, match="cannot be skipped"):
        registry.evaluate("handoff_to_devops", {"skipped_stages": ["qa"]}, _context(catalog, "integrator"))


def test_skip_list_outside_range_is_a_parameter_error(registry: ToolRegistry, catalog: AgentCatalog) -> None:
    with pytest.raises(ToolParameterError):
        registry.evaluate("handoff_to_frontend", {"skip_stages": ["qa"]}, _context(catalog, "backend"))


def test_backward_handoff_needs_rework_flag(registry: ToolRegistry, catalog: AgentCatalog) -> None:
    with pytest.raises(OutOfOrderHandoffError):
        registry.evaluate("handoff_to_backend", {}, _context(catalog, "qa"))

    _, transition = registry.evaluate(
        "handoff_to_backend",
        {"rework": True, "reason": "failing auth tests"},
        _context(catalog, "qa"),
    )
    assert transition.agent == "backend"
    assert transition.result["rework"] is True


def test_self_handoff_is_rejected(registry: ToolRegistry, catalog: AgentCatalog) -> None:
    with pytest.raises(OutOfOrderHandoffError, match="itself"):
        registry.evaluate("handoff_to_qa", {"rework": True}, _context(catalog, "qa"))


def test_completion_only_from_last_stage(registry: ToolRegistry, catalog: AgentCatalog) -> None:
    with pytest.raises(OutOfOrderHandoffError):
        registry.evaluate("mark_complete", {"deployment_url": "https://x.app"}, _context(catalog, "qa"))

    _, transition = registry.evaluate("mark_complete", {"deployment_url": "https://x.app"}, _context(catalog, "devops"))
    assert transition.phase is Phase.COMPLETE
    assert transition.agent is None
    assert transition.deployment_url == "https://x.app"


def test_reports_keep_agent_unless_fatal(registry: ToolRegistry, catalog: AgentCatalog) -> None:
    _, note = registry.evaluate("request_clarification", {"message": "Which database?"}, _context(catalog, "backend"))
    assert note.phase is Phase.EXECUTING
    assert note.agent == "backend"
    assert note.fatal is None

    _, fatal = registry.evaluate("report_blocker", {"message": "No credentials", "fatal": True}, _context(catalog, "devops"))
    assert fatal.phase is Phase.ERROR
    assert fatal.fatal is not None
    assert fatal.fatal.kind == "FatalReportError"


def test_report_requires_message(registry: ToolRegistry, catalog: AgentCatalog) -> None:
    with pytest.raises(ToolParameterError):
        registry.evaluate("report_blocker", {"fatal": True}, _context(catalog, "backend"))


def test_tools_for_agent_are_scoped(registry: ToolRegistry, catalog: AgentCatalog) -> None:
    backend_tools = {spec.name for spec in registry.tools_for_agent("backend", catalog)}
    devops_tools = {spec.name for spec in registry.tools_for_agent("devops", catalog)}

    assert "handoff_to_frontend" in backend_tools
    assert "handoff_to_backend" not in backend_tools
    assert "mark_complete" not in backend_tools
    assert devops_tools == {"mark_complete", "report_blocker", "request_clarification"}


def test_schemas_use_function_calling_shape(registry: ToolRegistry, catalog: AgentCatalog) -> None:
    schemas = registry.schemas_for_agent("qa", catalog)
    handoff = next(item for item in schemas if item["function"]["name"] == "handoff_to_devops")

    assert handoff["type"] == "function"
    properties = handoff["function"]["parameters"]["properties"]
    assert properties["qa_report"]["type"] == "string"
    assert "skip_stages" in properties
