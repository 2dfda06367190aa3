from __future__ import annotations

import json
from typing import Any, Mapping, Sequence

from .catalog import ARCHITECT, BACKEND, DEVOPS, FRONTEND, INTEGRATOR, QA, AgentDescriptor

RESPONSE_FORMAT = (
    "Reply with a single JSON object and nothing else:\n"
    '{"narration": "<short progress note>", '
    '"actions": [{"type": "write_file|install_dependency|run_command", ...}], '
    '"tool_calls": [{"name": "<tool>", "arguments": {...}}]}\n'
    "Tool calls are applied in the order listed. Call a handoff tool only when your stage is finished."
)

PLANNER_RESPONSE_FORMAT = (
    "Reply with a single JSON object and nothing else:\n"
    '{"narration": "<short note>", "plan": {"summary": "<one paragraph>", '
    '"steps": ["<step>", ...], "stack": {"frontend": "...", "backend": "...", "database": "..."}}}'
)

_STAGE_TEMPLATES: dict[str, str] = {
    ARCHITECT: (
        "Design a build plan for the following request:\n{user_request}\n\n"
        "Pick the tech stack, outline the repository layout and list ordered execution steps "
        "for the backend, frontend, integration, QA and deployment stages."
    ),
    BACKEND: (
        "Build the backend based on this plan:\n{artifact}\n\n"
        "Create:\n1. API routes and endpoints\n2. Database schema and models\n"
        "3. Authentication/authorization\n4. Server configuration\n\n"
        "When complete, call handoff_to_frontend with backend_artifacts describing your work."
    ),
    FRONTEND: (
        "Build the UI based on this backend:\n{artifact}\n\n"
        "Create:\n1. Components\n2. Pages and routing\n3. State management\n4. API integration stubs\n\n"
        "When complete, call handoff_to_integrator with frontend_artifacts."
    ),
    INTEGRATOR: (
        "Connect the frontend to the backend.\nFrontend: {artifact}\n\n"
        "Tasks:\n1. Wire API calls\n2. Test data flow\n3. Fix integration issues\n"
        "4. Verify end-to-end functionality\n\n"
        "When complete, call handoff_to_qa with integration_status."
    ),
    QA: (
        "Test and harden the application.\nIntegration status: {artifact}\n\n"
        "Tasks:\n1. Run tests\n2. Fix bugs\n3. Add error handling\n4. Security review\n"
        "5. Performance optimization\n\n"
        "When complete, call handoff_to_devops with qa_report."
    ),
    DEVOPS: (
        "Deploy the application.\nQA report: {artifact}\n\n"
        "Tasks:\n1. Configure deployment\n2. Set environment variables\n3. Deploy to production\n"
        "4. Verify the live site\n\n"
        "When deployment is successful, call mark_complete with the deployment_url."
    ),
}

_ARTIFACT_DEFAULTS: dict[str, str] = {
    QA: "Complete",
    DEVOPS: "All tests passing",
}


def _render(value: Any) -> str:
    if value is None:
        return "{}"
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2, default=str)


def build_system_prompt(descriptor: AgentDescriptor, tool_names: Sequence[str]) -> str:
    lines = [
        f"You are {descriptor.display_name}, one stage of an automated software-building pipeline.",
        descriptor.description,
    ]
    if descriptor.executes:
        if tool_names:
            lines.append(f"Available tools: {', '.join(tool_names)}.")
        lines.append(RESPONSE_FORMAT)
    else:
        lines.append(PLANNER_RESPONSE_FORMAT)
    return "\n\n".join(line for line in lines if line)


def build_stage_prompt(
    agent_id: str,
    *,
    user_request: str,
    plan: Mapping[str, Any] | None = None,
    artifact: Any = None,
    prior_outputs: Sequence[Mapping[str, Any]] = (),
    recent_results: Sequence[Mapping[str, Any]] = (),
    feedback: str | None = None,
) -> str:
    """Render the user-turn prompt for a stage.

    ``artifact`` is whatever the previous stage handed over (the plan for the
    first executor). ``recent_results`` are the outcomes of tool calls already
    applied during the current stage, so a retry sees what it has done.
    """
    template = _STAGE_TEMPLATES.get(agent_id, "Execute your specialized task.")
    if artifact is None:
        artifact = plan if agent_id == BACKEND else _ARTIFACT_DEFAULTS.get(agent_id)
    sections = [template.format(user_request=user_request, artifact=_render(artifact))]
    if agent_id != ARCHITECT:
        sections.append(f"Original request: {user_request}")
        if plan:
            sections.append(f"Approved plan:\n{_render(plan)}")
    if prior_outputs:
        summary = "\n".join(
            f"- {item.get('agent')}: {item.get('summary') or item.get('outcome') or 'done'}" for item in prior_outputs
        )
        sections.append(f"Completed stages:\n{summary}")
    if recent_results:
        sections.append(f"Tool results so far in this stage:\n{_render(list(recent_results))}")
    if feedback:
        sections.append(f"Previous attempt was rejected: {feedback}")
    return "\n\n".join(sections)


__all__ = ["RESPONSE_FORMAT", "PLANNER_RESPONSE_FORMAT", "build_system_prompt", "build_stage_prompt"]
