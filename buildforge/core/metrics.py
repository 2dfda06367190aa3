from __future__ import annotations

from prometheus_client import Counter, Histogram

PHASE_TRANSITIONS_TOTAL = Counter(
    "buildforge_phase_transitions_total",
    "Orchestration phase transitions",
    labelnames=("from_phase", "to_phase"),
)

TOOL_CALLS_TOTAL = Counter(
    "buildforge_tool_calls_total",
    "Tool calls processed by the registry grouped by source and outcome",
    labelnames=("tool", "source", "outcome"),
)

AGENT_INVOCATIONS_TOTAL = Counter(
    "buildforge_agent_invocations_total",
    "Agent backend invocations grouped by outcome (success/failure/timeout)",
    labelnames=("agent", "outcome"),
)

AGENT_LATENCY_SECONDS = Histogram(
    "buildforge_agent_invocation_latency_seconds",
    "Latency of a single agent backend invocation",
    labelnames=("agent",),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
)

RUNS_FINISHED_TOTAL = Counter(
    "buildforge_runs_finished_total",
    "Pipeline runs that reached a terminal phase",
    labelnames=("status",),
)

STEP_BUDGET_EXHAUSTED_TOTAL = Counter(
    "buildforge_step_budget_exhausted_total",
    "Runs halted because the driver step budget ran out",
)


def record_transition(from_phase: str, to_phase: str) -> None:
    if from_phase == to_phase:
        return
    PHASE_TRANSITIONS_TOTAL.labels(from_phase=from_phase, to_phase=to_phase).inc()
    if to_phase in {"complete", "error"}:
        RUNS_FINISHED_TOTAL.labels(status=to_phase).inc()


def record_tool_call(tool: str, *, source: str, outcome: str) -> None:
    TOOL_CALLS_TOTAL.labels(tool=tool, source=source, outcome=outcome).inc()


def record_agent_invocation(agent: str, *, outcome: str, duration: float | None = None) -> None:
    AGENT_INVOCATIONS_TOTAL.labels(agent=agent, outcome=outcome).inc()
    if duration is not None:
        AGENT_LATENCY_SECONDS.labels(agent=agent).observe(duration)
