from __future__ import annotations

from enum import Enum


class Phase(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    COMPLETE = "complete"
    ERROR = "error"


class ExecutionOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class ToolKind(str, Enum):
    HANDOFF_TO_BACKEND = "handoff_to_backend"
    HANDOFF_TO_FRONTEND = "handoff_to_frontend"
    HANDOFF_TO_INTEGRATOR = "handoff_to_integrator"
    HANDOFF_TO_QA = "handoff_to_qa"
    HANDOFF_TO_DEVOPS = "handoff_to_devops"
    MARK_COMPLETE = "mark_complete"
    REPORT_BLOCKER = "report_blocker"
    REQUEST_CLARIFICATION = "request_clarification"


class ToolCategory(str, Enum):
    HANDOFF = "handoff"
    COMPLETION = "completion"
    REPORTING = "reporting"


class ToolCallSource(str, Enum):
    AGENT = "agent"
    CLIENT = "client"


ACTIVE_PHASES = frozenset({Phase.PLANNING, Phase.EXECUTING})
PLAN_PHASES = frozenset({Phase.AWAITING_APPROVAL, Phase.EXECUTING, Phase.COMPLETE})
TERMINAL_PHASES = frozenset({Phase.COMPLETE, Phase.ERROR})


__all__ = [
    "Phase",
    "ExecutionOutcome",
    "ToolKind",
    "ToolCategory",
    "ToolCallSource",
    "ACTIVE_PHASES",
    "PLAN_PHASES",
    "TERMINAL_PHASES",
]
