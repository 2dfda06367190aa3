"""
Orchestration Package

Core of the build pipeline:
- Orchestration state machine (single authoritative run state)
- Tool/handoff registry (closed tool kind -> handler mapping)
- Auto-execution driver (walks agents after plan approval)
- Orchestrator facade used by the HTTP layer
"""

from .driver import ActionSink, AutoExecutionDriver
from .enums import ExecutionOutcome, Phase, ToolCallSource, ToolCategory, ToolKind
from .exceptions import (
    AgentInvocationError,
    FatalReportError,
    InvalidPlanError,
    InvalidTransitionError,
    OrchestrationError,
    OutOfOrderHandoffError,
    RunConflictError,
    StepBudgetExceededError,
    ToolParameterError,
    UnknownToolError,
)
from .machine import OrchestrationStateMachine, TurnContext
from .orchestrator import Orchestrator
from .state import (
    AgentExecutionRecord,
    AppliedTransition,
    ErrorDetail,
    OrchestrationState,
    ProjectPlan,
    ToolCallRecord,
)
from .tools import HandlerContext, ToolRegistry, ToolSpec, ToolTransition, normalize_tool_name

__all__ = [
    "ActionSink",
    "AutoExecutionDriver",
    "ExecutionOutcome",
    "Phase",
    "ToolCallSource",
    "ToolCategory",
    "ToolKind",
    "AgentInvocationError",
    "FatalReportError",
    "InvalidPlanError",
    "InvalidTransitionError",
    "OrchestrationError",
    "OutOfOrderHandoffError",
    "RunConflictError",
    "StepBudgetExceededError",
    "ToolParameterError",
    "UnknownToolError",
    "OrchestrationStateMachine",
    "TurnContext",
    "Orchestrator",
    "AgentExecutionRecord",
    "AppliedTransition",
    "ErrorDetail",
    "OrchestrationState",
    "ProjectPlan",
    "ToolCallRecord",
    "HandlerContext",
    "ToolRegistry",
    "ToolSpec",
    "ToolTransition",
    "normalize_tool_name",
]
