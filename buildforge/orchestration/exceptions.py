from __future__ import annotations


class OrchestrationError(RuntimeError):
    """Base class for orchestration failures.

    ``kind`` is the stable identifier surfaced to clients in ``pending_error``
    and in HTTP error payloads.
    """

    kind: str = "OrchestrationError"

    def __init__(self, message: str, *, agent: str | None = None, tool_name: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.agent = agent
        self.tool_name = tool_name


class InvalidTransitionError(OrchestrationError):
    """Raised when an event is not accepted in the current phase."""

    kind = "InvalidTransitionError"


class RunConflictError(InvalidTransitionError):
    """Raised when `start` is called while another run is planning or executing."""

    kind = "RunConflictError"


class InvalidPlanError(OrchestrationError):
    """Raised when a plan is missing, empty, or structurally malformed."""

    kind = "InvalidPlanError"


class UnknownToolError(OrchestrationError):
    """Raised when a tool name does not resolve to a registered tool kind."""

    kind = "UnknownToolError"


class ToolParameterError(OrchestrationError):
    """Raised when tool parameters fail validation."""

    kind = "ToolParameterError"


class OutOfOrderHandoffError(OrchestrationError):
    """Raised when a handoff violates the canonical pipeline order."""

    kind = "OutOfOrderHandoffError"


class FatalReportError(OrchestrationError):
    """Recorded when an agent reports a blocker flagged as fatal."""

    kind = "FatalReportError"


class AgentInvocationError(OrchestrationError):
    """Raised when the agent backend fails or exceeds its timeout."""

    kind = "AgentInvocationError"


class StepBudgetExceededError(OrchestrationError):
    """Raised when the driver spends its step budget without finishing the run."""

    kind = "StepBudgetExceededError"


__all__ = [
    "OrchestrationError",
    "InvalidTransitionError",
    "RunConflictError",
    "InvalidPlanError",
    "UnknownToolError",
    "ToolParameterError",
    "OutOfOrderHandoffError",
    "FatalReportError",
    "AgentInvocationError",
    "StepBudgetExceededError",
]
