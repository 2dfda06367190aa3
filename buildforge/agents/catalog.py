from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterator, Mapping


class AgentRole(str, Enum):
    PLANNER = "planner"
    ENGINEER = "engineer"
    INTEGRATOR = "integrator"
    VERIFIER = "verifier"
    OPERATOR = "operator"


ARCHITECT = "architect"
BACKEND = "backend"
FRONTEND = "frontend"
INTEGRATOR = "integrator"
QA = "qa"
DEVOPS = "devops"

PIPELINE_ORDER: tuple[str, ...] = (ARCHITECT, BACKEND, FRONTEND, INTEGRATOR, QA, DEVOPS)


def default_backend_reference(agent_id: str) -> str:
    """Placeholder reference: serve the agent with the default model."""
    return f"agent-{agent_id}"


@dataclass(frozen=True, slots=True)
class AgentDescriptor:
    id: str
    display_name: str
    role: AgentRole
    capabilities: frozenset[str]
    backend_reference: str
    description: str = ""
    skippable: bool = False
    progress: int = 0
    status_message: str = ""

    @property
    def executes(self) -> bool:
        return self.role is not AgentRole.PLANNER


class UnknownAgentError(KeyError):
    """Raised when an agent id is not present in the catalog."""


class AgentCatalog:
    """Read-only directory of pipeline agents, kept in canonical pipeline order."""

    def __init__(self, descriptors: list[AgentDescriptor]) -> None:
        if not descriptors:
            raise ValueError("Agent catalog requires at least one descriptor")
        self._descriptors: dict[str, AgentDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id in self._descriptors:
                raise ValueError(f"Duplicate agent id '{descriptor.id}'")
            self._descriptors[descriptor.id] = descriptor
        self._order: tuple[str, ...] = tuple(self._descriptors)

    @classmethod
    def default(cls, backend_overrides: Mapping[str, str] | None = None) -> "AgentCatalog":
        descriptors = _build_descriptors()
        if backend_overrides:
            descriptors = [
                replace(item, backend_reference=backend_overrides.get(item.id, item.backend_reference))
                for item in descriptors
            ]
        return cls(descriptors)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._descriptors

    def __iter__(self) -> Iterator[AgentDescriptor]:
        return iter(self._descriptors.values())

    def __len__(self) -> int:
        return len(self._descriptors)

    @property
    def order(self) -> tuple[str, ...]:
        return self._order

    def get(self, agent_id: str) -> AgentDescriptor:
        try:
            return self._descriptors[agent_id]
        except KeyError:
            raise UnknownAgentError(agent_id) from None

    def position(self, agent_id: str) -> int:
        if agent_id not in self._descriptors:
            raise UnknownAgentError(agent_id)
        return self._order.index(agent_id)

    def planner(self) -> AgentDescriptor:
        for descriptor in self:
            if descriptor.role is AgentRole.PLANNER:
                return descriptor
        raise LookupError("Agent catalog has no planner")

    def first_executor(self) -> AgentDescriptor:
        for descriptor in self:
            if descriptor.executes:
                return descriptor
        raise LookupError("Agent catalog has no execution-capable agent")

    def last(self) -> AgentDescriptor:
        return self._descriptors[self._order[-1]]

    def next_after(self, agent_id: str) -> AgentDescriptor | None:
        index = self.position(agent_id) + 1
        if index >= len(self._order):
            return None
        return self._descriptors[self._order[index]]

    def between(self, source: str, target: str) -> list[AgentDescriptor]:
        """Agents strictly between ``source`` and ``target`` in pipeline order."""
        start, end = self.position(source), self.position(target)
        return [self._descriptors[agent_id] for agent_id in self._order[start + 1 : end]]


def _build_descriptors() -> list[AgentDescriptor]:
    return [
        AgentDescriptor(
            id=ARCHITECT,
            display_name="The Architect",
            role=AgentRole.PLANNER,
            capabilities=frozenset({"planning", "stack-selection", "repository-structure"}),
            backend_reference=default_backend_reference(ARCHITECT),
            description="Analyzes the request and proposes the stack, repository layout and execution steps.",
            progress=10,
            status_message="Creating execution plan...",
        ),
        AgentDescriptor(
            id=BACKEND,
            display_name="Backend Engineer",
            role=AgentRole.ENGINEER,
            capabilities=frozenset({"api", "database", "auth", "server-config"}),
            backend_reference=default_backend_reference(BACKEND),
            description="Builds API routes, database schema and models, authentication and server configuration.",
            skippable=True,
            progress=30,
            status_message="Scaffolding backend (API, DB, Auth)...",
        ),
        AgentDescriptor(
            id=FRONTEND,
            display_name="Frontend Engineer",
            role=AgentRole.ENGINEER,
            capabilities=frozenset({"ui", "routing", "state-management"}),
            backend_reference=default_backend_reference(FRONTEND),
            description="Builds components, pages, routing and state management on top of the backend.",
            skippable=True,
            progress=50,
            status_message="Building UI components...",
        ),
        AgentDescriptor(
            id=INTEGRATOR,
            display_name="The Integrator",
            role=AgentRole.INTEGRATOR,
            capabilities=frozenset({"api-wiring", "data-flow", "end-to-end"}),
            backend_reference=default_backend_reference(INTEGRATOR),
            description="Wires the frontend to the backend and verifies end-to-end data flow.",
            skippable=True,
            progress=70,
            status_message="Connecting frontend and backend...",
        ),
        AgentDescriptor(
            id=QA,
            display_name="QA & Hardening",
            role=AgentRole.VERIFIER,
            capabilities=frozenset({"testing", "bug-fixing", "security-review"}),
            backend_reference=default_backend_reference(QA),
            description="Runs tests, fixes bugs, adds error handling and reviews security.",
            progress=85,
            status_message="Testing and hardening code...",
        ),
        AgentDescriptor(
            id=DEVOPS,
            display_name="DevOps",
            role=AgentRole.OPERATOR,
            capabilities=frozenset({"deployment", "environment-config", "verification"}),
            backend_reference=default_backend_reference(DEVOPS),
            description="Configures the deployment, sets environment variables and verifies the live site.",
            progress=95,
            status_message="Deploying to production...",
        ),
    ]


__all__ = [
    "AgentRole",
    "AgentDescriptor",
    "AgentCatalog",
    "UnknownAgentError",
    "PIPELINE_ORDER",
    "default_backend_reference",
    "ARCHITECT",
    "BACKEND",
    "FRONTEND",
    "INTEGRATOR",
    "QA",
    "DEVOPS",
]
