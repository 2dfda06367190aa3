from __future__ import annotations

from typing import Any, Mapping

from ..agents.catalog import AgentCatalog
from ..core.config import Settings
from ..core.logging import get_logger
from ..services.llm import AgentBackend, LLMAgentBackend
from .driver import ActionSink, AutoExecutionDriver
from .machine import OrchestrationStateMachine
from .state import OrchestrationState, ProjectPlan
from .tools import ToolRegistry

logger = get_logger(name=__name__)


class Orchestrator:
    """Process-wide engine handle: state machine plus the driver that feeds it.

    Built once per application and passed to request handlers; tests build
    their own instances with a scripted backend.
    """

    def __init__(
        self,
        *,
        machine: OrchestrationStateMachine,
        driver: AutoExecutionDriver,
        auto_execute: bool = True,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self._machine = machine
        self._driver = driver
        self._auto_execute = auto_execute
        self.poll_interval_seconds = poll_interval_seconds

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        backend: AgentBackend | None = None,
        action_sink: ActionSink | None = None,
    ) -> "Orchestrator":
        catalog = AgentCatalog.default(settings.agents.overrides())
        registry = ToolRegistry.default()
        machine = OrchestrationStateMachine(
            catalog=catalog,
            registry=registry,
            settings=settings.orchestration,
        )
        driver = AutoExecutionDriver(
            machine=machine,
            backend=backend or LLMAgentBackend.from_settings(settings),
            settings=settings.orchestration,
            action_sink=action_sink,
        )
        logger.info(
            "orchestrator_ready",
            agents=list(catalog.order),
            tools=registry.list(),
            start_policy=settings.orchestration.start_policy,
            step_budget=settings.orchestration.step_budget,
        )
        return cls(
            machine=machine,
            driver=driver,
            auto_execute=settings.orchestration.auto_execute,
            poll_interval_seconds=settings.orchestration.poll_interval_seconds,
        )

    @property
    def machine(self) -> OrchestrationStateMachine:
        return self._machine

    @property
    def driver(self) -> AutoExecutionDriver:
        return self._driver

    @property
    def catalog(self) -> AgentCatalog:
        return self._machine.catalog

    @property
    def registry(self) -> ToolRegistry:
        return self._machine.registry

    async def start(self, user_request: str) -> OrchestrationState:
        state = await self._machine.start(user_request)
        self._driver.launch_planning(state.run_id)  # type: ignore[arg-type]
        return state

    async def approve_plan(self, plan: ProjectPlan | Mapping[str, Any] | None = None) -> OrchestrationState:
        state = await self._machine.approve_plan(plan)
        if self._auto_execute:
            self._driver.launch_execution(state.run_id)  # type: ignore[arg-type]
        return state

    async def tool_call(self, tool_name: str, parameters: Mapping[str, Any] | None = None) -> OrchestrationState:
        return await self._machine.tool_call(tool_name, parameters)

    def get_state(self) -> OrchestrationState:
        return self._machine.get_state()

    async def reset(self) -> OrchestrationState:
        return await self._machine.reset()

    def available_tools(self, state: OrchestrationState | None = None) -> list[str]:
        return self._machine.available_tools(state)

    async def drain(self) -> None:
        await self._driver.drain()

    async def aclose(self) -> None:
        await self._driver.aclose()


__all__ = ["Orchestrator"]
