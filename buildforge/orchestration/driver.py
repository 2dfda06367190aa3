"""
Auto-Execution Driver

Walks the pipeline without human input: invoke the current agent outside the
state lock, parse its response, then apply each emitted tool call through the
state machine in emission order. Every hook call carries the ``run_id`` the
driver was launched for, so a reset or superseding start makes the loop stop
instead of resuming a stale run.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Coroutine
from uuid import UUID

from ..agents.prompts import build_stage_prompt, build_system_prompt
from ..core.config import OrchestrationSettings
from ..core.logging import bind_run_context, get_logger
from ..core.metrics import record_agent_invocation
from ..services.llm import AgentBackend, AgentRequest
from .enums import Phase, ToolKind
from .exceptions import AgentInvocationError, InvalidPlanError, OrchestrationError
from .machine import OrchestrationStateMachine, TurnContext
from .parsing import AgentResponse, extract_plan, parse_agent_response

logger = get_logger(name=__name__)

ActionSink = Callable[[UUID, str, tuple[dict[str, Any], ...]], Awaitable[None]]


class AutoExecutionDriver:
    def __init__(
        self,
        *,
        machine: OrchestrationStateMachine,
        backend: AgentBackend,
        settings: OrchestrationSettings,
        action_sink: ActionSink | None = None,
    ) -> None:
        self._machine = machine
        self._backend = backend
        self._settings = settings
        self._action_sink = action_sink
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def launch_planning(self, run_id: UUID) -> asyncio.Task[None]:
        return self._spawn(self.run_planning(run_id), name=f"planning-{run_id}")

    def launch_execution(self, run_id: UUID) -> asyncio.Task[None]:
        return self._spawn(self.run_execution(run_id), name=f"execution-{run_id}")

    async def drain(self) -> None:
        """Wait until every launched run loop has finished."""
        while self._tasks:
            await asyncio.wait(tuple(self._tasks))

    async def aclose(self) -> None:
        tasks = tuple(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)

    def _spawn(self, coro: Coroutine[Any, Any, None], *, name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run_planning(self, run_id: UUID) -> None:
        bind_run_context(run_id=str(run_id))
        attempts = self._settings.plan_retries + 1
        feedback: str | None = None
        last_error: InvalidPlanError | None = None
        try:
            for attempt in range(1, attempts + 1):
                context = await self._machine.begin_turn(run_id)
                if context is None or context.phase is not Phase.PLANNING:
                    return
                response = await self._take_turn(context, feedback=feedback)
                if response is None:
                    return
                candidate = extract_plan(response)
                try:
                    if candidate is None:
                        raise InvalidPlanError(
                            response.problem or "Architect response did not contain a plan",
                            agent=context.agent,
                        )
                    await self._machine.propose_plan(run_id, candidate)
                    return
                except InvalidPlanError as exc:
                    last_error = exc
                    feedback = exc.message
                    logger.warning("plan_rejected", attempt=attempt, max_attempts=attempts, error=exc.message)
            if last_error is not None:
                await self._machine.fail_run(run_id, last_error)
        except OrchestrationError as exc:
            await self._machine.fail_run(run_id, exc)
        except Exception as exc:
            logger.exception("driver_step_crashed", stage="planning", error=str(exc))
            await self._machine.fail_run(run_id, OrchestrationError(f"Planning step failed: {exc}"))

    async def run_execution(self, run_id: UUID) -> None:
        bind_run_context(run_id=str(run_id))
        try:
            while True:
                context = await self._machine.begin_turn(run_id)
                if context is None or context.phase is not Phase.EXECUTING:
                    break
                response = await self._take_turn(context)
                if response is None:
                    if self._machine.in_phase(run_id, Phase.EXECUTING):
                        # a client tool call moved the run on while the agent was busy
                        logger.info("agent_response_discarded", agent=context.agent, step=context.step)
                        continue
                    break
                if response.malformed:
                    logger.warning(
                        "agent_response_malformed",
                        agent=context.agent,
                        step=context.step,
                        problem=response.problem,
                    )
                    continue
                for index, call in enumerate(response.tool_calls):
                    if not await self._machine.apply_agent_tool_call(run_id, context.agent, call):
                        dropped = response.tool_calls[index + 1 :]
                        if dropped:
                            logger.info(
                                "tool_calls_dropped",
                                agent=context.agent,
                                tools=[item.name for item in dropped],
                            )
                        break
        except OrchestrationError as exc:
            await self._machine.fail_run(run_id, exc)
        except Exception as exc:
            logger.exception("driver_step_crashed", stage="execution", error=str(exc))
            await self._machine.fail_run(run_id, OrchestrationError(f"Execution step failed: {exc}"))
        finally:
            state = self._machine.get_state()
            if state.run_id == run_id:
                logger.info("driver_finished", phase=state.phase.value, steps=state.execution_steps)
            else:
                logger.info("driver_run_stale")

    async def _take_turn(self, context: TurnContext, *, feedback: str | None = None) -> AgentResponse | None:
        """Invoke the agent and record the turn.

        Returns ``None`` when the response no longer applies: the run was reset,
        superseded or failed, or another agent became current in the meantime.
        """
        try:
            text = await self._invoke(context, feedback=feedback)
        except AgentInvocationError as exc:
            await self._machine.fail_run(context.run_id, exc)
            return None
        response = parse_agent_response(text, max_narration_chars=self._settings.max_narration_chars)
        if not await self._machine.record_turn(context.run_id, context.agent, response):
            return None
        if response.actions and self._action_sink is not None:
            await self._action_sink(context.run_id, context.agent, response.actions)
        return response

    def _build_request(self, context: TurnContext, *, feedback: str | None) -> AgentRequest:
        catalog = self._machine.catalog
        registry = self._machine.registry
        descriptor = catalog.get(context.agent)
        if descriptor.executes:
            tools = registry.schemas_for_agent(context.agent, catalog)
        else:
            tools = [registry.resolve(ToolKind.HANDOFF_TO_BACKEND.value).to_schema()]
        plan = context.plan.model_dump() if context.plan is not None else None
        prompt = build_stage_prompt(
            context.agent,
            user_request=context.user_request,
            plan=plan,
            artifact=context.artifact,
            prior_outputs=context.prior_outputs,
            recent_results=context.recent_results,
            feedback=feedback,
        )
        return AgentRequest(
            agent=context.agent,
            backend_reference=descriptor.backend_reference,
            prompt=prompt,
            system_prompt=build_system_prompt(descriptor, [item["function"]["name"] for item in tools]),
            tools=tools,
            run_id=context.run_id,
        )

    async def _invoke(self, context: TurnContext, *, feedback: str | None = None) -> str:
        request = self._build_request(context, feedback=feedback)
        timeout = self._settings.agent_timeout_seconds
        attempts = self._settings.invocation_retries + 1
        last_error = "unknown error"
        for attempt in range(1, attempts + 1):
            started = time.perf_counter()
            try:
                text = await asyncio.wait_for(self._backend.invoke(request), timeout=timeout)
            except asyncio.TimeoutError:
                outcome = "timeout"
                last_error = f"timed out after {timeout:g}s"
            except Exception as exc:
                outcome = "failure"
                last_error = str(exc) or exc.__class__.__name__
            else:
                record_agent_invocation(context.agent, outcome="success", duration=time.perf_counter() - started)
                return text
            record_agent_invocation(context.agent, outcome=outcome, duration=time.perf_counter() - started)
            logger.warning(
                "agent_invocation_failed",
                agent=context.agent,
                attempt=attempt,
                max_attempts=attempts,
                outcome=outcome,
                error=last_error,
            )
        raise AgentInvocationError(
            f"{context.agent} failed after {attempts} attempt(s): {last_error}",
            agent=context.agent,
        )


__all__ = ["AutoExecutionDriver", "ActionSink"]
