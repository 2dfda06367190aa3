from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Protocol, Sequence
from uuid import UUID

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama

from ..agents.catalog import default_backend_reference
from ..core.config import Settings
from ..core.logging import get_logger

logger = get_logger(name=__name__)


@dataclass(slots=True)
class AgentRequest:
    agent: str
    backend_reference: str
    prompt: str
    system_prompt: str
    tools: list[dict[str, Any]] = field(default_factory=list)
    run_id: UUID | None = None


class AgentBackend(Protocol):
    """External AI backend: returns structured text for one agent turn.

    Transport failures are raised; the driver turns them into invocation
    failures.
    """

    async def invoke(self, request: AgentRequest) -> str:
        ...


def _build_base_url(host: str, port: int) -> str:
    host = host.rstrip("/")
    if ":" in host.rsplit("/", maxsplit=1)[-1]:
        return host
    return f"{host}:{port}"


def _messages_from_text(
    prompt: str,
    system_prompt: str | None = None,
) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


def _extract_content(result: Any) -> str:
    content = result.content if hasattr(result, "content") else result
    if isinstance(content, list):
        return " ".join(
            str(item.get("text", "")) if isinstance(item, dict) else str(item)
            for item in content
        )
    return str(content)


def render_agent_message(result: Any) -> str:
    """Fold native tool calls into the JSON response format agents are asked for."""
    text = _extract_content(result)
    tool_calls = getattr(result, "tool_calls", None) if isinstance(result, AIMessage) else None
    if not tool_calls:
        return text
    payload: dict[str, Any] = {
        "narration": text.strip() or None,
        "tool_calls": [
            {"name": call.get("name"), "arguments": call.get("args") or {}}
            for call in tool_calls
        ],
    }
    return json.dumps(payload, default=str)


@dataclass
class LLMAgentBackend:
    """LangChain client for agents served by a local Ollama instance."""

    settings: Settings
    _client: Any
    model: str
    _client_cache: ClassVar[dict[str, Any]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        model: str | None = None,
        client: Any | None = None,
    ) -> "LLMAgentBackend":
        model_name = model or settings.ollama.model
        backend = cls(
            settings=settings,
            _client=client,
            model=model_name,
        )
        if client is None:
            backend._client = backend._client_for(model_name)
        return backend

    def _client_for(self, model_name: str) -> Any:
        if model_name == self.model and self._client is not None:
            return self._client
        ollama = self.settings.ollama
        cache_key = f"{ollama.host}:{ollama.port}:{model_name}"
        cached = self._client_cache.get(cache_key)
        if cached is None:
            cached = ChatOllama(
                model=model_name,
                base_url=_build_base_url(ollama.host, ollama.port),
                temperature=ollama.temperature,
                num_ctx=ollama.num_ctx,
            )
            self._client_cache[cache_key] = cached
        return cached

    def _model_for(self, request: AgentRequest) -> str:
        reference = request.backend_reference
        if not reference or reference == default_backend_reference(request.agent):
            return self.model
        return reference

    async def invoke(self, request: AgentRequest) -> str:
        model_name = self._model_for(request)
        client = self._client_for(model_name)
        if request.tools and hasattr(client, "bind_tools"):
            client = client.bind_tools(request.tools)
        messages = _messages_from_text(request.prompt, request.system_prompt)
        logger.debug(
            "agent_backend_request",
            agent=request.agent,
            model=model_name,
            tools=len(request.tools),
            prompt_chars=len(request.prompt),
        )
        result = await client.ainvoke(messages)
        return render_agent_message(result)


__all__ = ["AgentRequest", "AgentBackend", "LLMAgentBackend", "render_agent_message"]
