"""Parsing of raw agent responses into tool calls, actions and narration."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from .enums import ToolKind
from .tools import normalize_tool_name

_THINKING_PATTERN = re.compile(r"<thinking>.*?</thinking>", re.DOTALL | re.IGNORECASE)
_FENCE_PATTERN = re.compile(r"```[a-zA-Z]*\n?")
_ARGUMENT_KEYS = ("arguments", "parameters", "args")


@dataclass(frozen=True, slots=True)
class ParsedToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AgentResponse:
    narration: str | None = None
    tool_calls: tuple[ParsedToolCall, ...] = ()
    actions: tuple[dict[str, Any], ...] = ()
    plan: Any = None
    malformed: bool = False
    problem: str | None = None


def clean_response_text(text: str) -> str:
    """Drop reasoning blocks and markdown code fences."""
    cleaned = _THINKING_PATTERN.sub("", text)
    cleaned = _FENCE_PATTERN.sub("", cleaned)
    return cleaned.strip()


def _truncate(text: str | None, limit: int) -> str | None:
    if not text:
        return None
    text = text.strip()
    if limit > 0 and len(text) > limit:
        return text[: limit - 3].rstrip() + "..."
    return text or None


def _load_object(text: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            payload = json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            return None
    return payload if isinstance(payload, dict) else None


def _coerce_arguments(raw: Any) -> dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, str):
        raw = json.loads(raw) if raw.strip() else {}
    if not isinstance(raw, Mapping):
        raise ValueError("tool arguments must be an object")
    return dict(raw)


def _parse_tool_calls(raw: Any) -> tuple[ParsedToolCall, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValueError("tool_calls must be a list")
    calls: list[ParsedToolCall] = []
    for item in raw:
        if not isinstance(item, Mapping):
            raise ValueError("each tool call must be an object")
        function = item.get("function")
        source = function if isinstance(function, Mapping) else item
        name = source.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("tool call is missing a name")
        arguments: Any = None
        for key in _ARGUMENT_KEYS:
            if key in source:
                arguments = source[key]
                break
        try:
            calls.append(ParsedToolCall(name=name.strip(), arguments=_coerce_arguments(arguments)))
        except json.JSONDecodeError as exc:
            raise ValueError(f"arguments for '{name}' are not valid JSON") from exc
    return tuple(calls)


def parse_agent_response(text: str | None, *, max_narration_chars: int = 2000) -> AgentResponse:
    """Parse backend output; never raises.

    Anything that does not conform to the response format becomes a
    narration-only turn flagged as ``malformed``.
    """
    cleaned = clean_response_text(text or "")
    if not cleaned:
        return AgentResponse(malformed=True, problem="empty response")
    payload = _load_object(cleaned)
    if payload is None:
        return AgentResponse(
            narration=_truncate(cleaned, max_narration_chars),
            malformed=True,
            problem="response is not a JSON object",
        )

    narration = payload.get("narration") or payload.get("message")
    narration = narration if isinstance(narration, str) else None
    try:
        tool_calls = _parse_tool_calls(payload.get("tool_calls"))
    except ValueError as exc:
        return AgentResponse(
            narration=_truncate(narration or cleaned, max_narration_chars),
            malformed=True,
            problem=str(exc),
        )
    raw_actions = payload.get("actions") or []
    actions = tuple(dict(item) for item in raw_actions if isinstance(item, Mapping)) if isinstance(raw_actions, list) else ()
    return AgentResponse(
        narration=_truncate(narration, max_narration_chars),
        tool_calls=tool_calls,
        actions=actions,
        plan=payload.get("plan"),
    )


def extract_plan(response: AgentResponse) -> Any:
    """Plan candidate from a planner turn, either a ``plan`` key or ``handoff_to_backend(plan_json=...)``."""
    if response.plan is not None:
        return response.plan
    for call in response.tool_calls:
        if normalize_tool_name(call.name) != ToolKind.HANDOFF_TO_BACKEND.value:
            continue
        candidate = call.arguments.get("plan_json") or call.arguments.get("plan")
        if isinstance(candidate, str):
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                return candidate
        return candidate
    return None


__all__ = ["ParsedToolCall", "AgentResponse", "clean_response_text", "parse_agent_response", "extract_plan"]
