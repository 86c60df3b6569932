"""Rebuild client state from a persisted conversation and its linked copies."""

from __future__ import annotations

import datetime
import logging
import time
from typing import Any, Iterable, Mapping, Optional, Sequence

from pydantic import ValidationError

from ..content import Content, PartsContent, TextContent, TextPart, as_content
from ..registry import qualify_model
from ..schemas.chat import (
    ComparisonResult,
    Message,
    ToolCallAccumulator,
    ToolOutput,
    UsageStats,
)
from .decoder import THINKING_CLOSE, THINKING_OPEN
from .state import generate_client_id
from .tooling import merge_tool_outputs_into_assistants

logger = logging.getLogger(__name__)


def _timestamp(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return time.time()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=datetime.timezone.utc)
        return parsed.timestamp()
    return time.time()


def prepend_reasoning(content: Content, reasoning: str) -> Content:
    """Render stored reasoning as a leading ``<thinking>`` block."""

    reasoning = reasoning.strip()
    if not reasoning:
        return content
    block = f"{THINKING_OPEN}{reasoning}{THINKING_CLOSE}"

    if isinstance(content, TextContent):
        if not content.text.strip():
            return TextContent(text=block)
        if THINKING_OPEN in content.text:
            return content
        return TextContent(text=f"{block}\n\n{content.text}")

    parts = list(content.parts)
    if any(isinstance(part, TextPart) and THINKING_OPEN in part.text for part in parts):
        return content
    for position, part in enumerate(parts):
        if isinstance(part, TextPart):
            text = f"{block}\n\n{part.text}" if part.text else block
            parts[position] = TextPart(text=text)
            return PartsContent(parts=tuple(parts))
    return PartsContent(parts=(TextPart(text=block), *parts))


def _tool_calls(raw: Any) -> Optional[tuple[ToolCallAccumulator, ...]]:
    if not isinstance(raw, list) or not raw:
        return None
    calls: list[ToolCallAccumulator] = []
    for position, item in enumerate(raw):
        if not isinstance(item, Mapping):
            continue
        data = dict(item)
        data.setdefault("index", position)
        function = data.get("function")
        if isinstance(function, Mapping):
            arguments = function.get("arguments")
            if arguments is not None and not isinstance(arguments, str):
                data["function"] = {**function, "arguments": str(arguments)}
        try:
            calls.append(ToolCallAccumulator.model_validate(data))
        except ValidationError as exc:
            logger.debug("Skipping malformed stored tool call: %s", exc)
    return tuple(calls) or None


def _tool_outputs(raw: Any) -> Optional[tuple[ToolOutput, ...]]:
    if not isinstance(raw, list) or not raw:
        return None
    outputs = [
        ToolOutput.model_validate(item) for item in raw if isinstance(item, Mapping)
    ]
    return tuple(outputs) or None


def _usage(raw: Any) -> Optional[UsageStats]:
    if not isinstance(raw, Mapping):
        return None
    try:
        return UsageStats.model_validate(raw)
    except ValidationError:
        return None


def hydrate_message(raw: Mapping[str, Any]) -> Message:
    role = raw.get("role") or "user"
    content = as_content(raw.get("content"))
    details = raw.get("reasoning_details")
    has_events = bool(raw.get("message_events"))
    if role == "assistant" and isinstance(details, list) and not has_events:
        reasoning = "\n\n".join(
            item["text"].strip()
            for item in details
            if isinstance(item, Mapping)
            and isinstance(item.get("text"), str)
            and item["text"].strip()
        )
        content = prepend_reasoning(content, reasoning)

    raw_id = raw.get("id")
    usage = _usage(raw.get("usage"))
    provider = raw.get("provider") or (usage.provider if usage else None)
    return Message(
        id=str(raw_id) if raw_id not in (None, "") else generate_client_id(),
        role=role,
        content=content,
        timestamp=_timestamp(raw.get("created_at")),
        tool_call_id=raw.get("tool_call_id"),
        tool_calls=_tool_calls(raw.get("tool_calls")),
        tool_outputs=_tool_outputs(raw.get("tool_outputs")),
        usage=usage,
        provider=provider,
    )


def hydrate_messages(raw_messages: Iterable[Mapping[str, Any]]) -> list[Message]:
    """Convert stored messages and fold tool results onto their assistants."""

    return merge_tool_outputs_into_assistants(
        hydrate_message(raw) for raw in raw_messages
    )


def _linked_model(
    linked: Mapping[str, Any], model_to_provider: Mapping[str, str]
) -> Optional[str]:
    model = linked.get("model")
    if not model:
        return None
    provider = linked.get("provider_id")
    provider = provider.strip() if isinstance(provider, str) else None
    return qualify_model(str(model), provider, model_to_provider)


def build_linked_conversation_map(
    linked_conversations: Optional[Sequence[Mapping[str, Any]]],
    model_to_provider: Mapping[str, str],
    primary_model: str,
) -> tuple[dict[str, str], list[str]]:
    """Return ``(model -> conversation id, comparison model ids)``."""

    linked_map: dict[str, str] = {}
    for linked in linked_conversations or ():
        model = _linked_model(linked, model_to_provider)
        if model and linked.get("id") is not None:
            linked_map[model] = str(linked["id"])
    compare_models = [model for model in linked_map if model != primary_model]
    return linked_map, compare_models


def attach_linked_results(
    messages: Sequence[Message],
    linked_conversations: Optional[Sequence[Mapping[str, Any]]],
    model_to_provider: Mapping[str, str],
) -> list[Message]:
    """Attach each linked conversation's answers as comparison results.

    Linked assistant messages are paired with primary assistant messages by
    their position among assistant messages. When a comparison model missed
    a turn the pairing drifts; there is no explicit correlation id to use
    instead.
    """

    result = list(messages)
    for linked in linked_conversations or ():
        model = _linked_model(linked, model_to_provider)
        raw_messages = linked.get("messages") or []
        if not model or not raw_messages:
            continue
        assistants = [
            raw
            for raw in raw_messages
            if isinstance(raw, Mapping) and raw.get("role") == "assistant"
        ]
        if not assistants:
            continue

        assistant_count = 0
        for position, message in enumerate(result):
            if message.role != "assistant":
                continue
            if assistant_count >= len(assistants):
                break
            raw = assistants[assistant_count]
            assistant_count += 1
            comparison = ComparisonResult(
                message_id=str(raw.get("id")) if raw.get("id") is not None else None,
                content=as_content(raw.get("content")),
                usage=_usage(raw.get("usage")),
                status="complete",
                tool_calls=_tool_calls(raw.get("tool_calls")),
                tool_outputs=_tool_outputs(raw.get("tool_outputs")),
            )
            results = dict(message.comparison_results)
            results[model] = comparison
            result[position] = message.model_copy(
                update={"comparison_results": results}
            )
    return result


__all__ = [
    "attach_linked_results",
    "build_linked_conversation_map",
    "hydrate_message",
    "hydrate_messages",
    "prepend_reasoning",
]
