"""Decode backend chunks into typed stream events."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from pydantic import ValidationError

from ..content import TextContent, as_content
from ..errors import (
    StreamingNotSupportedError,
    UpstreamAPIError,
    is_streaming_unsupported_message,
)
from ..schemas.chat import ConversationMeta, ToolCallDelta, ToolOutput, UsageStats
from .events import (
    ConversationEvent,
    FinalEvent,
    StreamEvent,
    TextEvent,
    ToolCallEvent,
    ToolOutputEvent,
    UsageEvent,
)

logger = logging.getLogger(__name__)

THINKING_OPEN = "<thinking>"
THINKING_CLOSE = "</thinking>"

_USAGE_FIELDS = (
    "prompt_tokens",
    "completion_tokens",
    "total_tokens",
    "reasoning_tokens",
)


def _number(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    return None


def usage_from_timings(timings: Any) -> dict[str, Any]:
    """Translate llama.cpp style ``timings`` into usage fields."""

    if not isinstance(timings, Mapping):
        return {}

    prompt_n = _number(timings.get("prompt_n"))
    if prompt_n is not None:
        prompt_tokens = (_number(timings.get("cache_n")) or 0) + prompt_n
    else:
        prompt_tokens = _number(timings.get("prompt_tokens"))

    completion_tokens = _number(timings.get("predicted_n"))
    if completion_tokens is None:
        completion_tokens = _number(timings.get("completion_tokens"))

    total_tokens = _number(timings.get("total_tokens"))
    if total_tokens is None and (
        prompt_tokens is not None or completion_tokens is not None
    ):
        total_tokens = (prompt_tokens or 0) + (completion_tokens or 0)

    prompt_ms = _number(timings.get("prompt_ms"))
    if prompt_ms is None:
        prompt_ms = _number(timings.get("promptMs"))
    completion_ms = _number(timings.get("predicted_ms"))
    if completion_ms is None:
        completion_ms = _number(timings.get("completion_ms"))
    if completion_ms is None:
        completion_ms = _number(timings.get("completionMs"))

    values = {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": total_tokens,
        "prompt_ms": prompt_ms,
        "completion_ms": completion_ms,
    }
    return {key: value for key, value in values.items() if value is not None}


def extract_usage(data: Mapping[str, Any]) -> UsageStats | None:
    fields: dict[str, Any] = {}
    if isinstance(data.get("provider"), str):
        fields["provider"] = data["provider"]
    if isinstance(data.get("model"), str):
        fields["model"] = data["model"]

    usage = data.get("usage")
    if isinstance(usage, Mapping):
        for key in _USAGE_FIELDS:
            value = _number(usage.get(key))
            if value is not None:
                fields[key] = int(value)

    for key, value in usage_from_timings(data.get("timings")).items():
        if key in {"prompt_ms", "completion_ms"}:
            fields[key] = value
        else:
            fields.setdefault(key, int(value))

    if not fields:
        return None
    return UsageStats(**fields)


def _error_message(error: Any) -> str:
    if isinstance(error, Mapping):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
        return str(dict(error))
    return str(error)


def raise_for_error_payload(error: Any) -> None:
    """Raise the matching exception for an ``error`` object in a body or chunk."""

    message = _error_message(error)
    if is_streaming_unsupported_message(message):
        raise StreamingNotSupportedError(message)
    status_code = 500
    if isinstance(error, Mapping):
        if error.get("code") == "invalid_request_error":
            status_code = 400
        elif isinstance(error.get("status"), int):
            status_code = error["status"]
    raise UpstreamAPIError(status_code, message, error)


def _delta_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        fragments = [
            item["text"]
            for item in content
            if isinstance(item, Mapping)
            and item.get("type") == "text"
            and isinstance(item.get("text"), str)
        ]
        return "".join(fragments)
    return ""


class StreamDecoder:
    """Stateful translator from response chunks to ``StreamEvent`` values.

    One decoder is used per request. Reasoning deltas are rendered inline
    inside a ``<thinking>`` block that is closed before the next answer
    content, before tool calls, or when the stream finishes.
    """

    def __init__(self) -> None:
        self._text: list[str] = []
        self._reasoning_open = False
        self._last_sent_usage: UsageStats | None = None
        self._final_override: Any = None
        self.usage: UsageStats | None = None
        self.conversation: ConversationMeta | None = None

    def _emit_text(self, text: str) -> TextEvent:
        self._text.append(text)
        return TextEvent(value=text)

    def _close_reasoning(self) -> list[StreamEvent]:
        if not self._reasoning_open:
            return []
        self._reasoning_open = False
        return [self._emit_text(THINKING_CLOSE)]

    def _conversation_event(self, raw: Any) -> ConversationEvent | None:
        try:
            conversation = ConversationMeta.model_validate(raw)
        except ValidationError as exc:
            logger.debug("Skipping malformed conversation payload: %s", exc)
            return None
        self.conversation = conversation
        return ConversationEvent(value=conversation)

    def _usage_events(self, data: Mapping[str, Any]) -> list[StreamEvent]:
        usage = extract_usage(data)
        if usage is None:
            return []
        if self.usage is not None:
            merged = self.usage.model_dump(exclude_none=True)
            merged.update(usage.model_dump(exclude_none=True))
            usage = UsageStats(**merged)
        self.usage = usage
        if usage == self._last_sent_usage:
            return []
        self._last_sent_usage = usage
        return [UsageEvent(value=usage)]

    def _tool_call_events(self, raw_calls: Any) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for raw in raw_calls or []:
            try:
                delta = ToolCallDelta.model_validate(raw)
            except ValidationError as exc:
                logger.debug("Skipping malformed tool_call fragment: %s", exc)
                continue
            events.append(ToolCallEvent(value=delta))
        return events

    def _tool_output_event(self, raw: Any) -> ToolOutputEvent | None:
        try:
            output = ToolOutput.model_validate(raw)
        except ValidationError as exc:
            logger.debug("Skipping malformed tool_output payload: %s", exc)
            return None
        return ToolOutputEvent(value=output)

    def feed(self, data: Mapping[str, Any]) -> list[StreamEvent]:
        """Decode one streamed chunk."""

        if "error" in data and data["error"]:
            raise_for_error_payload(data["error"])

        if data.get("_conversation"):
            event = self._conversation_event(data["_conversation"])
            return [event] if event is not None else []

        if data.get("reasoning_summary"):
            return []

        events: list[StreamEvent] = self._usage_events(data)

        choices = data.get("choices")
        delta: Mapping[str, Any] = {}
        if isinstance(choices, list) and choices and isinstance(choices[0], Mapping):
            candidate = choices[0].get("delta")
            if isinstance(candidate, Mapping):
                delta = candidate

        content = _delta_text(delta.get("content"))
        if content and is_streaming_unsupported_message(content):
            raise StreamingNotSupportedError(content)

        if self._reasoning_open and content:
            events.extend(self._close_reasoning())
            events.append(self._emit_text(content))
            return events

        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if isinstance(reasoning, str) and reasoning:
            if not self._reasoning_open:
                self._reasoning_open = True
                events.append(self._emit_text(THINKING_OPEN + reasoning))
            else:
                events.append(self._emit_text(reasoning))
            return events

        if content:
            events.append(self._emit_text(content))
            return events

        if delta.get("tool_calls"):
            events.extend(self._close_reasoning())
            events.extend(self._tool_call_events(delta["tool_calls"]))
            return events

        if delta.get("tool_output"):
            event = self._tool_output_event(delta["tool_output"])
            if event is not None:
                events.append(event)

        return events

    def decode_body(self, body: Mapping[str, Any]) -> list[StreamEvent]:
        """Decode a complete (non-streamed) JSON response body."""

        if body.get("error"):
            raise_for_error_payload(body["error"])

        events: list[StreamEvent] = []
        has_text_events = False
        for raw in body.get("tool_events") or []:
            if not isinstance(raw, Mapping):
                continue
            kind = raw.get("type")
            value = raw.get("value")
            if kind == "text" and isinstance(value, str):
                events.append(self._emit_text(value))
                has_text_events = True
            elif kind == "tool_call":
                events.extend(self._tool_call_events([value]))
            elif kind == "tool_output":
                event = self._tool_output_event(value)
                if event is not None:
                    events.append(event)

        if body.get("_conversation"):
            event = self._conversation_event(body["_conversation"])
            if event is not None:
                events.append(event)

        if not has_text_events:
            choices = body.get("choices")
            if isinstance(choices, list) and choices:
                message = choices[0].get("message") if isinstance(choices[0], Mapping) else None
                message = message if isinstance(message, Mapping) else {}
                content = message.get("content")
                reasoning = message.get("reasoning")
                if isinstance(reasoning, str) and reasoning:
                    prefix = f"{THINKING_OPEN}{reasoning}{THINKING_CLOSE}\n\n"
                    content = prefix + (_delta_text(content) if content else "")
                self._final_override = content
            else:
                nested = body.get("message")
                nested_content = nested.get("content") if isinstance(nested, Mapping) else None
                self._final_override = body.get("content") or nested_content

        events.extend(self._usage_events(body))
        events.append(self.finish())
        return events

    def finish(self) -> FinalEvent:
        """Close any open reasoning block and return the final content event."""

        if self._reasoning_open:
            self._reasoning_open = False
            self._text.append(THINKING_CLOSE)
        if self._final_override is not None:
            return FinalEvent(value=as_content(self._final_override))
        return FinalEvent(value=TextContent(text="".join(self._text)))

    def close(self) -> list[StreamEvent]:
        """Events to deliver before ``finish`` so listeners see the closing tag."""

        return self._close_reasoning()


__all__ = [
    "StreamDecoder",
    "THINKING_CLOSE",
    "THINKING_OPEN",
    "extract_usage",
    "raise_for_error_payload",
    "usage_from_timings",
]
