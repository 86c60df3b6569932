"""Per-target history construction for outgoing chat requests."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from ..content import Content, PartsContent, TextContent, is_blank
from ..schemas.chat import Message, OutgoingMessage, ToolCallAccumulator, ToolOutput


def is_empty_assistant_payload(
    content: Content | None,
    tool_calls: Optional[Sequence[ToolCallAccumulator]] = None,
    tool_outputs: Optional[Sequence[ToolOutput]] = None,
) -> bool:
    """True when an assistant entry carries no text, tool calls, or outputs."""

    return is_blank(content) and not tool_calls and not tool_outputs


def _outgoing(message: Message) -> OutgoingMessage:
    return OutgoingMessage(
        id=message.id,
        role=message.role,
        content=message.content,
        tool_calls=message.tool_calls,
        tool_outputs=message.tool_outputs,
    )


def build_history(
    source: Iterable[Message], target_model: str, is_primary: bool
) -> list[OutgoingMessage]:
    """Return the conversation as ``target_model`` should see it.

    The primary target receives every message verbatim. A comparison target
    sees its own previous answers in place of the primary's, never another
    model's, and never raw tool-role messages.
    """

    if is_primary:
        return [_outgoing(message) for message in source]

    history: list[OutgoingMessage] = []
    for message in source:
        if message.role == "assistant":
            result = message.comparison_results.get(target_model)
            if result is None:
                continue
            if is_empty_assistant_payload(
                result.content, result.tool_calls, result.tool_outputs
            ):
                continue
            history.append(
                OutgoingMessage(
                    id=message.id,
                    role="assistant",
                    content=result.content,
                    tool_calls=result.tool_calls,
                    tool_outputs=result.tool_outputs,
                )
            )
            continue
        if message.role == "tool":
            continue
        history.append(_outgoing(message))
    return history


def with_user_message(
    history: Sequence[OutgoingMessage], user_message_id: str, content: Content
) -> list[OutgoingMessage]:
    """Append the turn's user message, or replace it in place when present."""

    if any(message.id == user_message_id for message in history):
        return [
            message.model_copy(update={"content": content})
            if message.id == user_message_id
            else message
            for message in history
        ]
    return list(history) + [
        OutgoingMessage(id=user_message_id, role="user", content=content)
    ]


def _is_empty_placeholder(message: Message) -> bool:
    if message.role != "assistant":
        return False
    content = message.content
    if isinstance(content, TextContent):
        return content.text == ""
    if isinstance(content, PartsContent):
        return len(content.parts) == 0
    return False


def history_source_for(
    messages: Sequence[Message], message_id: str, is_primary: bool
) -> list[Message]:
    """Messages a target's history is built from.

    History stops before the turn's own assistant message. Comparison
    targets additionally skip empty assistant placeholders.
    """

    cutoff = next(
        (
            position
            for position, message in enumerate(messages)
            if message.role == "assistant" and message.matches_id(message_id)
        ),
        len(messages),
    )
    prior = list(messages[:cutoff])
    if is_primary:
        return prior
    return [message for message in prior if not _is_empty_placeholder(message)]


__all__ = [
    "build_history",
    "history_source_for",
    "is_empty_assistant_payload",
    "with_user_message",
]
