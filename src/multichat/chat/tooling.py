"""Pure reducers for streamed tool-call fragments and tool outputs."""

from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence

from ..content import is_blank, to_wire
from ..schemas.chat import (
    Message,
    ToolCallAccumulator,
    ToolCallDelta,
    ToolCallFunction,
    ToolOutput,
)


def merge_arguments(old: str, new: str) -> str:
    """Merge argument fragments.

    A fragment that already starts with what we have is a resend from the
    start and replaces it; anything else is appended.
    """

    if old and new and new.startswith(old):
        return new
    return old + new


def _find_index(
    existing: Sequence[ToolCallAccumulator], delta: ToolCallDelta
) -> Optional[int]:
    if delta.id:
        for position, call in enumerate(existing):
            if call.id == delta.id:
                return position
    if delta.index is not None or not delta.id:
        target = delta.index if delta.index is not None else 0
        for position, call in enumerate(existing):
            if call.index == target:
                return position
    return None


def merge_tool_call(
    existing: Optional[Sequence[ToolCallAccumulator]],
    delta: ToolCallDelta,
    current_text_length: int,
) -> tuple[ToolCallAccumulator, ...]:
    """Fold one tool-call fragment into the accumulator list.

    Matching is by ``id`` first, then by ``index``; unmatched fragments start
    a new accumulator anchored at ``current_text_length``.
    """

    calls = tuple(existing or ())
    fn_delta = delta.function
    position = _find_index(calls, delta)

    if position is None:
        created = ToolCallAccumulator(
            id=delta.id,
            index=delta.index if delta.index is not None else len(calls),
            type=delta.type or "function",
            function=ToolCallFunction(
                name=(fn_delta.name if fn_delta else None) or "",
                arguments=(fn_delta.arguments if fn_delta else None) or "",
            ),
            text_offset=current_text_length,
        )
        return calls + (created,)

    current = calls[position]
    update: dict[str, Any] = {}
    if delta.id:
        update["id"] = delta.id
    if delta.type:
        update["type"] = delta.type
    if delta.index is not None:
        update["index"] = delta.index

    function = current.function
    if fn_delta is not None:
        fn_update: dict[str, str] = {}
        if fn_delta.name:
            fn_update["name"] = fn_delta.name
        if fn_delta.arguments:
            fn_update["arguments"] = merge_arguments(
                function.arguments, fn_delta.arguments
            )
        if fn_update:
            function = function.model_copy(update=fn_update)
    if function is not current.function:
        update["function"] = function

    merged = current.model_copy(update=update)
    return calls[:position] + (merged,) + calls[position + 1 :]


def merge_tool_output(
    existing: Optional[Sequence[ToolOutput]], output: ToolOutput
) -> tuple[ToolOutput, ...]:
    """Append ``output`` unless an output for the same call is already present."""

    outputs = tuple(existing or ())
    for item in outputs:
        if output.tool_call_id and item.tool_call_id:
            if item.tool_call_id == output.tool_call_id:
                return outputs
        elif output.name and item.name == output.name:
            return outputs
    return outputs + (output,)


def _owner_for(
    tool_call_id: Optional[str], owners: dict[str, int]
) -> Optional[int]:
    if not tool_call_id:
        return None
    return owners.get(tool_call_id)


def merge_tool_outputs_into_assistants(messages: Iterable[Message]) -> list[Message]:
    """Attach tool-role results to the assistant message that requested them.

    Both the streamed ``tool_outputs`` shape and the persisted
    ``tool_call_id`` + ``content`` shape are understood. Tool messages are
    dropped from the result.
    """

    result: list[Message] = []
    owners: dict[str, int] = {}

    for message in messages:
        if message.role == "assistant":
            result.append(message)
            for call in message.tool_calls or ():
                if call.id:
                    owners[call.id] = len(result) - 1
            continue

        if message.role != "tool":
            result.append(message)
            continue

        pending: list[ToolOutput] = list(message.tool_outputs or ())
        if message.tool_call_id and not is_blank(message.content):
            pending.append(
                ToolOutput(
                    tool_call_id=message.tool_call_id,
                    output=to_wire(message.content),
                    status="success",
                )
            )
        for output in pending:
            position = _owner_for(output.tool_call_id, owners)
            if position is None:
                continue
            owner = result[position]
            outputs = owner.tool_outputs or ()
            if any(item.tool_call_id == output.tool_call_id for item in outputs):
                continue
            result[position] = owner.model_copy(
                update={"tool_outputs": tuple(outputs) + (output,)}
            )

    return result


__all__ = [
    "merge_arguments",
    "merge_tool_call",
    "merge_tool_output",
    "merge_tool_outputs_into_assistants",
]
