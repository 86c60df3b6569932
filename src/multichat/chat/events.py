"""Typed events produced by a chat response stream."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..content import Content, as_content
from ..schemas.chat import ConversationMeta, ToolCallDelta, ToolOutput, UsageStats


class TextEvent(BaseModel):
    type: Literal["text"] = "text"
    value: str

    model_config = ConfigDict(frozen=True)


class ToolCallEvent(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    value: ToolCallDelta

    model_config = ConfigDict(frozen=True)


class ToolOutputEvent(BaseModel):
    type: Literal["tool_output"] = "tool_output"
    value: ToolOutput

    model_config = ConfigDict(frozen=True)


class UsageEvent(BaseModel):
    type: Literal["usage"] = "usage"
    value: UsageStats

    model_config = ConfigDict(frozen=True)


class ConversationEvent(BaseModel):
    type: Literal["conversation"] = "conversation"
    value: ConversationMeta

    model_config = ConfigDict(frozen=True)


class FinalEvent(BaseModel):
    """Authoritative content once the stream has ended."""

    type: Literal["final"] = "final"
    value: Content

    model_config = ConfigDict(frozen=True)

    @field_validator("value", mode="before")
    @classmethod
    def _normalize_value(cls, value: Any) -> Any:
        return as_content(value)


StreamEvent = Annotated[
    Union[
        TextEvent,
        ToolCallEvent,
        ToolOutputEvent,
        UsageEvent,
        ConversationEvent,
        FinalEvent,
    ],
    Field(discriminator="type"),
]


__all__ = [
    "ConversationEvent",
    "FinalEvent",
    "StreamEvent",
    "TextEvent",
    "ToolCallEvent",
    "ToolOutputEvent",
    "UsageEvent",
]
