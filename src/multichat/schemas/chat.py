"""Pydantic models for chat messages, stream fragments and responses."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..content import EMPTY, Content, as_content, to_wire

Role = Literal["user", "assistant", "system", "tool"]
ComparisonStatus = Literal["streaming", "complete", "error"]


class ToolCallFunction(BaseModel):
    name: str = ""
    arguments: str = ""

    model_config = ConfigDict(frozen=True)


class ToolCallAccumulator(BaseModel):
    """In-progress tool call merged from streamed fragments."""

    id: Optional[str] = None
    index: int = 0
    type: str = "function"
    function: ToolCallFunction = Field(default_factory=ToolCallFunction)
    text_offset: int = Field(default=0, alias="textOffset")

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class ToolCallFunctionDelta(BaseModel):
    name: Optional[str] = None
    arguments: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="ignore")


class ToolCallDelta(BaseModel):
    """Wire fragment of a tool call as delivered by the stream."""

    id: Optional[str] = None
    index: Optional[int] = None
    type: Optional[str] = None
    function: Optional[ToolCallFunctionDelta] = None

    model_config = ConfigDict(frozen=True, extra="ignore")


class ToolOutput(BaseModel):
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    output: Any = None
    status: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="allow")


class UsageStats(BaseModel):
    provider: Optional[str] = None
    model: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    reasoning_tokens: Optional[int] = None
    prompt_ms: Optional[float] = None
    completion_ms: Optional[float] = None

    model_config = ConfigDict(frozen=True)

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class ComparisonResult(BaseModel):
    """Streamed answer of one comparison model for a turn."""

    message_id: Optional[str] = None
    content: Content = EMPTY
    usage: Optional[UsageStats] = None
    status: ComparisonStatus = "streaming"
    error: Optional[str] = None
    tool_calls: Optional[Tuple[ToolCallAccumulator, ...]] = None
    tool_outputs: Optional[Tuple[ToolOutput, ...]] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("content", mode="before")
    @classmethod
    def _normalize_content(cls, value: Any) -> Any:
        return as_content(value)


class Message(BaseModel):
    """A chat message as held in client state."""

    id: str
    role: Role
    content: Content = EMPTY
    timestamp: float = Field(default_factory=time.time)
    client_id: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: Optional[Tuple[ToolCallAccumulator, ...]] = None
    tool_outputs: Optional[Tuple[ToolOutput, ...]] = None
    usage: Optional[UsageStats] = None
    provider: Optional[str] = None
    comparison_results: Mapping[str, ComparisonResult] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @field_validator("content", mode="before")
    @classmethod
    def _normalize_content(cls, value: Any) -> Any:
        return as_content(value)

    def matches_id(self, value: str | None) -> bool:
        """Return True when ``value`` is either the persisted or client id."""

        if not value:
            return False
        return value == self.id or value == self.client_id


class ConversationMeta(BaseModel):
    id: str
    title: Optional[str] = None
    model: Optional[str] = None
    provider_id: Optional[str] = None
    created_at: Optional[str] = None
    user_message_id: Optional[str] = None
    assistant_message_id: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="allow")

    @field_validator("id", "user_message_id", "assistant_message_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        if value is None:
            return None
        return str(value)


class ChatResponse(BaseModel):
    content: Content = EMPTY
    conversation: Optional[ConversationMeta] = None
    usage: Optional[UsageStats] = None

    model_config = ConfigDict(frozen=True)


class OutgoingMessage(BaseModel):
    """A history entry as sent to one target model."""

    id: str
    role: Role
    content: Content = EMPTY
    tool_calls: Optional[Tuple[ToolCallAccumulator, ...]] = None
    tool_outputs: Optional[Tuple[ToolOutput, ...]] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("content", mode="before")
    @classmethod
    def _normalize_content(cls, value: Any) -> Any:
        return as_content(value)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "uuid": self.id,
            "role": self.role,
            "content": to_wire(self.content),
        }
        if self.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": call.type,
                    "index": call.index,
                    "function": call.function.model_dump(),
                }
                for call in self.tool_calls
            ]
        if self.tool_outputs:
            payload["tool_outputs"] = [
                output.model_dump(exclude_none=True) for output in self.tool_outputs
            ]
        return payload


class ChatRequestPayload(BaseModel):
    """Outgoing request body for one target model."""

    messages: List[OutgoingMessage]
    model: str
    provider_id: Optional[str] = None
    stream: bool = True
    provider_stream: bool = True
    conversation_id: Optional[str] = None
    parent_conversation_id: Optional[str] = None
    tools_enabled: bool = True
    tools: List[str] = Field(default_factory=list)
    reasoning_effort: Optional[str] = None
    system_prompt: Optional[str] = None
    active_system_prompt_id: Optional[str] = None
    request_id: str

    model_config = ConfigDict(frozen=True)

    def to_payload(self) -> Dict[str, Any]:
        """Serialize for the backend, omitting unset optional fields."""

        payload = self.model_dump(
            exclude_none=True,
            exclude={"messages", "tools", "request_id"},
        )
        payload["messages"] = [message.to_payload() for message in self.messages]
        # The SSE connection always streams; provider_stream drives upstream.
        payload["stream"] = True
        payload["providerStream"] = self.provider_stream
        payload["streamingEnabled"] = self.stream
        payload["toolsEnabled"] = self.tools_enabled
        if self.tools:
            payload["tools"] = list(self.tools)
        return payload


__all__ = [
    "ChatRequestPayload",
    "ChatResponse",
    "ComparisonResult",
    "ComparisonStatus",
    "ConversationMeta",
    "Message",
    "OutgoingMessage",
    "Role",
    "ToolCallAccumulator",
    "ToolCallDelta",
    "ToolCallFunction",
    "ToolCallFunctionDelta",
    "ToolOutput",
    "UsageStats",
]
