"""Client-side chat state: the message store, turns, and request snapshots."""

from __future__ import annotations

import logging
import random
import string
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Sequence

from ..config import Settings
from ..content import Content
from ..schemas.chat import Message
from .abort import CancellationToken

logger = logging.getLogger(__name__)


def generate_client_id() -> str:
    """Return a client-side message id."""

    try:
        return uuid.uuid4().hex
    except Exception:  # pragma: no cover - entropy source unavailable
        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=8))
        return f"{int(time.time() * 1000):x}-{suffix}"


class TurnStatus(str, Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    SETTLING = "settling"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Turn:
    """One user submission and every model request it fans out to."""

    turn_id: str
    message_id: str
    user_message_id: str
    content: Content
    options: "RequestOptions"
    compare_models: tuple[str, ...] = ()
    token: CancellationToken = field(default_factory=CancellationToken, compare=False)

    @property
    def primary_model(self) -> str:
        return self.options.model

    @property
    def targets(self) -> tuple[str, ...]:
        return (self.primary_model,) + self.compare_models

    def request_id(self, target_model: str, is_primary: bool) -> str:
        if is_primary:
            return self.turn_id
        return f"{self.turn_id}-{target_model}"


@dataclass(frozen=True)
class RequestOptions:
    """Settings captured once per turn so in-flight requests never see edits."""

    model: str
    provider_id: Optional[str] = None
    stream: bool = True
    provider_stream: bool = True
    tools_enabled: bool = True
    tools: tuple[str, ...] = ()
    reasoning_effort: str = "unset"
    system_prompt: Optional[str] = None
    active_system_prompt_id: Optional[str] = None
    model_to_provider: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "RequestOptions":
        options = cls(
            model=settings.default_model,
            provider_id=settings.default_provider_id,
            stream=settings.stream_enabled,
            provider_stream=settings.stream_enabled,
            tools_enabled=settings.tools_enabled,
            tools=tuple(settings.enabled_tools),
            reasoning_effort=settings.reasoning_effort,
            system_prompt=settings.system_prompt,
            active_system_prompt_id=settings.active_system_prompt_id,
        )
        if "tools" in overrides:
            overrides["tools"] = tuple(overrides["tools"] or ())
        if "model_to_provider" in overrides:
            overrides["model_to_provider"] = MappingProxyType(
                dict(overrides["model_to_provider"] or {})
            )
        return replace(options, **overrides)

    @property
    def reasoning(self) -> Optional[str]:
        if self.reasoning_effort == "unset":
            return None
        return self.reasoning_effort


@dataclass(frozen=True)
class TokenStats:
    """Live throughput for the primary answer.

    ``count`` is a characters/4 estimate until the backend reports
    ``completion_tokens``.
    """

    message_id: str
    char_count: int = 0
    count: float = 0
    start_time: float = field(default_factory=time.time)
    last_updated: float = field(default_factory=time.time)
    provider: Optional[str] = None
    is_estimate: bool = True

    def with_text(self, text: str, now: float | None = None) -> "TokenStats":
        now = time.time() if now is None else now
        start_time = now if self.char_count == 0 else self.start_time
        char_count = self.char_count + len(text)
        count = char_count / 4 if self.is_estimate else self.count
        return replace(
            self,
            char_count=char_count,
            count=count,
            start_time=start_time,
            last_updated=now,
        )

    def with_usage(
        self,
        completion_tokens: Optional[int],
        provider: Optional[str] = None,
    ) -> "TokenStats":
        update: dict[str, Any] = {}
        if provider:
            update["provider"] = provider
        if completion_tokens:
            update["count"] = completion_tokens
            update["is_estimate"] = False
        if not update:
            return self
        return replace(self, **update)

    @property
    def tokens_per_second(self) -> float:
        elapsed = self.last_updated - self.start_time
        if elapsed <= 0:
            return 0.0
        return self.count / elapsed


Listener = Callable[["ChatStore"], None]
MessagesUpdater = Callable[[tuple[Message, ...]], Sequence[Message]]


class ChatStore:
    """Observable holder of the conversation state.

    Messages are an immutable tuple replaced wholesale. An updater that
    returns the very same tuple is a no-op and does not notify listeners.
    Notifications are coalesced to at most one per ``flush_interval``
    seconds; ``flush()`` delivers a pending notification immediately.
    """

    def __init__(
        self,
        *,
        flush_interval: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._messages: tuple[Message, ...] = ()
        self.conversation_id: Optional[str] = None
        self.conversation_title: Optional[str] = None
        self.linked_conversations: dict[str, str] = {}
        self.status = TurnStatus.IDLE
        self.error: Optional[str] = None
        self.active_turn_id: Optional[str] = None
        self.token_stats: Optional[TokenStats] = None
        self._listeners: list[Listener] = []
        self._flush_interval = flush_interval
        self._clock = clock
        self._last_notified: float | None = None
        self._dirty = False

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._messages

    def replace_messages(self, updater: MessagesUpdater) -> bool:
        """Apply ``updater`` to the current messages; return whether they changed."""

        current = self._messages
        updated = updater(current)
        if updated is current:
            return False
        self._messages = tuple(updated)
        self._changed()
        return True

    def set_messages(self, messages: Sequence[Message]) -> None:
        self._messages = tuple(messages)
        self._changed(force=True)

    def set_status(self, status: TurnStatus) -> None:
        if self.status is status:
            return
        self.status = status
        self._changed(force=True)

    def set_error(self, error: Optional[str]) -> None:
        self.error = error
        self._changed(force=True)

    def set_conversation(
        self, conversation_id: Optional[str], title: Optional[str] = None
    ) -> None:
        self.conversation_id = conversation_id
        self.conversation_title = title
        self._changed(force=True)

    def set_title(self, title: Optional[str]) -> None:
        self.conversation_title = title
        self._changed(force=True)

    def link_conversation(self, model_id: str, conversation_id: str) -> None:
        if self.linked_conversations.get(model_id) == conversation_id:
            return
        self.linked_conversations = {
            **self.linked_conversations,
            model_id: conversation_id,
        }
        self._changed(force=True)

    def set_linked_conversations(self, linked: Mapping[str, str]) -> None:
        self.linked_conversations = dict(linked)
        self._changed(force=True)

    def set_token_stats(self, stats: Optional[TokenStats]) -> None:
        self.token_stats = stats
        self._changed()

    def is_active(self, turn_id: str) -> bool:
        return self.active_turn_id is not None and self.active_turn_id == turn_id

    def begin_turn(self, turn_id: str) -> None:
        self.active_turn_id = turn_id
        self.error = None
        self._changed(force=True)

    def end_turn(self, turn_id: str) -> bool:
        """Deactivate ``turn_id``; later updates addressed to it are dropped."""

        if self.active_turn_id != turn_id:
            return False
        self.active_turn_id = None
        self._changed(force=True)
        return True

    def reset(self) -> None:
        """Forget the current conversation entirely."""

        self._messages = ()
        self.conversation_id = None
        self.conversation_title = None
        self.linked_conversations = {}
        self.error = None
        self.token_stats = None
        self._changed(force=True)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _changed(self, *, force: bool = False) -> None:
        self._dirty = True
        now = self._clock()
        if (
            force
            or self._last_notified is None
            or now - self._last_notified >= self._flush_interval
        ):
            self.flush()

    def flush(self) -> None:
        if not self._dirty:
            return
        self._dirty = False
        self._last_notified = self._clock()
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Chat store listener failed")


__all__ = [
    "ChatStore",
    "RequestOptions",
    "TokenStats",
    "Turn",
    "TurnStatus",
    "generate_client_id",
]
