"""Execute one model request of a turn and fold its stream into the store."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from ..content import EMPTY, Content, PartsContent, TextContent, append_text, text_length
from ..errors import ErrorKind, classify_error, describe_error
from ..registry import resolve_model
from ..schemas.chat import (
    ChatRequestPayload,
    ChatResponse,
    ComparisonResult,
    ConversationMeta,
    Message,
    UsageStats,
)
from .events import (
    ConversationEvent,
    FinalEvent,
    StreamEvent,
    TextEvent,
    ToolCallEvent,
    ToolOutputEvent,
    UsageEvent,
)
from .history import build_history, history_source_for, with_user_message
from .state import ChatStore, Turn
from .tooling import merge_tool_call, merge_tool_output

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..client import ChatClient

logger = logging.getLogger(__name__)

Target = Union[Message, ComparisonResult]
TargetUpdater = Callable[[Target], dict[str, Any]]


def _has_content(content: Content | None) -> bool:
    if isinstance(content, TextContent):
        return content.text != ""
    if isinstance(content, PartsContent):
        return len(content.parts) > 0
    return False


class RequestDispatcher:
    """Run a single ``(turn, target)`` request against the backend.

    Every store update is addressed to the turn's assistant message and is
    dropped when the turn is no longer active, the assistant message is no
    longer last, or (for comparison targets) the result entry is gone.
    """

    def __init__(self, client: ChatClient, store: ChatStore):
        self._client = client
        self._store = store

    def build_payload(
        self,
        target_model: str,
        is_primary: bool,
        turn: Turn,
        *,
        conversation_id: Optional[str] = None,
        parent_conversation_id: Optional[str] = None,
    ) -> ChatRequestPayload:
        options = turn.options
        provider_id, model_id = resolve_model(
            target_model, options.model_to_provider, options.provider_id
        )
        source = history_source_for(self._store.messages, turn.message_id, is_primary)
        history = with_user_message(
            build_history(source, target_model, is_primary),
            turn.user_message_id,
            turn.content,
        )
        return ChatRequestPayload(
            messages=history,
            model=model_id,
            provider_id=provider_id or None,
            stream=options.stream,
            provider_stream=options.provider_stream,
            conversation_id=conversation_id,
            parent_conversation_id=parent_conversation_id,
            tools_enabled=options.tools_enabled,
            tools=list(options.tools),
            reasoning_effort=options.reasoning,
            system_prompt=options.system_prompt or None,
            active_system_prompt_id=options.active_system_prompt_id or None,
            request_id=turn.request_id(target_model, is_primary),
        )

    async def execute(
        self,
        target_model: str,
        is_primary: bool,
        turn: Turn,
        *,
        conversation_id: Optional[str] = None,
        parent_conversation_id: Optional[str] = None,
        retried: bool = False,
    ) -> Optional[ChatResponse]:
        """Send the request and return the response, or ``None`` on failure.

        Failures are recorded in the store: on the turn for the primary
        target, on the comparison entry otherwise. Cancellation propagates.
        """

        payload = self.build_payload(
            target_model,
            is_primary,
            turn,
            conversation_id=conversation_id,
            parent_conversation_id=parent_conversation_id,
        )
        if not is_primary:
            self._register_placeholder(turn, target_model)

        logger.debug(
            "Dispatching %s request %s to %s (provider=%s)",
            "primary" if is_primary else "comparison",
            payload.request_id,
            payload.model,
            payload.provider_id,
        )

        try:
            response = await self._run(turn, target_model, is_primary, payload)
        except asyncio.CancelledError:
            logger.debug("Request %s cancelled", payload.request_id)
            raise
        except Exception as exc:
            kind = classify_error(exc)
            if kind is ErrorKind.STREAMING_UNSUPPORTED and is_primary and not retried:
                logger.info(
                    "Streaming unsupported for %s; retrying without provider streaming",
                    target_model,
                )
                return await self._retry_without_streaming(
                    turn, target_model, payload
                )
            self._record_failure(turn, target_model, is_primary, exc)
            return None

        self._record_success(turn, target_model, is_primary, response)
        return response

    async def _retry_without_streaming(
        self, turn: Turn, target_model: str, payload: ChatRequestPayload
    ) -> Optional[ChatResponse]:
        self._update(
            turn,
            target_model,
            True,
            lambda current: {"content": EMPTY, "tool_calls": None},
        )
        retry_payload = payload.model_copy(update={"provider_stream": False})
        try:
            response = await self._run(turn, target_model, True, retry_payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._record_failure(turn, target_model, True, exc)
            return None
        self._record_success(turn, target_model, True, response)
        return response

    async def _run(
        self,
        turn: Turn,
        target_model: str,
        is_primary: bool,
        payload: ChatRequestPayload,
    ) -> ChatResponse:
        final: Content | None = None
        conversation: ConversationMeta | None = None
        usage: UsageStats | None = None

        async for event in self._client.stream_events(
            payload.to_payload(),
            request_id=payload.request_id,
            token=turn.token,
        ):
            if isinstance(event, FinalEvent):
                final = event.value
                continue
            if isinstance(event, ConversationEvent):
                conversation = event.value
            elif isinstance(event, UsageEvent):
                usage = event.value
            self._apply_event(turn, target_model, is_primary, event)

        return ChatResponse(
            content=final if final is not None else EMPTY,
            conversation=conversation,
            usage=usage,
        )

    def _apply_event(
        self,
        turn: Turn,
        target_model: str,
        is_primary: bool,
        event: StreamEvent,
    ) -> None:
        if isinstance(event, TextEvent):
            text = event.value
            if is_primary:
                self._track_text(turn, text)
            self._update(
                turn,
                target_model,
                is_primary,
                lambda current: {"content": append_text(current.content, text)},
            )
        elif isinstance(event, ToolCallEvent):
            delta = event.value
            self._update(
                turn,
                target_model,
                is_primary,
                lambda current: {
                    "tool_calls": merge_tool_call(
                        current.tool_calls, delta, text_length(current.content)
                    )
                },
            )
        elif isinstance(event, ToolOutputEvent):
            output = event.value

            def add_output(current: Target) -> dict[str, Any]:
                merged = merge_tool_output(current.tool_outputs, output)
                if merged is current.tool_outputs:
                    return {}
                return {"tool_outputs": merged}

            self._update(turn, target_model, is_primary, add_output)
        elif isinstance(event, UsageEvent):
            usage = event.value
            if is_primary:
                self._track_usage(turn, usage)
                self._update(
                    turn,
                    target_model,
                    True,
                    lambda current: {"usage": usage, "provider": usage.provider},
                )
            else:
                self._update(
                    turn, target_model, False, lambda current: {"usage": usage}
                )
        elif isinstance(event, ConversationEvent):
            if is_primary:
                self._adopt_conversation(turn, event.value)
        elif isinstance(event, FinalEvent):
            pass
        else:  # pragma: no cover - closed union
            logger.debug("Ignoring unknown stream event %r", event)

    def _track_text(self, turn: Turn, text: str) -> None:
        stats = self._store.token_stats
        if not self._store.is_active(turn.turn_id) or stats is None:
            return
        if stats.message_id != turn.message_id:
            return
        self._store.set_token_stats(stats.with_text(text))

    def _track_usage(self, turn: Turn, usage: UsageStats) -> None:
        stats = self._store.token_stats
        if not self._store.is_active(turn.turn_id) or stats is None:
            return
        if stats.message_id != turn.message_id:
            return
        updated = stats.with_usage(usage.completion_tokens, usage.provider)
        if updated is not stats:
            self._store.set_token_stats(updated)

    def _adopt_conversation(self, turn: Turn, conversation: ConversationMeta) -> None:
        if not self._store.is_active(turn.turn_id):
            return
        bound = self._store.conversation_id
        if bound is None:
            self._store.set_conversation(conversation.id, conversation.title)
        elif bound == conversation.id and conversation.title:
            self._store.set_title(conversation.title)

    def _register_placeholder(self, turn: Turn, target_model: str) -> None:
        if not self._store.is_active(turn.turn_id):
            return

        def add_entry(messages: tuple[Message, ...]) -> tuple[Message, ...]:
            if not messages:
                return messages
            last = messages[-1]
            if last.role != "assistant" or not last.matches_id(turn.message_id):
                return messages
            results = dict(last.comparison_results)
            results[target_model] = ComparisonResult(status="streaming")
            updated = last.model_copy(update={"comparison_results": results})
            return messages[:-1] + (updated,)

        self._store.replace_messages(add_entry)

    def _update(
        self,
        turn: Turn,
        target_model: str,
        is_primary: bool,
        updater: TargetUpdater,
    ) -> bool:
        """Patch the turn's assistant message or one of its comparison results."""

        if not self._store.is_active(turn.turn_id):
            return False

        def apply(messages: tuple[Message, ...]) -> tuple[Message, ...]:
            if not messages:
                return messages
            last = messages[-1]
            if last.role != "assistant" or not last.matches_id(turn.message_id):
                return messages
            if is_primary:
                changes = updater(last)
                if not changes:
                    return messages
                return messages[:-1] + (last.model_copy(update=changes),)

            result = last.comparison_results.get(target_model)
            if result is None:
                return messages
            changes = updater(result)
            if not changes:
                return messages
            results = dict(last.comparison_results)
            results[target_model] = result.model_copy(update=changes)
            updated = last.model_copy(update={"comparison_results": results})
            return messages[:-1] + (updated,)

        return self._store.replace_messages(apply)

    def _record_success(
        self,
        turn: Turn,
        target_model: str,
        is_primary: bool,
        response: ChatResponse,
    ) -> None:
        conversation = response.conversation
        active = self._store.is_active(turn.turn_id)
        persisted_id = conversation.assistant_message_id if conversation else None

        if is_primary:
            if conversation is not None:
                self._adopt_conversation(turn, conversation)

            def finalize_primary(current: Target) -> dict[str, Any]:
                changes: dict[str, Any] = {}
                if _has_content(response.content):
                    changes["content"] = response.content
                if (
                    persisted_id
                    and isinstance(current, Message)
                    and persisted_id != current.id
                ):
                    changes["id"] = persisted_id
                    changes["client_id"] = current.client_id or current.id
                return changes

            self._update(turn, target_model, True, finalize_primary)
            return

        if conversation is not None and active:
            if target_model not in self._store.linked_conversations:
                self._store.link_conversation(target_model, conversation.id)

        def finalize_comparison(current: Target) -> dict[str, Any]:
            changes: dict[str, Any] = {"status": "complete", "error": None}
            if _has_content(response.content):
                changes["content"] = response.content
            if persisted_id:
                changes["message_id"] = persisted_id
            return changes

        self._update(turn, target_model, False, finalize_comparison)

    def _record_failure(
        self,
        turn: Turn,
        target_model: str,
        is_primary: bool,
        exc: BaseException,
    ) -> None:
        message = describe_error(exc)
        if classify_error(exc) is ErrorKind.CANCELLED:
            logger.info("Request for %s cancelled", target_model)
        else:
            logger.warning("Request for %s failed: %s", target_model, message)

        if is_primary:
            if self._store.is_active(turn.turn_id):
                self._store.set_error(message)
            return
        self._update(
            turn,
            target_model,
            False,
            lambda current: {"status": "error", "error": message},
        )


__all__ = ["RequestDispatcher"]
