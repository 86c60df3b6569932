"""Turn orchestration across the primary model and comparison models."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Iterable, Optional, Sequence

from ..client import ChatClient
from ..config import Settings
from ..content import EMPTY, Content, ContentBuilder, TextContent, to_wire
from ..conversations import ConversationsAPI
from ..errors import CANCELLED_MESSAGE, ChatError, TurnInFlightError, describe_error
from ..registry import qualify_model, resolve_model
from ..schemas.chat import ChatResponse, ConversationMeta, Message
from ..turn_logging import TurnLogWriter
from .abort import AbortController, CancellationToken
from .dispatcher import RequestDispatcher
from .hydration import attach_linked_results, build_linked_conversation_map, hydrate_messages
from .state import ChatStore, RequestOptions, TokenStats, Turn, TurnStatus, generate_client_id

logger = logging.getLogger(__name__)

PRIMARY_KEY = "primary"
UNTITLED_TITLES = frozenset({"", "Untitled conversation", "New conversation"})

_OPTION_FIELDS = frozenset(field.name for field in dataclasses.fields(RequestOptions))

# Messages and bound conversation id at the moment a turn stopped being active.
TurnSnapshot = tuple[tuple[Message, ...], Optional[str]]


@dataclass(frozen=True)
class TurnResult:
    turn_id: str
    message_id: str
    primary: Optional[ChatResponse]
    error: Optional[str] = None
    cancelled: bool = False


class ChatCoordinator:
    """Drive turns from user input to settled state.

    A turn appends the user message and one assistant placeholder, then
    dispatches the primary model and every comparison model. With comparison
    models active the parent conversation is created first so all targets can
    run concurrently; otherwise the primary runs first and its conversation
    becomes the parent of the comparison requests.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client: ChatClient | None = None,
        conversations: ConversationsAPI | None = None,
        store: ChatStore | None = None,
        content_builder: ContentBuilder | None = None,
        turn_logger: TurnLogWriter | None = None,
        model_to_provider: dict[str, str] | None = None,
    ):
        self._settings = settings
        self._client = client or ChatClient(settings)
        self._conversations = conversations or ConversationsAPI(self._client)
        self._store = store or ChatStore(flush_interval=settings.ui_flush_interval)
        self._content_builder = content_builder or ContentBuilder()
        self._turn_logger = turn_logger
        self._dispatcher = RequestDispatcher(self._client, self._store)
        self._abort = AbortController(self._client, on_stopped=self._handle_stopped)
        self._active_turn: Turn | None = None
        self._background: set[asyncio.Task] = set()
        self._settled: dict[str, TurnSnapshot] = {}
        self._option_overrides: dict[str, Any] = {}

        self.model = settings.default_model
        self.compare_models: tuple[str, ...] = ()
        self.model_to_provider: dict[str, str] = dict(model_to_provider or {})

    @property
    def store(self) -> ChatStore:
        return self._store

    @property
    def conversations(self) -> ConversationsAPI:
        return self._conversations

    @property
    def content_builder(self) -> ContentBuilder:
        return self._content_builder

    @property
    def in_flight(self) -> bool:
        return self._store.active_turn_id is not None

    def set_model(self, model: str) -> None:
        self.model = model.strip()

    def set_compare_models(self, models: Iterable[str]) -> None:
        cleaned: list[str] = []
        for model in models:
            model = model.strip()
            if model and model not in cleaned:
                cleaned.append(model)
        self.compare_models = tuple(cleaned)

    def configure(self, **overrides: Any) -> None:
        """Override request options for future turns (in-flight turns keep theirs)."""

        unknown = set(overrides) - _OPTION_FIELDS
        if unknown:
            raise ValueError(f"Unknown request option(s): {', '.join(sorted(unknown))}")
        self._option_overrides.update(overrides)

    def snapshot_options(self) -> RequestOptions:
        overrides = dict(self._option_overrides)
        overrides.setdefault("model", self.model)
        overrides.setdefault("model_to_provider", self.model_to_provider)
        return RequestOptions.from_settings(self._settings, **overrides)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def _claim_turn(self) -> tuple[str, CancellationToken]:
        if self.in_flight:
            raise TurnInFlightError("A turn is already in progress")
        message_id = generate_client_id()
        self._store.begin_turn(message_id)
        return message_id, self._abort.start(message_id)

    def _release_claim(self, message_id: str) -> None:
        self._store.end_turn(message_id)
        self._abort.finish(message_id)
        self._settled.pop(message_id, None)

    async def send(
        self,
        text: str,
        *,
        compare_models: Optional[Sequence[str]] = None,
        client_message_id: str | None = None,
        skip_local_user_message: bool = False,
    ) -> Optional[TurnResult]:
        """Send ``text`` to the primary model and every comparison model.

        Returns ``None`` for blank input without attachments or when the
        content could not be prepared. Raises ``TurnInFlightError`` while
        another turn is running.
        """

        if self.in_flight:
            raise TurnInFlightError("A turn is already in progress")
        if not text.strip() and not self._content_builder.has_attachments:
            return None

        message_id, token = self._claim_turn()
        try:
            content = await self._content_builder.build(text)
        except asyncio.CancelledError:
            self._release_claim(message_id)
            raise
        except Exception as exc:
            logger.warning("Failed to prepare message content: %s", exc)
            self._release_claim(message_id)
            self._store.set_error(str(exc) or "Failed to prepare attachments")
            return None
        self._content_builder.clear()

        return await self._run_turn(
            message_id,
            token,
            content,
            compare_models=compare_models,
            client_message_id=client_message_id,
            skip_local_user_message=skip_local_user_message,
        )

    async def regenerate(
        self,
        base_messages: Optional[Sequence[Message]] = None,
        compare_models: Optional[Sequence[str]] = None,
    ) -> Optional[TurnResult]:
        """Resubmit the last user message of ``base_messages``.

        Without ``base_messages`` the conversation is cut after its last user
        message.
        """

        if self.in_flight:
            raise TurnInFlightError("A turn is already in progress")
        if base_messages is None:
            messages = self._store.messages
            last_user_index = next(
                (
                    position
                    for position in range(len(messages) - 1, -1, -1)
                    if messages[position].role == "user"
                ),
                None,
            )
            if last_user_index is None:
                return None
            base_messages = messages[: last_user_index + 1]

        self._store.set_messages(base_messages)
        last_user = next(
            (message for message in reversed(base_messages) if message.role == "user"),
            None,
        )
        if last_user is None:
            return None

        message_id, token = self._claim_turn()
        return await self._run_turn(
            message_id,
            token,
            last_user.content,
            compare_models=compare_models,
            client_message_id=last_user.id,
            skip_local_user_message=True,
        )

    def _resolve_compare_models(
        self, compare_models: Optional[Sequence[str]], primary_model: str
    ) -> tuple[str, ...]:
        source = self.compare_models if compare_models is None else compare_models
        resolved: list[str] = []
        for model in source:
            if model and model != primary_model and model not in resolved:
                resolved.append(model)
        return tuple(resolved)

    async def _run_turn(
        self,
        message_id: str,
        token: CancellationToken,
        content: Content,
        *,
        compare_models: Optional[Sequence[str]],
        client_message_id: str | None,
        skip_local_user_message: bool,
    ) -> TurnResult:
        options = self.snapshot_options()
        turn = Turn(
            turn_id=message_id,
            message_id=message_id,
            user_message_id=client_message_id or generate_client_id(),
            content=content,
            options=options,
            compare_models=self._resolve_compare_models(compare_models, options.model),
            token=token,
        )
        if token.cancelled:
            self._settle(turn)
            return TurnResult(turn.turn_id, turn.message_id, None, cancelled=True)

        self._active_turn = turn
        self._store.set_status(TurnStatus.DISPATCHING)
        self._store.set_token_stats(TokenStats(message_id=turn.message_id))

        def append_placeholders(messages: tuple[Message, ...]) -> tuple[Message, ...]:
            added: list[Message] = []
            if not skip_local_user_message:
                added.append(
                    Message(id=turn.user_message_id, role="user", content=content)
                )
            added.append(Message(id=turn.message_id, role="assistant", content=EMPTY))
            return messages + tuple(added)

        self._store.replace_messages(append_placeholders)
        logger.info(
            "Turn %s: primary=%s comparisons=%s",
            turn.turn_id,
            turn.primary_model,
            ", ".join(turn.compare_models) or "-",
        )

        primary: Optional[ChatResponse] = None
        try:
            primary = await self._dispatch(turn)
        finally:
            error = self._store.error if self._store.is_active(turn.turn_id) else None
            snapshot = self._settle(turn)

        result = TurnResult(
            turn_id=turn.turn_id,
            message_id=turn.message_id,
            primary=primary,
            error=error,
            cancelled=turn.token.cancelled,
        )
        self._schedule_title_refresh(primary)
        await self._log_turn(turn, result, snapshot)
        return result

    async def ensure_parent_conversation(self, turn: Turn) -> Optional[str]:
        """Return the bound conversation id, creating one when comparisons need it.

        A failed creation is logged and yields ``None`` so the turn falls back
        to primary-first dispatch.
        """

        conversation_id = self._store.conversation_id
        if conversation_id or not turn.compare_models:
            return conversation_id

        options = turn.options
        provider_id, model_id = resolve_model(
            turn.primary_model, options.model_to_provider, options.provider_id
        )
        try:
            conversation = await self._conversations.create(
                model=model_id, provider_id=provider_id or None
            )
        except ChatError as exc:
            logger.warning("Up-front conversation creation failed: %s", exc)
            return None

        if self._store.is_active(turn.turn_id) and self._store.conversation_id is None:
            self._store.set_conversation(conversation.id, conversation.title)
        return conversation.id

    def _spawn(self, turn: Turn, coro: Awaitable[Optional[ChatResponse]]) -> asyncio.Task:
        return turn.token.register(asyncio.ensure_future(coro))

    async def _await_one(
        self, turn: Turn, task: asyncio.Task
    ) -> Optional[ChatResponse]:
        try:
            return await task
        except asyncio.CancelledError:
            if turn.token.cancelled and task.cancelled():
                return None
            raise

    def _spawn_comparisons(self, turn: Turn, parent_id: str) -> list[asyncio.Task]:
        linked = self._store.linked_conversations
        tasks = []
        for model in turn.compare_models:
            linked_id = linked.get(model)
            tasks.append(
                self._spawn(
                    turn,
                    self._dispatcher.execute(
                        model,
                        False,
                        turn,
                        conversation_id=linked_id,
                        parent_conversation_id=None if linked_id else parent_id,
                    ),
                )
            )
        return tasks

    @staticmethod
    def _log_unexpected(results: Sequence[Any]) -> None:
        for outcome in results:
            if isinstance(outcome, Exception):
                logger.error("Model request failed unexpectedly", exc_info=outcome)

    async def _dispatch(self, turn: Turn) -> Optional[ChatResponse]:
        parent_id = await self.ensure_parent_conversation(turn)
        if turn.token.cancelled:
            return None
        if self._store.is_active(turn.turn_id):
            self._store.set_status(TurnStatus.STREAMING)

        if parent_id and turn.compare_models:
            primary_task = self._spawn(
                turn,
                self._dispatcher.execute(
                    turn.primary_model, True, turn, conversation_id=parent_id
                ),
            )
            compare_tasks = self._spawn_comparisons(turn, parent_id)
            results = await asyncio.gather(
                primary_task, *compare_tasks, return_exceptions=True
            )
            self._log_unexpected(results)
            first = results[0]
            return first if isinstance(first, ChatResponse) else None

        primary = await self._await_one(
            turn,
            self._spawn(
                turn,
                self._dispatcher.execute(
                    turn.primary_model, True, turn, conversation_id=parent_id
                ),
            ),
        )
        parent = (
            primary.conversation.id
            if primary is not None and primary.conversation is not None
            else parent_id
        )
        if parent and turn.compare_models and not turn.token.cancelled:
            results = await asyncio.gather(
                *self._spawn_comparisons(turn, parent), return_exceptions=True
            )
            self._log_unexpected(results)
        return primary

    def _capture(self, turn_id: str) -> None:
        self._settled.setdefault(
            turn_id, (self._store.messages, self._store.conversation_id)
        )

    def _settle(self, turn: Turn) -> Optional[TurnSnapshot]:
        """Finish ``turn`` and return the store snapshot taken when it ended."""

        if self._store.is_active(turn.turn_id):
            self._store.set_status(TurnStatus.SETTLING)
            self._capture(turn.turn_id)
            self._store.end_turn(turn.turn_id)
            self._store.set_status(TurnStatus.IDLE)
        self._abort.finish(turn.turn_id)
        if self._active_turn is turn:
            self._active_turn = None
        self._store.flush()
        return self._settled.pop(turn.turn_id, None)

    async def retry_comparison_model(
        self, message_id: str, model_id: str
    ) -> Optional[ChatResponse]:
        """Re-run one target against an existing assistant message.

        ``model_id == "primary"`` re-runs the primary model. Only the last
        assistant message can be updated.
        """

        if self.in_flight:
            raise TurnInFlightError("A turn is already in progress")
        messages = self._store.messages
        index = next(
            (
                position
                for position, message in enumerate(messages)
                if message.role == "assistant" and message.matches_id(message_id)
            ),
            None,
        )
        if index is None:
            return None
        user = next(
            (message for message in reversed(messages[:index]) if message.role == "user"),
            None,
        )
        if user is None:
            return None

        assistant = messages[index]
        is_primary = model_id == PRIMARY_KEY
        options = self.snapshot_options()
        target = options.model if is_primary else model_id

        self._store.begin_turn(assistant.id)
        token = self._abort.start(assistant.id)
        turn = Turn(
            turn_id=assistant.id,
            message_id=assistant.id,
            user_message_id=user.id,
            content=user.content,
            options=options,
            compare_models=() if is_primary else (target,),
            token=token,
        )
        self._active_turn = turn
        self._store.set_status(TurnStatus.STREAMING)

        if is_primary:
            self._store.set_token_stats(TokenStats(message_id=assistant.id))
            self._reset_assistant(turn)
            conversation_id = self._store.conversation_id
            parent_id = None
        else:
            conversation_id = self._store.linked_conversations.get(target)
            parent_id = None if conversation_id else self._store.conversation_id

        try:
            return await self._await_one(
                turn,
                self._spawn(
                    turn,
                    self._dispatcher.execute(
                        target,
                        is_primary,
                        turn,
                        conversation_id=conversation_id,
                        parent_conversation_id=parent_id,
                    ),
                ),
            )
        finally:
            self._settle(turn)

    def _reset_assistant(self, turn: Turn) -> None:
        def reset(messages: tuple[Message, ...]) -> tuple[Message, ...]:
            if not messages:
                return messages
            last = messages[-1]
            if last.role != "assistant" or not last.matches_id(turn.message_id):
                return messages
            cleared = last.model_copy(
                update={
                    "content": EMPTY,
                    "tool_calls": None,
                    "tool_outputs": None,
                    "usage": None,
                }
            )
            return messages[:-1] + (cleared,)

        self._store.replace_messages(reset)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def stop(self) -> bool:
        """Abort the active turn; returns ``False`` when nothing was running."""

        return self._abort.stop()

    def _handle_stopped(self, turn_id: str) -> None:
        turn = self._active_turn
        self._store.set_status(TurnStatus.ABORTED)
        if turn is not None and turn.turn_id == turn_id:
            self._mark_cancelled(turn)
        if self._store.is_active(turn_id):
            self._capture(turn_id)
        self._store.end_turn(turn_id)
        self._store.set_status(TurnStatus.IDLE)
        self._store.flush()

    def _mark_cancelled(self, turn: Turn) -> None:
        def mark(messages: tuple[Message, ...]) -> tuple[Message, ...]:
            if not messages:
                return messages
            last = messages[-1]
            if last.role != "assistant" or not last.matches_id(turn.message_id):
                return messages
            results = dict(last.comparison_results)
            changed = False
            for model, result in results.items():
                if result.status == "streaming":
                    results[model] = result.model_copy(
                        update={"status": "error", "error": CANCELLED_MESSAGE}
                    )
                    changed = True
            if not changed:
                return messages
            updated = last.model_copy(update={"comparison_results": results})
            return messages[:-1] + (updated,)

        self._store.replace_messages(mark)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def new_chat(self) -> None:
        if self.in_flight:
            self.stop()
        self._store.reset()

    async def load_conversation(self, conversation_id: str) -> ConversationMeta:
        """Replace local state with a stored conversation and its linked copies."""

        if self.in_flight:
            self.stop()
        self._store.set_status(TurnStatus.IDLE)
        self._store.set_error(None)
        try:
            data = await self._conversations.get(
                conversation_id, limit=200, include_linked="messages"
            )
        except ChatError as exc:
            self._store.set_error(describe_error(exc))
            raise

        messages = hydrate_messages(data.messages)
        if data.model:
            self.model = self._qualified_model(data.model, data.provider_id)

        linked_raw = [linked.model_dump() for linked in data.linked_conversations]
        linked_map, compare_models = build_linked_conversation_map(
            linked_raw, self.model_to_provider, self.model
        )
        if linked_raw:
            messages = attach_linked_results(messages, linked_raw, self.model_to_provider)

        self._store.set_messages(messages)
        self._store.set_conversation(data.id, data.title)
        self._store.set_linked_conversations(linked_map)
        self.compare_models = tuple(compare_models)
        logger.info(
            "Loaded conversation %s (%d messages, %d linked)",
            data.id,
            len(messages),
            len(linked_map),
        )
        return data

    def _qualified_model(self, model: str, provider_id: Optional[str]) -> str:
        return qualify_model(model, provider_id, self.model_to_provider)

    async def edit_message(
        self,
        message_id: str,
        text: str,
        compare_models: Optional[Sequence[str]] = None,
    ) -> Optional[TurnResult]:
        """Edit a user message, drop everything after it, and regenerate."""

        if self.in_flight:
            raise TurnInFlightError("A turn is already in progress")
        messages = self._store.messages
        index = next(
            (
                position
                for position, message in enumerate(messages)
                if message.role == "user" and message.matches_id(message_id)
            ),
            None,
        )
        if index is None:
            return None

        content = TextContent(text=text)
        target = messages[index]
        conversation_id = self._store.conversation_id
        if conversation_id:
            try:
                result = await self._conversations.edit_message(
                    conversation_id, target.id, to_wire(content)
                )
            except ChatError as exc:
                self._store.set_error(describe_error(exc))
                return None
            new_id = result.get("new_conversation_id")
            if new_id and str(new_id) != conversation_id:
                self._store.set_conversation(str(new_id), self._store.conversation_title)
                self._store.set_linked_conversations({})

        edited = target.model_copy(update={"content": content})
        base = tuple(messages[:index]) + (edited,)
        return await self.regenerate(base, compare_models)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _schedule_title_refresh(self, primary: Optional[ChatResponse]) -> None:
        if primary is None or primary.conversation is None:
            return
        conversation = primary.conversation
        if (conversation.title or "") not in UNTITLED_TITLES:
            return
        task = asyncio.get_running_loop().create_task(
            self._refresh_title(conversation)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh_title(self, conversation: ConversationMeta) -> None:
        await asyncio.sleep(self._settings.title_refresh_delay)
        if self._store.conversation_id != conversation.id:
            return
        try:
            updated = await self._conversations.get(conversation.id, limit=1)
        except ChatError as exc:
            logger.debug("Title refresh for %s failed: %s", conversation.id, exc)
            return
        if updated.title and updated.title != conversation.title:
            if self._store.conversation_id == conversation.id:
                self._store.set_title(updated.title)

    async def _log_turn(
        self,
        turn: Turn,
        result: TurnResult,
        snapshot: Optional[TurnSnapshot],
    ) -> None:
        if self._turn_logger is None or snapshot is None:
            return
        messages, conversation_id = snapshot
        if result.cancelled:
            status = "cancelled"
        elif result.error:
            status = "error"
        else:
            status = "complete"
        try:
            await self._turn_logger.write(
                turn_id=turn.turn_id,
                targets=turn.targets,
                status=status,
                error=result.error,
                conversation_id=conversation_id,
                messages=messages,
            )
        except OSError as exc:
            logger.warning("Failed to write turn log: %s", exc)

    async def aclose(self) -> None:
        if self.in_flight:
            self.stop()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self._abort.drain()
        await self._client.aclose()


__all__ = ["ChatCoordinator", "PRIMARY_KEY", "TurnResult"]
