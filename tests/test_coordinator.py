"""End-to-end turn scenarios against stub transports."""

import asyncio
import json
import logging
from typing import Any, Callable, Optional

import pytest

from multichat.chat.coordinator import ChatCoordinator
from multichat.chat.events import ConversationEvent, FinalEvent, TextEvent
from multichat.chat.state import TurnStatus
from multichat.config import Settings
from multichat.content import TextContent
from multichat.conversations import ConversationWithMessages, LinkedConversation
from multichat.errors import CANCELLED_MESSAGE, ChatAPIError, TurnInFlightError
from multichat.schemas.chat import ConversationMeta, Message
from multichat.turn_logging import TurnLogWriter

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class StubChatClient:
    """Replays scripted steps per resolved model id.

    Steps are events to yield, exceptions to raise, ``asyncio.Event`` gates
    to wait on, or callables to invoke.
    """

    def __init__(self, scripts: dict[str, list[Any]]) -> None:
        self.scripts = scripts
        self.requests: list[tuple[str, dict]] = []
        self.stopped: list[str] = []
        self.closed = False

    async def stream_events(self, payload, *, request_id, token=None):
        self.requests.append((request_id, dict(payload)))
        for step in list(self.scripts[payload["model"]]):
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, asyncio.Event):
                await step.wait()
                continue
            if callable(step):
                step()
                continue
            yield step

    async def stop(self, request_id: str) -> bool:
        self.stopped.append(request_id)
        return True

    async def aclose(self) -> None:
        self.closed = True

    def payloads_for(self, model: str) -> list[dict]:
        return [payload for _, payload in self.requests if payload["model"] == model]


class StubConversations:
    def __init__(
        self,
        *,
        create_error: Optional[Exception] = None,
        stored: Optional[ConversationWithMessages] = None,
        edit_result: Optional[dict] = None,
    ) -> None:
        self.create_error = create_error
        self.stored = stored
        self.edit_result = edit_result or {}
        self.created: list[dict] = []
        self.fetched: list[tuple[str, int, Optional[str]]] = []
        self.edits: list[tuple[str, str, Any]] = []

    async def create(self, *, model=None, provider_id=None, title=None) -> ConversationMeta:
        self.created.append({"model": model, "provider_id": provider_id})
        if self.create_error is not None:
            raise self.create_error
        return ConversationMeta(id="conv-1", title="New conversation")

    async def get(self, conversation_id, *, limit=200, include_linked=None):
        self.fetched.append((conversation_id, limit, include_linked))
        if self.stored is None:
            raise ChatAPIError(404, "not found")
        return self.stored

    async def edit_message(self, conversation_id, message_id, content) -> dict:
        self.edits.append((conversation_id, message_id, content))
        return self.edit_result


def text(value: str) -> TextEvent:
    return TextEvent(value=value)


def final(value: str = "") -> FinalEvent:
    return FinalEvent(value=TextContent(text=value))


def conversation(conversation_id: str, title: str = "Chat") -> ConversationEvent:
    return ConversationEvent(value=ConversationMeta(id=conversation_id, title=title))


def make_coordinator(
    client: StubChatClient,
    conversations: Optional[StubConversations] = None,
    **kwargs: Any,
) -> ChatCoordinator:
    settings = Settings(
        default_model="openai::gpt", title_refresh_delay=0, ui_flush_interval=0
    )
    return ChatCoordinator(
        settings,
        client=client,
        conversations=conversations or StubConversations(),
        **kwargs,
    )


async def wait_until(predicate: Callable[[], bool]) -> None:
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


async def test_single_model_turn_streams_and_settles() -> None:
    client = StubChatClient({"gpt": [text("Hi"), text("! "), final("Hi! ")]})
    coordinator = make_coordinator(client)
    statuses: list[TurnStatus] = []
    coordinator.store.subscribe(lambda store: statuses.append(store.status))

    result = await coordinator.send("Hello")

    assert result is not None and result.error is None and not result.cancelled
    messages = coordinator.store.messages
    assert [message.role for message in messages] == ["user", "assistant"]
    assert messages[0].content == TextContent(text="Hello")
    assert messages[1].content == TextContent(text="Hi! ")
    assert messages[1].comparison_results == {}
    assert coordinator.store.status is TurnStatus.IDLE
    assert not coordinator.in_flight
    assert TurnStatus.STREAMING in statuses
    assert client.requests[0][0] == messages[1].id


async def test_blank_input_is_ignored() -> None:
    coordinator = make_coordinator(StubChatClient({}))

    assert await coordinator.send("   ") is None
    assert coordinator.store.messages == ()


async def test_comparison_turn_creates_conversation_and_runs_in_parallel() -> None:
    comparison_started = asyncio.Event()
    client = StubChatClient(
        {
            "gpt": [comparison_started, text("primary"), final()],
            "modelB": [comparison_started.set, text("B"), conversation("conv-b"), final()],
        }
    )
    conversations = StubConversations()
    coordinator = make_coordinator(client, conversations)

    result = await asyncio.wait_for(
        coordinator.send("Explain X", compare_models=["p::modelB"]), timeout=5
    )

    assert result is not None
    assert conversations.created == [{"model": "gpt", "provider_id": "openai"}]
    assert coordinator.store.conversation_id == "conv-1"
    assert client.payloads_for("gpt")[0]["conversation_id"] == "conv-1"
    assert client.payloads_for("modelB")[0]["parent_conversation_id"] == "conv-1"

    assistant = coordinator.store.messages[-1]
    assert assistant.content == TextContent(text="primary")
    assert assistant.comparison_results["p::modelB"].content == TextContent(text="B")
    assert assistant.comparison_results["p::modelB"].status == "complete"
    assert coordinator.store.linked_conversations == {"p::modelB": "conv-b"}


async def test_failed_up_front_creation_falls_back_to_primary_first() -> None:
    client = StubChatClient(
        {
            "gpt": [text("primary"), conversation("conv-p"), final()],
            "modelB": [text("B"), final()],
        }
    )
    conversations = StubConversations(create_error=ChatAPIError(500, "db down"))
    coordinator = make_coordinator(client, conversations)

    await coordinator.send("Hello", compare_models=["p::modelB"])

    assert [payload["model"] for _, payload in client.requests] == ["gpt", "modelB"]
    assert "conversation_id" not in client.payloads_for("gpt")[0]
    assert client.payloads_for("modelB")[0]["parent_conversation_id"] == "conv-p"
    assert coordinator.store.conversation_id == "conv-p"


async def test_primary_failure_without_parent_skips_comparisons() -> None:
    client = StubChatClient(
        {"gpt": [ChatAPIError(500, "kaput")], "modelB": [text("B"), final()]}
    )
    conversations = StubConversations(create_error=ChatAPIError(500, "db down"))
    coordinator = make_coordinator(client, conversations)

    result = await coordinator.send("Hello", compare_models=["p::modelB"])

    assert result is not None and result.error == "kaput"
    assert coordinator.store.error == "kaput"
    assert client.payloads_for("modelB") == []
    assert not coordinator.in_flight


async def test_comparison_failure_leaves_turn_healthy() -> None:
    client = StubChatClient(
        {
            "gpt": [text("primary"), final()],
            "modelA": [text("A"), final()],
            "modelB": [RuntimeError("B exploded")],
        }
    )
    coordinator = make_coordinator(client)
    coordinator.store.set_conversation("c1", "Existing")

    result = await coordinator.send("Hi", compare_models=["p::modelA", "p::modelB"])

    assert result is not None and result.error is None
    assistant = coordinator.store.messages[-1]
    assert assistant.content == TextContent(text="primary")
    assert assistant.comparison_results["p::modelA"].status == "complete"
    assert assistant.comparison_results["p::modelB"].status == "error"
    assert assistant.comparison_results["p::modelB"].error == "B exploded"


async def test_send_while_in_flight_is_rejected() -> None:
    gate = asyncio.Event()
    client = StubChatClient({"gpt": [gate, text("done"), final()]})
    coordinator = make_coordinator(client)

    task = asyncio.ensure_future(coordinator.send("first"))
    await wait_until(lambda: len(client.requests) == 1)

    with pytest.raises(TurnInFlightError):
        await coordinator.send("second")

    gate.set()
    await task
    assert [message.role for message in coordinator.store.messages] == ["user", "assistant"]


async def test_stop_mid_stream_settles_immediately_and_drops_late_events() -> None:
    gate = asyncio.Event()
    client = StubChatClient(
        {
            "gpt": [text("Hi"), gate, text(" late"), final("Hi late")],
            "modelB": [text("B"), gate, final()],
        }
    )
    coordinator = make_coordinator(client)
    coordinator.store.set_conversation("c1", "Existing")
    statuses: list[TurnStatus] = []
    coordinator.store.subscribe(lambda store: statuses.append(store.status))

    task = asyncio.ensure_future(coordinator.send("Hello", compare_models=["p::modelB"]))
    await wait_until(
        lambda: coordinator.store.messages
        and coordinator.store.messages[-1].content == TextContent(text="Hi")
    )
    turn_id = coordinator.store.active_turn_id

    assert coordinator.stop() is True
    assert coordinator.store.status is TurnStatus.IDLE
    assert not coordinator.in_flight
    assert TurnStatus.ABORTED in statuses

    gate.set()
    result = await task
    await coordinator.aclose()

    assert result is not None and result.cancelled
    assistant = coordinator.store.messages[-1]
    assert assistant.content == TextContent(text="Hi")
    assert assistant.comparison_results["p::modelB"].status == "error"
    assert assistant.comparison_results["p::modelB"].error == CANCELLED_MESSAGE
    assert client.stopped == [turn_id]
    assert coordinator.store.error is None
    assert coordinator.stop() is False


async def test_regenerate_reuses_last_user_message() -> None:
    client = StubChatClient({"gpt": [text("answer"), final()]})
    coordinator = make_coordinator(client)
    await coordinator.send("question")
    user_id = coordinator.store.messages[0].id

    await coordinator.regenerate()

    messages = coordinator.store.messages
    assert [message.role for message in messages] == ["user", "assistant"]
    assert messages[0].id == user_id
    second_payload = client.requests[1][1]
    assert [item["id"] for item in second_payload["messages"]] == [user_id]


async def test_retry_single_comparison_model() -> None:
    client = StubChatClient(
        {"gpt": [text("primary"), final()], "modelB": [RuntimeError("flaky")]}
    )
    coordinator = make_coordinator(client)
    coordinator.store.set_conversation("c1", "Existing")
    await coordinator.send("Hi", compare_models=["p::modelB"])
    assistant = coordinator.store.messages[-1]
    assert assistant.comparison_results["p::modelB"].status == "error"

    client.scripts["modelB"] = [text("B recovered"), conversation("conv-b"), final()]
    await coordinator.retry_comparison_model(assistant.id, "p::modelB")

    retried = coordinator.store.messages[-1]
    assert retried.content == TextContent(text="primary")
    assert retried.comparison_results["p::modelB"].status == "complete"
    assert retried.comparison_results["p::modelB"].content == TextContent(text="B recovered")
    assert client.requests[-1][0] == f"{assistant.id}-p::modelB"
    assert client.requests[-1][1]["parent_conversation_id"] == "c1"
    assert coordinator.store.linked_conversations == {"p::modelB": "conv-b"}
    assert not coordinator.in_flight


async def test_retry_primary_replaces_answer() -> None:
    client = StubChatClient({"gpt": [text("first"), final()]})
    coordinator = make_coordinator(client)
    await coordinator.send("Hi")
    assistant = coordinator.store.messages[-1]

    client.scripts["gpt"] = [text("second"), final()]
    await coordinator.retry_comparison_model(assistant.id, "primary")

    assert coordinator.store.messages[-1].content == TextContent(text="second")
    assert len(coordinator.store.messages) == 2


async def test_load_conversation_hydrates_linked_results() -> None:
    stored = ConversationWithMessages(
        id="c1",
        title="Stored chat",
        model="gpt-4o",
        provider_id="openai",
        messages=[
            {"id": 1, "role": "user", "content": "hi"},
            {"id": 2, "role": "assistant", "content": "primary hi"},
        ],
        linked_conversations=[
            LinkedConversation(
                id="c2",
                model="claude",
                provider_id="anthropic",
                messages=[
                    {"id": 10, "role": "user", "content": "hi"},
                    {"id": 11, "role": "assistant", "content": "claude hi"},
                ],
            )
        ],
    )
    conversations = StubConversations(stored=stored)
    coordinator = make_coordinator(StubChatClient({}), conversations)

    await coordinator.load_conversation("c1")

    assert conversations.fetched == [("c1", 200, "messages")]
    assert coordinator.model == "openai::gpt-4o"
    assert coordinator.compare_models == ("anthropic::claude",)
    assert coordinator.store.conversation_id == "c1"
    assert coordinator.store.conversation_title == "Stored chat"
    assert coordinator.store.linked_conversations == {"anthropic::claude": "c2"}
    result = coordinator.store.messages[1].comparison_results["anthropic::claude"]
    assert result.content == TextContent(text="claude hi")
    assert result.message_id == "11"


async def test_load_conversation_failure_sets_error() -> None:
    coordinator = make_coordinator(StubChatClient({}), StubConversations())

    with pytest.raises(ChatAPIError):
        await coordinator.load_conversation("missing")

    assert coordinator.store.error == "not found"


async def test_edit_message_persists_truncates_and_regenerates() -> None:
    client = StubChatClient({"gpt": [text("new answer"), final()]})
    conversations = StubConversations(edit_result={"new_conversation_id": "c2"})
    coordinator = make_coordinator(client, conversations)
    coordinator.store.set_conversation("c1", "Chat")
    coordinator.store.link_conversation("p::modelB", "c1-b")
    coordinator.store.set_messages(
        [
            Message(id="u1", role="user", content="old question"),
            Message(id="a1", role="assistant", content="old answer"),
            Message(id="u2", role="user", content="follow up"),
            Message(id="a2", role="assistant", content="follow answer"),
        ]
    )

    await coordinator.edit_message("u1", "new question", compare_models=[])

    assert conversations.edits == [("c1", "u1", "new question")]
    assert coordinator.store.conversation_id == "c2"
    assert coordinator.store.linked_conversations == {}
    messages = coordinator.store.messages
    assert [message.id for message in messages[:1]] == ["u1"]
    assert messages[0].content == TextContent(text="new question")
    assert messages[1].content == TextContent(text="new answer")
    assert len(messages) == 2
    payload = client.requests[0][1]
    assert payload["conversation_id"] == "c2"
    assert payload["messages"] == [
        {"id": "u1", "uuid": "u1", "role": "user", "content": "new question"}
    ]


async def test_new_chat_clears_state() -> None:
    client = StubChatClient({"gpt": [text("answer"), conversation("c9"), final()]})
    coordinator = make_coordinator(client)
    await coordinator.send("Hi")

    coordinator.new_chat()

    assert coordinator.store.messages == ()
    assert coordinator.store.conversation_id is None
    assert coordinator.store.linked_conversations == {}


async def test_untitled_conversation_title_is_refreshed() -> None:
    stored = ConversationWithMessages(id="c9", title="Greetings")
    client = StubChatClient(
        {"gpt": [text("answer"), conversation("c9", "New conversation"), final()]}
    )
    conversations = StubConversations(stored=stored)
    coordinator = make_coordinator(client, conversations)

    await coordinator.send("Hi")
    await wait_until(lambda: coordinator.store.conversation_title == "Greetings")

    assert conversations.fetched == [("c9", 1, None)]
    await coordinator.aclose()
    assert client.closed


async def test_request_options_are_snapshotted_per_turn() -> None:
    client = StubChatClient({"gpt": [text("answer"), final()]})
    coordinator = make_coordinator(client)
    coordinator.configure(reasoning_effort="high", tools=["search"])

    await coordinator.send("Hi")

    payload = client.requests[0][1]
    assert payload["reasoning_effort"] == "high"
    assert payload["tools"] == ["search"]
    with pytest.raises(ValueError):
        coordinator.configure(temperature=0.3)


async def test_settled_turn_is_written_to_turn_log(tmp_path) -> None:
    client = StubChatClient({"gpt": [text("answer"), final()]})
    writer = TurnLogWriter(tmp_path, min_level=logging.INFO)
    coordinator = make_coordinator(client, turn_logger=writer)

    result = await coordinator.send("Hi")

    log_files = list(tmp_path.rglob("turns.log"))
    assert len(log_files) == 1
    entry = json.loads(log_files[0].read_text(encoding="utf-8").split("=" * 80)[1])
    assert entry["turn_id"] == result.turn_id
    assert entry["status"] == "complete"
    assert entry["targets"] == ["openai::gpt"]


async def test_stopped_turn_log_ignores_the_next_turn(tmp_path) -> None:
    gate = asyncio.Event()
    client = StubChatClient(
        {
            "gpt": [text("first"), gate, final()],
            "other": [text("second"), final()],
        }
    )
    writer = TurnLogWriter(tmp_path, min_level=logging.INFO)
    coordinator = make_coordinator(client, turn_logger=writer)

    stopped_task = asyncio.ensure_future(coordinator.send("one"))
    await wait_until(
        lambda: coordinator.store.messages
        and coordinator.store.messages[-1].content == TextContent(text="first")
    )
    assert coordinator.stop() is True

    coordinator.set_model("openai::other")
    second = await coordinator.send("two")
    gate.set()
    stopped = await stopped_task
    await coordinator.aclose()

    raw = next(tmp_path.rglob("turns.log")).read_text(encoding="utf-8")
    entries = {
        entry["turn_id"]: entry
        for entry in (json.loads(chunk) for chunk in raw.split("=" * 80)[1::2])
    }
    stopped_entry = entries[stopped.turn_id]
    assert stopped_entry["status"] == "cancelled"
    assert stopped_entry["message_count"] == 2
    assert [message["role"] for message in stopped_entry["messages"]] == [
        "user",
        "assistant",
    ]
    assert "second" not in json.dumps(stopped_entry["messages"])
    assert entries[second.turn_id]["message_count"] == 4
