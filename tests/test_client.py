"""Tests for the httpx-based chat client."""

import json

import httpx
import pytest

from multichat.chat.abort import CancellationToken
from multichat.chat.events import FinalEvent, TextEvent, UsageEvent
from multichat.client import ChatClient, extract_error_body
from multichat.config import Settings
from multichat.content import TextContent
from multichat.errors import (
    ChatAPIError,
    ChatTransportError,
    ErrorKind,
    RequestCancelledError,
    StreamingNotSupportedError,
    UpstreamAPIError,
    classify_error,
)
from pydantic import SecretStr

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_settings() -> Settings:
    return Settings(api_base_url="https://backend.test/v1", api_token=SecretStr("secret"))


def sse_body(*chunks: object) -> bytes:
    lines = []
    for item in chunks:
        data = item if isinstance(item, str) else json.dumps(item)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode()


def make_client(handler) -> ChatClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChatClient(make_settings(), http_client=http_client)


async def collect(client: ChatClient, **kwargs) -> list:
    return [
        event
        async for event in client.stream_events(
            {"model": "gpt", "messages": []}, request_id="turn-1", **kwargs
        )
    ]


async def test_stream_events_posts_and_yields_typed_events() -> None:
    seen: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=sse_body(
                {"choices": [{"delta": {"content": "Hi"}}]},
                "not json",
                {"choices": [{"delta": {"content": "! "}}], "usage": {"completion_tokens": 2}},
                "[DONE]",
                {"choices": [{"delta": {"content": "ignored"}}]},
            ),
        )

    client = make_client(handler)
    events = await collect(client)

    request = seen["request"]
    assert str(request.url) == "https://backend.test/v1/chat/completions"
    assert request.headers["Accept"] == "text/event-stream"
    assert request.headers["x-client-request-id"] == "turn-1"
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content)["model"] == "gpt"

    assert events[0] == TextEvent(value="Hi")
    assert isinstance(events[1], UsageEvent)
    assert events[2] == TextEvent(value="! ")
    assert events[-1] == FinalEvent(value=TextContent(text="Hi! "))
    await client.aclose()


async def test_stream_events_decodes_plain_json_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"choices": [{"message": {"content": "whole answer"}}]}
        )

    events = await collect(make_client(handler))

    assert events == [FinalEvent(value=TextContent(text="whole answer"))]


async def test_error_status_raises_chat_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            503, json={"message": "busy", "upstream": {"message": "overloaded"}}
        )

    with pytest.raises(ChatAPIError) as excinfo:
        await collect(make_client(handler))

    assert excinfo.value.status_code == 503
    assert excinfo.value.body["upstream"]["message"] == "overloaded"


async def test_error_status_detects_streaming_unsupported() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={"error": {"message": "Your organization must be verified to stream"}},
        )

    with pytest.raises(StreamingNotSupportedError):
        await collect(make_client(handler))


async def test_error_event_in_stream_raises_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = b'event: error\ndata: {"message": "provider exploded"}\n\n'
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=body
        )

    with pytest.raises(UpstreamAPIError, match="provider exploded"):
        await collect(make_client(handler))


async def test_transport_failure_is_a_generic_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ChatTransportError, match="connection refused") as excinfo:
        await collect(make_client(handler))

    assert not isinstance(excinfo.value, ChatAPIError)
    assert classify_error(excinfo.value) is ErrorKind.GENERIC


async def test_malformed_json_body_is_a_generic_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, headers={"content-type": "application/json"}, content=b"{oops"
        )

    with pytest.raises(ChatTransportError, match="Malformed response body") as excinfo:
        await collect(make_client(handler))

    assert classify_error(excinfo.value) is ErrorKind.GENERIC


async def test_cancelled_token_stops_the_stream() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=sse_body({"choices": [{"delta": {"content": "Hi"}}]}),
        )

    token = CancellationToken()
    token.cancel()

    with pytest.raises(RequestCancelledError):
        await collect(make_client(handler), token=token)


async def test_stop_posts_request_id() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/chat/completions/stop"
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"stopped": True})

    assert await make_client(handler).stop("turn-9") is True
    assert seen == [{"request_id": "turn-9"}]


async def test_stop_failures_are_reported_as_false() -> None:
    def failing(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    def rejected(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"detail": "unknown"})

    assert await make_client(failing).stop("turn-1") is False
    assert await make_client(rejected).stop("turn-1") is False
    assert await make_client(rejected).stop("") is False


async def test_shared_pool_reuses_clients_per_settings() -> None:
    settings = make_settings()
    first = ChatClient(settings)
    second = ChatClient(settings)
    try:
        assert await first.get_http_client() is await second.get_http_client()
    finally:
        await ChatClient.aclose_shared()


def test_extract_error_body_variants() -> None:
    assert extract_error_body(b"")[0] == "Backend returned an empty error response."
    assert extract_error_body(b"plain failure") == ("plain failure", "plain failure")
    assert extract_error_body(b'{"error": "nope"}') == ("nope", {"error": "nope"})
    message, body = extract_error_body(b'{"error": {"message": "deep"}}')
    assert message == "deep"
    assert body == {"error": {"message": "deep"}}
