import asyncio

from multichat.errors import (
    CANCELLED_MESSAGE,
    ChatAPIError,
    ChatTransportError,
    ErrorKind,
    RequestCancelledError,
    StreamingNotSupportedError,
    UpstreamAPIError,
    classify_error,
    describe_error,
    format_upstream_error,
    is_streaming_unsupported_message,
)


def test_classify_error_covers_every_kind() -> None:
    assert classify_error(asyncio.CancelledError()) is ErrorKind.CANCELLED
    assert classify_error(RequestCancelledError("r1")) is ErrorKind.CANCELLED
    assert (
        classify_error(StreamingNotSupportedError("no"))
        is ErrorKind.STREAMING_UNSUPPORTED
    )
    assert classify_error(UpstreamAPIError(500, "x")) is ErrorKind.UPSTREAM_API_ERROR
    assert classify_error(ChatAPIError(502, "x")) is ErrorKind.UPSTREAM_API_ERROR
    assert classify_error(ChatTransportError("connection reset")) is ErrorKind.GENERIC
    assert classify_error(ValueError("bad")) is ErrorKind.GENERIC


def test_format_upstream_error_prefers_nested_detail() -> None:
    error = ChatAPIError(
        502,
        "Bad gateway",
        {"message": "body message", "upstream": {"message": "quota exceeded", "status": 429}},
    )

    assert format_upstream_error(error) == (
        "Upstream provider error (status 429): quota exceeded"
    )


def test_format_upstream_error_falls_back_to_body_then_transport() -> None:
    body_only = ChatAPIError(500, "Internal", {"message": "model overloaded"})
    transport = ChatAPIError(502, "connection reset")

    assert format_upstream_error(body_only) == "Upstream provider error: model overloaded"
    assert format_upstream_error(transport) == "connection reset"


def test_describe_error_messages() -> None:
    assert describe_error(asyncio.CancelledError()) == CANCELLED_MESSAGE
    assert describe_error(StreamingNotSupportedError("x")) == "Streaming not supported"
    assert describe_error(RuntimeError("kaput")) == "kaput"
    assert describe_error(ChatTransportError("connection reset")) == "connection reset"
    assert describe_error(RuntimeError()) == "RuntimeError"


def test_streaming_unsupported_markers() -> None:
    assert is_streaming_unsupported_message(
        "Your organization must be verified to stream this model."
    )
    assert not is_streaming_unsupported_message("rate limited")
    assert not is_streaming_unsupported_message(None)
