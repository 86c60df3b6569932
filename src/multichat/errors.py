"""Error taxonomy for chat requests and its classification helpers."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Mapping


class ChatError(Exception):
    """Base class for client-side chat failures."""


class ChatAPIError(ChatError):
    """Wrap an error status returned by the backend."""

    def __init__(self, status_code: int, detail: Any, body: Any = None):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail
        self.body = body if body is not None else detail


class UpstreamAPIError(ChatAPIError):
    """The backend reached the model provider but the provider failed."""


class ChatTransportError(ChatError):
    """The backend could not be reached or answered with an unreadable body."""


class StreamingNotSupportedError(ChatError):
    """The selected provider/model refuses streamed responses."""


class RequestCancelledError(ChatError):
    """The request was aborted locally."""


class TurnInFlightError(ChatError):
    """A turn is already running; new sends are rejected, not queued."""


class ErrorKind(str, Enum):
    STREAMING_UNSUPPORTED = "streaming-unsupported"
    UPSTREAM_API_ERROR = "upstream-api-error"
    CANCELLED = "cancelled"
    GENERIC = "generic"


STREAMING_UNSUPPORTED_MARKERS = (
    "Your organization must be verified to stream",
    "organization must be verified",
)

CANCELLED_MESSAGE = "Message cancelled"


def is_streaming_unsupported_message(message: Any) -> bool:
    if not isinstance(message, str):
        return False
    return any(marker in message for marker in STREAMING_UNSUPPORTED_MARKERS)


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, (asyncio.CancelledError, RequestCancelledError)):
        return ErrorKind.CANCELLED
    if isinstance(exc, StreamingNotSupportedError):
        return ErrorKind.STREAMING_UNSUPPORTED
    if isinstance(exc, ChatAPIError):
        return ErrorKind.UPSTREAM_API_ERROR
    return ErrorKind.GENERIC


def format_upstream_error(error: ChatAPIError) -> str:
    """Prefer the nested upstream detail, then the body message, then the raw message."""

    body = error.body if isinstance(error.body, Mapping) else None
    upstream = body.get("upstream") if body is not None else None
    if not isinstance(upstream, Mapping):
        upstream = None

    upstream_message = upstream.get("message") if upstream is not None else None
    upstream_message = (
        upstream_message.strip() if isinstance(upstream_message, str) else ""
    )
    body_message = body.get("message") if body is not None else None
    body_message = body_message.strip() if isinstance(body_message, str) else ""

    status_value = upstream.get("status") if upstream is not None else None
    status_part = f" (status {status_value})" if status_value is not None else ""

    if upstream_message:
        return f"Upstream provider error{status_part}: {upstream_message}"
    if body_message:
        return f"Upstream provider error{status_part}: {body_message}"
    return str(error)


def describe_error(exc: BaseException) -> str:
    kind = classify_error(exc)
    if kind is ErrorKind.CANCELLED:
        return CANCELLED_MESSAGE
    if kind is ErrorKind.STREAMING_UNSUPPORTED:
        return "Streaming not supported"
    if isinstance(exc, ChatAPIError):
        return format_upstream_error(exc)
    return str(exc) or exc.__class__.__name__


__all__ = [
    "CANCELLED_MESSAGE",
    "ChatAPIError",
    "ChatError",
    "ChatTransportError",
    "ErrorKind",
    "RequestCancelledError",
    "StreamingNotSupportedError",
    "TurnInFlightError",
    "UpstreamAPIError",
    "classify_error",
    "describe_error",
    "format_upstream_error",
    "is_streaming_unsupported_message",
]
