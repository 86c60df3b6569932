"""Streaming chat client for the backend's chat completions endpoint."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, AsyncGenerator, Mapping, Optional

import httpx

from .chat.decoder import StreamDecoder
from .chat.events import StreamEvent
from .config import Settings
from .errors import (
    ChatAPIError,
    ChatTransportError,
    StreamingNotSupportedError,
    is_streaming_unsupported_message,
)
from .sse import iter_events

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .chat.abort import CancellationToken

logger = logging.getLogger(__name__)


def extract_error_body(raw: bytes) -> tuple[str, Any]:
    """Return ``(message, body)`` for an error response payload."""

    if not raw:
        return ("Backend returned an empty error response.", None)
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        text = raw.decode("utf-8", errors="ignore")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return (text, text)
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return (error["message"], payload)
        if isinstance(error, str) and error:
            return (error, payload)
        if isinstance(payload.get("message"), str):
            return (payload["message"], payload)
    return (text, payload)


class ChatClient:
    """Client responsible for streaming chat completions from the backend."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._settings = settings
        self._http_client = http_client

    def _client_key(self) -> tuple[str, float]:
        return (self._settings.base_url, float(self._settings.request_timeout))

    async def get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client

        key = self._client_key()
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(
                    timeout=timeout,
                    limits=limits,
                    http2=True,
                )
                self.__class__._client_pool[key] = client
        return client

    def headers(
        self, *, accept: str = "application/json", request_id: str | None = None
    ) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": accept,
        }
        if self._settings.api_token is not None:
            headers["Authorization"] = (
                f"Bearer {self._settings.api_token.get_secret_value()}"
            )
        if request_id:
            headers["x-client-request-id"] = request_id
        return headers

    @property
    def base_url(self) -> str:
        return self._settings.base_url

    @staticmethod
    def error_from_response(status_code: int, raw: bytes) -> Exception:
        message, body = extract_error_body(raw)
        if is_streaming_unsupported_message(message):
            return StreamingNotSupportedError(message)
        return ChatAPIError(status_code, message, body)

    async def stream_events(
        self,
        payload: Mapping[str, Any],
        *,
        request_id: str,
        token: Optional["CancellationToken"] = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """POST a chat request and yield typed events until the final one.

        The stream always ends with a ``FinalEvent``. A plain JSON body (the
        backend answered without SSE) is decoded in one pass.
        """

        url = f"{self.base_url}/chat/completions"
        decoder = StreamDecoder()
        client = await self.get_http_client()
        try:
            async with client.stream(
                "POST",
                url,
                headers=self.headers(accept="text/event-stream", request_id=request_id),
                json=dict(payload),
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise self.error_from_response(response.status_code, body)

                content_type = response.headers.get("content-type", "")
                if "text/event-stream" not in content_type:
                    raw = await response.aread()
                    try:
                        body = json.loads(raw)
                    except json.JSONDecodeError as exc:
                        raise ChatTransportError(
                            f"Malformed response body: {exc.msg}"
                        ) from exc
                    if not isinstance(body, dict):
                        raise ChatTransportError("Malformed response body")
                    for event in decoder.decode_body(body):
                        yield event
                    return

                async for sse in iter_events(response.aiter_lines()):
                    if token is not None:
                        token.raise_if_cancelled(request_id)
                    if sse.is_done:
                        break
                    if not sse.data:
                        continue
                    try:
                        chunk = json.loads(sse.data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping non-JSON SSE payload: %s", sse.data)
                        continue
                    if not isinstance(chunk, dict):
                        continue
                    if sse.event == "error":
                        chunk = {"error": chunk.get("error") or chunk}
                    for event in decoder.feed(chunk):
                        yield event

                for event in decoder.close():
                    yield event
                yield decoder.finish()
        except httpx.HTTPError as exc:
            raise ChatTransportError(str(exc) or exc.__class__.__name__) from exc

    async def stop(self, request_id: str) -> bool:
        """Ask the backend to interrupt generation for ``request_id``.

        Best effort: local cancellation is authoritative, so failures are
        logged and reported as ``False``.
        """

        if not request_id:
            return False
        client = await self.get_http_client()
        try:
            response = await client.post(
                f"{self.base_url}/chat/completions/stop",
                headers=self.headers(),
                json={"request_id": request_id},
            )
            if response.status_code >= 400:
                logger.warning(
                    "Stop request for %s failed with status %s",
                    request_id,
                    response.status_code,
                )
                return False
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Stop request for %s failed: %s", request_id, exc)
            return False
        return bool(isinstance(data, dict) and data.get("stopped"))

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            return
        await self.__class__.aclose_shared()

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception:  # pragma: no cover - best effort cleanup
                pass


__all__ = ["ChatClient", "extract_error_body"]
