"""Cancellation primitives shared by every request of a turn."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Callable, Optional

from ..errors import RequestCancelledError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..client import ChatClient

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot cancellation signal owned by a single turn.

    Tasks registered with the token are cancelled together. Transport loops
    poll ``cancelled`` between chunks so a stream stops even when its task is
    shielded or not registered.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def register(self, task: asyncio.Task) -> asyncio.Task:
        if self.cancelled:
            task.cancel()
            return task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel(self) -> bool:
        """Cancel once; later calls are no-ops and return ``False``."""

        if self._event.is_set():
            return False
        self._event.set()
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        return True

    def raise_if_cancelled(self, request_id: str | None = None) -> None:
        if self.cancelled:
            raise RequestCancelledError(request_id or "request cancelled")

    async def wait(self) -> None:
        await self._event.wait()


class AbortController:
    """Stop the active turn locally and, best effort, on the backend."""

    def __init__(
        self,
        client: "ChatClient",
        *,
        on_stopped: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._client = client
        self._on_stopped = on_stopped
        self._turn_id: str | None = None
        self._token: CancellationToken | None = None
        self._pending: set[asyncio.Task] = set()

    @property
    def active_turn_id(self) -> str | None:
        return self._turn_id

    @property
    def token(self) -> CancellationToken | None:
        return self._token

    def start(self, turn_id: str) -> CancellationToken:
        """Bind a fresh token to ``turn_id``; any previous token is cancelled."""

        if self._token is not None:
            self._token.cancel()
        self._turn_id = turn_id
        self._token = CancellationToken()
        return self._token

    def finish(self, turn_id: str) -> None:
        if self._turn_id == turn_id:
            self._turn_id = None
            self._token = None

    def stop(self) -> bool:
        """Abort the active turn. Returns ``False`` when nothing was running."""

        turn_id = self._turn_id
        token = self._token
        self._turn_id = None
        self._token = None
        if turn_id is None or token is None:
            return False

        token.cancel()
        self._notify_backend(turn_id)
        if self._on_stopped is not None:
            self._on_stopped(turn_id)
        logger.info("Stopped turn %s", turn_id)
        return True

    def _notify_backend(self, turn_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; skipping backend stop for %s", turn_id)
            return
        task = loop.create_task(self._send_stop(turn_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send_stop(self, turn_id: str) -> None:
        stopped = await self._client.stop(turn_id)
        if not stopped:
            logger.debug("Backend did not confirm stop for %s", turn_id)

    async def drain(self) -> None:
        """Wait for outstanding backend stop notifications."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = ["AbortController", "CancellationToken"]
