"""Server-Sent Events parsing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncGenerator, AsyncIterable, Iterable, Optional

DONE_SENTINEL = "[DONE]"


@dataclass
class ServerSentEvent:
    """Represents a parsed Server-Sent Event."""

    data: str
    event: str = "message"
    event_id: Optional[str] = None

    @property
    def is_done(self) -> bool:
        return self.data.strip() == DONE_SENTINEL

    def asdict(self) -> dict[str, Optional[str]]:
        payload: dict[str, Optional[str]] = {"event": self.event, "data": self.data}
        if self.event_id is not None:
            payload["id"] = self.event_id
        return payload


def parse_event(lines: Iterable[str]) -> ServerSentEvent:
    event_name: Optional[str] = None
    event_id: Optional[str] = None
    data_lines: list[str] = []

    for line in lines:
        field, _, value = line.partition(":")
        value = value.lstrip(" ")
        if field == "event":
            event_name = value or None
        elif field == "data":
            data_lines.append(value)
        elif field == "id":
            event_id = value or None

    data = "\n".join(data_lines)
    return ServerSentEvent(data=data, event=event_name or "message", event_id=event_id)


async def iter_events(
    lines: AsyncIterable[str],
) -> AsyncGenerator[ServerSentEvent, None]:
    """Group raw lines into events; a blank line terminates each event."""

    buffer: list[str] = []
    async for line in lines:
        if not line:
            if buffer:
                yield parse_event(buffer)
                buffer.clear()
            continue
        if line.startswith(":"):
            continue
        buffer.append(line)
    if buffer:
        yield parse_event(buffer)


__all__ = ["DONE_SENTINEL", "ServerSentEvent", "iter_events", "parse_event"]
