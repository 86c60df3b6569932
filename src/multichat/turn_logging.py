"""Persist a JSON transcript of every settled turn."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from .schemas.chat import Message


class TurnLogWriter:
    """Append turn snapshots to one file per day."""

    def __init__(self, base_dir: Path, *, min_level: int | None) -> None:
        self._base_dir = base_dir.resolve()
        self._min_level = min_level

    @property
    def enabled(self) -> bool:
        return self._min_level is not None and self._min_level <= logging.INFO

    async def write(
        self,
        *,
        turn_id: str,
        targets: Sequence[str],
        status: str,
        error: str | None,
        conversation_id: str | None,
        messages: Sequence[Message],
    ) -> Path | None:
        """Write one snapshot; returns the file path or ``None`` when disabled."""

        if not self.enabled:
            return None

        timestamp = datetime.now(timezone.utc)
        entry: dict[str, Any] = {
            "type": "turn_snapshot",
            "logged_at": timestamp.isoformat(),
            "turn_id": turn_id,
            "targets": list(targets),
            "status": status,
            "error": error,
            "conversation_id": conversation_id,
            "message_count": len(messages),
            "messages": [message.model_dump(mode="json") for message in messages],
        }
        rendered = json.dumps(entry, ensure_ascii=False, indent=2)

        local_time = timestamp.astimezone()
        log_path = self._base_dir / local_time.strftime("%Y-%m-%d") / "turns.log"

        delimiter = "=" * 80
        header = timestamp.strftime("%Y-%m-%d %H:%M:%S UTC")
        payload = f"{header}\n{delimiter}\n{rendered}\n{delimiter}\n"

        await asyncio.to_thread(self._append_entry, log_path, payload)
        return log_path

    def _append_entry(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(content)


__all__ = ["TurnLogWriter"]
