"""Log file handler and retention helpers."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional


def dated_log_path(
    base_dir: Path, prefix: str, current_time: datetime | None = None
) -> Path:
    """Return ``base_dir/<YYYY-MM-DD>/<prefix>_<YYYY-MM-DD_HH-MM-SS>.log`` in local time."""

    local_time = (current_time or datetime.now(timezone.utc)).astimezone()
    date_folder = local_time.strftime("%Y-%m-%d")
    human_time = local_time.strftime("%Y-%m-%d_%H-%M-%S")
    return (base_dir / date_folder / f"{prefix}_{human_time}.log").resolve()


class DateStampedFileHandler(logging.FileHandler):
    """File handler that writes one file per run under a folder per day."""

    def __init__(
        self,
        *,
        directory: str | Path = "logs/app",
        prefix: str = "multichat",
        encoding: str | None = "utf-8",
        mode: str = "a",
        delay: bool = False,
        errors: Optional[str] = None,
        current_time: datetime | None = None,
    ) -> None:
        log_path = dated_log_path(Path(directory).resolve(), prefix, current_time)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(
            log_path,
            mode=mode,
            encoding=encoding,
            delay=delay,
            errors=errors,
        )


def cleanup_old_logs(
    log_directories: Iterable[str | Path],
    retention_hours: int,
    logger: logging.Logger | None = None,
) -> tuple[int, int]:
    """Delete ``*.log`` files older than ``retention_hours``.

    Empty day folders are removed afterwards. A retention of 0 disables
    cleanup.

    Returns:
        Tuple of (files_deleted, errors_encountered)
    """

    if retention_hours <= 0:
        return (0, 0)

    cutoff_time = datetime.now(timezone.utc) - timedelta(hours=retention_hours)
    files_deleted = 0
    errors = 0

    for directory in log_directories:
        dir_path = Path(directory).resolve()
        if not dir_path.exists():
            continue

        for log_file in dir_path.rglob("*.log"):
            try:
                mtime = datetime.fromtimestamp(log_file.stat().st_mtime, tz=timezone.utc)
                if mtime < cutoff_time:
                    log_file.unlink()
                    files_deleted += 1
                    if logger:
                        logger.debug("Deleted old log file: %s", log_file)
            except OSError as exc:
                errors += 1
                if logger:
                    logger.warning("Failed to delete %s: %s", log_file, exc)

        for date_dir in dir_path.iterdir():
            if date_dir.is_dir() and not any(date_dir.iterdir()):
                try:
                    date_dir.rmdir()
                except OSError as exc:
                    if logger:
                        logger.debug("Could not remove %s: %s", date_dir, exc)

    if logger and files_deleted > 0:
        logger.info(
            "Log cleanup complete: %d file(s) deleted, %d error(s) encountered",
            files_deleted,
            errors,
        )

    return (files_deleted, errors)


__all__ = ["DateStampedFileHandler", "cleanup_old_logs", "dated_log_path"]
