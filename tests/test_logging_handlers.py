import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

from multichat.logging_handlers import (
    DateStampedFileHandler,
    cleanup_old_logs,
    dated_log_path,
)


def test_date_stamped_file_handler_creates_expected_path(tmp_path) -> None:
    current = datetime(2024, 5, 26, 12, 34, 56, tzinfo=timezone.utc)
    handler = DateStampedFileHandler(
        directory=tmp_path / "app",
        prefix="multichat",
        current_time=current,
        encoding="utf-8",
    )
    try:
        expected_file = dated_log_path((tmp_path / "app").resolve(), "multichat", current)
        file_path = Path(handler.baseFilename)
        assert file_path == expected_file
        assert file_path.exists()
        assert file_path.parent.name == current.astimezone().strftime("%Y-%m-%d")

        record = logging.LogRecord(
            name="test",
            level=logging.INFO,
            pathname=__file__,
            lineno=0,
            msg="hello world",
            args=(),
            exc_info=None,
        )
        handler.emit(record)

        contents = file_path.read_text(encoding="utf-8")
        assert "hello world" in contents
    finally:
        handler.close()


def test_dated_log_path_uses_local_time(tmp_path) -> None:
    current = datetime(2023, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    local = current.astimezone()

    path = dated_log_path(tmp_path, "turns", current)

    assert path.name == f"turns_{local.strftime('%Y-%m-%d_%H-%M-%S')}.log"


def test_cleanup_old_logs(tmp_path) -> None:
    """Old log files are deleted based on retention hours."""
    log_dir = tmp_path / "logs" / "app"
    log_dir.mkdir(parents=True)
    now = datetime.now(timezone.utc)

    old_file = log_dir / "old_log.log"
    old_file.write_text("old content")
    old_time = (now - timedelta(days=3)).timestamp()
    os.utime(old_file, (old_time, old_time))

    recent_file = log_dir / "recent_log.log"
    recent_file.write_text("recent content")
    recent_time = (now - timedelta(days=1)).timestamp()
    os.utime(recent_file, (recent_time, recent_time))

    files_deleted, errors = cleanup_old_logs([log_dir], retention_hours=48)

    assert files_deleted == 1
    assert errors == 0
    assert not old_file.exists()
    assert recent_file.exists()


def test_cleanup_old_logs_disabled(tmp_path) -> None:
    log_dir = tmp_path / "logs" / "app"
    log_dir.mkdir(parents=True)
    old_file = log_dir / "old_log.log"
    old_file.write_text("content")
    old_time = (datetime.now(timezone.utc) - timedelta(days=100)).timestamp()
    os.utime(old_file, (old_time, old_time))

    assert cleanup_old_logs([log_dir], retention_hours=0) == (0, 0)
    assert old_file.exists()


def test_cleanup_old_logs_removes_empty_directories(tmp_path) -> None:
    log_dir = tmp_path / "logs" / "app"
    date_dir = log_dir / "2024-01-01"
    date_dir.mkdir(parents=True)
    old_file = date_dir / "old_log.log"
    old_file.write_text("content")
    old_time = (datetime.now(timezone.utc) - timedelta(days=100)).timestamp()
    os.utime(old_file, (old_time, old_time))

    files_deleted, errors = cleanup_old_logs(
        [log_dir, tmp_path / "missing"], retention_hours=48
    )

    assert files_deleted == 1
    assert not date_dir.exists()
