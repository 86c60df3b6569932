"""Logging configuration for the chat client.

Levels come from a small ``key = level`` file next to the project, e.g.::

    terminal = warning
    app = info
    turns = info
    retention_hours = 48
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .config import Settings
from .logging_handlers import DateStampedFileHandler, cleanup_old_logs

_LEVEL_MAP: dict[str, int | None] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": None,
}

_LEVEL_KEYS = ("terminal", "app", "turns")
_DEFAULT_LEVELS: dict[str, str] = {
    "terminal": "warning",
    "app": "info",
    "turns": "info",
}
_DEFAULT_RETENTION_HOURS = 48

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class LoggingSettings:
    terminal_level: int | None = logging.WARNING
    app_level: int | None = logging.INFO
    turns_level: int | None = logging.INFO
    retention_hours: int = _DEFAULT_RETENTION_HOURS


def _resolve_level(key: str, value: str) -> int | None:
    normalized = value.strip().lower()
    if normalized in _LEVEL_MAP:
        return _LEVEL_MAP[normalized]
    return _LEVEL_MAP[_DEFAULT_LEVELS[key]]


def parse_logging_settings(path: Path) -> LoggingSettings:
    """Parse the human-readable logging settings file; missing keys keep defaults."""

    levels: dict[str, int | None] = {
        key: _LEVEL_MAP[_DEFAULT_LEVELS[key]] for key in _LEVEL_KEYS
    }
    retention_hours = _DEFAULT_RETENTION_HOURS

    if path.exists():
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = (part.strip() for part in line.split("=", 1))
            normalized_key = key.lower()
            if normalized_key == "retention_hours":
                try:
                    retention_hours = max(0, int(value))
                except ValueError:
                    retention_hours = _DEFAULT_RETENTION_HOURS
            elif normalized_key in _LEVEL_KEYS:
                levels[normalized_key] = _resolve_level(normalized_key, value)

    return LoggingSettings(
        terminal_level=levels["terminal"],
        app_level=levels["app"],
        turns_level=levels["turns"],
        retention_hours=retention_hours,
    )


def configure_logging(settings: Settings) -> LoggingSettings:
    """Install file and console handlers on the root logger.

    ``LOG_LEVEL`` from the environment (or ``.env``) overrides the file level
    of the application log.
    """

    load_dotenv()

    logging_settings = parse_logging_settings(
        settings.resolve_path(settings.logging_settings_path)
    )
    app_level = logging_settings.app_level
    env_level = os.getenv("LOG_LEVEL")
    if env_level:
        app_level = getattr(logging, env_level.strip().upper(), app_level)

    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)
    handlers: list[logging.Handler] = []

    log_dir = settings.resolve_path(settings.log_dir)
    if app_level is not None:
        file_handler = DateStampedFileHandler(directory=log_dir, prefix="multichat")
        file_handler.setLevel(app_level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if logging_settings.terminal_level is not None:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging_settings.terminal_level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if not handlers:
        handlers.append(logging.NullHandler())

    enabled = [
        level
        for level in (app_level, logging_settings.terminal_level)
        if level is not None
    ]
    root_level = min(enabled) if enabled else logging.WARNING
    logging.basicConfig(level=root_level, handlers=handlers, force=True)
    logging.getLogger("multichat").setLevel(root_level)

    if root_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    cleanup_old_logs(
        [log_dir, settings.resolve_path(settings.turn_log_dir)],
        logging_settings.retention_hours,
        logger=logging.getLogger(__name__),
    )
    return logging_settings


__all__ = ["LoggingSettings", "configure_logging", "parse_logging_settings"]
