"""Logging for Khi.

Console output goes through Rich on stderr so it never mixes with Markdown
printed by ``khi preview``. A rotating log file keeps DEBUG detail (skipped
rows, cover lookups) for bug reports. Both are driven by the ``[logging]``
section of config.ini:

    [logging]
    level = INFO          ; console level
    file = khi.log        ; relative to the data dir, empty disables the file
    max_size_mb = 10
    backups = 5
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

LOG_FILE_NAME = "khi.log"
FILE_FORMAT = "%(asctime)s - %(levelname)-8s - %(name)s - %(message)s"

# Chatty third-party loggers and the level they are held at
QUIET_LOGGERS = {
    "PIL": logging.WARNING,
    "sqlalchemy": logging.WARNING,
    "asyncio": logging.WARNING,
}

_console_handler: Optional[RichHandler] = None
_file_handler: Optional[RotatingFileHandler] = None


def data_dir() -> Path:
    """The data directory, resolved like config.DATA_DIR without importing it."""
    env = os.environ.get("KHI_DATA_DIR")
    if env:
        return Path(env)
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path(__file__).resolve().parents[1]


def resolve_log_file(value: Optional[str]) -> Optional[Path]:
    """Map the ``file`` setting to a path; blank or "none" disables file logging."""
    if value is None:
        return data_dir() / LOG_FILE_NAME
    value = value.strip()
    if not value or value.lower() in {"none", "off", "false"}:
        return None
    path = Path(value).expanduser()
    return path if path.is_absolute() else data_dir() / path


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    max_size_mb: int = 10,
    backups: int = 5,
) -> None:
    """Attach the console handler and, when ``log_file`` is given, the file handler.

    Calling it again only adjusts the console level, so a command can raise
    verbosity after the config has been applied.
    """
    global _console_handler, _file_handler

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if _console_handler is not None:
        _console_handler.setLevel(_level(log_level))
        return

    console = Console(stderr=True, theme=Theme({"logging.level.info": "bold cyan"}))
    _console_handler = RichHandler(
        console=console,
        rich_tracebacks=True,
        show_time=False,
        show_path=False,
        markup=False,
    )
    _console_handler.setLevel(_level(log_level))
    root_logger.addHandler(_console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        _file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max(1, max_size_mb) * 1024 * 1024,
            backupCount=max(0, backups),
            encoding="utf-8",
        )
        _file_handler.setLevel(logging.DEBUG)
        _file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root_logger.addHandler(_file_handler)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)


def reset_logging() -> None:
    """Detach Khi's handlers (used by tests)."""
    global _console_handler, _file_handler
    root_logger = logging.getLogger()
    for handler in (_console_handler, _file_handler):
        if handler is not None:
            root_logger.removeHandler(handler)
            handler.close()
    _console_handler = None
    _file_handler = None


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
