"""
Logging setup for hosts embedding the quant risk engine.

Engine modules only create ``logging.getLogger(__name__)`` loggers and never
configure handlers. A host process calls ``setup_logging()`` once at startup
to send engine output to stderr and, optionally, to a rotating log file.
Timestamps are written in UTC to line up with price tick timestamps, and the
thread name is included because tick handlers run on executor threads.
"""

import logging
import logging.handlers
import os
import platform
import sys
import time
from pathlib import Path

from quant_engine.core.config import settings

APP_DIR_NAME = "quant-engine"
LOG_FILE_NAME = "quant-engine.log"
LOG_FORMAT = "%(asctime)sZ %(levelname)-8s [%(threadName)s] %(name)s: %(message)s"
MAX_LOG_BYTES = 10_000_000
LOG_BACKUP_COUNT = 5


def get_default_log_dir() -> Path:
    """LOG_DIR when set, otherwise the platform's usual per-user log location."""
    if settings.LOG_DIR:
        return Path(settings.LOG_DIR)

    home = Path.home()
    system = platform.system().lower()
    if system == "darwin":
        return home / "Library" / "Logs" / APP_DIR_NAME
    if system == "windows":
        return home / "AppData" / "Local" / APP_DIR_NAME / "logs"
    if system == "linux":
        if os.geteuid() == 0:
            return Path("/var/log") / APP_DIR_NAME
        state_home = os.getenv("XDG_STATE_HOME")
        base = Path(state_home) if state_home else home / ".local" / "state"
        return base / APP_DIR_NAME / "logs"
    return home / f".{APP_DIR_NAME}" / "logs"


def resolve_level(name: str) -> int:
    """Map a level name to its numeric value, INFO for anything unknown."""
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _formatter() -> logging.Formatter:
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
    formatter.converter = time.gmtime
    return formatter


def setup_logging(log_to_file: bool = True) -> Path | None:
    """
    Configure the root logger for the engine.

    Existing root handlers are replaced and file handlers closed, so calling
    this again after changing settings does not duplicate output.

    Returns:
        The log file path, or None when file logging is off.
    """
    level = resolve_level(settings.LOG_LEVEL)
    formatter = _formatter()

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()
    root_logger.setLevel(level)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    log_file = None
    if log_to_file:
        log_dir = get_default_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / LOG_FILE_NAME
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=MAX_LOG_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        )

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    # Child loggers inherit from here unless a host overrides them
    engine_logger = logging.getLogger("quant_engine")
    engine_logger.setLevel(logging.NOTSET)
    engine_logger.propagate = True

    engine_logger.info(
        f"{settings.PROJECT_NAME} logging at {logging.getLevelName(level)}"
        + (f" to {log_file}" if log_file else "")
    )
    return log_file
