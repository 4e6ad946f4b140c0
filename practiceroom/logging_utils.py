from __future__ import annotations

import logging
import os
import platform
import sys
import traceback
from datetime import datetime
from pathlib import Path

_LOGGER = logging.getLogger("practiceroom.logging")

LOG_DIR_ENV = "PRACTICEROOM_LOG_DIR"
DEBUG_ENV = "PRACTICEROOM_DEBUG"
LOG_FILENAME = "practiceroom.log"
_ROOT_LOGGER = "practiceroom"

# Device callbacks log from PortAudio threads, so the file keeps the thread name.
_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"
_FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_CONSOLE_FORMAT = "%(badge)s %(name)s: %(message)s"
_BADGES = {
    logging.DEBUG: "🐛",
    logging.INFO: "🎵",
    logging.WARNING: "⚠️",
    logging.ERROR: "❌",
    logging.CRITICAL: "💥",
}

_configured = False


class _BadgeFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.badge = _BADGES.get(record.levelno, "")
        return super().format(record)


def get_log_dir() -> Path:
    env_dir = os.environ.get(LOG_DIR_ENV)
    if env_dir:
        return Path(env_dir).expanduser()
    if platform.system() == "Darwin":
        return Path.home() / "Library" / "Logs" / "PracticeRoom"
    return Path.home() / ".cache" / "practiceroom" / "logs"


def get_log_path() -> Path:
    return get_log_dir() / LOG_FILENAME


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler(stream=sys.__stderr__)
    handler.setLevel(logging.DEBUG if os.environ.get(DEBUG_ENV) else logging.INFO)
    handler.setFormatter(_BadgeFormatter(_CONSOLE_FORMAT))
    return handler


def _file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATE_FORMAT))
    return handler


def configure_logging(*, force: bool = False) -> None:
    """Attach the console and file handlers to the ``practiceroom`` logger once.

    The console handler is skipped when the host application already set up
    root logging, unless ``force`` is given.
    """
    global _configured
    if _configured and not force:
        return

    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(logging.DEBUG)
    if force:
        for existing in list(logger.handlers):
            logger.removeHandler(existing)
            existing.close()

    if force or not logging.getLogger().handlers:
        logger.addHandler(_console_handler())
    try:
        logger.addHandler(_file_handler(get_log_path()))
    except OSError as exc:
        _LOGGER.warning("File logging disabled: %s", exc, exc_info=True)

    logger.propagate = True
    _configured = True


def log_exception(context: str, exc: BaseException) -> Path | None:
    """Append ``exc`` with its traceback to the log file; returns the file written."""
    path = get_log_path()
    stamp = datetime.now().isoformat(timespec="seconds")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(f"[{stamp}] {context} failed: {type(exc).__name__}: {exc}\n")
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=handle)
            handle.write("\n")
    except OSError as write_exc:
        _LOGGER.warning("Could not write %s: %s", path, write_exc, exc_info=True)
        return None
    return path
