"""Logging for the image server.

Modules only ask for a child of the `iiif_image` logger. Handlers are
attached by `setup_logging()`, called by the entry points (web app, CLI)
once the configuration is importable; records emitted before that simply
propagate to the root logger.
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from .config_manager import ConfigManager

LOG_FILENAME: Final = "image_server.log"
FALLBACK_LOGS_DIR: Final = Path("logs")

CONSOLE_HANDLER: Final = "iiif_image.console"
FILE_HANDLER: Final = "iiif_image.file"

CONSOLE_FORMAT = logging.Formatter("%(levelname)s | %(name)s | %(message)s")

FILE_FORMAT = logging.Formatter(
    "%(asctime)s [%(levelname)s] [%(name)s.%(funcName)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

app_logger = logging.getLogger("iiif_image")
app_logger.propagate = True


def _configured_level_and_dir(config: ConfigManager | None) -> tuple[str, Path]:
    # Imported here: config_manager itself logs through this module.
    from .config_manager import get_config_manager

    cm = config or get_config_manager()
    level = str(cm.get_setting("logging.level", "INFO") or "INFO").upper()
    try:
        logs_dir = cm.get_logs_dir()
    except OSError as exc:
        sys.stderr.write(f"Logs directory not writable ({exc}), using ./{FALLBACK_LOGS_DIR}\n")
        logs_dir = FALLBACK_LOGS_DIR
        logs_dir.mkdir(parents=True, exist_ok=True)
    return level, logs_dir


def _handler(name: str) -> logging.Handler | None:
    return next((h for h in app_logger.handlers if h.get_name() == name), None)


def _attach_file_handler(log_file: Path) -> None:
    current = _handler(FILE_HANDLER)
    if current is not None:
        if current.baseFilename == os.path.abspath(log_file):
            return
        app_logger.removeHandler(current)
        current.close()

    try:
        file_handler = TimedRotatingFileHandler(log_file, when="midnight", interval=1, backupCount=30, encoding="utf-8")
    except OSError as e:
        sys.stderr.write(f"FAILED TO SETUP FILE LOGGING: {e}\n")
        return
    file_handler.set_name(FILE_HANDLER)
    file_handler.setFormatter(FILE_FORMAT)
    app_logger.addHandler(file_handler)
    app_logger.info("Image server logging -> %s", log_file)


def setup_logging(config: ConfigManager | None = None) -> Path:
    """Attach console and daily-rotated file handlers to the `iiif_image` logger.

    Level and directory come from `settings.logging.level` and
    `paths.logs_dir`. Calling it again refreshes the level and moves the
    file handler if the logs directory changed. Returns the log file path.
    """
    level_name, logs_dir = _configured_level_and_dir(config)
    effective_level = getattr(logging, level_name, logging.INFO)
    app_logger.setLevel(effective_level)

    if _handler(CONSOLE_HANDLER) is None:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.set_name(CONSOLE_HANDLER)
        console_handler.setFormatter(CONSOLE_FORMAT)
        app_logger.addHandler(console_handler)

    log_file = logs_dir / LOG_FILENAME
    _attach_file_handler(log_file)

    for h in app_logger.handlers:
        h.setLevel(effective_level)
    return log_file


def summarize_for_debug(data: str, max_chars: int = 200) -> str:
    """Summarize a large string for debug logs."""
    if not data or len(data) <= max_chars:
        return data
    return f"{data[:max_chars]}... [TRUNCATED, total {len(data)} chars]"


def get_logger(name: str) -> logging.Logger:
    """Get a logger within the `iiif_image` namespace."""
    if name != "iiif_image" and not name.startswith("iiif_image."):
        name = f"iiif_image.{name}"
    return logging.getLogger(name)


def get_request_logger(identifier: str) -> logging.Logger:
    """Get a logger scoped to one image identifier."""
    safe_id = "".join(c for c in identifier if c.isalnum() or c in ("-", "_"))[:50]
    return get_logger(f"request.{safe_id}")
