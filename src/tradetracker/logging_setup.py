"""Logging configuration shared by the tradetracker CLI and services."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

TRACE_LEVEL = 5
TRACE_LEVEL_NAME = "TRACE"

DEFAULT_FORMAT = "%(asctime)s %(levelname)-8s %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%dT%H:%M:%S"

# CLI level names mapped onto the numeric "debug" verbosity used by configure_logging
LOG_LEVELS = {
    "warning": 0,
    "info": 1,
    "debug": 2,
    "trace": 3,
}
SORTED_LEVEL_NAMES = sorted(LOG_LEVELS, key=LOG_LEVELS.get)


def _ensure_trace_level() -> None:
    if logging.getLevelName(TRACE_LEVEL) != TRACE_LEVEL_NAME:
        logging.addLevelName(TRACE_LEVEL, TRACE_LEVEL_NAME)

    if not hasattr(logging.Logger, "trace"):

        def trace(self: logging.Logger, msg: str, *args, **kwargs) -> None:
            if self.isEnabledFor(TRACE_LEVEL):
                self._log(TRACE_LEVEL, msg, args, **kwargs)

        logging.Logger.trace = trace  # type: ignore[attr-defined]


def resolve_debug(value: Optional[Union[int, str, bool]]) -> int:
    """Turn a CLI/config verbosity (level name, number or bool) into 0..3."""
    if value is None:
        return 1
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in LOG_LEVELS:
            return LOG_LEVELS[lowered]
        try:
            return int(lowered)
        except ValueError:
            return 1
    return int(value)


def debug_to_level(debug: int) -> int:
    if debug <= 0:
        return logging.WARNING
    if debug == 1:
        return logging.INFO
    if debug == 2:
        return logging.DEBUG
    return TRACE_LEVEL


def configure_logging(
    debug: Optional[Union[int, str, bool]] = 1,
    *,
    log_file: Optional[Union[str, Path]] = None,
    rotation: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    stream: bool = True,
    fmt: str = DEFAULT_FORMAT,
    datefmt: str = DEFAULT_DATEFMT,
) -> None:
    """Install stream and optional file handlers on the root logger."""
    _ensure_trace_level()
    level = debug_to_level(resolve_debug(debug))

    formatter = logging.Formatter(fmt=fmt, datefmt=datefmt)
    handlers: list[logging.Handler] = []

    if stream:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(level)
        handlers.append(stream_handler)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        if rotation:
            file_handler: logging.Handler = RotatingFileHandler(
                path, maxBytes=max_bytes, backupCount=backup_count
            )
        else:
            file_handler = logging.FileHandler(path)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        handlers.append(file_handler)

    root = logging.getLogger()
    root.setLevel(level)

    for existing in list(root.handlers):
        root.removeHandler(existing)
        existing.close()

    for handler in handlers:
        root.addHandler(handler)

    # ccxt is chatty at debug level; keep it one notch quieter than ours
    logging.getLogger("ccxt").setLevel(max(level, logging.INFO))
