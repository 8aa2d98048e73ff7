"""Process-wide logging configuration."""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, Union

_LOG_PATH: Optional[Path] = None
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    level: Union[int, str] = logging.INFO,
    log_path: Union[str, Path, None] = None,
    *,
    console: bool = False,
) -> Optional[Path]:
    """Configure the root logger to write to ``log_path``.

    Parameters
    ----------
    level:
        The minimum logging level for the root logger, as an int or a level
        name such as ``"DEBUG"``.
    log_path:
        File receiving the log. Parent directories are created. When omitted
        only the console handler (if requested) is installed.
    console:
        Also mirror records to stderr. The CLI turns this on.

    Returns
    -------
    pathlib.Path or None
        The path to the log file, if one was configured.

    Calling this more than once never installs duplicate handlers.
    """

    global _LOG_PATH

    numeric = _resolve_level(level)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        root_logger.setLevel(numeric)
    else:
        root_logger.setLevel(min(root_logger.level, numeric))

    formatter = logging.Formatter(_FORMAT)

    if log_path:
        path = Path(log_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        already_configured = any(
            isinstance(handler, logging.FileHandler)
            and getattr(handler, "baseFilename", None) == str(path.resolve())
            for handler in root_logger.handlers
        )
        if not already_configured:
            file_handler = logging.FileHandler(path, encoding="utf-8")
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        _LOG_PATH = path

    if console:
        has_console = any(
            type(handler) is logging.StreamHandler and getattr(handler, "stream", None) is sys.stderr
            for handler in root_logger.handlers
        )
        if not has_console:
            stream_handler = logging.StreamHandler(sys.stderr)
            stream_handler.setFormatter(formatter)
            root_logger.addHandler(stream_handler)

    root_logger.debug("Logging configured. Writing to %s", _LOG_PATH or "stderr")
    return _LOG_PATH


def get_log_path() -> Optional[Path]:
    """Return the configured log file path, if any."""

    return _LOG_PATH


__all__ = ["configure_logging", "get_log_path"]
