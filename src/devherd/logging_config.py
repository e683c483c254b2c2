"""
Centralized logging configuration for the orchestrator.

This module provides a single setup_logging function that configures
logging consistently with:
- Console output on stdout (stderr-quiet mode for scripted use)
- Optional file output to <log_dir>/{service_name}.log
- Fresh log file on each start unless DEVHERD_LOG_APPEND=1
"""

import logging
import logging.handlers
import sys
import threading
from pathlib import Path
from typing import Optional, Union

from devherd.config import env_bool, env_str

# Thread-safe lock for logging configuration
_config_lock = threading.Lock()
_MODULE_LOGGER = logging.getLogger(__name__)
_UNKNOWN_LOGGER_NAME = "<unknown>"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LEVEL = "INFO"

_NOISY_LOGGERS = ("asyncio", "aiohttp", "aiohttp.access", "redis", "redis.asyncio", "redis.connection")


def _close_handlers(logger: logging.Logger, logger_name: Optional[str] = None) -> None:
    """Close all handlers for a logger, logging any errors."""
    for handler in list(logger.handlers):
        try:
            handler.close()
        except OSError as e:  # Best-effort cleanup operation  # policy_guard: allow-silent-handler
            safe_name = logger_name if logger_name else _UNKNOWN_LOGGER_NAME
            _MODULE_LOGGER.debug("Handler close failed for logger '%s': %s", safe_name, e)


def _reset_all_handlers(root_logger: logging.Logger) -> None:
    """Close existing handlers on the root and on every named logger."""
    _close_handlers(root_logger)
    root_logger.handlers = []
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        target_logger = logging.getLogger(logger_name)
        _close_handlers(target_logger, logger_name)
        target_logger.handlers = []
        target_logger.propagate = True


def resolve_level(level: Union[str, int, None]) -> int:
    """Map a level name or number to a logging level; DEVHERD_LOG_LEVEL when None."""
    if level is None:
        level = env_str("DEVHERD_LOG_LEVEL", or_value=DEFAULT_LEVEL)
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level {level!r}")
    return resolved


def _build_console_handler(level: int, quiet: bool) -> logging.Handler:
    console_handler = logging.StreamHandler(sys.stderr if quiet else sys.stdout)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    console_handler.setLevel(level)
    return console_handler


def _configure_file_handler(service_name: Optional[str], log_dir: Optional[Path]) -> Optional[logging.Handler]:
    if not service_name or log_dir is None:
        return None

    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{service_name}.log"
    file_mode = "a" if env_bool("DEVHERD_LOG_APPEND", or_value=False) else "w"

    file_handler = logging.handlers.WatchedFileHandler(log_path, mode=file_mode)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    file_handler.setLevel(logging.DEBUG)
    return file_handler


def _suppress_noisy_third_parties() -> None:
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging(
    service_name: Optional[str] = None,
    *,
    level: Union[str, int, None] = None,
    log_dir: Optional[Path] = None,
    quiet: bool = False,
) -> None:
    """Configure logging for the application"""

    with _config_lock:
        root_logger = logging.getLogger()
        _reset_all_handlers(root_logger)

        resolved = resolve_level(level)
        root_logger.addHandler(_build_console_handler(resolved, quiet))

        file_handler = _configure_file_handler(service_name, log_dir)
        if file_handler:
            root_logger.addHandler(file_handler)

        root_logger.setLevel(min(resolved, logging.DEBUG) if file_handler else resolved)
        _suppress_noisy_third_parties()
