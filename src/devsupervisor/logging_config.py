"""
Centralized logging configuration for the orchestrator.

setup_logging configures the root logger once with:
- Console output to stdout (plain messages in user-friendly mode)
- Optional file output to {log_dir}/{service_name}.log
- Fresh log file on each start unless LOG_APPEND=1
"""

import logging
import logging.handlers
import sys
import threading
from pathlib import Path
from typing import Optional

from .config import env_bool

# Thread-safe lock for logging configuration
_config_lock = threading.Lock()
_MODULE_LOGGER = logging.getLogger(__name__)
_TECHNICAL_FORMAT = "%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _close_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        try:
            handler.close()
        except OSError as exc:
            _MODULE_LOGGER.debug("Handler close failed for logger '%s': %s", logger.name, exc)


def _reset_root_handlers(root_logger: logging.Logger) -> None:
    _close_handlers(root_logger)
    root_logger.handlers = []


def _build_console_handler(user_friendly: bool, verbose: bool) -> logging.Handler:
    if user_friendly:
        formatter = logging.Formatter("%(message)s")
    else:
        formatter = logging.Formatter(_TECHNICAL_FORMAT, _DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    return console_handler


def _build_file_handler(service_name: str, log_dir: Path) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{service_name}.log"
    file_mode = "a" if env_bool("LOG_APPEND", or_value=False) else "w"

    handler_cls = getattr(logging.handlers, "WatchedFileHandler", logging.FileHandler)
    file_handler = handler_cls(log_path, mode=file_mode)
    file_handler.setFormatter(logging.Formatter(_TECHNICAL_FORMAT, _DATE_FORMAT))
    file_handler.setLevel(logging.DEBUG)
    return file_handler


def _suppress_noisy_third_parties() -> None:
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def setup_logging(
    service_name: Optional[str] = None,
    *,
    user_friendly: bool = True,
    log_dir: Optional[Path] = None,
    verbose: Optional[bool] = None,
) -> None:
    """Configure logging for the orchestrator process.

    Args:
        service_name: Base name of the log file; no file is written without it
        user_friendly: Plain ``%(message)s`` console output
        log_dir: Directory for the log file; no file is written without it
        verbose: Show DEBUG lines on the console (``DEV_VERBOSE`` when None)
    """
    with _config_lock:
        if verbose is None:
            verbose = bool(env_bool("DEV_VERBOSE", or_value=False))

        root_logger = logging.getLogger()
        _reset_root_handlers(root_logger)

        root_logger.addHandler(_build_console_handler(user_friendly, verbose))
        if service_name and log_dir is not None:
            root_logger.addHandler(_build_file_handler(service_name, log_dir))

        root_logger.setLevel(logging.DEBUG if verbose or log_dir is not None else logging.INFO)
        _suppress_noisy_third_parties()


__all__ = ["setup_logging"]
