"""
Logging configuration for portsync.

Console and rotating file handlers, a global debug flag, per-component levels
and sampling/rate limiting for account-stream and throttle traffic.

Components are named relative to the package (``ib.subscription`` is the
``portsync.ib.subscription`` logger and everything below it).
"""

import logging
import logging.handlers
import sys
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

PACKAGE_LOGGER = "portsync"

# Global debug flag
_DEBUG_MODE = False

# Gateway components log every connect attempt, request and stream update;
# storage and the quote fallback only need warnings in normal operation
_DEFAULT_COMPONENT_LOG_LEVELS = {
    "ib.connection": logging.INFO,
    "ib.throttle": logging.INFO,
    "ib.requests": logging.INFO,
    "ib.subscription": logging.INFO,
    "enrichment.pipeline": logging.INFO,
    "enrichment.reference_data": logging.WARNING,
    "persistence.database": logging.WARNING,
    "sync.scheduler": logging.INFO,
}
_COMPONENT_LOG_LEVELS = dict(_DEFAULT_COMPONENT_LOG_LEVELS)

# Third-party libraries are chatty below WARNING
_NOISY_LOGGERS = ("ib_insync", "sqlalchemy.engine", "aiosqlite", "yfinance", "asyncio")

_LOG_SAMPLING_STATE: Dict[str, int] = {}
_RATE_LIMIT_STATE: Dict[str, float] = {}

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(module)s.%(funcName)s:%(lineno)d | %(message)s"

_CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_LOG_COLORS = {
    "DEBUG": "\033[94m",  # Blue
    "INFO": "\033[92m",  # Green
    "WARNING": "\033[93m",  # Yellow
    "ERROR": "\033[91m",  # Red
    "CRITICAL": "\033[91m\033[1m",  # Bold Red
    "RESET": "\033[0m",
}


class ColorFormatter(logging.Formatter):
    """Colour the level name on the console."""

    def format(self, record):
        levelname = record.levelname
        if levelname in _LOG_COLORS:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = f"{_LOG_COLORS[levelname]}{levelname}{_LOG_COLORS['RESET']}"
        return super().format(record)


def _component_of(logger_name: str) -> Optional[str]:
    """Most specific configured component owning ``logger_name``."""
    prefix = PACKAGE_LOGGER + "."
    if not logger_name.startswith(prefix):
        return None
    relative = logger_name[len(prefix):]
    matches = [
        component
        for component in _COMPONENT_LOG_LEVELS
        if relative == component or relative.startswith(component + ".")
    ]
    return max(matches, key=len) if matches else None


def _effective_component_level(component: str) -> int:
    # Debug mode opens every component up to DEBUG
    return logging.DEBUG if _DEBUG_MODE else _COMPONENT_LOG_LEVELS[component]


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger and apply its component level, if it belongs to one.

    Args:
        name: Logger name, typically __name__ of the calling module
    """
    logger = logging.getLogger(name)
    component = _component_of(name)
    if component is not None:
        logger.setLevel(_effective_component_level(component))
    return logger


def _apply_component_levels() -> None:
    for logger_name in list(logging.Logger.manager.loggerDict):
        component = _component_of(logger_name)
        if component is not None:
            logging.getLogger(logger_name).setLevel(_effective_component_level(component))


def set_debug_mode(enabled: bool) -> None:
    """Set the global debug flag; component levels follow it."""
    global _DEBUG_MODE
    old_value = _DEBUG_MODE
    _DEBUG_MODE = enabled

    if old_value != _DEBUG_MODE:
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        if enabled:
            package_logger.setLevel(logging.DEBUG)
            _apply_component_levels()
            package_logger.info("Debug mode enabled")
        else:
            package_logger.info("Debug mode disabled")
            package_logger.setLevel(logging.INFO)
            _apply_component_levels()


def is_debug_mode() -> bool:
    return _DEBUG_MODE


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    max_file_size_mb: int = 10,
    backup_count: int = 5,
    config: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Configure the console handler and, when ``log_dir`` is given, a rotating
    ``portsync.log`` file.

    Args:
        log_dir: Directory for log files; console only when omitted
        console_level: Logging level for console output
        file_level: Logging level for file output
        max_file_size_mb: Size of each log file before rotation
        backup_count: Number of rotated files to keep
        config: console_format, file_format and debug_mode overrides
    """
    if config is None:
        config = {}

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Reconfiguring must not duplicate handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(logging.DEBUG if is_debug_mode() else logging.INFO)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(ColorFormatter(config.get("console_format", _CONSOLE_FORMAT)))
    root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(exist_ok=True, parents=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_path / "portsync.log",
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(config.get("file_format", _DEFAULT_FORMAT)))
        root_logger.addHandler(file_handler)

    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    package_logger.debug(
        f"portsync logging initialized (console: {logging.getLevelName(console_level)}, "
        f"files: {log_dir or 'none'})"
    )

    set_debug_mode(config.get("debug_mode", is_debug_mode()))


def should_sample_log(key: str, sample_rate: int = 100) -> bool:
    """True for the first and then every ``sample_rate``-th call with ``key``."""
    _LOG_SAMPLING_STATE[key] = _LOG_SAMPLING_STATE.get(key, 0) + 1
    return _LOG_SAMPLING_STATE[key] % sample_rate == 1


def should_rate_limit_log(key: str, limit_seconds: int = 60) -> bool:
    """True at most once per ``limit_seconds`` for ``key``."""
    current_time = time.time()
    last = _RATE_LIMIT_STATE.get(key)
    if last is None or current_time - last >= limit_seconds:
        _RATE_LIMIT_STATE[key] = current_time
        return True
    return False


def set_component_log_level(component: str, level: Union[int, str]) -> None:
    """
    Set the level of one component (e.g. ``ib.requests``) and of every logger
    already created under it. Level names such as ``"DEBUG"`` are accepted.
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level '{level}' for component '{component}'")
        level = resolved
    _COMPONENT_LOG_LEVELS[component] = level
    _apply_component_levels()


def apply_component_levels(levels: Mapping[str, Union[int, str]]) -> None:
    """Apply operator overrides, e.g. from ``PORTSYNC_LOGGING_COMPONENT_LEVELS``."""
    for component, level in levels.items():
        set_component_log_level(component, level)


def get_component_log_levels() -> Dict[str, int]:
    return _COMPONENT_LOG_LEVELS.copy()


def reset_component_log_levels() -> None:
    _COMPONENT_LOG_LEVELS.clear()
    _COMPONENT_LOG_LEVELS.update(_DEFAULT_COMPONENT_LOG_LEVELS)
    _apply_component_levels()


def reset_sampling_state() -> None:
    _LOG_SAMPLING_STATE.clear()


def reset_rate_limit_state() -> None:
    _RATE_LIMIT_STATE.clear()
