"""
Helper decorators for common logging patterns.
"""

import functools
import inspect
import logging
import time
from typing import Any, Callable, Optional, TypeVar, cast

from portsync.logging.config import get_logger, is_debug_mode

F = TypeVar("F", bound=Callable[..., Any])


def log_performance(
    logger: Optional[logging.Logger] = None,
    threshold_ms: float = 0,  # 0 means log all calls
    log_level: int = logging.DEBUG,
) -> Callable[[F], F]:
    """
    Decorator to log how long a function (sync or async) takes.

    Args:
        logger: Logger to use (if None, get logger based on module name)
        threshold_ms: Only log if execution time exceeds threshold (milliseconds)
        log_level: Log level for performance messages
    """

    def decorator(func: F) -> F:
        log = logger or get_logger(func.__module__)
        func_name = func.__qualname__

        def _report(start_time: float) -> None:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            if elapsed_ms >= threshold_ms:
                log.log(log_level, f"Performance: {func_name} took {elapsed_ms:.2f}ms")

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                start_time = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    _report(start_time)

            return cast(F, async_wrapper)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                _report(start_time)

        return cast(F, wrapper)

    return decorator


def log_error(
    logger: logging.Logger,
    message: str,
    error: BaseException,
    level: int = logging.ERROR,
    **context: Any,
) -> None:
    """
    Log an absorbed error with its type and optional key=value context.

    Full tracebacks are only attached in debug mode.
    """
    suffix = ""
    if context:
        suffix = " (" + ", ".join(f"{k}={v}" for k, v in context.items()) + ")"
    logger.log(
        level,
        f"{message}: {type(error).__name__}: {error}{suffix}",
        exc_info=error if is_debug_mode() else None,
    )
