"""
Logging system for portsync.

Centralized configuration with console and rotating file outputs, plus
helpers for common logging patterns.
"""

from portsync.logging.config import (
    apply_component_levels,
    configure_logging,
    get_logger,
    is_debug_mode,
    set_component_log_level,
    set_debug_mode,
    should_rate_limit_log,
    should_sample_log,
)
from portsync.logging.helpers import log_error, log_performance

__all__ = [
    # Configuration
    "configure_logging",
    "get_logger",
    "set_debug_mode",
    "is_debug_mode",
    "set_component_log_level",
    "apply_component_levels",
    "should_sample_log",
    "should_rate_limit_log",
    # Helper methods
    "log_performance",
    "log_error",
]
