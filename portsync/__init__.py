"""
portsync - broker gateway connection and portfolio synchronization engine.
"""

from dotenv import load_dotenv

from portsync.logging import (
    configure_logging,
    get_logger,
    is_debug_mode,
    log_performance,
    set_debug_mode,
)
from portsync.version import __version__

# Load environment variables from .env file
load_dotenv()

__all__ = [
    "__version__",
    "configure_logging",
    "get_logger",
    "is_debug_mode",
    "log_performance",
    "set_debug_mode",
]
