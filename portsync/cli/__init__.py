"""
Command line interface for portsync.
"""

from portsync.cli.commands import app

__all__ = ["app"]
