"""
Version information for portsync, read from the installed distribution
metadata.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("portsync")
except PackageNotFoundError:
    # Running from a source checkout without installation
    __version__ = "0.0.0"
