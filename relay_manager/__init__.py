"""
Relay Manager

Stable OAuth callback, webhook and MCP endpoints for apps whose own URLs
are ephemeral.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("relay-manager")
except PackageNotFoundError:
    __version__ = "unknown"
