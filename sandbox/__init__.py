"""civic-mcp sandbox: the adapter runtime behind every hosting backend."""

from importlib.metadata import version as _pkg_version

try:
    __version__: str = _pkg_version("civic-mcp")
except Exception:
    __version__ = "dev"
