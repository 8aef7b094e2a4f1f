"""Package version, taken from the installed distribution metadata."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ncmdump")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = ["__version__"]
