"""Trackharvest package."""

from importlib.metadata import PackageNotFoundError, version

__all__ = ["SERVICE_NAME", "__version__"]

SERVICE_NAME = "spotify-playlist-scraper"

try:
    __version__ = version("trackharvest")
except PackageNotFoundError:
    __version__ = "0.1.0"
