"""photomosaic: seamless photometric mosaics from two overlapping tiles."""

from .version import __version__

__all__ = ["__version__"]
