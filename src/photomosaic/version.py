"""Version and provenance helpers.

``__version__`` is the package version (PEP 440); :func:`as_header_cards`
turns it, plus interpreter/platform info, into cards for output headers.
"""

from __future__ import annotations

from dataclasses import dataclass
import platform
import sys


__version__ = "0.4.0"


@dataclass(frozen=True)
class VersionInfo:
    package_version: str
    python: str
    platform: str
    numpy: str


def get_version_info() -> VersionInfo:
    import numpy as np

    return VersionInfo(
        package_version=__version__,
        python=sys.version.split()[0],
        platform=f"{platform.system()} {platform.release()} ({platform.machine()})",
        numpy=np.__version__,
    )


def as_header_cards(prefix: str = "PMOS") -> dict[str, str]:
    """Key-value cards to store in FITS/JSON provenance."""
    v = get_version_info()
    return {
        f"{prefix}_VER": v.package_version,
        f"{prefix}_PY": v.python,
        f"{prefix}_NPY": v.numpy,
        f"{prefix}_OS": v.platform,
    }
