"""Bitmask conventions for per-pixel sample rejection (uint16 plane).

A pixel is usable for sampling only when its rejection word is zero. Flags
combine with bitwise OR; callers may pass their own mask in the same bit
layout (for example a cosmic-ray map from an upstream cleaning step).

Keep this stable: the bit layout is written into diagnostic headers.
"""

from __future__ import annotations

import numpy as np


MASK_SCHEMA_VERSION = "v1"

# 0: outside the overlap, or pixel value marks "no data" (exact zero)
NO_COVERAGE = np.uint16(1 << 0)

# 1: non-finite value or known detector defect
BADPIX = np.uint16(1 << 1)

# 2: cosmic ray / transient
COSMIC = np.uint16(1 << 2)

# 3: at or above the saturation level in either tile
SATURATED = np.uint16(1 << 3)

# 4: inside the exclusion radius of a detected star
STAR = np.uint16(1 << 4)

# 5: user-defined / manual exclusion
USER = np.uint16(1 << 5)

# 6: rejected by a robust statistic
REJECTED = np.uint16(1 << 6)

_NAMES = {
    0: "NO_COVERAGE",
    1: "BADPIX",
    2: "COSMIC",
    3: "SATURATED",
    4: "STAR",
    5: "USER",
    6: "REJECTED",
}


def header_cards(prefix: str = "PMOS") -> dict[str, str]:
    """Header cards describing the rejection-mask layout."""
    cards = {f"{prefix}_MKV": MASK_SCHEMA_VERSION}
    for bit, name in _NAMES.items():
        cards[f"{prefix}_MB{bit}"] = name
    return cards

