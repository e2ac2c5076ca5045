"""Array and region helpers shared by the sampling and compositing stages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

import numpy as np


Orientation = Literal["horizontal", "vertical"]


@dataclass(frozen=True)
class Box:
    """Axis-aligned pixel rectangle; ``x1``/``y1`` are exclusive."""

    x0: int
    y0: int
    x1: int
    y1: int

    @property
    def width(self) -> int:
        return self.x1 - self.x0

    @property
    def height(self) -> int:
        return self.y1 - self.y0

    def as_tuple(self) -> tuple[int, int, int, int]:
        return self.x0, self.y0, self.x1, self.y1


def as_channels(arr: np.ndarray) -> np.ndarray:
    """Return a read-only (H, W, C) view of a 2-D or 3-D pixel array."""
    a = np.asarray(arr)
    if a.ndim == 2:
        a = a[:, :, None]
    if a.ndim != 3:
        raise ValueError(f"expected a (H, W) or (H, W, C) array, got shape {a.shape}")
    v = a.view()
    v.flags.writeable = False
    return v


def coverage(arr: np.ndarray) -> np.ndarray:
    """Pixels carrying data: finite and non-zero in at least one channel."""
    a = as_channels(arr)
    with np.errstate(invalid="ignore"):
        return np.any(np.isfinite(a) & (a != 0), axis=2)


def overlap_mask(reference: np.ndarray, target: np.ndarray) -> np.ndarray:
    """Joint coverage of two same-size tiles."""
    ref = as_channels(reference)
    tgt = as_channels(target)
    if ref.shape[:2] != tgt.shape[:2]:
        raise ValueError(f"tile shapes differ: {ref.shape[:2]} vs {tgt.shape[:2]}")
    return coverage(ref) & coverage(tgt)


def bounding_box(mask: np.ndarray) -> Box | None:
    """Tight bounding box of the true pixels in ``mask``, or None."""
    m = np.asarray(mask, dtype=bool)
    rows = np.flatnonzero(m.any(axis=1))
    if rows.size == 0:
        return None
    cols = np.flatnonzero(m.any(axis=0))
    return Box(int(cols[0]), int(rows[0]), int(cols[-1]) + 1, int(rows[-1]) + 1)


def join_orientation(box: Box, mode: str = "auto") -> Orientation:
    """Direction the seam runs in.

    A wide overlap box is a horizontal join (the correction varies along x);
    a tall one is vertical (it varies along y).
    """
    if mode in ("horizontal", "vertical"):
        return mode  # type: ignore[return-value]
    return "horizontal" if box.width >= box.height else "vertical"

