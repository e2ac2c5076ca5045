"""Apply the per-channel correction to the target and merge it with the reference."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

import numpy as np

from photomosaic.errors import InsufficientDataError, MosaicError
from photomosaic.geometry import Box, Orientation, as_channels, bounding_box, coverage
from photomosaic.gradient import GradientModel
from photomosaic.model import LinearFit


log = logging.getLogger(__name__)


class BlendMode(str, Enum):
    """How pixels present in both tiles are combined."""

    REFERENCE_PRIORITY = "reference_priority"
    TARGET_PRIORITY = "target_priority"
    WEIGHTED_AVERAGE = "weighted_average"
    RANDOM_DITHER = "random_dither"


def _check_inputs(
    fits: Sequence[LinearFit], gradients: Sequence[GradientModel | None], n_channels: int
) -> None:
    if len(fits) != n_channels or len(gradients) != n_channels:
        raise ValueError(
            f"need one fit and one gradient per channel ({n_channels}), "
            f"got {len(fits)} and {len(gradients)}"
        )
    for c in range(n_channels):
        fit = fits[c]
        if not fit.valid:
            # Re-raise with the compositor's channel index, not the fit's own.
            try:
                fit.require_valid(stage="composite")
            except MosaicError as e:
                e.channel = c
                raise
        if gradients[c] is None:
            raise InsufficientDataError(
                "no gradient model for channel", code="MISSING_GRADIENT", stage="composite", channel=c
            )


@dataclass(frozen=True)
class SeamRamp:
    """Linear target weight across the overlap box, perpendicular to the join.

    ``side`` is +1 when the target-only pixels lie beyond ``hi``, -1 when they
    lie before ``lo`` and 0 when that cannot be told (flat 0.5 weight).
    """

    orientation: Orientation
    lo: int
    hi: int
    side: float

    @property
    def coordinate(self) -> str:
        return "y" if self.orientation == "horizontal" else "x"

    def weights(self, n: int) -> np.ndarray:
        if self.side == 0.0:
            return np.full(int(n), 0.5, dtype=np.float64)
        mid = 0.5 * (self.lo + self.hi)
        span = max(float(self.hi - self.lo), 1.0)
        coord = np.arange(int(n), dtype=np.float64)
        return np.clip(0.5 + self.side * (coord - mid) / span, 0.0, 1.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "orientation": self.orientation,
            "coordinate": self.coordinate,
            "lo": int(self.lo),
            "hi": int(self.hi),
            "side": float(self.side),
        }


def seam_ramp(ref_cov: np.ndarray, tgt_cov: np.ndarray, box: Box, orientation: Orientation) -> SeamRamp:
    """Locate the target side of the overlap from the target-only pixels."""
    horiz = orientation == "horizontal"
    lo, hi = (box.y0, box.y1 - 1) if horiz else (box.x0, box.x1 - 1)
    only_t = tgt_cov & ~ref_cov
    idx = np.nonzero(only_t)[0 if horiz else 1]
    side = 0.0
    if idx.size:
        side = float(np.sign(np.mean(idx) - 0.5 * (lo + hi)))
    return SeamRamp(orientation=orientation, lo=int(lo), hi=int(hi), side=side)


def seam_weight_axis(
    ref_cov: np.ndarray,
    tgt_cov: np.ndarray,
    box: Box,
    orientation: Orientation,
) -> np.ndarray:
    """Target weight for each cross-axis coordinate of the tile.

    Runs linearly from 0 on the reference side of the overlap box to 1 on the
    target side (0.5 at the centre) and is clipped outside the box. When the
    side cannot be told (no target-only pixels, or they straddle the centre)
    the weight is 0.5 everywhere.
    """
    n = ref_cov.shape[0] if orientation == "horizontal" else ref_cov.shape[1]
    return seam_ramp(ref_cov, tgt_cov, box, orientation).weights(n)


def composite(
    reference: np.ndarray,
    target: np.ndarray,
    fits: Sequence[LinearFit],
    gradients: Sequence[GradientModel | None],
    *,
    overlap: np.ndarray | None = None,
    mode: BlendMode | str = BlendMode.WEIGHTED_AVERAGE,
    dither_probability: float = 0.5,
    random_seed: int | None = 0,
    taper_length: float = 0.0,
    create_mosaic: bool = True,
    band_rows: int = 256,
) -> np.ndarray:
    """Corrected and blended mosaic; the inputs are left untouched.

    ``corrected = scale * target + offset + gradient(x, y)`` per channel.
    Pixels without data in the target (zero or non-finite in every channel)
    are never corrected. Outside ``overlap`` a target pixel takes its
    corrected value and a reference-only pixel is kept; inside it the blend
    ``mode`` decides. With ``create_mosaic=False`` only the corrected target
    is returned.
    """

    ref = as_channels(reference)
    tgt = as_channels(target)
    if ref.shape != tgt.shape:
        raise ValueError(f"reference {ref.shape} and target {tgt.shape} differ in shape")
    H, W, C = tgt.shape
    _check_inputs(fits, gradients, C)
    mode = BlendMode(mode)
    if not 0.0 < float(dither_probability) < 1.0:
        raise ValueError("dither_probability must be in (0, 1)")

    ref_cov = coverage(ref)
    tgt_cov = coverage(tgt)
    ov = (ref_cov & tgt_cov) if overlap is None else np.asarray(overlap, dtype=bool)
    box = bounding_box(ov)
    orientation = gradients[0].orientation  # type: ignore[union-attr]

    w_axis = None
    if create_mosaic and mode is BlendMode.WEIGHTED_AVERAGE and box is not None:
        w_axis = seam_weight_axis(ref_cov, tgt_cov, box, orientation)
    rng = np.random.default_rng(random_seed)
    taper = float(taper_length) if box is not None else 0.0

    out = np.zeros((H, W, C), dtype=np.float64)
    xs = np.arange(W, dtype=np.float64)[None, :]
    step = max(1, int(band_rows))
    for r0 in range(0, H, step):
        r1 = min(H, r0 + step)
        ys = np.arange(r0, r1, dtype=np.float64)[:, None]
        tc = tgt_cov[r0:r1]
        rc = ref_cov[r0:r1]
        ob = ov[r0:r1]
        wb = None
        if w_axis is not None:
            wb = w_axis[r0:r1, None] if orientation == "horizontal" else w_axis[None, :]
        pick_t = None
        if create_mosaic and mode is BlendMode.RANDOM_DITHER:
            pick_t = rng.random((r1 - r0, W)) < float(dither_probability)

        for c in range(C):
            g = gradients[c]
            grad = g.tapered(xs, ys, box, taper) if taper > 0 else g.evaluate(xs, ys)  # type: ignore[union-attr]
            t = tgt[r0:r1, :, c].astype(np.float64, copy=False)
            corr = np.where(tc, fits[c].scale * t + fits[c].offset + grad, 0.0)
            if not create_mosaic:
                out[r0:r1, :, c] = corr
                continue

            r = ref[r0:r1, :, c].astype(np.float64, copy=False)
            band = np.where(tc, corr, np.where(rc, r, 0.0))
            if mode is BlendMode.REFERENCE_PRIORITY:
                blended = r
            elif mode is BlendMode.TARGET_PRIORITY:
                blended = corr
            elif mode is BlendMode.WEIGHTED_AVERAGE:
                blended = r + (wb if wb is not None else 0.5) * (corr - r)
            else:
                blended = np.where(pick_t, corr, r)
            out[r0:r1, :, c] = np.where(ob, blended, band)

    log.debug("composited %dx%dx%d tile (mode=%s, mosaic=%s)", H, W, C, mode.value, create_mosaic)
    if np.asarray(target).ndim == 2:
        return out[:, :, 0]
    return out
