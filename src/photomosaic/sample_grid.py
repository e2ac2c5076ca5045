"""Sample grid over the overlap of two tiles.

The overlap's bounding box is cut into square cells; each cell is reduced to
one robust (reference, target) value per channel. Only one cell is sliced at
a time so no full-frame temporaries are created here.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from astropy.stats import sigma_clipped_stats

from photomosaic import maskbits
from photomosaic.errors import InsufficientDataError
from photomosaic.geometry import Box, Orientation, as_channels, bounding_box, join_orientation
from photomosaic.model import SamplePair
from photomosaic.stars import Star, as_stars, brightest, star_cell_mask


log = logging.getLogger(__name__)

STATISTICS = ("median", "sigma_clipped_mean")


@dataclass(frozen=True)
class SampleGrid:
    """Output of :func:`build_sample_pairs`."""

    pairs: tuple[SamplePair, ...]
    box: Box
    orientation: Orientation
    cell_size: int
    n_cells: int
    n_star_cells: int = 0
    n_sparse_cells: int = 0
    binned: bool = False

    def __len__(self) -> int:
        return len(self.pairs)


def pixel_rejection_bits(
    ref: np.ndarray,
    tgt: np.ndarray,
    overlap: np.ndarray,
    *,
    saturation_level: float | None = None,
    zero_is_no_data: bool = True,
    user_mask: np.ndarray | None = None,
    user_bits: int = 0xFFFF,
) -> np.ndarray:
    """uint16 rejection word per pixel of a (h, w, C) cell; zero means usable."""

    bits = np.zeros(ref.shape[:2], dtype=np.uint16)
    bits[~np.asarray(overlap, dtype=bool)] |= maskbits.NO_COVERAGE
    finite = np.all(np.isfinite(ref), axis=2) & np.all(np.isfinite(tgt), axis=2)
    bits[~finite] |= maskbits.BADPIX
    with np.errstate(invalid="ignore"):
        if zero_is_no_data:
            black = np.any(ref == 0, axis=2) | np.any(tgt == 0, axis=2)
            bits[black] |= maskbits.NO_COVERAGE
        if saturation_level is not None:
            sat = np.any(ref >= saturation_level, axis=2) | np.any(tgt >= saturation_level, axis=2)
            bits[sat] |= maskbits.SATURATED
    if user_mask is not None:
        bits |= (np.asarray(user_mask, dtype=np.uint16) & np.uint16(user_bits))
    return bits


def _reduce(vals: np.ndarray, statistic: str, clip_sigma: float, clip_maxiters: int) -> np.ndarray:
    """Robust centre of each column of an (n, C) array."""
    if statistic == "median":
        return np.median(vals, axis=0)
    if clip_maxiters <= 0:
        return np.mean(vals, axis=0)
    mean, _median, _std = sigma_clipped_stats(
        vals, sigma=float(clip_sigma), maxiters=int(clip_maxiters), axis=0
    )
    mean = np.asarray(mean, dtype=np.float64)
    # A fully clipped column comes back masked/NaN; use the median instead.
    bad = ~np.isfinite(mean)
    if np.any(bad):
        mean = np.where(bad, np.median(vals, axis=0), mean)
    return mean


def _sort_key(orientation: Orientation):
    if orientation == "horizontal":
        return lambda p: (p.x, p.y)
    return lambda p: (p.y, p.x)


def build_sample_pairs(
    reference: np.ndarray,
    target: np.ndarray,
    overlap: np.ndarray,
    *,
    grid_size: int,
    statistic: str = "median",
    clip_sigma: float = 3.0,
    clip_maxiters: int = 5,
    min_cell_pixels: int = 16,
    saturation_level: float | None = None,
    zero_is_no_data: bool = True,
    reject_mask: np.ndarray | None = None,
    reject_bits: int = 0xFFFF,
    stars: Sequence[Star] | None = None,
    star_radius: float = 4.0,
    star_radius_scale: float = 1.0,
    star_limit_percent: float = 100.0,
    max_samples: int | None = None,
    orientation: str = "auto",
) -> SampleGrid:
    """Reduce the overlap to an ordered sequence of :class:`SamplePair`.

    Cells with fewer than ``min_cell_pixels`` usable pixels in any channel are
    omitted, as are cells touched by one of the brightest
    ``star_limit_percent`` stars. Pairs are ordered along the join.
    """

    ref = as_channels(reference)
    tgt = as_channels(target)
    if ref.shape != tgt.shape:
        raise ValueError(f"reference {ref.shape} and target {tgt.shape} differ in shape")
    ov = np.asarray(overlap, dtype=bool)
    if ov.shape != ref.shape[:2]:
        raise ValueError(f"overlap mask {ov.shape} does not match tiles {ref.shape[:2]}")
    if statistic not in STATISTICS:
        raise ValueError(f"unknown statistic {statistic!r}; expected one of {STATISTICS}")
    cs = int(grid_size)
    if cs <= 0:
        raise ValueError("grid_size must be > 0")

    box = bounding_box(ov)
    if box is None:
        raise InsufficientDataError("tiles do not overlap", stage="samples")
    orient = join_orientation(box, orientation)

    ncols = int(math.ceil(box.width / cs))
    nrows = int(math.ceil(box.height / cs))
    star_list = brightest(as_stars(stars), star_limit_percent)
    star_hit = star_cell_mask(
        star_list,
        origin=(box.x0, box.y0),
        cell_size=cs,
        shape=(nrows, ncols),
        default_radius=star_radius,
        radius_scale=star_radius_scale,
    )

    pairs: list[SamplePair] = []
    n_sparse = 0
    for ky in range(nrows):
        y0 = box.y0 + ky * cs
        y1 = min(y0 + cs, box.y1)
        for kx in range(ncols):
            if star_hit[ky, kx]:
                continue
            x0 = box.x0 + kx * cs
            x1 = min(x0 + cs, box.x1)
            cell_ov = ov[y0:y1, x0:x1]
            if not cell_ov.any():
                continue
            rc = ref[y0:y1, x0:x1, :]
            tc = tgt[y0:y1, x0:x1, :]
            um = None if reject_mask is None else np.asarray(reject_mask)[y0:y1, x0:x1]
            bits = pixel_rejection_bits(
                rc, tc, cell_ov,
                saturation_level=saturation_level,
                zero_is_no_data=zero_is_no_data,
                user_mask=um,
                user_bits=reject_bits,
            )
            good = bits == 0
            n = int(good.sum())
            if n < int(min_cell_pixels):
                n_sparse += 1
                continue
            rv = rc[good].astype(np.float64, copy=False)
            tv = tc[good].astype(np.float64, copy=False)
            nch = rv.shape[1]
            pairs.append(
                SamplePair(
                    x0=x0, y0=y0, x1=x1, y1=y1,
                    x=x0 + (x1 - x0 - 1) / 2.0,
                    y=y0 + (y1 - y0 - 1) / 2.0,
                    reference=_reduce(rv, statistic, clip_sigma, clip_maxiters),
                    target=_reduce(tv, statistic, clip_sigma, clip_maxiters),
                    count=np.full(nch, n, dtype=np.int64),
                )
            )

    pairs.sort(key=_sort_key(orient))
    n_star = int(star_hit.sum())
    log.debug(
        "sample grid %dx%d cells of %d px: %d kept, %d near stars, %d sparse",
        ncols, nrows, cs, len(pairs), n_star, n_sparse,
    )

    binned = False
    if max_samples is not None and len(pairs) > int(max_samples):
        pairs = limit_sample_count(pairs, box, cs, int(max_samples), orient)
        binned = True

    return SampleGrid(
        pairs=tuple(pairs),
        box=box,
        orientation=orient,
        cell_size=cs,
        n_cells=nrows * ncols,
        n_star_cells=n_star,
        n_sparse_cells=n_sparse,
        binned=binned,
    )


def _merge(group: Sequence[SamplePair]) -> SamplePair:
    w = np.array([p.weight for p in group], dtype=np.float64)
    sw = float(w.sum())
    ref = np.sum([p.reference * p.weight for p in group], axis=0) / sw
    tgt = np.sum([p.target * p.weight for p in group], axis=0) / sw
    return SamplePair(
        x0=min(p.x0 for p in group),
        y0=min(p.y0 for p in group),
        x1=max(p.x1 for p in group),
        y1=max(p.y1 for p in group),
        x=float(np.sum(w * [p.x for p in group]) / sw),
        y=float(np.sum(w * [p.y for p in group]) / sw),
        reference=ref,
        target=tgt,
        count=np.sum([p.count for p in group], axis=0),
        weight=int(sw),
        valid=all(p.valid for p in group),
    )


def _bin_once(
    pairs: Sequence[SamplePair], box: Box, cell_size: int, limit: float
) -> list[SamplePair]:
    factor = max(2, int(math.ceil(math.sqrt(len(pairs) / max(limit, 1.0)))))
    span = float(cell_size * factor)
    groups: dict[tuple[int, int], list[SamplePair]] = {}
    for p in pairs:
        k = (int((p.x - box.x0) // span), int((p.y - box.y0) // span))
        groups.setdefault(k, []).append(p)
    return [_merge(groups[k]) for k in sorted(groups)]


def limit_sample_count(
    pairs: Sequence[SamplePair],
    box: Box,
    cell_size: int,
    max_samples: int,
    orientation: Orientation = "horizontal",
) -> list[SamplePair]:
    """Merge neighbouring cells until there are about ``max_samples`` pairs.

    The binning factor assumes no cell was rejected; when star rejection left
    holes the first pass can overshoot, so the limit is tightened once.
    """

    if len(pairs) <= max_samples:
        return list(pairs)
    out = _bin_once(pairs, box, cell_size, max_samples)
    if len(out) > max_samples:
        limit = max_samples * max_samples / len(out)
        out = _bin_once(pairs, box, cell_size, limit)
    out.sort(key=_sort_key(orientation))
    log.info("binned %d samples into %d", len(pairs), len(out))
    return out
