"""Star records from an external detector, and what the pipeline does with them.

Two uses:

- sample rejection: grid cells near a star are dropped, since a star's flux
  depends on seeing and would bias the background statistic;
- photometry: stars matched between the tiles give an independent estimate of
  the scale factor (a line through the origin of reference vs. target flux).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Sequence

import numpy as np

from photomosaic.errors import InsufficientDataError


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Star:
    x: float
    y: float
    flux: float | tuple[float, ...]
    size: float | None = None
    peak: float | None = None

    def channel_flux(self, channel: int) -> float:
        if isinstance(self.flux, tuple):
            return float(self.flux[min(int(channel), len(self.flux) - 1)])
        return float(self.flux)

    @property
    def total_flux(self) -> float:
        if isinstance(self.flux, tuple):
            return float(sum(self.flux))
        return float(self.flux)


@dataclass(frozen=True)
class StarPair:
    reference: Star
    target: Star


def as_stars(records: Iterable | None) -> list[Star]:
    """Accept Star objects or ``(x, y, flux[, size])`` tuples."""
    out: list[Star] = []
    for r in records or ():
        if isinstance(r, Star):
            out.append(r)
            continue
        vals = list(r)
        if len(vals) < 3:
            raise ValueError(f"star record needs (x, y, flux), got {r!r}")
        flux = vals[2]
        if isinstance(flux, (list, tuple, np.ndarray)):
            flux = tuple(float(f) for f in flux)
        else:
            flux = float(flux)
        size = float(vals[3]) if len(vals) > 3 and vals[3] is not None else None
        out.append(Star(float(vals[0]), float(vals[1]), flux, size))
    return out


def brightest(stars: Sequence[Star], percent: float = 100.0) -> list[Star]:
    """Brightest ``percent`` of ``stars``, brightest first."""
    ordered = sorted(stars, key=lambda s: s.total_flux, reverse=True)
    if percent >= 100.0:
        return ordered
    n = int(math.floor(len(ordered) * max(0.0, percent) / 100.0))
    return ordered[:n]


def rejection_radius(star: Star, default_radius: float, radius_scale: float = 1.0) -> float:
    """Radius around a star inside which samples are unusable."""
    if star.size is not None and star.size > 0:
        r = math.sqrt(star.size) / 2.0
    else:
        r = float(default_radius)
    return r * float(radius_scale)


def star_cell_mask(
    stars: Sequence[Star],
    *,
    origin: tuple[int, int],
    cell_size: int,
    shape: tuple[int, int],
    default_radius: float,
    radius_scale: float = 1.0,
) -> np.ndarray:
    """Boolean (rows, cols) array of grid cells touched by a star.

    A cell is touched when its centre lies within ``radius + cell_size/2`` of
    the star, or when it is in the star's own row/column of cells and within
    ``radius`` of it along the other axis.
    """

    ny, nx = int(shape[0]), int(shape[1])
    hit = np.zeros((ny, nx), dtype=bool)
    if not stars:
        return hit
    gx0, gy0 = int(origin[0]), int(origin[1])
    cs = float(cell_size)
    half = cs / 2.0

    def key(v: float, o: int) -> int:
        return int(math.floor((v - o) / cs))

    for s in stars:
        r = rejection_radius(s, default_radius, radius_scale)
        reach = r + half
        sx, sy = key(s.x, gx0), key(s.y, gy0)
        kx0, kx1 = max(0, key(s.x - r, gx0)), min(nx - 1, key(s.x + r, gx0))
        ky0, ky1 = max(0, key(s.y - r, gy0)), min(ny - 1, key(s.y + r, gy0))
        for ky in range(ky0, ky1 + 1):
            cy = gy0 + ky * cs + half - 0.5
            for kx in range(kx0, kx1 + 1):
                if kx == sx or ky == sy:
                    hit[ky, kx] = True
                    continue
                cx = gx0 + kx * cs + half - 0.5
                if math.hypot(cx - s.x, cy - s.y) < reach:
                    hit[ky, kx] = True
    return hit


def match_stars(
    reference: Sequence[Star],
    target: Sequence[Star],
    *,
    search_radius: float,
    channel: int = 0,
    ratio_range: tuple[float, float] | None = None,
) -> list[StarPair]:
    """Pair stars by position, brightest reference star first.

    Each reference star takes the brightest unmatched target star within
    ``search_radius``. With ``ratio_range`` candidate pairs whose flux ratio
    (reference / target) falls outside it are skipped.
    """

    r2 = float(search_radius) ** 2
    refs = sorted(reference, key=lambda s: s.channel_flux(channel), reverse=True)
    free = sorted(target, key=lambda s: s.channel_flux(channel), reverse=True)
    pairs: list[StarPair] = []
    for rs in refs:
        for j, ts in enumerate(free):
            if ratio_range is not None:
                tf = ts.channel_flux(channel)
                if tf <= 0:
                    continue
                g = rs.channel_flux(channel) / tf
                if g < ratio_range[0] or g > ratio_range[1]:
                    continue
            dx = ts.x - rs.x
            dy = ts.y - rs.y
            if dx * dx + dy * dy < r2:
                pairs.append(StarPair(rs, ts))
                del free[j]
                break
    return pairs


def origin_fit(pairs: Sequence[StarPair], channel: int = 0) -> float:
    """Least-squares slope of reference vs. target flux through the origin."""
    x = np.array([p.target.channel_flux(channel) for p in pairs], dtype=np.float64)
    y = np.array([p.reference.channel_flux(channel) for p in pairs], dtype=np.float64)
    sxx = float(np.sum(x * x))
    if not np.isfinite(sxx) or sxx <= 0.0:
        return float("nan")
    return float(np.sum(x * y) / sxx)


def remove_worst_pair(pairs: Sequence[StarPair], scale: float, channel: int = 0) -> list[StarPair]:
    """Drop the pair farthest (perpendicular distance) from ``y = scale * x``."""
    if not pairs:
        return []
    x = np.array([p.target.channel_flux(channel) for p in pairs], dtype=np.float64)
    y = np.array([p.reference.channel_flux(channel) for p in pairs], dtype=np.float64)
    dist = np.abs(y - scale * x) / math.sqrt(scale * scale + 1.0)
    worst = int(np.argmax(dist))
    return [p for i, p in enumerate(pairs) if i != worst]


def photometric_scale(
    reference: Sequence[Star],
    target: Sequence[Star],
    *,
    channel: int = 0,
    search_radius: float = 2.5,
    flux_tolerance: float = 1.25,
    limit_percent: float = 100.0,
    peak_limit: float | None = None,
    outlier_removal: int = 0,
) -> tuple[float, list[StarPair]]:
    """Scale factor from matched star fluxes, plus the pairs that produced it.

    A first match pass gives an approximate scale; when it yields more than
    ten pairs a second pass keeps only pairs whose flux ratio is within
    ``flux_tolerance`` of it (if that still leaves more than five).
    """

    def usable(stars: Sequence[Star]) -> list[Star]:
        ok = [s for s in stars if peak_limit is None or s.peak is None or s.peak < peak_limit]
        ok = [s for s in ok if s.channel_flux(channel) > 0]
        return brightest(ok, limit_percent)

    refs = usable(reference)
    tgts = usable(target)
    pairs = match_stars(refs, tgts, search_radius=search_radius, channel=channel)
    if len(pairs) > 10:
        g = origin_fit(pairs, channel)
        tol = float(flux_tolerance)
        second = match_stars(
            refs, tgts, search_radius=search_radius, channel=channel,
            ratio_range=(g / tol, g * tol),
        )
        if len(second) > 5:
            if len(second) < len(pairs):
                log.info(
                    "channel %d: removed %d photometry stars with large flux differences",
                    channel, len(pairs) - len(second),
                )
            pairs = second

    for _ in range(int(outlier_removal)):
        if len(pairs) < 4:
            log.warning("channel %d: only %d photometry stars, keeping outlier", channel, len(pairs))
            break
        pairs = remove_worst_pair(pairs, origin_fit(pairs, channel), channel)

    if not pairs:
        raise InsufficientDataError(
            "no photometry stars matched between the tiles", stage="photometry", channel=channel
        )
    scale = origin_fit(pairs, channel)
    if not np.isfinite(scale) or scale <= 0:
        raise InsufficientDataError(
            "matched stars do not determine a positive scale",
            code="NO_PHOTOMETRIC_SCALE",
            stage="photometry",
            channel=channel,
        )
    return scale, pairs
