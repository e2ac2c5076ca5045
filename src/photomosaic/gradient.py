"""Residual gradient model across the join.

After the linear fit, what is left (``reference - (scale*target + offset)``)
is mostly a slowly varying background difference. It is modelled as a curve
along the join axis, optionally plus a second curve across it, and
extrapolated to the whole tile so the target can be corrected everywhere,
not only inside the overlap.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Sequence

import numpy as np

from photomosaic.akima import MIN_POINTS, AkimaCurve
from photomosaic.geometry import Box, Orientation
from photomosaic.model import LinearFit, SamplePair, sample_columns


log = logging.getLogger(__name__)

AXES = ("join", "both")


def _column_means(pos: np.ndarray, val: np.ndarray, w: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Weighted mean residual per distinct position, positions ascending."""
    u, inv = np.unique(pos, return_inverse=True)
    sw = np.bincount(inv, weights=w, minlength=u.size)
    sv = np.bincount(inv, weights=w * val, minlength=u.size)
    return u, sv / sw


def _moving_average(u: np.ndarray, v: np.ndarray, n: int) -> tuple[np.ndarray, np.ndarray]:
    if n <= 1 or u.size < n:
        return u, v
    kernel = np.ones(n, dtype=np.float64) / n
    return np.convolve(u, kernel, mode="valid"), np.convolve(v, kernel, mode="valid")


def _line_smooth(u: np.ndarray, v: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Fit a line to each full window of five points and keep two points of it.

    Windows never overlap; the points left over when the count is not a
    multiple of five are split between the two ends and dropped.
    """
    n = u.size
    start = 2 + (n % 5) // 2
    us: list[float] = []
    vs: list[float] = []
    for i in range(start, n - 2, 5):
        slope, icpt = np.polyfit(u[i - 2 : i + 3], v[i - 2 : i + 3], 1)
        for k in (i - 1, i + 1):
            us.append(float(u[k]))
            vs.append(float(slope * u[k] + icpt))
    return np.asarray(us), np.asarray(vs)


def fit_gradient_curve(
    positions,
    residuals,
    weights=None,
    *,
    smoothing_columns: int = 1,
    line_smoothing: bool = False,
    channel: int | None = None,
) -> AkimaCurve:
    """Akima curve through residuals projected onto one axis.

    Samples sharing a position are averaged first; ``smoothing_columns`` > 1
    applies a moving average over that many neighbouring positions.
    """

    pos = np.asarray(positions, dtype=np.float64).reshape(-1)
    val = np.asarray(residuals, dtype=np.float64).reshape(-1)
    w = np.ones_like(pos) if weights is None else np.asarray(weights, dtype=np.float64).reshape(-1)
    u, v = _column_means(pos, val, w)
    u, v = _moving_average(u, v, int(smoothing_columns))
    if line_smoothing and u.size > MIN_POINTS:
        su, sv = _line_smooth(u, v)
        if su.size >= MIN_POINTS:
            u, v = su, sv
    return AkimaCurve(u, v, stage="gradient", channel=channel)


@dataclass(frozen=True)
class GradientModel:
    """Separable correction ``primary(join coord) + secondary(cross coord)``."""

    channel: int
    orientation: Orientation
    primary: AkimaCurve | None = None
    secondary: AkimaCurve | None = None
    mean: float = 0.0
    n_points: int = 0

    @classmethod
    def zero(cls, channel: int, orientation: Orientation) -> "GradientModel":
        return cls(channel=channel, orientation=orientation)

    @property
    def axes(self) -> str:
        if self.primary is None:
            return "none"
        return "both" if self.secondary is not None else "join"

    def _split(self, x, y):
        if self.orientation == "horizontal":
            return x, y
        return y, x

    def evaluate(self, x, y) -> np.ndarray:
        """Correction at pixel coordinates (broadcasting like numpy)."""
        jc, cc = self._split(np.asarray(x, dtype=np.float64), np.asarray(y, dtype=np.float64))
        out = np.zeros(np.broadcast(jc, cc).shape, dtype=np.float64)
        if self.primary is not None:
            out = out + self.primary.evaluate(jc)
        if self.secondary is not None:
            out = out + self.secondary.evaluate(cc)
        return out

    def tapered(self, x, y, box: Box, taper_length: float) -> np.ndarray:
        """Correction that fades to :attr:`mean` beyond ``box`` across the join.

        Inside the box's span (along the cross axis) the full correction is
        used; over the next ``taper_length`` pixels it blends linearly to the
        mean, which is used from there on.
        """
        full = self.evaluate(x, y)
        if taper_length <= 0:
            return full
        _, cc = self._split(np.asarray(x, dtype=np.float64), np.asarray(y, dtype=np.float64))
        lo, hi = (box.y0, box.y1 - 1) if self.orientation == "horizontal" else (box.x0, box.x1 - 1)
        dist = np.maximum(lo - cc, 0.0) + np.maximum(cc - hi, 0.0)
        frac = np.clip(1.0 - dist / float(taper_length), 0.0, 1.0)
        return self.mean + frac * (full - self.mean)

    def summary(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "orientation": self.orientation,
            "axes": self.axes,
            "mean": float(self.mean),
            "n_points": int(self.n_points),
        }
        if self.primary is not None:
            d["n_knots"] = len(self.primary)
            d["min"] = float(np.min(self.primary.y))
            d["max"] = float(np.max(self.primary.y))
        if self.secondary is not None:
            d["n_knots_cross"] = len(self.secondary)
        return d


def residual_points(
    pairs: Sequence[SamplePair], fit: LinearFit, channel: int
) -> dict[str, np.ndarray]:
    """x, y, residual and weight of the samples the fit accepted."""
    cols = sample_columns(pairs, channel)
    idx = np.asarray(fit.used, dtype=np.intp)
    return {
        "x": cols["x"][idx],
        "y": cols["y"][idx],
        "residual": fit.residuals(cols["reference"][idx], cols["target"][idx]),
        "weight": cols["weight"][idx],
    }


def model_channel_gradient(
    pairs: Sequence[SamplePair],
    fit: LinearFit,
    *,
    orientation: Orientation,
    channel: int | None = None,
    enabled: bool = True,
    axes: str = "join",
    smoothing_columns: int = 1,
    line_smoothing: bool = False,
) -> GradientModel:
    """Fit the residual gradient for one channel.

    Raises :class:`~photomosaic.errors.InsufficientDataError` when fewer than
    five distinct positions remain along an axis, and propagates the fit's
    own error if ``fit`` is invalid.
    """

    ch = fit.channel if channel is None else int(channel)
    fit.require_valid(stage="gradient")
    if axes not in AXES:
        raise ValueError(f"unknown gradient axes {axes!r}; expected one of {AXES}")
    if not enabled:
        return GradientModel.zero(ch, orientation)

    pts = residual_points(pairs, fit, ch)
    horiz = orientation == "horizontal"
    jc = pts["x"] if horiz else pts["y"]
    cc = pts["y"] if horiz else pts["x"]
    kw = dict(smoothing_columns=smoothing_columns, line_smoothing=line_smoothing, channel=ch)

    primary = fit_gradient_curve(jc, pts["residual"], pts["weight"], **kw)
    secondary = None
    if axes == "both":
        left = pts["residual"] - primary.evaluate(jc)
        secondary = fit_gradient_curve(cc, left, pts["weight"], **kw)

    model = GradientModel(
        channel=ch,
        orientation=orientation,
        primary=primary,
        secondary=secondary,
        n_points=int(jc.size),
    )
    mean = float(np.average(model.evaluate(pts["x"], pts["y"]), weights=pts["weight"]))
    log.debug("channel %d: gradient %s, %d knots, mean %.6g", ch, model.axes, len(primary), mean)
    return replace(model, mean=mean)
