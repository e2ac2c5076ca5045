"""Robust linear fit of reference vs. target sample values.

The model is ``reference ~ scale * target + offset``. Outliers are removed
with an iterative clip on the residuals: the spread is the normalised MAD
(standard deviation when the MAD collapses) and a sample is dropped when
``|r - median(r)| > rejection_sigma * spread``.

Degenerate input never produces NaN/inf. Instead a :class:`LinearFit` with
``valid=False`` and one of these reasons is returned:

- ``insufficient_samples``: fewer than ``min_samples`` finite samples;
- ``zero_variance``: every target value is identical (scale undetermined,
  see :func:`offset_only_fit`);
- ``singular``: target variance is non-zero but numerically negligible;
- ``non_positive_scale``: the fitted scale is <= 0.
"""

from __future__ import annotations

import logging

import numpy as np
from scipy.stats import median_abs_deviation

from photomosaic.model import LinearFit


log = logging.getLogger(__name__)

# Relative variance below which the normal equations are treated as singular.
SINGULAR_RTOL = 1e-12
# Residuals below this fraction of the data magnitude are never outliers.
RESIDUAL_RTOL = 1e-9


def robust_spread(residuals: np.ndarray) -> float:
    """Normal-consistent MAD, falling back to the standard deviation."""
    r = np.asarray(residuals, dtype=np.float64)
    if r.size == 0:
        return 0.0
    s = float(median_abs_deviation(r, scale="normal"))
    if not np.isfinite(s) or s <= 0.0:
        s = float(np.std(r))
    return s if np.isfinite(s) else 0.0


def _weights(n: int, weights) -> np.ndarray:
    if weights is None:
        return np.ones(n, dtype=np.float64)
    w = np.asarray(weights, dtype=np.float64).reshape(-1)
    if w.size != n:
        raise ValueError(f"weights length {w.size} does not match {n} samples")
    return w


def _weighted_median(values: np.ndarray, weights: np.ndarray) -> float:
    order = np.argsort(values, kind="stable")
    v = values[order]
    cw = np.cumsum(weights[order])
    half = 0.5 * cw[-1]
    k = int(np.searchsorted(cw, half, side="left"))
    if np.isclose(cw[k], half) and k + 1 < v.size:
        return float(0.5 * (v[k] + v[k + 1]))
    return float(v[k])


def _wls(x: np.ndarray, y: np.ndarray, w: np.ndarray) -> tuple[float, float] | str:
    """Weighted least squares on centred data; a reason string when degenerate."""
    if np.ptp(x) == 0.0:
        return "zero_variance"
    sw = float(np.sum(w))
    xm = float(np.sum(w * x) / sw)
    ym = float(np.sum(w * y) / sw)
    dx = x - xm
    sxx = float(np.sum(w * dx * dx))
    mag = max(1.0, float(np.max(np.abs(x))))
    if sxx <= SINGULAR_RTOL * SINGULAR_RTOL * sw * mag * mag:
        return "singular"
    scale = float(np.sum(w * dx * (y - ym)) / sxx)
    return scale, ym - scale * xm


def _rms(r: np.ndarray, w: np.ndarray) -> float:
    if r.size == 0:
        return 0.0
    return float(np.sqrt(np.sum(w * r * r) / np.sum(w)))


def _invalid(channel: int, reason: str, used: np.ndarray, **kw) -> LinearFit:
    return LinearFit(
        channel=channel,
        scale=1.0,
        offset=0.0,
        error=0.0,
        used=tuple(int(i) for i in np.flatnonzero(used)),
        valid=False,
        reason=reason,
        **kw,
    )


def _clip_step(
    r: np.ndarray, used: np.ndarray, sigma: float, tol: float
) -> np.ndarray:
    """Boolean array of currently used samples that are outliers."""
    ru = r[used]
    thresh = max(float(sigma) * robust_spread(ru), tol)
    center = float(np.median(ru))
    return used & (np.abs(r - center) > thresh)


def robust_linear_fit(
    reference,
    target,
    *,
    weights=None,
    channel: int = 0,
    rejection_sigma: float = 3.0,
    max_iterations: int = 10,
    min_samples: int = 3,
) -> LinearFit:
    """Fit ``reference ~ scale * target + offset`` with iterative rejection.

    Rejection stops when a pass removes nothing, after ``max_iterations``
    passes, or when a pass would leave fewer than ``min_samples``; in the
    last case the previous fit is kept.
    """

    y = np.asarray(reference, dtype=np.float64).reshape(-1)
    x = np.asarray(target, dtype=np.float64).reshape(-1)
    if x.shape != y.shape:
        raise ValueError(f"reference/target length mismatch: {y.size} vs {x.size}")
    w = _weights(x.size, weights)

    used = np.isfinite(x) & np.isfinite(y) & np.isfinite(w) & (w > 0)
    n_ok = int(used.sum())
    if n_ok == 0:
        return _invalid(channel, "insufficient_samples", used)
    if np.ptp(x[used]) == 0.0:
        return _invalid(channel, "zero_variance", used)
    if n_ok < int(min_samples):
        return _invalid(channel, "insufficient_samples", used)

    res = _wls(x[used], y[used], w[used])
    if isinstance(res, str):
        return _invalid(channel, res, used)
    scale, offset = res

    tol = RESIDUAL_RTOL * max(1.0, float(np.max(np.abs(y[used]))))
    rejected: list[int] = []
    iterations = 0
    while iterations < int(max_iterations):
        r = y - (scale * x + offset)
        out = _clip_step(r, used, rejection_sigma, tol)
        n_out = int(out.sum())
        if n_out == 0:
            break
        if int(used.sum()) - n_out < int(min_samples):
            log.debug(
                "channel %d: rejecting %d more would leave < %d samples; keeping last fit",
                channel, n_out, min_samples,
            )
            break
        trial = used & ~out
        res = _wls(x[trial], y[trial], w[trial])
        if isinstance(res, str):
            break
        used = trial
        scale, offset = res
        rejected.extend(int(i) for i in np.flatnonzero(out))
        iterations += 1

    if scale <= 0.0:
        return _invalid(
            channel, "non_positive_scale", used,
            rejected=tuple(sorted(rejected)), iterations=iterations,
        )

    r = y[used] - (scale * x[used] + offset)
    return LinearFit(
        channel=channel,
        scale=float(scale),
        offset=float(offset),
        error=_rms(r, w[used]),
        used=tuple(int(i) for i in np.flatnonzero(used)),
        rejected=tuple(sorted(rejected)),
        iterations=iterations,
    )


def offset_only_fit(
    reference,
    target,
    *,
    scale: float = 1.0,
    weights=None,
    channel: int = 0,
    rejection_sigma: float = 3.0,
    max_iterations: int = 10,
    min_samples: int = 1,
    scale_source: str = "samples",
) -> LinearFit:
    """Offset with the scale held fixed (1 unless supplied).

    Used when the target values carry no variance to determine a scale, or
    when the scale comes from star photometry. The offset is the weighted
    median of ``reference - scale * target`` after the same iterative
    rejection as :func:`robust_linear_fit`.
    """

    y = np.asarray(reference, dtype=np.float64).reshape(-1)
    x = np.asarray(target, dtype=np.float64).reshape(-1)
    w = _weights(x.size, weights)
    used = np.isfinite(x) & np.isfinite(y) & np.isfinite(w) & (w > 0)
    if int(used.sum()) < max(1, int(min_samples)):
        return _invalid(
            channel, "insufficient_samples", used,
            offset_only=True, scale_source=scale_source,
        )
    if not np.isfinite(scale) or scale <= 0.0:
        return _invalid(
            channel, "non_positive_scale", used,
            offset_only=True, scale_source=scale_source,
        )

    d = y - float(scale) * x
    offset = _weighted_median(d[used], w[used])
    tol = RESIDUAL_RTOL * max(1.0, float(np.max(np.abs(y[used]))))
    rejected: list[int] = []
    iterations = 0
    while iterations < int(max_iterations):
        out = _clip_step(d - offset, used, rejection_sigma, tol)
        n_out = int(out.sum())
        if n_out == 0 or int(used.sum()) - n_out < max(1, int(min_samples)):
            break
        used = used & ~out
        offset = _weighted_median(d[used], w[used])
        rejected.extend(int(i) for i in np.flatnonzero(out))
        iterations += 1

    return LinearFit(
        channel=channel,
        scale=float(scale),
        offset=float(offset),
        error=_rms(d[used] - offset, w[used]),
        used=tuple(int(i) for i in np.flatnonzero(used)),
        rejected=tuple(sorted(rejected)),
        iterations=iterations,
        offset_only=True,
        scale_source=scale_source,
    )
