"""Hand-off to an external pixel-math engine.

When the full-resolution apply step runs elsewhere (an image processing host
with its own expression evaluator) the pipeline hands over a plan: per
channel scale, offset and gradient coefficients, plus expression strings in
the common ``iif``/``rndselect`` dialect.
"""

from __future__ import annotations

from typing import Any

import numpy as np

from photomosaic.compositor import BlendMode
from photomosaic.model import MosaicResult
from photomosaic.version import __version__


PLAN_VERSION = 2


def linear_expression(scale: float, offset: float, symbol: str = "$T") -> str:
    """Scale/offset correction that leaves "no data" (zero) pixels alone."""
    return f"iif({symbol} == 0, 0, {symbol} * {scale:.10g} + {offset:.10g})"


def blend_expression(
    mode: BlendMode | str,
    reference: str = "ref",
    target: str = "tgt",
    weight: str | None = None,
) -> str:
    """Overlap merge rule; outside the overlap the one non-zero source wins."""
    mode = BlendMode(mode)
    r, t = reference, target
    if mode is BlendMode.REFERENCE_PRIORITY:
        return f"iif({r} != 0, {r}, {t})"
    if mode is BlendMode.TARGET_PRIORITY:
        return f"iif({t} != 0, {t}, {r})"
    if mode is BlendMode.RANDOM_DITHER:
        return f"iif({r} && {t}, rndselect({r}, {t}), {r} + {t})"
    if weight is None:
        return f"iif({r} && {t}, ({r} + {t})/2, {r} + {t})"
    return f"iif({r} && {t}, {r} + {weight}*({t} - {r}), {r} + {t})"


def ramp_expression(seam: dict[str, Any] | None) -> str:
    """Weighted-average target weight as an expression of the pixel coordinate.

    ``seam`` is the ``tags["seam"]`` entry of a result; without one the
    weight is a flat 0.5.
    """
    if not seam or not seam.get("side"):
        return "0.5"
    mid = 0.5 * (seam["lo"] + seam["hi"])
    span = max(float(seam["hi"] - seam["lo"]), 1.0)
    return f"max(0, min(1, 0.5 + {seam['side']:g}*({seam['coordinate']} - {mid:.10g})/{span:.10g}))"


def build_apply_plan(result: MosaicResult) -> dict[str, Any]:
    """JSON-serialisable description of everything needed to re-apply ``result``.

    For ``weighted_average`` the blend expression refers to a weight ``w``
    given by ``weight_expression``, the same linear ramp across the seam that
    :func:`~photomosaic.compositor.composite` applied.
    """
    channels = []
    for d in result.channels:
        g = d.gradient
        entry: dict[str, Any] = {
            "channel": d.channel,
            "scale": float(d.fit.scale),
            "offset": float(d.fit.offset),
            "expression": linear_expression(d.fit.scale, d.fit.offset),
            "gradient": None,
        }
        if g is not None:
            entry["gradient"] = {
                "orientation": g.orientation,
                "axes": g.axes,
                "mean": float(g.mean),
                "primary": g.primary.coefficients() if g.primary is not None else None,
                "secondary": g.secondary.coefficients() if g.secondary is not None else None,
            }
        channels.append(entry)
    seam = result.tags.get("seam")
    weighted = BlendMode(result.blend_mode) is BlendMode.WEIGHTED_AVERAGE
    return {
        "plan_version": PLAN_VERSION,
        "software_version": __version__,
        "blend_mode": result.blend_mode,
        "create_mosaic": result.created_mosaic,
        "blend_expression": blend_expression(result.blend_mode, weight="w" if weighted else None),
        "weight_expression": ramp_expression(seam) if weighted else None,
        "seam": seam,
        "channels": channels,
    }


def evaluate_coefficients(coeffs: dict[str, Any], xq) -> np.ndarray:
    """Evaluate a curve from its plan coefficients alone.

    This is the computation an external evaluator performs: locate the
    sub-interval by binary search, then Horner's rule on (a, b, c, d); the
    end intervals extend past the outer knots.
    """
    x = np.asarray(coeffs["x"], dtype=np.float64)
    a = np.asarray(coeffs["a"], dtype=np.float64)
    b = np.asarray(coeffs["b"], dtype=np.float64)
    c = np.asarray(coeffs["c"], dtype=np.float64)
    d = np.asarray(coeffs["d"], dtype=np.float64)
    q = np.asarray(xq, dtype=np.float64)
    i = np.clip(np.searchsorted(x, q, side="right") - 1, 0, x.size - 2)
    t = q - x[i]
    return a[i] + t * (b[i] + t * (c[i] + t * d[i]))
