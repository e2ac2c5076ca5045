"""Diagnostic graphs: photometry fit and gradient curve, as PNG files."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Sequence

import numpy as np

from photomosaic.geometry import Box
from photomosaic.gradient import GradientModel, residual_points
from photomosaic.model import LinearFit, SamplePair, sample_columns


STYLE: dict[str, object] = {
    "font.size": 10,
    "axes.titlesize": 11,
    "figure.dpi": 110,
    "savefig.dpi": 150,
    "savefig.bbox": "tight",
    "xtick.direction": "in",
    "ytick.direction": "in",
    "xtick.top": True,
    "ytick.right": True,
    "legend.frameon": False,
}


@contextmanager
def mpl_style():
    import matplotlib as mpl

    with mpl.rc_context(STYLE):
        yield


def _pyplot():
    import matplotlib

    matplotlib.use("Agg", force=True)
    import matplotlib.pyplot as plt

    return plt


def plot_photometry(
    pairs: Sequence[SamplePair],
    fits: Sequence[LinearFit],
    out_png: str | Path,
    title: str = "Photometry",
) -> Path:
    """Reference vs. target sample values with the fitted line, per channel."""
    plt = _pyplot()
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)
    n = len(fits)
    with mpl_style():
        fig, axes = plt.subplots(1, n, figsize=(4.2 * n, 3.8), squeeze=False)
        for ax, fit in zip(axes[0], fits):
            cols = sample_columns(pairs, fit.channel)
            used = np.zeros(len(pairs), dtype=bool)
            used[list(fit.used)] = True
            ax.scatter(cols["target"][used], cols["reference"][used], s=10, label="used")
            if (~used).any():
                ax.scatter(cols["target"][~used], cols["reference"][~used], s=14, marker="x", label="rejected")
            if fit.valid and cols["target"].size:
                xx = np.linspace(float(np.min(cols["target"])), float(np.max(cols["target"])), 50)
                ax.plot(xx, fit.apply(xx), lw=1.2, label="fit")
            ax.set_title(f"{title} c{fit.channel}: s={fit.scale:.4g} o={fit.offset:.4g}")
            ax.set_xlabel("target")
            ax.set_ylabel("reference")
            ax.legend(loc="best")
        fig.savefig(out_png)
        plt.close(fig)
    return out_png


def plot_gradient(
    pairs: Sequence[SamplePair],
    fits: Sequence[LinearFit],
    gradients: Sequence[GradientModel],
    length: int,
    out_png: str | Path,
    box: Box | None = None,
) -> Path:
    """Residuals along the join with the gradient curve across the full tile."""
    plt = _pyplot()
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)
    with mpl_style():
        fig, ax = plt.subplots(figsize=(9.0, 4.2))
        coord = np.arange(int(length), dtype=np.float64)
        for fit, g in zip(fits, gradients):
            pts = residual_points(pairs, fit, fit.channel)
            jc = pts["x"] if g.orientation == "horizontal" else pts["y"]
            ax.scatter(jc, pts["residual"], s=6, alpha=0.5)
            if g.primary is not None:
                ax.plot(coord, g.primary.evaluate(coord), lw=1.4, label=f"channel {fit.channel}")
        if box is not None:
            lo, hi = (box.x0, box.x1) if gradients[0].orientation == "horizontal" else (box.y0, box.y1)
            ax.axvspan(lo, hi, alpha=0.08)
        ax.axhline(0.0, lw=0.8)
        ax.set_xlabel("position along join [px]")
        ax.set_ylabel("reference - corrected target")
        ax.legend(loc="best")
        fig.savefig(out_png)
        plt.close(fig)
    return out_png
