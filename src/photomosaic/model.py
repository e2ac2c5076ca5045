"""Data model passed between the pipeline stages.

All records are frozen: a stage never edits what an earlier stage produced.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

import numpy as np

from photomosaic.errors import DegenerateFitError, InsufficientDataError

if TYPE_CHECKING:  # pragma: no cover
    from photomosaic.gradient import GradientModel


@dataclass(frozen=True, eq=False)
class SamplePair:
    """One grid cell reduced to a (reference, target) value per channel."""

    x0: int
    y0: int
    x1: int
    y1: int
    x: float
    y: float
    reference: np.ndarray
    target: np.ndarray
    count: np.ndarray
    weight: int = 1
    valid: bool = True

    @property
    def n_channels(self) -> int:
        return int(self.reference.shape[0])


def sample_columns(pairs: Sequence[SamplePair], channel: int) -> dict[str, np.ndarray]:
    """Column view of one channel: x, y, reference, target, weight."""
    n = len(pairs)
    out = {
        "x": np.empty(n, dtype=np.float64),
        "y": np.empty(n, dtype=np.float64),
        "reference": np.empty(n, dtype=np.float64),
        "target": np.empty(n, dtype=np.float64),
        "weight": np.empty(n, dtype=np.float64),
    }
    for i, p in enumerate(pairs):
        out["x"][i] = p.x
        out["y"][i] = p.y
        out["reference"][i] = p.reference[channel]
        out["target"][i] = p.target[channel]
        out["weight"][i] = p.weight
    return out


@dataclass(frozen=True)
class LinearFit:
    """``reference ~ scale * target + offset`` for one channel.

    ``valid`` is False (with a ``reason``) whenever the numbers could not be
    trusted; scale and offset are then only placeholders and must not be used.
    """

    channel: int
    scale: float
    offset: float
    error: float
    used: tuple[int, ...]
    rejected: tuple[int, ...] = ()
    iterations: int = 0
    valid: bool = True
    reason: str = ""
    offset_only: bool = False
    scale_source: str = "samples"

    @property
    def n_used(self) -> int:
        return len(self.used)

    def apply(self, values: np.ndarray) -> np.ndarray:
        return self.scale * np.asarray(values, dtype=np.float64) + self.offset

    def residuals(self, reference: np.ndarray, target: np.ndarray) -> np.ndarray:
        return np.asarray(reference, dtype=np.float64) - self.apply(target)

    def require_valid(self, *, stage: str = "fit") -> "LinearFit":
        if self.valid:
            return self
        if self.reason == "insufficient_samples":
            raise InsufficientDataError(
                f"only {self.n_used} usable samples", stage=stage, channel=self.channel
            )
        raise DegenerateFitError(
            f"linear fit is invalid ({self.reason or 'unknown'})",
            code=(self.reason or "degenerate").upper(),
            stage=stage,
            channel=self.channel,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "scale": float(self.scale),
            "offset": float(self.offset),
            "error": float(self.error),
            "n_used": self.n_used,
            "rejected": list(self.rejected),
            "iterations": self.iterations,
            "valid": self.valid,
            "reason": self.reason,
            "offset_only": self.offset_only,
            "scale_source": self.scale_source,
        }


@dataclass(frozen=True)
class ChannelDiagnostics:
    channel: int
    fit: LinearFit
    gradient: "GradientModel | None"
    n_samples: int
    n_rejected_cells: int = 0

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "channel": self.channel,
            "n_samples": self.n_samples,
            "n_rejected_cells": self.n_rejected_cells,
            "fit": self.fit.to_dict(),
        }
        d["gradient"] = self.gradient.summary() if self.gradient is not None else None
        return d


@dataclass(frozen=True, eq=False)
class MosaicResult:
    """Output pixels plus what produced them."""

    image: np.ndarray
    blend_mode: str
    created_mosaic: bool
    channels: tuple[ChannelDiagnostics, ...]
    tags: dict[str, Any] = field(default_factory=dict)

    def fit(self, channel: int) -> LinearFit:
        return self.channels[channel].fit

    def diagnostics(self) -> dict[str, Any]:
        return {
            "blend_mode": self.blend_mode,
            "created_mosaic": self.created_mosaic,
            "tags": dict(self.tags),
            "channels": [c.to_dict() for c in self.channels],
        }
