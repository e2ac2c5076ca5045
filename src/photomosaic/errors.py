"""Typed errors raised by the mosaic pipeline.

Every stage validates its own preconditions and fails fast with one of these
instead of returning NaN/inf. Each error carries a short machine-readable
``code`` plus the ``stage`` and (where it applies) the ``channel`` that failed,
so a caller can tell the user which knob to turn.
"""

from __future__ import annotations

from typing import Iterable


class MosaicError(RuntimeError):
    """Base class for all pipeline errors."""

    default_code = "MOSAIC_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        stage: str | None = None,
        channel: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = str(message)
        self.code = str(code or self.default_code)
        self.stage = stage
        self.channel = None if channel is None else int(channel)

    def __str__(self) -> str:
        where = []
        if self.stage:
            where.append(self.stage)
        if self.channel is not None:
            where.append(f"channel {self.channel}")
        prefix = f"[{', '.join(where)}] " if where else ""
        return f"{prefix}{self.code}: {self.message}"


class InsufficientDataError(MosaicError):
    """Too few valid samples or knots for a stage."""

    default_code = "INSUFFICIENT_DATA"


class DegenerateFitError(MosaicError):
    """Zero-variance or near-singular linear fit."""

    default_code = "DEGENERATE_FIT"


class DegenerateIntervalError(MosaicError):
    """Duplicate or underflowing knot spacing."""

    default_code = "DEGENERATE_INTERVAL"


class InvalidConfigurationError(MosaicError, ValueError):
    """Out-of-range or malformed option value."""

    default_code = "INVALID_CONFIG"

    def __init__(self, message: str, *, keys: Iterable[str] = (), **kw) -> None:
        super().__init__(message, stage=kw.pop("stage", "config"), **kw)
        self.keys = [str(k) for k in keys]
