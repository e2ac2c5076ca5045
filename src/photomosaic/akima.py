"""Akima piecewise-cubic interpolation.

Each sub-interval's cubic takes its end tangents from a weighted average of
the neighbouring chordal slopes. Compared with a natural cubic spline this
does not ring around sharp local changes, and where the slope changes
abruptly (a "corner") the left and right tangents are allowed to differ.

Beyond the first/last knot the boundary sub-interval's cubic is used as is,
so a trend seen in the overlap continues smoothly across the rest of the tile.

Reference: H. Akima, "A new method of interpolation and smooth curve fitting
based on local procedures", J. ACM 17 (1970).
"""

from __future__ import annotations

from typing import Any

import numpy as np

from photomosaic.errors import DegenerateIntervalError, InsufficientDataError


MIN_POINTS = 5


def _negligible(v: float) -> bool:
    # True when v vanishes next to 1.0 in double precision.
    return 1.0 + v == 1.0


class AkimaCurve:
    """Interpolating curve through strictly increasing knots ``x``.

    Raises
    ------
    InsufficientDataError
        fewer than five knots.
    DegenerateIntervalError
        knots not strictly increasing, non-finite, or a span too small to
        divide by.
    """

    def __init__(self, x, y, *, stage: str = "gradient", channel: int | None = None):
        xa = np.asarray(x, dtype=np.float64).reshape(-1)
        ya = np.asarray(y, dtype=np.float64).reshape(-1)
        if xa.shape != ya.shape:
            raise ValueError(f"x and y differ in length: {xa.size} vs {ya.size}")
        n = int(xa.size)
        if n < MIN_POINTS:
            raise InsufficientDataError(
                f"Akima interpolation needs at least {MIN_POINTS} points, got {n}",
                stage=stage,
                channel=channel,
            )
        if not (np.all(np.isfinite(xa)) and np.all(np.isfinite(ya))):
            raise DegenerateIntervalError(
                "knot positions and values must be finite",
                code="NON_FINITE",
                stage=stage,
                channel=channel,
            )

        self.x = xa.copy()
        self.y = ya.copy()
        self.x.flags.writeable = False
        self.y.flags.writeable = False

        N = n - 1
        h = np.diff(xa)
        m = np.empty(N + 4, dtype=np.float64)
        for i in range(N):
            if h[i] <= 0.0:
                raise DegenerateIntervalError(
                    f"knots must be strictly increasing (x[{i}]={xa[i]!r}, x[{i + 1}]={xa[i + 1]!r})",
                    stage=stage,
                    channel=channel,
                )
            if _negligible(h[i] * h[i]):
                raise DegenerateIntervalError(
                    f"sub-interval {i} is too narrow ({h[i]!r})",
                    code="EMPTY_SUBINTERVAL",
                    stage=stage,
                    channel=channel,
                )
            m[i + 2] = (ya[i + 1] - ya[i]) / h[i]

        # Two extra chordal slopes at each end, extrapolated linearly.
        m[1] = 2.0 * m[2] - m[3]
        m[0] = 3.0 * m[2] - 2.0 * m[3]
        m[N + 2] = 2.0 * m[N + 1] - m[N]
        m[N + 3] = 3.0 * m[N + 1] - 2.0 * m[N]

        # tl[i]: tangent arriving at knot i, b[i]: tangent leaving it.
        tl = np.empty(n, dtype=np.float64)
        b = np.empty(N, dtype=np.float64)
        for i in range(n):
            f = abs(m[i + 1] - m[i])
            e = abs(m[i + 3] - m[i + 2]) + f
            if not _negligible(e):
                tl[i] = m[i + 1] + f * (m[i + 2] - m[i + 1]) / e
                if i < N:
                    b[i] = tl[i]
            else:
                # Corner: keep the adjacent chords as one-sided tangents.
                tl[i] = m[i + 1]
                if i < N:
                    b[i] = m[i + 2]

        chord = m[2 : N + 2]
        self.b = b
        self.c = (3.0 * chord - 2.0 * b - tl[1:]) / h
        self.d = (b + tl[1:] - 2.0 * chord) / (h * h)
        for arr in (self.b, self.c, self.d):
            arr.flags.writeable = False

    def __len__(self) -> int:
        return int(self.x.size)

    def _interval(self, xq: np.ndarray) -> np.ndarray:
        i0 = np.searchsorted(self.x, xq, side="right") - 1
        return np.clip(i0, 0, self.x.size - 2)

    def evaluate(self, xq):
        """Curve value at ``xq`` (scalar or array)."""
        q = np.asarray(xq, dtype=np.float64)
        i0 = self._interval(q)
        dx = q - self.x[i0]
        out = self.y[i0] + dx * (self.b[i0] + dx * (self.c[i0] + dx * self.d[i0]))
        if np.ndim(xq) == 0:
            return float(out)
        return out

    __call__ = evaluate

    def polynomial(self, interval: int) -> np.ndarray:
        """Coefficients (a, b, c, d) of ``a + b t + c t^2 + d t^3`` with t = x - x[i]."""
        i = int(interval)
        return np.array([self.y[i], self.b[i], self.c[i], self.d[i]], dtype=np.float64)

    def coefficients(self) -> dict[str, Any]:
        """Serialisable knots and per-interval coefficients."""
        return {
            "x": self.x.tolist(),
            "y": self.y.tolist(),
            "a": self.y[:-1].tolist(),
            "b": self.b.tolist(),
            "c": self.c.tolist(),
            "d": self.d.tolist(),
        }
