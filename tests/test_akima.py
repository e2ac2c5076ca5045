import numpy as np
import pytest

from photomosaic.akima import AkimaCurve
from photomosaic.errors import DegenerateIntervalError, InsufficientDataError


def test_colinear_points_have_no_curvature() -> None:
    x = np.arange(5, dtype=float)
    curve = AkimaCurve(x, 2.0 * x + 1.0)

    assert np.allclose(curve.c, 0.0, atol=1e-12)
    assert np.allclose(curve.d, 0.0, atol=1e-12)
    assert curve.evaluate(10.0) == pytest.approx(21.0)
    assert curve.evaluate(-3.0) == pytest.approx(-5.0)


def test_interpolates_knots() -> None:
    x = np.array([0.0, 1.0, 2.5, 4.0, 5.0, 7.0])
    y = np.sin(x)
    curve = AkimaCurve(x, y)
    assert np.allclose(curve.evaluate(x), y, atol=1e-12)


def test_extrapolation_uses_boundary_cubic() -> None:
    x = np.array([0.0, 1.0, 2.5, 4.0, 5.0, 7.0])
    curve = AkimaCurve(x, np.sin(x))

    a, b, c, d = curve.polynomial(len(x) - 2)
    t = 9.0 - x[-2]
    assert curve.evaluate(9.0) == pytest.approx(a + b * t + c * t**2 + d * t**3)

    a, b, c, d = curve.polynomial(0)
    t = -2.0 - x[0]
    assert curve.evaluate(-2.0) == pytest.approx(a + b * t + c * t**2 + d * t**3)


def test_corner_is_kept_without_overshoot() -> None:
    # |x - 2| has a slope change at x=2; both sides stay exactly linear.
    x = np.arange(7, dtype=float)
    curve = AkimaCurve(x, np.abs(x - 2.0))
    xx = np.linspace(0.0, 6.0, 61)
    assert np.allclose(curve.evaluate(xx), np.abs(xx - 2.0), atol=1e-12)


def test_vector_evaluation_keeps_shape() -> None:
    x = np.arange(6, dtype=float)
    curve = AkimaCurve(x, x**2)
    q = np.linspace(-1.0, 7.0, 12).reshape(3, 4)
    out = curve.evaluate(q)
    assert out.shape == (3, 4)
    assert isinstance(curve.evaluate(2.0), float)


def test_fewer_than_five_points() -> None:
    with pytest.raises(InsufficientDataError) as e:
        AkimaCurve([0.0, 1.0, 2.0, 3.0], [0.0, 1.0, 0.0, 1.0])
    assert e.value.code == "INSUFFICIENT_DATA"


@pytest.mark.parametrize(
    "x",
    [
        [0.0, 1.0, 1.0, 2.0, 3.0],
        [0.0, 2.0, 1.0, 3.0, 4.0],
    ],
)
def test_non_increasing_knots(x) -> None:
    with pytest.raises(DegenerateIntervalError):
        AkimaCurve(x, [0.0, 1.0, 2.0, 3.0, 4.0])


def test_underflowing_span() -> None:
    x = [0.0, 1.0, 1.0 + 1e-9, 2.0, 3.0]
    with pytest.raises(DegenerateIntervalError) as e:
        AkimaCurve(x, [0.0, 1.0, 2.0, 3.0, 4.0])
    assert e.value.code == "EMPTY_SUBINTERVAL"


def test_non_finite_knots() -> None:
    with pytest.raises(DegenerateIntervalError):
        AkimaCurve([0.0, 1.0, 2.0, 3.0, 4.0], [0.0, np.nan, 2.0, 3.0, 4.0])


def test_coefficients_are_serialisable() -> None:
    x = np.arange(6, dtype=float)
    coeffs = AkimaCurve(x, x**2).coefficients()
    assert set(coeffs) == {"x", "y", "a", "b", "c", "d"}
    assert len(coeffs["a"]) == len(coeffs["d"]) == 5
    assert all(isinstance(v, float) for v in coeffs["c"])
