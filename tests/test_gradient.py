import numpy as np
import pytest

from photomosaic.errors import DegenerateFitError, InsufficientDataError
from photomosaic.geometry import Box
from photomosaic.gradient import GradientModel, fit_gradient_curve, model_channel_gradient
from photomosaic.model import LinearFit, SamplePair


def _pairs(xs, ys, residual):
    out = []
    for y in ys:
        for x in xs:
            tgt = np.array([1.0])
            out.append(
                SamplePair(
                    x0=int(x) - 5, y0=int(y) - 5, x1=int(x) + 5, y1=int(y) + 5,
                    x=float(x), y=float(y),
                    reference=tgt + residual(x, y),
                    target=tgt,
                    count=np.array([100]),
                )
            )
    return out


def _identity_fit(n):
    return LinearFit(channel=0, scale=1.0, offset=0.0, error=0.0, used=tuple(range(n)))


def test_linear_gradient_extrapolates_across_tile() -> None:
    pairs = _pairs(np.arange(5, 100, 10), [5, 15], lambda x, y: 0.01 * x)
    model = model_channel_gradient(pairs, _identity_fit(len(pairs)), orientation="horizontal")

    assert model.axes == "join"
    assert model.evaluate(50.0, 0.0) == pytest.approx(0.5)
    assert model.evaluate(500.0, 0.0) == pytest.approx(5.0)
    assert model.evaluate(-100.0, 3.0) == pytest.approx(-1.0)
    assert model.mean == pytest.approx(0.5)


def test_two_axis_model_is_separable() -> None:
    pairs = _pairs(np.arange(5, 100, 10), np.arange(5, 50, 10), lambda x, y: 0.01 * x + 0.02 * y)
    model = model_channel_gradient(
        pairs, _identity_fit(len(pairs)), orientation="horizontal", axes="both"
    )
    assert model.axes == "both"
    xs = np.arange(0, 200, 7.0)[None, :]
    ys = np.arange(0, 90, 3.0)[:, None]
    assert np.allclose(model.evaluate(xs, ys), 0.01 * xs + 0.02 * ys, atol=1e-9)


def test_vertical_join_uses_rows() -> None:
    pairs = _pairs([5, 15], np.arange(5, 100, 10), lambda x, y: -0.03 * y)
    model = model_channel_gradient(pairs, _identity_fit(len(pairs)), orientation="vertical")
    assert model.evaluate(123.0, 40.0) == pytest.approx(-1.2)


def test_disabled_gradient_is_zero() -> None:
    pairs = _pairs(np.arange(5, 100, 10), [5], lambda x, y: 0.01 * x)
    model = model_channel_gradient(
        pairs, _identity_fit(len(pairs)), orientation="horizontal", enabled=False
    )
    assert model.axes == "none"
    assert np.all(model.evaluate(np.arange(10.0)[None, :], np.arange(4.0)[:, None]) == 0.0)


def test_only_accepted_samples_are_used() -> None:
    pairs = _pairs(np.arange(5, 100, 10), [5], lambda x, y: 0.01 * x)
    pairs.append(
        SamplePair(0, 0, 10, 10, 45.0, 5.0, np.array([500.0]), np.array([1.0]), np.array([100]))
    )
    fit = _identity_fit(len(pairs) - 1)
    model = model_channel_gradient(pairs, fit, orientation="horizontal")
    assert model.evaluate(45.0, 5.0) == pytest.approx(0.45)


def test_invalid_fit_is_refused() -> None:
    pairs = _pairs(np.arange(5, 100, 10), [5], lambda x, y: 0.0)
    bad = LinearFit(channel=0, scale=1.0, offset=0.0, error=0.0, used=(), valid=False, reason="singular")
    with pytest.raises(DegenerateFitError):
        model_channel_gradient(pairs, bad, orientation="horizontal")


def test_too_few_positions() -> None:
    pairs = _pairs([5, 15, 25, 35], [5, 15], lambda x, y: 0.01 * x)
    with pytest.raises(InsufficientDataError) as e:
        model_channel_gradient(pairs, _identity_fit(len(pairs)), orientation="horizontal")
    assert e.value.stage == "gradient"
    assert e.value.channel == 0


def test_moving_average_reduces_knots() -> None:
    x = np.arange(10.0)
    curve = fit_gradient_curve(x, 3.0 * x, smoothing_columns=3)
    assert len(curve) == 8
    assert curve.evaluate(20.0) == pytest.approx(60.0)


def test_line_smoothing_keeps_two_points_per_group() -> None:
    rng = np.random.default_rng(0)
    x = np.arange(20.0)
    y = 0.5 * x + rng.normal(0.0, 0.2, x.size)
    curve = fit_gradient_curve(x, y, line_smoothing=True)
    assert len(curve) == 8

    # too few points for smoothing to keep five knots: left alone
    short = fit_gradient_curve(np.arange(7.0), np.arange(7.0), line_smoothing=True)
    assert len(short) == 7


def test_taper_blends_to_mean() -> None:
    pairs = _pairs(np.arange(5, 100, 10), [5, 15], lambda x, y: 0.01 * x)
    model = model_channel_gradient(pairs, _identity_fit(len(pairs)), orientation="horizontal")
    box = Box(0, 0, 100, 20)

    inside = model.tapered(90.0, 10.0, box, taper_length=10.0)
    halfway = model.tapered(90.0, 24.0, box, taper_length=10.0)
    beyond = model.tapered(90.0, 60.0, box, taper_length=10.0)

    assert inside == pytest.approx(0.9)
    assert halfway == pytest.approx(0.5 + 0.5 * (0.9 - 0.5))
    assert beyond == pytest.approx(model.mean)


def test_zero_model_summary() -> None:
    z = GradientModel.zero(2, "vertical")
    assert z.summary()["axes"] == "none"


def test_line_smoothing_uses_whole_windows_only() -> None:
    for n, knots in ((13, 13), (15, 6), (18, 6), (23, 8)):
        x = np.arange(n) * 10.0
        curve = fit_gradient_curve(x, 0.1 * np.arange(n), line_smoothing=True)
        assert len(curve) == knots
        assert np.all(np.diff(curve.x) > 0)
        np.testing.assert_allclose(curve.evaluate(x), 0.01 * x, atol=1e-9)
