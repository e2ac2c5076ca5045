import numpy as np
import pytest

from photomosaic.errors import InsufficientDataError, MosaicError
from photomosaic.pipeline import MosaicPipeline, run_mosaic


def _flat_pair():
    ref = np.full((32, 32), 100.0)
    tgt = np.full((32, 32), 40.0)
    return ref, tgt


def _gradient_scene(n_channels=3):
    """Two overlapping strips; the target differs by a scale and a tilt in y."""
    h, w = 60, 120
    yy, xx = np.mgrid[0:h, 0:w].astype(np.float64)
    sky = np.stack([10.0 + 0.05 * xx + 0.03 * yy + 2.0 * k for k in range(n_channels)], axis=-1)
    ref = sky.copy()
    ref[:, 70:, :] = 0.0
    tgt = (sky - 4.0 - 0.02 * yy[:, :, None]) / 2.0
    tgt[:, :50, :] = 0.0
    return sky, ref, tgt


_EXACT = {
    "samples": {"grid_size": 4, "min_cell_pixels": 16},
    "gradient": {"axes": "both"},
}


@pytest.mark.smoke
def test_uniform_tiles_use_offset_only_fallback() -> None:
    ref, tgt = _flat_pair()
    res = run_mosaic(ref, tgt, config={"samples": {"grid_size": 32}, "gradient": {"enabled": False}})
    fit = res.fit(0)
    assert fit.valid and fit.offset_only
    assert fit.scale == 1.0
    assert fit.offset == pytest.approx(60.0)
    assert res.image.shape == (32, 32)
    np.testing.assert_allclose(res.image, 100.0)
    assert res.blend_mode == "weighted_average"


def test_gradient_scene_is_matched_exactly() -> None:
    sky, ref, tgt = _gradient_scene()
    pipe = MosaicPipeline(_EXACT)
    res = pipe.run(ref, tgt)

    assert res.tags["orientation"] == "vertical"
    assert res.tags["overlap_box"] == [50, 0, 70, 60]
    for d in res.channels:
        assert d.fit.valid
        assert d.fit.scale > 0
        assert d.gradient.axes == "both"
        assert d.n_samples == 75
    np.testing.assert_allclose(res.image, sky, atol=1e-6)


def test_second_run_is_served_from_cache() -> None:
    _, ref, tgt = _gradient_scene(n_channels=1)
    pipe = MosaicPipeline(_EXACT)
    first = pipe.run(ref, tgt)
    misses = pipe.cache.misses
    second = pipe.run(ref, tgt)
    assert pipe.cache.misses == misses
    assert pipe.cache.hits > 0
    assert second.fit(0) is first.fit(0)
    np.testing.assert_array_equal(first.image, second.image)


def test_config_change_is_not_served_stale() -> None:
    _, ref, tgt = _gradient_scene(n_channels=1)
    pipe = MosaicPipeline(_EXACT)
    pipe.run(ref, tgt)
    misses = pipe.cache.misses
    pipe.config = pipe.config.model_copy(
        update={"fit": pipe.config.fit.model_copy(update={"rejection_sigma": 2.0})}
    )
    pipe.run(ref, tgt)
    assert pipe.cache.misses > misses


def test_progress_callback() -> None:
    ref, tgt = _flat_pair()
    seen = []
    pipe = MosaicPipeline(
        {"samples": {"grid_size": 32}, "gradient": {"enabled": False}},
        progress=lambda stage, c, n: seen.append((stage, c, n)),
    )
    pipe.run(ref, tgt)
    assert seen == [("samples", 0, 1), ("fit", 0, 1), ("gradient", 0, 1), ("composite", -1, 1)]


def test_star_scale_without_star_lists() -> None:
    ref, tgt = _flat_pair()
    cfg = {"samples": {"grid_size": 32}, "fit": {"scale_source": "stars"}}
    with pytest.raises(InsufficientDataError) as e:
        run_mosaic(ref, tgt, config=cfg)
    assert e.value.stage == "fit"
    assert e.value.channel == 0
    assert e.value.code == "NO_PHOTOMETRY_STARS"


def test_gradient_needs_enough_positions() -> None:
    ref, tgt = _flat_pair()
    with pytest.raises(MosaicError) as e:
        run_mosaic(ref, tgt, config={"samples": {"grid_size": 32}})
    assert e.value.stage == "gradient"
    assert e.value.code == "INSUFFICIENT_DATA"


def test_disjoint_tiles() -> None:
    ref = np.zeros((20, 20))
    tgt = np.zeros((20, 20))
    ref[:, :8] = 5.0
    tgt[:, 12:] = 5.0
    with pytest.raises(InsufficientDataError) as e:
        run_mosaic(ref, tgt)
    assert e.value.stage == "samples"


def test_header_tags_are_passed_through() -> None:
    ref, tgt = _flat_pair()
    res = run_mosaic(
        ref,
        tgt,
        config={"samples": {"grid_size": 32}, "gradient": {"enabled": False}},
        reference_header={"EXPTIME": 300.0, "FILTER": "Ha"},
        target_header={"EXPTIME": 150.0, "FILTER": "ha"},
    )
    assert res.tags["exposure_ratio"] == pytest.approx(2.0)
    assert res.tags["filter_match"] is True
    assert res.tags["cache"]["misses"] >= 3


def test_numerically_flat_target_uses_offset_only() -> None:
    ref = np.full((64, 64), 100.0)
    tgt = np.full((64, 64), 40.0)
    tgt[:32, :32] = 40.0 * (1.0 + 1e-15)
    res = run_mosaic(ref, tgt, config={"samples": {"grid_size": 32}, "gradient": {"enabled": False}})
    fit = res.fit(0)
    assert fit.valid and fit.offset_only
    assert fit.offset == pytest.approx(60.0)
    np.testing.assert_allclose(res.image, 100.0)
