import pytest

from photomosaic.errors import InsufficientDataError
from photomosaic.stars import (
    Star,
    StarPair,
    as_stars,
    brightest,
    match_stars,
    photometric_scale,
    rejection_radius,
    remove_worst_pair,
    star_cell_mask,
)


def _field(n, flux, dx=0.0):
    return [Star(20.0 * i + dx, 30.0, float(flux(i))) for i in range(1, n + 1)]


def test_as_stars_accepts_tuples() -> None:
    stars = as_stars([(1, 2, 30.0), (3, 4, [1.0, 2.0, 3.0], 16.0), Star(5, 6, 7.0)])
    assert stars[0] == Star(1.0, 2.0, 30.0)
    assert stars[1].flux == (1.0, 2.0, 3.0)
    assert stars[1].channel_flux(2) == 3.0
    assert stars[1].total_flux == 6.0
    assert stars[2].x == 5
    with pytest.raises(ValueError):
        as_stars([(1, 2)])


def test_brightest_and_radius() -> None:
    stars = [Star(0, 0, f) for f in (5.0, 1.0, 4.0, 2.0, 3.0)]
    assert [s.flux for s in brightest(stars, 40.0)] == [5.0, 4.0]
    assert len(brightest(stars)) == 5
    assert rejection_radius(Star(0, 0, 1.0, size=16.0), 10.0) == 2.0
    assert rejection_radius(Star(0, 0, 1.0), 4.0, 1.5) == 6.0


def test_star_cell_mask() -> None:
    hit = star_cell_mask(
        [Star(29.0, 25.0, 1.0)], origin=(0, 0), cell_size=10, shape=(5, 5), default_radius=4.0
    )
    assert hit[2, 2] and hit[2, 3]
    assert hit.sum() == 2

    assert not star_cell_mask(
        [], origin=(0, 0), cell_size=10, shape=(5, 5), default_radius=4.0
    ).any()


def test_match_stars_by_position() -> None:
    ref = _field(5, lambda i: 100 * i)
    tgt = _field(5, lambda i: 50 * i, dx=0.7)
    pairs = match_stars(ref, tgt, search_radius=2.5)
    assert len(pairs) == 5
    assert all(abs(p.reference.x - p.target.x) < 1 for p in pairs)


def test_photometric_scale_rejects_flux_outlier() -> None:
    ref = _field(14, lambda i: 150 * i) + [Star(400.0, 30.0, 150.0)]
    tgt = _field(14, lambda i: 100 * i, dx=0.5) + [Star(400.5, 30.0, 50.0)]
    scale, pairs = photometric_scale(ref, tgt, search_radius=2.5, flux_tolerance=1.25)
    assert len(pairs) == 14
    assert scale == pytest.approx(1.5)


def test_remove_worst_pair() -> None:
    pairs = [StarPair(Star(0, 0, 2.0 * f), Star(0, 0, f)) for f in (10.0, 20.0, 30.0)]
    pairs.append(StarPair(Star(0, 0, 100.0), Star(0, 0, 20.0)))
    kept = remove_worst_pair(pairs, 2.0)
    assert len(kept) == 3
    assert all(p.reference.flux == 2.0 * p.target.flux for p in kept)


def test_photometric_scale_without_matches() -> None:
    ref = _field(5, lambda i: 100 * i)
    tgt = _field(5, lambda i: 100 * i, dx=10.0)
    with pytest.raises(InsufficientDataError) as e:
        photometric_scale(ref, tgt, search_radius=2.5)
    assert e.value.stage == "photometry"
