import numpy as np
import pytest
from astropy.io import fits

from photomosaic.metadata import build_output_header, diagnostic_tags, observation_tags
from photomosaic.pipeline import run_mosaic


def _header(**cards):
    hdr = fits.Header()
    for k, v in cards.items():
        hdr[k] = v
    return hdr


def test_observation_tags() -> None:
    hdr = _header(EXPTIME="300", FILTER="Ha ", INSTRUME="ASI2600", NAXIS=2)
    tags = observation_tags(hdr)
    assert tags == {"EXPTIME": 300.0, "FILTER": "Ha", "INSTRUME": "ASI2600"}
    assert observation_tags(None) == {}


def test_exposure_ratio_and_filter_mismatch(caplog) -> None:
    tags = diagnostic_tags(
        _header(EXPTIME=600.0, FILTER="OIII"),
        _header(EXPOSURE=200.0, FILTER="Ha"),
    )
    assert tags["exposure_ratio"] == pytest.approx(3.0)
    assert tags["filter_match"] is False
    assert "differs" in caplog.text


def test_missing_values_leave_tags_out() -> None:
    tags = diagnostic_tags(_header(EXPTIME=0.0), _header(FILTER="L"))
    assert "exposure_ratio" not in tags
    assert "filter_match" not in tags


def test_output_header() -> None:
    ref = np.full((32, 32), 100.0)
    tgt = np.full((32, 32), 40.0)
    res = run_mosaic(
        ref, tgt, config={"samples": {"grid_size": 32}, "gradient": {"enabled": False}}
    )
    src = _header(CRVAL1=10.5, OBJECT="M31", BZERO=0)
    hdr = build_output_header(res, src)
    assert hdr["CRVAL1"] == 10.5
    assert hdr["OBJECT"] == "M31"
    assert "BZERO" not in hdr
    assert hdr["PMOS_BLD"] == "weighted_average"
    assert hdr["PMOS_NCH"] == 1
    assert hdr["PMOS_S0"] == 1.0
    assert hdr["PMOS_O0"] == pytest.approx(60.0)
    assert hdr["PMOS_G0"] == "none"
    assert hdr["PMOS_MB4"] == "STAR"
