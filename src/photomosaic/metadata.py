"""Header lookup for diagnostics, and diagnostic cards for the output.

Headers are read only to tag diagnostics (exposure time, filter, ...); no
value read here ever changes the numbers the pipeline computes. Any mapping
with ``in``/``[]`` works, ``astropy.io.fits.Header`` included.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import numpy as np
from astropy.io import fits

from photomosaic import maskbits
from photomosaic.model import MosaicResult
from photomosaic.version import as_header_cards


log = logging.getLogger(__name__)

OBSERVATION_KEYS = (
    "OBSERVER", "INSTRUME", "TELESCOP", "IMAGETYP", "FILTER",
    "XPIXSZ", "YPIXSZ", "XBINNING", "YBINNING", "EXPTIME", "GAIN",
    "DATE-OBS", "OBJECT",
)

ASTROMETRY_KEYS = (
    "OBJCTRA", "OBJCTDEC", "EQUINOX", "CTYPE1", "CTYPE2", "CRPIX1", "CRPIX2",
    "CRVAL1", "CRVAL2", "PV1_1", "PV1_2", "CD1_1", "CD1_2", "CD2_1", "CD2_2",
    "CDELT1", "CDELT2", "CROTA1", "CROTA2",
)

_EXPTIME_KEYS = ("EXPTIME", "EXPOSURE", "EXP_TIME")
_FILTER_KEYS = ("FILTER", "FILTER1", "FILTNAME")


def _parse_float(hdr: Mapping[str, Any] | None, keys: tuple[str, ...]) -> float | None:
    if hdr is None:
        return None
    for k in keys:
        if k in hdr:
            try:
                v = float(hdr[k])
                if np.isfinite(v):
                    return v
            except (TypeError, ValueError):
                continue
    return None


def _parse_str(hdr: Mapping[str, Any] | None, keys: tuple[str, ...]) -> str | None:
    if hdr is None:
        return None
    for k in keys:
        if k in hdr:
            v = str(hdr[k] or "").strip()
            if v:
                return v
    return None


def observation_tags(hdr: Mapping[str, Any] | None) -> dict[str, Any]:
    """Observation keywords present in ``hdr`` (numbers as float, rest as str)."""
    out: dict[str, Any] = {}
    if hdr is None:
        return out
    for k in OBSERVATION_KEYS:
        if k not in hdr:
            continue
        v = _parse_float(hdr, (k,))
        out[k] = v if v is not None else str(hdr[k]).strip()
    return out


def diagnostic_tags(
    reference_header: Mapping[str, Any] | None = None,
    target_header: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Tags describing the two tiles for reports.

    ``exposure_ratio`` (reference/target) is a hint for reading the fitted
    scale; ``filter_match`` is False only when both filters are known and differ.
    """

    tags: dict[str, Any] = {
        "reference": observation_tags(reference_header),
        "target": observation_tags(target_header),
    }
    t_ref = _parse_float(reference_header, _EXPTIME_KEYS)
    t_tgt = _parse_float(target_header, _EXPTIME_KEYS)
    if t_ref and t_tgt:
        tags["exposure_ratio"] = t_ref / t_tgt
    f_ref = _parse_str(reference_header, _FILTER_KEYS)
    f_tgt = _parse_str(target_header, _FILTER_KEYS)
    if f_ref is not None and f_tgt is not None:
        tags["filter_match"] = f_ref.upper() == f_tgt.upper()
        if not tags["filter_match"]:
            log.warning("reference filter %r differs from target filter %r", f_ref, f_tgt)
    return tags


def result_header_cards(result: MosaicResult, prefix: str = "PMOS") -> list[tuple[str, Any, str]]:
    """(key, value, comment) cards summarising a :class:`MosaicResult`."""

    cards: list[tuple[str, Any, str]] = [
        (f"{prefix}_BLD", result.blend_mode, "overlap blend mode"),
        (f"{prefix}_MOS", bool(result.created_mosaic), "reference merged into output"),
        (f"{prefix}_NCH", len(result.channels), "number of channels"),
    ]
    for d in result.channels:
        c = d.channel
        f = d.fit
        cards.extend(
            [
                (f"{prefix}_S{c}", float(f.scale), f"channel {c} scale"),
                (f"{prefix}_O{c}", float(f.offset), f"channel {c} offset"),
                (f"{prefix}_E{c}", float(f.error), f"channel {c} fit rms"),
                (f"{prefix}_N{c}", int(f.n_used), f"channel {c} samples used"),
            ]
        )
        if d.gradient is not None:
            cards.append((f"{prefix}_G{c}", d.gradient.axes, f"channel {c} gradient axes"))
    for k, v in as_header_cards(prefix).items():
        cards.append((k, v, "software provenance"))
    for k, v in maskbits.header_cards(prefix).items():
        cards.append((k, v, "sample rejection bit"))
    return cards


def build_output_header(
    result: MosaicResult,
    source: fits.Header | None = None,
    prefix: str = "PMOS",
) -> fits.Header:
    """Output header: astrometry/observation keywords from ``source`` plus diagnostics."""

    hdr = fits.Header()
    if source is not None:
        for k in ASTROMETRY_KEYS + OBSERVATION_KEYS:
            if k in source:
                hdr[k] = (source[k], source.comments[k])
    for key, value, comment in result_header_cards(result, prefix):
        # Keys longer than 8 characters need HIERARCH.
        hdr[key if len(key) <= 8 else f"HIERARCH {key}"] = (value, comment)
    return hdr
