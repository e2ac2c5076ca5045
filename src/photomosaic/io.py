"""FITS tile I/O and small atomic JSON writes used by the command line."""

from __future__ import annotations

import dataclasses
import json
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np
from astropy.io import fits


def _json_default(o: Any) -> Any:
    if dataclasses.is_dataclass(o):
        return dataclasses.asdict(o)
    if isinstance(o, Path):
        return str(o)
    if isinstance(o, Enum):
        return o.value
    if isinstance(o, np.generic):
        return o.item()
    if isinstance(o, np.ndarray):
        return o.tolist()
    raise TypeError(f"not JSON serialisable: {type(o).__name__}")


def atomic_write_json(path: str | Path, obj: Any, *, indent: int = 2) -> Path:
    """Write JSON via a temp file in the same directory + ``os.replace``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(obj, indent=indent, ensure_ascii=False, default=_json_default)
    fd, tmp = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(str(tmp_path), str(path))
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)
    return path


def _first_image_hdu(hdul: fits.HDUList):
    for h in hdul:
        data = getattr(h, "data", None)
        if data is not None and np.ndim(data) >= 2:
            return h
    raise ValueError("No image-like HDU found")


def read_tile(path: str | Path) -> tuple[np.ndarray, fits.Header]:
    """Read the first image HDU as float64 (H, W) or (H, W, C), plus its header.

    FITS stores colour cubes channel-first (NAXIS3 = C); they are moved to
    channel-last here.
    """
    with fits.open(Path(path), memmap=False) as hdul:
        h = _first_image_hdu(hdul)
        data = np.asarray(h.data, dtype=np.float64)
        hdr = h.header.copy()
    if data.ndim == 3:
        data = np.moveaxis(data, 0, -1)
    elif data.ndim != 2:
        raise ValueError(f"{path}: expected a 2-D image or 3-D colour cube, got {data.ndim}-D")
    return data, hdr


def write_tile(
    path: str | Path,
    data: np.ndarray,
    header: fits.Header | None = None,
    *,
    overwrite: bool = False,
) -> Path:
    """Write (H, W) or (H, W, C) data as float32 to a single-HDU FITS file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    a = np.asarray(data, dtype=np.float32)
    if a.ndim == 3:
        a = np.moveaxis(a, -1, 0)
    fits.PrimaryHDU(data=a, header=header).writeto(path, overwrite=overwrite)
    return path
