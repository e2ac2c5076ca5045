"""Pydantic schema for the mosaic configuration (YAML or dict).

Notes
-----
- Extra keys are allowed by the models (forward compatibility) but
  :func:`find_unknown_keys` reports them, so typos surface as errors in
  :func:`schema_validate`.
- :func:`parse_config` is the strict entry point used by the pipeline: any
  problem becomes :class:`~photomosaic.errors.InvalidConfigurationError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from photomosaic.compositor import BlendMode
from photomosaic.errors import InvalidConfigurationError


# ---------------------------- report objects ----------------------------


@dataclass(frozen=True)
class SchemaIssue:
    code: str
    message: str
    hint: str = ""


@dataclass(frozen=True)
class SchemaReport:
    ok: bool
    errors: List[SchemaIssue]
    warnings: List[SchemaIssue]


# ------------------------------ pydantic ------------------------------


class SamplesBlock(BaseModel):
    """Sample grid over the overlap."""

    model_config = ConfigDict(extra="allow")

    grid_size: int = Field(20, gt=0)
    statistic: Literal["median", "sigma_clipped_mean"] = "median"
    clip_sigma: float = Field(3.0, gt=0)
    clip_maxiters: int = Field(5, ge=0)
    min_cell_pixels: int = Field(16, ge=1)
    # None disables the saturation test
    saturation_level: Optional[float] = Field(None, gt=0)
    zero_is_no_data: bool = True
    # merge cells when there are more samples than this
    max_samples: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def _cell_can_hold_minimum(self) -> "SamplesBlock":
        if self.min_cell_pixels > self.grid_size * self.grid_size:
            raise ValueError(
                f"min_cell_pixels={self.min_cell_pixels} can never be met by "
                f"{self.grid_size}x{self.grid_size} cells"
            )
        return self


class StarsBlock(BaseModel):
    model_config = ConfigDict(extra="allow")

    enabled: bool = True
    star_radius: float = Field(4.0, gt=0)
    star_radius_scale: float = Field(1.0, gt=0)
    star_limit_percent: float = Field(100.0, ge=0, le=100)

    # photometry (scale_source="stars")
    search_radius: float = Field(2.5, gt=0)
    flux_tolerance: float = Field(1.25, gt=1)
    photometry_limit_percent: float = Field(100.0, gt=0, le=100)
    peak_limit: Optional[float] = Field(None, gt=0)
    outlier_removal: int = Field(0, ge=0)


class FitBlock(BaseModel):
    model_config = ConfigDict(extra="allow")

    rejection_sigma: float = Field(3.0, gt=0)
    max_iterations: int = Field(10, ge=0)
    min_fit_samples: int = Field(3, ge=3)
    offset_only_fallback: bool = True
    scale_source: Literal["samples", "stars"] = "samples"


class GradientBlock(BaseModel):
    model_config = ConfigDict(extra="allow")

    enabled: bool = True
    axes: Literal["join", "both"] = "join"
    orientation: Literal["auto", "horizontal", "vertical"] = "auto"
    smoothing_columns: int = Field(1, ge=1)
    line_smoothing: bool = False


class BlendBlock(BaseModel):
    model_config = ConfigDict(extra="allow")

    mode: BlendMode = BlendMode.WEIGHTED_AVERAGE
    dither_probability: float = Field(0.5, gt=0, lt=1)
    random_seed: Optional[int] = 0
    taper_length: float = Field(0.0, ge=0)
    create_mosaic: bool = True


class CacheBlock(BaseModel):
    model_config = ConfigDict(extra="allow")

    capacity: int = Field(16, ge=1)


class MosaicConfig(BaseModel):
    """Top-level configuration; every block has working defaults."""

    model_config = ConfigDict(extra="allow")

    samples: SamplesBlock = Field(default_factory=SamplesBlock)
    stars: StarsBlock = Field(default_factory=StarsBlock)
    fit: FitBlock = Field(default_factory=FitBlock)
    gradient: GradientBlock = Field(default_factory=GradientBlock)
    blend: BlendBlock = Field(default_factory=BlendBlock)
    cache: CacheBlock = Field(default_factory=CacheBlock)

    # injected by load_config
    config_path: Optional[str] = None
    config_dir: Optional[str] = None


def _fields(model: type[BaseModel]) -> set[str]:
    return set(model.model_fields)


_BLOCKS: Dict[str, type[BaseModel]] = {
    "samples": SamplesBlock,
    "stars": StarsBlock,
    "fit": FitBlock,
    "gradient": GradientBlock,
    "blend": BlendBlock,
    "cache": CacheBlock,
}
_TOP_KEYS = _fields(MosaicConfig)


def find_unknown_keys(cfg: Dict[str, Any]) -> Dict[str, List[str]]:
    """Return unknown keys grouped by section ("top" for the root)."""

    unknown: Dict[str, List[str]] = {}
    top_unknown = sorted(str(k) for k in cfg.keys() if str(k) not in _TOP_KEYS)
    if top_unknown:
        unknown["top"] = top_unknown
    for sec, model in _BLOCKS.items():
        block = cfg.get(sec)
        if isinstance(block, dict):
            u = sorted(str(k) for k in block.keys() if str(k) not in _fields(model))
            if u:
                unknown[sec] = u
    return unknown


def _error_keys(e: ValidationError) -> List[str]:
    return [".".join(str(p) for p in err.get("loc", ())) for err in e.errors()]


def parse_config(cfg: Dict[str, Any] | MosaicConfig | None = None) -> MosaicConfig:
    """Validate a config mapping; unknown keys and bad values both raise."""

    if isinstance(cfg, MosaicConfig):
        return cfg
    data = dict(cfg or {})
    unknown = find_unknown_keys(data)
    if unknown:
        keys = [f"{sec}.{k}" if sec != "top" else k for sec, ks in unknown.items() for k in ks]
        raise InvalidConfigurationError(
            "unknown config keys: " + ", ".join(keys), code="UNKNOWN_KEYS", keys=keys
        )
    try:
        return MosaicConfig.model_validate(data)
    except ValidationError as e:
        keys = _error_keys(e)
        raise InvalidConfigurationError(
            f"invalid values for: {', '.join(keys)}\n{e}", keys=keys
        ) from e


def schema_validate(cfg: Dict[str, Any]) -> SchemaReport:
    """Validate config dict against the pydantic schema (non-raising)."""

    try:
        MosaicConfig.model_validate(cfg)
    except ValidationError as e:
        msg = str(e)
        if len(msg) > 2000:
            msg = msg[:2000] + "…"
        return SchemaReport(
            ok=False,
            errors=[SchemaIssue(code="SCHEMA", message=msg, hint="Check config types/ranges")],
            warnings=[],
        )
    unknown = find_unknown_keys(cfg)
    if unknown:
        items = [f"{sec}: {k}" for sec, keys in unknown.items() for k in keys]
        msg = "Unknown config keys (typos are treated as errors):\n" + "\n".join(items)
        return SchemaReport(
            ok=False,
            errors=[SchemaIssue(code="UNKNOWN_KEYS", message=msg, hint="Remove/rename unknown keys")],
            warnings=[],
        )
    return SchemaReport(ok=True, errors=[], warnings=[])
