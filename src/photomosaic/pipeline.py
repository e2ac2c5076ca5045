"""End-to-end mosaic pipeline: samples -> fit -> gradient -> composite.

The pipeline object holds configuration and a :class:`ResultCache`, nothing
else, so callers may run it one channel at a time (checking for
cancellation in between) or all at once with :meth:`MosaicPipeline.run`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import numpy as np

from photomosaic.cache import ResultCache, array_identity, make_fingerprint
from photomosaic.compositor import BlendMode, composite, seam_ramp
from photomosaic.errors import InsufficientDataError, MosaicError
from photomosaic.geometry import as_channels, coverage, overlap_mask
from photomosaic.gradient import GradientModel, model_channel_gradient
from photomosaic.linear_fit import offset_only_fit, robust_linear_fit
from photomosaic.log import timer
from photomosaic.metadata import diagnostic_tags
from photomosaic.model import ChannelDiagnostics, LinearFit, MosaicResult, sample_columns
from photomosaic.sample_grid import SampleGrid, build_sample_pairs
from photomosaic.schema import MosaicConfig, parse_config
from photomosaic.stars import Star, as_stars, photometric_scale


log = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]

# Fit failures that mean the target is (numerically) flat, so only an offset is defined.
_NO_VARIANCE = ("zero_variance", "singular")


@dataclass(frozen=True, eq=False)
class Tiles:
    """Validated pipeline inputs plus their identity for cache keys."""

    reference: np.ndarray
    target: np.ndarray
    overlap: np.ndarray
    stars: tuple[Star, ...] = ()
    reference_stars: tuple[Star, ...] = ()
    target_stars: tuple[Star, ...] = ()
    reject_mask: np.ndarray | None = None
    identity: str = ""
    squeeze: bool = False

    @property
    def n_channels(self) -> int:
        return int(self.target.shape[2])

    @property
    def shape(self) -> tuple[int, int]:
        return int(self.target.shape[0]), int(self.target.shape[1])


def _star_key(stars: Sequence[Star]) -> list[Any]:
    return [[s.x, s.y, s.flux, s.size, s.peak] for s in stars]


class MosaicPipeline:
    def __init__(
        self,
        config: MosaicConfig | Mapping[str, Any] | None = None,
        *,
        cache: ResultCache | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        self.config = parse_config(config if isinstance(config, MosaicConfig) else dict(config or {}))
        self.cache = cache if cache is not None else ResultCache(self.config.cache.capacity)
        self.progress = progress

    # ------------------------------------------------------------------ inputs

    def prepare(
        self,
        reference: np.ndarray,
        target: np.ndarray,
        overlap: np.ndarray | None = None,
        *,
        stars=None,
        reference_stars=None,
        target_stars=None,
        reject_mask: np.ndarray | None = None,
    ) -> Tiles:
        """Normalise arrays to (H, W, C) and fingerprint them once."""
        ref = as_channels(reference)
        tgt = as_channels(target)
        if ref.shape != tgt.shape:
            raise ValueError(f"reference {ref.shape} and target {tgt.shape} differ in shape")
        ov = overlap_mask(ref, tgt) if overlap is None else np.asarray(overlap, dtype=bool)
        if ov.shape != ref.shape[:2]:
            raise ValueError(f"overlap mask {ov.shape} does not match tiles {ref.shape[:2]}")
        rs = tuple(as_stars(reference_stars))
        ts = tuple(as_stars(target_stars))
        st = tuple(as_stars(stars)) if stars is not None else rs + ts
        identity = make_fingerprint(
            "tiles",
            reference=array_identity(ref),
            target=array_identity(tgt),
            overlap=array_identity(ov),
            reject_mask=array_identity(reject_mask),
            stars=_star_key(st),
            reference_stars=_star_key(rs),
            target_stars=_star_key(ts),
        )
        return Tiles(
            reference=ref,
            target=tgt,
            overlap=ov,
            stars=st,
            reference_stars=rs,
            target_stars=ts,
            reject_mask=reject_mask,
            identity=identity,
            squeeze=np.asarray(target).ndim == 2,
        )

    # ------------------------------------------------------------------ stages

    def _samples_params(self, tiles: Tiles) -> dict[str, Any]:
        cfg = self.config
        return {
            "tiles": tiles.identity,
            "samples": cfg.samples,
            "stars": cfg.stars if cfg.stars.enabled else None,
            "orientation": cfg.gradient.orientation,
        }

    def _fit_params(self, tiles: Tiles, channel: int) -> dict[str, Any]:
        return {
            "samples": self._samples_params(tiles),
            "fit": self.config.fit,
            "photometry": self.config.stars if self.config.fit.scale_source == "stars" else None,
            "channel": int(channel),
        }

    def build_samples(self, tiles: Tiles) -> SampleGrid:
        s = self.config.samples
        st = self.config.stars

        def compute() -> SampleGrid:
            with timer("sample grid", log, logging.DEBUG):
                return build_sample_pairs(
                    tiles.reference,
                    tiles.target,
                    tiles.overlap,
                    grid_size=s.grid_size,
                    statistic=s.statistic,
                    clip_sigma=s.clip_sigma,
                    clip_maxiters=s.clip_maxiters,
                    min_cell_pixels=s.min_cell_pixels,
                    saturation_level=s.saturation_level,
                    zero_is_no_data=s.zero_is_no_data,
                    reject_mask=tiles.reject_mask,
                    stars=tiles.stars if st.enabled else None,
                    star_radius=st.star_radius,
                    star_radius_scale=st.star_radius_scale,
                    star_limit_percent=st.star_limit_percent,
                    max_samples=s.max_samples,
                    orientation=self.config.gradient.orientation,
                )

        key = make_fingerprint("samples", **self._samples_params(tiles))
        return self.cache.get_or_compute(key, compute)

    def fit_channel(self, tiles: Tiles, channel: int) -> LinearFit:
        """Scale/offset for one channel, with the offset-only fallback."""
        f = self.config.fit
        st = self.config.stars

        def compute() -> LinearFit:
            grid = self.build_samples(tiles)
            cols = sample_columns(grid.pairs, channel)
            common = dict(
                weights=cols["weight"],
                channel=channel,
                rejection_sigma=f.rejection_sigma,
                max_iterations=f.max_iterations,
            )
            if f.scale_source == "stars":
                if not (tiles.reference_stars and tiles.target_stars):
                    raise InsufficientDataError(
                        "star photometry needs reference and target star lists",
                        code="NO_PHOTOMETRY_STARS",
                        stage="fit",
                        channel=channel,
                    )
                scale, pairs = photometric_scale(
                    tiles.reference_stars,
                    tiles.target_stars,
                    channel=channel,
                    search_radius=st.search_radius,
                    flux_tolerance=st.flux_tolerance,
                    limit_percent=st.photometry_limit_percent,
                    peak_limit=st.peak_limit,
                    outlier_removal=st.outlier_removal,
                )
                log.info("channel %d: photometric scale %.6g from %d stars", channel, scale, len(pairs))
                return offset_only_fit(
                    cols["reference"], cols["target"], scale=scale, scale_source="stars", **common
                )

            fit = robust_linear_fit(
                cols["reference"], cols["target"], min_samples=f.min_fit_samples, **common
            )
            if not fit.valid and fit.reason in _NO_VARIANCE and f.offset_only_fallback:
                log.warning(
                    "channel %d: target samples have no usable variance (%s); using offset-only correction",
                    channel, fit.reason,
                )
                fit = offset_only_fit(cols["reference"], cols["target"], **common)
            return fit

        key = make_fingerprint("fit", **self._fit_params(tiles, channel))
        return self.cache.get_or_compute(key, compute)

    def model_gradient(self, tiles: Tiles, channel: int) -> GradientModel:
        g = self.config.gradient

        def compute() -> GradientModel:
            grid = self.build_samples(tiles)
            fit = self.fit_channel(tiles, channel)
            return model_channel_gradient(
                grid.pairs,
                fit,
                orientation=grid.orientation,
                channel=channel,
                enabled=g.enabled,
                axes=g.axes,
                smoothing_columns=g.smoothing_columns,
                line_smoothing=g.line_smoothing,
            )

        key = make_fingerprint("gradient", fit=self._fit_params(tiles, channel), gradient=g)
        return self.cache.get_or_compute(key, compute)

    def correct_channel(self, tiles: Tiles, channel: int) -> ChannelDiagnostics:
        """Samples, fit and gradient for one channel (each cached)."""
        n = tiles.n_channels
        stage = "samples"
        try:
            self._report("samples", channel, n)
            grid = self.build_samples(tiles)
            stage = "fit"
            self._report("fit", channel, n)
            fit = self.fit_channel(tiles, channel)
            stage = "gradient"
            self._report("gradient", channel, n)
            gradient = self.model_gradient(tiles, channel)
        except MosaicError as e:
            if e.channel is None:
                e.channel = channel
            if e.stage is None:
                e.stage = stage
            log.error("channel %d failed in %s: %s", channel, stage, e)
            raise
        return ChannelDiagnostics(
            channel=channel,
            fit=fit,
            gradient=gradient,
            n_samples=len(grid.pairs),
            n_rejected_cells=grid.n_star_cells + grid.n_sparse_cells,
        )

    def _report(self, stage: str, channel: int, n_channels: int) -> None:
        if self.progress is not None:
            self.progress(stage, channel, n_channels)

    # ------------------------------------------------------------------ run

    def composite(self, tiles: Tiles, channels: Sequence[ChannelDiagnostics]) -> np.ndarray:
        b = self.config.blend
        self._report("composite", -1, tiles.n_channels)
        with timer("composite", log, logging.DEBUG):
            return composite(
                tiles.reference,
                tiles.target,
                [d.fit for d in channels],
                [d.gradient for d in channels],
                overlap=tiles.overlap,
                mode=b.mode,
                dither_probability=b.dither_probability,
                random_seed=b.random_seed,
                taper_length=b.taper_length,
                create_mosaic=b.create_mosaic,
            )

    def run(
        self,
        reference: np.ndarray,
        target: np.ndarray,
        overlap: np.ndarray | None = None,
        *,
        stars=None,
        reference_stars=None,
        target_stars=None,
        reject_mask: np.ndarray | None = None,
        reference_header: Mapping[str, Any] | None = None,
        target_header: Mapping[str, Any] | None = None,
    ) -> MosaicResult:
        """Correct ``target`` onto ``reference`` and merge them."""

        tiles = self.prepare(
            reference,
            target,
            overlap,
            stars=stars,
            reference_stars=reference_stars,
            target_stars=target_stars,
            reject_mask=reject_mask,
        )
        with timer("photometric mosaic", log):
            channels = tuple(self.correct_channel(tiles, c) for c in range(tiles.n_channels))
            image = self.composite(tiles, channels)

        for d in channels:
            log.info(
                "channel %d: scale=%.6g offset=%.6g rms=%.3g (%d samples, %d rejected)%s",
                d.channel, d.fit.scale, d.fit.offset, d.fit.error,
                d.fit.n_used, len(d.fit.rejected),
                " [offset only]" if d.fit.offset_only else "",
            )
        grid = self.build_samples(tiles)
        tags = diagnostic_tags(reference_header, target_header)
        tags["orientation"] = grid.orientation
        tags["overlap_box"] = list(grid.box.as_tuple())
        tags["seam"] = seam_ramp(
            coverage(tiles.reference), coverage(tiles.target), grid.box, grid.orientation
        ).to_dict()
        tags["cache"] = self.cache.stats()
        return MosaicResult(
            image=image[:, :, 0] if tiles.squeeze else image,
            blend_mode=BlendMode(self.config.blend.mode).value,
            created_mosaic=self.config.blend.create_mosaic,
            channels=channels,
            tags=tags,
        )


def run_mosaic(
    reference: np.ndarray,
    target: np.ndarray,
    overlap: np.ndarray | None = None,
    config: MosaicConfig | Mapping[str, Any] | None = None,
    **kw: Any,
) -> MosaicResult:
    """One-shot convenience wrapper around :class:`MosaicPipeline`."""
    return MosaicPipeline(config).run(reference, target, overlap, **kw)
