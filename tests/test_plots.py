import numpy as np

from photomosaic.pipeline import MosaicPipeline
from photomosaic.plots import plot_gradient, plot_photometry


def test_diagnostic_graphs(tmp_path) -> None:
    h, w = 60, 120
    yy, xx = np.mgrid[0:h, 0:w].astype(np.float64)
    sky = 10.0 + 0.05 * xx + 0.03 * yy
    ref = np.where(xx < 70, sky, 0.0)
    tgt = np.where(xx >= 50, (sky - 4.0) / 2.0, 0.0)

    pipe = MosaicPipeline({"samples": {"grid_size": 4}})
    tiles = pipe.prepare(ref, tgt)
    res = pipe.run(ref, tgt)
    grid = pipe.build_samples(tiles)
    fits = [d.fit for d in res.channels]

    a = plot_photometry(grid.pairs, fits, tmp_path / "phot.png")
    b = plot_gradient(
        grid.pairs, fits, [d.gradient for d in res.channels], h, tmp_path / "sub" / "grad.png", box=grid.box
    )
    assert a.stat().st_size > 0
    assert b.stat().st_size > 0
