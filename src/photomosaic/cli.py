from __future__ import annotations

import argparse
import logging
import sys

from rich import print

from photomosaic.config import dump_config, load_config, load_config_dict
from photomosaic.errors import MosaicError
from photomosaic.log import setup_logging
from photomosaic.schema import MosaicConfig, schema_validate
from photomosaic.version import get_version_info


def _cmd_version(args) -> int:
    v = get_version_info()
    print(f"[bold]photomosaic[/bold] {v.package_version} (python {v.python}, numpy {v.numpy})")
    return 0


def _cmd_validate(args) -> int:
    cfg = load_config_dict(args.config)
    rep = schema_validate(cfg)
    if rep.ok:
        print(f"[green]OK[/green] {args.config}")
        return 0
    for issue in rep.errors:
        print(f"[red]{issue.code}[/red]: {issue.message}")
        if issue.hint:
            print(f"  [yellow]hint:[/yellow] {issue.hint}")
    return 1


def _cmd_init(args) -> int:
    path = dump_config(MosaicConfig(), args.out)
    print(f"[green]Wrote default config:[/green] {path}")
    return 0


def _cmd_run(args) -> int:
    from photomosaic.compositor import BlendMode
    from photomosaic.expressions import build_apply_plan
    from photomosaic.io import atomic_write_json, read_tile, write_tile
    from photomosaic.metadata import build_output_header
    from photomosaic.pipeline import MosaicPipeline

    log = logging.getLogger("photomosaic")
    cfg = load_config(args.config)
    if args.blend:
        cfg = cfg.model_copy(update={"blend": cfg.blend.model_copy(update={"mode": BlendMode(args.blend)})})

    ref, ref_hdr = read_tile(args.reference)
    tgt, tgt_hdr = read_tile(args.target)
    pipe = MosaicPipeline(cfg)
    tiles = pipe.prepare(ref, tgt)
    result = pipe.run(ref, tgt, tiles.overlap, reference_header=ref_hdr, target_header=tgt_hdr)

    out = write_tile(args.out, result.image, build_output_header(result, ref_hdr), overwrite=args.overwrite)
    print(f"[green]Wrote mosaic:[/green] {out}")

    if args.report:
        atomic_write_json(args.report, result.diagnostics())
        print(f"[green]Wrote diagnostics:[/green] {args.report}")
    if args.plan:
        atomic_write_json(args.plan, build_apply_plan(result))
        print(f"[green]Wrote apply plan:[/green] {args.plan}")
    if args.plot:
        from photomosaic.plots import plot_gradient

        grid = pipe.build_samples(tiles)
        length = tiles.shape[1] if grid.orientation == "horizontal" else tiles.shape[0]
        plot_gradient(
            grid.pairs,
            [d.fit for d in result.channels],
            [d.gradient for d in result.channels],
            length,
            args.plot,
            box=grid.box,
        )
        print(f"[green]Wrote gradient graph:[/green] {args.plot}")
    log.info("Done: %s", out)
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="photomosaic")
    p.add_argument(
        "--log-level",
        default=None,
        help="CRITICAL|ERROR|WARNING|INFO|DEBUG (or env PHOTOMOSAIC_LOG_LEVEL)",
    )
    p.add_argument("--log-file", default=None, help="Also write the log to this file")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("version", help="Print version and exit")

    p_val = sub.add_parser("validate", help="Check a YAML config for bad values and unknown keys")
    p_val.add_argument("config")

    p_init = sub.add_parser("init", help="Write a config file with all defaults")
    p_init.add_argument("--out", default="mosaic.yaml")

    p_run = sub.add_parser("run", help="Correct TARGET onto REFERENCE and write the mosaic")
    p_run.add_argument("--reference", required=True)
    p_run.add_argument("--target", required=True)
    p_run.add_argument("--out", required=True)
    p_run.add_argument("--config", default=None)
    p_run.add_argument(
        "--blend",
        default=None,
        choices=["reference_priority", "target_priority", "weighted_average", "random_dither"],
    )
    p_run.add_argument("--report", default=None, help="Also write per-channel diagnostics (JSON)")
    p_run.add_argument("--plan", default=None, help="Also write the apply plan (JSON)")
    p_run.add_argument("--plot", default=None, help="Also write a gradient graph (PNG)")
    p_run.add_argument("--overwrite", action="store_true")

    args = p.parse_args(argv)
    setup_logging(args.log_level, log_file=args.log_file)

    handlers = {
        "version": _cmd_version,
        "validate": _cmd_validate,
        "init": _cmd_init,
        "run": _cmd_run,
    }
    try:
        return handlers[args.cmd](args)
    except MosaicError as e:
        print(f"[red]{type(e).__name__}[/red] {e}")
        return 2
    except FileNotFoundError as e:
        print(f"[red]File not found:[/red] {e.filename}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
