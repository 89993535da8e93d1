#!/usr/bin/env python3
"""
canopysim design: room -> grow surfaces -> tuned light layout.

Defaults describe the 66' x 22' x 10' flower room with 10' x 4' tables,
4' aisles, 3' perimeter clearance and SPYDR 2p fixtures.

Exit codes: 0 converged, 2 targets unreachable, 1 geometry/layout error.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .env import EngineSettings
from .errors import CanopySimError
from .geometry import Obstacle, Room, Site
from .metrics import format_metrics
from .optimize import Targets, optimize
from .records import export_layout, write_layout_json
from .sources import Catalog
from .surfaces import LayoutConfig, generate_surfaces

logger = logging.getLogger(__name__)


def _obstacle(text: str) -> Obstacle:
    """x,y,width,depth[,buffer]"""
    parts = [float(v) for v in text.split(",")]
    if len(parts) not in (4, 5):
        raise argparse.ArgumentTypeError("obstacle must be x,y,width,depth[,buffer]")
    return Obstacle(*parts[:4], buffer=parts[4] if len(parts) == 5 else 0.0)


def parse_args(argv: Optional[List[str]] = None):
    ap = argparse.ArgumentParser(prog="canopysim", description="Horticultural lighting layout engine.")
    sub = ap.add_subparsers(dest="command", required=True)

    d = sub.add_parser("design", help="Generate surfaces and an optimized light layout.")
    d.add_argument("--length", type=float, default=66.0, help="Room length (x)")
    d.add_argument("--width", type=float, default=22.0, help="Room width (y)")
    d.add_argument("--height", type=float, default=10.0, help="Room height (z)")
    d.add_argument("--unit", choices=["ft", "m"], default="ft")
    d.add_argument("--obstacle", type=_obstacle, action="append", default=[],
                   help="x,y,width,depth[,buffer]; repeatable")

    d.add_argument("--surface-length", type=float, default=10.0)
    d.add_argument("--surface-width", type=float, default=4.0)
    d.add_argument("--aisle", type=float, default=4.0)
    d.add_argument("--clearance", type=float, default=3.0)
    d.add_argument("--obstacle-buffer", type=float, default=2.0)

    d.add_argument("--model", default="spydr-2p", help="Source model id")
    d.add_argument("--catalog", default=None, help="JSON catalog to use instead of the built-ins")
    d.add_argument("--profile", choices=["sparse", "dense"], default=None)
    d.add_argument("--canopy-height", type=float, default=None)
    d.add_argument("--resolution", type=float, default=None)
    d.add_argument("--workers", type=int, default=None)
    d.add_argument("--max-iter", type=int, default=None)

    d.add_argument("--target-ppfd", type=float, default=850.0, help="Target average; 0 tunes uniformity only")
    d.add_argument("--tol-ppfd", type=float, default=None,
                   help="Absolute tolerance on the average (default 10%% of target)")
    d.add_argument("--target-uniformity", type=float, default=0.8)
    d.add_argument("--photoperiod", type=float, default=None, help="Hours per day")

    d.add_argument("--out-json", default=None)
    d.add_argument("--plot", default=None, help="Write a heatmap PNG here")
    d.add_argument("-v", "--verbose", action="store_true")
    return ap.parse_args(argv)


def run_design(args) -> int:
    settings = EngineSettings.from_env(
        canopy_resolution=args.resolution,
        canopy_height=args.canopy_height,
        placement_profile=args.profile,
        max_iterations=args.max_iter,
        photoperiod_hours=args.photoperiod,
        solver_workers=args.workers,
    )
    catalog = Catalog.from_json(args.catalog) if args.catalog else Catalog.builtin()
    model = catalog.require(args.model)

    site = Site(Room(args.length, args.width, args.height, unit=args.unit), args.obstacle)
    surfaces = generate_surfaces(site, LayoutConfig(
        surface_length=args.surface_length,
        surface_width=args.surface_width,
        aisle_width=args.aisle,
        clearance=args.clearance,
        obstacle_buffer=args.obstacle_buffer,
    ))
    target_avg = args.target_ppfd if args.target_ppfd > 0 else None
    targets = Targets(
        average=target_avg,
        uniformity=args.target_uniformity,
        tolerance_avg=0.1 * (target_avg or 0.0) if args.tol_ppfd is None else args.tol_ppfd,
        photoperiod_hours=settings.photoperiod_hours,
    )

    print(f"Room {args.length:g}x{args.width:g}x{args.height:g} {args.unit}: "
          f"{len(surfaces)} surfaces, model {model.id}")
    result = optimize(site, surfaces, model, targets, settings, catalog)

    status = "converged" if result.converged else "UNREACHABLE"
    print(f"\n=== {status} after {result.iterations} evaluations ===")
    placed = result.layout.source_instances
    levels = [s.dimming for s in placed] or [0.0]
    print(f"sources={len(placed)} dimming={min(levels):.3f}..{max(levels):.3f}")
    print(format_metrics(result.metrics, args.unit))
    if not result.converged:
        print(f"delta: avg={result.delta['average']:+.1f} U={result.delta['uniformity']:+.3f} ({result.reason})")

    if args.out_json:
        write_layout_json(args.out_json, export_layout(result.layout, result.grid, args.unit))
        print(f"Saved {args.out_json}")
    if args.plot:
        from .heatmap import render_heatmap
        render_heatmap(result.grid, args.plot, result.layout.source_instances, surfaces, unit=args.unit)
        print(f"Saved {args.plot}")

    return 0 if result.converged else 2


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()  # .env values feed EngineSettings.from_env
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        return run_design(args)
    except CanopySimError as e:
        print(f"error: {e.message}", file=sys.stderr)
        for k, v in e.details.items():
            print(f"  {k}: {v}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
