#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from grid_runner import CellStatus, DirectorySource, GridAxes, GridError, ResultTensor, run_grid
from profile_reader import ProfileFormatError
from relax_config import ConfigError, RunConfig, load_config, with_overrides
from relax_core import relaxation_seconds


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=None, help="Key/value run config (SPEEDS, DEPTHS, ...)")
    parser.add_argument("--speeds", type=float, nargs="+", default=None, help="Flow speeds [m/s]")
    parser.add_argument("--depths", type=float, nargs="+", default=None, help="Water depths [m]")
    parser.add_argument("--directions", type=float, nargs="+", default=None, help="Approach directions [deg]")
    parser.add_argument("--node-count", type=int, default=None, help="Depth nodes per profile (default: 41)")
    parser.add_argument("--tol", type=float, default=None, help="Convergence tolerance (default: 0.01)")
    parser.add_argument("--time-step", type=float, default=None, help="Output time step in seconds (default: 0.5)")
    parser.add_argument(
        "--header-rows",
        type=int,
        default=None,
        help="Auxiliary rows at the start of each profile block (default: 1)",
    )
    parser.add_argument("--log-level", type=str, default="WARNING", help="Logging level (default: WARNING)")


def _resolve_config(args: argparse.Namespace) -> RunConfig:
    cfg = load_config(args.config) if args.config is not None else RunConfig()
    return with_overrides(
        cfg,
        speeds=args.speeds,
        depths=args.depths,
        directions=args.directions,
        node_count=args.node_count,
        tolerance=args.tol,
        time_step_s=args.time_step,
        header_rows=args.header_rows,
    ).validate()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def compute(data_dir: Path, cfg: RunConfig, *, max_workers: Optional[int] = None) -> ResultTensor:
    axes = GridAxes(speeds=cfg.speeds, depths=cfg.depths, directions=cfg.directions)
    return run_grid(
        axes,
        DirectorySource(data_dir),
        node_count=cfg.node_count,
        tolerance=cfg.tolerance,
        header_rows=cfg.header_rows,
        max_workers=max_workers,
    )


def _print_summary(tensor: ResultTensor, cfg: RunConfig) -> None:
    counts = tensor.status_counts()
    print(f"- cells: {len(tensor)}")
    for s in CellStatus:
        print(f"  - {s.value}: {counts[s]}")
    print()
    for d in tensor.axes.directions:
        print(f"direction {d:g} deg (rows: speed, cols: depth)")
        print("  speed\\depth " + " ".join(f"{h:>8g}" for h in tensor.axes.depths))
        for s in tensor.axes.speeds:
            cells = []
            for h in tensor.axes.depths:
                r = tensor.lookup(s, h, d)
                if r.status is CellStatus.VALUE:
                    cells.append(f"{relaxation_seconds(r.step, cfg.time_step_s):>8g}")
                elif r.status is CellStatus.NOT_CONVERGED:
                    cells.append(f"{'-':>8}")
                else:
                    cells.append(f"{r.status.value[:8]:>8}")
            print(f"  {s:>11g} " + " ".join(cells))
        print()


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(
        description="Compute velocity relaxation times over the speed x depth x direction grid."
    )
    parser.add_argument("data_dir", type=Path, help="Directory holding <dir>_<speed>_<depth>out<U|V>.txt files")
    parser.add_argument("--csv", type=Path, default=None, help="Write the result tensor as CSV")
    parser.add_argument("--workers", type=int, default=None, help="Evaluate cells on a thread pool")
    _add_config_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.log_level)

    data_dir: Path = args.data_dir
    if not data_dir.is_dir():
        print(f"ERROR: not a directory: {data_dir}", file=sys.stderr)
        return 2

    try:
        cfg = _resolve_config(args)
        tensor = compute(data_dir, cfg, max_workers=args.workers)
        if args.csv is not None:
            tensor.write_csv(args.csv)
    except (ConfigError, GridError, ProfileFormatError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    print("Velocity relaxation times (s)")
    print(f"- data_dir: {data_dir}")
    print(f"- node_count: {cfg.node_count}")
    print(f"- tolerance: {cfg.tolerance:g}")
    print(f"- time_step_s: {cfg.time_step_s:g}")
    _print_summary(tensor, cfg)
    if args.csv is not None:
        print(f"Wrote: {args.csv}")
    return 0


def _cli() -> int:
    return main(sys.argv[1:])


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(_cli())
