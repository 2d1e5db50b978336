#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

import numpy as np

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402

# analysis/relax/py is not a Python package, so add it to sys.path explicitly.
_REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(_REPO_ROOT / "analysis" / "relax" / "py"))
from grid_runner import parse_profile_filename  # noqa: E402
from profile_reader import ProfileFormatError, ProfileReader  # noqa: E402
from relax_core import DEFAULT_NODE_COUNT, depth_axis, profile_sample_steps  # noqa: E402


class PlotError(RuntimeError):
    pass


def plot_profile_file(
    path: Path,
    *,
    depth: float,
    minutes: float,
    out_path: Path,
    node_count: int = DEFAULT_NODE_COUNT,
    header_rows: int = 0,
    output_interval_s: float = 60.0,
    title: Optional[str] = None,
) -> int:
    """Plot every ``minutes``-th profile of one file plus the final profile.

    Returns the number of profiles drawn.
    """
    try:
        series = ProfileReader(path, node_count, header_rows=header_rows).read_series()
    except ProfileFormatError as e:
        raise PlotError(str(e)) from e

    y = depth_axis(depth, node_count)
    steps = profile_sample_steps(series.step_count, minutes, output_interval_s=output_interval_s)
    colors = matplotlib.colormaps["viridis"](np.linspace(0.0, 1.0, 64))

    parsed = parse_profile_filename(path.name)
    comp = parsed[3] if parsed is not None else "?"

    fig, ax = plt.subplots(figsize=(7, 6))
    for k, i in enumerate(steps):
        label = f"{minutes:g} min intervals" if k == 0 else None
        ax.plot(series.values[i], y, color=colors[k % len(colors)], linewidth=2.0, label=label)
    ax.plot(series.final, y, color="k", linewidth=2.0, label="final")
    ax.plot(np.zeros_like(y), y, "--k", linewidth=1.5)

    ax.set_xlabel(f"{comp} Velocity (m/s)", color="b")
    ax.set_ylabel("Depth (m)", color="b")
    ax.invert_yaxis()
    ax.grid(True, which="both", alpha=0.3)
    ax.legend(loc="best")
    ax.set_title(title if title is not None else path.stem)
    fig.tight_layout()
    fig.savefig(out_path, dpi=150)
    plt.close(fig)
    return len(steps) + 1


def main(argv: Optional[list[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Plot velocity profiles of one profile file at a fixed time interval.")
    ap.add_argument("profile", type=Path, help="Profile file (e.g., 113_110_105outU.txt)")
    ap.add_argument("--depth", type=float, required=True, help="Water depth [m]")
    ap.add_argument("--minutes", type=float, default=20.0, help="Interval between drawn profiles (default: 20)")
    ap.add_argument("--node-count", type=int, default=DEFAULT_NODE_COUNT, help="Depth nodes per profile")
    ap.add_argument(
        "--header-rows",
        type=int,
        default=0,
        help="Auxiliary rows per profile block (default: 0, plain layout)",
    )
    ap.add_argument("--output-interval", type=float, default=60.0, help="Seconds between stored profiles")
    ap.add_argument("--speed", type=float, default=None, help="Wind speed for the title [m/s]")
    ap.add_argument("--direction", type=float, default=None, help="Direction for the title [deg onshore]")
    ap.add_argument("--out", type=Path, default=None, help="Output PNG (default: <profile>-PROF.png)")
    args = ap.parse_args(argv)

    if not args.profile.is_file():
        print(f"ERROR: missing profile file: {args.profile}", file=sys.stderr)
        return 2

    title = None
    if args.speed is not None and args.direction is not None:
        title = f"Depth: {args.depth:g} m & Winds: {args.speed:g} m/s @ {args.direction:g}° Onshore"
    out_path = args.out if args.out is not None else args.profile.with_name(f"{args.profile.stem}-PROF.png")

    try:
        n = plot_profile_file(
            args.profile,
            depth=args.depth,
            minutes=args.minutes,
            out_path=out_path,
            node_count=args.node_count,
            header_rows=args.header_rows,
            output_interval_s=args.output_interval,
            title=title,
        )
    except (PlotError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    print(f"OK: wrote {out_path} ({n} profiles)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
