#!/usr/bin/env python3
from __future__ import annotations

import argparse
import datetime as _dt
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import compute_relaxation
from grid_runner import CellStatus, DirectorySource, GridError, ResultTensor, config_codes
from profile_reader import ProfileFormatError, ProfileReader
from relax_config import ConfigError, RunConfig
from relax_core import depth_axis

try:
    import numpy as np
except ImportError as e:  # pragma: no cover
    raise SystemExit("ERROR: missing dependency 'numpy' (try: python3 -m pip install numpy)") from e

try:
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
except ImportError as e:  # pragma: no cover
    raise SystemExit("ERROR: missing dependency 'matplotlib' (try: python3 -m pip install matplotlib)") from e


logger = logging.getLogger(__name__)

DEFAULT_REPORT_DIRNAME = "report"
DEFAULT_MAX_ISSUES = 200
CONTOUR_PNG = "relaxation_contours.png"
TENSOR_CSV = "relaxation_tensor.csv"

# Subplot slots (3x3 grid, 1-based) for the seven standard directions,
# arranged roughly by compass bearing.
_SEVEN_DIRECTION_SLOTS = (5, 7, 9, 1, 8, 6, 4)


class ReportError(RuntimeError):
    pass


@dataclass(frozen=True)
class ReportArtifacts:
    report_dir: Path
    markdown_path: Path
    csv_path: Path
    contour_path: Path
    profile_paths: list[Path]
    status_counts: dict[str, int]


def _ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def _write_markdown(path: Path, lines: Sequence[str]) -> None:
    path.write_text("\n".join(lines).rstrip() + "\n", encoding="utf-8")


def _seconds_array(tensor: ResultTensor, time_step_s: float) -> np.ndarray:
    # Only converged cells carry a value; everything else is left blank.
    return tensor.to_array(fill=float("nan"), missing=float("nan")) * float(time_step_s)


def _subplot_slots(n: int) -> tuple[int, int, list[int]]:
    if n == len(_SEVEN_DIRECTION_SLOTS):
        return 3, 3, list(_SEVEN_DIRECTION_SLOTS)
    ncols = min(3, n)
    nrows = (n + ncols - 1) // ncols
    return nrows, ncols, list(range(1, n + 1))


def _plot_contours(*, out_png: Path, tensor: ResultTensor, time_step_s: float) -> None:
    axes_def = tensor.axes
    rel = _seconds_array(tensor, time_step_s)
    finite = rel[np.isfinite(rel)]
    vmin = float(finite.min()) if finite.size else 0.0
    vmax = float(finite.max()) if finite.size else 1.0
    if vmax <= vmin:
        vmax = vmin + 1.0

    nrows, ncols, slots = _subplot_slots(len(axes_def.directions))
    fig = plt.figure(figsize=(4.5 * ncols, 3.6 * nrows))
    depths = np.asarray(axes_def.depths, dtype=float)
    speeds = np.asarray(axes_def.speeds, dtype=float)
    letters = "abcdefghijklmnopqrstuvwxyz"

    for z, direction in enumerate(axes_def.directions):
        slot = slots[z]
        ax = fig.add_subplot(nrows, ncols, slot)
        data = np.ma.masked_invalid(rel[:, :, z])
        if data.count() == 0:
            ax.text(0.5, 0.5, "no data", ha="center", va="center", transform=ax.transAxes)
        elif depths.size >= 2 and speeds.size >= 2:
            cf = ax.contourf(depths, speeds, data, levels=np.linspace(vmin, vmax, 16), cmap="jet_r")
            cb = fig.colorbar(cf, ax=ax)
            cb.ax.set_title("s", fontsize=8)
        else:
            pm = ax.pcolormesh(depths, speeds, data, shading="nearest", cmap="jet_r", vmin=vmin, vmax=vmax)
            cb = fig.colorbar(pm, ax=ax)
            cb.ax.set_title("s", fontsize=8)
        ax.set_title(f"({letters[z % len(letters)]}) Dir: {direction:.1f}°", fontsize=10)
        ax.set_xlabel("Depth (m)")
        if (slot - 1) % ncols == 0:
            ax.set_ylabel("Wind Speed (m/s)")
        ax.grid(True, alpha=0.3)

    fig.suptitle("Relaxation time (s)", y=0.995)
    fig.tight_layout()
    fig.savefig(out_png, dpi=150)
    plt.close(fig)


def _middle_directions(n: int) -> list[int]:
    if n <= 3:
        return list(range(n))
    c = n // 2
    return [c - 1, c, c + 1]


def _edge_depths(n: int) -> list[int]:
    return [0] if n == 1 else [0, n - 1]


def _plot_final_profiles(
    *,
    out_png: Path,
    source: DirectorySource,
    tensor: ResultTensor,
    direction_pos: int,
    depth_pos: int,
    cfg: RunConfig,
) -> bool:
    axes_def = tensor.axes
    direction = axes_def.directions[direction_pos]
    depth = axes_def.depths[depth_pos]
    n = len(axes_def.speeds)
    blues = matplotlib.colormaps["winter"](np.linspace(0.2, 0.9, max(n, 2)))
    reds = matplotlib.colormaps["hot"](np.linspace(0.1, 0.6, max(n, 2)))

    fig, ax = plt.subplots(figsize=(6, 6))
    drawn = 0
    for i, speed in enumerate(axes_def.speeds):
        key = axes_def.key(speed, depth, direction)
        pu = source.locate(key, "U")
        pv = source.locate(key, "V")
        if pu is None or pv is None:
            continue
        try:
            u = ProfileReader(pu, cfg.node_count, header_rows=cfg.header_rows).read_series()
            v = ProfileReader(pv, cfg.node_count, header_rows=cfg.header_rows).read_series()
        except ProfileFormatError as e:
            logger.warning("Skipping profile plot input: %s", e)
            continue
        y = u.coords if u.coords is not None else -depth_axis(depth, cfg.node_count)
        ax.plot(u.final, y, linewidth=2.5, color=blues[i], label=f"U @ {speed:g} m/s")
        ax.plot(v.final, y, linewidth=2.5, color=reds[i], linestyle="--", label=f"V @ {speed:g} m/s")
        drawn += 1

    if drawn:
        ax.set_xlabel("Velocity (m/s)", color="b")
        ax.set_ylabel("Depth (m)", color="b")
        ax.set_ylim(-depth, 0.0)
        ax.set_title(f"Dir: {direction:g}°, depth {depth:g} m")
        ax.grid(True, alpha=0.3)
        ax.legend(loc="lower right", fontsize=8)
        fig.tight_layout()
        fig.savefig(out_png, dpi=150)
    plt.close(fig)
    return drawn > 0


def _issue_rows(tensor: ResultTensor, max_items: int) -> list[str]:
    rows: list[str] = []
    for key, r in tensor.cells():
        if r.status not in (CellStatus.MISSING, CellStatus.MALFORMED):
            continue
        if len(rows) >= max_items:
            break
        detail = r.detail.replace("\n", " ").replace("|", "/")
        rows.append(f"| {r.status.value} | {key.speed:g} | {key.depth:g} | {key.direction:g} | {detail} |")
    return rows


def generate_report(
    data_dir: Path,
    *,
    config: Optional[RunConfig] = None,
    tensor: Optional[ResultTensor] = None,
    report_dir: Optional[Path] = None,
    max_issues: int = DEFAULT_MAX_ISSUES,
) -> ReportArtifacts:
    if not data_dir.is_dir():
        raise ReportError(f"not a directory: {data_dir}")
    cfg = (config if config is not None else RunConfig()).validate()

    report_dir = report_dir if report_dir is not None else (data_dir / DEFAULT_REPORT_DIRNAME)
    plots_dir = report_dir / "plots"
    _ensure_dir(plots_dir)
    md_path = report_dir / "report.md"
    csv_path = report_dir / TENSOR_CSV
    contour_path = plots_dir / CONTOUR_PNG

    if tensor is None:
        tensor = compute_relaxation.compute(data_dir, cfg)
    if not tensor.is_complete():
        raise ReportError("result tensor does not cover the full grid")

    tensor.write_csv(csv_path)
    _plot_contours(out_png=contour_path, tensor=tensor, time_step_s=cfg.time_step_s)

    source = DirectorySource(data_dir)
    profile_paths: list[Path] = []
    for l in _middle_directions(len(tensor.axes.directions)):
        for j in _edge_depths(len(tensor.axes.depths)):
            dir_code, _, depth_code = config_codes(l + 1, tensor.axes.speeds[0], tensor.axes.depths[j])
            out_png = plots_dir / f"VelocityProfile_Dir{dir_code}_Depth{depth_code}.png"
            if _plot_final_profiles(
                out_png=out_png, source=source, tensor=tensor, direction_pos=l, depth_pos=j, cfg=cfg
            ):
                profile_paths.append(out_png)

    counts = {s.value: n for s, n in tensor.status_counts().items()}
    rel = _seconds_array(tensor, cfg.time_step_s)

    now = _dt.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    lines: list[str] = []
    lines.append("# Velocity relaxation report")
    lines.append("")
    lines.append(f"- Generated: {now}")
    lines.append(f"- Data directory: `{data_dir}`")
    lines.append(f"- Grid: {len(tensor.axes.speeds)} speeds x {len(tensor.axes.depths)} depths x {len(tensor.axes.directions)} directions")
    lines.append(f"- Tolerance: `{cfg.tolerance:g}` (node weight 1/{cfg.node_count})")
    lines.append(f"- Time step: `{cfg.time_step_s:g} s`")
    lines.append("")
    lines.append("## Cell outcomes")
    lines.append("")
    lines.append("| status | count |")
    lines.append("|---|---:|")
    for k in (s.value for s in CellStatus):
        lines.append(f"| {k} | {counts[k]} |")
    lines.append("")

    lines.append("## Relaxation time (s) by direction")
    lines.append("")
    for z, direction in enumerate(tensor.axes.directions):
        lines.append(f"### Direction {direction:g}°")
        lines.append("")
        lines.append("| speed \\ depth | " + " | ".join(f"{h:g}" for h in tensor.axes.depths) + " |")
        lines.append("|---:|" + "---:|" * len(tensor.axes.depths))
        for i, speed in enumerate(tensor.axes.speeds):
            cells = []
            for j, depth in enumerate(tensor.axes.depths):
                r = tensor.lookup(speed, depth, direction)
                cells.append(f"{rel[i, j, z]:g}" if r.status is CellStatus.VALUE else r.status.value)
            lines.append(f"| {speed:g} | " + " | ".join(cells) + " |")
        lines.append("")

    lines.append("## Figures")
    lines.append("")
    lines.append(f"![{contour_path.name}](plots/{contour_path.name})")
    lines.append("")
    for p in profile_paths:
        lines.append(f"### {p.stem}")
        lines.append("")
        lines.append(f"![{p.name}](plots/{p.name})")
        lines.append("")

    lines.append("## Missing / malformed inputs")
    lines.append("")
    issues = _issue_rows(tensor, max_issues)
    if issues:
        lines.append(f"Showing at most {max_issues} rows:")
        lines.append("")
        lines.append("| status | speed | depth | direction | detail |")
        lines.append("|---|---:|---:|---:|---|")
        lines.extend(issues)
    else:
        lines.append("All grid cells had readable U and V inputs.")
    lines.append("")

    _write_markdown(md_path, lines)

    return ReportArtifacts(
        report_dir=report_dir,
        markdown_path=md_path,
        csv_path=csv_path,
        contour_path=contour_path,
        profile_paths=profile_paths,
        status_counts=counts,
    )


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description="Generate velocity relaxation report (Markdown + plots).")
    parser.add_argument("data_dir", type=Path, help="Directory holding <dir>_<speed>_<depth>out<U|V>.txt files")
    parser.add_argument(
        "--output-dir",
        dest="report_dir",
        type=Path,
        default=None,
        help=f"Report output directory (default: <data_dir>/{DEFAULT_REPORT_DIRNAME}/)",
    )
    parser.add_argument(
        "--tensor-csv",
        type=Path,
        default=None,
        help="Reuse a tensor written by compute_relaxation.py --csv instead of recomputing",
    )
    parser.add_argument(
        "--max-issues",
        type=int,
        default=DEFAULT_MAX_ISSUES,
        help=f"Max missing/malformed rows to include in markdown (default: {DEFAULT_MAX_ISSUES})",
    )
    compute_relaxation._add_config_args(parser)  # noqa: SLF001
    args = parser.parse_args(argv)
    compute_relaxation._setup_logging(args.log_level)  # noqa: SLF001

    data_dir: Path = args.data_dir
    if not data_dir.is_dir():
        print(f"ERROR: not a directory: {data_dir}", file=sys.stderr)
        return 2

    try:
        cfg = compute_relaxation._resolve_config(args)  # noqa: SLF001
        tensor = ResultTensor.read_csv(args.tensor_csv) if args.tensor_csv is not None else None
        artifacts = generate_report(
            data_dir,
            config=cfg,
            tensor=tensor,
            report_dir=args.report_dir,
            max_issues=int(args.max_issues),
        )
    except (ReportError, ConfigError, GridError, ProfileFormatError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    print("Velocity relaxation report")
    print(f"- data_dir: {data_dir}")
    print(f"- report_dir: {artifacts.report_dir}")
    print(f"- report_md: {artifacts.markdown_path}")
    print(f"- tensor_csv: {artifacts.csv_path}")
    print(f"- figures: {1 + len(artifacts.profile_paths)}")
    for k in sorted(artifacts.status_counts.keys()):
        print(f"  - {k}: {artifacts.status_counts[k]}")
    return 0


def _cli() -> int:
    return main(sys.argv[1:])


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(_cli())
