#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from grid_runner import parse_profile_filename
from profile_reader import ProfileFormatError, ProfileReader
from relax_core import DEFAULT_NODE_COUNT


def _list_profile_files(data_dir: Path) -> list[Path]:
    return sorted(
        p for p in data_dir.iterdir() if p.is_file() and p.suffix.lower() == ".txt" and p.stem[-4:] in ("outU", "outV")
    )


def _fmt_config(name: str) -> str:
    parsed = parse_profile_filename(name)
    if parsed is None:
        return "config=n/a"
    dir_index, speed, depth, comp = parsed
    return f"dir#{dir_index} speed={speed:g} depth={depth:g} comp={comp}"


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description="Inspect velocity profile dumps (list shapes / export to CSV).")
    parser.add_argument("data_dir", type=Path, help="Directory holding *outU.txt / *outV.txt files")
    parser.add_argument(
        "--node-count", type=int, default=DEFAULT_NODE_COUNT, help=f"Depth nodes per profile (default: {DEFAULT_NODE_COUNT})"
    )
    parser.add_argument("--header-rows", type=int, default=1, help="Auxiliary rows per profile block (default: 1)")
    parser.add_argument("--export", type=str, default=None, help="Export the given file (within data_dir) to CSV")
    parser.add_argument(
        "--csv",
        type=Path,
        default=None,
        help="CSV output path (default: <file>.csv next to the profile file)",
    )
    args = parser.parse_args(argv)

    data_dir: Path = args.data_dir
    if not data_dir.is_dir():
        print(f"ERROR: not a directory: {data_dir}", file=sys.stderr)
        return 2

    files = _list_profile_files(data_dir)
    if files:
        print(f"Found {len(files)} profile files in {data_dir}:\n")
        for p in files:
            try:
                m = ProfileReader(p, args.node_count, header_rows=args.header_rows).meta
            except ProfileFormatError as e:
                print(f"- {p.name}: ERROR: {e}")
                continue
            print(f"- {p.name}: steps={m.step_count}, samples={m.num_samples}, cols={m.num_columns}, {_fmt_config(p.name)}")
    else:
        print(f"No profile files found in {data_dir}")

    if args.export is None:
        return 0

    path = data_dir / args.export
    if not path.exists():
        print(f"ERROR: missing profile file: {path}", file=sys.stderr)
        return 2

    csv_path: Path = args.csv if args.csv is not None else path.with_suffix(".csv")
    try:
        df = ProfileReader(path, args.node_count, header_rows=args.header_rows).to_dataframe()
    except ProfileFormatError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    df.to_csv(csv_path, index=True)
    print(f"\nExported: {path.name} -> {csv_path}")
    return 0


def _cli() -> int:
    return main(sys.argv[1:])


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(_cli())
