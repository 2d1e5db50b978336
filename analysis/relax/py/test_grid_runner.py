from __future__ import annotations

import math
import tempfile
import unittest
from pathlib import Path
from typing import Optional

import numpy as np

from grid_runner import (
    CellResult,
    CellStatus,
    ConfigurationKey,
    DirectorySource,
    GridAxes,
    GridError,
    ResultTensor,
    evaluate_cell,
    parse_profile_filename,
    profile_filename,
    run_grid,
)

NODES = 4


def _write_profile(path: Path, profiles: np.ndarray) -> None:
    lines: list[str] = []
    for t, body in enumerate(profiles):
        lines.append(f"{float(t):.17g}")
        lines.extend(f"{float(x):.17g}" for x in body)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _decay(steps: int, cross: int, *, offset: float = 0.0) -> np.ndarray:
    """Uniform decay whose deviation energy drops below 0.01 exactly at ``cross``."""
    final = np.linspace(0.0, 0.3, NODES) + offset
    amps = [0.5 if t < cross else (0.05 if t < steps else 0.0) for t in range(1, steps + 1)]
    return np.stack([final + a for a in amps])


def _write_cell(
    root: Path,
    *,
    direction_index: int,
    speed: float,
    depth: float,
    cross: int,
    steps: int = 8,
    components: tuple[str, ...] = ("U", "V"),
) -> None:
    for comp in components:
        _write_profile(
            root / profile_filename(direction_index, speed, depth, comp),
            _decay(steps, cross, offset=0.1 if comp == "V" else 0.0),
        )


AXES = GridAxes(speeds=(5.0, 10.0), depths=(5.0, 10.0), directions=(-45.0, 0.0, 45.0))


def _build_grid(root: Path) -> dict[tuple[float, float, float], int]:
    expected: dict[tuple[float, float, float], int] = {}
    for i, s in enumerate(AXES.speeds):
        for j, h in enumerate(AXES.depths):
            for l, d in enumerate(AXES.directions):
                cross = 2 + i + j + l
                _write_cell(root, direction_index=l + 1, speed=s, depth=h, cross=cross)
                expected[(s, h, d)] = cross
    return expected


class InMemorySource:
    def __init__(self, paths: dict[tuple[ConfigurationKey, str], Path]) -> None:
        self.paths = paths

    def locate(self, key: ConfigurationKey, component: str) -> Optional[Path]:
        return self.paths.get((key, component))


class TestNaming(unittest.TestCase):
    def test_profile_filename(self) -> None:
        self.assertEqual(profile_filename(3, 10, 5, "U"), "103_110_105outU.txt")
        self.assertEqual(profile_filename(7, 40.0, 30.0, "V"), "107_140_130outV.txt")
        self.assertEqual(profile_filename(1, 2.5, 5, "U"), "101_102.5_105outU.txt")
        with self.assertRaises(ValueError):
            profile_filename(1, 5, 5, "W")

    def test_parse_profile_filename(self) -> None:
        self.assertEqual(parse_profile_filename("103_110_105outU.txt"), (3, 10.0, 5.0, "U"))
        self.assertEqual(parse_profile_filename("101_102.5_125outV.txt"), (1, 2.5, 25.0, "V"))
        self.assertIsNone(parse_profile_filename("report.md"))


class TestGridAxes(unittest.TestCase):
    def test_keys_order_and_shape(self) -> None:
        keys = list(AXES.keys())
        self.assertEqual(len(keys), 12)
        self.assertEqual(AXES.shape, (2, 2, 3))
        self.assertEqual(keys[0], ConfigurationKey(5.0, 5.0, -45.0, 1))
        self.assertEqual(keys[1], ConfigurationKey(5.0, 10.0, -45.0, 1))
        self.assertEqual(keys[2], ConfigurationKey(5.0, 5.0, 0.0, 2))
        self.assertEqual(AXES.key(10, 5, 45), ConfigurationKey(10.0, 5.0, 45.0, 3))
        with self.assertRaises(KeyError):
            AXES.key(7.0, 5.0, 0.0)
        with self.assertRaises(KeyError):
            AXES.key(5.0, 5.0, 30.0)

    def test_invalid_axes_are_fatal(self) -> None:
        with self.assertRaises(GridError):
            GridAxes(speeds=(), depths=(5.0,), directions=(0.0,))
        with self.assertRaises(GridError):
            GridAxes(speeds=(5.0, 5.0), depths=(5.0,), directions=(0.0,))
        with self.assertRaises(GridError):
            GridAxes(speeds=(5.0,), depths=(float("nan"),), directions=(0.0,))


class TestRunGrid(unittest.TestCase):
    def test_full_grid(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            expected = _build_grid(root)
            tensor = run_grid(AXES, DirectorySource(root), node_count=NODES, tolerance=0.01)

            self.assertTrue(tensor.is_complete())
            self.assertEqual(len(tensor), 12)
            for (s, h, d), cross in expected.items():
                r = tensor.lookup(s, h, d)
                self.assertIs(r.status, CellStatus.VALUE)
                self.assertEqual(r.step, cross)

            arr = tensor.to_array()
            self.assertEqual(arr.shape, (2, 2, 3))
            self.assertEqual(arr[1, 0, 2], expected[(10.0, 5.0, 45.0)])
            self.assertEqual(tensor.direction_slice(0.0).shape, (2, 2))
            self.assertEqual(tensor.direction_slice(0.0)[0, 1], expected[(5.0, 10.0, 0.0)])

    def test_missing_and_malformed_cells_do_not_abort(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            expected = _build_grid(root)

            # Missing V file for one cell.
            (root / profile_filename(2, 5.0, 10.0, "V")).unlink()
            # Truncated U file for another cell.
            bad = root / profile_filename(3, 10.0, 5.0, "U")
            with bad.open("a", encoding="utf-8") as f:
                f.write("0.5\n")
            # Single recorded step => not converged.
            one_step = _decay(8, 2)[:1]
            _write_profile(root / profile_filename(1, 10.0, 10.0, "U"), one_step)
            _write_profile(root / profile_filename(1, 10.0, 10.0, "V"), one_step)

            with self.assertLogs("grid_runner", level="WARNING") as logs:
                tensor = run_grid(AXES, DirectorySource(root), node_count=NODES, tolerance=0.01)

            self.assertTrue(tensor.is_complete())
            missing = tensor.lookup(5.0, 10.0, 0.0)
            self.assertIs(missing.status, CellStatus.MISSING)
            self.assertIn("V", missing.detail)
            malformed = tensor.lookup(10.0, 5.0, 45.0)
            self.assertIs(malformed.status, CellStatus.MALFORMED)
            self.assertIn("not aligned", malformed.detail)
            self.assertIs(tensor.lookup(10.0, 10.0, -45.0).status, CellStatus.NOT_CONVERGED)

            counts = tensor.status_counts()
            self.assertEqual(counts[CellStatus.VALUE], 9)
            self.assertEqual(counts[CellStatus.MISSING], 1)
            self.assertEqual(counts[CellStatus.MALFORMED], 1)
            self.assertEqual(counts[CellStatus.NOT_CONVERGED], 1)

            # Untouched cells keep their values.
            for key in [(5.0, 5.0, -45.0), (10.0, 10.0, 45.0), (5.0, 5.0, 0.0)]:
                self.assertEqual(tensor.lookup(*key).step, expected[key])

            text = "\n".join(logs.output)
            self.assertIn("Missing files", text)
            self.assertIn("Malformed input", text)

            arr = tensor.to_array(fill=0.0)
            self.assertTrue(math.isnan(arr[0, 1, 1]))
            self.assertTrue(math.isnan(arr[1, 0, 2]))
            self.assertEqual(arr[1, 1, 0], 0.0)

    def test_thread_pool_matches_serial(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _build_grid(root)
            (root / profile_filename(1, 5.0, 5.0, "U")).unlink()
            serial = run_grid(AXES, DirectorySource(root), node_count=NODES, tolerance=0.01)
            pooled = run_grid(AXES, DirectorySource(root), node_count=NODES, tolerance=0.01, max_workers=4)
            self.assertEqual(list(serial.cells()), list(pooled.cells()))

    def test_evaluate_cell_with_custom_source(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            key = ConfigurationKey(5.0, 5.0, 0.0, 1)
            pu = root / "u.txt"
            pv = root / "v.txt"
            _write_profile(pu, _decay(6, 4))
            _write_profile(pv, _decay(6, 3))
            src = InMemorySource({(key, "U"): pu, (key, "V"): pv})
            self.assertEqual(evaluate_cell(key, src, node_count=NODES, tolerance=0.01), CellResult(CellStatus.VALUE, 4))

            # Wrong node count makes the stream misaligned.
            r = evaluate_cell(key, src, node_count=NODES + 2, tolerance=0.01)
            self.assertIs(r.status, CellStatus.MALFORMED)

            # Listed but vanished file is still "missing".
            pv.unlink()
            r = evaluate_cell(key, src, node_count=NODES, tolerance=0.01)
            self.assertIs(r.status, CellStatus.MISSING)

    def test_unreadable_stream_is_marked_not_fatal(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            expected = _build_grid(root)
            subdir = root / "subdir"
            subdir.mkdir()
            bad_key = AXES.key(5.0, 5.0, 0.0)

            class _DirForU(DirectorySource):
                def locate(self, key: ConfigurationKey, component: str) -> Optional[Path]:
                    if key == bad_key and component == "U":
                        return subdir
                    return super().locate(key, component)

            with self.assertLogs("grid_runner", level="WARNING"):
                tensor = run_grid(AXES, _DirForU(root), node_count=NODES, tolerance=0.01)

            self.assertTrue(tensor.is_complete())
            bad = tensor[bad_key]
            self.assertIn(bad.status, (CellStatus.MALFORMED, CellStatus.MISSING))
            self.assertIsNone(bad.step)
            for (s, h, d), cross in expected.items():
                if (s, h, d) == (5.0, 5.0, 0.0):
                    continue
                r = tensor.lookup(s, h, d)
                self.assertIs(r.status, CellStatus.VALUE)
                self.assertEqual(r.step, cross)

    def test_mismatched_components_are_malformed(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            key = ConfigurationKey(5.0, 5.0, 0.0, 1)
            pu = root / "u.txt"
            pv = root / "v.txt"
            _write_profile(pu, _decay(6, 4))
            _write_profile(pv, _decay(5, 3))
            src = InMemorySource({(key, "U"): pu, (key, "V"): pv})
            r = evaluate_cell(key, src, node_count=NODES)
            self.assertIs(r.status, CellStatus.MALFORMED)
            self.assertIn("step count mismatch", r.detail)


class TestResultTensorIO(unittest.TestCase):
    def test_dataframe_and_csv_round_trip(self) -> None:
        import pandas as pd  # noqa: F401

        tensor = ResultTensor(AXES)
        for n, key in enumerate(AXES.keys()):
            if n % 4 == 0:
                tensor.set(key, CellResult(CellStatus.MISSING, detail="missing V profile"))
            elif n % 4 == 1:
                tensor.set(key, CellResult(CellStatus.NOT_CONVERGED))
            elif n % 4 == 2:
                tensor.set(key, CellResult(CellStatus.MALFORMED, detail="x: not aligned"))
            else:
                tensor.set(key, CellResult(CellStatus.VALUE, step=n))

        df = tensor.to_dataframe()
        self.assertEqual(
            list(df.columns), ["speed", "depth", "direction", "direction_index", "status", "step", "detail"]
        )
        self.assertEqual(len(df), 12)
        self.assertEqual(int(df.loc[3, "step"]), 3)

        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "tensor.csv"
            tensor.write_csv(p)
            back = ResultTensor.read_csv(p)
            self.assertEqual(back.axes, AXES)
            self.assertEqual(list(back.cells()), list(tensor.cells()))

    def test_read_csv_rejects_unknown_status(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "tensor.csv"
            p.write_text("speed,depth,direction,status,step\n5,5,0,bogus,\n", encoding="utf-8")
            with self.assertRaises(GridError):
                ResultTensor.read_csv(p)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
