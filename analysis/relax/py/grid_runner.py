from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Protocol, Sequence, Union

import numpy as np

from profile_reader import COMPONENTS, ProfileFormatError, ProfileReader, decode_profile_name
from relax_core import DEFAULT_NODE_COUNT, DEFAULT_TOLERANCE, NOT_CONVERGED, relaxation_time

logger = logging.getLogger(__name__)

CODE_OFFSET = 100


class GridError(RuntimeError):
    pass


class CellStatus(str, Enum):
    VALUE = "value"
    NOT_CONVERGED = "not_converged"
    MISSING = "missing"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class ConfigurationKey:
    speed: float
    depth: float
    direction: float
    direction_index: int  # 1-based position on the direction axis


@dataclass(frozen=True)
class CellResult:
    status: CellStatus
    step: Optional[int] = None
    detail: str = ""

    @classmethod
    def from_step(cls, step: Optional[int]) -> "CellResult":
        if step is None:
            return cls(CellStatus.NOT_CONVERGED)
        return cls(CellStatus.VALUE, step=int(step))


# -----------------------------------------------------------------------------
# File naming: <100+dir_index>_<100+speed>_<100+depth>out<U|V>.txt
# -----------------------------------------------------------------------------


def _code(x: float) -> str:
    return f"{CODE_OFFSET + x:g}"


def config_codes(direction_index: int, speed: float, depth: float) -> tuple[str, str, str]:
    return _code(direction_index), _code(speed), _code(depth)


def profile_filename(direction_index: int, speed: float, depth: float, component: str) -> str:
    if component not in COMPONENTS:
        raise ValueError(f"unknown component {component!r} (expected one of {COMPONENTS})")
    dir_code, speed_code, depth_code = config_codes(direction_index, speed, depth)
    return f"{dir_code}_{speed_code}_{depth_code}out{component}.txt"


def parse_profile_filename(name: str) -> Optional[tuple[int, float, float, str]]:
    """Inverse of profile_filename(): (direction_index, speed, depth, component)."""
    comp, dir_code, speed_code, depth_code = decode_profile_name(name)
    if comp is None or dir_code is None or speed_code is None or depth_code is None:
        return None
    return dir_code - CODE_OFFSET, speed_code - CODE_OFFSET, depth_code - CODE_OFFSET, comp


class ProfileSource(Protocol):
    def locate(self, key: ConfigurationKey, component: str) -> Optional[Path]: ...


class DirectorySource:
    """Profile files laid out flat in one directory."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def locate(self, key: ConfigurationKey, component: str) -> Optional[Path]:
        p = self.root / profile_filename(key.direction_index, key.speed, key.depth, component)
        return p if p.is_file() else None


# -----------------------------------------------------------------------------
# Axes and result tensor
# -----------------------------------------------------------------------------


def _check_axis(name: str, values: Sequence[float]) -> tuple[float, ...]:
    axis = tuple(float(x) for x in values)
    if not axis:
        raise GridError(f"empty {name} axis")
    if any(not math.isfinite(x) for x in axis):
        raise GridError(f"non-finite value on {name} axis: {axis!r}")
    if len(set(axis)) != len(axis):
        raise GridError(f"duplicate values on {name} axis: {axis!r}")
    return axis


@dataclass(frozen=True)
class GridAxes:
    speeds: tuple[float, ...]
    depths: tuple[float, ...]
    directions: tuple[float, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "speeds", _check_axis("speed", self.speeds))
        object.__setattr__(self, "depths", _check_axis("depth", self.depths))
        object.__setattr__(self, "directions", _check_axis("direction", self.directions))

    @property
    def shape(self) -> tuple[int, int, int]:
        return len(self.speeds), len(self.depths), len(self.directions)

    def key(self, speed: float, depth: float, direction: float) -> ConfigurationKey:
        try:
            l = self.directions.index(float(direction))
        except ValueError as e:
            raise KeyError(f"direction {direction!r} not on axis") from e
        if float(speed) not in self.speeds or float(depth) not in self.depths:
            raise KeyError(f"(speed={speed!r}, depth={depth!r}) not on axes")
        return ConfigurationKey(float(speed), float(depth), float(direction), l + 1)

    def keys(self) -> Iterator[ConfigurationKey]:
        # speed outer, direction middle, depth inner
        for s in self.speeds:
            for l, d in enumerate(self.directions):
                for h in self.depths:
                    yield ConfigurationKey(s, h, d, l + 1)


class ResultTensor:
    def __init__(self, axes: GridAxes) -> None:
        self.axes = axes
        self._cells: dict[ConfigurationKey, CellResult] = {}

    def set(self, key: ConfigurationKey, result: CellResult) -> None:
        self._cells[key] = result

    def __getitem__(self, key: ConfigurationKey) -> CellResult:
        return self._cells[key]

    def lookup(self, speed: float, depth: float, direction: float) -> CellResult:
        return self._cells[self.axes.key(speed, depth, direction)]

    def __len__(self) -> int:
        return len(self._cells)

    def cells(self) -> Iterator[tuple[ConfigurationKey, CellResult]]:
        for key in self.axes.keys():
            if key in self._cells:
                yield key, self._cells[key]

    def is_complete(self) -> bool:
        return all(key in self._cells for key in self.axes.keys())

    def status_counts(self) -> dict[CellStatus, int]:
        counts = {s: 0 for s in CellStatus}
        for _, r in self.cells():
            counts[r.status] += 1
        return counts

    def to_array(self, *, fill: float = NOT_CONVERGED, missing: float = float("nan")) -> np.ndarray:
        """Dense (speed, depth, direction) array of step indices.

        ``fill`` marks not-converged cells, ``missing`` marks missing and
        malformed cells.
        """
        out = np.full(self.axes.shape, missing, dtype=float)
        for key, r in self.cells():
            i = self.axes.speeds.index(key.speed)
            j = self.axes.depths.index(key.depth)
            l = key.direction_index - 1
            if r.status is CellStatus.VALUE:
                out[i, j, l] = float(r.step)  # type: ignore[arg-type]
            elif r.status is CellStatus.NOT_CONVERGED:
                out[i, j, l] = fill
        return out

    def direction_slice(self, direction: float, **kwargs: Any) -> np.ndarray:
        """(speed, depth) matrix for one direction, for contouring."""
        try:
            l = self.axes.directions.index(float(direction))
        except ValueError as e:
            raise KeyError(f"direction {direction!r} not on axis") from e
        return self.to_array(**kwargs)[:, :, l]

    def to_dataframe(self) -> Any:
        import pandas as pd

        rows = [
            {
                "speed": k.speed,
                "depth": k.depth,
                "direction": k.direction,
                "direction_index": k.direction_index,
                "status": r.status.value,
                "step": r.step if r.step is not None else pd.NA,
                "detail": r.detail,
            }
            for k, r in self.cells()
        ]
        df = pd.DataFrame(
            rows, columns=["speed", "depth", "direction", "direction_index", "status", "step", "detail"]
        )
        df["step"] = df["step"].astype("Int64")
        return df

    def write_csv(self, path: Path) -> None:
        self.to_dataframe().to_csv(path, index=False)

    @classmethod
    def read_csv(cls, path: Path) -> "ResultTensor":
        import pandas as pd

        df = pd.read_csv(path, keep_default_na=False, na_values={"step": [""]})
        required = {"speed", "depth", "direction", "status", "step"}
        missing_cols = required - set(df.columns)
        if missing_cols:
            raise GridError(f"{path}: missing columns {sorted(missing_cols)}")

        axes = GridAxes(
            speeds=tuple(dict.fromkeys(float(x) for x in df["speed"])),
            depths=tuple(dict.fromkeys(float(x) for x in df["depth"])),
            directions=tuple(dict.fromkeys(float(x) for x in df["direction"])),
        )
        tensor = cls(axes)
        for row in df.itertuples(index=False):
            try:
                status = CellStatus(str(row.status))
            except ValueError as e:
                raise GridError(f"{path}: unknown status {row.status!r}") from e
            step = None if pd.isna(row.step) else int(row.step)
            detail = str(getattr(row, "detail", "") or "")
            tensor.set(axes.key(row.speed, row.depth, row.direction), CellResult(status, step=step, detail=detail))
        return tensor


# -----------------------------------------------------------------------------
# Runner
# -----------------------------------------------------------------------------


def _describe(key: ConfigurationKey) -> str:
    return f"speed={key.speed:g} depth={key.depth:g} direction={key.direction:g}"


def evaluate_cell(
    key: ConfigurationKey,
    source: ProfileSource,
    *,
    node_count: int = DEFAULT_NODE_COUNT,
    tolerance: float = DEFAULT_TOLERANCE,
    header_rows: int = 1,
) -> CellResult:
    """Relaxation outcome for one cell; input failures become markers."""
    paths: dict[str, Path] = {}
    absent: list[str] = []
    for comp in COMPONENTS:
        p = source.locate(key, comp)
        if p is None:
            absent.append(comp)
        else:
            paths[comp] = p
    if absent:
        detail = f"missing {'/'.join(absent)} profile"
        logger.warning("Missing files for %s (%s)", _describe(key), detail)
        return CellResult(CellStatus.MISSING, detail=detail)

    try:
        u = ProfileReader(paths["U"], node_count, header_rows=header_rows).read_series()
        v = ProfileReader(paths["V"], node_count, header_rows=header_rows).read_series()
        step = relaxation_time(u, v, tolerance=tolerance)
    except ProfileFormatError as e:
        if e.missing:
            logger.warning("Missing files for %s (%s)", _describe(key), e)
            return CellResult(CellStatus.MISSING, detail=str(e))
        logger.warning("Malformed input for %s: %s", _describe(key), e)
        return CellResult(CellStatus.MALFORMED, detail=str(e))

    return CellResult.from_step(step)


def run_grid(
    axes: GridAxes,
    source: ProfileSource,
    *,
    node_count: int = DEFAULT_NODE_COUNT,
    tolerance: float = DEFAULT_TOLERANCE,
    header_rows: int = 1,
    max_workers: Optional[int] = None,
) -> ResultTensor:
    """Evaluate every (speed, depth, direction) cell.

    With ``max_workers > 1`` cells are evaluated on a thread pool; each cell
    only touches its own files and its own tensor slot.
    """
    if node_count < 1:
        raise GridError(f"invalid node_count={node_count} (must be >= 1)")

    keys = list(axes.keys())
    tensor = ResultTensor(axes)

    def _eval(key: ConfigurationKey) -> CellResult:
        return evaluate_cell(key, source, node_count=node_count, tolerance=tolerance, header_rows=header_rows)

    results: Iterable[CellResult]
    if max_workers is not None and max_workers > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            results = list(pool.map(_eval, keys))
    else:
        results = (_eval(k) for k in keys)

    for key, result in zip(keys, results):
        tensor.set(key, result)

    counts = tensor.status_counts()
    logger.info(
        "Relaxation grid done: %d cells (value=%d, not_converged=%d, missing=%d, malformed=%d)",
        len(tensor),
        counts[CellStatus.VALUE],
        counts[CellStatus.NOT_CONVERGED],
        counts[CellStatus.MISSING],
        counts[CellStatus.MALFORMED],
    )
    return tensor
