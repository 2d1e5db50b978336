from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Literal, Optional, Sequence, Union

import numpy as np

COMPONENTS = ("U", "V")


class ProfileFormatError(RuntimeError):
    def __init__(self, message: str, *, path: Optional[Path] = None, missing: bool = False) -> None:
        prefix = f"{path}: " if path is not None else ""
        super().__init__(f"{prefix}{message}")
        self.path = path
        self.missing = missing


@dataclass(frozen=True)
class ProfileSeries:
    node_count: int
    step_count: int
    values: np.ndarray  # (step_count, node_count)
    aux: np.ndarray  # (step_count,) first row of each block; empty when header_rows == 0
    coords: Optional[np.ndarray] = None  # (node_count,) second column of the first block, if present

    def profile(self, step: int) -> np.ndarray:
        """Profile at 1-based ``step``."""
        if step < 1 or step > self.step_count:
            raise IndexError(f"step {step} outside 1..{self.step_count}")
        return self.values[step - 1]

    @property
    def final(self) -> np.ndarray:
        return self.values[-1]


@dataclass(frozen=True)
class ProfileMeta:
    path: Path
    node_count: int
    header_rows: int
    num_samples: int
    num_columns: int
    step_count: int
    component: Optional[Literal["U", "V"]] = None
    direction_code: Optional[int] = None
    speed_code: Optional[float] = None
    depth_code: Optional[float] = None


# <dir>_<speed>_<depth>out<U|V>.txt, codes are offset by 100.
_NAME_RE = re.compile(
    r"^(?P<dir>\d+)_(?P<speed>\d+(?:\.\d+)?)_(?P<depth>\d+(?:\.\d+)?)out(?P<comp>[UV])\.txt$"
)


def decode_profile_name(name: str) -> tuple[Optional[str], Optional[int], Optional[float], Optional[float]]:
    m = _NAME_RE.match(name)
    if not m:
        return None, None, None, None
    return m.group("comp"), int(m.group("dir")), float(m.group("speed")), float(m.group("depth"))


def _check_shape(*, num_samples: int, node_count: int, header_rows: int, path: Optional[Path]) -> int:
    if node_count < 1:
        raise ProfileFormatError(f"invalid node_count={node_count} (must be >= 1)", path=path)
    if header_rows < 0:
        raise ProfileFormatError(f"invalid header_rows={header_rows} (must be >= 0)", path=path)
    if num_samples <= 0:
        raise ProfileFormatError("empty sample stream", path=path)

    block = node_count + header_rows
    rem = num_samples % block
    if rem != 0:
        raise ProfileFormatError(
            "sample stream not aligned to profile blocks: "
            f"(samples={num_samples}, block={block}, remainder={rem})",
            path=path,
        )
    return num_samples // block


def parse_profile_stream(
    samples: Union[Sequence[float], np.ndarray],
    node_count: int,
    *,
    header_rows: int = 1,
    coord_column: Optional[Union[Sequence[float], np.ndarray]] = None,
    path: Optional[Path] = None,
) -> ProfileSeries:
    data = np.asarray(samples, dtype=float).ravel()
    step_count = _check_shape(num_samples=int(data.size), node_count=node_count, header_rows=header_rows, path=path)

    bad = ~np.isfinite(data)
    if bool(np.any(bad)):
        i = int(np.argmax(bad))
        raise ProfileFormatError(f"non-finite sample at offset {i}: {data[i]!r}", path=path)

    blocks = data.reshape(step_count, node_count + header_rows)
    values = blocks[:, header_rows:].copy()
    aux = blocks[:, 0].copy() if header_rows > 0 else np.empty(0, dtype=float)

    coords: Optional[np.ndarray] = None
    if coord_column is not None:
        col = np.asarray(coord_column, dtype=float).ravel()
        if col.size != data.size:
            raise ProfileFormatError(
                f"coordinate column length {col.size} != sample count {data.size}", path=path
            )
        coords = col[header_rows : header_rows + node_count].copy()

    return ProfileSeries(
        node_count=int(node_count),
        step_count=int(step_count),
        values=values,
        aux=aux,
        coords=coords,
    )


def _load_columns(path: Path) -> np.ndarray:
    try:
        if path.stat().st_size <= 0:
            raise ProfileFormatError("empty profile file", path=path)
        with path.open("r", encoding="utf-8", errors="replace") as f:
            rows = _parse_rows(f, path)
    except FileNotFoundError as e:
        raise ProfileFormatError("missing profile file", path=path, missing=True) from e
    except OSError as e:
        raise ProfileFormatError(f"unreadable profile file: {e.strerror or e}", path=path) from e

    if not rows:
        raise ProfileFormatError("no samples in profile file", path=path)
    return np.asarray(rows, dtype=float)


def _parse_rows(lines: Iterable[str], path: Path) -> list[list[float]]:
    rows: list[list[float]] = []
    width: Optional[int] = None
    for lineno, raw in enumerate(lines, start=1):
        cols = raw.split()
        if not cols:
            continue
        try:
            row = [float(x) for x in cols]
        except ValueError as e:
            raise ProfileFormatError(f"non-numeric value on line {lineno}: {raw.strip()!r}", path=path) from e
        if width is None:
            width = len(row)
        elif len(row) != width:
            raise ProfileFormatError(
                f"ragged row on line {lineno}: expected {width} columns, got {len(row)}", path=path
            )
        rows.append(row)
    return rows


class ProfileReader:
    def __init__(self, path: Union[str, Path], node_count: int, *, header_rows: int = 1) -> None:
        self.path = Path(path)
        self.node_count = int(node_count)
        self.header_rows = int(header_rows)
        self._meta: Optional[ProfileMeta] = None

    @property
    def meta(self) -> ProfileMeta:
        if self._meta is None:
            table = _load_columns(self.path)
            num_samples, num_columns = table.shape
            step_count = _check_shape(
                num_samples=num_samples, node_count=self.node_count, header_rows=self.header_rows, path=self.path
            )
            comp, dir_code, speed_code, depth_code = decode_profile_name(self.path.name)
            self._meta = ProfileMeta(
                path=self.path,
                node_count=self.node_count,
                header_rows=self.header_rows,
                num_samples=int(num_samples),
                num_columns=int(num_columns),
                step_count=int(step_count),
                component=comp,  # type: ignore[arg-type]
                direction_code=dir_code,
                speed_code=speed_code,
                depth_code=depth_code,
            )
        return self._meta

    def read_series(self) -> ProfileSeries:
        table = _load_columns(self.path)
        coord_column = table[:, 1] if table.shape[1] > 1 else None
        return parse_profile_stream(
            table[:, 0],
            self.node_count,
            header_rows=self.header_rows,
            coord_column=coord_column,
            path=self.path,
        )

    def iter_profiles(self) -> Iterable[tuple[int, np.ndarray]]:
        series = self.read_series()
        for i in range(series.step_count):
            yield i + 1, series.values[i]

    def read_matrix(self) -> tuple[list[float], list[list[float]]]:
        series = self.read_series()
        aux = [float(x) for x in series.aux]
        rows = [[float(x) for x in row] for row in series.values]
        return aux, rows

    def to_dataframe(self, *, column_prefix: str = "N") -> Any:
        import pandas as pd

        series = self.read_series()
        columns = [f"{column_prefix}{i}" for i in range(1, series.node_count + 1)]
        df = pd.DataFrame(series.values, columns=columns)
        df.index = pd.RangeIndex(1, series.step_count + 1, name="step")
        if series.aux.size:
            df.insert(0, "aux", series.aux)
        return df


def read_profile_series(
    path: Union[str, Path],
    node_count: int,
    *,
    header_rows: int = 1,
) -> ProfileSeries:
    return ProfileReader(path, node_count, header_rows=header_rows).read_series()

