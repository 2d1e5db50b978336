from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Sequence

from relax_core import DEFAULT_NODE_COUNT, DEFAULT_TIME_STEP_S, DEFAULT_TOLERANCE

DEFAULT_SPEEDS = (5.0, 10.0, 20.0, 40.0)
DEFAULT_DEPTHS = (5.0, 10.0, 15.0, 20.0, 25.0, 30.0)
DEFAULT_DIRECTIONS = (-90.0, -45.0, -22.5, 0.0, 22.5, 45.0, 90.0)
DEFAULT_HEADER_ROWS = 1


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class RunConfig:
    speeds: tuple[float, ...] = DEFAULT_SPEEDS
    depths: tuple[float, ...] = DEFAULT_DEPTHS
    directions: tuple[float, ...] = DEFAULT_DIRECTIONS
    node_count: int = DEFAULT_NODE_COUNT
    tolerance: float = DEFAULT_TOLERANCE
    time_step_s: float = DEFAULT_TIME_STEP_S
    header_rows: int = DEFAULT_HEADER_ROWS
    source: Optional[Path] = field(default=None, compare=False)

    def validate(self) -> "RunConfig":
        if self.node_count < 2:
            raise ConfigError(f"NODE_COUNT must be >= 2 (got {self.node_count})")
        if not math.isfinite(self.tolerance) or self.tolerance <= 0.0:
            raise ConfigError(f"TOLERANCE must be finite and > 0 (got {self.tolerance!r})")
        if not math.isfinite(self.time_step_s) or self.time_step_s <= 0.0:
            raise ConfigError(f"TIME_STEP_S must be finite and > 0 (got {self.time_step_s!r})")
        if self.header_rows < 0:
            raise ConfigError(f"HEADER_ROWS must be >= 0 (got {self.header_rows})")
        for name, axis in (("SPEEDS", self.speeds), ("DEPTHS", self.depths), ("DIRECTIONS", self.directions)):
            if not axis:
                raise ConfigError(f"{name} must list at least one value")
        return self


def _read_key_values(path: Path) -> dict[str, list[str]]:
    m: dict[str, list[str]] = {}
    for raw in path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        m[parts[0].upper()] = parts[1:]
    return m


def _parse_int(m: dict[str, list[str]], key: str, default: int) -> int:
    raw = m.get(key)
    if not raw:
        return default
    try:
        return int(float(raw[0]))
    except (ValueError, OverflowError):
        return default


def _parse_float(m: dict[str, list[str]], key: str, default: float) -> float:
    raw = m.get(key)
    if not raw:
        return default
    try:
        return float(raw[0])
    except ValueError:
        return default


def _parse_axis(m: dict[str, list[str]], key: str, default: Sequence[float]) -> tuple[float, ...]:
    raw = m.get(key)
    if not raw:
        return tuple(default)
    values: list[float] = []
    for tok in raw:
        # Allow "5,10,20" as well as "5 10 20".
        for part in tok.split(","):
            if not part:
                continue
            try:
                values.append(float(part))
            except ValueError as e:
                raise ConfigError(f"invalid {key} entry: {part!r}") from e
    return tuple(values)


def load_config(path: Path) -> RunConfig:
    if not path.exists():
        raise ConfigError(f"missing config file: {path}")
    kv = _read_key_values(path)
    return RunConfig(
        speeds=_parse_axis(kv, "SPEEDS", DEFAULT_SPEEDS),
        depths=_parse_axis(kv, "DEPTHS", DEFAULT_DEPTHS),
        directions=_parse_axis(kv, "DIRECTIONS", DEFAULT_DIRECTIONS),
        node_count=_parse_int(kv, "NODE_COUNT", DEFAULT_NODE_COUNT),
        tolerance=_parse_float(kv, "TOLERANCE", DEFAULT_TOLERANCE),
        time_step_s=_parse_float(kv, "TIME_STEP_S", DEFAULT_TIME_STEP_S),
        header_rows=_parse_int(kv, "HEADER_ROWS", DEFAULT_HEADER_ROWS),
        source=path,
    )


def with_overrides(cfg: RunConfig, **overrides: object) -> RunConfig:
    """Apply non-None overrides (typically CLI flags) on top of ``cfg``."""
    changes = {k: v for k, v in overrides.items() if v is not None}
    for key in ("speeds", "depths", "directions"):
        if key in changes:
            changes[key] = tuple(float(x) for x in changes[key])  # type: ignore[union-attr]
    return replace(cfg, **changes)
