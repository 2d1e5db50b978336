from __future__ import annotations

import math
from typing import Optional

import numpy as np

from profile_reader import ProfileFormatError, ProfileSeries

# -----------------------------------------------------------------------------
# Constants (values the experiment grid was tuned with)
# -----------------------------------------------------------------------------

DEFAULT_TOLERANCE = 0.01
DEFAULT_NODE_COUNT = 41
DEFAULT_TIME_STEP_S = 0.5

# Dense-array value for "not converged" cells.
NOT_CONVERGED = 0


# -----------------------------------------------------------------------------
# Depth discretization
# -----------------------------------------------------------------------------


def convergence_weight(node_count: int) -> float:
    """Normalized per-node weight used in the deviation integral.

    Depends only on the number of nodes, so the tolerance is dimensionless
    and comparable across water depths.
    """
    if node_count < 1:
        raise ValueError(f"invalid node_count={node_count} (must be >= 1)")
    return 1.0 / float(node_count)


def depth_spacing(depth: float, node_count: int) -> float:
    """Physical spacing between depth nodes (surface to bed, both included)."""
    if node_count < 2:
        raise ValueError(f"invalid node_count={node_count} (must be >= 2)")
    if not math.isfinite(depth) or depth <= 0.0:
        raise ValueError(f"invalid depth={depth!r} (must be finite and > 0)")
    return float(depth) / float(node_count - 1)


def depth_axis(depth: float, node_count: int) -> np.ndarray:
    return np.arange(node_count, dtype=float) * depth_spacing(depth, node_count)


# -----------------------------------------------------------------------------
# Convergence test
# -----------------------------------------------------------------------------


def deviation_energy(series: ProfileSeries, *, weight: Optional[float] = None) -> np.ndarray:
    """Weighted squared deviation of every step from the last recorded step.

    Element ``i`` belongs to 1-based step ``i + 1``.
    """
    w = convergence_weight(series.node_count) if weight is None else float(weight)
    diff = series.final[np.newaxis, :] - series.values
    return np.sum(diff * diff, axis=1) * w


def first_crossing(err_u: np.ndarray, err_v: np.ndarray, tolerance: float) -> Optional[int]:
    if len(err_u) != len(err_v):
        raise ValueError(f"energy length mismatch: {len(err_u)} != {len(err_v)}")
    for i in range(len(err_u)):
        if abs(err_u[i]) < tolerance and abs(err_v[i]) < tolerance:
            return i + 1
    return None


def _check_pair(u: ProfileSeries, v: ProfileSeries) -> None:
    if u.node_count != v.node_count:
        raise ProfileFormatError(f"node count mismatch between U and V: {u.node_count} != {v.node_count}")
    if u.step_count != v.step_count:
        raise ProfileFormatError(f"step count mismatch between U and V: {u.step_count} != {v.step_count}")


def relaxation_time(
    u: ProfileSeries,
    v: ProfileSeries,
    *,
    tolerance: float = DEFAULT_TOLERANCE,
    weight: Optional[float] = None,
) -> Optional[int]:
    """First 1-based step at which both components are within ``tolerance``
    of their final profile, or None when that never happens.

    Later re-crossings are not considered. A single recorded step cannot be
    compared against anything but itself and yields None.
    """
    if math.isnan(tolerance):
        raise ValueError("tolerance must not be NaN")
    _check_pair(u, v)
    if u.step_count < 2:
        return None
    return first_crossing(
        deviation_energy(u, weight=weight),
        deviation_energy(v, weight=weight),
        tolerance,
    )


def relaxation_seconds(step: Optional[int], time_step_s: float = DEFAULT_TIME_STEP_S) -> float:
    if step is None:
        return float("nan")
    return float(step) * float(time_step_s)


# -----------------------------------------------------------------------------
# Profile sampling for plots
# -----------------------------------------------------------------------------


def profile_sample_steps(step_count: int, minutes: float, *, output_interval_s: float = 60.0) -> list[int]:
    """0-based indices of profiles drawn every ``minutes`` (the last step is
    drawn on its own and excluded here)."""
    if step_count < 1:
        return []
    if not (minutes > 0.0) or not (output_interval_s > 0.0):
        raise ValueError(f"invalid sampling: minutes={minutes!r}, output_interval_s={output_interval_s!r}")
    every = max(1, int(round(minutes * 60.0 / float(output_interval_s))))
    return list(range(0, step_count - 1, every))
