"""
Trajectories and read-only signal access.

A Trajectory is the sampled output of one simulation: a strictly increasing
time grid and one row of values per signal channel. SignalView interpolates
the channels linearly between samples and refuses queries outside the
recorded time range.

Usage:
    traj = Trajectory(time=[0, 1, 2], values=[[0, 1, 4]], signal_names=["x"])
    view = SignalView(traj)
    view.value_at("x", 1.5)   # 2.5
"""

import csv
import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .errors import OutOfDomainTimeError

# Relative slack accepted on domain checks to absorb floating-point rounding
# of interval arithmetic (t + a); anything further out is an error.
TIME_TOLERANCE = 1e-9


def time_tolerance(start: float, end: float) -> float:
    return TIME_TOLERANCE * max(1.0, abs(start), abs(end))


def interp_exact(x: np.ndarray, xp: np.ndarray, fp: np.ndarray) -> np.ndarray:
    """
    Piecewise-linear interpolation returning fp exactly at sample times.

    np.interp alone lets a NaN sample leak into its neighbour's exact value.
    """
    x = np.asarray(x, dtype=float)
    if xp.size == 1:
        return np.full(x.shape, fp[0], dtype=float)
    out = np.interp(x, xp, fp)
    idx = np.clip(np.searchsorted(xp, x), 0, xp.size - 1)
    exact = xp[idx] == x
    out[exact] = fp[idx[exact]]
    return out


# =============================================================================
# TRAJECTORY
# =============================================================================

@dataclass(frozen=True, eq=False)
class Trajectory:
    """
    Sampled simulation output.

    Attributes:
        time: Strictly increasing sample times, shape (n,)
        values: Channel values, shape (n_signals, n)
        signal_names: Channel names, one per row of ``values``
    """
    time: np.ndarray
    values: np.ndarray
    signal_names: Tuple[str, ...]

    def __post_init__(self):
        time = np.array(self.time, dtype=float).reshape(-1)
        values = np.array(self.values, dtype=float)
        if values.ndim == 1:
            values = values.reshape(1, -1)
        names = tuple(self.signal_names)

        if time.size == 0:
            raise ValueError("Trajectory needs at least one sample")
        if time.size > 1 and not np.all(np.diff(time) > 0):
            raise ValueError("Trajectory time grid must be strictly increasing")
        if values.shape != (len(names), time.size):
            raise ValueError(
                f"values has shape {values.shape}, expected ({len(names)}, {time.size})"
            )
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate signal names: {names}")

        time.flags.writeable = False
        values.flags.writeable = False
        object.__setattr__(self, "time", time)
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "signal_names", names)

    @classmethod
    def failed_like(cls, time: Sequence[float], signal_names: Sequence[str]) -> "Trajectory":
        """All-NaN trajectory standing for a simulation fault."""
        time = np.asarray(time, dtype=float).reshape(-1)
        values = np.full((len(signal_names), time.size), np.nan)
        return cls(time=time, values=values, signal_names=tuple(signal_names))

    @property
    def failed(self) -> bool:
        return bool(np.isnan(self.values).any())

    @property
    def start(self) -> float:
        return float(self.time[0])

    @property
    def end(self) -> float:
        return float(self.time[-1])

    def index(self, name: str) -> int:
        try:
            return self.signal_names.index(name)
        except ValueError:
            raise KeyError(f"Trajectory has no signal '{name}'") from None

    def signal(self, name: str) -> np.ndarray:
        return self.values[self.index(name)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time": self.time.tolist(),
            "signals": {
                name: [None if np.isnan(v) else float(v) for v in row]
                for name, row in zip(self.signal_names, self.values)
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trajectory":
        names = list(data["signals"].keys())
        values = [
            [np.nan if v is None else float(v) for v in data["signals"][name]]
            for name in names
        ]
        return cls(time=data["time"], values=values, signal_names=names)


# =============================================================================
# SIGNAL VIEW
# =============================================================================

class SignalView:
    """Read-only, interpolating access to a trajectory's channels."""

    def __init__(self, trajectory: Trajectory):
        self.trajectory = trajectory

    @property
    def domain(self) -> Tuple[float, float]:
        return self.trajectory.start, self.trajectory.end

    def _clip_to_domain(self, times: np.ndarray, name: Optional[str] = None) -> np.ndarray:
        start, end = self.domain
        tol = time_tolerance(start, end)
        if times.size:
            bad = (times < start - tol) | (times > end + tol) | np.isnan(times)
            if bad.any():
                raise OutOfDomainTimeError(float(times[bad][0]), (start, end), name)
        return np.clip(times, start, end)

    def interpolate(self, name: str, times: Iterable[float]) -> np.ndarray:
        """Values of channel ``name`` at ``times`` (piecewise-linear)."""
        times = self._clip_to_domain(np.asarray(times, dtype=float).reshape(-1), name)
        return interp_exact(times, self.trajectory.time, self.trajectory.signal(name))

    def value_at(self, name: str, t: float) -> float:
        return float(self.interpolate(name, [t])[0])

    def values_at(self, t: float) -> np.ndarray:
        """Every channel at time ``t``, in ``signal_names`` order."""
        return np.array([self.value_at(name, t) for name in self.trajectory.signal_names])

    def samples(self, name: str) -> Tuple[np.ndarray, np.ndarray]:
        return self.trajectory.time, self.trajectory.signal(name)

    def breakpoints(self, extra: Iterable[float] = ()) -> np.ndarray:
        """
        Sorted union of the sample times and injected times.

        Injected times outside the recorded range are dropped, since no value
        can be read there.
        """
        start, end = self.domain
        extra = np.asarray(list(extra), dtype=float)
        if extra.size:
            tol = time_tolerance(start, end)
            extra = extra[(extra >= start - tol) & (extra <= end + tol)]
            extra = np.clip(extra, start, end)
        return np.union1d(self.trajectory.time, extra)


# =============================================================================
# TRACE LOADING
# =============================================================================

def load_trace_from_csv(filepath: str, time_column: str = "time") -> Trajectory:
    """
    Load a trajectory from a CSV file with a time column and one column per
    signal. Empty cells and 'nan' are read as NaN.
    """
    with open(filepath, 'r', newline='') as f:
        reader = csv.DictReader(f)
        if reader.fieldnames is None or time_column not in reader.fieldnames:
            raise ValueError(f"{filepath}: missing '{time_column}' column")
        names = [c for c in reader.fieldnames if c != time_column]
        time: List[float] = []
        rows: List[List[float]] = []
        for row in reader:
            time.append(float(row[time_column]))
            rows.append([float(row[n]) if row[n] not in ("", None) else np.nan for n in names])
    values = np.array(rows, dtype=float).T if rows else np.zeros((len(names), 0))
    return Trajectory(time=time, values=values, signal_names=names)


def load_trace_from_json(filepath: str) -> Trajectory:
    """
    Load a trajectory from JSON.

    JSON format options:
    1. Columns: {"time": [...], "signals": {"x": [...], ...}}
    2. Rows: {"trace": [{"time": 0.0, "x": 1.0, ...}, ...]}
    """
    with open(filepath, 'r') as f:
        data = json.load(f)

    if 'signals' in data:
        return Trajectory.from_dict(data)

    if 'trace' in data:
        samples = data['trace']
        if not samples:
            raise ValueError(f"Empty trace in {filepath}")
        names = [k for k in samples[0].keys() if k != 'time']
        time = [float(s['time']) for s in samples]
        values = [[float(s[n]) if s.get(n) is not None else np.nan for s in samples] for n in names]
        return Trajectory(time=time, values=values, signal_names=names)

    raise ValueError(f"Unknown JSON format in {filepath}")


def load_trace(filepath: str) -> Trajectory:
    """Dispatch on file extension."""
    if str(filepath).lower().endswith(".json"):
        return load_trace_from_json(filepath)
    return load_trace_from_csv(filepath)
