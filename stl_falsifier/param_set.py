"""
Parameter sets: points with uncertainty radii, shared trajectories and a
robustness memo.

A ParameterSet is immutable. Every transformation (refine, select, sampling,
set_param) returns a new set; callers that want in-place semantics rebind.

Columns are split in two groups. The leading ``num_sim_params`` columns are
simulation parameters: points that agree on them share one trajectory. The
remaining columns only matter to evaluation (e.g. formula thresholds).
"""

import itertools
import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.stats import qmc

from .errors import RefinementVolumeMismatchError
from .signals import Trajectory

SimKey = Tuple[float, ...]


@dataclass(frozen=True)
class ParameterRange:
    """
    A bounded continuous parameter.

    Attributes:
        name: Parameter name
        low: Lower bound
        high: Upper bound
    """
    name: str
    low: float
    high: float

    def __post_init__(self):
        if self.high < self.low:
            raise ValueError(f"Parameter '{self.name}': high {self.high} < low {self.low}")

    @property
    def center(self) -> float:
        return 0.5 * (self.low + self.high)

    @property
    def radius(self) -> float:
        return 0.5 * (self.high - self.low)

    def sample(self, value: float) -> float:
        """
        Map a normalized value in [0, 1] into the range.
        """
        return self.low + value * (self.high - self.low)

    def normalize(self, value: float) -> float:
        if self.high == self.low:
            return 0.5
        return (value - self.low) / (self.high - self.low)


def _dedup(sim_points: np.ndarray) -> Tuple[np.ndarray, List[SimKey]]:
    """Index of each row's first-occurring identical row among the unique rows."""
    seen: Dict[SimKey, int] = {}
    index = np.empty(sim_points.shape[0], dtype=int)
    for i, row in enumerate(sim_points):
        key = tuple(float(v) for v in row)
        index[i] = seen.setdefault(key, len(seen))
    return index, list(seen.keys())


def _box_volume(radii: np.ndarray) -> float:
    return float(np.prod(2.0 * radii))


class ParameterSet:
    """
    Ordered parameter points sharing one naming scheme.

    Attributes:
        names: Parameter names, one per column
        points: Values, shape (n_points, n_params)
        radii: Uncertainty half-widths, same shape as ``points``
        num_sim_params: Leading columns that affect simulation
        traj_index: For each point, the index of its unique simulation combination
        unique_keys: The unique simulation combinations, in first-occurrence order
    """

    def __init__(
        self,
        names: Sequence[str],
        points: Union[np.ndarray, Sequence[Sequence[float]]],
        radii: Optional[Union[np.ndarray, Sequence[Sequence[float]]]] = None,
        num_sim_params: Optional[int] = None,
        trajectories: Optional[Mapping[SimKey, Trajectory]] = None,
        robustness: Optional[Mapping[Tuple[str, int], float]] = None,
    ):
        names = tuple(names)
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate parameter names: {names}")
        points = np.array(points, dtype=float).reshape(-1, len(names))
        radii = np.zeros_like(points) if radii is None else np.array(radii, dtype=float).reshape(points.shape)
        if (radii < 0).any():
            raise ValueError("Radii must be non-negative")
        if num_sim_params is None:
            num_sim_params = len(names)
        if not 0 <= num_sim_params <= len(names):
            raise ValueError(f"num_sim_params={num_sim_params} out of range for {len(names)} parameters")

        points.flags.writeable = False
        radii.flags.writeable = False
        self.names = names
        self.points = points
        self.radii = radii
        self.num_sim_params = num_sim_params

        self.traj_index, self.unique_keys = _dedup(points[:, :num_sim_params])
        self.traj_index.flags.writeable = False
        keys = set(self.unique_keys)
        self._trajectories: Dict[SimKey, Trajectory] = {
            k: v for k, v in (trajectories or {}).items() if k in keys
        }
        n = len(self)
        self._robustness: Dict[Tuple[str, int], float] = {
            k: float(v) for k, v in (robustness or {}).items() if 0 <= k[1] < n
        }

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def from_ranges(cls, ranges: Sequence[ParameterRange], num_sim_params: Optional[int] = None,
                    n_samples: Optional[int] = None) -> "ParameterSet":
        """
        One point covering the box given by ``ranges``.

        With ``n_samples``, a uniform grid of n_samples per uncertain dimension.
        """
        pset = cls(
            names=[r.name for r in ranges],
            points=[[r.center for r in ranges]],
            radii=[[r.radius for r in ranges]],
            num_sim_params=num_sim_params,
        )
        if n_samples is not None:
            pset = pset.grid_sample(n_samples)
        return pset

    @classmethod
    def create(cls, names: Sequence[str], ranges: Sequence[Tuple[float, float]],
               num_sim_params: Optional[int] = None, n_samples: Optional[int] = None) -> "ParameterSet":
        if len(names) != len(ranges):
            raise ValueError("names and ranges must have the same length")
        return cls.from_ranges([ParameterRange(n, float(lo), float(hi)) for n, (lo, hi) in zip(names, ranges)],
                               num_sim_params=num_sim_params, n_samples=n_samples)

    def _rebuild(self, points: np.ndarray, radii: np.ndarray, names: Optional[Sequence[str]] = None,
                 num_sim_params: Optional[int] = None,
                 robustness: Optional[Mapping[Tuple[str, int], float]] = None) -> "ParameterSet":
        # trajectories carry over by simulation key; the memo only when given
        return ParameterSet(
            names=self.names if names is None else names,
            points=points,
            radii=radii,
            num_sim_params=self.num_sim_params if num_sim_params is None else num_sim_params,
            trajectories=self._trajectories,
            robustness=robustness,
        )

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return self.points.shape[0]

    @property
    def num_params(self) -> int:
        return len(self.names)

    @property
    def num_unique(self) -> int:
        return len(self.unique_keys)

    @property
    def sim_names(self) -> Tuple[str, ...]:
        return self.names[:self.num_sim_params]

    def index_of(self, name: str) -> int:
        try:
            return self.names.index(name)
        except ValueError:
            raise KeyError(f"No parameter named '{name}'") from None

    def _dims(self, dims: Optional[Iterable[Union[str, int]]]) -> List[int]:
        if dims is None:
            return [j for j in range(self.num_params) if (self.radii[:, j] > 0).any()]
        return [d if isinstance(d, int) else self.index_of(d) for d in dims]

    def uncertain_dims(self) -> List[int]:
        return self._dims(None)

    def get_param(self, name: str) -> np.ndarray:
        return self.points[:, self.index_of(name)].copy()

    def point_dict(self, i: int) -> Dict[str, float]:
        return {n: float(v) for n, v in zip(self.names, self.points[i])}

    def sim_values(self, unique_idx: int) -> Dict[str, float]:
        return dict(zip(self.sim_names, self.unique_keys[unique_idx]))

    def bounds(self, name: str) -> Tuple[float, float]:
        """Smallest interval containing every point's box along ``name``."""
        j = self.index_of(name)
        return (float(np.min(self.points[:, j] - self.radii[:, j])),
                float(np.max(self.points[:, j] + self.radii[:, j])))

    # -------------------------------------------------------------------------
    # Trajectories and robustness memo
    # -------------------------------------------------------------------------

    def trajectory(self, i: int) -> Optional[Trajectory]:
        """Trajectory of point ``i``, or None if not simulated yet."""
        return self._trajectories.get(self.unique_keys[self.traj_index[i]])

    def unique_trajectory(self, unique_idx: int) -> Optional[Trajectory]:
        return self._trajectories.get(self.unique_keys[unique_idx])

    def missing_trajectories(self) -> List[int]:
        """Unique combinations without a trajectory, in first-occurrence order."""
        return [u for u, key in enumerate(self.unique_keys) if key not in self._trajectories]

    def with_trajectories(self, trajectories: Mapping[int, Trajectory]) -> "ParameterSet":
        """New set with trajectories attached, keyed by unique-combination index."""
        merged = dict(self._trajectories)
        for u, traj in trajectories.items():
            merged[self.unique_keys[u]] = traj
        return ParameterSet(self.names, self.points, self.radii, self.num_sim_params,
                            trajectories=merged, robustness=self._robustness)

    def robustness(self, formula_id: str, i: int) -> Optional[float]:
        return self._robustness.get((formula_id, i))

    def with_robustness(self, formula_id: str, values: Mapping[int, float]) -> "ParameterSet":
        memo = dict(self._robustness)
        memo.update({(formula_id, int(i)): float(v) for i, v in values.items()})
        return ParameterSet(self.names, self.points, self.radii, self.num_sim_params,
                            trajectories=self._trajectories, robustness=memo)

    def without_robustness(self, formula_id: Optional[str] = None) -> "ParameterSet":
        """Forget memoized robustness of one formula (all formulas by default)."""
        memo = {} if formula_id is None else {
            k: v for k, v in self._robustness.items()
            if k[0] != formula_id and not k[0].startswith(formula_id + "@")
        }
        return ParameterSet(self.names, self.points, self.radii, self.num_sim_params,
                            trajectories=self._trajectories, robustness=memo)

    def purge(self) -> "ParameterSet":
        """Drop trajectories and memoized robustness; recompute the dedup index."""
        return ParameterSet(self.names, self.points, self.radii, self.num_sim_params)

    # -------------------------------------------------------------------------
    # Transformations
    # -------------------------------------------------------------------------

    def select(self, indices: Union[Sequence[int], np.ndarray]) -> "ParameterSet":
        """
        Subset of points, in the given order.

        Trajectories and memoized robustness of retained points are kept.
        """
        indices = np.asarray(indices)
        if indices.dtype == bool:
            indices = np.nonzero(indices)[0]
        indices = indices.astype(int).reshape(-1)
        # an index may be selected more than once
        new_positions: Dict[int, List[int]] = {}
        for new_i, old_i in enumerate(indices.tolist()):
            new_positions.setdefault(old_i, []).append(new_i)
        memo = {}
        for (fid, i), v in self._robustness.items():
            for new_i in new_positions.get(i, ()):
                memo[(fid, new_i)] = v
        return self._rebuild(self.points[indices], self.radii[indices], robustness=memo)

    def concat(self, other: "ParameterSet") -> "ParameterSet":
        if other.names != self.names or other.num_sim_params != self.num_sim_params:
            raise ValueError("Cannot concatenate parameter sets with different parameters")
        trajectories = dict(self._trajectories)
        trajectories.update(other._trajectories)
        memo = dict(self._robustness)
        memo.update({(fid, i + len(self)): v for (fid, i), v in other._robustness.items()})
        return ParameterSet(self.names, np.vstack([self.points, other.points]),
                            np.vstack([self.radii, other.radii]), self.num_sim_params,
                            trajectories=trajectories, robustness=memo)

    def set_param(self, name: Union[str, Sequence[str]], values) -> "ParameterSet":
        """
        Set one or several parameters on every point.

        ``values`` is a scalar or one value per point (a column per name when
        several names are given). Unknown names are appended as evaluation-only
        parameters with zero radius. Several values on a single-point set
        replicate that point once per value.
        """
        names = [name] if isinstance(name, str) else list(name)
        values = np.asarray(values, dtype=float)
        if len(names) == 1:
            values = values.reshape(-1, 1)
        else:
            values = values.reshape(-1, len(names)) if values.ndim > 1 else values.reshape(1, -1)

        base = self
        if values.shape[0] > 1 and len(self) == 1:
            base = self.select([0] * values.shape[0])
        elif values.shape[0] not in (1, len(self)):
            raise ValueError(f"{values.shape[0]} values for {len(self)} points")

        all_names = list(base.names)
        points = base.points.copy()
        radii = base.radii.copy()
        for k, n in enumerate(names):
            col = np.broadcast_to(values[:, k], (len(base),))
            if n in all_names:
                j = all_names.index(n)
                points[:, j] = col
                radii[:, j] = 0.0
            else:
                all_names.append(n)
                points = np.hstack([points, col.reshape(-1, 1)])
                radii = np.hstack([radii, np.zeros((len(base), 1))])
        return base._rebuild(points, radii, names=all_names)

    def set_ranges(self, names: Sequence[str], ranges: Sequence[Tuple[float, float]]) -> "ParameterSet":
        """Center every point on the given ranges, with matching radii."""
        names = list(names)
        if len(names) != len(ranges):
            raise ValueError("names and ranges must have the same length")
        rng = [ParameterRange(n, float(lo), float(hi)) for n, (lo, hi) in zip(names, ranges)]
        pset = self.set_param(names, [r.center for r in rng])
        radii = pset.radii.copy()
        for r in rng:
            radii[:, pset.index_of(r.name)] = r.radius
        return pset._rebuild(pset.points, radii)

    def refine(self, factor: Union[int, Sequence[int]],
               dims: Optional[Iterable[Union[str, int]]] = None) -> "ParameterSet":
        """
        Split every point's box into ``factor`` equal cells along each of
        ``dims`` (default: every uncertain dimension).

        Exact values (zero radius) are left as they are.

        Raises:
            RefinementVolumeMismatchError: if the cells do not cover their box
        """
        dims = self._dims(dims)
        factors = [int(factor)] * len(dims) if np.isscalar(factor) else [int(f) for f in factor]
        if len(factors) != len(dims):
            raise ValueError("One refinement factor per dimension is required")
        if any(f < 1 for f in factors):
            raise ValueError("Refinement factors must be >= 1")

        new_points, new_radii = [], []
        for i, (x, r) in enumerate(zip(self.points, self.radii)):
            axes = []
            for j, f in zip(dims, factors):
                if r[j] == 0:
                    axes.append([(x[j], 0.0)])
                    continue
                sub = r[j] / f
                lo = x[j] - r[j]
                axes.append([(lo + (2 * k + 1) * sub, sub) for k in range(f)])

            before = _box_volume(r[dims])
            after = 0.0
            for cell in itertools.product(*axes):
                p, q = x.copy(), r.copy()
                for j, (c, s) in zip(dims, cell):
                    p[j], q[j] = c, s
                after += _box_volume(q[dims])
                new_points.append(p)
                new_radii.append(q)
            if not np.isclose(before, after, rtol=1e-9, atol=0.0):
                raise RefinementVolumeMismatchError(i, before, after)

        return self._rebuild(np.array(new_points), np.array(new_radii))

    def grid_sample(self, n: Union[int, Sequence[int]],
                    dims: Optional[Iterable[Union[str, int]]] = None) -> "ParameterSet":
        """Uniform grid of ``n`` cell centers per dimension inside each box."""
        return self.refine(n, dims)

    def corners(self, dims: Optional[Iterable[Union[str, int]]] = None) -> "ParameterSet":
        """Every low/high combination of the uncertain dimensions, as exact points."""
        dims = self._dims(dims)
        new_points = []
        for x, r in zip(self.points, self.radii):
            active = [j for j in dims if r[j] > 0]
            for signs in itertools.product((-1.0, 1.0), repeat=len(active)):
                p = x.copy()
                for j, s in zip(active, signs):
                    p[j] = x[j] + s * r[j]
                new_points.append(p)
        radii = np.zeros((len(new_points), self.num_params))
        return self._rebuild(np.array(new_points).reshape(-1, self.num_params), radii)

    def quasi_random_sample(self, n: int, seed: int = 0,
                            dims: Optional[Iterable[Union[str, int]]] = None) -> "ParameterSet":
        """
        ``n`` Halton points inside each box, starting at sequence index ``seed``.

        Sampling is deterministic; a caller drawing successive batches advances
        ``seed`` by ``n`` to avoid repeats. Sampled points keep a radius of
        r / n^(1/d) so they can be refined further.
        """
        if n < 1:
            raise ValueError("n must be >= 1")
        dims = self._dims(dims)
        new_points, new_radii = [], []
        for x, r in zip(self.points, self.radii):
            active = [j for j in dims if r[j] > 0]
            if not active:
                new_points.extend([x] * n)
                new_radii.extend([r] * n)
                continue
            sampler = qmc.Halton(d=len(active), scramble=False)
            if seed:
                sampler.fast_forward(int(seed))
            u = sampler.random(n)
            shrink = n ** (1.0 / len(active))
            for row in u:
                p, q = x.copy(), r.copy()
                for j, v in zip(active, row):
                    p[j] = x[j] - r[j] + 2.0 * r[j] * v
                    q[j] = r[j] / shrink
                new_points.append(p)
                new_radii.append(q)
        return self._rebuild(np.array(new_points), np.array(new_radii))

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def to_dict(self, include_trajectories: bool = True) -> Dict[str, Any]:
        data = {
            "names": list(self.names),
            "points": self.points.tolist(),
            "radii": self.radii.tolist(),
            "num_sim_params": self.num_sim_params,
            "traj_index": self.traj_index.tolist(),
            "robustness": [
                {"formula": fid, "point": i, "value": None if np.isnan(v) else v}
                for (fid, i), v in sorted(self._robustness.items())
            ],
        }
        if include_trajectories:
            data["trajectories"] = {
                str(u): self._trajectories[key].to_dict()
                for u, key in enumerate(self.unique_keys) if key in self._trajectories
            }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParameterSet":
        pset = cls(
            names=data["names"],
            points=data["points"],
            radii=data["radii"],
            num_sim_params=data["num_sim_params"],
            robustness={
                (r["formula"], int(r["point"])): np.nan if r["value"] is None else r["value"]
                for r in data.get("robustness", [])
            },
        )
        if "traj_index" in data and list(data["traj_index"]) != pset.traj_index.tolist():
            raise ValueError("Stored dedup index does not match the stored points")
        trajectories = {int(u): Trajectory.from_dict(t) for u, t in data.get("trajectories", {}).items()}
        return pset.with_trajectories(trajectories) if trajectories else pset

    def save(self, filepath: str, include_trajectories: bool = True):
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(include_trajectories), f, indent=2)

    @classmethod
    def load(cls, filepath: str) -> "ParameterSet":
        with open(filepath, 'r') as f:
            return cls.from_dict(json.load(f))

    def __repr__(self) -> str:
        return (f"ParameterSet(names={list(self.names)}, points={len(self)}, "
                f"unique={self.num_unique}, simulated={self.num_unique - len(self.missing_trajectories())})")
