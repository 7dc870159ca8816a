"""
Simulation Executor Module

This module runs an external simulator over batches of parameter points.

A simulator maps a dictionary of parameter values and a time grid to a
Trajectory. Batches may fan out over a thread or process pool; results are
always merged back in submission order. A simulator that raises, or returns
something unusable, yields an all-NaN trajectory for that point and a
SimulationFault record; it never aborts the batch.

Usage:
    from stl_falsifier.executor import FunctionSimulator, SimulationExecutor

    def damped(params, time):
        return np.exp(-params["k"] * time).reshape(1, -1)

    sim = FunctionSimulator(damped, signal_names=["x"], param_names=["k"])
    executor = SimulationExecutor(sim, time=np.linspace(0, 10, 101))
    trajectories, faults = executor.run_batch([{"k": 0.1}, {"k": 0.5}])
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .errors import SimulationFault
from .param_set import ParameterSet
from .signals import Trajectory

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Simulator contract
# ---------------------------------------------------------------------------

class Simulator(ABC):
    """
    Deterministic model: the same parameters and time grid must produce the
    same trajectory.
    """

    @property
    @abstractmethod
    def signal_names(self) -> List[str]:
        pass

    @property
    @abstractmethod
    def param_names(self) -> List[str]:
        pass

    @abstractmethod
    def simulate(self, params: Dict[str, float], time: np.ndarray) -> Trajectory:
        pass

    @property
    def default_params(self) -> Dict[str, float]:
        return {name: 0.0 for name in self.param_names}


class FunctionSimulator(Simulator):
    """
    Wrap ``fn(params, time) -> values`` with values of shape (n_signals, n_times).

    The function may also return a Trajectory directly. For process pools the
    function must be picklable (a module-level function).
    """

    def __init__(self, fn: Callable[[Dict[str, float], np.ndarray], Any],
                 signal_names: Sequence[str], param_names: Sequence[str],
                 defaults: Optional[Dict[str, float]] = None):
        self.fn = fn
        self._signal_names = list(signal_names)
        self._param_names = list(param_names)
        self._defaults = {name: float((defaults or {}).get(name, 0.0)) for name in self._param_names}

    @property
    def signal_names(self) -> List[str]:
        return self._signal_names

    @property
    def param_names(self) -> List[str]:
        return self._param_names

    @property
    def default_params(self) -> Dict[str, float]:
        return dict(self._defaults)

    def simulate(self, params: Dict[str, float], time: np.ndarray) -> Trajectory:
        out = self.fn(params, time)
        if isinstance(out, Trajectory):
            return out
        return Trajectory(time=time, values=out, signal_names=self._signal_names)


def _simulate_one(simulator: Simulator, params: Dict[str, float], time: np.ndarray) -> Trajectory:
    """Worker entry point (module level so process pools can pickle it)."""
    traj = simulator.simulate(params, time)
    if not isinstance(traj, Trajectory):
        raise TypeError(f"Simulator returned {type(traj).__name__}, expected Trajectory")
    missing = set(simulator.signal_names) - set(traj.signal_names)
    if missing:
        raise ValueError(f"Simulator output lacks signals {sorted(missing)}")
    return traj


# ---------------------------------------------------------------------------
# Execution Configuration
# ---------------------------------------------------------------------------

@dataclass
class ExecutionConfig:
    """Configuration for batch simulation."""

    # Pool settings (1 worker runs in the calling thread)
    max_workers: int = 1
    use_processes: bool = False

    # Progress output
    verbose: bool = False
    progress_every: int = 100


# ---------------------------------------------------------------------------
# Simulation Executor
# ---------------------------------------------------------------------------

class SimulationExecutor:
    """
    Runs a simulator over batches of parameter points.

    This class handles:
    - Sequential or pooled execution
    - Ordered merging of pooled results
    - Mapping faults to failed trajectories
    """

    def __init__(self, simulator: Simulator, time: Sequence[float],
                 exec_config: Optional[ExecutionConfig] = None):
        self.simulator = simulator
        self.time = np.asarray(time, dtype=float).reshape(-1)
        self.config = exec_config or ExecutionConfig()
        self.num_simulations = 0
        self.num_faults = 0

    def _failed(self, params: Dict[str, float], error: BaseException) -> Tuple[Trajectory, SimulationFault]:
        fault = SimulationFault(params, f"{type(error).__name__}: {error}")
        logger.debug("%s", fault)
        return Trajectory.failed_like(self.time, self.simulator.signal_names), fault

    def run_batch(self, points: Sequence[Dict[str, float]]) -> Tuple[List[Trajectory], List[SimulationFault]]:
        """
        Simulate every point.

        Returns:
            Trajectories in the order of ``points`` and the faults encountered
        """
        results: List[Optional[Trajectory]] = [None] * len(points)  # Pre-allocate to maintain order
        faults: List[Tuple[int, SimulationFault]] = []

        if self.config.max_workers <= 1 or len(points) <= 1:
            for i, params in enumerate(points):
                try:
                    results[i] = _simulate_one(self.simulator, params, self.time)
                except Exception as e:
                    results[i], fault = self._failed(params, e)
                    faults.append((i, fault))
                if self.config.verbose and (i + 1) % self.config.progress_every == 0:
                    print(f"Simulated {i + 1}/{len(points)} points...")
        else:
            pool_cls = ProcessPoolExecutor if self.config.use_processes else ThreadPoolExecutor
            with pool_cls(max_workers=self.config.max_workers) as pool:
                # Submit all tasks
                future_to_index = {
                    pool.submit(_simulate_one, self.simulator, params, self.time): i
                    for i, params in enumerate(points)
                }

                completed = 0
                for future in as_completed(future_to_index):
                    index = future_to_index[future]
                    try:
                        results[index] = future.result()
                    except Exception as e:
                        results[index], fault = self._failed(points[index], e)
                        faults.append((index, fault))
                    completed += 1
                    if self.config.verbose and completed % self.config.progress_every == 0:
                        print(f"Simulated {completed}/{len(points)} points...")

        self.num_simulations += len(points)
        self.num_faults += len(faults)
        if faults:
            logger.info("%d of %d simulations failed", len(faults), len(points))
        return results, [f for _, f in sorted(faults, key=lambda x: x[0])]

    def compute_trajectories(self, param_set: ParameterSet) -> Tuple[ParameterSet, List[SimulationFault]]:
        """
        Simulate every unique combination of ``param_set`` lacking a trajectory.

        Each combination is simulated once and shared by all points with the
        same simulation parameters.
        """
        missing = param_set.missing_trajectories()
        if not missing:
            return param_set, []
        points = [self._sim_params(param_set, u) for u in missing]
        trajectories, faults = self.run_batch(points)
        return param_set.with_trajectories(dict(zip(missing, trajectories))), faults

    def _sim_params(self, param_set: ParameterSet, unique_idx: int) -> Dict[str, float]:
        values = param_set.sim_values(unique_idx)
        wanted = set(self.simulator.param_names)
        unknown = [n for n in wanted if n not in param_set.sim_names]
        if unknown:
            raise KeyError(f"Simulator parameters {sorted(unknown)} are not simulation columns of the parameter set")
        return {n: v for n, v in values.items() if n in wanted}
