"""
Analysis session: the query surface over a simulator, a formula registry and
a parameter set.

The session holds one mutable binding to an immutable ParameterSet and
rebinds it after every transformation, so readers holding an older set keep a
consistent snapshot.

Usage:
    session = AnalysisSession(simulator, time=np.arange(0, 10.01, 0.1))
    session.load_specs("specs.stl")
    session.set_param_ranges(["k"], [(0.1, 2.0)])
    session.grid_sample(5)
    rob = session.check_spec("phi")
    sat, viol = session.filter_spec("phi")
"""

import logging
import os
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import SimulationFault
from .executor import ExecutionConfig, SimulationExecutor, Simulator
from .formula import FormulaRegistry, Predicate, STLFormula
from .param_set import ParameterSet
from .robustness import RobustnessSignal, evaluate, robustness_signal
from .signals import time_tolerance
from .spec_parser import SpecParser, parse_formula, parse_spec_file, parse_spec_text

logger = logging.getLogger(__name__)

FormulaLike = Union[str, STLFormula]


class AnalysisSession:
    """
    Simulation-backed robustness queries.

    Attributes:
        simulator: External model
        time: Simulation time grid
        registry: Formulas, declared signals and parameter defaults
        param_set: Current parameter set (rebound, never mutated)
        executor: Batch simulation runner
        faults: Simulation faults seen so far
    """

    def __init__(self, simulator: Simulator, time: Sequence[float],
                 registry: Optional[FormulaRegistry] = None,
                 exec_config: Optional[ExecutionConfig] = None):
        self.simulator = simulator
        self.time = np.asarray(time, dtype=float).reshape(-1)
        self.registry = registry if registry is not None else FormulaRegistry()
        self.registry.declare_signals(simulator.signal_names)
        self.executor = SimulationExecutor(simulator, self.time, exec_config)
        self.faults: List[SimulationFault] = []
        self.param_set = self._nominal_set()

    def _nominal_set(self) -> ParameterSet:
        defaults = self.simulator.default_params
        names = list(self.simulator.param_names)
        return ParameterSet(names, [[defaults.get(n, 0.0) for n in names]], num_sim_params=len(names))

    # -------------------------------------------------------------------------
    # Specifications
    # -------------------------------------------------------------------------

    def _rebound(self, formulas: Sequence[STLFormula], params_before: Dict[str, float], replace: bool):
        """Drop memoized robustness that no longer matches the registry."""
        if self.registry.params != params_before:
            # parameter defaults feed every formula
            self.param_set = self.param_set.without_robustness()
        elif replace:
            for formula in formulas:
                self.param_set = self.param_set.without_robustness(formula.id)

    def add_spec(self, phi: FormulaLike, formula_id: Optional[str] = None,
                 replace: bool = False) -> STLFormula:
        """
        Register a formula object, a ``name := ...`` statement, or a bare
        formula body (named ``formula_id`` or a fresh ``phi`` id).
        """
        params_before = dict(self.registry.params)
        formulas: List[STLFormula] = []
        try:
            if isinstance(phi, STLFormula):
                formulas = [self.registry.add(phi, replace=replace)]
            elif ':=' in phi:
                formulas = parse_spec_text(phi, self.registry, replace=replace)
                if not formulas:
                    raise ValueError("No formula definition found")
            else:
                formulas = [parse_formula(phi, self.registry, formula_id=formula_id, replace=replace)]
        finally:
            self._rebound(formulas, params_before, replace)
        return formulas[-1]

    def set_spec(self, phi: FormulaLike, formula_id: Optional[str] = None) -> STLFormula:
        """Clear every registered formula and register ``phi``."""
        self.registry.clear()
        self.param_set = self.param_set.without_robustness()
        return self.add_spec(phi, formula_id=formula_id)

    def load_specs(self, source: str, replace: bool = False) -> List[STLFormula]:
        """Parse a specification file (if ``source`` is a path) or text."""
        params_before = dict(self.registry.params)
        formulas: List[STLFormula] = []
        try:
            if os.path.isfile(source):
                formulas = parse_spec_file(source, self.registry, replace=replace)
            else:
                formulas = parse_spec_text(source, self.registry, replace=replace)
        finally:
            self._rebound(formulas, params_before, replace)
        return formulas

    def get_spec(self, phi: FormulaLike) -> STLFormula:
        """
        Registered formula for an id or a formula object. An object whose id
        is already bound to a different body raises
        FormulaIdentifierConflictError.
        """
        if isinstance(phi, STLFormula):
            return self.registry.add(phi)
        return self.registry.get(phi)

    # -------------------------------------------------------------------------
    # Parameter set
    # -------------------------------------------------------------------------

    def set_param_ranges(self, names: Sequence[str], ranges: Sequence[Tuple[float, float]]) -> ParameterSet:
        self.param_set = self.param_set.set_ranges(names, ranges)
        return self.param_set

    def set_param(self, names: Union[str, Sequence[str]], values) -> ParameterSet:
        self.param_set = self.param_set.set_param(names, values)
        return self.param_set

    def grid_sample(self, n: Union[int, Sequence[int]], dims: Optional[Sequence[str]] = None) -> ParameterSet:
        self.param_set = self.param_set.grid_sample(n, dims)
        return self.param_set

    def quasi_random_sample(self, n: int, seed: int = 0, dims: Optional[Sequence[str]] = None) -> ParameterSet:
        self.param_set = self.param_set.quasi_random_sample(n, seed=seed, dims=dims)
        return self.param_set

    def corners(self, dims: Optional[Sequence[str]] = None) -> ParameterSet:
        self.param_set = self.param_set.corners(dims)
        return self.param_set

    def reset_param_set(self) -> ParameterSet:
        """Back to the simulator's nominal point; trajectories are dropped."""
        self.param_set = self._nominal_set()
        return self.param_set

    def eval_params(self, param_set: ParameterSet, i: int) -> Dict[str, float]:
        """Registry defaults overridden by point ``i``'s values."""
        params = dict(self.registry.params)
        params.update(param_set.point_dict(i))
        return params

    # -------------------------------------------------------------------------
    # Simulation and evaluation
    # -------------------------------------------------------------------------

    def simulate(self, param_set: ParameterSet) -> ParameterSet:
        param_set, faults = self.executor.compute_trajectories(param_set)
        self.faults.extend(faults)
        return param_set

    def sim(self) -> ParameterSet:
        """Fill in trajectories missing from the current parameter set."""
        self.param_set = self.simulate(self.param_set)
        return self.param_set

    @staticmethod
    def _memo_key(formula: STLFormula, t_phi: Optional[float]) -> str:
        return formula.id if t_phi is None else f"{formula.id}@t={float(t_phi)!r}"

    def evaluate_set(self, phi: FormulaLike, param_set: ParameterSet,
                     t_phi: Optional[float] = None) -> Tuple[ParameterSet, np.ndarray]:
        """
        Robustness of ``phi`` at ``t_phi`` (default: trajectory start) for
        every point of ``param_set``, simulating as needed.

        Returns:
            The parameter set with trajectories and memo filled, and the values
        """
        formula = self.get_spec(phi)
        param_set = self.simulate(param_set)
        key = self._memo_key(formula, t_phi)
        values = np.empty(len(param_set))
        fresh = {}
        for i in range(len(param_set)):
            cached = param_set.robustness(key, i)
            if cached is not None:
                values[i] = cached
                continue
            traj = param_set.trajectory(i)
            values[i] = evaluate(formula, traj, t=t_phi, params=self.eval_params(param_set, i))
            fresh[i] = values[i]
        if fresh:
            undefined = sum(1 for v in fresh.values() if np.isnan(v))
            if undefined:
                logger.debug("%s: %d of %d new values undefined (failed simulations)",
                             formula.id, undefined, len(fresh))
            param_set = param_set.with_robustness(key, fresh)
        return param_set, values

    def check_spec(self, phi: FormulaLike, t_phi: Optional[float] = None) -> np.ndarray:
        """Per-point robustness of ``phi`` on the current parameter set (memoized)."""
        self.param_set, values = self.evaluate_set(phi, self.param_set, t_phi)
        return values

    def filter_spec(self, phi: FormulaLike, t_phi: Optional[float] = None
                    ) -> Tuple[Optional[ParameterSet], Optional[ParameterSet]]:
        """
        Split the current parameter set into satisfying and violating points.

        Points whose robustness is NaN belong to neither. An empty side is None.
        """
        values = self.check_spec(phi, t_phi)
        with np.errstate(invalid='ignore'):
            sat = np.nonzero(values >= 0)[0]
            viol = np.nonzero(values < 0)[0]
        return (self.param_set.select(sat) if sat.size else None,
                self.param_set.select(viol) if viol.size else None)

    def _series(self, signal: RobustnessSignal) -> np.ndarray:
        tol = time_tolerance(signal.start, signal.end)
        inside = (self.time >= signal.start - tol) & (self.time <= signal.end + tol)
        out = np.full(self.time.shape, np.nan)
        out[inside] = signal.at_times(self.time[inside])
        return out

    def get_robust_sat(self, phi: FormulaLike, params: Optional[Union[str, Sequence[str]]] = None,
                       values=None, t_phi: Optional[float] = 0.0) -> Tuple[np.ndarray, np.ndarray]:
        """
        Robustness of ``phi`` with ``params`` overridden by ``values``.

        The current parameter set is not modified.

        Returns:
            (robustness, times). With a scalar ``t_phi`` robustness has one
            value per point and times is [t_phi]. With ``t_phi=None`` it has
            one row per point over the simulation grid (NaN outside the
            formula's domain).
        """
        formula = self.get_spec(phi)
        pset = self.param_set if params is None else self.param_set.set_param(params, values)
        if t_phi is not None:
            _, rob = self.evaluate_set(formula, pset, t_phi)
            return rob, np.array([t_phi])

        pset = self.simulate(pset)
        rows = [
            self._series(robustness_signal(formula, pset.trajectory(i), self.eval_params(pset, i)))
            for i in range(len(pset))
        ]
        return np.array(rows), self.time.copy()

    def get_robust_sat_fn(self, phi: FormulaLike, params: Union[str, Sequence[str]],
                          t_phi: Optional[float] = 0.0) -> Callable[..., np.ndarray]:
        """``values -> robustness`` for the given parameters (objective helper)."""
        formula = self.get_spec(phi)

        def robustness_fn(values):
            return self.get_robust_sat(formula, params, values, t_phi)[0]

        return robustness_fn

    def get_expr_values(self, expr: str, i: int = 0) -> Tuple[np.ndarray, np.ndarray]:
        """
        Values of an arithmetic signal expression (e.g. ``x[t] - 2*y[t+1]``)
        on point ``i``'s trajectory, over the simulation grid.
        """
        kind, formula = SpecParser(self.registry).parse(f"__expr__ := ({expr}) > 0")
        node = formula.root
        if not isinstance(node, Predicate):
            raise ValueError(f"Not an arithmetic expression: {expr}")
        self.sim()
        signal = robustness_signal(node, self.param_set.trajectory(i), self.eval_params(self.param_set, i))
        return self._series(signal), self.time.copy()

    def print_specs(self, t_phi: Optional[float] = None) -> Dict[str, Tuple[int, int]]:
        """Print, per registered formula, how many evaluable points satisfy it."""
        summary = {}
        print("=" * 60)
        print("SPECIFICATIONS")
        print("=" * 60)
        for formula in self.registry:
            values = self.check_spec(formula, t_phi)
            finite = values[~np.isnan(values)]
            n_sat = int(np.sum(finite >= 0))
            summary[formula.id] = (n_sat, int(finite.size))
            print(f"{formula.id} := {formula.source or formula}")
            print(f"    satisfied: {n_sat}/{finite.size}"
                  + (f" ({values.size - finite.size} undefined)" if finite.size < values.size else ""))
        return summary
