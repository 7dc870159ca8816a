"""
STL-based Falsification

This module searches a bounded parameter box for a point whose simulated
trajectory violates an STL formula (negative robustness).

The search runs in phases:
1. Corners: every low/high combination of the searched parameters (optional)
2. Quasi-random: a batch of Halton points, continuing the sequence each round
3. Selecting: seed for the local phase (tightest satisfying point, else the
   best point seen so far)
4. Local refine: nevergrad Nelder-Mead from the selected point
and loops over 2-4 until a stopping condition fires.

The search state survives between solve() calls, so raising a budget and
calling solve() again continues where the previous call stopped.

Usage:
    python -m stl_falsifier falsify --spec specs.stl --formula phi \\
        --simulator mymodel:simulator --param k=0.1:2.0 --time-span 0:10:0.1
"""

import importlib
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import nevergrad as ng
import numpy as np

from .formula import FormulaRegistry, STLFormula
from .param_set import ParameterRange, ParameterSet
from .session import AnalysisSession, FormulaLike

logger = logging.getLogger(__name__)

# Objective told to the local optimizer for a failed simulation, on top of the
# largest finite objective seen so far
FAILED_OBJECTIVE_PENALTY = 1000.0


# =============================================================================
# OPTIONS AND STATE
# =============================================================================

@dataclass
class SolverOptions:
    """
    Options of the falsification search.

    Budgets are cumulative over the whole run, including resumed solve() calls.

    Attributes:
        num_corners: Maximum number of corners to test (0 disables the phase)
        num_quasi_rand_samples: Halton points per quasi-random phase
        quasi_rand_seed: Index of the first Halton point
        local_max_obj_eval: Evaluations per local phase (0 disables it)
        max_obj_eval: Total objective evaluations
        max_time: Wall-clock budget in seconds (None: unlimited)
        max_iterations: Outer iterations (None: unlimited)
        target: Stop as soon as the objective drops below this value
        t_phi: Time at which robustness is evaluated (None: trajectory start)
        seed: Seed of the local optimizer
        verbose: Print progress
    """
    num_corners: int = 0
    num_quasi_rand_samples: int = 20
    quasi_rand_seed: int = 1
    local_max_obj_eval: int = 50
    max_obj_eval: int = 100
    max_time: Optional[float] = None
    max_iterations: Optional[int] = None
    target: float = 0.0
    t_phi: Optional[float] = None
    seed: int = 42
    verbose: bool = False


class Phase(Enum):
    IDLE = "idle"
    CORNERS = "corners"
    QUASI_RANDOM = "quasi_random"
    SELECTING = "selecting"
    LOCAL_REFINE = "local_refine"
    DONE = "done"


@dataclass
class SearchState:
    """
    Everything needed to continue a search.

    Attributes:
        phase: Current phase (DONE once a stopping condition fired)
        resume_phase: Phase interrupted by the last stopping condition
        cursor: Next Halton index
        evals: Objective evaluations so far
        iterations: Completed outer iterations
        best_value: Lowest finite objective seen
        best_x: Searched-parameter values of best_value
        batch: Points of the current (or last) corner/quasi-random batch
        pending: True while that batch is not fully processed
        pending_done: How many batch points were processed
        batch_values: Objectives of the processed batch points
        x_best_phase: Seed selected for the local phase
        optimizer: Local optimizer of the running local phase
        local_evals: Evaluations spent in the running local phase
        faults: Evaluations with undefined (NaN) objective
        trials: Log of every evaluation
        stop_reason: Why the last solve() stopped
        message: Notable events (e.g. no evaluable point found)
        elapsed: Seconds spent in solve() so far
    """
    phase: Phase = Phase.IDLE
    resume_phase: Optional[Phase] = None
    cursor: int = 0
    evals: int = 0
    iterations: int = 0
    best_value: float = float('inf')
    best_x: Optional[np.ndarray] = None
    batch: Optional[np.ndarray] = None
    pending: bool = False
    pending_done: int = 0
    batch_values: List[float] = field(default_factory=list)
    x_best_phase: Optional[np.ndarray] = None
    optimizer: Any = None
    local_evals: int = 0
    faults: int = 0
    trials: List[Dict[str, Any]] = field(default_factory=list)
    stop_reason: Optional[str] = None
    message: Optional[str] = None
    elapsed: float = 0.0


# =============================================================================
# FALSIFICATION PROBLEM
# =============================================================================

class FalsificationProblem:
    """
    Minimize the robustness of ``formula`` over the uncertain parameters of
    the session's current parameter set.

    The session's first point defines the search box: parameters with a
    nonzero radius are searched, the others stay fixed.
    """

    def __init__(self, session: AnalysisSession, formula: FormulaLike,
                 options: Optional[SolverOptions] = None):
        self.session = session
        self.formula: STLFormula = session.get_spec(formula)
        self.options = options or SolverOptions()

        domain = session.param_set
        if len(domain) == 0:
            raise ValueError("Empty parameter set")
        self.domain = domain.select([0]).purge()
        self.search_dims = self.domain.uncertain_dims()
        if not self.search_dims:
            raise ValueError("No parameter to search: set ranges with a nonzero width first")
        lows = self.domain.points[0] - self.domain.radii[0]
        highs = self.domain.points[0] + self.domain.radii[0]
        self.ranges = [ParameterRange(self.domain.names[j], float(lows[j]), float(highs[j]))
                       for j in self.search_dims]
        self.search_names = [r.name for r in self.ranges]

        self._cache: Dict[Tuple[float, ...], float] = {}
        self.reset()

    def reset(self):
        """Discard the search state."""
        self.state = SearchState(cursor=self.options.quasi_rand_seed)

    # -------------------------------------------------------------------------
    # Objective
    # -------------------------------------------------------------------------

    def _normalize(self, x: np.ndarray) -> np.ndarray:
        return np.array([r.normalize(v) for r, v in zip(self.ranges, x)])

    def _denormalize(self, u: np.ndarray) -> np.ndarray:
        return np.array([r.sample(float(v)) for r, v in zip(self.ranges, u)])

    def _as_dict(self, x: np.ndarray) -> Dict[str, float]:
        return {n: float(v) for n, v in zip(self.search_names, x)}

    def evaluate_points(self, xs: Sequence[np.ndarray]) -> List[float]:
        """
        Objective (robustness) at each point, in order.

        Unseen points are simulated together; results are cached by point.
        """
        keys = [tuple(float(v) for v in x) for x in xs]
        todo = list(dict.fromkeys(k for k in keys if k not in self._cache))
        if todo:
            base = self.domain.points[0]
            rows = np.tile(base, (len(todo), 1))
            rows[:, self.search_dims] = np.array(todo)
            batch = ParameterSet(self.domain.names, rows, num_sim_params=self.domain.num_sim_params)
            _, values = self.session.evaluate_set(self.formula, batch, self.options.t_phi)
            self._cache.update(zip(todo, (float(v) for v in values)))
        return [self._cache[k] for k in keys]

    def _record(self, x: np.ndarray, f: float, phase: Phase):
        st = self.state
        st.evals += 1
        undefined = np.isnan(f)
        if undefined:
            st.faults += 1
        st.trials.append({
            'trial': st.evals,
            'phase': phase.value,
            'robustness': None if undefined else float(f),
            'params': self._as_dict(x),
        })

        if not undefined and f < st.best_value:
            st.best_value = float(f)
            st.best_x = np.array(x, dtype=float)
            if self.options.verbose:
                print(f"  [{st.evals}] robustness {f:.6g}  -> New best!")

    def _elapsed(self) -> float:
        return self.state.elapsed + (time.time() - self._t_start)

    def _stopping(self) -> Optional[str]:
        st, opt = self.state, self.options
        if st.best_value < opt.target:
            return "falsified"
        if st.evals >= opt.max_obj_eval:
            return "max_obj_eval"
        if opt.max_time is not None and self._elapsed() >= opt.max_time:
            return "max_time"
        if opt.max_iterations is not None and st.iterations >= opt.max_iterations:
            return "max_iterations"
        return None

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _corner_points(self) -> np.ndarray:
        corners = self.domain.corners()
        if len(corners) > self.options.num_corners:
            raise ValueError(
                f"{len(corners)} corners exceed num_corners={self.options.num_corners}; "
                f"raise the cap or disable corner testing"
            )
        return corners.points[:, self.search_dims]

    def _quasi_random_points(self) -> np.ndarray:
        st = self.state
        n = self.options.num_quasi_rand_samples
        samples = self.domain.quasi_random_sample(n, seed=st.cursor)
        st.cursor += n
        return samples.points[:, self.search_dims]

    def _run_batch(self, phase: Phase) -> bool:
        """
        Process pending points in index order. Returns True once the whole
        batch is processed, False if a stopping condition interrupted it.
        """
        st = self.state
        budget_left = max(self.options.max_obj_eval - st.evals, 0)
        chunk = st.batch[st.pending_done:st.pending_done + budget_left]
        values = self.evaluate_points(chunk)
        for x, f in zip(chunk, values):
            self._record(x, f, phase)
            st.batch_values.append(f)
            st.pending_done += 1
            if self._stopping():
                break
        if st.pending_done < len(st.batch):
            return False
        st.pending = False
        return True

    def _start_batch(self, points: np.ndarray):
        st = self.state
        st.batch = points
        st.pending = True
        st.pending_done = 0
        st.batch_values = []

    def _select(self):
        """Pick the local seed from the quasi-random batch just processed."""
        st = self.state
        values = np.array(st.batch_values, dtype=float)
        with np.errstate(invalid='ignore'):
            admissible = np.nonzero(np.isfinite(values) & (values >= 0))[0]
        x_phase = st.batch
        if admissible.size:
            # first index wins among equal values
            i = admissible[np.argmin(values[admissible])]
            st.x_best_phase = np.array(x_phase[i], dtype=float)
            if self.options.verbose:
                print(f"Best value found during quasi-random phase: {values[i]:g} with")
                print(f"  {self._as_dict(st.x_best_phase)}")
        elif st.best_x is not None:
            st.x_best_phase = st.best_x.copy()
            if self.options.verbose:
                print("No admissible variable found during quasi-random phase.")
                print(f"Best non admissible value found: {st.best_value:g} with")
                print(f"  {self._as_dict(st.x_best_phase)}")
        else:
            st.x_best_phase = None
            st.message = "no evaluable point found"
            logger.warning("%s: no evaluable point found so far", self.formula.id)
            if self.options.verbose:
                print("No evaluable point found: skipping local optimization.")

    def _start_local(self):
        st = self.state
        x0 = np.clip(self._normalize(st.x_best_phase), 0.0, 1.0)
        parametrization = ng.p.Array(init=x0).set_bounds(0.0, 1.0)
        parametrization.random_state = np.random.RandomState(self.options.seed + st.iterations)
        st.optimizer = ng.optimizers.NelderMead(
            parametrization=parametrization,
            budget=self.options.local_max_obj_eval,
        )
        st.local_evals = 0

    def _run_local(self) -> bool:
        """Ask/tell loop. Returns True once the local budget is spent."""
        st = self.state
        while st.local_evals < self.options.local_max_obj_eval:
            if self._stopping():
                return False
            candidate = st.optimizer.ask()
            x = self._denormalize(np.clip(candidate.value, 0.0, 1.0))
            f = self.evaluate_points([x])[0]
            self._record(x, f, Phase.LOCAL_REFINE)
            st.local_evals += 1
            st.optimizer.tell(candidate, f if np.isfinite(f) else self._penalty())
        st.optimizer = None
        return True

    def _penalty(self) -> float:
        finite = [t['robustness'] for t in self.state.trials if t['robustness'] is not None]
        return FAILED_OBJECTIVE_PENALTY + (max(abs(v) for v in finite) if finite else 0.0)

    def _end_iteration(self):
        self.state.iterations += 1
        self.state.phase = Phase.QUASI_RANDOM

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    def solve(self) -> Dict[str, Any]:
        """
        Run (or continue) the search until a stopping condition fires.

        Returns:
            Result dictionary
        """
        st, opt = self.state, self.options
        self._t_start = time.time()

        if st.phase == Phase.DONE and st.resume_phase is not None:
            st.phase, st.resume_phase = st.resume_phase, None
            st.stop_reason = None

        if opt.verbose:
            print("=" * 60)
            print(f"START OPTIMIZATION METAHEURISTICS: {self.formula.id}")
            print(f"Search: {', '.join(f'{r.name} in [{r.low:g}, {r.high:g}]' for r in self.ranges)}")
            print(f"Budget: {opt.max_obj_eval} evaluations ({st.evals} used)")
            print("=" * 60)

        while True:
            reason = self._stopping()
            if reason is not None:
                st.stop_reason = reason
                if st.phase != Phase.DONE:
                    st.resume_phase = st.phase
                    st.phase = Phase.DONE
                break

            if st.phase == Phase.IDLE:
                if opt.num_corners > 0:
                    self._start_batch(self._corner_points())
                    st.phase = Phase.CORNERS
                    if opt.verbose:
                        print("\nTEST CORNERS")
                else:
                    st.phase = Phase.QUASI_RANDOM

            elif st.phase == Phase.CORNERS:
                if self._run_batch(Phase.CORNERS):
                    st.phase = Phase.QUASI_RANDOM

            elif st.phase == Phase.QUASI_RANDOM:
                if not st.pending:
                    self._start_batch(self._quasi_random_points())
                    if opt.verbose:
                        print("\nTEST QUASI-RANDOM SAMPLES")
                if self._run_batch(Phase.QUASI_RANDOM):
                    st.phase = Phase.SELECTING

            elif st.phase == Phase.SELECTING:
                self._select()
                if opt.local_max_obj_eval > 0 and st.x_best_phase is not None:
                    st.phase = Phase.LOCAL_REFINE
                    if opt.verbose:
                        print("\nRUN LOCAL OPTIMIZATION")
                else:
                    self._end_iteration()

            elif st.phase == Phase.LOCAL_REFINE:
                if st.optimizer is None:
                    self._start_local()
                if self._run_local():
                    self._end_iteration()

            else:
                break

        st.elapsed = self._elapsed()
        result = self.result()

        if opt.verbose:
            print("\n" + "=" * 60)
            print("END OPTIMIZATION METAHEURISTICS")
            print("=" * 60)
            print(f"Falsified: {result['falsified']}")
            if result['best_robustness'] is not None:
                print(f"Best robustness: {result['best_robustness']:.6g}")
                print(f"Best params: {result['best_params']}")
            print(f"Evaluations: {st.evals}/{opt.max_obj_eval} ({st.faults} failed)")
            print(f"Stop reason: {st.stop_reason}")
            print(f"Time: {st.elapsed:.1f}s")

        return result

    def result(self) -> Dict[str, Any]:
        st = self.state
        found = st.best_x is not None
        phases = [t['phase'] for t in st.trials]
        return {
            'formula': self.formula.id,
            'falsified': bool(found and st.best_value < self.options.target),
            'best_robustness': float(st.best_value) if found else None,
            'best_params': self._as_dict(st.best_x) if found else None,
            'num_evaluations': st.evals,
            'num_faults': st.faults,
            'iterations': st.iterations,
            'stop_reason': st.stop_reason,
            'message': st.message,
            'elapsed_seconds': st.elapsed,
            'statistics': {
                'corners': phases.count(Phase.CORNERS.value),
                'quasi_random': phases.count(Phase.QUASI_RANDOM.value),
                'local_refine': phases.count(Phase.LOCAL_REFINE.value),
                'quasi_rand_cursor': st.cursor,
                'simulations': self.session.executor.num_simulations,
            },
            'timestamp': datetime.now().isoformat(),
        }

    def save(self, output_dir: str) -> Path:
        """Write result.json and all_trials.json."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        with open(output_dir / "result.json", 'w') as f:
            json.dump(self.result(), f, indent=2)
        with open(output_dir / "all_trials.json", 'w') as f:
            json.dump(self.state.trials, f, indent=2)
        return output_dir


def falsify(
    session: AnalysisSession,
    formula: FormulaLike,
    options: Optional[SolverOptions] = None,
    output_dir: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Convenience function to run falsification.

    Args:
        session: Session holding the simulator and the search box
        formula: Formula (or registered formula id) to falsify
        options: Solver options
        output_dir: If given, result.json and all_trials.json are written there

    Returns:
        Result dictionary
    """
    problem = FalsificationProblem(session, formula, options)
    result = problem.solve()
    if output_dir is not None:
        problem.save(output_dir)
    return result


# =============================================================================
# CLI
# =============================================================================

def _load_simulator(spec: str):
    """'module:attr' -> Simulator (attr may be an instance or a factory)."""
    from .executor import Simulator

    module_name, _, attr = spec.partition(':')
    if not attr:
        raise ValueError(f"Expected module:attr, got '{spec}'")
    obj = getattr(importlib.import_module(module_name), attr)
    if not isinstance(obj, Simulator):
        obj = obj()
    if not isinstance(obj, Simulator):
        raise TypeError(f"{spec} is not a Simulator")
    return obj


def _parse_range(text: str) -> Tuple[str, float, float]:
    name, _, bounds = text.partition('=')
    lo, _, hi = bounds.partition(':')
    if not name or not hi:
        raise ValueError(f"Expected name=lo:hi, got '{text}'")
    return name.strip(), float(lo), float(hi)


def _parse_time_span(text: str) -> np.ndarray:
    parts = [float(v) for v in text.split(':')]
    if len(parts) != 3 or parts[2] <= 0:
        raise ValueError(f"Expected T0:T1:DT, got '{text}'")
    t0, t1, dt = parts
    n = int(round((t1 - t0) / dt)) + 1
    return t0 + dt * np.arange(n)


def _cmd_check(args) -> int:
    from .robustness import evaluate, evaluate_on_grid
    from .signals import load_trace
    from .spec_parser import parse_spec_file

    trace = load_trace(args.trace)
    registry = FormulaRegistry(signals=trace.signal_names)
    formulas = parse_spec_file(args.spec, registry)
    if not formulas:
        print(f"No formula defined in {args.spec}")
        return 1
    ids = [args.formula] if args.formula else [f.id for f in formulas]

    for formula_id in ids:
        formula = registry.get(formula_id)
        if args.full:
            times, values = evaluate_on_grid(formula, trace, registry.params)
            print(f"{formula_id}:")
            for t, v in zip(times, values):
                print(f"  {t:g}\t{v:.6g}")
        else:
            rob = evaluate(formula, trace, t=args.time, params=registry.params)
            status = "satisfied" if rob >= 0 else ("undefined" if np.isnan(rob) else "VIOLATED")
            print(f"{formula_id}: robustness {rob:.6g} ({status})")
    return 0


def _cmd_falsify(args) -> int:
    session = AnalysisSession(_load_simulator(args.simulator), _parse_time_span(args.time_span))
    session.load_specs(args.spec)
    ranges = [_parse_range(p) for p in args.param]
    session.set_param_ranges([r[0] for r in ranges], [(r[1], r[2]) for r in ranges])

    options = SolverOptions(
        num_corners=args.num_corners,
        num_quasi_rand_samples=args.num_quasi_rand_samples,
        quasi_rand_seed=args.quasi_rand_seed,
        local_max_obj_eval=args.local_max_obj_eval,
        max_obj_eval=args.max_obj_eval,
        max_time=args.max_time,
        seed=args.seed,
        verbose=not args.quiet,
    )
    result = falsify(session, args.formula, options, output_dir=args.output_dir)

    if result['falsified']:
        print("\nSpecification VIOLATED")
    else:
        print("\nNo violations found within budget")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    import argparse

    from .logging_config import setup_logging

    parser = argparse.ArgumentParser(description="STL robustness checking and falsification")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    parser.add_argument("--log-file", default=None, help="Also log to this file")
    sub = parser.add_subparsers(dest="command")

    check = sub.add_parser("check", help="Evaluate formulas on a recorded trace")
    check.add_argument("--spec", "-s", required=True, help="Specification file")
    check.add_argument("--trace", "-t", required=True, help="Trace file (CSV or JSON)")
    check.add_argument("--formula", "-f", default=None, help="Formula id (default: all)")
    check.add_argument("--time", type=float, default=None, help="Evaluation time (default: trace start)")
    check.add_argument("--full", action="store_true", help="Print robustness over the whole trace")

    fals = sub.add_parser("falsify", help="Search parameters violating a formula")
    fals.add_argument("--spec", "-s", required=True, help="Specification file")
    fals.add_argument("--formula", "-f", required=True, help="Formula id")
    fals.add_argument("--simulator", required=True, help="module:attr of a Simulator (or factory)")
    fals.add_argument("--param", "-p", action="append", default=[], help="name=lo:hi (repeatable)")
    fals.add_argument("--time-span", required=True, help="T0:T1:DT")
    fals.add_argument("--num-corners", type=int, default=0)
    fals.add_argument("--num-quasi-rand-samples", type=int, default=20)
    fals.add_argument("--quasi-rand-seed", type=int, default=1)
    fals.add_argument("--local-max-obj-eval", type=int, default=50)
    fals.add_argument("--max-obj-eval", "-b", type=int, default=100, help="Evaluation budget")
    fals.add_argument("--max-time", type=float, default=None, help="Wall-clock budget (s)")
    fals.add_argument("--seed", type=int, default=42)
    fals.add_argument("--output-dir", "-o", default=None, help="Write result.json and all_trials.json here")
    fals.add_argument("--quiet", "-q", action="store_true")

    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    if args.command == "check":
        return _cmd_check(args)
    if args.command == "falsify":
        if not args.param:
            parser.error("falsify needs at least one --param name=lo:hi")
        return _cmd_falsify(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
