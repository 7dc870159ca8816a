"""
Sensitivity of a formula's robustness to parameters (Morris screening).

Each path starts at a Halton point of the normalized box and moves one
parameter at a time by ``delta``, in a random order. The difference of
robustness across a move, divided by the parameter step, is an elementary
effect. Per parameter:

    mu      mean of the effects
    mustar  mean of their absolute values
    sigma   their standard deviation

Usage:
    result = sensitivity_analysis(session, "phi", ["k", "c"], [(0.1, 2), (0, 1)])
    print(result.summary())
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.stats import qmc

from .param_set import ParameterRange, ParameterSet
from .session import AnalysisSession, FormulaLike

logger = logging.getLogger(__name__)


@dataclass
class SensitivityResult:
    params: List[str]
    mu: np.ndarray
    mustar: np.ndarray
    sigma: np.ndarray
    effects: np.ndarray        # (num_paths, n_params), NaN where undefined
    num_dropped: int
    param_set: ParameterSet    # every evaluated point, with robustness memoized

    def summary(self) -> Dict[str, Dict[str, float]]:
        return {
            name: {'mu': float(self.mu[j]), 'mustar': float(self.mustar[j]), 'sigma': float(self.sigma[j])}
            for j, name in enumerate(self.params)
        }


def _morris_paths(ranges: Sequence[ParameterRange], num_paths: int, delta: float,
                  seed: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Returns:
        points: (num_paths, k + 1, k) parameter values along each path
        order: (num_paths, k) parameter moved at each step
    """
    k = len(ranges)
    sampler = qmc.Halton(d=k, scramble=False)
    sampler.fast_forward(1)
    starts = sampler.random(num_paths) * (1.0 - delta)
    rng = np.random.default_rng(seed)

    points = np.empty((num_paths, k + 1, k))
    order = np.empty((num_paths, k), dtype=int)
    for p in range(num_paths):
        u = starts[p].copy()
        order[p] = rng.permutation(k)
        points[p, 0] = [r.sample(v) for r, v in zip(ranges, u)]
        for step, j in enumerate(order[p], start=1):
            u[j] += delta
            points[p, step] = [r.sample(v) for r, v in zip(ranges, u)]
    return points, order


def sensitivity_analysis(
    session: AnalysisSession,
    formula: FormulaLike,
    params: Sequence[str],
    ranges: Sequence[Tuple[float, float]],
    num_paths: int = 10,
    delta: float = 0.5,
    seed: int = 0,
    t_phi: Optional[float] = None,
) -> SensitivityResult:
    """
    Morris elementary effects of ``params`` on the robustness of ``formula``.

    Other parameters keep the values of the session's first point; the
    session's parameter set is not modified. Effects involving a failed
    simulation are dropped and counted.

    Args:
        params: Parameters to screen
        ranges: (low, high) per parameter
        num_paths: Number of one-at-a-time paths
        delta: Step as a fraction of each range, in (0, 1]
        seed: Seed of the move order
        t_phi: Evaluation time (default: trajectory start)
    """
    params = list(params)
    if len(params) != len(ranges):
        raise ValueError("params and ranges must have the same length")
    if not 0.0 < delta <= 1.0:
        raise ValueError(f"delta must be in (0, 1], got {delta}")
    if num_paths < 1:
        raise ValueError("num_paths must be >= 1")

    rng_list = [ParameterRange(n, float(lo), float(hi)) for n, (lo, hi) in zip(params, ranges)]
    k = len(params)
    points, order = _morris_paths(rng_list, num_paths, delta, seed)

    flat = points.reshape(-1, k)
    base = session.param_set.select([0] * len(flat))
    pset = base.set_param(params, flat)
    pset, values = session.evaluate_set(formula, pset, t_phi)
    values = values.reshape(num_paths, k + 1)

    effects = np.full((num_paths, k), np.nan)
    for p in range(num_paths):
        for step, j in enumerate(order[p], start=1):
            dx = points[p, step, j] - points[p, step - 1, j]
            if dx != 0:
                effects[p, j] = (values[p, step] - values[p, step - 1]) / dx

    mu = np.full(k, np.nan)
    mustar = np.full(k, np.nan)
    sigma = np.full(k, np.nan)
    for j in range(k):
        ee = effects[:, j][~np.isnan(effects[:, j])]
        if ee.size:
            mu[j] = ee.mean()
            mustar[j] = np.abs(ee).mean()
            sigma[j] = ee.std(ddof=1) if ee.size > 1 else 0.0

    dropped = int(np.isnan(effects).sum())
    if dropped:
        logger.info("%d of %d elementary effects undefined (failed simulations)", dropped, effects.size)

    return SensitivityResult(params, mu, mustar, sigma, effects, dropped, pset)


def check_monotony(
    session: AnalysisSession,
    formula: FormulaLike,
    params: Sequence[str],
    ranges: Sequence[Tuple[float, float]],
    num_paths: int = 10,
    delta: float = 0.5,
    seed: int = 0,
    t_phi: Optional[float] = None,
) -> Dict[str, int]:
    """
    Quick monotonicity check: +1 if every effect of a parameter is >= 0,
    -1 if every effect is <= 0, 0 otherwise (or if none is defined).
    """
    result = sensitivity_analysis(session, formula, params, ranges, num_paths, delta, seed, t_phi)
    monotony = {}
    for j, name in enumerate(result.params):
        ee = result.effects[:, j][~np.isnan(result.effects[:, j])]
        if ee.size == 0:
            monotony[name] = 0
        else:
            monotony[name] = int(np.all(ee >= 0)) - int(np.all(ee <= 0))
    return monotony
