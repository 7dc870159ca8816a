"""
Quantitative STL semantics over piecewise-linear signals.

Every node evaluates to a RobustnessSignal: a piecewise-linear function of
time stored as its breakpoints. Extrema of piecewise-linear functions are
attained at breakpoints, so min/max operators are computed on the union of
the operands' breakpoints plus the crossing points the operators induce,
never on a coarse grid.

Traces are finite. Temporal windows are truncated at the end of the operand's
domain, and a node with lower bound ``a`` is defined on [start, end - a].

NaN marks robustness that depends on a failed simulation; every min/max that
touches a NaN yields NaN.

Usage:
    from stl_falsifier.robustness import evaluate
    rob = evaluate(formula, trajectory, t=0.0, params={"vmax": 10.0})
"""

from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import OutOfDomainTimeError, UnknownParameterError, UnknownSignalError
from .formula import (
    Abs,
    Always,
    And,
    BinOp,
    Constant,
    Eventually,
    Neg,
    Node,
    Not,
    Or,
    ParamRef,
    Predicate,
    SignalRef,
    STLFormula,
    Until,
    apply_arith,
    iter_expr,
    resolve_scalar,
)
from .signals import SignalView, Trajectory, interp_exact, time_tolerance


# =============================================================================
# ROBUSTNESS SIGNAL
# =============================================================================

@dataclass(frozen=True, eq=False)
class RobustnessSignal:
    """
    Piecewise-linear robustness over [times[0], times[-1]].

    Attributes:
        times: Strictly increasing breakpoints
        values: Robustness at each breakpoint (NaN where undefined)
    """
    times: np.ndarray
    values: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, "times", np.asarray(self.times, dtype=float).reshape(-1))
        object.__setattr__(self, "values", np.asarray(self.values, dtype=float).reshape(-1))

    @property
    def start(self) -> float:
        return float(self.times[0])

    @property
    def end(self) -> float:
        return float(self.times[-1])

    @property
    def domain(self) -> Tuple[float, float]:
        return self.start, self.end

    def at_times(self, times: Iterable[float]) -> np.ndarray:
        times = np.asarray(times, dtype=float).reshape(-1)
        tol = time_tolerance(self.start, self.end)
        bad = (times < self.start - tol) | (times > self.end + tol) | np.isnan(times)
        if bad.any():
            raise OutOfDomainTimeError(float(times[bad][0]), self.domain)
        return interp_exact(np.clip(times, self.start, self.end), self.times, self.values)

    def at(self, t: float) -> float:
        return float(self.at_times([t])[0])

    def knots(self, lo: float, hi: float) -> np.ndarray:
        """Breakpoints strictly inside (lo, hi), plus lo and hi."""
        inner = self.times[(self.times > lo) & (self.times < hi)]
        if hi > lo:
            return np.concatenate(([lo], inner, [hi]))
        return np.array([lo])

    def __neg__(self) -> "RobustnessSignal":
        return RobustnessSignal(self.times, -self.values)

    def __len__(self) -> int:
        return self.times.size

    def __iter__(self) -> Iterator[Tuple[float, float]]:
        for t, v in zip(self.times, self.values):
            yield float(t), float(v)


def _clip_unique(times: np.ndarray, lo: float, hi: float) -> np.ndarray:
    """Finite times within [lo, hi] (with tolerance), always including lo and hi."""
    times = np.asarray(times, dtype=float).reshape(-1)
    tol = time_tolerance(lo, hi)
    times = times[np.isfinite(times)]
    times = times[(times >= lo - tol) & (times <= hi + tol)]
    return np.union1d(np.clip(times, lo, hi), [lo, hi])


def _crossings(times: np.ndarray, d0: np.ndarray, d1: np.ndarray) -> np.ndarray:
    """Times where a linear piece going from d0 to d1 on [times[i], times[i+1]] crosses 0."""
    with np.errstate(invalid='ignore', over='ignore'):
        hit = np.isfinite(d0) & np.isfinite(d1) & (d0 * d1 < 0)
    if not hit.any():
        return np.empty(0)
    i = np.nonzero(hit)[0]
    frac = d0[i] / (d0[i] - d1[i])
    return times[i] + frac * (times[i + 1] - times[i])


def _pointwise(left: RobustnessSignal, right: RobustnessSignal, fn,
               lo: Optional[float] = None, hi: Optional[float] = None) -> RobustnessSignal:
    """fn(left, right) (np.minimum or np.maximum) on the common domain, crossings included."""
    lo = max(left.start, right.start) if lo is None else lo
    hi = min(left.end, right.end) if hi is None else hi
    if lo > hi + time_tolerance(lo, hi):
        raise OutOfDomainTimeError(lo, (lo, hi))
    hi = max(hi, lo)

    times = np.union1d(left.knots(lo, hi), right.knots(lo, hi))
    va, vb = left.at_times(times), right.at_times(times)
    if times.size > 1:
        d = va - vb
        extra = _crossings(times, d[:-1], d[1:])
        if extra.size:
            times = np.union1d(times, extra)
            va, vb = left.at_times(times), right.at_times(times)
    return RobustnessSignal(times, fn(va, vb))


# =============================================================================
# WINDOW MINIMUM
# =============================================================================

class _RangeMin:
    """Sparse table answering min(values[i0:i1]) for many ranges at once."""

    def __init__(self, values: np.ndarray):
        self.levels = [values]
        half = 1
        while 2 * half <= values.size:
            prev = self.levels[-1]
            self.levels.append(np.minimum(prev[:-half], prev[half:]))
            half *= 2

    def query(self, i0: np.ndarray, i1: np.ndarray) -> np.ndarray:
        out = np.full(i0.shape, np.inf)
        length = i1 - i0
        valid = length > 0
        if not valid.any():
            return out
        level = np.zeros(length.shape, dtype=int)
        level[valid] = np.frexp(length[valid].astype(float))[1] - 1
        for k in np.unique(level[valid]):
            sel = valid & (level == k)
            table = self.levels[k]
            out[sel] = np.minimum(table[i0[sel]], table[i1[sel] - (1 << int(k))])
        return out


def _window_parts(g: RobustnessSignal, table: _RangeMin, t: np.ndarray, a: float, b: float):
    """
    Split min over [t+a, min(t+b, end)] into its two ends and the interior
    breakpoint minimum (+inf when the window holds no breakpoint).
    """
    lo = np.minimum(t + a, g.end)
    hi = np.maximum(np.minimum(t + b, g.end), lo)
    i0 = np.searchsorted(g.times, lo, side='right')
    i1 = np.searchsorted(g.times, hi, side='left')
    return g.at_times(lo), g.at_times(hi), table.query(i0, i1)


def _sliding_min(g: RobustnessSignal, a: float, b: float, extra: Sequence[float]) -> RobustnessSignal:
    """
    t -> min of g over [t+a, min(t+b, end)], exactly.

    Between consecutive candidate times (operand breakpoints shifted by -a and
    -b) the window ends are linear and the interior minimum is constant, so
    the only remaining kinks are where two of those three pieces meet.
    """
    start, end = g.domain
    out_end = end - a
    if out_end < start - time_tolerance(start, end):
        raise OutOfDomainTimeError(start + a, g.domain)
    out_end = max(out_end, start)

    candidates = [g.times - a, [start, out_end], np.asarray(extra, dtype=float)]
    if np.isfinite(b):
        candidates.append(g.times - b)
    times = _clip_unique(np.concatenate(candidates), start, out_end)

    table = _RangeMin(g.values)
    first, last, inner = _window_parts(g, table, times, a, b)
    if times.size > 1:
        mid = 0.5 * (times[:-1] + times[1:])
        _, _, level = _window_parts(g, table, mid, a, b)
        kinks = np.concatenate([
            _crossings(times, first[:-1] - level, first[1:] - level),
            _crossings(times, last[:-1] - level, last[1:] - level),
            _crossings(times, first[:-1] - last[:-1], first[1:] - last[1:]),
        ])
        if kinks.size:
            times = np.union1d(times, kinks)
            first, last, inner = _window_parts(g, table, times, a, b)

    return RobustnessSignal(times, np.minimum(np.minimum(first, last), inner))


# =============================================================================
# UNTIL
# =============================================================================

def _restrict(g: RobustnessSignal, lo: float, hi: float) -> RobustnessSignal:
    times = g.knots(lo, hi)
    return RobustnessSignal(times, g.at_times(times))


def _nan_marks(g: RobustnessSignal) -> RobustnessSignal:
    """NaN where g is NaN, 0 elsewhere."""
    return RobustnessSignal(g.times, np.where(np.isnan(g.values), np.nan, 0.0))


def _unbounded_until(g1: RobustnessSignal, g2: RobustnessSignal) -> RobustnessSignal:
    """
    r -> sup over s in [r, end] of min(g2(s), inf over [r, s] of g1).

    On a segment [t_i, t_i+1] where g1 and h = min(g1, g2) are linear, the
    value is min(g1(r), max(h(r), V(t_i+1))), so it is computed backward from
    the trace end and the only kinks inside a segment are where h or g1 cross
    the carried constant. Operands must be NaN-free.
    """
    h = _pointwise(g1, g2, np.minimum)
    knots, hv = h.times, h.values
    n = knots.size
    if n == 1:
        return h
    g1v = g1.at_times(knots)

    carry = np.empty(n - 1)
    v_next = hv[-1]
    for i in range(n - 2, -1, -1):
        carry[i] = v_next
        v_next = min(g1v[i], max(hv[i], carry[i]))

    kinks = np.concatenate([
        _crossings(knots, hv[:-1] - carry, hv[1:] - carry),
        _crossings(knots, g1v[:-1] - carry, g1v[1:] - carry),
    ])
    times = np.union1d(knots, kinks) if kinks.size else knots
    seg = np.clip(np.searchsorted(knots, times, side='right') - 1, 0, n - 1)
    level = np.append(carry, -np.inf)[seg]
    values = np.minimum(g1.at_times(times), np.maximum(h.at_times(times), level))
    return RobustnessSignal(times, values)


def _until(g1: RobustnessSignal, g2: RobustnessSignal, a: float, b: float,
           extra: Sequence[float]) -> RobustnessSignal:
    """
    t -> sup over s in [t+a, t+b] of min(g2(s), inf over [t, s] of g1).

    Computed exactly as min(alw_[0,a] g1, W shifted by a), where
    W = min(ev_[0,b-a] g2, unbounded until) is the until over [0, b-a].
    """
    start = max(g1.start, g2.start)
    end = min(g1.end, g2.end)
    out_end = end - a
    if out_end < start - time_tolerance(start, end):
        raise OutOfDomainTimeError(start + a, (start, end))
    out_end = max(out_end, start)
    g1, g2 = _restrict(g1, start, end), _restrict(g2, start, end)

    # NaN reaches t only through the window [t, t+b] of g1 or [t+a, t+b] of g2
    taint = None
    if np.isnan(g1.values).any() or np.isnan(g2.values).any():
        taint = _pointwise(_sliding_min(_nan_marks(g1), 0.0, b, extra),
                           _sliding_min(_nan_marks(g2), a, b, extra), np.minimum)
        g1 = RobustnessSignal(g1.times, np.nan_to_num(g1.values, nan=0.0))
        g2 = RobustnessSignal(g2.times, np.nan_to_num(g2.values, nan=0.0))

    reach = _unbounded_until(g1, g2)
    if np.isfinite(b):
        reached = -_sliding_min(-g2, 0.0, b - a, _shifted(extra, a))
        reach = _pointwise(reached, reach, np.minimum)
    ahead = RobustnessSignal(reach.times - a, reach.values)
    result = _pointwise(_sliding_min(g1, 0.0, a, extra), ahead, np.minimum, start, out_end)

    if taint is not None:
        times = np.union1d(result.times, taint.knots(start, out_end))
        result = RobustnessSignal(times, result.at_times(times) + taint.at_times(times))
    return result


# =============================================================================
# PREDICATES
# =============================================================================

def _eval_expr(expr, view: SignalView, times: np.ndarray, params: Mapping[str, float]) -> np.ndarray:
    if isinstance(expr, Constant):
        return np.full(times.shape, float(expr.value))
    if isinstance(expr, ParamRef):
        return np.full(times.shape, resolve_scalar(expr, params))
    if isinstance(expr, SignalRef):
        shift = resolve_scalar(expr.shift, params)
        return view.interpolate(expr.name, times + shift)
    if isinstance(expr, BinOp):
        return apply_arith(expr.op, _eval_expr(expr.left, view, times, params),
                           _eval_expr(expr.right, view, times, params))
    if isinstance(expr, Neg):
        return -_eval_expr(expr.operand, view, times, params)
    if isinstance(expr, Abs):
        return np.abs(_eval_expr(expr.operand, view, times, params))
    raise TypeError(f"Unknown expression node: {expr!r}")


def _predicate(node: Predicate, view: SignalView, params: Mapping[str, float],
               extra: Sequence[float]) -> RobustnessSignal:
    traj = view.trajectory
    start, end = view.domain
    lo, hi = start, end
    knots = [np.asarray(extra, dtype=float)]
    refs = [e for side in (node.lhs, node.rhs) for e in iter_expr(side) if isinstance(e, SignalRef)]
    for ref in refs:
        if ref.name not in traj.signal_names:
            raise UnknownSignalError(ref.name)
        shift = resolve_scalar(ref.shift, params)
        lo, hi = max(lo, start - shift), min(hi, end - shift)
        knots.append(traj.time - shift)
    if lo > hi + time_tolerance(start, end):
        raise OutOfDomainTimeError(lo, (start, end))
    hi = max(hi, lo)
    times = _clip_unique(np.concatenate(knots), lo, hi)

    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        diff = _eval_expr(node.lhs, view, times, params) - _eval_expr(node.rhs, view, times, params)
        if node.op in ('>', '>='):
            return RobustnessSignal(times, diff)
        if node.op in ('<', '<='):
            return RobustnessSignal(times, -diff)
        if node.op == '==':
            if times.size > 1:
                zeros = _crossings(times, diff[:-1], diff[1:])
                if zeros.size:
                    times = np.union1d(times, zeros)
                    diff = (_eval_expr(node.lhs, view, times, params)
                            - _eval_expr(node.rhs, view, times, params))
            return RobustnessSignal(times, -np.abs(diff))
    raise ValueError(f"Unknown comparison operator: {node.op}")


# =============================================================================
# EVALUATION
# =============================================================================

def _shifted(extra: Sequence[float], *offsets: float) -> Tuple[float, ...]:
    out = list(extra)
    for offset in offsets:
        if np.isfinite(offset):
            out.extend(t + offset for t in extra)
    return tuple(out)


def _robustness(node: Node, view: SignalView, params: Mapping[str, float],
                extra: Sequence[float]) -> RobustnessSignal:
    if isinstance(node, Predicate):
        return _predicate(node, view, params, extra)
    if isinstance(node, Not):
        return -_robustness(node.phi, view, params, extra)
    if isinstance(node, And):
        return _pointwise(_robustness(node.left, view, params, extra),
                          _robustness(node.right, view, params, extra), np.minimum)
    if isinstance(node, Or):
        return _pointwise(_robustness(node.left, view, params, extra),
                          _robustness(node.right, view, params, extra), np.maximum)
    if isinstance(node, Always):
        a, b = node.interval.resolve(params)
        child = _robustness(node.phi, view, params, _shifted(extra, a, b))
        return _sliding_min(child, a, b, extra)
    if isinstance(node, Eventually):
        a, b = node.interval.resolve(params)
        child = _robustness(node.phi, view, params, _shifted(extra, a, b))
        return -_sliding_min(-child, a, b, extra)
    if isinstance(node, Until):
        a, b = node.interval.resolve(params)
        inner = _shifted(extra, a, b)
        return _until(_robustness(node.left, view, params, inner),
                      _robustness(node.right, view, params, inner), a, b, extra)
    raise TypeError(f"Unknown formula node: {node!r}")


def robustness_signal(formula: Union[STLFormula, Node], trajectory: Trajectory,
                      params: Optional[Mapping[str, float]] = None,
                      extra_times: Sequence[float] = ()) -> RobustnessSignal:
    """
    Robustness of ``formula`` over the whole trajectory.

    ``extra_times`` are added to the breakpoints so that reading the result
    at those times needs no interpolation.
    """
    params = dict(params or {})
    node = formula.root if isinstance(formula, STLFormula) else formula
    try:
        return _robustness(node, SignalView(trajectory), params, tuple(extra_times))
    except (UnknownParameterError, UnknownSignalError) as e:
        if isinstance(formula, STLFormula) and e.formula_id is None:
            raise type(e)(e.name, formula.id) from None
        raise


def evaluate(formula: Union[STLFormula, Node], trajectory: Trajectory, t: Optional[float] = None,
             params: Optional[Mapping[str, float]] = None) -> float:
    """
    Robustness of ``formula`` at time ``t`` (default: trajectory start).

    Returns NaN if the value depends on a failed simulation.
    """
    if t is None:
        t = trajectory.start
    return robustness_signal(formula, trajectory, params, extra_times=(t,)).at(t)


def evaluate_on_grid(formula: Union[STLFormula, Node], trajectory: Trajectory,
                     params: Optional[Mapping[str, float]] = None) -> Tuple[np.ndarray, np.ndarray]:
    """Robustness at every trajectory sample time inside the formula's domain."""
    signal = robustness_signal(formula, trajectory, params)
    tol = time_tolerance(signal.start, signal.end)
    times = trajectory.time[(trajectory.time >= signal.start - tol) & (trajectory.time <= signal.end + tol)]
    return times, signal.at_times(times)


def iter_robustness(formula: Union[STLFormula, Node], trajectory: Trajectory,
                    params: Optional[Mapping[str, float]] = None,
                    start: Optional[float] = None) -> Iterator[Tuple[float, float]]:
    """
    Lazily yield (t, robustness) left to right over the trajectory grid.

    With ``start``, the sequence begins at the first grid time >= start.
    Nothing is kept between calls: a new call restarts from scratch.
    """
    signal = robustness_signal(formula, trajectory, params)
    tol = time_tolerance(signal.start, signal.end)
    lo = signal.start if start is None else max(float(start), signal.start)
    for t in trajectory.time:
        if t < lo - tol:
            continue
        if t > signal.end + tol:
            break
        yield float(t), signal.at(t)
