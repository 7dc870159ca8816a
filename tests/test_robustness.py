import numpy as np
import pytest

from stl_falsifier.errors import OutOfDomainTimeError, UnknownParameterError
from stl_falsifier.formula import (
    STLFormula,
    always,
    and_,
    eventually,
    not_,
    or_,
    predicate,
    signal,
    until,
)
from stl_falsifier.robustness import (
    evaluate,
    evaluate_on_grid,
    iter_robustness,
    robustness_signal,
)
from stl_falsifier.signals import Trajectory

TIME = np.linspace(0.0, 10.0, 11)


def _traj(time, **signals):
    names = list(signals.keys())
    return Trajectory(time=time, values=[signals[n] for n in names], signal_names=names)


ALW_X_BELOW_10 = always(predicate(signal("x"), "<", 10), 0, 5)


class TestEndToEnd:
    def test_always_constant_signal(self):
        traj = _traj(TIME, x=np.full(11, 5.0))
        assert evaluate(ALW_X_BELOW_10, traj, t=0.0) == pytest.approx(5.0)

    def test_always_rising_signal_is_violated(self):
        # x rises from 5 to 20 over [0, 10] and crosses 10 at t = 10/3
        traj = _traj([0.0, 10.0], x=[5.0, 20.0])
        rob = evaluate(ALW_X_BELOW_10, traj, t=0.0)
        assert rob < 0
        assert rob == pytest.approx(10.0 - 12.5)

    def test_eventually_rising_signal(self):
        traj = _traj([0.0, 10.0], x=[5.0, 20.0])
        phi = eventually(predicate(signal("x"), ">", 10), 0, 5)
        assert evaluate(phi, traj, t=0.0) == pytest.approx(2.5)

    def test_window_ends_are_interpolated(self):
        traj = _traj([0.0, 10.0], x=[0.0, 10.0])
        phi = always(predicate(signal("x"), "<", 10), 0, 2.5)
        assert evaluate(phi, traj, t=1.0) == pytest.approx(6.5)

    def test_until_split_point(self):
        # x < 0 holds up to t = 3.5, y > 0 from t = 2.5 on
        x = np.where(TIME <= 3, -1.0, 1.0)
        y = np.where(TIME <= 2, -1.0, 1.0)
        traj = _traj(TIME, x=x, y=y)
        phi = until(predicate(signal("x"), "<", 0), predicate(signal("y"), ">", 0), 0, 4)
        assert evaluate(phi, traj, t=0.0) == pytest.approx(1.0)

    def test_until_never_reached(self):
        x = np.full(11, -1.0)
        y = np.full(11, -2.0)
        traj = _traj(TIME, x=x, y=y)
        phi = until(predicate(signal("x"), "<", 0), predicate(signal("y"), ">", 0), 0, 4)
        assert evaluate(phi, traj, t=0.0) == pytest.approx(-2.0)

    def test_until_left_fails_first(self):
        x = np.where(TIME <= 1, -1.0, 1.0)
        y = np.where(TIME <= 2, -1.0, 1.0)
        traj = _traj(TIME, x=x, y=y)
        phi = until(predicate(signal("x"), "<", 0), predicate(signal("y"), ">", 0), 0, 4)
        assert evaluate(phi, traj, t=0.0) < 0

    def test_parameterized_bounds(self):
        traj = _traj([0.0, 10.0], x=[5.0, 20.0])
        phi = always(predicate(signal("x"), "<", "vmax"), 0, "T")
        assert evaluate(phi, traj, t=0.0, params={"vmax": 10.0, "T": 2.0}) == pytest.approx(2.0)

    def test_missing_parameter_names_formula(self):
        traj = _traj(TIME, x=np.zeros(11))
        formula = STLFormula("phi", predicate(signal("x"), "<", "vmax"))
        with pytest.raises(UnknownParameterError) as info:
            evaluate(formula, traj)
        assert info.value.name == "vmax"
        assert info.value.formula_id == "phi"


class TestPredicates:
    def test_sign_matches_expression(self):
        x = np.array([-2.0, -0.5, 0.0, 1.0, 3.0, -1.0, 0.0, 2.0, -4.0, 5.0, 0.5])
        traj = _traj(TIME, x=x)
        phi = predicate(signal("x"), ">", 0)
        for t, v in zip(TIME, x):
            assert np.sign(evaluate(phi, traj, t=t)) == np.sign(v)

    def test_less_than_is_negated_difference(self):
        traj = _traj(TIME, x=TIME)
        phi = predicate(signal("x"), "<", 4)
        assert evaluate(phi, traj, t=1.0) == pytest.approx(3.0)
        assert evaluate(phi, traj, t=6.0) == pytest.approx(-2.0)

    def test_equality_is_minus_abs(self):
        traj = _traj([0.0, 4.0], x=[-2.0, 2.0])
        phi = predicate(signal("x"), "==", 0)
        assert evaluate(phi, traj, t=0.0) == pytest.approx(-2.0)
        assert evaluate(phi, traj, t=2.0) == pytest.approx(0.0)
        # the zero of |x| is a breakpoint of the robustness signal
        assert 2.0 in robustness_signal(phi, traj).times

    def test_time_shift_shrinks_domain(self):
        traj = _traj(TIME, x=TIME)
        phi = predicate(signal("x", 2), ">", 0)
        assert evaluate(phi, traj, t=1.0) == pytest.approx(3.0)
        with pytest.raises(OutOfDomainTimeError):
            evaluate(phi, traj, t=9.0)


class TestBooleanProperties:
    @pytest.mark.parametrize("t", [0.0, 1.5, 3.0, 4.25])
    def test_excluded_middle_and_non_contradiction(self, t):
        x = np.sin(TIME)
        traj = _traj(TIME, x=x, y=np.cos(TIME))
        phi = eventually(and_(predicate(signal("x"), ">", 0.2), predicate(signal("y"), "<", 0.5)), 0, 3)
        assert evaluate(or_(phi, not_(phi)), traj, t=t) >= 0
        assert evaluate(and_(phi, not_(phi)), traj, t=t) <= 0

    def test_and_or_are_min_max(self):
        traj = _traj(TIME, x=TIME, y=10 - TIME)
        p = predicate(signal("x"), ">", 0)
        q = predicate(signal("y"), ">", 0)
        assert evaluate(and_(p, q), traj, t=3.0) == pytest.approx(3.0)
        assert evaluate(or_(p, q), traj, t=3.0) == pytest.approx(7.0)

    def test_min_includes_crossing(self):
        # x and y cross at t = 5 with value 5; always(min) sees the crossing
        traj = _traj([0.0, 10.0], x=[0.0, 10.0], y=[10.0, 0.0])
        phi = always(or_(predicate(signal("x"), ">", 0), predicate(signal("y"), ">", 0)), 0, 10)
        assert evaluate(phi, traj, t=0.0) == pytest.approx(5.0)


class TestFiniteTraces:
    def test_window_truncated_at_trace_end(self):
        traj = _traj(TIME, x=TIME)
        phi = always(predicate(signal("x"), "<", 20), 0, 5)
        assert evaluate(phi, traj, t=8.0) == pytest.approx(10.0)

    def test_lower_bound_beyond_end_is_out_of_domain(self):
        traj = _traj(TIME, x=TIME)
        phi = eventually(predicate(signal("x"), ">", 0), 3, 5)
        with pytest.raises(OutOfDomainTimeError):
            evaluate(phi, traj, t=8.0)

    def test_default_time_is_start(self):
        traj = _traj(TIME + 2.0, x=np.full(11, 5.0))
        assert evaluate(ALW_X_BELOW_10, traj) == pytest.approx(5.0)


class TestFailedTrajectories:
    def test_nan_propagates(self):
        x = np.full(11, 5.0)
        x[2] = np.nan
        traj = _traj(TIME, x=x)
        assert np.isnan(evaluate(ALW_X_BELOW_10, traj, t=0.0))
        assert np.isnan(evaluate(not_(ALW_X_BELOW_10), traj, t=0.0))

    def test_failed_trajectory(self):
        traj = Trajectory.failed_like(TIME, ["x"])
        assert np.isnan(evaluate(ALW_X_BELOW_10, traj, t=0.0))

    def test_nan_only_where_dependent(self):
        x = np.full(11, 5.0)
        x[9] = np.nan
        traj = _traj(TIME, x=x)
        phi = always(predicate(signal("x"), "<", 10), 0, 2)
        assert evaluate(phi, traj, t=0.0) == pytest.approx(5.0)
        assert np.isnan(evaluate(phi, traj, t=8.0))


class TestGrid:
    def test_grid_and_iterator_agree(self):
        traj = _traj(TIME, x=np.sin(TIME))
        phi = always(predicate(signal("x"), "<", 0.9), 0, 2)
        times, values = evaluate_on_grid(phi, traj)
        np.testing.assert_allclose(times, TIME)
        pairs = list(iter_robustness(phi, traj))
        assert [t for t, _ in pairs] == list(times)
        np.testing.assert_allclose([v for _, v in pairs], values)

    def test_grid_matches_pointwise_evaluation(self):
        traj = _traj(TIME, x=np.sin(TIME), y=np.cos(TIME))
        phi = until(predicate(signal("x"), ">", -0.5), predicate(signal("y"), ">", 0.8), 0, 3)
        times, values = evaluate_on_grid(phi, traj)
        for t, v in zip(times, values):
            assert evaluate(phi, traj, t=t) == pytest.approx(v)

    def test_grid_restricted_to_domain(self):
        traj = _traj(TIME, x=TIME)
        phi = eventually(predicate(signal("x"), ">", 0), 4, 6)
        times, _ = evaluate_on_grid(phi, traj)
        assert times[-1] == pytest.approx(6.0)


# x and y cross their thresholds between samples, so the until signal has
# kinks away from every operand breakpoint
UNTIL_TIME = np.arange(7.0)
UNTIL_X = [-2.229, -0.004, 0.609, -2.828, -2.112, 2.569, -2.577]
UNTIL_Y = [-2.221, 2.69, 0.731, -0.786, 0.068, 0.977, -1.348]
FINE = np.linspace(0.0, 6.0, 6001)


def _until_on_fine_grid(f, g, a, b, i):
    """Until at FINE[i] with the split point restricted to the fine grid."""
    step = FINE[1] - FINE[0]
    lo = i + int(round(a / step))
    hi = min(i + int(round(b / step)), FINE.size - 1)
    reach = np.minimum.accumulate(f[i:hi + 1])
    return float(np.max(np.minimum(g[lo:hi + 1], reach[lo - i:])))


class TestUntilSignal:
    """Operators over until read its exact piecewise-linear signal."""

    def setup_method(self):
        self.traj = _traj(UNTIL_TIME, x=UNTIL_X, y=UNTIL_Y)
        self.phi = until(predicate(signal("x"), ">", 0), predicate(signal("y"), ">", 0), 1, 2.5)
        self.f = np.interp(FINE, UNTIL_TIME, UNTIL_X)
        self.g = np.interp(FINE, UNTIL_TIME, UNTIL_Y)

    def _dense(self, last):
        return np.array([_until_on_fine_grid(self.f, self.g, 1.0, 2.5, i) for i in range(last + 1)])

    def test_signal_between_breakpoints(self):
        dense = self._dense(3500)
        idx = np.arange(0, 3501, 7)
        values = robustness_signal(self.phi, self.traj).at_times(FINE[idx])
        np.testing.assert_allclose(values, dense[idx], atol=0.02)

    def test_eventually_over_until(self):
        expected = self._dense(2000).max()
        rob = evaluate(eventually(self.phi, 0, 2), self.traj, t=0.0)
        assert rob == pytest.approx(expected, abs=0.02)
        assert rob > 0

    def test_always_over_until(self):
        expected = self._dense(2000).min()
        rob = evaluate(always(self.phi, 0, 2), self.traj, t=0.0)
        assert rob == pytest.approx(expected, abs=0.02)

    def test_nan_only_where_dependent(self):
        x = np.full(11, 5.0)
        x[9] = np.nan
        traj = _traj(TIME, x=x)
        phi = until(predicate(signal("x"), "<", 10), predicate(signal("x"), ">", 4), 0, 2)
        assert evaluate(phi, traj, t=0.0) == pytest.approx(1.0)
        assert evaluate(phi, traj, t=6.0) == pytest.approx(1.0)
        assert np.isnan(evaluate(phi, traj, t=7.0))


class TestIterator:
    def test_is_lazy(self):
        traj = _traj(TIME, x=TIME)
        pairs = iter_robustness(predicate(signal("x"), ">", 2), traj)
        assert next(pairs) == (0.0, -2.0)
        assert next(pairs) == (1.0, -1.0)

    def test_restart_at_any_time(self):
        traj = _traj(TIME, x=np.sin(TIME))
        phi = always(predicate(signal("x"), "<", 0.9), 0, 2)
        whole = list(iter_robustness(phi, traj))
        tail = list(iter_robustness(phi, traj, start=3.5))
        assert tail[0][0] == 4.0
        assert tail == whole[4:]
