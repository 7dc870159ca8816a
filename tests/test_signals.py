import json

import numpy as np
import pytest

from stl_falsifier.errors import OutOfDomainTimeError
from stl_falsifier.signals import SignalView, Trajectory, interp_exact, load_trace


def _traj():
    return Trajectory(time=[0.0, 1.0, 2.0], values=[[0.0, 1.0, 4.0], [2.0, 2.0, 2.0]],
                      signal_names=["x", "y"])


class TestTrajectory:
    def test_arrays_are_read_only(self):
        traj = _traj()
        with pytest.raises(ValueError):
            traj.values[0, 0] = 3.0

    def test_time_must_increase(self):
        with pytest.raises(ValueError):
            Trajectory(time=[0.0, 1.0, 1.0], values=[[0, 1, 2]], signal_names=["x"])

    def test_shape_must_match_names(self):
        with pytest.raises(ValueError):
            Trajectory(time=[0.0, 1.0], values=[[0, 1]], signal_names=["x", "y"])

    def test_failed_like(self):
        traj = Trajectory.failed_like([0.0, 1.0], ["x"])
        assert traj.failed
        assert not _traj().failed

    def test_dict_round_trip_keeps_nan(self):
        traj = Trajectory(time=[0.0, 1.0], values=[[1.0, np.nan]], signal_names=["x"])
        back = Trajectory.from_dict(json.loads(json.dumps(traj.to_dict())))
        assert back.signal_names == ("x",)
        assert back.values[0, 0] == 1.0
        assert np.isnan(back.values[0, 1])


class TestSignalView:
    def test_linear_interpolation(self):
        view = SignalView(_traj())
        assert view.value_at("x", 1.5) == pytest.approx(2.5)
        assert view.value_at("x", 2.0) == 4.0

    def test_values_at(self):
        np.testing.assert_allclose(SignalView(_traj()).values_at(0.5), [0.5, 2.0])

    def test_outside_domain_is_an_error(self):
        view = SignalView(_traj())
        with pytest.raises(OutOfDomainTimeError) as info:
            view.value_at("x", 2.5)
        assert info.value.time == 2.5
        assert info.value.domain == (0.0, 2.0)

    def test_unknown_channel(self):
        with pytest.raises(KeyError):
            SignalView(_traj()).value_at("z", 1.0)

    def test_breakpoints_drop_outside_extras(self):
        points = SignalView(_traj()).breakpoints([0.5, 3.0, -1.0])
        np.testing.assert_allclose(points, [0.0, 0.5, 1.0, 2.0])


def test_interp_exact_does_not_leak_nan():
    xp = np.array([0.0, 1.0, 2.0])
    fp = np.array([1.0, np.nan, 3.0])
    out = interp_exact(np.array([0.0, 0.5, 2.0]), xp, fp)
    assert out[0] == 1.0
    assert np.isnan(out[1])
    assert out[2] == 3.0


class TestTraceLoading:
    def test_csv(self, tmp_path):
        path = tmp_path / "trace.csv"
        path.write_text("time,x,y\n0,1,2\n1,3,\n")
        traj = load_trace(str(path))
        assert traj.signal_names == ("x", "y")
        np.testing.assert_allclose(traj.signal("x"), [1.0, 3.0])
        assert np.isnan(traj.signal("y")[1])

    def test_json_rows(self, tmp_path):
        path = tmp_path / "trace.json"
        path.write_text(json.dumps({"trace": [{"time": 0, "x": 1}, {"time": 2, "x": 5}]}))
        traj = load_trace(str(path))
        assert SignalView(traj).value_at("x", 1.0) == pytest.approx(3.0)

    def test_json_columns(self, tmp_path):
        path = tmp_path / "trace.json"
        path.write_text(json.dumps({"time": [0, 1], "signals": {"x": [0, 1]}}))
        assert load_trace(str(path)).end == 1.0

    def test_csv_without_time_column(self, tmp_path):
        path = tmp_path / "trace.csv"
        path.write_text("x,y\n0,1\n")
        with pytest.raises(ValueError):
            load_trace(str(path))
