import json

import numpy as np
import pytest

from stl_falsifier.falsify import (
    FalsificationProblem,
    Phase,
    SolverOptions,
    _parse_range,
    _parse_time_span,
    falsify,
    main,
)
from stl_falsifier.session import AnalysisSession

TIME = np.linspace(0.0, 10.0, 11)


def _session(simulator, low=0.0, high=1.0):
    """Robustness of phi is 5 - 10k on the ramp simulator."""
    session = AnalysisSession(simulator, TIME)
    session.load_specs("phi := alw_[0,10] (x[t] < 5)")
    session.set_param_ranges(["k"], [(low, high)])
    return session


def _trace(problem):
    trials = problem.state.trials
    return [(t["phase"], t["robustness"], t["params"]["k"]) for t in trials]


class TestFalsification:
    def test_corners_find_violation(self, ramp_simulator):
        options = SolverOptions(num_corners=2, max_obj_eval=50)
        result = falsify(_session(ramp_simulator), "phi", options)
        assert result["falsified"]
        assert result["stop_reason"] == "falsified"
        assert result["best_params"] == {"k": 1.0}
        assert result["best_robustness"] == pytest.approx(-5.0)
        assert result["num_evaluations"] == 2
        assert result["statistics"]["corners"] == 2

    def test_quasi_random_finds_violation(self, ramp_simulator):
        # Halton points from index 1: 0.5, 0.25, 0.75, ...
        options = SolverOptions(num_quasi_rand_samples=8, max_obj_eval=50)
        problem = FalsificationProblem(_session(ramp_simulator), "phi", options)
        result = problem.solve()
        assert result["falsified"]
        assert result["num_evaluations"] == 3
        assert result["best_params"]["k"] == pytest.approx(0.75)
        assert problem.state.phase == Phase.DONE

    def test_target_threshold(self, ramp_simulator):
        options = SolverOptions(num_corners=2, target=-10.0, max_obj_eval=6,
                                num_quasi_rand_samples=4, local_max_obj_eval=0)
        result = falsify(_session(ramp_simulator), "phi", options)
        assert not result["falsified"]
        assert result["stop_reason"] == "max_obj_eval"
        assert result["best_robustness"] == pytest.approx(-5.0)

    def test_satisfied_everywhere(self, ramp_simulator):
        options = SolverOptions(num_quasi_rand_samples=4, local_max_obj_eval=6, max_obj_eval=20)
        result = falsify(_session(ramp_simulator, 0.0, 0.4), "phi", options)
        assert not result["falsified"]
        assert result["stop_reason"] == "max_obj_eval"
        assert result["num_evaluations"] == 20
        assert result["best_robustness"] >= 1.0 - 1e-9
        assert result["statistics"]["local_refine"] > 0
        assert result["iterations"] >= 1

    def test_local_phase_improves_on_samples(self, ramp_simulator):
        options = SolverOptions(num_quasi_rand_samples=2, local_max_obj_eval=15, max_obj_eval=17)
        problem = FalsificationProblem(_session(ramp_simulator, 0.0, 0.4), "phi", options)
        result = problem.solve()
        sampled = [t["robustness"] for t in problem.state.trials if t["phase"] == "quasi_random"]
        assert result["best_robustness"] < min(sampled)

    def test_max_iterations(self, ramp_simulator):
        options = SolverOptions(num_quasi_rand_samples=3, local_max_obj_eval=0,
                                max_obj_eval=100, max_iterations=2)
        result = falsify(_session(ramp_simulator, 0.0, 0.4), "phi", options)
        assert result["stop_reason"] == "max_iterations"
        assert result["num_evaluations"] == 6
        assert result["statistics"]["quasi_rand_cursor"] == 1 + 6

    def test_fixed_parameters_are_not_searched(self, ramp2_simulator):
        session = AnalysisSession(ramp2_simulator, TIME)
        session.load_specs("psi := alw_[0,10] (x[t] < y[t] + 10)")
        session.set_param_ranges(["k"], [(0.0, 2.0)])
        problem = FalsificationProblem(session, "psi", SolverOptions(max_obj_eval=10))
        assert problem.search_names == ["k"]


class TestFaults:
    def test_all_failures(self, crashing_simulator):
        options = SolverOptions(num_quasi_rand_samples=5, local_max_obj_eval=5, max_obj_eval=15)
        result = falsify(_session(crashing_simulator), "phi", options)
        assert not result["falsified"]
        assert result["best_robustness"] is None
        assert result["best_params"] is None
        assert result["num_faults"] == result["num_evaluations"] == 15
        assert result["message"] == "no evaluable point found"
        assert result["statistics"]["local_refine"] == 0

    def test_failures_excluded_from_selection(self, flaky_simulator):
        # k > 0.5 crashes, so the violating half of the box is never evaluable
        options = SolverOptions(num_quasi_rand_samples=4, local_max_obj_eval=4, max_obj_eval=16)
        result = falsify(_session(flaky_simulator), "phi", options)
        assert not result["falsified"]
        assert result["num_faults"] > 0
        assert result["best_robustness"] >= 0.0
        assert result["best_params"]["k"] <= 0.5


class TestCorners:
    def test_too_many_corners(self, ramp2_simulator):
        session = AnalysisSession(ramp2_simulator, TIME)
        session.load_specs("psi := alw_[0,10] (x[t] < y[t] + 10)")
        session.set_param_ranges(["k", "c"], [(0.0, 1.0), (0.0, 1.0)])
        problem = FalsificationProblem(session, "psi", SolverOptions(num_corners=3))
        with pytest.raises(ValueError):
            problem.solve()

    def test_nothing_to_search(self, ramp_simulator):
        session = AnalysisSession(ramp_simulator, TIME)
        session.load_specs("phi := alw_[0,10] (x[t] < 5)")
        with pytest.raises(ValueError):
            FalsificationProblem(session, "phi")


class TestResume:
    def test_split_run_matches_single_run(self, ramp_simulator):
        def options(budget):
            return SolverOptions(num_corners=0, num_quasi_rand_samples=4,
                                 local_max_obj_eval=0, max_obj_eval=budget)

        single = FalsificationProblem(_session(ramp_simulator, 0.0, 0.4), "phi", options(13))
        single.solve()

        split = FalsificationProblem(_session(ramp_simulator, 0.0, 0.4), "phi", options(6))
        first = split.solve()
        assert first["num_evaluations"] == 6
        assert first["stop_reason"] == "max_obj_eval"
        split.options.max_obj_eval = 13
        second = split.solve()

        assert second["num_evaluations"] == 13
        assert _trace(split) == _trace(single)
        assert second["best_robustness"] == single.result()["best_robustness"]

    def test_resume_through_local_phase(self, ramp_simulator):
        def options(budget):
            return SolverOptions(num_quasi_rand_samples=4, local_max_obj_eval=5,
                                 max_obj_eval=budget, seed=7)

        single = FalsificationProblem(_session(ramp_simulator, 0.0, 0.4), "phi", options(15))
        best_single = single.solve()["best_robustness"]

        split = FalsificationProblem(_session(ramp_simulator, 0.0, 0.4), "phi", options(7))
        split.solve()
        split.options.max_obj_eval = 15
        best_split = split.solve()["best_robustness"]

        assert split.state.evals == 15
        assert best_split <= best_single + 1e-12

    def test_falsified_run_stays_done(self, ramp_simulator):
        problem = FalsificationProblem(_session(ramp_simulator), "phi", SolverOptions(num_corners=2))
        problem.solve()
        problem.options.max_obj_eval += 10
        result = problem.solve()
        assert result["num_evaluations"] == 2
        assert result["stop_reason"] == "falsified"

    def test_reset(self, ramp_simulator):
        problem = FalsificationProblem(_session(ramp_simulator), "phi", SolverOptions(num_corners=2))
        problem.solve()
        problem.reset()
        assert problem.state.evals == 0
        assert problem.state.phase == Phase.IDLE


class TestOutput:
    def test_output_files(self, ramp_simulator, tmp_path):
        options = SolverOptions(num_corners=2)
        result = falsify(_session(ramp_simulator), "phi", options, output_dir=str(tmp_path / "run"))
        saved = json.loads((tmp_path / "run" / "result.json").read_text())
        trials = json.loads((tmp_path / "run" / "all_trials.json").read_text())
        assert saved["falsified"] == result["falsified"]
        assert saved["best_params"] == {"k": 1.0}
        assert [t["trial"] for t in trials] == [1, 2]

    def test_verbose_banners(self, ramp_simulator, capsys):
        falsify(_session(ramp_simulator), "phi", SolverOptions(num_corners=2, verbose=True))
        out = capsys.readouterr().out
        assert "START OPTIMIZATION METAHEURISTICS" in out
        assert "TEST CORNERS" in out
        assert "END OPTIMIZATION METAHEURISTICS" in out


class TestCli:
    def test_parse_range(self):
        assert _parse_range("k=0.1:2") == ("k", 0.1, 2.0)
        with pytest.raises(ValueError):
            _parse_range("k")

    def test_parse_time_span(self):
        np.testing.assert_allclose(_parse_time_span("0:1:0.25"), [0, 0.25, 0.5, 0.75, 1.0])
        with pytest.raises(ValueError):
            _parse_time_span("0:1")

    def test_check_command(self, tmp_path, capsys):
        spec = tmp_path / "specs.stl"
        spec.write_text("phi := alw_[0,5] (x[t] < 10)\n")
        trace = tmp_path / "trace.csv"
        trace.write_text("time,x\n" + "".join(f"{t},5\n" for t in range(11)))
        assert main(["check", "--spec", str(spec), "--trace", str(trace)]) == 0
        assert "phi: robustness 5 (satisfied)" in capsys.readouterr().out

    def test_no_command(self, capsys):
        assert main([]) == 1
