import numpy as np
import pytest

from stl_falsifier.executor import FunctionSimulator
from stl_falsifier.formula import FormulaRegistry
from stl_falsifier.session import AnalysisSession

TIME = np.linspace(0.0, 10.0, 11)


def ramp(params, time):
    """x(t) = k * t"""
    return np.array([params["k"] * time])


def ramp2(params, time):
    """x(t) = k * t, y(t) = c - t"""
    return np.array([params["k"] * time, params["c"] - time])


def crashing(params, time):
    raise RuntimeError("solver diverged")


def crash_above_half(params, time):
    if params["k"] > 0.5:
        raise RuntimeError("solver diverged")
    return np.array([params["k"] * time])


@pytest.fixture
def time_grid():
    return TIME.copy()


@pytest.fixture
def registry():
    return FormulaRegistry(signals=["x", "y"])


@pytest.fixture
def ramp_simulator():
    return FunctionSimulator(ramp, signal_names=["x"], param_names=["k"], defaults={"k": 0.5})


@pytest.fixture
def ramp2_simulator():
    return FunctionSimulator(ramp2, signal_names=["x", "y"], param_names=["k", "c"],
                             defaults={"k": 0.5, "c": 5.0})


@pytest.fixture
def crashing_simulator():
    return FunctionSimulator(crashing, signal_names=["x"], param_names=["k"])


@pytest.fixture
def flaky_simulator():
    return FunctionSimulator(crash_above_half, signal_names=["x"], param_names=["k"])


@pytest.fixture
def session(ramp_simulator):
    """x = k*t over [0, 10] with phi := alw_[0,10] (x[t] < 5), i.e. robustness 5 - 10k."""
    s = AnalysisSession(ramp_simulator, TIME)
    s.load_specs("phi := alw_[0,10] (x[t] < 5)")
    return s
