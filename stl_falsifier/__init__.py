"""
STL falsification engine for simulated dynamical systems.

This module provides tools for:
- Parsing Signal Temporal Logic specifications using PLY
- Computing quantitative (robustness) semantics over sampled signals
- Managing parameter sets with refinement, sampling and trajectory caching
- Running simulators over batches of parameters
- Searching parameters that violate a specification using nevergrad
- Screening parameter sensitivity
"""

from .errors import (
    StlFalsifierError,
    UnknownSignalError,
    UnknownParameterError,
    UnknownNameError,
    FormulaIdentifierConflictError,
    OutOfDomainTimeError,
    RefinementVolumeMismatchError,
    SpecSyntaxError,
    SimulationFault,
)

from .signals import (
    Trajectory,
    SignalView,
    load_trace,
)

from .formula import (
    STLFormula,
    FormulaRegistry,
    signal,
    predicate,
    not_,
    and_,
    or_,
    implies,
    always,
    eventually,
    until,
)

from .spec_parser import (
    SpecParser,
    parse_spec_text,
    parse_spec_file,
    parse_formula,
)

from .robustness import (
    RobustnessSignal,
    robustness_signal,
    evaluate,
    evaluate_on_grid,
)

from .param_set import (
    ParameterRange,
    ParameterSet,
)

from .executor import (
    Simulator,
    FunctionSimulator,
    ExecutionConfig,
    SimulationExecutor,
)

from .session import AnalysisSession

from .falsify import (
    SolverOptions,
    Phase,
    FalsificationProblem,
    falsify,
)

from .sensitivity import (
    SensitivityResult,
    sensitivity_analysis,
    check_monotony,
)

from .logging_config import setup_logging

__all__ = [
    # Errors
    "StlFalsifierError",
    "UnknownSignalError",
    "UnknownParameterError",
    "UnknownNameError",
    "FormulaIdentifierConflictError",
    "OutOfDomainTimeError",
    "RefinementVolumeMismatchError",
    "SpecSyntaxError",
    "SimulationFault",
    # Signals
    "Trajectory",
    "SignalView",
    "load_trace",
    # Formulas
    "STLFormula",
    "FormulaRegistry",
    "signal",
    "predicate",
    "not_",
    "and_",
    "or_",
    "implies",
    "always",
    "eventually",
    "until",
    # Spec Parser (PLY-based)
    "SpecParser",
    "parse_spec_text",
    "parse_spec_file",
    "parse_formula",
    # Robustness
    "RobustnessSignal",
    "robustness_signal",
    "evaluate",
    "evaluate_on_grid",
    # Parameter Sets
    "ParameterRange",
    "ParameterSet",
    # Execution
    "Simulator",
    "FunctionSimulator",
    "ExecutionConfig",
    "SimulationExecutor",
    # Session
    "AnalysisSession",
    # Falsification
    "SolverOptions",
    "Phase",
    "FalsificationProblem",
    "falsify",
    # Sensitivity
    "SensitivityResult",
    "sensitivity_analysis",
    "check_monotony",
    # Logging
    "setup_logging",
]
