"""
Error kinds raised by the falsification engine.

Fatal errors carry the offending identifier, time or point as attributes so
callers can report them without parsing messages. Per-point simulation faults
are never raised out of a batch: they are recorded as NaN robustness and
summarized in the run result.
"""

from typing import Optional, Tuple


class StlFalsifierError(Exception):
    """Base class for all errors raised by stl_falsifier."""


class UnknownSignalError(StlFalsifierError, ValueError):
    """A predicate references a signal that was never declared."""

    def __init__(self, name: str, formula_id: Optional[str] = None):
        self.name = name
        self.formula_id = formula_id
        where = f" in formula '{formula_id}'" if formula_id else ""
        super().__init__(f"Unknown signal '{name}'{where}")


class UnknownParameterError(StlFalsifierError, ValueError):
    """A parameter reference cannot be resolved."""

    def __init__(self, name: str, formula_id: Optional[str] = None):
        self.name = name
        self.formula_id = formula_id
        where = f" in formula '{formula_id}'" if formula_id else ""
        super().__init__(f"Unknown parameter '{name}'{where}")


class UnknownNameError(UnknownSignalError, UnknownParameterError):
    """A bare identifier is neither a declared signal nor a declared parameter."""

    def __init__(self, name: str, formula_id: Optional[str] = None):
        self.name = name
        self.formula_id = formula_id
        where = f" in formula '{formula_id}'" if formula_id else ""
        StlFalsifierError.__init__(self, f"Unknown signal or parameter '{name}'{where}")


class FormulaIdentifierConflictError(StlFalsifierError, ValueError):
    """An identifier is re-declared with a different body."""

    def __init__(self, formula_id: str):
        self.formula_id = formula_id
        super().__init__(
            f"Formula '{formula_id}' is already defined with a different body "
            f"(use replace=True to rebind it)"
        )


class OutOfDomainTimeError(StlFalsifierError, ValueError):
    """A signal was queried outside the time range it is defined on."""

    def __init__(self, time: float, domain: Tuple[float, float], name: Optional[str] = None):
        self.time = time
        self.domain = domain
        self.name = name
        what = f"Signal '{name}'" if name else "Signal"
        super().__init__(
            f"{what} queried at t={time:g} outside its domain [{domain[0]:g}, {domain[1]:g}]"
        )


class RefinementVolumeMismatchError(StlFalsifierError, RuntimeError):
    """Refinement changed the covered volume (internal invariant violation)."""

    def __init__(self, point_index: int, before: float, after: float):
        self.point_index = point_index
        self.before = before
        self.after = after
        super().__init__(
            f"Refinement of point {point_index} changed covered volume "
            f"from {before!r} to {after!r}"
        )


class SpecSyntaxError(StlFalsifierError, ValueError):
    """Malformed specification text."""

    def __init__(self, message: str, line: Optional[int] = None, text: Optional[str] = None):
        self.line = line
        self.text = text
        prefix = f"line {line}: " if line is not None else ""
        super().__init__(f"{prefix}{message}")


class SimulationFault(StlFalsifierError, RuntimeError):
    """A simulation failed for one parameter point (non-fatal)."""

    def __init__(self, point, reason: str):
        self.point = point
        self.reason = reason
        super().__init__(f"Simulation failed at {point}: {reason}")
