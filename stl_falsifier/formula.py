"""
STL formula model.

Formulas are trees over a closed set of node kinds:

    Predicate   lhs op rhs, op in {<, <=, >, >=, ==}
    Not         not phi
    And / Or    phi and psi, phi or psi
    Always      alw_[a,b] phi
    Eventually  ev_[a,b] phi
    Until       phi until_[a,b] psi

Predicates compare arithmetic expressions over signals (optionally time
shifted, x[t+k]) and parameters. Interval bounds and shifts may be parameter
names, resolved at evaluation time.

A FormulaRegistry interns identified formulas for one analysis session. It is
an explicit object handed to the parser and the session, never global state.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple, Union

from .errors import (
    FormulaIdentifierConflictError,
    UnknownParameterError,
    UnknownSignalError,
)


# =============================================================================
# ARITHMETIC EXPRESSIONS
# =============================================================================

@dataclass(frozen=True)
class Constant:
    value: float


@dataclass(frozen=True)
class ParamRef:
    name: str


@dataclass(frozen=True)
class SignalRef:
    """Signal ``name`` sampled at t + shift."""
    name: str
    shift: "Expr" = Constant(0.0)


@dataclass(frozen=True)
class BinOp:
    op: str  # '+', '-', '*', '/'
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Neg:
    operand: "Expr"


@dataclass(frozen=True)
class Abs:
    operand: "Expr"


Expr = Union[Constant, ParamRef, SignalRef, BinOp, Neg, Abs]

ARITH_OPS = ('+', '-', '*', '/')
COMPARISON_OPS = ('<', '<=', '>', '>=', '==')


@dataclass(frozen=True)
class TimeInterval:
    """Bounds [lo, hi] of a temporal operator, relative to the current time."""
    lo: Expr = Constant(0.0)
    hi: Expr = Constant(math.inf)

    def resolve(self, params: Mapping[str, float]) -> Tuple[float, float]:
        a = resolve_scalar(self.lo, params)
        b = resolve_scalar(self.hi, params)
        if math.isnan(a) or math.isnan(b) or a < 0 or b < a:
            raise ValueError(f"Invalid time interval [{a:g}, {b:g}]")
        return a, b


def resolve_scalar(expr: Expr, params: Mapping[str, float]) -> float:
    """Evaluate a signal-free expression (bounds, shifts)."""
    if isinstance(expr, Constant):
        return float(expr.value)
    if isinstance(expr, ParamRef):
        if expr.name not in params:
            raise UnknownParameterError(expr.name)
        return float(params[expr.name])
    if isinstance(expr, Neg):
        return -resolve_scalar(expr.operand, params)
    if isinstance(expr, Abs):
        return abs(resolve_scalar(expr.operand, params))
    if isinstance(expr, BinOp):
        return apply_arith(expr.op, resolve_scalar(expr.left, params), resolve_scalar(expr.right, params))
    if isinstance(expr, SignalRef):
        raise ValueError(f"Signal '{expr.name}' is not allowed in a time bound or shift")
    raise TypeError(f"Unknown expression node: {expr!r}")


def apply_arith(op: str, left, right):
    if op == '+':
        return left + right
    if op == '-':
        return left - right
    if op == '*':
        return left * right
    if op == '/':
        return left / right
    raise ValueError(f"Unknown arithmetic operator: {op}")


# =============================================================================
# FORMULA NODES
# =============================================================================

@dataclass(frozen=True)
class Predicate:
    lhs: Expr
    op: str
    rhs: Expr


@dataclass(frozen=True)
class Not:
    phi: "Node"


@dataclass(frozen=True)
class And:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Or:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Always:
    phi: "Node"
    interval: TimeInterval = TimeInterval()


@dataclass(frozen=True)
class Eventually:
    phi: "Node"
    interval: TimeInterval = TimeInterval()


@dataclass(frozen=True)
class Until:
    left: "Node"
    right: "Node"
    interval: TimeInterval = TimeInterval()


Node = Union[Predicate, Not, And, Or, Always, Eventually, Until]


# =============================================================================
# BUILDERS
# =============================================================================

def _as_expr(value: Union[Expr, float, int, str]) -> Expr:
    if isinstance(value, (Constant, ParamRef, SignalRef, BinOp, Neg, Abs)):
        return value
    if isinstance(value, str):
        return ParamRef(value)
    return Constant(float(value))


def signal(name: str, shift: Union[Expr, float, str] = 0.0) -> SignalRef:
    return SignalRef(name, _as_expr(shift))


def predicate(lhs, op: str, rhs) -> Predicate:
    """lhs op rhs; plain numbers become constants, strings become parameters."""
    if op not in COMPARISON_OPS:
        raise ValueError(f"Unknown comparison operator: {op}")
    return Predicate(_as_expr(lhs), op, _as_expr(rhs))


def interval(lo=0.0, hi=math.inf) -> TimeInterval:
    return TimeInterval(_as_expr(lo), _as_expr(hi))


def not_(phi: Node) -> Not:
    return Not(phi)


def and_(*operands: Node) -> Node:
    """phi_1 and ... and phi_n, folded left."""
    if not operands:
        raise ValueError("and_ needs at least one operand")
    result = operands[0]
    for op in operands[1:]:
        result = And(result, op)
    return result


def or_(*operands: Node) -> Node:
    if not operands:
        raise ValueError("or_ needs at least one operand")
    result = operands[0]
    for op in operands[1:]:
        result = Or(result, op)
    return result


def implies(phi: Node, psi: Node) -> Node:
    """phi => psi, i.e. (not phi) or psi"""
    return Or(Not(phi), psi)


def always(phi: Node, lo=0.0, hi=math.inf) -> Always:
    return Always(phi, interval(lo, hi))


def eventually(phi: Node, lo=0.0, hi=math.inf) -> Eventually:
    return Eventually(phi, interval(lo, hi))


def until(phi: Node, psi: Node, lo=0.0, hi=math.inf) -> Until:
    return Until(phi, psi, interval(lo, hi))


# =============================================================================
# TRAVERSAL
# =============================================================================

def iter_expr(expr: Expr) -> Iterator[Expr]:
    yield expr
    if isinstance(expr, SignalRef):
        yield from iter_expr(expr.shift)
    elif isinstance(expr, BinOp):
        yield from iter_expr(expr.left)
        yield from iter_expr(expr.right)
    elif isinstance(expr, (Neg, Abs)):
        yield from iter_expr(expr.operand)


def iter_nodes(node: Node) -> Iterator[Node]:
    yield node
    if isinstance(node, (Not, Always, Eventually)):
        yield from iter_nodes(node.phi)
    elif isinstance(node, (And, Or, Until)):
        yield from iter_nodes(node.left)
        yield from iter_nodes(node.right)


def _node_exprs(node: Node) -> List[Expr]:
    if isinstance(node, Predicate):
        return [node.lhs, node.rhs]
    if isinstance(node, (Always, Eventually, Until)):
        return [node.interval.lo, node.interval.hi]
    return []


def signals_of(node: Node) -> Set[str]:
    names = set()
    for n in iter_nodes(node):
        for e in _node_exprs(n):
            names.update(x.name for x in iter_expr(e) if isinstance(x, SignalRef))
    return names


def params_of(node: Node) -> Set[str]:
    names = set()
    for n in iter_nodes(node):
        for e in _node_exprs(n):
            names.update(x.name for x in iter_expr(e) if isinstance(x, ParamRef))
    return names


# =============================================================================
# RENDERING
# =============================================================================

def _fmt_number(value: float) -> str:
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    return f"{value:g}"


def expr_to_string(expr: Expr) -> str:
    if isinstance(expr, Constant):
        return _fmt_number(expr.value)
    if isinstance(expr, ParamRef):
        return expr.name
    if isinstance(expr, SignalRef):
        shift = expr.shift
        if isinstance(shift, Constant) and shift.value == 0:
            return f"{expr.name}[t]"
        if isinstance(shift, Constant) and shift.value < 0:
            return f"{expr.name}[t-{_fmt_number(-shift.value)}]"
        return f"{expr.name}[t+{expr_to_string(shift)}]"
    if isinstance(expr, BinOp):
        return f"({expr_to_string(expr.left)} {expr.op} {expr_to_string(expr.right)})"
    if isinstance(expr, Neg):
        return f"-{expr_to_string(expr.operand)}"
    if isinstance(expr, Abs):
        return f"abs({expr_to_string(expr.operand)})"
    raise TypeError(f"Unknown expression node: {expr!r}")


def _interval_to_string(itv: TimeInterval) -> str:
    return f"[{expr_to_string(itv.lo)},{expr_to_string(itv.hi)}]"


def to_string(node: Node) -> str:
    """Render a formula back into the specification text syntax."""
    if isinstance(node, Predicate):
        return f"{expr_to_string(node.lhs)} {node.op} {expr_to_string(node.rhs)}"
    if isinstance(node, Not):
        return f"not ({to_string(node.phi)})"
    if isinstance(node, And):
        return f"({to_string(node.left)}) and ({to_string(node.right)})"
    if isinstance(node, Or):
        return f"({to_string(node.left)}) or ({to_string(node.right)})"
    if isinstance(node, Always):
        return f"alw_{_interval_to_string(node.interval)} ({to_string(node.phi)})"
    if isinstance(node, Eventually):
        return f"ev_{_interval_to_string(node.interval)} ({to_string(node.phi)})"
    if isinstance(node, Until):
        return (f"({to_string(node.left)}) until_{_interval_to_string(node.interval)} "
                f"({to_string(node.right)})")
    raise TypeError(f"Unknown formula node: {node!r}")


# =============================================================================
# IDENTIFIED FORMULAS AND REGISTRY
# =============================================================================

@dataclass(frozen=True)
class STLFormula:
    """
    A formula with a unique identifier.

    The identifier is the registry key and the robustness memo key.

    Attributes:
        id: Unique identifier
        root: Formula tree
        source: Original text, if parsed
    """
    id: str
    root: Node
    source: str = field(default="", compare=False)

    @property
    def signals(self) -> Set[str]:
        return signals_of(self.root)

    @property
    def params(self) -> Set[str]:
        return params_of(self.root)

    def __str__(self) -> str:
        return to_string(self.root)


class FormulaRegistry:
    """
    Formulas of one analysis session, keyed by identifier.

    Holds the declared signal names (used to validate predicates) and the
    default values of declared parameters.
    """

    def __init__(self, signals: Iterable[str] = (), params: Optional[Mapping[str, float]] = None):
        self.signals: Set[str] = set(signals)
        self.params: Dict[str, float] = dict(params or {})
        self._formulas: Dict[str, STLFormula] = {}

    def declare_signals(self, names: Iterable[str]):
        self.signals.update(names)

    def declare_params(self, values: Mapping[str, float]):
        self.params.update({k: float(v) for k, v in values.items()})

    def check_signals(self, formula: STLFormula):
        unknown = sorted(formula.signals - self.signals)
        if unknown:
            raise UnknownSignalError(unknown[0], formula.id)

    def add(self, formula: STLFormula, replace: bool = False) -> STLFormula:
        """
        Register a formula.

        Re-adding the same body under the same id is a no-op. A different body
        raises FormulaIdentifierConflictError unless ``replace`` is set.
        """
        self.check_signals(formula)
        existing = self._formulas.get(formula.id)
        if existing is not None and not replace:
            if existing.root == formula.root:
                return existing
            raise FormulaIdentifierConflictError(formula.id)
        self._formulas[formula.id] = formula
        return formula

    def get(self, formula_id: str) -> STLFormula:
        try:
            return self._formulas[formula_id]
        except KeyError:
            raise KeyError(f"No formula named '{formula_id}'") from None

    __getitem__ = get

    def __contains__(self, formula_id: str) -> bool:
        return formula_id in self._formulas

    def __len__(self) -> int:
        return len(self._formulas)

    def __iter__(self) -> Iterator[STLFormula]:
        return iter(list(self._formulas.values()))

    def ids(self) -> List[str]:
        return list(self._formulas.keys())

    def remove(self, formula_id: str):
        self._formulas.pop(formula_id, None)

    def clear(self):
        self._formulas.clear()

    def make_unique_id(self, prefix: str = "phi") -> str:
        if prefix not in self._formulas:
            return prefix
        k = 1
        while f"{prefix}{k}" in self._formulas:
            k += 1
        return f"{prefix}{k}"
