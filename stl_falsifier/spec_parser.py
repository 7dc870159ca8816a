"""
Specification Parser using PLY (Python Lex-Yacc)

This module parses specification files made of newline-separated statements:
    - param <name>=<value>[, <name>=<value>]*
    - signal <name>[, <name>]*
    - <name> := <formula>

Where formulas combine:
    - predicates:   <expr> op <expr>, op in {<, <=, >, >=, ==}
    - signals:      x[t], x[t+2], x[t-T0] (a bare x means x[t])
    - connectives:  and, or, not, =>
    - temporal:     alw_[a,b] phi, ev_[a,b] phi, phi until_[a,b] psi

Comments start with '#'. A line that does not start a new statement continues
the previous one.

Usage:
    from stl_falsifier.formula import FormulaRegistry
    from stl_falsifier.spec_parser import parse_spec_text

    registry = FormulaRegistry()
    parse_spec_text('''
        signal x
        param vmax=10
        phi := alw_[0,5] (x[t] < vmax)
    ''', registry)
    registry.get("phi")
"""

import re
from typing import Any, List, Optional, Tuple

import ply.lex as lex
import ply.yacc as yacc

from .errors import SpecSyntaxError, UnknownNameError, UnknownSignalError
from .formula import (
    Abs,
    Always,
    And,
    BinOp,
    Constant,
    Eventually,
    FormulaRegistry,
    Neg,
    Not,
    Or,
    ParamRef,
    Predicate,
    SignalRef,
    STLFormula,
    TimeInterval,
    Until,
    iter_expr,
    resolve_scalar,
)


# ---------------------------------------------------------------------------
# Lexer
# ---------------------------------------------------------------------------

class SpecLexer:
    """
    Lexer for specification statements.

    Identifiers are classified against the registry: declared signals lex as
    SIGNAL_NAME, declared parameters as PARAM_NAME, registered formulas as
    FORMULA_NAME, anything else as ID.
    """

    # Reserved words
    reserved = {
        'param': 'PARAM_KW',
        'signal': 'SIGNAL_KW',
        'alw_': 'ALW',
        'alw': 'ALW',
        'ev_': 'EV',
        'ev': 'EV',
        'until_': 'UNTIL',
        'until': 'UNTIL',
        'and': 'AND',
        'or': 'OR',
        'not': 'NOT',
        'abs': 'ABS',
        'inf': 'INF',
        't': 'T',
    }

    # Token list
    tokens = [
        'ID',
        'SIGNAL_NAME',
        'PARAM_NAME',
        'FORMULA_NAME',
        'NUMBER',
        'DEFINE',
        'IMPLIES',
        'LE',
        'GE',
        'EQ',
        'LT',
        'GT',
        'ASSIGN',
        'PLUS',
        'MINUS',
        'TIMES',
        'DIVIDE',
        'LPAREN',
        'RPAREN',
        'LBRACKET',
        'RBRACKET',
        'COMMA',
    ] + sorted(set(reserved.values()))

    # Simple tokens
    t_DEFINE = r':='
    t_IMPLIES = r'=>'
    t_LE = r'<='
    t_GE = r'>='
    t_EQ = r'=='
    t_LT = r'<'
    t_GT = r'>'
    t_ASSIGN = r'='
    t_PLUS = r'\+'
    t_MINUS = r'-'
    t_TIMES = r'\*'
    t_DIVIDE = r'/'
    t_LPAREN = r'\('
    t_RPAREN = r'\)'
    t_LBRACKET = r'\['
    t_RBRACKET = r'\]'
    t_COMMA = r','

    # Ignored characters
    t_ignore = ' \t\r'

    def __init__(self, registry: FormulaRegistry):
        self.registry = registry

    def t_NUMBER(self, t):
        r'(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?'
        t.value = float(t.value)
        return t

    def t_ID(self, t):
        r'[a-zA-Z_][a-zA-Z0-9_]*'
        if t.value in self.reserved:
            t.type = self.reserved[t.value]
        elif t.value in self.registry.signals:
            t.type = 'SIGNAL_NAME'
        elif t.value in self.registry.params:
            t.type = 'PARAM_NAME'
        elif t.value in self.registry:
            t.type = 'FORMULA_NAME'
        return t

    def t_newline(self, t):
        r'\n+'
        t.lexer.lineno += len(t.value)

    def t_error(self, t):
        raise SpecSyntaxError(f"Illegal character '{t.value[0]}'", line=t.lexer.lineno)

    def build(self, **kwargs):
        self.lexer = lex.lex(module=self, **kwargs)
        return self.lexer


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class SpecParser:
    """Parser for one specification statement at a time."""

    tokens = SpecLexer.tokens

    precedence = (
        ('right', 'IMPLIES'),
        ('left', 'OR'),
        ('left', 'AND'),
        ('left', 'UNTIL'),
        ('right', 'NOT', 'ALW', 'EV'),
        ('nonassoc', 'LT', 'LE', 'GT', 'GE', 'EQ'),
        ('left', 'PLUS', 'MINUS'),
        ('left', 'TIMES', 'DIVIDE'),
        ('right', 'UMINUS'),
    )

    def __init__(self, registry: FormulaRegistry):
        self.registry = registry
        self.lexer = SpecLexer(registry).build()
        self.parser = yacc.yacc(module=self, debug=False, write_tables=False)
        self._line = 1
        self._source = ""

    def parse(self, statement: str, line: int = 1) -> Optional[Tuple[str, Any]]:
        """
        Parse one statement.

        Returns ('param', {name: value}), ('signal', [names]) or
        ('formula', STLFormula). Declarations are applied to the registry as
        they are parsed; formulas are returned unregistered.
        """
        if not statement or not statement.strip():
            return None
        self._line = line
        self._source = statement
        self.lexer.lineno = line
        return self.parser.parse(statement, lexer=self.lexer)

    # Statements

    def p_statement_param(self, p):
        '''statement : PARAM_KW param_list'''
        p[0] = ('param', dict(p[2]))

    def p_statement_signal(self, p):
        '''statement : SIGNAL_KW name_list'''
        self.registry.declare_signals(p[2])
        p[0] = ('signal', p[2])

    def p_statement_define(self, p):
        '''statement : def_name DEFINE formula'''
        source = self._source.split(':=', 1)[1].strip()
        p[0] = ('formula', STLFormula(id=p[1], root=p[3], source=source))

    def p_param_list_single(self, p):
        '''param_list : param_assign'''
        p[0] = [p[1]]

    def p_param_list_multiple(self, p):
        '''param_list : param_list COMMA param_assign'''
        p[0] = p[1] + [p[3]]

    def p_param_assign(self, p):
        '''param_assign : param_decl_name ASSIGN expr'''
        self._check_signal_free(p[3], "parameter value")
        value = resolve_scalar(p[3], self.registry.params)
        # declared immediately so later values in the same statement can use it
        self.registry.declare_params({p[1]: value})
        p[0] = (p[1], value)

    def p_param_decl_name(self, p):
        '''param_decl_name : ID
                           | PARAM_NAME'''
        p[0] = p[1]

    def p_name_list_single(self, p):
        '''name_list : signal_decl_name'''
        p[0] = [p[1]]

    def p_name_list_multiple(self, p):
        '''name_list : name_list COMMA signal_decl_name'''
        p[0] = p[1] + [p[3]]

    def p_signal_decl_name(self, p):
        '''signal_decl_name : ID
                            | SIGNAL_NAME'''
        p[0] = p[1]

    def p_def_name(self, p):
        '''def_name : ID
                    | FORMULA_NAME'''
        p[0] = p[1]

    # Formulas

    def p_formula_and(self, p):
        '''formula : formula AND formula'''
        p[0] = And(p[1], p[3])

    def p_formula_or(self, p):
        '''formula : formula OR formula'''
        p[0] = Or(p[1], p[3])

    def p_formula_implies(self, p):
        '''formula : formula IMPLIES formula'''
        p[0] = Or(Not(p[1]), p[3])

    def p_formula_not(self, p):
        '''formula : NOT formula'''
        p[0] = Not(p[2])

    def p_formula_always(self, p):
        '''formula : ALW interval formula
                   | ALW formula'''
        if len(p) == 4:
            p[0] = Always(p[3], p[2])
        else:
            p[0] = Always(p[2])

    def p_formula_eventually(self, p):
        '''formula : EV interval formula
                   | EV formula'''
        if len(p) == 4:
            p[0] = Eventually(p[3], p[2])
        else:
            p[0] = Eventually(p[2])

    def p_formula_until(self, p):
        '''formula : formula UNTIL interval formula
                   | formula UNTIL formula'''
        if len(p) == 5:
            p[0] = Until(p[1], p[4], p[3])
        else:
            p[0] = Until(p[1], p[3])

    def p_formula_group(self, p):
        '''formula : LPAREN formula RPAREN'''
        p[0] = p[2]

    def p_formula_ref(self, p):
        '''formula : FORMULA_NAME'''
        p[0] = self.registry.get(p[1]).root

    def p_formula_predicate(self, p):
        '''formula : expr LT expr
                   | expr LE expr
                   | expr GT expr
                   | expr GE expr
                   | expr EQ expr'''
        p[0] = Predicate(p[1], p[2], p[3])

    def p_interval(self, p):
        '''interval : LBRACKET expr COMMA expr RBRACKET'''
        self._check_signal_free(p[2], "time bound")
        self._check_signal_free(p[4], "time bound")
        p[0] = TimeInterval(p[2], p[4])

    # Arithmetic

    def p_expr_binop(self, p):
        '''expr : expr PLUS expr
                | expr MINUS expr
                | expr TIMES expr
                | expr DIVIDE expr'''
        p[0] = BinOp(p[2], p[1], p[3])

    def p_expr_uminus(self, p):
        '''expr : MINUS expr %prec UMINUS'''
        if isinstance(p[2], Constant):
            p[0] = Constant(-p[2].value)
        else:
            p[0] = Neg(p[2])

    def p_expr_group(self, p):
        '''expr : LPAREN expr RPAREN'''
        p[0] = p[2]

    def p_expr_abs(self, p):
        '''expr : ABS LPAREN expr RPAREN'''
        p[0] = Abs(p[3])

    def p_expr_number(self, p):
        '''expr : NUMBER'''
        p[0] = Constant(p[1])

    def p_expr_inf(self, p):
        '''expr : INF'''
        p[0] = Constant(float('inf'))

    def p_expr_param(self, p):
        '''expr : PARAM_NAME'''
        p[0] = ParamRef(p[1])

    def p_expr_signal(self, p):
        '''expr : SIGNAL_NAME
                | SIGNAL_NAME LBRACKET T RBRACKET'''
        p[0] = SignalRef(p[1])

    def p_expr_signal_shift(self, p):
        '''expr : SIGNAL_NAME LBRACKET T PLUS expr RBRACKET
                | SIGNAL_NAME LBRACKET T MINUS expr RBRACKET'''
        self._check_signal_free(p[5], "time shift")
        shift = p[5]
        if p[4] == '-':
            shift = Constant(-shift.value) if isinstance(shift, Constant) else Neg(shift)
        p[0] = SignalRef(p[1], shift)

    def p_expr_unknown_signal(self, p):
        '''expr : ID LBRACKET T RBRACKET
                | ID LBRACKET T PLUS expr RBRACKET
                | ID LBRACKET T MINUS expr RBRACKET'''
        raise UnknownSignalError(p[1])

    def p_expr_unknown(self, p):
        '''expr : ID'''
        raise UnknownNameError(p[1])

    def p_error(self, p):
        if p:
            raise SpecSyntaxError(f"Syntax error at '{p.value}'", line=p.lineno, text=self._source)
        raise SpecSyntaxError("Unexpected end of statement", line=self._line, text=self._source)

    def _check_signal_free(self, expr, what: str):
        for node in iter_expr(expr):
            if isinstance(node, SignalRef):
                raise SpecSyntaxError(
                    f"Signal '{node.name}' is not allowed in a {what}",
                    line=self._line,
                    text=self._source,
                )


# ---------------------------------------------------------------------------
# Statement splitting and entry points
# ---------------------------------------------------------------------------

_STATEMENT_START = re.compile(r'^\s*(param\b|signal\b|[A-Za-z_][A-Za-z0-9_]*\s*:=)')


def split_statements(text: str) -> List[Tuple[int, str]]:
    """
    Split specification text into (line number, statement) pairs.

    Comments are stripped and continuation lines are joined to the statement
    they continue.
    """
    statements: List[Tuple[int, List[str]]] = []
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.split('#', 1)[0].rstrip()
        if not line.strip():
            continue
        if _STATEMENT_START.match(line) or not statements:
            if not _STATEMENT_START.match(line):
                raise SpecSyntaxError("Expected a param, signal or ':=' statement",
                                      line=lineno, text=line.strip())
            statements.append((lineno, [line.strip()]))
        else:
            statements[-1][1].append(line.strip())
    return [(lineno, "\n".join(lines)) for lineno, lines in statements]


def parse_spec_text(text: str, registry: FormulaRegistry, replace: bool = False) -> List[STLFormula]:
    """
    Parse specification text into ``registry``.

    Signal and parameter declarations update the registry. Each definition is
    registered in order, so later formulas may reference earlier ones by name.

    Returns:
        The formulas defined by the text, in order.
    """
    parser = SpecParser(registry)
    formulas = []
    for lineno, statement in split_statements(text):
        kind, value = parser.parse(statement, line=lineno)
        if kind == 'formula':
            formulas.append(registry.add(value, replace=replace))
    return formulas


def parse_spec_file(filepath: str, registry: FormulaRegistry, replace: bool = False) -> List[STLFormula]:
    with open(filepath, 'r') as f:
        return parse_spec_text(f.read(), registry, replace=replace)


def parse_formula(text: str, registry: FormulaRegistry, formula_id: Optional[str] = None,
                  replace: bool = False) -> STLFormula:
    """Parse a single formula body and register it under ``formula_id``."""
    if formula_id is None:
        formula_id = registry.make_unique_id("phi")
    body = " ".join(line.split('#', 1)[0].strip() for line in text.splitlines())
    kind, formula = SpecParser(registry).parse(f"{formula_id} := {body}")
    return registry.add(formula, replace=replace)
