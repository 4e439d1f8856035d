"""
Constant Evaluator
==================

Compile-time evaluation of constant expressions.

Evaluation goes through Python's own operators (``operator`` module and
the real builtins), so a folded value is exactly what the interpreter
would have produced at runtime: int results never overflow, ``/`` of two
ints is a float, ``and``/``or`` return an operand rather than a bool, and
so on. Anything that raises, or whose result would be huge, is reported
as ``NotFoldable`` and left for runtime.
"""

import ast
import math
import operator
from typing import Any, Callable, Dict, List, Optional

from astpipe.compiler.tree import is_safe_constant

MAX_INT_BITS = 4096
MAX_SEQ_LEN = 4096


class NotFoldable(Exception):
    """The expression cannot be evaluated at compile time."""


BINOPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.LShift: operator.lshift,
    ast.RShift: operator.rshift,
    ast.BitOr: operator.or_,
    ast.BitXor: operator.xor,
    ast.BitAnd: operator.and_,
}

UNARYOPS: Dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.Not: operator.not_,
    ast.Invert: operator.invert,
}

CMPOPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: operator.contains(b, a),
    ast.NotIn: lambda a, b: not operator.contains(b, a),
}

# Builtins whose result depends only on immutable arguments
PURE_BUILTINS: Dict[str, Callable] = {
    'abs': abs, 'all': all, 'any': any, 'bin': bin, 'bool': bool,
    'chr': chr, 'divmod': divmod, 'float': float, 'hex': hex, 'int': int,
    'len': len, 'max': max, 'min': min, 'oct': oct, 'ord': ord, 'pow': pow,
    'repr': repr, 'round': round, 'str': str, 'sum': sum, 'tuple': tuple,
    'sorted': sorted, 'reversed': reversed, 'range': range,
}

PURE_MODULE_FUNCTIONS: Dict[str, Callable] = {
    f'math.{name}': getattr(math, name)
    for name in (
        'acos', 'asin', 'atan', 'atan2', 'ceil', 'comb', 'copysign', 'cos',
        'cosh', 'degrees', 'exp', 'fabs', 'factorial', 'floor', 'fmod',
        'gcd', 'hypot', 'isclose', 'isfinite', 'isinf', 'isnan', 'isqrt',
        'lcm', 'log', 'log10', 'log2', 'perm', 'pow', 'radians', 'sin',
        'sinh', 'sqrt', 'tan', 'tanh', 'trunc',
    )
}

_STR_METHODS = frozenset({
    'capitalize', 'casefold', 'center', 'count', 'endswith', 'find',
    'index', 'isalnum', 'isalpha', 'isascii', 'isdecimal', 'isdigit',
    'isidentifier', 'islower', 'isnumeric', 'isspace', 'istitle',
    'isupper', 'join', 'ljust', 'lower', 'lstrip', 'partition',
    'removeprefix', 'removesuffix', 'replace', 'rfind', 'rindex',
    'rjust', 'rpartition', 'rstrip', 'startswith', 'strip', 'swapcase',
    'title', 'upper', 'zfill',
})

# Methods on immutable receivers that neither mutate nor consult outside state
PURE_METHODS: Dict[type, frozenset] = {
    str: _STR_METHODS,
    bytes: frozenset(_STR_METHODS - {'casefold', 'isdecimal', 'isidentifier', 'isnumeric', 'format'}),
    int: frozenset({'bit_length', 'bit_count', 'conjugate'}),
    float: frozenset({'is_integer', 'hex', 'conjugate'}),
    tuple: frozenset({'count', 'index'}),
}


def is_pure_method(receiver_type: type, method: str) -> bool:
    return method in PURE_METHODS.get(receiver_type, ())


def _check_size(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value.bit_length() > MAX_INT_BITS:
        raise NotFoldable('integer result too large')
    if isinstance(value, (str, bytes, tuple)) and len(value) > MAX_SEQ_LEN:
        raise NotFoldable('sequence result too large')
    if not is_safe_constant(value):
        raise NotFoldable(f'{type(value).__name__} result cannot be embedded')
    return value


def _guard_binop(op: ast.operator, left, right):
    """Refuse operations whose result would be enormous before computing it."""
    ints = (isinstance(left, int) and not isinstance(left, bool)
            and isinstance(right, int) and not isinstance(right, bool))
    if isinstance(op, ast.Pow) and ints and right > 0 and abs(left) > 1:
        if right * left.bit_length() > MAX_INT_BITS:
            raise NotFoldable('power result too large')
    if isinstance(op, ast.LShift) and ints and right > MAX_INT_BITS:
        raise NotFoldable('shift result too large')
    if isinstance(op, ast.Mult):
        for seq, count in ((left, right), (right, left)):
            if isinstance(seq, (str, bytes, tuple)) and isinstance(count, int):
                if len(seq) * count > MAX_SEQ_LEN:
                    raise NotFoldable('repeated sequence too large')


def evaluate_binop(op: ast.operator, left, right):
    fn = BINOPS.get(type(op))
    if fn is None:
        raise NotFoldable(f'unsupported operator {type(op).__name__}')
    _guard_binop(op, left, right)
    try:
        result = fn(left, right)
    except Exception as e:
        raise NotFoldable(f'evaluation raises {type(e).__name__}') from e
    return _check_size(result)


def evaluate_unaryop(op: ast.unaryop, operand):
    fn = UNARYOPS.get(type(op))
    if fn is None:
        raise NotFoldable(f'unsupported operator {type(op).__name__}')
    try:
        result = fn(operand)
    except Exception as e:
        raise NotFoldable(f'evaluation raises {type(e).__name__}') from e
    return _check_size(result)


def evaluate_boolop(op: ast.boolop, values: List[Any]):
    """``and``/``or`` semantics: the deciding operand is the result."""
    for value in values[:-1]:
        if isinstance(op, ast.And) and not value:
            return value
        if isinstance(op, ast.Or) and value:
            return value
    return values[-1]


def evaluate_compare(ops: List[ast.cmpop], values: List[Any]):
    try:
        for op, left, right in zip(ops, values, values[1:]):
            if not CMPOPS[type(op)](left, right):
                return False
    except Exception as e:
        raise NotFoldable(f'comparison raises {type(e).__name__}') from e
    return True


def evaluate_call(fn: Callable, args: List[Any]):
    try:
        result = fn(*args)
    except Exception as e:
        raise NotFoldable(f'call raises {type(e).__name__}') from e
    return _check_size(result)


def evaluate_expr(
    node: ast.expr,
    lookup: Callable[[ast.Name], Any],
    resolve_callee: Optional[Callable[[ast.Call], Optional[Callable]]] = None,
):
    """
    Evaluate a constant expression tree.

    ``lookup`` maps a ``Name`` read to its value or raises ``NotFoldable``;
    ``resolve_callee`` maps a ``Call`` to a pure Python callable or None.
    """
    if isinstance(node, ast.Constant):
        if not is_safe_constant(node.value):
            raise NotFoldable('unsafe literal')
        return node.value
    if isinstance(node, ast.Name) and isinstance(node.ctx, ast.Load):
        return lookup(node)
    if isinstance(node, ast.Tuple) and isinstance(node.ctx, ast.Load):
        if any(isinstance(e, ast.Starred) for e in node.elts):
            raise NotFoldable('starred element')
        return _check_size(tuple(evaluate_expr(e, lookup, resolve_callee) for e in node.elts))
    if isinstance(node, ast.BinOp):
        return evaluate_binop(
            node.op,
            evaluate_expr(node.left, lookup, resolve_callee),
            evaluate_expr(node.right, lookup, resolve_callee),
        )
    if isinstance(node, ast.UnaryOp):
        return evaluate_unaryop(node.op, evaluate_expr(node.operand, lookup, resolve_callee))
    if isinstance(node, ast.BoolOp):
        return evaluate_boolop(
            node.op, [evaluate_expr(v, lookup, resolve_callee) for v in node.values]
        )
    if isinstance(node, ast.Compare):
        values = [evaluate_expr(node.left, lookup, resolve_callee)]
        values.extend(evaluate_expr(c, lookup, resolve_callee) for c in node.comparators)
        return evaluate_compare(node.ops, values)
    if isinstance(node, ast.Call) and resolve_callee is not None:
        if node.keywords or any(isinstance(a, ast.Starred) for a in node.args):
            raise NotFoldable('keyword or starred arguments')
        fn = resolve_callee(node)
        if fn is None:
            raise NotFoldable('callee is not known to be pure')
        args = [evaluate_expr(a, lookup, resolve_callee) for a in node.args]
        return evaluate_call(fn, args)
    raise NotFoldable(f'{type(node).__name__} is not a constant expression')
