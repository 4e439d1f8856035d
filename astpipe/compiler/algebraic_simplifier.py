"""
Algebraic Simplification
========================

Peephole identities, applied only where the operand's type is proven:

    x + 0, 0 + x  -> x        int
    x - 0         -> x        int, float
    x * 1, 1 * x  -> x        int, float
    x ** 1        -> x        int, float
    x // 1        -> x        int
    x * 0, 0 * x  -> 0        int
    x ** 2        -> x * x    int

``x + 0`` is left alone for floats because ``-0.0 + 0`` is ``0.0``. The
literal must be an ``int`` (never a ``bool`` or a ``float``) so the
result type cannot change.
"""

import ast
import logging
from typing import Optional

from astpipe.compiler.rewrite import RewritePass, ScopedTransformer
from astpipe.compiler.tree import constant, duplicate, node_id, synthesize
from astpipe.pipeline.gatekeeper import requires_fact

logger = logging.getLogger(__name__)


def _int_literal(node: ast.expr, value: int) -> bool:
    return isinstance(node, ast.Constant) and type(node.value) is int and node.value == value


class AlgebraicSimplifyPass(RewritePass):
    name = 'algebraic_simplify'

    def rewrite(self, tree, facts, gate):
        _AlgebraicSimplifier(facts, gate, self.name).visit(tree)


class _AlgebraicSimplifier(ScopedTransformer):

    def __init__(self, facts, gate, pass_name):
        super().__init__(facts)
        self.gate = gate
        self.pass_name = pass_name

    def _type_of(self, node: ast.expr) -> Optional[type]:
        if not isinstance(node, ast.Name):
            return None
        fact = self.facts.type_at(node_id(node))
        return fact.value if fact is not None and fact.value in (int, float) else None

    def visit_BinOp(self, node: ast.BinOp) -> ast.expr:
        self.generic_visit(node)
        op, left, right = node.op, node.left, node.right

        # (operand, result builder, required types)
        candidate = None
        if isinstance(op, ast.Add):
            if _int_literal(right, 0):
                candidate = (left, lambda x: x, (int,))
            elif _int_literal(left, 0):
                candidate = (right, lambda x: x, (int,))
        elif isinstance(op, ast.Sub) and _int_literal(right, 0):
            candidate = (left, lambda x: x, (int, float))
        elif isinstance(op, ast.Mult):
            if _int_literal(right, 1):
                candidate = (left, lambda x: x, (int, float))
            elif _int_literal(left, 1):
                candidate = (right, lambda x: x, (int, float))
            elif _int_literal(right, 0):
                candidate = (left, lambda x: constant(0, node), (int,))
            elif _int_literal(left, 0):
                candidate = (right, lambda x: constant(0, node), (int,))
        elif isinstance(op, ast.FloorDiv) and _int_literal(right, 1):
            candidate = (left, lambda x: x, (int,))
        elif isinstance(op, ast.Pow):
            if _int_literal(right, 1):
                candidate = (left, lambda x: x, (int, float))
            elif _int_literal(right, 2):
                candidate = (left, lambda x: synthesize(
                    ast.BinOp(left=x, op=ast.Mult(), right=duplicate(x)), node), (int,))

        if candidate is None:
            return node
        operand, build, allowed = candidate
        if self._type_of(operand) not in allowed:
            return node
        site = node_id(operand)
        type_name = ' or '.join(t.__name__ for t in allowed)
        proof = self.gate.admit(self.pass_name, node, [
            requires_fact(f'{operand.id} is {type_name}',
                          lambda f: f.type_at(site) if f.type_at(site) is not None
                          and f.type_at(site).value in allowed else None),
        ])
        if proof is None:
            return node
        result = build(operand)
        self.gate.commit(self.pass_name, node, result, proof,
                         reason=f'{ast.unparse(node)} -> {ast.unparse(result)}')
        return result
