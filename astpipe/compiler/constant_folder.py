"""
Constant Folding
================

Evaluates expressions whose value is provable at compile time:

    2 * 3.14159                  -> 6.28318
    "python2.7".startswith("py")  -> True
    x  (ConstantValue(4) here)    -> 4
    s += 5  (s is 40 here)        -> s = 45
    i < 100 (i in [0, 9])         -> True
    a if True else b              -> a

Values are computed with Python's own operators, so the embedded literal
is exactly what the interpreter would have produced.
"""

import ast
import logging

from astpipe.analysis.constant_propagation import make_callee_resolver
from astpipe.analysis.purity_analyzer import method_key
from astpipe.analysis.scopes import callee_key
from astpipe.compiler.evaluator import (
    NotFoldable, evaluate_binop, evaluate_boolop, evaluate_compare, evaluate_expr,
    evaluate_unaryop,
)
from astpipe.compiler.rewrite import RewritePass, ScopedTransformer
from astpipe.compiler.tree import constant, is_safe_constant, node_id, synthesize
from astpipe.pipeline.gatekeeper import holds, requires_fact

logger = logging.getLogger(__name__)

_IDENTITY_SAFE = (type(None), bool, type(Ellipsis))


def _literal(node) -> bool:
    return isinstance(node, ast.Constant) and is_safe_constant(node.value)


def _int_typed(facts, site):
    fact = facts.type_at(site)
    return fact if fact is not None and fact.value is int else None


def _no_name(_):
    raise NotFoldable('operands must be literals')


class ConstantFoldPass(RewritePass):
    name = 'constant_fold'

    def rewrite(self, tree, facts, gate):
        _ConstantFolder(facts, gate, self.name).visit(tree)


class _ConstantFolder(ScopedTransformer):

    def __init__(self, facts, gate, pass_name):
        super().__init__(facts)
        self.gate = gate
        self.pass_name = pass_name

    def _replace(self, node, value, proof):
        new = constant(value, node)
        self.gate.commit(self.pass_name, node, new, proof)
        return new

    # ---- Propagated constants ----

    def visit_Name(self, node: ast.Name):
        if not isinstance(node.ctx, ast.Load):
            return node
        fact = self.facts.constant_at(node_id(node))
        if fact is None or not is_safe_constant(fact.value):
            return node
        proof = self.gate.admit(self.pass_name, node, [
            requires_fact(f'{node.id} is constant here', lambda f: f.constant_at(node_id(node))),
        ])
        if proof is None:
            return node
        return self._replace(node, fact.value, proof)

    def visit_AugAssign(self, node: ast.AugAssign):
        node.value = self.visit(node.value)
        target = node.target
        if not isinstance(target, ast.Name) or not _literal(node.value):
            return node
        fact = self.facts.constant_at(node_id(target))
        if fact is None:
            return node
        proof = self.gate.admit(self.pass_name, node, [
            requires_fact(f'{target.id} is constant before the update',
                          lambda f: f.constant_at(node_id(target))),
        ])
        if proof is None:
            return node
        try:
            value = evaluate_binop(node.op, fact.value, node.value.value)
        except NotFoldable as e:
            self.gate.skip(self.pass_name, node, str(e))
            return node
        store = synthesize(ast.Name(id=target.id, ctx=ast.Store()), target)
        new = synthesize(ast.Assign(targets=[store], value=constant(value, node)), node)
        self.gate.commit(self.pass_name, node, new, proof)
        return new

    # ---- Operators over literals ----

    def visit_BinOp(self, node: ast.BinOp):
        self.generic_visit(node)
        if not (_literal(node.left) and _literal(node.right)):
            return node
        try:
            value = evaluate_binop(node.op, node.left.value, node.right.value)
        except NotFoldable as e:
            self.gate.skip(self.pass_name, node, str(e))
            return node
        return self._replace(node, value, ())

    def visit_UnaryOp(self, node: ast.UnaryOp):
        self.generic_visit(node)
        if not _literal(node.operand):
            return node
        try:
            value = evaluate_unaryop(node.op, node.operand.value)
        except NotFoldable as e:
            self.gate.skip(self.pass_name, node, str(e))
            return node
        return self._replace(node, value, ())

    def visit_BoolOp(self, node: ast.BoolOp):
        self.generic_visit(node)
        values = list(node.values)
        # Leading literals either decide the result or drop out
        while len(values) > 1 and _literal(values[0]):
            decides = bool(values[0].value) == isinstance(node.op, ast.Or)
            if decides:
                values = values[:1]
                break
            values = values[1:]
        if len(values) == len(node.values):
            return node
        if len(values) == 1:
            new = values[0]
            if all(_literal(v) for v in node.values):
                new = constant(evaluate_boolop(node.op, [v.value for v in node.values]), node)
            self.gate.commit(self.pass_name, node, new, ())
            return new
        new = synthesize(ast.BoolOp(op=node.op, values=values), node)
        self.gate.commit(self.pass_name, node, new, ())
        return new

    def visit_Compare(self, node: ast.Compare):
        self.generic_visit(node)
        operands = [node.left] + node.comparators
        if all(_literal(o) for o in operands):
            identity = any(isinstance(op, (ast.Is, ast.IsNot)) for op in node.ops)
            if identity and not all(isinstance(o.value, _IDENTITY_SAFE) for o in operands):
                return node
            try:
                value = evaluate_compare(node.ops, [o.value for o in operands])
            except NotFoldable as e:
                self.gate.skip(self.pass_name, node, str(e))
                return node
            return self._replace(node, value, ())
        return self._fold_range_compare(node)

    def _fold_range_compare(self, node: ast.Compare):
        """``i < 10`` where ``i`` is an int whose bounds decide the answer."""
        if len(node.ops) != 1 or not isinstance(node.left, ast.Name):
            return node
        right = node.comparators[0]
        if not _literal(right) or type(right.value) not in (int, float):
            return node
        site = node_id(node.left)
        bounds = self.facts.range_at(site)
        if bounds is None:
            return node
        lo, hi, c = bounds.value.lo, bounds.value.hi, right.value
        op = node.ops[0]
        decided = {
            ast.Lt: (hi < c, lo >= c),
            ast.LtE: (hi <= c, lo > c),
            ast.Gt: (lo > c, hi <= c),
            ast.GtE: (lo >= c, hi < c),
        }.get(type(op))
        if decided is None or not any(decided):
            return node
        proof = self.gate.admit(self.pass_name, node, [
            requires_fact(f'{node.left.id} is bounded here', lambda f: f.range_at(site)),
            requires_fact(f'{node.left.id} is an int here', lambda f: _int_typed(f, site)),
        ])
        if proof is None:
            return node
        return self._replace(node, decided[0], proof)

    def visit_IfExp(self, node: ast.IfExp):
        self.generic_visit(node)
        if not _literal(node.test):
            return node
        chosen = node.body if node.test.value else node.orelse
        self.gate.commit(self.pass_name, node, chosen, ())
        return chosen

    # ---- Pure calls ----

    def visit_Call(self, node: ast.Call):
        self.generic_visit(node)
        if self.scope is None or node.keywords:
            return node
        if not all(_literal(a) for a in node.args):
            return node
        func = node.func
        key = callee_key(self.scope, func)
        if key is None and isinstance(func, ast.Attribute) and _literal(func.value):
            key = method_key(type(func.value.value), func.attr)
        if key is None:
            return node
        resolve = make_callee_resolver(self.scope, _no_name, self.facts)
        if resolve(node) is None:
            if self.facts.pure(key) is None and key in self.facts.purity:
                self.gate.skip(self.pass_name, node, f'{key} is not pure')
            return node
        proof = self.gate.admit(self.pass_name, node, [
            requires_fact(f'{key} is pure', lambda f: f.pure(key)),
            holds('arguments are literals', lambda f: all(_literal(a) for a in node.args)),
        ])
        if proof is None:
            return node
        try:
            value = evaluate_expr(node, _no_name, resolve)
        except NotFoldable as e:
            self.gate.skip(self.pass_name, node, str(e))
            return node
        return self._replace(node, value, proof)
