"""
Range Inference
===============

Interval and type facts for integer loop variables and the values derived
from them.

    for v in range(a, b, c)    RangeBounds and TypeKnown(int) at every read
                               of ``v`` in the body; trip count on the loop
    x + y, x - y               bounded when both operands are bounded
    s += e  (in such a loop)   [lo_s + min(0, n*lo_e), hi_s + max(0, n*hi_e)]
                               at reads of ``s`` in the loop and after it

``range`` arguments may be literals or names carrying a site constant.
Every ``for`` loop over a static sequence (a range or a literal
tuple/list/string) is also described by a ``LoopAnalysis`` stored in
``FactBase.loops``, which is what the unroller works from.
"""

import ast
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from astpipe.analysis.constant_propagation import expr_nodes, stored_names
from astpipe.analysis.facts import Bounds, FactBase, FactKind
from astpipe.analysis.scopes import ScopeInfo, callee_key
from astpipe.compiler.evaluator import NotFoldable, evaluate_expr
from astpipe.compiler.tree import node_id

logger = logging.getLogger(__name__)


@dataclass
class LoopAnalysis:
    """Analysis results for a single loop."""
    loop_id: int
    scope: str
    is_range_loop: bool = False
    range_args: Tuple[int, ...] = ()
    loop_var: str = ""
    sequence: Optional[Union[range, tuple]] = None
    trip_count: Optional[int] = None
    bounds: Optional[Bounds] = None
    accumulators: Dict[str, Bounds] = field(default_factory=dict)

    @property
    def is_static(self) -> bool:
        return self.sequence is not None


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class RangeInference:
    """
    Adds ``RangeBounds``/``TypeKnown(int)`` facts and loop descriptions.

    ``loop_entry`` is the map of constants known on entry to each loop,
    as computed by constant propagation.
    """

    def __init__(self, facts: FactBase, index: Dict[int, ast.AST],
                 loop_entry: Dict[int, Dict[str, Any]]):
        self.facts = facts
        self.index = index
        self.loop_entry = loop_entry

    def run(self, tree: ast.Module) -> Dict[int, LoopAnalysis]:
        for scope in self.facts.module_scope.walk():
            if scope.kind not in ('module', 'function') or scope.dynamic:
                continue
            owner = tree if scope.kind == 'module' else self.index.get(scope.node_id)
            if owner is not None:
                self._walk_block(scope, owner.body)
        return self.facts.loops

    def _walk_block(self, scope: ScopeInfo, stmts: List[ast.stmt]) -> None:
        for position, stmt in enumerate(stmts):
            if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
                continue
            if isinstance(stmt, ast.For):
                analysis = self._analyze_loop(scope, stmt)
                for name, bounds in analysis.accumulators.items():
                    self._publish_after(scope, name, bounds, stmts[position + 1:])
            for block in _blocks(stmt):
                self._walk_block(scope, block)

    # ---- Loops ----

    def _lookup(self, name_node: ast.Name):
        fact = self.facts.constant_at(node_id(name_node))
        if fact is None:
            raise NotFoldable(f'{name_node.id} is unknown here')
        return fact.value

    def _static_sequence(self, scope: ScopeInfo, loop: ast.For, analysis: LoopAnalysis):
        iterable = loop.iter
        if isinstance(iterable, ast.Call):
            if callee_key(scope, iterable.func) != 'range' or self.facts.pure('range') is None:
                return None
            # A module-level ``range`` is the user's function, not the builtin
            if 'range' in scope.module().stores:
                return None
            if iterable.keywords or not 1 <= len(iterable.args) <= 3:
                return None
            try:
                args = tuple(evaluate_expr(a, self._lookup) for a in iterable.args)
            except NotFoldable:
                return None
            if not all(_is_int(a) for a in args) or (len(args) == 3 and args[2] == 0):
                return None
            analysis.is_range_loop = True
            analysis.range_args = args
            return range(*args)
        if isinstance(iterable, (ast.Tuple, ast.List)):
            try:
                return tuple(evaluate_expr(e, self._lookup) for e in iterable.elts)
            except NotFoldable:
                return None
        if isinstance(iterable, ast.Constant) and isinstance(iterable.value, (str, bytes, tuple)):
            return tuple(iterable.value)
        return None

    def _trackable(self, scope: ScopeInfo, name: str) -> bool:
        if name in scope.mutated_by_children:
            return False
        if scope.kind == 'module':
            return not scope.dynamic
        return scope.is_local(name) and name not in scope.captured

    def _analyze_loop(self, scope: ScopeInfo, loop: ast.For) -> LoopAnalysis:
        loop_id = node_id(loop)
        analysis = LoopAnalysis(loop_id=loop_id, scope=scope.qualname)
        if isinstance(loop.target, ast.Name):
            analysis.loop_var = loop.target.id
        sequence = self._static_sequence(scope, loop, analysis)
        if sequence is None:
            return analysis

        analysis.sequence = sequence
        analysis.trip_count = len(sequence)
        self.facts.loops[loop_id] = analysis
        if not analysis.trip_count or not all(_is_int(v) for v in _ends_or_all(sequence)):
            return analysis

        lo, hi = min(_ends_or_all(sequence)), max(_ends_or_all(sequence))
        analysis.bounds = Bounds(lo, hi)
        var = analysis.loop_var
        subject = scope.binding(var or ast.unparse(loop.target))
        self.facts.add(FactKind.RANGE, subject, Bounds(lo, hi, analysis.trip_count), site=loop_id)
        logger.debug("loop #%d over %s: %d iterations in [%d, %d]",
                     loop_id, ast.unparse(loop.iter), analysis.trip_count, lo, hi)

        body_stores = set()
        for stmt in loop.body:
            body_stores |= stored_names(stmt)
        if not var or var in body_stores or not self._trackable(scope, var):
            return analysis

        for stmt in loop.body:
            for node in expr_nodes(stmt):
                if isinstance(node, ast.Name) and isinstance(node.ctx, ast.Load) and node.id == var:
                    self._bound_site(scope, var, analysis.bounds, node)
        for stmt in loop.body:
            for node in expr_nodes(stmt):
                if isinstance(node, ast.BinOp):
                    bounds = self._bounds(node)
                    if bounds is not None:
                        self.facts.add(FactKind.RANGE, ast.unparse(node), bounds, site=node_id(node))
        self._accumulators(scope, loop, analysis, body_stores)
        return analysis

    def _accumulators(self, scope: ScopeInfo, loop: ast.For, analysis: LoopAnalysis,
                      body_stores) -> None:
        n = analysis.trip_count
        entry = self.loop_entry.get(analysis.loop_id, {})
        for stmt in loop.body:
            if not (isinstance(stmt, ast.AugAssign) and isinstance(stmt.op, ast.Add)
                    and isinstance(stmt.target, ast.Name)):
                continue
            name = stmt.target.id
            if name == analysis.loop_var or not self._trackable(scope, name):
                continue
            if sum(1 for s in loop.body if name in stored_names(s)) != 1:
                continue
            start = entry.get(name)
            step = self._bounds(stmt.value)
            if not _is_int(start) or step is None:
                continue
            bounds = Bounds(start + min(0, n * step.lo), start + max(0, n * step.hi))
            analysis.accumulators[name] = bounds
            self._bound_site(scope, name, bounds, stmt.target)
            for other in loop.body:
                for node in expr_nodes(other):
                    if isinstance(node, ast.Name) and isinstance(node.ctx, ast.Load) \
                            and node.id == name:
                        self._bound_site(scope, name, bounds, node)

    def _publish_after(self, scope: ScopeInfo, name: str, bounds: Bounds,
                       following: List[ast.stmt]) -> None:
        for stmt in following:
            if name in stored_names(stmt):
                return
            for node in expr_nodes(stmt):
                if isinstance(node, ast.Name) and isinstance(node.ctx, ast.Load) and node.id == name:
                    self._bound_site(scope, name, bounds, node)

    # ---- Intervals ----

    def _bound_site(self, scope: ScopeInfo, name: str, bounds: Bounds, node: ast.AST) -> None:
        binding = scope.binding(name)
        self.facts.add(FactKind.RANGE, binding, bounds, site=node_id(node))
        self.facts.add(FactKind.TYPE, binding, int, site=node_id(node))

    def _bounds(self, expr: ast.expr) -> Optional[Bounds]:
        if isinstance(expr, ast.Constant):
            return Bounds(expr.value, expr.value) if _is_int(expr.value) else None
        if isinstance(expr, ast.Name):
            fact = self.facts.range_at(node_id(expr))
            if fact is not None:
                return Bounds(fact.value.lo, fact.value.hi)
            fact = self.facts.constant_at(node_id(expr))
            if fact is not None and _is_int(fact.value):
                return Bounds(fact.value, fact.value)
            return None
        if isinstance(expr, ast.BinOp) and isinstance(expr.op, (ast.Add, ast.Sub)):
            left, right = self._bounds(expr.left), self._bounds(expr.right)
            if left is None or right is None:
                return None
            if isinstance(expr.op, ast.Add):
                return left + right
            return Bounds(left.lo - right.hi, left.hi - right.lo)
        return None


def _ends_or_all(sequence):
    if isinstance(sequence, range):
        return (sequence[0], sequence[-1]) if len(sequence) else ()
    return sequence


def _blocks(stmt: ast.stmt) -> List[List[ast.stmt]]:
    blocks = []
    for field_name in ('body', 'orelse', 'finalbody'):
        block = getattr(stmt, field_name, None)
        if isinstance(block, list) and block and isinstance(block[0], ast.stmt):
            blocks.append(block)
    for handler in getattr(stmt, 'handlers', ()):
        blocks.append(handler.body)
    for case in getattr(stmt, 'cases', ()):
        blocks.append(case.body)
    return blocks
