"""
Dead Code Elimination
=====================

Removes:
 1. ``if`` statements with a literal test (replaced by the selected branch)
    and ``while`` loops whose test is a false literal
 2. Unreachable statements after ``return``/``raise``/``break``/``continue``
 3. Dead stores: assignments of side-effect-free values to function locals
    that are never read, provided the function does no dynamic
    introspection and the name does not escape into a nested scope
 4. Expression statements that are bare literals (docstrings excepted)
"""

import ast
import logging
from typing import List

from astpipe.analysis.scopes import ScopeInfo, bound_before
from astpipe.compiler.rewrite import RewritePass, ScopedTransformer
from astpipe.compiler.tree import is_safe_constant, synthesize
from astpipe.pipeline.gatekeeper import holds

logger = logging.getLogger(__name__)

_TERMINATORS = (ast.Return, ast.Raise, ast.Break, ast.Continue)


def _is_docstring(stmt: ast.stmt) -> bool:
    return (isinstance(stmt, ast.Expr) and isinstance(stmt.value, ast.Constant)
            and isinstance(stmt.value.value, str))


class DeadCodePass(RewritePass):
    name = 'dead_code'

    def rewrite(self, tree, facts, gate):
        eliminator = _DeadCodeEliminator(facts, gate, self.name)
        tree.body = eliminator.visit_block(tree.body)


class _DeadCodeEliminator(ScopedTransformer):

    def __init__(self, facts, gate, pass_name):
        super().__init__(facts)
        self.gate = gate
        self.pass_name = pass_name
        self._functions: List[ast.FunctionDef] = []

    # ---- Blocks ----

    def visit_FunctionDef(self, node):
        self._functions.append(node)
        try:
            return super().visit_FunctionDef(node)
        finally:
            self._functions.pop()

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_ClassDef(self, node):
        self._functions.append(None)
        try:
            return super().visit_ClassDef(node)
        finally:
            self._functions.pop()

    def visit_block(self, nodes):
        new = super().visit_block(nodes)
        if not new or not isinstance(new[0], ast.stmt):
            return new
        return self._clean_block(new)

    def generic_visit(self, node):
        super().generic_visit(node)
        for field_name in ('body', 'orelse', 'finalbody'):
            block = getattr(node, field_name, None)
            if isinstance(block, list) and block and isinstance(block[0], ast.stmt):
                setattr(node, field_name, self._clean_block(block))
        if isinstance(node, (ast.For, ast.AsyncFor, ast.While, ast.If, ast.With,
                             ast.AsyncWith, ast.Try, ast.ExceptHandler, ast.match_case)):
            if not node.body:
                node.body = [synthesize(ast.Pass(), node)]
        if isinstance(node, ast.Try) and not node.handlers and not node.finalbody:
            node.finalbody = [synthesize(ast.Pass(), node)]
        return node

    def _clean_block(self, stmts: List[ast.stmt]) -> List[ast.stmt]:
        kept = []
        for position, stmt in enumerate(stmts):
            if self._is_dead_store(stmt) or self._is_bare_literal(stmt, position, kept):
                continue
            kept.append(stmt)
            if isinstance(stmt, _TERMINATORS) and position + 1 < len(stmts):
                dropped = stmts[position + 1]
                self.gate.commit(self.pass_name, dropped, None,
                                 reason=f'unreachable after {type(stmt).__name__.lower()}')
                break
        return kept

    # ---- Constant branches ----

    def visit_If(self, node: ast.If):
        self.generic_visit(node)
        test = node.test
        if not (isinstance(test, ast.Constant) and is_safe_constant(test.value)):
            return node
        chosen = node.body if test.value else node.orelse
        self.gate.commit(self.pass_name, node, chosen[0] if chosen else None,
                         reason=f'condition is always {bool(test.value)}')
        return chosen

    def visit_While(self, node: ast.While):
        self.generic_visit(node)
        test = node.test
        if isinstance(test, ast.Constant) and is_safe_constant(test.value) and not test.value:
            self.gate.commit(self.pass_name, node, node.orelse[0] if node.orelse else None,
                             reason='loop condition is always false')
            return node.orelse
        return node

    # ---- Statements with no effect ----

    def _is_bare_literal(self, stmt, position: int, kept) -> bool:
        if not (isinstance(stmt, ast.Expr) and isinstance(stmt.value, ast.Constant)):
            return False
        if position == 0 and _is_docstring(stmt):
            return False
        if stmt.value.value is Ellipsis and not kept:
            return False
        self.gate.commit(self.pass_name, stmt, None, reason='expression has no effect')
        return True

    def _side_effect_free(self, scope: ScopeInfo, value: ast.expr) -> bool:
        if isinstance(value, ast.Constant):
            return True
        if isinstance(value, ast.Tuple):
            return all(self._side_effect_free(scope, e) for e in value.elts)
        if isinstance(value, ast.Name):
            if value.id in scope.params:
                return not any(s.kind == 'del' for s in scope.stores.get(value.id, ()))
            return value.id in scope.aliases.values() and not scope.is_local(value.id) \
                and bound_before(scope, value.id)
        return False

    def _is_dead_store(self, stmt: ast.stmt) -> bool:
        func = self._functions[-1] if self._functions else None
        scope = self.scope
        if func is None or scope is None or scope.kind != 'function':
            return False
        if isinstance(stmt, ast.Assign) and len(stmt.targets) == 1:
            target, value = stmt.targets[0], stmt.value
        elif isinstance(stmt, ast.AnnAssign) and stmt.value is not None and stmt.simple:
            target, value = stmt.target, stmt.value
        else:
            return False
        if not isinstance(target, ast.Name) or not self._side_effect_free(scope, value):
            return False
        name = target.id
        if _is_used(func, name):
            return False
        proof = self.gate.admit(self.pass_name, stmt, [
            holds('reads are enumerable (no dynamic introspection)',
                  lambda f: not scope.dynamic),
            holds(f'{name} is a plain local',
                  lambda f: scope.is_local(name) and name not in scope.declared_nonlocal),
            holds(f'{name} does not escape into a nested scope',
                  lambda f: name not in scope.captured and name not in scope.mutated_by_children),
        ])
        if proof is None:
            return False
        self.gate.commit(self.pass_name, stmt, None, proof, reason=f'{name} is never read')
        self.facts.invalidate(scope.binding(name))
        return True


def _is_used(func: ast.AST, name: str) -> bool:
    """True if *name* is read or deleted anywhere inside *func*."""
    for node in ast.walk(func):
        if isinstance(node, ast.Name) and node.id == name and not isinstance(node.ctx, ast.Store):
            return True
        if isinstance(node, ast.AugAssign) and isinstance(node.target, ast.Name) \
                and node.target.id == name:
            return True
        if isinstance(node, (ast.Global, ast.Nonlocal)) and name in node.names:
            return True
    return False
