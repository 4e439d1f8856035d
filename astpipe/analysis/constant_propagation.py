"""
Constant Propagation
====================

Two complementary analyses producing ``ConstantValue`` facts.

Binding level
    A binding is constant iff it is stored exactly once in its scope, by a
    plain top-level ``name = expr`` whose right-hand side folds to a
    literal. No control-flow sensitivity: any second store anywhere in the
    scope (including ``+=``, loop targets, ``del``, ``global``/``nonlocal``
    writes from nested scopes) disqualifies the name. The value is then
    published at every read that provably executes after the store.

Site level
    Within a function, straight-line statement sequences are walked with
    an environment of reaching constant values. ``Assign`` and
    ``AugAssign`` that evaluate to literals update it; every other store,
    and entry into a loop body for names the loop writes, kills it. Reads
    and augmented-assignment targets seen with a known value get a
    site-level fact.
"""

import ast
from typing import Any, Dict, List, Optional, Set

from astpipe.analysis.facts import FactBase, FactKind
from astpipe.analysis.scopes import ScopeInfo, callee_key
from astpipe.compiler.evaluator import (
    PURE_BUILTINS, PURE_MODULE_FUNCTIONS, NotFoldable, evaluate_binop,
    evaluate_expr, is_pure_method,
)
from astpipe.compiler.tree import node_id

_SCOPE_NODES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda, ast.ClassDef,
                ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp)


def expr_nodes(node: ast.AST):
    """Nodes evaluated as part of *node* in the current scope."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        if isinstance(current, _SCOPE_NODES) and current is not node:
            continue
        stack.extend(ast.iter_child_nodes(current))


def stmt_expressions(stmt: ast.stmt) -> List[ast.expr]:
    """Expressions a compound statement evaluates itself (not its body)."""
    if isinstance(stmt, (ast.If, ast.While)):
        return [stmt.test]
    if isinstance(stmt, (ast.For, ast.AsyncFor)):
        return [stmt.iter]
    if isinstance(stmt, (ast.With, ast.AsyncWith)):
        return [item.context_expr for item in stmt.items]
    if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
        return stmt.decorator_list + stmt.args.defaults + [
            d for d in stmt.args.kw_defaults if d is not None
        ]
    if isinstance(stmt, ast.ClassDef):
        return stmt.decorator_list + stmt.bases + [k.value for k in stmt.keywords]
    if isinstance(stmt, ast.Try):
        return []
    return [stmt]


def stored_names(node: ast.AST) -> Set[str]:
    """Names a statement (including nested blocks) binds in its own scope."""
    names = set()
    for child in expr_nodes(node):
        if isinstance(child, ast.Name) and not isinstance(child.ctx, ast.Load):
            names.add(child.id)
        elif isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.add(child.name)
        elif isinstance(child, ast.alias):
            names.add((child.asname or child.name).split('.')[0])
        elif isinstance(child, ast.ExceptHandler) and child.name:
            names.add(child.name)
        elif isinstance(child, ast.NamedExpr):
            names.add(child.target.id)
    return names


def make_callee_resolver(scope: ScopeInfo, lookup, facts: Optional[FactBase] = None):
    """
    Build the ``resolve_callee`` hook for ``evaluate_expr``: a call folds
    only when its target is an allow-listed builtin or ``math`` function
    that cannot have been rebound, or a pure method of a literal receiver.
    """
    def resolve(call: ast.Call):
        func = call.func
        key = callee_key(scope, func)
        if key is not None:
            fn = PURE_BUILTINS.get(key) or PURE_MODULE_FUNCTIONS.get(key)
            if key in PURE_BUILTINS and key in scope.module().stores:
                fn = None
            if fn is not None and (facts is None or facts.pure(key) is not None):
                return fn
            return None
        if isinstance(func, ast.Attribute):
            try:
                receiver = evaluate_expr(func.value, lookup, resolve)
            except NotFoldable:
                return None
            if is_pure_method(type(receiver), func.attr):
                return getattr(receiver, func.attr)
        return None
    return resolve


class ConstantPropagation:
    """
    Adds binding-level and site-level ``ConstantValue`` facts.

    ``loop_entry`` maps each loop's node id to the constants known just
    before it starts; range inference seeds accumulator bounds from it.
    """

    def __init__(self, facts: FactBase, index: Dict[int, ast.AST]):
        self.facts = facts
        self.index = index
        self.loop_entry: Dict[int, Dict[str, Any]] = {}

    def run(self, tree: ast.Module) -> None:
        module = self.facts.module_scope
        for scope in module.walk():
            if scope.kind in ('module', 'function'):
                self._binding_constants(scope)
        for scope in module.walk():
            if scope.kind == 'function' and not scope.dynamic:
                func = self.index.get(scope.node_id)
                if func is not None:
                    self._block(scope, func.body, {})

    # ---- Binding level ----

    def _eligible(self, scope: ScopeInfo, name: str) -> bool:
        sites = scope.stores.get(name, ())
        if len(sites) != 1 or sites[0].kind != 'assign' or not sites[0].direct:
            return False
        if name in scope.params or name in scope.declared_global or name in scope.declared_nonlocal:
            return False
        if name in scope.mutated_by_children or scope.dynamic:
            return False
        return not (scope.kind == 'module' and scope.module().dynamic)

    def _visible_index(self, owner: ScopeInfo, reader: ScopeInfo, stmt_index) -> Optional[int]:
        """Index in *owner*'s body of the statement through which *reader* runs."""
        scope, index = reader, stmt_index
        while scope is not owner:
            if scope.parent is None:
                return None
            index = scope.def_index
            scope = scope.parent
        return index

    def _binding_lookup(self, scope: ScopeInfo, stmt_index):
        def lookup(name_node: ast.Name):
            owner = scope.resolve(name_node.id)
            if owner is None:
                raise NotFoldable(f'{name_node.id} is a builtin')
            fact = self.facts.constant(owner.binding(name_node.id))
            if fact is None:
                raise NotFoldable(f'{name_node.id} is not constant')
            def_index = owner.stores[name_node.id][0].stmt_index
            visible = self._visible_index(owner, scope, stmt_index)
            if visible is None or visible <= def_index:
                raise NotFoldable(f'{name_node.id} may be read before it is bound')
            return fact.value
        return lookup

    def _binding_constants(self, scope: ScopeInfo) -> None:
        names = [n for n in scope.stores if self._eligible(scope, n)]
        names.sort(key=lambda n: scope.stores[n][0].stmt_index)
        for name in names:
            site = scope.stores[name][0]
            value_node = self.index.get(site.value_id)
            if value_node is None:
                continue
            lookup = self._binding_lookup(scope, site.stmt_index)
            try:
                value = evaluate_expr(value_node, lookup, make_callee_resolver(scope, lookup))
            except NotFoldable:
                continue
            binding = scope.binding(name)
            self.facts.add(FactKind.CONSTANT, binding, value)
            self.facts.add(FactKind.TYPE, binding, type(value))
            self._publish_reads(scope, name, site.stmt_index, value)

    def _publish_reads(self, owner: ScopeInfo, name: str, def_index: int, value) -> None:
        binding = owner.binding(name)
        for reader in owner.walk():
            if reader is not owner and reader.resolve(name) is not owner:
                continue
            for site in reader.reads.get(name, ()):
                if site.kind != 'read':
                    continue
                visible = self._visible_index(owner, reader, site.stmt_index)
                if visible is not None and visible > def_index:
                    self.facts.add(FactKind.CONSTANT, binding, value, site=site.node_id)
                    self.facts.add(FactKind.TYPE, binding, type(value), site=site.node_id)

    # ---- Site level ----

    def _trackable(self, scope: ScopeInfo, name: str) -> bool:
        return (
            scope.is_local(name)
            and name not in scope.captured
            and name not in scope.mutated_by_children
        )

    def _record_reads(self, scope: ScopeInfo, exprs, env: Dict[str, Any]) -> None:
        for expr in exprs:
            for node in expr_nodes(expr):
                if isinstance(node, ast.NamedExpr):
                    env.pop(node.target.id, None)
        for expr in exprs:
            for node in expr_nodes(expr):
                if (isinstance(node, ast.Name) and isinstance(node.ctx, ast.Load)
                        and node.id in env):
                    value = env[node.id]
                    self.facts.add(FactKind.CONSTANT, scope.binding(node.id), value,
                                   site=node_id(node))
                    self.facts.add(FactKind.TYPE, scope.binding(node.id), type(value),
                                   site=node_id(node))

    def _evaluate(self, scope: ScopeInfo, expr: ast.expr, env: Dict[str, Any]):
        def lookup(name_node: ast.Name):
            if name_node.id in env:
                return env[name_node.id]
            fact = self.facts.constant_at(node_id(name_node))
            if fact is None:
                raise NotFoldable(f'{name_node.id} is unknown here')
            return fact.value
        return evaluate_expr(expr, lookup, make_callee_resolver(scope, lookup))

    def _block(self, scope: ScopeInfo, stmts: List[ast.stmt], env: Dict[str, Any]) -> None:
        for stmt in stmts:
            if isinstance(stmt, ast.Assign):
                self._record_reads(scope, [stmt.value] + stmt.targets, env)
                target = stmt.targets[0]
                if len(stmt.targets) == 1 and isinstance(target, ast.Name) \
                        and self._trackable(scope, target.id):
                    try:
                        env[target.id] = self._evaluate(scope, stmt.value, env)
                    except NotFoldable:
                        env.pop(target.id, None)
                    continue
            elif isinstance(stmt, ast.AugAssign):
                self._record_reads(scope, [stmt.value], env)
                target = stmt.target
                if isinstance(target, ast.Name) and self._trackable(scope, target.id):
                    if target.id in env:
                        current = env.pop(target.id)
                        self.facts.add(FactKind.CONSTANT, scope.binding(target.id), current,
                                       site=node_id(target))
                        try:
                            operand = self._evaluate(scope, stmt.value, env)
                            env[target.id] = evaluate_binop(stmt.op, current, operand)
                        except NotFoldable:
                            pass
                    continue
                self._record_reads(scope, [target], env)
            elif isinstance(stmt, ast.If):
                self._record_reads(scope, [stmt.test], env)
                self._block(scope, stmt.body, dict(env))
                self._block(scope, stmt.orelse, dict(env))
            elif isinstance(stmt, (ast.For, ast.AsyncFor, ast.While)):
                if not isinstance(stmt, ast.While):
                    self._record_reads(scope, [stmt.iter], env)
                self.loop_entry[node_id(stmt)] = dict(env)
                inner = {k: v for k, v in env.items() if k not in stored_names(stmt)}
                if isinstance(stmt, ast.While):
                    self._record_reads(scope, [stmt.test], inner)
                self._block(scope, stmt.body, dict(inner))
                self._block(scope, stmt.orelse, dict(inner))
            elif isinstance(stmt, (ast.Try, ast.With, ast.AsyncWith)):
                inner = {k: v for k, v in env.items() if k not in stored_names(stmt)}
                self._record_reads(scope, stmt_expressions(stmt), env)
                for block in _child_blocks(stmt):
                    self._block(scope, block, dict(inner))
            else:
                stored = stored_names(stmt)
                live = {k: v for k, v in env.items() if k not in stored}
                self._record_reads(scope, stmt_expressions(stmt), live)
            for name in stored_names(stmt):
                env.pop(name, None)


def _child_blocks(stmt: ast.stmt) -> List[List[ast.stmt]]:
    blocks = []
    for field_name in ('body', 'orelse', 'finalbody'):
        block = getattr(stmt, field_name, None)
        if isinstance(block, list) and block:
            blocks.append(block)
    for handler in getattr(stmt, 'handlers', ()):
        blocks.append(handler.body)
    return blocks
