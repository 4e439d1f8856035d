"""
Loop-Invariant Hoisting
=======================

Evaluates loop-invariant expressions once, before the loop.

Before:
    def process(obj, items):
        for item in items:
            obj.cleanup(item)
            total += len(LIMITS)

After:
    def process(obj, items):
        _hoisted_0 = obj.cleanup
        for item in items:
            _hoisted_0(item)
            ...

Candidates are taken only from positions every iteration evaluates: the
``while`` test and the leading run of simple statements in the body,
outside short-circuit operands, conditional expressions and nested
scopes. Two kinds of expression move:

 * attribute chains rooted at a name the loop never rebinds. A value
   read (``obj.size``) or a longer chain (``a.b.get``) additionally needs
   a quiet loop, one that stores no attribute or item and calls only pure
   functions. A single-level method lookup (``obj.cleanup``) only needs
   the root name to stay put and the attribute name never to be assigned
   anywhere in the module (no ``x.cleanup = ...``, no ``setattr``).
 * calls to pure functions returning immutable values, in a quiet loop,
   with invariant operands.

Bare names are not candidates; ``global_rebind`` handles those.

A hoisted expression must not run when the loop body never would. A
``for`` loop with a known trip count of at least one needs nothing more;
a ``for`` over a plain name gets the prologue and the loop wrapped in
``if name:``; any other ``for`` is left alone. ``while`` loops only hoist
from their test, which always runs at least once.
"""

import ast
import logging
from typing import Dict, List, Optional, Set

from astpipe.analysis.purity_analyzer import IMMUTABLE_RESULT_BUILTINS
from astpipe.analysis.scopes import callee_key
from astpipe.compiler.rewrite import RewritePass, ScopedTransformer
from astpipe.compiler.tree import assign, fresh_name, load, names_in, node_id, synthesize
from astpipe.pipeline.gatekeeper import holds, requires_fact

logger = logging.getLogger(__name__)

_SIMPLE_STATEMENTS = (ast.Assign, ast.AugAssign, ast.AnnAssign, ast.Expr)
_OPAQUE = (ast.Lambda, ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp)
_NESTED_SCOPES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef, ast.Lambda)


def _assigned_attributes(tree: ast.AST) -> Optional[Set[str]]:
    """Attribute names stored anywhere in *tree*; None if ``setattr`` appears."""
    names = set()
    for n in ast.walk(tree):
        if isinstance(n, ast.Attribute) and not isinstance(n.ctx, ast.Load):
            names.add(n.attr)
        elif isinstance(n, ast.Name) and n.id == 'setattr':
            return None
    return names


def _chain_root(node: ast.expr) -> Optional[ast.Name]:
    while isinstance(node, ast.Attribute):
        node = node.value
    return node if isinstance(node, ast.Name) else None


def _unconditional_prefix(body: List[ast.stmt]) -> List[ast.stmt]:
    """Leading simple statements, up to the first that can leave the block early."""
    prefix = []
    for stmt in body:
        if not isinstance(stmt, _SIMPLE_STATEMENTS):
            break
        prefix.append(stmt)
    return prefix


class HoistPass(RewritePass):
    name = 'hoist'

    def rewrite(self, tree, facts, gate):
        _Hoister(facts, gate, self.name, names_in(tree), _assigned_attributes(tree)).visit(tree)


class _Hoister(ScopedTransformer):

    def __init__(self, facts, gate, pass_name, taken: Set[str],
                 assigned_attrs: Optional[Set[str]]):
        super().__init__(facts)
        self.gate = gate
        self.pass_name = pass_name
        self.taken = taken
        self.assigned_attrs = assigned_attrs
        # Per-loop state
        self._stores: Set[str] = set()
        self._quiet = False
        self._hoisted: List[ast.stmt] = []
        self._locals: Dict[str, str] = {}

    # ---- Loops ----

    def visit_For(self, node):
        self.generic_visit(node)
        analysis = self.facts.loops.get(node_id(node))
        if analysis is not None and analysis.trip_count:
            return self._hoist_from(node, [], node.body)
        if analysis is None and isinstance(node.iter, ast.Name) and not node.orelse:
            return self._hoist_from(node, [], node.body, guard=node.iter)
        return node

    def visit_While(self, node):
        self.generic_visit(node)
        return self._hoist_from(node, [node], [])

    def _hoist_from(self, loop, headers, body, guard: Optional[ast.Name] = None):
        scope = self.scope
        if scope is None or scope.kind != 'function' or scope.dynamic or scope.is_generator:
            return loop
        if any(isinstance(n, _NESTED_SCOPES) for n in ast.walk(loop)):
            return loop

        self._stores = self._stored_names(loop)
        self._quiet = self._is_quiet(loop)
        self._hoisted, self._locals = [], {}

        for header in headers:
            header.test = self._scan(header.test)
        for stmt in _unconditional_prefix(body):
            self._scan_statement(stmt)

        if not self._hoisted:
            return loop
        logger.debug("hoisted %d expression(s) out of loop #%s", len(self._hoisted),
                     getattr(loop, '_astpipe_id', '?'))
        if guard is None:
            return self._hoisted + [loop]
        test = ast.Name(id=guard.id, ctx=ast.Load())
        wrapper = synthesize(ast.If(test=test, body=[], orelse=[]), loop)
        wrapper.body = self._hoisted + [loop]
        return wrapper

    @staticmethod
    def _stored_names(loop) -> Set[str]:
        return {
            n.id for n in ast.walk(loop)
            if isinstance(n, ast.Name) and not isinstance(n.ctx, ast.Load)
        }

    def _is_quiet(self, loop) -> bool:
        """No attribute or item is written and every call is to a pure function."""
        for n in ast.walk(loop):
            if isinstance(n, (ast.Attribute, ast.Subscript)) and not isinstance(n.ctx, ast.Load):
                return False
            if isinstance(n, (ast.Yield, ast.YieldFrom, ast.Await)):
                return False
            if isinstance(n, ast.Call):
                key = callee_key(self.scope, n.func)
                if key is None or self.facts.pure(key) is None:
                    return False
        return True

    # ---- Scanning ----

    def _scan_statement(self, stmt: ast.stmt) -> None:
        if getattr(stmt, 'value', None) is not None:
            stmt.value = self._scan(stmt.value)

    def _scan(self, node: ast.expr, callee: bool = False) -> ast.expr:
        if self._candidate(node, callee):
            return self._hoist(node, callee)
        if isinstance(node, _OPAQUE):
            return node
        if isinstance(node, ast.BoolOp):
            node.values[0] = self._scan(node.values[0])
            return node
        if isinstance(node, ast.IfExp):
            node.test = self._scan(node.test)
            return node
        if isinstance(node, ast.Compare):
            node.left = self._scan(node.left)
            node.comparators[0] = self._scan(node.comparators[0])
            return node
        if isinstance(node, ast.Call):
            node.func = self._scan(node.func, callee=True)
            node.args = [self._scan(a) for a in node.args]
            for keyword in node.keywords:
                keyword.value = self._scan(keyword.value)
            return node
        for field_name, value in ast.iter_fields(node):
            if isinstance(value, ast.expr):
                setattr(node, field_name, self._scan(value))
            elif isinstance(value, list):
                setattr(node, field_name, [
                    self._scan(v) if isinstance(v, ast.expr) else v for v in value
                ])
        return node

    def _invariant_operand(self, node: ast.expr) -> bool:
        if isinstance(node, ast.Constant):
            return True
        root = _chain_root(node)
        return root is not None and root.id not in self._stores

    def _candidate(self, node: ast.expr, callee: bool) -> bool:
        if isinstance(node, ast.Attribute):
            if not isinstance(node.ctx, ast.Load):
                return False
            root = _chain_root(node)
            if root is None or root.id in self._stores:
                return False
            return self._quiet or (callee and self._stable_method(node))
        if isinstance(node, ast.Call):
            if not self._quiet or node.keywords or not node.args:
                return False
            if any(isinstance(a, ast.Starred) for a in node.args):
                return False
            key = callee_key(self.scope, node.func)
            if key is None or not self._immutable_result(key):
                return False
            return all(self._invariant_operand(a) for a in node.args)
        return False

    def _stable_method(self, node: ast.Attribute) -> bool:
        """``name.attr`` where no code in the module ever assigns ``attr``."""
        return (isinstance(node.value, ast.Name) and self.assigned_attrs is not None
                and node.attr not in self.assigned_attrs)

    def _immutable_result(self, key: str) -> bool:
        report = self.facts.purity.get(key)
        if report is not None:
            return report.is_pure and report.immutable_result
        return key in IMMUTABLE_RESULT_BUILTINS

    def _hoist(self, node: ast.expr, callee: bool) -> ast.expr:
        key = ast.dump(node)
        if key in self._locals:
            return load(self._locals[key], node)

        preconditions = [
            holds('operands are not rebound in the loop',
                  lambda f: self._invariant_operand(node) if isinstance(node, ast.Attribute)
                  else all(self._invariant_operand(a) for a in node.args)),
        ]
        if isinstance(node, ast.Call):
            fn = callee_key(self.scope, node.func)
            preconditions.append(requires_fact(f'{fn} is pure', lambda f: f.pure(fn)))
            preconditions.append(holds('the loop writes no shared state', lambda f: self._quiet))
        else:
            preconditions.append(holds(
                'the loop writes no shared state or the method is never reassigned',
                lambda f: self._quiet or (callee and self._stable_method(node)),
            ))
        proof = self.gate.admit(self.pass_name, node, preconditions)
        if proof is None:
            return node

        name = fresh_name('_hoisted_', self.taken)
        self._locals[key] = name
        self.facts.invalidate(self.scope.binding(name))
        replacement = load(name, node)
        self._hoisted.append(assign(name, node, node))
        self.gate.commit(self.pass_name, node, replacement, proof,
                         reason=f'hoisted {ast.unparse(node)} into {name}')
        return replacement
