"""
Loop Unrolling
==============

Unrolls ``for`` loops over statically known sequences.

Full unrolling (trip count <= ``full_unroll_limit``):

    for i in range(3):          i = 0
        s += i         ->       s += i
                                i = 1
                                s += i
                                i = 2
                                s += i

Partial unrolling (larger ``range`` loops), factor 2 shown:

    for i in range(5):          for _unroll_0 in range(0, 4, 2):
        s += i         ->           i = _unroll_0
                                    s += i
                                    i = _unroll_0 + 1
                                    s += i
                                i = 4
                                s += i

Every copy assigns the loop variable explicitly, so its value after the
loop is what the original loop left behind. Temporaries the body assigns
before reading are renamed in every copy but the last, which keeps the
copies independent while leaving the final value under its own name.

Loops with ``break``, ``continue``, an ``else`` clause or nested
definitions are left alone, as are loops the unroller itself produced.
"""

import ast
import logging
from typing import List, Set

from astpipe.analysis.scopes import ScopeInfo
from astpipe.compiler.rewrite import NameReplacer, RewritePass, ScopedTransformer
from astpipe.compiler.tree import (
    assign, constant, count_nodes, duplicate, fresh_name, is_safe_constant, load, names_in,
    node_id, synthesize,
)
from astpipe.pipeline.gatekeeper import holds, requires_fact

logger = logging.getLogger(__name__)

_UNROLLED_PREFIX = '_unroll_'
_DEFINITIONS = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef, ast.Lambda)
_LOOPS = (ast.For, ast.AsyncFor, ast.While)


def _escapes(stmts: List[ast.stmt]) -> bool:
    """True if a ``break``/``continue`` in *stmts* targets the enclosing loop."""
    stack = list(stmts)
    while stack:
        node = stack.pop()
        if isinstance(node, (ast.Break, ast.Continue)):
            return True
        if isinstance(node, _LOOPS):
            stack.extend(node.orelse)
            continue
        stack.extend(n for n in ast.iter_child_nodes(node) if isinstance(n, ast.AST))
    return False


def _comprehension_names(stmts: List[ast.stmt]) -> Set[str]:
    names = set()
    for stmt in stmts:
        for node in ast.walk(stmt):
            if isinstance(node, ast.comprehension):
                names.update(n.id for n in ast.walk(node.target) if isinstance(n, ast.Name))
    return names


def _temporaries(scope: ScopeInfo, body: List[ast.stmt], loop_var: str) -> Set[str]:
    """Names every iteration assigns (at the top level of the body) before reading."""
    first_use = {}
    for stmt in body:
        if isinstance(stmt, ast.Assign) and len(stmt.targets) == 1 \
                and isinstance(stmt.targets[0], ast.Name):
            for n in ast.walk(stmt.value):
                if isinstance(n, ast.Name):
                    first_use.setdefault(n.id, 'read')
            first_use.setdefault(stmt.targets[0].id, 'store')
            continue
        for n in ast.walk(stmt):
            if isinstance(n, ast.Name):
                first_use.setdefault(n.id, 'read')
    temps = {
        name for name, how in first_use.items()
        if how == 'store' and name != loop_var and scope.is_local(name)
        and name not in scope.captured and name not in scope.declared_nonlocal
    }
    return temps - _comprehension_names(body)


class UnrollPass(RewritePass):
    name = 'unroll'

    def rewrite(self, tree, facts, gate):
        _Unroller(facts, gate, self.name, self.config, names_in(tree)).visit(tree)


class _Unroller(ScopedTransformer):

    def __init__(self, facts, gate, pass_name, config, taken: Set[str]):
        super().__init__(facts)
        self.gate = gate
        self.pass_name = pass_name
        self.config = config
        self.taken = taken
        self._introduced: List[str] = []

    def visit_For(self, node: ast.For):
        self.generic_visit(node)
        analysis = self.facts.loops.get(node_id(node))
        scope = self.scope
        if analysis is None or scope is None or not isinstance(node.target, ast.Name):
            return node
        if analysis.is_range_loop and not isinstance(node.iter, ast.Call):
            return node
        var = node.target.id
        if var.startswith(_UNROLLED_PREFIX):
            return node

        n = analysis.trip_count
        full = n <= self.config.full_unroll_limit
        if not full and not (analysis.is_range_loop and n >= self.config.unroll_factor):
            return node
        copies = n if full else self.config.unroll_factor + n % self.config.unroll_factor
        body_size = sum(count_nodes(s) for s in node.body) + 4

        preconditions = [
            holds('the loop has no else clause', lambda f: not node.orelse),
            holds('the body has no break or continue', lambda f: not _escapes(node.body)),
            holds('the body has no nested definitions',
                  lambda f: not any(isinstance(x, _DEFINITIONS)
                                    for s in node.body for x in ast.walk(s))),
            holds('the scope does no dynamic introspection', lambda f: not scope.dynamic),
            holds('the unrolled body fits max_unrolled_nodes',
                  lambda f: copies * body_size <= self.config.max_unrolled_nodes),
        ]
        if analysis.is_range_loop:
            preconditions.append(requires_fact('range is pure', lambda f: f.pure('range')))
            for arg in node.iter.args:
                if isinstance(arg, ast.Name):
                    preconditions.append(requires_fact(
                        f'{arg.id} is constant here', lambda f, a=arg: f.constant_at(node_id(a))
                    ))
            if n:
                preconditions.append(requires_fact(
                    'the trip count is known', lambda f: f.range_at(node_id(node))
                ))
        else:
            preconditions.append(holds('the sequence is a literal',
                                       lambda f: all(is_safe_constant(v) for v in analysis.sequence)))
        proof = self.gate.admit(self.pass_name, node, preconditions)
        if proof is None:
            return node

        temps = _temporaries(scope, node.body, var) if scope.kind == 'function' else set()
        if full:
            unrolled = self._full(node, var, list(analysis.sequence), temps)
            reason = f'fully unrolled {n} iteration(s)'
        else:
            unrolled = self._partial(node, var, analysis.sequence, temps)
            reason = f'unrolled by {self.config.unroll_factor} with {n % self.config.unroll_factor} tail copies'
        for name in self._introduced:
            self.facts.invalidate(scope.binding(name))
        self.facts.invalidate(scope.binding(var))
        if not unrolled:
            unrolled = [synthesize(ast.Pass(), node)]
        self.gate.commit(self.pass_name, node, unrolled[0], proof, reason=reason)
        return unrolled

    # ---- Copies ----

    def _copy(self, node: ast.For, var: str, value: ast.expr, temps: Set[str],
              last: bool) -> List[ast.stmt]:
        statements = [assign(var, value, node.target)]
        renames = {}
        if not last:
            for temp in sorted(temps):
                renames[temp] = fresh_name(f'{temp}__u', self.taken)
            self._introduced.extend(renames.values())
        replacer = NameReplacer(renames, stores=True, nested=True)
        for stmt in node.body:
            statements.append(replacer.replace(duplicate(stmt)) if renames else duplicate(stmt))
        return statements

    def _full(self, node: ast.For, var: str, values: list, temps: Set[str]) -> List[ast.stmt]:
        self._introduced = []
        statements = []
        for position, value in enumerate(values):
            statements.extend(self._copy(node, var, constant(value, node.iter), temps,
                                         last=position == len(values) - 1))
        return statements

    def _partial(self, node: ast.For, var: str, sequence: range, temps: Set[str]) -> List[ast.stmt]:
        self._introduced = []
        factor = self.config.unroll_factor
        groups = len(sequence) // factor
        step = sequence.step
        index = fresh_name(_UNROLLED_PREFIX, self.taken)
        self._introduced.append(index)

        body = []
        for k in range(factor):
            if k == 0:
                value = load(index, node.target)
            else:
                value = synthesize(ast.BinOp(left=load(index), op=ast.Add(),
                                             right=constant(k * step)), node.target)
            tail_follows = len(sequence) % factor != 0
            body.extend(self._copy(node, var, value, temps,
                                   last=k == factor - 1 and not tail_follows))

        start = sequence.start
        stop = start + groups * factor * step
        range_call = synthesize(ast.Call(
            func=duplicate(node.iter.func),
            args=[constant(start), constant(stop), constant(step * factor)],
            keywords=[],
        ), node.iter)
        loop = synthesize(ast.For(target=ast.Name(id=index, ctx=ast.Store()), iter=range_call,
                                  body=[], orelse=[]), node)
        loop.body = body
        statements: List[ast.stmt] = [loop]
        tail = list(sequence)[groups * factor:]
        for position, value in enumerate(tail):
            statements.extend(self._copy(node, var, constant(value, node.iter), temps,
                                         last=position == len(tail) - 1))
        return statements
