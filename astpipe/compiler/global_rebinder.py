"""
Global Rebinding
================

Binds module-level and builtin names to function locals once, at function
entry, so repeated reads become local reads.

Before:
    def f(data):
        for x in data:
            out.append(len(x))

After:
    def f(data):
        _g_len = len
        _g_out = out
        for x in data:
            _g_out.append(_g_len(x))

A name qualifies only if it can never change after the function is
defined: bound at most once, by a top-level module statement that comes
before the ``def`` (or never bound, for builtins), never assigned through
``global`` and never reachable through dynamic namespace access. Locals
that already alias a global (``_g_len = len`` written by hand or by an
earlier run) are reused, so running the pass twice changes nothing.
"""

import ast
import logging
from collections import defaultdict
from typing import Dict, List, Set, Tuple

from astpipe.analysis.scopes import ScopeInfo, bound_before, is_stable_global
from astpipe.compiler.rewrite import NameReplacer, RewritePass, ScopedTransformer
from astpipe.compiler.tree import assign, fresh_name, load, names_in, node_id
from astpipe.pipeline.gatekeeper import holds

logger = logging.getLogger(__name__)

PROMOTION_THRESHOLD = 2  # Promote if read >= this many times, or read inside a loop

# Zero-argument super() needs the compiler to see these names
NEVER_PROMOTED = frozenset({'super', '__class__'})

_SCOPES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef, ast.Lambda,
           ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp)
_LOOPS = (ast.For, ast.AsyncFor, ast.While)


def _own_reads(func: ast.AST) -> Dict[str, Tuple[int, bool]]:
    """name -> (number of reads, any read inside a loop) for *func*'s own body."""
    usage: Dict[str, List] = defaultdict(lambda: [0, False])
    stack = [(stmt, False) for stmt in func.body]
    while stack:
        node, in_loop = stack.pop()
        if isinstance(node, _SCOPES):
            continue
        if isinstance(node, ast.Name) and isinstance(node.ctx, ast.Load):
            entry = usage[node.id]
            entry[0] += 1
            entry[1] = entry[1] or in_loop
        for child in ast.iter_child_nodes(node):
            # The iterable of a for loop is evaluated once
            repeated = isinstance(node, _LOOPS) and not (
                isinstance(node, (ast.For, ast.AsyncFor)) and child is node.iter
            )
            stack.append((child, in_loop or repeated))
    return {name: (count, looped) for name, (count, looped) in usage.items()}


def _docstring_offset(body: List[ast.stmt]) -> int:
    if body and isinstance(body[0], ast.Expr) and isinstance(body[0].value, ast.Constant) \
            and isinstance(body[0].value.value, str):
        return 1
    return 0


def _leading_aliases(body: List[ast.stmt]) -> Set[str]:
    """Locals bound by the run of ``name = other_name`` statements opening *body*."""
    aliases = set()
    for stmt in body[_docstring_offset(body):]:
        if not (isinstance(stmt, ast.Assign) and len(stmt.targets) == 1
                and isinstance(stmt.targets[0], ast.Name) and isinstance(stmt.value, ast.Name)):
            break
        aliases.add(stmt.targets[0].id)
    return aliases


class GlobalRebindPass(RewritePass):
    name = 'global_rebind'

    def rewrite(self, tree, facts, gate):
        _GlobalRebinder(facts, gate, self.name, names_in(tree)).visit(tree)


class _GlobalRebinder(ScopedTransformer):

    def __init__(self, facts, gate, pass_name, taken):
        super().__init__(facts)
        self.gate = gate
        self.pass_name = pass_name
        self.taken = taken

    def visit_FunctionDef(self, node):
        node = super().visit_FunctionDef(node)
        scope = self._inner(node)
        if scope is None or scope.kind != 'function':
            return node

        leading = _leading_aliases(node.body)
        existing = {target: alias for alias, target in scope.aliases.items() if alias in leading}
        to_promote: Dict[str, str] = {}
        inserted: List[ast.stmt] = []
        for name, (count, looped) in sorted(_own_reads(node).items()):
            if name in NEVER_PROMOTED or name in scope.aliases:
                continue
            if scope.resolve(name) not in (None, scope.module()):
                continue
            alias = existing.get(name)
            if alias is not None:
                count -= 1  # the alias statement's own read
            if count < 1 or (count < PROMOTION_THRESHOLD and not looped):
                continue
            if not self._admit(node, scope, name):
                continue
            if alias is None:
                alias = f'_g_{name}'
                if alias in self.taken:
                    alias = fresh_name(f'_g_{name}_', self.taken)
                self.taken.add(alias)
                inserted.append(assign(alias, load(name, node), node))
            to_promote[name] = alias

        if not to_promote:
            return node

        keep = {node_id(s.value) for s in node.body
                if isinstance(s, ast.Assign) and isinstance(s.value, ast.Name)
                and s.value.id in to_promote and len(s.targets) == 1
                and isinstance(s.targets[0], ast.Name) and s.targets[0].id == to_promote[s.value.id]}
        replacer = _AliasReplacer(to_promote, keep)
        node.body = [stmt if isinstance(stmt, _SCOPES) else replacer.replace(stmt)
                     for stmt in node.body]
        offset = _docstring_offset(node.body)
        node.body[offset:offset] = inserted

        for name, alias in to_promote.items():
            self.facts.invalidate(scope.binding(alias))
            self.gate.commit(self.pass_name, node, inserted[0] if inserted else node,
                             reason=f'{name} read through local {alias}')
        return node

    visit_AsyncFunctionDef = visit_FunctionDef

    def _admit(self, func, scope: ScopeInfo, name: str) -> bool:
        module = scope.module()
        proof = self.gate.admit(self.pass_name, func, [
            holds('the module does no dynamic rebinding', lambda f: not module.dynamic),
            holds(f'{name} is never declared global', lambda f: name not in module.mutated_by_children
                  and name not in scope.declared_global),
            holds(f'{name} is bound at most once at module level',
                  lambda f: is_stable_global(module, name)),
            holds(f'{name} is bound before {func.name} is defined',
                  lambda f: bound_before(scope, name)),
            holds(f'{func.name} does no dynamic introspection', lambda f: not scope.dynamic),
        ])
        return proof is not None


class _AliasReplacer(NameReplacer):
    """Rename global reads, leaving the alias statements themselves alone."""

    def __init__(self, replacements, keep):
        super().__init__(replacements)
        self.keep = keep

    def visit_Name(self, node):
        if node_id(node) in self.keep:
            return node
        return super().visit_Name(node)
