"""
Function Inlining
=================

Replaces calls to small, pure, module-level functions with their bodies.

Two shapes are handled:

    def sq(x): return x * x          y = sq(a)   ->  y = a * a

    def norm(a, b):                  r = norm(p, q + 1)
        s = a * a + b * b        ->  _inl_a_0 = p
        return s ** 0.5              _inl_b_0 = q + 1
                                     _inl_s_0 = _inl_a_0 * _inl_a_0 + _inl_b_0 * _inl_b_0
                                     r = _inl_s_0 ** 0.5

The first (expression form) is used anywhere a call may appear, as long
as every argument is a literal or a name. The second (statement form)
evaluates every argument exactly once, in order, and is used when the
call is the whole value of an assignment, a ``return`` or an expression
statement.
"""

import ast
import logging
from collections import Counter
from typing import Dict, List, Optional, Set

from astpipe.analysis.scopes import global_target, is_stable_global
from astpipe.compiler.rewrite import NameReplacer, RewritePass, ScopedTransformer
from astpipe.compiler.tree import assign, count_nodes, duplicate, fresh_name, names_in
from astpipe.pipeline.gatekeeper import holds, requires_fact

logger = logging.getLogger(__name__)


def _body(func: ast.FunctionDef) -> List[ast.stmt]:
    body = func.body
    if body and isinstance(body[0], ast.Expr) and isinstance(body[0].value, ast.Constant) \
            and isinstance(body[0].value.value, str):
        return body[1:]
    return body


def _params(func: ast.FunctionDef) -> List[str]:
    return [a.arg for a in func.args.args]


def _comprehension_names(func: ast.AST) -> Set[str]:
    names = set()
    for node in ast.walk(func):
        if isinstance(node, ast.comprehension):
            names.update(n.id for n in ast.walk(node.target) if isinstance(n, ast.Name))
    return names


def _arguments_match(func: ast.FunctionDef, call: ast.Call) -> bool:
    args = func.args
    if args.posonlyargs or args.kwonlyargs or args.vararg or args.kwarg:
        return False
    if call.keywords or any(isinstance(a, ast.Starred) for a in call.args):
        return False
    # Defaults are fine as long as the call supplies every argument
    return len(call.args) == len(args.args)


def _straight_line(body: List[ast.stmt], params: List[str]) -> bool:
    """Single-name assignments followed by one ``return <expr>``, locals set before use."""
    if not body or not isinstance(body[-1], ast.Return) or body[-1].value is None:
        return False
    assigned_anywhere = {
        s.targets[0].id for s in body[:-1]
        if isinstance(s, ast.Assign) and len(s.targets) == 1 and isinstance(s.targets[0], ast.Name)
    }
    bound = set(params)
    comprehension = set()
    for stmt in body:
        comprehension |= _comprehension_names(stmt)
    for stmt in body:
        if isinstance(stmt, ast.Return):
            value = stmt.value
        elif isinstance(stmt, ast.Assign) and len(stmt.targets) == 1 \
                and isinstance(stmt.targets[0], ast.Name):
            value = stmt.value
        else:
            return False
        for node in ast.walk(value):
            if isinstance(node, ast.Name) and node.id in assigned_anywhere \
                    and node.id not in bound and node.id not in comprehension:
                return False
        if isinstance(stmt, ast.Assign):
            bound.add(stmt.targets[0].id)
    return True


class InlinePass(RewritePass):
    name = 'inline'

    def rewrite(self, tree, facts, gate):
        inliner = _Inliner(facts, gate, self.name, tree, self.config.inline_size_budget)
        tree.body = inliner.visit_block(tree.body)


class _Inliner(ScopedTransformer):

    def __init__(self, facts, gate, pass_name, tree, budget):
        super().__init__(facts)
        self.gate = gate
        self.pass_name = pass_name
        self.budget = budget
        self.module = facts.module_scope
        self.defs: Dict[str, ast.FunctionDef] = {
            stmt.name: stmt for stmt in tree.body if isinstance(stmt, ast.FunctionDef)
        }
        self.taken = names_in(tree)
        self._statement_call: Optional[ast.Call] = None
        self._pending = None

    # ---- Candidates ----

    def _target(self, node: ast.Call) -> Optional[str]:
        scope = self.scope
        if scope is None or scope.kind != 'function' or not isinstance(node.func, ast.Name):
            return None
        target = global_target(scope, node.func.id)
        if target is None:
            return None
        if not any(site.kind == 'def' for site in self.module.stores.get(target, ())):
            return None
        return target

    def _recursive(self, target: str) -> bool:
        seen, stack = set(), [target]
        while stack:
            report = self.facts.purity.get(stack.pop())
            if report is None:
                continue
            if report.is_recursive and report.function_name == target:
                return True
            for callee in report.callees:
                if callee == target:
                    return True
                if callee not in seen:
                    seen.add(callee)
                    stack.append(callee)
        return False

    def _captures(self, func: ast.FunctionDef, call: ast.Call) -> bool:
        """True if the callee's free names, or the arguments, would bind differently."""
        params = set(_params(func))
        bound_inside = {
            n.id for n in ast.walk(func) if isinstance(n, ast.Name) and not isinstance(n.ctx, ast.Load)
        }
        for node in ast.walk(func):
            if isinstance(node, ast.NamedExpr):
                return True
            if isinstance(node, ast.Name) and isinstance(node.ctx, ast.Load) \
                    and node.id not in params and node.id not in bound_inside:
                owner = self.scope.resolve(node.id)
                if owner is not None and owner.kind != 'module':
                    return True
        shadowing = _comprehension_names(func)
        if shadowing & params:
            return True
        arg_names = {n.id for a in call.args for n in ast.walk(a) if isinstance(n, ast.Name)}
        return bool(arg_names & shadowing)

    def _admit(self, node: ast.Call, target: str):
        func = self.defs.get(target)
        module = self.module
        return self.gate.admit(self.pass_name, node, [
            holds(f'{target} has a single reaching definition',
                  lambda f: func is not None and is_stable_global(module, target)),
            holds(f'{target} is undecorated', lambda f: not func.decorator_list),
            requires_fact(f'{target} is pure', lambda f: f.pure(target)),
            holds(f'{target} is not recursive', lambda f: not self._recursive(target)),
            holds('arguments match the parameters', lambda f: _arguments_match(func, node)),
            holds(f'{target} fits the inline size budget',
                  lambda f: count_nodes(func) <= self.budget),
            holds('no name is captured', lambda f: not self._captures(func, node)),
        ])

    # ---- Expression form ----

    def visit_Call(self, node: ast.Call):
        self.generic_visit(node)
        target = self._target(node)
        if target is None:
            return node
        proof = self._admit(node, target)
        if proof is None:
            return node
        func = self.defs[target]
        inlined = self._expression_form(func, node)
        if inlined is not None:
            self.gate.commit(self.pass_name, node, inlined, proof, reason=f'inlined {target}')
            return inlined
        if node is self._statement_call:
            self._pending = (target, proof)
        else:
            self.gate.skip(self.pass_name, node,
                           f'{target} needs statement-level inlining here')
        return node

    def _expression_form(self, func: ast.FunctionDef, call: ast.Call) -> Optional[ast.expr]:
        body = _body(func)
        if len(body) != 1 or not isinstance(body[0], ast.Return) or body[0].value is None:
            return None
        expr = body[0].value
        params = _params(func)
        uses = Counter(
            n.id for n in ast.walk(expr) if isinstance(n, ast.Name) and isinstance(n.ctx, ast.Load)
        )
        for param, arg in zip(params, call.args):
            if not isinstance(arg, (ast.Constant, ast.Name)):
                return None
            # Dropping an unused name argument would also drop its NameError
            if uses[param] == 0 and not isinstance(arg, ast.Constant):
                return None
        replacer = NameReplacer(dict(zip(params, call.args)), nested=True)
        return replacer.replace(duplicate(expr))

    # ---- Statement form ----

    def _visit_statement(self, stmt):
        value = getattr(stmt, 'value', None)
        call = value if isinstance(value, ast.Call) else None
        saved = (self._statement_call, self._pending)
        self._statement_call, self._pending = call, None
        self.generic_visit(stmt)
        pending = self._pending
        self._statement_call, self._pending = saved
        if pending is None or stmt.value is not call:
            return stmt
        return self._statement_form(stmt, call, *pending)

    visit_Assign = _visit_statement
    visit_Return = _visit_statement
    visit_Expr = _visit_statement

    def _statement_form(self, stmt, call: ast.Call, target: str, proof):
        func = self.defs[target]
        body = _body(func)
        params = _params(func)
        if not _straight_line(body, params):
            self.gate.skip(self.pass_name, call, f'{target} body is not straight-line')
            return stmt

        renames: Dict[str, str] = {}
        for name in params:
            renames[name] = fresh_name(f'_inl_{name}_', self.taken)
        for s in body[:-1]:
            name = s.targets[0].id
            if name not in renames:
                renames[name] = fresh_name(f'_inl_{name}_', self.taken)

        expanded: List[ast.stmt] = [
            assign(renames[param], arg, call) for param, arg in zip(params, call.args)
        ]
        for s in body[:-1]:
            expanded.append(NameReplacer(renames, stores=True, nested=True).replace(duplicate(s)))
        stmt.value = NameReplacer(renames, nested=True).replace(duplicate(body[-1].value))
        expanded.append(stmt)

        for name in renames.values():
            self.facts.invalidate(self.scope.binding(name))
        self.gate.commit(self.pass_name, call, expanded[0], proof,
                         reason=f'inlined {target} ({len(expanded) - 1} statements)')
        return expanded
