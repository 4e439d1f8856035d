"""
Purity Analyzer
================

Static analysis that decides which callables may be treated as ``Pure``:
calling them has no observable side effect and their result depends
only on their arguments and on bindings that can never change.

Theoretical Foundation:
    Functions are classified into a purity lattice:

        PURE ⊂ LOCALLY_IMPURE ⊂ READ_ONLY ⊂ IMPURE

    Where:
        - PURE: no reads of mutable external state, no writes, no I/O
        - LOCALLY_IMPURE: mutates only containers it created itself;
          indistinguishable from PURE to any caller
        - READ_ONLY: reads module-level state that may change
        - IMPURE: observable side effects (I/O, global or attribute
          mutation, nondeterminism, generators, unknown callees)

    Only PURE and LOCALLY_IMPURE functions receive a ``Pure`` fact.

    Module-level functions are solved together as an optimistic greatest
    fixed point: every candidate starts out pure, and a function is
    demoted as soon as it calls a candidate that has been demoted. This
    accepts mutually recursive pure helpers that a pessimistic analysis
    would reject.

Builtins carry a curated allow-list. A builtin name is pure only while
the module never rebinds it.
"""

import ast
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, FrozenSet, List, Optional, Set

from astpipe.analysis.facts import FactBase, FactKind
from astpipe.analysis.scopes import ScopeInfo, callee_key, is_stable_global, own_nodes
from astpipe.compiler.evaluator import PURE_METHODS, PURE_MODULE_FUNCTIONS
from astpipe.compiler.tree import node_id

logger = logging.getLogger(__name__)


class PurityLevel(IntEnum):
    """
    Graduated purity classification.

    Higher values = more impure.
    """
    PURE = 0
    LOCALLY_IMPURE = 1   # mutates containers it allocated itself
    READ_ONLY = 2        # reads module state that may be rebound
    IMPURE = 3
    UNKNOWN = 4          # analysis inconclusive, treated as impure


@dataclass
class PurityReport:
    """
    Why a function is or isn't pure, so the pipeline log can say so.
    """
    function_name: str
    level: PurityLevel
    reasons: List[str] = field(default_factory=list)

    global_reads: Set[str] = field(default_factory=set)
    global_writes: Set[str] = field(default_factory=set)
    nonlocal_access: Set[str] = field(default_factory=set)
    io_calls: Set[str] = field(default_factory=set)
    mutation_calls: Set[str] = field(default_factory=set)
    local_mutations: Set[str] = field(default_factory=set)
    nondeterministic_calls: Set[str] = field(default_factory=set)
    attribute_mutations: Set[str] = field(default_factory=set)
    unknown_calls: Set[str] = field(default_factory=set)
    impure_callees: Set[str] = field(default_factory=set)
    nested_scopes: Set[str] = field(default_factory=set)

    # Module-level functions this one calls; resolved by the fixed point
    callees: Set[str] = field(default_factory=set)

    is_recursive: bool = False
    has_yield: bool = False
    has_await: bool = False
    # Every ``return`` yields an immutable value (safe to share when hoisted)
    immutable_result: bool = True

    @property
    def is_pure(self) -> bool:
        return self.level <= PurityLevel.LOCALLY_IMPURE


# ═══════════════════════════════════════════════════════════════════════════
# Known-pure and known-impure function registries
# ═══════════════════════════════════════════════════════════════════════════

KNOWN_PURE_BUILTINS: FrozenSet[str] = frozenset({
    'abs', 'all', 'any', 'ascii', 'bin', 'bool', 'bytes', 'chr', 'complex',
    'divmod', 'enumerate', 'float', 'format', 'frozenset', 'hash', 'hex',
    'int', 'isinstance', 'issubclass', 'len', 'list', 'max', 'min', 'oct',
    'ord', 'pow', 'range', 'repr', 'reversed', 'round', 'set', 'slice',
    'sorted', 'str', 'sum', 'tuple', 'type', 'zip', 'dict',
})

# Pure builtins whose result is an immutable value
IMMUTABLE_RESULT_BUILTINS: FrozenSet[str] = frozenset({
    'abs', 'all', 'any', 'ascii', 'bin', 'bool', 'bytes', 'chr', 'complex',
    'divmod', 'float', 'format', 'frozenset', 'hash', 'hex', 'int',
    'isinstance', 'issubclass', 'len', 'max', 'min', 'oct', 'ord', 'pow',
    'range', 'repr', 'round', 'str', 'sum', 'tuple', 'type',
}) | frozenset(PURE_MODULE_FUNCTIONS)

_KNOWN_IO_FUNCTIONS: FrozenSet[str] = frozenset({
    'print', 'input', 'open', 'exec', 'eval', 'compile', '__import__',
    'exit', 'quit', 'breakpoint', 'setattr', 'delattr', 'globals', 'locals',
    'vars', 'help',
})

_KNOWN_NONDETERMINISTIC: FrozenSet[str] = frozenset({
    'random.random', 'random.randint', 'random.choice', 'random.shuffle',
    'random.sample', 'random.uniform', 'random.gauss', 'random.randrange',
    'time.time', 'time.perf_counter', 'time.monotonic', 'time.process_time',
    'time.time_ns', 'time.perf_counter_ns', 'uuid.uuid4', 'uuid.uuid1',
    'os.urandom', 'secrets.token_bytes', 'secrets.token_hex', 'id',
})

_KNOWN_MUTATION_METHODS: FrozenSet[str] = frozenset({
    'append', 'extend', 'insert', 'remove', 'pop', 'clear', 'sort', 'reverse',
    'add', 'discard', 'update', 'intersection_update', 'difference_update',
    'symmetric_difference_update', 'setdefault', 'popitem',
})

_FRESH_CONTAINERS = (ast.List, ast.Dict, ast.Set, ast.ListComp, ast.DictComp, ast.SetComp)

_IMMUTABLE_EXPRS = (ast.Constant, ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare,
                    ast.JoinedStr)


def method_key(receiver_type: type, method: str) -> str:
    return f'{receiver_type.__name__}.{method}'


class PurityAnalyzer:
    """
    Adds ``Pure`` facts for allow-listed builtins, ``math`` functions,
    literal-receiver methods and module-level functions.

    Usage:
        analyzer = PurityAnalyzer(facts, index)
        reports = analyzer.run(tree)
        facts.pure('helper')   # Fact or None

    The analysis is conservative: if uncertain, a function is classified
    as more impure rather than falsely pure.
    """

    def __init__(self, facts: FactBase, index: Dict[int, ast.AST]):
        self.facts = facts
        self.index = index

    # ───────────────────────────────────────────────────────────────
    #  Public API
    # ───────────────────────────────────────────────────────────────

    def run(self, tree: ast.Module) -> Dict[str, PurityReport]:
        module = self.facts.module_scope
        self._seed_builtins(module)

        candidates = self._candidates(module)
        reports = {
            key: self._analyze_funcdef(key, scope, candidates)
            for key, scope in candidates.items()
        }
        self._solve(reports)

        for key, report in reports.items():
            if report.is_pure:
                self.facts.add(FactKind.PURE, key, report)
            logger.debug("purity %s: %s (%s)", key, report.level.name,
                         '; '.join(report.reasons))
        self.facts.purity.update(reports)
        return reports

    def _seed_builtins(self, module: ScopeInfo) -> None:
        for name in KNOWN_PURE_BUILTINS:
            if name not in module.stores and is_stable_global(module, name):
                self.facts.add(FactKind.PURE, name)
        for key in PURE_MODULE_FUNCTIONS:
            self.facts.add(FactKind.PURE, key)
        for receiver_type, methods in PURE_METHODS.items():
            for method in methods:
                self.facts.add(FactKind.PURE, method_key(receiver_type, method))

    def _candidates(self, module: ScopeInfo) -> Dict[str, ScopeInfo]:
        """Once-defined, undecorated, plain module-level functions."""
        found = {}
        for scope in module.children:
            if scope.kind != 'function' or scope.decorated or scope.is_generator:
                continue
            func = self.index.get(scope.node_id)
            if not isinstance(func, ast.FunctionDef):
                continue
            if not scope.def_direct or not is_stable_global(module, func.name):
                continue
            found[func.name] = scope
        return found

    # ───────────────────────────────────────────────────────────────
    #  Core analysis
    # ───────────────────────────────────────────────────────────────

    def _analyze_funcdef(
        self, key: str, scope: ScopeInfo, candidates: Dict[str, ScopeInfo]
    ) -> PurityReport:
        func = self.index[scope.node_id]
        report = PurityReport(function_name=key, level=PurityLevel.PURE)

        visitor = _PurityVisitor(
            scope=scope,
            facts=self.facts,
            func_name=key,
            candidates=candidates,
            fresh_locals=self._fresh_locals(scope),
        )
        for stmt in func.body:
            visitor.visit(stmt)

        report.global_reads = visitor.global_reads
        report.global_writes = visitor.global_writes
        report.nonlocal_access = visitor.nonlocal_access
        report.io_calls = visitor.io_calls
        report.mutation_calls = visitor.mutation_calls
        report.local_mutations = visitor.local_mutations
        report.nondeterministic_calls = visitor.nondeterministic_calls
        report.attribute_mutations = visitor.attribute_mutations
        report.unknown_calls = visitor.unknown_calls
        report.nested_scopes = visitor.nested_scopes
        report.callees = visitor.callees
        report.is_recursive = key in visitor.callees
        report.has_yield = visitor.has_yield
        report.has_await = visitor.has_await
        report.immutable_result = all(
            _immutable_value(r.value, scope.params)
            for r in own_nodes(func) if isinstance(r, ast.Return)
        )

        report.level = self._determine_level(report)
        report.reasons = self._generate_reasons(report)
        return report

    def _fresh_locals(self, scope: ScopeInfo) -> Set[str]:
        """Locals only ever bound to a container literal the function builds."""
        fresh = set()
        for name, sites in scope.stores.items():
            if name in scope.params or name in scope.captured:
                continue
            values = [self.index.get(s.value_id) for s in sites if s.kind == 'assign']
            if len(values) == len(sites) and all(isinstance(v, _FRESH_CONTAINERS) for v in values):
                fresh.add(name)
        return fresh

    @staticmethod
    def _solve(reports: Dict[str, PurityReport]) -> None:
        """Greatest fixed point: demote callers of demoted functions."""
        changed = True
        while changed:
            changed = False
            for key, report in reports.items():
                if not report.is_pure:
                    continue
                bad = {c for c in report.callees if c != key and not reports[c].is_pure}
                if bad:
                    report.impure_callees |= bad
                    report.level = PurityLevel.IMPURE
                    report.reasons = PurityAnalyzer._generate_reasons(report)
                    changed = True

    @staticmethod
    def _determine_level(report: PurityReport) -> PurityLevel:
        if report.nested_scopes:
            return PurityLevel.UNKNOWN
        if (report.io_calls or report.global_writes or report.nondeterministic_calls
                or report.has_yield or report.has_await or report.unknown_calls):
            return PurityLevel.IMPURE
        if report.attribute_mutations or report.nonlocal_access or report.mutation_calls:
            return PurityLevel.IMPURE
        if report.global_reads:
            return PurityLevel.READ_ONLY
        if report.local_mutations:
            return PurityLevel.LOCALLY_IMPURE
        return PurityLevel.PURE

    @staticmethod
    def _generate_reasons(report: PurityReport) -> List[str]:
        """Human-readable reasons for the purity classification."""
        reasons = []
        for label, values in (
            ('Writes to global variables', report.global_writes),
            ('Uses nonlocal', report.nonlocal_access),
            ('I/O function calls', report.io_calls),
            ('Nondeterministic calls', report.nondeterministic_calls),
            ('Attribute mutations', report.attribute_mutations),
            ('Mutation method calls', report.mutation_calls),
            ('Calls of unknown purity', report.unknown_calls),
            ('Calls impure functions', report.impure_callees),
            ('Defines nested scopes', report.nested_scopes),
            ('Reads mutable globals', report.global_reads),
        ):
            if values:
                reasons.append(f"{label}: {', '.join(sorted(values))}")
        if report.has_yield:
            reasons.append("Contains yield (generator function)")
        if report.has_await:
            reasons.append("Contains await (async function)")
        if not reasons:
            reasons.append("Function is pure")
        return reasons


def _immutable_value(expr: Optional[ast.expr], params: Set[str]) -> bool:
    if expr is None or isinstance(expr, _IMMUTABLE_EXPRS):
        return True
    if isinstance(expr, ast.Name):
        return expr.id in params
    if isinstance(expr, ast.Tuple):
        return all(_immutable_value(e, params) for e in expr.elts)
    if isinstance(expr, ast.IfExp):
        return _immutable_value(expr.body, params) and _immutable_value(expr.orelse, params)
    return False


class _PurityVisitor(ast.NodeVisitor):
    """AST visitor that collects purity-violation evidence for one function."""

    def __init__(
        self,
        *,
        scope: ScopeInfo,
        facts: FactBase,
        func_name: str,
        candidates: Dict[str, ScopeInfo],
        fresh_locals: Set[str],
    ):
        self.scope = scope
        self.facts = facts
        self.func_name = func_name
        self.candidates = candidates
        self.fresh_locals = fresh_locals

        self.global_reads: Set[str] = set()
        self.global_writes: Set[str] = set()
        self.nonlocal_access: Set[str] = set()
        self.io_calls: Set[str] = set()
        self.mutation_calls: Set[str] = set()
        self.local_mutations: Set[str] = set()
        self.nondeterministic_calls: Set[str] = set()
        self.attribute_mutations: Set[str] = set()
        self.unknown_calls: Set[str] = set()
        self.nested_scopes: Set[str] = set()
        self.callees: Set[str] = set()
        self.comprehension_names: Set[str] = set()
        self.has_yield = False
        self.has_await = False

    # Nested scopes are not analysed
    def visit_FunctionDef(self, node):
        self.nested_scopes.add(node.name)

    visit_AsyncFunctionDef = visit_FunctionDef
    visit_ClassDef = visit_FunctionDef

    def visit_Lambda(self, node):
        self.nested_scopes.add('<lambda>')

    def visit_comprehension(self, node: ast.comprehension):
        for target in ast.walk(node.target):
            if isinstance(target, ast.Name):
                self.comprehension_names.add(target.id)
        self.generic_visit(node)

    def visit_Global(self, node: ast.Global):
        self.global_writes.update(node.names)

    def visit_Nonlocal(self, node: ast.Nonlocal):
        self.nonlocal_access.update(node.names)

    def visit_With(self, node):
        self.unknown_calls.add('<context manager>')
        self.generic_visit(node)

    visit_AsyncWith = visit_With

    def visit_Yield(self, node):
        self.has_yield = True
        self.generic_visit(node)

    visit_YieldFrom = visit_Yield

    def visit_Await(self, node):
        self.has_await = True
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name):
        if not isinstance(node.ctx, ast.Load) or self.scope.is_local(node.id):
            return
        owner = self.scope.resolve(node.id)
        if owner is None:
            return
        module = owner.module()
        if owner is not module or not is_stable_global(module, node.id):
            self.global_reads.add(node.id)
            return
        site = module.stores.get(node.id)
        if site and site[0].kind == 'assign' and self.facts.constant(owner.binding(node.id)) is None:
            self.global_reads.add(node.id)

    def visit_Attribute(self, node: ast.Attribute):
        if isinstance(node.ctx, (ast.Store, ast.Del)):
            self.attribute_mutations.add(f'{_receiver_name(node.value) or "?"}.{node.attr}')
        self.generic_visit(node)

    def visit_Subscript(self, node: ast.Subscript):
        if isinstance(node.ctx, (ast.Store, ast.Del)):
            receiver = _receiver_name(node.value)
            if receiver in self.fresh_locals:
                self.local_mutations.add(f'{receiver}[...]')
            else:
                self.attribute_mutations.add(f'{receiver or "?"}[...]')
        self.generic_visit(node)

    def visit_Call(self, node: ast.Call):
        self._classify_call(node)
        self.generic_visit(node)

    # ───────────────────────────────────────────────────────────────
    #  Helpers
    # ───────────────────────────────────────────────────────────────

    def _is_local(self, name: str) -> bool:
        return self.scope.is_local(name) and name not in self.scope.aliases

    def _classify_call(self, node: ast.Call) -> None:
        func = node.func
        if any(k.arg == 'key' for k in node.keywords):
            self.unknown_calls.add(f'{_receiver_name(func) or "?"}(key=...)')
        if isinstance(func, ast.Name) and (
                self._is_local(func.id) or func.id in self.comprehension_names):
            self.unknown_calls.add(func.id)
            return
        key = callee_key(self.scope, func)
        if key is not None:
            if key in _KNOWN_IO_FUNCTIONS:
                self.io_calls.add(key)
            elif key in _KNOWN_NONDETERMINISTIC:
                self.nondeterministic_calls.add(key)
            elif key in self.candidates:
                self.callees.add(key)
            elif self.facts.pure(key) is None:
                self.unknown_calls.add(key)
            return
        if isinstance(func, ast.Attribute):
            receiver = _receiver_name(func.value)
            if func.attr in _KNOWN_MUTATION_METHODS:
                if receiver in self.fresh_locals:
                    self.local_mutations.add(f'{receiver}.{func.attr}')
                else:
                    self.mutation_calls.add(f'{receiver or "?"}.{func.attr}')
                return
            receiver_type = self._receiver_type(func.value)
            if receiver_type is not None and self.facts.pure(method_key(receiver_type, func.attr)):
                return
            self.unknown_calls.add(f'{receiver or "?"}.{func.attr}')
            return
        self.unknown_calls.add(ast.unparse(func))

    def _receiver_type(self, node: ast.expr) -> Optional[type]:
        if isinstance(node, ast.Constant):
            return type(node.value)
        if isinstance(node, ast.JoinedStr):
            return str
        if isinstance(node, ast.Name):
            fact = self.facts.type_at(node_id(node))
            return fact.value if fact is not None else None
        return None


def _receiver_name(node: ast.expr) -> Optional[str]:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        base = _receiver_name(node.value)
        if base:
            return f'{base}.{node.attr}'
    return None
