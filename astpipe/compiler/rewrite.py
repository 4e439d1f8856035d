"""
Rewrite Framework
=================

Common interface for rewrite passes plus the diagnostic log they feed.

A pass receives a private copy of the tree, the current ``FactBase`` and
a ``Gatekeeper``. It routes every candidate rewrite through the
gatekeeper, which records the decision, and returns a ``RewriteOutcome``.
"""

import ast
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from astpipe.compiler.tree import duplicate, node_id, synthesize
from astpipe.pipeline.config import PipelineConfig


class RewriteStatus(Enum):
    APPLIED = 'applied'
    SKIPPED = 'skipped'


@dataclass(frozen=True)
class RewriteRecord:
    """One applied or skipped rewrite attempt. Never mutated once logged."""
    pass_name: str
    before_id: Optional[int]
    after_id: Optional[int]
    status: RewriteStatus
    justification: Tuple[int, ...] = ()
    reason: str = ''
    iteration: int = 0

    @property
    def applied(self) -> bool:
        return self.status is RewriteStatus.APPLIED

    def __str__(self):
        before = f'#{self.before_id}' if self.before_id is not None else '-'
        after = f'#{self.after_id}' if self.after_id is not None else '-'
        facts = ','.join(str(f) for f in self.justification) or '-'
        line = (f'[iter {self.iteration}] {self.pass_name:<18} {self.status.value:<7} '
                f'{before} -> {after}  facts={facts}')
        if self.reason:
            line += f'  {self.reason}'
        return line


class RewriteLog:
    """
    Ordered, append-only sequence of rewrite records.

    Usage:
        >>> log = RewriteLog()
        >>> log.append(RewriteRecord('constant_fold', 3, 9, RewriteStatus.APPLIED))
        >>> len(log.applied())
        1
    """

    def __init__(self, records: Optional[List[RewriteRecord]] = None):
        self._records: List[RewriteRecord] = list(records or [])

    def append(self, record: RewriteRecord) -> None:
        self._records.append(record)

    def extend(self, records) -> None:
        self._records.extend(records)

    def applied(self) -> List[RewriteRecord]:
        return [r for r in self._records if r.applied]

    def skipped(self) -> List[RewriteRecord]:
        return [r for r in self._records if not r.applied]

    def by_pass(self, pass_name: str) -> List[RewriteRecord]:
        return [r for r in self._records if r.pass_name == pass_name]

    def summary(self) -> Dict[str, Dict[str, int]]:
        counts: Dict[str, Dict[str, int]] = {}
        for record in self._records:
            per_pass = counts.setdefault(record.pass_name, {'applied': 0, 'skipped': 0})
            per_pass[record.status.value] += 1
        return counts

    def report(self) -> str:
        """Render the log as a ``--dump-optimizations`` style report."""
        lines = [str(record) for record in self._records]
        lines.append('')
        lines.append('summary:')
        for pass_name, counts in self.summary().items():
            lines.append(f"  {pass_name:<18} applied={counts['applied']} "
                         f"skipped={counts['skipped']}")
        return '\n'.join(lines)

    def __iter__(self) -> Iterator[RewriteRecord]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __getitem__(self, index):
        return self._records[index]


@dataclass
class RewriteOutcome:
    tree: ast.Module
    applied: bool
    records: List[RewriteRecord] = field(default_factory=list)


class RewritePass:
    """
    Base class for rewrite passes.

    Subclasses set ``name`` and implement ``rewrite``, which transforms
    the tree it is given in place. The tree is always a private copy
    owned by this pass invocation; the driver adopts it only if the pass
    completes and its result passes the self-check.
    """

    name = ''

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config if config is not None else PipelineConfig()

    def apply(self, tree: ast.Module, facts, gate) -> RewriteOutcome:
        gate.begin(self.name)
        self.rewrite(tree, facts, gate)
        ast.fix_missing_locations(tree)
        return RewriteOutcome(tree=tree, applied=gate.changed, records=list(gate.records))

    def rewrite(self, tree: ast.Module, facts, gate) -> None:
        raise NotImplementedError


class ScopedTransformer(ast.NodeTransformer):
    """
    NodeTransformer that knows which scope the node being visited runs in.

    Decorators, defaults, annotations and class bases are visited in the
    enclosing scope; bodies in the scope the definition opens. Nodes that
    were synthesized after analysis have no scope entry, in which case
    ``self.scope`` is None and scope-dependent rewrites must back off.
    """

    def __init__(self, facts):
        self.facts = facts
        self.scope = facts.module_scope

    def visit_block(self, nodes: List[ast.AST]) -> List[ast.AST]:
        new = []
        for node in nodes:
            result = self.visit(node)
            if result is None:
                continue
            if isinstance(result, list):
                new.extend(result)
            else:
                new.append(result)
        return new

    def _inner(self, node: ast.AST):
        return self.facts.scope_of(node_id(node)) if self.scope is not None else None

    def visit_FunctionDef(self, node):
        node.decorator_list = self.visit_block(node.decorator_list)
        node.args = self.visit(node.args)
        if node.returns is not None:
            node.returns = self.visit(node.returns)
        saved, self.scope = self.scope, self._inner(node)
        node.body = self.visit_block(node.body) or [ast.Pass()]
        self.scope = saved
        return node

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_ClassDef(self, node):
        node.decorator_list = self.visit_block(node.decorator_list)
        node.bases = self.visit_block(node.bases)
        node.keywords = self.visit_block(node.keywords)
        saved, self.scope = self.scope, self._inner(node)
        node.body = self.visit_block(node.body) or [ast.Pass()]
        self.scope = saved
        return node

    def visit_Lambda(self, node):
        node.args = self.visit(node.args)
        saved, self.scope = self.scope, self._inner(node)
        node.body = self.visit(node.body)
        self.scope = saved
        return node

    def _visit_comprehension(self, node):
        saved, self.scope = self.scope, self._inner(node)
        self.generic_visit(node)
        self.scope = saved
        return node

    visit_ListComp = _visit_comprehension
    visit_SetComp = _visit_comprehension
    visit_DictComp = _visit_comprehension
    visit_GeneratorExp = _visit_comprehension


class NameReplacer(ast.NodeTransformer):
    """
    Replace name references in a subtree.

    A string replacement renames the name (reads only, or every
    occurrence with ``stores=True``); an expression replacement is
    substituted, freshly duplicated, at every read. Nested scopes are not
    entered unless ``nested=True``.
    """

    _SCOPES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda, ast.ClassDef,
               ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp)

    def __init__(self, replacements: Dict[str, object], stores: bool = False,
                 nested: bool = False):
        self.replacements = replacements
        self.stores = stores
        self.nested = nested
        self.replaced = 0
        self._root = None

    def visit(self, node):
        if not self.nested and isinstance(node, self._SCOPES) and node is not self._root:
            return node
        return super().visit(node)

    def replace(self, node: ast.AST) -> ast.AST:
        self._root = node
        return self.visit(node)

    def visit_Name(self, node: ast.Name):
        new = self.replacements.get(node.id)
        if new is None:
            return node
        if isinstance(new, str):
            if isinstance(node.ctx, ast.Load) or self.stores:
                self.replaced += 1
                return synthesize(ast.Name(id=new, ctx=node.ctx), node)
            return node
        if isinstance(node.ctx, ast.Load):
            self.replaced += 1
            return duplicate(new)
        return node
