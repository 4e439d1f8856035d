"""
Analyzer
========

Runs every read-only analysis over a tree and returns a fresh ``FactBase``.

Order matters: scopes and escape information first, then constant
propagation (which needs scopes), purity (which needs constant module
bindings to tell stable globals from mutable ones), and finally range
inference (which needs loop-entry constants and ``Pure(range)``).

The tree is never modified, apart from stamping ids on nodes that do
not have one yet.
"""

import ast
import logging
from typing import Dict, Iterable

from astpipe.analysis.constant_propagation import ConstantPropagation
from astpipe.analysis.facts import FactBase, FactKind
from astpipe.analysis.purity_analyzer import PurityAnalyzer
from astpipe.analysis.range_inference import RangeInference
from astpipe.analysis.scopes import ScopeCollector, Site, resolve_aliases
from astpipe.compiler.tree import iter_nodes, node_id, stamp_ids

logger = logging.getLogger(__name__)


def build_index(tree: ast.AST) -> Dict[int, ast.AST]:
    return {node_id(node): node for node in iter_nodes(tree)}


class Analyzer:
    """
    ``external_globals`` names module-level bindings that exist outside the
    analysed tree (the rest of a function's module). They count as bound
    but never as stable, so nothing is folded, rebound or trusted through
    them.

    Usage:
        >>> tree = ast.parse('X = 2\\ndef f():\\n    return X * 3')
        >>> facts = Analyzer().run(tree)
        >>> len(facts.of_kind(FactKind.CONSTANT)) > 0
        True
    """

    def __init__(self, external_globals: Iterable[str] = ()):
        self.external_globals = frozenset(external_globals)

    def run(self, tree: ast.Module) -> FactBase:
        stamp_ids(tree)
        index = build_index(tree)

        collector = ScopeCollector()
        module = collector.collect(tree)
        for name in sorted(self.external_globals):
            module.stores[name].append(Site('external', node_id(tree), None))
        resolve_aliases(module, index)

        facts = FactBase()
        facts.scopes = collector.scopes
        facts.module_scope = module

        propagation = ConstantPropagation(facts, index)
        propagation.run(tree)
        PurityAnalyzer(facts, index).run(tree)
        RangeInference(facts, index, propagation.loop_entry).run(tree)

        logger.debug(
            "analysis: %d scopes, %d constant, %d pure, %d range, %d type facts",
            len(facts.scopes),
            len(facts.of_kind(FactKind.CONSTANT)),
            len(facts.of_kind(FactKind.PURE)),
            len(facts.of_kind(FactKind.RANGE)),
            len(facts.of_kind(FactKind.TYPE)),
        )
        return facts
