"""
Safety Gatekeeper
=================

Every rewrite a pass wants to perform is first submitted here together
with its preconditions. Each precondition is re-checked against the
*current* Fact Base (passes invalidate facts as they introduce bindings,
so an earlier admission may no longer hold). A precondition either
returns the ids of the facts that justify it or raises
``UnprovablePrecondition``; the first failure turns the attempt into a
skipped record and the node is left alone.
"""

import ast
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from astpipe.compiler.rewrite import RewriteRecord, RewriteStatus
from astpipe.compiler.tree import node_id
from astpipe.pipeline.errors import UnprovablePrecondition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Precondition:
    """A named proof obligation: ``check(facts)`` -> justifying fact ids."""
    description: str
    check: Callable[..., Sequence[int]]


def requires_fact(description: str, find) -> Precondition:
    """Precondition satisfied by the fact ``find(facts)`` returns (None if unknown)."""
    def check(facts):
        fact = find(facts)
        if fact is None:
            raise UnprovablePrecondition(f'no fact proves {description}')
        return (fact.fact_id,)
    return Precondition(description, check)


def holds(description: str, predicate) -> Precondition:
    """Structural precondition with no fact behind it."""
    def check(facts):
        if not predicate(facts):
            raise UnprovablePrecondition(f'{description} does not hold')
        return ()
    return Precondition(description, check)


class Gatekeeper:
    """
    Admits or rejects rewrites and keeps the records of one pass run.

    Usage:
        gate = Gatekeeper(facts, iteration=1)
        gate.begin('constant_fold')
        proof = gate.admit('constant_fold', node, [requires_fact(...)])
        if proof is not None:
            ...  # build the replacement
            gate.commit('constant_fold', node, replacement, proof)
    """

    def __init__(self, facts, iteration: int = 0):
        self.facts = facts
        self.iteration = iteration
        self.pass_name = ''
        self.records: List[RewriteRecord] = []
        self.changed = False

    def begin(self, pass_name: str) -> None:
        self.pass_name = pass_name
        self.records = []
        self.changed = False

    def admit(
        self,
        pass_name: str,
        node: ast.AST,
        preconditions: Sequence[Precondition],
    ) -> Optional[Tuple[int, ...]]:
        justification: List[int] = []
        for precondition in preconditions:
            try:
                fact_ids = tuple(precondition.check(self.facts))
                stale = [f for f in fact_ids if f not in self.facts]
                if stale:
                    raise UnprovablePrecondition(
                        f'justifying facts {stale} were invalidated', node_id(node)
                    )
            except UnprovablePrecondition as e:
                self.skip(pass_name, node, f'{precondition.description}: {e.message}')
                return None
            justification.extend(fact_ids)
        return tuple(justification)

    def commit(
        self,
        pass_name: str,
        before: ast.AST,
        after: Optional[ast.AST],
        justification: Sequence[int] = (),
        reason: str = '',
    ) -> RewriteRecord:
        record = RewriteRecord(
            pass_name=pass_name,
            before_id=node_id(before),
            after_id=node_id(after) if after is not None else None,
            status=RewriteStatus.APPLIED,
            justification=tuple(justification),
            reason=reason,
            iteration=self.iteration,
        )
        self.records.append(record)
        self.changed = True
        logger.debug("%s", record)
        return record

    def skip(self, pass_name: str, node: ast.AST, reason: str) -> RewriteRecord:
        record = RewriteRecord(
            pass_name=pass_name,
            before_id=node_id(node),
            after_id=None,
            status=RewriteStatus.SKIPPED,
            reason=reason,
            iteration=self.iteration,
        )
        self.records.append(record)
        logger.debug("%s", record)
        return record
