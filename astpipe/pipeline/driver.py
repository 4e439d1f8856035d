"""
Pipeline Driver
===============

Runs analysis and the enabled rewrite passes, iteration after iteration,
until an iteration applies no rewrite (a fixed point) or a budget runs
out.

    IDLE -> ANALYZING -> REWRITING -> ANALYZING -> ... -> DONE

Every iteration starts from a fresh analysis of the current tree. Each
pass runs on its own deep copy; the copy is adopted only if the pass
finishes and its output passes the self-check (it compiles, and it reads
no name that was not already free in its input). Anything else aborts the
run with ``InternalInvariantViolation`` carrying the pre-pass tree.
"""

import ast
import copy
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Dict, Iterable, List, Optional, Sequence, Type

from astpipe.analysis.analyzer import Analyzer
from astpipe.compiler.algebraic_simplifier import AlgebraicSimplifyPass
from astpipe.compiler.constant_folder import ConstantFoldPass
from astpipe.compiler.dead_code import DeadCodePass
from astpipe.compiler.global_rebinder import GlobalRebindPass
from astpipe.compiler.inliner import InlinePass
from astpipe.compiler.invariant_hoister import HoistPass
from astpipe.compiler.loop_unroller import UnrollPass
from astpipe.compiler.rewrite import RewriteLog, RewritePass
from astpipe.compiler.tree import as_module, free_names, stamp_ids, validate_tree
from astpipe.pipeline.config import PipelineConfig
from astpipe.pipeline.errors import (
    InternalInvariantViolation, IterationBudgetExceeded, MalformedTree,
)
from astpipe.pipeline.gatekeeper import Gatekeeper
from astpipe.utils.helpers import Timer

logger = logging.getLogger(__name__)

PASS_REGISTRY: Dict[str, Type[RewritePass]] = {
    cls.name: cls for cls in (
        InlinePass, ConstantFoldPass, DeadCodePass, HoistPass, UnrollPass,
        GlobalRebindPass, AlgebraicSimplifyPass,
    )
}


class PipelineState(Enum):
    IDLE = auto()
    ANALYZING = auto()
    REWRITING = auto()
    DONE = auto()


@dataclass
class PipelineResult:
    """Outcome of one pipeline run."""
    tree: ast.AST
    log: RewriteLog
    iterations: int
    converged: bool
    warning: Optional[IterationBudgetExceeded] = None
    wall_time_seconds: float = 0.0

    @property
    def source(self) -> str:
        return ast.unparse(self.tree)

    @property
    def budget_exceeded(self) -> bool:
        return self.warning is not None


class PipelineDriver:
    """
    Usage:
        >>> driver = PipelineDriver(PipelineConfig(max_iterations=5))
        >>> result = driver.run(ast.parse('def f():\\n    return 2 * 3'))
        >>> result.source
        'def f():\\n    return 6'
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        passes: Optional[Sequence[RewritePass]] = None,
        external_globals: Iterable[str] = (),
    ):
        self.config = config if config is not None else PipelineConfig()
        if passes is None:
            passes = [PASS_REGISTRY[name](self.config) for name in self.config.ordered_passes()]
        self.passes: List[RewritePass] = list(passes)
        self.analyzer = Analyzer(external_globals)
        self.state = PipelineState.IDLE

    def run(self, tree: ast.AST) -> PipelineResult:
        if not isinstance(tree, (ast.Module, ast.FunctionDef, ast.AsyncFunctionDef)):
            raise MalformedTree(f'expected a Module or FunctionDef, got {type(tree).__name__}')
        self.state = PipelineState.IDLE
        working = stamp_ids(copy.deepcopy(as_module(tree)))
        validate_tree(working)

        log = RewriteLog()
        iterations = 0
        converged = False
        warning = None
        try:
            with Timer() as timer:
                while iterations < self.config.max_iterations:
                    budget = self.config.time_budget
                    if budget is not None and iterations and timer.elapsed_s >= budget:
                        warning = IterationBudgetExceeded(
                            f'time budget of {budget}s expired after {iterations} iteration(s)',
                            iterations,
                        )
                        break
                    iterations += 1
                    working, changed = self._iterate(working, iterations, log)
                    if not changed:
                        converged = True
                        break
                else:
                    warning = IterationBudgetExceeded(
                        f'no fixed point after {iterations} iteration(s)', iterations
                    )
        finally:
            self.state = PipelineState.DONE

        if warning is not None:
            logger.warning("%s", warning)
        logger.info(
            "pipeline %s after %d iteration(s): %d applied, %d skipped",
            'converged' if converged else 'stopped', iterations,
            len(log.applied()), len(log.skipped()),
        )
        result_tree = working
        if not isinstance(tree, ast.Module) and len(working.body) == 1:
            result_tree = working.body[0]
        return PipelineResult(
            tree=result_tree,
            log=log,
            iterations=iterations,
            converged=converged,
            warning=warning,
            wall_time_seconds=timer.elapsed_s,
        )

    def _iterate(self, working: ast.Module, iteration: int, log: RewriteLog):
        self.state = PipelineState.ANALYZING
        facts = self.analyzer.run(working)
        gate = Gatekeeper(facts, iteration)

        self.state = PipelineState.REWRITING
        changed = False
        for rewrite_pass in self.passes:
            working, applied = self._run_pass(rewrite_pass, working, facts, gate, log)
            changed = changed or applied
        logger.debug("iteration %d: %s", iteration, 'changed' if changed else 'fixed point')
        return working, changed

    def _run_pass(self, rewrite_pass: RewritePass, before: ast.Module, facts, gate,
                  log: RewriteLog):
        name = rewrite_pass.name
        candidate = copy.deepcopy(before)
        try:
            outcome = rewrite_pass.apply(candidate, facts, gate)
            self._self_check(name, before, outcome.tree)
        except InternalInvariantViolation:
            raise
        except Exception as e:
            logger.error("pass %s failed: %s", name, e)
            raise InternalInvariantViolation(
                f'pass {name} raised {type(e).__name__}: {e}', name, before,
                getattr(e, 'node_id', None),
            ) from e
        log.extend(outcome.records)
        return outcome.tree, outcome.applied

    @staticmethod
    def _self_check(name: str, before: ast.Module, after: ast.Module) -> None:
        try:
            validate_tree(after)
        except MalformedTree as e:
            logger.error("pass %s produced an invalid tree: %s", name, e)
            raise InternalInvariantViolation(
                f'pass {name} produced an invalid tree: {e.message}', name, before, e.node_id
            ) from e
        introduced = free_names(after) - free_names(before)
        if introduced:
            logger.error("pass %s introduced free names %s", name, sorted(introduced))
            raise InternalInvariantViolation(
                f'pass {name} introduced free name(s): {", ".join(sorted(introduced))}',
                name, before,
            )


def optimize_tree(tree: ast.AST, config: Optional[PipelineConfig] = None) -> PipelineResult:
    """Run the pipeline once over *tree* with a fresh driver."""
    return PipelineDriver(config).run(tree)
