"""
Batch Optimization
==================

Optimizes independent trees concurrently. Each tree gets its own driver,
Fact Base and copies, so workers share nothing but the node-id counter.
Results come back in input order.
"""

import ast
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from astpipe.pipeline.config import PipelineConfig
from astpipe.pipeline.driver import PipelineDriver, PipelineResult

logger = logging.getLogger(__name__)


@dataclass
class BatchStats:
    """Statistics from a batch run."""
    tasks_submitted: int = 0
    tasks_completed: int = 0
    failures: List[str] = field(default_factory=list)


def _optimize_one(tree: ast.AST, config: Optional[PipelineConfig]) -> PipelineResult:
    return PipelineDriver(config).run(tree)


def optimize_many(
    trees: Iterable[ast.AST],
    config: Optional[PipelineConfig] = None,
    workers: Optional[int] = None,
    stats: Optional[BatchStats] = None,
) -> List[PipelineResult]:
    """
    Run the pipeline over every tree in *trees*.

    The first failure (``MalformedTree`` or ``InternalInvariantViolation``)
    propagates once every submitted task has finished.

    Usage:
        >>> results = optimize_many([ast.parse('x = 1 + 1'), ast.parse('y = 2 * 3')])
        >>> [r.source for r in results]
        ['x = 2', 'y = 6']
    """
    tree_list = list(trees)
    workers = workers or max(1, min(len(tree_list), (os.cpu_count() or 2) - 1))
    stats = stats if stats is not None else BatchStats()
    stats.tasks_submitted += len(tree_list)
    logger.debug("optimizing %d tree(s) on %d worker(s)", len(tree_list), workers)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_optimize_one, tree, config) for tree in tree_list]

    results = []
    for position, future in enumerate(futures):
        error = future.exception()
        if error is not None:
            stats.failures.append(f'tree {position}: {error}')
            raise error
        results.append(future.result())
        stats.tasks_completed += 1
    return results
