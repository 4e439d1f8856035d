"""
Tests for batch optimization.

Validates:
  - Results come back in input order
  - Statistics are collected
  - A failing tree propagates its error
"""

import ast

import pytest

from astpipe.pipeline.config import PipelineConfig
from astpipe.pipeline.errors import MalformedTree
from astpipe.pipeline.parallel import BatchStats, optimize_many


class TestOptimizeMany:
    def test_order_is_preserved(self):
        results = optimize_many([ast.parse('x = 1 + 1'), ast.parse('y = 2 * 3')])
        assert [r.source for r in results] == ['x = 2', 'y = 6']

    def test_many_trees_on_few_workers(self):
        trees = [ast.parse(f'v = {n} * 2') for n in range(20)]
        results = optimize_many(trees, workers=3)
        assert [r.source for r in results] == [f'v = {n * 2}' for n in range(20)]
        assert all(r.converged for r in results)

    def test_config_is_shared(self):
        config = PipelineConfig(enabled_passes=())
        (result,) = optimize_many([ast.parse('x = 1 + 1')], config=config)
        assert result.source == 'x = 1 + 1'

    def test_stats(self):
        stats = BatchStats()
        optimize_many([ast.parse('a = 1'), ast.parse('b = 2')], stats=stats)
        assert stats.tasks_submitted == 2
        assert stats.tasks_completed == 2
        assert stats.failures == []

    def test_empty_batch(self):
        assert optimize_many([]) == []

    def test_failure_propagates(self):
        stats = BatchStats()
        with pytest.raises(MalformedTree):
            optimize_many([ast.parse('a = 1'), ast.Constant(value=1)], stats=stats)
        assert stats.tasks_completed == 1
        assert len(stats.failures) == 1
        assert stats.failures[0].startswith('tree 1')

    def test_inputs_are_not_mutated(self):
        tree = ast.parse('x = 1 + 1')
        before = ast.dump(tree)
        optimize_many([tree, tree])
        assert ast.dump(tree) == before
