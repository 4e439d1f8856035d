"""
Tests for the function API.

Validates:
  - optimize_function and the @optimize decorator
  - Defaults, metadata and module globals carry over to the optimized copy
  - Closures and non-def callables are handled explicitly
"""

import sys

import pytest

from astpipe import PipelineConfig, optimize, optimize_function, optimize_source

THRESHOLD = 10


def above(x):
    return x > THRESHOLD


def scaled(x, factor=3, *, offset=1):
    return x * factor + offset


def total():
    s = 0
    for i in range(10):
        s += i
    return s


@optimize
def decorated_total():
    s = 0
    for i in range(10):
        s += i
    return s


@optimize(config=PipelineConfig(enabled_passes=()))
def untouched_total():
    s = 0
    for i in range(10):
        s += i
    return s


square = lambda x: x * x  # noqa: E731


class TestOptimizeFunction:
    def test_result_is_attached(self):
        optimized = optimize_function(total)
        assert optimized() == 45
        assert optimized.__astpipe_result__.source == 'def total():\n    return 45'
        assert optimized.__astpipe_original__ is total

    def test_metadata(self):
        optimized = optimize_function(total)
        assert optimized.__name__ == 'total'
        assert optimized.__qualname__ == total.__qualname__
        assert optimized is not total

    def test_defaults_are_preserved(self):
        optimized = optimize_function(scaled)
        assert optimized.__defaults__ == (3,)
        assert optimized.__kwdefaults__ == {'offset': 1}
        assert optimized(2) == scaled(2) == 7
        assert optimized(2, 5, offset=0) == 10

    def test_module_globals_stay_live(self, monkeypatch):
        optimized = optimize_function(above)
        assert 'THRESHOLD' in optimized.__astpipe_result__.source
        assert optimized(5) is False
        monkeypatch.setattr(sys.modules[__name__], 'THRESHOLD', 1)
        assert optimized(5) is True

    def test_config(self):
        optimized = optimize_function(total, PipelineConfig(enabled_passes=('constant_fold',)))
        assert 'for i in range(10)' in optimized.__astpipe_result__.source
        assert optimized() == 45

    def test_closure_is_returned_unchanged(self):
        base = 5

        def add(x):
            return x + base

        assert optimize_function(add) is add
        assert add.__astpipe_result__ is None
        assert add(1) == 6

    def test_lambda_is_rejected(self):
        with pytest.raises(TypeError):
            optimize_function(square)


class TestDecorator:
    def test_bare(self):
        assert decorated_total() == 45
        assert decorated_total.__astpipe_result__.source == 'def decorated_total():\n    return 45'

    def test_with_config(self):
        assert untouched_total() == 45
        assert 'for i in range(10)' in untouched_total.__astpipe_result__.source


class TestOptimizeSource:
    def test_does_not_compile(self):
        result = optimize_source(total)
        assert result.converged
        assert result.source == 'def total():\n    return 45'
