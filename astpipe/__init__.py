"""
astpipe: Fact-Driven AST Optimization Pipeline
==============================================

astpipe rewrites Python syntax trees into faster, semantically equivalent
trees. A read-only analysis collects provable facts (constant values,
purity, integer ranges, known types); rewrite passes act only on what
those facts prove, and every rewrite is re-checked by a gatekeeper before
it is committed. The pipeline repeats until nothing changes.

Components:
    - analysis: scopes, constant propagation, purity and range inference
    - compiler: the rewrite framework and the seven rewrite passes
    - pipeline: gatekeeper, driver, configuration and the function API

Usage:
    >>> import ast, astpipe
    >>> result = astpipe.PipelineDriver().run(ast.parse(source))
    >>> print(result.source)
    >>> print(result.log.report())

    >>> @astpipe.optimize
    ... def compute():
    ...     ...
"""

__version__ = "1.0.0"

from astpipe.pipeline.errors import (
    InternalInvariantViolation,
    IterationBudgetExceeded,
    MalformedTree,
    OptimizerError,
    UnprovablePrecondition,
)
from astpipe.pipeline.config import PASS_ORDER, PipelineConfig
from astpipe.analysis import Analyzer, FactBase, FactKind
from astpipe.compiler import RewriteLog, RewriteRecord, RewriteStatus
from astpipe.pipeline.driver import PipelineDriver, PipelineResult, PipelineState, optimize_tree
from astpipe.pipeline.api import optimize, optimize_function, optimize_source
from astpipe.pipeline.parallel import optimize_many

__all__ = [
    'Analyzer',
    'FactBase',
    'FactKind',
    'InternalInvariantViolation',
    'IterationBudgetExceeded',
    'MalformedTree',
    'OptimizerError',
    'PASS_ORDER',
    'PipelineConfig',
    'PipelineDriver',
    'PipelineResult',
    'PipelineState',
    'RewriteLog',
    'RewriteRecord',
    'RewriteStatus',
    'UnprovablePrecondition',
    'optimize',
    'optimize_function',
    'optimize_many',
    'optimize_source',
    'optimize_tree',
]
