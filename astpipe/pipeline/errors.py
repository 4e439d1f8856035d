"""
Error Taxonomy
==============

Four outcomes a pipeline run can produce besides success:

    MalformedTree               fatal, raised before any pass runs
    UnprovablePrecondition      expected, turned into a skipped record
    IterationBudgetExceeded     non-fatal, attached to the result
    InternalInvariantViolation  fatal, carries the untouched pre-pass tree
"""

import ast
from typing import Optional


class OptimizerError(Exception):
    """Base class for every error raised by astpipe."""

    def __init__(self, message: str, node_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.node_id = node_id

    def __str__(self):
        if self.node_id is None:
            return self.message
        return f"{self.message} (node #{self.node_id})"


class MalformedTree(OptimizerError):
    """The input tree is structurally invalid."""


class UnprovablePrecondition(OptimizerError):
    """A rewrite's precondition could not be proven from the Fact Base."""


class IterationBudgetExceeded(OptimizerError):
    """The pipeline stopped before reaching a fixed point."""

    def __init__(self, message: str, iterations: int):
        super().__init__(message)
        self.iterations = iterations


class InternalInvariantViolation(OptimizerError):
    """
    A pass crashed or produced a tree that fails its self-check.

    ``tree`` is the tree as it was before the offending pass ran.
    """

    def __init__(
        self,
        message: str,
        pass_name: str,
        tree: ast.AST,
        node_id: Optional[int] = None,
    ):
        super().__init__(message, node_id)
        self.pass_name = pass_name
        self.tree = tree
