"""Pipeline orchestration: errors, configuration, gatekeeping and the driver."""

from astpipe.pipeline.errors import (
    InternalInvariantViolation,
    IterationBudgetExceeded,
    MalformedTree,
    OptimizerError,
    UnprovablePrecondition,
)
from astpipe.pipeline.config import PASS_ORDER, PipelineConfig
