"""Tree helpers, the rewrite framework and the rewrite passes."""

# Pass modules depend on astpipe.analysis, which imports compiler.tree;
# import them from their own modules (see pipeline.driver.PASS_REGISTRY).
from astpipe.compiler.rewrite import (
    RewriteLog, RewriteOutcome, RewritePass, RewriteRecord, RewriteStatus,
)
