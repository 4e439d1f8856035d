"""Read-only analyses that build the Fact Base."""

from astpipe.analysis.facts import Binding, Bounds, Fact, FactBase, FactKind
from astpipe.analysis.analyzer import Analyzer
from astpipe.analysis.purity_analyzer import PurityLevel, PurityReport
from astpipe.analysis.range_inference import LoopAnalysis
