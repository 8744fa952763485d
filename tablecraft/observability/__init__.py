"""
Execution tracing for table rolls.

Records every evaluation step of a roll as a tree of typed nodes when
tracing is enabled for a call.
"""

from tablecraft.observability.trace import (
    TraceNodeType,
    TraceMetadata,
    TraceNode,
    TraceStats,
    RollTrace,
    TraceBuilder,
    compute_stats,
)

__all__ = [
    "TraceNodeType",
    "TraceMetadata",
    "TraceNode",
    "TraceStats",
    "RollTrace",
    "TraceBuilder",
    "compute_stats",
]
