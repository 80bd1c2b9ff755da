"""Collection profiling and per-endpoint leak finding."""

from oobgc.profiler.gc_profiler import (
    GCProfiler,
    CollectionRecord,
    parse_profiler_report,
)
from oobgc.profiler.collector import (
    MemoryLeakFinder,
    EndpointHistory,
    ProfilerSnapshot,
    UNKNOWN_ENDPOINT,
)

__all__ = [
    "GCProfiler",
    "CollectionRecord",
    "parse_profiler_report",
    "MemoryLeakFinder",
    "EndpointHistory",
    "ProfilerSnapshot",
    "UNKNOWN_ENDPOINT",
]
