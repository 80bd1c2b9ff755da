"""
oobgc: out-of-band garbage collection for WSGI workers.

Disables the cyclic garbage collector while a request is handled and runs
it after the response has been sent, when a trigger policy asks for it.
"""

from oobgc.config import OobGCConfig
from oobgc.context import RequestContext, worker_matches
from oobgc.exceptions import ConfigurationError, MemoryProbeError, OobGCError
from oobgc.memory import MemoryProbe, ReclamationController, ReclamationResult
from oobgc.middleware import OobGCMiddleware, ResponseBody, wrap
from oobgc.profiler import EndpointHistory, GCProfiler, MemoryLeakFinder, ProfilerSnapshot
from oobgc.triggers import (
    AlwaysTrigger,
    CompositePolicy,
    IntervalTrigger,
    MemoryThresholdTrigger,
    PathTrigger,
    TriggerPolicy,
)

__version__ = "0.1.0"
__license__ = "Apache-2.0"

__all__ = [
    "OobGCConfig",
    "RequestContext",
    "worker_matches",
    "OobGCError",
    "ConfigurationError",
    "MemoryProbeError",
    "MemoryProbe",
    "ReclamationController",
    "ReclamationResult",
    "OobGCMiddleware",
    "ResponseBody",
    "wrap",
    "MemoryLeakFinder",
    "EndpointHistory",
    "GCProfiler",
    "ProfilerSnapshot",
    "TriggerPolicy",
    "AlwaysTrigger",
    "IntervalTrigger",
    "PathTrigger",
    "MemoryThresholdTrigger",
    "CompositePolicy",
]
