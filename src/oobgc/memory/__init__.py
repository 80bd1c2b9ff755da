"""Memory measurement and garbage collector control."""

from oobgc.memory.probe import MemoryProbe
from oobgc.memory.controller import ReclamationController, ReclamationResult

__all__ = [
    "MemoryProbe",
    "ReclamationController",
    "ReclamationResult",
]
