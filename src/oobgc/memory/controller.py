"""Control over the cyclic garbage collector."""

import gc
import time
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class ReclamationResult:
    """Outcome of one forced collection."""
    collected: int
    duration_ms: float


class ReclamationController:
    """Suspend, resume and force runs of the garbage collector."""

    def __init__(self, generation: int = 2):
        self.generation = generation
        self.runs = 0

    @property
    def suspended(self) -> bool:
        return not gc.isenabled()

    def suspend(self) -> None:
        """Disable automatic collection."""
        gc.disable()

    def resume(self) -> None:
        """Re-enable automatic collection."""
        gc.enable()

    def run(self) -> ReclamationResult:
        """
        Run a synchronous collection and leave the collector suspended.

        Returns:
            ReclamationResult with the number of unreachable objects found
        """
        self.resume()
        start = time.perf_counter()
        try:
            collected = gc.collect(self.generation)
        finally:
            self.suspend()
        duration_ms = (time.perf_counter() - start) * 1000

        self.runs += 1
        logger.debug(f"Collected {collected} objects in {duration_ms:.2f}ms")
        return ReclamationResult(collected=collected, duration_ms=duration_ms)
