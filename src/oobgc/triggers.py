"""
Trigger policies deciding whether a request is followed by a collection.

Policies are evaluated once per request, after the response was produced.
Conditions can be combined with CompositePolicy; by convention they are
listed from most restrictive to least restrictive.
"""

import re
import logging
from abc import ABC, abstractmethod
from typing import Optional, Pattern, Sequence, Union

from oobgc.context import RequestContext
from oobgc.exceptions import ConfigurationError, MemoryProbeError
from oobgc.memory.probe import MemoryProbe

logger = logging.getLogger(__name__)


def _positive_int(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
    return value


class TriggerPolicy(ABC):
    """Abstract base class for trigger policies."""

    @abstractmethod
    def decide(self, context: RequestContext) -> bool:
        """Decide whether a collection should run after this request."""
        pass

    def after_reclaim(self, context: RequestContext) -> None:
        """Observe a collection that has just run."""
        pass


class AlwaysTrigger(TriggerPolicy):
    """Collect after every request."""

    def decide(self, context: RequestContext) -> bool:
        return True

    def __repr__(self) -> str:
        return "AlwaysTrigger()"


class IntervalTrigger(TriggerPolicy):
    """Collect once every ``interval`` requests."""

    def __init__(self, interval: int):
        self.interval = _positive_int("interval", interval)
        self.countdown = self.interval

    def decide(self, context: RequestContext) -> bool:
        self.countdown -= 1
        if self.countdown > 0:
            return False

        self.countdown = self.interval
        return True

    def __repr__(self) -> str:
        return f"IntervalTrigger(interval={self.interval}, countdown={self.countdown})"


class PathTrigger(TriggerPolicy):
    """Collect after requests whose path matches a regular expression."""

    def __init__(self, pattern: Union[str, Pattern[str]]):
        if isinstance(pattern, str):
            try:
                pattern = re.compile(pattern)
            except re.error as e:
                raise ConfigurationError(f"invalid path pattern {pattern!r}: {e}") from e
        self.pattern = pattern

    def decide(self, context: RequestContext) -> bool:
        return self.pattern.search(context.path or "") is not None

    def __repr__(self) -> str:
        return f"PathTrigger(pattern={self.pattern.pattern!r})"


class MemoryThresholdTrigger(TriggerPolicy):
    """
    Collect whenever resident memory exceeds a maximum.

    Falls back to an interval cadence when memory cannot be read, and for
    good once a collection fails to bring memory back under the maximum.
    """

    def __init__(self,
                 max_memory: int,
                 fallback_interval: int = 5,
                 probe: Optional[MemoryProbe] = None):
        """
        Initialize memory threshold trigger.

        Args:
            max_memory: Resident memory in bytes above which to collect
            fallback_interval: Requests between collections once the
                threshold strategy stops being effective
            probe: Memory probe (None for the current process)
        """
        self.max_memory = _positive_int("max_memory", max_memory)
        self.fallback = IntervalTrigger(fallback_interval)
        self.probe = probe or MemoryProbe()
        self.successful = True

    def decide(self, context: RequestContext) -> bool:
        if self.successful:
            try:
                if self.probe.read() > self.max_memory:
                    return True
            except MemoryProbeError as e:
                logger.debug(f"Memory probe failed, using fallback interval: {e}")

        return self.fallback.decide(context)

    def after_reclaim(self, context: RequestContext) -> None:
        if not self.successful:
            return

        try:
            usage = self.probe.read()
        except MemoryProbeError as e:
            logger.debug(f"Memory probe failed after collection: {e}")
            return

        self.successful = usage < self.max_memory
        if not self.successful:
            logger.warning(
                f"Memory still at {usage} bytes after collection "
                f"(max {self.max_memory}); switching to one collection "
                f"every {self.fallback.interval} requests"
            )

    def __repr__(self) -> str:
        return (f"MemoryThresholdTrigger(max_memory={self.max_memory}, "
                f"fallback_interval={self.fallback.interval}, "
                f"successful={self.successful})")


class CompositePolicy(TriggerPolicy):
    """
    Collect when any child policy asks for it.

    Every child is evaluated on every request so that stateful children
    advance exactly once per call.
    """

    def __init__(self, policies: Sequence[TriggerPolicy]):
        if not policies:
            raise ConfigurationError("CompositePolicy needs at least one policy")
        self.policies = tuple(policies)

    def decide(self, context: RequestContext) -> bool:
        results = [policy.decide(context) for policy in self.policies]
        return any(results)

    def after_reclaim(self, context: RequestContext) -> None:
        for policy in self.policies:
            policy.after_reclaim(context)

    def __repr__(self) -> str:
        return f"CompositePolicy({list(self.policies)!r})"
