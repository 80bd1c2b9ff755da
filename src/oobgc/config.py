"""
Configuration management for out-of-band garbage collection.
"""

import os
from typing import ClassVar, Mapping, Optional, Tuple
from dataclasses import dataclass

from oobgc.exceptions import ConfigurationError
from oobgc.triggers import (
    AlwaysTrigger,
    CompositePolicy,
    IntervalTrigger,
    MemoryThresholdTrigger,
    PathTrigger,
    TriggerPolicy,
)

ENV_PREFIX = "OOBGC_"


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class OobGCConfig:
    """Global configuration for out-of-band collection."""

    # Triggers
    interval: Optional[int] = 5  # Collect every 5 requests
    path_pattern: Optional[str] = None
    max_memory: Optional[int] = None  # bytes
    fallback_interval: int = 5

    # Instrumentation
    enable_metrics: bool = False
    worker_selector: Tuple[str, ...] = ("1", "2")
    log_dir: str = "/var/log/oobgc"
    worker_key: Optional[str] = None  # environ key naming the worker

    _instance: ClassVar[Optional["OobGCConfig"]] = None

    @classmethod
    def get_instance(cls) -> 'OobGCConfig':
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def set_defaults(cls, **kwargs) -> None:
        """Set default configuration values."""
        instance = cls.get_instance()
        for key, value in kwargs.items():
            if hasattr(instance, key):
                setattr(instance, key, value)

    @classmethod
    def reset(cls) -> None:
        """Forget the singleton instance."""
        cls._instance = None

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> 'OobGCConfig':
        """
        Build a configuration from ``OOBGC_*`` environment variables.

        Unset variables keep their defaults. An empty ``OOBGC_INTERVAL``
        drops the interval trigger; with no path pattern or memory limit
        either, the built policy collects after every request.
        """
        environ = os.environ if environ is None else environ
        kwargs: dict = {}

        def get(name: str) -> Optional[str]:
            return environ.get(ENV_PREFIX + name)

        try:
            if get("INTERVAL") is not None:
                kwargs["interval"] = int(get("INTERVAL")) if get("INTERVAL").strip() else None
            if get("PATH_PATTERN"):
                kwargs["path_pattern"] = get("PATH_PATTERN")
            if get("MAX_MEMORY"):
                kwargs["max_memory"] = int(get("MAX_MEMORY"))
            if get("FALLBACK_INTERVAL"):
                kwargs["fallback_interval"] = int(get("FALLBACK_INTERVAL"))
        except ValueError as e:
            raise ConfigurationError(f"invalid {ENV_PREFIX}* setting: {e}") from e

        if get("WORKERS"):
            kwargs["worker_selector"] = tuple(
                w.strip() for w in get("WORKERS").split(",") if w.strip()
            )
        if get("LOG_DIR"):
            kwargs["log_dir"] = get("LOG_DIR")
        if get("WORKER_KEY"):
            kwargs["worker_key"] = get("WORKER_KEY")
        if get("METRICS") is not None:
            kwargs["enable_metrics"] = _parse_bool(get("METRICS"))

        config = cls(**kwargs)
        config.validate()
        return config

    def validate(self) -> None:
        """Raise ConfigurationError on inconsistent settings."""
        for name in ("interval", "max_memory"):
            value = getattr(self, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value <= 0):
                raise ConfigurationError(f"{name} must be a positive integer or None, got {value!r}")
        if isinstance(self.fallback_interval, bool) or not isinstance(self.fallback_interval, int) \
                or self.fallback_interval <= 0:
            raise ConfigurationError(
                f"fallback_interval must be a positive integer, got {self.fallback_interval!r}"
            )
        if not self.worker_selector:
            raise ConfigurationError("worker_selector must name at least one worker")

    def build_policy(self) -> TriggerPolicy:
        """
        Build the trigger policy described by this configuration.

        The path condition comes first, followed by the memory threshold
        (which carries its own fallback interval) or the plain interval.
        Without any of them every request is followed by a collection.
        """
        self.validate()
        policies = []

        if self.path_pattern:
            policies.append(PathTrigger(self.path_pattern))

        if self.max_memory:
            policies.append(MemoryThresholdTrigger(self.max_memory, self.fallback_interval))
        elif self.interval:
            policies.append(IntervalTrigger(self.interval))

        if not policies:
            return AlwaysTrigger()
        if len(policies) == 1:
            return policies[0]
        return CompositePolicy(policies)

    def to_dict(self) -> dict:
        return {
            "interval": self.interval,
            "path_pattern": self.path_pattern,
            "max_memory": self.max_memory,
            "fallback_interval": self.fallback_interval,
            "enable_metrics": self.enable_metrics,
            "worker_selector": list(self.worker_selector),
            "log_dir": self.log_dir,
            "worker_key": self.worker_key,
        }
