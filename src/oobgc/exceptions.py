"""Exception hierarchy for oobgc."""


class OobGCError(Exception):
    """Base for all oobgc errors."""


class ConfigurationError(OobGCError, ValueError):
    """Invalid policy or middleware configuration."""


class MemoryProbeError(OobGCError):
    """Resident memory of a process could not be read."""

    def __init__(self, pid: int, reason: str):
        super().__init__(f"cannot read memory of pid {pid}: {reason}")
        self.pid = pid
        self.reason = reason
