"""
Garbage collection profiler with a plain-text report.

Records one row per completed collection through ``gc.callbacks``:

    GC 2 invokes.
    Index    Invoke Time(sec)    Use Size(byte)    Total Size(byte)    Total Object    GC Time(ms)
        1              0.0012          31457280          52428800          104857          1.2500
        2              0.5230          30408704          52428800           98304          1.1000
"""

import gc
import os
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import psutil

COLUMNS = [
    "Index",
    "Invoke Time(sec)",
    "Use Size(byte)",
    "Total Size(byte)",
    "Total Object",
    "GC Time(ms)",
]


@dataclass
class CollectionRecord:
    """One completed collection."""
    invoke_time: float
    use_size: int
    total_size: int
    total_objects: int
    gc_time_ms: float


class GCProfiler:
    """Profile collections run by the cyclic garbage collector."""

    def __init__(self,
                 max_records: int = 1000,
                 object_counter: Optional[Callable[[], int]] = None):
        self.max_records = max_records
        self.object_counter = object_counter or (lambda: len(gc.get_objects()))
        self.records: List[CollectionRecord] = []
        self.invokes = 0
        self._process: Optional[psutil.Process] = None
        self._enabled_at: Optional[float] = None
        self._gc_start: Optional[float] = None

    @property
    def enabled(self) -> bool:
        return self._callback in gc.callbacks

    def enable(self) -> None:
        if self.enabled:
            return
        self._enabled_at = time.perf_counter()
        gc.callbacks.append(self._callback)

    def disable(self) -> None:
        if self.enabled:
            gc.callbacks.remove(self._callback)

    def clear(self) -> None:
        self.records = []
        self.invokes = 0

    def _current_process(self) -> psutil.Process:
        # re-resolved after fork
        if self._process is None or self._process.pid != os.getpid():
            self._process = psutil.Process(os.getpid())
        return self._process

    def _callback(self, phase: str, info: Dict[str, int]) -> None:
        if phase == "start":
            self._gc_start = time.perf_counter()
            return

        now = time.perf_counter()
        started = self._gc_start if self._gc_start is not None else now
        self._gc_start = None

        mem = self._current_process().memory_info()
        self.invokes += 1
        self.records.append(CollectionRecord(
            invoke_time=started - (self._enabled_at or started),
            use_size=mem.rss,
            total_size=mem.vms,
            total_objects=self.object_counter(),
            gc_time_ms=(now - started) * 1000,
        ))
        if len(self.records) > self.max_records:
            self.records.pop(0)

    def result(self) -> str:
        """Return the text report, or an empty string when nothing ran."""
        if not self.records:
            return ""

        first_index = self.invokes - len(self.records) + 1
        lines = [
            f"GC {self.invokes} invokes.",
            "    ".join(COLUMNS),
        ]
        for index, r in enumerate(self.records, start=first_index):
            lines.append(
                f"{index:5d} {r.invoke_time:19.4f} {r.use_size:17d} "
                f"{r.total_size:19d} {r.total_objects:15d} {r.gc_time_ms:14.4f}"
            )
        return "\n".join(lines) + "\n"


def parse_profiler_report(report: str) -> Dict[str, str]:
    """
    Parse the most recent row of a profiler report into a dict.

    Column names come from the header line, values from the last line.
    ``"Invokes"`` holds the invocation count from the first line. An empty
    report gives an empty dict.
    """
    lines = [line for line in report.split("\n") if line.strip()]
    if not lines:
        return {}

    results: Dict[str, str] = {}
    invokes = re.search(r"\d+", lines[0])
    if invokes:
        results["Invokes"] = invokes.group(0)
    if len(lines) < 3:
        return results

    headers = re.split(r"\s{2,}", lines[1].strip())
    data = lines[-1].split()
    for header, value in zip(headers, data):
        results[header] = value
    return results
