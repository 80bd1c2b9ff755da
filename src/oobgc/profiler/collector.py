"""
Memory leak finder: per-endpoint instrumentation of out-of-band collections.

Counts live objects before the request, after the handler and after the
collection, and keeps the post-collection delta per endpoint. Only the
selected workers are instrumented; the others pass requests straight
through.
"""

import gc
import os
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

import numpy as np

from oobgc.context import RequestContext, WorkerSelector, worker_matches
from oobgc.memory.controller import ReclamationController, ReclamationResult
from oobgc.middleware import OobGCMiddleware, WSGIApp
from oobgc.profiler.gc_profiler import GCProfiler, parse_profiler_report
from oobgc.triggers import TriggerPolicy

logger = logging.getLogger(__name__)

UNKNOWN_ENDPOINT = "<unknown>"

LOG_FIELDS = [
    "request_path",
    "controller",
    "action",
    "delta_objects",
    "objects_before_request",
    "objects_after_request",
    "objects_after_gc",
    "invokes",
    "before_use_bytes",
    "after_use_bytes",
    "before_total_bytes",
    "after_total_bytes",
    "before_total_objects",
    "after_total_objects",
    "after_gc_ms",
]


def _to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def _to_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


@dataclass
class ProfilerSnapshot:
    """Most recent profiler figures at one point of the request."""
    invokes: Optional[int] = None
    use_size: Optional[int] = None
    total_size: Optional[int] = None
    total_objects: Optional[int] = None
    gc_time_ms: Optional[float] = None

    @classmethod
    def from_report(cls, report: str) -> 'ProfilerSnapshot':
        results = parse_profiler_report(report)
        return cls(
            invokes=_to_int(results.get("Invokes")),
            use_size=_to_int(results.get("Use Size(byte)")),
            total_size=_to_int(results.get("Total Size(byte)")),
            total_objects=_to_int(results.get("Total Object")),
            gc_time_ms=_to_float(results.get("GC Time(ms)")),
        )

    @property
    def empty(self) -> bool:
        return all(v is None for v in (self.invokes, self.use_size, self.total_size,
                                       self.total_objects, self.gc_time_ms))


class EndpointHistory:
    """Object count deltas recorded per endpoint."""

    def __init__(self):
        self._samples: Dict[str, List[int]] = defaultdict(list)

    def record(self, endpoint: str, delta: int) -> None:
        self._samples[endpoint].append(delta)

    def __getitem__(self, endpoint: str) -> List[int]:
        return list(self._samples.get(endpoint, []))

    def __contains__(self, endpoint: str) -> bool:
        return endpoint in self._samples

    def __len__(self) -> int:
        return len(self._samples)

    def endpoints(self) -> List[str]:
        return list(self._samples)

    def summary(self, endpoint: str) -> Dict[str, float]:
        """Count, mean, spread and 95th percentile of an endpoint's deltas."""
        samples = self._samples.get(endpoint)
        if not samples:
            return {"count": 0, "mean": 0.0, "std": 0.0, "min": 0, "max": 0, "p95": 0.0}

        values = np.asarray(samples)
        return {
            "count": len(samples),
            "mean": float(np.mean(values)),
            "std": float(np.std(values)),
            "min": int(np.min(values)),
            "max": int(np.max(values)),
            "p95": float(np.percentile(values, 95)),
        }

    def suspects(self, min_samples: int = 5, min_mean: float = 0.0) -> List[str]:
        """Endpoints whose objects keep surviving collection, worst first."""
        ranked = []
        for endpoint, samples in self._samples.items():
            if len(samples) < min_samples:
                continue
            mean = float(np.mean(samples))
            if mean > min_mean:
                ranked.append((mean, endpoint))
        return [endpoint for _, endpoint in sorted(ranked, reverse=True)]


class MemoryLeakFinder(OobGCMiddleware):
    """Out-of-band GC middleware logging per-endpoint collection figures."""

    def __init__(self,
                 app: WSGIApp,
                 worker_selector: WorkerSelector = ("1", "2"),
                 policy: Optional[TriggerPolicy] = None,
                 log_dir: str = "/var/log/oobgc",
                 controller: Optional[ReclamationController] = None,
                 worker_id: Optional[Union[str, int]] = None,
                 worker_key: Optional[str] = None,
                 profiler: Optional[GCProfiler] = None,
                 object_counter: Optional[Callable[[], int]] = None):
        """
        Initialize memory leak finder.

        Args:
            app: Wrapped WSGI application
            worker_selector: Worker id, or ids, to instrument
            policy: Trigger policy (None to collect after every request)
            log_dir: Directory of the per-worker diagnostic log
            controller: Garbage collector control
            worker_id: Identity of this worker (None to resolve it per request)
            worker_key: Environ key holding the worker identity
            profiler: Collection profiler
            object_counter: Callable returning the number of live objects
        """
        super().__init__(app, policy=policy, controller=controller,
                         worker_id=worker_id, worker_key=worker_key)
        self.worker_selector = worker_selector
        self.log_dir = log_dir
        self.profiler = profiler or GCProfiler()
        self.object_counter = object_counter or (lambda: len(gc.get_objects()))
        self.history = EndpointHistory()

        self._log: Optional[logging.Logger] = None
        self._log_path: Optional[str] = None
        self._handler: Optional[logging.Handler] = None
        self._failed_paths = set()
        self._reset_request()

    @classmethod
    def from_config(cls, app: WSGIApp, config=None, **kwargs) -> 'MemoryLeakFinder':
        from oobgc.config import OobGCConfig

        config = config or OobGCConfig.get_instance()
        kwargs.setdefault("worker_selector", config.worker_selector)
        kwargs.setdefault("log_dir", config.log_dir)
        return super().from_config(app, config, **kwargs)

    @property
    def active(self) -> bool:
        """Whether the current worker is instrumented."""
        return worker_matches(self.worker_selector, self.worker_id)

    @property
    def log_path(self) -> str:
        """Path of the open log, or of the log the current worker would open."""
        return self._log_path or self.log_path_for(self.worker_id)

    def log_path_for(self, worker_id: Union[str, int]) -> str:
        return os.path.join(self.log_dir, f"memory_leak.{worker_id}.log")

    def _reset_request(self) -> None:
        self.request_path: Optional[str] = None
        self.route_params: Dict[str, Any] = {}
        self.objects_before_request: Optional[int] = None
        self.objects_after_request: Optional[int] = None
        self.profiler_before_request = ProfilerSnapshot()

    def __call__(self, environ: dict, start_response: Callable):
        if not worker_matches(self.worker_selector, self.resolve_worker_id(environ)):
            return self.app(environ, start_response)
        return super().__call__(environ, start_response)

    def before_request(self, context: RequestContext) -> None:
        super().before_request(context)
        self._reset_request()
        try:
            self.profiler.enable()
            self._open_log(context.worker_id)
            self.request_path = context.path
            self.objects_before_request = self.object_counter()
            self.profiler_before_request = ProfilerSnapshot.from_report(self.profiler.result())
        except Exception:
            logger.exception("Leak finder failed before request")

    def after_request(self, context: RequestContext) -> None:
        super().after_request(context)
        try:
            self.objects_after_request = self.object_counter()
            self.route_params = dict(context.load_route_params())
        except Exception:
            logger.exception("Leak finder failed after request")

    @property
    def controller_name(self) -> str:
        return str(self.route_params.get("controller") or "")

    @property
    def action_name(self) -> str:
        return str(self.route_params.get("action") or "")

    @property
    def endpoint(self) -> str:
        """Controller and action of the last request, or its endpoint name."""
        name = f"{self.controller_name} {self.action_name}".strip()
        if name:
            return name
        return str(self.route_params.get("endpoint") or UNKNOWN_ENDPOINT)

    def after_reclaim(self, context: RequestContext, result: ReclamationResult) -> None:
        objects_after_gc = self.object_counter()
        profiler_after_gc = ProfilerSnapshot.from_report(self.profiler.result())

        if self.objects_before_request is None:
            logger.debug(f"No object count taken before {self.request_path}; skipping")
            return

        delta = objects_after_gc - self.objects_before_request
        self.history.record(self.endpoint, delta)

        gc_ms = profiler_after_gc.gc_time_ms
        if gc_ms is None:
            gc_ms = result.duration_ms

        self._write([
            self.request_path,
            self.controller_name,
            self.action_name,
            delta,
            self.objects_before_request,
            self.objects_after_request,
            objects_after_gc,
            profiler_after_gc.invokes,
            self.profiler_before_request.use_size,
            profiler_after_gc.use_size,
            self.profiler_before_request.total_size,
            profiler_after_gc.total_size,
            self.profiler_before_request.total_objects,
            profiler_after_gc.total_objects,
            int(gc_ms),
        ])

    def _open_log(self, worker_id: Optional[Union[str, int]] = None) -> Optional[logging.Logger]:
        """Open the log of a worker, reusing it while the worker stays the same."""
        if worker_id is None and self._log_path is not None:
            path = self._log_path
        else:
            if worker_id is None:
                worker_id = self.worker_id
            path = os.path.abspath(self.log_path_for(worker_id))
        if self._log is not None and self._log_path == path and self._log.handlers:
            return self._log
        if path in self._failed_paths:
            return None
        self.close_log()

        # one logger per file, shared by every finder writing to it
        log = logging.getLogger(f"oobgc.leaks:{path}")
        log.setLevel(logging.INFO)
        log.propagate = False

        if not any(getattr(h, "baseFilename", None) == path for h in log.handlers):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
                handler = logging.FileHandler(path)
            except OSError as e:
                self._failed_paths.add(path)
                logger.warning(f"Leak finder log disabled, cannot open {path}: {e}")
                return None

            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
            log.addHandler(handler)
            log.info(", " + ", ".join(LOG_FIELDS))
            self._handler = handler

        self._log = log
        self._log_path = path
        return log

    def _write(self, values: List[Any]) -> None:
        line = ", " + ", ".join("" if v is None else str(v) for v in values)
        log = self._open_log()
        if log is None:
            logger.debug(f"Leak finder record{line}")
            return
        log.info(line)

    def close_log(self) -> None:
        """Close the diagnostic log file opened by this finder."""
        if self._handler is not None and self._log is not None:
            self._handler.close()
            self._log.removeHandler(self._handler)
        self._handler = None
        self._log = None
        self._log_path = None
