#!/usr/bin/env python3
"""
Tests for MemoryLeakFinder instrumentation.
"""

import os
import shutil
import tempfile
import unittest
from unittest import mock

from oobgc import (
    EndpointHistory,
    GCProfiler,
    IntervalTrigger,
    MemoryLeakFinder,
    OobGCConfig,
    ReclamationController,
    ReclamationResult,
)
from oobgc.profiler import UNKNOWN_ENDPOINT


class RecordingController(ReclamationController):
    """Controller that never touches the collector."""

    def suspend(self):
        pass

    def resume(self):
        pass

    def run(self):
        self.runs += 1
        return ReclamationResult(collected=0, duration_ms=3.7)


def routed_app(controller, action):
    def app(environ, start_response):
        environ["wsgiorg.routing_args"] = ((), {"controller": controller, "action": action})
        start_response("200 OK", [])
        return [b"ok"]
    return app


def plain_app(environ, start_response):
    start_response("200 OK", [])
    return [b"ok"]


def serve(app, path="/"):
    result = app({"PATH_INFO": path}, lambda *args: None)
    try:
        return b"".join(result)
    finally:
        if hasattr(result, "close"):
            result.close()


class TestMemoryLeakFinder(unittest.TestCase):
    """Test per-endpoint instrumentation."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.profiler = mock.MagicMock(spec=GCProfiler)
        self.profiler.result.return_value = ""
        self.finders = []

    def tearDown(self):
        for finder in self.finders:
            finder.close_log()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make(self, app, counts=None, **kwargs):
        kwargs.setdefault("worker_selector", "1")
        kwargs.setdefault("worker_id", 1)
        kwargs.setdefault("log_dir", self.temp_dir)
        counter = iter(counts or [])
        finder = MemoryLeakFinder(
            app,
            controller=RecordingController(),
            profiler=self.profiler,
            object_counter=lambda: next(counter),
            **kwargs
        )
        self.finders.append(finder)
        return finder

    def read_log(self, finder):
        with open(finder.log_path) as f:
            return f.read().splitlines()

    def test_records_delta_against_count_before_request(self):
        finder = self.make(routed_app("reports", "show"), counts=[1000, 1200, 900])
        self.assertEqual(serve(finder, "/reports/1"), b"ok")

        self.assertEqual(finder.history["reports show"], [-100])
        self.assertEqual(finder.objects_before_request, 1000)
        self.assertEqual(finder.objects_after_request, 1200)

        lines = self.read_log(finder)
        self.assertEqual(len(lines), 2)
        self.assertIn(", request_path, controller, action, delta_objects", lines[0])
        self.assertTrue(lines[1].endswith(
            ", /reports/1, reports, show, -100, 1000, 1200, 900, , , , , , , , 3"
        ), lines[1])

    def test_profiler_figures_are_logged(self):
        before = ("GC 1 invokes.\n"
                  "Index    Invoke Time(sec)    Use Size(byte)    Total Size(byte)    Total Object    GC Time(ms)\n"
                  "    1    0.1    100    200    10    1.0\n")
        after = ("GC 2 invokes.\n"
                 "Index    Invoke Time(sec)    Use Size(byte)    Total Size(byte)    Total Object    GC Time(ms)\n"
                 "    1    0.1    100    200    10    1.0\n"
                 "    2    0.5    90    210    8    12.9\n")
        self.profiler.result.side_effect = [before, after]

        finder = self.make(routed_app("users", "index"), counts=[10, 20, 15])
        serve(finder, "/users")

        self.assertTrue(self.read_log(finder)[1].endswith(
            ", /users, users, index, 5, 10, 20, 15, 2, 100, 90, 200, 210, 10, 8, 12"
        ))
        self.profiler.enable.assert_called_once_with()

    def test_missing_route_parameters(self):
        finder = self.make(plain_app, counts=[5, 6, 7])
        serve(finder, "/health")
        self.assertEqual(finder.history[UNKNOWN_ENDPOINT], [2])
        self.assertIn(", /health, , , 2, 5, 6, 7", self.read_log(finder)[1])

    def test_endpoint_name_from_route(self):
        def app(environ, start_response):
            environ["wsgiorg.routing_args"] = ((), {"endpoint": "api.items"})
            start_response("200 OK", [])
            return [b"ok"]

        finder = self.make(app, counts=[1, 1, 1])
        serve(finder)
        self.assertEqual(finder.history["api.items"], [0])

    def test_history_accumulates_per_endpoint(self):
        finder = self.make(routed_app("a", "b"), counts=[10, 0, 12, 12, 0, 15])
        serve(finder)
        serve(finder)
        self.assertEqual(finder.history["a b"], [2, 3])
        self.assertEqual(finder.history.endpoints(), ["a b"])

    def test_no_record_when_policy_declines(self):
        finder = self.make(routed_app("a", "b"), counts=[1, 2, 3, 4, 5],
                           policy=IntervalTrigger(2))
        serve(finder)
        self.assertNotIn("a b", finder.history)
        serve(finder)
        self.assertEqual(finder.history["a b"], [2])

    def test_inactive_worker_passes_through(self):
        finder = self.make(plain_app, worker_selector=("1", "2"), worker_id=3)
        self.assertFalse(finder.active)
        result = finder({"PATH_INFO": "/"}, lambda *args: None)
        self.assertEqual(result, [b"ok"])
        self.assertEqual(finder.controller.runs, 0)
        self.profiler.enable.assert_not_called()
        self.assertFalse(os.path.exists(finder.log_path))

    def test_unwritable_log_dir(self):
        blocker = os.path.join(self.temp_dir, "file")
        with open(blocker, "w") as f:
            f.write("x")

        finder = self.make(routed_app("a", "b"), counts=[1, 2, 3, 4, 5, 6],
                           log_dir=os.path.join(blocker, "logs"))
        with self.assertLogs("oobgc.profiler.collector", level="WARNING"):
            self.assertEqual(serve(finder), b"ok")
        self.assertEqual(serve(finder), b"ok")
        self.assertEqual(finder.history["a b"], [2, 2])

    def test_counter_failure_does_not_fail_request(self):
        def broken():
            raise RuntimeError("counter broken")

        finder = MemoryLeakFinder(plain_app, worker_selector="1", worker_id=1,
                                  log_dir=self.temp_dir, controller=RecordingController(),
                                  profiler=self.profiler, object_counter=broken)
        self.finders.append(finder)
        with self.assertLogs("oobgc", level="ERROR"):
            self.assertEqual(serve(finder), b"ok")
        self.assertEqual(len(finder.history), 0)

    def test_from_config(self):
        config = OobGCConfig(worker_selector=("7",), log_dir=self.temp_dir, interval=None)
        finder = MemoryLeakFinder.from_config(plain_app, config, worker_id=7,
                                              controller=RecordingController(),
                                              profiler=self.profiler)
        self.finders.append(finder)
        self.assertTrue(finder.active)
        self.assertEqual(finder.log_dir, self.temp_dir)
        self.assertEqual(finder.log_path, os.path.join(self.temp_dir, "memory_leak.7.log"))

    def test_finders_with_same_worker_keep_separate_logs(self):
        other_dir = os.path.join(self.temp_dir, "other")
        first = self.make(routed_app("a", "b"), counts=[1, 2, 3])
        second = self.make(routed_app("c", "d"), counts=[4, 5, 6], log_dir=other_dir)
        serve(first)
        serve(second)

        first_lines = self.read_log(first)
        second_lines = self.read_log(second)
        self.assertEqual(len(first_lines), 2)
        self.assertEqual(len(second_lines), 2)
        self.assertIn(", /, a, b, 2", first_lines[1])
        self.assertIn(", /, c, d, 2", second_lines[1])

    def test_finders_sharing_a_log_write_one_header(self):
        first = self.make(routed_app("a", "b"), counts=[1, 2, 3])
        second = self.make(routed_app("c", "d"), counts=[4, 5, 6])
        serve(first)
        serve(second)

        self.assertEqual(first.log_path, second.log_path)
        lines = self.read_log(first)
        self.assertEqual(len(lines), 3)
        self.assertEqual(sum(", request_path," in line for line in lines), 1)

    def test_worker_from_environ_key(self):
        finder = self.make(plain_app, counts=[1, 2, 3], worker_selector="2",
                           worker_id=None, worker_key="server.worker")
        result = finder({"PATH_INFO": "/", "server.worker": "2"}, lambda *args: None)
        result.close()

        self.assertEqual(result.context.worker_id, "2")
        self.assertEqual(finder.controller.runs, 1)
        self.assertEqual(finder.log_path,
                         os.path.abspath(os.path.join(self.temp_dir, "memory_leak.2.log")))
        self.assertEqual(len(self.read_log(finder)), 2)

    def test_environ_key_selects_inactive_worker(self):
        finder = self.make(plain_app, worker_selector="2", worker_id=None,
                           worker_key="server.worker")
        result = finder({"PATH_INFO": "/", "server.worker": "5"}, lambda *args: None)
        self.assertEqual(result, [b"ok"])
        self.assertEqual(finder.controller.runs, 0)
        self.assertFalse(os.path.exists(finder.log_path_for("5")))


class TestEndpointHistory(unittest.TestCase):
    """Test EndpointHistory summaries."""

    def test_summary(self):
        history = EndpointHistory()
        for delta in (10, 20, 30, 40):
            history.record("a b", delta)
        summary = history.summary("a b")
        self.assertEqual(summary["count"], 4)
        self.assertAlmostEqual(summary["mean"], 25.0)
        self.assertEqual(summary["min"], 10)
        self.assertEqual(summary["max"], 40)
        self.assertGreater(summary["p95"], 35)

    def test_summary_of_unknown_endpoint(self):
        self.assertEqual(EndpointHistory().summary("x")["count"], 0)

    def test_suspects_ranked_by_mean(self):
        history = EndpointHistory()
        for _ in range(5):
            history.record("leaky", 100)
            history.record("slow_leak", 3)
            history.record("clean", -5)
        history.record("rare", 1000)
        self.assertEqual(history.suspects(min_samples=5), ["leaky", "slow_leak"])

    def test_returns_copies(self):
        history = EndpointHistory()
        history.record("a", 1)
        history["a"].append(2)
        self.assertEqual(history["a"], [1])


if __name__ == "__main__":
    unittest.main()
