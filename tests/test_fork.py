#!/usr/bin/env python3
"""
Tests for worker identity and memory readings across fork.

Pre-fork servers build the middleware in the master process and fork
workers from it; every value below must describe the child afterwards.
"""

import json
import os
import unittest

from oobgc import (
    GCProfiler,
    MemoryProbe,
    MemoryThresholdTrigger,
    OobGCMiddleware,
    RequestContext,
)


def run_in_child(func):
    """Run func in a forked child and return its JSON-encoded result."""
    read_fd, write_fd = os.pipe()
    pid = os.fork()
    if pid == 0:
        os.close(read_fd)
        status = 0
        try:
            payload = json.dumps({"pid": os.getpid(), "value": func()})
        except Exception as e:
            payload = json.dumps({"pid": os.getpid(), "error": repr(e)})
            status = 1
        with os.fdopen(write_fd, "w") as f:
            f.write(payload)
        os._exit(status)

    os.close(write_fd)
    with os.fdopen(read_fd) as f:
        payload = f.read()
    os.waitpid(pid, 0)
    return json.loads(payload)


def hello_app(environ, start_response):
    start_response("200 OK", [])
    return [b"hello"]


@unittest.skipUnless(hasattr(os, "fork"), "requires fork")
class TestAfterFork(unittest.TestCase):
    """Objects built before fork describe the child process."""

    def assertChildValue(self, result, expected_key="pid"):
        self.assertNotIn("error", result, result.get("error"))
        self.assertNotEqual(result["pid"], os.getpid())
        self.assertEqual(result["value"], result[expected_key])

    def test_memory_reader_follows_fork(self):
        reader = MemoryProbe()
        self.assertGreater(reader.read(), 0)

        def child():
            reader.read()
            return reader.pid

        self.assertChildValue(run_in_child(child))
        self.assertEqual(reader.pid, os.getpid())

    def test_memory_threshold_reads_child(self):
        reader = MemoryProbe()
        trigger = MemoryThresholdTrigger(1, 5, reader)
        context = RequestContext("/", worker_id=1)
        self.assertTrue(trigger.decide(context))

        def child():
            self.assertTrue(trigger.decide(context))
            return reader.pid

        self.assertChildValue(run_in_child(child))

    def test_middleware_worker_id_follows_fork(self):
        middleware = OobGCMiddleware(hello_app)
        self.assertEqual(middleware.worker_id, os.getpid())

        def child():
            result = middleware({"PATH_INFO": "/"}, lambda *args: None)
            try:
                return result.context.worker_id
            finally:
                result.close()

        self.assertChildValue(run_in_child(child))

    def test_explicit_worker_id_survives_fork(self):
        middleware = OobGCMiddleware(hello_app, worker_id=3)
        result = run_in_child(lambda: middleware.worker_id)
        self.assertEqual(result["value"], 3)

    def test_profiler_process_follows_fork(self):
        profiler = GCProfiler()
        self.assertEqual(profiler._current_process().pid, os.getpid())

        def child():
            return profiler._current_process().pid

        self.assertChildValue(run_in_child(child))
        self.assertEqual(profiler._current_process().pid, os.getpid())


if __name__ == "__main__":
    unittest.main()
