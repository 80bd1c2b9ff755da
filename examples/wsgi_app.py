#!/usr/bin/env python3
r"""
Serve a small WSGI application with out-of-band garbage collection.

    OOBGC_PATH_PATTERN='\A/expensive/' OOBGC_INTERVAL=5 python examples/wsgi_app.py
    curl localhost:8000/expensive/report

Set OOBGC_METRICS=1 OOBGC_WORKERS=1 OOBGC_LOG_DIR=./log to log object
counts per endpoint.
"""

import logging
from wsgiref.simple_server import make_server

from oobgc import OobGCConfig, wrap

logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)


def application(environ, start_response):
    """Allocate some garbage, more of it on /expensive/ paths."""
    path = environ.get("PATH_INFO", "/")
    size = 100_000 if path.startswith("/expensive/") else 1_000

    # Reference cycles only the cyclic collector can reclaim
    nodes = [{} for _ in range(size)]
    for a, b in zip(nodes, nodes[1:]):
        a["next"], b["prev"] = b, a

    controller, _, action = path.strip("/").partition("/")
    environ["wsgiorg.routing_args"] = ((), {"controller": controller, "action": action})

    start_response("200 OK", [("Content-Type", "text/plain")])
    return [f"allocated {size} nodes\n".encode()]


if __name__ == "__main__":
    config = OobGCConfig.from_environ()
    with make_server("", 8000, wrap(application, config, worker_id=1)) as server:
        logger.info(f"Serving on port 8000 with {config.to_dict()}")
        server.serve_forever()
