"""
WSGI middleware running garbage collection out of band.

The collector is disabled while a request is handled. A full collection
runs from the response iterable's ``close()``, which WSGI servers call
after the body has been written to the client and before the worker
accepts another connection, so the client never waits for it.

This only helps applications that allocate heavily per request, and it
assumes one request in flight per process. Hosts that multiplex several
requests on one process (threads, keep-alive pipelining) must serialise
the whole request cycle themselves, since the collector switch is global.
"""

import os
import logging
from typing import Callable, Iterable, Iterator, Optional, Union

from oobgc.context import RequestContext
from oobgc.memory.controller import ReclamationController, ReclamationResult
from oobgc.triggers import AlwaysTrigger, TriggerPolicy

logger = logging.getLogger(__name__)

WSGIApp = Callable[..., Iterable[bytes]]


class ResponseBody:
    """Response iterable handing control back to the middleware on close."""

    def __init__(self,
                 body: Iterable[bytes],
                 middleware: 'OobGCMiddleware',
                 context: RequestContext):
        self.body = body
        self.middleware = middleware
        self.context = context
        self._closed = False

    def __iter__(self) -> Iterator[bytes]:
        return iter(self.body)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        try:
            close = getattr(self.body, "close", None)
            if close is not None:
                close()
        finally:
            self.middleware.finish_request(self)

    def release(self) -> None:
        """Drop references kept alive for the duration of the response."""
        self.body = None
        self.context.clear()


class OobGCMiddleware:
    """Run a full collection after the response, when the policy asks."""

    def __init__(self,
                 app: WSGIApp,
                 policy: Optional[TriggerPolicy] = None,
                 controller: Optional[ReclamationController] = None,
                 worker_id: Optional[Union[str, int]] = None,
                 worker_key: Optional[str] = None):
        """
        Initialize out-of-band GC middleware.

        Args:
            app: Wrapped WSGI application
            policy: Trigger policy (None to collect after every request)
            controller: Garbage collector control
            worker_id: Identity of this worker (None to resolve it per request)
            worker_key: Environ key holding the worker identity, set by the
                server for each request; the process id is used without it
        """
        self.app = app
        self.policy = policy or AlwaysTrigger()
        self.controller = controller or ReclamationController()
        self._worker_id = worker_id
        self.worker_key = worker_key

    @property
    def worker_id(self) -> Union[str, int]:
        """Configured worker identity, or the id of the current process."""
        return self._worker_id if self._worker_id is not None else os.getpid()

    def resolve_worker_id(self, environ: dict) -> Union[str, int]:
        """Worker identity for one request."""
        if self._worker_id is None and self.worker_key and environ.get(self.worker_key) is not None:
            return environ[self.worker_key]
        return self.worker_id

    @classmethod
    def from_config(cls, app: WSGIApp, config=None, **kwargs) -> 'OobGCMiddleware':
        """Build the middleware with the policy described by a configuration."""
        from oobgc.config import OobGCConfig

        config = config or OobGCConfig.get_instance()
        logger.debug(f"Configuring {cls.__name__} with {config.to_dict()}")
        kwargs.setdefault("worker_key", config.worker_key)
        return cls(app, policy=config.build_policy(), **kwargs)

    def __call__(self, environ: dict, start_response: Callable) -> Iterable[bytes]:
        context = RequestContext.from_environ(environ, self.resolve_worker_id(environ))

        self.before_request(context)
        body = self.app(environ, start_response)
        self.after_request(context)

        return ResponseBody(body, self, context)

    def before_request(self, context: RequestContext) -> None:
        """Suspend the collector while the request is handled."""
        self.controller.suspend()

    def after_request(self, context: RequestContext) -> None:
        """Hook called once the application has returned its response."""
        pass

    def after_reclaim(self, context: RequestContext, result: ReclamationResult) -> None:
        """Hook called after a collection ran."""
        pass

    def finish_request(self, response: ResponseBody) -> None:
        """Decide on and run the collection once the body was closed."""
        context = response.context
        try:
            if not self.policy.decide(context):
                return

            response.release()
            result = self.controller.run()
            self.policy.after_reclaim(context)
            self.after_reclaim(context, result)
        except Exception:
            logger.exception(f"Out-of-band collection failed for {context.path}")


def wrap(app: WSGIApp, config=None, **kwargs) -> OobGCMiddleware:
    """
    Wrap a WSGI application as described by a configuration.

    Uses the memory leak finder when metrics are enabled, the plain
    out-of-band GC middleware otherwise.
    """
    from oobgc.config import OobGCConfig
    from oobgc.profiler.collector import MemoryLeakFinder

    config = config or OobGCConfig.get_instance()
    middleware_class = MemoryLeakFinder if config.enable_metrics else OobGCMiddleware
    return middleware_class.from_config(app, config, **kwargs)
