"""Per-request view handed to trigger policies and instrumentation."""

from typing import Any, Dict, Iterable, MutableMapping, Optional, Union

ROUTING_ARGS_KEY = "wsgiorg.routing_args"

WorkerSelector = Union[str, int, Iterable[Union[str, int]]]


class RequestContext:
    """Request path, worker identity and route parameters of one request."""

    def __init__(self,
                 path: str,
                 worker_id: Union[str, int],
                 environ: Optional[MutableMapping[str, Any]] = None):
        self._path = path
        self._worker_id = worker_id
        self.environ: MutableMapping[str, Any] = environ if environ is not None else {}
        self.route_params: Dict[str, Any] = {}

    @classmethod
    def from_environ(cls,
                     environ: MutableMapping[str, Any],
                     worker_id: Union[str, int]) -> 'RequestContext':
        return cls(environ.get("PATH_INFO") or "/", worker_id, environ)

    @property
    def path(self) -> str:
        return self._path

    @property
    def worker_id(self) -> Union[str, int]:
        return self._worker_id

    def load_route_params(self) -> Dict[str, Any]:
        """
        Copy route parameters the handler left in the environ.

        Reads the ``wsgiorg.routing_args`` ``(args, kwargs)`` tuple; anything
        missing or malformed leaves the parameters empty.
        """
        routing_args = self.environ.get(ROUTING_ARGS_KEY)
        params: Dict[str, Any] = {}
        if isinstance(routing_args, (tuple, list)) and len(routing_args) == 2:
            if isinstance(routing_args[1], dict):
                params = dict(routing_args[1])
        self.route_params = params
        return params

    def clear(self) -> None:
        """Drop references to the environ and route parameters."""
        self.environ.clear()
        self.route_params.clear()

    def __repr__(self) -> str:
        return f"RequestContext(path={self._path!r}, worker_id={self._worker_id!r})"


def worker_matches(selector: WorkerSelector, worker_id: Union[str, int]) -> bool:
    """Check whether a worker identity is picked by a selector."""
    if isinstance(selector, (str, int)):
        return str(selector) == str(worker_id)
    return str(worker_id) in {str(s) for s in selector}
