"""Request correlation and timing for aggregation calls.

Each service operation sets a request id in a context variable; every log
line written while handling it is prefixed with ``[<id>] `` via
``log_prefix()``. The id is also returned to callers in response metadata.
"""

import contextvars
import functools
import inspect
import logging
import time
import uuid

logger = logging.getLogger(__name__)

_request_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    "request_id", default=""
)


def new_request_id(prefix: str = "") -> str:
    """Generate a request id (``<prefix>-<12 hex>``) and make it current."""
    rid = uuid.uuid4().hex[:12]
    if prefix:
        rid = f"{prefix}-{rid}"
    _request_id.set(rid)
    return rid


def get_request_id() -> str:
    """Current request id, empty string outside a request."""
    return _request_id.get()


def log_prefix() -> str:
    rid = _request_id.get()
    return f"[{rid}] " if rid else ""


class Stopwatch:
    """Wall-clock time since construction, for ``responseTimeMs``."""

    def __init__(self):
        self._start = time.perf_counter()

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._start) * 1000)


def timed(func=None, *, level=logging.DEBUG):
    """Log how long a sync or async callable took.

    Usage:
        @timed(level=logging.INFO)
        async def aggregate(self, request): ...

    Logs: [req_id] module.function took Xms
    """
    def decorator(fn):
        name = f"{fn.__module__}.{fn.__qualname__}"

        def _log(watch: Stopwatch):
            logger.log(level, f"{log_prefix()}{name} took {watch.elapsed_ms}ms")

        if inspect.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def async_wrapper(*args, **kwargs):
                watch = Stopwatch()
                try:
                    return await fn(*args, **kwargs)
                finally:
                    _log(watch)
            return async_wrapper

        @functools.wraps(fn)
        def sync_wrapper(*args, **kwargs):
            watch = Stopwatch()
            try:
                return fn(*args, **kwargs)
            finally:
                _log(watch)
        return sync_wrapper

    if func is not None:
        return decorator(func)
    return decorator
