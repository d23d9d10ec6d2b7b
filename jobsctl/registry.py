from typing import Any, Callable, Dict, Iterator

from .errors import InvalidJobType
from .models import JobType

Handler = Callable[[Dict[str, Any]], Any]


def _coerce_type(job_type) -> JobType:
    if isinstance(job_type, JobType):
        return job_type
    try:
        return JobType(job_type)
    except ValueError:
        raise InvalidJobType(job_type)


class HandlerRegistry:
    """Maps each JobType to the callable that performs it.

    Built once and handed to the scheduler; nothing here is module-level
    state, so tests can construct a registry of stubs.
    """

    def __init__(self, handlers: Dict[Any, Handler] = None):
        self._handlers: Dict[JobType, Handler] = {}
        for job_type, fn in (handlers or {}).items():
            self.register(job_type, fn)

    def register(self, job_type, fn: Handler) -> None:
        if not callable(fn):
            raise TypeError(f"Handler for {job_type} must be callable")
        self._handlers[_coerce_type(job_type)] = fn

    def get(self, job_type) -> Handler:
        jt = _coerce_type(job_type)
        try:
            return self._handlers[jt]
        except KeyError:
            raise InvalidJobType(job_type)

    def require(self, job_type) -> JobType:
        """Validate that `job_type` is known and has a handler; return it as a JobType."""
        jt = _coerce_type(job_type)
        if jt not in self._handlers:
            raise InvalidJobType(job_type)
        return jt

    def __contains__(self, job_type) -> bool:
        try:
            return _coerce_type(job_type) in self._handlers
        except InvalidJobType:
            return False

    def __iter__(self) -> Iterator[JobType]:
        return iter(self._handlers)
