"""Request-scoped context threaded through the auth operations.

A ``RequestContext`` carries a deadline and a cancellation signal. Operations
call ``check()`` before they start a state transition; once a transition has
begun it runs to completion, so cancellation can never leave a refresh chain
half-rotated.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field

from .errors import RequestCancelled


@dataclass(slots=True)
class RequestContext:
    """Deadline plus cancellation signal for one request.

    Attributes:
        deadline: Unix timestamp after which the request is abandoned, or None.
        ip_address: Client address, recorded on login attempts.
        user_agent: Client user agent, recorded on login attempts.
    """

    deadline: float | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    @classmethod
    def with_timeout(cls, seconds: float, **kwargs: str | None) -> RequestContext:
        return cls(deadline=time.time() + seconds, **kwargs)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None if unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.time())

    def check(self) -> None:
        """Raise RequestCancelled if the request was cancelled or timed out."""
        if self._cancelled.is_set():
            raise RequestCancelled()
        if self.deadline is not None and time.time() >= self.deadline:
            raise RequestCancelled("Request deadline exceeded")


def background() -> RequestContext:
    """A context with no deadline, for internal callers and tests."""
    return RequestContext()
