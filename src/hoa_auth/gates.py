"""Rate gating and circuit breaking.

RateGate is a thread-safe, keyed minimum-interval limiter: for each key (for
example a user id) at most one operation is allowed per configured interval.
It throttles MFA challenge issuance so a client cannot spam second-factor
deliveries.

CircuitBreaker guards token signing. When the KeyRing cannot produce a valid
key the failure is operational, not per-request, so after a few consecutive
failures the breaker opens and every issuance fails fast until the reset
interval has passed.
"""

from __future__ import annotations

import threading
import time
from typing import Final

from .logging import get_logger

logger = get_logger(__name__)

_DEFAULT_INTERVAL: Final[float] = 30
"""Default minimum interval between allowed operations per key, in seconds."""

_DEFAULT_ALERT_THRESHOLD: Final[int] = 5
"""Default number of denials for one key before logging a warning."""


class RateGate:
    """Thread-safe keyed rate limiter.

    Attributes:
        _min_interval: Minimum seconds between allowed operations per key.
        _alert_threshold: Number of denials before a warning is logged.
        _lock: Thread synchronization lock.
        _next_allowed_at: Per-key Unix timestamp when the next call is allowed.
        _retry_attempts: Per-key count of denied attempts since the last allow.
    """

    def __init__(
        self,
        min_interval: float = _DEFAULT_INTERVAL,
        alert_threshold: int = _DEFAULT_ALERT_THRESHOLD,
    ) -> None:
        if min_interval <= 0:
            raise ValueError(f"min_interval must be positive, got {min_interval}")
        if alert_threshold < 1:
            raise ValueError(f"alert_threshold must be at least 1, got {alert_threshold}")

        self._min_interval = min_interval
        self._alert_threshold = alert_threshold

        self._lock = threading.Lock()
        self._next_allowed_at: dict[str, float] = {}
        self._retry_attempts: dict[str, int] = {}

    def allow(self, key: str) -> bool:
        """Return True and start a new interval for ``key`` if allowed now."""
        now = time.time()

        with self._lock:
            if now < self._next_allowed_at.get(key, 0.0):
                attempts = self._retry_attempts.get(key, 0) + 1
                self._retry_attempts[key] = attempts
                if attempts == self._alert_threshold:
                    logger.warning("rate_gate_throttling", key=key, denials=attempts)
                return False

            self._next_allowed_at[key] = now + self._min_interval
            self._retry_attempts.pop(key, None)
            self._prune(now)
            return True

    def reset(self, key: str) -> None:
        with self._lock:
            self._next_allowed_at.pop(key, None)
            self._retry_attempts.pop(key, None)

    def _prune(self, now: float) -> None:
        # Caller holds the lock. Bounded memory: drop keys whose interval ended.
        if len(self._next_allowed_at) < 1024:
            return
        for key in [k for k, t in self._next_allowed_at.items() if t <= now]:
            self._next_allowed_at.pop(key, None)
            self._retry_attempts.pop(key, None)


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    States:
        closed: calls pass through; failures are counted.
        open: ``allow()`` is False until ``reset_timeout`` has elapsed.
        half-open: after the timeout one trial call is let through; success
            closes the breaker, failure re-opens it.
    """

    def __init__(self, failure_threshold: int = 3, reset_timeout: float = 30.0) -> None:
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be at least 1, got {failure_threshold}")
        if reset_timeout <= 0:
            raise ValueError(f"reset_timeout must be positive, got {reset_timeout}")
        self._threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._lock = threading.Lock()
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._opened_at is not None

    def allow(self) -> bool:
        now = time.time()
        with self._lock:
            if self._opened_at is None:
                return True
            if now - self._opened_at < self._reset_timeout or self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._opened_at is not None:
                logger.info("circuit_closed")
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        now = time.time()
        with self._lock:
            self._failures += 1
            self._trial_in_flight = False
            if self._opened_at is not None:
                self._opened_at = now
            elif self._failures >= self._threshold:
                self._opened_at = now
                logger.error("circuit_opened", failures=self._failures)
