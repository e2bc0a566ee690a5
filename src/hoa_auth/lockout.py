"""Account lockout under repeated authentication failures.

Failures are counted per identifier inside a sliding window. Reaching the
threshold locks the identifier; each further lockout before a success lasts
longer (base, 2x base, 4x base, ... capped). A success resets everything.

Every mutation is a single ``LockoutStore.update`` call, so concurrent login
attempts against the same account cannot lose or double count a failure.
Attempts made while locked are rejected without consuming a failure.
"""

from __future__ import annotations

import time
from dataclasses import replace

from .logging import get_logger
from .models import LockoutDecision, LockoutState
from .protocols import LockoutStore

logger = get_logger(__name__)


class LockoutPolicy:
    """Progressive lockout keyed by login identifier.

    Args:
        store: Atomic state store.
        threshold: Failures within ``window`` that trigger a lockout.
        window: Sliding window length in seconds.
        base_duration: First lockout length in seconds.
        max_duration: Upper bound for the progressive lockout length.
    """

    def __init__(
        self,
        store: LockoutStore,
        threshold: int = 5,
        window: float = 15 * 60,
        base_duration: float = 15 * 60,
        max_duration: float = 60 * 60,
    ) -> None:
        if threshold < 1:
            raise ValueError(f"threshold must be at least 1, got {threshold}")
        if window <= 0 or base_duration <= 0 or max_duration < base_duration:
            raise ValueError("window and durations must be positive with max >= base")
        self._store = store
        self._threshold = threshold
        self._window = window
        self._base = base_duration
        self._max = max_duration

    def lock_duration(self, consecutive_lockouts: int) -> float:
        """Length of the next lockout given how many preceded it."""
        return min(self._base * (2**consecutive_lockouts), self._max)

    def check(self, identifier: str) -> LockoutDecision:
        """Read-only pre-check: is ``identifier`` allowed to try right now?"""
        state = self._store.get(identifier)
        now = time.time()
        if state is not None and state.locked_until is not None and now < state.locked_until:
            return LockoutDecision(
                allowed=False, locked_until=state.locked_until, failure_count=state.failure_count
            )
        return LockoutDecision(
            allowed=True, failure_count=state.failure_count if state is not None else 0
        )

    def record_attempt(self, identifier: str, success: bool) -> LockoutDecision:
        """Record one authentication outcome and return the resulting decision.

        ``allowed`` is False while the identifier is locked, including when
        this very failure triggered the lock.
        """
        now = time.time()
        was_locked = False

        def apply(current: LockoutState | None) -> LockoutState:
            nonlocal was_locked
            state = current or LockoutState(identifier=identifier)

            if state.locked_until is not None and now < state.locked_until:
                was_locked = True
                return state

            if success:
                return LockoutState(identifier=identifier)

            failures = tuple(ts for ts in state.failures if now - ts <= self._window) + (now,)
            if len(failures) < self._threshold:
                return replace(state, failures=failures, locked_until=None)

            return LockoutState(
                identifier=identifier,
                locked_until=now + self.lock_duration(state.consecutive_lockouts),
                consecutive_lockouts=state.consecutive_lockouts + 1,
            )

        state = self._store.update(identifier, apply)

        if state.locked_until is not None and now < state.locked_until:
            if not was_locked:
                logger.warning(
                    "account_locked",
                    identifier=identifier,
                    locked_until=state.locked_until,
                    consecutive_lockouts=state.consecutive_lockouts,
                )
            return LockoutDecision(
                allowed=False, locked_until=state.locked_until, failure_count=state.failure_count
            )
        return LockoutDecision(allowed=True, failure_count=state.failure_count)
