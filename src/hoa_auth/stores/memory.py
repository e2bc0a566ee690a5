"""In-memory store implementations for single-process deployments.

Every mutation runs under the store's ``threading.Lock`` so each protocol
operation is a single atomic step. Records are frozen dataclasses, replaced
wholesale on mutation; readers get immutable snapshots.

Expired entries are removed lazily on access (and by ``purge_expired``),
which keeps memory bounded by the configured TTLs.

These stores are explicitly constructed and injected. Nothing here is a
module-level singleton; a store's lifetime is the lifetime of the object
that owns it.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

from ..models import (
    ExternalIdentityLink,
    LockoutState,
    MfaChallenge,
    PendingLink,
    Provider,
    RefreshStatus,
    RefreshTokenRecord,
)
from ..protocols import (
    IdentityLinkStore,
    LockoutStore,
    MfaChallengeStore,
    RefreshTokenStore,
    RevocationStore,
)


@dataclass(slots=True)
class _TTLItem:
    """Internal blacklist entry with TTL tracking."""

    expires_at: float


class InMemoryRevocationStore(RevocationStore):
    """Epoch counters and a TTL-bounded blacklist held in dicts.

    Example:
        ```python
        store = InMemoryRevocationStore()
        store.incr_epoch("u1")                 # -> 1
        store.add_blacklisted("jti-1", 900)
        assert store.is_blacklisted("jti-1")
        ```
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._epochs: dict[str, int] = {}
        self._blacklist: dict[str, _TTLItem] = {}

    def get_epoch(self, user_id: str) -> int:
        return self._epochs.get(user_id, 0)

    def incr_epoch(self, user_id: str) -> int:
        with self._lock:
            epoch = self._epochs.get(user_id, 0) + 1
            self._epochs[user_id] = epoch
            return epoch

    def add_blacklisted(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._blacklist[token_id] = _TTLItem(expires_at=time.time() + ttl_seconds)

    def is_blacklisted(self, token_id: str) -> bool:
        item = self._blacklist.get(token_id)
        if item is None:
            return False
        if time.time() >= item.expires_at:
            # Lazy removal of expired entry
            with self._lock:
                self._blacklist.pop(token_id, None)
            return False
        return True

    def purge_expired(self) -> int:
        now = time.time()
        with self._lock:
            stale = [k for k, v in self._blacklist.items() if now >= v.expires_at]
            for key in stale:
                del self._blacklist[key]
        return len(stale)


class InMemoryRefreshTokenStore(RefreshTokenStore):
    """Arena of refresh records keyed by token hash, with a chain index.

    The chain is never an object graph: records reference their parent by
    hash only, and ``_chains`` maps chain id to member hashes in issue order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, RefreshTokenRecord] = {}
        self._chains: dict[str, list[str]] = {}

    def add(self, record: RefreshTokenRecord) -> None:
        with self._lock:
            if record.token_hash in self._records:
                raise ValueError("Refresh token hash collision")
            self._insert(record)

    def get(self, token_hash: str) -> RefreshTokenRecord | None:
        return self._records.get(token_hash)

    def exchange(self, token_hash: str, child: RefreshTokenRecord) -> bool:
        with self._lock:
            parent = self._records.get(token_hash)
            if parent is None or parent.status is not RefreshStatus.ACTIVE:
                return False
            if child.token_hash in self._records:
                raise ValueError("Refresh token hash collision")
            self._records[token_hash] = replace(parent, status=RefreshStatus.CONSUMED)
            self._insert(child)
            return True

    def revoke_chain(self, chain_id: str) -> int:
        with self._lock:
            return self._revoke(self._chains.get(chain_id, []))

    def revoke_user(self, user_id: str) -> int:
        with self._lock:
            hashes = [h for h, r in self._records.items() if r.user_id == user_id]
            return self._revoke(hashes)

    def revoke_device(self, user_id: str, device_id: str) -> int:
        with self._lock:
            hashes = [
                h
                for h, r in self._records.items()
                if r.user_id == user_id and r.device_id == device_id
            ]
            return self._revoke(hashes)

    def chain(self, chain_id: str) -> list[RefreshTokenRecord]:
        with self._lock:
            return [self._records[h] for h in self._chains.get(chain_id, []) if h in self._records]

    def purge_expired(self, now: float) -> int:
        """Drop chains whose every record has expired.

        Whole chains go at once so that reuse detection never loses the
        consumed ancestors of a live record.
        """
        with self._lock:
            dead = [
                chain_id
                for chain_id, hashes in self._chains.items()
                if all(self._records[h].expires_at < now for h in hashes)
            ]
            removed = 0
            for chain_id in dead:
                for h in self._chains.pop(chain_id):
                    self._records.pop(h, None)
                    removed += 1
            return removed

    def _insert(self, record: RefreshTokenRecord) -> None:
        # Caller holds the lock.
        self._records[record.token_hash] = record
        self._chains.setdefault(record.chain_id, []).append(record.token_hash)

    def _revoke(self, hashes: list[str]) -> int:
        # Caller holds the lock.
        changed = 0
        for h in hashes:
            record = self._records[h]
            if record.status is not RefreshStatus.REVOKED:
                self._records[h] = replace(record, status=RefreshStatus.REVOKED)
                changed += 1
        return changed


class InMemoryLockoutStore(LockoutStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, LockoutState] = {}

    def get(self, identifier: str) -> LockoutState | None:
        return self._states.get(identifier)

    def update(
        self, identifier: str, fn: Callable[[LockoutState | None], LockoutState]
    ) -> LockoutState:
        with self._lock:
            state = fn(self._states.get(identifier))
            self._states[identifier] = state
            return state


class InMemoryMfaChallengeStore(MfaChallengeStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._challenges: dict[str, MfaChallenge] = {}

    def add(self, challenge: MfaChallenge) -> None:
        with self._lock:
            self._challenges[challenge.challenge_id] = challenge
            self._prune(time.time())

    def get(self, challenge_id: str) -> MfaChallenge | None:
        return self._challenges.get(challenge_id)

    def update(
        self, challenge_id: str, fn: Callable[[MfaChallenge], MfaChallenge]
    ) -> tuple[MfaChallenge, MfaChallenge] | None:
        with self._lock:
            before = self._challenges.get(challenge_id)
            if before is None:
                return None
            after = fn(before)
            self._challenges[challenge_id] = after
            return before, after

    def _prune(self, now: float) -> None:
        # Caller holds the lock. Challenges are useless an hour past expiry.
        stale = [k for k, c in self._challenges.items() if c.expires_at + 3600 < now]
        for key in stale:
            del self._challenges[key]


class InMemoryIdentityLinkStore(IdentityLinkStore):
    """Links unique on (provider, provider_user_id), plus parked confirmations."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._links: dict[tuple[Provider, str], ExternalIdentityLink] = {}
        self._pending: dict[str, PendingLink] = {}

    def get(self, provider: Provider, provider_user_id: str) -> ExternalIdentityLink | None:
        return self._links.get((provider, provider_user_id))

    def insert_if_absent(self, link: ExternalIdentityLink) -> ExternalIdentityLink:
        key = (link.provider, link.provider_user_id)
        with self._lock:
            return self._links.setdefault(key, link)

    def links_for_user(self, user_id: str) -> list[ExternalIdentityLink]:
        with self._lock:
            return [link for link in self._links.values() if link.user_id == user_id]

    def add_pending(self, pending: PendingLink) -> None:
        """Park ``pending``, replacing any earlier confirmation for the same identity."""
        key = (pending.provider, pending.provider_user_id)
        with self._lock:
            now = time.time()
            stale = [
                cid
                for cid, p in self._pending.items()
                if p.expires_at < now or (p.provider, p.provider_user_id) == key
            ]
            for cid in stale:
                del self._pending[cid]
            self._pending[pending.confirmation_id] = pending

    def get_pending(self, confirmation_id: str) -> PendingLink | None:
        return self._pending.get(confirmation_id)

    def pop_pending(self, confirmation_id: str) -> PendingLink | None:
        with self._lock:
            return self._pending.pop(confirmation_id, None)
