"""Mass and single-token revocation of access tokens.

Access tokens are never stored, so revocation works two ways:

- Epochs: every user has a monotonic counter that is embedded in each access
  token at issue time. Bumping it (logout-all, password change, detected
  compromise) invalidates every token issued before the bump in O(1),
  without enumerating tokens.
- Blacklist: a single token id can be revoked immediately (logout of one
  device) without touching the shared epoch. Entries live for the access
  token's maximum lifetime and then expire, which bounds memory.

The registry reads the store on every lookup and never caches epochs, so a
bump is visible to the very next validation.
"""

from __future__ import annotations

from .logging import get_logger
from .protocols import RevocationStore

logger = get_logger(__name__)


class RevocationRegistry:
    """Facade over a RevocationStore.

    Args:
        store: Backing store (in-memory or Redis).
        blacklist_ttl: Default blacklist lifetime in seconds. Set to the access
            token lifetime; a blacklisted token is expired by then anyway.
    """

    def __init__(self, store: RevocationStore, blacklist_ttl: int = 900) -> None:
        if blacklist_ttl <= 0:
            raise ValueError(f"blacklist_ttl must be positive, got {blacklist_ttl}")
        self._store = store
        self._blacklist_ttl = blacklist_ttl

    def current_epoch(self, user_id: str) -> int:
        return self._store.get_epoch(user_id)

    def bump_epoch(self, user_id: str, reason: str = "logout_all") -> int:
        """Invalidate every access token issued to ``user_id`` so far."""
        epoch = self._store.incr_epoch(user_id)
        logger.info("epoch_bumped", user_id=user_id, epoch=epoch, reason=reason)
        return epoch

    def blacklist_token(self, token_id: str, ttl: int | None = None) -> None:
        """Revoke one token id immediately.

        ``ttl`` is capped at the configured blacklist lifetime: no access
        token outlives it, so a longer entry would only waste memory.
        """
        seconds = self._blacklist_ttl if ttl is None else min(ttl, self._blacklist_ttl)
        self._store.add_blacklisted(token_id, seconds)
        logger.debug("token_blacklisted", token_id=token_id, ttl=seconds)

    def is_blacklisted(self, token_id: str) -> bool:
        return self._store.is_blacklisted(token_id)
