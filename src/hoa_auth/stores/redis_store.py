"""Redis-backed revocation store for multi-process deployments.

Epoch counters live under ``<prefix>epoch:<user_id>`` and are bumped with
``INCR``, which is atomic on the server, so a bump is visible to every
process on its very next lookup. Nothing is cached locally.

Blacklisted token ids live under ``<prefix>bl:<token_id>`` with Redis's
native TTL (``SETEX``), so entries expire without any sweeping.

Dependencies:
    Requires redis package: pip install redis
"""

from __future__ import annotations

from typing import Any

from redis.exceptions import RedisError

from ..protocols import RevocationStore


class RedisRevocationStore(RevocationStore):
    """Revocation state in Redis.

    Example:
        ```python
        import redis

        client = redis.Redis.from_url("redis://localhost:6379/0")
        store = RedisRevocationStore(client)
        registry = RevocationRegistry(store, blacklist_ttl=900)
        ```

    Attributes:
        _client: Redis client instance (from redis package).
        _prefix: Key namespace.
    """

    def __init__(self, redis_client: Any, prefix: str = "hoa_auth:") -> None:
        """Initialize Redis revocation store.

        Args:
            redis_client: Redis client instance. Must support get(), incr(),
                setex() and exists(). The type is Any so any Redis-compatible
                client (redis-py, fakeredis, ...) can be passed.
            prefix: Namespace prepended to every key.
        """
        self._client = redis_client
        self._prefix = prefix

    def get_epoch(self, user_id: str) -> int:
        """Return the user's epoch, 0 if never bumped.

        Raises:
            RuntimeError: If Redis is unreachable or holds a non-integer.
        """
        try:
            data = self._client.get(f"{self._prefix}epoch:{user_id}")
        except RedisError as e:
            raise RuntimeError("Failed to read epoch from Redis") from e
        if data is None:
            return 0
        try:
            return int(data)
        except (TypeError, ValueError) as e:
            raise RuntimeError("Corrupted epoch value in Redis") from e

    def incr_epoch(self, user_id: str) -> int:
        try:
            return int(self._client.incr(f"{self._prefix}epoch:{user_id}"))
        except RedisError as e:
            raise RuntimeError("Failed to bump epoch in Redis") from e

    def add_blacklisted(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        try:
            self._client.setex(f"{self._prefix}bl:{token_id}", ttl_seconds, "1")
        except RedisError as e:
            raise RuntimeError("Failed to blacklist token in Redis") from e

    def is_blacklisted(self, token_id: str) -> bool:
        try:
            return bool(self._client.exists(f"{self._prefix}bl:{token_id}"))
        except RedisError as e:
            raise RuntimeError("Failed to read blacklist from Redis") from e
