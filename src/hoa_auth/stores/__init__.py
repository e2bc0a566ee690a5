"""
State store implementations.

Each auth component takes its store as a constructor argument. Pick the
in-memory stores for single-process deployments and tests, or the Redis
revocation store when several processes must see the same epochs.
"""

from .memory import (
    InMemoryIdentityLinkStore,
    InMemoryLockoutStore,
    InMemoryMfaChallengeStore,
    InMemoryRefreshTokenStore,
    InMemoryRevocationStore,
)
from .redis_store import RedisRevocationStore

__all__ = [
    "InMemoryIdentityLinkStore",
    "InMemoryLockoutStore",
    "InMemoryMfaChallengeStore",
    "InMemoryRefreshTokenStore",
    "InMemoryRevocationStore",
    "RedisRevocationStore",
]
