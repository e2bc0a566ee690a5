"""Signing key management.

The KeyRing holds the current and previous asymmetric signing keys, each
tagged with a key id (``kid``). Tokens are always signed with the newest key;
validation accepts any key in the ring whose ``[not_before, not_after]``
window covers the current time.

Rotation Strategy
-----------------
- A key is *current* for ``rotation_interval`` seconds after its
  ``not_before``. ``maybe_rotate()`` (called before every signing) mints a
  replacement once that period has passed.
- A key stays *valid* for ``overlap`` seconds after its signing period ends,
  so every token it signed can still be verified until the token expires.
  ``overlap`` must therefore be at least the access token lifetime.
- At most two keys are kept: the current one and its predecessor.

Concurrency
-----------
The key set is an immutable tuple replaced wholesale under a lock. Readers
(``get_key_for_token``, ``current``) take no lock and always see a complete
snapshot.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections.abc import Callable
from typing import Any

from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jwt.algorithms import ECAlgorithm, RSAAlgorithm

from .errors import InvalidSignature, InvalidToken, KeySigningUnavailable
from .logging import get_logger
from .models import SigningKey
from .protocols import KeyProvider

logger = get_logger(__name__)

type KeyFactory = Callable[[str], tuple[Any, Any]]
"""Produces a (private_key, public_key) pair for an algorithm name."""


def generate_key_pair(algorithm: str) -> tuple[Any, Any]:
    """Generate a fresh key pair with cryptography.

    Raises:
        ValueError: If the algorithm is not supported.
    """
    if algorithm == "RS256":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    elif algorithm == "ES256":
        private_key = ec.generate_private_key(ec.SECP256R1())
    else:
        raise ValueError(f"Unsupported signing algorithm: {algorithm}")
    return private_key, private_key.public_key()


class KeyRing(KeyProvider):
    """Current + previous signing keys with scheduled rotation.

    Example:
        ```python
        ring = KeyRing(algorithm="ES256", rotation_interval=7 * 86400, overlap=86400)
        ring.rotate()                  # mint the first key
        key = ring.current()           # sign with key.private_key, key.kid
        ring.get_key_for_token(kid)    # verification lookup
        ```

    Attributes:
        _keys: Immutable tuple of keys, newest last.
    """

    def __init__(
        self,
        algorithm: str = "RS256",
        rotation_interval: float = 7 * 24 * 3600,
        overlap: float = 24 * 3600,
        key_factory: KeyFactory = generate_key_pair,
    ) -> None:
        if rotation_interval <= 0:
            raise ValueError(f"rotation_interval must be positive, got {rotation_interval}")
        if overlap < 0:
            raise ValueError(f"overlap must not be negative, got {overlap}")
        self._algorithm = algorithm
        self._rotation_interval = rotation_interval
        self._overlap = overlap
        self._key_factory = key_factory
        self._lock = threading.Lock()
        self._keys: tuple[SigningKey, ...] = ()

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def keys(self) -> tuple[SigningKey, ...]:
        return self._keys

    def rotate(self) -> SigningKey:
        """Mint a new current key and retire the previous one.

        The previous key remains valid until its ``not_after``; anything
        older is dropped.
        """
        with self._lock:
            return self._rotate_locked(time.time())

    def _rotate_locked(self, now: float) -> SigningKey:
        private_key, public_key = self._key_factory(self._algorithm)
        key = SigningKey(
            kid=uuid.uuid4().hex,
            algorithm=self._algorithm,
            private_key=private_key,
            public_key=public_key,
            not_before=now,
            not_after=now + self._rotation_interval + self._overlap,
        )
        previous = [k for k in self._keys if k.is_valid_at(now)][-1:]
        self._keys = (*previous, key)
        logger.info("signing_key_rotated", kid=key.kid, retired=[k.kid for k in previous])
        return key

    def add_key(self, key: SigningKey) -> None:
        """Install an externally managed key as the newest key."""
        now = time.time()
        with self._lock:
            previous = [k for k in self._keys if k.is_valid_at(now) and k.kid != key.kid][-1:]
            self._keys = (*previous, key)

    def maybe_rotate(self) -> bool:
        """Rotate if the ring is empty or the current key's signing period is over."""
        keys = self._keys
        now = time.time()
        if keys and now - keys[-1].not_before < self._rotation_interval:
            return False
        with self._lock:
            keys = self._keys
            if keys and now - keys[-1].not_before < self._rotation_interval:
                return False
            self._rotate_locked(now)
        return True

    def current(self) -> SigningKey:
        """Return the key to sign with.

        Raises:
            KeySigningUnavailable: If no key in the ring is valid now.
        """
        now = time.time()
        for key in reversed(self._keys):
            if key.is_valid_at(now):
                return key
        raise KeySigningUnavailable()

    def get_key_for_token(self, kid: str) -> SigningKey:
        """Resolve the verification key for ``kid``.

        Raises:
            InvalidToken: If kid is unknown to the ring.
            InvalidSignature: If the key exists but is outside its validity window.
        """
        for key in self._keys:
            if key.kid == kid:
                if not key.is_valid_at(time.time()):
                    raise InvalidSignature("Signing key is not valid at this time")
                return key
        raise InvalidToken("Unknown signing key")

    def jwks(self) -> dict[str, list[dict[str, Any]]]:
        """Public JWK set of every key valid now, for downstream verifiers."""
        now = time.time()
        out: list[dict[str, Any]] = []
        for key in self._keys:
            if not key.is_valid_at(now):
                continue
            codec = RSAAlgorithm if key.algorithm.startswith("RS") else ECAlgorithm
            jwk = codec.to_jwk(key.public_key, as_dict=True)
            jwk.update({"kid": key.kid, "alg": key.algorithm, "use": "sig"})
            out.append(jwk)
        return {"keys": out}
