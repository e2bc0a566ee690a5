"""Access token validation using PyJWT.

This module provides the stateless validator that:
- Extracts the key ID (kid) from token headers
- Resolves the verification key via an injected KeyProvider (the KeyRing)
- Validates signature and claims using PyJWT
- Rejects tokens whose epoch predates the user's current epoch
- Rejects tokens whose id is on the revocation blacklist
- Maps PyJWT exceptions to domain-specific error types

Validation takes no locks: the KeyRing is read as an immutable snapshot and
the revocation lookups are single reads.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import jwt

from .config import TokenOptions
from .errors import (
    AuthError,
    EpochRevoked,
    InvalidSignature,
    InvalidToken,
    TokenExpired,
    TokenRevoked,
)
from .protocols import Claims, TokenVerifier

if TYPE_CHECKING:
    from .protocols import KeyProvider
    from .revocation import RevocationRegistry

_REQUIRED_CLAIMS: list[str] = ["sub", "exp", "iat", "iss", "aud", "jti", "epoch"]


class TokenValidator(TokenVerifier):
    """Verifies access tokens minted by TokenIssuer.

    Architecture:
        1. Extract kid from token header (unverified)
        2. Resolve verification key via KeyProvider (validity window checked)
        3. Verify signature and claims via PyJWT
        4. Compare the embedded epoch with the user's current epoch
        5. Check the token id against the blacklist

    Example:
        ```python
        validator = TokenValidator(keyring, revocation, options)

        try:
            claims = validator.validate(raw_token)
        except TokenExpired:
            # client should refresh
        except InvalidToken:
            # reject request
        ```

    Attributes:
        _keys: KeyProvider responsible for resolving verification keys.
        _revocation: Epoch and blacklist lookups.
        _opt: Immutable options (issuer, audience, algorithms, leeway).
    """

    def __init__(
        self,
        key_provider: KeyProvider,
        revocation: RevocationRegistry,
        options: TokenOptions,
    ) -> None:
        self._keys = key_provider
        self._revocation = revocation
        self._opt = options

    def validate(self, token: str) -> Claims:
        """Validate an access token and return its claims.

        Returns:
            The verified payload: sub, roles, permissions, epoch, iat, exp,
            iss, aud, jti.

        Raises:
            InvalidToken: Malformed token, unknown kid, iss/aud mismatch,
                disallowed algorithm or missing claims.
            InvalidSignature: Signature mismatch or key outside its window.
            TokenExpired: ``exp`` has passed (accounting for leeway).
            EpochRevoked: Issued before the user's latest epoch bump.
            TokenRevoked: Token id is blacklisted.
        """
        # Step 1: read kid from the header. The header is untrusted; it only
        # tells us which key to try.
        try:
            header = jwt.get_unverified_header(token)
            kid = header.get("kid")

            if not kid or not isinstance(kid, str):
                raise InvalidToken("Token header missing required 'kid'")

            key = self._keys.get_key_for_token(kid)

        except AuthError:
            raise
        except Exception as e:
            raise InvalidToken(f"Key resolution failed: {e}") from e

        if key.algorithm not in self._opt.algorithms:
            raise InvalidToken("Signing algorithm not allowed")

        # Step 2: signature + registered claims.
        try:
            claims = jwt.decode(
                token,
                key.public_key,
                algorithms=[key.algorithm],
                audience=self._opt.audience,
                issuer=self._opt.issuer,
                leeway=self._opt.leeway,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenExpired() from e
        except jwt.InvalidSignatureError as e:
            raise InvalidSignature("Signature verification failed") from e
        except jwt.InvalidTokenError as e:
            raise InvalidToken(f"Token validation failed: {e}") from e

        # Step 3: revocation.
        epoch = claims.get("epoch")
        if not isinstance(epoch, int) or isinstance(epoch, bool):
            raise InvalidToken("Token epoch claim is malformed")
        if epoch < self._revocation.current_epoch(claims["sub"]):
            raise EpochRevoked()

        if self._revocation.is_blacklisted(claims["jti"]):
            raise TokenRevoked()

        return claims
