"""Access/refresh token issuance.

Access tokens are compact JWS (``header.payload.signature``) signed with the
KeyRing's current key. The header carries ``kid``; the payload carries
``sub, roles, permissions, epoch, iat, exp, iss, aud, jti``.

Refresh tokens are 256-bit random values. The caller only ever sees the
value; the store keeps ``sha256(value)``, so a leaked store cannot be
replayed.
"""

from __future__ import annotations

import hashlib
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any

import jwt

from .config import TokenOptions
from .errors import KeySigningUnavailable
from .gates import CircuitBreaker
from .keyring import KeyRing
from .logging import get_logger
from .models import RefreshStatus, RefreshTokenRecord, TokenPair, UserClaims
from .protocols import RefreshTokenStore
from .revocation import RevocationRegistry

logger = get_logger(__name__)


def new_refresh_value() -> str:
    """256 bits from the OS CSPRNG, URL-safe."""
    return secrets.token_urlsafe(32)


def hash_refresh_token(value: str) -> str:
    """SHA-256 hex digest used as the refresh record's key.

    A fast hash is enough: the input already has 256 bits of entropy.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class SignedAccessToken:
    token: str
    token_id: str
    expires_at: float


class TokenIssuer:
    """Mints signed access tokens and refresh records.

    Args:
        keyring: Source of the current signing key.
        revocation: Supplies the epoch embedded in every access token.
        refresh_store: Where new refresh records are persisted.
        options: Issuer/audience and lifetimes.
        breaker: Opens after repeated signing failures so issuance fails fast.
        auto_rotate: Call ``keyring.maybe_rotate()`` before signing.
    """

    def __init__(
        self,
        keyring: KeyRing,
        revocation: RevocationRegistry,
        refresh_store: RefreshTokenStore,
        options: TokenOptions,
        breaker: CircuitBreaker | None = None,
        auto_rotate: bool = True,
    ) -> None:
        self._keys = keyring
        self._revocation = revocation
        self._refresh = refresh_store
        self._opt = options
        self._breaker = breaker or CircuitBreaker()
        self._auto_rotate = auto_rotate

    @property
    def options(self) -> TokenOptions:
        return self._opt

    def issue_token_pair(self, claims: UserClaims, device_id: str) -> TokenPair:
        """Issue an access token and a new root refresh record (new chain).

        The access token is signed before anything is written, so a signing
        failure leaves no refresh record behind.

        Raises:
            KeySigningUnavailable: No valid signing key, or the breaker is open.
        """
        now = time.time()
        access = self.sign_access_token(claims, now=now)
        value = new_refresh_value()
        record = RefreshTokenRecord(
            token_hash=hash_refresh_token(value),
            chain_id=uuid.uuid4().hex,
            user_id=claims.user_id,
            device_id=device_id,
            parent_token_hash=None,
            status=RefreshStatus.ACTIVE,
            issued_at=now,
            expires_at=now + self._opt.refresh_ttl,
        )
        self._refresh.add(record)
        logger.info(
            "token_pair_issued",
            user_id=claims.user_id,
            device_id=device_id,
            chain_id=record.chain_id,
            token_id=access.token_id,
        )
        return TokenPair(
            access_token=access.token,
            refresh_token=value,
            token_id=access.token_id,
            access_expires_at=access.expires_at,
            refresh_expires_at=record.expires_at,
        )

    def child_record(
        self, parent: RefreshTokenRecord, *, now: float | None = None
    ) -> tuple[str, RefreshTokenRecord]:
        """Build (but do not store) the successor of ``parent`` in its chain."""
        now = time.time() if now is None else now
        value = new_refresh_value()
        child = RefreshTokenRecord(
            token_hash=hash_refresh_token(value),
            chain_id=parent.chain_id,
            user_id=parent.user_id,
            device_id=parent.device_id,
            parent_token_hash=parent.token_hash,
            status=RefreshStatus.ACTIVE,
            issued_at=now,
            expires_at=now + self._opt.refresh_ttl,
        )
        return value, child

    def sign_access_token(self, claims: UserClaims, *, now: float | None = None) -> SignedAccessToken:
        """Sign an access token for ``claims`` with the current epoch.

        Raises:
            KeySigningUnavailable: No valid signing key, or the breaker is open.
        """
        now = time.time() if now is None else now
        # Read before the breaker admits a half-open trial call.
        epoch = self._revocation.current_epoch(claims.user_id)
        key = self._signing_key()

        iat = int(now)
        exp = iat + self._opt.access_ttl
        token_id = str(uuid.uuid4())
        payload: dict[str, Any] = {
            "sub": claims.user_id,
            "roles": sorted(claims.roles),
            "permissions": sorted(claims.permissions),
            "epoch": epoch,
            "iat": iat,
            "exp": exp,
            "iss": self._opt.issuer,
            "aud": self._opt.audience,
            "jti": token_id,
        }
        try:
            token = jwt.encode(
                payload,
                key.private_key,
                algorithm=key.algorithm,
                headers={"kid": key.kid, "typ": "JWT"},
            )
        except Exception as e:
            self._breaker.record_failure()
            logger.error("token_signing_failed", kid=key.kid, error=str(e))
            raise KeySigningUnavailable() from e

        self._breaker.record_success()
        return SignedAccessToken(token=token, token_id=token_id, expires_at=float(exp))

    def _signing_key(self):
        if not self._breaker.allow():
            raise KeySigningUnavailable()
        try:
            if self._auto_rotate:
                self._keys.maybe_rotate()
            return self._keys.current()
        except KeySigningUnavailable:
            self._breaker.record_failure()
            logger.error("signing_key_unavailable")
            raise
        except Exception as e:
            self._breaker.record_failure()
            logger.error("signing_key_rotation_failed", error=str(e))
            raise KeySigningUnavailable() from e
