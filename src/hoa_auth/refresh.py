"""Refresh token rotation with reuse (theft) detection.

Every refresh token is single-use. Exchanging one consumes it and extends its
chain with a fresh ACTIVE record. Because the legitimate holder always moves
on to the new value, seeing a CONSUMED value again means a copy exists
somewhere else: the whole chain is revoked and the user has to log in again.

Rotation algorithm
------------------
1. Hash the presented value and look up the record.
2. Unknown -> InvalidToken.
3. REVOKED -> TokenReuseDetected (chain already burned).
4. CONSUMED -> revoke every record in the chain, notify, optionally bump the
   user's epoch -> TokenReuseDetected.
5. Expired -> TokenExpired.
6. Sign the new access token, then ``store.exchange``: one atomic step that
   flips the record ACTIVE -> CONSUMED and inserts the ACTIVE child. If the
   flip fails a concurrent rotation won; the loser gets TokenReuseDetected.

Everything that can fail (credential lookup, signing) happens before step 6,
and step 6 is all-or-nothing, so a chain never ends up with zero or two
ACTIVE records.
"""

from __future__ import annotations

import time

from .context import RequestContext, background
from .errors import CredentialStoreUnavailable, InvalidToken, TokenExpired, TokenReuseDetected
from .issuer import TokenIssuer, hash_refresh_token
from .logging import get_logger
from .models import RefreshStatus, RefreshTokenRecord, TokenPair, UserClaims
from .protocols import CredentialStore, Notifier, RefreshTokenStore
from .revocation import RevocationRegistry

logger = get_logger(__name__)


def notify_security_event(notifier: Notifier | None, user_id: str, event_kind: str) -> None:
    """Best-effort delivery: a notifier outage must never fail the auth flow."""
    if notifier is None:
        return
    try:
        notifier.notify_security_event(user_id, event_kind)
    except Exception as e:
        logger.warning("security_notification_failed", user_id=user_id, kind=event_kind, error=str(e))


class RefreshTokenRotator:
    """Exchanges refresh tokens for new token pairs.

    Args:
        store: Refresh record arena.
        issuer: Signs the new access token and builds the child record.
        credentials: Supplies the user's current roles/permissions so a
            rotated access token reflects role changes.
        revocation: Used to bump the epoch when reuse is detected.
        notifier: Receives ``refresh_token_reuse`` security events.
        bump_epoch_on_reuse: Also invalidate outstanding access tokens when a
            chain is burned.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        issuer: TokenIssuer,
        credentials: CredentialStore,
        revocation: RevocationRegistry,
        notifier: Notifier | None = None,
        bump_epoch_on_reuse: bool = True,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._credentials = credentials
        self._revocation = revocation
        self._notifier = notifier
        self._bump_epoch_on_reuse = bump_epoch_on_reuse

    def rotate(
        self, refresh_token: str, device_id: str, ctx: RequestContext | None = None
    ) -> TokenPair:
        """Exchange ``refresh_token`` for a new access/refresh pair.

        Raises:
            InvalidToken: Unknown refresh token.
            TokenReuseDetected: Token already consumed or revoked, presented
                from a different device, or a concurrent rotation won.
            TokenExpired: Refresh record past ``expires_at``.
            CredentialStoreUnavailable: Claims lookup failed.
            KeySigningUnavailable: No signing key.
            RequestCancelled: Deadline passed before the exchange.
        """
        ctx = ctx or background()
        now = time.time()

        record = self._store.get(hash_refresh_token(refresh_token))
        if record is None:
            raise InvalidToken("Unknown refresh token")

        if record.status is RefreshStatus.REVOKED:
            logger.warning(
                "revoked_refresh_token_presented", chain_id=record.chain_id, user_id=record.user_id
            )
            raise TokenReuseDetected(user_id=record.user_id, chain_id=record.chain_id)

        if record.status is RefreshStatus.CONSUMED:
            self._burn_chain(record, reason="reuse")
            raise TokenReuseDetected(user_id=record.user_id, chain_id=record.chain_id)

        if record.device_id != device_id:
            self._burn_chain(record, reason="device_mismatch")
            raise TokenReuseDetected(user_id=record.user_id, chain_id=record.chain_id)

        if record.expires_at < now:
            raise TokenExpired()

        claims = self._load_claims(record.user_id)
        ctx.check()

        access = self._issuer.sign_access_token(claims, now=now)
        value, child = self._issuer.child_record(record, now=now)

        if not self._store.exchange(record.token_hash, child):
            logger.warning(
                "refresh_rotation_race_lost", chain_id=record.chain_id, user_id=record.user_id
            )
            raise TokenReuseDetected(user_id=record.user_id, chain_id=record.chain_id)

        logger.info(
            "refresh_token_rotated",
            user_id=record.user_id,
            chain_id=record.chain_id,
            token_id=access.token_id,
        )
        return TokenPair(
            access_token=access.token,
            refresh_token=value,
            token_id=access.token_id,
            access_expires_at=access.expires_at,
            refresh_expires_at=child.expires_at,
        )

    def _load_claims(self, user_id: str) -> UserClaims:
        try:
            return self._credentials.get_user_claims(user_id)
        except (TimeoutError, OSError) as e:
            raise CredentialStoreUnavailable() from e

    def _burn_chain(self, record: RefreshTokenRecord, *, reason: str) -> None:
        revoked = self._store.revoke_chain(record.chain_id)
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=record.user_id,
            chain_id=record.chain_id,
            device_id=record.device_id,
            reason=reason,
            revoked=revoked,
        )
        if self._bump_epoch_on_reuse:
            self._revocation.bump_epoch(record.user_id, reason="refresh_token_reuse")
        notify_security_event(self._notifier, record.user_id, "refresh_token_reuse")
