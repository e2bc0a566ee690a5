"""Second-factor challenges.

A challenge is created after a successful password check for an account with
MFA enabled. The client answers it with a TOTP code (RFC 6238, via pyotp).

Rules:
- A challenge expires ``ttl`` seconds after issue (default 5 minutes).
- Each wrong code decrements ``attempts_remaining``; hitting zero moves the
  challenge to the terminal EXHAUSTED state. From then on every code is
  rejected, including a correct one; the client must start over.
- A correct code moves the challenge to VERIFIED. It cannot verify again.

The code is checked before the state transition, but the outcome is decided
inside ``MfaChallengeStore.update`` so two concurrent answers cannot both
succeed or both consume the same attempt.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import replace

import pyotp

from .errors import (
    MfaAttemptsExhausted,
    MfaChallengeExpired,
    MfaError,
    MfaInvalidCode,
    RateLimitExceeded,
)
from .gates import RateGate
from .logging import get_logger
from .models import MfaChallenge, MfaStatus
from .protocols import MfaChallengeStore, TotpSecretResolver

logger = get_logger(__name__)


class MfaChallengeManager:
    """Issues and verifies TOTP challenges.

    Args:
        store: Atomic challenge store.
        secrets: Maps users to secret references and references to secrets.
        ttl: Challenge lifetime in seconds.
        max_attempts: Wrong codes allowed per challenge.
        issue_gate: Optional per-user throttle on challenge issuance.
        valid_window: TOTP steps of clock drift tolerated either side.
    """

    def __init__(
        self,
        store: MfaChallengeStore,
        secrets: TotpSecretResolver,
        ttl: float = 5 * 60,
        max_attempts: int = 5,
        issue_gate: RateGate | None = None,
        valid_window: int = 1,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self._store = store
        self._secrets = secrets
        self._ttl = ttl
        self._max_attempts = max_attempts
        self._gate = issue_gate
        self._valid_window = valid_window

    def issue_challenge(self, user_id: str, device_id: str | None = None) -> str:
        """Create a PENDING challenge for ``user_id`` and return its id.

        Raises:
            RateLimitExceeded: A challenge was issued to this user too recently.
            MfaError: The user has no enrolled secret.
        """
        secret_ref = self._secrets.secret_ref_for(user_id)
        if secret_ref is None:
            raise MfaError("Second factor not enrolled")
        if self._gate is not None and not self._gate.allow(user_id):
            raise RateLimitExceeded()

        challenge = MfaChallenge(
            challenge_id=uuid.uuid4().hex,
            user_id=user_id,
            secret_ref=secret_ref,
            expires_at=time.time() + self._ttl,
            attempts_remaining=self._max_attempts,
            device_id=device_id,
        )
        self._store.add(challenge)
        logger.info("mfa_challenge_issued", user_id=user_id, challenge_id=challenge.challenge_id)
        return challenge.challenge_id

    def verify(self, challenge_id: str, code: str) -> MfaChallenge:
        """Answer a challenge.

        Returns:
            The VERIFIED challenge.

        Raises:
            MfaChallengeExpired: Unknown, expired or already verified challenge.
            MfaAttemptsExhausted: No attempts left (terminal).
            MfaInvalidCode: Wrong code, attempts remain.
        """
        existing = self._store.get(challenge_id)
        if existing is None:
            raise MfaChallengeExpired()

        code_ok = self._check_code(existing.secret_ref, code)
        now = time.time()

        def apply(challenge: MfaChallenge) -> MfaChallenge:
            if challenge.status is not MfaStatus.PENDING:
                return challenge
            if now >= challenge.expires_at:
                return replace(challenge, status=MfaStatus.EXPIRED)
            if challenge.attempts_remaining <= 0:
                return replace(challenge, status=MfaStatus.EXHAUSTED)
            if code_ok:
                return replace(challenge, status=MfaStatus.VERIFIED)
            remaining = challenge.attempts_remaining - 1
            status = MfaStatus.EXHAUSTED if remaining == 0 else MfaStatus.PENDING
            return replace(challenge, attempts_remaining=remaining, status=status)

        result = self._store.update(challenge_id, apply)
        if result is None:
            raise MfaChallengeExpired()
        before, after = result

        if before.status is not MfaStatus.PENDING:
            # Terminal already: replay of a verified or dead challenge.
            if before.status is MfaStatus.EXHAUSTED:
                raise MfaAttemptsExhausted()
            raise MfaChallengeExpired()

        if after.status is MfaStatus.VERIFIED:
            logger.info("mfa_verified", user_id=after.user_id, challenge_id=challenge_id)
            return after
        if after.status is MfaStatus.EXPIRED:
            raise MfaChallengeExpired()
        if after.status is MfaStatus.EXHAUSTED:
            logger.warning("mfa_attempts_exhausted", user_id=after.user_id, challenge_id=challenge_id)
            raise MfaAttemptsExhausted()

        logger.info(
            "mfa_invalid_code",
            user_id=after.user_id,
            challenge_id=challenge_id,
            attempts_remaining=after.attempts_remaining,
        )
        raise MfaInvalidCode(attempts_remaining=after.attempts_remaining)

    def _check_code(self, secret_ref: str, code: str) -> bool:
        secret = self._secrets.resolve(secret_ref)
        if not secret or not code or not code.isdigit():
            return False
        try:
            return pyotp.TOTP(secret).verify(code, valid_window=self._valid_window)
        except (TypeError, ValueError):
            logger.warning("totp_secret_invalid", secret_ref=secret_ref)
            return False
