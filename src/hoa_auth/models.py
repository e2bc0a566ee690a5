"""Value types shared across the auth engine.

Every record is a frozen, slotted dataclass. Stores hand out these immutable
snapshots and replace them wholesale (``dataclasses.replace``) on mutation,
so readers never observe a half-updated record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum, StrEnum
from typing import Any


class Role(IntEnum):
    """Role hierarchy. A higher value implies every lower role."""

    GUEST = 0
    RESIDENT = 1
    COMMITTEE_MEMBER = 2
    BOARD_MEMBER = 3
    ADMINISTRATOR = 4

    @property
    def claim(self) -> str:
        """Name used in the ``roles`` claim, e.g. ``BoardMember``."""
        return "".join(part.capitalize() for part in self.name.split("_"))

    @classmethod
    def parse(cls, value: str) -> Role | None:
        """Resolve a claim string (``BoardMember``, ``board_member``) to a Role.

        Returns None for unknown names so callers can fail closed.
        """
        normalized = value.replace("_", "").replace("-", "").lower()
        for role in cls:
            if role.claim.lower() == normalized:
                return role
        return None


class RefreshStatus(StrEnum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    REVOKED = "revoked"


class MfaStatus(StrEnum):
    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"


class Provider(StrEnum):
    """External identity providers supported at the login boundary."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"
    APPLE = "apple"


@dataclass(frozen=True, slots=True)
class UserClaims:
    """Identity and authorization data returned by the credential store."""

    user_id: str
    roles: frozenset[str] = frozenset()
    permissions: frozenset[str] = frozenset()
    mfa_enabled: bool = False
    email: str | None = None


@dataclass(frozen=True, slots=True)
class SigningKey:
    """An asymmetric key pair held by the KeyRing.

    Attributes:
        kid: Key id written into every token header signed with this key.
        algorithm: JWS algorithm (RS256, ES256).
        private_key: cryptography private key object.
        public_key: cryptography public key object.
        not_before: Unix timestamp from which the key is valid.
        not_after: Unix timestamp after which the key is no longer accepted.
    """

    kid: str
    algorithm: str
    private_key: Any = field(repr=False)
    public_key: Any = field(repr=False)
    not_before: float
    not_after: float

    def is_valid_at(self, now: float) -> bool:
        return self.not_before <= now <= self.not_after


@dataclass(frozen=True, slots=True)
class TokenPair:
    """What login and refresh hand back to the caller.

    ``refresh_token`` is the opaque value; it is never stored, only its hash.
    """

    access_token: str
    refresh_token: str
    token_id: str
    access_expires_at: float
    refresh_expires_at: float
    token_type: str = "Bearer"


@dataclass(frozen=True, slots=True)
class RefreshTokenRecord:
    """Persisted half of a refresh token.

    A chain is a singly linked list of records sharing ``chain_id``; the root
    has ``parent_token_hash = None``. Exactly one record per chain is ACTIVE.
    """

    token_hash: str
    chain_id: str
    user_id: str
    device_id: str
    parent_token_hash: str | None
    status: RefreshStatus
    issued_at: float
    expires_at: float


@dataclass(frozen=True, slots=True)
class LockoutState:
    """Failure timestamps still inside the window, plus the current lock."""

    identifier: str
    failures: tuple[float, ...] = ()
    locked_until: float | None = None
    consecutive_lockouts: int = 0

    @property
    def failure_count(self) -> int:
        return len(self.failures)


@dataclass(frozen=True, slots=True)
class LockoutDecision:
    allowed: bool
    locked_until: float | None = None
    failure_count: int = 0

    @property
    def locked_until_dt(self) -> datetime | None:
        if self.locked_until is None:
            return None
        return datetime.fromtimestamp(self.locked_until, tz=timezone.utc)


@dataclass(frozen=True, slots=True)
class MfaChallenge:
    """A short-lived, single-use second-factor challenge.

    ``secret_ref`` points at the TOTP secret; the secret itself never lives on
    the challenge. ``device_id`` carries the pending login's device so tokens
    can be issued once the challenge verifies.
    """

    challenge_id: str
    user_id: str
    secret_ref: str
    expires_at: float
    attempts_remaining: int
    status: MfaStatus = MfaStatus.PENDING
    device_id: str | None = None


@dataclass(frozen=True, slots=True)
class ExternalProfile:
    """Normalized user profile returned by an identity provider."""

    provider: Provider
    provider_user_id: str
    email: str | None = None
    email_verified: bool = False
    display_name: str | None = None


@dataclass(frozen=True, slots=True)
class ExternalIdentityLink:
    provider: Provider
    provider_user_id: str
    user_id: str
    linked_at: float


@dataclass(frozen=True, slots=True)
class PendingLink:
    """An external identity waiting for the local account holder to confirm."""

    confirmation_id: str
    provider: Provider
    provider_user_id: str
    user_id: str
    expires_at: float
