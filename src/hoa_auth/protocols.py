"""Protocol definitions for the auth engine.

This module defines structural interfaces using Protocol (PEP 544) for:
- External collaborators (credential store, notifier, identity providers)
- Token verification and key resolution
- Authorization and token extraction
- The injected state stores (revocation, refresh records, lockout, MFA, links)

Using protocols allows for duck-typing and easier testing/mocking without
requiring explicit inheritance. Any class that implements the required methods
satisfies the protocol.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .models import (
        ExternalIdentityLink,
        ExternalProfile,
        LockoutState,
        MfaChallenge,
        PendingLink,
        Provider,
        RefreshTokenRecord,
        SigningKey,
        UserClaims,
    )

# ============================================================================
# Type Aliases
# ============================================================================

type Claims = Mapping[str, Any]
"""Represents the decoded JWT payload as an immutable mapping."""

type ViewFunc = Callable[..., Any]
"""Type alias for Flask view functions."""


# ============================================================================
# External collaborators
# ============================================================================


class CredentialStore(Protocol):
    """The account store that owns users and password hashes.

    Implementations may raise TimeoutError (or any OSError) when the backing
    store is unreachable. Those are never treated as authentication failures.
    """

    def verify_password(self, identifier: str, password: str) -> UserClaims | None:
        """Return the user's claims if the password verifies, else None."""
        ...

    def get_user_claims(self, user_id: str) -> UserClaims:
        """Return the current claims for a known user."""
        ...

    def find_by_email(self, email: str) -> UserClaims | None:
        """Return the local account registered under ``email``, if any."""
        ...

    def create_pending_account(self, profile: ExternalProfile) -> UserClaims:
        """Create a not-yet-approved local account for an external identity."""
        ...

    def discard_pending_account(self, user_id: str) -> None:
        """Remove a pending account created by a losing concurrent link."""
        ...


class Notifier(Protocol):
    """Fire-and-forget security event delivery (email, push, audit feed)."""

    def notify_security_event(self, user_id: str, event_kind: str) -> None: ...


class IdentityProvider(Protocol):
    """One external login provider.

    Implementations exchange an authorization code for a normalized profile.
    """

    provider: Provider

    def exchange_code(self, code: str) -> ExternalProfile:
        """Exchange an authorization code for the provider's user profile.

        Raises:
            InvalidCredentials: The code was rejected by the provider.
        """
        ...


class TotpSecretResolver(Protocol):
    """Resolves an MFA challenge's ``secret_ref`` to the user's TOTP secret."""

    def secret_ref_for(self, user_id: str) -> str | None:
        """Return the reference to the user's enrolled secret, if any."""
        ...

    def resolve(self, secret_ref: str) -> str | None:
        """Return the base32 TOTP secret behind ``secret_ref``."""
        ...


# ============================================================================
# Core Protocols
# ============================================================================


class KeyProvider(Protocol):
    """Protocol for resolving token signing keys by key id."""

    def get_key_for_token(self, kid: str) -> SigningKey:
        """Resolve a signing key by its ID.

        Raises:
            InvalidToken: If kid is unknown.
            InvalidSignature: If the key is outside its validity window.
        """
        ...


class TokenVerifier(Protocol):
    """Protocol for access token verification implementations."""

    def validate(self, token: str) -> Claims:
        """Verify a token and return its decoded claims.

        Raises:
            InvalidToken: Token malformed, signature invalid, claims invalid,
                expired, revoked by epoch or blacklisted.
        """
        ...


class Authorizer(Protocol):
    """Protocol for policy-based authorization implementations."""

    def authorize(self, claims: Claims, policy: Any, *, resource_owner: str | None = None) -> None:
        """Check that ``claims`` satisfy ``policy``.

        Raises:
            PermissionDenied: If the policy is not satisfied.
        """
        ...


class Extractor(Protocol):
    """Protocol for extracting access tokens from HTTP requests."""

    def extract(self) -> str:
        """Extract the raw token string from the Flask request.

        Raises:
            MissingToken: Token not found or improperly formatted.
        """
        ...


# ============================================================================
# State stores
# ============================================================================


class RevocationStore(Protocol):
    """Per-user epoch counters plus a TTL-bounded token-id blacklist."""

    def get_epoch(self, user_id: str) -> int: ...

    def incr_epoch(self, user_id: str) -> int:
        """Atomically increment and return the new epoch."""
        ...

    def add_blacklisted(self, token_id: str, ttl_seconds: int) -> None: ...

    def is_blacklisted(self, token_id: str) -> bool: ...


class RefreshTokenStore(Protocol):
    """Arena of refresh records keyed by token hash."""

    def add(self, record: RefreshTokenRecord) -> None: ...

    def get(self, token_hash: str) -> RefreshTokenRecord | None: ...

    def exchange(self, token_hash: str, child: RefreshTokenRecord) -> bool:
        """Atomically flip ``token_hash`` ACTIVE -> CONSUMED and insert ``child``.

        Returns False (and writes nothing) if the record was no longer ACTIVE.
        """
        ...

    def revoke_chain(self, chain_id: str) -> int: ...

    def revoke_user(self, user_id: str) -> int: ...

    def revoke_device(self, user_id: str, device_id: str) -> int: ...

    def chain(self, chain_id: str) -> list[RefreshTokenRecord]: ...

    def purge_expired(self, now: float) -> int: ...


class LockoutStore(Protocol):
    def get(self, identifier: str) -> LockoutState | None: ...

    def update(
        self, identifier: str, fn: Callable[[LockoutState | None], LockoutState]
    ) -> LockoutState:
        """Apply ``fn`` to the current state and store the result atomically."""
        ...


class MfaChallengeStore(Protocol):
    def add(self, challenge: MfaChallenge) -> None: ...

    def get(self, challenge_id: str) -> MfaChallenge | None: ...

    def update(
        self, challenge_id: str, fn: Callable[[MfaChallenge], MfaChallenge]
    ) -> tuple[MfaChallenge, MfaChallenge] | None:
        """Apply ``fn`` atomically. Returns (before, after), or None if unknown."""
        ...


class IdentityLinkStore(Protocol):
    def get(self, provider: Provider, provider_user_id: str) -> ExternalIdentityLink | None: ...

    def insert_if_absent(self, link: ExternalIdentityLink) -> ExternalIdentityLink:
        """Insert ``link`` unless one exists for its key; return the stored link."""
        ...

    def links_for_user(self, user_id: str) -> list[ExternalIdentityLink]: ...

    def add_pending(self, pending: PendingLink) -> None: ...

    def get_pending(self, confirmation_id: str) -> PendingLink | None: ...

    def pop_pending(self, confirmation_id: str) -> PendingLink | None: ...
