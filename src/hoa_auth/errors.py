"""Authentication and authorization errors.

This module defines the exception hierarchy for every failure the auth engine
can surface. All errors inherit from AuthError so the web layer can catch a
single type and map it to a transport status through ``error_code``.

Security Note:
    ``description`` is intentionally generic and safe to return to clients.
    Lockout and MFA failures must not reveal whether the underlying cause was
    a wrong password, an unknown account or a locked account beyond what the
    documented flow already discloses. Detailed reasons belong in server logs.
"""

from __future__ import annotations

from datetime import datetime


class AuthError(Exception):
    """Base exception for all authentication and authorization failures.

    Attributes:
        error_code: HTTP status the web layer should answer with.
        description: Client-safe message.
    """

    error_code: int = 401
    description: str = "Authentication failed"

    def __init__(self, description: str | None = None) -> None:
        if description is not None:
            self.description = description
        super().__init__(self.description)


class InvalidCredentials(AuthError):  # noqa: N818
    """Raised when the identifier/password pair does not verify."""

    description = "Invalid credentials"


class AccountLocked(AuthError):  # noqa: N818
    """Raised when the identifier is inside a lockout window.

    Attributes:
        locked_until: When the lockout ends (UTC), if known.
    """

    error_code = 423
    description = "Account temporarily locked"

    def __init__(
        self, description: str | None = None, *, locked_until: datetime | None = None
    ) -> None:
        super().__init__(description)
        self.locked_until = locked_until


class MissingToken(AuthError):  # noqa: N818
    """Raised when no token is found in the request.

    This occurs when:
    - The Authorization header is missing
    - The Authorization header is not "Bearer <token>"
    - The configured cookie is missing
    """

    description = "Missing token"


class InvalidToken(AuthError):  # noqa: N818
    """Raised when a token is present but cannot be accepted.

    Base class for every token rejection. Unknown refresh values, malformed
    access tokens, issuer/audience mismatches and unknown key ids land here
    directly; the more specific reasons use the subclasses below.
    """

    description = "Invalid token"


class InvalidSignature(InvalidToken):  # noqa: N818
    """Raised when the signature does not verify or the signing key is outside
    its validity window."""


class TokenExpired(InvalidToken):  # noqa: N818
    """Raised when an access token's ``exp`` or a refresh record's
    ``expires_at`` has passed."""

    description = "Token has expired"


class EpochRevoked(InvalidToken):  # noqa: N818
    """Raised when the token's epoch is older than the user's current epoch."""

    description = "Token has been revoked"


class TokenRevoked(InvalidToken):  # noqa: N818
    """Raised when the token's id is on the short-lived blacklist."""

    description = "Token has been revoked"


class TokenReuseDetected(InvalidToken):  # noqa: N818
    """Raised when a consumed or revoked refresh token is presented again, or
    when a concurrent rotation of the same token lost the race.

    Attributes:
        user_id: Owner of the affected chain, when known.
        chain_id: The affected chain, when known.
    """

    def __init__(
        self,
        description: str | None = None,
        *,
        user_id: str | None = None,
        chain_id: str | None = None,
    ) -> None:
        super().__init__(description)
        self.user_id = user_id
        self.chain_id = chain_id


class MfaRequired(AuthError):  # noqa: N818
    """Raised by login when the account requires a second factor.

    Attributes:
        challenge_id: The challenge the client must answer via verify_mfa.
    """

    description = "Second factor required"

    def __init__(self, challenge_id: str, description: str | None = None) -> None:
        super().__init__(description)
        self.challenge_id = challenge_id


class MfaError(AuthError):
    """Base class for second-factor verification failures."""

    description = "Verification failed"


class MfaInvalidCode(MfaError):  # noqa: N818
    """Raised when a code is wrong but attempts remain.

    Attributes:
        attempts_remaining: Attempts left on the challenge.
    """

    def __init__(self, description: str | None = None, *, attempts_remaining: int = 0) -> None:
        super().__init__(description)
        self.attempts_remaining = attempts_remaining


class MfaChallengeExpired(MfaError):  # noqa: N818
    """Raised when the challenge is past its expiry or unknown."""

    description = "Verification expired"


class MfaAttemptsExhausted(MfaError):  # noqa: N818
    """Raised when the challenge has no attempts left. Terminal: the client
    must start over with a new challenge."""


class ExternalLinkConflict(AuthError):  # noqa: N818
    """Raised when an external identity's email matches an existing local
    account. The link is parked until the local account holder confirms it.

    Attributes:
        confirmation_id: Handle for confirm_link.
    """

    error_code = 409
    description = "Account link requires confirmation"

    def __init__(self, confirmation_id: str, description: str | None = None) -> None:
        super().__init__(description)
        self.confirmation_id = confirmation_id


class PermissionDenied(AuthError):  # noqa: N818
    """Raised when a verified subject does not satisfy a policy.

    This is the only error that should result in 403. All others that relate
    to identity are 401.
    """

    error_code = 403
    description = "Forbidden"


class RateLimitExceeded(AuthError):  # noqa: N818
    """Raised when an operation is attempted more often than allowed."""

    error_code = 429
    description = "Too many requests"


class KeySigningUnavailable(AuthError):  # noqa: N818
    """Raised when no valid signing key exists or the signing circuit is open.

    Operational condition: the service cannot issue tokens at all.
    """

    error_code = 503
    description = "Token issuance unavailable"


class CredentialStoreUnavailable(AuthError):  # noqa: N818
    """Raised when the credential store times out or fails. A timeout is not an
    authentication failure and never touches lockout state."""

    error_code = 503
    description = "Authentication temporarily unavailable"


class RequestCancelled(AuthError):  # noqa: N818
    """Raised when the request's deadline passed or it was cancelled before a
    state transition began."""

    error_code = 503
    description = "Request cancelled"
