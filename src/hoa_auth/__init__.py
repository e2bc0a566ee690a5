"""
Token-based authentication and authorization for the HOA community portal.

High-level flow
---------------
1. ``AuthService.login`` checks lockout, verifies the password against the
   external CredentialStore and either raises ``MfaRequired`` (answer with
   ``verify_mfa``) or returns a ``TokenPair``.
2. The access token is a short-lived JWS signed by the ``KeyRing``'s current
   key (``kid`` in the header) and carries ``sub, roles, permissions, epoch,
   iat, exp, iss, aud, jti``.
3. ``AuthExtension.require(policy)`` protects Flask views: the token is
   validated by ``TokenValidator`` and the policy evaluated by
   ``PermissionEvaluator``; claims land in ``flask.g.jwt``.
4. ``AuthService.refresh_token`` exchanges the single-use refresh token.
   Presenting a consumed token again burns the whole chain.
5. ``AuthService.logout`` blacklists the access token and revokes the chain;
   ``all_devices=True`` bumps the user's epoch.

Security notes
--------------
- Only asymmetric algorithms (RS256, ES256) are issued or accepted.
- Refresh tokens are stored as SHA-256 hashes only.
- Epoch lookups are never cached, so a bump applies to the next request.
- Lockout, MFA and link state changes are single atomic store operations.

Example usage
-------------

.. code-block:: python

    from hoa_auth import AuthExtension, RequireRole, Role, Settings, build_service

    service = build_service(Settings(), credentials=my_store, secrets=my_totp)
    auth = AuthExtension(service.validator, service.evaluator)

    @app.get("/board/minutes")
    @auth.require(RequireRole(Role.RESIDENT))
    def minutes():
        return {"sub": g.jwt["sub"]}
"""

# Authorization
from .authorization import (
    AllOf,
    AnyOf,
    ClaimAccess,
    ClaimsMapping,
    Decision,
    PermissionEvaluator,
    Policy,
    RequireOwner,
    RequirePermission,
    RequireRole,
)

# Configuration
from .config import Settings, TokenOptions, get_settings

# Request context
from .context import RequestContext

# Errors
from .errors import (
    AccountLocked,
    AuthError,
    CredentialStoreUnavailable,
    EpochRevoked,
    ExternalLinkConflict,
    InvalidCredentials,
    InvalidSignature,
    InvalidToken,
    KeySigningUnavailable,
    MfaAttemptsExhausted,
    MfaChallengeExpired,
    MfaError,
    MfaInvalidCode,
    MfaRequired,
    MissingToken,
    PermissionDenied,
    RateLimitExceeded,
    RequestCancelled,
    TokenExpired,
    TokenReuseDetected,
    TokenRevoked,
)

# External identities
from .external import (
    AppleIdentityProvider,
    ExternalIdentityLinker,
    GoogleIdentityProvider,
    MicrosoftIdentityProvider,
)

# Extractors
from .extractors import BearerExtractor, CookieExtractor, FallbackExtractor

# Flask extension
from .flask_extension import AuthExtension, request_context

# Gates
from .gates import CircuitBreaker, RateGate

# Tokens
from .issuer import TokenIssuer
from .keyring import KeyRing
from .lockout import LockoutPolicy

# Logging
from .logging import configure_logging, get_logger
from .mfa import MfaChallengeManager

# Models
from .models import (
    ExternalIdentityLink,
    ExternalProfile,
    Provider,
    RefreshStatus,
    Role,
    TokenPair,
    UserClaims,
)

# Protocols
from .protocols import (
    Authorizer,
    Claims,
    CredentialStore,
    Extractor,
    IdentityProvider,
    KeyProvider,
    Notifier,
    TokenVerifier,
    TotpSecretResolver,
)
from .refresh import RefreshTokenRotator
from .revocation import RevocationRegistry

# Service
from .service import AuthService, build_service
from .verifier import TokenValidator

__all__ = [
    # Errors
    "AccountLocked",
    "AuthError",
    "CredentialStoreUnavailable",
    "EpochRevoked",
    "ExternalLinkConflict",
    "InvalidCredentials",
    "InvalidSignature",
    "InvalidToken",
    "KeySigningUnavailable",
    "MfaAttemptsExhausted",
    "MfaChallengeExpired",
    "MfaError",
    "MfaInvalidCode",
    "MfaRequired",
    "MissingToken",
    "PermissionDenied",
    "RateLimitExceeded",
    "RequestCancelled",
    "TokenExpired",
    "TokenReuseDetected",
    "TokenRevoked",
    # Protocols
    "Authorizer",
    "Claims",
    "CredentialStore",
    "Extractor",
    "IdentityProvider",
    "KeyProvider",
    "Notifier",
    "TokenVerifier",
    "TotpSecretResolver",
    # Models
    "ExternalIdentityLink",
    "ExternalProfile",
    "Provider",
    "RefreshStatus",
    "Role",
    "TokenPair",
    "UserClaims",
    # Configuration
    "Settings",
    "TokenOptions",
    "get_settings",
    # Logging
    "configure_logging",
    "get_logger",
    # Request context
    "RequestContext",
    # Tokens
    "KeyRing",
    "RevocationRegistry",
    "TokenIssuer",
    "TokenValidator",
    "RefreshTokenRotator",
    # Lockout and MFA
    "LockoutPolicy",
    "MfaChallengeManager",
    # External identities
    "AppleIdentityProvider",
    "ExternalIdentityLinker",
    "GoogleIdentityProvider",
    "MicrosoftIdentityProvider",
    # Authorization
    "AllOf",
    "AnyOf",
    "ClaimAccess",
    "ClaimsMapping",
    "Decision",
    "PermissionEvaluator",
    "Policy",
    "RequireOwner",
    "RequirePermission",
    "RequireRole",
    # Gates
    "CircuitBreaker",
    "RateGate",
    # Extractors
    "BearerExtractor",
    "CookieExtractor",
    "FallbackExtractor",
    # Flask extension
    "AuthExtension",
    "request_context",
    # Service
    "AuthService",
    "build_service",
]
