"""The operations the web layer calls.

``AuthService`` wires the components together and owns nothing else: every
piece of state lives in an injected store. Construct it directly for full
control, or with ``build_service(settings, credentials, ...)`` for the
default in-memory (plus optional Redis revocation) setup.

Operations
----------
- ``login``: lockout pre-check, password check, lockout bookkeeping, then
  either an MFA challenge (``MfaRequired``) or a token pair.
- ``refresh_token``: single-use rotation with reuse detection.
- ``logout``: blacklist the access token, revoke the refresh chain, and for
  ``all_devices`` bump the epoch and revoke every chain of the user.
- ``verify_mfa``: answer a challenge and receive the token pair.
- ``external_login_callback``: provider code exchange, link-or-create, pair.
- ``authorize``: validate an access token and evaluate a policy.

Every login attempt is written to the audit log as a ``login_attempt`` event.
"""

from __future__ import annotations

import math
import time
from typing import Any

import redis

from .authorization import PermissionEvaluator, Policy
from .config import Settings
from .context import RequestContext, background
from .errors import AccountLocked, CredentialStoreUnavailable, InvalidCredentials, MfaRequired
from .external import (
    AppleIdentityProvider,
    ExternalIdentityLinker,
    GoogleIdentityProvider,
    MicrosoftIdentityProvider,
)
from .gates import CircuitBreaker, RateGate
from .issuer import TokenIssuer, hash_refresh_token
from .keyring import KeyRing
from .lockout import LockoutPolicy
from .logging import get_logger
from .mfa import MfaChallengeManager
from .models import ExternalIdentityLink, Provider, TokenPair, UserClaims
from .protocols import (
    Claims,
    CredentialStore,
    IdentityProvider,
    Notifier,
    RefreshTokenStore,
    RevocationStore,
    TotpSecretResolver,
)
from .refresh import RefreshTokenRotator, notify_security_event
from .revocation import RevocationRegistry
from .stores import (
    InMemoryIdentityLinkStore,
    InMemoryLockoutStore,
    InMemoryMfaChallengeStore,
    InMemoryRefreshTokenStore,
    InMemoryRevocationStore,
    RedisRevocationStore,
)
from .verifier import TokenValidator

logger = get_logger(__name__)


class AuthService:
    """Facade over the auth components.

    Args:
        credentials: External account store.
        keyring: Signing keys (also serves ``jwks()``).
        issuer: Mints token pairs.
        validator: Verifies access tokens.
        rotator: Exchanges refresh tokens.
        revocation: Epochs and blacklist.
        refresh_store: Refresh record arena (for logout revocation).
        lockout: Per-identifier lockout policy.
        mfa: Second-factor challenges.
        linker: External identity linking.
        evaluator: Policy evaluation.
        notifier: Security event sink.
    """

    def __init__(
        self,
        *,
        credentials: CredentialStore,
        keyring: KeyRing,
        issuer: TokenIssuer,
        validator: TokenValidator,
        rotator: RefreshTokenRotator,
        revocation: RevocationRegistry,
        refresh_store: RefreshTokenStore,
        lockout: LockoutPolicy,
        mfa: MfaChallengeManager,
        linker: ExternalIdentityLinker,
        evaluator: PermissionEvaluator | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._credentials = credentials
        self._keyring = keyring
        self._issuer = issuer
        self._validator = validator
        self._rotator = rotator
        self._revocation = revocation
        self._refresh_store = refresh_store
        self._lockout = lockout
        self._mfa = mfa
        self._linker = linker
        self._evaluator = evaluator or PermissionEvaluator()
        self._notifier = notifier

    @property
    def validator(self) -> TokenValidator:
        return self._validator

    @property
    def evaluator(self) -> PermissionEvaluator:
        return self._evaluator

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(
        self,
        identifier: str,
        password: str,
        device_id: str,
        ctx: RequestContext | None = None,
    ) -> TokenPair:
        """Authenticate with identifier and password.

        Raises:
            AccountLocked: The identifier is locked, or this failure locked it.
            InvalidCredentials: Wrong identifier or password.
            CredentialStoreUnavailable: The credential store failed; lockout
                state is left untouched.
            MfaRequired: Password verified, second factor pending.
            RateLimitExceeded: A challenge was issued too recently.
            KeySigningUnavailable: Tokens cannot be signed.
            RequestCancelled: Deadline passed before a state change began.
        """
        ctx = ctx or background()
        ctx.check()

        decision = self._lockout.check(identifier)
        if not decision.allowed:
            self._audit(identifier, ctx, success=False, reason="locked")
            raise AccountLocked(locked_until=decision.locked_until_dt)

        try:
            claims = self._credentials.verify_password(identifier, password)
        except (TimeoutError, OSError) as e:
            self._audit(identifier, ctx, success=False, reason="credential_store_unavailable")
            raise CredentialStoreUnavailable() from e

        ctx.check()
        decision = self._lockout.record_attempt(identifier, success=claims is not None)

        if claims is None:
            reason = "invalid_credentials" if decision.allowed else "invalid_credentials_locked"
            self._audit(identifier, ctx, success=False, reason=reason)
            if not decision.allowed:
                raise AccountLocked(locked_until=decision.locked_until_dt)
            raise InvalidCredentials()

        if not decision.allowed:
            # Locked by a concurrent attempt between the pre-check and now.
            self._audit(identifier, ctx, success=False, reason="locked", user_id=claims.user_id)
            raise AccountLocked(locked_until=decision.locked_until_dt)

        if claims.mfa_enabled:
            challenge_id = self._mfa.issue_challenge(claims.user_id, device_id)
            self._audit(identifier, ctx, success=True, reason="mfa_required", user_id=claims.user_id)
            raise MfaRequired(challenge_id)

        pair = self._issuer.issue_token_pair(claims, device_id)
        self._audit(identifier, ctx, success=True, user_id=claims.user_id)
        return pair

    def verify_mfa(
        self, challenge_id: str, code: str, ctx: RequestContext | None = None
    ) -> TokenPair:
        """Answer a login's second-factor challenge and receive the token pair.

        Raises:
            MfaInvalidCode, MfaChallengeExpired, MfaAttemptsExhausted
        """
        ctx = ctx or background()
        ctx.check()
        challenge = self._mfa.verify(challenge_id, code)
        claims = self._load_claims(challenge.user_id)
        return self._issuer.issue_token_pair(claims, challenge.device_id or "")

    def external_login_callback(
        self,
        provider: Provider | str,
        code: str,
        device_id: str,
        ctx: RequestContext | None = None,
    ) -> TokenPair:
        """Finish an external sign-in.

        Raises:
            InvalidCredentials: Unknown provider or rejected code.
            ExternalLinkConflict: Email belongs to a local account; confirm first.
            MfaRequired: The linked account has MFA enabled.
        """
        ctx = ctx or background()
        ctx.check()
        idp = self._linker.provider(provider)
        profile = idp.exchange_code(code)

        ctx.check()
        claims = self._linker.link_or_create(idp.provider, profile.provider_user_id, profile)
        logger.info(
            "external_login",
            provider=str(idp.provider),
            user_id=claims.user_id,
            ip_address=ctx.ip_address,
        )
        if claims.mfa_enabled:
            raise MfaRequired(self._mfa.issue_challenge(claims.user_id, device_id))
        return self._issuer.issue_token_pair(claims, device_id)

    def confirm_external_link(self, access_token: str, confirmation_id: str) -> ExternalIdentityLink:
        """Let the signed-in holder of a local account accept a parked link."""
        claims = self._validator.validate(access_token)
        return self._linker.confirm_link(confirmation_id, claims["sub"])

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def refresh_token(
        self, refresh_token: str, device_id: str, ctx: RequestContext | None = None
    ) -> TokenPair:
        return self._rotator.rotate(refresh_token, device_id, ctx)

    def logout(
        self,
        access_token: str,
        refresh_token: str | None = None,
        all_devices: bool = False,
    ) -> None:
        """End a session.

        The access token's id is blacklisted for the rest of its life. The
        refresh chain the given refresh token belongs to is revoked, provided
        it is the same user's. ``all_devices`` also bumps the epoch and
        revokes every refresh record of the user.
        """
        claims = self._validator.validate(access_token)
        user_id = claims["sub"]

        remaining = math.ceil(claims["exp"] - time.time())
        if remaining > 0:
            self._revocation.blacklist_token(claims["jti"], remaining)

        records_revoked = 0
        if refresh_token:
            record = self._refresh_store.get(hash_refresh_token(refresh_token))
            if record is not None and record.user_id == user_id:
                records_revoked = self._refresh_store.revoke_chain(record.chain_id)

        if all_devices:
            self._revocation.bump_epoch(user_id, reason="logout_all")
            records_revoked += self._refresh_store.revoke_user(user_id)

        logger.info(
            "logout",
            user_id=user_id,
            token_id=claims["jti"],
            all_devices=all_devices,
            records_revoked=records_revoked,
        )

    def authorize(
        self,
        access_token: str,
        policy: Policy,
        resource_owner: str | None = None,
        ctx: RequestContext | None = None,
    ) -> Claims:
        """Validate ``access_token`` and enforce ``policy``; return the claims.

        Raises:
            InvalidToken: (or a subclass) The token is not acceptable.
            PermissionDenied: The policy denies.
        """
        if ctx is not None:
            ctx.check()
        claims = self._validator.validate(access_token)
        self._evaluator.authorize(claims, policy, resource_owner=resource_owner)
        return claims

    def on_password_changed(self, user_id: str) -> None:
        """Invalidate every session of ``user_id`` after a credential change."""
        self._revocation.bump_epoch(user_id, reason="password_changed")
        revoked = self._refresh_store.revoke_user(user_id)
        logger.info("password_changed_sessions_revoked", user_id=user_id, revoked=revoked)
        notify_security_event(self._notifier, user_id, "password_changed")

    def jwks(self) -> dict[str, list[dict[str, Any]]]:
        return self._keyring.jwks()

    def purge_expired(self) -> int:
        return self._refresh_store.purge_expired(time.time())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_claims(self, user_id: str) -> UserClaims:
        try:
            return self._credentials.get_user_claims(user_id)
        except (TimeoutError, OSError) as e:
            raise CredentialStoreUnavailable() from e

    @staticmethod
    def _audit(
        identifier: str,
        ctx: RequestContext,
        *,
        success: bool,
        reason: str | None = None,
        user_id: str | None = None,
    ) -> None:
        log = logger.info if success else logger.warning
        log(
            "login_attempt",
            identifier=identifier,
            user_id=user_id,
            success=success,
            failure_reason=None if success else reason,
            outcome=reason if success else None,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )


def _configured_providers(settings: Settings) -> dict[Provider, IdentityProvider]:
    providers: dict[Provider, IdentityProvider] = {}
    redirect = settings.oauth_redirect_uri
    if settings.google_client_id:
        providers[Provider.GOOGLE] = GoogleIdentityProvider(
            settings.google_client_id, settings.google_client_secret, redirect
        )
    if settings.microsoft_client_id:
        providers[Provider.MICROSOFT] = MicrosoftIdentityProvider(
            settings.microsoft_client_id, settings.microsoft_client_secret, redirect
        )
    if settings.apple_client_id:
        providers[Provider.APPLE] = AppleIdentityProvider(
            settings.apple_client_id, settings.apple_client_secret, redirect
        )
    return providers


def build_service(
    settings: Settings,
    credentials: CredentialStore,
    secrets: TotpSecretResolver,
    *,
    notifier: Notifier | None = None,
    redis_client: Any = None,
    providers: dict[Provider, IdentityProvider] | None = None,
    keyring: KeyRing | None = None,
) -> AuthService:
    """Assemble an AuthService from settings.

    Revocation state goes to Redis when a client is passed or
    ``settings.redis_url`` is set, otherwise it stays in process. All other
    state is in process.
    """
    options = settings.token_options()

    if keyring is None:
        keyring = KeyRing(
            algorithm=settings.algorithm,
            rotation_interval=settings.key_rotation_seconds,
            overlap=settings.key_overlap_seconds,
        )
        keyring.rotate()

    if redis_client is None and settings.redis_url:
        redis_client = redis.Redis.from_url(settings.redis_url)
    revocation_store: RevocationStore = (
        RedisRevocationStore(redis_client) if redis_client is not None else InMemoryRevocationStore()
    )
    revocation = RevocationRegistry(revocation_store, blacklist_ttl=options.access_ttl)

    refresh_store = InMemoryRefreshTokenStore()
    issuer = TokenIssuer(
        keyring,
        revocation,
        refresh_store,
        options,
        breaker=CircuitBreaker(
            failure_threshold=settings.breaker_failure_threshold,
            reset_timeout=settings.breaker_reset_seconds,
        ),
    )
    validator = TokenValidator(keyring, revocation, options)
    rotator = RefreshTokenRotator(refresh_store, issuer, credentials, revocation, notifier)
    lockout = LockoutPolicy(
        InMemoryLockoutStore(),
        threshold=settings.lockout_threshold,
        window=settings.lockout_window_seconds,
        base_duration=settings.lockout_base_seconds,
        max_duration=settings.lockout_max_seconds,
    )
    mfa = MfaChallengeManager(
        InMemoryMfaChallengeStore(),
        secrets,
        ttl=settings.mfa_ttl_seconds,
        max_attempts=settings.mfa_max_attempts,
        issue_gate=RateGate(min_interval=settings.mfa_issue_interval_seconds),
    )
    linker = ExternalIdentityLinker(
        InMemoryIdentityLinkStore(),
        credentials,
        providers if providers is not None else _configured_providers(settings),
        confirmation_ttl=settings.link_confirmation_ttl_seconds,
    )

    return AuthService(
        credentials=credentials,
        keyring=keyring,
        issuer=issuer,
        validator=validator,
        rotator=rotator,
        revocation=revocation,
        refresh_store=refresh_store,
        lockout=lockout,
        mfa=mfa,
        linker=linker,
        notifier=notifier,
    )
