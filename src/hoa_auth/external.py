"""External identity providers and account linking.

Providers
---------
Each supported provider (Google, Microsoft, Apple) is its own class that
satisfies the ``IdentityProvider`` protocol: ``exchange_code(code) ->
ExternalProfile``. They share the HTTP helper below but not a base class.
``ExternalIdentityLinker.provider(name)`` selects one by ``Provider`` enum at
the login boundary.

Linking
-------
``link_or_create`` resolves an external identity to a local account:

1) Existing link for (provider, provider_user_id) -> that account.
2) Profile email matches a local account -> the link is parked and
   ExternalLinkConflict is raised. The local account holder must confirm
   it (``confirm_link``) after signing in; a spoofed email at the provider
   therefore cannot take over an account.
3) Otherwise a pending account is created and linked.

Concurrent first-link attempts for the same external identity are
serialized per identity in-process, and ``insert_if_absent`` settles races
across processes: the loser discards the account it created and returns the
winner's, so both callers see the same user and only one account remains.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections.abc import Mapping
from typing import Any

import httpx
import jwt
from jwt import PyJWKClient

from .errors import ExternalLinkConflict, InvalidCredentials, PermissionDenied
from .logging import get_logger
from .models import ExternalIdentityLink, ExternalProfile, PendingLink, Provider, UserClaims
from .protocols import CredentialStore, IdentityLinkStore, IdentityProvider

logger = get_logger(__name__)

_HTTP_TIMEOUT = 10.0


def _exchange_authorization_code(
    client: httpx.Client,
    token_url: str,
    *,
    code: str,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
) -> dict[str, Any]:
    """POST the authorization-code grant and return the token response.

    Raises:
        InvalidCredentials: The provider rejected the code or answered garbage.
    """
    try:
        response = client.post(
            token_url,
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        payload = response.json()
    except httpx.HTTPStatusError as e:
        logger.error(
            "oauth_exchange_http_error", token_url=token_url, status_code=e.response.status_code
        )
        raise InvalidCredentials("External sign-in failed") from e
    except (httpx.HTTPError, ValueError) as e:
        logger.error("oauth_exchange_error", token_url=token_url, error=str(e))
        raise InvalidCredentials("External sign-in failed") from e

    if not isinstance(payload, dict):
        raise InvalidCredentials("External sign-in failed")
    return payload


def _get_json(client: httpx.Client, url: str, access_token: str) -> dict[str, Any]:
    try:
        response = client.get(url, headers={"Authorization": f"Bearer {access_token}"})
        response.raise_for_status()
        payload = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error("oauth_userinfo_error", url=url, error=str(e))
        raise InvalidCredentials("External sign-in failed") from e
    if not isinstance(payload, dict):
        raise InvalidCredentials("External sign-in failed")
    return payload


class GoogleIdentityProvider:
    """Google OAuth 2.0 / OpenID Connect."""

    provider = Provider.GOOGLE
    token_url = "https://oauth2.googleapis.com/token"
    userinfo_url = "https://openidconnect.googleapis.com/v1/userinfo"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._http = http_client or httpx.Client(timeout=_HTTP_TIMEOUT, follow_redirects=False)

    def exchange_code(self, code: str) -> ExternalProfile:
        tokens = _exchange_authorization_code(
            self._http,
            self.token_url,
            code=code,
            client_id=self._client_id,
            client_secret=self._client_secret,
            redirect_uri=self._redirect_uri,
        )
        access_token = tokens.get("access_token")
        if not access_token:
            raise InvalidCredentials("External sign-in failed")
        info = _get_json(self._http, self.userinfo_url, access_token)
        subject = info.get("sub")
        if not subject:
            raise InvalidCredentials("External sign-in failed")
        return ExternalProfile(
            provider=self.provider,
            provider_user_id=str(subject),
            email=info.get("email"),
            email_verified=bool(info.get("email_verified", False)),
            display_name=info.get("name"),
        )


class MicrosoftIdentityProvider:
    """Microsoft identity platform (Entra ID) with Graph ``/me`` for the profile."""

    provider = Provider.MICROSOFT
    token_url = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    userinfo_url = "https://graph.microsoft.com/v1.0/me"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._http = http_client or httpx.Client(timeout=_HTTP_TIMEOUT, follow_redirects=False)

    def exchange_code(self, code: str) -> ExternalProfile:
        tokens = _exchange_authorization_code(
            self._http,
            self.token_url,
            code=code,
            client_id=self._client_id,
            client_secret=self._client_secret,
            redirect_uri=self._redirect_uri,
        )
        access_token = tokens.get("access_token")
        if not access_token:
            raise InvalidCredentials("External sign-in failed")
        info = _get_json(self._http, self.userinfo_url, access_token)
        subject = info.get("id")
        if not subject:
            raise InvalidCredentials("External sign-in failed")
        # Graph does not report verification; treat the address as unverified.
        return ExternalProfile(
            provider=self.provider,
            provider_user_id=str(subject),
            email=info.get("mail") or info.get("userPrincipalName"),
            email_verified=False,
            display_name=info.get("displayName"),
        )


class AppleIdentityProvider:
    """Sign in with Apple.

    Apple returns no userinfo endpoint; the profile comes from the signed
    ``id_token`` in the token response, verified against Apple's JWKS.
    """

    provider = Provider.APPLE
    token_url = "https://appleid.apple.com/auth/token"
    issuer = "https://appleid.apple.com"
    jwks_url = "https://appleid.apple.com/auth/keys"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        http_client: httpx.Client | None = None,
        jwk_client: PyJWKClient | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._http = http_client or httpx.Client(timeout=_HTTP_TIMEOUT, follow_redirects=False)
        self._jwks = jwk_client or PyJWKClient(self.jwks_url, cache_jwk_set=True, lifespan=3600)

    def exchange_code(self, code: str) -> ExternalProfile:
        tokens = _exchange_authorization_code(
            self._http,
            self.token_url,
            code=code,
            client_id=self._client_id,
            client_secret=self._client_secret,
            redirect_uri=self._redirect_uri,
        )
        id_token = tokens.get("id_token")
        if not id_token:
            raise InvalidCredentials("External sign-in failed")
        try:
            signing_key = self._jwks.get_signing_key_from_jwt(id_token)
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self._client_id,
                issuer=self.issuer,
                options={"require": ["sub", "iss", "aud", "exp"]},
            )
        except jwt.PyJWTError as e:
            logger.error("apple_id_token_invalid", error=str(e))
            raise InvalidCredentials("External sign-in failed") from e

        verified = claims.get("email_verified")
        return ExternalProfile(
            provider=self.provider,
            provider_user_id=str(claims["sub"]),
            email=claims.get("email"),
            email_verified=verified is True or verified == "true",
            display_name=None,
        )


class ExternalIdentityLinker:
    """Maps external identities to local accounts.

    Args:
        links: Link store (unique on provider + provider_user_id).
        credentials: Account store used to look up and create accounts.
        providers: Configured providers, keyed by enum.
        confirmation_ttl: Seconds a parked link waits for confirmation.
    """

    def __init__(
        self,
        links: IdentityLinkStore,
        credentials: CredentialStore,
        providers: Mapping[Provider, IdentityProvider] | None = None,
        confirmation_ttl: float = 15 * 60,
    ) -> None:
        self._links = links
        self._credentials = credentials
        self._providers = dict(providers or {})
        self._confirmation_ttl = confirmation_ttl
        self._guard = threading.Lock()
        self._key_locks: dict[tuple[Provider, str], threading.Lock] = {}

    def provider(self, name: Provider | str) -> IdentityProvider:
        """Select the configured provider for ``name``.

        Raises:
            InvalidCredentials: Unknown or unconfigured provider.
        """
        try:
            key = Provider(name)
        except ValueError as e:
            raise InvalidCredentials("Unsupported identity provider") from e
        provider = self._providers.get(key)
        if provider is None:
            raise InvalidCredentials("Unsupported identity provider")
        return provider

    def link_or_create(
        self, provider: Provider, provider_user_id: str, profile: ExternalProfile
    ) -> UserClaims:
        """Resolve an external identity to a local account.

        Raises:
            ExternalLinkConflict: The email belongs to an existing local
                account; confirmation is required.
        """
        existing = self._links.get(provider, provider_user_id)
        if existing is not None:
            return self._credentials.get_user_claims(existing.user_id)

        with self._lock_for((provider, provider_user_id)):
            existing = self._links.get(provider, provider_user_id)
            if existing is not None:
                return self._credentials.get_user_claims(existing.user_id)

            if profile.email:
                local = self._credentials.find_by_email(profile.email)
                if local is not None:
                    pending = PendingLink(
                        confirmation_id=uuid.uuid4().hex,
                        provider=provider,
                        provider_user_id=provider_user_id,
                        user_id=local.user_id,
                        expires_at=time.time() + self._confirmation_ttl,
                    )
                    self._links.add_pending(pending)
                    logger.warning(
                        "external_link_requires_confirmation",
                        provider=str(provider),
                        user_id=local.user_id,
                    )
                    raise ExternalLinkConflict(pending.confirmation_id)

            created = self._credentials.create_pending_account(profile)
            link = ExternalIdentityLink(
                provider=provider,
                provider_user_id=provider_user_id,
                user_id=created.user_id,
                linked_at=time.time(),
            )
            winner = self._links.insert_if_absent(link)
            if winner.user_id != created.user_id:
                self._credentials.discard_pending_account(created.user_id)
                logger.info(
                    "external_link_race_lost", provider=str(provider), user_id=winner.user_id
                )
                return self._credentials.get_user_claims(winner.user_id)

            logger.info("external_account_created", provider=str(provider), user_id=created.user_id)
            return created

    def confirm_link(self, confirmation_id: str, user_id: str) -> ExternalIdentityLink:
        """Complete a parked link on behalf of the signed-in local account.

        Raises:
            PermissionDenied: Unknown or expired confirmation, a different
                account, or the identity got linked elsewhere meanwhile.
        """
        pending = self._links.get_pending(confirmation_id)
        if pending is None or pending.expires_at < time.time():
            raise PermissionDenied("Link confirmation expired")
        if pending.user_id != user_id:
            raise PermissionDenied()
        if self._links.pop_pending(confirmation_id) is None:
            # Confirmed concurrently.
            raise PermissionDenied("Link confirmation expired")

        link = ExternalIdentityLink(
            provider=pending.provider,
            provider_user_id=pending.provider_user_id,
            user_id=user_id,
            linked_at=time.time(),
        )
        winner = self._links.insert_if_absent(link)
        if winner.user_id != user_id:
            raise PermissionDenied()
        logger.info("external_link_confirmed", provider=str(pending.provider), user_id=user_id)
        return winner

    def _lock_for(self, key: tuple[Provider, str]) -> threading.Lock:
        with self._guard:
            lock = self._key_locks.get(key)
            if lock is None:
                if len(self._key_locks) >= 4096:
                    self._key_locks = {k: v for k, v in self._key_locks.items() if v.locked()}
                lock = self._key_locks[key] = threading.Lock()
            return lock
