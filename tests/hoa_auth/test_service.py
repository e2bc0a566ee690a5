"""
Tests for AuthService: the operations the web layer calls.
"""

import httpx
import pytest
from structlog.testing import capture_logs

import hoa_auth as m
from hoa_auth import RequireOwner, RequirePermission, RequireRole, Role
from hoa_auth.models import Provider


class TestLogin:
    def test_success_returns_valid_pair(self, service):
        pair = service.login("alice@hoa.test", "correct horse", "laptop")
        claims = service.validator.validate(pair.access_token)
        assert claims["sub"] == "u-alice"
        assert pair.token_type == "Bearer"

    def test_wrong_password(self, service):
        with pytest.raises(m.InvalidCredentials):
            service.login("alice@hoa.test", "wrong", "laptop")

    def test_unknown_user_looks_like_wrong_password(self, service):
        with pytest.raises(m.InvalidCredentials) as exc:
            service.login("nobody@hoa.test", "whatever", "laptop")
        assert exc.value.description == "Invalid credentials"

    def test_lockout_after_five_failures(self, service):
        for _ in range(4):
            with pytest.raises(m.InvalidCredentials):
                service.login("alice@hoa.test", "wrong", "laptop")
        with pytest.raises(m.AccountLocked) as exc:
            service.login("alice@hoa.test", "wrong", "laptop")
        assert exc.value.locked_until is not None
        assert exc.value.error_code == 423

        # Even the right password is refused while locked.
        with pytest.raises(m.AccountLocked):
            service.login("alice@hoa.test", "correct horse", "laptop")

    def test_credential_store_timeout_does_not_count_as_failure(self, service, credentials):
        credentials.fail_with = TimeoutError("db timeout")
        for _ in range(10):
            with pytest.raises(m.CredentialStoreUnavailable):
                service.login("alice@hoa.test", "correct horse", "laptop")

        credentials.fail_with = None
        assert service.login("alice@hoa.test", "correct horse", "laptop").access_token

    def test_cancelled_request(self, service):
        ctx = m.RequestContext()
        ctx.cancel()
        with pytest.raises(m.RequestCancelled):
            service.login("alice@hoa.test", "correct horse", "laptop", ctx)

    def test_login_attempts_are_audited(self, service):
        ctx = m.RequestContext(ip_address="203.0.113.9", user_agent="Firefox")
        with capture_logs() as logs:
            service.login("alice@hoa.test", "correct horse", "laptop", ctx)
            with pytest.raises(m.InvalidCredentials):
                service.login("alice@hoa.test", "nope", "laptop", ctx)

        attempts = [e for e in logs if e["event"] == "login_attempt"]
        assert [(e["success"], e["failure_reason"]) for e in attempts] == [
            (True, None),
            (False, "invalid_credentials"),
        ]
        assert all(e["ip_address"] == "203.0.113.9" for e in attempts)
        assert all(e["user_agent"] == "Firefox" for e in attempts)
        assert all("password" not in e for e in attempts)


class TestMfaLogin:
    def test_mfa_flow(self, service, totp_secrets):
        totp = totp_secrets.enroll("u-bob")

        with pytest.raises(m.MfaRequired) as exc:
            service.login("bob@hoa.test", "battery staple", "phone")

        pair = service.verify_mfa(exc.value.challenge_id, totp.now())
        claims = service.validator.validate(pair.access_token)
        assert claims["sub"] == "u-bob"
        # Tokens are bound to the device that started the login.
        assert service.refresh_token(pair.refresh_token, "phone").access_token

    def test_wrong_code(self, service, totp_secrets, wrong_code):
        totp = totp_secrets.enroll("u-bob")
        with pytest.raises(m.MfaRequired) as exc:
            service.login("bob@hoa.test", "battery staple", "phone")
        with pytest.raises(m.MfaInvalidCode):
            service.verify_mfa(exc.value.challenge_id, wrong_code(totp))

    def test_mfa_without_enrollment(self, service):
        with pytest.raises(m.MfaError):
            service.login("bob@hoa.test", "battery staple", "phone")


class TestLogout:
    def test_logout_revokes_token_and_chain(self, service):
        pair = service.login("alice@hoa.test", "correct horse", "laptop")
        other = service.login("alice@hoa.test", "correct horse", "phone")

        service.logout(pair.access_token, pair.refresh_token)

        with pytest.raises(m.TokenRevoked):
            service.validator.validate(pair.access_token)
        with pytest.raises(m.TokenReuseDetected):
            service.refresh_token(pair.refresh_token, "laptop")
        # The other device is untouched.
        assert service.validator.validate(other.access_token)["sub"] == "u-alice"
        assert service.refresh_token(other.refresh_token, "phone").access_token

    def test_cannot_revoke_someone_elses_chain(self, service):
        alice = service.login("alice@hoa.test", "correct horse", "laptop")
        carol = service.login("carol@hoa.test", "admin pass", "desk")

        service.logout(alice.access_token, carol.refresh_token)
        assert service.refresh_token(carol.refresh_token, "desk").access_token

    def test_logout_all_devices(self, service):
        laptop = service.login("alice@hoa.test", "correct horse", "laptop")
        phone = service.login("alice@hoa.test", "correct horse", "phone")

        service.logout(laptop.access_token, all_devices=True)

        with pytest.raises(m.InvalidToken):
            service.validator.validate(phone.access_token)
        with pytest.raises(m.TokenReuseDetected):
            service.refresh_token(phone.refresh_token, "phone")
        # A fresh login works again.
        fresh = service.login("alice@hoa.test", "correct horse", "phone")
        assert service.validator.validate(fresh.access_token)["epoch"] == 1

    def test_logout_requires_valid_token(self, service):
        with pytest.raises(m.InvalidToken):
            service.logout("garbage")


class TestAccountEvents:
    def test_password_change_ends_every_session(self, service, notifier):
        pair = service.login("alice@hoa.test", "correct horse", "laptop")
        service.on_password_changed("u-alice")

        with pytest.raises(m.EpochRevoked):
            service.validator.validate(pair.access_token)
        with pytest.raises(m.TokenReuseDetected):
            service.refresh_token(pair.refresh_token, "laptop")
        assert ("u-alice", "password_changed") in notifier.events

    def test_purge_expired_keeps_live_chains(self, service):
        pair = service.login("alice@hoa.test", "correct horse", "laptop")
        assert service.purge_expired() == 0
        assert service.refresh_token(pair.refresh_token, "laptop").access_token

    def test_jwks(self, service, keyring):
        assert [k["kid"] for k in service.jwks()["keys"]] == [keyring.current().kid]


class TestAuthorize:
    def test_allows_and_returns_claims(self, service):
        pair = service.login("alice@hoa.test", "correct horse", "laptop")
        claims = service.authorize(pair.access_token, RequireRole(Role.RESIDENT))
        assert claims["sub"] == "u-alice"

    def test_denies(self, service):
        pair = service.login("alice@hoa.test", "correct horse", "laptop")
        with pytest.raises(m.PermissionDenied):
            service.authorize(pair.access_token, RequirePermission("financial.manage"))

    def test_resource_owner(self, service):
        pair = service.login("alice@hoa.test", "correct horse", "laptop")
        assert service.authorize(pair.access_token, RequireOwner(), resource_owner="u-alice")
        with pytest.raises(m.PermissionDenied):
            service.authorize(pair.access_token, RequireOwner(), resource_owner="u-carol")


def _google(sub: str, email: str | None):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"access_token": "at"})
        return httpx.Response(200, json={"sub": sub, "email": email, "email_verified": True})

    return m.GoogleIdentityProvider(
        "cid", "secret", "https://app/cb", http_client=httpx.Client(transport=httpx.MockTransport(handler))
    )


@pytest.fixture
def oauth_service(settings, credentials, totp_secrets, notifier, keyring):
    def build(provider):
        return m.build_service(
            settings,
            credentials,
            totp_secrets,
            notifier=notifier,
            keyring=keyring,
            providers={Provider.GOOGLE: provider},
        )

    return build


class TestExternalLogin:
    def test_new_identity_gets_pending_account(self, oauth_service, credentials):
        service = oauth_service(_google("g-77", "new@gmail.test"))
        pair = service.external_login_callback("google", "code", "tablet")

        claims = service.validator.validate(pair.access_token)
        assert claims["sub"] in credentials.created
        assert claims["roles"] == ["Guest"]

    def test_email_collision_then_confirmation(self, oauth_service):
        service = oauth_service(_google("g-alice", "alice@hoa.test"))
        with pytest.raises(m.ExternalLinkConflict) as exc:
            service.external_login_callback("google", "code", "tablet")
        assert exc.value.error_code == 409

        local = service.login("alice@hoa.test", "correct horse", "laptop")
        service.confirm_external_link(local.access_token, exc.value.confirmation_id)

        pair = service.external_login_callback(Provider.GOOGLE, "code", "tablet")
        assert service.validator.validate(pair.access_token)["sub"] == "u-alice"

    def test_unconfigured_provider(self, service):
        with pytest.raises(m.InvalidCredentials):
            service.external_login_callback("apple", "code", "tablet")


class TestBuildService:
    def test_redis_client_backs_revocation(self, settings, credentials, totp_secrets, fake_redis):
        service = m.build_service(settings, credentials, totp_secrets, redis_client=fake_redis, providers={})
        pair = service.login("alice@hoa.test", "correct horse", "laptop")

        service.on_password_changed("u-alice")
        assert fake_redis.get("hoa_auth:epoch:u-alice") == b"1"
        with pytest.raises(m.EpochRevoked):
            service.validator.validate(pair.access_token)

    def test_providers_from_settings(self, credentials, totp_secrets):
        settings = m.Settings(
            algorithm="ES256",
            google_client_id="gid",
            google_client_secret="gs",
            oauth_redirect_uri="https://app/cb",
        )
        service = m.build_service(settings, credentials, totp_secrets)
        with pytest.raises(m.InvalidCredentials):
            service.external_login_callback("microsoft", "code", "tablet")
        assert service.jwks()["keys"][0]["alg"] == "ES256"
