"""
Tests for TokenIssuer and TokenValidator.

Covers the claims round trip, expiry, signature/issuer/audience checks,
epoch revocation and the token blacklist.
"""

import time

import jwt
import pytest

import hoa_auth as m
from hoa_auth import gates
from hoa_auth.issuer import hash_refresh_token
from hoa_auth.stores import InMemoryRefreshTokenStore, InMemoryRevocationStore

ALICE = m.UserClaims(
    user_id="u-alice",
    roles=frozenset({"Resident"}),
    permissions=frozenset({"property.edit", "calendar.view"}),
)


class TestIssueAndValidate:
    def test_validate_returns_embedded_claims(self, issuer, validator, keyring, options):
        pair = issuer.issue_token_pair(ALICE, "dev-1")
        claims = validator.validate(pair.access_token)

        assert claims["sub"] == "u-alice"
        assert claims["roles"] == ["Resident"]
        assert claims["permissions"] == ["calendar.view", "property.edit"]
        assert claims["epoch"] == 0
        assert claims["iss"] == options.issuer
        assert claims["aud"] == options.audience
        assert claims["jti"] == pair.token_id
        assert claims["exp"] - claims["iat"] == 900

        header = jwt.get_unverified_header(pair.access_token)
        assert header["kid"] == keyring.current().kid
        assert header["alg"] == "ES256"
        assert header["typ"] == "JWT"

    def test_refresh_record_stores_only_the_hash(self, issuer, refresh_store):
        pair = issuer.issue_token_pair(ALICE, "dev-1")

        assert refresh_store.get(pair.refresh_token) is None
        record = refresh_store.get(hash_refresh_token(pair.refresh_token))
        assert record is not None
        assert record.status is m.RefreshStatus.ACTIVE
        assert record.parent_token_hash is None
        assert record.device_id == "dev-1"
        assert record.expires_at - record.issued_at == 14 * 24 * 3600
        assert pair.refresh_expires_at == record.expires_at

    def test_each_login_starts_a_new_chain(self, issuer, refresh_store):
        a = issuer.issue_token_pair(ALICE, "dev-1")
        b = issuer.issue_token_pair(ALICE, "dev-1")
        rec_a = refresh_store.get(hash_refresh_token(a.refresh_token))
        rec_b = refresh_store.get(hash_refresh_token(b.refresh_token))
        assert rec_a.chain_id != rec_b.chain_id

    def test_expired_token(self, issuer, validator):
        signed = issuer.sign_access_token(ALICE, now=time.time() - 2000)
        with pytest.raises(m.TokenExpired):
            validator.validate(signed.token)

    def test_leeway_accepts_slightly_expired_token(self, issuer, keyring, revocation, options):
        signed = issuer.sign_access_token(ALICE, now=time.time() - 905)
        lenient = m.TokenValidator(
            keyring,
            revocation,
            m.TokenOptions(
                issuer=options.issuer, audience=options.audience, algorithms=("ES256",), leeway=30
            ),
        )
        assert lenient.validate(signed.token)["sub"] == "u-alice"

    def test_tampered_signature(self, issuer, validator):
        a = issuer.sign_access_token(ALICE).token
        b = issuer.sign_access_token(m.UserClaims(user_id="u-mallory")).token
        forged = ".".join(b.split(".")[:2] + a.split(".")[2:])
        with pytest.raises(m.InvalidSignature):
            validator.validate(forged)

    def test_garbage_token(self, validator):
        with pytest.raises(m.InvalidToken):
            validator.validate("not-a-jwt")

    def test_token_without_kid(self, validator):
        token = jwt.encode({"sub": "x"}, "secret", algorithm="HS256")
        with pytest.raises(m.InvalidToken):
            validator.validate(token)

    def test_unknown_key(self, issuer, revocation, options):
        other_ring = m.KeyRing(algorithm="ES256")
        other_ring.rotate()
        validator = m.TokenValidator(other_ring, revocation, options)
        with pytest.raises(m.InvalidToken):
            validator.validate(issuer.sign_access_token(ALICE).token)

    def test_wrong_audience(self, issuer, keyring, revocation, options):
        validator = m.TokenValidator(
            keyring,
            revocation,
            m.TokenOptions(issuer=options.issuer, audience="other-api", algorithms=("ES256",)),
        )
        with pytest.raises(m.InvalidToken):
            validator.validate(issuer.sign_access_token(ALICE).token)

    def test_wrong_issuer(self, issuer, keyring, revocation, options):
        validator = m.TokenValidator(
            keyring,
            revocation,
            m.TokenOptions(issuer="https://evil/", audience=options.audience, algorithms=("ES256",)),
        )
        with pytest.raises(m.InvalidToken):
            validator.validate(issuer.sign_access_token(ALICE).token)

    def test_disallowed_algorithm(self, issuer, keyring, revocation, options):
        validator = m.TokenValidator(
            keyring,
            revocation,
            m.TokenOptions(issuer=options.issuer, audience=options.audience, algorithms=("RS256",)),
        )
        with pytest.raises(m.InvalidToken):
            validator.validate(issuer.sign_access_token(ALICE).token)


class TestRevocation:
    def test_epoch_bump_revokes_earlier_tokens_only(self, issuer, validator, revocation):
        before = issuer.sign_access_token(ALICE).token
        revocation.bump_epoch("u-alice")
        after = issuer.sign_access_token(ALICE).token

        with pytest.raises(m.EpochRevoked):
            validator.validate(before)
        assert validator.validate(after)["epoch"] == 1

    def test_epoch_bump_does_not_touch_other_users(self, issuer, validator, revocation):
        bob = issuer.sign_access_token(m.UserClaims(user_id="u-bob")).token
        revocation.bump_epoch("u-alice")
        assert validator.validate(bob)["sub"] == "u-bob"

    def test_blacklisted_token(self, issuer, validator, revocation):
        signed = issuer.sign_access_token(ALICE)
        other = issuer.sign_access_token(ALICE)
        revocation.blacklist_token(signed.token_id)

        with pytest.raises(m.TokenRevoked):
            validator.validate(signed.token)
        assert validator.validate(other.token)["jti"] == other.token_id


class TestSigningFailures:
    def test_no_key_means_no_side_effects(self, revocation, options):
        store = InMemoryRefreshTokenStore()
        issuer = m.TokenIssuer(
            m.KeyRing(algorithm="ES256"), revocation, store, options, auto_rotate=False
        )
        with pytest.raises(m.KeySigningUnavailable):
            issuer.issue_token_pair(ALICE, "dev-1")
        assert store.purge_expired(float("inf")) == 0

    def test_breaker_opens_after_repeated_failures(self, revocation, options):
        breaker = m.CircuitBreaker(failure_threshold=3, reset_timeout=60)
        issuer = m.TokenIssuer(
            m.KeyRing(algorithm="ES256"),
            revocation,
            InMemoryRefreshTokenStore(),
            options,
            breaker=breaker,
            auto_rotate=False,
        )
        for _ in range(3):
            with pytest.raises(m.KeySigningUnavailable):
                issuer.sign_access_token(ALICE)
        assert breaker.is_open
        with pytest.raises(m.KeySigningUnavailable):
            issuer.sign_access_token(ALICE)

    def test_auto_rotate_mints_first_key(self, options):
        ring = m.KeyRing(algorithm="ES256")
        revocation = m.RevocationRegistry(InMemoryRevocationStore())
        issuer = m.TokenIssuer(ring, revocation, InMemoryRefreshTokenStore(), options)
        signed = issuer.sign_access_token(ALICE)
        assert jwt.get_unverified_header(signed.token)["kid"] == ring.current().kid

    def test_store_outage_during_half_open_trial_does_not_wedge_breaker(
        self, options, monkeypatch: pytest.MonkeyPatch
    ):
        t = [1000.0]
        monkeypatch.setattr(gates.time, "time", lambda: t[0])

        class FlakyRevocationStore(InMemoryRevocationStore):
            fail = False

            def get_epoch(self, user_id):
                if self.fail:
                    self.fail = False
                    raise RuntimeError("Failed to read epoch from Redis")
                return super().get_epoch(user_id)

        store = FlakyRevocationStore()
        ring = m.KeyRing(algorithm="ES256")
        breaker = m.CircuitBreaker(failure_threshold=1, reset_timeout=30)
        issuer = m.TokenIssuer(
            ring,
            m.RevocationRegistry(store),
            InMemoryRefreshTokenStore(),
            options,
            breaker=breaker,
            auto_rotate=False,
        )
        with pytest.raises(m.KeySigningUnavailable):
            issuer.sign_access_token(ALICE)
        assert breaker.is_open

        ring.rotate()
        t[0] += 30
        store.fail = True
        with pytest.raises(RuntimeError):
            issuer.sign_access_token(ALICE)

        # Both the store and the keys are back: the trial goes through.
        assert issuer.sign_access_token(ALICE).token
        assert not breaker.is_open
