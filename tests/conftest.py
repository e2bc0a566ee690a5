import threading
import time
import uuid

import pyotp
import pytest
import structlog
from flask import Flask

import hoa_auth as m
from hoa_auth.stores import InMemoryRefreshTokenStore, InMemoryRevocationStore

ISSUER = "https://auth.test/"
AUDIENCE = "hoa-test"


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo any configure_logging call made by a test."""
    yield
    structlog.reset_defaults()


@pytest.fixture()
def app():
    app = Flask(__name__)
    app.config["TESTING"] = True
    return app


class FakeRedis:
    """
    Minimal redis stub for the revocation store tests.
    Stores bytes under keys and supports get, setex, incr and exists.
    """

    def __init__(self):
        self._store: dict[str, tuple[bytes, float | None]] = {}

    def _live(self, key: str):
        item = self._store.get(key)
        if item is None:
            return None
        data, expires_at = item
        if expires_at is not None and time.time() >= expires_at:
            self._store.pop(key, None)
            return None
        return data

    def get(self, key: str):
        return self._live(key)

    def setex(self, key: str, ttl_seconds: int, value: str | bytes):
        if isinstance(value, str):
            value = value.encode("utf-8")
        self._store[key] = (value, time.time() + int(ttl_seconds))

    def incr(self, key: str) -> int:
        current = self._live(key)
        value = int(current or 0) + 1
        self._store[key] = (str(value).encode("utf-8"), None)
        return value

    def exists(self, key: str) -> int:
        return 1 if self._live(key) is not None else 0


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


class FakeCredentialStore(m.CredentialStore):
    """In-memory account store.

    ``fail_with`` makes every call raise (simulating an unreachable store).
    ``create_barrier`` makes concurrent ``create_pending_account`` calls wait
    for each other, to force link races.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.passwords: dict[str, tuple[str, str]] = {}
        self.users: dict[str, m.UserClaims] = {}
        self.created: list[str] = []
        self.discarded: list[str] = []
        self.fail_with: BaseException | None = None
        self.create_barrier: threading.Barrier | None = None

    def add_user(
        self,
        identifier: str,
        password: str,
        *,
        user_id: str,
        roles=("Resident",),
        permissions=(),
        mfa_enabled: bool = False,
        email: str | None = None,
    ) -> m.UserClaims:
        claims = m.UserClaims(
            user_id=user_id,
            roles=frozenset(roles),
            permissions=frozenset(permissions),
            mfa_enabled=mfa_enabled,
            email=email,
        )
        self.passwords[identifier] = (password, user_id)
        self.users[user_id] = claims
        return claims

    def verify_password(self, identifier, password):
        if self.fail_with is not None:
            raise self.fail_with
        entry = self.passwords.get(identifier)
        if entry is None or entry[0] != password:
            return None
        return self.users[entry[1]]

    def get_user_claims(self, user_id):
        if self.fail_with is not None:
            raise self.fail_with
        return self.users[user_id]

    def find_by_email(self, email):
        for claims in self.users.values():
            if claims.email and claims.email.lower() == email.lower():
                return claims
        return None

    def create_pending_account(self, profile):
        if self.create_barrier is not None:
            self.create_barrier.wait(timeout=5)
        claims = m.UserClaims(user_id=f"pending-{uuid.uuid4().hex[:8]}", roles=frozenset({"Guest"}))
        with self._lock:
            self.users[claims.user_id] = claims
            self.created.append(claims.user_id)
        return claims

    def discard_pending_account(self, user_id):
        with self._lock:
            self.users.pop(user_id, None)
            self.discarded.append(user_id)


class FakeNotifier(m.Notifier):
    def __init__(self):
        self.events: list[tuple[str, str]] = []

    def notify_security_event(self, user_id, event_kind):
        self.events.append((user_id, event_kind))


class FakeTotpSecrets(m.TotpSecretResolver):
    def __init__(self):
        self.secrets: dict[str, str] = {}

    def enroll(self, user_id: str) -> pyotp.TOTP:
        secret = pyotp.random_base32()
        self.secrets[user_id] = secret
        return pyotp.TOTP(secret)

    def secret_ref_for(self, user_id):
        return f"totp:{user_id}" if user_id in self.secrets else None

    def resolve(self, secret_ref):
        return self.secrets.get(secret_ref.removeprefix("totp:"))


def _wrong_code(totp: pyotp.TOTP) -> str:
    now = time.time()
    valid = {totp.at(now + step * totp.interval) for step in (-1, 0, 1)}
    return next(c for c in ("000000", "111111", "222222", "333333") if c not in valid)


@pytest.fixture
def wrong_code():
    """Factory: a six digit code guaranteed to fail verification right now."""
    return _wrong_code


@pytest.fixture
def options() -> m.TokenOptions:
    return m.TokenOptions(issuer=ISSUER, audience=AUDIENCE, algorithms=("ES256",))


@pytest.fixture
def keyring() -> m.KeyRing:
    ring = m.KeyRing(algorithm="ES256")
    ring.rotate()
    return ring


@pytest.fixture
def revocation() -> m.RevocationRegistry:
    return m.RevocationRegistry(InMemoryRevocationStore(), blacklist_ttl=900)


@pytest.fixture
def refresh_store() -> InMemoryRefreshTokenStore:
    return InMemoryRefreshTokenStore()


@pytest.fixture
def issuer(keyring, revocation, refresh_store, options) -> m.TokenIssuer:
    return m.TokenIssuer(keyring, revocation, refresh_store, options)


@pytest.fixture
def validator(keyring, revocation, options) -> m.TokenValidator:
    return m.TokenValidator(keyring, revocation, options)


@pytest.fixture
def credentials() -> FakeCredentialStore:
    store = FakeCredentialStore()
    store.add_user(
        "alice@hoa.test", "correct horse", user_id="u-alice", email="alice@hoa.test"
    )
    store.add_user(
        "bob@hoa.test",
        "battery staple",
        user_id="u-bob",
        roles=("BoardMember",),
        mfa_enabled=True,
        email="bob@hoa.test",
    )
    store.add_user(
        "carol@hoa.test", "admin pass", user_id="u-carol", roles=("Administrator",)
    )
    return store


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def totp_secrets() -> FakeTotpSecrets:
    return FakeTotpSecrets()


@pytest.fixture
def settings() -> m.Settings:
    return m.Settings(
        issuer=ISSUER,
        audience=AUDIENCE,
        algorithm="ES256",
        mfa_issue_interval_seconds=0.001,
        redis_url="",
    )


@pytest.fixture
def service(settings, credentials, totp_secrets, notifier, keyring) -> m.AuthService:
    return m.build_service(
        settings,
        credentials,
        totp_secrets,
        notifier=notifier,
        keyring=keyring,
        providers={},
    )
