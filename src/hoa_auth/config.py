"""Configuration for the auth engine.

Settings are read from environment variables prefixed with ``HOA_AUTH_`` and
an optional ``.env`` file. Every field has a default so ``Settings()`` works
in tests without any environment.

``TokenOptions`` is the frozen subset consumed by the issuer and validator.
Misconfiguration there is a security problem, so it is validated once here
instead of at every call site.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_ALGORITHMS: tuple[str, ...] = ("RS256", "ES256")


@dataclass(frozen=True, slots=True)
class TokenOptions:
    """Claims and lifetimes for access and refresh tokens.

    Attributes:
        issuer: Value written to and required in the ``iss`` claim.
        audience: Value written to and required in the ``aud`` claim.
        algorithms: Allowlist of signing algorithms accepted on validation.
            Never include 'none'.
        access_ttl: Access token lifetime in seconds.
        refresh_ttl: Refresh record lifetime in seconds, restarted on every
            rotation (sliding).
        leeway: Clock skew tolerance in seconds for exp/iat validation.
    """

    issuer: str
    audience: str
    algorithms: tuple[str, ...] = ("RS256",)
    access_ttl: int = 900
    refresh_ttl: int = 14 * 24 * 3600
    leeway: int = 0


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="HOA_AUTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    issuer: str = "https://auth.hoa.local/"
    audience: str = "hoa-api"
    algorithm: str = "RS256"
    access_ttl_seconds: int = 900
    refresh_ttl_seconds: int = 14 * 24 * 3600
    leeway_seconds: int = 0

    # ------------------------------------------------------------------
    # Signing keys
    # ------------------------------------------------------------------

    key_rotation_seconds: int = 7 * 24 * 3600
    # How long a retired key keeps verifying tokens it signed.
    key_overlap_seconds: int = 24 * 3600

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    lockout_threshold: int = 5
    lockout_window_seconds: int = 15 * 60
    lockout_base_seconds: int = 15 * 60
    lockout_max_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    mfa_ttl_seconds: int = 5 * 60
    mfa_max_attempts: int = 5
    mfa_issue_interval_seconds: float = 30.0

    # ------------------------------------------------------------------
    # External identities (empty string means the provider is disabled)
    # ------------------------------------------------------------------

    link_confirmation_ttl_seconds: int = 15 * 60
    google_client_id: str = ""
    google_client_secret: str = ""
    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    apple_client_id: str = ""
    apple_client_secret: str = ""
    oauth_redirect_uri: str = ""

    # ------------------------------------------------------------------
    # Signing circuit breaker
    # ------------------------------------------------------------------

    breaker_failure_threshold: int = 3
    breaker_reset_seconds: float = 30.0

    # ------------------------------------------------------------------
    # Infrastructure
    # ------------------------------------------------------------------

    redis_url: str = ""
    log_level: str = "INFO"
    log_json: bool = True

    @model_validator(mode="after")
    def validate_token_policy(self) -> Settings:
        """Refuse configurations that would produce unverifiable tokens."""
        if self.algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(
                f"algorithm must be one of {SUPPORTED_ALGORITHMS}, got {self.algorithm!r}"
            )
        if self.access_ttl_seconds <= 0 or self.refresh_ttl_seconds <= 0:
            raise ValueError("token lifetimes must be positive")
        if self.access_ttl_seconds > self.key_overlap_seconds:
            # A retired key must keep verifying every token it signed.
            raise ValueError("key_overlap_seconds must be >= access_ttl_seconds")
        if self.lockout_threshold < 1 or self.mfa_max_attempts < 1:
            raise ValueError("lockout_threshold and mfa_max_attempts must be at least 1")
        return self

    def token_options(self) -> TokenOptions:
        return TokenOptions(
            issuer=self.issuer,
            audience=self.audience,
            algorithms=(self.algorithm,),
            access_ttl=self.access_ttl_seconds,
            refresh_ttl=self.refresh_ttl_seconds,
            leeway=self.leeway_seconds,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
