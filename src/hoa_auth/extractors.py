"""Access token extraction from HTTP requests.

Implementations of the Extractor protocol:
- BearerExtractor: ``Authorization: Bearer <token>`` (API clients)
- CookieExtractor: an HttpOnly cookie (the browser front end)

Tokens are never read from query parameters: those end up in access logs
and browser history.
"""

from __future__ import annotations

from flask import request

from .errors import MissingToken
from .protocols import Extractor


class BearerExtractor(Extractor):
    """Reads the token from ``Authorization: Bearer <token>``.

    Rejects anything else (missing header, other scheme, empty token) with
    MissingToken so a malformed header fails fast instead of reaching the
    validator.
    """

    def extract(self) -> str:
        auth_header = request.headers.get("Authorization", "").strip()
        if not auth_header:
            raise MissingToken("Missing Authorization header")

        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer":
            raise MissingToken("Invalid authorization scheme (expected 'Bearer')")

        token = token.strip()
        if not token:
            raise MissingToken("Bearer token is empty")
        return token


class CookieExtractor(Extractor):
    """Reads the token from a cookie.

    The cookie must be set HttpOnly, Secure and SameSite by whoever writes
    it; cookie-borne credentials also need CSRF protection on unsafe methods.

    Attributes:
        _name: Cookie holding the access token.
    """

    def __init__(self, cookie_name: str = "access_token") -> None:
        if not cookie_name or not cookie_name.strip():
            raise ValueError("cookie_name cannot be empty")
        self._name = cookie_name

    def extract(self) -> str:
        token = request.cookies.get(self._name)
        if not token:
            raise MissingToken(f"Missing cookie '{self._name}'")
        return token


class FallbackExtractor(Extractor):
    """Tries each extractor in order; the first that yields a token wins."""

    def __init__(self, *extractors: Extractor) -> None:
        if not extractors:
            raise ValueError("at least one extractor is required")
        self._extractors = extractors

    def extract(self) -> str:
        for extractor in self._extractors[:-1]:
            try:
                return extractor.extract()
            except MissingToken:
                continue
        return self._extractors[-1].extract()
