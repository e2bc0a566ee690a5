"""Flask integration.

``AuthExtension.require`` is the middleware that runs before every protected
handler:

1. Extract the access token (header or cookie).
2. Validate it (signature, expiry, issuer/audience, epoch, blacklist).
3. Store the verified claims in ``flask.g.jwt``.
4. Evaluate the route's policy, optionally against a resource owner taken
   from the view arguments.
5. Turn any AuthError into ``abort(error_code, description)``.

``request_context()`` builds the RequestContext (deadline, client address,
user agent) that login and refresh take, so the audit log records where an
attempt came from.
"""

from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import TYPE_CHECKING, Any, Final

from flask import Flask, abort, g, request

from .context import RequestContext
from .errors import AuthError
from .extractors import BearerExtractor

if TYPE_CHECKING:
    from .authorization import Policy
    from .protocols import Authorizer, Extractor, TokenVerifier, ViewFunc

_EXT_KEY: Final[str] = "hoa_auth"
"""Flask extensions registry key for AuthExtension."""

type OwnerResolver = Callable[[dict[str, Any]], str | None]


class AuthExtension:
    """Route decorator for authentication and authorization.

    Usage:
        auth = AuthExtension(service.validator, service.evaluator)

        @app.get("/residents/<user_id>/profile")
        @auth.require(RequireOwner(override=Role.BOARD_MEMBER), owner_from="user_id")
        def profile(user_id): ...
    """

    def __init__(
        self,
        verifier: TokenVerifier | None = None,
        authorizer: Authorizer | None = None,
        extractor: Extractor | None = None,
    ) -> None:
        self._verifier = verifier
        self._authorizer = authorizer
        self._extractor: Extractor = extractor or BearerExtractor()

    def init_app(
        self,
        app: Flask,
        *,
        verifier: TokenVerifier | None = None,
        authorizer: Authorizer | None = None,
        extractor: Extractor | None = None,
    ) -> None:
        if verifier is not None:
            self._verifier = verifier
        if authorizer is not None:
            self._authorizer = authorizer
        if extractor is not None:
            self._extractor = extractor

        app.extensions[_EXT_KEY] = self

    def require(
        self,
        policy: Policy | None = None,
        *,
        owner_from: str | OwnerResolver | None = None,
    ):
        """Protect a view.

        Args:
            policy: Policy the caller must satisfy. ``None`` only requires a
                valid token.
            owner_from: Where the resource owner id comes from: the name of a
                view argument, or a callable receiving the view kwargs.

        Error mapping:
            MissingToken / InvalidToken family -> 401, PermissionDenied -> 403,
            anything unexpected -> 401.

        Side Effects:
            Writes the verified claims to ``flask.g.jwt`` before calling the view.
        """

        def decorator(view: ViewFunc) -> ViewFunc:
            @wraps(view)
            def wrapper(*args: Any, **kwargs: Any) -> Any:
                if self._verifier is None:
                    raise RuntimeError("AuthExtension has no verifier configured")
                if policy is not None and self._authorizer is None:
                    raise RuntimeError("A policy was given but no authorizer is configured")
                try:
                    token = self._extractor.extract()
                    claims = self._verifier.validate(token)
                    g.jwt = claims

                    if policy is not None and self._authorizer is not None:
                        self._authorizer.authorize(
                            claims, policy, resource_owner=_resolve_owner(owner_from, kwargs)
                        )

                except AuthError as e:
                    abort(e.error_code, description=e.description)
                except Exception:
                    abort(401, description="Authentication failed")

                return view(*args, **kwargs)

            return wrapper

        return decorator


def _resolve_owner(owner_from: str | OwnerResolver | None, kwargs: dict[str, Any]) -> str | None:
    if owner_from is None:
        return None
    if callable(owner_from):
        return owner_from(kwargs)
    value = kwargs.get(owner_from)
    return None if value is None else str(value)


def request_context(timeout: float | None = None) -> RequestContext:
    """RequestContext for the current Flask request."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    ip_address = forwarded.split(",")[0].strip() or request.remote_addr
    user_agent = request.headers.get("User-Agent")
    if timeout is not None:
        return RequestContext.with_timeout(timeout, ip_address=ip_address, user_agent=user_agent)
    return RequestContext(ip_address=ip_address, user_agent=user_agent)
