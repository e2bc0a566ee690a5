"""
HOA portal API - Flask Application

A small JSON API wired to ``AuthService``: password login with lockout and
MFA, refresh rotation, logout and a few protected resident/board routes.
"""

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from hoa_auth import (
    AuthError,
    AuthExtension,
    AuthService,
    RequireOwner,
    RequirePermission,
    RequireRole,
    Role,
    Settings,
    configure_logging,
    get_settings,
    request_context,
)


def create_app(service: AuthService, settings: Settings | None = None) -> Flask:
    """
    Create and configure the Flask application around an AuthService.

    Args:
        service: Fully wired auth service (see ``hoa_auth.build_service``)
        settings: Logging configuration source; defaults to ``get_settings()``

    Returns:
        Flask: Configured Flask application instance
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_json)

    app = Flask(__name__)
    auth = AuthExtension()
    auth.init_app(app, verifier=service.validator, authorizer=service.evaluator)

    def body() -> dict:
        return request.get_json(silent=True) or {}

    @app.post("/auth/login")
    def login():
        data = body()
        pair = service.login(
            data.get("identifier", ""),
            data.get("password", ""),
            data.get("device_id", ""),
            request_context(timeout=5),
        )
        return jsonify(_pair(pair)), 200

    @app.post("/auth/mfa")
    def verify_mfa():
        data = body()
        pair = service.verify_mfa(
            data.get("challenge_id", ""), data.get("code", ""), request_context(timeout=5)
        )
        return jsonify(_pair(pair)), 200

    @app.post("/auth/refresh")
    def refresh():
        data = body()
        pair = service.refresh_token(
            data.get("refresh_token", ""), data.get("device_id", ""), request_context(timeout=5)
        )
        return jsonify(_pair(pair)), 200

    @app.post("/auth/logout")
    def logout():
        data = body()
        header = request.headers.get("Authorization", "")
        service.logout(
            header.removeprefix("Bearer ").strip(),
            data.get("refresh_token"),
            all_devices=bool(data.get("all_devices", False)),
        )
        return "", 204

    @app.get("/.well-known/jwks.json")
    def jwks():
        return jsonify(service.jwks())

    @app.get("/api/me")
    @auth.require(RequireRole(Role.RESIDENT))
    def me():
        return jsonify({"sub": g.jwt["sub"], "roles": g.jwt["roles"]})

    @app.put("/api/residents/<user_id>/profile")
    @auth.require(RequireOwner(override=Role.BOARD_MEMBER), owner_from="user_id")
    def update_profile(user_id):
        return jsonify({"updated": user_id, "by": g.jwt["sub"]})

    @app.get("/api/financials")
    @auth.require(RequirePermission("financial.manage"))
    def financials():
        return jsonify({"status": "ok"})

    @app.errorhandler(AuthError)
    def auth_error(error: AuthError):
        """Service errors raised inside the auth routes."""
        payload: dict = {"error": error.description}
        for attr in ("challenge_id", "confirmation_id"):
            if hasattr(error, attr):
                payload[attr] = getattr(error, attr)
        locked_until = getattr(error, "locked_until", None)
        if locked_until is not None:
            payload["locked_until"] = locked_until.isoformat()
        return jsonify(payload), error.error_code

    @app.errorhandler(HTTPException)
    def http_error(error: HTTPException):
        """Aborts from AuthExtension.require and ordinary HTTP errors."""
        return jsonify({"error": error.description}), error.code

    return app


def _pair(pair) -> dict:
    return {
        "access_token": pair.access_token,
        "refresh_token": pair.refresh_token,
        "token_type": pair.token_type,
        "expires_at": pair.access_expires_at,
        "refresh_expires_at": pair.refresh_expires_at,
    }
