# authMiddleware.py
from flask import g, jsonify, request

from config import AppConfig
from endpoints.transaction.errors import ErrorKind, SettlementError
from supabaseAuth import verify_supabase_token


def bearer_token(header: str):
    if not header.startswith("Bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


def install_auth_middleware(app, config: AppConfig, public_paths=None, public_prefixes=None):
    """
    App-level auth interceptor:
    - Verifies Supabase JWT on every request
    - Skips allowlisted routes
    """
    public_paths = set(public_paths or [])
    public_prefixes = list(public_prefixes or [])

    @app.before_request
    def _auth_interceptor():
        path = request.path

        # Let CORS preflight through
        if request.method == "OPTIONS":
            return None

        if path in public_paths:
            return None

        for p in public_prefixes:
            if path.startswith(p):
                return None

        token = bearer_token(request.headers.get("Authorization", ""))
        if not token:
            return jsonify({"error": ErrorKind.UNAUTHORIZED, "message": "Missing bearer token"}), 401

        claims = verify_supabase_token(token, config)
        if not claims:
            return jsonify({"error": ErrorKind.UNAUTHORIZED, "message": "Invalid or expired token"}), 401

        # Available in endpoints via g.user
        g.user = claims
        return None


def acting_user_id() -> str:
    """The Supabase user id (`sub`) of the authenticated caller."""
    claims = getattr(g, "user", None) or {}
    sub = claims.get("sub")
    if not sub:
        raise SettlementError(ErrorKind.UNAUTHORIZED, "Token has no subject")
    return str(sub)
