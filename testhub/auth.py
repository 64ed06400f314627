"""
Test Hub
Authentication middleware: resolves the current user for every API request.

Provides:
    - API key authentication via X-API-Key header or ?api_key= query param
    - Development/test mode where the user id is taken from X-User-Id
    - ``require_user`` decorator for routes that read or write user data

Every row in the system carries a ``user_id``; services scope all lookups
by ``g.user_id`` and report another user's rows as missing.

Configuration (env vars):
    API_KEYS          — comma-separated list of "<key>:<user_id>" pairs
                        e.g. "k-3f9a:alice,k-77c1:bob"
    API_AUTH_ENABLED  — set to "false" to read X-User-Id instead (development only)
"""

import functools
import logging
import os
from typing import Optional

from flask import current_app, g, jsonify, request

from testhub.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Paths that never need a user
_PUBLIC_PREFIXES = ("/api/v1/health", "/api/v1/attachments/download/")


def _parse_api_keys() -> dict[str, str]:
    """
    Parse API_KEYS env var into {key: user_id} mapping.

    Format: "key1:alice,key2:bob"
    Entries without a user id are ignored.
    """
    raw = os.getenv("API_KEYS", "")
    if not raw.strip():
        return {}

    keys = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if ":" not in entry:
            logger.warning("API_KEYS entry without a user id ignored: %s...", entry[:8])
            continue
        key, user_id = entry.rsplit(":", 1)
        if key.strip() and user_id.strip():
            keys[key.strip()] = user_id.strip()
    return keys


def _is_auth_enabled() -> bool:
    """Check whether API-key authentication is enabled (env var or app config)."""
    env_val = os.getenv("API_AUTH_ENABLED", "")
    if env_val:
        return env_val.lower() not in ("false", "0", "no", "off")
    try:
        return str(current_app.config.get("API_AUTH_ENABLED", "true")).lower() not in ("false", "0", "no", "off")
    except RuntimeError:
        # Outside app context
        return True


def _get_api_key_from_request() -> Optional[str]:
    """Extract API key from request header or query parameter."""
    key = request.headers.get("X-API-Key", "").strip()
    if key:
        return key
    return request.args.get("api_key", "").strip() or None


def current_user_id() -> Optional[str]:
    return getattr(g, "user_id", None)


# ── Authentication decorator ─────────────────────────────────────────────────

def require_user(f):
    """
    Decorator: require a resolved user for the endpoint.

    The user is resolved by the before_request hook installed in init_auth.
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if not current_user_id():
            return api_error(E.UNAUTHORIZED, "Authentication required")
        return f(*args, **kwargs)

    return decorated


# ── App-level before_request hook installer ──────────────────────────────────

def init_auth(app):
    """
    Install authentication middleware on the Flask app.

    - Resolves g.user_id for /api/v1/* routes
    - Skips health checks, signed download links and CORS pre-flight
    """
    @app.before_request
    def _before_request_auth():
        g.user_id = None
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path.startswith(_PUBLIC_PREFIXES):
            return None
        if request.method == "OPTIONS":
            return None

        if not _is_auth_enabled():
            g.user_id = request.headers.get("X-User-Id", "").strip() or None
            return None

        api_key = _get_api_key_from_request()
        if not api_key:
            return jsonify({"error": "Authentication required. Provide X-API-Key header."}), 401

        api_keys = _parse_api_keys()
        if not api_keys:
            logger.error("API_KEYS env var is not configured but API_AUTH_ENABLED=true")
            return jsonify({"error": "Server authentication not configured"}), 500

        user_id = api_keys.get(api_key)
        if user_id is None:
            logger.warning("Invalid API key attempt: %s...", api_key[:8])
            return jsonify({"error": "Invalid API key"}), 401

        g.user_id = user_id
        return None

    with app.app_context():
        logger.info("Auth middleware installed (enabled=%s)", _is_auth_enabled())
