"""
Compliance Obligation & Review Engine
Authentication middleware.

Provides:
    - API key authentication via X-API-Key header or ?api_key= query param
    - Actor identity on ``flask.g`` (``actor_id``, ``actor_role``) that
      blueprints hand to services explicitly
    - Content-Type enforcement for state-changing requests

Security model:
    - All /api/v1/* endpoints require a valid API key (except /api/v1/health/*)
      when API_AUTH_ENABLED is true; the key determines the role.
    - With auth disabled (development/testing) the identity provider in front
      of the engine is trusted: the role comes from the X-Actor-Role header.
    - X-User-Id always carries the acting user's id (reviewer, assignee).

Configuration:
    API_KEYS          — comma-separated "<key>:<role>" pairs
                        e.g. "k1:admin,k2:qc_reviewer,k3:viewer"
    API_AUTH_ENABLED  — "false" disables key checks (development only)
"""

import logging
import os
from typing import Optional

from flask import current_app, g, jsonify, request

logger = logging.getLogger(__name__)

# ── Roles ────────────────────────────────────────────────────────────────────

ROLES = {"admin", "ops_manager", "qc_reviewer", "ops_executive", "viewer"}

DEFAULT_DEV_ROLE = "admin"


def _parse_api_keys() -> dict[str, str]:
    """
    Parse API_KEYS (env var, else app config) into {key: role} mapping.

    Keys without a role default to 'viewer'.
    """
    raw = os.getenv("API_KEYS") or current_app.config.get("API_KEYS", "")
    if not raw.strip():
        return {}

    keys = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if ":" in entry:
            key, role = entry.rsplit(":", 1)
            role = role.strip().lower()
            if role not in ROLES:
                logger.warning("Unknown role '%s' for API key, defaulting to 'viewer'", role)
                role = "viewer"
            keys[key.strip()] = role
        else:
            keys[entry] = "viewer"
    return keys


def _is_auth_enabled() -> bool:
    """Check whether authentication is enabled (env var or app config)."""
    env_val = os.getenv("API_AUTH_ENABLED", "")
    if env_val:
        return env_val.lower() not in ("false", "0", "no", "off")
    try:
        return str(current_app.config.get("API_AUTH_ENABLED", "true")).lower() not in (
            "false", "0", "no", "off",
        )
    except RuntimeError:
        # Outside app context
        return True


def _get_api_key_from_request() -> Optional[str]:
    """Extract API key from request header or query parameter."""
    key = request.headers.get("X-API-Key", "").strip()
    if key:
        return key
    return request.args.get("api_key", "").strip() or None


def _check_content_type():
    """
    For state-changing requests, require Content-Type: application/json
    whenever a body is present.
    """
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        ct = request.content_type or ""
        if "application/json" not in ct and request.content_length and request.content_length > 0:
            return jsonify({
                "error": "Content-Type must be application/json for state-changing requests"
            }), 415
    return None


def current_actor() -> tuple[Optional[str], Optional[str]]:
    """Return ``(actor_id, actor_role)`` for the current request."""
    return getattr(g, "actor_id", None), getattr(g, "actor_role", None)


# ── before_request hook installer ────────────────────────────────────────────

def init_auth(app):
    """
    Install authentication middleware on the Flask app.

    - Attaches a before_request hook for API routes
    - Skips health probes and OPTIONS pre-flight requests
    """
    @app.before_request
    def _before_request_auth():
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path.startswith("/api/v1/health"):
            return None
        if request.method == "OPTIONS":
            return None

        csrf_error = _check_content_type()
        if csrf_error:
            return csrf_error

        g.actor_id = request.headers.get("X-User-Id", "").strip() or None

        if not _is_auth_enabled():
            role = request.headers.get("X-Actor-Role", "").strip().lower() or DEFAULT_DEV_ROLE
            if role not in ROLES:
                return jsonify({"error": f"Unknown role '{role}'"}), 400
            g.actor_role = role
            g.api_key = "dev-mode"
            return None

        api_key = _get_api_key_from_request()
        if not api_key:
            return jsonify({"error": "Authentication required. Provide X-API-Key header."}), 401

        api_keys = _parse_api_keys()
        if not api_keys:
            logger.error("API_KEYS is not configured but API_AUTH_ENABLED=true")
            return jsonify({"error": "Server authentication not configured"}), 500

        role = api_keys.get(api_key)
        if role is None:
            logger.warning("Invalid API key attempt: %s...", api_key[:8])
            return jsonify({"error": "Invalid API key"}), 401

        g.actor_role = role
        g.api_key = api_key
        return None

    logger.debug("Auth middleware installed (enabled=%s)", app.config.get("API_AUTH_ENABLED"))
