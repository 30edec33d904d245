"""Standardised API error responses.

Usage
-----
    from compliance_engine.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Obligation not found")
    return api_error(E.VALIDATION_REQUIRED, "entity_id is required")

Domain exceptions raised by services are mapped once, application-wide,
by :func:`register_error_handlers`.
"""

from __future__ import annotations

import logging

from flask import jsonify

from compliance_engine.core.exceptions import (
    ApprovalBlockedError,
    ConfigurationGapError,
    ConflictError,
    EscalationRequired,
    IncompleteDocumentsError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDenied,
    TransientStoreError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • bare upper-case codes for states the UI renders distinctly
    """

    # Validation – HTTP 400 (malformed request) / 422 (business rule)
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION = "ERR_VALIDATION"
    APPROVAL_BLOCKED = "ERR_APPROVAL_BLOCKED"
    INCOMPLETE_DOCUMENTS = "ERR_INCOMPLETE_DOCUMENTS"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    ESCALATION_REQUIRED = "ESCALATION_REQUIRED"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 5xx
    TRANSIENT_STORE = "ERR_TRANSIENT_STORE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION: 422,
    E.APPROVAL_BLOCKED: 422,
    E.INCOMPLETE_DOCUMENTS: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.NOT_CONFIGURED: 409,
    E.ESCALATION_REQUIRED: 409,
    E.FORBIDDEN: 403,
    E.TRANSIENT_STORE: 503,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
    **fields,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (missing doc codes, failed items, etc.).
    **fields
        Top-level keys merged into the body (``state``, ``retryable``...).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    body.update(fields)
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(app):
    """Map the domain exception hierarchy to HTTP responses, app-wide."""

    @app.errorhandler(NotFoundError)
    def _not_found(e):
        return api_error(E.NOT_FOUND, str(e))

    @app.errorhandler(ApprovalBlockedError)
    def _approval_blocked(e):
        return api_error(E.APPROVAL_BLOCKED, str(e), details=e.details)

    @app.errorhandler(InvalidTransitionError)
    def _invalid_transition(e):
        return api_error(E.CONFLICT_STATE, str(e), details=e.details)

    @app.errorhandler(ValidationError)
    def _validation(e):
        return api_error(E.VALIDATION, str(e), details=e.details)

    @app.errorhandler(ConflictError)
    def _conflict(e):
        return api_error(E.CONFLICT_DUPLICATE, str(e))

    @app.errorhandler(ConfigurationGapError)
    def _not_configured(e):
        logger.info("Configuration gap: %s", e,
                    extra={"service_key": e.service_key, "event_type": "not_configured"})
        return api_error(
            E.NOT_CONFIGURED, str(e),
            state="not_configured",
            details={"service_key": e.service_key, "missing": e.kind},
        )

    @app.errorhandler(IncompleteDocumentsError)
    def _incomplete_documents(e):
        return api_error(E.INCOMPLETE_DOCUMENTS, str(e), missing=e.missing)

    @app.errorhandler(EscalationRequired)
    def _escalation_required(e):
        return api_error(
            E.ESCALATION_REQUIRED, str(e),
            state="escalated",
            details={"instance_id": e.instance_id, "rework_count": e.rework_count,
                     "limit": e.limit},
        )

    @app.errorhandler(PermissionDenied)
    def _forbidden(e):
        return api_error(E.FORBIDDEN, str(e), details={"allowed_roles": list(e.allowed)})

    @app.errorhandler(TransientStoreError)
    def _transient(e):
        logger.error("Transient store failure surfaced to client: %s", e)
        return api_error(E.TRANSIENT_STORE, "Storage temporarily unavailable, retry later",
                         retryable=True)

    @app.errorhandler(404)
    def _route_not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def _rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": E.INTERNAL}, 500
