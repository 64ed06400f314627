"""Standardised API error responses.

Usage
-----
    from testhub.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Suite not found")
    return api_error(E.VALIDATION_REQUIRED, "status is required")
    return api_error(E.RULE_VIOLATION, "Session is paused", details={"status": "paused"})
"""

from __future__ import annotations

from flask import jsonify, request


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Business rule – HTTP 422
    RULE_VIOLATION = "ERR_RULE_VIOLATION"

    # Auth – HTTP 401
    UNAUTHORIZED = "ERR_UNAUTHORIZED"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    # Upstream – HTTP 502
    STORAGE = "ERR_STORAGE"
    INTEGRATION = "ERR_INTEGRATION"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.RULE_VIOLATION: 422,
    E.UNAUTHORIZED: 401,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.STORAGE: 502,
    E.INTEGRATION: 502,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
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
        Extra structured payload (field errors, allowed transitions, etc.).

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
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_service_error_handlers(bp, logger):
    """Attach the service-exception → HTTP mapping to a blueprint.

    NotFoundError → 404, ValidationError → 422, ConflictError → 409,
    StorageError / IntegrationError → 502, PersistenceError → 500 and any
    other exception → 500 with the traceback logged.
    """
    from testhub.core.exceptions import (
        ConflictError,
        IntegrationError,
        NotFoundError,
        PersistenceError,
        StorageError,
        ValidationError,
    )
    from testhub.models import db

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        db.session.rollback()
        return api_error(E.RULE_VIOLATION, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        db.session.rollback()
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(StorageError)
    def _handle_storage(error: StorageError):
        logger.error("Storage error in %s: %s", bp.name, error)
        return api_error(E.STORAGE, f"Storage error: {error}")

    @bp.errorhandler(IntegrationError)
    def _handle_integration(error: IntegrationError):
        logger.warning("Tracker error in %s: %s", bp.name, error)
        return api_error(E.INTEGRATION, str(error))

    @bp.errorhandler(PersistenceError)
    def _handle_persistence(error: PersistenceError):
        return api_error(E.DATABASE, str(error))

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        from werkzeug.exceptions import HTTPException

        if isinstance(error, HTTPException):
            return api_error(E.INTERNAL, error.description or error.name, status=error.code)
        db.session.rollback()
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
