"""Shared blueprint/service helpers.

get_owned_or_404:    user-scoped lookup raising NotFoundError
parse_int:           lenient int parsing for query/body values
db_commit_or_error:  commit with rollback + JSON error response on failure
"""
import logging

from flask import jsonify

from testhub.core.exceptions import NotFoundError
from testhub.models import db

logger = logging.getLogger(__name__)


def get_owned_or_404(model, pk, user_id, label=None):
    """Return the row with ``pk`` owned by ``user_id`` or raise NotFoundError.

    Rows owned by somebody else are reported exactly like missing rows.
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if obj is None or getattr(obj, "user_id", None) != user_id:
        raise NotFoundError(resource=label, resource_id=pk)
    return obj


def parse_int(value, default=None, minimum=None, maximum=None):
    """Parse ``value`` as int, clamped to [minimum, maximum].

    Returns ``default`` for empty or non-numeric input.
    """
    if value is None or value == "":
        return default
    try:
        result = int(value)
    except (ValueError, TypeError):
        return default
    if minimum is not None and result < minimum:
        result = minimum
    if maximum is not None and result > maximum:
        result = maximum
    return result


# ── Database commit helper ───────────────────────────────────────────────────

def db_commit_or_error():
    """Commit the current SQLAlchemy session, returning an error response on failure.

    Returns:
        None on success.
        (response, status_code) tuple on failure — ready for ``return``.

    Usage::

        err = db_commit_or_error()
        if err:
            return err

    IntegrityError → 409 (duplicate / constraint violation)
    OperationalError → 500 (connection / lock issues)
    Other → 500 (unexpected)
    """
    from sqlalchemy.exc import IntegrityError, OperationalError

    try:
        db.session.commit()
        return None
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        return jsonify({"error": "Duplicate or constraint violation"}), 409
    except OperationalError:
        db.session.rollback()
        logger.exception("Database operational error on commit")
        return jsonify({"error": "Database error"}), 500
    except Exception:
        db.session.rollback()
        logger.exception("Unexpected database error on commit")
        return jsonify({"error": "Database error"}), 500
