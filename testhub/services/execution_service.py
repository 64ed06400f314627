"""Per-test executor — step tracking, outcome recording and reset.

Transaction policy: every mutating operation here commits inside the
service.  ``finalize`` and ``reset`` touch the execution, the case's
last-result column, the session counters and possibly the suite; all of it
goes into one commit and any failure rolls the whole unit back and raises
PersistenceError, leaving the previous state intact.

Execution state machine (see ``EXECUTION_TRANSITIONS``):
    not_run → in_progress → passed | failed | blocked | skipped
    finished → in_progress  only through ``reset(confirm=True)``

Re-entry guard: every write first checks that the execution is still
``in_progress``.  A duplicate finalize (double click, second tab, replayed
keyboard shortcut) therefore fails with ValidationError and changes nothing.
"""
import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from testhub.core.exceptions import PersistenceError, ValidationError
from testhub.models import db
from testhub.models.catalog import case_steps
from testhub.models.execution import (
    EXECUTION_TRANSITIONS,
    FINAL_STATUSES,
    TestExecution,
    as_utc,
    validate_execution_transition,
)
from testhub.services import session_service
from testhub.utils.helpers import get_owned_or_404

logger = logging.getLogger(__name__)

# Keyboard shortcuts of the execution dialog
SHORTCUT_KEYS = {
    "p": "passed",
    "f": "failed",
    "b": "blocked",
    "s": "skipped",
}

HISTORY_LIMIT = 5


def _utcnow():
    return datetime.now(timezone.utc)


def _commit(execution, action):
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Execution %s: %s failed; rolled back", execution.id, action)
        raise PersistenceError(f"Failed to {action}") from exc


def get_execution(user_id, execution_id) -> TestExecution:
    return get_owned_or_404(TestExecution, execution_id, user_id)


def _require_in_progress(execution, action):
    if execution.execution_status != "in_progress":
        raise ValidationError(
            f"Cannot {action}: execution is {execution.execution_status}",
            details={"execution_status": execution.execution_status},
        )


def _valid_step_numbers(execution):
    return {s["step_number"] for s in case_steps(execution.case)}


def _check_step_number(execution, step_number):
    if step_number not in _valid_step_numbers(execution):
        raise ValidationError(
            f"Step {step_number} does not exist on this case",
            details={"step_number": step_number},
        )


# ═════════════════════════════════════════════════════════════════════════════
# STEP TRACKING
# ═════════════════════════════════════════════════════════════════════════════

def toggle_step(execution, step_number):
    """Flip ``step_number`` in completed_steps."""
    _require_in_progress(execution, "toggle step")
    _check_step_number(execution, step_number)
    steps = set(execution.completed_steps or [])
    if step_number in steps:
        steps.discard(step_number)
    else:
        steps.add(step_number)
    execution.completed_steps = sorted(steps)
    _commit(execution, "toggle step")
    return execution


def mark_step_failed(execution, step_number, failure_reason):
    """Record (or replace) the failure note of one step."""
    _require_in_progress(execution, "mark step failed")
    _check_step_number(execution, step_number)
    reason = (failure_reason or "").strip()
    if not reason:
        raise ValidationError(
            "A failure reason is required for a failed step",
            details={"failure_reason": "required"},
        )
    failed = [f for f in (execution.failed_steps or []) if f.get("step_number") != step_number]
    failed.append({"step_number": step_number, "failure_reason": reason})
    execution.failed_steps = sorted(failed, key=lambda f: f["step_number"])
    _commit(execution, "mark step failed")
    return execution


def clear_step_failure(execution, step_number):
    _require_in_progress(execution, "clear step failure")
    execution.failed_steps = [
        f for f in (execution.failed_steps or []) if f.get("step_number") != step_number
    ]
    _commit(execution, "clear step failure")
    return execution


def save_progress(execution, data):
    """Persist draft notes and environment details without finishing."""
    _require_in_progress(execution, "save progress")
    if "notes" in data:
        execution.execution_notes = data["notes"]
    for field in ("test_environment", "browser", "os_version"):
        if field in data:
            setattr(execution, field, data[field])
    _commit(execution, "save progress")
    return execution


# ═════════════════════════════════════════════════════════════════════════════
# FINALIZE
# ═════════════════════════════════════════════════════════════════════════════

def _validate_outcome(status, failure_reason, reason):
    if status not in FINAL_STATUSES:
        raise ValidationError(
            f"Invalid result status: {status}",
            details={"status": status, "allowed": list(FINAL_STATUSES)},
        )
    if status == "failed" and not failure_reason:
        raise ValidationError(
            "A failure reason is required to mark a test as failed",
            details={"failure_reason": "required"},
        )
    if status in ("blocked", "skipped") and not reason:
        raise ValidationError(
            f"A reason is required to mark a test as {status}",
            details={"reason": "required"},
        )


def finalize(execution, status, details=None, auto_advance=True):
    """Record the outcome of an execution and update its session.

    Args:
        execution: an ``in_progress`` TestExecution.
        status: passed | failed | blocked | skipped.
        details: optional dict with ``failure_reason`` (failed),
            ``reason`` (blocked/skipped), ``notes``, ``completed_steps``,
            ``test_environment``, ``browser``, ``os_version``.
        auto_advance: open the next unfinished case when the run continues.

    Returns:
        dict with ``execution``, ``session`` and ``next_execution`` rows.
    """
    details = details or {}
    failure_reason = (details.get("failure_reason") or "").strip()
    reason = (details.get("reason") or "").strip()

    _require_in_progress(execution, "finalize")
    _validate_outcome(status, failure_reason, reason)
    if not validate_execution_transition(execution.execution_status, status):
        raise ValidationError(
            f"Invalid execution transition: {execution.execution_status} → {status}",
            details={"allowed": EXECUTION_TRANSITIONS.get(execution.execution_status, [])},
        )
    session = execution.session
    if session is not None and session.status != "in_progress":
        raise ValidationError(
            f"Cannot finalize while the session is {session.status}",
            details={"session_status": session.status},
        )

    if "completed_steps" in details:
        steps = details["completed_steps"]
        if (not isinstance(steps, list) or not all(isinstance(s, int) for s in steps)
                or not set(steps) <= _valid_step_numbers(execution)):
            raise ValidationError(
                "completed_steps must list step numbers of this case",
                details={"completed_steps": steps},
            )
        execution.completed_steps = sorted(set(steps))

    now = _utcnow()
    execution.execution_status = status
    execution.completed_at = now
    started = as_utc(execution.started_at) or now
    execution.duration_seconds = max(0, int((now - started).total_seconds()))
    execution.failure_reason = failure_reason if status == "failed" else None
    execution.status_reason = reason if status in ("blocked", "skipped") else None
    if "notes" in details:
        execution.execution_notes = details["notes"]
    for field in ("test_environment", "browser", "os_version"):
        if field in details:
            setattr(execution, field, details[field])

    case = execution.case
    if case is not None:
        case.execution_status = status

    next_execution = None
    if session is not None:
        session_service.record_finalization(session, status)
        if auto_advance and session.status == "in_progress":
            next_execution = session_service.advance(session)

    _commit(execution, "complete test execution")
    logger.info(
        "Execution %s finalized as %s (session=%s, %ss)",
        execution.id, status, execution.session_id, execution.duration_seconds,
    )
    return {"execution": execution, "session": session, "next_execution": next_execution}


# ═════════════════════════════════════════════════════════════════════════════
# RESET
# ═════════════════════════════════════════════════════════════════════════════

def reset(execution, confirm=False):
    """Return an execution to a blank ``in_progress`` state.

    Destructive: recorded steps, notes and reasons are discarded, so the
    caller must pass ``confirm=True``.  Resetting a finished execution
    reopens a completed session; with RESET_ROLLS_BACK_SESSION_STATS on its
    outcome is also taken back off the session counters.
    """
    if not confirm:
        raise ValidationError(
            "Reset discards recorded steps, notes and result; pass confirm=true",
            details={"confirm": "required"},
        )
    session = execution.session
    if session is not None and session.status == "aborted":
        raise ValidationError("Cannot reset an execution of an aborted session")

    previous = execution.execution_status
    if previous != "in_progress" and not validate_execution_transition(previous, "in_progress"):
        raise ValidationError(f"Cannot reset an execution that is {previous}")

    execution.execution_status = "in_progress"
    execution.completed_steps = []
    execution.failed_steps = []
    execution.execution_notes = None
    execution.failure_reason = None
    execution.status_reason = None
    execution.started_at = _utcnow()
    execution.completed_at = None
    execution.duration_seconds = None

    case = execution.case
    if case is not None:
        case.execution_status = "in_progress"

    if session is not None and previous in FINAL_STATUSES:
        session_service.rollback_finalization(
            session, previous,
            restore_outcome=current_app.config.get("RESET_ROLLS_BACK_SESSION_STATS", True),
        )

    _commit(execution, "reset test execution")
    logger.info("Execution %s reset from %s", execution.id, previous)
    return execution


# ═════════════════════════════════════════════════════════════════════════════
# KEYBOARD SHORTCUTS
# ═════════════════════════════════════════════════════════════════════════════

def resolve_shortcut(key, *, dialog_focused=True, in_text_input=False,
                     execution_status="in_progress", busy=False, failure_reason=""):
    """Map a key press in the execution dialog to a result status.

    Returns the status to finalize with, or None when the key must be ignored.
    """
    if not dialog_focused or in_text_input or busy:
        return None
    if execution_status != "in_progress":
        return None
    status = SHORTCUT_KEYS.get((key or "").lower())
    if status == "failed" and not (failure_reason or "").strip():
        return None
    return status


# ═════════════════════════════════════════════════════════════════════════════
# HISTORY
# ═════════════════════════════════════════════════════════════════════════════

def case_history(user_id, suite_id, ref, limit=HISTORY_LIMIT):
    """Most recent executions of one case within a suite, newest first."""
    return (
        TestExecution.query
        .filter_by(user_id=user_id, suite_id=suite_id, **ref.fk_columns())
        .order_by(TestExecution.created_at.desc(), TestExecution.id.desc())
        .limit(limit)
        .all()
    )
