"""Execution session controller — run lifecycle of a suite.

Transaction policy: lifecycle transitions (start, navigate, pause, resume,
delete) commit inside the service through ``_commit`` so that a failure
rolls back the whole step; counter helpers (``record_finalization``,
``rollback_finalization``, ``sync_session_totals``) only mutate and are
committed by the executor that calls them.

Session state machine (see ``SESSION_TRANSITIONS``):
    planned → in_progress ⇄ paused → completed
    completed → in_progress  only when a finished execution is reset
    aborted is reserved; no operation drives it.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from testhub.core.exceptions import PersistenceError, ValidationError
from testhub.models import db
from testhub.models.catalog import Suite
from testhub.models.execution import (
    ACTIVE_SESSION_STATUSES,
    DEFAULT_ENVIRONMENT,
    FINAL_STATUSES,
    OUTCOME_COUNTERS,
    SESSION_TRANSITIONS,
    TestExecution,
    TestRunSession,
    compute_progress,
    validate_session_transition,
)
from testhub.services import catalog_service
from testhub.utils.helpers import get_owned_or_404

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


def _commit(action):
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Session %s failed; rolled back", action)
        raise PersistenceError(f"Failed to {action}") from exc


# ── Loaders ──────────────────────────────────────────────────────────────────

def get_session(user_id, session_id) -> TestRunSession:
    return get_owned_or_404(TestRunSession, session_id, user_id, label="TestRunSession")


def get_suite(user_id, suite_id) -> Suite:
    return get_owned_or_404(Suite, suite_id, user_id)


def list_sessions(suite):
    return (
        TestRunSession.query
        .filter_by(suite_id=suite.id, user_id=suite.user_id)
        .order_by(TestRunSession.created_at.desc(), TestRunSession.id.desc())
    )


# ── State machine ────────────────────────────────────────────────────────────

def transition_session(session: TestRunSession, new_status: str):
    """Move a session to ``new_status`` or raise ValidationError.

    Sets actual_start on first start and actual_end on completion.
    """
    old = session.status
    if not validate_session_transition(old, new_status):
        raise ValidationError(
            f"Invalid session transition: {old} → {new_status}",
            details={"status": old, "allowed": SESSION_TRANSITIONS.get(old, [])},
        )
    session.status = new_status
    now = _utcnow()
    if new_status == "in_progress" and not session.actual_start:
        session.actual_start = now
    if new_status == "completed":
        session.actual_end = now
    if old == "completed" and new_status == "in_progress":
        session.actual_end = None
    logger.info("Session %s transitioned: %s → %s", session.id, old, new_status)


def _require_status(session, *statuses):
    if session.status not in statuses:
        raise ValidationError(
            f"Session is {session.status}",
            details={"status": session.status, "required": list(statuses)},
        )


# ═════════════════════════════════════════════════════════════════════════════
# START / RESUME DETECTION
# ═════════════════════════════════════════════════════════════════════════════

def start_options(suite):
    """Decide what the Start button should offer for a suite.

    Returns one of:
        {"action": "resume", "session": {...}}      incomplete run exists
        {"action": "new_run", "last_session": {...}} only finished runs exist
        {"action": "start"}                          no runs yet
    """
    active = (
        TestRunSession.query
        .filter(TestRunSession.suite_id == suite.id,
                TestRunSession.user_id == suite.user_id,
                TestRunSession.status.in_(ACTIVE_SESSION_STATUSES))
        .order_by(TestRunSession.created_at.desc(), TestRunSession.id.desc())
        .first()
    )
    if active is not None:
        sync_session_totals(active)
        db.session.flush()
        if (active.progress_percentage or 0) < 100:
            return {"action": "resume", "session": active.to_dict()}

    last_completed = (
        TestRunSession.query
        .filter_by(suite_id=suite.id, user_id=suite.user_id, status="completed")
        .order_by(TestRunSession.actual_end.desc(), TestRunSession.id.desc())
        .first()
    )
    if last_completed is not None:
        return {"action": "new_run", "last_session": last_completed.to_dict()}
    return {"action": "start"}


def start_session(suite, environment=None, name=None):
    """Create a session for ``suite`` and open the first case.

    Returns ``(session, execution)``.
    """
    links = catalog_service.ordered_suite_cases(suite.id)
    if not links:
        raise ValidationError(
            "No test cases available for this suite",
            details={"suite_id": suite.id},
        )

    now = _utcnow()
    session = TestRunSession(
        user_id=suite.user_id,
        suite_id=suite.id,
        name=name or f"{suite.name} - {now:%Y-%m-%d %H:%M:%S}",
        environment=environment or DEFAULT_ENVIRONMENT,
        status="planned",
        current_index=0,
        test_cases_total=len(links),
        test_cases_completed=0,
        progress_percentage=0,
        passed_cases=0,
        failed_cases=0,
        blocked_cases=0,
        skipped_cases=0,
    )
    db.session.add(session)
    db.session.flush()
    transition_session(session, "in_progress")
    if suite.status in ("draft", "completed"):
        suite.status = "active"
    execution = open_execution(session, 0, links=links)
    _commit("start session")
    logger.info(
        "Session %s started for suite %s (%d cases, env=%s)",
        session.id, suite.id, len(links), session.environment,
    )
    return session, execution


# ═════════════════════════════════════════════════════════════════════════════
# EXECUTION OPEN / NAVIGATION
# ═════════════════════════════════════════════════════════════════════════════

def find_execution(session, ref):
    return (
        TestExecution.query
        .filter_by(session_id=session.id, **ref.fk_columns())
        .order_by(TestExecution.id.desc())
        .first()
    )


def open_execution(session, index, links=None):
    """Open-or-create the execution of the case at ``index`` in run order.

    Reuses the existing execution for (session, case); only
    inserts a fresh ``in_progress`` one when none exists.
    """
    links = links if links is not None else catalog_service.ordered_suite_cases(session.suite_id)
    if not 0 <= index < len(links):
        raise ValidationError(
            f"Case index {index} is out of range",
            details={"index": index, "case_count": len(links)},
        )
    ref = links[index].case_ref
    existing = find_execution(session, ref)
    if existing is not None:
        return existing

    execution = TestExecution(
        session_id=session.id,
        suite_id=session.suite_id,
        user_id=session.user_id,
        execution_status="in_progress",
        started_at=_utcnow(),
        completed_steps=[],
        failed_steps=[],
        test_environment=session.environment,
        **ref.fk_columns(),
    )
    db.session.add(execution)
    db.session.flush()
    case = execution.case
    if case is not None and case.execution_status in (None, "not_run"):
        case.execution_status = "in_progress"
    logger.info(
        "Execution %s opened in session %s for %s:%s",
        execution.id, session.id, ref.kind, ref.id,
    )
    return execution


def navigate(session, index=None, direction=None):
    """Move ``current_index`` to an absolute index or one step prev/next.

    Returns the execution of the target case.
    """
    _require_status(session, "in_progress")
    links = catalog_service.ordered_suite_cases(session.suite_id)
    if index is None:
        if direction not in ("next", "previous"):
            raise ValidationError(
                "Provide an index or a direction of 'next' or 'previous'",
                details={"direction": direction},
            )
        index = session.current_index + (1 if direction == "next" else -1)
    if not 0 <= index < len(links):
        raise ValidationError(
            f"Case index {index} is out of range",
            details={"index": index, "case_count": len(links)},
        )
    session.current_index = index
    execution = open_execution(session, index, links=links)
    _commit("navigate")
    return execution


def next_unfinished_index(session, links=None):
    """Index of the next case after ``current_index`` without a finished execution.

    Searches forward and wraps around; returns None when every case is finished.
    """
    links = links if links is not None else catalog_service.ordered_suite_cases(session.suite_id)
    count = len(links)
    for offset in range(1, count + 1):
        idx = (session.current_index + offset) % count
        existing = find_execution(session, links[idx].case_ref)
        if existing is None or not existing.is_final:
            return idx
    return None


def advance(session):
    """Open the next unfinished case; returns its execution or None."""
    links = catalog_service.ordered_suite_cases(session.suite_id)
    idx = next_unfinished_index(session, links)
    if idx is None:
        return None
    session.current_index = idx
    return open_execution(session, idx, links=links)


# ═════════════════════════════════════════════════════════════════════════════
# PAUSE / RESUME
# ═════════════════════════════════════════════════════════════════════════════

def pause_session(session):
    """in_progress → paused.  Executions are left untouched."""
    transition_session(session, "paused")
    _commit("pause session")
    return session


def resume_session(session):
    """paused → in_progress at the stored ``current_index``.

    Returns ``(session, execution)``.
    """
    transition_session(session, "in_progress")
    links = catalog_service.ordered_suite_cases(session.suite_id)
    execution = None
    if links:
        index = min(session.current_index, len(links) - 1)
        session.current_index = index
        execution = open_execution(session, index, links=links)
    _commit("resume session")
    return session, execution


# ═════════════════════════════════════════════════════════════════════════════
# COUNTERS
# ═════════════════════════════════════════════════════════════════════════════

def _complete_suite(session):
    suite = session.suite
    if suite is not None:
        suite.status = "completed"
        suite.actual_end_date = session.actual_end or _utcnow()


def count_finished(session):
    """Number of executions in the session that hold a final outcome."""
    return (
        TestExecution.query
        .filter(TestExecution.session_id == session.id,
                TestExecution.execution_status.in_(FINAL_STATUSES))
        .count()
    )


def record_finalization(session, status):
    """Count one finished case with outcome ``status`` on the session.

    ``test_cases_completed`` is recounted from the finished executions, so a
    case finalized again after a reset is never counted twice.  Completes the
    session (and its suite) once every case is finished.
    """
    if status not in FINAL_STATUSES:
        raise ValidationError(f"Not a final status: {status}")
    counter = OUTCOME_COUNTERS[status]
    setattr(session, counter, (getattr(session, counter) or 0) + 1)
    session.test_cases_completed = count_finished(session)
    sync_session_totals(session)
    if session.test_cases_completed >= session.test_cases_total and session.status == "in_progress":
        transition_session(session, "completed")
        _complete_suite(session)
        logger.info(
            "Session %s completed: passed=%s failed=%s blocked=%s skipped=%s",
            session.id, session.passed_cases, session.failed_cases,
            session.blocked_cases, session.skipped_cases,
        )


def rollback_finalization(session, status, restore_outcome=True):
    """Undo one ``record_finalization(session, status)`` after a reset.

    The completed count always follows the finished executions and a
    completed session is reopened as in_progress.  With ``restore_outcome``
    off the ``status`` counter keeps its old value.
    """
    if status not in FINAL_STATUSES:
        raise ValidationError(f"Not a final status: {status}")
    if restore_outcome:
        counter = OUTCOME_COUNTERS[status]
        setattr(session, counter, max(0, (getattr(session, counter) or 0) - 1))
    session.test_cases_completed = count_finished(session)
    if session.status == "completed":
        transition_session(session, "in_progress")
        suite = session.suite
        if suite is not None and suite.status == "completed":
            suite.status = "active"
            suite.actual_end_date = None
    session.progress_percentage = compute_progress(
        session.test_cases_completed, session.test_cases_total,
    )


def recount_session(session):
    """Rebuild the completed and outcome counters from the session's executions."""
    counts = dict(
        db.session.query(TestExecution.execution_status, func.count(TestExecution.id))
        .filter(TestExecution.session_id == session.id,
                TestExecution.execution_status.in_(FINAL_STATUSES))
        .group_by(TestExecution.execution_status)
        .all()
    )
    for status, counter in OUTCOME_COUNTERS.items():
        setattr(session, counter, counts.get(status, 0))
    session.test_cases_completed = sum(counts.values())
    sync_session_totals(session)


def sync_session_totals(session):
    """Bump the total to at least the executed count and recompute progress."""
    executed = (
        TestExecution.query
        .filter(TestExecution.session_id == session.id)
        .count()
    )
    if executed > (session.test_cases_total or 0):
        logger.info(
            "Session %s total bumped %s → %s", session.id, session.test_cases_total, executed,
        )
        session.test_cases_total = executed
    session.progress_percentage = compute_progress(
        session.test_cases_completed, session.test_cases_total,
    )


# ═════════════════════════════════════════════════════════════════════════════
# HISTORY / DELETE
# ═════════════════════════════════════════════════════════════════════════════

def session_history(suite, limit=10):
    """Recent sessions with stats, plus the pass-rate progression of finished runs."""
    sessions = list_sessions(suite).limit(limit).all()
    completed = [s for s in reversed(sessions) if s.status == "completed"]
    progression = [
        {
            "session_id": s.id,
            "name": s.name,
            "actual_end": s.actual_end.isoformat() if s.actual_end else None,
            "pass_rate": s.pass_rate,
        }
        for s in completed
    ]
    return {
        "sessions": [s.to_dict() for s in sessions],
        "pass_rate_progression": progression,
        "total": len(sessions),
    }


def purge_executions(executions):
    """Delete executions with their attachments.  Flushes; the caller commits.

    Stored evidence objects are removed best-effort through the evidence service.
    """
    from testhub.services import evidence_service

    count = 0
    for execution in executions:
        for attachment in execution.attachments.all():
            evidence_service.remove_stored_object(attachment)
        db.session.delete(execution)
        count += 1
    db.session.flush()
    return count


def purge_session(session):
    """Delete a session and its executions without committing."""
    removed = purge_executions(TestExecution.query.filter_by(session_id=session.id).all())
    db.session.delete(session)
    db.session.flush()
    return removed


def delete_session(session):
    """Delete a session's executions (and their attachments), then the session."""
    session_id = session.id
    removed = purge_session(session)
    _commit("delete session")
    logger.info("Session %s deleted with %d executions", session_id, removed)
