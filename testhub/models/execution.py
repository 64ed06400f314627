"""
Test Hub
Execution domain models: run sessions and per-case executions.

Models:
    - TestRunSession:  one execution run of a suite, with progress counters
    - TestExecution:   result record of one case inside a session

Architecture ref:
    Suite ──1:N──▶ TestRunSession ──1:N──▶ TestExecution ──1:N──▶ TestAttachment
    TestExecution ──N:1──▶ TestCase | PlatformTestCase

State machines:
    TestRunSession  planned → in_progress ⇄ paused → completed
    TestExecution   not_run → in_progress → passed | failed | blocked | skipped
                    (a finished execution goes back to in_progress only by reset)

Invariants held by the session/execution services:
    - at most one execution per (session, case)
    - test_cases_completed == number of finished executions in the session
    - progress_percentage reaches 100 exactly when every case is finished
"""

from datetime import datetime, timezone

from testhub.models import db
from testhub.models.catalog import CaseLinkMixin, case_steps, one_case_constraint


# ── Constants ────────────────────────────────────────────────────────────

SESSION_STATUSES = {"planned", "in_progress", "paused", "completed", "aborted"}

ACTIVE_SESSION_STATUSES = ("in_progress", "paused")

EXECUTION_STATUSES = {
    "not_run", "in_progress", "passed", "failed", "blocked", "skipped",
}

FINAL_STATUSES = ("passed", "failed", "blocked", "skipped")

# Outcome → session counter column
OUTCOME_COUNTERS = {
    "passed": "passed_cases",
    "failed": "failed_cases",
    "blocked": "blocked_cases",
    "skipped": "skipped_cases",
}

DEFAULT_ENVIRONMENT = "staging"


# ═════════════════════════════════════════════════════════════════════════════
# STATE MACHINES
# ═════════════════════════════════════════════════════════════════════════════

SESSION_TRANSITIONS = {
    "planned":     ["in_progress"],
    "in_progress": ["paused", "completed", "aborted"],
    "paused":      ["in_progress", "aborted"],
    "completed":   ["in_progress"],   # reopened when a finished execution is reset
    "aborted":     [],
}

EXECUTION_TRANSITIONS = {
    "not_run":     ["in_progress"],
    "in_progress": ["passed", "failed", "blocked", "skipped"],
    "passed":      ["in_progress"],
    "failed":      ["in_progress"],
    "blocked":     ["in_progress"],
    "skipped":     ["in_progress"],
}


def validate_session_transition(old_status, new_status):
    """Return True if TestRunSession status transition is valid."""
    return new_status in SESSION_TRANSITIONS.get(old_status, [])


def validate_execution_transition(old_status, new_status):
    """Return True if TestExecution status transition is valid."""
    return new_status in EXECUTION_TRANSITIONS.get(old_status, [])


def compute_progress(completed, total):
    """Percentage of finished cases, rounded half up.

    Held at 99 until every case is finished so that 100 always means done.
    """
    if not total or total <= 0:
        return 0
    completed = max(0, min(completed or 0, total))
    pct = (200 * completed + total) // (2 * total)
    if completed < total:
        return min(pct, 99)
    return 100


def _utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ═════════════════════════════════════════════════════════════════════════════
# RUN SESSION
# ═════════════════════════════════════════════════════════════════════════════


class TestRunSession(db.Model):
    """
    One execution run of a suite.

    Counters are maintained by the session service whenever an execution
    is finalized or reset; ``current_index`` is the position in the suite's
    run order that the tester is looking at.
    """

    __tablename__ = "test_run_sessions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    suite_id = db.Column(
        db.Integer, db.ForeignKey("suites.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name = db.Column(db.String(300), nullable=False)
    environment = db.Column(db.String(50), default=DEFAULT_ENVIRONMENT)
    status = db.Column(
        db.String(20), default="planned",
        comment="planned | in_progress | paused | completed | aborted",
    )
    current_index = db.Column(db.Integer, nullable=False, default=0)
    actual_start = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_end = db.Column(db.DateTime(timezone=True), nullable=True)

    test_cases_total = db.Column(db.Integer, nullable=False, default=0)
    test_cases_completed = db.Column(db.Integer, nullable=False, default=0)
    progress_percentage = db.Column(db.Integer, nullable=False, default=0)
    passed_cases = db.Column(db.Integer, nullable=False, default=0)
    failed_cases = db.Column(db.Integer, nullable=False, default=0)
    blocked_cases = db.Column(db.Integer, nullable=False, default=0)
    skipped_cases = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    suite = db.relationship("Suite", backref=db.backref("run_sessions", lazy="dynamic"))
    executions = db.relationship("TestExecution", backref="session", lazy="dynamic")

    @property
    def pass_rate(self):
        """Passed share of finished cases (0 when nothing finished)."""
        done = self.test_cases_completed or 0
        return min(100, round((self.passed_cases or 0) / done * 100)) if done else 0

    @property
    def duration_minutes(self):
        if not self.actual_start or not self.actual_end:
            return None
        delta = as_utc(self.actual_end) - as_utc(self.actual_start)
        return round(delta.total_seconds() / 60, 1)

    def stats(self):
        return {
            "total": self.test_cases_total,
            "completed": self.test_cases_completed,
            "passed": self.passed_cases,
            "failed": self.failed_cases,
            "blocked": self.blocked_cases,
            "skipped": self.skipped_cases,
            "remaining": max(0, (self.test_cases_total or 0) - (self.test_cases_completed or 0)),
            "progress_percentage": self.progress_percentage,
            "pass_rate": self.pass_rate,
        }

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "suite_id": self.suite_id,
            "name": self.name,
            "environment": self.environment,
            "status": self.status,
            "current_index": self.current_index,
            "actual_start": self.actual_start.isoformat() if self.actual_start else None,
            "actual_end": self.actual_end.isoformat() if self.actual_end else None,
            "duration_minutes": self.duration_minutes,
            "test_cases_total": self.test_cases_total,
            "test_cases_completed": self.test_cases_completed,
            "progress_percentage": self.progress_percentage,
            "passed_cases": self.passed_cases,
            "failed_cases": self.failed_cases,
            "blocked_cases": self.blocked_cases,
            "skipped_cases": self.skipped_cases,
            "stats": self.stats(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<TestRunSession {self.id}: suite={self.suite_id} [{self.status}] {self.progress_percentage}%>"


# ═════════════════════════════════════════════════════════════════════════════
# EXECUTION
# ═════════════════════════════════════════════════════════════════════════════


class TestExecution(CaseLinkMixin, db.Model):
    """
    Result record of one case inside a run session.

    Step checkboxes and failed-step notes are only writable while the
    execution is ``in_progress``; once finalized the record is read-only
    until it is reset.
    """

    __tablename__ = "test_executions"
    __table_args__ = (one_case_constraint("ck_execution_one_case"),)

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.Integer, db.ForeignKey("test_run_sessions.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    suite_id = db.Column(
        db.Integer, db.ForeignKey("suites.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    user_id = db.Column(db.String(64), nullable=False, index=True)
    test_case_id = db.Column(
        db.Integer, db.ForeignKey("test_cases.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    platform_test_case_id = db.Column(
        db.Integer, db.ForeignKey("platform_test_cases.id", ondelete="CASCADE"), nullable=True, index=True,
    )

    execution_status = db.Column(
        db.String(20), default="not_run",
        comment="not_run | in_progress | passed | failed | blocked | skipped",
    )
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    duration_seconds = db.Column(db.Integer, nullable=True)

    completed_steps = db.Column(db.JSON, default=list, comment="Checked step numbers")
    failed_steps = db.Column(db.JSON, default=list, comment="[{step_number, failure_reason}]")
    execution_notes = db.Column(db.Text, nullable=True)
    failure_reason = db.Column(db.Text, nullable=True, comment="Set only when failed")
    status_reason = db.Column(db.Text, nullable=True, comment="Why the case was blocked or skipped")

    test_environment = db.Column(db.String(50), nullable=True)
    browser = db.Column(db.String(60), nullable=True)
    os_version = db.Column(db.String(60), nullable=True)
    tracker_issue_key = db.Column(db.String(50), nullable=True, comment="Issue created from this failure")

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    test_case = db.relationship("TestCase")
    platform_test_case = db.relationship("PlatformTestCase")
    suite = db.relationship("Suite")
    attachments = db.relationship(
        "TestAttachment", backref="execution", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    @property
    def is_final(self):
        return self.execution_status in FINAL_STATUSES

    @property
    def is_editable(self):
        return self.execution_status == "in_progress"

    def to_dict(self, include_case=False):
        d = {
            "id": self.id,
            "session_id": self.session_id,
            "suite_id": self.suite_id,
            "user_id": self.user_id,
            "case_ref": self.case_ref.to_dict() if self.case_ref else None,
            "test_case_id": self.test_case_id,
            "platform_test_case_id": self.platform_test_case_id,
            "execution_status": self.execution_status,
            "read_only": not self.is_editable,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "completed_steps": list(self.completed_steps or []),
            "failed_steps": list(self.failed_steps or []),
            "execution_notes": self.execution_notes,
            "failure_reason": self.failure_reason,
            "status_reason": self.status_reason,
            "test_environment": self.test_environment,
            "browser": self.browser,
            "os_version": self.os_version,
            "tracker_issue_key": self.tracker_issue_key,
            "attachment_count": self.attachments.count(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_case:
            case = self.case
            d["case"] = case.to_dict() if case else None
            d["steps"] = case_steps(case)
        return d

    def __repr__(self):
        return f"<TestExecution {self.id}: session={self.session_id} [{self.execution_status}]>"
