"""Catalog service layer — projects, suites, test cases and suite membership.

Transaction policy: methods use flush() for ID generation, never commit().
Caller (route handler) is responsible for db.session.commit().
Deleting a suite or a case also deletes the executions that ran it; their
stored evidence objects are removed best-effort before the commit.

Every loader is scoped by ``user_id``; rows owned by somebody else raise
NotFoundError exactly like missing rows.
"""
import logging

from sqlalchemy import func

from testhub.core.exceptions import ConflictError, NotFoundError, ValidationError
from testhub.models import db
from testhub.models.catalog import (
    CASE_KINDS,
    CASE_PRIORITIES,
    SUITE_STATUSES,
    CaseRef,
    PlatformTestCase,
    Project,
    Suite,
    SuiteTestCase,
    TestCase,
    TestStep,
)
from testhub.models.execution import ACTIVE_SESSION_STATUSES, TestExecution, TestRunSession
from testhub.utils.helpers import get_owned_or_404

logger = logging.getLogger(__name__)

_PROJECT_FIELDS = ("name", "description", "color", "icon")
_SUITE_FIELDS = ("name", "description", "suite_type", "status", "project_id")
_CASE_FIELDS = (
    "title", "description", "test_type", "priority", "preconditions",
    "expected_result", "is_edge_case", "status", "project_id",
)
_PLATFORM_FIELDS = (
    "platform", "framework", "title", "description", "preconditions",
    "expected_results", "automation_hints", "priority", "status",
)

_MEMBERSHIP_FROZEN = "Suite membership cannot change while a session is in progress or paused"


def _require_text(data, field):
    value = data.get(field)
    if isinstance(value, str):
        value = value.strip()
    if not value:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return value


def _check_project(user_id, project_id):
    if project_id is not None:
        get_owned_or_404(Project, project_id, user_id)


# ═════════════════════════════════════════════════════════════════════════════
# PROJECTS
# ═════════════════════════════════════════════════════════════════════════════

def list_projects(user_id):
    return Project.query.filter_by(user_id=user_id).order_by(Project.created_at.desc())


def create_project(user_id, data):
    project = Project(user_id=user_id, name=_require_text(data, "name"))
    for field in _PROJECT_FIELDS[1:]:
        if field in data:
            setattr(project, field, data[field])
    db.session.add(project)
    db.session.flush()
    return project


def update_project(project, data):
    if "name" in data:
        _require_text(data, "name")
    for field in _PROJECT_FIELDS:
        if field in data:
            setattr(project, field, data[field])
    db.session.flush()
    return project


def delete_project(project):
    """Delete a project.  Its suites and cases stay, detached from it."""
    project_id = project.id
    for suite in project.suites.all():
        suite.project_id = None
    for case in project.test_cases.all():
        case.project_id = None
    db.session.delete(project)
    db.session.flush()
    logger.info("Project %s deleted", project_id)


# ═════════════════════════════════════════════════════════════════════════════
# TEST CASES
# ═════════════════════════════════════════════════════════════════════════════

def list_test_cases(user_id, project_id=None, search=None):
    q = TestCase.query.filter_by(user_id=user_id)
    if project_id is not None:
        q = q.filter_by(project_id=project_id)
    if search:
        q = q.filter(TestCase.title.ilike(f"%{search}%"))
    return q.order_by(TestCase.created_at.desc())


def _replace_steps(case, steps):
    """Replace the steps of a regular case, renumbering from 1 in list order."""
    if not isinstance(steps, list):
        raise ValidationError("steps must be a list", details={"steps": "list required"})
    for old in case.steps.all():
        db.session.delete(old)
    db.session.flush()
    for idx, step in enumerate(steps, start=1):
        if isinstance(step, str):
            step = {"action": step}
        if not isinstance(step, dict) or not isinstance(step.get("action") or "", str):
            raise ValidationError(f"Step {idx} must be a string or an object", details={"steps": idx})
        action = (step.get("action") or "").strip()
        if not action:
            raise ValidationError(f"Step {idx} needs an action", details={"steps": idx})
        db.session.add(TestStep(
            test_case_id=case.id, step_number=idx,
            action=action, expected=step.get("expected") or "",
        ))


def create_test_case(user_id, data):
    _check_project(user_id, data.get("project_id"))
    priority = data.get("priority", "medium")
    if priority not in CASE_PRIORITIES:
        raise ValidationError(f"Invalid priority: {priority}", details={"priority": sorted(CASE_PRIORITIES)})
    case = TestCase(user_id=user_id, title=_require_text(data, "title"))
    for field in _CASE_FIELDS[1:]:
        if field in data:
            setattr(case, field, data[field])
    db.session.add(case)
    db.session.flush()
    if "steps" in data:
        _replace_steps(case, data["steps"])
        db.session.flush()
    return case


def update_test_case(case, data):
    if "title" in data:
        _require_text(data, "title")
    if "priority" in data and data["priority"] not in CASE_PRIORITIES:
        raise ValidationError(f"Invalid priority: {data['priority']}")
    if "project_id" in data:
        _check_project(case.user_id, data["project_id"])
    for field in _CASE_FIELDS:
        if field in data:
            setattr(case, field, data[field])
    if "steps" in data:
        _replace_steps(case, data["steps"])
    db.session.flush()
    return case


def list_platform_cases(user_id, platform=None):
    q = PlatformTestCase.query.filter_by(user_id=user_id)
    if platform:
        q = q.filter_by(platform=platform)
    return q.order_by(PlatformTestCase.created_at.desc())


def _string_list(data, field):
    value = data.get(field) or []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{field} must be a list of strings", details={field: "list[str]"})
    return list(value)


def create_platform_case(user_id, data):
    case = PlatformTestCase(
        user_id=user_id,
        platform=_require_text(data, "platform"),
        title=_require_text(data, "title"),
        steps=_string_list(data, "steps"),
        expected_results=_string_list(data, "expected_results"),
    )
    for field in ("framework", "description", "preconditions", "automation_hints", "priority", "status"):
        if field in data:
            setattr(case, field, data[field])
    db.session.add(case)
    db.session.flush()
    return case


def update_platform_case(case, data):
    for field in _PLATFORM_FIELDS:
        if field not in data:
            continue
        if field in ("steps", "expected_results"):
            setattr(case, field, _string_list(data, field))
        else:
            setattr(case, field, data[field])
    db.session.flush()
    return case


def delete_case(case):
    """Delete a regular or cross-platform case with its suite links and executions.

    Refused while a suite holding the case has a session in progress or
    paused.  Finished runs that executed the case lose it from their total
    and have their counters recounted from the executions left.
    """
    from testhub.services import session_service

    ref = CaseRef(case.kind, case.id)
    links = SuiteTestCase.query.filter_by(**ref.fk_columns()).all()
    for link in links:
        _ensure_not_running(
            link.suite, "A case cannot be deleted while a session of its suite is in progress or paused",
        )

    executions = TestExecution.query.filter_by(**ref.fk_columns()).all()
    runs = {e.session for e in executions if e.session is not None}
    removed = session_service.purge_executions(executions)
    for link in links:
        db.session.delete(link)
    db.session.delete(case)
    db.session.flush()
    for run in runs:
        run.test_cases_total = max(0, (run.test_cases_total or 0) - 1)
        session_service.recount_session(run)
    logger.info("Case %s:%s deleted (%d suite links, %d executions)",
                ref.kind, ref.id, len(links), removed)


def get_case(user_id, ref: CaseRef):
    """Load the case a CaseRef points at, scoped to the user."""
    return get_owned_or_404(ref.model, ref.id, user_id)


# ═════════════════════════════════════════════════════════════════════════════
# SUITES
# ═════════════════════════════════════════════════════════════════════════════

def list_suites(user_id, project_id=None, status=None):
    q = Suite.query.filter_by(user_id=user_id)
    if project_id is not None:
        q = q.filter_by(project_id=project_id)
    if status:
        q = q.filter_by(status=status)
    return q.order_by(Suite.created_at.desc())


def create_suite(user_id, data):
    kind = data.get("kind", "regular")
    if kind not in CASE_KINDS:
        raise ValidationError(f"Invalid suite kind: {kind}", details={"kind": list(CASE_KINDS)})
    status = data.get("status", "draft")
    if status not in SUITE_STATUSES:
        raise ValidationError(f"Invalid suite status: {status}", details={"status": sorted(SUITE_STATUSES)})
    _check_project(user_id, data.get("project_id"))
    suite = Suite(user_id=user_id, name=_require_text(data, "name"), kind=kind)
    for field in _SUITE_FIELDS[1:]:
        if field in data:
            setattr(suite, field, data[field])
    db.session.add(suite)
    db.session.flush()
    return suite


def update_suite(suite, data):
    if "kind" in data and data["kind"] != suite.kind:
        raise ValidationError("Suite kind cannot be changed", details={"kind": suite.kind})
    if "status" in data and data["status"] not in SUITE_STATUSES:
        raise ValidationError(f"Invalid suite status: {data['status']}")
    if "name" in data:
        _require_text(data, "name")
    if "project_id" in data:
        _check_project(suite.user_id, data["project_id"])
    for field in _SUITE_FIELDS:
        if field in data:
            setattr(suite, field, data[field])
    db.session.flush()
    return suite


def delete_suite(suite):
    """Delete a suite with its membership, run sessions and their executions.

    Refused while a session is in progress or paused.  Stored evidence
    objects of the deleted executions are removed best-effort.
    """
    from testhub.services import session_service

    _ensure_not_running(suite, "A suite cannot be deleted while a session is in progress or paused")
    runs = TestRunSession.query.filter_by(suite_id=suite.id).all()
    for run in runs:
        session_service.purge_session(run)
    session_service.purge_executions(TestExecution.query.filter_by(suite_id=suite.id).all())
    suite_id = suite.id
    db.session.delete(suite)
    db.session.flush()
    logger.info("Suite %s deleted with %d sessions", suite_id, len(runs))


def ordered_suite_cases(suite_id):
    """Run order of a suite: sequence_order, then id."""
    return (
        SuiteTestCase.query
        .filter_by(suite_id=suite_id)
        .order_by(SuiteTestCase.sequence_order, SuiteTestCase.id)
        .all()
    )


def _ensure_not_running(suite, message=_MEMBERSHIP_FROZEN):
    running = (
        TestRunSession.query
        .filter(TestRunSession.suite_id == suite.id,
                TestRunSession.status.in_(ACTIVE_SESSION_STATUSES))
        .count()
    )
    if running:
        raise ValidationError(message, details={"active_sessions": running})


def add_case_to_suite(suite, ref: CaseRef, sequence_order=None, **extra):
    """Append (or insert at ``sequence_order``) a case into a suite."""
    _ensure_not_running(suite)
    get_case(suite.user_id, ref)
    if ref.kind != suite.kind:
        raise ValidationError(
            f"A {suite.kind} suite cannot contain {ref.kind} cases",
            details={"suite_kind": suite.kind, "case_kind": ref.kind},
        )
    duplicate = SuiteTestCase.query.filter_by(suite_id=suite.id, **ref.fk_columns()).first()
    if duplicate:
        raise ConflictError(resource="SuiteTestCase", field="case", value=f"{ref.kind}:{ref.id}")

    if sequence_order is None:
        last = (
            db.session.query(func.max(SuiteTestCase.sequence_order))
            .filter(SuiteTestCase.suite_id == suite.id)
            .scalar()
        )
        sequence_order = (last or 0) + 1

    link = SuiteTestCase(
        suite_id=suite.id,
        sequence_order=sequence_order,
        priority=extra.get("priority") or "medium",
        estimated_duration_minutes=extra.get("estimated_duration_minutes"),
        assigned_to=extra.get("assigned_to"),
        **ref.fk_columns(),
    )
    db.session.add(link)
    db.session.flush()
    logger.info("Case %s:%s added to suite %s at #%s", ref.kind, ref.id, suite.id, sequence_order)
    return link


def remove_case_from_suite(suite, link_id):
    _ensure_not_running(suite)
    link = SuiteTestCase.query.filter_by(id=link_id, suite_id=suite.id).first()
    if not link:
        raise NotFoundError(resource="SuiteTestCase", resource_id=link_id)
    db.session.delete(link)
    db.session.flush()


def reorder_suite(suite, ordered_link_ids):
    """Rewrite sequence_order so the links run in the given order."""
    _ensure_not_running(suite)
    links = {link.id: link for link in ordered_suite_cases(suite.id)}
    if sorted(ordered_link_ids) != sorted(links):
        raise ValidationError(
            "Reorder must list every suite case exactly once",
            details={"expected": sorted(links), "received": list(ordered_link_ids)},
        )
    for position, link_id in enumerate(ordered_link_ids, start=1):
        links[link_id].sequence_order = position
    db.session.flush()
    return [links[link_id] for link_id in ordered_link_ids]
