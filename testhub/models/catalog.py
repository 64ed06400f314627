"""
Test Hub
Catalog domain models: projects, test cases and suites.

Models:
    - Project:           user-owned container for cases and suites
    - Suite:             ordered collection of cases that is executed as a run
    - TestCase:          regular (manual) test case
    - TestStep:          ordered step within a regular test case
    - PlatformTestCase:  cross-platform case with list-shaped steps
    - SuiteTestCase:     suite membership, points at exactly one case kind

Architecture ref:
    Project ──1:N──▶ Suite ──1:N──▶ SuiteTestCase ──N:1──▶ TestCase | PlatformTestCase
    TestCase ──1:N──▶ TestStep

The two case kinds are addressed through ``CaseRef(kind, id)``.  Every row
that can point at either kind carries ``test_case_id`` and
``platform_test_case_id`` with a check constraint that exactly one is set.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from testhub.core.exceptions import ValidationError
from testhub.models import db


# ── Constants ────────────────────────────────────────────────────────────

CASE_KINDS = ("regular", "cross_platform")

SUITE_STATUSES = {"draft", "active", "completed", "archived"}

CASE_PRIORITIES = {"low", "medium", "high", "critical"}

CASE_APPROVAL_STATUSES = {"draft", "active", "approved", "deprecated"}

DEFAULT_EXPECTED = "Expected result defined"


def _utcnow():
    return datetime.now(timezone.utc)


def one_case_constraint(name):
    """Check constraint: exactly one of test_case_id / platform_test_case_id."""
    return db.CheckConstraint(
        "(test_case_id IS NULL) <> (platform_test_case_id IS NULL)",
        name=name,
    )


# ═════════════════════════════════════════════════════════════════════════════
# CASE REFERENCE
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class CaseRef:
    """Tagged reference to either a regular or a cross-platform test case."""

    kind: str
    id: int

    def __post_init__(self):
        if self.kind not in CASE_KINDS:
            raise ValidationError(
                f"Unknown case kind: {self.kind}",
                details={"kind": f"must be one of {', '.join(CASE_KINDS)}"},
            )

    @classmethod
    def from_ids(cls, test_case_id=None, platform_test_case_id=None):
        """Build a ref from the pair of nullable foreign keys.

        Exactly one of the two ids must be given.
        """
        has_regular = test_case_id is not None
        has_platform = platform_test_case_id is not None
        if has_regular == has_platform:
            raise ValidationError(
                "Exactly one of test_case_id or platform_test_case_id is required",
                details={
                    "test_case_id": test_case_id,
                    "platform_test_case_id": platform_test_case_id,
                },
            )
        if has_regular:
            return cls("regular", int(test_case_id))
        return cls("cross_platform", int(platform_test_case_id))

    @classmethod
    def from_payload(cls, data: dict):
        """Parse ``{"kind", "id"}`` or the two id fields from a request body."""
        if "kind" in data or "id" in data:
            try:
                return cls(str(data.get("kind")), int(data.get("id")))
            except (TypeError, ValueError):
                raise ValidationError(
                    "Case reference needs a kind and an integer id",
                    details={"kind": data.get("kind"), "id": data.get("id")},
                )
        try:
            return cls.from_ids(
                data.get("test_case_id"), data.get("platform_test_case_id"),
            )
        except (TypeError, ValueError):
            raise ValidationError("Case ids must be integers")

    @property
    def model(self):
        return TestCase if self.kind == "regular" else PlatformTestCase

    def fk_columns(self) -> dict:
        """Column values for the XOR foreign-key pair."""
        if self.kind == "regular":
            return {"test_case_id": self.id, "platform_test_case_id": None}
        return {"test_case_id": None, "platform_test_case_id": self.id}

    def load(self):
        """Return the referenced case row, or None."""
        return db.session.get(self.model, self.id)

    def to_dict(self):
        return {"kind": self.kind, "id": self.id}


class CaseLinkMixin:
    """Accessors for rows carrying the test_case_id / platform_test_case_id pair."""

    @property
    def case_ref(self):
        if self.test_case_id is not None:
            return CaseRef("regular", self.test_case_id)
        if self.platform_test_case_id is not None:
            return CaseRef("cross_platform", self.platform_test_case_id)
        return None

    @property
    def case(self):
        if self.test_case_id is not None:
            return self.test_case
        return self.platform_test_case


def case_steps(case):
    """Normalise the steps of either case kind into one list shape.

    Returns ``[{"step_number", "action", "expected"}]`` ordered by step number.
    Cross-platform cases number their steps from 1 and fall back to a generic
    expected result when the list is shorter than the step list.
    """
    if case is None:
        return []
    if isinstance(case, TestCase):
        return [
            {"step_number": s.step_number, "action": s.action, "expected": s.expected or ""}
            for s in case.steps.order_by(TestStep.step_number).all()
        ]
    expected = case.expected_results or []
    return [
        {
            "step_number": idx + 1,
            "action": action,
            "expected": expected[idx] if idx < len(expected) and expected[idx] else DEFAULT_EXPECTED,
        }
        for idx, action in enumerate(case.steps or [])
    ]


# ═════════════════════════════════════════════════════════════════════════════
# PROJECT
# ═════════════════════════════════════════════════════════════════════════════


class Project(db.Model):
    """User-owned grouping of test cases and suites."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    color = db.Column(db.String(20), default="blue")
    icon = db.Column(db.String(40), default="folder")

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    suites = db.relationship("Suite", backref="project", lazy="dynamic")
    test_cases = db.relationship("TestCase", backref="project", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "icon": self.icon,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# TEST CASES
# ═════════════════════════════════════════════════════════════════════════════


class TestCase(db.Model):
    """Regular manual test case with ordered steps."""

    __tablename__ = "test_cases"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    test_type = db.Column(db.String(30), default="functional", comment="functional | regression | smoke | ...")
    priority = db.Column(db.String(20), default="medium", comment="low | medium | high | critical")
    preconditions = db.Column(db.Text, default="")
    expected_result = db.Column(db.Text, default="")
    is_edge_case = db.Column(db.Boolean, default=False)
    status = db.Column(db.String(20), default="active", comment="draft | active | approved | deprecated")
    execution_status = db.Column(
        db.String(20), default="not_run",
        comment="Outcome of the latest execution: not_run | in_progress | passed | failed | blocked | skipped",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    steps = db.relationship(
        "TestStep", backref="test_case", lazy="dynamic",
        cascade="all, delete-orphan", order_by="TestStep.step_number",
    )

    kind = "regular"

    def to_dict(self, include_steps=False):
        d = {
            "id": self.id,
            "kind": self.kind,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "title": self.title,
            "description": self.description,
            "test_type": self.test_type,
            "priority": self.priority,
            "preconditions": self.preconditions,
            "expected_result": self.expected_result,
            "is_edge_case": self.is_edge_case,
            "status": self.status,
            "execution_status": self.execution_status,
            "step_count": self.steps.count(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_steps:
            d["steps"] = case_steps(self)
        return d

    def __repr__(self):
        return f"<TestCase {self.id}: {self.title[:40]}>"


class TestStep(db.Model):
    """Single ordered step of a regular test case."""

    __tablename__ = "test_steps"
    __table_args__ = (
        db.UniqueConstraint("test_case_id", "step_number", name="uq_step_case_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    test_case_id = db.Column(
        db.Integer, db.ForeignKey("test_cases.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_number = db.Column(db.Integer, nullable=False)
    action = db.Column(db.Text, nullable=False)
    expected = db.Column(db.Text, default="")

    def to_dict(self):
        return {
            "id": self.id,
            "test_case_id": self.test_case_id,
            "step_number": self.step_number,
            "action": self.action,
            "expected": self.expected,
        }

    def __repr__(self):
        return f"<TestStep {self.test_case_id}#{self.step_number}>"


class PlatformTestCase(db.Model):
    """Cross-platform case: steps and expected results are parallel JSON lists."""

    __tablename__ = "platform_test_cases"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    platform = db.Column(db.String(30), nullable=False, comment="web | mobile | api | accessibility | performance")
    framework = db.Column(db.String(60), default="")
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    preconditions = db.Column(db.Text, default="")
    steps = db.Column(db.JSON, default=list)
    expected_results = db.Column(db.JSON, default=list)
    automation_hints = db.Column(db.JSON, default=list)
    priority = db.Column(db.String(20), default="medium")
    status = db.Column(db.String(20), default="active")
    execution_status = db.Column(db.String(20), default="not_run")

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    kind = "cross_platform"

    def to_dict(self, include_steps=False):
        d = {
            "id": self.id,
            "kind": self.kind,
            "user_id": self.user_id,
            "platform": self.platform,
            "framework": self.framework,
            "title": self.title,
            "description": self.description,
            "preconditions": self.preconditions,
            "steps": list(self.steps or []),
            "expected_results": list(self.expected_results or []),
            "automation_hints": list(self.automation_hints or []),
            "priority": self.priority,
            "status": self.status,
            "execution_status": self.execution_status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_steps:
            d["normalized_steps"] = case_steps(self)
        return d

    def __repr__(self):
        return f"<PlatformTestCase {self.id}: [{self.platform}] {self.title[:40]}>"


# ═════════════════════════════════════════════════════════════════════════════
# SUITES
# ═════════════════════════════════════════════════════════════════════════════


class Suite(db.Model):
    """Ordered collection of cases; one kind per suite."""

    __tablename__ = "suites"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    kind = db.Column(db.String(20), nullable=False, default="regular", comment="regular | cross_platform")
    suite_type = db.Column(db.String(30), default="manual", comment="manual | regression | smoke | ...")
    status = db.Column(db.String(20), default="draft", comment="draft | active | completed | archived")
    planned_start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    planned_end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_end_date = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    case_links = db.relationship(
        "SuiteTestCase", backref="suite", lazy="dynamic",
        cascade="all, delete-orphan",
        order_by="SuiteTestCase.sequence_order",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "name": self.name,
            "description": self.description,
            "kind": self.kind,
            "suite_type": self.suite_type,
            "status": self.status,
            "case_count": self.case_links.count(),
            "planned_start_date": self.planned_start_date.isoformat() if self.planned_start_date else None,
            "planned_end_date": self.planned_end_date.isoformat() if self.planned_end_date else None,
            "actual_end_date": self.actual_end_date.isoformat() if self.actual_end_date else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Suite {self.id}: {self.name} [{self.kind}]>"


class SuiteTestCase(CaseLinkMixin, db.Model):
    """Membership of a case in a suite, defining the run order."""

    __tablename__ = "test_suite_cases"
    __table_args__ = (one_case_constraint("ck_suite_case_one_case"),)

    id = db.Column(db.Integer, primary_key=True)
    suite_id = db.Column(
        db.Integer, db.ForeignKey("suites.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    test_case_id = db.Column(
        db.Integer, db.ForeignKey("test_cases.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    platform_test_case_id = db.Column(
        db.Integer, db.ForeignKey("platform_test_cases.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    sequence_order = db.Column(db.Integer, nullable=False, default=0)
    priority = db.Column(db.String(20), default="medium")
    estimated_duration_minutes = db.Column(db.Integer, nullable=True)
    assigned_to = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    test_case = db.relationship("TestCase")
    platform_test_case = db.relationship("PlatformTestCase")

    def to_dict(self):
        case = self.case
        return {
            "id": self.id,
            "suite_id": self.suite_id,
            "case_ref": self.case_ref.to_dict() if self.case_ref else None,
            "test_case_id": self.test_case_id,
            "platform_test_case_id": self.platform_test_case_id,
            "sequence_order": self.sequence_order,
            "priority": self.priority,
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "assigned_to": self.assigned_to,
            "title": case.title if case else None,
        }

    def __repr__(self):
        return f"<SuiteTestCase {self.id}: suite={self.suite_id} #{self.sequence_order}>"
