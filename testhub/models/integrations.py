"""Issue-tracker integration models."""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)

from testhub.models import db

INTEGRATION_TYPES = {"jira"}


def _utcnow():
    return datetime.now(timezone.utc)


# ── Tracker connection ────────────────────────────────────────────

class Integration(db.Model):
    """Per-user connection to an external issue tracker."""

    __tablename__ = "integrations"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    integration_type = Column(String(20), nullable=False, default="jira")  # jira
    name = Column(String(200), default="")
    base_url = Column(String(500), nullable=False)
    email = Column(String(255), nullable=False)
    api_token = Column(Text, nullable=False)  # Fernet-encrypted
    project_key = Column(String(20), nullable=False)
    issue_type = Column(String(50), default="Bug")
    is_active = Column(Boolean, default=True)
    last_test_at = Column(DateTime(timezone=True), nullable=True)
    last_test_status = Column(String(20), nullable=True)  # ok | failed
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "integration_type": self.integration_type,
            "name": self.name,
            "base_url": self.base_url,
            "email": self.email,
            "project_key": self.project_key,
            "issue_type": self.issue_type,
            "is_active": self.is_active,
            "has_api_token": bool(self.api_token),
            "last_test_at": self.last_test_at.isoformat() if self.last_test_at else None,
            "last_test_status": self.last_test_status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Integration {self.id}: {self.integration_type} {self.project_key}>"


# ── Created issues ────────────────────────────────────────────────

class IntegrationIssue(db.Model):
    """Issue opened in the tracker for a failed execution."""

    __tablename__ = "integration_issues"

    id = Column(Integer, primary_key=True)
    integration_id = Column(
        Integer, ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    execution_id = Column(
        Integer, ForeignKey("test_executions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    external_issue_id = Column(String(50), nullable=False)
    external_issue_url = Column(String(500), default="")
    issue_type = Column(String(20), default="bug")
    status = Column(String(20), default="open")  # open | closed
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "integration_id": self.integration_id,
            "execution_id": self.execution_id,
            "external_issue_id": self.external_issue_id,
            "external_issue_url": self.external_issue_url,
            "issue_type": self.issue_type,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
