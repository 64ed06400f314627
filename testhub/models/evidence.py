"""
Test Hub
Execution evidence model.

Models:
    - TestAttachment: screenshot stored in object storage, linked to an
                      execution and to exactly one case (optionally a step)

The stored object lives under ``{user_id}/executions/{execution_id}/...`` in
the attachments bucket; this row only holds its metadata.
"""

from datetime import datetime, timezone

from testhub.models import db
from testhub.models.catalog import CaseLinkMixin, one_case_constraint

ATTACHMENT_SOURCES = {"upload", "extension"}


class TestAttachment(CaseLinkMixin, db.Model):
    """Evidence file attached to a test execution."""

    __tablename__ = "test_attachments"
    __table_args__ = (one_case_constraint("ck_attachment_one_case"),)

    id = db.Column(db.Integer, primary_key=True)
    execution_id = db.Column(
        db.Integer, db.ForeignKey("test_executions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    test_case_id = db.Column(
        db.Integer, db.ForeignKey("test_cases.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    platform_test_case_id = db.Column(
        db.Integer, db.ForeignKey("platform_test_cases.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    step_number = db.Column(db.Integer, nullable=True, comment="Step the screenshot belongs to, if any")
    file_name = db.Column(db.String(255), nullable=False)
    file_path = db.Column(db.String(500), nullable=False, unique=True, comment="Object key in the bucket")
    file_type = db.Column(db.String(50), nullable=False, comment="MIME type")
    file_size = db.Column(db.Integer, nullable=False, comment="Bytes")
    description = db.Column(db.Text, nullable=True)
    source = db.Column(db.String(20), default="upload", comment="upload | extension")
    uploaded_by = db.Column(db.String(64), nullable=False, index=True)
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )

    test_case = db.relationship("TestCase")
    platform_test_case = db.relationship("PlatformTestCase")

    def to_dict(self):
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "case_ref": self.case_ref.to_dict() if self.case_ref else None,
            "test_case_id": self.test_case_id,
            "platform_test_case_id": self.platform_test_case_id,
            "step_number": self.step_number,
            "file_name": self.file_name,
            "file_path": self.file_path,
            "file_type": self.file_type,
            "file_size": self.file_size,
            "description": self.description,
            "source": self.source,
            "uploaded_by": self.uploaded_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<TestAttachment {self.id}: {self.file_name} exec={self.execution_id}>"
