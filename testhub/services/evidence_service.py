"""Evidence uploader — screenshots attached to test executions.

Upload is a two-phase write across two systems with no shared transaction:

    1. the bytes go to object storage
    2. the metadata row is inserted and committed

If step 2 fails the stored object is removed again (compensating delete) and
the outcome of that cleanup is logged before the original error propagates.
Validation (MIME allow-list, size ceiling, case link) always runs before any
storage call, so a rejected upload writes nothing anywhere.

Deleting goes the other way round: the object is removed best-effort (a
storage failure is logged, not raised) and then the row is deleted.
"""
import base64
import binascii
import logging
import re
import secrets
import time

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from testhub.core.exceptions import NotFoundError, PersistenceError, StorageError, ValidationError
from testhub.models import db
from testhub.models.catalog import CaseRef, case_steps
from testhub.models.evidence import ATTACHMENT_SOURCES, TestAttachment
from testhub.integrations.storage import get_storage

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
}

DEFAULT_MAX_BYTES = 10 * 1024 * 1024

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.DOTALL)


# ── Validation ───────────────────────────────────────────────────────────────

def max_upload_bytes():
    return current_app.config.get("ATTACHMENT_MAX_BYTES", DEFAULT_MAX_BYTES)


def validate_upload(content_type, size):
    """Reject disallowed MIME types and files over the size ceiling."""
    content_type = (content_type or "").lower()
    if content_type not in ALLOWED_MIME_TYPES:
        raise ValidationError(
            f"File type not allowed: {content_type or 'unknown'}",
            details={"file_type": content_type, "allowed": sorted(ALLOWED_MIME_TYPES)},
        )
    limit = max_upload_bytes()
    if size > limit:
        raise ValidationError(
            f"File is too large: {size} bytes (limit {limit})",
            details={"file_size": size, "max_bytes": limit},
        )
    if size <= 0:
        raise ValidationError("File is empty", details={"file_size": size})
    return content_type


def resolve_case_link(execution, test_case_id=None, platform_test_case_id=None):
    """Exactly one case id, and it must be the execution's own case."""
    ref = CaseRef.from_ids(test_case_id, platform_test_case_id)
    if ref != execution.case_ref:
        raise ValidationError(
            "Attachment case does not match the execution's case",
            details={"case_ref": ref.to_dict(),
                     "execution_case_ref": execution.case_ref.to_dict() if execution.case_ref else None},
        )
    return ref


def _check_step(execution, step_number):
    if step_number is None:
        return None
    if step_number not in {s["step_number"] for s in case_steps(execution.case)}:
        raise ValidationError(
            f"Step {step_number} does not exist on this case",
            details={"step_number": step_number},
        )
    return step_number


def build_storage_path(user_id, execution_id, content_type):
    """``{user}/executions/{execution}/screenshot-<ms>-<hex>.<ext>``."""
    ext = ALLOWED_MIME_TYPES[content_type]
    millis = int(time.time() * 1000)
    return f"{user_id}/executions/{execution_id}/screenshot-{millis}-{secrets.token_hex(4)}.{ext}"


# ── Two-phase write ──────────────────────────────────────────────────────────

def upload_then_record(storage, path, data, content_type, record):
    """Store ``data`` at ``path``, then run ``record()`` and commit.

    ``record`` adds the metadata row to the session and returns it.  When the
    insert or commit fails the object is removed and the error re-raised as
    PersistenceError.
    """
    storage.upload(path, data, content_type)
    try:
        row = record()
        db.session.commit()
        return row
    except SQLAlchemyError as exc:
        db.session.rollback()
        try:
            storage.remove([path])
            logger.warning("Attachment insert failed; removed orphaned object %s", path)
        except StorageError:
            logger.error("Attachment insert failed and orphan cleanup of %s also failed", path,
                         exc_info=True)
        raise PersistenceError("Failed to save attachment metadata") from exc


def add_attachment(execution, user_id, *, file_name, content_type, data,
                   test_case_id=None, platform_test_case_id=None,
                   step_number=None, description=None, source="upload"):
    """Validate, upload and record one evidence file."""
    ref = resolve_case_link(execution, test_case_id, platform_test_case_id)
    content_type = validate_upload(content_type, len(data))
    _check_step(execution, step_number)
    if source not in ATTACHMENT_SOURCES:
        raise ValidationError(f"Unknown attachment source: {source}")

    path = build_storage_path(user_id, execution.id, content_type)

    def _record():
        attachment = TestAttachment(
            execution_id=execution.id,
            step_number=step_number,
            file_name=(file_name or path.rsplit("/", 1)[-1])[:255],
            file_path=path,
            file_type=content_type,
            file_size=len(data),
            description=description,
            source=source,
            uploaded_by=user_id,
            **ref.fk_columns(),
        )
        db.session.add(attachment)
        db.session.flush()
        return attachment

    attachment = upload_then_record(get_storage(), path, data, content_type, _record)
    logger.info(
        "Attachment %s stored for execution %s (%s, %d bytes, source=%s)",
        attachment.id, execution.id, content_type, len(data), source,
    )
    return attachment


def decode_data_url(data_url):
    """Split a base64 ``data:`` URL into ``(content_type, bytes)``."""
    match = _DATA_URL_RE.match((data_url or "").strip())
    if not match:
        raise ValidationError("Capture must be a base64 data: URL", details={"data_url": "invalid"})
    try:
        data = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Capture data is not valid base64", details={"data_url": "invalid"})
    return match.group("mime").lower(), data


def attach_capture(execution, user_id, data_url, *, test_case_id=None,
                   platform_test_case_id=None, step_number=None,
                   description=None, file_name=None):
    """Attach a screenshot sent by the browser extension as a data URL."""
    resolve_case_link(execution, test_case_id, platform_test_case_id)
    content_type, data = decode_data_url(data_url)
    if not file_name and content_type in ALLOWED_MIME_TYPES:
        file_name = f"capture-{int(time.time() * 1000)}.{ALLOWED_MIME_TYPES[content_type]}"
    return add_attachment(
        execution, user_id,
        file_name=file_name, content_type=content_type, data=data,
        test_case_id=test_case_id, platform_test_case_id=platform_test_case_id,
        step_number=step_number, description=description, source="extension",
    )


# ── Read / delete ────────────────────────────────────────────────────────────

def get_attachment(user_id, attachment_id):
    """Load an attachment whose execution belongs to ``user_id``."""
    attachment = db.session.get(TestAttachment, attachment_id)
    execution = attachment.execution if attachment is not None else None
    if execution is None or execution.user_id != user_id:
        raise NotFoundError(resource="TestAttachment", resource_id=attachment_id)
    return attachment


def find_by_path(path):
    return TestAttachment.query.filter_by(file_path=path).first()


def list_attachments(execution, step_number=None):
    q = execution.attachments
    if step_number is not None:
        q = q.filter_by(step_number=step_number)
    return q.order_by(TestAttachment.created_at, TestAttachment.id).all()


def remove_stored_object(attachment):
    """Best-effort delete of the stored object; failures are logged only."""
    try:
        get_storage().remove([attachment.file_path])
        return True
    except StorageError:
        logger.error("Could not remove stored object %s for attachment %s",
                     attachment.file_path, attachment.id, exc_info=True)
        return False


def delete_attachment(attachment):
    """Remove the stored object (best-effort), then the metadata row."""
    removed = remove_stored_object(attachment)
    db.session.delete(attachment)
    db.session.flush()
    logger.info("Attachment %s deleted (object removed=%s)", attachment.id, removed)
    return removed


def signed_url(attachment, expires_in=None):
    """Time-limited download URL for an attachment."""
    ttl = expires_in or current_app.config.get("SIGNED_URL_TTL_SECONDS", 3600)
    return get_storage().create_signed_url(attachment.file_path, ttl), ttl
