"""
Evidence blueprint — screenshots attached to test executions.

Blueprint: evidence
Prefix: /api/v1

Endpoints:
    GET/POST  /executions/<eid>/attachments           — list / multipart upload
    POST      /executions/<eid>/attachments/capture   — browser-extension data URL
    GET       /attachments/<aid>/url                  — signed download URL
    DELETE    /attachments/<aid>
    GET       /attachments/download/<token>           — public, signed
"""

import io
import logging

from flask import Blueprint, jsonify, request, send_file

from testhub.auth import current_user_id, require_user
from testhub.core.exceptions import NotFoundError
from testhub.integrations.storage import get_storage
from testhub.services import evidence_service, execution_service
from testhub.utils.errors import E, api_error, register_service_error_handlers
from testhub.utils.helpers import db_commit_or_error, parse_int

logger = logging.getLogger(__name__)

evidence_bp = Blueprint("evidence", __name__, url_prefix="/api/v1")

register_service_error_handlers(evidence_bp, logger)


def _optional_int(source, field):
    """``(value, error_response)`` for an optional integer form/JSON field."""
    raw = source.get(field)
    if raw is None or raw == "":
        return None, None
    value = parse_int(raw)
    if value is None or isinstance(raw, bool):
        return None, api_error(E.VALIDATION_INVALID, f"{field} must be an integer")
    return value, None


def _case_fields(source):
    ids = {}
    for field in ("test_case_id", "platform_test_case_id", "step_number"):
        value, err = _optional_int(source, field)
        if err:
            return None, err
        ids[field] = value
    return ids, None


@evidence_bp.route("/executions/<int:eid>/attachments", methods=["GET"])
@require_user
def list_attachments(eid):
    execution = execution_service.get_execution(current_user_id(), eid)
    step_number, err = _optional_int(request.args, "step_number")
    if err:
        return err
    items = evidence_service.list_attachments(execution, step_number=step_number)
    return jsonify({"attachments": [a.to_dict() for a in items], "total": len(items)}), 200


@evidence_bp.route("/executions/<int:eid>/attachments", methods=["POST"])
@require_user
def upload_attachment(eid):
    """Multipart upload: ``file`` plus the case id pair, step and description."""
    execution = execution_service.get_execution(current_user_id(), eid)
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return api_error(E.VALIDATION_REQUIRED, "file is required")
    ids, err = _case_fields(request.form)
    if err:
        return err

    attachment = evidence_service.add_attachment(
        execution, current_user_id(),
        file_name=upload.filename,
        content_type=upload.mimetype,
        data=upload.read(),
        description=request.form.get("description") or None,
        **ids,
    )
    return jsonify({"attachment": attachment.to_dict()}), 201


@evidence_bp.route("/executions/<int:eid>/attachments/capture", methods=["POST"])
@require_user
def capture_attachment(eid):
    execution = execution_service.get_execution(current_user_id(), eid)
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not isinstance(data.get("data_url"), str):
        return api_error(E.VALIDATION_REQUIRED, "data_url is required")
    ids, err = _case_fields(data)
    if err:
        return err

    attachment = evidence_service.attach_capture(
        execution, current_user_id(), data["data_url"],
        description=data.get("description"),
        file_name=data.get("file_name"),
        **ids,
    )
    return jsonify({"attachment": attachment.to_dict()}), 201


@evidence_bp.route("/attachments/<int:aid>/url", methods=["GET"])
@require_user
def attachment_url(aid):
    attachment = evidence_service.get_attachment(current_user_id(), aid)
    expires_in = parse_int(request.args.get("expires_in"), minimum=60, maximum=7 * 24 * 3600)
    url, ttl = evidence_service.signed_url(attachment, expires_in=expires_in)
    return jsonify({"url": url, "expires_in": ttl}), 200


@evidence_bp.route("/attachments/<int:aid>", methods=["DELETE"])
@require_user
def delete_attachment(aid):
    attachment = evidence_service.get_attachment(current_user_id(), aid)
    removed = evidence_service.delete_attachment(attachment)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"deleted": aid, "object_removed": removed}), 200


@evidence_bp.route("/attachments/download/<token>", methods=["GET"])
def download_attachment(token):
    """Serve a stored object to anyone holding a valid, unexpired link."""
    storage = get_storage()
    resolve = getattr(storage, "resolve_token", None)
    if resolve is None:
        raise NotFoundError(resource="Download link")
    path = resolve(token)
    attachment = evidence_service.find_by_path(path)
    if attachment is None:
        raise NotFoundError(resource="Download link")
    data = storage.read(path)
    return send_file(
        io.BytesIO(data),
        mimetype=attachment.file_type,
        download_name=attachment.file_name,
        max_age=0,
    )
