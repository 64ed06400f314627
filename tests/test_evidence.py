"""
Tests — evidence uploader.

Covers:
    - validation runs before storage: MIME allow-list, size ceiling, empty file,
      exactly-one-case that matches the execution, step number
    - storage path layout
    - compensating delete when the metadata insert fails
    - browser-extension capture (data URL)
    - signed download links (public, expiring, tamper-proof)
    - delete is best-effort on the stored object
    - ownership through the execution
"""

import base64
import io
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from testhub.core.exceptions import PersistenceError, ValidationError
from testhub.models import db
from testhub.models.evidence import TestAttachment
from testhub.services import evidence_service

USER = "user-1"
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def _add(execution, case, **overrides):
    kwargs = {
        "file_name": "shot.png",
        "content_type": "image/png",
        "data": PNG,
        "test_case_id": case.id,
    }
    kwargs.update(overrides)
    return evidence_service.add_attachment(execution, USER, **kwargs)


def _commit_fails():
    return patch.object(db.session, "commit", side_effect=OperationalError("INSERT", {}, Exception("disk full")))


# ═════════════════════════════════════════════════════════════════════════════
# VALIDATION
# ═════════════════════════════════════════════════════════════════════════════

class TestValidation:
    def test_disallowed_type_writes_nothing(self, start_run, storage):
        _, cases, _, execution = start_run()
        with pytest.raises(ValidationError):
            _add(execution, cases[0], file_name="notes.pdf", content_type="application/pdf")
        assert storage.objects == {}
        assert TestAttachment.query.count() == 0

    def test_too_large(self, app, start_run, storage):
        _, cases, _, execution = start_run()
        app.config["ATTACHMENT_MAX_BYTES"] = 16
        try:
            with pytest.raises(ValidationError) as exc:
                _add(execution, cases[0])
        finally:
            app.config["ATTACHMENT_MAX_BYTES"] = 10 * 1024 * 1024
        assert exc.value.details["max_bytes"] == 16
        assert storage.objects == {}

    def test_empty_file(self, start_run):
        _, cases, _, execution = start_run()
        with pytest.raises(ValidationError):
            _add(execution, cases[0], data=b"")

    def test_needs_exactly_one_case(self, start_run):
        _, cases, _, execution = start_run()
        with pytest.raises(ValidationError):
            _add(execution, cases[0], test_case_id=None)
        with pytest.raises(ValidationError):
            _add(execution, cases[0], platform_test_case_id=cases[0].id)

    def test_case_must_match_execution(self, start_run, storage):
        _, cases, _, execution = start_run()
        with pytest.raises(ValidationError):
            _add(execution, cases[1])
        assert storage.objects == {}

    def test_unknown_step(self, start_run):
        _, cases, _, execution = start_run(steps=2)
        with pytest.raises(ValidationError):
            _add(execution, cases[0], step_number=3)

    @pytest.mark.parametrize("mime", ["image/png", "image/jpeg", "image/gif", "image/webp"])
    def test_allowed_types(self, mime):
        assert evidence_service.validate_upload(mime, 10) == mime


# ═════════════════════════════════════════════════════════════════════════════
# UPLOAD
# ═════════════════════════════════════════════════════════════════════════════

class TestUpload:
    def test_stores_object_and_row(self, start_run, storage):
        _, cases, _, execution = start_run()
        attachment = _add(execution, cases[0], step_number=2, description="Wrong total")

        assert attachment.file_path.startswith(f"{USER}/executions/{execution.id}/screenshot-")
        assert attachment.file_path.endswith(".png")
        assert storage.objects[attachment.file_path] == (PNG, "image/png")
        assert attachment.file_size == len(PNG)
        assert attachment.step_number == 2
        assert attachment.uploaded_by == USER
        assert attachment.source == "upload"

    def test_attach_to_finished_execution(self, start_run):
        from testhub.services import execution_service

        _, cases, _, execution = start_run()
        execution_service.finalize(execution, "failed", details={"failure_reason": "Broken"})
        assert _add(execution, cases[0]).id is not None

    def test_cross_platform_case(self, start_run):
        _, cases, _, execution = start_run(kind="cross_platform")
        attachment = _add(execution, cases[0], test_case_id=None, platform_test_case_id=cases[0].id)
        assert attachment.case_ref.kind == "cross_platform"

    def test_orphan_removed_when_insert_fails(self, start_run, storage):
        _, cases, _, execution = start_run()
        with _commit_fails():
            with pytest.raises(PersistenceError):
                _add(execution, cases[0])
        assert storage.objects == {}
        assert TestAttachment.query.count() == 0

    def test_failed_cleanup_still_raises_original_error(self, start_run, storage):
        _, cases, _, execution = start_run()
        storage.fail_remove = True
        with _commit_fails():
            with pytest.raises(PersistenceError):
                _add(execution, cases[0])
        assert len(storage.objects) == 1

    def test_storage_failure_writes_no_row(self, start_run, storage):
        from testhub.core.exceptions import StorageError

        _, cases, _, execution = start_run()
        storage.fail_upload = True
        with pytest.raises(StorageError):
            _add(execution, cases[0])
        assert TestAttachment.query.count() == 0


class TestCapture:
    def test_data_url(self, start_run, storage):
        _, cases, _, execution = start_run()
        data_url = "data:image/png;base64," + base64.b64encode(PNG).decode()
        attachment = evidence_service.attach_capture(
            execution, USER, data_url, test_case_id=cases[0].id,
        )
        assert attachment.source == "extension"
        assert attachment.file_name.startswith("capture-")
        assert storage.objects[attachment.file_path][0] == PNG

    @pytest.mark.parametrize("data_url", [
        "not a data url",
        "data:image/png;base64,@@@",
        "data:text/plain;base64," + base64.b64encode(b"hello").decode(),
    ])
    def test_bad_data_url(self, start_run, storage, data_url):
        _, cases, _, execution = start_run()
        with pytest.raises(ValidationError):
            evidence_service.attach_capture(execution, USER, data_url, test_case_id=cases[0].id)
        assert storage.objects == {}


# ═════════════════════════════════════════════════════════════════════════════
# DELETE
# ═════════════════════════════════════════════════════════════════════════════

class TestDelete:
    def test_delete_removes_object_and_row(self, start_run, storage):
        _, cases, _, execution = start_run()
        attachment = _add(execution, cases[0])
        assert evidence_service.delete_attachment(attachment) is True
        db.session.commit()
        assert storage.objects == {}
        assert TestAttachment.query.count() == 0

    def test_storage_failure_still_deletes_row(self, start_run, storage):
        _, cases, _, execution = start_run()
        attachment = _add(execution, cases[0])
        storage.fail_remove = True
        assert evidence_service.delete_attachment(attachment) is False
        db.session.commit()
        assert TestAttachment.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# API
# ═════════════════════════════════════════════════════════════════════════════

def _upload(client, execution_id, case_id, content=PNG, mime="image/png", name="shot.png", **form):
    data = {"file": (io.BytesIO(content), name, mime), "test_case_id": str(case_id)}
    data.update(form)
    return client.post(
        f"/api/v1/executions/{execution_id}/attachments",
        data=data, content_type="multipart/form-data",
    )


class TestEvidenceAPI:
    def test_multipart_upload_and_list(self, client, start_run, storage):
        _, cases, _, execution = start_run()
        res = _upload(client, execution.id, cases[0].id, step_number="1", description="Step 1")
        assert res.status_code == 201, res.get_json()
        body = res.get_json()["attachment"]
        assert body["step_number"] == 1
        assert body["file_type"] == "image/png"
        assert len(storage.objects) == 1

        listed = client.get(f"/api/v1/executions/{execution.id}/attachments").get_json()
        assert listed["total"] == 1
        by_step = client.get(f"/api/v1/executions/{execution.id}/attachments?step_number=2").get_json()
        assert by_step["total"] == 0

    def test_upload_without_file(self, client, start_run):
        _, cases, _, execution = start_run()
        res = client.post(
            f"/api/v1/executions/{execution.id}/attachments",
            data={"test_case_id": str(cases[0].id)}, content_type="multipart/form-data",
        )
        assert res.status_code == 400

    def test_disallowed_type_is_422(self, client, start_run, storage):
        _, cases, _, execution = start_run()
        res = _upload(client, execution.id, cases[0].id, content=b"%PDF-1.4", mime="application/pdf", name="a.pdf")
        assert res.status_code == 422
        assert storage.objects == {}

    def test_non_integer_case_id_is_400(self, client, start_run):
        _, _, _, execution = start_run()
        res = _upload(client, execution.id, "abc")
        assert res.status_code == 400

    def test_capture_endpoint(self, client, start_run):
        _, cases, _, execution = start_run()
        res = client.post(f"/api/v1/executions/{execution.id}/attachments/capture", json={
            "data_url": "data:image/png;base64," + base64.b64encode(PNG).decode(),
            "test_case_id": cases[0].id,
        })
        assert res.status_code == 201
        assert res.get_json()["attachment"]["source"] == "extension"

    def test_signed_url_download(self, client, anonymous_client, start_run):
        _, cases, _, execution = start_run()
        aid = _upload(client, execution.id, cases[0].id).get_json()["attachment"]["id"]

        res = client.get(f"/api/v1/attachments/{aid}/url")
        assert res.status_code == 200
        body = res.get_json()
        assert body["expires_in"] == 3600
        assert body["url"].startswith("/api/v1/attachments/download/")

        download = anonymous_client.get(body["url"])
        assert download.status_code == 200
        assert download.data == PNG
        assert download.mimetype == "image/png"

    def test_tampered_token_is_404(self, anonymous_client):
        res = anonymous_client.get("/api/v1/attachments/download/not-a-real-token")
        assert res.status_code == 404

    def test_delete_endpoint(self, client, start_run, storage):
        _, cases, _, execution = start_run()
        aid = _upload(client, execution.id, cases[0].id).get_json()["attachment"]["id"]
        storage.fail_remove = True
        res = client.delete(f"/api/v1/attachments/{aid}")
        assert res.status_code == 200
        assert res.get_json() == {"deleted": aid, "object_removed": False}
        assert client.get(f"/api/v1/attachments/{aid}/url").status_code == 404

    def test_other_user_cannot_reach_attachment(self, client, other_client, start_run):
        _, cases, _, execution = start_run()
        aid = _upload(client, execution.id, cases[0].id).get_json()["attachment"]["id"]
        assert other_client.get(f"/api/v1/attachments/{aid}/url").status_code == 404
        assert other_client.delete(f"/api/v1/attachments/{aid}").status_code == 404
        assert _upload(other_client, execution.id, cases[0].id).status_code == 404
