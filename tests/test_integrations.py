"""
Tests — issue-tracker integration.

Covers:
    - connections: required fields, encrypted token never serialised
    - connection check: recorded outcome, tracker refusal maps to 502
    - create_issues: per-item results, issue row + tracker key recorded,
      failure-reason fallback, evidence links in the description
    - guards: inactive / unsupported integration, empty batch, foreign rows
    - TrackerGateway request/response handling with a mocked requests.Session
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from testhub.core.exceptions import IntegrationError, ValidationError
from testhub.integrations.tracker_gateway import (
    ISSUE_LABEL,
    TrackerGateway,
    TrackerResult,
    tracker_gateway,
)
from testhub.models import db
from testhub.models.integrations import Integration, IntegrationIssue
from testhub.services import (
    evidence_service,
    execution_service,
    integration_service,
    session_service,
)
from testhub.utils.crypto import decrypt_secret

USER = "user-1"
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16

CONNECTION = {
    "name": "QA Jira",
    "base_url": "https://acme.atlassian.net/",
    "email": "qa@acme.test",
    "api_token": "secret-token",
    "project_key": "QA",
}


def _ok(key="QA-1"):
    return TrackerResult(True, 201, {"id": "10001", "key": key}, None, 5)


def _integration(user_id=USER, **overrides):
    integration = integration_service.create_integration(user_id, {**CONNECTION, **overrides})
    db.session.commit()
    return integration


def _failed_execution(start_run, reason="Total shows 0.00"):
    _, cases, _, execution = start_run()
    execution_service.finalize(execution, "failed", details={"failure_reason": reason})
    return cases, execution


# ═════════════════════════════════════════════════════════════════════════════
# CONNECTIONS
# ═════════════════════════════════════════════════════════════════════════════

class TestConnections:
    def test_token_is_encrypted(self):
        integration = _integration()
        assert integration.api_token != "secret-token"
        assert decrypt_secret(integration.api_token) == "secret-token"
        assert integration.base_url == "https://acme.atlassian.net"
        assert integration.issue_type == "Bug"

    def test_missing_fields(self):
        with pytest.raises(ValidationError) as exc:
            integration_service.create_integration(USER, {"base_url": "https://x"})
        assert set(exc.value.details) == {"email", "api_token", "project_key"}

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            integration_service.create_integration(USER, {**CONNECTION, "integration_type": "trello"})

    def test_is_active_must_be_boolean(self, client):
        res = client.post("/api/v1/integrations", json={**CONNECTION, "is_active": "false"})
        assert res.status_code == 422
        assert Integration.query.count() == 0

    def test_api_never_returns_token(self, client):
        res = client.post("/api/v1/integrations", json=CONNECTION)
        assert res.status_code == 201
        body = res.get_json()["integration"]
        assert "api_token" not in body
        assert body["has_api_token"] is True

        listed = client.get("/api/v1/integrations").get_json()
        assert listed["total"] == 1
        assert "secret-token" not in str(listed)

    def test_delete(self, client, other_client):
        iid = client.post("/api/v1/integrations", json=CONNECTION).get_json()["integration"]["id"]
        assert other_client.delete(f"/api/v1/integrations/{iid}").status_code == 404
        assert client.delete(f"/api/v1/integrations/{iid}").status_code == 204
        assert Integration.query.count() == 0


class TestConnectionCheck:
    def test_ok(self, client):
        integration = _integration()
        myself = TrackerResult(True, 200, {"displayName": "QA Bot"}, None, 4)
        with patch.object(tracker_gateway, "get_myself", return_value=myself) as mock_myself:
            res = client.post(f"/api/v1/integrations/{integration.id}/test")

        assert res.status_code == 200
        body = res.get_json()
        assert body["ok"] is True
        assert body["account"] == "QA Bot"
        assert mock_myself.call_args.args == ("https://acme.atlassian.net", "qa@acme.test", "secret-token")
        assert integration.last_test_status == "ok"
        assert integration.to_dict()["last_test_at"] is not None

    def test_rejected_credentials_are_502(self, client):
        integration = _integration()
        refused = TrackerResult(False, 401, None, "HTTP 401: Unauthorized", 2)
        with patch.object(tracker_gateway, "get_myself", return_value=refused):
            res = client.post(f"/api/v1/integrations/{integration.id}/test")

        assert res.status_code == 502
        body = res.get_json()
        assert body["code"] == "ERR_INTEGRATION"
        assert "401" in body["error"]
        assert db.session.get(Integration, integration.id).last_test_status == "failed"

    def test_service_raises(self):
        integration = _integration()
        unreachable = TrackerResult(False, None, None, "Tracker unreachable: timeout", 30000)
        with patch.object(tracker_gateway, "get_myself", return_value=unreachable):
            with pytest.raises(IntegrationError, match="unreachable"):
                integration_service.test_connection(integration)

    def test_foreign_integration_is_404(self, other_client):
        integration = _integration()
        with patch.object(tracker_gateway, "get_myself") as mock_myself:
            res = other_client.post(f"/api/v1/integrations/{integration.id}/test")
        assert res.status_code == 404
        mock_myself.assert_not_called()


# ═════════════════════════════════════════════════════════════════════════════
# CREATE ISSUES
# ═════════════════════════════════════════════════════════════════════════════

class TestCreateIssues:
    def test_creates_issue_and_records_key(self, start_run):
        integration = _integration()
        cases, execution = _failed_execution(start_run)

        with patch.object(tracker_gateway, "create_issue", return_value=_ok()) as mock_create:
            result = integration_service.create_issues(USER, integration.id, [execution.id])

        assert result == {
            "total": 1, "created": 1, "failed": 0,
            "results": [{"execution_id": execution.id, "success": True, "issue_key": "QA-1"}],
        }
        base_url, email, token, fields = mock_create.call_args.args
        assert base_url == "https://acme.atlassian.net"
        assert email == "qa@acme.test"
        assert token == "secret-token"
        assert fields["summary"] == f"Test Failure: {cases[0].title}"
        assert fields["project"] == {"key": "QA"}
        assert fields["issuetype"] == {"name": "Bug"}
        assert fields["labels"] == [ISSUE_LABEL]
        assert "Total shows 0.00" in str(fields["description"])

        issue = IntegrationIssue.query.one()
        assert issue.external_issue_id == "QA-1"
        assert issue.external_issue_url == "https://acme.atlassian.net/browse/QA-1"
        assert execution.tracker_issue_key == "QA-1"

    def test_failure_reason_override_and_fallback(self, start_run):
        integration = _integration()
        _, execution = _failed_execution(start_run)
        execution.failure_reason = None
        db.session.commit()

        with patch.object(tracker_gateway, "create_issue", side_effect=[_ok("QA-1"), _ok("QA-2")]) as mock_create:
            integration_service.create_issues(USER, integration.id, [execution.id])
            integration_service.create_issues(
                USER, integration.id, [{"execution_id": execution.id, "failure_reason": "Custom"}],
            )

        first_fields = mock_create.call_args_list[0].args[3]
        second_fields = mock_create.call_args_list[1].args[3]
        assert integration_service.DEFAULT_FAILURE_REASON in str(first_fields["description"])
        assert "Custom" in str(second_fields["description"])

    def test_evidence_links_are_absolute(self, start_run):
        integration = _integration()
        cases, execution = _failed_execution(start_run)
        evidence_service.add_attachment(
            execution, USER, file_name="shot.png", content_type="image/png", data=PNG,
            test_case_id=cases[0].id,
        )

        with patch.object(tracker_gateway, "create_issue", return_value=_ok()) as mock_create:
            integration_service.create_issues(
                USER, integration.id, [execution.id], url_root="http://testhub.local/",
            )

        description = str(mock_create.call_args.args[3]["description"])
        assert "http://testhub.local/api/v1/attachments/download/" in description

    def test_items_fail_independently(self, start_run):
        integration = _integration()
        _, execution = _failed_execution(start_run)
        rejected = TrackerResult(False, 400, None, "HTTP 400: summary: too long", 3)

        with patch.object(tracker_gateway, "create_issue", side_effect=[rejected, _ok("QA-7")]):
            result = integration_service.create_issues(
                USER, integration.id, [execution.id, execution.id, 99999],
            )

        assert result["total"] == 3
        assert result["created"] == 1
        assert result["failed"] == 2
        first, second, third = result["results"]
        assert first["success"] is False
        assert "too long" in first["error"]
        assert second == {"execution_id": execution.id, "success": True, "issue_key": "QA-7"}
        assert third["success"] is False
        assert IntegrationIssue.query.count() == 1

    def test_inactive_integration(self, start_run):
        integration = _integration(is_active=False)
        _, execution = _failed_execution(start_run)
        with patch.object(tracker_gateway, "create_issue") as mock_create:
            with pytest.raises(ValidationError):
                integration_service.create_issues(USER, integration.id, [execution.id])
        mock_create.assert_not_called()

    def test_empty_batch(self):
        integration = _integration()
        with pytest.raises(ValidationError):
            integration_service.create_issues(USER, integration.id, [])

    def test_other_users_execution_is_reported_not_found(self, make_suite):
        integration = _integration()
        suite, _ = make_suite(case_count=1, user_id="user-2")
        _, foreign = session_service.start_session(suite)
        with patch.object(tracker_gateway, "create_issue") as mock_create:
            result = integration_service.create_issues(USER, integration.id, [foreign.id])
        assert result["failed"] == 1
        mock_create.assert_not_called()


class TestCreateIssuesAPI:
    def test_endpoint(self, client, start_run):
        integration = _integration()
        _, execution = _failed_execution(start_run)
        with patch.object(tracker_gateway, "create_issue", return_value=_ok("QA-3")):
            res = client.post("/api/v1/integrations/create-issues", json={
                "integration_id": integration.id,
                "executions": [execution.id],
            })
        assert res.status_code == 200
        assert res.get_json()["results"][0]["issue_key"] == "QA-3"

    def test_empty_executions_is_400(self, client):
        integration = _integration()
        res = client.post("/api/v1/integrations/create-issues", json={
            "integration_id": integration.id, "executions": [],
        })
        assert res.status_code == 400

    def test_missing_integration_id_is_400(self, client):
        res = client.post("/api/v1/integrations/create-issues", json={"executions": [1]})
        assert res.status_code == 400

    def test_inactive_is_422(self, client, start_run):
        integration = _integration(is_active=False)
        _, execution = _failed_execution(start_run)
        res = client.post("/api/v1/integrations/create-issues", json={
            "integration_id": integration.id, "executions": [execution.id],
        })
        assert res.status_code == 422

    def test_foreign_integration_is_404(self, other_client):
        integration = _integration()
        res = other_client.post("/api/v1/integrations/create-issues", json={
            "integration_id": integration.id, "executions": [1],
        })
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# GATEWAY
# ═════════════════════════════════════════════════════════════════════════════

class TestTrackerGateway:
    def _gateway(self, response=None, exc=None):
        session = MagicMock(spec=requests.Session)
        if exc is not None:
            session.post.side_effect = exc
        else:
            session.post.return_value = response
        return TrackerGateway(session=session), session

    def test_success(self):
        response = MagicMock(status_code=201)
        response.json.return_value = {"id": "1", "key": "QA-9"}
        gateway, session = self._gateway(response)

        result = gateway.create_issue("https://acme.atlassian.net/", "qa@acme.test", "tok", {"summary": "x"})

        assert result.ok
        assert result.issue_key == "QA-9"
        url = session.post.call_args.args[0]
        assert url == "https://acme.atlassian.net/rest/api/3/issue"
        assert session.post.call_args.kwargs["auth"] == ("qa@acme.test", "tok")
        assert session.post.call_args.kwargs["json"] == {"fields": {"summary": "x"}}

    def test_rejected(self):
        response = MagicMock(status_code=400)
        response.json.return_value = {"errorMessages": ["Bad"], "errors": {"summary": "required"}}
        gateway, _ = self._gateway(response)

        result = gateway.create_issue("https://acme.atlassian.net", "e", "t", {})
        assert not result.ok
        assert result.status_code == 400
        assert result.error == "HTTP 400: Bad; summary: required"

    def test_network_error(self):
        gateway, _ = self._gateway(exc=requests.ConnectionError("refused"))
        result = gateway.create_issue("https://acme.atlassian.net", "e", "t", {})
        assert not result.ok
        assert result.status_code is None
        assert "unreachable" in result.error

    def test_myself_lookup(self):
        response = MagicMock(status_code=200)
        response.json.return_value = {"accountId": "abc", "displayName": "QA Bot"}
        session = MagicMock(spec=requests.Session)
        session.get.return_value = response
        gateway = TrackerGateway(session=session)

        result = gateway.get_myself("https://acme.atlassian.net/", "qa@acme.test", "tok")

        assert result.ok
        assert result.data["displayName"] == "QA Bot"
        assert session.get.call_args.args[0] == "https://acme.atlassian.net/rest/api/3/myself"
        assert session.get.call_args.kwargs["auth"] == ("qa@acme.test", "tok")

    @pytest.mark.parametrize("body,expected", [
        (["Issue type is required"], "HTTP 400: ['Issue type is required']"),
        ("rejected", "HTTP 400: rejected"),
        ({"errorMessages": "Project is archived"}, "HTTP 400: Project is archived"),
        ({"errors": ["summary"]}, "HTTP 400: request rejected"),
    ])
    def test_rejected_with_unusual_error_body(self, body, expected):
        response = MagicMock(status_code=400)
        response.json.return_value = body
        gateway, _ = self._gateway(response)

        result = gateway.create_issue("https://acme.atlassian.net", "e", "t", {})
        assert not result.ok
        assert result.error == expected
