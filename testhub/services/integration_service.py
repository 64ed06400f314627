"""Issue-tracker integration service — connections and failure issues.

Connections store the tracker API token Fernet-encrypted; it is decrypted
only right before a call and never leaves the service.

``create_issues`` processes a batch item by item: every item succeeds or
fails on its own and its outcome is reported in ``results``.  A successful
item commits its IntegrationIssue row and the execution's
``tracker_issue_key`` before the next item starts.
"""
import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from testhub.core.exceptions import (
    IntegrationError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from testhub.integrations.tracker_gateway import (
    ISSUE_LABEL,
    build_failure_description,
    tracker_gateway,
)
from testhub.models import db
from testhub.models.catalog import Suite
from testhub.models.execution import TestExecution
from testhub.models.integrations import INTEGRATION_TYPES, Integration, IntegrationIssue
from testhub.services import evidence_service
from testhub.utils.crypto import decrypt_secret, encrypt_secret
from testhub.utils.helpers import get_owned_or_404

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_REASON = "Test failed - see details"

_REQUIRED_FIELDS = ("base_url", "email", "api_token", "project_key")


# ═════════════════════════════════════════════════════════════════════════════
# CONNECTIONS
# ═════════════════════════════════════════════════════════════════════════════

def list_integrations(user_id):
    return (
        Integration.query
        .filter_by(user_id=user_id)
        .order_by(Integration.created_at.desc(), Integration.id.desc())
        .all()
    )


def get_integration(user_id, integration_id) -> Integration:
    return get_owned_or_404(Integration, integration_id, user_id)


def create_integration(user_id, data):
    """Create a tracker connection.  Flushes; the caller commits."""
    integration_type = data.get("integration_type", "jira")
    if integration_type not in INTEGRATION_TYPES:
        raise ValidationError(
            f"Integration type '{integration_type}' is not supported",
            details={"integration_type": sorted(INTEGRATION_TYPES)},
        )
    if not isinstance(data.get("is_active", True), bool):
        raise ValidationError("is_active must be a boolean", details={"is_active": "boolean required"})
    missing = [f for f in _REQUIRED_FIELDS if not str(data.get(f) or "").strip()]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            details={f: "required" for f in missing},
        )

    integration = Integration(
        user_id=user_id,
        integration_type=integration_type,
        name=data.get("name") or f"{integration_type} {data['project_key']}",
        base_url=data["base_url"].strip().rstrip("/"),
        email=data["email"].strip(),
        api_token=encrypt_secret(data["api_token"].strip()),
        project_key=data["project_key"].strip(),
        issue_type=data.get("issue_type") or "Bug",
        is_active=data.get("is_active", True),
    )
    db.session.add(integration)
    db.session.flush()
    logger.info("Integration %s created (%s, project=%s)",
                integration.id, integration_type, integration.project_key)
    return integration


def delete_integration(integration):
    db.session.delete(integration)
    db.session.flush()


def test_connection(integration):
    """Check the tracker with the stored credentials.

    Records ``last_test_at`` and ``last_test_status`` (flushes; the caller
    commits) and raises IntegrationError when the tracker refuses or is
    unreachable.
    """
    result = tracker_gateway.get_myself(
        integration.base_url,
        integration.email,
        decrypt_secret(integration.api_token),
        timeout=current_app.config.get("TRACKER_TIMEOUT_SECONDS", 30),
    )
    integration.last_test_at = datetime.now(timezone.utc)
    integration.last_test_status = "ok" if result.ok else "failed"
    db.session.flush()
    logger.info("Integration %s connection test ok=%s duration_ms=%s",
                integration.id, result.ok, result.duration_ms)
    if not result.ok:
        raise IntegrationError(result.error or "Tracker connection failed")
    return {
        "ok": True,
        "account": (result.data or {}).get("displayName"),
        "duration_ms": result.duration_ms,
        "last_test_at": integration.last_test_at.isoformat(),
    }


# ═════════════════════════════════════════════════════════════════════════════
# ISSUE CREATION
# ═════════════════════════════════════════════════════════════════════════════

def _evidence_urls(execution, url_root):
    ttl = current_app.config.get("TRACKER_EVIDENCE_URL_TTL_SECONDS", 7 * 24 * 3600)
    urls = []
    for attachment in evidence_service.list_attachments(execution):
        try:
            url, _ = evidence_service.signed_url(attachment, expires_in=ttl)
        except StorageError:
            logger.warning("No signed URL for attachment %s; left out of the issue",
                           attachment.id, exc_info=True)
            continue
        if url.startswith("/") and url_root:
            url = url_root.rstrip("/") + url
        urls.append(url)
    return urls


def _issue_fields(integration, execution, failure_reason, evidence_urls):
    case = execution.case
    title = case.title if case is not None else f"Execution {execution.id}"
    suite = db.session.get(Suite, execution.suite_id) if execution.suite_id else None
    return {
        "project": {"key": integration.project_key},
        "summary": f"Test Failure: {title}"[:255],
        "description": build_failure_description(
            test_title=title,
            suite_name=suite.name if suite else "",
            failure_reason=failure_reason,
            evidence_urls=evidence_urls,
        ),
        "issuetype": {"name": integration.issue_type or "Bug"},
        "labels": [ISSUE_LABEL],
    }


def _parse_items(executions):
    """Accept ``[id, ...]`` or ``[{"execution_id": id, "failure_reason": ...}, ...]``."""
    items = []
    for entry in executions:
        if isinstance(entry, dict):
            items.append((entry.get("execution_id"), entry.get("failure_reason")))
        else:
            items.append((entry, None))
    return items


def _create_one(integration, api_token, user_id, execution_id, failure_reason, url_root):
    try:
        execution = get_owned_or_404(TestExecution, int(execution_id), user_id)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid execution id: {execution_id!r}")
    reason = (failure_reason or execution.failure_reason or "").strip() or DEFAULT_FAILURE_REASON
    fields = _issue_fields(integration, execution, reason, _evidence_urls(execution, url_root))

    result = tracker_gateway.create_issue(
        integration.base_url,
        integration.email,
        api_token,
        fields,
        timeout=current_app.config.get("TRACKER_TIMEOUT_SECONDS", 30),
    )
    if not result.ok:
        raise ValidationError(result.error or "Tracker rejected the issue")
    issue_key = result.issue_key
    if not issue_key:
        raise ValidationError("Tracker did not return an issue key")

    db.session.add(IntegrationIssue(
        integration_id=integration.id,
        execution_id=execution.id,
        external_issue_id=issue_key,
        external_issue_url=f"{integration.base_url}/browse/{issue_key}",
        issue_type="bug",
        status="open",
    ))
    execution.tracker_issue_key = issue_key
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Issue %s created but not recorded for execution %s",
                         issue_key, execution.id)
        raise ValidationError(f"Issue {issue_key} was created but could not be recorded") from exc
    return issue_key


def create_issues(user_id, integration_id, executions, url_root=""):
    """Open one tracker issue per failed execution.

    Args:
        user_id: owner of the integration and the executions.
        integration_id: an active ``jira`` Integration.
        executions: non-empty list of execution ids, or dicts with
            ``execution_id`` and an optional ``failure_reason`` override.
        url_root: prefix for relative signed evidence URLs.

    Returns:
        dict with ``total``, ``created``, ``failed`` and per-item ``results``.
    """
    integration = get_integration(user_id, integration_id)
    if integration.integration_type != "jira":
        raise ValidationError(
            f"Integration type '{integration.integration_type}' is not supported yet",
            details={"integration_type": integration.integration_type},
        )
    if not integration.is_active:
        raise ValidationError("Integration is not active", details={"is_active": False})
    if not isinstance(executions, list) or not executions:
        raise ValidationError(
            "executions must be a non-empty list",
            details={"executions": "required"},
        )

    api_token = decrypt_secret(integration.api_token)
    results = []
    created = 0
    for execution_id, failure_reason in _parse_items(executions):
        try:
            issue_key = _create_one(
                integration, api_token, user_id, execution_id, failure_reason, url_root,
            )
        except (NotFoundError, ValidationError) as exc:
            logger.warning("Issue creation failed for execution %s: %s", execution_id, exc)
            results.append({"execution_id": execution_id, "success": False, "error": str(exc)})
            continue
        created += 1
        results.append({"execution_id": execution_id, "success": True, "issue_key": issue_key})

    logger.info("Tracker issues: created %d of %d (integration=%s)",
                created, len(results), integration.id)
    return {
        "total": len(results),
        "created": created,
        "failed": len(results) - created,
        "results": results,
    }
