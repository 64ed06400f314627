"""Issue-tracker integrations blueprint.

Endpoint groups
───────────────
  Connections     GET/POST   /integrations
                  DELETE     /integrations/<iid>
                  POST       /integrations/<iid>/test
  Failure issues  POST       /integrations/create-issues
"""

import logging

from flask import Blueprint, jsonify, request

from testhub.auth import current_user_id, require_user
from testhub.core.exceptions import IntegrationError
from testhub.services import integration_service
from testhub.utils.errors import E, api_error, register_service_error_handlers
from testhub.utils.helpers import db_commit_or_error

logger = logging.getLogger(__name__)

integrations_bp = Blueprint("integrations", __name__, url_prefix="/api/v1")

register_service_error_handlers(integrations_bp, logger)


# ══════════════════════════════════════════════════════════════════
# 1.  Connections
# ══════════════════════════════════════════════════════════════════

@integrations_bp.route("/integrations", methods=["GET"])
@require_user
def list_integrations():
    items = integration_service.list_integrations(current_user_id())
    return jsonify({"integrations": [i.to_dict() for i in items], "total": len(items)})


@integrations_bp.route("/integrations", methods=["POST"])
@require_user
def create_integration():
    """Connect an issue tracker; the API token is stored encrypted."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    integration = integration_service.create_integration(current_user_id(), data)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"integration": integration.to_dict()}), 201


@integrations_bp.route("/integrations/<int:iid>", methods=["DELETE"])
@require_user
def delete_integration(iid):
    integration = integration_service.get_integration(current_user_id(), iid)
    integration_service.delete_integration(integration)
    err = db_commit_or_error()
    if err:
        return err
    return "", 204


@integrations_bp.route("/integrations/<int:iid>/test", methods=["POST"])
@require_user
def test_integration(iid):
    """Check the tracker with the stored credentials; the outcome is recorded either way."""
    integration = integration_service.get_integration(current_user_id(), iid)
    try:
        result = integration_service.test_connection(integration)
    except IntegrationError:
        db_commit_or_error()
        raise
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(result), 200


# ══════════════════════════════════════════════════════════════════
# 2.  Failure issues
# ══════════════════════════════════════════════════════════════════

@integrations_bp.route("/integrations/create-issues", methods=["POST"])
@require_user
def create_issues():
    """Open one tracker issue per execution; per-item results are returned."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_INVALID, "Invalid JSON in request body")
    integration_id = data.get("integration_id")
    if not isinstance(integration_id, int) or isinstance(integration_id, bool):
        return api_error(E.VALIDATION_REQUIRED, "integration_id is required")
    executions = data.get("executions")
    if not isinstance(executions, list) or not executions:
        return api_error(E.VALIDATION_REQUIRED, "executions array is required and must not be empty")

    result = integration_service.create_issues(
        current_user_id(), integration_id, executions, url_root=request.url_root,
    )
    return jsonify(result), 200
