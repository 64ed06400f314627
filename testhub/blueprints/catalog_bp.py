"""
Catalog blueprint — projects, test cases, suites and suite membership.

Blueprint: catalog
Prefix: /api/v1

Endpoints:
  Projects:
    GET/POST         /projects
    GET/PUT/DELETE   /projects/<pid>

  Test cases:
    GET/POST         /test-cases                     — regular cases (with steps)
    GET/PUT/DELETE   /test-cases/<cid>
    GET/POST         /platform-test-cases            — cross-platform cases
    GET/PUT/DELETE   /platform-test-cases/<cid>

  Suites:
    GET/POST         /suites
    GET/PUT/DELETE   /suites/<sid>
    GET/POST         /suites/<sid>/cases             — run order / add a case
    PUT              /suites/<sid>/cases/order       — reorder
    DELETE           /suites/<sid>/cases/<link_id>
"""

import logging

from flask import Blueprint, jsonify, request

from testhub.auth import current_user_id, require_user
from testhub.blueprints import paginate_query
from testhub.models.catalog import CaseRef, PlatformTestCase, Project, Suite, TestCase
from testhub.services import catalog_service
from testhub.utils.errors import E, api_error, register_service_error_handlers
from testhub.utils.helpers import db_commit_or_error, get_owned_or_404, parse_int

logger = logging.getLogger(__name__)

catalog_bp = Blueprint("catalog", __name__, url_prefix="/api/v1")

register_service_error_handlers(catalog_bp, logger)


def _json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Projects
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@catalog_bp.route("/projects", methods=["GET"])
@require_user
def list_projects():
    items, total = paginate_query(catalog_service.list_projects(current_user_id()))
    return jsonify({"projects": [p.to_dict() for p in items], "total": total}), 200


@catalog_bp.route("/projects", methods=["POST"])
@require_user
def create_project():
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    project = catalog_service.create_project(current_user_id(), data)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"project": project.to_dict()}), 201


@catalog_bp.route("/projects/<int:pid>", methods=["GET"])
@require_user
def get_project(pid):
    project = get_owned_or_404(Project, pid, current_user_id())
    return jsonify({"project": project.to_dict()}), 200


@catalog_bp.route("/projects/<int:pid>", methods=["PUT"])
@require_user
def update_project(pid):
    project = get_owned_or_404(Project, pid, current_user_id())
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    catalog_service.update_project(project, data)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"project": project.to_dict()}), 200


@catalog_bp.route("/projects/<int:pid>", methods=["DELETE"])
@require_user
def delete_project(pid):
    """Delete a project; its suites and cases are kept without a project."""
    project = get_owned_or_404(Project, pid, current_user_id())
    catalog_service.delete_project(project)
    err = db_commit_or_error()
    if err:
        return err
    return "", 204


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Regular test cases
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@catalog_bp.route("/test-cases", methods=["GET"])
@require_user
def list_test_cases():
    q = catalog_service.list_test_cases(
        current_user_id(),
        project_id=parse_int(request.args.get("project_id")),
        search=request.args.get("search", "").strip() or None,
    )
    items, total = paginate_query(q)
    return jsonify({"test_cases": [c.to_dict() for c in items], "total": total}), 200


@catalog_bp.route("/test-cases", methods=["POST"])
@require_user
def create_test_case():
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    case = catalog_service.create_test_case(current_user_id(), data)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"test_case": case.to_dict(include_steps=True)}), 201


@catalog_bp.route("/test-cases/<int:cid>", methods=["GET"])
@require_user
def get_test_case(cid):
    case = get_owned_or_404(TestCase, cid, current_user_id())
    return jsonify({"test_case": case.to_dict(include_steps=True)}), 200


@catalog_bp.route("/test-cases/<int:cid>", methods=["PUT"])
@require_user
def update_test_case(cid):
    case = get_owned_or_404(TestCase, cid, current_user_id())
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    catalog_service.update_test_case(case, data)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"test_case": case.to_dict(include_steps=True)}), 200


@catalog_bp.route("/test-cases/<int:cid>", methods=["DELETE"])
@require_user
def delete_test_case(cid):
    """Delete a case with its suite links and executions."""
    case = get_owned_or_404(TestCase, cid, current_user_id())
    catalog_service.delete_case(case)
    err = db_commit_or_error()
    if err:
        return err
    return "", 204


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Cross-platform test cases
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@catalog_bp.route("/platform-test-cases", methods=["GET"])
@require_user
def list_platform_cases():
    q = catalog_service.list_platform_cases(
        current_user_id(), platform=request.args.get("platform", "").strip() or None,
    )
    items, total = paginate_query(q)
    return jsonify({"test_cases": [c.to_dict() for c in items], "total": total}), 200


@catalog_bp.route("/platform-test-cases", methods=["POST"])
@require_user
def create_platform_case():
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    case = catalog_service.create_platform_case(current_user_id(), data)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"test_case": case.to_dict(include_steps=True)}), 201


@catalog_bp.route("/platform-test-cases/<int:cid>", methods=["GET"])
@require_user
def get_platform_case(cid):
    case = get_owned_or_404(PlatformTestCase, cid, current_user_id())
    return jsonify({"test_case": case.to_dict(include_steps=True)}), 200


@catalog_bp.route("/platform-test-cases/<int:cid>", methods=["PUT"])
@require_user
def update_platform_case(cid):
    case = get_owned_or_404(PlatformTestCase, cid, current_user_id())
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    catalog_service.update_platform_case(case, data)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"test_case": case.to_dict(include_steps=True)}), 200


@catalog_bp.route("/platform-test-cases/<int:cid>", methods=["DELETE"])
@require_user
def delete_platform_case(cid):
    """Delete a cross-platform case with its suite links and executions."""
    case = get_owned_or_404(PlatformTestCase, cid, current_user_id())
    catalog_service.delete_case(case)
    err = db_commit_or_error()
    if err:
        return err
    return "", 204


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Suites
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@catalog_bp.route("/suites", methods=["GET"])
@require_user
def list_suites():
    q = catalog_service.list_suites(
        current_user_id(),
        project_id=parse_int(request.args.get("project_id")),
        status=request.args.get("status", "").strip() or None,
    )
    items, total = paginate_query(q)
    return jsonify({"suites": [s.to_dict() for s in items], "total": total}), 200


@catalog_bp.route("/suites", methods=["POST"])
@require_user
def create_suite():
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    suite = catalog_service.create_suite(current_user_id(), data)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"suite": suite.to_dict()}), 201


@catalog_bp.route("/suites/<int:sid>", methods=["GET"])
@require_user
def get_suite(sid):
    suite = get_owned_or_404(Suite, sid, current_user_id())
    return jsonify({"suite": suite.to_dict()}), 200


@catalog_bp.route("/suites/<int:sid>", methods=["PUT"])
@require_user
def update_suite(sid):
    suite = get_owned_or_404(Suite, sid, current_user_id())
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    catalog_service.update_suite(suite, data)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"suite": suite.to_dict()}), 200


@catalog_bp.route("/suites/<int:sid>", methods=["DELETE"])
@require_user
def delete_suite(sid):
    """Delete a suite with its runs; refused while a run is in progress or paused."""
    suite = get_owned_or_404(Suite, sid, current_user_id())
    catalog_service.delete_suite(suite)
    err = db_commit_or_error()
    if err:
        return err
    return "", 204


@catalog_bp.route("/suites/<int:sid>/cases", methods=["GET"])
@require_user
def list_suite_cases(sid):
    suite = get_owned_or_404(Suite, sid, current_user_id())
    links = catalog_service.ordered_suite_cases(suite.id)
    return jsonify({"cases": [link.to_dict() for link in links], "total": len(links)}), 200


@catalog_bp.route("/suites/<int:sid>/cases", methods=["POST"])
@require_user
def add_suite_case(sid):
    suite = get_owned_or_404(Suite, sid, current_user_id())
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    ref = CaseRef.from_payload(data)
    sequence_order = data.get("sequence_order")
    if sequence_order is not None and not isinstance(sequence_order, int):
        return api_error(E.VALIDATION_INVALID, "sequence_order must be an integer")
    link = catalog_service.add_case_to_suite(
        suite, ref, sequence_order=sequence_order,
        priority=data.get("priority"),
        estimated_duration_minutes=data.get("estimated_duration_minutes"),
        assigned_to=data.get("assigned_to"),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"case": link.to_dict()}), 201


@catalog_bp.route("/suites/<int:sid>/cases/order", methods=["PUT"])
@require_user
def reorder_suite_cases(sid):
    suite = get_owned_or_404(Suite, sid, current_user_id())
    data = _json_body() or {}
    link_ids = data.get("link_ids")
    if not isinstance(link_ids, list) or not all(isinstance(i, int) for i in link_ids):
        return api_error(E.VALIDATION_REQUIRED, "link_ids must be a list of integers")
    links = catalog_service.reorder_suite(suite, link_ids)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"cases": [link.to_dict() for link in links]}), 200


@catalog_bp.route("/suites/<int:sid>/cases/<int:link_id>", methods=["DELETE"])
@require_user
def remove_suite_case(sid, link_id):
    suite = get_owned_or_404(Suite, sid, current_user_id())
    catalog_service.remove_case_from_suite(suite, link_id)
    err = db_commit_or_error()
    if err:
        return err
    return "", 204
