import logging

from flask import Blueprint, jsonify, request

from testhub.auth import current_user_id, require_user
from testhub.services import reporting, session_service
from testhub.utils.errors import register_service_error_handlers
from testhub.utils.helpers import parse_int

logger = logging.getLogger(__name__)

reporting_bp = Blueprint("reporting", __name__, url_prefix="/api/v1/reports")

register_service_error_handlers(reporting_bp, logger)


def _window():
    """``(days, suite_id)`` from the query string; suite_id must be owned."""
    days = parse_int(request.args.get("days"), default=reporting.DEFAULT_DAYS, minimum=1, maximum=365)
    suite_id = parse_int(request.args.get("suite_id"))
    if suite_id is not None:
        session_service.get_suite(current_user_id(), suite_id)
    return days, suite_id


@reporting_bp.route("/suite-stats", methods=["GET"])
@require_user
def suite_stats():
    """
    GET /api/v1/reports/suite-stats?days=30&suite_id=
    Run count, pass rate, duration and trend per suite.
    """
    days, suite_id = _window()
    stats = reporting.suite_execution_stats(current_user_id(), days=days, suite_id=suite_id)
    return jsonify({"days": days, "suites": stats}), 200


@reporting_bp.route("/test-case-performance", methods=["GET"])
@require_user
def test_case_performance():
    """
    GET /api/v1/reports/test-case-performance?days=30&suite_id=&limit=200
    Outcome statistics per case, most frequently failing first.
    """
    days, suite_id = _window()
    limit = parse_int(request.args.get("limit"), default=reporting.PERFORMANCE_LIMIT,
                      minimum=1, maximum=reporting.PERFORMANCE_LIMIT)
    cases = reporting.test_case_performance(
        current_user_id(), days=days, suite_id=suite_id, limit=limit,
    )
    return jsonify({"days": days, "cases": cases}), 200


@reporting_bp.route("/trends", methods=["GET"])
@require_user
def trends():
    """GET /api/v1/reports/trends?days=30&suite_id= — finished executions per day."""
    days, suite_id = _window()
    daily = reporting.execution_trends_daily(current_user_id(), days=days, suite_id=suite_id)
    return jsonify({"days": days, "daily": daily}), 200
