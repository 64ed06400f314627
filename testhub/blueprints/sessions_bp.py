"""
Execution blueprint — run sessions of a suite and the per-test executor.

Blueprint: sessions
Prefix: /api/v1

Endpoints:
  Sessions:
    GET       /suites/<sid>/sessions                 — history + pass-rate progression
    GET       /suites/<sid>/sessions/start-options   — resume | new_run | start
    POST      /suites/<sid>/sessions                 — start a run
    GET/DELETE /sessions/<sid>
    POST      /sessions/<sid>/pause
    POST      /sessions/<sid>/resume
    POST      /sessions/<sid>/navigate               — {index} or {direction}

  Executions:
    GET       /executions/<eid>                      — with case and steps
    POST      /executions/<eid>/steps/<n>/toggle
    POST/DELETE /executions/<eid>/steps/<n>/fail
    PUT       /executions/<eid>/progress             — draft notes / environment
    POST      /executions/<eid>/finalize             — passed | failed | blocked | skipped
    POST      /executions/<eid>/reset                — {confirm: true}
    POST      /executions/<eid>/shortcut             — keyboard shortcut
    GET       /suites/<sid>/cases/history            — last runs of one case
"""

import logging

from flask import Blueprint, jsonify, request

from testhub.auth import current_user_id, require_user
from testhub.models.catalog import CaseRef
from testhub.models.execution import TestExecution
from testhub.services import execution_service, session_service
from testhub.utils.errors import E, api_error, register_service_error_handlers
from testhub.utils.helpers import parse_int

logger = logging.getLogger(__name__)

sessions_bp = Blueprint("sessions", __name__, url_prefix="/api/v1")

register_service_error_handlers(sessions_bp, logger)

_PROGRESS_FIELDS = ("notes", "test_environment", "browser", "os_version")
_FINALIZE_TEXT_FIELDS = ("failure_reason", "reason") + _PROGRESS_FIELDS
_SHORTCUT_TEXT_FIELDS = ("failure_reason", "reason", "notes")
_SHORTCUT_FLAGS = ("dialog_focused", "in_text_input", "busy")


def _json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _non_strings(data, fields):
    """Fields present in ``data`` whose value is neither a string nor null."""
    return [f for f in fields if f in data and not isinstance(data[f], (str, type(None)))]


def _non_booleans(data, fields):
    return [f for f in fields if f in data and not isinstance(data[f], bool)]


def _execution_payload(execution):
    return execution.to_dict(include_case=True) if execution is not None else None


def _finalize_response(result):
    return jsonify({
        "execution": _execution_payload(result["execution"]),
        "session": result["session"].to_dict() if result["session"] is not None else None,
        "next_execution": _execution_payload(result["next_execution"]),
    }), 200


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Sessions
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@sessions_bp.route("/suites/<int:sid>/sessions", methods=["GET"])
@require_user
def list_sessions(sid):
    suite = session_service.get_suite(current_user_id(), sid)
    limit = parse_int(request.args.get("limit"), default=10, minimum=1, maximum=100)
    return jsonify(session_service.session_history(suite, limit=limit)), 200


@sessions_bp.route("/suites/<int:sid>/sessions/start-options", methods=["GET"])
@require_user
def start_options(sid):
    suite = session_service.get_suite(current_user_id(), sid)
    return jsonify(session_service.start_options(suite)), 200


@sessions_bp.route("/suites/<int:sid>/sessions", methods=["POST"])
@require_user
def start_session(sid):
    suite = session_service.get_suite(current_user_id(), sid)
    data = _json_body()
    if data is None:
        data = {}
    environment = data.get("environment")
    if environment is not None and not isinstance(environment, str):
        return api_error(E.VALIDATION_INVALID, "environment must be a string")
    session, execution = session_service.start_session(
        suite, environment=environment, name=data.get("name"),
    )
    return jsonify({
        "session": session.to_dict(),
        "execution": _execution_payload(execution),
    }), 201


@sessions_bp.route("/sessions/<int:sid>", methods=["GET"])
@require_user
def get_session(sid):
    session = session_service.get_session(current_user_id(), sid)
    executions = (
        TestExecution.query
        .filter_by(session_id=session.id)
        .order_by(TestExecution.id)
        .all()
    )
    return jsonify({
        "session": session.to_dict(),
        "executions": [e.to_dict() for e in executions],
    }), 200


@sessions_bp.route("/sessions/<int:sid>", methods=["DELETE"])
@require_user
def delete_session(sid):
    session = session_service.get_session(current_user_id(), sid)
    session_service.delete_session(session)
    return "", 204


@sessions_bp.route("/sessions/<int:sid>/pause", methods=["POST"])
@require_user
def pause_session(sid):
    session = session_service.get_session(current_user_id(), sid)
    session_service.pause_session(session)
    return jsonify({"session": session.to_dict()}), 200


@sessions_bp.route("/sessions/<int:sid>/resume", methods=["POST"])
@require_user
def resume_session(sid):
    session = session_service.get_session(current_user_id(), sid)
    session, execution = session_service.resume_session(session)
    return jsonify({
        "session": session.to_dict(),
        "execution": _execution_payload(execution),
    }), 200


@sessions_bp.route("/sessions/<int:sid>/navigate", methods=["POST"])
@require_user
def navigate(sid):
    session = session_service.get_session(current_user_id(), sid)
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    index = data.get("index")
    if index is not None and (not isinstance(index, int) or isinstance(index, bool)):
        return api_error(E.VALIDATION_INVALID, "index must be an integer")
    execution = session_service.navigate(session, index=index, direction=data.get("direction"))
    return jsonify({
        "session": session.to_dict(),
        "execution": _execution_payload(execution),
    }), 200


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Executions
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@sessions_bp.route("/executions/<int:eid>", methods=["GET"])
@require_user
def get_execution(eid):
    execution = execution_service.get_execution(current_user_id(), eid)
    return jsonify({"execution": _execution_payload(execution)}), 200


@sessions_bp.route("/executions/<int:eid>/steps/<int:step_number>/toggle", methods=["POST"])
@require_user
def toggle_step(eid, step_number):
    execution = execution_service.get_execution(current_user_id(), eid)
    execution_service.toggle_step(execution, step_number)
    return jsonify({"execution": execution.to_dict()}), 200


@sessions_bp.route("/executions/<int:eid>/steps/<int:step_number>/fail", methods=["POST"])
@require_user
def fail_step(eid, step_number):
    execution = execution_service.get_execution(current_user_id(), eid)
    data = _json_body() or {}
    reason = data.get("failure_reason")
    if reason is not None and not isinstance(reason, str):
        return api_error(E.VALIDATION_INVALID, "failure_reason must be a string")
    execution_service.mark_step_failed(execution, step_number, reason)
    return jsonify({"execution": execution.to_dict()}), 200


@sessions_bp.route("/executions/<int:eid>/steps/<int:step_number>/fail", methods=["DELETE"])
@require_user
def clear_step_failure(eid, step_number):
    execution = execution_service.get_execution(current_user_id(), eid)
    execution_service.clear_step_failure(execution, step_number)
    return jsonify({"execution": execution.to_dict()}), 200


@sessions_bp.route("/executions/<int:eid>/progress", methods=["PUT"])
@require_user
def save_progress(eid):
    execution = execution_service.get_execution(current_user_id(), eid)
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    bad = _non_strings(data, _PROGRESS_FIELDS)
    if bad:
        return api_error(E.VALIDATION_INVALID, f"Fields must be strings: {', '.join(bad)}")
    execution_service.save_progress(execution, data)
    return jsonify({"execution": execution.to_dict()}), 200


@sessions_bp.route("/executions/<int:eid>/finalize", methods=["POST"])
@require_user
def finalize(eid):
    execution = execution_service.get_execution(current_user_id(), eid)
    data = _json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    status = data.get("status")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    if not isinstance(status, str):
        return api_error(E.VALIDATION_INVALID, "status must be a string")
    bad = _non_strings(data, _FINALIZE_TEXT_FIELDS)
    if bad:
        return api_error(E.VALIDATION_INVALID, f"Fields must be strings: {', '.join(bad)}")
    if _non_booleans(data, ("auto_advance",)):
        return api_error(E.VALIDATION_INVALID, "auto_advance must be a boolean")
    result = execution_service.finalize(
        execution, status, details=data, auto_advance=data.get("auto_advance", True),
    )
    return _finalize_response(result)


@sessions_bp.route("/executions/<int:eid>/reset", methods=["POST"])
@require_user
def reset(eid):
    execution = execution_service.get_execution(current_user_id(), eid)
    data = _json_body() or {}
    execution_service.reset(execution, confirm=data.get("confirm") is True)
    session = execution.session
    return jsonify({
        "execution": _execution_payload(execution),
        "session": session.to_dict() if session is not None else None,
    }), 200


@sessions_bp.route("/executions/<int:eid>/shortcut", methods=["POST"])
@require_user
def shortcut(eid):
    """Apply a keyboard shortcut of the execution dialog.

    Ignored presses answer 200 with ``{"ignored": true}``.
    """
    execution = execution_service.get_execution(current_user_id(), eid)
    data = _json_body()
    if data is None or not isinstance(data.get("key"), str):
        return api_error(E.VALIDATION_REQUIRED, "key is required")
    bad = _non_strings(data, _SHORTCUT_TEXT_FIELDS)
    if bad:
        return api_error(E.VALIDATION_INVALID, f"Fields must be strings: {', '.join(bad)}")
    bad = _non_booleans(data, _SHORTCUT_FLAGS)
    if bad:
        return api_error(E.VALIDATION_INVALID, f"Fields must be booleans: {', '.join(bad)}")
    failure_reason = data.get("failure_reason") or execution.failure_reason or ""
    status = execution_service.resolve_shortcut(
        data["key"],
        dialog_focused=data.get("dialog_focused", True),
        in_text_input=data.get("in_text_input", False),
        execution_status=execution.execution_status,
        busy=data.get("busy", False),
        failure_reason=failure_reason,
    )
    if status is None:
        return jsonify({"ignored": True, "key": data["key"]}), 200
    details = {
        "failure_reason": failure_reason,
        "reason": data.get("reason") or f"Marked {status} via keyboard shortcut",
    }
    if "notes" in data:
        details["notes"] = data["notes"]
    result = execution_service.finalize(execution, status, details=details)
    return _finalize_response(result)


@sessions_bp.route("/suites/<int:sid>/cases/history", methods=["GET"])
@require_user
def case_history(sid):
    suite = session_service.get_suite(current_user_id(), sid)
    ref = CaseRef.from_payload({
        k: parse_int(v) if k != "kind" else v for k, v in request.args.items()
        if k in ("kind", "id", "test_case_id", "platform_test_case_id")
    })
    limit = parse_int(request.args.get("limit"), default=execution_service.HISTORY_LIMIT,
                      minimum=1, maximum=50)
    history = execution_service.case_history(current_user_id(), suite.id, ref, limit=limit)
    return jsonify({
        "case_ref": ref.to_dict(),
        "history": [e.to_dict() for e in history],
    }), 200
