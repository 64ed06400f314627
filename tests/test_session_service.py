"""
Tests — execution session controller.

Covers:
    - start: empty suite rejected, first case opened, suite activated
    - start-options detection (start / resume / new_run)
    - progress + counters across a full run, session and suite completion
    - auto-advance to the next unfinished case, wrapping around
    - pause / resume / navigate guards
    - one execution per (session, case) on re-open
    - history with pass-rate progression
    - delete removes executions and stored evidence
"""

import pytest

from testhub.core.exceptions import ValidationError
from testhub.models.execution import TestExecution
from testhub.services import evidence_service, execution_service, session_service

USER = "user-1"
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _finish(execution, status="passed", **details):
    if status == "failed":
        details.setdefault("failure_reason", "Total is wrong")
    if status in ("blocked", "skipped"):
        details.setdefault("reason", "Environment down")
    return execution_service.finalize(execution, status, details=details)


# ═════════════════════════════════════════════════════════════════════════════
# START
# ═════════════════════════════════════════════════════════════════════════════

class TestStart:
    def test_empty_suite_cannot_start(self, make_suite):
        suite, _ = make_suite(case_count=0)
        with pytest.raises(ValidationError):
            session_service.start_session(suite)

    def test_start_opens_first_case(self, make_suite):
        suite, cases = make_suite(case_count=3)
        run, execution = session_service.start_session(suite, environment="qa")

        assert run.status == "in_progress"
        assert run.actual_start is not None
        assert run.environment == "qa"
        assert run.current_index == 0
        assert run.test_cases_total == 3
        assert run.progress_percentage == 0
        assert execution.test_case_id == cases[0].id
        assert execution.execution_status == "in_progress"
        assert cases[0].execution_status == "in_progress"
        assert suite.status == "active"

    def test_default_environment_and_name(self, make_suite):
        suite, _ = make_suite(case_count=1)
        run, _ = session_service.start_session(suite)
        assert run.environment == "staging"
        assert run.name.startswith(suite.name)

    def test_cross_platform_suite_runs(self, make_suite):
        suite, cases = make_suite(case_count=2, kind="cross_platform")
        _, execution = session_service.start_session(suite)
        assert execution.platform_test_case_id == cases[0].id
        assert execution.test_case_id is None


class TestStartOptions:
    def test_no_runs_offers_start(self, make_suite):
        suite, _ = make_suite()
        assert session_service.start_options(suite) == {"action": "start"}

    def test_incomplete_run_offers_resume(self, start_run):
        suite, _, run, _ = start_run()
        options = session_service.start_options(suite)
        assert options["action"] == "resume"
        assert options["session"]["id"] == run.id

    def test_paused_run_offers_resume(self, start_run):
        suite, _, run, _ = start_run()
        session_service.pause_session(run)
        assert session_service.start_options(suite)["action"] == "resume"

    def test_finished_run_offers_new_run(self, start_run):
        suite, _, run, first = start_run(case_count=1)
        _finish(first)
        options = session_service.start_options(suite)
        assert options["action"] == "new_run"
        assert options["last_session"]["id"] == run.id


# ═════════════════════════════════════════════════════════════════════════════
# PROGRESS & COMPLETION
# ═════════════════════════════════════════════════════════════════════════════

class TestProgress:
    def test_two_case_run(self, start_run):
        suite, cases, run, first = start_run(case_count=2)

        result = _finish(first, "passed")
        assert run.progress_percentage == 50
        assert run.test_cases_completed == 1
        assert run.passed_cases == 1
        assert run.status == "in_progress"
        second = result["next_execution"]
        assert second.test_case_id == cases[1].id
        assert run.current_index == 1

        result = _finish(second, "failed")
        assert run.progress_percentage == 100
        assert run.status == "completed"
        assert run.actual_end is not None
        assert run.failed_cases == 1
        assert run.pass_rate == 50
        assert result["next_execution"] is None
        assert suite.status == "completed"
        assert suite.actual_end_date is not None

    def test_counters_match_finished_executions(self, start_run):
        _, _, run, first = start_run(case_count=4)
        nxt = _finish(first, "passed")["next_execution"]
        nxt = _finish(nxt, "blocked")["next_execution"]
        _finish(nxt, "skipped")

        finished = (
            TestExecution.query
            .filter(TestExecution.session_id == run.id,
                    TestExecution.execution_status.in_(("passed", "failed", "blocked", "skipped")))
            .count()
        )
        assert run.test_cases_completed == finished == 3
        assert (run.passed_cases, run.blocked_cases, run.skipped_cases) == (1, 1, 1)
        assert run.progress_percentage == 75

    def test_auto_advance_wraps_to_first_unfinished(self, start_run):
        _, cases, run, first = start_run(case_count=3)
        second = session_service.navigate(run, index=1)
        third = _finish(second)["next_execution"]
        assert third.test_case_id == cases[2].id

        wrapped = _finish(third)["next_execution"]
        assert wrapped.id == first.id
        assert run.current_index == 0

    def test_no_auto_advance_keeps_position(self, start_run):
        _, _, run, first = start_run(case_count=2)
        result = execution_service.finalize(first, "passed", auto_advance=False)
        assert result["next_execution"] is None
        assert run.current_index == 0

    def test_total_bumped_to_executed_count(self, start_run):
        _, _, run, first = start_run(case_count=2)
        run.test_cases_total = 0
        session_service.sync_session_totals(run)
        assert run.test_cases_total == 1


# ═════════════════════════════════════════════════════════════════════════════
# PAUSE / RESUME / NAVIGATE
# ═════════════════════════════════════════════════════════════════════════════

class TestLifecycle:
    def test_pause_blocks_finalize(self, start_run):
        _, _, run, first = start_run()
        session_service.pause_session(run)
        assert run.status == "paused"
        with pytest.raises(ValidationError):
            _finish(first)
        assert first.execution_status == "in_progress"

    def test_pause_twice_rejected(self, start_run):
        _, _, run, _ = start_run()
        session_service.pause_session(run)
        with pytest.raises(ValidationError):
            session_service.pause_session(run)

    def test_resume_returns_current_case(self, start_run):
        _, cases, run, _ = start_run(case_count=3)
        session_service.navigate(run, direction="next")
        session_service.pause_session(run)
        run, execution = session_service.resume_session(run)
        assert run.status == "in_progress"
        assert run.current_index == 1
        assert execution.test_case_id == cases[1].id

    def test_resume_requires_paused(self, start_run):
        _, _, run, _ = start_run()
        with pytest.raises(ValidationError):
            session_service.resume_session(run)

    def test_navigate_reuses_execution(self, start_run):
        _, _, run, first = start_run(case_count=2)
        session_service.navigate(run, direction="next")
        back = session_service.navigate(run, direction="previous")
        assert back.id == first.id
        assert TestExecution.query.filter_by(session_id=run.id).count() == 2

    def test_navigate_out_of_range(self, start_run):
        _, _, run, _ = start_run(case_count=2)
        with pytest.raises(ValidationError):
            session_service.navigate(run, direction="previous")
        with pytest.raises(ValidationError):
            session_service.navigate(run, index=2)
        assert run.current_index == 0

    def test_navigate_needs_index_or_direction(self, start_run):
        _, _, run, _ = start_run()
        with pytest.raises(ValidationError):
            session_service.navigate(run, direction="sideways")

    def test_navigate_while_paused_rejected(self, start_run):
        _, _, run, _ = start_run()
        session_service.pause_session(run)
        with pytest.raises(ValidationError):
            session_service.navigate(run, index=1)


# ═════════════════════════════════════════════════════════════════════════════
# HISTORY / DELETE
# ═════════════════════════════════════════════════════════════════════════════

class TestHistoryAndDelete:
    def test_history_progression_lists_completed_runs_oldest_first(self, make_suite):
        suite, _ = make_suite(case_count=1)
        _, first = session_service.start_session(suite)
        _finish(first, "failed")
        _, second = session_service.start_session(suite)
        _finish(second, "passed")

        history = session_service.session_history(suite)
        assert history["total"] == 2
        assert [p["pass_rate"] for p in history["pass_rate_progression"]] == [0, 100]

    def test_delete_removes_executions_and_objects(self, start_run, storage):
        _, cases, run, first = start_run()
        evidence_service.add_attachment(
            first, USER, file_name="shot.png", content_type="image/png", data=PNG,
            test_case_id=cases[0].id,
        )
        assert len(storage.objects) == 1
        run_id = run.id

        session_service.delete_session(run)
        assert TestExecution.query.filter_by(session_id=run_id).count() == 0
        assert storage.objects == {}

    def test_delete_survives_storage_failure(self, start_run, storage):
        _, cases, run, first = start_run()
        evidence_service.add_attachment(
            first, USER, file_name="shot.png", content_type="image/png", data=PNG,
            test_case_id=cases[0].id,
        )
        storage.fail_remove = True
        session_service.delete_session(run)
        assert TestExecution.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# API
# ═════════════════════════════════════════════════════════════════════════════

class TestSessionsAPI:
    def test_start_and_get(self, client, make_suite):
        suite, _ = make_suite()
        res = client.post(f"/api/v1/suites/{suite.id}/sessions", json={"environment": "prod"})
        assert res.status_code == 201
        body = res.get_json()
        assert body["session"]["environment"] == "prod"
        assert body["execution"]["read_only"] is False
        assert len(body["execution"]["steps"]) == 3

        sid = body["session"]["id"]
        got = client.get(f"/api/v1/sessions/{sid}").get_json()
        assert got["session"]["stats"]["remaining"] == 2
        assert len(got["executions"]) == 1

    def test_start_empty_suite_is_422(self, client, make_suite):
        suite, _ = make_suite(case_count=0)
        assert client.post(f"/api/v1/suites/{suite.id}/sessions", json={}).status_code == 422

    def test_start_options_endpoint(self, client, make_suite):
        suite, _ = make_suite()
        res = client.get(f"/api/v1/suites/{suite.id}/sessions/start-options")
        assert res.get_json() == {"action": "start"}

    def test_pause_resume_navigate(self, client, make_suite):
        suite, cases = make_suite()
        sid = client.post(f"/api/v1/suites/{suite.id}/sessions", json={}).get_json()["session"]["id"]

        res = client.post(f"/api/v1/sessions/{sid}/navigate", json={"direction": "next"})
        assert res.status_code == 200
        assert res.get_json()["execution"]["test_case_id"] == cases[1].id

        assert client.post(f"/api/v1/sessions/{sid}/pause").status_code == 200
        assert client.post(f"/api/v1/sessions/{sid}/pause").status_code == 422
        res = client.post(f"/api/v1/sessions/{sid}/resume")
        assert res.get_json()["session"]["current_index"] == 1

    def test_navigate_rejects_non_integer_index(self, client, start_run):
        _, _, run, _ = start_run()
        res = client.post(f"/api/v1/sessions/{run.id}/navigate", json={"index": "1"})
        assert res.status_code == 400

    def test_other_user_cannot_see_session(self, other_client, start_run):
        _, _, run, first = start_run()
        assert other_client.get(f"/api/v1/sessions/{run.id}").status_code == 404
        assert other_client.get(f"/api/v1/executions/{first.id}").status_code == 404

    def test_delete_endpoint(self, client, start_run):
        _, _, run, _ = start_run()
        assert client.delete(f"/api/v1/sessions/{run.id}").status_code == 204
        assert client.get(f"/api/v1/sessions/{run.id}").status_code == 404

    def test_deleted_executions_are_gone(self, client, start_run):
        suite, _, run, first = start_run()
        execution_id = first.id
        client.post(f"/api/v1/executions/{execution_id}/finalize", json={"status": "passed"})

        assert client.delete(f"/api/v1/sessions/{run.id}").status_code == 204
        assert TestExecution.query.filter_by(id=execution_id).first() is None
        assert client.get(f"/api/v1/executions/{execution_id}").status_code == 404
        assert client.get(f"/api/v1/suites/{suite.id}/sessions").get_json()["total"] == 0

    def test_history_endpoint(self, client, start_run):
        suite, _, _, _ = start_run()
        body = client.get(f"/api/v1/suites/{suite.id}/sessions").get_json()
        assert body["total"] == 1
        assert body["pass_rate_progression"] == []
