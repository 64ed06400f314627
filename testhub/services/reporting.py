"""Reporting aggregator — suite stats, per-case performance and daily trends.

All figures are computed from finished executions (and the sessions that
hold them) inside a rolling window of ``days``, scoped to one user and
optionally to one suite.  Rates are whole percentages and are 0 whenever
the denominator is 0.
"""
from datetime import datetime, timedelta, timezone

from sqlalchemy import case as sa_case, func

from testhub.models import db
from testhub.models.catalog import PlatformTestCase, Suite, TestCase
from testhub.models.execution import FINAL_STATUSES, TestExecution, TestRunSession, as_utc

DEFAULT_DAYS = 30
PERFORMANCE_LIMIT = 200


def safe_rate(numerator, denominator) -> int:
    """Whole-number percentage; 0 when the denominator is 0."""
    return round(numerator / denominator * 100) if denominator else 0


def _since(days):
    return datetime.now(timezone.utc) - timedelta(days=days)


def _finished_executions(user_id, days, suite_id=None):
    q = TestExecution.query.filter(
        TestExecution.user_id == user_id,
        TestExecution.execution_status.in_(FINAL_STATUSES),
        TestExecution.completed_at >= _since(days),
    )
    if suite_id is not None:
        q = q.filter(TestExecution.suite_id == suite_id)
    return q


def _trend(pass_rates):
    """Compare the two most recent completed runs: up | down | stable."""
    if len(pass_rates) < 2:
        return "stable"
    latest, previous = pass_rates[0], pass_rates[1]
    if latest > previous:
        return "up"
    if latest < previous:
        return "down"
    return "stable"


# ═════════════════════════════════════════════════════════════════════════════
# SUITE STATS
# ═════════════════════════════════════════════════════════════════════════════

def suite_execution_stats(user_id, days=DEFAULT_DAYS, suite_id=None):
    """Per-suite run statistics for sessions started inside the window."""
    since = _since(days)
    q = TestRunSession.query.filter(
        TestRunSession.user_id == user_id,
        TestRunSession.created_at >= since,
    )
    if suite_id is not None:
        q = q.filter(TestRunSession.suite_id == suite_id)
    sessions = q.order_by(TestRunSession.created_at.desc(), TestRunSession.id.desc()).all()

    by_suite: dict[int, list[TestRunSession]] = {}
    for s in sessions:
        by_suite.setdefault(s.suite_id, []).append(s)
    if not by_suite:
        return []

    suites = {s.id: s for s in Suite.query.filter(Suite.id.in_(list(by_suite))).all()}
    results = []
    for sid, runs in by_suite.items():
        scored = [r for r in runs if r.test_cases_completed]
        durations = [r.duration_minutes for r in runs if r.duration_minutes is not None]
        completed_rates = [r.pass_rate for r in runs if r.status == "completed"]
        last = max((as_utc(r.actual_start or r.created_at) for r in runs), default=None)
        suite = suites.get(sid)
        results.append({
            "suite_id": sid,
            "suite_name": suite.name if suite else None,
            "execution_count": len(runs),
            "total_tests": sum(r.test_cases_completed or 0 for r in runs),
            "avg_pass_rate": round(sum(r.pass_rate for r in scored) / len(scored)) if scored else 0,
            "avg_execution_time": round(sum(durations) / len(durations), 1) if durations else 0,
            "last_execution": last.isoformat() if last else None,
            "trend": _trend(completed_rates),
        })
    results.sort(key=lambda r: r["last_execution"] or "", reverse=True)
    return results


# ═════════════════════════════════════════════════════════════════════════════
# TEST CASE PERFORMANCE
# ═════════════════════════════════════════════════════════════════════════════

def test_case_performance(user_id, days=DEFAULT_DAYS, suite_id=None, limit=PERFORMANCE_LIMIT):
    """Per-case outcome statistics, most frequently failing first."""
    base = _finished_executions(user_id, days, suite_id)
    failed_flag = sa_case((TestExecution.execution_status == "failed", 1), else_=0)
    passed_flag = sa_case((TestExecution.execution_status == "passed", 1), else_=0)
    rows = (
        base.with_entities(
            TestExecution.test_case_id,
            TestExecution.platform_test_case_id,
            func.count(TestExecution.id).label("total"),
            func.sum(passed_flag).label("passed"),
            func.sum(failed_flag).label("failed"),
            func.avg(TestExecution.duration_seconds).label("avg_seconds"),
        )
        .group_by(TestExecution.test_case_id, TestExecution.platform_test_case_id)
        .order_by(func.sum(failed_flag).desc(), func.count(TestExecution.id).desc())
        .limit(limit)
        .all()
    )

    results = []
    for row in rows:
        ref_filter = {
            "test_case_id": row.test_case_id,
            "platform_test_case_id": row.platform_test_case_id,
        }
        last_failure = (
            base.filter_by(execution_status="failed", **ref_filter)
            .order_by(TestExecution.completed_at.desc(), TestExecution.id.desc())
            .first()
        )
        if row.test_case_id is not None:
            case = db.session.get(TestCase, row.test_case_id)
            kind, case_id = "regular", row.test_case_id
        else:
            case = db.session.get(PlatformTestCase, row.platform_test_case_id)
            kind, case_id = "cross_platform", row.platform_test_case_id
        total = row.total or 0
        failed = int(row.failed or 0)
        results.append({
            "case_ref": {"kind": kind, "id": case_id},
            "title": case.title if case else None,
            "total_executions": total,
            "pass_rate": safe_rate(int(row.passed or 0), total),
            "avg_execution_time": round(float(row.avg_seconds) / 60, 1) if row.avg_seconds else 0,
            "failure_frequency": failed,
            "failure_rate": safe_rate(failed, total),
            "last_failure_date": (
                as_utc(last_failure.completed_at).isoformat()
                if last_failure and last_failure.completed_at else None
            ),
            "last_failure_reason": last_failure.failure_reason if last_failure else None,
        })
    return results


# ═════════════════════════════════════════════════════════════════════════════
# DAILY TRENDS
# ═════════════════════════════════════════════════════════════════════════════

def execution_trends_daily(user_id, days=DEFAULT_DAYS, suite_id=None):
    """Finished executions per calendar day (UTC), split by outcome."""
    day = func.date(TestExecution.completed_at)
    counts = [
        func.sum(sa_case((TestExecution.execution_status == status, 1), else_=0)).label(status)
        for status in FINAL_STATUSES
    ]
    rows = (
        _finished_executions(user_id, days, suite_id)
        .with_entities(day.label("day"), *counts, func.count(TestExecution.id).label("total"))
        .group_by(day)
        .order_by(day)
        .all()
    )
    return [
        {
            "date": str(row.day),
            "passed": int(row.passed or 0),
            "failed": int(row.failed or 0),
            "blocked": int(row.blocked or 0),
            "skipped": int(row.skipped or 0),
            "total": int(row.total or 0),
            "pass_rate": safe_rate(int(row.passed or 0), int(row.total or 0)),
        }
        for row in rows
    ]
