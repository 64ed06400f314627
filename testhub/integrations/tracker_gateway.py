"""
Issue-tracker gateway (Jira Cloud REST API v3).

All outbound HTTP calls to the issue tracker go through this class.
Direct `requests` calls in services or blueprints are FORBIDDEN.

  - Basic auth with the account email + API token
  - Timeout per call (TRACKER_TIMEOUT_SECONDS), no retries
  - Structured `TrackerResult` returned to the service, which decides
    what to persist

Testability: pass a mock `session` to TrackerGateway() in tests, or patch
the module-level `tracker_gateway` singleton.
"""

from __future__ import annotations

import logging
import time

import requests

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 30
ISSUE_LABEL = "testhub-test-failure"


class TrackerResult:
    """Structured return value from TrackerGateway calls.

    Attributes:
        ok:             True if the call succeeded (HTTP 2xx + no exception).
        status_code:    HTTP status code (None if network-level failure).
        data:           Parsed JSON response body, else None.
        error:          Human-readable error message or None.
        duration_ms:    Round-trip latency in milliseconds.
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: dict | None,
        error: str | None,
        duration_ms: int,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms

    @property
    def issue_key(self) -> str | None:
        return (self.data or {}).get("key")


def build_failure_description(test_title: str, suite_name: str, failure_reason: str,
                              evidence_urls: list[str] | None = None) -> dict:
    """Atlassian Document Format body for a failed-test issue."""
    content = [
        {
            "type": "paragraph",
            "content": [
                {"type": "text", "text": "Test Case: ", "marks": [{"type": "strong"}]},
                {"type": "text", "text": test_title},
            ],
        },
        {
            "type": "paragraph",
            "content": [
                {"type": "text", "text": "Test Suite: ", "marks": [{"type": "strong"}]},
                {"type": "text", "text": suite_name or "-"},
            ],
        },
        {
            "type": "heading",
            "attrs": {"level": 3},
            "content": [{"type": "text", "text": "Failure Details"}],
        },
        {
            "type": "codeBlock",
            "content": [{"type": "text", "text": failure_reason}],
        },
    ]
    if evidence_urls:
        content.append({
            "type": "heading",
            "attrs": {"level": 3},
            "content": [{"type": "text", "text": "Evidence"}],
        })
        for url in evidence_urls:
            content.append({
                "type": "paragraph",
                "content": [{
                    "type": "text",
                    "text": url,
                    "marks": [{"type": "link", "attrs": {"href": url}}],
                }],
            })
    return {"type": "doc", "version": 1, "content": content}


class TrackerGateway:
    """Jira Cloud REST API gateway.

    Instantiate once at module level (module-level singleton pattern).

    Usage:
        from testhub.integrations.tracker_gateway import tracker_gateway
        result = tracker_gateway.create_issue(base_url, email, token, payload)
        result = tracker_gateway.get_myself(base_url, email, token)
    """

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session: requests.Session | None = session

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def create_issue(
        self,
        base_url: str,
        email: str,
        api_token: str,
        fields: dict,
        timeout: int = _DEFAULT_TIMEOUT,
    ) -> TrackerResult:
        """POST a new issue.  ``fields`` is the Jira ``fields`` object."""
        url = f"{base_url.rstrip('/')}/rest/api/3/issue"
        started = time.perf_counter()
        try:
            resp = self.session.post(
                url,
                json={"fields": fields},
                auth=(email, api_token),
                headers={"Accept": "application/json"},
                timeout=timeout,
            )
        except requests.RequestException as exc:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.warning("Tracker request failed url=%s: %s", url, exc)
            return TrackerResult(False, None, None, f"Tracker unreachable: {exc}", duration_ms)

        duration_ms = int((time.perf_counter() - started) * 1000)
        if 200 <= resp.status_code < 300:
            try:
                data = resp.json()
            except ValueError:
                data = None
            logger.info("Tracker issue created status=%s in %dms", resp.status_code, duration_ms)
            return TrackerResult(True, resp.status_code, data, None, duration_ms)

        error = _error_message(resp)
        logger.warning("Tracker rejected issue status=%s: %s", resp.status_code, error)
        return TrackerResult(False, resp.status_code, None, error, duration_ms)

    def get_myself(
        self,
        base_url: str,
        email: str,
        api_token: str,
        timeout: int = _DEFAULT_TIMEOUT,
    ) -> TrackerResult:
        """GET the account behind the credentials; used to check a connection."""
        url = f"{base_url.rstrip('/')}/rest/api/3/myself"
        started = time.perf_counter()
        try:
            resp = self.session.get(
                url,
                auth=(email, api_token),
                headers={"Accept": "application/json"},
                timeout=timeout,
            )
        except requests.RequestException as exc:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.warning("Tracker request failed url=%s: %s", url, exc)
            return TrackerResult(False, None, None, f"Tracker unreachable: {exc}", duration_ms)

        duration_ms = int((time.perf_counter() - started) * 1000)
        if 200 <= resp.status_code < 300:
            try:
                data = resp.json()
            except ValueError:
                data = None
            return TrackerResult(True, resp.status_code, data, None, duration_ms)
        return TrackerResult(False, resp.status_code, None, _error_message(resp), duration_ms)


def _error_message(resp) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}: {resp.text[:200]}"
    if not isinstance(body, dict):
        return f"HTTP {resp.status_code}: {str(body)[:200]}"
    messages = body.get("errorMessages") or []
    if not isinstance(messages, list):
        messages = [messages]
    messages = [str(m) for m in messages]
    errors = body.get("errors")
    if isinstance(errors, dict):
        messages += [f"{k}: {v}" for k, v in errors.items()]
    return f"HTTP {resp.status_code}: " + ("; ".join(messages) or "request rejected")


# Module-level singleton
tracker_gateway = TrackerGateway()
