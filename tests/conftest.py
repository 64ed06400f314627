"""
Shared pytest fixtures for the Test Hub test suite.

Provides:
    - app: Flask application (session-scoped) with an in-memory object store
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client / other_client: Flask test clients acting as two different users
    - storage: the in-memory object store (emptied per test)
    - make_suite / start_run: factories for suites with cases and running sessions
"""

import os

import pytest
from cryptography.fernet import Fernet

from testhub import create_app
from testhub.core.exceptions import StorageError
from testhub.integrations.storage import LocalObjectStorage
from testhub.models import db as _db
from testhub.models.catalog import CaseRef
from testhub.services import catalog_service, session_service

USER = "user-1"
OTHER_USER = "user-2"


class InMemoryObjectStorage(LocalObjectStorage):
    """Object store kept in a dict; download tokens are signed like the real one."""

    def __init__(self, secret_key):
        super().__init__(root="/nonexistent", bucket="test-attachments", secret_key=secret_key)
        self.objects = {}
        self.fail_remove = False
        self.fail_upload = False

    def upload(self, path, data, content_type):
        if self.fail_upload:
            raise StorageError("upload refused")
        if path in self.objects:
            raise StorageError(f"Object already exists: {path}")
        self.objects[path] = (data, content_type)
        return path

    def remove(self, paths):
        if self.fail_remove:
            raise StorageError("remove refused")
        for path in paths:
            self.objects.pop(path, None)

    def read(self, path):
        try:
            return self.objects[path][0]
        except KeyError:
            raise StorageError(f"Object not found: {path}")


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session", autouse=True)
def encryption_key():
    """Stable ENCRYPTION_KEY so tracker tokens can be encrypted in tests."""
    key = Fernet.generate_key().decode()
    os.environ["ENCRYPTION_KEY"] = key
    yield key


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    application.extensions["object_storage"] = InMemoryObjectStorage(application.config["SECRET_KEY"])
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture(autouse=True)
def storage(app):
    store = app.extensions["object_storage"]
    store.objects.clear()
    store.fail_remove = False
    store.fail_upload = False
    yield store
    store.objects.clear()
    store.fail_remove = False
    store.fail_upload = False


@pytest.fixture()
def client(app):
    """Flask test client acting as USER."""
    test_client = app.test_client()
    test_client.environ_base["HTTP_X_USER_ID"] = USER
    return test_client


@pytest.fixture()
def other_client(app):
    """Flask test client acting as OTHER_USER."""
    test_client = app.test_client()
    test_client.environ_base["HTTP_X_USER_ID"] = OTHER_USER
    return test_client


@pytest.fixture()
def anonymous_client(app):
    return app.test_client()


# ── Convenience factories ────────────────────────────────────────────────


def _regular_case(user_id, title, step_count):
    return catalog_service.create_test_case(user_id, {
        "title": title,
        "steps": [
            {"action": f"{title} step {n}", "expected": f"{title} result {n}"}
            for n in range(1, step_count + 1)
        ],
    })


def _platform_case(user_id, title, step_count):
    return catalog_service.create_platform_case(user_id, {
        "platform": "web",
        "title": title,
        "steps": [f"{title} step {n}" for n in range(1, step_count + 1)],
        "expected_results": [f"{title} result 1"],
    })


@pytest.fixture()
def make_suite():
    """Factory: ``make_suite(case_count=2, kind="regular", user_id=USER, steps=3)``.

    Returns ``(suite, cases)`` with the cases linked in creation order.
    """
    def _make(case_count=2, kind="regular", user_id=USER, steps=3, name="Checkout suite"):
        suite = catalog_service.create_suite(user_id, {"name": name, "kind": kind})
        cases = []
        for n in range(1, case_count + 1):
            if kind == "regular":
                case = _regular_case(user_id, f"Case {n}", steps)
            else:
                case = _platform_case(user_id, f"Case {n}", steps)
            catalog_service.add_case_to_suite(suite, CaseRef(kind, case.id))
            cases.append(case)
        _db.session.commit()
        return suite, cases

    return _make


@pytest.fixture()
def start_run(make_suite):
    """Factory: suite + started session.  Returns ``(suite, cases, session, execution)``."""
    def _start(case_count=2, kind="regular", steps=3):
        suite, cases = make_suite(case_count=case_count, kind=kind, steps=steps)
        run, execution = session_service.start_session(suite)
        return suite, cases, run, execution

    return _start
