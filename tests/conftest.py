"""
Shared pytest fixtures for the BlueCrew test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - actor_headers / client_headers: X-Actor-* headers for API calls
"""

import pytest

from bluecrew import create_app
from bluecrew.models import db as _db


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
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


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def actor_headers():
    """Headers for an internal manager."""
    return {"X-Actor-Id": "mgr-1", "X-Actor-Name": "Dana Manager", "X-Actor-Role": "admin"}


@pytest.fixture()
def client_headers():
    """Headers for the customer approving on the client track."""
    return {"X-Actor-Id": "cli-1", "X-Actor-Name": "Casey Client", "X-Actor-Role": "client"}
