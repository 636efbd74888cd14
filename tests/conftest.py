"""
Shared pytest fixtures for the Trendboard annotation service test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - workspace / slide_factory / slide: pre-created timeline rows
    - definition: a resolved submetric definition
    - user_headers / ingest_headers: request header helpers
"""

from datetime import date

import pytest

from app import create_app
from app.models import db as _db
from app.models.workspace import Slide, Workspace
from app.services.change_feed import change_feed
from app.services.definition_service import DefinitionFields, resolve_definition

USER_A = "user-alice"
USER_B = "user-bob"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


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
        change_feed.clear()
        yield
        change_feed.clear()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def workspace():
    ws = Workspace(name="Test Workspace")
    _db.session.add(ws)
    _db.session.commit()
    return ws


@pytest.fixture()
def slide_factory(workspace):
    """Create dated slides in the test workspace: ``slide_factory("2025-01-10")``."""
    counter = {"n": 0}

    def _make(slide_date=None, ws=None):
        counter["n"] += 1
        s = Slide(
            workspace_id=(ws or workspace).id,
            title=f"Weekly review {counter['n']}",
            slide_number=counter["n"],
            slide_date=date.fromisoformat(slide_date) if slide_date else None,
        )
        _db.session.add(s)
        _db.session.commit()
        return s

    return _make


@pytest.fixture()
def slide(slide_factory):
    return slide_factory("2025-01-10")


@pytest.fixture()
def definition(workspace):
    """A submetric definition for "[Nike] - Sales" in the test workspace."""
    definition_id = resolve_definition(
        workspace.id, "sales", "nike-sales",
        DefinitionFields(label="[Nike] - Sales", category="Nike", metric_name="Sales"),
    )
    _db.session.commit()
    return definition_id


@pytest.fixture()
def user_headers():
    def _headers(user_id=USER_A):
        return {"X-User-Id": user_id}
    return _headers


@pytest.fixture()
def ingest_headers(app):
    return {"Authorization": f"Bearer {app.config['METRICS_API_KEY']}"}
