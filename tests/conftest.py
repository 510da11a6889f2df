"""
Shared pytest fixtures for the Sales Project Workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - dispatcher: RecordingDispatcher that keeps every published event
    - engine: WorkflowEngine wired to the recording dispatcher
    - doc: factory for validated DocumentSummary payloads
"""

from unittest.mock import MagicMock

import pytest

from salesflow import create_app
from salesflow.models import db as _db
from salesflow.models.workflow import Role
from salesflow.services.documents import DocumentSummary, ExtensionDocumentValidator
from salesflow.services.workflow_engine import Actor, WorkflowEngine


class RecordingDispatcher:
    """NotificationDispatcher fake: records events, optionally fails."""

    def __init__(self):
        self.events = []
        self.fail_with = None

    def publish(self, event):
        if self.fail_with is not None:
            raise self.fail_with
        self.events.append(event)

    @property
    def titles(self):
        return [e.title for e in self.events]


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
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Engine fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture()
def exporter():
    return MagicMock(name="exporter")


@pytest.fixture()
def engine(dispatcher, exporter):
    return WorkflowEngine(
        dispatcher=dispatcher,
        document_validator=ExtensionDocumentValidator(),
        exporter=exporter,
        max_retries=2,
    )


@pytest.fixture()
def doc():
    """Factory for validated document summaries."""
    def _make(file_name="document.pdf", **summary):
        return DocumentSummary(
            file_name=file_name,
            file_size=2048,
            mime_type="application/pdf",
            summary=summary or {"pages": 3},
        )
    return _make


@pytest.fixture()
def advance_to(engine, doc):
    """Create a workflow by the default sales actor and drive it to ``step``.

    Optional steps are skipped; step 5 is accepted and confirmed by projects.
    Returns the workflow id.
    """
    sales = Actor("sales1", Role.SALES)
    projects = Actor("projects1", Role.PROJECTS)

    def _advance(step, project_id=100):
        wf_id = engine.create(project_id, sales).workflow.id
        if step > 1:
            engine.complete_site_survey(wf_id, sales, doc("survey.pdf"))
        if step > 2:
            engine.mark_selection_design_not_needed(wf_id, sales)
        if step > 3:
            engine.mark_bank_guarantee_not_needed(wf_id, sales)
        if step > 4:
            engine.mark_no_missing_items(wf_id, sales)
        if step > 5:
            engine.mark_tender_accepted(wf_id, sales)
            engine.notify_project_completion(wf_id, projects)
        if step > 6:
            engine.confirm_project_finished(wf_id, sales, doc("cost.xlsx"))
        if step > 7:
            engine.mark_after_sales_not_needed(wf_id, sales)
        return wf_id
    return _advance
