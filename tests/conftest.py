"""
Shared pytest fixtures for the Job Progression Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - default_tenant: Pre-created Tenant entity
    - users: owner / foreman / member / client users of the default tenant
    - workflow: a small global 4-stage workflow (ids only)
    - job: a job of the default tenant that has not entered a stage yet

Services roll the session back on errors, so everything built here is
committed rather than flushed.
"""

from types import SimpleNamespace

import pytest

from jobflow import create_app
from jobflow.models import db as _db
from jobflow.models.auth import Tenant, User
from jobflow.models.job import Job
from jobflow.services import question_store, stage_graph


def _ensure_default_tenant():
    """Create a default tenant for tests if it doesn't exist.

    Returns the tenant ID.
    """
    t = Tenant.query.filter_by(slug="test-default").first()
    if not t:
        t = Tenant(name="Test Default", slug="test-default")
        _db.session.add(t)
        _db.session.commit()
    return t.id


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
        _ensure_default_tenant()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def default_tenant():
    """Return the auto-created default test tenant."""
    return Tenant.query.filter_by(slug="test-default").first()


# ── Domain fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def users(default_tenant):
    """One user per role that matters to the engine."""
    created = {}
    for role in ("owner", "foreman", "member", "client"):
        user = User(
            tenant_id=default_tenant.id,
            email=f"{role}@example.com",
            name=role.title(),
            role=role,
        )
        _db.session.add(user)
        created[role] = user
    _db.session.commit()
    return SimpleNamespace(**{role: user.id for role, user in created.items()})


@pytest.fixture()
def workflow():
    """Global workflow: Lead → Quote → Build → Handover.

    Transitions:
        Lead  --"Yes" on q_qualified-->  Quote      (automatic)
        Lead  --"No"  on q_qualified-->  Handover   (manual, close_as_unqualified)
        Quote --"Yes" on q_quote_sent--> Build      (automatic)
        Build --">=90" on q_progress-->  Handover   (automatic)
    """
    lead = stage_graph.create_stage(None, {
        "name": "Lead", "position": 1, "maps_to_status": "planning",
        "min_duration_hours": 1, "max_duration_hours": 168,
    }, commit=False)
    quote = stage_graph.create_stage(None, {
        "name": "Quote", "position": 2, "maps_to_status": "planning", "kind": "milestone",
    }, commit=False)
    build = stage_graph.create_stage(None, {
        "name": "Build", "position": 3, "maps_to_status": "active",
    }, commit=False)
    handover = stage_graph.create_stage(None, {
        "name": "Handover", "position": 4, "maps_to_status": "completed",
    }, commit=False)

    q_qualified = question_store.create_question(lead.id, None, {
        "text": "Have you qualified this lead?", "response_type": "yes_no",
    }, commit=False)
    q_value = question_store.create_question(lead.id, None, {
        "text": "Estimated project value?", "response_type": "number",
    }, commit=False)
    q_quote_sent = question_store.create_question(quote.id, None, {
        "text": "Has the quote been sent?", "response_type": "yes_no",
    }, commit=False)
    q_progress = question_store.create_question(build.id, None, {
        "text": "Completion percentage?", "response_type": "number",
    }, commit=False)
    q_handed_over = question_store.create_question(handover.id, None, {
        "text": "Handed over to the client?", "response_type": "yes_no",
    }, commit=False)

    t_lead = question_store.create_task_template(lead.id, None, {
        "task_type": "checklist", "title": "Qualify lead", "auto_assign_to": "creator",
        "subtasks": [{"title": "Check budget"}, {"title": "Check timeline"}],
    }, commit=False)
    t_quote = question_store.create_task_template(quote.id, None, {
        "task_type": "documentation", "title": "Prepare quote", "priority": "high",
        "auto_assign_to": "foreman", "due_date_offset_hours": 24, "sla_hours": 48,
    }, commit=False)

    lead_to_quote = stage_graph.create_transition(None, {
        "from_stage_id": lead.id, "to_stage_id": quote.id,
        "trigger_response": "Yes", "question_id": q_qualified.id,
    }, commit=False)
    lead_to_handover = stage_graph.create_transition(None, {
        "from_stage_id": lead.id, "to_stage_id": handover.id,
        "trigger_response": "No", "question_id": q_qualified.id,
        "is_automatic": False, "action": "close_as_unqualified",
    }, commit=False)
    quote_to_build = stage_graph.create_transition(None, {
        "from_stage_id": quote.id, "to_stage_id": build.id,
        "trigger_response": "Yes", "question_id": q_quote_sent.id,
    }, commit=False)
    build_to_handover = stage_graph.create_transition(None, {
        "from_stage_id": build.id, "to_stage_id": handover.id,
        "condition": ">=90", "question_id": q_progress.id,
    }, commit=False)
    _db.session.commit()

    return SimpleNamespace(
        lead=lead.id, quote=quote.id, build=build.id, handover=handover.id,
        q_qualified=q_qualified.id, q_value=q_value.id, q_quote_sent=q_quote_sent.id,
        q_progress=q_progress.id, q_handed_over=q_handed_over.id,
        t_lead=t_lead.id, t_quote=t_quote.id,
        lead_to_quote=lead_to_quote.id, lead_to_handover=lead_to_handover.id,
        quote_to_build=quote_to_build.id, build_to_handover=build_to_handover.id,
    )


@pytest.fixture()
def job(default_tenant, users):
    """A job that has not entered any stage yet."""
    j = Job(
        tenant_id=default_tenant.id,
        title="Kitchen renovation",
        created_by_id=users.owner,
        lead_user_id=users.foreman,
    )
    _db.session.add(j)
    _db.session.commit()
    return j
