"""
Shared pytest fixtures for the Admissions Workflow Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - review_workflow: active three-stage workflow (Submitted → InReview → Decision)
    - admin_headers: request headers for a user holding the ``admin`` role

Factory helpers (plain functions, importable from tests):
    make_user, grant, make_workflow, make_application, add_document, actor_for
"""

import pytest

from admissions import create_app
from admissions.models import db as _db
from admissions.models.application import Application, ApplicationDocument
from admissions.models.auth import Permission, Role, RolePermission, User, UserRole
from admissions.services import workflow_service
from admissions.services.permission_service import Actor, invalidate_all_cache


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
        # Tables are recreated per test and ids are reused; the RBAC cache
        # is keyed by user_id and must not leak between tests.
        invalidate_all_cache()
        yield
        invalidate_all_cache()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


def _get_or_create_role(name: str) -> Role:
    role = Role.query.filter_by(name=name).first()
    if role is None:
        role = Role(name=name, display_name=name.replace("_", " ").title())
        _db.session.add(role)
        _db.session.flush()
    return role


def _get_or_create_permission(codename: str) -> Permission:
    perm = Permission.query.filter_by(codename=codename).first()
    if perm is None:
        perm = Permission(codename=codename, category="workflow", display_name=codename)
        _db.session.add(perm)
        _db.session.flush()
    return perm


def grant(role_name: str, *codenames: str) -> Role:
    """Grant permission codenames to a role (both created when missing)."""
    role = _get_or_create_role(role_name)
    for codename in codenames:
        perm = _get_or_create_permission(codename)
        exists = RolePermission.query.filter_by(role_id=role.id, permission_id=perm.id).first()
        if exists is None:
            _db.session.add(RolePermission(role_id=role.id, permission_id=perm.id))
    _db.session.commit()
    invalidate_all_cache()
    return role


def make_user(email: str, roles=(), full_name=None) -> User:
    user = User(email=email, full_name=full_name or email.split("@")[0].title())
    _db.session.add(user)
    _db.session.flush()
    for role_name in roles:
        role = _get_or_create_role(role_name)
        _db.session.add(UserRole(user_id=user.id, role_id=role.id))
    _db.session.commit()
    return user


def actor_for(user: User) -> Actor:
    return Actor.for_user(user)


def make_workflow(stages, transitions, application_type="undergraduate",
                  name="Test Workflow", activate=True):
    """Create a workflow from stage dicts and name-referencing transition dicts.

    Every permission codename the transitions require is added to the
    catalogue so activation passes validation.
    """
    for tr in transitions:
        for codename in tr.get("required_permissions") or []:
            _get_or_create_permission(codename)
    wf = workflow_service.create_workflow({
        "name": name,
        "application_type": application_type,
        "stages": stages,
        "transitions": transitions,
    })
    if activate:
        workflow_service.activate_workflow(wf.id)
    _db.session.commit()
    return wf


def make_application(application_type="undergraduate", data=None, applicant=None,
                     completed_actions=None) -> Application:
    application = Application(
        application_type=application_type,
        data=data or {},
        completed_actions=completed_actions or [],
        applicant_user_id=applicant.id if applicant else None,
    )
    _db.session.add(application)
    _db.session.commit()
    return application


def add_document(application_id: int, document_type: str, status="verified") -> ApplicationDocument:
    doc = ApplicationDocument(
        application_id=application_id,
        document_type=document_type,
        file_name=f"{document_type}.pdf",
        verification_status=status,
    )
    _db.session.add(doc)
    _db.session.commit()
    return doc


def stage_by_name(workflow_id: int, name: str):
    graph = workflow_service.get_stages_and_transitions(workflow_id)
    return next(s for s in graph.stages if s.name == name)


def transition_by_name(workflow_id: int, name: str):
    graph = workflow_service.get_stages_and_transitions(workflow_id)
    return next(t for t in graph.transitions if t.name == name)


# ── Convenience fixtures ─────────────────────────────────────────────────


REVIEW_STAGES = [
    {"name": "Submitted", "required_documents": ["transcript"],
     "notification_triggers": [{"event": "stage_entry", "template": "application_received",
                                "audience": "applicant", "channels": ["email", "in_app"]}]},
    {"name": "InReview", "assigned_role": "reviewer",
     "notification_triggers": [{"event": "stage_entry", "template": "application_under_review",
                                "audience": "staff"}]},
    {"name": "Decision"},
]

REVIEW_TRANSITIONS = [
    {"source": "Submitted", "target": "InReview", "name": "Documents Verified",
     "is_automatic": True,
     "conditions": [{"field": "documents_verified", "operator": "equals", "value": True}]},
    {"source": "InReview", "target": "Decision", "name": "Decide",
     "required_permissions": ["review.decide"]},
]


@pytest.fixture()
def review_workflow():
    """Active undergraduate workflow: Submitted → (auto) InReview → (manual) Decision."""
    return make_workflow(REVIEW_STAGES, REVIEW_TRANSITIONS, name="Review Workflow")


@pytest.fixture()
def admin_headers():
    user = make_user("admin@uni.test", roles=["admin"], full_name="Admin User")
    return {"X-User-Id": str(user.id)}
