"""
Tests — workflow engine.

Covers:
    1. Initialisation (entry stage, first status record, errors)
    2. Automatic transition through the scanner, then a gated manual one
    3. Transition checks: source stage, permissions, conditions, terminal
    4. Optimistic concurrency on the stage pointer
    5. Outbox rows and audit written with the stage change
    6. Completeness and evaluation context
    7. Append-only history
    8. Recorded actions and document verification
"""

from datetime import datetime, timezone

import pytest
import sqlalchemy as sa

from admissions.core.exceptions import (
    AlreadyInitializedError,
    ConditionNotMetError,
    InvalidTransitionError,
    NoActiveWorkflowError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from admissions.models import db
from admissions.models.application import Application, ApplicationDocument
from admissions.models.audit import AuditLog
from admissions.models.side_effect import SideEffectJob
from admissions.models.workflow import ApplicationStatus
from admissions.services.permission_service import Actor
from admissions.services.transition_scanner import AutomaticTransitionScanner
from admissions.services.workflow_engine import WorkflowEngine, build_context

from conftest import (
    add_document,
    actor_for,
    grant,
    make_application,
    make_user,
    make_workflow,
    stage_by_name,
    transition_by_name,
)

SYSTEM = Actor.system()


def _history(application_id):
    return [h.status for h in WorkflowEngine().get_status_history(application_id)]


def _revision_workflow():
    return make_workflow(
        stages=[{"name": "Review"}, {"name": "Done"}],
        transitions=[
            {"source": "Review", "target": "Review", "name": "Request Changes", "is_revision": True},
            {"source": "Review", "target": "Done", "name": "Finish"},
        ],
        name="Revision Workflow",
    )


def _gpa_workflow():
    return make_workflow(
        stages=[{"name": "Screening"}, {"name": "Shortlist"}],
        transitions=[{
            "source": "Screening", "target": "Shortlist", "name": "Shortlist",
            "conditions": [{"field": "gpa", "operator": ">=", "value": 3.0}],
        }],
        name="GPA Workflow",
    )


# ═══════════════════════════════════════════════════════════════════════════
#  1. Initialisation
# ═══════════════════════════════════════════════════════════════════════════

def test_initialize_enters_entry_stage(review_workflow):
    application = make_application()
    status = WorkflowEngine().initialize(application.id, SYSTEM, notes="received")

    app = db.session.get(Application, application.id)
    assert app.workflow_id == review_workflow.id
    assert app.current_stage.name == "Submitted"
    assert app.current_status_id == status.id
    assert app.workflow_state == "in_progress"
    assert app.version == 1
    assert app.needs_evaluation is True
    assert status.transition_id is None
    assert status.notes == "received"
    assert status.created_by == "system"


def test_initialize_twice_is_rejected(review_workflow):
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)

    with pytest.raises(AlreadyInitializedError):
        engine.initialize(application.id, SYSTEM)
    assert _history(application.id) == ["Submitted"]


def test_initialize_without_active_workflow(review_workflow):
    application = make_application(application_type="graduate")
    with pytest.raises(NoActiveWorkflowError) as exc_info:
        WorkflowEngine().initialize(application.id, SYSTEM)
    assert exc_info.value.details == {"application_type": "graduate"}
    assert db.session.get(Application, application.id).workflow_state == "uninitialized"


def test_initialize_unknown_application():
    with pytest.raises(NotFoundError):
        WorkflowEngine().initialize(4242, SYSTEM)


def test_single_stage_workflow_starts_terminal():
    make_workflow(stages=[{"name": "Closed"}], transitions=[], name="One Stage")
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)

    assert db.session.get(Application, application.id).workflow_state == "terminal"
    assert engine.available_transitions(application.id, SYSTEM) == []


# ═══════════════════════════════════════════════════════════════════════════
#  2. Automatic then manual
# ═══════════════════════════════════════════════════════════════════════════

def test_verified_document_lets_scanner_advance(review_workflow):
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    assert engine.evaluate_automatic(application.id) is None

    add_document(application.id, "transcript", "verified")
    result = AutomaticTransitionScanner(engine).scan()

    assert result.transitioned == 1
    app = db.session.get(Application, application.id)
    assert app.current_stage.name == "InReview"
    assert app.version == 2
    assert app.needs_evaluation is False
    assert _history(application.id) == ["Submitted", "InReview"]

    latest = engine.get_status_history(application.id)[-1]
    assert latest.transition_id == transition_by_name(review_workflow.id, "Documents Verified").id


def test_manual_transition_denied_without_permission(review_workflow):
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    add_document(application.id, "transcript", "verified")
    AutomaticTransitionScanner(engine).scan()

    clerk = make_user("clerk@uni.test")
    decide = transition_by_name(review_workflow.id, "Decide")
    with pytest.raises(PermissionDeniedError) as exc_info:
        engine.execute_transition(application.id, decide.id, actor_for(clerk))

    assert exc_info.value.details["missing_permissions"] == ["review.decide"]
    assert _history(application.id) == ["Submitted", "InReview"]
    assert db.session.get(Application, application.id).version == 2


def test_manual_transition_with_permission(review_workflow):
    grant("reviewer", "review.decide")
    reviewer = make_user("reviewer@uni.test", roles=["reviewer"], full_name="Rita Reviewer")
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    add_document(application.id, "transcript", "verified")
    AutomaticTransitionScanner(engine).scan()

    decide = transition_by_name(review_workflow.id, "Decide")
    status = engine.execute_transition(application.id, decide.id, actor_for(reviewer), {"notes": "strong"})

    app = db.session.get(Application, application.id)
    assert app.current_stage.name == "Decision"
    assert app.workflow_state == "terminal"
    assert status.created_by == "Rita Reviewer"
    assert status.created_by_user_id == reviewer.id
    assert status.notes == "strong"
    assert _history(application.id) == ["Submitted", "InReview", "Decision"]


def test_superuser_role_passes_permission_checks(review_workflow):
    admin = make_user("root@uni.test", roles=["admin"])
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    add_document(application.id, "transcript", "verified")
    AutomaticTransitionScanner(engine).scan()

    decide = transition_by_name(review_workflow.id, "Decide")
    engine.execute_transition(application.id, decide.id, actor_for(admin))
    assert db.session.get(Application, application.id).workflow_state == "terminal"


# ═══════════════════════════════════════════════════════════════════════════
#  3. Transition checks
# ═══════════════════════════════════════════════════════════════════════════

def test_transition_must_start_at_current_stage(review_workflow):
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    decide = transition_by_name(review_workflow.id, "Decide")

    with pytest.raises(InvalidTransitionError) as exc_info:
        engine.execute_transition(application.id, decide.id, SYSTEM)
    assert exc_info.value.details["current_stage_id"] == stage_by_name(review_workflow.id, "Submitted").id
    assert _history(application.id) == ["Submitted"]


def test_uninitialized_application_cannot_transition(review_workflow):
    application = make_application()
    decide = transition_by_name(review_workflow.id, "Decide")
    with pytest.raises(InvalidTransitionError):
        WorkflowEngine().execute_transition(application.id, decide.id, SYSTEM)


def test_unknown_transition(review_workflow):
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    with pytest.raises(NotFoundError):
        engine.execute_transition(application.id, 9999, SYSTEM)


def test_transition_from_another_workflow(review_workflow):
    other = make_workflow(
        stages=[{"name": "X"}, {"name": "Y"}],
        transitions=[{"source": "X", "target": "Y", "name": "Go"}],
        application_type="graduate", name="Other",
    )
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)

    with pytest.raises(InvalidTransitionError):
        engine.execute_transition(application.id, transition_by_name(other.id, "Go").id, SYSTEM)


def test_condition_failure_reports_details():
    wf = _gpa_workflow()
    application = make_application(data={"gpa": 2.5})
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    shortlist = transition_by_name(wf.id, "Shortlist")

    with pytest.raises(ConditionNotMetError) as exc_info:
        engine.execute_transition(application.id, shortlist.id, SYSTEM)
    assert exc_info.value.details["failed_conditions"] == [{
        "field": "gpa", "operator": "greater_than_or_equal",
        "expected": 3.0, "actual": 2.5, "absent": False,
    }]
    assert _history(application.id) == ["Screening"]


def test_condition_boundary_passes():
    wf = _gpa_workflow()
    application = make_application(data={"gpa": 3.0})
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    engine.execute_transition(application.id, transition_by_name(wf.id, "Shortlist").id, SYSTEM)
    assert _history(application.id) == ["Screening", "Shortlist"]


def test_terminal_application_cannot_move():
    wf = _gpa_workflow()
    application = make_application(data={"gpa": 3.5})
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    shortlist = transition_by_name(wf.id, "Shortlist")
    engine.execute_transition(application.id, shortlist.id, SYSTEM)

    with pytest.raises(InvalidTransitionError):
        engine.execute_transition(application.id, shortlist.id, SYSTEM)


def test_available_transitions_respect_permissions(review_workflow):
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)

    at_submitted = engine.available_transitions(application.id, SYSTEM)
    assert [t.name for t in at_submitted] == ["Documents Verified"]
    assert at_submitted[0].is_automatic is True
    assert at_submitted[0].conditions_met is False
    assert at_submitted[0].to_dict()["failed_conditions"][0]["field"] == "documents_verified"

    add_document(application.id, "transcript", "verified")
    AutomaticTransitionScanner(engine).scan()

    clerk = make_user("clerk@uni.test")
    assert engine.available_transitions(application.id, actor_for(clerk)) == []
    assert engine.get_next_stages(application.id, actor_for(clerk)) == []

    grant("reviewer", "review.decide")
    reviewer = make_user("reviewer@uni.test", roles=["reviewer"])
    summaries = engine.available_transitions(application.id, actor_for(reviewer))
    assert [(t.name, t.target_stage_name, t.conditions_met) for t in summaries] == [
        ("Decide", "Decision", True),
    ]
    assert [s.name for s in engine.get_next_stages(application.id, actor_for(reviewer))] == ["Decision"]


def test_automatic_transitions_ordered_by_priority():
    wf = make_workflow(
        stages=[{"name": "Screening"}, {"name": "Fast Track"}, {"name": "Standard"}],
        transitions=[
            {"source": "Screening", "target": "Standard", "name": "Standard", "is_automatic": True,
             "priority": 1, "conditions": [{"field": "gpa", "operator": ">=", "value": 2.0}]},
            {"source": "Screening", "target": "Fast Track", "name": "Fast", "is_automatic": True,
             "priority": 10, "conditions": [{"field": "gpa", "operator": ">=", "value": 3.8}]},
        ],
        name="Priority Workflow",
    )
    engine = WorkflowEngine()
    strong = make_application(data={"gpa": 3.9})
    average = make_application(data={"gpa": 2.4})
    engine.initialize(strong.id, SYSTEM)
    engine.initialize(average.id, SYSTEM)

    assert engine.evaluate_automatic(strong.id).id == transition_by_name(wf.id, "Fast").id
    assert engine.evaluate_automatic(average.id).id == transition_by_name(wf.id, "Standard").id
    assert [t.name for t in engine.available_transitions(strong.id, SYSTEM)] == ["Fast", "Standard"]


# ═══════════════════════════════════════════════════════════════════════════
#  4. Concurrency
# ═══════════════════════════════════════════════════════════════════════════

def test_stale_expected_version_loses():
    wf = _revision_workflow()
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    revise = transition_by_name(wf.id, "Request Changes")

    engine.execute_transition(application.id, revise.id, SYSTEM, {"expected_version": 1})
    with pytest.raises(InvalidTransitionError) as exc_info:
        engine.execute_transition(application.id, revise.id, SYSTEM, {"expected_version": 1})

    assert exc_info.value.details["reason"] == "concurrent_modification"
    assert _history(application.id) == ["Review", "Review"]
    assert db.session.get(Application, application.id).version == 2


def test_concurrent_update_between_check_and_write_is_rejected():
    wf = _revision_workflow()
    application = make_application()
    app_id = application.id

    def racing_clock():
        # Another writer bumps the version after the engine read it
        db.session.execute(
            sa.update(Application).where(Application.id == app_id)
            .values(version=Application.version + 1)
        )
        return datetime.now(timezone.utc)

    WorkflowEngine().initialize(app_id, SYSTEM)
    engine = WorkflowEngine(clock=racing_clock)
    with pytest.raises(InvalidTransitionError):
        engine.execute_transition(app_id, transition_by_name(wf.id, "Finish").id, SYSTEM)

    app = db.session.get(Application, app_id, populate_existing=True)
    assert app.current_stage.name == "Review"
    assert ApplicationStatus.query.filter_by(application_id=app_id).count() == 1
    assert SideEffectJob.query.filter_by(job_type="integration_sync").count() == 0


def test_version_increments_once_per_transition():
    wf = _revision_workflow()
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    for _ in range(3):
        engine.execute_transition(application.id, transition_by_name(wf.id, "Request Changes").id, SYSTEM)
    assert db.session.get(Application, application.id).version == 4


# ═══════════════════════════════════════════════════════════════════════════
#  5. Outbox and audit
# ═══════════════════════════════════════════════════════════════════════════

def test_stage_change_queues_side_effects(review_workflow):
    applicant = make_user("student@uni.test")
    application = make_application(applicant=applicant)
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)

    jobs = SideEffectJob.query.order_by(SideEffectJob.id).all()
    assert [(j.job_type, j.payload["event"]) for j in jobs] == [("notification", "stage_entry")]
    assert jobs[0].payload["applicant_user_id"] == applicant.id
    assert jobs[0].payload["template"] == "application_received"
    assert jobs[0].status == "queued"

    add_document(application.id, "transcript", "verified")
    AutomaticTransitionScanner(engine).scan()

    jobs = SideEffectJob.query.order_by(SideEffectJob.id).all()
    assert [j.job_type for j in jobs] == ["notification", "notification", "integration_sync"]
    assert jobs[1].payload["audience"] == "staff"
    assert jobs[1].payload["assigned_role"] == "reviewer"
    assert jobs[2].payload["stage_name"] == "InReview"


def test_transition_is_audited(review_workflow):
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    add_document(application.id, "transcript", "verified")
    AutomaticTransitionScanner(engine).scan()

    rows = AuditLog.query.filter_by(entity_type="application", entity_id=str(application.id)) \
        .order_by(AuditLog.id).all()
    assert [r.action for r in rows] == ["application.initialize", "application.transition"]
    assert rows[1].diff["from"] == "Submitted"
    assert rows[1].diff["to"] == "InReview"
    assert rows[1].diff["automatic"] is True
    assert rows[1].diff["version"] == 2


def test_failed_transition_writes_nothing(review_workflow):
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    jobs_before = SideEffectJob.query.count()
    audit_before = AuditLog.query.count()

    with pytest.raises(InvalidTransitionError):
        engine.execute_transition(application.id, transition_by_name(review_workflow.id, "Decide").id, SYSTEM)

    assert SideEffectJob.query.count() == jobs_before
    assert AuditLog.query.count() == audit_before


# ═══════════════════════════════════════════════════════════════════════════
#  6. Completeness and context
# ═══════════════════════════════════════════════════════════════════════════

def test_completeness_lists_missing_documents():
    make_workflow(
        stages=[{"name": "Documents", "required_documents": ["transcript", "recommendation"]},
                {"name": "Done"}],
        transitions=[{"source": "Documents", "target": "Done", "name": "Proceed"}],
        name="Docs Workflow",
    )
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    add_document(application.id, "transcript", "pending")

    result = engine.check_completeness(application.id)
    assert result["is_complete"] is False
    assert result["missing_requirements"] == ["recommendation"]
    assert result["stage_name"] == "Documents"


def test_completeness_counts_actions_and_ignores_rejected_documents():
    make_workflow(
        stages=[{"name": "Intake", "required_documents": ["passport"],
                 "required_actions": ["pay_application_fee", "submit_application"]},
                {"name": "Done"}],
        transitions=[{"source": "Intake", "target": "Done", "name": "Proceed"}],
        name="Intake Workflow",
    )
    application = make_application(completed_actions=["submit_application"])
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    add_document(application.id, "passport", "rejected")

    assert engine.check_completeness(application.id)["missing_requirements"] == [
        "passport", "pay_application_fee",
    ]


def test_completeness_before_initialisation():
    application = make_application()
    result = WorkflowEngine().check_completeness(application.id)
    assert result == {"is_complete": False, "missing_requirements": [], "stage_id": None, "stage_name": None}


def test_context_document_flags(review_workflow):
    application = make_application(data={"gpa": 3.1, "documents_verified": "ignored"})
    add_document(application.id, "transcript", "rejected")
    add_document(application.id, "transcript", "verified")
    add_document(application.id, "essay", "pending")
    app = db.session.get(Application, application.id)
    submitted = stage_by_name(review_workflow.id, "Submitted")

    ctx = build_context(app, submitted)
    assert ctx["gpa"] == 3.1
    assert ctx["application_data"]["gpa"] == 3.1
    assert ctx["documents"] == {"transcript": "verified", "essay": "pending"}
    assert ctx["documents_verified"] is False
    assert ctx["all_documents_verified"] is True
    assert ctx["application"]["type"] == "undergraduate"
    assert ctx["application"]["is_submitted"] is False


# ═══════════════════════════════════════════════════════════════════════════
#  7. Append-only history
# ═══════════════════════════════════════════════════════════════════════════

def test_status_records_cannot_be_updated(review_workflow):
    application = make_application()
    status = WorkflowEngine().initialize(application.id, SYSTEM)
    record = db.session.get(ApplicationStatus, status.id)
    record.notes = "rewritten"
    with pytest.raises(RuntimeError):
        db.session.flush()
    db.session.rollback()


def test_status_records_cannot_be_deleted(review_workflow):
    application = make_application()
    status = WorkflowEngine().initialize(application.id, SYSTEM)
    db.session.delete(db.session.get(ApplicationStatus, status.id))
    with pytest.raises(RuntimeError):
        db.session.flush()
    db.session.rollback()


def test_history_is_ordered_and_grows_by_one():
    wf = _revision_workflow()
    application = make_application()
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    revise = transition_by_name(wf.id, "Request Changes")
    finish = transition_by_name(wf.id, "Finish")

    engine.execute_transition(application.id, revise.id, SYSTEM)
    engine.execute_transition(application.id, finish.id, SYSTEM)

    history = engine.get_status_history(application.id)
    assert [h.status for h in history] == ["Review", "Review", "Done"]
    assert [h.id for h in history] == sorted(h.id for h in history)
    assert history[0].created_at <= history[1].created_at <= history[2].created_at
    assert db.session.get(Application, application.id).current_status_id == history[-1].id


# ═══════════════════════════════════════════════════════════════════════════
#  8. Stage completion: recorded actions and document verification
# ═══════════════════════════════════════════════════════════════════════════

def _intake_workflow():
    return make_workflow(
        stages=[{"name": "Intake", "required_documents": ["passport"],
                 "required_actions": ["pay_application_fee", "submit_application"],
                 "notification_triggers": [{"event": "document_verified", "template": "document_verified"}]},
                {"name": "Done"}],
        transitions=[{"source": "Intake", "target": "Done", "name": "Proceed"}],
        name="Intake Workflow",
    )


def _settled(applicant=None):
    """Initialised application whose evaluation flag has been cleared by a scan."""
    application = make_application(applicant=applicant)
    engine = WorkflowEngine()
    engine.initialize(application.id, SYSTEM)
    AutomaticTransitionScanner(engine).scan()
    assert db.session.get(Application, application.id, populate_existing=True).needs_evaluation is False
    return application.id


def test_applicant_records_own_action():
    _intake_workflow()
    applicant = make_user("student@uni.test")
    app_id = _settled(applicant)

    report = WorkflowEngine().complete_action(app_id, "pay_application_fee", actor_for(applicant),
                                              {"receipt": "R-1"})
    assert report["recorded"] is True
    assert report["action"] == "pay_application_fee"
    assert report["is_complete"] is False
    assert report["missing_requirements"] == ["passport", "submit_application"]

    app = db.session.get(Application, app_id, populate_existing=True)
    assert app.completed_actions == ["pay_application_fee"]
    assert app.needs_evaluation is True

    audit = AuditLog.query.filter_by(action="application.complete_action").one()
    assert audit.entity_id == str(app_id)
    assert audit.actor_user_id == applicant.id
    assert audit.diff == {"stage": "Intake", "action": "pay_application_fee", "data": {"receipt": "R-1"}}


def test_recording_an_action_twice_is_a_noop():
    _intake_workflow()
    applicant = make_user("student@uni.test")
    app_id = _settled(applicant)
    engine = WorkflowEngine()

    engine.complete_action(app_id, "submit_application", actor_for(applicant))
    report = engine.complete_action(app_id, "submit_application", actor_for(applicant))

    assert report["recorded"] is False
    assert db.session.get(Application, app_id).completed_actions == ["submit_application"]
    assert AuditLog.query.filter_by(action="application.complete_action").count() == 1


def test_staff_need_permission_to_record_actions():
    _intake_workflow()
    app_id = _settled(make_user("student@uni.test"))
    engine = WorkflowEngine()

    clerk = make_user("clerk@uni.test")
    with pytest.raises(PermissionDeniedError) as exc_info:
        engine.complete_action(app_id, "submit_application", actor_for(clerk))
    assert exc_info.value.details == {"action": "submit_application",
                                      "missing_permissions": ["record_stage_completion"]}
    assert db.session.get(Application, app_id).completed_actions == []

    grant("admissions_committee", "record_stage_completion")
    officer = make_user("officer@uni.test", roles=["admissions_committee"])
    assert engine.complete_action(app_id, "submit_application", actor_for(officer))["recorded"] is True


def test_action_must_belong_to_current_stage():
    _intake_workflow()
    app_id = _settled()
    with pytest.raises(ValidationError) as exc_info:
        WorkflowEngine().complete_action(app_id, "book_interview", SYSTEM)
    assert exc_info.value.details["required_actions"] == ["pay_application_fee", "submit_application"]


def test_actions_need_an_application_in_progress():
    _intake_workflow()
    application = make_application()
    with pytest.raises(InvalidTransitionError):
        WorkflowEngine().complete_action(application.id, "pay_application_fee", SYSTEM)


def test_verified_document_queues_notification_and_flags_application():
    _intake_workflow()
    app_id = _settled()
    add_document(app_id, "passport", "pending")
    grant("verification_team", "verify_documents")
    verifier = make_user("verifier@uni.test", roles=["verification_team"])
    jobs_before = SideEffectJob.query.count()

    doc = WorkflowEngine().record_document_verification(
        app_id, "passport", "verified", actor_for(verifier), confidence_score=0.93,
    )
    assert doc.verification_status == "verified"
    assert doc.confidence_score == 0.93
    assert doc.verified_at is not None

    assert SideEffectJob.query.count() == jobs_before + 1
    job = SideEffectJob.query.order_by(SideEffectJob.id.desc()).first()
    assert job.payload["event"] == "document_verified"
    assert db.session.get(Application, app_id, populate_existing=True).needs_evaluation is True
    assert WorkflowEngine().check_completeness(app_id)["missing_requirements"] == [
        "pay_application_fee", "submit_application",
    ]

    audit = AuditLog.query.filter_by(action="application.document_verification").one()
    assert (audit.diff["from"], audit.diff["to"]) == ("pending", "verified")


def test_rejected_document_flags_without_notification():
    _intake_workflow()
    app_id = _settled()
    add_document(app_id, "passport", "pending")
    jobs_before = SideEffectJob.query.count()

    WorkflowEngine().record_document_verification(app_id, "passport", "rejected", SYSTEM)

    assert SideEffectJob.query.count() == jobs_before
    assert db.session.get(Application, app_id, populate_existing=True).needs_evaluation is True
    assert WorkflowEngine().check_completeness(app_id)["missing_requirements"][0] == "passport"


def test_verification_applies_to_newest_document():
    _intake_workflow()
    app_id = _settled()
    older = add_document(app_id, "passport", "rejected")
    newer = add_document(app_id, "passport", "pending")

    doc = WorkflowEngine().record_document_verification(app_id, "passport", "verified", SYSTEM)
    assert doc.id == newer.id
    assert db.session.get(ApplicationDocument, older.id).verification_status == "rejected"


def test_verification_input_and_permission_checks():
    _intake_workflow()
    applicant = make_user("student@uni.test")
    app_id = _settled(applicant)
    add_document(app_id, "passport", "pending")
    engine = WorkflowEngine()

    with pytest.raises(ValidationError):
        engine.record_document_verification(app_id, "passport", "approved", SYSTEM)
    with pytest.raises(ValidationError):
        engine.record_document_verification(app_id, "passport", "verified", SYSTEM, confidence_score=1.5)
    with pytest.raises(NotFoundError):
        engine.record_document_verification(app_id, "essay", "verified", SYSTEM)

    # Applicants cannot verify their own documents
    with pytest.raises(PermissionDeniedError) as exc_info:
        engine.record_document_verification(app_id, "passport", "verified", actor_for(applicant))
    assert exc_info.value.details == {"document": "passport", "missing_permissions": ["verify_documents"]}
    assert db.session.get(Application, app_id, populate_existing=True).needs_evaluation is False
