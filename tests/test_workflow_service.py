"""
Tests — workflow definition store.

Covers:
    1. Activation: validation gate, single active workflow per type
    2. Active workflows are read-only
    3. Duplicate / delete / reorder
    4. Stage and transition editing rules
    5. Default template seeding
"""

import pytest

from admissions.core.exceptions import (
    ActiveWorkflowModificationError,
    NotFoundError,
    ValidationError,
    WorkflowValidationError,
)
from admissions.models import db
from admissions.models.audit import AuditLog
from admissions.models.auth import Permission, RolePermission
from admissions.models.workflow import Workflow, WorkflowTransition
from admissions.services import workflow_service
from admissions.services.workflow_engine import WorkflowEngine
from admissions.services.permission_service import Actor

from conftest import (
    REVIEW_STAGES,
    REVIEW_TRANSITIONS,
    make_application,
    make_workflow,
    stage_by_name,
    transition_by_name,
)


def _draft(name="Draft Workflow", application_type="undergraduate"):
    return make_workflow(REVIEW_STAGES, REVIEW_TRANSITIONS, application_type=application_type,
                         name=name, activate=False)


# ═══════════════════════════════════════════════════════════════════════════
#  1. Activation
# ═══════════════════════════════════════════════════════════════════════════

def test_activate_deactivates_previous_workflow_of_same_type():
    first = make_workflow(REVIEW_STAGES, REVIEW_TRANSITIONS, name="First")
    second = _draft(name="Second")

    workflow_service.activate_workflow(second.id, actor=Actor.system("registrar"))
    db.session.commit()

    active = Workflow.query.filter_by(application_type="undergraduate", is_active=True).all()
    assert [w.id for w in active] == [second.id]
    assert db.session.get(Workflow, first.id).is_active is False

    audit = AuditLog.query.filter_by(action="workflow.activate", entity_id=str(second.id)).one()
    assert audit.diff["deactivated"] == [first.id]
    assert audit.actor == "registrar"


def test_activation_leaves_other_types_alone():
    ug = make_workflow(REVIEW_STAGES, REVIEW_TRANSITIONS, name="UG")
    grad = make_workflow(REVIEW_STAGES, REVIEW_TRANSITIONS, name="Grad", application_type="graduate")
    assert db.session.get(Workflow, ug.id).is_active is True
    assert db.session.get(Workflow, grad.id).is_active is True


def test_invalid_workflow_cannot_be_activated():
    current = make_workflow(REVIEW_STAGES, REVIEW_TRANSITIONS, name="Current")
    broken = workflow_service.create_workflow({
        "name": "Broken", "application_type": "undergraduate",
        "stages": [{"name": "A"}, {"name": "B"}],
        "transitions": [{"source": "A", "target": "B", "name": "go"},
                        {"source": "B", "target": "A", "name": "back"}],
    })
    db.session.commit()

    with pytest.raises(WorkflowValidationError) as exc_info:
        workflow_service.activate_workflow(broken.id)
    db.session.rollback()

    codes = {i["code"] for i in exc_info.value.details["issues"]}
    assert {"NO_ENTRY_STAGE", "NO_TERMINAL_STAGE"} <= codes
    assert db.session.get(Workflow, current.id).is_active is True
    assert db.session.get(Workflow, broken.id).is_active is False


def test_unknown_permission_blocks_activation():
    wf = _draft()
    tr = WorkflowTransition.query.filter_by(workflow_id=wf.id, name="Decide").one()
    tr.required_permissions = ["not.in.catalogue"]
    db.session.commit()

    issues = workflow_service.validate_workflow(wf.id)
    assert [i.code for i in issues] == ["UNKNOWN_PERMISSION"]


def test_activate_is_idempotent():
    wf = make_workflow(REVIEW_STAGES, REVIEW_TRANSITIONS)
    before = AuditLog.query.filter_by(action="workflow.activate").count()
    workflow_service.activate_workflow(wf.id)
    assert AuditLog.query.filter_by(action="workflow.activate").count() == before


# ═══════════════════════════════════════════════════════════════════════════
#  2. Read-only active workflows
# ═══════════════════════════════════════════════════════════════════════════

def test_active_workflow_cannot_be_edited(review_workflow):
    submitted = stage_by_name(review_workflow.id, "Submitted")
    with pytest.raises(ActiveWorkflowModificationError):
        workflow_service.update_workflow(review_workflow.id, {"name": "Renamed"})
    with pytest.raises(ActiveWorkflowModificationError):
        workflow_service.update_stage(submitted.id, {"name": "Received"})
    with pytest.raises(ActiveWorkflowModificationError):
        workflow_service.create_stage(review_workflow.id, {"name": "Extra"})
    with pytest.raises(ActiveWorkflowModificationError):
        workflow_service.delete_workflow(review_workflow.id)


def test_deactivated_workflow_can_be_edited(review_workflow):
    workflow_service.deactivate_workflow(review_workflow.id)
    wf = workflow_service.update_workflow(review_workflow.id, {"name": "Renamed"})
    db.session.commit()
    assert wf.name == "Renamed"
    audit = AuditLog.query.filter_by(action="workflow.update").one()
    assert audit.diff["name"] == {"old": "Review Workflow", "new": "Renamed"}


# ═══════════════════════════════════════════════════════════════════════════
#  3. Duplicate / delete / reorder
# ═══════════════════════════════════════════════════════════════════════════

def test_duplicate_copies_graph_inactive(review_workflow):
    copy = workflow_service.duplicate_workflow(review_workflow.id)
    db.session.commit()

    assert copy.name == "Review Workflow (Copy)"
    assert copy.is_active is False
    graph = workflow_service.get_stages_and_transitions(copy.id)
    assert [s.name for s in graph.stages] == ["Submitted", "InReview", "Decision"]
    assert sorted(t.name for t in graph.transitions) == ["Decide", "Documents Verified"]
    stage_ids = {s.id for s in graph.stages}
    assert all(t.source_stage_id in stage_ids and t.target_stage_id in stage_ids
               for t in graph.transitions)
    assert workflow_service.validate_workflow(copy.id) == []


def test_delete_refused_while_applications_are_located(review_workflow):
    application = make_application()
    WorkflowEngine().initialize(application.id, Actor.system())
    workflow_service.deactivate_workflow(review_workflow.id)

    with pytest.raises(ValidationError):
        workflow_service.delete_workflow(review_workflow.id)


def test_delete_removes_graph():
    wf = _draft()
    workflow_service.delete_workflow(wf.id)
    db.session.commit()
    assert db.session.get(Workflow, wf.id) is None
    assert WorkflowTransition.query.filter_by(workflow_id=wf.id).count() == 0


def test_reorder_stages():
    wf = _draft()
    graph = workflow_service.get_stages_and_transitions(wf.id)
    ids = [s.id for s in graph.stages]

    reordered = workflow_service.reorder_stages(wf.id, list(reversed(ids)))
    db.session.commit()
    assert [s.id for s in reordered] == list(reversed(ids))
    assert [s.sequence for s in reordered] == [1, 2, 3]


def test_reorder_rejects_partial_list():
    wf = _draft()
    ids = [s.id for s in workflow_service.get_stages_and_transitions(wf.id).stages]
    with pytest.raises(ValidationError):
        workflow_service.reorder_stages(wf.id, ids[:2])
    with pytest.raises(ValidationError):
        workflow_service.reorder_stages(wf.id, ids + [ids[0]])


# ═══════════════════════════════════════════════════════════════════════════
#  4. Stage and transition rules
# ═══════════════════════════════════════════════════════════════════════════

def test_delete_stage_removes_its_transitions():
    wf = _draft()
    in_review = stage_by_name(wf.id, "InReview")
    workflow_service.delete_stage(in_review.id)
    db.session.commit()

    graph = workflow_service.get_stages_and_transitions(wf.id)
    assert [s.name for s in graph.stages] == ["Submitted", "Decision"]
    assert graph.transitions == []


def test_delete_stage_refused_while_occupied(review_workflow):
    application = make_application()
    WorkflowEngine().initialize(application.id, Actor.system())
    workflow_service.deactivate_workflow(review_workflow.id)
    submitted = stage_by_name(review_workflow.id, "Submitted")

    with pytest.raises(ValidationError) as exc_info:
        workflow_service.delete_stage(submitted.id)
    assert exc_info.value.details["applications"] == 1


def test_transitions_out_of_occupied_stage_are_frozen(review_workflow):
    application = make_application()
    WorkflowEngine().initialize(application.id, Actor.system())
    workflow_service.deactivate_workflow(review_workflow.id)
    db.session.commit()
    submitted = stage_by_name(review_workflow.id, "Submitted")
    auto = transition_by_name(review_workflow.id, "Documents Verified")

    with pytest.raises(ValidationError) as exc_info:
        workflow_service.delete_transition(auto.id)
    assert exc_info.value.details["stage_ids"] == [submitted.id]
    db.session.rollback()

    with pytest.raises(ValidationError):
        workflow_service.update_transition(auto.id, {"conditions": [
            {"field": "gpa", "operator": "greater_than", "value": 3.5}]})
    db.session.rollback()

    # Deleting InReview would drop the only way out of Submitted
    with pytest.raises(ValidationError):
        workflow_service.delete_stage(stage_by_name(review_workflow.id, "InReview").id)
    db.session.rollback()

    assert transition_by_name(review_workflow.id, "Documents Verified").transition_conditions == \
        REVIEW_TRANSITIONS[0]["conditions"]


def test_transitions_elsewhere_stay_editable(review_workflow):
    application = make_application()
    WorkflowEngine().initialize(application.id, Actor.system())
    workflow_service.deactivate_workflow(review_workflow.id)
    decide = transition_by_name(review_workflow.id, "Decide")

    updated = workflow_service.update_transition(decide.id, {"priority": 5})
    assert updated.priority == 5
    workflow_service.delete_transition(decide.id)
    db.session.commit()
    assert WorkflowTransition.query.filter_by(id=decide.id).count() == 0


def test_moving_transition_onto_occupied_stage_is_refused(review_workflow):
    application = make_application()
    WorkflowEngine().initialize(application.id, Actor.system())
    workflow_service.deactivate_workflow(review_workflow.id)
    decide = transition_by_name(review_workflow.id, "Decide")
    submitted = stage_by_name(review_workflow.id, "Submitted")

    with pytest.raises(ValidationError):
        workflow_service.update_transition(decide.id, {"source_stage_id": submitted.id})
    db.session.rollback()


def test_new_stage_appends_sequence():
    wf = _draft()
    stage = workflow_service.create_stage(wf.id, {"name": "Waitlisted"})
    assert stage.sequence == 4


def test_stage_trigger_validation():
    wf = _draft()
    with pytest.raises(ValidationError):
        workflow_service.create_stage(wf.id, {
            "name": "Bad", "notification_triggers": [{"event": "on_lunch"}],
        })
    with pytest.raises(ValidationError):
        workflow_service.create_stage(wf.id, {
            "name": "Bad", "notification_triggers": [{"event": "stage_entry", "audience": "parents"}],
        })
    stage = workflow_service.create_stage(wf.id, {
        "name": "Good", "notification_triggers": [{"event": "stage_exit", "template": "x"}],
    })
    assert stage.notification_triggers == [
        {"event": "stage_exit", "template": "x", "audience": "applicant", "channels": ["in_app"]},
    ]


def test_self_loop_needs_revision_flag():
    wf = _draft()
    in_review = stage_by_name(wf.id, "InReview")
    data = {"name": "Ask again", "source_stage_id": in_review.id, "target_stage_id": in_review.id}
    with pytest.raises(ValidationError):
        workflow_service.create_transition(wf.id, data)

    tr = workflow_service.create_transition(wf.id, {**data, "is_revision": True})
    assert tr.is_revision is True


def test_transition_endpoints_must_belong_to_workflow(review_workflow):
    other = _draft(name="Other", application_type="graduate")
    foreign = stage_by_name(review_workflow.id, "Decision")
    local = stage_by_name(other.id, "Submitted")
    with pytest.raises(ValidationError):
        workflow_service.create_transition(other.id, {
            "name": "Leak", "source_stage_id": local.id, "target_stage_id": foreign.id,
        })


def test_transition_conditions_validated_on_write():
    wf = _draft()
    submitted = stage_by_name(wf.id, "Submitted")
    decision = stage_by_name(wf.id, "Decision")
    with pytest.raises(ValidationError):
        workflow_service.create_transition(wf.id, {
            "name": "Fast track",
            "source_stage_id": submitted.id, "target_stage_id": decision.id,
            "conditions": [{"field": "gpa", "operator": "very_high"}],
        })


def test_get_missing_workflow_raises():
    with pytest.raises(NotFoundError):
        workflow_service.get_workflow(999)


def test_create_requires_name_and_type():
    with pytest.raises(ValidationError):
        workflow_service.create_workflow({"name": "No type"})


# ═══════════════════════════════════════════════════════════════════════════
#  5. Seeding
# ═══════════════════════════════════════════════════════════════════════════

def test_seed_default_templates_is_idempotent():
    created = workflow_service.seed_default_templates()
    db.session.commit()
    assert created == 2

    assert workflow_service.seed_default_templates() == 0
    db.session.commit()

    for application_type in ("undergraduate", "graduate"):
        wf = workflow_service.get_active_workflow(application_type)
        assert wf is not None
        assert workflow_service.validate_workflow(wf.id) == []
    assert Permission.query.filter_by(codename="make_admission_decision").count() == 1
    assert RolePermission.query.count() > 0


def test_seed_does_not_replace_active_workflow(review_workflow):
    workflow_service.seed_default_templates()
    db.session.commit()
    assert workflow_service.get_active_workflow("undergraduate").id == review_workflow.id
    assert workflow_service.get_active_workflow("graduate").name == "Graduate Admissions"


def test_list_workflows_filters(review_workflow):
    _draft(name="Spare")
    assert [w.name for w in workflow_service.list_workflows({"is_active": True})] == ["Review Workflow"]
    assert [w.name for w in workflow_service.list_workflows({"search": "spa"})] == ["Spare"]
    assert len(workflow_service.list_workflows({"application_type": "undergraduate"})) == 2
