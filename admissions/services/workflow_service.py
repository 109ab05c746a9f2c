"""
Workflow definition store — workflow, stage and transition management.

Transaction policy: methods use flush(), never commit().
Caller (route handler / CLI) is responsible for db.session.commit().

Rules:
  - at most one active workflow per application type; activation validates
    the graph, then deactivates the previous workflow in the same transaction
  - an active workflow is read-only: deactivate or duplicate it to edit
  - every mutation is audited
"""

import logging

import sqlalchemy as sa

from admissions.core.exceptions import (
    ActiveWorkflowModificationError,
    NotFoundError,
    ValidationError,
    WorkflowValidationError,
)
from admissions.models import db
from admissions.models.application import Application
from admissions.models.audit import write_audit
from admissions.models.auth import Permission, Role, RolePermission
from admissions.models.workflow import (
    NOTIFICATION_AUDIENCES,
    NOTIFICATION_EVENTS,
    Workflow,
    WorkflowStage,
    WorkflowTransition,
)
from admissions.services import workflow_validator
from admissions.services.condition_evaluator import ConditionParseError, parse_conditions
from admissions.services.permission_service import Actor, get_known_permissions
from admissions.services.workflow_validator import WorkflowGraph

logger = logging.getLogger(__name__)

_SYSTEM = Actor.system()


# ═══════════════════════════════════════════════════════════════════
# READS
# ═══════════════════════════════════════════════════════════════════

def get_active_workflow(application_type: str) -> Workflow | None:
    return Workflow.query.filter_by(application_type=application_type, is_active=True).first()


def get_workflow(workflow_id: int) -> Workflow:
    wf = db.session.get(Workflow, workflow_id)
    if wf is None:
        raise NotFoundError(resource="Workflow", resource_id=workflow_id)
    return wf


def get_stage(stage_id: int) -> WorkflowStage:
    stage = db.session.get(WorkflowStage, stage_id)
    if stage is None:
        raise NotFoundError(resource="WorkflowStage", resource_id=stage_id)
    return stage


def get_transition(transition_id: int) -> WorkflowTransition:
    tr = db.session.get(WorkflowTransition, transition_id)
    if tr is None:
        raise NotFoundError(resource="WorkflowTransition", resource_id=transition_id)
    return tr


def get_stages_and_transitions(workflow_id: int) -> WorkflowGraph:
    """Load a workflow graph fresh from the database."""
    wf = get_workflow(workflow_id)
    stages = (
        WorkflowStage.query.filter_by(workflow_id=workflow_id)
        .order_by(WorkflowStage.sequence, WorkflowStage.id).all()
    )
    transitions = (
        WorkflowTransition.query.filter_by(workflow_id=workflow_id)
        .order_by(WorkflowTransition.id).all()
    )
    return WorkflowGraph(workflow=wf, stages=stages, transitions=transitions)


def list_workflows(filters: dict | None = None) -> list[Workflow]:
    filters = filters or {}
    q = Workflow.query
    if filters.get("application_type"):
        q = q.filter(Workflow.application_type == filters["application_type"])
    if filters.get("is_active") is not None:
        q = q.filter(Workflow.is_active.is_(bool(filters["is_active"])))
    if filters.get("search"):
        q = q.filter(Workflow.name.ilike(f"%{filters['search']}%"))
    return q.order_by(Workflow.application_type, Workflow.id).all()


class WorkflowDefinitionStore:
    """Read interface the workflow engine depends on."""

    def get_active_workflow(self, application_type: str) -> Workflow | None:
        return get_active_workflow(application_type)

    def get_stages_and_transitions(self, workflow_id: int) -> WorkflowGraph:
        return get_stages_and_transitions(workflow_id)


# ═══════════════════════════════════════════════════════════════════
# VALIDATION / ACTIVATION
# ═══════════════════════════════════════════════════════════════════

def validate_workflow(workflow_id: int) -> list:
    graph = get_stages_and_transitions(workflow_id)
    return workflow_validator.validate(graph, known_permissions=get_known_permissions())


def activate_workflow(workflow_id: int, actor: Actor = _SYSTEM) -> Workflow:
    """
    Validate and activate *workflow_id*; the currently active workflow for
    the same application type is deactivated in the same transaction.

    Raises:
        WorkflowValidationError: graph invalid, nothing changed.
    """
    wf = get_workflow(workflow_id)
    if wf.is_active:
        return wf

    issues = validate_workflow(workflow_id)
    if issues:
        logger.warning(
            "Activation refused: %d validation issue(s)", len(issues),
            extra={"workflow_id": workflow_id, "event_type": "workflow.activate"},
        )
        raise WorkflowValidationError(workflow_id, issues)

    previous = [
        row[0] for row in db.session.execute(
            sa.select(Workflow.id).where(
                Workflow.application_type == wf.application_type,
                Workflow.is_active.is_(True),
                Workflow.id != wf.id,
            )
        )
    ]
    if previous:
        db.session.execute(
            sa.update(Workflow)
            .where(Workflow.id.in_(previous))
            .values(is_active=False)
            .execution_options(synchronize_session="fetch")
        )
    wf.is_active = True
    db.session.flush()

    write_audit(
        entity_type="workflow", entity_id=wf.id, action="workflow.activate",
        actor=actor.label, actor_user_id=actor.user_id,
        diff={"application_type": wf.application_type, "deactivated": previous},
    )
    logger.info(
        "Workflow '%s' activated for %s (deactivated %s)", wf.name, wf.application_type, previous,
        extra={"workflow_id": wf.id, "event_type": "workflow.activate"},
    )
    return wf


def deactivate_workflow(workflow_id: int, actor: Actor = _SYSTEM) -> Workflow:
    wf = get_workflow(workflow_id)
    if not wf.is_active:
        return wf
    wf.is_active = False
    db.session.flush()
    write_audit(
        entity_type="workflow", entity_id=wf.id, action="workflow.deactivate",
        actor=actor.label, actor_user_id=actor.user_id,
    )
    return wf


def _ensure_editable(wf: Workflow) -> None:
    if wf.is_active:
        raise ActiveWorkflowModificationError(wf.id, wf.name)


def _ensure_unoccupied(transition: WorkflowTransition, stage_ids, verb: str) -> None:
    """Refuse to change a transition out of a stage that applications currently occupy."""
    ids = {sid for sid in stage_ids if sid is not None}
    located = Application.query.filter(Application.current_stage_id.in_(ids)).count() if ids else 0
    if located:
        raise ValidationError(
            f"Cannot {verb} transition '{transition.name}': {located} application(s) are at its source stage",
            details={"transition_id": transition.id, "stage_ids": sorted(ids), "applications": located},
        )


# ═══════════════════════════════════════════════════════════════════
# WORKFLOW CRUD
# ═══════════════════════════════════════════════════════════════════

def create_workflow(data: dict, actor: Actor = _SYSTEM) -> Workflow:
    """
    Create an inactive workflow. ``data`` may carry ``stages`` and
    ``transitions`` (transitions reference stages by name via
    ``source``/``target``) to build the whole graph at once.
    """
    name = (data.get("name") or "").strip()
    application_type = (data.get("application_type") or "").strip()
    if not name or not application_type:
        raise ValidationError(
            "name and application_type are required",
            details={"name": bool(name), "application_type": bool(application_type)},
        )

    wf = Workflow(
        name=name,
        description=data.get("description", ""),
        application_type=application_type,
        is_active=False,
        created_by=actor.user_id,
    )
    db.session.add(wf)
    db.session.flush()

    by_name = {}
    for idx, stage_data in enumerate(data.get("stages") or [], start=1):
        stage = _new_stage(wf, {"sequence": idx, **stage_data})
        by_name[stage.name] = stage
    db.session.flush()

    for tr_data in data.get("transitions") or []:
        tr_data = dict(tr_data)
        for end in ("source", "target"):
            if end in tr_data:
                stage = by_name.get(tr_data.pop(end))
                if stage is None:
                    raise ValidationError(
                        f"Transition '{tr_data.get('name')}' references unknown {end} stage",
                        details={"transition": tr_data.get("name"), "end": end},
                    )
                tr_data[f"{end}_stage_id"] = stage.id
        _new_transition(wf, tr_data)
    db.session.flush()

    write_audit(
        entity_type="workflow", entity_id=wf.id, action="workflow.create",
        actor=actor.label, actor_user_id=actor.user_id,
        diff={"name": name, "application_type": application_type,
              "stages": len(by_name), "transitions": len(data.get("transitions") or [])},
    )
    return wf


def update_workflow(workflow_id: int, data: dict, actor: Actor = _SYSTEM) -> Workflow:
    wf = get_workflow(workflow_id)
    _ensure_editable(wf)
    diff = {}
    for field in ("name", "description", "application_type"):
        if field in data and data[field] != getattr(wf, field):
            if field in ("name", "application_type") and not (data[field] or "").strip():
                raise ValidationError(f"{field} cannot be empty", details={"field": field})
            diff[field] = {"old": getattr(wf, field), "new": data[field]}
            setattr(wf, field, data[field])
    db.session.flush()
    if diff:
        write_audit(
            entity_type="workflow", entity_id=wf.id, action="workflow.update",
            actor=actor.label, actor_user_id=actor.user_id, diff=diff,
        )
    return wf


def delete_workflow(workflow_id: int, actor: Actor = _SYSTEM) -> None:
    wf = get_workflow(workflow_id)
    _ensure_editable(wf)
    in_use = (
        db.session.query(sa.func.count(Application.id))
        .join(WorkflowStage, WorkflowStage.id == Application.current_stage_id)
        .filter(WorkflowStage.workflow_id == wf.id)
        .scalar()
    )
    if in_use:
        raise ValidationError(
            f"Workflow '{wf.name}' still has {in_use} application(s) located at its stages",
            details={"workflow_id": wf.id, "applications": in_use},
        )
    write_audit(
        entity_type="workflow", entity_id=wf.id, action="workflow.delete",
        actor=actor.label, actor_user_id=actor.user_id, diff={"name": wf.name},
    )
    db.session.delete(wf)
    db.session.flush()


def duplicate_workflow(workflow_id: int, new_name: str | None = None,
                       actor: Actor = _SYSTEM) -> Workflow:
    """Copy a workflow with all stages and transitions. The copy is inactive."""
    source = get_stages_and_transitions(workflow_id)
    wf = source.workflow
    copy = Workflow(
        name=(new_name or f"{wf.name} (Copy)").strip(),
        description=wf.description,
        application_type=wf.application_type,
        is_active=False,
        created_by=actor.user_id,
    )
    db.session.add(copy)
    db.session.flush()

    id_map = {}
    for s in source.stages:
        new_stage = WorkflowStage(
            workflow_id=copy.id,
            name=s.name,
            description=s.description,
            sequence=s.sequence,
            required_documents=list(s.required_documents or []),
            required_actions=list(s.required_actions or []),
            notification_triggers=[dict(t) for t in (s.notification_triggers or [])],
            assigned_role=s.assigned_role,
        )
        db.session.add(new_stage)
        db.session.flush()
        id_map[s.id] = new_stage.id

    for t in source.transitions:
        db.session.add(WorkflowTransition(
            workflow_id=copy.id,
            source_stage_id=id_map[t.source_stage_id],
            target_stage_id=id_map[t.target_stage_id],
            name=t.name,
            description=t.description,
            transition_conditions=[dict(c) for c in (t.transition_conditions or [])],
            required_permissions=list(t.required_permissions or []),
            is_automatic=t.is_automatic,
            is_revision=t.is_revision,
            priority=t.priority,
        ))
    db.session.flush()

    write_audit(
        entity_type="workflow", entity_id=copy.id, action="workflow.duplicate",
        actor=actor.label, actor_user_id=actor.user_id, diff={"source_workflow_id": wf.id},
    )
    return copy


# ═══════════════════════════════════════════════════════════════════
# STAGES
# ═══════════════════════════════════════════════════════════════════

def _clean_triggers(raw) -> list[dict]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("notification_triggers must be a list")
    cleaned = []
    for i, trig in enumerate(raw):
        if not isinstance(trig, dict):
            raise ValidationError(f"notification_triggers[{i}] must be an object")
        event_name = trig.get("event")
        audience = trig.get("audience", "applicant")
        if event_name not in NOTIFICATION_EVENTS:
            raise ValidationError(
                f"notification_triggers[{i}]: unknown event '{event_name}'",
                details={"allowed": sorted(NOTIFICATION_EVENTS)},
            )
        if audience not in NOTIFICATION_AUDIENCES:
            raise ValidationError(
                f"notification_triggers[{i}]: unknown audience '{audience}'",
                details={"allowed": sorted(NOTIFICATION_AUDIENCES)},
            )
        cleaned.append({
            "event": event_name,
            "template": trig.get("template"),
            "audience": audience,
            "channels": list(trig.get("channels") or ["in_app"]),
        })
    return cleaned


def _string_list(raw, field: str) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list) or not all(isinstance(v, str) for v in raw):
        raise ValidationError(f"{field} must be a list of strings", details={"field": field})
    return list(raw)


def _new_stage(wf: Workflow, data: dict) -> WorkflowStage:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Stage name is required", details={"field": "name"})
    sequence = data.get("sequence")
    if sequence is None:
        current_max = (
            db.session.query(sa.func.max(WorkflowStage.sequence))
            .filter(WorkflowStage.workflow_id == wf.id).scalar()
        )
        sequence = (current_max or 0) + 1
    stage = WorkflowStage(
        workflow_id=wf.id,
        name=name,
        description=data.get("description", ""),
        sequence=int(sequence),
        required_documents=_string_list(data.get("required_documents"), "required_documents"),
        required_actions=_string_list(data.get("required_actions"), "required_actions"),
        notification_triggers=_clean_triggers(data.get("notification_triggers")),
        assigned_role=data.get("assigned_role"),
    )
    db.session.add(stage)
    return stage


def create_stage(workflow_id: int, data: dict, actor: Actor = _SYSTEM) -> WorkflowStage:
    wf = get_workflow(workflow_id)
    _ensure_editable(wf)
    stage = _new_stage(wf, data)
    db.session.flush()
    write_audit(
        entity_type="workflow_stage", entity_id=stage.id, action="workflow_stage.create",
        actor=actor.label, actor_user_id=actor.user_id,
        diff={"workflow_id": wf.id, "name": stage.name},
    )
    return stage


def update_stage(stage_id: int, data: dict, actor: Actor = _SYSTEM) -> WorkflowStage:
    stage = get_stage(stage_id)
    _ensure_editable(stage.workflow)
    diff = {}
    if "name" in data:
        name = (data["name"] or "").strip()
        if not name:
            raise ValidationError("Stage name is required", details={"field": "name"})
        data = {**data, "name": name}
    converters = {
        "required_documents": lambda v: _string_list(v, "required_documents"),
        "required_actions": lambda v: _string_list(v, "required_actions"),
        "notification_triggers": _clean_triggers,
        "sequence": int,
    }
    for field in ("name", "description", "sequence", "required_documents",
                  "required_actions", "notification_triggers", "assigned_role"):
        if field in data:
            value = converters.get(field, lambda v: v)(data[field])
            if value != getattr(stage, field):
                diff[field] = {"old": getattr(stage, field), "new": value}
                setattr(stage, field, value)
    db.session.flush()
    if diff:
        write_audit(
            entity_type="workflow_stage", entity_id=stage.id, action="workflow_stage.update",
            actor=actor.label, actor_user_id=actor.user_id, diff=diff,
        )
    return stage


def delete_stage(stage_id: int, actor: Actor = _SYSTEM) -> None:
    """
    Delete a stage and every transition touching it. Refused while an
    application is located at the stage or at the source of a transition
    into it; history rows keep their stage name and lose the stage
    reference.
    """
    stage = get_stage(stage_id)
    _ensure_editable(stage.workflow)
    located = Application.query.filter_by(current_stage_id=stage.id).count()
    if located:
        raise ValidationError(
            f"Stage '{stage.name}' is the current stage of {located} application(s)",
            details={"stage_id": stage.id, "applications": located},
        )
    touching = WorkflowTransition.query.filter(
        sa.or_(WorkflowTransition.source_stage_id == stage.id,
               WorkflowTransition.target_stage_id == stage.id)
    ).all()
    for tr in touching:
        if tr.source_stage_id != stage.id:
            _ensure_unoccupied(tr, {tr.source_stage_id}, "delete")
    for tr in touching:
        db.session.delete(tr)
    write_audit(
        entity_type="workflow_stage", entity_id=stage.id, action="workflow_stage.delete",
        actor=actor.label, actor_user_id=actor.user_id,
        diff={"name": stage.name, "transitions_removed": [t.id for t in touching]},
    )
    db.session.delete(stage)
    db.session.flush()


def reorder_stages(workflow_id: int, ordered_stage_ids: list[int],
                   actor: Actor = _SYSTEM) -> list[WorkflowStage]:
    """Assign sequence 1..n following *ordered_stage_ids* (must list every stage once)."""
    wf = get_workflow(workflow_id)
    _ensure_editable(wf)
    stages = {s.id: s for s in WorkflowStage.query.filter_by(workflow_id=wf.id).all()}
    ids = [int(i) for i in ordered_stage_ids or []]
    if sorted(ids) != sorted(stages) or len(set(ids)) != len(ids):
        raise ValidationError(
            "Stage order must list every stage of the workflow exactly once",
            details={"expected": sorted(stages), "received": ids},
        )
    for position, sid in enumerate(ids, start=1):
        stages[sid].sequence = position
    db.session.flush()
    write_audit(
        entity_type="workflow", entity_id=wf.id, action="workflow_stage.reorder",
        actor=actor.label, actor_user_id=actor.user_id, diff={"order": ids},
    )
    return [stages[sid] for sid in ids]


# ═══════════════════════════════════════════════════════════════════
# TRANSITIONS
# ═══════════════════════════════════════════════════════════════════

def _check_transition_fields(wf: Workflow, tr: WorkflowTransition) -> None:
    for end in ("source_stage_id", "target_stage_id"):
        stage = db.session.get(WorkflowStage, getattr(tr, end)) if getattr(tr, end) else None
        if stage is None or stage.workflow_id != wf.id:
            raise ValidationError(
                f"{end} must reference a stage of workflow {wf.id}",
                details={"field": end, "value": getattr(tr, end)},
            )
    if tr.source_stage_id == tr.target_stage_id and not tr.is_revision:
        raise ValidationError(
            "A transition back to the same stage must be marked is_revision",
            details={"field": "is_revision"},
        )
    try:
        parse_conditions(tr.transition_conditions)
    except ConditionParseError as exc:
        raise ValidationError(str(exc), details={"field": "transition_conditions"}) from None


def _new_transition(wf: Workflow, data: dict) -> WorkflowTransition:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Transition name is required", details={"field": "name"})
    tr = WorkflowTransition(
        workflow_id=wf.id,
        source_stage_id=data.get("source_stage_id"),
        target_stage_id=data.get("target_stage_id"),
        name=name,
        description=data.get("description", ""),
        transition_conditions=list(data.get("conditions", data.get("transition_conditions")) or []),
        required_permissions=_string_list(data.get("required_permissions"), "required_permissions"),
        is_automatic=bool(data.get("is_automatic", False)),
        is_revision=bool(data.get("is_revision", False)),
        priority=int(data.get("priority", 0)),
    )
    _check_transition_fields(wf, tr)
    db.session.add(tr)
    return tr


def create_transition(workflow_id: int, data: dict, actor: Actor = _SYSTEM) -> WorkflowTransition:
    wf = get_workflow(workflow_id)
    _ensure_editable(wf)
    tr = _new_transition(wf, data)
    db.session.flush()
    write_audit(
        entity_type="workflow_transition", entity_id=tr.id, action="workflow_transition.create",
        actor=actor.label, actor_user_id=actor.user_id,
        diff={"workflow_id": wf.id, "name": tr.name,
              "source_stage_id": tr.source_stage_id, "target_stage_id": tr.target_stage_id},
    )
    return tr


def update_transition(transition_id: int, data: dict, actor: Actor = _SYSTEM) -> WorkflowTransition:
    tr = get_transition(transition_id)
    wf = get_workflow(tr.workflow_id)
    _ensure_editable(wf)
    original_source = tr.source_stage_id
    if "conditions" in data and "transition_conditions" not in data:
        data = {**data, "transition_conditions": data["conditions"]}
    converters = {
        "required_permissions": lambda v: _string_list(v, "required_permissions"),
        "transition_conditions": lambda v: list(v or []),
        "is_automatic": bool,
        "is_revision": bool,
        "priority": int,
    }
    diff = {}
    for field in ("name", "description", "source_stage_id", "target_stage_id",
                  "transition_conditions", "required_permissions",
                  "is_automatic", "is_revision", "priority"):
        if field in data:
            value = converters.get(field, lambda v: v)(data[field])
            if value != getattr(tr, field):
                diff[field] = {"old": getattr(tr, field), "new": value}
                setattr(tr, field, value)
    if not (tr.name or "").strip():
        raise ValidationError("Transition name is required", details={"field": "name"})
    _check_transition_fields(wf, tr)
    if diff:
        _ensure_unoccupied(tr, {original_source, tr.source_stage_id}, "edit")
    db.session.flush()
    if diff:
        write_audit(
            entity_type="workflow_transition", entity_id=tr.id, action="workflow_transition.update",
            actor=actor.label, actor_user_id=actor.user_id, diff=diff,
        )
    return tr


def delete_transition(transition_id: int, actor: Actor = _SYSTEM) -> None:
    tr = get_transition(transition_id)
    _ensure_editable(get_workflow(tr.workflow_id))
    _ensure_unoccupied(tr, {tr.source_stage_id}, "delete")
    write_audit(
        entity_type="workflow_transition", entity_id=tr.id, action="workflow_transition.delete",
        actor=actor.label, actor_user_id=actor.user_id, diff={"name": tr.name},
    )
    db.session.delete(tr)
    db.session.flush()


# ═══════════════════════════════════════════════════════════════════
# SEEDING
# ═══════════════════════════════════════════════════════════════════

def seed_permissions() -> int:
    """Insert the default permission catalogue and staff roles. Idempotent."""
    from admissions.services.workflow_templates import DEFAULT_PERMISSIONS, DEFAULT_ROLES

    created = 0
    roles = {r.name: r for r in Role.query.all()}
    for name, display in DEFAULT_ROLES.items():
        if name not in roles:
            roles[name] = Role(name=name, display_name=display, is_system=True)
            db.session.add(roles[name])
            created += 1
    perms = {p.codename: p for p in Permission.query.all()}
    for codename in DEFAULT_PERMISSIONS:
        if codename not in perms:
            perms[codename] = Permission(
                codename=codename, category="workflow",
                display_name=codename.replace("_", " ").title(),
            )
            db.session.add(perms[codename])
            created += 1
    db.session.flush()

    existing = {(rp.role_id, rp.permission_id) for rp in RolePermission.query.all()}
    for codename, role_names in DEFAULT_PERMISSIONS.items():
        for role_name in role_names:
            key = (roles[role_name].id, perms[codename].id)
            if key not in existing:
                db.session.add(RolePermission(role_id=key[0], permission_id=key[1]))
                existing.add(key)
    db.session.flush()
    return created


def seed_default_templates() -> int:
    """
    Create the default admissions workflows (one per application type).
    Safe to run multiple times — skips application types that already have
    a workflow with the template's name. A template is activated when its
    application type has no active workflow yet.

    Called by the ``seed-workflow-templates`` CLI command.
    """
    from admissions.services.workflow_templates import DEFAULT_TEMPLATES

    seed_permissions()
    created = 0
    for template in DEFAULT_TEMPLATES:
        exists = Workflow.query.filter_by(
            name=template["name"], application_type=template["application_type"],
        ).first()
        if exists:
            continue
        wf = create_workflow(template)
        created += 1
        if get_active_workflow(wf.application_type) is None:
            activate_workflow(wf.id)

    if created > 0:
        logger.info("Seeded %d workflow templates", created)
    return created
