"""
Admissions Workflow Platform
Workflow definition & history models.

Models:
    - Workflow: one admissions process graph per application type (at most one active)
    - WorkflowStage: node in the graph (required documents/actions, notification triggers)
    - WorkflowTransition: directed edge with conditions, permissions and automatic flag
    - ApplicationStatus: append-only history of stage entries for an application
"""

from datetime import datetime, timezone

from sqlalchemy import event as _sa_event

from admissions.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_EVENTS = {"stage_entry", "stage_exit", "document_verified"}
NOTIFICATION_AUDIENCES = {"applicant", "staff", "all"}


class Workflow(db.Model):
    """
    Named admissions process for one application type.

    Only one workflow per ``application_type`` may be active at a time;
    activation goes through ``workflow_service.activate_workflow`` which
    validates the graph and deactivates the previous workflow in the same
    transaction. Active workflows are read-only.
    """

    __tablename__ = "workflows"
    __table_args__ = (
        db.Index("idx_workflow_type_active", "application_type", "is_active"),
        # At most one active workflow per application type, enforced by the database
        db.Index(
            "uq_workflow_one_active_per_type", "application_type", unique=True,
            sqlite_where=db.text("is_active = 1"),
            postgresql_where=db.text("is_active"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    application_type = db.Column(
        db.String(50), nullable=False, index=True,
        comment="undergraduate | graduate | international | …",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=False)
    created_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    # Relationships
    stages = db.relationship(
        "WorkflowStage", back_populates="workflow",
        cascade="all, delete-orphan", order_by="WorkflowStage.sequence",
    )
    transitions = db.relationship(
        "WorkflowTransition", back_populates="workflow",
        cascade="all, delete-orphan", order_by="WorkflowTransition.id",
    )

    def to_dict(self, include_graph=False):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "application_type": self.application_type,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "stage_count": len(self.stages),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_graph:
            d["stages"] = [s.to_dict() for s in self.stages]
            d["transitions"] = [t.to_dict() for t in self.transitions]
        return d

    def __repr__(self):
        return f"<Workflow {self.id}: {self.name} [{self.application_type}{' active' if self.is_active else ''}]>"


class WorkflowStage(db.Model):
    """
    Node in a workflow graph.

    A stage with no outgoing transitions is terminal. ``sequence`` orders
    stages for display only; graph structure comes from transitions.
    """

    __tablename__ = "workflow_stages"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, default="")
    sequence = db.Column(db.Integer, nullable=False, default=0,
                         comment="Display order within the workflow")
    required_documents = db.Column(db.JSON, default=list,
                                   comment="Document type tags, e.g. ['transcript', 'passport']")
    required_actions = db.Column(db.JSON, default=list,
                                 comment="Action identifiers, e.g. ['pay_application_fee']")
    notification_triggers = db.Column(
        db.JSON, default=list,
        comment="[{event: stage_entry|stage_exit, template, audience: applicant|staff|all, channels}]",
    )
    assigned_role = db.Column(db.String(100), nullable=True,
                              comment="Role name of staff handling applications at this stage")

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    workflow = db.relationship("Workflow", back_populates="stages")

    def triggers_for(self, event_name):
        """Return the notification trigger entries registered for *event_name*."""
        return [t for t in (self.notification_triggers or []) if t.get("event") == event_name]

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "name": self.name,
            "description": self.description,
            "sequence": self.sequence,
            "required_documents": list(self.required_documents or []),
            "required_actions": list(self.required_actions or []),
            "notification_triggers": list(self.notification_triggers or []),
            "assigned_role": self.assigned_role,
        }

    def __repr__(self):
        return f"<WorkflowStage {self.id}: {self.name} (#{self.sequence})>"


class WorkflowTransition(db.Model):
    """
    Directed edge between two stages of the same workflow.

    Manual transitions are actor-initiated and gated by
    ``required_permissions``; automatic ones are fired by the scanner when
    their conditions hold, highest ``priority`` first. A self-loop is only
    legal when flagged ``is_revision`` (e.g. "request revision" on the
    same stage).
    """

    __tablename__ = "workflow_transitions"
    __table_args__ = (
        db.Index("idx_transition_source", "source_stage_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    source_stage_id = db.Column(
        db.Integer, db.ForeignKey("workflow_stages.id", ondelete="CASCADE"), nullable=False,
    )
    target_stage_id = db.Column(
        db.Integer, db.ForeignKey("workflow_stages.id", ondelete="CASCADE"), nullable=False,
    )
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, default="")
    transition_conditions = db.Column(
        db.JSON, default=list,
        comment="[{field, operator, value}] — all must hold",
    )
    required_permissions = db.Column(db.JSON, default=list,
                                     comment="Permission codenames; all required")
    is_automatic = db.Column(db.Boolean, nullable=False, default=False)
    is_revision = db.Column(db.Boolean, nullable=False, default=False,
                            comment="Allows source == target")
    priority = db.Column(db.Integer, nullable=False, default=0,
                         comment="Higher wins among automatic transitions")

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    workflow = db.relationship("Workflow", back_populates="transitions")
    source_stage = db.relationship("WorkflowStage", foreign_keys=[source_stage_id])
    target_stage = db.relationship("WorkflowStage", foreign_keys=[target_stage_id])

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "source_stage_id": self.source_stage_id,
            "target_stage_id": self.target_stage_id,
            "name": self.name,
            "description": self.description,
            "transition_conditions": list(self.transition_conditions or []),
            "required_permissions": list(self.required_permissions or []),
            "is_automatic": self.is_automatic,
            "is_revision": self.is_revision,
            "priority": self.priority,
        }

    def __repr__(self):
        kind = "auto" if self.is_automatic else "manual"
        return f"<WorkflowTransition {self.id}: {self.name} {self.source_stage_id}->{self.target_stage_id} [{kind}]>"


class ApplicationStatus(db.Model):
    """
    One row per stage entry of an application. Append-only.

    The first row of an application has ``transition_id`` NULL (workflow
    initialisation). ``status`` keeps the stage name as it was at entry
    time, so history stays readable after the stage is renamed or deleted
    (``workflow_stage_id`` then becomes NULL).
    """

    __tablename__ = "application_statuses"
    __table_args__ = (
        db.Index("idx_appstatus_app_created", "application_id", "created_at", "id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"), nullable=False,
    )
    workflow_stage_id = db.Column(
        db.Integer, db.ForeignKey("workflow_stages.id", ondelete="SET NULL"), nullable=True,
    )
    transition_id = db.Column(
        db.Integer, db.ForeignKey("workflow_transitions.id", ondelete="SET NULL"), nullable=True,
        comment="NULL for the initial record",
    )
    status = db.Column(db.String(150), nullable=False, comment="Stage name at entry time")
    notes = db.Column(db.Text, nullable=True)
    created_by_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_by = db.Column(db.String(150), nullable=False, default="system",
                           comment="Actor label: user display name or 'system'")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "workflow_stage_id": self.workflow_stage_id,
            "transition_id": self.transition_id,
            "status": self.status,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ApplicationStatus {self.id}: app={self.application_id} '{self.status}'>"


# ── History is append-only ───────────────────────────────────────────────────
# ON DELETE SET NULL from stage/transition deletion happens inside the
# database and never reaches these ORM hooks.

@_sa_event.listens_for(ApplicationStatus, "before_update")
def _block_status_update(mapper, connection, target) -> None:  # noqa: ANN001
    raise RuntimeError(
        f"ApplicationStatus {target.id} is immutable; append a new status instead"
    )


@_sa_event.listens_for(ApplicationStatus, "before_delete")
def _block_status_delete(mapper, connection, target) -> None:  # noqa: ANN001
    raise RuntimeError(
        f"ApplicationStatus {target.id} is immutable and cannot be deleted"
    )
