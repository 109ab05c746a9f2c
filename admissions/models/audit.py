"""
Admissions Workflow Platform
Audit domain model.

Models:
    - AuditLog: append-only audit trail for workflow definition edits and
      application stage changes.
"""

import json
from datetime import UTC, datetime

from admissions.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "workflow", "workflow_stage", "workflow_transition",
    "application", "side_effect_job",
}

AUDIT_ACTIONS = {
    # Definition store
    "workflow.create",
    "workflow.update",
    "workflow.delete",
    "workflow.activate",
    "workflow.deactivate",
    "workflow.duplicate",
    "workflow_stage.create",
    "workflow_stage.update",
    "workflow_stage.delete",
    "workflow_stage.reorder",
    "workflow_transition.create",
    "workflow_transition.update",
    "workflow_transition.delete",
    # Engine
    "application.initialize",
    "application.transition",
    # Outbox
    "side_effect_job.requeue",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every definition edit and stage change.

    One row per action. ``diff_json`` carries an old→new snapshot for
    field-level changes, or the transition summary for stage changes.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="workflow | workflow_stage | application | …",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity (int-as-string)",
    )

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="workflow.activate | application.transition | …",
    )
    actor = db.Column(
        db.String(150), nullable=False, default="system",
        comment="Actor label: user display name or 'system'",
    )
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="FK to users table (nullable for system entries)",
    )

    # Change payload
    diff_json = db.Column(
        db.Text, default="{}",
        comment="JSON: {field: {old, new}} for edits, {from, to, transition} for stage changes",
    )

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str = "system",
    actor_user_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
