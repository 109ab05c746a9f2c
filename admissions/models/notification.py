"""
Admissions Workflow Platform
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking
"""

from datetime import datetime, timezone

from admissions.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = {"workflow", "document", "decision", "system"}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event. ``recipient`` is a user id as
    string, ``role:<name>`` when a stage's role has no members yet, or
    ``all`` for broadcast.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(150), default="all", index=True,
                          comment="User id, 'role:<name>' or 'all' for broadcast")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="workflow")
    severity = db.Column(db.String(20), default="info")
    template = db.Column(db.String(100), nullable=True,
                         comment="Template key from the stage notification trigger")
    channels = db.Column(db.JSON, default=list,
                         comment="Requested delivery channels, e.g. ['in_app', 'email']")

    # Link to source entity
    entity_type = db.Column(db.String(30), default="", comment="application/workflow/...")
    entity_id = db.Column(db.Integer, nullable=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "recipient": self.recipient,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "template": self.template,
            "channels": list(self.channels or []),
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
