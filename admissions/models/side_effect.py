"""
Admissions Workflow Platform
Side-effect outbox model.

Models:
    - SideEffectJob: notification / integration work queued in the same
      transaction as the stage change that caused it, executed after commit
      by ``SideEffectDispatcher``.
"""

from datetime import datetime, timezone

from admissions.models import db


# ── Constants ────────────────────────────────────────────────────────────────

JOB_TYPES = {"notification", "integration_sync"}
JOB_STATUSES = {"queued", "running", "succeeded", "dead"}


class SideEffectJob(db.Model):
    """
    Outbox row.

    ``status`` moves queued → running (claimed by one dispatcher, committed
    before any delivery) → succeeded, or back to queued with
    ``next_attempt_at`` pushed out by exponential backoff, or to dead once
    ``attempts`` reaches ``max_attempts``. A claim older than
    ``SIDE_EFFECT_CLAIM_TIMEOUT_SECONDS`` belongs to a dispatcher that died
    and is released back to queued. Dead jobs are operator-visible and can
    be requeued.
    """

    __tablename__ = "side_effect_jobs"
    __table_args__ = (
        db.Index("idx_side_effect_due", "status", "next_attempt_at"),
        db.Index("idx_side_effect_claimed", "status", "claimed_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    job_type = db.Column(db.String(30), nullable=False,
                         comment="notification | integration_sync")
    payload = db.Column(db.JSON, default=dict)
    status = db.Column(db.String(20), nullable=False, default="queued",
                       comment="queued | running | succeeded | dead")
    attempts = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False, default=3)
    next_attempt_at = db.Column(db.DateTime(timezone=True), nullable=False,
                                default=lambda: datetime.now(timezone.utc))
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True,
                           comment="When the current dispatcher claimed the job")
    last_error = db.Column(db.Text, nullable=True)
    result = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "job_type": self.job_type,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "last_error": self.last_error,
            "result": self.result,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<SideEffectJob {self.id}: {self.job_type} [{self.status} {self.attempts}/{self.max_attempts}]>"
