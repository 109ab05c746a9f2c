"""
Admissions Workflow Platform
Application domain model.

Models:
    - Application: an applicant's submission moving through a workflow
    - ApplicationDocument: uploaded document with its verification outcome

The engine owns the workflow columns on ``Application`` (stage pointer,
state, version). Everything else belongs to the application intake module.
"""

from datetime import datetime, timezone

from admissions.models import db


# ── Constants ────────────────────────────────────────────────────────────────

WORKFLOW_STATES = {"uninitialized", "in_progress", "terminal"}
DOCUMENT_STATUSES = {"pending", "verified", "rejected"}


class Application(db.Model):
    """
    Admissions application.

    ``version`` is the optimistic concurrency token for the stage pointer:
    every stage change is a compare-and-swap on ``(version, current_stage_id)``
    so two concurrent transitions can never both commit.
    """

    __tablename__ = "applications"
    __table_args__ = (
        db.Index("idx_application_state_dirty", "workflow_state", "needs_evaluation"),
    )

    id = db.Column(db.Integer, primary_key=True)
    applicant_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    application_type = db.Column(db.String(50), nullable=False, index=True)
    data = db.Column(db.JSON, default=dict,
                     comment="Form fields and flags, e.g. {gpa: 3.6, application_fee_paid: true}")
    completed_actions = db.Column(db.JSON, default=list,
                                  comment="Action identifiers the applicant has completed")

    # Workflow pointer (engine-owned)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    current_stage_id = db.Column(
        db.Integer, db.ForeignKey("workflow_stages.id"), nullable=True, index=True,
    )
    current_status_id = db.Column(db.Integer, nullable=True,
                                  comment="Latest ApplicationStatus id")
    workflow_state = db.Column(db.String(20), nullable=False, default="uninitialized",
                               comment="uninitialized | in_progress | terminal")
    version = db.Column(db.Integer, nullable=False, default=0,
                        comment="Optimistic lock for stage changes")
    needs_evaluation = db.Column(db.Boolean, nullable=False, default=False,
                                 comment="Dirty flag: re-check automatic transitions")
    dirty_token = db.Column(db.Integer, nullable=False, default=0,
                            comment="Bumped each time needs_evaluation is raised")

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    documents = db.relationship(
        "ApplicationDocument", back_populates="application",
        cascade="all, delete-orphan", order_by="ApplicationDocument.id",
    )
    current_stage = db.relationship("WorkflowStage", foreign_keys=[current_stage_id])

    def to_dict(self):
        return {
            "id": self.id,
            "applicant_user_id": self.applicant_user_id,
            "application_type": self.application_type,
            "data": dict(self.data or {}),
            "completed_actions": list(self.completed_actions or []),
            "workflow_id": self.workflow_id,
            "current_stage_id": self.current_stage_id,
            "current_status_id": self.current_status_id,
            "workflow_state": self.workflow_state,
            "version": self.version,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Application {self.id} [{self.application_type}] {self.workflow_state} v{self.version}>"


class ApplicationDocument(db.Model):
    """
    Document attached to an application.

    Verification itself happens elsewhere (OCR / staff review); this table
    only records the outcome the workflow conditions and completeness check
    consume.
    """

    __tablename__ = "application_documents"

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    document_type = db.Column(db.String(50), nullable=False,
                              comment="transcript | passport | recommendation_letter | …")
    file_name = db.Column(db.String(255), default="")
    verification_status = db.Column(db.String(20), nullable=False, default="pending",
                                    comment="pending | verified | rejected")
    confidence_score = db.Column(db.Float, nullable=True,
                                 comment="Verifier confidence 0..1")
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    application = db.relationship("Application", back_populates="documents")

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "document_type": self.document_type,
            "file_name": self.file_name,
            "verification_status": self.verification_status,
            "confidence_score": self.confidence_score,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
        }

    def __repr__(self):
        return f"<ApplicationDocument {self.id}: {self.document_type} [{self.verification_status}]>"
