"""workflow_engine_initial_schema

Creates the admissions workflow engine schema:
  - users, roles, permissions, role_permissions, user_roles  — RBAC consumed by the engine
  - workflows, workflow_stages, workflow_transitions         — workflow definitions
  - applications, application_documents                      — engine-facing application columns
  - application_statuses                                     — append-only stage history
  - side_effect_jobs                                         — notification / SIS-LMS outbox
  - audit_logs, notifications, scheduled_jobs                — ambient tables

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: a1f3c9d27e10
Revises:
Create Date: 2026-10-19 09:12:44.102311
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1f3c9d27e10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── RBAC ──────────────────────────────────────────────────────────────
    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )

    if "roles" not in existing:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("display_name", sa.String(length=200), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_system", sa.Boolean(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )

    if "permissions" not in existing:
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("codename", sa.String(length=100), nullable=False),
            sa.Column("category", sa.String(length=50), nullable=False, server_default="workflow"),
            sa.Column("display_name", sa.String(length=200), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("codename"),
        )

    if "role_permissions" not in existing:
        op.create_table(
            "role_permissions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("permission_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
        )

    if "user_roles" not in existing:
        op.create_table(
            "user_roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("assigned_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "role_id", name="uq_user_role"),
        )

    # ── Workflow definitions ──────────────────────────────────────────────
    if "workflows" not in existing:
        op.create_table(
            "workflows",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("application_type", sa.String(length=50), nullable=False,
                      comment="undergraduate | graduate | international | …"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflows_application_type", "workflows", ["application_type"])
        op.create_index("idx_workflow_type_active", "workflows", ["application_type", "is_active"])
        op.create_index(
            "uq_workflow_one_active_per_type", "workflows", ["application_type"], unique=True,
            sqlite_where=sa.text("is_active = 1"),
            postgresql_where=sa.text("is_active"),
        )

    if "workflow_stages" not in existing:
        op.create_table(
            "workflow_stages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("sequence", sa.Integer(), nullable=False, server_default="0",
                      comment="Display order within the workflow"),
            sa.Column("required_documents", sa.JSON(), nullable=True),
            sa.Column("required_actions", sa.JSON(), nullable=True),
            sa.Column("notification_triggers", sa.JSON(), nullable=True),
            sa.Column("assigned_role", sa.String(length=100), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["workflow_id"], ["workflows.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_stages_workflow_id", "workflow_stages", ["workflow_id"])

    if "workflow_transitions" not in existing:
        op.create_table(
            "workflow_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.Integer(), nullable=False),
            sa.Column("source_stage_id", sa.Integer(), nullable=False),
            sa.Column("target_stage_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("transition_conditions", sa.JSON(), nullable=True),
            sa.Column("required_permissions", sa.JSON(), nullable=True),
            sa.Column("is_automatic", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_revision", sa.Boolean(), nullable=False, server_default=sa.false(),
                      comment="Allows source == target"),
            sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["workflow_id"], ["workflows.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["source_stage_id"], ["workflow_stages.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["target_stage_id"], ["workflow_stages.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_transitions_workflow_id", "workflow_transitions", ["workflow_id"])
        op.create_index("idx_transition_source", "workflow_transitions", ["source_stage_id"])

    # ── Applications ──────────────────────────────────────────────────────
    if "applications" not in existing:
        op.create_table(
            "applications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("applicant_user_id", sa.Integer(), nullable=True),
            sa.Column("application_type", sa.String(length=50), nullable=False),
            sa.Column("data", sa.JSON(), nullable=True),
            sa.Column("completed_actions", sa.JSON(), nullable=True),
            sa.Column("workflow_id", sa.Integer(), nullable=True),
            sa.Column("current_stage_id", sa.Integer(), nullable=True),
            sa.Column("current_status_id", sa.Integer(), nullable=True,
                      comment="Latest ApplicationStatus id"),
            sa.Column("workflow_state", sa.String(length=20), nullable=False,
                      server_default="uninitialized"),
            sa.Column("version", sa.Integer(), nullable=False, server_default="0",
                      comment="Optimistic lock for stage changes"),
            sa.Column("needs_evaluation", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["applicant_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["workflow_id"], ["workflows.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["current_stage_id"], ["workflow_stages.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_applications_applicant_user_id", "applications", ["applicant_user_id"])
        op.create_index("ix_applications_application_type", "applications", ["application_type"])
        op.create_index("ix_applications_workflow_id", "applications", ["workflow_id"])
        op.create_index("ix_applications_current_stage_id", "applications", ["current_stage_id"])
        op.create_index("idx_application_state_dirty", "applications",
                        ["workflow_state", "needs_evaluation"])

    if "application_documents" not in existing:
        op.create_table(
            "application_documents",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("application_id", sa.Integer(), nullable=False),
            sa.Column("document_type", sa.String(length=50), nullable=False),
            sa.Column("file_name", sa.String(length=255), nullable=True),
            sa.Column("verification_status", sa.String(length=20), nullable=False,
                      server_default="pending"),
            sa.Column("confidence_score", sa.Float(), nullable=True),
            sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["application_id"], ["applications.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_application_documents_application_id", "application_documents",
                        ["application_id"])

    if "application_statuses" not in existing:
        op.create_table(
            "application_statuses",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("application_id", sa.Integer(), nullable=False),
            sa.Column("workflow_stage_id", sa.Integer(), nullable=True),
            sa.Column("transition_id", sa.Integer(), nullable=True,
                      comment="NULL for the initial record"),
            sa.Column("status", sa.String(length=150), nullable=False,
                      comment="Stage name at entry time"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["application_id"], ["applications.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["workflow_stage_id"], ["workflow_stages.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["transition_id"], ["workflow_transitions.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_appstatus_app_created", "application_statuses",
                        ["application_id", "created_at", "id"])

    # ── Outbox ────────────────────────────────────────────────────────────
    if "side_effect_jobs" not in existing:
        op.create_table(
            "side_effect_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("application_id", sa.Integer(), nullable=True),
            sa.Column("job_type", sa.String(length=30), nullable=False,
                      comment="notification | integration_sync"),
            sa.Column("payload", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="queued",
                      comment="queued | succeeded | failed | dead"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
            sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("result", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["application_id"], ["applications.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_side_effect_jobs_application_id", "side_effect_jobs", ["application_id"])
        op.create_index("idx_side_effect_due", "side_effect_jobs", ["status", "next_attempt_at"])

    # ── Ambient ───────────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])
        op.create_index("ix_audit_logs_actor_user_id", "audit_logs", ["actor_user_id"])

    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient", sa.String(length=150), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("template", sa.String(length=100), nullable=True),
            sa.Column("channels", sa.JSON(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient", "notifications", ["recipient"])

    if "scheduled_jobs" not in existing:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    for table in (
        "scheduled_jobs", "notifications", "audit_logs", "side_effect_jobs",
        "application_statuses", "application_documents", "applications",
        "workflow_transitions", "workflow_stages", "workflows",
        "user_roles", "role_permissions", "permissions", "roles", "users",
    ):
        op.drop_table(table)
