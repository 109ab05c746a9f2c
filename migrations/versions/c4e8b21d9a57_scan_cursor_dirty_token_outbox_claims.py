"""scan cursor, dirty token and outbox claims

  - applications.dirty_token      — bumped each time needs_evaluation is raised
  - side_effect_jobs.claimed_at   — when a dispatcher claimed a running job
  - scheduled_jobs.state          — job-owned progress (automatic scan cursor)

Revision ID: c4e8b21d9a57
Revises: a1f3c9d27e10
Create Date: 2026-10-26 14:03:18.551920
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'c4e8b21d9a57'
down_revision = 'a1f3c9d27e10'
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table('applications', schema=None) as batch_op:
        batch_op.add_column(sa.Column('dirty_token', sa.Integer(), nullable=False,
            server_default='0', comment='Bumped each time needs_evaluation is raised'))

    with op.batch_alter_table('side_effect_jobs', schema=None) as batch_op:
        batch_op.add_column(sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True,
            comment='When the current dispatcher claimed the job'))
        batch_op.create_index('idx_side_effect_claimed', ['status', 'claimed_at'])

    with op.batch_alter_table('scheduled_jobs', schema=None) as batch_op:
        batch_op.add_column(sa.Column('state', sa.JSON(), nullable=True,
            comment='Job-owned progress carried between runs, e.g. a scan cursor'))


def downgrade():
    with op.batch_alter_table('scheduled_jobs', schema=None) as batch_op:
        batch_op.drop_column('state')

    with op.batch_alter_table('side_effect_jobs', schema=None) as batch_op:
        batch_op.drop_index('idx_side_effect_claimed')
        batch_op.drop_column('claimed_at')

    with op.batch_alter_table('applications', schema=None) as batch_op:
        batch_op.drop_column('dirty_token')
