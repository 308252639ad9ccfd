"""Task lifecycle schema - tasks, submissions, groups

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # Users table
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('username', sa.String(100), unique=True, nullable=False, index=True),
        sa.Column('email', sa.String(255), unique=True, nullable=False),
        sa.Column('full_name', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, default=True),
        *_timestamps(),
    )

    # Units and per-unit roles
    op.create_table(
        'units',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('code', sa.String(20), nullable=False, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        *_timestamps(),
    )
    op.create_table(
        'unit_roles',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('unit_id', sa.Uuid(), sa.ForeignKey('units.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_unit_roles_unit_user', 'unit_roles', ['unit_id', 'user_id'], unique=True)

    # Projects and groups
    op.create_table(
        'projects',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('unit_id', sa.Uuid(), sa.ForeignKey('units.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('main_tutor_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('started', sa.Boolean(), nullable=False, default=False),
        *_timestamps(),
    )
    op.create_table(
        'group_sets',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('unit_id', sa.Uuid(), sa.ForeignKey('units.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        *_timestamps(),
    )
    op.create_table(
        'groups',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('group_set_id', sa.Uuid(), sa.ForeignKey('group_sets.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        *_timestamps(),
    )
    op.create_table(
        'group_memberships',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('group_id', sa.Uuid(), sa.ForeignKey('groups.id', ondelete='CASCADE'), nullable=False),
        sa.Column('project_id', sa.Uuid(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        'ix_group_memberships_group_project', 'group_memberships', ['group_id', 'project_id'], unique=True
    )

    # Task definitions
    op.create_table(
        'task_definitions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('unit_id', sa.Uuid(), sa.ForeignKey('units.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('abbreviation', sa.String(20), nullable=False),
        sa.Column('upload_requirements', sa.JSON(), nullable=False),
        sa.Column('max_quality_pts', sa.Integer(), nullable=False, default=0),
        sa.Column('restrict_status_updates', sa.Boolean(), nullable=False, default=False),
        sa.Column('is_graded', sa.Boolean(), nullable=False, default=False),
        sa.Column('group_set_id', sa.Uuid(), sa.ForeignKey('group_sets.id', ondelete='SET NULL'), nullable=True),
        *_timestamps(),
    )

    # Group submissions (submitter FK added once tasks exist)
    op.create_table(
        'group_submissions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('group_id', sa.Uuid(), sa.ForeignKey('groups.id', ondelete='CASCADE'), nullable=False),
        sa.Column('task_definition_id', sa.Uuid(), sa.ForeignKey('task_definitions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('submitter_task_id', sa.Uuid(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('generation', sa.Integer(), nullable=False, default=1),
        *_timestamps(),
    )
    op.create_index(
        'ix_group_submissions_group_definition', 'group_submissions', ['group_id', 'task_definition_id']
    )

    # Tasks
    op.create_table(
        'tasks',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('task_definition_id', sa.Uuid(), sa.ForeignKey('task_definitions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('project_id', sa.Uuid(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('group_submission_id', sa.Uuid(), sa.ForeignKey('group_submissions.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('status', sa.String(50), nullable=False, default='not_started'),
        sa.Column('quality_pts', sa.Integer(), nullable=False, default=0),
        sa.Column('grade', sa.Integer(), nullable=True),
        sa.Column('submission_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('assessment_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completion_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('file_uploaded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('times_assessed', sa.Integer(), nullable=False, default=0),
        sa.Column('portfolio_evidence', sa.String(1024), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_tasks_definition_project', 'tasks', ['task_definition_id', 'project_id'], unique=True)

    op.create_foreign_key(
        'fk_group_submissions_submitter_task_id',
        'group_submissions',
        'tasks',
        ['submitter_task_id'],
        ['id'],
        ondelete='CASCADE',
    )

    op.create_table(
        'group_contributions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('group_submission_id', sa.Uuid(), sa.ForeignKey('group_submissions.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('project_id', sa.Uuid(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('pct', sa.Integer(), nullable=False),
        sa.Column('pts', sa.Integer(), nullable=False, default=3),
    )

    # Submission and engagement history
    op.create_table(
        'task_submissions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('task_id', sa.Uuid(), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('submission_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('assessor_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('assessment_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('outcome', sa.String(50), nullable=True),
    )
    op.create_index('ix_task_submissions_task_time', 'task_submissions', ['task_id', 'submission_time'])

    op.create_table(
        'task_engagements',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('task_id', sa.Uuid(), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('engagement_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('engagement', sa.String(50), nullable=False),
    )
    op.create_index('ix_task_engagements_task_time', 'task_engagements', ['task_id', 'engagement_time'])

    # Learning outcome alignment
    op.create_table(
        'learning_outcome_task_links',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('task_definition_id', sa.Uuid(), sa.ForeignKey('task_definitions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('task_id', sa.Uuid(), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('learning_outcome_id', sa.Uuid(), nullable=False),
        sa.Column('rating', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        'ix_outcome_links_definition_outcome_task',
        'learning_outcome_task_links',
        ['task_definition_id', 'learning_outcome_id', 'task_id'],
        unique=True,
    )


def downgrade() -> None:
    op.drop_table('learning_outcome_task_links')
    op.drop_table('task_engagements')
    op.drop_table('task_submissions')
    op.drop_table('group_contributions')
    op.drop_constraint('fk_group_submissions_submitter_task_id', 'group_submissions', type_='foreignkey')
    op.drop_table('tasks')
    op.drop_table('group_submissions')
    op.drop_table('task_definitions')
    op.drop_table('group_memberships')
    op.drop_table('groups')
    op.drop_table('group_sets')
    op.drop_table('projects')
    op.drop_table('unit_roles')
    op.drop_table('units')
    op.drop_table('users')
