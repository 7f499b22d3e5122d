"""Initial schema - workflows, versions, templates, runs, steps, tasks, queue, events, journeys

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def _json():
    return postgresql.JSON(astext_type=sa.Text())


def upgrade() -> None:
    """Create tables for the HRFlow workflow engine"""

    # Workflows
    op.create_table(
        'workflows',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('active_version_id', sa.String(length=36), nullable=True),
        sa.Column('publish_seq', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('updated_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'slug', name='uq_workflows_tenant_slug'),
    )
    op.create_index(op.f('ix_workflows_tenant_id'), 'workflows', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_workflows_status'), 'workflows', ['status'], unique=False)

    # Versions (draft while published_at is NULL, immutable afterwards)
    op.create_table(
        'workflow_versions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('workflow_id', sa.String(length=36), nullable=False),
        sa.Column('version_number', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('definition', _json(), nullable=False),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('published_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['workflow_id'], ['workflows.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('workflow_id', 'version_number', name='uq_workflow_versions_number'),
    )
    op.create_index(op.f('ix_workflow_versions_workflow_id'), 'workflow_versions', ['workflow_id'], unique=False)

    op.create_table(
        'workflow_nodes',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('version_id', sa.String(length=36), nullable=False),
        sa.Column('node_key', sa.String(length=128), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('label', sa.String(length=255), nullable=True),
        sa.Column('required', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('config', _json(), nullable=False),
        sa.ForeignKeyConstraint(['version_id'], ['workflow_versions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('version_id', 'node_key', name='uq_workflow_nodes_key'),
    )
    op.create_index(op.f('ix_workflow_nodes_version_id'), 'workflow_nodes', ['version_id'], unique=False)

    op.create_table(
        'workflow_edges',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('version_id', sa.String(length=36), nullable=False),
        sa.Column('source_node_id', sa.String(length=36), nullable=False),
        sa.Column('target_node_id', sa.String(length=36), nullable=False),
        sa.Column('condition', sa.String(length=255), nullable=True),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['version_id'], ['workflow_versions.id'], ),
        sa.ForeignKeyConstraint(['source_node_id'], ['workflow_nodes.id'], ),
        sa.ForeignKeyConstraint(['target_node_id'], ['workflow_nodes.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_workflow_edges_version_id'), 'workflow_edges', ['version_id'], unique=False)

    # Templates seed the first draft of a new workflow (tenant NULL = global)
    op.create_table(
        'workflow_templates',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('definition', _json(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_workflow_templates_tenant_id'), 'workflow_templates', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_workflow_templates_kind'), 'workflow_templates', ['kind'], unique=False)

    # Runs
    op.create_table(
        'workflow_runs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('workflow_id', sa.String(length=36), nullable=False),
        sa.Column('version_id', sa.String(length=36), nullable=False),
        sa.Column('employee_id', sa.String(length=64), nullable=True),
        sa.Column('trigger_source', sa.String(length=128), nullable=False),
        sa.Column('trigger_event_id', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('context', _json(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('event_seq', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['workflow_id'], ['workflows.id'], ),
        sa.ForeignKeyConstraint(['version_id'], ['workflow_versions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('workflow_id', 'employee_id', 'trigger_event_id', name='uq_workflow_runs_trigger'),
    )
    op.create_index(op.f('ix_workflow_runs_tenant_id'), 'workflow_runs', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_workflow_runs_workflow_id'), 'workflow_runs', ['workflow_id'], unique=False)
    op.create_index(op.f('ix_workflow_runs_employee_id'), 'workflow_runs', ['employee_id'], unique=False)
    op.create_index(op.f('ix_workflow_runs_status'), 'workflow_runs', ['status'], unique=False)

    op.create_table(
        'workflow_run_state',
        sa.Column('run_id', sa.String(length=36), nullable=False),
        sa.Column('frontier', _json(), nullable=False),
        sa.Column('outstanding_branches', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('context', _json(), nullable=False),
        sa.Column('requested_generation', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_generation', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lease_owner', sa.String(length=64), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['workflow_runs.id'], ),
        sa.PrimaryKeyConstraint('run_id'),
    )

    op.create_table(
        'workflow_run_steps',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('run_id', sa.String(length=36), nullable=False),
        sa.Column('node_id', sa.String(length=36), nullable=True),
        sa.Column('node_key', sa.String(length=128), nullable=False),
        sa.Column('node_type', sa.String(length=32), nullable=False),
        sa.Column('required', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('assigned_to', sa.String(length=64), nullable=True),
        sa.Column('due_at', sa.DateTime(), nullable=True),
        sa.Column('result', _json(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('propagated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['workflow_runs.id'], ),
        sa.ForeignKeyConstraint(['node_id'], ['workflow_nodes.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_id', 'node_key', name='uq_workflow_run_steps_node'),
    )
    op.create_index(op.f('ix_workflow_run_steps_run_id'), 'workflow_run_steps', ['run_id'], unique=False)
    op.create_index(op.f('ix_workflow_run_steps_status'), 'workflow_run_steps', ['status'], unique=False)

    # Tasks
    op.create_table(
        'workflow_tasks',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('run_id', sa.String(length=36), nullable=False),
        sa.Column('step_id', sa.String(length=36), nullable=False),
        sa.Column('task_type', sa.String(length=32), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('assigned_to', sa.String(length=64), nullable=True),
        sa.Column('assignee_type', sa.String(length=32), nullable=True),
        sa.Column('due_at', sa.DateTime(), nullable=True),
        sa.Column('payload', _json(), nullable=False),
        sa.Column('result', _json(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('escalated_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('completed_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['workflow_runs.id'], ),
        sa.ForeignKeyConstraint(['step_id'], ['workflow_run_steps.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_workflow_tasks_tenant_id'), 'workflow_tasks', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_workflow_tasks_run_id'), 'workflow_tasks', ['run_id'], unique=False)
    op.create_index(op.f('ix_workflow_tasks_step_id'), 'workflow_tasks', ['step_id'], unique=False)
    op.create_index(op.f('ix_workflow_tasks_status'), 'workflow_tasks', ['status'], unique=False)
    op.create_index(op.f('ix_workflow_tasks_assigned_to'), 'workflow_tasks', ['assigned_to'], unique=False)

    # Action queue
    op.create_table(
        'workflow_action_queue',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('run_id', sa.String(length=36), nullable=False),
        sa.Column('step_id', sa.String(length=36), nullable=False),
        sa.Column('node_key', sa.String(length=128), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('resume_at', sa.DateTime(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('metadata', _json(), nullable=True),
        sa.Column('claimed_by', sa.String(length=64), nullable=True),
        sa.Column('claimed_until', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['workflow_runs.id'], ),
        sa.ForeignKeyConstraint(['step_id'], ['workflow_run_steps.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('step_id'),
    )
    op.create_index(op.f('ix_workflow_action_queue_run_id'), 'workflow_action_queue', ['run_id'], unique=False)
    op.create_index('ix_workflow_action_queue_due', 'workflow_action_queue', ['resume_at', 'claimed_until'], unique=False)

    # Event log
    op.create_table(
        'workflow_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('run_id', sa.String(length=36), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('step_id', sa.String(length=36), nullable=True),
        sa.Column('task_id', sa.String(length=36), nullable=True),
        sa.Column('payload', _json(), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['workflow_runs.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_id', 'position', name='uq_workflow_events_position'),
    )
    op.create_index(op.f('ix_workflow_events_run_id'), 'workflow_events', ['run_id'], unique=False)
    op.create_index(op.f('ix_workflow_events_event_type'), 'workflow_events', ['event_type'], unique=False)

    # Employee journey share tokens
    op.create_table(
        'employee_journey_views',
        sa.Column('run_id', sa.String(length=36), nullable=False),
        sa.Column('share_token', sa.String(length=64), nullable=False),
        sa.Column('hero_copy', sa.String(length=255), nullable=True),
        sa.Column('cta_label', sa.String(length=64), nullable=True),
        sa.Column('last_viewed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['workflow_runs.id'], ),
        sa.PrimaryKeyConstraint('run_id'),
    )
    op.create_index(op.f('ix_employee_journey_views_share_token'), 'employee_journey_views', ['share_token'], unique=True)


def downgrade() -> None:
    """Drop all tables"""
    op.drop_index(op.f('ix_employee_journey_views_share_token'), table_name='employee_journey_views')
    op.drop_table('employee_journey_views')

    op.drop_index(op.f('ix_workflow_events_event_type'), table_name='workflow_events')
    op.drop_index(op.f('ix_workflow_events_run_id'), table_name='workflow_events')
    op.drop_table('workflow_events')

    op.drop_index('ix_workflow_action_queue_due', table_name='workflow_action_queue')
    op.drop_index(op.f('ix_workflow_action_queue_run_id'), table_name='workflow_action_queue')
    op.drop_table('workflow_action_queue')

    for column in ('assigned_to', 'status', 'step_id', 'run_id', 'tenant_id'):
        op.drop_index(op.f(f'ix_workflow_tasks_{column}'), table_name='workflow_tasks')
    op.drop_table('workflow_tasks')

    op.drop_index(op.f('ix_workflow_run_steps_status'), table_name='workflow_run_steps')
    op.drop_index(op.f('ix_workflow_run_steps_run_id'), table_name='workflow_run_steps')
    op.drop_table('workflow_run_steps')

    op.drop_table('workflow_run_state')

    for column in ('status', 'employee_id', 'workflow_id', 'tenant_id'):
        op.drop_index(op.f(f'ix_workflow_runs_{column}'), table_name='workflow_runs')
    op.drop_table('workflow_runs')

    op.drop_index(op.f('ix_workflow_templates_kind'), table_name='workflow_templates')
    op.drop_index(op.f('ix_workflow_templates_tenant_id'), table_name='workflow_templates')
    op.drop_table('workflow_templates')

    op.drop_index(op.f('ix_workflow_edges_version_id'), table_name='workflow_edges')
    op.drop_table('workflow_edges')

    op.drop_index(op.f('ix_workflow_nodes_version_id'), table_name='workflow_nodes')
    op.drop_table('workflow_nodes')

    op.drop_index(op.f('ix_workflow_versions_workflow_id'), table_name='workflow_versions')
    op.drop_table('workflow_versions')

    op.drop_index(op.f('ix_workflows_status'), table_name='workflows')
    op.drop_index(op.f('ix_workflows_tenant_id'), table_name='workflows')
    op.drop_table('workflows')
