"""Create approval workflow schema

Revision ID: 20261019_initial
Revises: 
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_initial'
down_revision = None
branch_labels = None
depends_on = None

CATEGORIES = ('PURCHASE_REQUEST', 'PURCHASE_ORDER', 'CONTRACTS', 'CAPEX', 'PAYMENTS', 'FLOAT_CASH')
STATUSES = ('PENDING', 'APPROVED', 'REJECTED', 'ESCALATED', 'AUTO_APPROVED')
OVERRIDE_TYPES = (
    'EMERGENCY_PURCHASE', 'SINGLE_SOURCE_JUSTIFICATION', 'CAPEX_SPECIAL', 'FLOAT_CASH_REPLENISHMENT', 'BUDGET_OVERRIDE',
)
OPEN_WORKFLOW = sa.text("status IN ('PENDING', 'ESCALATED')")


def upgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    tables = inspector.get_table_names()

    if 'departments' not in tables:
        op.create_table(
            'departments',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('code', sa.String(length=50), nullable=False, unique=True),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        )

    if 'users' not in tables:
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('name', sa.String(length=200), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('role', sa.Enum('ADMIN', 'APPROVER', 'REQUESTER', name='user_role'), nullable=False),
            sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        )
        op.create_index('ix_users_email', 'users', ['email'], unique=True)

    if 'approval_roles' not in tables:
        op.create_table(
            'approval_roles',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('code', sa.String(length=50), nullable=False, unique=True),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('hierarchy_level', sa.Integer(), nullable=False),
            sa.Column('permissions', sa.JSON(), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
        )

    if 'user_approval_roles' not in tables:
        op.create_table(
            'user_approval_roles',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('approval_role_id', sa.Integer(), sa.ForeignKey('approval_roles.id'), nullable=False),
            sa.Column('max_approval_amount', sa.Numeric(14, 2), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('assigned_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('assigned_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
            sa.UniqueConstraint('user_id', 'approval_role_id', name='uq_user_approval_role'),
        )
        op.create_index('ix_user_approval_roles_user_id', 'user_approval_roles', ['user_id'])
        op.create_index('ix_user_approval_roles_approval_role_id', 'user_approval_roles', ['approval_role_id'])

    if 'approval_rules' not in tables:
        op.create_table(
            'approval_rules',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('category', sa.Enum(*CATEGORIES, name='approval_category'), nullable=False),
            sa.Column('min_amount', sa.Numeric(14, 2), nullable=False),
            sa.Column('max_amount', sa.Numeric(14, 2), nullable=True),
            sa.Column('currency', sa.String(length=3), nullable=False),
            sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=True),
            sa.Column('auto_approve_below', sa.Numeric(14, 2), nullable=True),
            sa.Column('requires_sequential', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('escalation_hours', sa.Integer(), nullable=True),
            sa.Column('conditions', sa.JSON(), nullable=False),
            sa.Column('metadata', sa.JSON(), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('version', sa.Integer(), nullable=False),
            sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
        )
        op.create_index('ix_approval_rules_category', 'approval_rules', ['category'])
        op.create_index('ix_approval_rules_department_id', 'approval_rules', ['department_id'])

    if 'approval_rule_approvers' not in tables:
        op.create_table(
            'approval_rule_approvers',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('rule_id', sa.Integer(), sa.ForeignKey('approval_rules.id'), nullable=False),
            sa.Column('approval_role_id', sa.Integer(), sa.ForeignKey('approval_roles.id'), nullable=False),
            sa.Column('sequence_order', sa.Integer(), nullable=False),
            sa.Column('is_mandatory', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('can_delegate', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.UniqueConstraint('rule_id', 'sequence_order', name='uq_rule_approver_sequence'),
        )
        op.create_index('ix_approval_rule_approvers_rule_id', 'approval_rule_approvers', ['rule_id'])

    if 'approval_overrides' not in tables:
        op.create_table(
            'approval_overrides',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('override_type', sa.Enum(*OVERRIDE_TYPES, name='override_type'), nullable=False),
            sa.Column('category', sa.Enum(*CATEGORIES, name='approval_category'), nullable=True),
            sa.Column('conditions', sa.JSON(), nullable=False),
            sa.Column('bypass_levels', sa.JSON(), nullable=False),
            sa.Column('require_justification', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('max_amount', sa.Numeric(14, 2), nullable=True),
            sa.Column('valid_from', sa.DateTime(), nullable=True),
            sa.Column('valid_until', sa.DateTime(), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('version', sa.Integer(), nullable=False),
            sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
        )

    if 'approval_workflows' not in tables:
        op.create_table(
            'approval_workflows',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('reference_id', sa.String(length=64), nullable=False),
            sa.Column('reference_code', sa.String(length=64), nullable=False),
            sa.Column('category', sa.Enum(*CATEGORIES, name='approval_category'), nullable=False),
            sa.Column('amount', sa.Numeric(14, 2), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False),
            sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=True),
            sa.Column('rule_id', sa.Integer(), sa.ForeignKey('approval_rules.id'), nullable=True),
            sa.Column('rule_version', sa.Integer(), nullable=True),
            sa.Column('matrix_version', sa.Integer(), nullable=True),
            sa.Column('requires_sequential', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('escalation_hours', sa.Integer(), nullable=True),
            sa.Column('override_id', sa.Integer(), sa.ForeignKey('approval_overrides.id'), nullable=True),
            sa.Column('override_justification', sa.Text(), nullable=True),
            sa.Column('current_level', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('status', sa.Enum(*STATUSES, name='approval_status'), nullable=False),
            sa.Column('initiated_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('version_id', sa.Integer(), nullable=False),
        )
        op.create_index('ix_approval_workflows_reference_id', 'approval_workflows', ['reference_id'])
        op.create_index('ix_approval_workflows_status', 'approval_workflows', ['status'])
        op.create_index(
            'uq_open_workflow_reference',
            'approval_workflows',
            ['reference_id', 'reference_code'],
            unique=True,
            sqlite_where=OPEN_WORKFLOW,
            postgresql_where=OPEN_WORKFLOW,
        )

    if 'approval_workflow_actions' not in tables:
        op.create_table(
            'approval_workflow_actions',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('workflow_id', sa.Integer(), sa.ForeignKey('approval_workflows.id'), nullable=False),
            sa.Column('sequence_order', sa.Integer(), nullable=False),
            sa.Column('approval_role_id', sa.Integer(), sa.ForeignKey('approval_roles.id'), nullable=False),
            sa.Column('is_mandatory', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('can_delegate', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('approver_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('delegated_from', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('status', sa.Enum(*STATUSES, name='approval_status'), nullable=False),
            sa.Column('comments', sa.Text(), nullable=True),
            sa.Column('rejection_reason', sa.Text(), nullable=True),
            sa.Column('override_id', sa.Integer(), sa.ForeignKey('approval_overrides.id'), nullable=True),
            sa.Column('became_current_at', sa.DateTime(), nullable=True),
            sa.Column('escalated_at', sa.DateTime(), nullable=True),
            sa.Column('acted_at', sa.DateTime(), nullable=True),
            sa.UniqueConstraint('workflow_id', 'sequence_order', name='uq_workflow_action_sequence'),
        )
        op.create_index('ix_approval_workflow_actions_workflow_id', 'approval_workflow_actions', ['workflow_id'])
        op.create_index('ix_approval_workflow_actions_approver_id', 'approval_workflow_actions', ['approver_id'])
        op.create_index('ix_approval_workflow_actions_status', 'approval_workflow_actions', ['status'])

    if 'audit_logs' not in tables:
        op.create_table(
            'audit_logs',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('action', sa.String(length=120), nullable=False),
            sa.Column('entity_type', sa.String(length=120), nullable=False),
            sa.Column('entity_id', sa.String(length=64), nullable=False),
            sa.Column('old_values', sa.JSON(), nullable=True),
            sa.Column('new_values', sa.JSON(), nullable=True),
            sa.Column('performed_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
        )
        op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
        op.create_index('ix_audit_logs_entity', 'audit_logs', ['entity_type', 'entity_id'])

    if 'approval_matrix_versions' not in tables:
        op.create_table(
            'approval_matrix_versions',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('version_number', sa.Integer(), nullable=False, unique=True),
            sa.Column('snapshot', sa.JSON(), nullable=False),
            sa.Column('change_summary', sa.String(length=500), nullable=True),
            sa.Column('changed_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
        )


def downgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    tables = inspector.get_table_names()

    for table in (
        'approval_matrix_versions',
        'audit_logs',
        'approval_workflow_actions',
        'approval_workflows',
        'approval_overrides',
        'approval_rule_approvers',
        'approval_rules',
        'user_approval_roles',
        'approval_roles',
        'users',
        'departments',
    ):
        if table in tables:
            op.drop_table(table)
