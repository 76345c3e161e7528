"""Initial dues engine schema.

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-10-01 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list:
    return [
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Create dues engine tables."""
    op.create_table(
        'sites',
        *_timestamps(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('reporting_currency', sa.String(3), nullable=False),
        sa.Column('distribution_method', sa.String(20), nullable=False),
        sa.Column('penalty_months_threshold', sa.Integer(), nullable=False),
        sa.Column('penalty_percentage', sa.Numeric(precision=5, scale=2), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )

    op.create_table(
        'units',
        *_timestamps(),
        sa.Column('site_id', sa.Integer(), nullable=False),
        sa.Column('unit_number', sa.String(50), nullable=False),
        sa.Column('block', sa.String(50), nullable=True),
        sa.Column('owner_name', sa.String(255), nullable=True),
        sa.Column('coefficient', sa.Numeric(precision=10, scale=4), nullable=False),
        sa.Column('share_ratio', sa.Numeric(precision=10, scale=4), nullable=False),
        sa.Column('opening_balance', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(['site_id'], ['sites.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_unit_site', 'units', ['site_id'])
    op.create_index(
        'idx_unit_site_number', 'units', ['site_id', 'block', 'unit_number'], unique=True
    )

    op.create_table(
        'fiscal_periods',
        *_timestamps(),
        sa.Column('site_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column(
            'status', sa.Enum('DRAFT', 'ACTIVE', 'CLOSED', name='periodstatus'), nullable=False
        ),
        sa.Column('total_budget', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['site_id'], ['sites.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_period_site_name', 'fiscal_periods', ['site_id', 'name'], unique=True)
    op.create_index(
        'idx_period_site_dates', 'fiscal_periods', ['site_id', 'start_date', 'end_date']
    )

    op.create_table(
        'accounts',
        *_timestamps(),
        sa.Column('site_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('account_type', sa.String(20), nullable=False),
        sa.Column('currency_code', sa.String(3), nullable=False),
        sa.Column('initial_balance', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('initial_exchange_rate', sa.Numeric(precision=15, scale=6), nullable=False),
        sa.Column('current_balance', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(['site_id'], ['sites.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_account_site', 'accounts', ['site_id'])
    op.create_index('idx_account_site_name', 'accounts', ['site_id', 'name'], unique=True)

    op.create_table(
        'dues',
        *_timestamps(),
        sa.Column('unit_id', sa.Integer(), nullable=False),
        sa.Column('fiscal_period_id', sa.Integer(), nullable=False),
        sa.Column('month_date', sa.Date(), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=False),
        sa.Column('base_amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('penalty_amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('paid_amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('currency_code', sa.String(3), nullable=False),
        sa.Column('is_from_previous_period', sa.Boolean(), nullable=False),
        sa.Column('previous_period_id', sa.Integer(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['unit_id'], ['units.id'], ),
        sa.ForeignKeyConstraint(['fiscal_period_id'], ['fiscal_periods.id'], ),
        sa.ForeignKeyConstraint(['previous_period_id'], ['fiscal_periods.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'unit_id', 'fiscal_period_id', 'month_date', 'is_from_previous_period',
            name='uq_due_unit_period_month',
        ),
    )
    op.create_index('idx_due_unit_status', 'dues', ['unit_id', 'status'])
    op.create_index('idx_due_period', 'dues', ['fiscal_period_id'])
    op.create_index('idx_due_month', 'dues', ['month_date'])

    op.create_table(
        'payments',
        *_timestamps(),
        sa.Column('unit_id', sa.Integer(), nullable=False),
        sa.Column('fiscal_period_id', sa.Integer(), nullable=True),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('payment_date', sa.Date(), nullable=False),
        sa.Column('payment_method', sa.String(30), nullable=False),
        sa.Column('reference_no', sa.String(100), nullable=True),
        sa.Column('category', sa.String(100), nullable=False),
        sa.Column('currency_code', sa.String(3), nullable=False),
        sa.Column('exchange_rate', sa.Numeric(precision=15, scale=6), nullable=False),
        sa.Column('dues_currency', sa.String(3), nullable=False),
        sa.Column('amount_in_dues_currency', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('reporting_currency', sa.String(3), nullable=False),
        sa.Column('reporting_rate', sa.Numeric(precision=15, scale=6), nullable=False),
        sa.Column('amount_reporting', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('overpayment', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('applied_to_dues', sa.JSON(), nullable=False),
        sa.Column('reversed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['unit_id'], ['units.id'], ),
        sa.ForeignKeyConstraint(['fiscal_period_id'], ['fiscal_periods.id'], ),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_payment_unit_date', 'payments', ['unit_id', 'payment_date'])
    op.create_index('idx_payment_period', 'payments', ['fiscal_period_id'])

    op.create_table(
        'ledger_entries',
        *_timestamps(),
        sa.Column('site_id', sa.Integer(), nullable=False),
        sa.Column('fiscal_period_id', sa.Integer(), nullable=True),
        sa.Column('entry_type', sa.String(20), nullable=False),
        sa.Column('category', sa.String(100), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('currency_code', sa.String(3), nullable=False),
        sa.Column('exchange_rate', sa.Numeric(precision=15, scale=6), nullable=False),
        sa.Column('amount_reporting', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('entry_date', sa.Date(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=True),
        sa.Column('account_amount', sa.Numeric(precision=15, scale=2), nullable=True),
        sa.Column('from_account_id', sa.Integer(), nullable=True),
        sa.Column('to_account_id', sa.Integer(), nullable=True),
        sa.Column('payment_id', sa.Integer(), nullable=True),
        sa.Column('due_id', sa.Integer(), nullable=True),
        sa.Column('vendor_name', sa.String(255), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['site_id'], ['sites.id'], ),
        sa.ForeignKeyConstraint(['fiscal_period_id'], ['fiscal_periods.id'], ),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ),
        sa.ForeignKeyConstraint(['from_account_id'], ['accounts.id'], ),
        sa.ForeignKeyConstraint(['to_account_id'], ['accounts.id'], ),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ),
        sa.ForeignKeyConstraint(['due_id'], ['dues.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_id'),
    )
    op.create_index('idx_ledger_site_period', 'ledger_entries', ['site_id', 'fiscal_period_id'])
    op.create_index(
        'idx_ledger_period_type_category',
        'ledger_entries',
        ['fiscal_period_id', 'entry_type', 'category'],
    )
    op.create_index('idx_ledger_account', 'ledger_entries', ['account_id'])

    op.create_table(
        'budget_categories',
        *_timestamps(),
        sa.Column('fiscal_period_id', sa.Integer(), nullable=False),
        sa.Column('category_name', sa.String(100), nullable=False),
        sa.Column('planned_amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('actual_amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('display_order', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['fiscal_period_id'], ['fiscal_periods.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'fiscal_period_id', 'category_name', name='uq_budget_period_category'
        ),
    )

    op.create_table(
        'debt_workflows',
        *_timestamps(),
        sa.Column('unit_id', sa.Integer(), nullable=False),
        sa.Column('fiscal_period_id', sa.Integer(), nullable=True),
        sa.Column('stage', sa.Integer(), nullable=False),
        sa.Column('total_debt_amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('oldest_unpaid_date', sa.Date(), nullable=True),
        sa.Column('months_overdue', sa.Integer(), nullable=False),
        sa.Column('stage_changed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('warning_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('letter_generated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('legal_action_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('legal_case_number', sa.String(100), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['unit_id'], ['units.id'], ),
        sa.ForeignKeyConstraint(['fiscal_period_id'], ['fiscal_periods.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_workflow_unit_active', 'debt_workflows', ['unit_id', 'is_active'])
    op.create_index('idx_workflow_stage', 'debt_workflows', ['stage'])

    op.create_table(
        'balance_transfers',
        *_timestamps(),
        sa.Column('unit_id', sa.Integer(), nullable=False),
        sa.Column('from_fiscal_period_id', sa.Integer(), nullable=False),
        sa.Column('to_fiscal_period_id', sa.Integer(), nullable=False),
        sa.Column('transfer_type', sa.String(20), nullable=False),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=True),
        sa.Column('currency_code', sa.String(3), nullable=True),
        sa.Column('legal_stage', sa.Integer(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['unit_id'], ['units.id'], ),
        sa.ForeignKeyConstraint(['from_fiscal_period_id'], ['fiscal_periods.id'], ),
        sa.ForeignKeyConstraint(['to_fiscal_period_id'], ['fiscal_periods.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_transfer_unit', 'balance_transfers', ['unit_id'])
    op.create_index(
        'idx_transfer_periods',
        'balance_transfers',
        ['from_fiscal_period_id', 'to_fiscal_period_id'],
    )

    op.create_table(
        'audit_logs',
        *_timestamps(),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('changes', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )


def downgrade() -> None:
    """Drop dues engine tables."""
    op.drop_table('audit_logs')
    op.drop_index('idx_transfer_periods', table_name='balance_transfers')
    op.drop_index('idx_transfer_unit', table_name='balance_transfers')
    op.drop_table('balance_transfers')
    op.drop_index('idx_workflow_stage', table_name='debt_workflows')
    op.drop_index('idx_workflow_unit_active', table_name='debt_workflows')
    op.drop_table('debt_workflows')
    op.drop_table('budget_categories')
    op.drop_index('idx_ledger_account', table_name='ledger_entries')
    op.drop_index('idx_ledger_period_type_category', table_name='ledger_entries')
    op.drop_index('idx_ledger_site_period', table_name='ledger_entries')
    op.drop_table('ledger_entries')
    op.drop_index('idx_payment_period', table_name='payments')
    op.drop_index('idx_payment_unit_date', table_name='payments')
    op.drop_table('payments')
    op.drop_index('idx_due_month', table_name='dues')
    op.drop_index('idx_due_period', table_name='dues')
    op.drop_index('idx_due_unit_status', table_name='dues')
    op.drop_table('dues')
    op.drop_index('idx_account_site_name', table_name='accounts')
    op.drop_index('idx_account_site', table_name='accounts')
    op.drop_table('accounts')
    op.drop_index('idx_period_site_dates', table_name='fiscal_periods')
    op.drop_index('idx_period_site_name', table_name='fiscal_periods')
    op.drop_table('fiscal_periods')
    op.drop_index('idx_unit_site_number', table_name='units')
    op.drop_index('idx_unit_site', table_name='units')
    op.drop_table('units')
    op.drop_table('sites')
    if op.get_bind().dialect.name == 'postgresql':
        op.execute('DROP TYPE IF EXISTS periodstatus')
