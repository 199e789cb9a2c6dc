"""create reservation lifecycle tables"""

from alembic import op
import sqlalchemy as sa
from typing import Sequence, Union

revision: str = '20261019_01'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column('full_name', sa.String()),
        sa.Column('phone_number', sa.String()),
        sa.Column('is_admin', sa.Boolean(), server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_table(
        'labs',
        sa.Column('id', sa.UUID(as_uuid=True), primary_key=True),
        sa.Column('lab_ref', sa.String(), nullable=False, unique=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('state', sa.String()),
        sa.Column('state_checked_at', sa.DateTime(timezone=True)),
        sa.Column('hourly_rate_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='XOF'),
        sa.Column('is_published', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('reservation_seq', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_table(
        'reservations',
        sa.Column('id', sa.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('lab_ref', sa.String(), sa.ForeignKey('labs.lab_ref'), nullable=False),
        sa.Column('start_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('auto_started', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('estimated_cost_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notes', sa.Text()),
        sa.Column('start_reminder_sent_at', sa.DateTime(timezone=True)),
        sa.Column('end_reminder_sent_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint('start_at < end_at', name='ck_reservations_interval'),
        sa.CheckConstraint(
            "status IN ('pending', 'active', 'completed', 'cancelled')",
            name='ck_reservations_status',
        ),
    )
    op.create_index('ix_reservations_lab_window', 'reservations', ['lab_ref', 'start_at', 'end_at'])
    op.create_index('ix_reservations_status_created', 'reservations', ['status', 'created_at'])
    op.create_table(
        'payments',
        sa.Column('id', sa.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('reservation_id', sa.UUID(as_uuid=True), sa.ForeignKey('reservations.id')),
        sa.Column('transaction_id', sa.String(), nullable=False, unique=True),
        sa.Column('external_transaction_id', sa.String()),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='XOF'),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('payment_method', sa.String()),
        sa.Column('description', sa.Text()),
        sa.Column('payment_url', sa.String()),
        sa.Column('processor_payloads', sa.JSON(), nullable=False),
        sa.Column('webhook_payload', sa.JSON()),
        sa.Column('paid_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'cancelled')",
            name='ck_payments_status',
        ),
    )
    op.create_index('ix_payments_reservation_id', 'payments', ['reservation_id'])
    op.create_index('ix_payments_external_transaction_id', 'payments', ['external_transaction_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index(
        'uq_payments_completed_reservation',
        'payments',
        ['reservation_id'],
        unique=True,
        sqlite_where=sa.text("status = 'completed'"),
        postgresql_where=sa.text("status = 'completed'"),
    )
    op.create_table(
        'usage_records',
        sa.Column('id', sa.UUID(as_uuid=True), primary_key=True),
        sa.Column('reservation_id', sa.UUID(as_uuid=True), sa.ForeignKey('reservations.id')),
        sa.Column('user_id', sa.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('lab_ref', sa.String(), sa.ForeignKey('labs.lab_ref'), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ended_at', sa.DateTime(timezone=True)),
        sa.Column('duration_seconds', sa.Integer()),
        sa.Column('cost_cents', sa.Integer()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index(
        'uq_usage_records_open_lab',
        'usage_records',
        ['lab_ref'],
        unique=True,
        sqlite_where=sa.text('ended_at IS NULL'),
        postgresql_where=sa.text('ended_at IS NULL'),
    )
    op.create_table(
        'notifications',
        sa.Column('id', sa.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.UUID(as_uuid=True), sa.ForeignKey('users.id')),
        sa.Column('message', sa.String(), nullable=False),
        sa.Column('title', sa.String()),
        sa.Column('category', sa.String()),
        sa.Column('is_read', sa.Boolean(), server_default=sa.false()),
        sa.Column('meta', sa.JSON()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.UUID(as_uuid=True), sa.ForeignKey('users.id')),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('target_type', sa.String()),
        sa.Column('target_id', sa.UUID(as_uuid=True)),
        sa.Column('details', sa.JSON()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
    )


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('notifications')
    op.drop_index('uq_usage_records_open_lab', table_name='usage_records')
    op.drop_table('usage_records')
    op.drop_index('uq_payments_completed_reservation', table_name='payments')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_external_transaction_id', table_name='payments')
    op.drop_index('ix_payments_reservation_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_reservations_status_created', table_name='reservations')
    op.drop_index('ix_reservations_lab_window', table_name='reservations')
    op.drop_table('reservations')
    op.drop_table('labs')
    op.drop_table('users')
