"""Initial migration - create bookings and audit_entries tables

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Booking money fields, major units
    op.create_table(
        'bookings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('base_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('service_fee', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('payment_processing_fee', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('commission_partner', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('platform_earnings', sa.Numeric(12, 2), nullable=True),
        sa.Column('net_application_fee', sa.Numeric(12, 2), nullable=True),
        sa.Column('payment_status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('payment_reference_id', sa.String(255), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    op.create_index('ix_bookings_payment_reference_id', 'bookings', ['payment_reference_id'])
    op.create_index('ix_bookings_payment_status', 'bookings', ['payment_status'])
    op.create_index('ix_bookings_created_at', 'bookings', ['created_at'])

    # Append-only audit trail
    op.create_table(
        'audit_entries',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id'), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('refund_type', sa.String(50), nullable=True),
        sa.Column('amount_minor', sa.Integer(), nullable=True),
        sa.Column('reason', sa.String(255), nullable=True),
        sa.Column('processor_reference', sa.String(255), nullable=True),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('actor', sa.String(255), nullable=False, server_default='system'),
        sa.Column('before_json', sa.Text(), nullable=True),
        sa.Column('after_json', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_index('ix_audit_entries_booking_id', 'audit_entries', ['booking_id'])
    op.create_index('ix_audit_entries_action', 'audit_entries', ['action'])
    op.create_index('ix_audit_entries_created_at', 'audit_entries', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_audit_entries_created_at', table_name='audit_entries')
    op.drop_index('ix_audit_entries_action', table_name='audit_entries')
    op.drop_index('ix_audit_entries_booking_id', table_name='audit_entries')

    op.drop_index('ix_bookings_created_at', table_name='bookings')
    op.drop_index('ix_bookings_payment_status', table_name='bookings')
    op.drop_index('ix_bookings_payment_reference_id', table_name='bookings')

    op.drop_table('audit_entries')
    op.drop_table('bookings')
