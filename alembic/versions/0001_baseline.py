"""Baseline migration - properties, leads, bookings, availability, calendar

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-12

Creates the scheduling tables. All instants are stored as UTC timestamps.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Create scheduling tables."""

    # ==========================================================================
    # Properties & Leads
    # ==========================================================================
    op.create_table(
        'properties',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('slug', sa.String(200), nullable=False, unique=True),
        sa.Column('address', sa.String(500), nullable=False),
        _timestamp('created_at'),
    )

    op.create_table(
        'leads',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('phone', sa.String(32), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('source', sa.String(50), nullable=True),
        _timestamp('created_at'),
    )

    # ==========================================================================
    # Bookings
    # ==========================================================================
    op.create_table(
        'bookings',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'property_id',
            sa.Integer(),
            sa.ForeignKey('properties.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column(
            'lead_id',
            sa.Integer(),
            sa.ForeignKey('leads.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        _timestamp('slot_start'),
        sa.Column('duration_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('source', sa.String(20), nullable=False, server_default='dashboard'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('external_event_id', sa.String(255), nullable=True),
        _timestamp('cancelled_at', nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
    )
    # One active booking per (property, slot); cancelled rows are exempt
    op.create_index(
        'uq_bookings_active_slot',
        'bookings',
        ['property_id', 'slot_start'],
        unique=True,
        postgresql_where=sa.text("status != 'cancelled'"),
        sqlite_where=sa.text("status != 'cancelled'"),
    )
    op.create_index('idx_bookings_slot_start', 'bookings', ['slot_start'])
    op.create_index('idx_bookings_external_event', 'bookings', ['external_event_id'])

    # ==========================================================================
    # Availability
    # ==========================================================================
    op.create_table(
        'availability_intervals',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'property_id',
            sa.Integer(),
            sa.ForeignKey('properties.id', ondelete='CASCADE'),
            nullable=False,
        ),
        _timestamp('start_time'),
        _timestamp('end_time'),
        sa.Column('is_blocked', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notes', sa.Text(), nullable=True),
        _timestamp('created_at'),
        sa.UniqueConstraint('property_id', 'start_time', name='uq_availability_property_start'),
    )
    op.create_index('idx_availability_end', 'availability_intervals', ['end_time'])

    day_columns = []
    for day, (open_at, close_at) in (
        ('monday', ('09:00', '18:00')),
        ('tuesday', ('09:00', '18:00')),
        ('wednesday', ('09:00', '18:00')),
        ('thursday', ('09:00', '18:00')),
        ('friday', ('09:00', '18:00')),
        ('saturday', ('10:00', '16:00')),
        ('sunday', ('10:00', '16:00')),
    ):
        day_columns.append(sa.Column(f'{day}_start', sa.String(5), nullable=False, server_default=open_at))
        day_columns.append(sa.Column(f'{day}_end', sa.String(5), nullable=False, server_default=close_at))

    op.create_table(
        'global_settings',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        *day_columns,
        _timestamp('updated_at'),
    )

    # ==========================================================================
    # Calendar Integration
    # ==========================================================================
    op.create_table(
        'calendar_accounts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('provider', sa.String(20), nullable=False, server_default='outlook'),
        sa.Column('account_email', sa.String(255), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),  # Fernet "enc:" payload
        sa.Column('refresh_token', sa.Text(), nullable=True),
        _timestamp('token_expires_at', nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.UniqueConstraint('user_id', 'provider', name='uq_calendar_account_user_provider'),
    )


def downgrade() -> None:
    """Drop scheduling tables."""
    op.drop_table('calendar_accounts')
    op.drop_table('global_settings')
    op.drop_index('idx_availability_end', table_name='availability_intervals')
    op.drop_table('availability_intervals')
    op.drop_index('idx_bookings_external_event', table_name='bookings')
    op.drop_index('idx_bookings_slot_start', table_name='bookings')
    op.drop_index('uq_bookings_active_slot', table_name='bookings')
    op.drop_table('bookings')
    op.drop_table('leads')
    op.drop_table('properties')
