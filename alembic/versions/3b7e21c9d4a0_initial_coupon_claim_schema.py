"""Initial schema with users, vendors, coupons, identity mappings, claim history, claim slots and claim events

Revision ID: 3b7e21c9d4a0
Revises:
Create Date: 2026-10-19 09:12:31.204118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3b7e21c9d4a0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Create users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=36), nullable=False, comment='Internal user UUID'),
        sa.Column('email', sa.String(length=255), nullable=True, comment='Login email (null for partner users)'),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('role', sa.String(length=32), nullable=False, comment='super_admin, partner_admin or user'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )

    # Create vendors table
    op.create_table(
        'vendors',
        sa.Column('id', sa.String(length=36), nullable=False, comment='Vendor UUID'),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('website', sa.String(length=500), nullable=True),
        sa.Column('logo_url', sa.String(length=500), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False),
        sa.Column('partner_secret', sa.String(length=255), nullable=True, comment='HMAC secret for partner-signed tokens'),
        sa.Column('api_key', sa.String(length=255), nullable=True, comment='Key for the API key session exchange'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    # Create external_identity_mappings table
    op.create_table(
        'external_identity_mappings',
        sa.Column('vendor_id', sa.String(length=36), nullable=False, comment='Scoping vendor'),
        sa.Column('external_ref', sa.String(length=255), nullable=False, comment='Partner-side user reference'),
        sa.Column('user_id', sa.String(length=36), nullable=False, comment='Internal user'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id']),
        sa.PrimaryKeyConstraint('vendor_id', 'external_ref'),
    )
    op.create_index(op.f('ix_external_identity_mappings_user_id'), 'external_identity_mappings', ['user_id'])

    # Create coupons table
    op.create_table(
        'coupons',
        sa.Column('id', sa.String(length=36), nullable=False, comment='Coupon UUID'),
        sa.Column('vendor_id', sa.String(length=36), nullable=False, comment='Owning vendor'),
        sa.Column('code', sa.String(length=255), nullable=False, comment='Reward code'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('discount_value', sa.String(length=100), nullable=True),
        sa.Column('expiry_date', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('is_claimed', sa.Boolean(), nullable=False),
        sa.Column('claimed_by', sa.String(length=255), nullable=True),
        sa.Column('claimed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_coupons_vendor_claimed', 'coupons', ['vendor_id', 'is_claimed'])
    op.create_index('idx_coupons_claimed_by', 'coupons', ['vendor_id', 'claimed_by'])

    # Create claim_history table (period claim model)
    op.create_table(
        'claim_history',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('coupon_id', sa.String(length=36), nullable=False),
        sa.Column('vendor_id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False, comment='Internal user id or anonymous marker'),
        sa.Column('period', sa.String(length=16), nullable=False, comment='Claim period key'),
        sa.Column('claimed_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id']),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('coupon_id', 'period', name='uq_claim_history_coupon_period'),
        sa.UniqueConstraint('vendor_id', 'user_id', 'period', name='uq_claim_history_vendor_user_period'),
    )

    # Create active_vendor_claims table (active-claim slot for vendor claims, both models)
    op.create_table(
        'active_vendor_claims',
        sa.Column('vendor_id', sa.String(length=36), nullable=False),
        sa.Column('claimant_id', sa.String(length=255), nullable=False, comment='Internal user id or anonymous marker'),
        sa.Column('coupon_id', sa.String(length=36), nullable=True),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=False, comment='Slot is free again after this'),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id']),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id']),
        sa.PrimaryKeyConstraint('vendor_id', 'claimant_id'),
    )

    # Create claim_events table
    op.create_table(
        'claim_events',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('event_type', sa.String(length=50), nullable=False),
        sa.Column('vendor_id', sa.String(length=36), nullable=False),
        sa.Column('coupon_id', sa.String(length=36), nullable=False),
        sa.Column('claimant_ref', sa.String(length=64), nullable=False),
        sa.Column('claim_mode', sa.String(length=16), nullable=False, comment='coupon or vendor'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_claim_events_created_at'), 'claim_events', ['created_at'])
    op.create_index('idx_claim_events_vendor_created', 'claim_events', ['vendor_id', 'created_at'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('idx_claim_events_vendor_created', table_name='claim_events')
    op.drop_index(op.f('ix_claim_events_created_at'), table_name='claim_events')
    op.drop_table('claim_events')
    op.drop_table('active_vendor_claims')
    op.drop_table('claim_history')
    op.drop_index('idx_coupons_claimed_by', table_name='coupons')
    op.drop_index('idx_coupons_vendor_claimed', table_name='coupons')
    op.drop_table('coupons')
    op.drop_index(op.f('ix_external_identity_mappings_user_id'), table_name='external_identity_mappings')
    op.drop_table('external_identity_mappings')
    op.drop_table('vendors')
    op.drop_table('users')
