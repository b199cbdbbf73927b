"""Add order pipeline tables

This migration adds:
1. agents table
2. campaigns table
3. offers table
4. order_sequences table (seeded with the "orders" counter)
5. orders table

Revision ID: add_order_pipeline_tables_001
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = 'add_order_pipeline_tables_001'
down_revision = None
branch_labels = None
depends_on = None

agent_role = sa.Enum('requester', 'fulfiller', 'admin', name='agentrole')
campaign_status = sa.Enum('active', 'paused', 'completed', 'cancelled', name='campaignstatusdb')
offer_status = sa.Enum('pending', 'accepted', 'rejected', name='offerstatusdb')
order_status = sa.Enum('accepted', 'escrow_funded', 'posted', 'verifying', 'paid', 'failed', name='orderstatusdb')
escrow_phase = sa.Enum('none', 'locked', 'released', 'refunded', name='escrowphasedb')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    ]


def upgrade():
    # 1. agents
    op.create_table('agents',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('role', agent_role, nullable=False),
        sa.Column('verified_author_id', sa.String(100), index=True),
        sa.Column('social_handle', sa.String(100)),
        sa.Column('wallet_address', sa.String(64)),
        *_timestamps()
    )

    # 2. campaigns
    op.create_table('campaigns',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('requester_id', sa.String(36), sa.ForeignKey('agents.id'), nullable=False, index=True),
        sa.Column('brief', sa.Text, nullable=False),
        sa.Column('required_links', sa.JSON),
        sa.Column('disclosure_text', sa.String(255), nullable=False),
        sa.Column('max_price', sa.BigInteger, nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('filled', sa.Integer, nullable=False, server_default='0'),
        sa.Column('retention_window_seconds', sa.Integer),
        sa.Column('status', campaign_status, server_default='active'),
        sa.CheckConstraint('filled <= quantity', name='ck_campaigns_filled_le_quantity'),
        *_timestamps()
    )

    # 3. offers
    op.create_table('offers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('campaign_id', sa.String(36), sa.ForeignKey('campaigns.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('fulfiller_id', sa.String(36), sa.ForeignKey('agents.id'), nullable=False, index=True),
        sa.Column('draft_text', sa.Text, nullable=False),
        sa.Column('price', sa.BigInteger, nullable=False),
        sa.Column('feedback', sa.Text),
        sa.Column('status', offer_status, server_default='pending'),
        sa.Column('accepted_at', sa.DateTime),
        *_timestamps()
    )

    # 4. order_sequences
    sequences = op.create_table('order_sequences',
        sa.Column('name', sa.String(50), primary_key=True),
        sa.Column('last_value', sa.BigInteger, nullable=False, server_default='0'),
    )
    op.bulk_insert(sequences, [{'name': 'orders', 'last_value': 0}])

    # 5. orders
    op.create_table('orders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('campaign_id', sa.String(36), sa.ForeignKey('campaigns.id'), nullable=False, index=True),
        sa.Column('offer_id', sa.String(36), sa.ForeignKey('offers.id'), nullable=False, unique=True),
        sa.Column('requester_id', sa.String(36), sa.ForeignKey('agents.id'), nullable=False, index=True),
        sa.Column('fulfiller_id', sa.String(36), sa.ForeignKey('agents.id'), nullable=False, index=True),
        sa.Column('sequence_no', sa.BigInteger, nullable=False, unique=True),
        sa.Column('amount', sa.BigInteger, nullable=False),
        sa.Column('fee_bps', sa.Integer, nullable=False),
        sa.Column('escrow_handle', sa.String(128), nullable=False),
        sa.Column('escrow_phase', escrow_phase, nullable=False, server_default='none'),
        sa.Column('status', order_status, nullable=False, server_default='accepted', index=True),
        sa.Column('post_id', sa.String(64)),
        sa.Column('post_url', sa.String(500)),
        sa.Column('posted_at', sa.DateTime),
        sa.Column('retention_window_seconds', sa.Integer, nullable=False),
        sa.Column('verify_at', sa.DateTime),
        sa.Column('claimed_at', sa.DateTime),
        sa.Column('verified_at', sa.DateTime),
        sa.Column('verify_result', sa.JSON),
        sa.Column('verify_attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('escrow_funded_signature', sa.String(128)),
        sa.Column('release_signature', sa.String(128)),
        sa.Column('refund_signature', sa.String(128)),
        *_timestamps()
    )


def downgrade():
    op.drop_table('orders')
    op.drop_table('order_sequences')
    op.drop_table('offers')
    op.drop_table('campaigns')
    op.drop_table('agents')
    for enum_type in (escrow_phase, order_status, offer_status, campaign_status, agent_role):
        enum_type.drop(op.get_bind(), checkfirst=True)
