"""Create frequent buyer loyalty tables

Revision ID: f1a2b3c4d5e6
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'f1a2b3c4d5e6'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Create tenant, offer, ledger, reward and processing tables."""
    op.create_table(
        'tenants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('shop_name', sa.String(255), nullable=False),
        sa.Column('shop_slug', sa.String(100), nullable=False),
        sa.Column('square_merchant_id', sa.String(100), nullable=True),
        sa.Column('square_access_token', sa.Text(), nullable=True),
        sa.Column('settings', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('shop_slug')
    )
    op.create_index('ix_tenants_square_merchant_id', 'tenants', ['square_merchant_id'])

    op.create_table(
        'locations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('square_location_id', sa.String(100), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'square_location_id', name='uq_location_tenant_square_id')
    )
    op.create_index('ix_locations_tenant_id', 'locations', ['tenant_id'])

    op.create_table(
        'loyalty_offers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('offer_name', sa.String(255), nullable=False),
        sa.Column('brand_name', sa.String(255), nullable=False),
        sa.Column('size_group', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('required_quantity', sa.Integer(), nullable=False),
        sa.Column('reward_quantity', sa.Integer(), nullable=False),
        sa.Column('window_months', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_by', sa.String(100), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'brand_name', 'size_group', name='uq_offer_tenant_brand_size')
    )
    op.create_index('ix_loyalty_offers_tenant_id', 'loyalty_offers', ['tenant_id'])

    op.create_table(
        'loyalty_qualifying_variations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('offer_id', sa.Integer(), nullable=False),
        sa.Column('variation_id', sa.String(100), nullable=False),
        sa.Column('item_id', sa.String(100), nullable=True),
        sa.Column('item_name', sa.String(255), nullable=True),
        sa.Column('variation_name', sa.String(255), nullable=True),
        sa.Column('sku', sa.String(100), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.ForeignKeyConstraint(['offer_id'], ['loyalty_offers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'offer_id', 'variation_id', name='uq_variation_tenant_offer')
    )
    op.create_index('ix_loyalty_qualifying_variations_tenant_id', 'loyalty_qualifying_variations', ['tenant_id'])
    op.create_index('ix_loyalty_qualifying_variations_offer_id', 'loyalty_qualifying_variations', ['offer_id'])
    op.create_index('ix_variation_tenant_variation', 'loyalty_qualifying_variations', ['tenant_id', 'variation_id'])

    op.create_table(
        'loyalty_rewards',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('offer_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.String(100), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('current_quantity', sa.Integer(), nullable=False),
        sa.Column('required_quantity', sa.Integer(), nullable=False),
        sa.Column('window_start_date', sa.Date(), nullable=True),
        sa.Column('window_end_date', sa.Date(), nullable=True),
        sa.Column('earned_at', sa.DateTime(), nullable=True),
        sa.Column('redeemed_at', sa.DateTime(), nullable=True),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('revocation_reason', sa.String(255), nullable=True),
        sa.Column('pos_group_id', sa.String(100), nullable=True),
        sa.Column('pos_discount_id', sa.String(100), nullable=True),
        sa.Column('pos_product_set_id', sa.String(100), nullable=True),
        sa.Column('pos_pricing_rule_id', sa.String(100), nullable=True),
        sa.Column('pos_synced_at', sa.DateTime(), nullable=True),
        sa.Column('redemption_order_id', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.ForeignKeyConstraint(['offer_id'], ['loyalty_offers.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_loyalty_rewards_tenant_id', 'loyalty_rewards', ['tenant_id'])
    op.create_index('ix_loyalty_rewards_offer_id', 'loyalty_rewards', ['offer_id'])
    op.create_index('ix_loyalty_rewards_pos_discount_id', 'loyalty_rewards', ['pos_discount_id'])
    op.create_index('ix_loyalty_rewards_pos_pricing_rule_id', 'loyalty_rewards', ['pos_pricing_rule_id'])
    op.create_index('ix_reward_pair_status', 'loyalty_rewards', ['tenant_id', 'offer_id', 'customer_id', 'status'])
    op.create_index(
        'uq_reward_one_in_progress', 'loyalty_rewards', ['tenant_id', 'offer_id', 'customer_id'],
        unique=True,
        postgresql_where=sa.text("status = 'in_progress'"),
        sqlite_where=sa.text("status = 'in_progress'"),
    )

    op.create_table(
        'loyalty_purchase_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('offer_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.String(100), nullable=False),
        sa.Column('order_id', sa.String(100), nullable=False),
        sa.Column('location_id', sa.String(100), nullable=True),
        sa.Column('variation_id', sa.String(100), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=True),
        sa.Column('purchased_at', sa.DateTime(), nullable=False),
        sa.Column('window_start_date', sa.Date(), nullable=False),
        sa.Column('window_end_date', sa.Date(), nullable=False),
        sa.Column('reward_id', sa.Integer(), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('is_refund', sa.Boolean(), nullable=False),
        sa.Column('original_event_id', sa.Integer(), nullable=True),
        sa.Column('refund_line_id', sa.String(100), nullable=True),
        sa.Column('split_from_event_id', sa.Integer(), nullable=True),
        sa.Column('split_role', sa.String(10), nullable=True),
        sa.Column('customer_source', sa.String(30), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.ForeignKeyConstraint(['offer_id'], ['loyalty_offers.id'], ),
        sa.ForeignKeyConstraint(['reward_id'], ['loyalty_rewards.id'], ),
        sa.ForeignKeyConstraint(['original_event_id'], ['loyalty_purchase_events.id'], ),
        sa.ForeignKeyConstraint(['split_from_event_id'], ['loyalty_purchase_events.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'idempotency_key', name='uq_purchase_event_idempotency')
    )
    op.create_index('ix_loyalty_purchase_events_tenant_id', 'loyalty_purchase_events', ['tenant_id'])
    op.create_index('ix_loyalty_purchase_events_offer_id', 'loyalty_purchase_events', ['offer_id'])
    op.create_index('ix_loyalty_purchase_events_order_id', 'loyalty_purchase_events', ['order_id'])
    op.create_index('ix_loyalty_purchase_events_reward_id', 'loyalty_purchase_events', ['reward_id'])
    op.create_index('ix_loyalty_purchase_events_original_event_id', 'loyalty_purchase_events', ['original_event_id'])
    op.create_index('ix_loyalty_purchase_events_refund_line_id', 'loyalty_purchase_events', ['refund_line_id'])
    op.create_index('ix_loyalty_purchase_events_split_from_event_id', 'loyalty_purchase_events', ['split_from_event_id'])
    op.create_index('ix_purchase_event_pair', 'loyalty_purchase_events', ['tenant_id', 'offer_id', 'customer_id'])
    op.create_index('ix_purchase_event_order_variation', 'loyalty_purchase_events', ['tenant_id', 'order_id', 'variation_id'])

    op.create_table(
        'loyalty_redemptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('reward_id', sa.Integer(), nullable=False),
        sa.Column('offer_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.String(100), nullable=False),
        sa.Column('redemption_type', sa.String(30), nullable=False),
        sa.Column('order_id', sa.String(100), nullable=True),
        sa.Column('location_id', sa.String(100), nullable=True),
        sa.Column('variation_id', sa.String(100), nullable=True),
        sa.Column('item_name', sa.String(255), nullable=True),
        sa.Column('value_cents', sa.Integer(), nullable=True),
        sa.Column('redeemed_by', sa.String(100), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('redeemed_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.ForeignKeyConstraint(['reward_id'], ['loyalty_rewards.id'], ),
        sa.ForeignKeyConstraint(['offer_id'], ['loyalty_offers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reward_id')
    )
    op.create_index('ix_loyalty_redemptions_tenant_id', 'loyalty_redemptions', ['tenant_id'])
    op.create_index('ix_redemption_tenant_customer', 'loyalty_redemptions', ['tenant_id', 'customer_id'])

    op.create_table(
        'loyalty_customer_summaries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.String(100), nullable=False),
        sa.Column('offer_id', sa.Integer(), nullable=False),
        sa.Column('current_quantity', sa.Integer(), nullable=False),
        sa.Column('required_quantity', sa.Integer(), nullable=False),
        sa.Column('window_start_date', sa.Date(), nullable=True),
        sa.Column('window_end_date', sa.Date(), nullable=True),
        sa.Column('has_earned_reward', sa.Boolean(), nullable=False),
        sa.Column('earned_reward_id', sa.Integer(), nullable=True),
        sa.Column('lifetime_purchases', sa.Integer(), nullable=False),
        sa.Column('lifetime_refunds', sa.Integer(), nullable=False),
        sa.Column('total_rewards_earned', sa.Integer(), nullable=False),
        sa.Column('total_rewards_redeemed', sa.Integer(), nullable=False),
        sa.Column('total_rewards_revoked', sa.Integer(), nullable=False),
        sa.Column('last_purchase_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.ForeignKeyConstraint(['offer_id'], ['loyalty_offers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'customer_id', 'offer_id', name='uq_summary_tenant_customer_offer')
    )
    op.create_index('ix_loyalty_customer_summaries_tenant_id', 'loyalty_customer_summaries', ['tenant_id'])

    op.create_table(
        'loyalty_audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('offer_id', sa.Integer(), nullable=True),
        sa.Column('reward_id', sa.Integer(), nullable=True),
        sa.Column('purchase_event_id', sa.Integer(), nullable=True),
        sa.Column('redemption_id', sa.Integer(), nullable=True),
        sa.Column('customer_id', sa.String(100), nullable=True),
        sa.Column('old_state', sa.String(20), nullable=True),
        sa.Column('new_state', sa.String(20), nullable=True),
        sa.Column('old_quantity', sa.Integer(), nullable=True),
        sa.Column('new_quantity', sa.Integer(), nullable=True),
        sa.Column('triggered_by', sa.String(20), nullable=True),
        sa.Column('user_id', sa.String(100), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_loyalty_audit_logs_tenant_id', 'loyalty_audit_logs', ['tenant_id'])
    op.create_index('ix_loyalty_audit_logs_offer_id', 'loyalty_audit_logs', ['offer_id'])
    op.create_index('ix_loyalty_audit_logs_reward_id', 'loyalty_audit_logs', ['reward_id'])
    op.create_index('ix_loyalty_audit_logs_customer_id', 'loyalty_audit_logs', ['customer_id'])
    op.create_index('ix_loyalty_audit_logs_created_at', 'loyalty_audit_logs', ['created_at'])
    op.create_index('ix_audit_tenant_action', 'loyalty_audit_logs', ['tenant_id', 'action'])

    op.create_table(
        'loyalty_processed_orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.String(100), nullable=False),
        sa.Column('customer_id', sa.String(100), nullable=True),
        sa.Column('customer_source', sa.String(30), nullable=True),
        sa.Column('had_qualifying_items', sa.Boolean(), nullable=False),
        sa.Column('source', sa.String(20), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'order_id', name='uq_processed_order_tenant_order')
    )

    op.create_table(
        'loyalty_failed_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(30), nullable=False),
        sa.Column('order_id', sa.String(100), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_loyalty_failed_events_tenant_id', 'loyalty_failed_events', ['tenant_id'])


def downgrade():
    """Drop frequent buyer tables."""
    op.drop_table('loyalty_failed_events')
    op.drop_table('loyalty_processed_orders')
    op.drop_table('loyalty_audit_logs')
    op.drop_table('loyalty_customer_summaries')
    op.drop_table('loyalty_redemptions')
    op.drop_table('loyalty_purchase_events')
    op.drop_table('loyalty_rewards')
    op.drop_table('loyalty_qualifying_variations')
    op.drop_table('loyalty_offers')
    op.drop_table('locations')
    op.drop_table('tenants')
