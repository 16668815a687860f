"""
Purchase event ledger.

Append-only record of every qualifying purchase and refund. A row is
never deleted; the only mutation allowed is setting or clearing
reward_id when units are locked into (or released from) an earned reward.

Split rows: when a purchase crosses a reward threshold with more units
than are still needed, it is superseded by two child rows (split_role
'locked' and 'excess') pointing back at it through split_from_event_id.
Superseded parents are excluded from every quantity sum.
"""
from sqlalchemy import exists
from sqlalchemy.orm import aliased

from ..extensions import db
from ..utils.dates import utcnow


class PurchaseEvent(db.Model):
    """
    Single ledger row. Positive quantity is a purchase, negative a refund.
    """
    __tablename__ = 'loyalty_purchase_events'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    offer_id = db.Column(db.Integer, db.ForeignKey('loyalty_offers.id'), nullable=False, index=True)
    customer_id = db.Column(db.String(100), nullable=False)

    # Source order
    order_id = db.Column(db.String(100), nullable=False, index=True)
    location_id = db.Column(db.String(100))
    variation_id = db.Column(db.String(100), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)  # Signed
    unit_price_cents = db.Column(db.Integer)
    purchased_at = db.Column(db.DateTime, nullable=False)

    # Rolling window
    window_start_date = db.Column(db.Date, nullable=False)
    window_end_date = db.Column(db.Date, nullable=False)

    # Set once the units are locked into an earned reward
    reward_id = db.Column(db.Integer, db.ForeignKey('loyalty_rewards.id'), index=True)

    idempotency_key = db.Column(db.String(255), nullable=False)

    # Refunds
    is_refund = db.Column(db.Boolean, default=False, nullable=False)
    original_event_id = db.Column(db.Integer, db.ForeignKey('loyalty_purchase_events.id'), index=True)
    refund_line_id = db.Column(db.String(100), index=True)

    # Split rows
    split_from_event_id = db.Column(db.Integer, db.ForeignKey('loyalty_purchase_events.id'), index=True)
    split_role = db.Column(db.String(10))  # locked, excess

    # How the customer was identified: order, tender, loyalty_lookup, original_purchase
    customer_source = db.Column(db.String(30))

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'idempotency_key', name='uq_purchase_event_idempotency'),
        db.Index('ix_purchase_event_pair', 'tenant_id', 'offer_id', 'customer_id'),
        db.Index('ix_purchase_event_order_variation', 'tenant_id', 'order_id', 'variation_id'),
    )

    def __repr__(self):
        return f'<PurchaseEvent {self.id} {self.order_id}:{self.variation_id} qty={self.quantity}>'

    @classmethod
    def not_superseded(cls):
        """Filter clause excluding rows that have been replaced by split children."""
        child = aliased(cls)
        return ~exists().where(child.split_from_event_id == cls.id)

    @classmethod
    def for_pair(cls, tenant_id: int, customer_id: str, offer_id: int):
        return cls.query.filter(
            cls.tenant_id == tenant_id,
            cls.customer_id == customer_id,
            cls.offer_id == offer_id,
        )

    @classmethod
    def unlocked_active(cls, tenant_id: int, customer_id: str, offer_id: int, today):
        """Unlocked, unexpired, non-superseded rows for a customer/offer pair."""
        return cls.for_pair(tenant_id, customer_id, offer_id).filter(
            cls.reward_id.is_(None),
            cls.window_end_date >= today,
            cls.not_superseded(),
        )

    def to_dict(self):
        return {
            'id': self.id,
            'offer_id': self.offer_id,
            'customer_id': self.customer_id,
            'order_id': self.order_id,
            'location_id': self.location_id,
            'variation_id': self.variation_id,
            'quantity': self.quantity,
            'unit_price_cents': self.unit_price_cents,
            'purchased_at': self.purchased_at.isoformat() if self.purchased_at else None,
            'window_start_date': self.window_start_date.isoformat() if self.window_start_date else None,
            'window_end_date': self.window_end_date.isoformat() if self.window_end_date else None,
            'reward_id': self.reward_id,
            'is_refund': self.is_refund,
            'original_event_id': self.original_event_id,
            'split_from_event_id': self.split_from_event_id,
            'split_role': self.split_role,
            'customer_source': self.customer_source,
        }
