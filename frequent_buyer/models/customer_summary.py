"""
Denormalized per customer/offer read model.

Purely derived from the ledger and reward tables; safe to drop and rebuild.
"""
from ..extensions import db
from ..utils.dates import utcnow


class CustomerSummary(db.Model):
    __tablename__ = 'loyalty_customer_summaries'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    customer_id = db.Column(db.String(100), nullable=False)
    offer_id = db.Column(db.Integer, db.ForeignKey('loyalty_offers.id'), nullable=False)

    current_quantity = db.Column(db.Integer, default=0, nullable=False)
    required_quantity = db.Column(db.Integer, nullable=False)
    window_start_date = db.Column(db.Date)
    window_end_date = db.Column(db.Date)

    has_earned_reward = db.Column(db.Boolean, default=False, nullable=False)
    earned_reward_id = db.Column(db.Integer)

    # Lifetime counters
    lifetime_purchases = db.Column(db.Integer, default=0, nullable=False)
    lifetime_refunds = db.Column(db.Integer, default=0, nullable=False)
    total_rewards_earned = db.Column(db.Integer, default=0, nullable=False)
    total_rewards_redeemed = db.Column(db.Integer, default=0, nullable=False)
    total_rewards_revoked = db.Column(db.Integer, default=0, nullable=False)
    last_purchase_at = db.Column(db.DateTime)

    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    offer = db.relationship('Offer')

    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'customer_id', 'offer_id', name='uq_summary_tenant_customer_offer'),
    )

    def to_dict(self):
        return {
            'customer_id': self.customer_id,
            'offer_id': self.offer_id,
            'offer_name': self.offer.offer_name if self.offer else None,
            'current_quantity': self.current_quantity,
            'required_quantity': self.required_quantity,
            'window_start_date': self.window_start_date.isoformat() if self.window_start_date else None,
            'window_end_date': self.window_end_date.isoformat() if self.window_end_date else None,
            'has_earned_reward': self.has_earned_reward,
            'earned_reward_id': self.earned_reward_id,
            'lifetime_purchases': self.lifetime_purchases,
            'lifetime_refunds': self.lifetime_refunds,
            'total_rewards_earned': self.total_rewards_earned,
            'total_rewards_redeemed': self.total_rewards_redeemed,
            'total_rewards_revoked': self.total_rewards_revoked,
            'last_purchase_at': self.last_purchase_at.isoformat() if self.last_purchase_at else None,
        }
