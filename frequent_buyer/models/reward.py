"""
Reward state and redemption records.

State machine:
    in_progress -> earned -> redeemed   (terminal)
                   earned -> revoked    (terminal)

A new in_progress reward may start for the same customer/offer after a
previous one reaches a terminal state.
"""
from enum import Enum

from ..extensions import db
from ..utils.dates import utcnow


class RewardStatus(str, Enum):
    """Lifecycle status of a reward."""
    IN_PROGRESS = 'in_progress'  # Accumulating qualifying purchases
    EARNED = 'earned'            # Threshold reached, discount live at the register
    REDEEMED = 'redeemed'        # Consumed (terminal)
    REVOKED = 'revoked'          # Cancelled by refund or expiry (terminal)


TERMINAL_STATUSES = (RewardStatus.REDEEMED.value, RewardStatus.REVOKED.value)

ALLOWED_TRANSITIONS = {
    RewardStatus.IN_PROGRESS.value: {RewardStatus.EARNED.value},
    RewardStatus.EARNED.value: {RewardStatus.REDEEMED.value, RewardStatus.REVOKED.value},
    RewardStatus.REDEEMED.value: set(),
    RewardStatus.REVOKED.value: set(),
}


class RedemptionType(str, Enum):
    """How a reward was consumed."""
    ORDER_DISCOUNT = 'order_discount'  # Discount applied to a POS order
    MANUAL_ADMIN = 'manual_admin'      # Staff redeemed it from the admin
    AUTO_DETECTED = 'auto_detected'    # Found by scanning a completed order


class Reward(db.Model):
    """
    Per customer/offer reward.

    At most one in_progress row exists per (tenant, customer, offer);
    terminal rows are kept as history.
    """
    __tablename__ = 'loyalty_rewards'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    offer_id = db.Column(db.Integer, db.ForeignKey('loyalty_offers.id'), nullable=False, index=True)
    customer_id = db.Column(db.String(100), nullable=False)

    status = db.Column(db.String(20), nullable=False, default=RewardStatus.IN_PROGRESS.value)
    current_quantity = db.Column(db.Integer, nullable=False, default=0)
    required_quantity = db.Column(db.Integer, nullable=False)

    window_start_date = db.Column(db.Date)
    window_end_date = db.Column(db.Date)

    earned_at = db.Column(db.DateTime)
    redeemed_at = db.Column(db.DateTime)
    revoked_at = db.Column(db.DateTime)
    revocation_reason = db.Column(db.String(255))

    # POS discount objects backing an earned reward
    pos_group_id = db.Column(db.String(100))
    pos_discount_id = db.Column(db.String(100), index=True)
    pos_product_set_id = db.Column(db.String(100))
    pos_pricing_rule_id = db.Column(db.String(100), index=True)
    pos_synced_at = db.Column(db.DateTime)

    redemption_order_id = db.Column(db.String(100))

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    offer = db.relationship('Offer', backref=db.backref('rewards', lazy='dynamic'))
    locked_events = db.relationship('PurchaseEvent', backref='reward', lazy='dynamic')

    __table_args__ = (
        db.Index('ix_reward_pair_status', 'tenant_id', 'offer_id', 'customer_id', 'status'),
        db.Index(
            'uq_reward_one_in_progress', 'tenant_id', 'offer_id', 'customer_id',
            unique=True,
            postgresql_where=db.text("status = 'in_progress'"),
            sqlite_where=db.text("status = 'in_progress'"),
        ),
    )

    def __repr__(self):
        return f'<Reward {self.id} {self.status} {self.current_quantity}/{self.required_quantity}>'

    @property
    def has_pos_objects(self) -> bool:
        return any([
            self.pos_group_id, self.pos_discount_id,
            self.pos_product_set_id, self.pos_pricing_rule_id,
        ])

    def can_transition_to(self, status: str) -> bool:
        return status in ALLOWED_TRANSITIONS.get(self.status, set())

    def clear_pos_objects(self):
        self.pos_group_id = None
        self.pos_discount_id = None
        self.pos_product_set_id = None
        self.pos_pricing_rule_id = None
        self.pos_synced_at = None

    def to_dict(self):
        return {
            'id': self.id,
            'offer_id': self.offer_id,
            'offer_name': self.offer.offer_name if self.offer else None,
            'customer_id': self.customer_id,
            'status': self.status,
            'current_quantity': self.current_quantity,
            'required_quantity': self.required_quantity,
            'window_start_date': self.window_start_date.isoformat() if self.window_start_date else None,
            'window_end_date': self.window_end_date.isoformat() if self.window_end_date else None,
            'earned_at': self.earned_at.isoformat() if self.earned_at else None,
            'redeemed_at': self.redeemed_at.isoformat() if self.redeemed_at else None,
            'revoked_at': self.revoked_at.isoformat() if self.revoked_at else None,
            'revocation_reason': self.revocation_reason,
            'pos_synced': self.pos_discount_id is not None,
            'redemption_order_id': self.redemption_order_id,
        }


class Redemption(db.Model):
    """
    Immutable record of how a reward was consumed. One per reward.
    """
    __tablename__ = 'loyalty_redemptions'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    reward_id = db.Column(db.Integer, db.ForeignKey('loyalty_rewards.id'), nullable=False, unique=True)
    offer_id = db.Column(db.Integer, db.ForeignKey('loyalty_offers.id'), nullable=False)
    customer_id = db.Column(db.String(100), nullable=False)

    redemption_type = db.Column(db.String(30), nullable=False)
    order_id = db.Column(db.String(100))
    location_id = db.Column(db.String(100))
    variation_id = db.Column(db.String(100))
    item_name = db.Column(db.String(255))
    value_cents = db.Column(db.Integer)

    redeemed_by = db.Column(db.String(100))
    notes = db.Column(db.Text)
    redeemed_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    reward = db.relationship('Reward', backref=db.backref('redemption', uselist=False))

    __table_args__ = (
        db.Index('ix_redemption_tenant_customer', 'tenant_id', 'customer_id'),
    )

    def __repr__(self):
        return f'<Redemption {self.id} reward={self.reward_id} {self.redemption_type}>'

    def to_dict(self):
        return {
            'id': self.id,
            'reward_id': self.reward_id,
            'offer_id': self.offer_id,
            'customer_id': self.customer_id,
            'redemption_type': self.redemption_type,
            'order_id': self.order_id,
            'location_id': self.location_id,
            'variation_id': self.variation_id,
            'item_name': self.item_name,
            'value_cents': self.value_cents,
            'redeemed_by': self.redeemed_by,
            'notes': self.notes,
            'redeemed_at': self.redeemed_at.isoformat() if self.redeemed_at else None,
        }
