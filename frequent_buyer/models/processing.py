"""
Order processing bookkeeping.

ProcessedOrder marks every order intake has evaluated, qualifying or not,
so the catch-up reconciler can exclude them in bulk. FailedLoyaltyEvent
holds webhook payloads whose processing raised, for out-of-band retry.
"""
from datetime import timedelta

from ..extensions import db
from ..utils.dates import utcnow


class ProcessedOrder(db.Model):
    __tablename__ = 'loyalty_processed_orders'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    order_id = db.Column(db.String(100), nullable=False)
    customer_id = db.Column(db.String(100))
    customer_source = db.Column(db.String(30))
    had_qualifying_items = db.Column(db.Boolean, default=False, nullable=False)
    source = db.Column(db.String(20), default='webhook')  # webhook, catchup, retry
    processed_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'order_id', name='uq_processed_order_tenant_order'),
    )

    def __repr__(self):
        return f'<ProcessedOrder {self.order_id}>'


class FailedLoyaltyEvent(db.Model):
    """
    Webhook or catch-up payload that failed processing.

    Retried with exponential backoff until max attempts is reached.
    """
    __tablename__ = 'loyalty_failed_events'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    event_type = db.Column(db.String(30), nullable=False)  # order, refund
    order_id = db.Column(db.String(100))
    payload = db.Column(db.JSON, nullable=False)

    last_error = db.Column(db.Text)
    attempts = db.Column(db.Integer, default=0, nullable=False)
    next_attempt_at = db.Column(db.DateTime, default=utcnow)
    resolved_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f'<FailedLoyaltyEvent {self.id} {self.event_type} attempts={self.attempts}>'

    def schedule_retry(self, error: str):
        """Record a failed attempt and push the next one out (2, 4, 8... minutes)."""
        self.attempts = (self.attempts or 0) + 1
        self.last_error = error
        self.next_attempt_at = utcnow() + timedelta(minutes=2 ** self.attempts)

    def to_dict(self):
        return {
            'id': self.id,
            'event_type': self.event_type,
            'order_id': self.order_id,
            'last_error': self.last_error,
            'attempts': self.attempts,
            'next_attempt_at': self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
        }
