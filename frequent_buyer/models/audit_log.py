"""
Loyalty audit trail.

Append-only: one row per state-changing action. Rows are written through
services.audit_logger.AuditLogger, which validates the payload shape for
each action before it is stored in `details`.
"""
from enum import Enum

from ..extensions import db
from ..utils.dates import utcnow


class AuditAction(str, Enum):
    """State-changing actions recorded in the audit trail."""
    OFFER_CREATED = 'OFFER_CREATED'
    OFFER_UPDATED = 'OFFER_UPDATED'
    OFFER_DEACTIVATED = 'OFFER_DEACTIVATED'
    OFFER_DELETED = 'OFFER_DELETED'
    VARIATION_ADDED = 'VARIATION_ADDED'
    VARIATION_REMOVED = 'VARIATION_REMOVED'
    PURCHASE_RECORDED = 'PURCHASE_RECORDED'
    REFUND_PROCESSED = 'REFUND_PROCESSED'
    WINDOW_EXPIRED = 'WINDOW_EXPIRED'
    REWARD_PROGRESS_UPDATED = 'REWARD_PROGRESS_UPDATED'
    REWARD_EARNED = 'REWARD_EARNED'
    REWARD_REDEEMED = 'REWARD_REDEEMED'
    REWARD_REVOKED = 'REWARD_REVOKED'
    SETTING_UPDATED = 'SETTING_UPDATED'


class AuditLogEntry(db.Model):
    __tablename__ = 'loyalty_audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    action = db.Column(db.String(50), nullable=False)

    # Affected entities
    offer_id = db.Column(db.Integer, index=True)
    reward_id = db.Column(db.Integer, index=True)
    purchase_event_id = db.Column(db.Integer)
    redemption_id = db.Column(db.Integer)
    customer_id = db.Column(db.String(100), index=True)

    # Before / after
    old_state = db.Column(db.String(20))
    new_state = db.Column(db.String(20))
    old_quantity = db.Column(db.Integer)
    new_quantity = db.Column(db.Integer)

    triggered_by = db.Column(db.String(20), default='SYSTEM')  # SYSTEM, ADMIN, WEBHOOK
    user_id = db.Column(db.String(100))
    details = db.Column(db.JSON, default=dict)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        db.Index('ix_audit_tenant_action', 'tenant_id', 'action'),
    )

    def __repr__(self):
        return f'<AuditLogEntry {self.id} {self.action}>'

    def to_dict(self):
        return {
            'id': self.id,
            'action': self.action,
            'offer_id': self.offer_id,
            'reward_id': self.reward_id,
            'purchase_event_id': self.purchase_event_id,
            'redemption_id': self.redemption_id,
            'customer_id': self.customer_id,
            'old_state': self.old_state,
            'new_state': self.new_state,
            'old_quantity': self.old_quantity,
            'new_quantity': self.new_quantity,
            'triggered_by': self.triggered_by,
            'user_id': self.user_id,
            'details': self.details or {},
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
