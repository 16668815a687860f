"""
Audit trail writer.

Every state-changing loyalty action is appended to loyalty_audit_logs in
the caller's transaction. Each action has a concrete payload dataclass;
AuditLogger.log() refuses a payload of the wrong type for the action, so
what each action records is fixed in one place.
"""
import logging
from dataclasses import dataclass, field, asdict, fields
from typing import Optional, List, Dict, Any

from ..extensions import db
from ..models.audit_log import AuditAction, AuditLogEntry
from ..utils.exceptions import TenantIsolationError, ValidationError

logger = logging.getLogger(__name__)


# ==================== Payloads ====================

@dataclass
class OfferChange:
    offer_name: str
    changes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VariationChange:
    variation_id: str
    item_name: Optional[str] = None
    variation_name: Optional[str] = None


@dataclass
class PurchaseRecorded:
    order_id: str
    variation_id: str
    quantity: int
    unit_price_cents: Optional[int]
    idempotency_key: str
    customer_source: Optional[str] = None


@dataclass
class RefundProcessed:
    order_id: str
    variation_id: str
    quantity: int
    refund_line_id: str
    original_event_id: int
    affected_reward_id: Optional[int] = None


@dataclass
class WindowExpired:
    expired_quantity: int


@dataclass
class ProgressUpdated:
    required_quantity: int


@dataclass
class RewardEarned:
    required_quantity: int
    locked_event_ids: List[int] = field(default_factory=list)


@dataclass
class RewardRedeemed:
    redemption_id: int
    redemption_type: str
    order_id: Optional[str] = None
    value_cents: Optional[int] = None
    detection_method: Optional[str] = None


@dataclass
class RewardRevoked:
    reason: str
    locked_quantity: int


@dataclass
class SettingUpdated:
    key: str
    old_value: Any = None
    new_value: Any = None


PAYLOAD_TYPES = {
    AuditAction.OFFER_CREATED: OfferChange,
    AuditAction.OFFER_UPDATED: OfferChange,
    AuditAction.OFFER_DEACTIVATED: OfferChange,
    AuditAction.OFFER_DELETED: OfferChange,
    AuditAction.VARIATION_ADDED: VariationChange,
    AuditAction.VARIATION_REMOVED: VariationChange,
    AuditAction.PURCHASE_RECORDED: PurchaseRecorded,
    AuditAction.REFUND_PROCESSED: RefundProcessed,
    AuditAction.WINDOW_EXPIRED: WindowExpired,
    AuditAction.REWARD_PROGRESS_UPDATED: ProgressUpdated,
    AuditAction.REWARD_EARNED: RewardEarned,
    AuditAction.REWARD_REDEEMED: RewardRedeemed,
    AuditAction.REWARD_REVOKED: RewardRevoked,
    AuditAction.SETTING_UPDATED: SettingUpdated,
}


def load_payload(entry: AuditLogEntry):
    """Rebuild the typed payload stored on an audit entry."""
    payload_type = PAYLOAD_TYPES[AuditAction(entry.action)]
    known = {f.name for f in fields(payload_type)}
    return payload_type(**{k: v for k, v in (entry.details or {}).items() if k in known})


class AuditLogger:
    """
    Writes and reads audit entries for a single tenant.
    """

    def __init__(self, tenant_id: int):
        if not tenant_id:
            raise TenantIsolationError('AuditLogger')
        self.tenant_id = tenant_id

    def log(
        self,
        action: AuditAction,
        payload,
        *,
        offer_id: Optional[int] = None,
        reward_id: Optional[int] = None,
        customer_id: Optional[str] = None,
        purchase_event_id: Optional[int] = None,
        redemption_id: Optional[int] = None,
        old_state: Optional[str] = None,
        new_state: Optional[str] = None,
        old_quantity: Optional[int] = None,
        new_quantity: Optional[int] = None,
        triggered_by: str = 'SYSTEM',
        user_id: Optional[str] = None,
    ) -> AuditLogEntry:
        """
        Append an audit entry to the current session (no commit).

        Raises:
            ValidationError: payload is not the dataclass registered for the action
        """
        action = AuditAction(action)
        expected = PAYLOAD_TYPES[action]
        if not isinstance(payload, expected):
            raise ValidationError(
                f"{action.value} expects {expected.__name__}, got {type(payload).__name__}",
                field='payload'
            )

        entry = AuditLogEntry(
            tenant_id=self.tenant_id,
            action=action.value,
            offer_id=offer_id,
            reward_id=reward_id,
            customer_id=customer_id,
            purchase_event_id=purchase_event_id,
            redemption_id=redemption_id,
            old_state=old_state,
            new_state=new_state,
            old_quantity=old_quantity,
            new_quantity=new_quantity,
            triggered_by=triggered_by,
            user_id=user_id,
            details=asdict(payload),
        )
        db.session.add(entry)
        logger.debug(f"Audit {action.value} tenant={self.tenant_id} reward={reward_id} customer={customer_id}")
        return entry

    def query(
        self,
        action: Optional[str] = None,
        customer_id: Optional[str] = None,
        offer_id: Optional[int] = None,
        reward_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """List audit entries, newest first."""
        q = AuditLogEntry.query.filter(AuditLogEntry.tenant_id == self.tenant_id)
        if action:
            q = q.filter(AuditLogEntry.action == AuditAction(action).value)
        if customer_id:
            q = q.filter(AuditLogEntry.customer_id == customer_id)
        if offer_id:
            q = q.filter(AuditLogEntry.offer_id == offer_id)
        if reward_id:
            q = q.filter(AuditLogEntry.reward_id == reward_id)

        total = q.count()
        entries = (
            q.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
            .offset(offset)
            .limit(min(limit, 500))
            .all()
        )
        return {
            'entries': [e.to_dict() for e in entries],
            'total': total,
            'limit': limit,
            'offset': offset,
        }
