"""
Database models for the frequent buyer platform.
Offers, the purchase ledger, rewards and their audit trail.
"""
from .tenant import Tenant, Location
from .offer import Offer, QualifyingVariation
from .purchase_event import PurchaseEvent
from .reward import (
    RewardStatus,
    RedemptionType,
    TERMINAL_STATUSES,
    Reward,
    Redemption,
)
from .customer_summary import CustomerSummary
from .audit_log import AuditAction, AuditLogEntry
from .processing import ProcessedOrder, FailedLoyaltyEvent

__all__ = [
    'Tenant',
    'Location',
    'Offer',
    'QualifyingVariation',
    'PurchaseEvent',
    'RewardStatus',
    'RedemptionType',
    'TERMINAL_STATUSES',
    'Reward',
    'Redemption',
    'CustomerSummary',
    'AuditAction',
    'AuditLogEntry',
    'ProcessedOrder',
    'FailedLoyaltyEvent',
]
