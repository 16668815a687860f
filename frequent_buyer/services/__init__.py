"""
Business logic services for the frequent buyer platform.
"""
from .window_calculator import calculate_window
from .audit_logger import AuditLogger
from .customer_summary import CustomerSummaryProjector
from .reward_state_machine import RewardStateMachine, RecomputeOutcome
from .purchase_ledger import PurchaseLedger
from .redemption_processor import RedemptionProcessor, RedemptionContext
from .pos_client import POSClient, SquareClient
from .pos_reward_sync import POSRewardSync
from .pos_sync_queue import PosSyncQueue, sync_queue
from .order_events import OrderEvent, LineItem, AppliedDiscount, RefundLine
from .order_intake import OrderIntakeService
from .catchup_reconciler import CatchupReconciler
from .expiration_service import ExpirationService
from .failed_event_retry import retry_failed_events
from .offer_admin import OfferAdminService
from .settings_service import SettingsService

__all__ = [
    'calculate_window',
    'AuditLogger',
    'CustomerSummaryProjector',
    'RewardStateMachine',
    'RecomputeOutcome',
    'PurchaseLedger',
    'RedemptionProcessor',
    'RedemptionContext',
    'POSClient',
    'SquareClient',
    'POSRewardSync',
    'PosSyncQueue',
    'sync_queue',
    'OrderEvent',
    'LineItem',
    'AppliedDiscount',
    'RefundLine',
    'OrderIntakeService',
    'CatchupReconciler',
    'ExpirationService',
    'retry_failed_events',
    'OfferAdminService',
    'SettingsService',
]
