"""
Order intake.

Entry point for completed orders and refunds arriving from webhooks,
the catch-up reconciler and the failed-event retry job. Resolves the
customer, feeds qualifying lines to the purchase ledger, applies refunds,
and checks the order for reward redemptions.
"""
import logging
import traceback
from typing import Optional, Dict, Any, Tuple

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models.processing import ProcessedOrder, FailedLoyaltyEvent
from ..utils.exceptions import POSError, TenantIsolationError
from .order_events import OrderEvent
from .purchase_ledger import PurchaseLedger, ALREADY_PROCESSED, NO_CUSTOMER
from .redemption_processor import RedemptionProcessor
from .settings_service import SettingsService

logger = logging.getLogger(__name__)

LOYALTY_DISABLED = 'loyalty_disabled'
NO_QUALIFYING_ITEMS = 'no_qualifying_items'


class OrderIntakeService:
    """
    Processes orders for one tenant.

    Args:
        tenant_id: Tenant the orders belong to
        pos_client: POS client for loyalty lookups and sync tasks
        sync_queue: Queue for post-commit POS sync
    """

    def __init__(self, tenant_id: int, pos_client=None, sync_queue=None):
        if not tenant_id:
            raise TenantIsolationError('OrderIntakeService')
        self.tenant_id = tenant_id
        self.pos_client = pos_client
        self.ledger = PurchaseLedger(tenant_id, pos_client=pos_client, sync_queue=sync_queue)
        self.redemptions = RedemptionProcessor(tenant_id, pos_client=pos_client, sync_queue=sync_queue)
        self.settings = SettingsService(tenant_id)

    def _client(self):
        if self.pos_client is None:
            from ..extensions import pos_clients
            self.pos_client = pos_clients.for_tenant(self.tenant_id)
        return self.pos_client

    def resolve_customer(self, order: OrderEvent) -> Tuple[Optional[str], Optional[str]]:
        """
        Customer for an order: the order itself, then payment tenders, then
        loyalty events recorded against the order id.

        Returns:
            (customer_id, source) or (None, None)
        """
        if order.customer_id:
            return order.customer_id, 'order'
        if order.tender_customer_id:
            return order.tender_customer_id, 'tender'
        try:
            customer_id = self._client().get_customer_id_for_order(order.order_id)
        except POSError as e:
            logger.warning(f"Loyalty lookup failed for order {order.order_id}: {e.message}")
            customer_id = None
        if customer_id:
            return customer_id, 'loyalty_lookup'
        return None, None

    def _mark_processed(self, order: OrderEvent, customer_id, source, had_qualifying, origin):
        db.session.add(ProcessedOrder(
            tenant_id=self.tenant_id,
            order_id=order.order_id,
            customer_id=customer_id,
            customer_source=source,
            had_qualifying_items=had_qualifying,
            source=origin,
        ))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()

    def process_order(
        self,
        order: OrderEvent,
        origin: str = 'webhook',
        absorb_errors: bool = True,
    ) -> Dict[str, Any]:
        """
        Run a completed order through the loyalty engine.

        With absorb_errors, failures are logged and queued as a
        FailedLoyaltyEvent instead of raised.
        """
        try:
            return self._process_order(order, origin)
        except Exception as e:
            db.session.rollback()
            if not absorb_errors:
                raise
            logger.error(f"Loyalty processing failed for order {order.order_id} tenant {self.tenant_id}: {e}")
            logger.debug(traceback.format_exc())
            self.record_failure('order', order, e)
            return {'processed': False, 'reason': 'error', 'error': str(e)}

    def _process_order(self, order: OrderEvent, origin: str) -> Dict[str, Any]:
        if not self.settings.is_enabled():
            logger.debug(f"Loyalty disabled for tenant {self.tenant_id}; skipping order {order.order_id}")
            return {'processed': False, 'reason': LOYALTY_DISABLED}

        if ProcessedOrder.query.filter_by(tenant_id=self.tenant_id, order_id=order.order_id).first():
            return {'processed': False, 'reason': ALREADY_PROCESSED}

        qualifying = [
            li for li in order.line_items
            if li.variation_id and li.quantity > 0 and self.ledger.find_offer_for_variation(li.variation_id)
        ]

        customer_id, source = None, None
        if qualifying or order.refund_lines or order.discounts:
            customer_id, source = self.resolve_customer(order)

        purchases = []
        if qualifying and not customer_id:
            logger.debug(f"Order {order.order_id} has qualifying items but no resolvable customer")
            purchases.append({'processed': False, 'reason': NO_CUSTOMER})
        elif customer_id:
            for item in qualifying:
                # Free units rung up as a redemption do not earn progress
                if item.is_free:
                    continue
                result = self.ledger.record_purchase(
                    order_id=order.order_id,
                    variation_id=item.variation_id,
                    quantity=item.quantity,
                    customer_id=customer_id,
                    unit_price_cents=item.unit_price_cents,
                    purchased_at=order.occurred_at,
                    location_id=order.location_id,
                    customer_source=source,
                )
                purchases.append({'variation_id': item.variation_id, **result})

        refunds = [self._apply_refund_line(line, order, customer_id) for line in order.refund_lines]

        redemption = {'detected': False}
        if self.settings.get('auto_detect_redemptions') and (order.discounts or qualifying):
            redemption = self.redemptions.detect_redemption_from_order(order, customer_id=customer_id)

        self._mark_processed(order, customer_id, source, bool(qualifying), origin)

        return {
            'processed': True,
            'order_id': order.order_id,
            'customer_id': customer_id,
            'customer_source': source,
            'purchases': purchases,
            'refunds': refunds,
            'redemption': redemption,
        }

    def _apply_refund_line(self, line, order: OrderEvent, customer_id):
        if not line.variation_id:
            return {'refund_line_id': line.uid, 'processed': False, 'reason': 'variation_not_qualifying'}
        result = self.ledger.record_refund(
            order_id=line.source_order_id or order.order_id,
            variation_id=line.variation_id,
            quantity=line.quantity,
            refund_line_id=line.uid,
            customer_id=customer_id,
            refunded_at=order.occurred_at,
        )
        return {'refund_line_id': line.uid, **result}

    def process_refund(self, order: OrderEvent, absorb_errors: bool = True) -> Dict[str, Any]:
        """Apply the refund lines of a return order."""
        try:
            if not self.settings.is_enabled():
                return {'processed': False, 'reason': LOYALTY_DISABLED}
            customer_id = order.customer_id or order.tender_customer_id
            refunds = [self._apply_refund_line(line, order, customer_id) for line in order.refund_lines]
            return {'processed': True, 'order_id': order.order_id, 'refunds': refunds}
        except Exception as e:
            db.session.rollback()
            if not absorb_errors:
                raise
            logger.error(f"Loyalty refund processing failed for order {order.order_id}: {e}")
            self.record_failure('refund', order, e)
            return {'processed': False, 'reason': 'error', 'error': str(e)}

    def record_failure(self, event_type: str, order: OrderEvent, error: Exception) -> Optional[FailedLoyaltyEvent]:
        """Queue a failed order for out-of-band retry."""
        try:
            failed = FailedLoyaltyEvent(
                tenant_id=self.tenant_id,
                event_type=event_type,
                order_id=order.order_id,
                payload={'format': 'square' if 'id' in order.raw else 'neutral', 'order': order.raw},
            )
            failed.schedule_retry(str(error))
            db.session.add(failed)
            db.session.commit()
            return failed
        except Exception as e:
            db.session.rollback()
            logger.error(f"Could not queue failed loyalty event for order {order.order_id}: {e}")
            return None


def order_from_payload(payload: Dict[str, Any]) -> OrderEvent:
    """Rebuild an OrderEvent from a stored FailedLoyaltyEvent payload."""
    if payload.get('format') == 'neutral':
        return OrderEvent.from_dict(payload['order'])
    return OrderEvent.from_square(payload['order'])
