"""
Catch-up reconciliation.

Replays recent completed orders from the POS to recover purchases,
refunds and redemptions that real-time webhooks missed. Safe to re-run:
orders already seen are excluded in bulk and the ledger is idempotent.
"""
import logging
from datetime import timedelta
from typing import Optional, Dict, Any

from flask import current_app, has_app_context

from ..extensions import db
from ..models.tenant import Location
from ..models.offer import Offer, QualifyingVariation
from ..models.purchase_event import PurchaseEvent
from ..models.processing import ProcessedOrder
from ..utils.dates import utcnow
from ..utils.exceptions import TenantIsolationError, POSError
from .order_events import OrderEvent
from .order_intake import OrderIntakeService
from .settings_service import SettingsService

logger = logging.getLogger(__name__)


class CatchupReconciler:
    """
    Batch replay of completed orders for one tenant.
    """

    def __init__(self, tenant_id: int, pos_client, intake: Optional[OrderIntakeService] = None):
        if not tenant_id:
            raise TenantIsolationError('CatchupReconciler')
        self.tenant_id = tenant_id
        self.client = pos_client
        self.intake = intake or OrderIntakeService(tenant_id, pos_client=pos_client)

    def _known_order_ids(self, order_ids) -> set:
        """Orders already represented in the ledger or processed-order table."""
        if not order_ids:
            return set()
        ids = list(order_ids)
        known = {
            row[0] for row in db.session.query(PurchaseEvent.order_id)
            .filter(PurchaseEvent.tenant_id == self.tenant_id, PurchaseEvent.order_id.in_(ids))
            .distinct().all()
        }
        known.update(
            row[0] for row in db.session.query(ProcessedOrder.order_id)
            .filter(ProcessedOrder.tenant_id == self.tenant_id, ProcessedOrder.order_id.in_(ids))
            .all()
        )
        return known

    def _qualifying_variation_ids(self) -> set:
        return {
            row[0] for row in db.session.query(QualifyingVariation.variation_id)
            .join(Offer, Offer.id == QualifyingVariation.offer_id)
            .filter(
                QualifyingVariation.tenant_id == self.tenant_id,
                QualifyingVariation.is_active.is_(True),
                Offer.is_active.is_(True),
            ).all()
        }

    def run(self, hours_back: Optional[int] = None, max_orders: Optional[int] = None) -> Dict[str, Any]:
        """
        Scan completed orders closed in the last `hours_back` hours.

        Returns:
            Stats dict (orders_found, already_known, not_qualifying, processed, failed)
        """
        config = current_app.config if has_app_context() else {}
        settings = SettingsService(self.tenant_id)
        if not settings.is_enabled():
            return {'skipped': True, 'reason': 'loyalty_disabled'}

        hours_back = hours_back or settings.get('catchup_hours_back') or config.get('CATCHUP_HOURS_BACK', 6)
        max_orders = max_orders or config.get('CATCHUP_MAX_ORDERS', 500)

        stats = {
            'orders_found': 0,
            'already_known': 0,
            'not_qualifying': 0,
            'processed': 0,
            'redemptions_detected': 0,
            'failed': 0,
        }

        location_ids = [
            loc.square_location_id for loc in
            Location.query.filter_by(tenant_id=self.tenant_id, active=True).all()
        ]
        if not location_ids:
            logger.info(f"Catch-up skipped for tenant {self.tenant_id}: no active locations")
            return stats

        end = utcnow()
        start = end - timedelta(hours=hours_back)
        try:
            raw_orders = self.client.search_completed_orders(
                location_ids,
                start.strftime('%Y-%m-%dT%H:%M:%SZ'),
                end.strftime('%Y-%m-%dT%H:%M:%SZ'),
                limit=max_orders,
            )
        except POSError as e:
            logger.error(f"Catch-up order search failed for tenant {self.tenant_id}: {e.message}")
            stats['error'] = e.message
            return stats

        stats['orders_found'] = len(raw_orders)
        orders = list({o['id']: OrderEvent.from_square(o) for o in raw_orders if o.get('id')}.values())

        known = self._known_order_ids({o.order_id for o in orders})
        qualifying_ids = self._qualifying_variation_ids()

        unseen_non_qualifying = []
        for order in orders:
            if order.order_id in known:
                stats['already_known'] += 1
                continue

            variation_ids = {li.variation_id for li in order.line_items}
            variation_ids.update(rl.variation_id for rl in order.refund_lines)
            if not variation_ids & qualifying_ids:
                stats['not_qualifying'] += 1
                unseen_non_qualifying.append(order)
                continue

            result = self.intake.process_order(order, origin='catchup')
            if result.get('processed'):
                stats['processed'] += 1
                if result.get('redemption', {}).get('detected'):
                    stats['redemptions_detected'] += 1
            elif result.get('reason') == 'error':
                stats['failed'] += 1

        # Remember non-qualifying orders so later runs skip them in bulk
        for order in unseen_non_qualifying:
            db.session.add(ProcessedOrder(
                tenant_id=self.tenant_id,
                order_id=order.order_id,
                had_qualifying_items=False,
                source='catchup',
            ))
        db.session.commit()

        logger.info(f"Catch-up for tenant {self.tenant_id} ({hours_back}h): {stats}")
        return stats
