"""
Retry of failed loyalty events.

Payloads whose processing raised are retried with exponential backoff
until FAILED_EVENT_MAX_ATTEMPTS.
"""
import logging
from typing import Dict

from flask import current_app

from ..extensions import db
from ..models.processing import FailedLoyaltyEvent
from ..utils.dates import utcnow
from ..utils.exceptions import TenantIsolationError
from .order_intake import OrderIntakeService, order_from_payload

logger = logging.getLogger(__name__)


def retry_failed_events(tenant_id: int, pos_client=None, limit: int = 50) -> Dict[str, int]:
    """
    Retry due failed events for a tenant.

    Returns:
        Dict with resolved, failed and exhausted counts
    """
    if not tenant_id:
        raise TenantIsolationError('retry_failed_events')

    max_attempts = current_app.config.get('FAILED_EVENT_MAX_ATTEMPTS', 5)
    due = (
        FailedLoyaltyEvent.query
        .filter(
            FailedLoyaltyEvent.tenant_id == tenant_id,
            FailedLoyaltyEvent.resolved_at.is_(None),
            FailedLoyaltyEvent.attempts < max_attempts,
            FailedLoyaltyEvent.next_attempt_at <= utcnow(),
        )
        .order_by(FailedLoyaltyEvent.next_attempt_at)
        .limit(limit)
        .all()
    )

    stats = {'resolved': 0, 'failed': 0, 'exhausted': 0}
    intake = OrderIntakeService(tenant_id, pos_client=pos_client)

    for event in due:
        order = order_from_payload(event.payload)
        try:
            if event.event_type == 'refund':
                intake.process_refund(order, absorb_errors=False)
            else:
                intake.process_order(order, origin='retry', absorb_errors=False)
            event.resolved_at = utcnow()
            stats['resolved'] += 1
        except Exception as e:
            db.session.rollback()
            event = FailedLoyaltyEvent.query.get(event.id)
            event.schedule_retry(str(e))
            if event.attempts >= max_attempts:
                stats['exhausted'] += 1
                logger.error(
                    f"Giving up on failed loyalty event {event.id} (order {event.order_id}) "
                    f"after {event.attempts} attempts: {e}"
                )
            else:
                stats['failed'] += 1
        db.session.commit()

    if due:
        logger.info(f"Failed event retry for tenant {tenant_id}: {stats}")
    return stats
