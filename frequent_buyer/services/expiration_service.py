"""
Window expiry sweeps.

Purchases leave a customer's progress once their window ends, even
without a new purchase for the pair. These sweeps bring reward state and
summaries up to date with the calendar.
"""
import logging
from typing import Dict, Any

from ..extensions import db
from ..models.offer import Offer
from ..models.purchase_event import PurchaseEvent
from ..models.reward import Reward, RewardStatus
from ..models.customer_summary import CustomerSummary
from ..models.audit_log import AuditAction
from ..utils.dates import utc_today
from ..utils.exceptions import TenantIsolationError
from .audit_logger import AuditLogger, WindowExpired
from .reward_state_machine import RewardStateMachine, EXPIRED_REVOKE_REASON

logger = logging.getLogger(__name__)


class ExpirationService:
    """
    Service for window-expiry sweeps of one tenant.
    """

    def __init__(self, tenant_id: int, pos_client=None, sync_queue=None):
        if not tenant_id:
            raise TenantIsolationError('ExpirationService')
        self.tenant_id = tenant_id
        self.pos_client = pos_client
        if sync_queue is None:
            from .pos_sync_queue import sync_queue as default_queue
            sync_queue = default_queue
        self.sync_queue = sync_queue
        self.audit = AuditLogger(tenant_id)
        self.machine = RewardStateMachine(tenant_id, audit=self.audit)

    def _pairs_with_progress(self) -> set:
        pairs = {
            (r.customer_id, r.offer_id) for r in Reward.query.filter_by(
                tenant_id=self.tenant_id, status=RewardStatus.IN_PROGRESS.value
            ).all()
        }
        pairs.update(
            (s.customer_id, s.offer_id) for s in CustomerSummary.query.filter(
                CustomerSummary.tenant_id == self.tenant_id,
                CustomerSummary.current_quantity > 0,
            ).all()
        )
        return pairs

    def process_expired_windows(self) -> Dict[str, Any]:
        """
        Recompute every pair whose progress includes purchases that have
        left their window.

        Returns:
            Dict with processed_count
        """
        today = utc_today()
        offers = {o.id: o for o in Offer.query.filter_by(tenant_id=self.tenant_id).all()}
        processed = 0

        for customer_id, offer_id in sorted(self._pairs_with_progress()):
            offer = offers.get(offer_id)
            if not offer:
                continue
            try:
                self.machine.lock_pair(customer_id, offer_id)
                summary = CustomerSummary.query.filter_by(
                    tenant_id=self.tenant_id, customer_id=customer_id, offer_id=offer_id
                ).first()
                in_progress = Reward.query.filter_by(
                    tenant_id=self.tenant_id, customer_id=customer_id,
                    offer_id=offer_id, status=RewardStatus.IN_PROGRESS.value,
                ).first()

                old_quantity = (
                    in_progress.current_quantity if in_progress
                    else (summary.current_quantity if summary else 0)
                )
                new_quantity = self.machine.current_quantity(customer_id, offer_id, today)
                if new_quantity == old_quantity:
                    db.session.rollback()
                    continue

                outcome = self.machine.recompute(customer_id, offer)
                self.audit.log(
                    AuditAction.WINDOW_EXPIRED,
                    WindowExpired(expired_quantity=old_quantity - new_quantity),
                    offer_id=offer_id,
                    reward_id=outcome.reward_id,
                    customer_id=customer_id,
                    old_quantity=old_quantity,
                    new_quantity=new_quantity,
                )
                db.session.commit()
                processed += 1
            except Exception as e:
                db.session.rollback()
                logger.error(f"Error expiring window for customer {customer_id} offer {offer_id}: {e}")
                raise

        logger.info(f"Expired window processing complete for tenant {self.tenant_id}: {processed} pairs")
        return {'processed_count': processed}

    def process_expired_earned_rewards(self) -> Dict[str, Any]:
        """
        Revoke earned rewards whose locked purchases have all left their
        windows, and tear down their POS discounts.
        """
        today = utc_today()
        revoked_ids = []

        earned = Reward.query.filter_by(
            tenant_id=self.tenant_id, status=RewardStatus.EARNED.value
        ).all()
        for candidate in earned:
            live = PurchaseEvent.query.filter(
                PurchaseEvent.tenant_id == self.tenant_id,
                PurchaseEvent.reward_id == candidate.id,
                PurchaseEvent.window_end_date >= today,
                PurchaseEvent.not_superseded(),
            ).count()
            if live:
                continue

            try:
                reward = self.machine.get_locked_reward(candidate.id)
                if not reward or reward.status != RewardStatus.EARNED.value:
                    db.session.rollback()
                    continue
                self.machine.revoke(reward, EXPIRED_REVOKE_REASON)
                self.machine.projector.refresh(reward.customer_id, reward.offer)
                db.session.commit()
                revoked_ids.append(reward.id)
            except Exception as e:
                db.session.rollback()
                logger.error(f"Error expiring earned reward {candidate.id}: {e}")
                raise

        if revoked_ids:
            self.sync_queue.dispatch(self.tenant_id, deactivate_ids=revoked_ids, pos_client=self.pos_client)
        logger.info(f"Expired {len(revoked_ids)} earned rewards for tenant {self.tenant_id}")
        return {'revoked_count': len(revoked_ids), 'reward_ids': revoked_ids}
