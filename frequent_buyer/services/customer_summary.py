"""
Customer summary projector.

Recomputes the per customer/offer read model from the ledger and reward
tables. Nothing reads the summary as a source of truth.
"""
import logging
from typing import Optional, Dict, Any

from sqlalchemy import func

from ..extensions import db
from ..models.offer import Offer
from ..models.purchase_event import PurchaseEvent
from ..models.reward import Reward, RewardStatus, Redemption
from ..models.customer_summary import CustomerSummary
from ..utils.dates import utc_today
from ..utils.exceptions import TenantIsolationError

logger = logging.getLogger(__name__)


class CustomerSummaryProjector:
    """Maintains CustomerSummary rows for a tenant."""

    def __init__(self, tenant_id: int):
        if not tenant_id:
            raise TenantIsolationError('CustomerSummaryProjector')
        self.tenant_id = tenant_id

    def refresh(self, customer_id: str, offer: Offer) -> CustomerSummary:
        """Recompute and upsert the summary row (no commit)."""
        today = utc_today()

        current_quantity, window_start, window_end = (
            db.session.query(
                func.coalesce(func.sum(PurchaseEvent.quantity), 0),
                func.min(PurchaseEvent.window_start_date),
                func.max(PurchaseEvent.window_end_date),
            )
            .filter(
                PurchaseEvent.tenant_id == self.tenant_id,
                PurchaseEvent.customer_id == customer_id,
                PurchaseEvent.offer_id == offer.id,
                PurchaseEvent.reward_id.is_(None),
                PurchaseEvent.window_end_date >= today,
                PurchaseEvent.not_superseded(),
            )
            .one()
        )

        pair = PurchaseEvent.for_pair(self.tenant_id, customer_id, offer.id)
        lifetime_purchases = pair.filter(
            PurchaseEvent.is_refund.is_(False),
            PurchaseEvent.split_from_event_id.is_(None),
        ).with_entities(func.coalesce(func.sum(PurchaseEvent.quantity), 0)).scalar()
        lifetime_refunds = pair.filter(
            PurchaseEvent.is_refund.is_(True),
        ).with_entities(func.coalesce(func.sum(PurchaseEvent.quantity), 0)).scalar()
        last_purchase_at = pair.filter(
            PurchaseEvent.is_refund.is_(False),
        ).with_entities(func.max(PurchaseEvent.purchased_at)).scalar()

        rewards = Reward.query.filter_by(
            tenant_id=self.tenant_id, customer_id=customer_id, offer_id=offer.id
        )
        earned_reward = (
            rewards.filter(Reward.status == RewardStatus.EARNED.value)
            .order_by(Reward.earned_at.asc(), Reward.id.asc())
            .first()
        )

        summary = CustomerSummary.query.filter_by(
            tenant_id=self.tenant_id, customer_id=customer_id, offer_id=offer.id
        ).first()
        if not summary:
            summary = CustomerSummary(
                tenant_id=self.tenant_id, customer_id=customer_id, offer_id=offer.id
            )
            db.session.add(summary)

        summary.current_quantity = int(current_quantity or 0)
        summary.required_quantity = offer.required_quantity
        summary.window_start_date = window_start
        summary.window_end_date = window_end
        summary.has_earned_reward = earned_reward is not None
        summary.earned_reward_id = earned_reward.id if earned_reward else None
        summary.lifetime_purchases = int(lifetime_purchases or 0)
        summary.lifetime_refunds = abs(int(lifetime_refunds or 0))
        summary.total_rewards_earned = rewards.filter(Reward.earned_at.isnot(None)).count()
        summary.total_rewards_redeemed = rewards.filter(
            Reward.status == RewardStatus.REDEEMED.value
        ).count()
        summary.total_rewards_revoked = rewards.filter(
            Reward.status == RewardStatus.REVOKED.value
        ).count()
        summary.last_purchase_at = last_purchase_at

        return summary

    def rebuild(self) -> int:
        """
        Drop and recompute every summary row for the tenant.

        Returns:
            Number of summary rows written
        """
        CustomerSummary.query.filter_by(tenant_id=self.tenant_id).delete()

        pairs = (
            db.session.query(PurchaseEvent.customer_id, PurchaseEvent.offer_id)
            .filter(PurchaseEvent.tenant_id == self.tenant_id)
            .distinct()
            .all()
        )
        offers = {o.id: o for o in Offer.query.filter_by(tenant_id=self.tenant_id).all()}

        count = 0
        for customer_id, offer_id in pairs:
            offer = offers.get(offer_id)
            if offer:
                self.refresh(customer_id, offer)
                count += 1

        db.session.commit()
        logger.info(f"Rebuilt {count} customer summaries for tenant {self.tenant_id}")
        return count

    # ==================== Reads ====================

    def get_customer_status(self, customer_id: str, offer_id: Optional[int] = None) -> Dict[str, Any]:
        """Progress and earned rewards for a customer, optionally for one offer."""
        summaries = CustomerSummary.query.filter_by(
            tenant_id=self.tenant_id, customer_id=customer_id
        )
        rewards = Reward.query.filter_by(
            tenant_id=self.tenant_id, customer_id=customer_id, status=RewardStatus.EARNED.value
        )
        if offer_id:
            summaries = summaries.filter_by(offer_id=offer_id)
            rewards = rewards.filter_by(offer_id=offer_id)

        return {
            'customer_id': customer_id,
            'offers': [s.to_dict() for s in summaries.order_by(CustomerSummary.offer_id).all()],
            'earned_rewards': [r.to_dict() for r in rewards.order_by(Reward.earned_at).all()],
        }

    def get_customer_history(
        self,
        customer_id: str,
        offer_id: Optional[int] = None,
        limit: int = 50,
    ) -> Dict[str, Any]:
        """Purchases, rewards and redemptions for a customer, newest first."""
        purchases = PurchaseEvent.query.filter(
            PurchaseEvent.tenant_id == self.tenant_id,
            PurchaseEvent.customer_id == customer_id,
            PurchaseEvent.not_superseded(),
        )
        rewards = Reward.query.filter_by(tenant_id=self.tenant_id, customer_id=customer_id)
        redemptions = Redemption.query.filter_by(tenant_id=self.tenant_id, customer_id=customer_id)
        if offer_id:
            purchases = purchases.filter(PurchaseEvent.offer_id == offer_id)
            rewards = rewards.filter_by(offer_id=offer_id)
            redemptions = redemptions.filter_by(offer_id=offer_id)

        return {
            'customer_id': customer_id,
            'purchases': [
                p.to_dict() for p in purchases.order_by(
                    PurchaseEvent.purchased_at.desc(), PurchaseEvent.id.desc()
                ).limit(limit).all()
            ],
            'rewards': [
                r.to_dict() for r in rewards.order_by(Reward.created_at.desc(), Reward.id.desc()).limit(limit).all()
            ],
            'redemptions': [
                r.to_dict() for r in redemptions.order_by(Redemption.redeemed_at.desc()).limit(limit).all()
            ],
        }
