"""
Reward redemption.

Finalizes earned rewards, either on staff action or by spotting the
reward's discount on a completed POS order. The POS discount is torn
down after the redemption commits.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

from sqlalchemy import func

from ..extensions import db
from ..models.offer import Offer, QualifyingVariation
from ..models.purchase_event import PurchaseEvent
from ..models.reward import Reward, RewardStatus, Redemption, RedemptionType
from ..models.audit_log import AuditAction
from ..utils.dates import utcnow
from ..utils.exceptions import (
    TenantIsolationError,
    RewardNotFoundError,
    InvalidStatusTransitionError,
    CustomerMismatchError,
    ValidationError,
)
from .audit_logger import AuditLogger, RewardRedeemed
from .customer_summary import CustomerSummaryProjector
from .order_events import OrderEvent

logger = logging.getLogger(__name__)

# Discount on qualifying lines must reach this share of the expected value
DISCOUNT_MATCH_RATIO = 0.95


@dataclass
class RedemptionContext:
    """Who redeemed a reward, where, and for how much."""
    redemption_type: str = RedemptionType.MANUAL_ADMIN.value
    customer_id: Optional[str] = None
    order_id: Optional[str] = None
    location_id: Optional[str] = None
    variation_id: Optional[str] = None
    item_name: Optional[str] = None
    value_cents: Optional[int] = None
    redeemed_by: Optional[str] = None
    notes: Optional[str] = None
    triggered_by: str = 'ADMIN'
    detection_method: Optional[str] = None


class RedemptionProcessor:
    """
    Redeems rewards for one tenant.
    """

    def __init__(self, tenant_id: int, pos_client=None, sync_queue=None):
        if not tenant_id:
            raise TenantIsolationError('RedemptionProcessor')
        self.tenant_id = tenant_id
        self.pos_client = pos_client
        if sync_queue is None:
            from .pos_sync_queue import sync_queue as default_queue
            sync_queue = default_queue
        self.sync_queue = sync_queue
        self.audit = AuditLogger(tenant_id)
        self.projector = CustomerSummaryProjector(tenant_id)

    def expected_value_cents(self, reward: Reward) -> int:
        """Highest unit price locked to the reward, else highest paid for the offer."""
        value = (
            db.session.query(func.max(PurchaseEvent.unit_price_cents))
            .filter(
                PurchaseEvent.tenant_id == self.tenant_id,
                PurchaseEvent.reward_id == reward.id,
                PurchaseEvent.unit_price_cents > 0,
            )
            .scalar()
        )
        if not value:
            value = (
                db.session.query(func.max(PurchaseEvent.unit_price_cents))
                .filter(
                    PurchaseEvent.tenant_id == self.tenant_id,
                    PurchaseEvent.offer_id == reward.offer_id,
                    PurchaseEvent.unit_price_cents > 0,
                )
                .scalar()
            )
        return int(value or 0)

    # ==================== Redeem ====================

    def redeem(self, reward_id: int, context: Optional[RedemptionContext] = None) -> Dict[str, Any]:
        """
        Redeem an earned reward.

        Raises:
            RewardNotFoundError: no such reward for this tenant
            InvalidStatusTransitionError: reward is not earned
            CustomerMismatchError: context customer does not own the reward
        """
        context = context or RedemptionContext()
        try:
            RedemptionType(context.redemption_type)
        except ValueError:
            raise ValidationError(f"Unknown redemption type '{context.redemption_type}'", field='redemption_type')

        reward = (
            Reward.query
            .filter_by(id=reward_id, tenant_id=self.tenant_id)
            .with_for_update()
            .first()
        )
        if not reward:
            db.session.rollback()
            raise RewardNotFoundError(reward_id)
        if reward.status != RewardStatus.EARNED.value:
            db.session.rollback()
            raise InvalidStatusTransitionError('reward', reward.status, RewardStatus.REDEEMED.value)
        if context.customer_id and context.customer_id != reward.customer_id:
            db.session.rollback()
            raise CustomerMismatchError(reward_id, context.customer_id)

        value_cents = context.value_cents
        if value_cents is None:
            value_cents = self.expected_value_cents(reward)

        try:
            redemption = Redemption(
                tenant_id=self.tenant_id,
                reward_id=reward.id,
                offer_id=reward.offer_id,
                customer_id=reward.customer_id,
                redemption_type=context.redemption_type,
                order_id=context.order_id,
                location_id=context.location_id,
                variation_id=context.variation_id,
                item_name=context.item_name,
                value_cents=value_cents,
                redeemed_by=context.redeemed_by,
                notes=context.notes,
            )
            db.session.add(redemption)
            db.session.flush()

            reward.status = RewardStatus.REDEEMED.value
            reward.redeemed_at = redemption.redeemed_at or utcnow()
            reward.redemption_order_id = context.order_id

            self.projector.refresh(reward.customer_id, reward.offer)
            self.audit.log(
                AuditAction.REWARD_REDEEMED,
                RewardRedeemed(
                    redemption_id=redemption.id,
                    redemption_type=context.redemption_type,
                    order_id=context.order_id,
                    value_cents=value_cents,
                    detection_method=context.detection_method,
                ),
                offer_id=reward.offer_id,
                reward_id=reward.id,
                customer_id=reward.customer_id,
                redemption_id=redemption.id,
                old_state=RewardStatus.EARNED.value,
                new_state=RewardStatus.REDEEMED.value,
                triggered_by=context.triggered_by,
                user_id=context.redeemed_by,
            )
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Error redeeming reward {reward_id} for tenant {self.tenant_id}: {e}")
            raise

        logger.info(
            f"Reward {reward.id} redeemed ({context.redemption_type}) for customer {reward.customer_id}"
            + (f" on order {context.order_id}" if context.order_id else '')
        )
        self.sync_queue.dispatch(self.tenant_id, deactivate_ids=[reward.id], pos_client=self.pos_client)

        return {'redemption': redemption.to_dict(), 'reward': reward.to_dict()}

    # ==================== Detection ====================

    def _earned_rewards(self, customer_id: str) -> List[Reward]:
        return (
            Reward.query
            .join(Offer, Offer.id == Reward.offer_id)
            .filter(
                Reward.tenant_id == self.tenant_id,
                Reward.customer_id == customer_id,
                Reward.status == RewardStatus.EARNED.value,
                Offer.is_active.is_(True),
            )
            .order_by(Reward.earned_at.asc(), Reward.id.asc())
            .all()
        )

    def _qualifying_ids(self, offer_id: int) -> set:
        return {
            v.variation_id for v in QualifyingVariation.query.filter_by(
                tenant_id=self.tenant_id, offer_id=offer_id, is_active=True
            ).all()
        }

    def _match_by_discount_id(self, order: OrderEvent):
        for discount in order.discounts:
            for object_id in (discount.catalog_object_id, discount.pricing_rule_id):
                if not object_id:
                    continue
                reward = Reward.query.filter(
                    Reward.tenant_id == self.tenant_id,
                    Reward.status == RewardStatus.EARNED.value,
                    db.or_(Reward.pos_discount_id == object_id, Reward.pos_pricing_rule_id == object_id),
                ).first()
                if reward:
                    return reward, {'value_cents': discount.applied_cents, 'discount_id': object_id}
        return None

    def _match_by_free_item(self, order: OrderEvent, customer_id: str):
        free_items = [li for li in order.line_items if li.variation_id and li.is_free]
        if not free_items:
            return None
        for reward in self._earned_rewards(customer_id):
            qualifying = self._qualifying_ids(reward.offer_id)
            for item in free_items:
                if item.variation_id in qualifying:
                    return reward, {
                        'value_cents': item.unit_price_cents,
                        'variation_id': item.variation_id,
                        'item_name': item.name,
                    }
        return None

    def _match_by_discount_amount(self, order: OrderEvent, customer_id: str):
        for reward in self._earned_rewards(customer_id):
            qualifying = self._qualifying_ids(reward.offer_id)
            discount_cents = sum(
                li.total_discount_cents for li in order.line_items if li.variation_id in qualifying
            )
            if discount_cents <= 0:
                continue
            expected = self.expected_value_cents(reward)
            if expected > 0 and discount_cents >= expected * DISCOUNT_MATCH_RATIO:
                return reward, {'value_cents': discount_cents, 'expected_value_cents': expected}
        return None

    def detect_redemption_from_order(
        self,
        order: OrderEvent,
        customer_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """
        Look for a live reward consumed by a completed order and redeem it.

        Strategies, in order: the reward's own discount or pricing rule id
        on the order; a free qualifying line item for a customer holding an
        earned reward; discounts on qualifying lines covering the expected
        reward value.
        """
        customer_id = customer_id or order.customer_id or order.tender_customer_id

        match = self._match_by_discount_id(order)
        method = 'catalog_object_id'
        if not match and customer_id:
            match = self._match_by_free_item(order, customer_id)
            method = 'free_item'
        if not match and customer_id:
            match = self._match_by_discount_amount(order, customer_id)
            method = 'discount_amount'

        if not match:
            return {'detected': False}

        reward, details = match
        logger.info(
            f"Detected redemption of reward {reward.id} on order {order.order_id} "
            f"via {method}{' (dry run)' if dry_run else ''}"
        )
        result = {
            'detected': True,
            'reward_id': reward.id,
            'offer_id': reward.offer_id,
            'customer_id': reward.customer_id,
            'detection_method': method,
            'details': details,
        }
        if dry_run:
            return result

        result['redemption'] = self.redeem(reward.id, RedemptionContext(
            redemption_type=RedemptionType.AUTO_DETECTED.value,
            order_id=order.order_id,
            location_id=order.location_id,
            variation_id=details.get('variation_id'),
            item_name=details.get('item_name'),
            value_cents=details.get('value_cents'),
            triggered_by='SYSTEM',
            detection_method=method,
        ))['redemption']
        return result
