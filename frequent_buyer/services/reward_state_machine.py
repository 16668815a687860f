"""
Reward state machine.

Drives in_progress -> earned -> redeemed/revoked transitions from the
purchase ledger. Every public method works inside the caller's
transaction and never commits; POS side effects are reported back to the
caller (earned / revoked reward ids) to be dispatched after commit.

Quantities:
    current quantity = sum of unlocked, unexpired, non-superseded rows
    locked quantity  = sum of non-superseded rows referencing the reward

Refund rows belong to the purchase row they refund. When a purchase row is
split, refunds pointing at it follow the 'excess' child, which keeps the
unlocked remainder of the original row.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional, List, Dict

from ..extensions import db
from ..models.offer import Offer
from ..models.purchase_event import PurchaseEvent
from ..models.reward import Reward, RewardStatus
from ..models.audit_log import AuditAction
from ..utils.dates import utcnow, utc_today
from ..utils.exceptions import (
    FrequentBuyerError,
    InvalidStatusTransitionError,
    TenantIsolationError,
)
from .audit_logger import (
    AuditLogger,
    ProgressUpdated,
    RewardEarned,
    RewardRevoked,
)
from .customer_summary import CustomerSummaryProjector

logger = logging.getLogger(__name__)

REFUND_REVOKE_REASON = 'Refund reduced qualifying quantity below threshold'
EXPIRED_REVOKE_REASON = 'Expired - all locked purchases outside window'


@dataclass
class RecomputeOutcome:
    """Result of a recompute for one customer/offer pair."""
    reward_id: Optional[int]
    status: str
    current_quantity: int
    required_quantity: int
    earned_reward_ids: List[int] = field(default_factory=list)

    def to_dict(self):
        return {
            'reward_id': self.reward_id,
            'status': self.status,
            'current_quantity': self.current_quantity,
            'required_quantity': self.required_quantity,
            'earned_reward_ids': list(self.earned_reward_ids),
        }


class RewardStateMachine:
    """
    Reward transitions for one tenant.
    """

    def __init__(
        self,
        tenant_id: int,
        audit: Optional[AuditLogger] = None,
        projector: Optional[CustomerSummaryProjector] = None,
    ):
        if not tenant_id:
            raise TenantIsolationError('RewardStateMachine')
        self.tenant_id = tenant_id
        self.audit = audit or AuditLogger(tenant_id)
        self.projector = projector or CustomerSummaryProjector(tenant_id)

    # ==================== Locking ====================

    def lock_pair(self, customer_id: str, offer_id: int) -> List[Reward]:
        """
        Take row locks on the pair's in_progress and earned rewards.

        Every ledger mutation for a customer/offer pair starts here so
        concurrent events for the same pair are serialized.
        """
        return (
            Reward.query
            .filter(
                Reward.tenant_id == self.tenant_id,
                Reward.customer_id == customer_id,
                Reward.offer_id == offer_id,
                Reward.status.in_([RewardStatus.IN_PROGRESS.value, RewardStatus.EARNED.value]),
            )
            .order_by(Reward.id)
            .with_for_update()
            .all()
        )

    def get_locked_reward(self, reward_id: int) -> Optional[Reward]:
        return (
            Reward.query
            .filter(Reward.id == reward_id, Reward.tenant_id == self.tenant_id)
            .with_for_update()
            .first()
        )

    # ==================== Quantities ====================

    def current_quantity(self, customer_id: str, offer_id: int, today=None) -> int:
        today = today or utc_today()
        rows = PurchaseEvent.unlocked_active(self.tenant_id, customer_id, offer_id, today).all()
        return sum(r.quantity for r in rows)

    def locked_quantity(self, reward_id: int) -> int:
        rows = PurchaseEvent.query.filter(
            PurchaseEvent.tenant_id == self.tenant_id,
            PurchaseEvent.reward_id == reward_id,
            PurchaseEvent.not_superseded(),
        ).all()
        return sum(r.quantity for r in rows)

    def refunds_by_purchase(self, customer_id: str, offer_id: int) -> Dict[int, List[PurchaseEvent]]:
        """
        Map each live purchase row id to the refund rows that apply to it.

        A refund recorded against a row that was later split applies to the
        split's excess child (and so on down the excess chain).
        """
        pair = PurchaseEvent.for_pair(self.tenant_id, customer_id, offer_id)
        excess_children = {
            row.split_from_event_id: row.id
            for row in pair.filter(PurchaseEvent.split_role == 'excess').all()
        }

        mapping = defaultdict(list)
        for refund in pair.filter(PurchaseEvent.is_refund.is_(True)).all():
            target = refund.original_event_id
            while target in excess_children:
                target = excess_children[target]
            mapping[target].append(refund)
        return mapping

    def _window_bounds(self, customer_id: str, offer_id: int, today):
        rows = PurchaseEvent.unlocked_active(self.tenant_id, customer_id, offer_id, today).all()
        if not rows:
            return None, None
        return (
            min(r.window_start_date for r in rows),
            max(r.window_end_date for r in rows),
        )

    # ==================== Recompute ====================

    def recompute(self, customer_id: str, offer: Offer, triggered_by: str = 'SYSTEM') -> RecomputeOutcome:
        """
        Bring the pair's in_progress reward in line with the ledger and earn
        as many rewards as the unlocked quantity covers.
        """
        today = utc_today()
        earned_ids = []

        reward = (
            Reward.query
            .filter_by(
                tenant_id=self.tenant_id,
                customer_id=customer_id,
                offer_id=offer.id,
                status=RewardStatus.IN_PROGRESS.value,
            )
            .with_for_update()
            .first()
        )

        quantity = self.current_quantity(customer_id, offer.id, today)
        reward = self._sync_progress(reward, customer_id, offer, quantity, today, triggered_by)

        while reward is not None and quantity >= offer.required_quantity:
            self._earn(reward, offer, today, triggered_by)
            earned_ids.append(reward.id)

            quantity = self.current_quantity(customer_id, offer.id, today)
            reward = self._sync_progress(None, customer_id, offer, quantity, today, triggered_by)

        self.projector.refresh(customer_id, offer)

        if reward is not None:
            outcome = RecomputeOutcome(reward.id, reward.status, quantity, offer.required_quantity)
        elif earned_ids:
            outcome = RecomputeOutcome(
                earned_ids[-1], RewardStatus.EARNED.value, quantity, offer.required_quantity
            )
        else:
            outcome = RecomputeOutcome(None, 'no_progress', quantity, offer.required_quantity)
        outcome.earned_reward_ids = earned_ids
        return outcome

    def _sync_progress(self, reward, customer_id, offer, quantity, today, triggered_by):
        window_start, window_end = self._window_bounds(customer_id, offer.id, today)

        if reward is None:
            if quantity <= 0:
                return None
            reward = Reward(
                tenant_id=self.tenant_id,
                offer_id=offer.id,
                customer_id=customer_id,
                status=RewardStatus.IN_PROGRESS.value,
                current_quantity=quantity,
                required_quantity=offer.required_quantity,
                window_start_date=window_start,
                window_end_date=window_end,
            )
            db.session.add(reward)
            db.session.flush()
            logger.debug(f"Started reward {reward.id} for customer {customer_id} offer {offer.id} at {quantity}")
            return reward

        old_quantity = reward.current_quantity
        reward.window_start_date = window_start
        reward.window_end_date = window_end
        reward.required_quantity = offer.required_quantity
        if old_quantity != quantity:
            reward.current_quantity = quantity
            self.audit.log(
                AuditAction.REWARD_PROGRESS_UPDATED,
                ProgressUpdated(required_quantity=offer.required_quantity),
                offer_id=offer.id,
                reward_id=reward.id,
                customer_id=customer_id,
                old_quantity=old_quantity,
                new_quantity=quantity,
                triggered_by=triggered_by,
            )
        return reward

    def _earn(self, reward: Reward, offer: Offer, today, triggered_by: str):
        locked_ids = self._lock_fifo(reward, offer, today)

        reward.status = RewardStatus.EARNED.value
        reward.current_quantity = offer.required_quantity
        reward.earned_at = utcnow()

        self.audit.log(
            AuditAction.REWARD_EARNED,
            RewardEarned(required_quantity=offer.required_quantity, locked_event_ids=locked_ids),
            offer_id=offer.id,
            reward_id=reward.id,
            customer_id=reward.customer_id,
            old_state=RewardStatus.IN_PROGRESS.value,
            new_state=RewardStatus.EARNED.value,
            triggered_by=triggered_by,
        )
        logger.info(
            f"Reward earned: reward {reward.id} customer {reward.customer_id} "
            f"offer '{offer.offer_name}' tenant {self.tenant_id}"
        )

    def _lock_fifo(self, reward: Reward, offer: Offer, today) -> List[int]:
        """
        Lock exactly required_quantity units, oldest purchases first.

        A purchase row is locked together with its refunds. The row that
        crosses the threshold with more units than needed is split.
        """
        needed = offer.required_quantity
        refunds = self.refunds_by_purchase(reward.customer_id, offer.id)
        candidates = (
            PurchaseEvent.unlocked_active(self.tenant_id, reward.customer_id, offer.id, today)
            .filter(PurchaseEvent.is_refund.is_(False), PurchaseEvent.quantity > 0)
            .order_by(PurchaseEvent.purchased_at.asc(), PurchaseEvent.id.asc())
            .all()
        )

        locked_ids = []
        for row in candidates:
            if needed <= 0:
                break
            attached = refunds.get(row.id, [])
            net = row.quantity + sum(r.quantity for r in attached)
            if net <= 0:
                continue

            if net <= needed:
                row.reward_id = reward.id
                for refund in attached:
                    refund.reward_id = reward.id
                needed -= net
                locked_ids.append(row.id)
            else:
                locked_child = self._split(row, needed, reward)
                locked_ids.append(locked_child.id)
                needed = 0

        if needed > 0:
            raise FrequentBuyerError(
                f"Could not lock {offer.required_quantity} units for reward {reward.id}; "
                f"{needed} short",
                'LEDGER_INCONSISTENT'
            )
        db.session.flush()
        return locked_ids

    def _split(self, row: PurchaseEvent, locked_quantity: int, reward: Reward) -> PurchaseEvent:
        """Supersede row with a locked child and an unlocked excess child."""
        children = {}
        for role, quantity, reward_id in (
            ('locked', locked_quantity, reward.id),
            ('excess', row.quantity - locked_quantity, None),
        ):
            child = PurchaseEvent(
                tenant_id=row.tenant_id,
                offer_id=row.offer_id,
                customer_id=row.customer_id,
                order_id=row.order_id,
                location_id=row.location_id,
                variation_id=row.variation_id,
                quantity=quantity,
                unit_price_cents=row.unit_price_cents,
                purchased_at=row.purchased_at,
                window_start_date=row.window_start_date,
                window_end_date=row.window_end_date,
                reward_id=reward_id,
                idempotency_key=f'{row.idempotency_key}:split_{role}:{reward.id}',
                split_from_event_id=row.id,
                split_role=role,
                customer_source=row.customer_source,
            )
            db.session.add(child)
            children[role] = child

        db.session.flush()
        logger.debug(
            f"Split purchase event {row.id} for reward {reward.id}: "
            f"locked {locked_quantity}, excess {row.quantity - locked_quantity}"
        )
        return children['locked']

    # ==================== Revocation ====================

    def revoke(self, reward: Reward, reason: str, triggered_by: str = 'SYSTEM') -> Reward:
        """
        Move an earned reward to revoked and release its locked rows.

        The released rows count toward progress again on the next recompute.
        """
        if not reward.can_transition_to(RewardStatus.REVOKED.value):
            raise InvalidStatusTransitionError('reward', reward.status, RewardStatus.REVOKED.value)

        locked_quantity = self.locked_quantity(reward.id)
        released = PurchaseEvent.query.filter_by(tenant_id=self.tenant_id, reward_id=reward.id).all()
        for row in released:
            row.reward_id = None

        old_status = reward.status
        reward.status = RewardStatus.REVOKED.value
        reward.revoked_at = utcnow()
        reward.revocation_reason = reason

        self.audit.log(
            AuditAction.REWARD_REVOKED,
            RewardRevoked(reason=reason, locked_quantity=locked_quantity),
            offer_id=reward.offer_id,
            reward_id=reward.id,
            customer_id=reward.customer_id,
            old_state=old_status,
            new_state=RewardStatus.REVOKED.value,
            old_quantity=reward.required_quantity,
            new_quantity=locked_quantity,
            triggered_by=triggered_by,
        )
        db.session.flush()
        logger.warning(
            f"Reward {reward.id} revoked for customer {reward.customer_id} "
            f"tenant {self.tenant_id}: {reason}"
        )
        return reward

    def check_revocation(self, reward: Reward, triggered_by: str = 'SYSTEM') -> bool:
        """Revoke an earned reward whose locked total fell below its threshold."""
        if reward.status != RewardStatus.EARNED.value:
            return False
        if self.locked_quantity(reward.id) >= reward.required_quantity:
            return False
        self.revoke(reward, REFUND_REVOKE_REASON, triggered_by=triggered_by)
        return True
