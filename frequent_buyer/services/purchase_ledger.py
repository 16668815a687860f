"""
Purchase ledger.

System of record for qualifying purchases and refunds. Each record_*
call is one transaction: lock the customer/offer pair, append the
event(s), audit, recompute reward state, refresh the summary, commit.
POS sync for rewards that changed state is queued after the commit.
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models.offer import Offer, QualifyingVariation
from ..models.purchase_event import PurchaseEvent
from ..models.reward import Reward, RewardStatus
from ..models.audit_log import AuditAction
from ..utils.dates import utc_today, parse_timestamp
from ..utils.exceptions import TenantIsolationError, ValidationError
from .audit_logger import AuditLogger, PurchaseRecorded, RefundProcessed
from .customer_summary import CustomerSummaryProjector
from .reward_state_machine import RewardStateMachine
from .window_calculator import calculate_window

logger = logging.getLogger(__name__)

# Non-error outcomes
VARIATION_NOT_QUALIFYING = 'variation_not_qualifying'
ALREADY_PROCESSED = 'already_processed'
NO_CUSTOMER = 'no_customer'
NO_MATCHING_PURCHASE = 'no_matching_purchase'


def purchase_key(order_id: str, variation_id: str, quantity: int) -> str:
    return f'{order_id}:{variation_id}:{quantity}'


def refund_key(refund_line_id: str, original_event_id: int) -> str:
    return f'refund:{refund_line_id}:{original_event_id}'


class PurchaseLedger:
    """
    Records purchases and refunds for one tenant.

    Args:
        tenant_id: Tenant the ledger belongs to
        pos_client: POS client handed to the sync queue for this tenant's
            tasks; resolved from the registry when omitted
        sync_queue: Queue for post-commit POS sync (defaults to the app queue)
    """

    def __init__(self, tenant_id: int, pos_client=None, sync_queue=None):
        if not tenant_id:
            raise TenantIsolationError('PurchaseLedger')
        self.tenant_id = tenant_id
        self.pos_client = pos_client
        if sync_queue is None:
            from .pos_sync_queue import sync_queue as default_queue
            sync_queue = default_queue
        self.sync_queue = sync_queue
        self.audit = AuditLogger(tenant_id)
        self.machine = RewardStateMachine(
            tenant_id, audit=self.audit, projector=CustomerSummaryProjector(tenant_id)
        )

    def find_offer_for_variation(self, variation_id: str) -> Optional[Offer]:
        """Active offer whose allow-list contains the variation."""
        match = (
            db.session.query(Offer)
            .join(QualifyingVariation, QualifyingVariation.offer_id == Offer.id)
            .filter(
                Offer.tenant_id == self.tenant_id,
                Offer.is_active.is_(True),
                QualifyingVariation.tenant_id == self.tenant_id,
                QualifyingVariation.variation_id == variation_id,
                QualifyingVariation.is_active.is_(True),
            )
            .first()
        )
        return match

    def _dispatch(self, activate_ids=(), deactivate_ids=()):
        if activate_ids or deactivate_ids:
            self.sync_queue.dispatch(
                self.tenant_id,
                activate_ids=activate_ids,
                deactivate_ids=deactivate_ids,
                pos_client=self.pos_client,
            )

    # ==================== Purchases ====================

    def _purchase_recorded(self, key: str) -> bool:
        return PurchaseEvent.query.filter_by(tenant_id=self.tenant_id, idempotency_key=key).first() is not None

    def _refund_recorded(self, refund_line_id: str) -> bool:
        return PurchaseEvent.query.filter_by(
            tenant_id=self.tenant_id, refund_line_id=refund_line_id, is_refund=True
        ).first() is not None

    def record_purchase(
        self,
        order_id: str,
        variation_id: str,
        quantity: int,
        customer_id: Optional[str],
        unit_price_cents: Optional[int] = None,
        purchased_at: Optional[datetime] = None,
        location_id: Optional[str] = None,
        customer_source: Optional[str] = None,
        triggered_by: str = 'WEBHOOK',
    ) -> Dict[str, Any]:
        """
        Append a qualifying purchase and recompute reward progress.

        Returns:
            Dict with processed flag and either a reason or the reward outcome

        Raises:
            ValidationError: quantity is not positive
        """
        if not order_id or not variation_id:
            raise ValidationError('order_id and variation_id are required', field='order_id')
        quantity = int(quantity)
        if quantity <= 0:
            raise ValidationError('Purchase quantity must be positive', field='quantity')

        offer = self.find_offer_for_variation(variation_id)
        if not offer:
            logger.debug(f"Variation {variation_id} not qualifying for tenant {self.tenant_id}")
            return {'processed': False, 'reason': VARIATION_NOT_QUALIFYING}

        if not customer_id:
            logger.debug(f"No customer for order {order_id}; purchase of {variation_id} dropped")
            return {'processed': False, 'reason': NO_CUSTOMER}

        key = purchase_key(order_id, variation_id, quantity)
        if self._purchase_recorded(key):
            logger.debug(f"Purchase {key} already recorded for tenant {self.tenant_id}")
            return {'processed': False, 'reason': ALREADY_PROCESSED}

        purchased_at = parse_timestamp(purchased_at)

        for attempt in range(2):
            try:
                self.machine.lock_pair(customer_id, offer.id)

                active_times = [
                    row.purchased_at for row in
                    PurchaseEvent.unlocked_active(self.tenant_id, customer_id, offer.id, utc_today())
                    .filter(PurchaseEvent.is_refund.is_(False)).all()
                ]
                window_start, window_end = calculate_window(purchased_at, offer.window_months, active_times)

                event = PurchaseEvent(
                    tenant_id=self.tenant_id,
                    offer_id=offer.id,
                    customer_id=customer_id,
                    order_id=order_id,
                    location_id=location_id,
                    variation_id=variation_id,
                    quantity=quantity,
                    unit_price_cents=unit_price_cents,
                    purchased_at=purchased_at,
                    window_start_date=window_start,
                    window_end_date=window_end,
                    idempotency_key=key,
                    is_refund=False,
                    customer_source=customer_source,
                )
                db.session.add(event)
                db.session.flush()

                self.audit.log(
                    AuditAction.PURCHASE_RECORDED,
                    PurchaseRecorded(
                        order_id=order_id,
                        variation_id=variation_id,
                        quantity=quantity,
                        unit_price_cents=unit_price_cents,
                        idempotency_key=key,
                        customer_source=customer_source,
                    ),
                    offer_id=offer.id,
                    customer_id=customer_id,
                    purchase_event_id=event.id,
                    new_quantity=quantity,
                    triggered_by=triggered_by,
                )

                outcome = self.machine.recompute(customer_id, offer, triggered_by=triggered_by)
                db.session.commit()
                break
            except IntegrityError:
                db.session.rollback()
                if self._purchase_recorded(key):
                    logger.debug(f"Concurrent duplicate purchase {key} for tenant {self.tenant_id}")
                    return {'processed': False, 'reason': ALREADY_PROCESSED}
                if attempt:
                    logger.error(f"Purchase {key} kept colliding on reward insert for tenant {self.tenant_id}")
                    raise
                logger.info(f"In-progress reward for customer {customer_id} created concurrently; retrying {key}")
            except Exception as e:
                db.session.rollback()
                logger.error(f"Error recording purchase {key} for tenant {self.tenant_id}: {e}")
                raise

        logger.info(
            f"Recorded purchase {key} customer {customer_id} offer {offer.id}: "
            f"{outcome.current_quantity}/{outcome.required_quantity} ({outcome.status})"
        )
        self._dispatch(activate_ids=outcome.earned_reward_ids)

        return {
            'processed': True,
            'purchase_event_id': event.id,
            'offer_id': offer.id,
            'reward': outcome.to_dict(),
        }

    # ==================== Refunds ====================

    def _refund_candidates(self, order_id: str, variation_id: str) -> List[Tuple[PurchaseEvent, int]]:
        """
        Live purchase rows of the order/variation with their refundable
        quantity, ordered unlocked first, then earned, then anything else.
        """
        rows = (
            PurchaseEvent.query
            .filter(
                PurchaseEvent.tenant_id == self.tenant_id,
                PurchaseEvent.order_id == order_id,
                PurchaseEvent.variation_id == variation_id,
                PurchaseEvent.is_refund.is_(False),
                PurchaseEvent.not_superseded(),
            )
            .order_by(PurchaseEvent.purchased_at.asc(), PurchaseEvent.id.asc())
            .all()
        )
        if not rows:
            return []

        reward_ids = {r.reward_id for r in rows if r.reward_id}
        statuses = {
            r.id: r.status for r in Reward.query.filter(Reward.id.in_(reward_ids)).all()
        } if reward_ids else {}

        refunds = {}
        for customer_id, offer_id in {(r.customer_id, r.offer_id) for r in rows}:
            refunds.update(self.machine.refunds_by_purchase(customer_id, offer_id))

        def rank(row):
            if row.reward_id is None:
                return 0
            if statuses.get(row.reward_id) == RewardStatus.EARNED.value:
                return 1
            return 2

        candidates = []
        for row in sorted(rows, key=rank):
            refundable = row.quantity + sum(r.quantity for r in refunds.get(row.id, []))
            if refundable > 0:
                candidates.append((row, refundable))
        return candidates

    def record_refund(
        self,
        order_id: str,
        variation_id: str,
        quantity: int,
        refund_line_id: str,
        customer_id: Optional[str] = None,
        refunded_at: Optional[datetime] = None,
        triggered_by: str = 'WEBHOOK',
    ) -> Dict[str, Any]:
        """
        Append negative rows against the original purchases of an order.

        A refund that drops an earned reward's locked units below its
        threshold revokes the reward; the released units count toward a
        fresh in_progress reward.

        Args:
            order_id: Order the refunded units were originally bought on
            variation_id: Refunded variation
            quantity: Units refunded (sign ignored)
            refund_line_id: Stable identifier of the refund line
            customer_id: Customer on the refund, if known; the original
                purchase's customer is used for attribution
        """
        if not refund_line_id:
            raise ValidationError('refund_line_id is required', field='refund_line_id')
        quantity = abs(int(quantity))
        if quantity == 0:
            raise ValidationError('Refund quantity must be non-zero', field='quantity')

        offer = self.find_offer_for_variation(variation_id)
        if not offer:
            logger.debug(f"Refunded variation {variation_id} not qualifying for tenant {self.tenant_id}")
            return {'processed': False, 'reason': VARIATION_NOT_QUALIFYING, 'reward_affected': False}

        if self._refund_recorded(refund_line_id):
            return {'processed': False, 'reason': ALREADY_PROCESSED, 'reward_affected': False}

        refunded_at = parse_timestamp(refunded_at)
        for attempt in range(2):
            try:
                revoked_ids = []
                affected_reward_ids = set()
                refund_event_ids = []
                originals = PurchaseEvent.query.filter_by(
                    tenant_id=self.tenant_id, order_id=order_id, variation_id=variation_id, is_refund=False
                ).all()
                pairs = {(r.customer_id, r.offer_id) for r in originals}
                for pair_customer, pair_offer in sorted(pairs):
                    self.machine.lock_pair(pair_customer, pair_offer)

                candidates = self._refund_candidates(order_id, variation_id)
                if not candidates:
                    db.session.rollback()
                    logger.debug(f"No purchase found for refund of {variation_id} on order {order_id}")
                    return {'processed': False, 'reason': NO_MATCHING_PURCHASE, 'reward_affected': False}

                if customer_id and any(row.customer_id != customer_id for row, _ in candidates):
                    logger.warning(
                        f"Refund {refund_line_id} customer {customer_id} differs from original purchase; "
                        f"attributing to original purchaser"
                    )

                remaining = quantity
                for row, refundable in candidates:
                    if remaining <= 0:
                        break
                    take = min(refundable, remaining)
                    refund = PurchaseEvent(
                        tenant_id=self.tenant_id,
                        offer_id=row.offer_id,
                        customer_id=row.customer_id,
                        order_id=order_id,
                        location_id=row.location_id,
                        variation_id=variation_id,
                        quantity=-take,
                        unit_price_cents=row.unit_price_cents,
                        purchased_at=refunded_at,
                        window_start_date=row.window_start_date,
                        window_end_date=row.window_end_date,
                        reward_id=row.reward_id,
                        idempotency_key=refund_key(refund_line_id, row.id),
                        is_refund=True,
                        original_event_id=row.id,
                        refund_line_id=refund_line_id,
                        customer_source='original_purchase',
                    )
                    db.session.add(refund)
                    db.session.flush()
                    refund_event_ids.append(refund.id)
                    remaining -= take
                    if row.reward_id:
                        affected_reward_ids.add(row.reward_id)

                    self.audit.log(
                        AuditAction.REFUND_PROCESSED,
                        RefundProcessed(
                            order_id=order_id,
                            variation_id=variation_id,
                            quantity=-take,
                            refund_line_id=refund_line_id,
                            original_event_id=row.id,
                            affected_reward_id=row.reward_id,
                        ),
                        offer_id=row.offer_id,
                        reward_id=row.reward_id,
                        customer_id=row.customer_id,
                        purchase_event_id=refund.id,
                        new_quantity=-take,
                        triggered_by=triggered_by,
                    )

                if remaining > 0:
                    logger.warning(
                        f"Refund {refund_line_id} of {quantity} x {variation_id} exceeds recorded "
                        f"purchases on order {order_id}; {remaining} unit(s) unattributed"
                    )

                for reward in Reward.query.filter(Reward.id.in_(affected_reward_ids)).order_by(Reward.id).all():
                    if reward.status == RewardStatus.EARNED.value:
                        if self.machine.check_revocation(reward, triggered_by=triggered_by):
                            revoked_ids.append(reward.id)
                    else:
                        logger.warning(
                            f"Refund {refund_line_id} touches units of {reward.status} reward {reward.id}; "
                            f"recorded without state change"
                        )

                offers = {o.id: o for o in Offer.query.filter(Offer.id.in_({p[1] for p in pairs})).all()}
                earned_ids = []
                for pair_customer, pair_offer in sorted(pairs):
                    outcome = self.machine.recompute(pair_customer, offers[pair_offer], triggered_by=triggered_by)
                    earned_ids.extend(outcome.earned_reward_ids)

                db.session.commit()
                break
            except IntegrityError:
                db.session.rollback()
                if self._refund_recorded(refund_line_id):
                    logger.debug(f"Concurrent duplicate refund {refund_line_id} for tenant {self.tenant_id}")
                    return {'processed': False, 'reason': ALREADY_PROCESSED, 'reward_affected': False}
                if attempt:
                    logger.error(f"Refund {refund_line_id} kept colliding on reward insert for tenant {self.tenant_id}")
                    raise
                logger.info(f"In-progress reward created concurrently; retrying refund {refund_line_id}")
            except Exception as e:
                db.session.rollback()
                logger.error(f"Error recording refund {refund_line_id} for tenant {self.tenant_id}: {e}")
                raise

        logger.info(
            f"Recorded refund {refund_line_id} of {quantity - remaining} x {variation_id} on order {order_id}"
            + (f"; revoked rewards {revoked_ids}" if revoked_ids else '')
        )
        self._dispatch(activate_ids=earned_ids, deactivate_ids=revoked_ids)

        return {
            'processed': True,
            'reward_affected': bool(affected_reward_ids),
            'revoked_reward_ids': revoked_ids,
            'refund_event_ids': refund_event_ids,
        }
