"""
POS reward synchronization.

Makes an earned reward auto-apply at the register: a customer group per
reward, the customer in it, and a 100% discount on one qualifying item
capped at what the customer actually paid. Every operation is best
effort and reports failure instead of raising; reward state stays
authoritative and the reconciliation sweep retries what failed.
"""
import logging
from typing import Dict, Any, Optional

from sqlalchemy import func

from ..extensions import db
from ..models.offer import Offer, QualifyingVariation
from ..models.purchase_event import PurchaseEvent
from ..models.reward import Reward, RewardStatus, TERMINAL_STATUSES
from ..utils.dates import utcnow
from ..utils.exceptions import POSError, TenantIsolationError
from .pos_client import POSClient
from .settings_service import SettingsService

logger = logging.getLogger(__name__)


class POSRewardSync:
    """
    Activates and tears down the POS discount backing an earned reward.
    """

    def __init__(self, tenant_id: int, pos_client: POSClient):
        if not tenant_id:
            raise TenantIsolationError('POSRewardSync')
        self.tenant_id = tenant_id
        self.client = pos_client

    def _get_reward(self, reward_id: int, lock: bool = False) -> Optional[Reward]:
        query = Reward.query.filter_by(id=reward_id, tenant_id=self.tenant_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    def max_discount_cents(self, reward: Reward, offer: Offer) -> int:
        """
        Cap for the "one free unit" discount.

        Highest unit price paid on the reward's locked purchases, else the
        highest catalog price among the offer's variations, else the
        tenant's configured default.
        """
        paid = (
            db.session.query(func.max(PurchaseEvent.unit_price_cents))
            .filter(
                PurchaseEvent.tenant_id == self.tenant_id,
                PurchaseEvent.reward_id == reward.id,
                PurchaseEvent.is_refund.is_(False),
                PurchaseEvent.unit_price_cents > 0,
            )
            .scalar()
        )
        if paid:
            return int(paid)

        catalog = (
            db.session.query(func.max(QualifyingVariation.price_cents))
            .filter(
                QualifyingVariation.tenant_id == self.tenant_id,
                QualifyingVariation.offer_id == offer.id,
                QualifyingVariation.is_active.is_(True),
                QualifyingVariation.price_cents > 0,
            )
            .scalar()
        )
        if catalog:
            return int(catalog)

        fallback = SettingsService(self.tenant_id).get('default_max_discount_cents')
        logger.warning(
            f"No purchase or catalog price for reward {reward.id}; using default cap {fallback}"
        )
        return int(fallback or 0)

    # ==================== Activation ====================

    def activate(self, reward_id: int) -> Dict[str, Any]:
        """
        Create the group, membership and discount for an earned reward.

        Steps already completed are cleaned up if a later one fails.
        """
        reward = self._get_reward(reward_id)
        if not reward:
            return {'success': False, 'error': 'Reward not found'}
        if reward.status != RewardStatus.EARNED.value:
            return {'success': False, 'error': f"Reward is {reward.status}, not earned"}
        if reward.pos_discount_id:
            return {'success': True, 'skipped': True, 'discount_id': reward.pos_discount_id}

        offer = reward.offer
        variation_ids = [
            v.variation_id for v in QualifyingVariation.query.filter_by(
                tenant_id=self.tenant_id, offer_id=offer.id, is_active=True
            ).all()
        ]
        if not variation_ids:
            logger.warning(f"Offer {offer.id} has no qualifying variations; cannot sync reward {reward.id}")
            return {'success': False, 'error': 'No qualifying variations configured for this offer'}

        max_amount = self.max_discount_cents(reward, offer)
        customer_id = reward.customer_id

        group_id = None
        customer_added = False
        try:
            group_id = self.client.create_customer_group(
                f"Loyalty Reward {reward.id} - {offer.offer_name} - {customer_id[:8]}",
                f"loyalty-reward-group-{reward.id}",
            )
            self.client.add_customer_to_group(customer_id, group_id)
            customer_added = True
            ids = self.client.create_reward_discount(
                reward.id, offer.offer_name, group_id, variation_ids, max_amount
            )
        except POSError as e:
            self._cleanup(customer_id, group_id, customer_added)
            logger.warning(
                f"Could not create POS discount for reward {reward.id} - manual sync required: {e.message}"
            )
            return {'success': False, 'error': e.message}

        # The reward may have been redeemed or revoked while we were talking to the POS
        reward = self._get_reward(reward_id, lock=True)
        if not reward or reward.status != RewardStatus.EARNED.value:
            self._cleanup(customer_id, group_id, True, list(ids.values()))
            db.session.commit()
            return {'success': False, 'error': 'Reward left earned state during sync'}

        reward.pos_group_id = group_id
        reward.pos_discount_id = ids['discount_id']
        reward.pos_product_set_id = ids['product_set_id']
        reward.pos_pricing_rule_id = ids['pricing_rule_id']
        reward.pos_synced_at = utcnow()
        db.session.commit()

        logger.info(
            f"POS discount created for reward {reward.id}: group {group_id}, "
            f"discount {ids['discount_id']}, cap {max_amount}"
        )
        return {'success': True, 'group_id': group_id, 'max_amount_cents': max_amount, **ids}

    def _cleanup(self, customer_id: str, group_id: Optional[str], customer_added: bool, object_ids=None):
        """Best-effort removal of partially created POS objects."""
        steps = []
        if object_ids:
            steps.append(('delete catalog objects', lambda: self.client.delete_catalog_objects(object_ids)))
        if group_id and customer_added:
            steps.append(('remove customer', lambda: self.client.remove_customer_from_group(customer_id, group_id)))
        if group_id:
            steps.append(('delete group', lambda: self.client.delete_customer_group(group_id)))

        for name, step in steps:
            try:
                step()
            except POSError as e:
                logger.error(f"Cleanup step '{name}' failed for group {group_id}: {e.message}")

    # ==================== Deactivation ====================

    def deactivate(self, reward_id: int) -> Dict[str, Any]:
        """
        Delete the pricing rule, product set and discount, remove the
        customer from the group and delete the group.

        Identifiers are cleared for whatever was removed; anything that
        failed stays recorded for the reconciliation sweep. A reward with
        no identifiers is a no-op success.
        """
        reward = self._get_reward(reward_id, lock=True)
        if not reward:
            return {'success': False, 'error': 'Reward not found'}
        if not reward.has_pos_objects:
            return {'success': True, 'skipped': True}

        errors = []
        catalog_ids = [reward.pos_pricing_rule_id, reward.pos_product_set_id, reward.pos_discount_id]
        if any(catalog_ids):
            try:
                self.client.delete_catalog_objects([i for i in catalog_ids if i])
                reward.pos_pricing_rule_id = None
                reward.pos_product_set_id = None
                reward.pos_discount_id = None
            except POSError as e:
                errors.append(f"catalog: {e.message}")

        if reward.pos_group_id:
            try:
                self.client.remove_customer_from_group(reward.customer_id, reward.pos_group_id)
            except POSError as e:
                logger.warning(f"Could not remove customer from group {reward.pos_group_id}: {e.message}")
            try:
                self.client.delete_customer_group(reward.pos_group_id)
                reward.pos_group_id = None
            except POSError as e:
                errors.append(f"group: {e.message}")

        if not reward.has_pos_objects:
            reward.pos_synced_at = None
        db.session.commit()

        if errors:
            logger.error(f"POS cleanup incomplete for reward {reward.id} - manual sync required: {errors}")
            return {'success': False, 'error': '; '.join(errors)}

        logger.info(f"POS discount removed for reward {reward.id}")
        return {'success': True}

    # ==================== Reconciliation ====================

    def reconcile(self) -> Dict[str, int]:
        """
        Retry POS sync for rewards whose POS state disagrees with the ledger.

        Earned rewards without a discount are activated; redeemed or revoked
        rewards still holding POS objects are torn down.
        """
        stats = {'activated': 0, 'deactivated': 0, 'failed': 0}

        missing = Reward.query.filter(
            Reward.tenant_id == self.tenant_id,
            Reward.status == RewardStatus.EARNED.value,
            Reward.pos_discount_id.is_(None),
        ).all()
        for reward in missing:
            result = self.activate(reward.id)
            stats['activated' if result.get('success') else 'failed'] += 1

        stale = Reward.query.filter(
            Reward.tenant_id == self.tenant_id,
            Reward.status.in_(TERMINAL_STATUSES),
            db.or_(
                Reward.pos_group_id.isnot(None),
                Reward.pos_discount_id.isnot(None),
                Reward.pos_product_set_id.isnot(None),
                Reward.pos_pricing_rule_id.isnot(None),
            ),
        ).all()
        for reward in stale:
            result = self.deactivate(reward.id)
            stats['deactivated' if result.get('success') else 'failed'] += 1

        logger.info(f"POS reconciliation for tenant {self.tenant_id}: {stats}")
        return stats
