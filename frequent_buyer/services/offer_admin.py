"""
Offer and qualifying-variation administration.
"""
import logging
from typing import Optional, Dict, Any, List

from ..extensions import db
from ..models.offer import Offer, QualifyingVariation
from ..models.purchase_event import PurchaseEvent
from ..models.reward import Reward, RewardStatus
from ..models.audit_log import AuditAction
from ..utils.dates import utcnow
from ..utils.exceptions import (
    TenantIsolationError,
    OfferNotFoundError,
    ValidationError,
    DuplicateError,
    BusinessRuleError,
)
from .audit_logger import AuditLogger, OfferChange, VariationChange

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ('offer_name', 'description', 'required_quantity', 'window_months', 'is_active')


def _positive_int(data: Dict[str, Any], key: str) -> int:
    try:
        value = int(data[key])
    except (KeyError, TypeError, ValueError):
        raise ValidationError(f"{key} must be a whole number", field=key)
    if value < 1:
        raise ValidationError(f"{key} must be at least 1", field=key)
    return value


class OfferAdminService:
    """
    Administrative operations on offers for one tenant.
    """

    def __init__(self, tenant_id: int):
        if not tenant_id:
            raise TenantIsolationError('OfferAdminService')
        self.tenant_id = tenant_id
        self.audit = AuditLogger(tenant_id)

    def get_offer(self, offer_id: int) -> Offer:
        offer = Offer.query.filter_by(id=offer_id, tenant_id=self.tenant_id).first()
        if not offer or offer.deleted_at:
            raise OfferNotFoundError(offer_id)
        return offer

    def list_offers(self, active_only: bool = False) -> List[Offer]:
        query = Offer.query.filter(Offer.tenant_id == self.tenant_id, Offer.deleted_at.is_(None))
        if active_only:
            query = query.filter(Offer.is_active.is_(True))
        return query.order_by(Offer.brand_name, Offer.size_group).all()

    def create_offer(self, data: Dict[str, Any], user_id: Optional[str] = None) -> Offer:
        """
        Create an offer. One offer per brand + size group; reward quantity is always 1.
        """
        brand_name = (data.get('brand_name') or '').strip()
        size_group = (data.get('size_group') or '').strip()
        if not brand_name:
            raise ValidationError('brand_name is required', field='brand_name')
        if not size_group:
            raise ValidationError('size_group is required', field='size_group')
        required_quantity = _positive_int(data, 'required_quantity')
        window_months = _positive_int({'window_months': data.get('window_months', 12)}, 'window_months')

        existing = Offer.query.filter_by(
            tenant_id=self.tenant_id, brand_name=brand_name, size_group=size_group
        ).first()
        if existing:
            raise DuplicateError('Offer', f"brand '{brand_name}' and size group '{size_group}'")

        offer = Offer(
            tenant_id=self.tenant_id,
            offer_name=data.get('offer_name') or f"{brand_name} {size_group}",
            brand_name=brand_name,
            size_group=size_group,
            description=data.get('description'),
            required_quantity=required_quantity,
            reward_quantity=1,
            window_months=window_months,
            is_active=True,
            created_by=user_id,
        )
        db.session.add(offer)
        db.session.flush()

        self.audit.log(
            AuditAction.OFFER_CREATED,
            OfferChange(offer_name=offer.offer_name, changes={
                'brand_name': brand_name,
                'size_group': size_group,
                'required_quantity': required_quantity,
                'window_months': window_months,
            }),
            offer_id=offer.id,
            triggered_by='ADMIN',
            user_id=user_id,
        )
        db.session.commit()
        logger.info(f"Created offer {offer.id} '{offer.offer_name}' for tenant {self.tenant_id}")

        if data.get('variations'):
            self.add_variations(offer.id, data['variations'], user_id=user_id)
        return offer

    def update_offer(self, offer_id: int, data: Dict[str, Any], user_id: Optional[str] = None) -> Offer:
        """
        Update offer settings. Earned rewards keep the threshold they were
        earned at; in-progress rewards move to the new one on their next recompute.
        """
        offer = self.get_offer(offer_id)
        changes = {}
        for key in UPDATABLE_FIELDS:
            if key not in data:
                continue
            value = data[key]
            if key in ('required_quantity', 'window_months'):
                value = _positive_int(data, key)
            elif key == 'is_active':
                value = bool(value)
            if getattr(offer, key) != value:
                changes[key] = {'old': getattr(offer, key), 'new': value}
                setattr(offer, key, value)

        if changes.get('is_active', {}).get('new') is True:
            self._check_reactivation(offer)

        if not changes:
            return offer

        action = AuditAction.OFFER_UPDATED
        if changes.get('is_active', {}).get('new') is False:
            action = AuditAction.OFFER_DEACTIVATED
        self.audit.log(
            action,
            OfferChange(offer_name=offer.offer_name, changes=changes),
            offer_id=offer.id,
            triggered_by='ADMIN',
            user_id=user_id,
        )
        db.session.commit()
        logger.info(f"Updated offer {offer.id}: {sorted(changes)}")
        return offer

    def _check_reactivation(self, offer: Offer):
        """Refuse reactivation while another active offer holds one of its variations."""
        for variation in offer.variations.filter_by(is_active=True).all():
            conflict = self._active_conflict(offer.id, variation.variation_id)
            if conflict:
                db.session.rollback()
                raise DuplicateError(
                    'Qualifying variation', f"id {variation.variation_id} on offer {conflict.offer_id}"
                )

    def deactivate_offer(self, offer_id: int, user_id: Optional[str] = None) -> Offer:
        return self.update_offer(offer_id, {'is_active': False}, user_id=user_id)

    def delete_offer(self, offer_id: int, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Remove an offer's configuration.

        Refused while in_progress or earned rewards exist. An offer with
        ledger history is soft-deleted so history keeps its reference;
        otherwise the row is removed.
        """
        offer = self.get_offer(offer_id)

        active_rewards = Reward.query.filter(
            Reward.tenant_id == self.tenant_id,
            Reward.offer_id == offer.id,
            Reward.status.in_([RewardStatus.IN_PROGRESS.value, RewardStatus.EARNED.value]),
        ).count()
        if active_rewards:
            raise BusinessRuleError(
                f"Offer {offer.id} has {active_rewards} active reward(s); deactivate it instead",
                'OFFER_HAS_ACTIVE_REWARDS'
            )

        has_history = (
            PurchaseEvent.query.filter_by(tenant_id=self.tenant_id, offer_id=offer.id).first() is not None
            or Reward.query.filter_by(tenant_id=self.tenant_id, offer_id=offer.id).first() is not None
        )

        QualifyingVariation.query.filter_by(tenant_id=self.tenant_id, offer_id=offer.id).delete()
        self.audit.log(
            AuditAction.OFFER_DELETED,
            OfferChange(offer_name=offer.offer_name, changes={'history_kept': has_history}),
            offer_id=offer.id,
            triggered_by='ADMIN',
            user_id=user_id,
        )
        if has_history:
            offer.is_active = False
            offer.deleted_at = utcnow()
        else:
            db.session.delete(offer)
        db.session.commit()

        logger.info(f"Deleted offer {offer_id} for tenant {self.tenant_id} (history kept: {has_history})")
        return {'deleted': True, 'offer_id': offer_id, 'history_kept': has_history}

    # ==================== Variations ====================

    def _active_conflict(self, offer_id: int, variation_id: str) -> Optional[QualifyingVariation]:
        """Active allow-list row for the variation on another active offer."""
        return (
            QualifyingVariation.query
            .join(Offer, Offer.id == QualifyingVariation.offer_id)
            .filter(
                QualifyingVariation.tenant_id == self.tenant_id,
                QualifyingVariation.variation_id == variation_id,
                QualifyingVariation.is_active.is_(True),
                QualifyingVariation.offer_id != offer_id,
                Offer.is_active.is_(True),
            )
            .first()
        )

    def add_variations(
        self,
        offer_id: int,
        variations: List[Dict[str, Any]],
        user_id: Optional[str] = None,
    ) -> List[QualifyingVariation]:
        """
        Add variations to an offer's allow-list.

        Raises:
            DuplicateError: a variation already qualifies for another active offer
        """
        offer = self.get_offer(offer_id)
        added = []

        for data in variations:
            variation_id = data.get('variation_id')
            if not variation_id:
                raise ValidationError('variation_id is required', field='variation_id')

            conflict = self._active_conflict(offer.id, variation_id)
            if conflict:
                db.session.rollback()
                raise DuplicateError('Qualifying variation', f"id {variation_id} on offer {conflict.offer_id}")

            variation = QualifyingVariation.query.filter_by(
                tenant_id=self.tenant_id, offer_id=offer.id, variation_id=variation_id
            ).first()
            if not variation:
                variation = QualifyingVariation(
                    tenant_id=self.tenant_id, offer_id=offer.id, variation_id=variation_id
                )
                db.session.add(variation)
            variation.is_active = True
            for key in ('item_id', 'item_name', 'variation_name', 'sku', 'price_cents'):
                if key in data:
                    setattr(variation, key, data[key])

            self.audit.log(
                AuditAction.VARIATION_ADDED,
                VariationChange(
                    variation_id=variation_id,
                    item_name=data.get('item_name'),
                    variation_name=data.get('variation_name'),
                ),
                offer_id=offer.id,
                triggered_by='ADMIN',
                user_id=user_id,
            )
            added.append(variation)

        db.session.commit()
        logger.info(f"Added {len(added)} variation(s) to offer {offer.id}")
        return added

    def remove_variation(self, offer_id: int, variation_id: str, user_id: Optional[str] = None) -> bool:
        """Deactivate a variation on an offer's allow-list."""
        offer = self.get_offer(offer_id)
        variation = QualifyingVariation.query.filter_by(
            tenant_id=self.tenant_id, offer_id=offer.id, variation_id=variation_id, is_active=True
        ).first()
        if not variation:
            return False

        variation.is_active = False
        self.audit.log(
            AuditAction.VARIATION_REMOVED,
            VariationChange(
                variation_id=variation_id,
                item_name=variation.item_name,
                variation_name=variation.variation_name,
            ),
            offer_id=offer.id,
            triggered_by='ADMIN',
            user_id=user_id,
        )
        db.session.commit()
        return True
