"""
Tests for offer administration.

Covers:
- Offer creation and the one-offer-per-brand-and-size rule
- Updates, deactivation and deletion
- Qualifying variation allow-list management
"""
import pytest

from frequent_buyer.models import Offer, QualifyingVariation, Reward, AuditLogEntry, AuditAction
from frequent_buyer.services.offer_admin import OfferAdminService
from frequent_buyer.services.redemption_processor import RedemptionProcessor
from frequent_buyer.utils.exceptions import (
    ValidationError,
    DuplicateError,
    BusinessRuleError,
    OfferNotFoundError,
)


@pytest.fixture
def admin(sample_tenant):
    return OfferAdminService(sample_tenant.id)


class TestCreateOffer:
    """Tests for OfferAdminService.create_offer."""

    def test_create_with_variations(self, app, admin):
        offer = admin.create_offer({
            'brand_name': 'Orijen',
            'size_group': 'Small',
            'required_quantity': 5,
            'variations': [
                {'variation_id': 'ORI-S1', 'item_name': 'Orijen Original', 'price_cents': 2999},
                {'variation_id': 'ORI-S2', 'item_name': 'Orijen Puppy'},
            ],
        }, user_id='staff-1')

        assert offer.offer_name == 'Orijen Small'
        assert offer.reward_quantity == 1
        assert offer.window_months == 12
        assert sorted(v.variation_id for v in offer.variations) == ['ORI-S1', 'ORI-S2']
        assert AuditLogEntry.query.filter_by(action=AuditAction.OFFER_CREATED.value).one().user_id == 'staff-1'
        assert AuditLogEntry.query.filter_by(action=AuditAction.VARIATION_ADDED.value).count() == 2

    def test_brand_and_size_must_be_unique(self, app, sample_offer, admin):
        with pytest.raises(DuplicateError):
            admin.create_offer({'brand_name': 'Acme', 'size_group': 'Large', 'required_quantity': 4})

    @pytest.mark.parametrize('data', [
        {'size_group': 'Large', 'required_quantity': 3},
        {'brand_name': 'Acme', 'required_quantity': 3},
        {'brand_name': 'Acme', 'size_group': 'Small', 'required_quantity': 0},
        {'brand_name': 'Acme', 'size_group': 'Small', 'required_quantity': 'three'},
        {'brand_name': 'Acme', 'size_group': 'Small', 'required_quantity': 3, 'window_months': 0},
    ])
    def test_invalid_input_rejected(self, app, admin, data):
        with pytest.raises(ValidationError):
            admin.create_offer(data)
        assert Offer.query.count() == 0


class TestUpdateOffer:
    """Tests for OfferAdminService.update_offer and deactivate_offer."""

    def test_update_records_changes(self, app, sample_offer, admin):
        admin.update_offer(sample_offer.id, {'required_quantity': 4, 'brand_name': 'ignored'})

        assert Offer.query.get(sample_offer.id).required_quantity == 4
        assert Offer.query.get(sample_offer.id).brand_name == 'Acme'
        entry = AuditLogEntry.query.filter_by(action=AuditAction.OFFER_UPDATED.value).one()
        assert entry.details['changes']['required_quantity'] == {'old': 3, 'new': 4}

    def test_unchanged_update_not_audited(self, app, sample_offer, admin):
        admin.update_offer(sample_offer.id, {'required_quantity': 3})
        assert AuditLogEntry.query.filter_by(action=AuditAction.OFFER_UPDATED.value).count() == 0

    def test_threshold_change_applies_to_in_progress_reward(self, app, sample_offer, buy, admin):
        earned_id = buy(3)['reward']['reward_id']
        reward_id = buy(2)['reward']['reward_id']
        admin.update_offer(sample_offer.id, {'required_quantity': 5})

        result = buy(1)

        assert result['reward']['reward_id'] == reward_id
        assert result['reward']['status'] == 'in_progress'
        assert Reward.query.get(reward_id).required_quantity == 5
        assert Reward.query.get(earned_id).required_quantity == 3

    def test_deactivated_offer_stops_accruing(self, app, sample_offer, buy, admin):
        admin.deactivate_offer(sample_offer.id)

        assert buy(1)['processed'] is False
        assert AuditLogEntry.query.filter_by(action=AuditAction.OFFER_DEACTIVATED.value).count() == 1


class TestDeleteOffer:
    """Tests for OfferAdminService.delete_offer."""

    def test_delete_unused_offer(self, app, sample_offer, admin):
        result = admin.delete_offer(sample_offer.id)

        assert result == {'deleted': True, 'offer_id': sample_offer.id, 'history_kept': False}
        assert Offer.query.count() == 0
        assert QualifyingVariation.query.count() == 0

    def test_delete_refused_with_active_rewards(self, app, sample_offer, buy, admin):
        buy(1)
        with pytest.raises(BusinessRuleError) as exc:
            admin.delete_offer(sample_offer.id)
        assert exc.value.code == 'OFFER_HAS_ACTIVE_REWARDS'

    def test_delete_with_history_is_soft(self, app, sample_offer, buy, fake_pos, admin):
        reward_id = buy(3)['reward']['reward_id']
        RedemptionProcessor(sample_offer.tenant_id, pos_client=fake_pos).redeem(reward_id)

        result = admin.delete_offer(sample_offer.id)

        assert result['history_kept'] is True
        offer = Offer.query.get(sample_offer.id)
        assert offer.deleted_at is not None
        assert offer.is_active is False
        with pytest.raises(OfferNotFoundError):
            admin.get_offer(sample_offer.id)


class TestVariations:
    """Tests for the qualifying variation allow-list."""

    def test_variation_cannot_join_two_active_offers(self, app, sample_offer, admin):
        other = admin.create_offer({'brand_name': 'Acme', 'size_group': 'Small', 'required_quantity': 6})

        with pytest.raises(DuplicateError):
            admin.add_variations(other.id, [{'variation_id': 'VAR-1'}])

    def test_reactivation_refused_when_variation_moved(self, app, sample_offer, admin):
        admin.deactivate_offer(sample_offer.id)
        other = admin.create_offer({
            'brand_name': 'Acme', 'size_group': 'Small', 'required_quantity': 6,
            'variations': [{'variation_id': 'VAR-1'}],
        })

        with pytest.raises(DuplicateError):
            admin.update_offer(sample_offer.id, {'is_active': True})

        assert Offer.query.get(sample_offer.id).is_active is False
        holders = (
            QualifyingVariation.query
            .join(Offer, Offer.id == QualifyingVariation.offer_id)
            .filter(QualifyingVariation.variation_id == 'VAR-1', Offer.is_active.is_(True))
            .all()
        )
        assert [v.offer_id for v in holders] == [other.id]

    def test_reactivation_allowed_without_conflict(self, app, sample_offer, admin):
        admin.deactivate_offer(sample_offer.id)

        offer = admin.update_offer(sample_offer.id, {'is_active': True})

        assert offer.is_active is True

    def test_re_adding_reactivates(self, app, sample_offer, admin):
        assert admin.remove_variation(sample_offer.id, 'VAR-2') is True
        admin.add_variations(sample_offer.id, [{'variation_id': 'VAR-2', 'price_cents': 5400}])

        variation = QualifyingVariation.query.filter_by(variation_id='VAR-2').one()
        assert variation.is_active is True
        assert variation.price_cents == 5400

    def test_removed_variation_stops_qualifying(self, app, sample_offer, buy, admin):
        admin.remove_variation(sample_offer.id, 'VAR-1')
        assert buy(1)['processed'] is False

    def test_remove_unknown_variation(self, app, sample_offer, admin):
        assert admin.remove_variation(sample_offer.id, 'NOPE') is False

    def test_variation_requires_id(self, app, sample_offer, admin):
        with pytest.raises(ValidationError):
            admin.add_variations(sample_offer.id, [{'item_name': 'Mystery'}])
