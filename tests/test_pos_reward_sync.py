"""
Tests for POS reward synchronization.

Covers:
- Activation of earned rewards and the discount cap fallback chain
- Cleanup of partially created POS objects when activation fails
- Idempotent deactivation
- Reconciliation of rewards whose POS state drifted
"""
import pytest

from frequent_buyer.extensions import db
from frequent_buyer.models import Reward, RewardStatus, PurchaseEvent, QualifyingVariation
from frequent_buyer.services.pos_reward_sync import POSRewardSync
from frequent_buyer.services.settings_service import SettingsService
from frequent_buyer.utils.exceptions import POSError


@pytest.fixture
def sync(sample_tenant, fake_pos):
    return POSRewardSync(sample_tenant.id, fake_pos)


@pytest.fixture
def unsynced_reward(sample_offer, buy, fake_pos):
    """Earned reward whose activation failed at the discount step."""
    fake_pos.create_reward_discount.side_effect = POSError('Catalog upsert failed', status_code=500)
    result = buy(3, unit_price_cents=4700)
    fake_pos.reset_mock()
    fake_pos.create_reward_discount.side_effect = lambda *args, **kwargs: {
        'discount_id': 'DISCOUNT-X',
        'product_set_id': 'PRODUCT-SET-X',
        'pricing_rule_id': 'PRICING-RULE-X',
    }
    return Reward.query.get(result['reward']['reward_id'])


class TestActivate:
    """Tests for POSRewardSync.activate."""

    def test_failed_activation_leaves_reward_earned(self, app, unsynced_reward):
        assert unsynced_reward.status == RewardStatus.EARNED.value
        assert unsynced_reward.pos_discount_id is None
        assert unsynced_reward.pos_group_id is None

    def test_failed_activation_cleans_up_group(self, app, sample_offer, buy, fake_pos):
        fake_pos.create_reward_discount.side_effect = POSError('Catalog upsert failed')
        buy(3)

        group_id = fake_pos.add_customer_to_group.call_args[0][1]
        fake_pos.remove_customer_from_group.assert_called_once_with('cust-1', group_id)
        fake_pos.delete_customer_group.assert_called_once_with(group_id)

    def test_activate_stores_pos_ids(self, app, unsynced_reward, sync, fake_pos):
        result = sync.activate(unsynced_reward.id)

        assert result['success'] is True
        assert result['max_amount_cents'] == 4700
        reward = Reward.query.get(unsynced_reward.id)
        assert reward.pos_discount_id == 'DISCOUNT-X'
        assert reward.pos_pricing_rule_id == 'PRICING-RULE-X'
        assert reward.pos_synced_at is not None

        args = fake_pos.create_reward_discount.call_args[0]
        assert args[0] == reward.id
        assert sorted(args[3]) == ['VAR-1', 'VAR-2']

    def test_activate_twice_is_skipped(self, app, unsynced_reward, sync, fake_pos):
        sync.activate(unsynced_reward.id)
        result = sync.activate(unsynced_reward.id)

        assert result['skipped'] is True
        assert fake_pos.create_customer_group.call_count == 1

    def test_activate_requires_earned_status(self, app, sample_offer, buy, sync, fake_pos):
        result = buy(1)
        outcome = sync.activate(result['reward']['reward_id'])
        assert outcome['success'] is False
        fake_pos.create_customer_group.assert_not_called()


class TestMaxDiscount:
    """Tests for the "one free unit" discount cap."""

    def test_cap_uses_highest_locked_price(self, app, unsynced_reward, sync, sample_offer):
        assert sync.max_discount_cents(unsynced_reward, sample_offer) == 4700

    def test_cap_falls_back_to_catalog_price(self, app, unsynced_reward, sync, sample_offer):
        PurchaseEvent.query.update({PurchaseEvent.unit_price_cents: None})
        db.session.commit()
        assert sync.max_discount_cents(unsynced_reward, sample_offer) == 5200

    def test_cap_falls_back_to_configured_default(self, app, unsynced_reward, sync, sample_offer):
        PurchaseEvent.query.update({PurchaseEvent.unit_price_cents: None})
        QualifyingVariation.query.update({QualifyingVariation.price_cents: None})
        db.session.commit()
        assert sync.max_discount_cents(unsynced_reward, sample_offer) == app.config['DEFAULT_MAX_DISCOUNT_CENTS']

    def test_tenant_default_overrides_config(self, app, unsynced_reward, sync, sample_offer):
        PurchaseEvent.query.update({PurchaseEvent.unit_price_cents: None})
        QualifyingVariation.query.update({QualifyingVariation.price_cents: None})
        db.session.commit()
        SettingsService(sample_offer.tenant_id).update('default_max_discount_cents', 3000)
        assert sync.max_discount_cents(unsynced_reward, sample_offer) == 3000


class TestDeactivate:
    """Tests for POSRewardSync.deactivate."""

    def test_deactivate_removes_all_objects(self, app, sample_offer, buy, sync, fake_pos):
        reward = Reward.query.get(buy(3)['reward']['reward_id'])
        group_id = reward.pos_group_id
        catalog_ids = [reward.pos_pricing_rule_id, reward.pos_product_set_id, reward.pos_discount_id]

        result = sync.deactivate(reward.id)

        assert result == {'success': True}
        fake_pos.delete_catalog_objects.assert_called_once_with(catalog_ids)
        fake_pos.delete_customer_group.assert_called_once_with(group_id)
        assert reward.has_pos_objects is False

    def test_deactivate_without_objects_is_noop(self, app, unsynced_reward, sync, fake_pos):
        assert sync.deactivate(unsynced_reward.id) == {'success': True, 'skipped': True}
        fake_pos.delete_catalog_objects.assert_not_called()

    def test_partial_failure_keeps_remaining_ids(self, app, sample_offer, buy, sync, fake_pos):
        reward = Reward.query.get(buy(3)['reward']['reward_id'])
        fake_pos.delete_customer_group.side_effect = POSError('Group delete failed')

        result = sync.deactivate(reward.id)

        assert result['success'] is False
        assert reward.pos_discount_id is None
        assert reward.pos_group_id is not None


class TestReconcile:
    """Tests for POSRewardSync.reconcile."""

    def test_reconcile_activates_missing_discounts(self, app, unsynced_reward, sync):
        stats = sync.reconcile()
        assert stats == {'activated': 1, 'deactivated': 0, 'failed': 0}
        assert Reward.query.get(unsynced_reward.id).pos_discount_id == 'DISCOUNT-X'

    def test_reconcile_tears_down_stale_discounts(self, app, sample_offer, buy, sync):
        reward = Reward.query.get(buy(3)['reward']['reward_id'])
        reward.status = RewardStatus.REVOKED.value
        db.session.commit()

        stats = sync.reconcile()

        assert stats['deactivated'] == 1
        assert Reward.query.get(reward.id).has_pos_objects is False
