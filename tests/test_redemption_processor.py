"""
Tests for reward redemption and redemption detection.

Covers:
- Manual redemption of earned rewards
- Rejection of rewards in any other state
- Detection from POS orders: discount id, free item, discount amount
"""
import pytest

from frequent_buyer.models import Reward, RewardStatus, Redemption, CustomerSummary, AuditLogEntry, AuditAction
from frequent_buyer.services.order_events import OrderEvent
from frequent_buyer.services.redemption_processor import RedemptionProcessor, RedemptionContext
from frequent_buyer.utils.exceptions import (
    InvalidStatusTransitionError,
    CustomerMismatchError,
    RewardNotFoundError,
    ValidationError,
)


@pytest.fixture
def earned_reward(sample_offer, buy):
    result = buy(3, unit_price_cents=4800)
    return Reward.query.get(result['reward']['reward_id'])


@pytest.fixture
def processor(sample_tenant, fake_pos):
    return RedemptionProcessor(sample_tenant.id, pos_client=fake_pos)


def square_order(order_id='ORDER-R', customer_id='cust-1', line_items=None, discounts=None):
    return OrderEvent.from_square({
        'id': order_id,
        'location_id': 'LOC-1',
        'customer_id': customer_id,
        'state': 'COMPLETED',
        'closed_at': '2026-10-10T16:00:00Z',
        'line_items': line_items or [],
        'discounts': discounts or [],
    })


class TestRedeem:
    """Tests for RedemptionProcessor.redeem."""

    def test_redeem_earned_reward(self, app, earned_reward, processor, fake_pos):
        result = processor.redeem(earned_reward.id, RedemptionContext(
            customer_id='cust-1',
            order_id='ORDER-R',
            redeemed_by='staff-1',
            notes='Handed over at counter',
        ))

        reward = Reward.query.get(earned_reward.id)
        assert reward.status == RewardStatus.REDEEMED.value
        assert reward.redeemed_at is not None
        assert reward.redemption_order_id == 'ORDER-R'
        assert result['redemption']['value_cents'] == 4800
        assert result['redemption']['redemption_type'] == 'manual_admin'

        redemption = Redemption.query.filter_by(reward_id=reward.id).one()
        assert redemption.redeemed_by == 'staff-1'

        summary = CustomerSummary.query.filter_by(customer_id='cust-1').one()
        assert summary.total_rewards_redeemed == 1
        assert summary.has_earned_reward is False

        entry = AuditLogEntry.query.filter_by(action=AuditAction.REWARD_REDEEMED.value).one()
        assert entry.redemption_id == redemption.id

        # POS discount torn down after commit
        fake_pos.delete_catalog_objects.assert_called_once()
        assert reward.pos_discount_id is None
        assert reward.pos_group_id is None

    def test_redeem_in_progress_reward_fails(self, app, sample_offer, buy, processor):
        result = buy(1)
        with pytest.raises(InvalidStatusTransitionError):
            processor.redeem(result['reward']['reward_id'])
        assert Redemption.query.count() == 0

    def test_redeem_twice_fails(self, app, earned_reward, processor):
        processor.redeem(earned_reward.id)
        with pytest.raises(InvalidStatusTransitionError):
            processor.redeem(earned_reward.id)
        assert Redemption.query.count() == 1

    def test_redeem_for_other_customer_fails(self, app, earned_reward, processor):
        with pytest.raises(CustomerMismatchError):
            processor.redeem(earned_reward.id, RedemptionContext(customer_id='cust-2'))
        assert Reward.query.get(earned_reward.id).status == RewardStatus.EARNED.value

    def test_redeem_unknown_reward(self, app, sample_tenant, processor):
        with pytest.raises(RewardNotFoundError):
            processor.redeem(9999)

    def test_redeem_rejects_unknown_type(self, app, earned_reward, processor):
        with pytest.raises(ValidationError):
            processor.redeem(earned_reward.id, RedemptionContext(redemption_type='coupon'))

    def test_explicit_value_overrides_expected(self, app, earned_reward, processor):
        result = processor.redeem(earned_reward.id, RedemptionContext(value_cents=1000))
        assert result['redemption']['value_cents'] == 1000


class TestDetectRedemption:
    """Tests for RedemptionProcessor.detect_redemption_from_order."""

    def test_detect_by_discount_id(self, app, earned_reward, processor):
        order = square_order(customer_id=None, discounts=[{
            'uid': 'd1',
            'catalog_object_id': earned_reward.pos_discount_id,
            'applied_money': {'amount': 4800, 'currency': 'USD'},
        }])

        result = processor.detect_redemption_from_order(order)

        assert result['detected'] is True
        assert result['detection_method'] == 'catalog_object_id'
        reward = Reward.query.get(earned_reward.id)
        assert reward.status == RewardStatus.REDEEMED.value
        assert reward.redemption.redemption_type == 'auto_detected'
        assert reward.redemption.order_id == 'ORDER-R'

    def test_detect_by_pricing_rule_id(self, app, earned_reward, processor):
        order = square_order(customer_id=None, discounts=[{
            'uid': 'd1',
            'pricing_rule_id': earned_reward.pos_pricing_rule_id,
            'applied_money': {'amount': 4800, 'currency': 'USD'},
        }])
        assert processor.detect_redemption_from_order(order)['reward_id'] == earned_reward.id

    def test_detect_by_free_item(self, app, earned_reward, processor):
        order = square_order(line_items=[{
            'uid': 'li1',
            'catalog_object_id': 'VAR-2',
            'name': 'Acme Kibble',
            'quantity': '1',
            'base_price_money': {'amount': 5200},
            'total_money': {'amount': 0},
        }])

        result = processor.detect_redemption_from_order(order)

        assert result['detection_method'] == 'free_item'
        redemption = Redemption.query.filter_by(reward_id=earned_reward.id).one()
        assert redemption.variation_id == 'VAR-2'
        assert redemption.value_cents == 5200

    def test_detect_by_discount_amount(self, app, earned_reward, processor):
        order = square_order(line_items=[{
            'uid': 'li1',
            'catalog_object_id': 'VAR-1',
            'quantity': '1',
            'base_price_money': {'amount': 4800},
            'total_discount_money': {'amount': 4600},
            'total_money': {'amount': 200},
        }])

        result = processor.detect_redemption_from_order(order)
        assert result['detection_method'] == 'discount_amount'
        assert result['details']['expected_value_cents'] == 4800

    def test_small_discount_is_not_a_redemption(self, app, earned_reward, processor):
        order = square_order(line_items=[{
            'uid': 'li1',
            'catalog_object_id': 'VAR-1',
            'quantity': '1',
            'base_price_money': {'amount': 4800},
            'total_discount_money': {'amount': 500},
            'total_money': {'amount': 4300},
        }])

        assert processor.detect_redemption_from_order(order) == {'detected': False}
        assert Reward.query.get(earned_reward.id).status == RewardStatus.EARNED.value

    def test_dry_run_does_not_redeem(self, app, earned_reward, processor):
        order = square_order(discounts=[{
            'uid': 'd1',
            'catalog_object_id': earned_reward.pos_discount_id,
            'applied_money': {'amount': 4800},
        }])

        result = processor.detect_redemption_from_order(order, dry_run=True)

        assert result['detected'] is True
        assert 'redemption' not in result
        assert Redemption.query.count() == 0

    def test_no_earned_reward(self, app, sample_offer, buy, processor):
        buy(1)
        order = square_order(line_items=[{
            'uid': 'li1',
            'catalog_object_id': 'VAR-1',
            'quantity': '1',
            'base_price_money': {'amount': 4500},
            'total_money': {'amount': 0},
        }])
        assert processor.detect_redemption_from_order(order) == {'detected': False}
